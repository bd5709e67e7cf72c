"""Boundary to the terraform command-line tool.

Every invocation runs as an asyncio subprocess inside a per-deployment
working directory and is bounded by a timeout. Raw exit codes never leave
this module: inspection yields a bool, planning yields a PlanOutcome, and
apply/destroy either succeed or raise ToolInvocationError.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from .config import DEFAULT_TERRAFORM_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)

# Captured output kept in error messages
MAX_ERROR_OUTPUT_CHARS = 2000


class ToolInvocationError(Exception):
    """Raised when a terraform command fails, times out or cannot be started.

    The message always names the attempted operation.
    """

    def __init__(
        self,
        operation: str,
        message: str,
        *,
        command: str | None = None,
        returncode: int | None = None,
        stderr: str = "",
    ) -> None:
        self.operation = operation
        self.detail = message
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(f"failed to {operation}: {message}")


class PlanOutcome(str, Enum):
    """Result of comparing the configuration with the deployed state."""

    CLEAN = "Clean"
    CHANGES_PENDING = "ChangesPending"
    FAILED = "Failed"


@dataclass(frozen=True)
class PlanResult:
    outcome: PlanOutcome
    reason: str = ""


@dataclass(frozen=True)
class CommandResult:
    """Outcome of one finished terraform process."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def command(self) -> str:
        return " ".join(shlex.quote(arg) for arg in self.args)

    def error_output(self) -> str:
        output = (self.stderr or self.stdout).strip()
        return output[-MAX_ERROR_OUTPUT_CHARS:]


class TerraformCLI:
    """Runs terraform subcommands in a working directory."""

    def __init__(
        self,
        binary: str = "terraform",
        timeout_seconds: float = DEFAULT_TERRAFORM_TIMEOUT_SECONDS,
        env: dict[str, str] | None = None,
    ) -> None:
        self.binary = binary
        self.timeout_seconds = timeout_seconds
        self._env = env or {}

    async def run(self, args: Sequence[str], cwd: Path, operation: str) -> CommandResult:
        """Run one terraform subcommand and collect its output.

        A non-zero exit code is returned, not raised; interpreting it is
        up to the caller.

        Raises:
            ToolInvocationError: If the process cannot be started or times out.
        """
        argv = (self.binary, *args)
        command = " ".join(shlex.quote(arg) for arg in argv)
        env = {
            **os.environ,
            "TF_IN_AUTOMATION": "1",
            "TF_INPUT": "0",
            **self._env,
        }
        logger.debug("Running command", extra={"command": command, "cwd": str(cwd)})

        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=env,
            )
        except OSError as e:
            raise ToolInvocationError(
                operation, f"could not execute '{command}': {e}", command=command
            ) from e

        try:
            out, err = await asyncio.wait_for(proc.communicate(), timeout=self.timeout_seconds)
        except TimeoutError as e:
            proc.kill()
            await proc.wait()
            logger.error(
                "Command timed out",
                extra={"command": command, "timeout_seconds": self.timeout_seconds},
            )
            raise ToolInvocationError(
                operation,
                f"'{command}' timed out after {self.timeout_seconds}s",
                command=command,
            ) from e

        # returncode is always set once communicate() has returned
        returncode = proc.returncode if proc.returncode is not None else -1
        result = CommandResult(
            args=argv,
            returncode=returncode,
            stdout=out.decode("utf-8", errors="replace"),
            stderr=err.decode("utf-8", errors="replace"),
        )
        if not result.ok:
            logger.debug(
                "Command exited non-zero",
                extra={"command": command, "returncode": returncode},
            )
        return result

    async def _check(self, args: Sequence[str], cwd: Path, operation: str) -> CommandResult:
        result = await self.run(args, cwd, operation)
        if not result.ok:
            raise ToolInvocationError(
                operation,
                f"'{result.command}' exited with code {result.returncode}: "
                f"{result.error_output()}",
                command=result.command,
                returncode=result.returncode,
                stderr=result.stderr,
            )
        return result

    async def init(self, cwd: Path) -> None:
        await self._check(["init", "-input=false", "-no-color"], cwd, "initialize deployment")

    async def list_state(self, cwd: Path, operation: str) -> list[str]:
        """Addresses of every resource in the state; empty when nothing is deployed.

        Raises:
            ToolInvocationError: If the state cannot be read (lock, backend
                error, missing binary).
        """
        result = await self._check(["state", "list"], cwd, operation)
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    async def state_exists(self, cwd: Path) -> bool:
        """Inspect the state; any failure counts as "no deployment"."""
        try:
            addresses = await self.list_state(cwd, "inspect deployment state")
        except ToolInvocationError as e:
            logger.info("State inspection failed, treating as absent", extra={"error": str(e)})
            return False
        # An initialized backend with an empty state lists nothing
        return bool(addresses)

    async def plan(self, cwd: Path) -> PlanResult:
        """Diff the configuration against the deployed state."""
        try:
            result = await self.run(
                ["plan", "-detailed-exitcode", "-input=false", "-no-color"],
                cwd,
                "check deployment status",
            )
        except ToolInvocationError as e:
            return PlanResult(PlanOutcome.FAILED, e.detail)

        # -detailed-exitcode: 0 = no changes, 1 = error, 2 = changes present
        match result.returncode:
            case 0:
                return PlanResult(PlanOutcome.CLEAN)
            case 2:
                return PlanResult(PlanOutcome.CHANGES_PENDING)
            case code:
                return PlanResult(
                    PlanOutcome.FAILED,
                    f"'{result.command}' exited with code {code}: {result.error_output()}",
                )

    async def apply(self, cwd: Path, operation: str) -> None:
        await self._check(["apply", "-auto-approve", "-input=false", "-no-color"], cwd, operation)

    async def destroy(self, cwd: Path) -> None:
        await self._check(
            ["destroy", "-auto-approve", "-input=false", "-no-color"], cwd, "delete deployment"
        )
