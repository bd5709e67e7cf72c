"""Lifecycle management of one Terraform deployment.

A Manager is built for a single reconcile of a single resource and is
thrown away afterwards. It must not be used from more than one task at a
time; the work queue guarantees a resource is only reconciled by one
worker at once, which also keeps its working directory private.
"""

from __future__ import annotations

import asyncio
import json
import logging
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .config import VARIABLES_FILENAME
from .status import DeployedConfig, TerraformStatus
from .terraform import PlanOutcome, TerraformCLI, ToolInvocationError

logger = logging.getLogger(__name__)

# Never copied from the template into a working directory
_TEMPLATE_IGNORE = shutil.ignore_patterns(".terraform", "terraform.tfstate*", VARIABLES_FILENAME)


class WorkspaceError(Exception):
    """Raised when a deployment's working directory cannot be prepared."""

    pass


@dataclass(frozen=True)
class RefreshResult:
    """What a refresh found out about the deployment."""

    exists: bool
    update_required: bool


class Manager(ABC):
    """Create, update, reconcile and delete one deployment."""

    @property
    @abstractmethod
    def deployment_name(self) -> str: ...

    @property
    @abstractmethod
    def namespace(self) -> str: ...

    @property
    @abstractmethod
    def values(self) -> dict[str, Any]: ...

    @property
    @abstractmethod
    def status(self) -> TerraformStatus: ...

    @property
    @abstractmethod
    def exists(self) -> bool:
        """Whether the deployment existed at the last refresh."""

    @property
    @abstractmethod
    def is_update_required(self) -> bool:
        """Whether the last refresh found pending changes."""

    @abstractmethod
    async def refresh(self) -> RefreshResult:
        """Inspect the deployed state and diff it against the configuration."""

    @abstractmethod
    async def create(self) -> None: ...

    @abstractmethod
    async def update(self) -> None: ...

    @abstractmethod
    async def reconcile(self) -> None:
        """Converge a deployment with no pending changes; must not alter it."""

    @abstractmethod
    async def delete(self) -> None: ...

    @abstractmethod
    def deployed_config(self) -> DeployedConfig: ...


class TerraformManager(Manager):
    """Manager backed by the terraform CLI and a per-deployment directory."""

    def __init__(
        self,
        deployment_name: str,
        namespace: str,
        values: dict[str, Any],
        status: TerraformStatus,
        template_dir: Path,
        work_dir: Path,
        terraform: TerraformCLI,
    ) -> None:
        self._deployment_name = deployment_name
        self._namespace = namespace
        self._values = values
        self._status = status
        self._template_dir = template_dir
        self._work_dir = work_dir
        self._terraform = terraform
        self._last_refresh: RefreshResult | None = None

    @property
    def deployment_name(self) -> str:
        return self._deployment_name

    @property
    def namespace(self) -> str:
        return self._namespace

    @property
    def values(self) -> dict[str, Any]:
        return self._values

    @property
    def status(self) -> TerraformStatus:
        return self._status

    @property
    def work_dir(self) -> Path:
        return self._work_dir

    @property
    def variables_file(self) -> Path:
        return self._work_dir / VARIABLES_FILENAME

    def _refreshed(self) -> RefreshResult:
        if self._last_refresh is None:
            raise RuntimeError(f"deployment {self._deployment_name} has not been refreshed")
        return self._last_refresh

    @property
    def exists(self) -> bool:
        return self._refreshed().exists

    @property
    def is_update_required(self) -> bool:
        return self._refreshed().update_required

    def _write_workspace(self) -> None:
        if not self._template_dir.is_dir():
            raise WorkspaceError(f"template directory not found: {self._template_dir}")
        try:
            self._work_dir.mkdir(parents=True, exist_ok=True)
            shutil.copytree(
                self._template_dir, self._work_dir, ignore=_TEMPLATE_IGNORE, dirs_exist_ok=True
            )
            self.variables_file.write_text(
                json.dumps(self._values, indent=2, sort_keys=True), encoding="utf-8"
            )
        except (OSError, TypeError, ValueError) as e:
            raise WorkspaceError(
                f"failed to prepare working directory {self._work_dir}: {e}"
            ) from e

    async def _prepare_workspace(self) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._write_workspace)
        await self._terraform.init(self._work_dir)

    async def refresh(self) -> RefreshResult:
        await self._prepare_workspace()
        exists = await self._terraform.state_exists(self._work_dir)

        plan = await self._terraform.plan(self._work_dir)
        if plan.outcome is PlanOutcome.FAILED:
            raise ToolInvocationError("check deployment status", plan.reason)

        result = RefreshResult(
            exists=exists,
            update_required=plan.outcome is PlanOutcome.CHANGES_PENDING,
        )
        self._last_refresh = result
        logger.debug(
            "Refreshed deployment",
            extra={
                "deployment": self._deployment_name,
                "namespace": self._namespace,
                "exists": result.exists,
                "update_required": result.update_required,
            },
        )
        return result

    async def create(self) -> None:
        await self._terraform.apply(self._work_dir, "create deployment")

    async def update(self) -> None:
        await self._terraform.apply(self._work_dir, "update deployment")

    async def reconcile(self) -> None:
        # No drift correction beyond what plan/apply already cover.
        return None

    async def delete(self) -> None:
        await self._prepare_workspace()
        # An unreadable state fails the delete; it never counts as absent.
        addresses = await self._terraform.list_state(self._work_dir, "delete deployment")
        if addresses:
            await self._terraform.destroy(self._work_dir)
        else:
            logger.info(
                "Deployment already absent, skipping destroy",
                extra={"deployment": self._deployment_name, "namespace": self._namespace},
            )

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(
            None, lambda: shutil.rmtree(self._work_dir, ignore_errors=True)
        )

    def deployed_config(self) -> DeployedConfig:
        return DeployedConfig(name=self._deployment_name, manifest=str(self.variables_file))
