"""Configuration management with validation.

All settings come from environment variables and are validated at load
time so the operator fails fast instead of misbehaving mid-reconcile.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_RECONCILE_PERIOD_SECONDS = 60
MIN_RECONCILE_PERIOD_SECONDS = 1
MAX_RECONCILE_PERIOD_SECONDS = 86400

DEFAULT_MAX_CONCURRENT_RECONCILES = 1
MAX_CONCURRENT_RECONCILES_LIMIT = 64

DEFAULT_TERRAFORM_TIMEOUT_SECONDS = 1800
DEFAULT_DELETION_WAIT_TIMEOUT_SECONDS = 5.0
DELETION_POLL_INTERVAL_SECONDS = 0.02

# Status and finalizer writes: client-go style default backoff
CONFLICT_RETRY_STEPS = 4
CONFLICT_RETRY_BASE_SECONDS = 0.01
CONFLICT_RETRY_FACTOR = 5.0
CONFLICT_RETRY_JITTER = 0.1

# Per-key failure backoff in the work queue
FAILURE_BACKOFF_BASE_SECONDS = 0.005
FAILURE_BACKOFF_MAX_SECONDS = 1000.0

MAX_WATCHES_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max watches file

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

FINALIZER = "destroy-terraform-config"
VARIABLES_FILENAME = "terraform.tfvars.json"


@dataclass(frozen=True)
class Config:
    """Operator configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    watches_file: Path = field(default_factory=lambda: Path("watches.yaml"))
    watch_namespace: str = ""

    reconcile_period_seconds: int = DEFAULT_RECONCILE_PERIOD_SECONDS
    max_concurrent_reconciles: int = DEFAULT_MAX_CONCURRENT_RECONCILES

    terraform_binary: str = "terraform"
    work_dir: Path = field(default_factory=lambda: Path("/tmp/terraform-operator"))
    terraform_timeout_seconds: int = DEFAULT_TERRAFORM_TIMEOUT_SECONDS
    deletion_wait_timeout_seconds: float = DEFAULT_DELETION_WAIT_TIMEOUT_SECONDS

    log_level: str = "INFO"

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not (
            MIN_RECONCILE_PERIOD_SECONDS
            <= self.reconcile_period_seconds
            <= MAX_RECONCILE_PERIOD_SECONDS
        ):
            errors.append(
                f"RECONCILE_PERIOD must be between {MIN_RECONCILE_PERIOD_SECONDS} "
                f"and {MAX_RECONCILE_PERIOD_SECONDS} seconds"
            )

        if not 1 <= self.max_concurrent_reconciles <= MAX_CONCURRENT_RECONCILES_LIMIT:
            errors.append(
                f"MAX_CONCURRENT_RECONCILES must be between 1 "
                f"and {MAX_CONCURRENT_RECONCILES_LIMIT}"
            )

        if not self.terraform_binary:
            errors.append("TERRAFORM_BINARY must not be empty")

        if self.terraform_timeout_seconds < 1:
            errors.append("TERRAFORM_TIMEOUT must be at least 1 second")

        if self.log_level not in LOG_LEVELS:
            errors.append(f"LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}")

        if self.deletion_wait_timeout_seconds <= 0:
            errors.append("DELETION_WAIT_TIMEOUT must be positive")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            WATCHES_FILE: Path to the watches file (default: watches.yaml)
            WATCH_NAMESPACE: Namespace to watch, empty for all (default: "")
            RECONCILE_PERIOD: Seconds between periodic reconciles (default: 60)
            MAX_CONCURRENT_RECONCILES: Worker count per watch (default: 1)
            TERRAFORM_BINARY: terraform executable (default: terraform)
            TERRAFORM_WORK_DIR: Root of per-deployment working directories
            TERRAFORM_TIMEOUT: Timeout for one terraform command in seconds
            DELETION_WAIT_TIMEOUT: Seconds to wait for a deleted resource to vanish
            LOG_LEVEL: Root log level (default: INFO)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        return cls(
            watches_file=Path(os.environ.get("WATCHES_FILE", "watches.yaml")),
            watch_namespace=os.environ.get("WATCH_NAMESPACE", ""),
            reconcile_period_seconds=get_int(
                "RECONCILE_PERIOD", DEFAULT_RECONCILE_PERIOD_SECONDS
            ),
            max_concurrent_reconciles=get_int(
                "MAX_CONCURRENT_RECONCILES", DEFAULT_MAX_CONCURRENT_RECONCILES
            ),
            terraform_binary=os.environ.get("TERRAFORM_BINARY", "terraform"),
            work_dir=Path(os.environ.get("TERRAFORM_WORK_DIR", "/tmp/terraform-operator")),
            terraform_timeout_seconds=get_int(
                "TERRAFORM_TIMEOUT", DEFAULT_TERRAFORM_TIMEOUT_SECONDS
            ),
            deletion_wait_timeout_seconds=get_float(
                "DELETION_WAIT_TIMEOUT", DEFAULT_DELETION_WAIT_TIMEOUT_SECONDS
            ),
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        )
