"""Watch registry loading with validation.

A watches file is a YAML list; each entry tells the operator which
resource type to watch, where the Terraform template for it lives and
which values the operator forces on top of every resource's spec:

    - group: infra.example.com
      version: v1alpha1
      kind: Bucket
      template: templates/bucket
      watchDependentResources: false
      overrideValues:
        region: $AWS_REGION

Loading is all-or-nothing: any invalid or duplicate entry aborts the load
and no partial registry is returned.
"""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from .config import MAX_WATCHES_FILE_SIZE_BYTES
from .models import GroupVersionKind

logger = logging.getLogger(__name__)

WATCHES_FILE = "watches.yaml"

# $VAR or ${VAR}, shell style
_ENV_REF_PATTERN = re.compile(r"\$(?:\{([^}]*)\}|([A-Za-z0-9_]+))")


class WatchLoadError(Exception):
    """Raised when the watch registry cannot be loaded or fails validation."""

    pass


class Watch(BaseModel):
    """Options for watching one Terraform-backed resource type."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    group: str = ""
    version: str = ""
    kind: str = ""
    template_dir: str = Field("", alias="template")
    watch_dependent_resources: bool | None = Field(None, alias="watchDependentResources")
    override_values: dict[str, str] = Field(default_factory=dict, alias="overrideValues")

    @field_validator("override_values", mode="before")
    @classmethod
    def default_override_values(cls, v: Any) -> Any:
        return {} if v is None else v

    @property
    def gvk(self) -> GroupVersionKind:
        return GroupVersionKind(group=self.group, version=self.version, kind=self.kind)


def expand_env(value: str, environ: Mapping[str, str] | None = None) -> str:
    """Expand $VAR and ${VAR} references; unset variables become ''."""
    env = os.environ if environ is None else environ

    def _replace(match: re.Match[str]) -> str:
        name = match.group(1) if match.group(1) is not None else match.group(2)
        return env.get(name, "")

    return _ENV_REF_PATTERN.sub(_replace, value)


def _verify_gvk(gvk: GroupVersionKind) -> None:
    # A GVK without a group is valid.
    if not gvk.version:
        raise WatchLoadError(f"invalid GVK: {gvk}: version must not be empty")
    if not gvk.kind:
        raise WatchLoadError(f"invalid GVK: {gvk}: kind must not be empty")


def _format_validation_error(index: int, e: ValidationError) -> str:
    errors = []
    for error in e.errors():
        loc = ".".join(str(x) for x in error["loc"])
        errors.append(f"  - {loc}: {error['msg']}")
    return f"Invalid watch entry #{index}:\n" + "\n".join(errors)


def load_entries(
    raw_entries: Iterable[Any], environ: Mapping[str, str] | None = None
) -> list[Watch]:
    """Validate and normalize raw watch entries.

    Args:
        raw_entries: Parsed entries, usually straight from YAML.
        environ: Environment used for override expansion (default: os.environ).

    Returns:
        The normalized watches, in input order.

    Raises:
        WatchLoadError: On the first invalid or duplicate entry.
    """
    watches: list[Watch] = []
    seen: set[GroupVersionKind] = set()

    for index, raw in enumerate(raw_entries):
        if isinstance(raw, Watch):
            watch = raw.model_copy(deep=True)
        else:
            try:
                watch = Watch.model_validate(raw)
            except ValidationError as e:
                raise WatchLoadError(_format_validation_error(index, e)) from e

        gvk = watch.gvk
        _verify_gvk(gvk)

        if gvk in seen:
            raise WatchLoadError(f"duplicate GVK: {gvk}")
        seen.add(gvk)

        if watch.watch_dependent_resources is None:
            watch.watch_dependent_resources = True
        watch.override_values = {
            key: expand_env(value, environ) for key, value in watch.override_values.items()
        }
        watches.append(watch)

    return watches


def load_text(content: str, environ: Mapping[str, str] | None = None) -> list[Watch]:
    """Load watches from YAML text."""
    try:
        raw = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise WatchLoadError(f"Invalid YAML in watches file: {e}") from e

    if raw is None:
        return []
    if not isinstance(raw, list):
        raise WatchLoadError("Watches file must contain a YAML list")

    return load_entries(raw, environ)


def load(path: Path) -> list[Watch]:
    """Load and validate the watches file at `path`.

    Raises:
        WatchLoadError: If the file cannot be read or any entry is invalid.
    """
    if not path.exists():
        raise WatchLoadError(f"Watches file not found: {path}")

    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise WatchLoadError(f"Failed to stat watches file {path}: {e}") from e

    if file_size > MAX_WATCHES_FILE_SIZE_BYTES:
        raise WatchLoadError(
            f"Watches file exceeds maximum size of {MAX_WATCHES_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise WatchLoadError(f"could not open watches file: {e}") from e

    watches = load_text(content)
    logger.info("Loaded %d watches from %s", len(watches), path)
    return watches
