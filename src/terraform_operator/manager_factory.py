"""Builds Managers bound to individual managed resources.

The factory decouples the reconciler from the backend that actually
provisions deployments. Each watch entry gets its own factory, so the
backend is selected per resource type.
"""

from __future__ import annotations

import copy
from abc import ABC, abstractmethod
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from .manager import Manager, TerraformManager
from .models import ManagedResource
from .status import status_for
from .terraform import TerraformCLI


class SpecError(Exception):
    """Raised when a resource cannot be turned into a deployment configuration."""

    pass


class ManagerFactory(ABC):
    """Creates Managers specific to one managed resource."""

    @abstractmethod
    def new_manager(
        self, resource: ManagedResource, override_values: Mapping[str, str]
    ) -> Manager: ...


def merge_maps(base: Mapping[str, Any], overrides: Mapping[str, Any]) -> dict[str, Any]:
    """Deep-merge `overrides` over `base` without mutating either.

    Nested mappings present on both sides are merged recursively; any
    other collision is won by the override.
    """
    out: dict[str, Any] = {key: copy.deepcopy(value) for key, value in base.items()}
    for key, value in overrides.items():
        existing = out.get(key)
        if isinstance(value, Mapping) and isinstance(existing, Mapping):
            out[key] = merge_maps(existing, value)
        else:
            out[key] = copy.deepcopy(value)
    return out


def parse_overrides(override_values: Mapping[str, str]) -> dict[str, Any]:
    """Expand dotted override keys into nested mappings.

    {"db.size": "small"} becomes {"db": {"size": "small"}}. Values stay
    strings.
    """
    out: dict[str, Any] = {}
    for key, value in override_values.items():
        parts = key.split(".")
        if any(not part for part in parts):
            raise SpecError(f"failed to parse override values: invalid key {key!r}")
        node = out
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        node[parts[-1]] = value
    return out


def get_deployment_name(resource: ManagedResource) -> str:
    """The deployment is named after the resource."""
    return resource.name


class TerraformManagerFactory(ManagerFactory):
    """Factory for Terraform-backed managers.

    Args:
        template_dir: Terraform configuration shared by all resources of the type.
        work_dir: Root under which each deployment gets <namespace>/<name>.
        terraform: CLI wrapper used by every manager.
    """

    def __init__(self, template_dir: Path, work_dir: Path, terraform: TerraformCLI) -> None:
        self._template_dir = template_dir
        self._work_dir = work_dir
        self._terraform = terraform

    @property
    def template_dir(self) -> Path:
        return self._template_dir

    def new_manager(
        self, resource: ManagedResource, override_values: Mapping[str, str]
    ) -> TerraformManager:
        deployment_name = get_deployment_name(resource)
        if not deployment_name:
            raise SpecError("failed to get Terraform deployment name: resource has no name")

        spec = resource.spec
        if not isinstance(spec, Mapping) or not all(isinstance(k, str) for k in spec):
            raise SpecError(
                f"failed to get spec: expected a string-keyed mapping, "
                f"got {type(spec).__name__}"
            )

        values = merge_maps(spec, parse_overrides(override_values))
        namespace = resource.namespace

        return TerraformManager(
            deployment_name=deployment_name,
            namespace=namespace,
            values=values,
            status=status_for(resource),
            template_dir=self._template_dir,
            work_dir=self._work_dir / (namespace or "_cluster") / deployment_name,
            terraform=self._terraform,
        )
