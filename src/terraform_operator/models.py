"""Resource identity and the managed resource wrapper.

Managed resources are kept as unstructured mappings, in the same shape the
object store serves them (apiVersion, kind, metadata, spec, status). The
wrapper only adds typed accessors; it never validates the spec, which is
opaque to the operator.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class GroupVersionKind:
    """Resource-type triple identifying a schema of managed resources."""

    group: str
    version: str
    kind: str

    @property
    def api_version(self) -> str:
        """Render as apiVersion (group omitted for the core group)."""
        if not self.group:
            return self.version
        return f"{self.group}/{self.version}"

    @classmethod
    def from_api_version(cls, api_version: str, kind: str) -> GroupVersionKind:
        """Parse an apiVersion string plus kind."""
        group, _, version = api_version.rpartition("/")
        return cls(group=group, version=version, kind=kind)

    def __str__(self) -> str:
        return f"{self.api_version}, Kind={self.kind}"


@dataclass(frozen=True)
class ObjectKey:
    """Namespace/name identity of a single resource."""

    namespace: str
    name: str

    def __str__(self) -> str:
        if not self.namespace:
            return self.name
        return f"{self.namespace}/{self.name}"


class ManagedResource:
    """A custom resource instance reconciled by the operator.

    Wraps the raw object mapping. Mutating helpers (finalizers, status)
    change the wrapped mapping in place; persisting is the store's job.
    """

    def __init__(self, obj: dict[str, Any]) -> None:
        self._obj = obj
        self._obj.setdefault("metadata", {})

    @classmethod
    def new(
        cls,
        gvk: GroupVersionKind,
        namespace: str,
        name: str,
        spec: Any = None,
    ) -> ManagedResource:
        """Build a fresh resource with empty status and no finalizers."""
        return cls(
            {
                "apiVersion": gvk.api_version,
                "kind": gvk.kind,
                "metadata": {"namespace": namespace, "name": name},
                "spec": {} if spec is None else spec,
            }
        )

    @property
    def object(self) -> dict[str, Any]:
        """The underlying unstructured mapping."""
        return self._obj

    @property
    def metadata(self) -> dict[str, Any]:
        return self._obj["metadata"]

    @property
    def gvk(self) -> GroupVersionKind:
        return GroupVersionKind.from_api_version(
            self._obj.get("apiVersion", ""), self._obj.get("kind", "")
        )

    @property
    def name(self) -> str:
        return self.metadata.get("name", "")

    @property
    def namespace(self) -> str:
        return self.metadata.get("namespace", "")

    @property
    def key(self) -> ObjectKey:
        return ObjectKey(namespace=self.namespace, name=self.name)

    @property
    def resource_version(self) -> str | None:
        return self.metadata.get("resourceVersion")

    @property
    def deletion_timestamp(self) -> str | None:
        return self.metadata.get("deletionTimestamp")

    @property
    def spec(self) -> Any:
        """The desired spec exactly as stored (may be any type)."""
        return self._obj.get("spec")

    @property
    def status(self) -> Any:
        """The raw status block, or None when absent."""
        return self._obj.get("status")

    @status.setter
    def status(self, value: dict[str, Any]) -> None:
        self._obj["status"] = value

    @property
    def finalizers(self) -> list[str]:
        return list(self.metadata.get("finalizers") or [])

    def has_finalizer(self, finalizer: str) -> bool:
        return finalizer in self.finalizers

    def add_finalizer(self, finalizer: str) -> bool:
        """Add a finalizer if missing. Returns True if the list changed."""
        finalizers = self.finalizers
        if finalizer in finalizers:
            return False
        finalizers.append(finalizer)
        self.metadata["finalizers"] = finalizers
        return True

    def remove_finalizer(self, finalizer: str) -> bool:
        """Remove every occurrence of a finalizer. Returns True if the list changed."""
        finalizers = self.finalizers
        if finalizer not in finalizers:
            return False
        self.metadata["finalizers"] = [f for f in finalizers if f != finalizer]
        return True

    def deepcopy(self) -> ManagedResource:
        return ManagedResource(copy.deepcopy(self._obj))

    def to_dict(self) -> dict[str, Any]:
        return copy.deepcopy(self._obj)

    def __repr__(self) -> str:
        return f"ManagedResource({self.gvk.kind} {self.key})"
