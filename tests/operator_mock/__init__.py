"""Test doubles for the operator's external collaborators.

- InMemoryStore: object store with conflict detection and finalizer-aware deletion
- FakeManagerFactory / ManagerScript: scripted deployment lifecycle
- RecordingEventRecorder: captures emitted events
- FakeTerraform: a scripted terraform executable for the real subprocess path

Usage:
    from operator_mock import FakeManagerFactory, InMemoryStore

    store = InMemoryStore()
    store.create(resource)
    factory = FakeManagerFactory()
    reconciler = Reconciler(store, watch, factory, RecordingEventRecorder())
    await reconciler.reconcile(resource.key)

    assert factory.script.calls == ["refresh", "create"]
"""

from .manager import (
    FakeManager,
    FakeManagerFactory,
    ManagerScript,
    RecordedEvent,
    RecordingEventRecorder,
)
from .store import InMemoryStore
from .terraform import FakeTerraform

__all__ = [
    "FakeManager",
    "FakeManagerFactory",
    "FakeTerraform",
    "InMemoryStore",
    "ManagerScript",
    "RecordedEvent",
    "RecordingEventRecorder",
]
