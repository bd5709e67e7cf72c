"""Object store interface used by the reconciler.

The store is the only shared mutable state: every write is checked against
the resourceVersion the writer last saw, and a stale write fails with
ConflictError instead of overwriting someone else's change.
"""

from __future__ import annotations

import asyncio
import logging
import random
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import TypeVar

from .config import (
    CONFLICT_RETRY_BASE_SECONDS,
    CONFLICT_RETRY_FACTOR,
    CONFLICT_RETRY_JITTER,
    CONFLICT_RETRY_STEPS,
)
from .models import GroupVersionKind, ManagedResource, ObjectKey

logger = logging.getLogger(__name__)

T = TypeVar("T")


class StoreError(Exception):
    """Base class for object store failures."""

    pass


class NotFoundError(StoreError):
    """The requested resource does not exist."""

    pass


class ConflictError(StoreError):
    """A write was based on a stale resourceVersion."""

    pass


class EventType(str, Enum):
    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


@dataclass(frozen=True)
class WatchEvent:
    """A change notification for one resource."""

    type: EventType
    key: ObjectKey


class ResourceStore(ABC):
    """Get, update and watch managed resources with conflict detection."""

    @abstractmethod
    async def get(self, gvk: GroupVersionKind, key: ObjectKey) -> ManagedResource:
        """Fetch the latest version of a resource.

        Raises:
            NotFoundError: If the resource does not exist.
        """

    @abstractmethod
    async def update(self, resource: ManagedResource) -> ManagedResource:
        """Write metadata and spec; status changes are ignored.

        Raises:
            ConflictError: If the resource changed since it was read.
            NotFoundError: If the resource no longer exists.
        """

    @abstractmethod
    async def update_status(self, resource: ManagedResource) -> ManagedResource:
        """Write the status subresource only.

        Raises:
            ConflictError: If the resource changed since it was read.
            NotFoundError: If the resource no longer exists.
        """

    @abstractmethod
    def watch(self, gvk: GroupVersionKind, namespace: str = "") -> AsyncIterator[WatchEvent]:
        """Stream change events for a resource type (all namespaces when empty)."""


class EventRecorder(ABC):
    """Records user-visible events against a resource."""

    @abstractmethod
    def event(
        self, resource: ManagedResource, event_type: str, reason: str, message: str
    ) -> None: ...


class LoggingEventRecorder(EventRecorder):
    """Event recorder that only writes to the operator log."""

    def __init__(self, component: str) -> None:
        self._component = component

    def event(
        self, resource: ManagedResource, event_type: str, reason: str, message: str
    ) -> None:
        level = logging.WARNING if event_type == "Warning" else logging.INFO
        logger.log(
            level,
            message,
            extra={
                "component": self._component,
                "resource": str(resource.key),
                "kind": resource.gvk.kind,
                "reason": reason,
            },
        )


async def retry_on_conflict(
    operation: Callable[[], Awaitable[T]],
    *,
    steps: int = CONFLICT_RETRY_STEPS,
    base_seconds: float = CONFLICT_RETRY_BASE_SECONDS,
    factor: float = CONFLICT_RETRY_FACTOR,
    jitter: float = CONFLICT_RETRY_JITTER,
) -> T:
    """Run a store write, retrying with exponential backoff on conflicts.

    Any other error is raised immediately. The last ConflictError is
    raised once all attempts are used.
    """
    delay = base_seconds
    for attempt in range(1, steps + 1):
        try:
            return await operation()
        except ConflictError as e:
            if attempt >= steps:
                raise
            wait_time = delay + random.uniform(0, delay * jitter)
            logger.debug(
                "Write conflict, retrying",
                extra={
                    "attempt": attempt,
                    "max_attempts": steps,
                    "wait_seconds": wait_time,
                    "error": str(e),
                },
            )
            await asyncio.sleep(wait_time)
            delay *= factor

    raise ValueError(f"steps must be at least 1: {steps}")
