"""Event dispatch: a bounded pool of workers fed by a work queue.

The queue holds resource keys rather than events. A key is queued at most
once, and a key that is being reconciled is never handed to a second
worker; if it changes meanwhile it is queued again once the running
reconcile finishes. Different keys are reconciled in parallel, up to
max_concurrent_reconciles at a time.

Failures are retried with per-key exponential backoff. Successful
reconciles that ask for it are requeued after the reconcile period.
"""

from __future__ import annotations

import asyncio
import logging

from .config import (
    DEFAULT_MAX_CONCURRENT_RECONCILES,
    FAILURE_BACKOFF_BASE_SECONDS,
    FAILURE_BACKOFF_MAX_SECONDS,
)
from .models import ObjectKey
from .reconciler import Reconciler
from .store import ResourceStore, StoreError

logger = logging.getLogger(__name__)

# Delay before re-establishing a broken watch stream
WATCH_RETRY_SECONDS = 1.0


class WorkQueue:
    """Deduplicating queue of keys with delayed and rate-limited adds."""

    def __init__(
        self,
        backoff_base_seconds: float = FAILURE_BACKOFF_BASE_SECONDS,
        backoff_max_seconds: float = FAILURE_BACKOFF_MAX_SECONDS,
    ) -> None:
        self._queue: asyncio.Queue[ObjectKey] = asyncio.Queue()
        self._dirty: set[ObjectKey] = set()
        self._processing: set[ObjectKey] = set()
        self._failures: dict[ObjectKey, int] = {}
        self._timers: set[asyncio.TimerHandle] = set()
        self._backoff_base = backoff_base_seconds
        self._backoff_max = backoff_max_seconds
        self._shutting_down = False

    def __len__(self) -> int:
        return self._queue.qsize()

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def add(self, key: ObjectKey) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            # Picked up again by done()
            return
        self._queue.put_nowait(key)

    def add_after(self, key: ObjectKey, delay_seconds: float) -> None:
        if self._shutting_down:
            return
        if delay_seconds <= 0:
            self.add(key)
            return

        loop = asyncio.get_running_loop()
        handle: asyncio.TimerHandle | None = None

        def fire() -> None:
            if handle is not None:
                self._timers.discard(handle)
            self.add(key)

        handle = loop.call_later(delay_seconds, fire)
        self._timers.add(handle)

    def backoff_for(self, key: ObjectKey) -> float:
        failures = self._failures.get(key, 0)
        return min(self._backoff_base * (2**failures), self._backoff_max)

    def add_rate_limited(self, key: ObjectKey) -> float:
        """Requeue after the key's current backoff; returns the delay used."""
        delay = self.backoff_for(key)
        self._failures[key] = self._failures.get(key, 0) + 1
        self.add_after(key, delay)
        return delay

    def forget(self, key: ObjectKey) -> None:
        self._failures.pop(key, None)

    def num_requeues(self, key: ObjectKey) -> int:
        return self._failures.get(key, 0)

    async def get(self) -> ObjectKey:
        key = await self._queue.get()
        self._dirty.discard(key)
        self._processing.add(key)
        return key

    def done(self, key: ObjectKey) -> None:
        self._processing.discard(key)
        if key in self._dirty and not self._shutting_down:
            self._queue.put_nowait(key)

    def shutdown(self) -> None:
        self._shutting_down = True
        for handle in self._timers:
            handle.cancel()
        self._timers.clear()


class Controller:
    """Runs one Reconciler for one watched resource type."""

    def __init__(
        self,
        name: str,
        store: ResourceStore,
        reconciler: Reconciler,
        namespace: str = "",
        max_concurrent_reconciles: int = DEFAULT_MAX_CONCURRENT_RECONCILES,
        queue: WorkQueue | None = None,
    ) -> None:
        if max_concurrent_reconciles < 1:
            raise ValueError("max_concurrent_reconciles must be at least 1")
        self._name = name
        self._store = store
        self._reconciler = reconciler
        self._namespace = namespace
        self._max_concurrent = max_concurrent_reconciles
        self._queue = queue or WorkQueue()
        self._shutdown_event = asyncio.Event()

    @property
    def name(self) -> str:
        return self._name

    @property
    def queue(self) -> WorkQueue:
        return self._queue

    def enqueue(self, key: ObjectKey) -> None:
        self._queue.add(key)

    async def run(self) -> None:
        """Watch, dispatch and reconcile until shutdown() is called."""
        gvk = self._reconciler.watch.gvk
        logger.info(
            "Watching resource",
            extra={
                "controller": self._name,
                "apiVersion": gvk.api_version,
                "kind": gvk.kind,
                "namespace": self._namespace or "<all>",
                "max_concurrent_reconciles": self._max_concurrent,
            },
        )

        tasks = [
            asyncio.create_task(self._worker(), name=f"{self._name}-worker-{i}")
            for i in range(self._max_concurrent)
        ]
        tasks.append(asyncio.create_task(self._watch_events(), name=f"{self._name}-watch"))

        try:
            await self._shutdown_event.wait()
        finally:
            self._queue.shutdown()
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        logger.info("Controller stopped", extra={"controller": self._name})

    def shutdown(self) -> None:
        """Signal the controller to stop."""
        logger.info("Shutdown requested", extra={"controller": self._name})
        self._shutdown_event.set()

    async def _watch_events(self) -> None:
        gvk = self._reconciler.watch.gvk
        while not self._shutdown_event.is_set():
            try:
                async for event in self._store.watch(gvk, self._namespace):
                    self._queue.add(event.key)
            except StoreError as e:
                logger.warning(
                    "Watch stream failed, restarting",
                    extra={"controller": self._name, "error": str(e)},
                )
            await asyncio.sleep(WATCH_RETRY_SECONDS)

    async def _worker(self) -> None:
        while True:
            key = await self._queue.get()
            try:
                await self.process(key)
            finally:
                self._queue.done(key)

    async def process(self, key: ObjectKey) -> None:
        """Reconcile one key and schedule its next run."""
        try:
            result = await self._reconciler.reconcile(key)
        except Exception as e:
            delay = self._queue.add_rate_limited(key)
            logger.error(
                "Reconciler error",
                extra={
                    "controller": self._name,
                    "resource": str(key),
                    "error": str(e),
                    "error_type": type(e).__name__,
                    "retry_in_seconds": delay,
                },
            )
            return

        self._queue.forget(key)
        if result.requeue_after is not None:
            self._queue.add_after(key, result.requeue_after)
