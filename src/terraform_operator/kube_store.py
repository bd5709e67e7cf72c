"""ResourceStore backed by the Kubernetes API server.

Managed resources are custom resources served through the custom objects
API. The kubernetes client is synchronous: request calls run in the
default executor, watch streams on their own daemon threads.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import AsyncIterator, Callable
from typing import Any, TypeVar

from kubernetes import client, config, watch
from kubernetes.client import ApiException
from kubernetes.config import ConfigException

from .models import GroupVersionKind, ManagedResource, ObjectKey
from .store import (
    ConflictError,
    EventType,
    NotFoundError,
    ResourceStore,
    StoreError,
    WatchEvent,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Seconds before the API server closes a watch; the controller re-opens it
WATCH_TIMEOUT_SECONDS = 300


def load_kube_config() -> None:
    """Use the in-cluster service account, falling back to ~/.kube/config."""
    try:
        config.load_incluster_config()
        logger.info("Using in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        logger.info("Using local kubeconfig")


def default_plural(kind: str) -> str:
    """Lower-case English plural of a kind, as CRD generators produce it."""
    name = kind.lower()
    if name.endswith("y") and len(name) > 1 and name[-2] not in "aeiou":
        return name[:-1] + "ies"
    if name.endswith(("s", "x", "z", "ch", "sh")):
        return name + "es"
    return name + "s"


def _translate(e: ApiException, what: str) -> StoreError:
    match e.status:
        case 404:
            return NotFoundError(f"{what} not found")
        case 409:
            return ConflictError(f"{what}: {e.reason}")
        case _:
            return StoreError(f"{what}: API error {e.status} {e.reason}")


class KubernetesStore(ResourceStore):
    """Reads and writes custom resources through the custom objects API."""

    def __init__(
        self,
        api: client.CustomObjectsApi | None = None,
        plurals: dict[GroupVersionKind, str] | None = None,
    ) -> None:
        self._api = api or client.CustomObjectsApi()
        self._plurals = dict(plurals or {})

    def _plural(self, gvk: GroupVersionKind) -> str:
        return self._plurals.get(gvk) or default_plural(gvk.kind)

    async def _call(self, what: str, fn: Callable[..., T], *args: Any) -> T:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, fn, *args)
        except ApiException as e:
            raise _translate(e, what) from e

    async def get(self, gvk: GroupVersionKind, key: ObjectKey) -> ManagedResource:
        plural = self._plural(gvk)
        if key.namespace:
            obj = await self._call(
                f"{gvk.kind} {key}",
                self._api.get_namespaced_custom_object,
                gvk.group,
                gvk.version,
                key.namespace,
                plural,
                key.name,
            )
        else:
            obj = await self._call(
                f"{gvk.kind} {key}",
                self._api.get_cluster_custom_object,
                gvk.group,
                gvk.version,
                plural,
                key.name,
            )
        return ManagedResource(obj)

    async def _replace(self, resource: ManagedResource, subresource: str) -> ManagedResource:
        gvk = resource.gvk
        plural = self._plural(gvk)
        what = f"{gvk.kind} {resource.key}"
        if resource.namespace:
            fn = (
                self._api.replace_namespaced_custom_object_status
                if subresource == "status"
                else self._api.replace_namespaced_custom_object
            )
            obj = await self._call(
                what,
                fn,
                gvk.group,
                gvk.version,
                resource.namespace,
                plural,
                resource.name,
                resource.object,
            )
        else:
            fn = (
                self._api.replace_cluster_custom_object_status
                if subresource == "status"
                else self._api.replace_cluster_custom_object
            )
            obj = await self._call(
                what, fn, gvk.group, gvk.version, plural, resource.name, resource.object
            )
        return ManagedResource(obj)

    async def update(self, resource: ManagedResource) -> ManagedResource:
        return await self._replace(resource, "")

    async def update_status(self, resource: ManagedResource) -> ManagedResource:
        return await self._replace(resource, "status")
    async def watch(
        self, gvk: GroupVersionKind, namespace: str = ""
    ) -> AsyncIterator[WatchEvent]:
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[WatchEvent | StoreError | None] = asyncio.Queue()
        stream = watch.Watch()
        stopped = threading.Event()
        plural = self._plural(gvk)

        if namespace:
            list_fn: Callable[..., Any] = self._api.list_namespaced_custom_object
            args: tuple[Any, ...] = (gvk.group, gvk.version, namespace, plural)
        else:
            list_fn = self._api.list_cluster_custom_object
            args = (gvk.group, gvk.version, plural)

        def post(item: WatchEvent | StoreError | None) -> None:
            if stopped.is_set():
                return
            try:
                loop.call_soon_threadsafe(queue.put_nowait, item)
            except RuntimeError:
                # Event loop already closed; nobody is listening any more
                stopped.set()

        def pump() -> None:
            try:
                for raw in stream.stream(list_fn, *args, timeout_seconds=WATCH_TIMEOUT_SECONDS):
                    if stopped.is_set():
                        return
                    try:
                        event_type = EventType(raw["type"])
                    except ValueError:
                        continue  # BOOKMARK / ERROR
                    metadata = raw["object"].get("metadata", {})
                    post(
                        WatchEvent(
                            type=event_type,
                            key=ObjectKey(
                                namespace=metadata.get("namespace", ""),
                                name=metadata.get("name", ""),
                            ),
                        )
                    )
            except ApiException as e:
                post(_translate(e, f"watch {gvk}"))
            except Exception as e:
                # Connection errors surface from urllib3 mid-stream
                post(StoreError(f"watch {gvk}: {e}"))
            finally:
                post(None)

        # An idle stream blocks in a socket read until the server timeout;
        # shutdown must never join this thread.
        thread = threading.Thread(target=pump, name=f"watch-{gvk.kind.lower()}", daemon=True)
        thread.start()
        try:
            while True:
                item = await queue.get()
                if item is None:
                    return
                if isinstance(item, StoreError):
                    raise item
                yield item
        finally:
            stopped.set()
            stream.stop()
