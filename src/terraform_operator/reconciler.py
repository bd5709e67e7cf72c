"""Reconciliation of one managed resource against its Terraform deployment.

Each call to Reconciler.reconcile() handles one resource-change event:

1. Fetch the resource (gone already: nothing to do)
2. Build a Manager from the spec and the watch entry's override values
3. Deletion requested: destroy the deployment, then release the finalizer
4. Otherwise refresh the deployment and create, update or confirm it

Every outcome is written to the resource's status conditions before the
call returns or raises. A raised error makes the work queue retry the
resource with backoff; a result with requeue_after schedules the next
periodic reconcile.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass

from .config import (
    DEFAULT_DELETION_WAIT_TIMEOUT_SECONDS,
    DEFAULT_RECONCILE_PERIOD_SECONDS,
    DELETION_POLL_INTERVAL_SECONDS,
    FINALIZER,
)
from .manager import Manager
from .manager_factory import ManagerFactory
from .models import ManagedResource, ObjectKey
from .status import ConditionReason, ConditionStatus, ConditionType, TerraformStatus
from .store import (
    ConflictError,
    EventRecorder,
    NotFoundError,
    ResourceStore,
    StoreError,
    retry_on_conflict,
)
from .watches import Watch

logger = logging.getLogger(__name__)

OVERRIDE_EVENT_REASON = "OverrideValuesInUse"


class DeletionTimeoutError(Exception):
    """Raised when a finalized resource does not disappear in time."""

    pass


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of a successful reconcile."""

    requeue_after: float | None = None

    @property
    def requeue(self) -> bool:
        return self.requeue_after is not None


class Reconciler:
    """Reconciles resources of one watched type as Terraform deployments.

    Collaborators are passed in explicitly so each watch entry gets its own
    reconciler with its own override values and manager factory.
    """

    def __init__(
        self,
        store: ResourceStore,
        watch: Watch,
        manager_factory: ManagerFactory,
        recorder: EventRecorder,
        reconcile_period_seconds: float = DEFAULT_RECONCILE_PERIOD_SECONDS,
        deletion_wait_timeout_seconds: float = DEFAULT_DELETION_WAIT_TIMEOUT_SECONDS,
        deletion_poll_interval_seconds: float = DELETION_POLL_INTERVAL_SECONDS,
    ) -> None:
        self._store = store
        self._watch = watch
        self._gvk = watch.gvk
        self._override_values = dict(watch.override_values)
        self._manager_factory = manager_factory
        self._recorder = recorder
        self._reconcile_period = reconcile_period_seconds
        self._deletion_wait_timeout = deletion_wait_timeout_seconds
        self._deletion_poll_interval = deletion_poll_interval_seconds

    @property
    def watch(self) -> Watch:
        return self._watch

    async def reconcile(self, key: ObjectKey) -> ReconcileResult:
        """Reconcile the resource identified by `key`.

        Raises:
            Exception: Any failure; the resource's status already reflects it.
        """
        log_extra = {
            "namespace": key.namespace,
            "resource_name": key.name,
            "apiVersion": self._gvk.api_version,
            "kind": self._gvk.kind,
        }
        logger.debug("Reconciling", extra=log_extra)

        try:
            resource = await self._store.get(self._gvk, key)
        except NotFoundError:
            return ReconcileResult()
        except StoreError as e:
            logger.error("Failed to lookup resource", extra={**log_extra, "error": str(e)})
            raise

        try:
            manager = self._manager_factory.new_manager(resource, self._override_values)
        except Exception as e:
            logger.error(
                "Failed to get configuration manager", extra={**log_extra, "error": str(e)}
            )
            raise

        log_extra["configuration"] = manager.deployment_name

        if resource.deletion_timestamp is not None:
            return await self._handle_delete(resource, manager, log_extra)

        status = manager.status
        status.set_condition(ConditionType.INITIALIZED, ConditionStatus.TRUE)

        try:
            refresh = await manager.refresh()
        except Exception as e:
            logger.error("Failed to refresh configuration", extra={**log_extra, "error": str(e)})
            status.set_condition(
                ConditionType.IRRECONCILABLE,
                ConditionStatus.TRUE,
                ConditionReason.RECONCILE_ERROR,
                str(e),
            )
            await self._update_status_after_failure(resource, status, log_extra)
            raise
        status.remove_condition(ConditionType.IRRECONCILABLE)

        if not refresh.exists:
            return await self._handle_create(resource, manager, status, log_extra)

        # Deployments created before the finalizer was added still need it
        if not resource.has_finalizer(FINALIZER):
            logger.debug("Adding finalizer", extra={**log_extra, "finalizer": FINALIZER})
            try:
                resource = await self._update_resource(
                    resource, lambda r: r.add_finalizer(FINALIZER)
                )
            except StoreError as e:
                logger.info("Failed to add delete finalizer", extra={**log_extra, "error": str(e)})
                raise

        if refresh.update_required:
            return await self._handle_update(resource, manager, status, log_extra)

        # A change that failed to apply and was then reverted leaves a stale
        # ConfigFailed behind; no apply is being attempted any more.
        status.remove_condition(ConditionType.CONFIG_FAILED)

        try:
            await manager.reconcile()
        except Exception as e:
            logger.error("Failed to reconcile configuration", extra={**log_extra, "error": str(e)})
            status.set_condition(
                ConditionType.IRRECONCILABLE,
                ConditionStatus.TRUE,
                ConditionReason.RECONCILE_ERROR,
                str(e),
            )
            await self._update_status_after_failure(resource, status, log_extra)
            raise
        status.remove_condition(ConditionType.IRRECONCILABLE)

        logger.info("Reconciled configuration", extra=log_extra)
        status.set_condition(
            ConditionType.DEPLOYED,
            ConditionStatus.TRUE,
            ConditionReason.UPDATE_SUCCESSFUL,
        )
        status.deployed_config = manager.deployed_config()
        await self._update_status(resource, status)
        return ReconcileResult(requeue_after=self._reconcile_period)

    async def _handle_create(
        self,
        resource: ManagedResource,
        manager: Manager,
        status: TerraformStatus,
        log_extra: dict[str, str],
    ) -> ReconcileResult:
        self._record_override_values(resource)

        try:
            await manager.create()
        except Exception as e:
            logger.error("Failed to create deployment", extra={**log_extra, "error": str(e)})
            status.set_condition(
                ConditionType.CONFIG_FAILED,
                ConditionStatus.TRUE,
                ConditionReason.CREATE_ERROR,
                str(e),
            )
            await self._update_status_after_failure(resource, status, log_extra)
            raise
        status.remove_condition(ConditionType.CONFIG_FAILED)

        logger.debug("Adding finalizer", extra={**log_extra, "finalizer": FINALIZER})
        try:
            resource = await self._update_resource(resource, lambda r: r.add_finalizer(FINALIZER))
        except StoreError as e:
            logger.info("Failed to add delete finalizer", extra={**log_extra, "error": str(e)})
            raise

        logger.info("Created deployment", extra=log_extra)
        status.set_condition(
            ConditionType.DEPLOYED,
            ConditionStatus.TRUE,
            ConditionReason.CREATE_SUCCESSFUL,
        )
        status.deployed_config = manager.deployed_config()
        await self._update_status(resource, status)
        return ReconcileResult(requeue_after=self._reconcile_period)

    async def _handle_update(
        self,
        resource: ManagedResource,
        manager: Manager,
        status: TerraformStatus,
        log_extra: dict[str, str],
    ) -> ReconcileResult:
        self._record_override_values(resource)

        try:
            await manager.update()
        except Exception as e:
            logger.error("Failed to update deployment", extra={**log_extra, "error": str(e)})
            status.set_condition(
                ConditionType.CONFIG_FAILED,
                ConditionStatus.TRUE,
                ConditionReason.UPDATE_ERROR,
                str(e),
            )
            await self._update_status_after_failure(resource, status, log_extra)
            raise
        status.remove_condition(ConditionType.CONFIG_FAILED)

        logger.info("Updated deployment", extra=log_extra)
        status.set_condition(
            ConditionType.DEPLOYED,
            ConditionStatus.TRUE,
            ConditionReason.UPDATE_SUCCESSFUL,
            "Configuration change updated",
        )
        status.deployed_config = manager.deployed_config()
        await self._update_status(resource, status)
        return ReconcileResult(requeue_after=self._reconcile_period)

    async def _handle_delete(
        self,
        resource: ManagedResource,
        manager: Manager,
        log_extra: dict[str, str],
    ) -> ReconcileResult:
        if not resource.has_finalizer(FINALIZER):
            logger.info("Resource is deleted, skipping reconciliation", extra=log_extra)
            return ReconcileResult()

        status = manager.status
        try:
            await manager.delete()
        except Exception as e:
            logger.error("Failed to destroy deployment", extra={**log_extra, "error": str(e)})
            status.set_condition(
                ConditionType.CONFIG_FAILED,
                ConditionStatus.TRUE,
                ConditionReason.DELETE_ERROR,
                str(e),
            )
            await self._update_status_after_failure(resource, status, log_extra)
            raise
        status.remove_condition(ConditionType.CONFIG_FAILED)

        logger.info("Deployment destroyed", extra=log_extra)
        status.set_condition(
            ConditionType.DEPLOYED,
            ConditionStatus.FALSE,
            ConditionReason.DELETE_SUCCESSFUL,
        )
        status.deployed_config = None
        try:
            resource = await self._update_status(resource, status)
        except StoreError as e:
            logger.info("Failed to update status", extra={**log_extra, "error": str(e)})
            raise

        try:
            resource = await self._update_resource(
                resource, lambda r: r.remove_finalizer(FINALIZER)
            )
        except StoreError as e:
            logger.info("Failed to remove delete finalizer", extra={**log_extra, "error": str(e)})
            raise

        # Block until the read path no longer returns the resource, so the
        # event triggered by the finalizer removal finds nothing to do.
        try:
            await self._wait_for_deletion(resource.key)
        except DeletionTimeoutError as e:
            logger.info("Failed waiting for deletion", extra={**log_extra, "error": str(e)})
            raise

        return ReconcileResult()

    def _record_override_values(self, resource: ManagedResource) -> None:
        for key, value in self._override_values.items():
            self._recorder.event(
                resource,
                "Warning",
                OVERRIDE_EVENT_REASON,
                f'Template value "{key}" overridden to "{value}" by operator\'s watches.yaml',
            )

    async def _update_resource(
        self,
        resource: ManagedResource,
        mutate: Callable[[ManagedResource], bool],
    ) -> ManagedResource:
        """Apply `mutate` and write the resource, re-reading it on conflict."""
        current = resource

        async def attempt() -> ManagedResource:
            nonlocal current
            mutate(current)
            try:
                return await self._store.update(current)
            except ConflictError:
                current = await self._store.get(self._gvk, resource.key)
                raise

        return await retry_on_conflict(attempt)

    async def _update_status(
        self, resource: ManagedResource, status: TerraformStatus
    ) -> ManagedResource:
        """Write `status` onto the resource, re-reading it on conflict."""
        current = resource

        async def attempt() -> ManagedResource:
            nonlocal current
            current.status = status.to_dict()
            try:
                return await self._store.update_status(current)
            except ConflictError:
                current = await self._store.get(self._gvk, resource.key)
                raise

        return await retry_on_conflict(attempt)

    async def _update_status_after_failure(
        self,
        resource: ManagedResource,
        status: TerraformStatus,
        log_extra: dict[str, str],
    ) -> None:
        # The original failure is what gets raised; a failed status write is only logged.
        try:
            await self._update_status(resource, status)
        except StoreError as e:
            logger.warning("Failed to update status", extra={**log_extra, "error": str(e)})

    async def _wait_for_deletion(self, key: ObjectKey) -> None:
        async def poll() -> None:
            while True:
                try:
                    await self._store.get(self._gvk, key)
                except NotFoundError:
                    return
                await asyncio.sleep(self._deletion_poll_interval)

        try:
            await asyncio.wait_for(poll(), timeout=self._deletion_wait_timeout)
        except TimeoutError as e:
            raise DeletionTimeoutError(
                f"{key} still present {self._deletion_wait_timeout}s after removing finalizer"
            ) from e
