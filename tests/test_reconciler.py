"""Tests for the reconcile state machine."""

from typing import Any

import pytest

from operator_mock import (
    FakeManagerFactory,
    InMemoryStore,
    ManagerScript,
    RecordingEventRecorder,
)
from terraform_operator.config import FINALIZER
from terraform_operator.manager_factory import SpecError
from terraform_operator.models import GroupVersionKind, ManagedResource, ObjectKey
from terraform_operator.reconciler import (
    OVERRIDE_EVENT_REASON,
    DeletionTimeoutError,
    Reconciler,
    ReconcileResult,
)
from terraform_operator.status import (
    Condition,
    ConditionReason,
    ConditionStatus,
    ConditionType,
    TerraformStatus,
    status_for,
)
from terraform_operator.store import ConflictError, StoreError
from terraform_operator.terraform import ToolInvocationError
from terraform_operator.watches import Watch

GVK = GroupVersionKind("infra.example.com", "v1alpha1", "Bucket")
KEY = ObjectKey("team-a", "logs")
PERIOD = 60


def make_watch(override_values: dict[str, str] | None = None) -> Watch:
    return Watch(
        group=GVK.group,
        version=GVK.version,
        kind=GVK.kind,
        template_dir="templates/bucket",
        watch_dependent_resources=True,
        override_values=override_values or {},
    )


class Harness:
    """A reconciler wired to in-memory collaborators."""

    def __init__(self, override_values: dict[str, str] | None = None) -> None:
        self.store = InMemoryStore()
        self.factory = FakeManagerFactory()
        self.recorder = RecordingEventRecorder()
        self.reconciler = Reconciler(
            self.store,
            make_watch(override_values),
            self.factory,
            self.recorder,
            reconcile_period_seconds=PERIOD,
            deletion_wait_timeout_seconds=0.2,
            deletion_poll_interval_seconds=0.01,
        )

    @property
    def script(self) -> ManagerScript:
        return self.factory.script

    def create(
        self,
        spec: Any = None,
        finalizers: list[str] | None = None,
        status: TerraformStatus | None = None,
    ) -> ManagedResource:
        resource = ManagedResource.new(GVK, KEY.namespace, KEY.name, spec=spec)
        if finalizers:
            resource.metadata["finalizers"] = list(finalizers)
        if status is not None:
            resource.status = status.to_dict()
        return self.store.create(resource)

    def current(self) -> ManagedResource:
        resource = self.store.peek(GVK, KEY)
        assert resource is not None
        return resource

    def status(self) -> TerraformStatus:
        return status_for(self.current())

    async def reconcile(self) -> ReconcileResult:
        return await self.reconciler.reconcile(KEY)


def condition(status: TerraformStatus, condition_type: ConditionType) -> Condition | None:
    return status.get_condition(condition_type)


def assert_condition(
    status: TerraformStatus,
    condition_type: ConditionType,
    value: ConditionStatus,
    reason: ConditionReason | None = None,
) -> None:
    found = status.get_condition(condition_type)
    assert found is not None, f"{condition_type.value} missing"
    assert found.status == value
    if reason is not None:
        assert found.reason == reason.value


@pytest.fixture
def harness() -> Harness:
    return Harness()


class TestCreate:
    """A resource with no deployment behind it gets one."""

    @pytest.mark.asyncio
    async def test_create(self, harness: Harness) -> None:
        harness.create(spec={"region": "eu-west-1"})

        result = await harness.reconcile()

        assert harness.script.calls == ["refresh", "create"]
        assert result.requeue_after == PERIOD
        resource = harness.current()
        assert resource.has_finalizer(FINALIZER)
        status = status_for(resource)
        assert_condition(status, ConditionType.INITIALIZED, ConditionStatus.TRUE)
        assert_condition(
            status, ConditionType.DEPLOYED, ConditionStatus.TRUE, ConditionReason.CREATE_SUCCESSFUL
        )
        assert status.deployed_config is not None
        assert status.deployed_config.name == "logs"

    @pytest.mark.asyncio
    async def test_create_failure(self, harness: Harness) -> None:
        harness.create()
        harness.script.fail("create", "Error: bucket name taken")

        with pytest.raises(ToolInvocationError):
            await harness.reconcile()

        resource = harness.current()
        assert not resource.has_finalizer(FINALIZER)
        status = status_for(resource)
        assert_condition(
            status, ConditionType.CONFIG_FAILED, ConditionStatus.TRUE, ConditionReason.CREATE_ERROR
        )
        failed = condition(status, ConditionType.CONFIG_FAILED)
        assert "bucket name taken" in failed.message
        assert condition(status, ConditionType.DEPLOYED) is None

    @pytest.mark.asyncio
    async def test_create_after_failure_clears_config_failed(self, harness: Harness) -> None:
        harness.create()
        harness.script.fail("create")
        with pytest.raises(ToolInvocationError):
            await harness.reconcile()

        harness.script.create_error = None
        await harness.reconcile()

        status = harness.status()
        assert condition(status, ConditionType.CONFIG_FAILED) is None
        assert_condition(status, ConditionType.DEPLOYED, ConditionStatus.TRUE)

    @pytest.mark.asyncio
    async def test_override_events_emitted(self) -> None:
        harness = Harness(override_values={"region": "eu-west-1"})
        harness.create(spec={"region": "us-east-1"})

        await harness.reconcile()

        assert len(harness.recorder.events) == 1
        event = harness.recorder.events[0]
        assert event.event_type == "Warning"
        assert event.reason == OVERRIDE_EVENT_REASON
        assert event.message == (
            'Template value "region" overridden to "eu-west-1" by operator\'s watches.yaml'
        )
        assert harness.factory.managers[0].values == {"region": "eu-west-1"}

    @pytest.mark.asyncio
    async def test_no_events_without_overrides(self, harness: Harness) -> None:
        harness.create()

        await harness.reconcile()

        assert harness.recorder.events == []


class TestUpdate:
    @pytest.mark.asyncio
    async def test_update(self, harness: Harness) -> None:
        failed = TerraformStatus().set_condition(
            ConditionType.CONFIG_FAILED, ConditionStatus.TRUE, ConditionReason.UPDATE_ERROR
        )
        harness.create(finalizers=[FINALIZER], status=failed)
        harness.script.exists = True
        harness.script.update_required = True

        result = await harness.reconcile()

        assert harness.script.calls == ["refresh", "update"]
        assert result.requeue_after == PERIOD
        status = harness.status()
        assert condition(status, ConditionType.CONFIG_FAILED) is None
        assert_condition(
            status, ConditionType.DEPLOYED, ConditionStatus.TRUE, ConditionReason.UPDATE_SUCCESSFUL
        )
        assert condition(status, ConditionType.DEPLOYED).message == "Configuration change updated"

    @pytest.mark.asyncio
    async def test_update_failure(self, harness: Harness) -> None:
        harness.create(finalizers=[FINALIZER])
        harness.script.exists = True
        harness.script.update_required = True
        harness.script.fail("update", "Error: quota exceeded")

        with pytest.raises(ToolInvocationError):
            await harness.reconcile()

        assert_condition(
            harness.status(),
            ConditionType.CONFIG_FAILED,
            ConditionStatus.TRUE,
            ConditionReason.UPDATE_ERROR,
        )

    @pytest.mark.asyncio
    async def test_update_emits_override_events(self) -> None:
        harness = Harness(override_values={"tags.env": "prod"})
        harness.create(finalizers=[FINALIZER])
        harness.script.exists = True
        harness.script.update_required = True

        await harness.reconcile()

        assert [e.reason for e in harness.recorder.events] == [OVERRIDE_EVENT_REASON]


class TestSteadyState:
    @pytest.mark.asyncio
    async def test_no_changes(self, harness: Harness) -> None:
        harness.create(finalizers=[FINALIZER])
        harness.script.exists = True

        result = await harness.reconcile()

        assert harness.script.calls == ["refresh", "reconcile"]
        assert result.requeue_after == PERIOD
        assert_condition(
            harness.status(),
            ConditionType.DEPLOYED,
            ConditionStatus.TRUE,
            ConditionReason.UPDATE_SUCCESSFUL,
        )

    @pytest.mark.asyncio
    async def test_reverted_change_clears_config_failed(self, harness: Harness) -> None:
        """A failed change that was reverted must not stay reported as failed."""
        failed = TerraformStatus().set_condition(
            ConditionType.CONFIG_FAILED,
            ConditionStatus.TRUE,
            ConditionReason.UPDATE_ERROR,
            "Error: quota exceeded",
        )
        harness.create(finalizers=[FINALIZER], status=failed)
        harness.script.exists = True

        await harness.reconcile()

        assert "update" not in harness.script.calls
        assert condition(harness.status(), ConditionType.CONFIG_FAILED) is None

    @pytest.mark.asyncio
    async def test_missing_finalizer_added(self, harness: Harness) -> None:
        harness.create()
        harness.script.exists = True

        await harness.reconcile()

        assert harness.current().has_finalizer(FINALIZER)
        assert "create" not in harness.script.calls

    @pytest.mark.asyncio
    async def test_reconcile_failure(self, harness: Harness) -> None:
        harness.create(finalizers=[FINALIZER])
        harness.script.exists = True
        harness.script.reconcile_error = RuntimeError("drift correction failed")

        with pytest.raises(RuntimeError):
            await harness.reconcile()

        assert_condition(
            harness.status(),
            ConditionType.IRRECONCILABLE,
            ConditionStatus.TRUE,
            ConditionReason.RECONCILE_ERROR,
        )

    @pytest.mark.asyncio
    async def test_repeated_reconcile_is_stable(self, harness: Harness) -> None:
        harness.create(finalizers=[FINALIZER])
        harness.script.exists = True

        await harness.reconcile()
        first = harness.status()
        await harness.reconcile()

        assert harness.status() == first


class TestRefreshFailure:
    @pytest.mark.asyncio
    async def test_irreconcilable(self, harness: Harness) -> None:
        deployed = TerraformStatus().set_condition(
            ConditionType.DEPLOYED, ConditionStatus.TRUE, ConditionReason.CREATE_SUCCESSFUL
        )
        harness.create(finalizers=[FINALIZER], status=deployed)
        harness.script.fail("refresh", "Error: Unsupported argument")

        with pytest.raises(ToolInvocationError):
            await harness.reconcile()

        status = harness.status()
        assert_condition(
            status,
            ConditionType.IRRECONCILABLE,
            ConditionStatus.TRUE,
            ConditionReason.RECONCILE_ERROR,
        )
        assert "Unsupported argument" in condition(status, ConditionType.IRRECONCILABLE).message
        assert condition(status, ConditionType.DEPLOYED) == condition(
            deployed, ConditionType.DEPLOYED
        )
        assert harness.script.calls == ["refresh"]

    @pytest.mark.asyncio
    async def test_recovery_clears_irreconcilable(self, harness: Harness) -> None:
        harness.create(finalizers=[FINALIZER])
        harness.script.exists = True
        harness.script.fail("refresh")
        with pytest.raises(ToolInvocationError):
            await harness.reconcile()

        harness.script.refresh_error = None
        await harness.reconcile()

        assert condition(harness.status(), ConditionType.IRRECONCILABLE) is None


class TestDelete:
    @pytest.mark.asyncio
    async def test_delete(self, harness: Harness) -> None:
        harness.create(finalizers=[FINALIZER])
        harness.script.exists = True
        await harness.reconcile()
        harness.store.delete(GVK, KEY)

        result = await harness.reconcile()

        assert result == ReconcileResult()
        assert harness.script.calls[-1] == "delete"
        assert harness.store.peek(GVK, KEY) is None

    @pytest.mark.asyncio
    async def test_deletion_wait_timeout(self, harness: Harness) -> None:
        harness.store.erase_on_finalize = False
        harness.create(finalizers=[FINALIZER])
        harness.store.delete(GVK, KEY)

        with pytest.raises(DeletionTimeoutError):
            await harness.reconcile()

        assert harness.script.calls == ["delete"]
        assert not harness.current().has_finalizer(FINALIZER)

    @pytest.mark.asyncio
    async def test_delete_writes_status_before_releasing(self, harness: Harness) -> None:
        harness.create(finalizers=[FINALIZER, "other.example.com/cleanup"])
        harness.store.delete(GVK, KEY)

        with pytest.raises(DeletionTimeoutError):
            await harness.reconcile()

        resource = harness.current()
        assert resource.finalizers == ["other.example.com/cleanup"]
        status = status_for(resource)
        assert status.deployed_config is None
        assert_condition(
            status, ConditionType.DEPLOYED, ConditionStatus.FALSE, ConditionReason.DELETE_SUCCESSFUL
        )

    @pytest.mark.asyncio
    async def test_delete_failure_keeps_finalizer(self, harness: Harness) -> None:
        harness.create(finalizers=[FINALIZER])
        harness.store.delete(GVK, KEY)
        harness.script.fail("delete", "Error: resource is in use")

        with pytest.raises(ToolInvocationError):
            await harness.reconcile()

        resource = harness.current()
        assert resource.has_finalizer(FINALIZER)
        assert_condition(
            status_for(resource),
            ConditionType.CONFIG_FAILED,
            ConditionStatus.TRUE,
            ConditionReason.DELETE_ERROR,
        )

    @pytest.mark.asyncio
    async def test_deleting_without_finalizer_is_noop(self, harness: Harness) -> None:
        harness.create(finalizers=["other.example.com/cleanup"])
        harness.store.delete(GVK, KEY)
        writes = harness.store.update_calls + harness.store.status_update_calls

        result = await harness.reconcile()

        assert result == ReconcileResult()
        assert harness.script.calls == []
        assert harness.store.update_calls + harness.store.status_update_calls == writes

    @pytest.mark.asyncio
    async def test_deletion_never_creates(self, harness: Harness) -> None:
        """A resource being deleted is never provisioned, even if absent."""
        harness.create(finalizers=[FINALIZER])
        harness.store.delete(GVK, KEY)

        await harness.reconcile()

        assert "create" not in harness.script.calls
        assert "refresh" not in harness.script.calls


class TestStoreInteraction:
    @pytest.mark.asyncio
    async def test_not_found_is_noop(self, harness: Harness) -> None:
        result = await harness.reconcile()

        assert result == ReconcileResult()
        assert result.requeue is False
        assert harness.factory.managers == []

    @pytest.mark.asyncio
    async def test_lookup_failure_raises(self, harness: Harness) -> None:
        harness.create()
        harness.store.fail_gets_with = StoreError("connection refused")

        with pytest.raises(StoreError):
            await harness.reconcile()

    @pytest.mark.asyncio
    async def test_conflicts_are_retried(self, harness: Harness) -> None:
        harness.create()
        harness.store.conflicts_to_inject = 2

        await harness.reconcile()

        assert harness.current().has_finalizer(FINALIZER)
        assert_condition(harness.status(), ConditionType.DEPLOYED, ConditionStatus.TRUE)

    @pytest.mark.asyncio
    async def test_concurrent_writer_change_is_kept(self, harness: Harness) -> None:
        """A conflicting write re-reads the resource instead of overwriting it."""
        harness.create()
        script = harness.script

        async def create_and_label() -> None:
            script.calls.append("create")
            script.exists = True
            harness.store.modify(
                GVK, KEY, lambda obj: obj["metadata"].setdefault("labels", {}).update(team="a")
            )

        build_manager = harness.factory.new_manager

        def new_manager(resource, override_values):
            manager = build_manager(resource, override_values)
            manager.create = create_and_label
            return manager

        harness.factory.new_manager = new_manager

        await harness.reconcile()

        resource = harness.current()
        assert resource.metadata["labels"] == {"team": "a"}
        assert resource.has_finalizer(FINALIZER)

    @pytest.mark.asyncio
    async def test_persistent_conflict_raises(self, harness: Harness) -> None:
        harness.create()
        harness.store.conflicts_to_inject = 100

        with pytest.raises(ConflictError):
            await harness.reconcile()

    @pytest.mark.asyncio
    async def test_spec_error(self, harness: Harness) -> None:
        harness.create(spec="not a mapping")

        with pytest.raises(SpecError):
            await harness.reconcile()

        assert harness.script.calls == []
