"""Status model attached to every managed resource.

The status holds a list of conditions (at most one per type) and an
optional record of the configuration that is currently deployed. All
operations here are pure data manipulation; nothing is persisted until the
reconciler writes the status back through the store.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_serializer

from .models import ManagedResource

logger = logging.getLogger(__name__)


class ConditionType(str, Enum):
    """Aspects of the reconciliation outcome reported on the resource."""

    INITIALIZED = "Initialized"
    DEPLOYED = "Deployed"
    CONFIG_FAILED = "ConfigFailed"
    IRRECONCILABLE = "Irreconcilable"


class ConditionStatus(str, Enum):
    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class ConditionReason(str, Enum):
    """Machine-readable reasons attached to conditions."""

    CREATE_SUCCESSFUL = "CreateSuccessful"
    UPDATE_SUCCESSFUL = "UpdateSuccessful"
    DELETE_SUCCESSFUL = "DeleteSuccessful"
    CREATE_ERROR = "CreateError"
    UPDATE_ERROR = "UpdateError"
    RECONCILE_ERROR = "ReconcileError"
    DELETE_ERROR = "DeleteError"


def utc_now() -> datetime:
    """Current UTC time truncated to whole seconds, as the API server stores it."""
    return datetime.now(UTC).replace(microsecond=0)


class Condition(BaseModel):
    """A timestamped status entry describing one aspect of reconciliation."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    type: ConditionType
    status: ConditionStatus
    reason: str = ""
    message: str = ""
    last_transition_time: datetime | None = Field(None, alias="lastTransitionTime")

    @field_serializer("last_transition_time")
    def _serialize_time(self, value: datetime | None) -> str | None:
        if value is None:
            return None
        return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


class DeployedConfig(BaseModel):
    """The configuration considered live for this resource."""

    model_config = {"extra": "ignore"}

    name: str = ""
    manifest: str = ""


class TerraformStatus(BaseModel):
    """Status block of a Terraform-managed resource."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    conditions: list[Condition] = Field(default_factory=list)
    deployed_config: DeployedConfig | None = Field(None, alias="deployedConfig")

    def get_condition(self, condition_type: ConditionType) -> Condition | None:
        for condition in self.conditions:
            if condition.type == condition_type:
                return condition
        return None

    def set_condition(
        self,
        condition_type: ConditionType,
        status: ConditionStatus,
        reason: ConditionReason | str = "",
        message: str = "",
        now: datetime | None = None,
    ) -> TerraformStatus:
        """Set a condition, replacing any existing condition of the same type.

        The transition time is carried over from the previous condition of
        the same type unless the status value changed. Does not persist
        anything.
        """
        if isinstance(reason, ConditionReason):
            reason = reason.value
        condition = Condition(type=condition_type, status=status, reason=reason, message=message)
        for i, existing in enumerate(self.conditions):
            if existing.type == condition_type:
                if existing.status != status:
                    condition.last_transition_time = now or utc_now()
                else:
                    condition.last_transition_time = existing.last_transition_time
                self.conditions[i] = condition
                return self

        condition.last_transition_time = now or utc_now()
        self.conditions.append(condition)
        return self

    def remove_condition(self, condition_type: ConditionType) -> TerraformStatus:
        """Drop the condition of the given type; unchanged when absent."""
        self.conditions = [c for c in self.conditions if c.type != condition_type]
        return self

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the wire shape stored on the resource."""
        data = self.model_dump(mode="json", by_alias=True, exclude_none=True)
        data.setdefault("conditions", [])
        return data


def status_for(resource: ManagedResource) -> TerraformStatus:
    """Safely return a typed status block from a managed resource.

    Absent or malformed status yields an empty status rather than an error.
    """
    raw = resource.status
    if isinstance(raw, TerraformStatus):
        return raw
    if not isinstance(raw, dict):
        return TerraformStatus()
    try:
        return TerraformStatus.model_validate(raw)
    except ValidationError as e:
        logger.warning(
            "Ignoring unparseable status",
            extra={"resource": str(resource.key), "error": str(e)},
        )
        return TerraformStatus()
