"""Pydantic models for workflow definitions, runs and steps."""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..contracts import RetryPolicy
from ..utils.clock import utcnow


class ActionType(str, Enum):
    """Closed set of actions a workflow may perform."""

    CREATE_ENTITY = "create-entity"
    INVOKE_DOMAIN_OPERATION = "invoke-domain-operation"
    EMIT_EVENT = "emit-event"


class ActionSpec(BaseModel):
    """One ordered step of a workflow definition."""

    model_config = ConfigDict(frozen=True)

    type: ActionType
    name: Optional[str] = None
    target_domain: Optional[str] = None
    operation: Optional[str] = None
    entity: Optional[str] = None
    event_type: Optional[str] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)
    idempotency_key_template: Optional[str] = None
    timeout: Optional[float] = Field(default=None, gt=0)

    @model_validator(mode="after")
    def _check_variant(self) -> "ActionSpec":
        if self.type is ActionType.CREATE_ENTITY:
            if not (self.target_domain and self.entity):
                raise ValueError("create-entity requires target_domain and entity")
        elif self.type is ActionType.INVOKE_DOMAIN_OPERATION:
            if not (self.target_domain and self.operation):
                raise ValueError(
                    "invoke-domain-operation requires target_domain and operation"
                )
        elif self.type is ActionType.EMIT_EVENT:
            if not self.event_type:
                raise ValueError("emit-event requires event_type")
        return self

    @property
    def operation_name(self) -> Optional[str]:
        """Domain operation invoked by this action, if any."""
        if self.type is ActionType.CREATE_ENTITY:
            return f"create_{self.entity}"
        return self.operation


class ConditionOperator(str, Enum):
    EQ = "eq"
    NE = "ne"
    IN = "in"
    NOT_IN = "not_in"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    CONTAINS = "contains"
    EXISTS = "exists"
    NOT_EXISTS = "not_exists"


class Condition(BaseModel):
    """Predicate over a dotted path in the trigger payload."""

    model_config = ConfigDict(frozen=True)

    path: str
    op: ConditionOperator = ConditionOperator.EQ
    value: Any = None


class WorkflowDefinition(BaseModel):
    """Versioned trigger -> conditions -> ordered actions workflow."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = ""
    name: str
    version: int = Field(default=1, ge=1)
    description: Optional[str] = None
    trigger_event_type: str = Field(alias="trigger")
    tenant_id: Optional[str] = None
    conditions: List[Condition] = Field(default_factory=list)
    actions: List[ActionSpec]
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    enabled: bool = True
    published_at: Optional[datetime] = None

    @field_validator("actions")
    @classmethod
    def _require_actions(cls, value: List[ActionSpec]) -> List[ActionSpec]:
        if not value:
            raise ValueError("a workflow needs at least one action")
        return value

    @model_validator(mode="after")
    def _default_id(self) -> "WorkflowDefinition":
        if not self.id:
            self.id = f"{self.name}:v{self.version}"
        names = [a.name for a in self.actions if a.name]
        if len(names) != len(set(names)):
            raise ValueError("action names must be unique within a workflow")
        return self

    def content_signature(self) -> Dict[str, Any]:
        """Fields that may not change once the definition is published."""
        return self.model_dump(
            mode="json", exclude={"enabled", "published_at"}, by_alias=False
        )

    def matches(self, event_type: str, tenant_id: str) -> bool:
        if not self.enabled or self.trigger_event_type != event_type:
            return False
        return self.tenant_id is None or self.tenant_id == tenant_id


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_RUN_STATUSES = frozenset({RunStatus.COMPLETED, RunStatus.FAILED})


class StepStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class WorkflowRun(BaseModel):
    """One execution of a definition for a specific triggering event."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    workflow_definition_id: str
    tenant_id: str
    trigger_event_id: str
    correlation_id: Optional[str] = None
    trigger_payload: Dict[str, Any] = Field(default_factory=dict)
    status: RunStatus = RunStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    next_attempt_at: Optional[datetime] = None
    dead_lettered: bool = False
    cancel_requested: bool = False
    lease_token: Optional[str] = None
    lease_expires_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES


class RunStep(BaseModel):
    """Execution record of the action at ``action_index`` within a run."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    run_id: str
    action_index: int
    status: StepStatus = StepStatus.PENDING
    result: Any = None
    error: Optional[str] = None
    attempt_count: int = 1
    idempotency_key: str
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
