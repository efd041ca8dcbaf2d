"""Crossflow: transactional outbox and cross-domain workflow orchestration."""

from .errors import (
    CapacityExceeded,
    CrossflowError,
    PermanentValidationError,
    PoisonRecord,
    TransientDeliveryError,
)
from .contracts import EventEnvelope, OutboxRecord, RetryPolicy
from .config import CrossflowConfig, load_config
from .persistence import get_repository
from .outbox import OutboxWriter
from .routing import EventRouter
from .registry import OPERATIONS, OperationRegistry
from .workflows import ActionSpec, ActionType, WorkflowDefinition, WorkflowRun
from .workflows.definitions import WorkflowDefinitionStore
from .actions import ActionInvoker
from .execute import WorkflowRunner
from .dispatch import OutboxDispatcher
from .scheduler import RunScheduler
from .admin import AdminService
from .app import Crossflow

__version__ = "0.1.0"
__all__ = [
    "ActionInvoker",
    "ActionSpec",
    "ActionType",
    "AdminService",
    "CapacityExceeded",
    "Crossflow",
    "CrossflowConfig",
    "CrossflowError",
    "EventEnvelope",
    "EventRouter",
    "OPERATIONS",
    "OperationRegistry",
    "OutboxDispatcher",
    "OutboxRecord",
    "OutboxWriter",
    "PermanentValidationError",
    "PoisonRecord",
    "RetryPolicy",
    "RunScheduler",
    "TransientDeliveryError",
    "WorkflowDefinition",
    "WorkflowDefinitionStore",
    "WorkflowRun",
    "WorkflowRunner",
    "get_repository",
    "load_config",
]
