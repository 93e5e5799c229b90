"""
Pure domain layer.

Value objects and lifecycle tables with NO dependencies on the ORM, the
database or I/O.  All domain objects are immutable.
"""

from budget_kernel.domain.audit import ActionSummary, AuditAction, AuditEntityType, AuditLogEntry
from budget_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from budget_kernel.domain.collaborators import Notification, NotificationDispatcher, RoleDirectory
from budget_kernel.domain.results import Err, FetchError, FetchErrorKind, FetchResult, Ok, PartialData
from budget_kernel.domain.roles import Actor, Role, normalize_role, resolve_actor
from budget_kernel.domain.workflow import (
    TERMINAL_WORKFLOW_STATUSES,
    WORKFLOW_TRANSITIONS,
    ApprovalStep,
    ApprovalWorkflow,
    BudgetRequest,
    BudgetRequestStatus,
    Decision,
    PendingApproval,
    RequestType,
    StepDecisionRecord,
    WorkflowStatus,
    WorkflowStatusView,
)

__all__ = [
    "ActionSummary",
    "Actor",
    "ApprovalStep",
    "ApprovalWorkflow",
    "AuditAction",
    "AuditEntityType",
    "AuditLogEntry",
    "BudgetRequest",
    "BudgetRequestStatus",
    "Clock",
    "Decision",
    "DeterministicClock",
    "Err",
    "FetchError",
    "FetchErrorKind",
    "FetchResult",
    "Notification",
    "NotificationDispatcher",
    "Ok",
    "PartialData",
    "PendingApproval",
    "RequestType",
    "Role",
    "RoleDirectory",
    "StepDecisionRecord",
    "SystemClock",
    "TERMINAL_WORKFLOW_STATUSES",
    "WORKFLOW_TRANSITIONS",
    "WorkflowStatus",
    "WorkflowStatusView",
    "normalize_role",
    "resolve_actor",
]
