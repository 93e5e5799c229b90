"""
Approval workflow domain types (``budget_kernel.domain.workflow``).

Responsibility
--------------
Pure value objects for the approval workflow engine: request types, the
workflow lifecycle state machine, step snapshots, decisions, and the read
projections handed to callers.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  No imports from
``db/``, ``models/``, ``services/``, ``selectors/``.

Invariants enforced
-------------------
* Lifecycle state machine -- ``WORKFLOW_TRANSITIONS`` lists the only valid
  status changes.  ``approved`` and ``rejected`` have no outgoing edges.
* Step snapshots -- ``ApprovalStep`` is copied from the policy table at
  creation, together with ``policy_version`` and ``policy_checksum``, so
  later policy edits never reinterpret an in-flight workflow.
* ``current_step`` only moves forward.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from budget_kernel.domain.roles import Role
from budget_kernel.exceptions import (
    InvalidWorkflowTransitionError,
    WorkflowNotActiveError,
)


class RequestType(str, Enum):
    """The three request types that require approval."""

    BUDGET_INCREASE = "budget_increase"
    LARGE_DISBURSEMENT = "large_disbursement"
    SPECIAL_ALLOCATION = "special_allocation"


# =========================================================================
# Workflow Status Lifecycle
# =========================================================================


class WorkflowStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    APPROVED = "approved"
    REJECTED = "rejected"


# Self-loops are escalations (same state, new role gate) and non-final
# approvals on an in-progress workflow.
WORKFLOW_TRANSITIONS: dict[WorkflowStatus, frozenset[WorkflowStatus]] = {
    WorkflowStatus.PENDING: frozenset({
        WorkflowStatus.PENDING,
        WorkflowStatus.IN_PROGRESS,
        WorkflowStatus.APPROVED,
        WorkflowStatus.REJECTED,
    }),
    WorkflowStatus.IN_PROGRESS: frozenset({
        WorkflowStatus.IN_PROGRESS,
        WorkflowStatus.APPROVED,
        WorkflowStatus.REJECTED,
    }),
    WorkflowStatus.APPROVED: frozenset(),
    WorkflowStatus.REJECTED: frozenset(),
}

TERMINAL_WORKFLOW_STATUSES: frozenset[WorkflowStatus] = frozenset({
    WorkflowStatus.APPROVED,
    WorkflowStatus.REJECTED,
})

ACTIVE_WORKFLOW_STATUSES: frozenset[WorkflowStatus] = frozenset({
    WorkflowStatus.PENDING,
    WorkflowStatus.IN_PROGRESS,
})


def check_transition(
    workflow_id: UUID | str,
    current: WorkflowStatus,
    target: WorkflowStatus,
) -> None:
    """Raise unless ``current -> target`` is in WORKFLOW_TRANSITIONS."""
    if current in TERMINAL_WORKFLOW_STATUSES:
        raise WorkflowNotActiveError(str(workflow_id), current.value)
    if target not in WORKFLOW_TRANSITIONS[current]:
        raise InvalidWorkflowTransitionError(
            str(workflow_id), current.value, target.value,
        )


class Decision(str, Enum):
    """Decision an approver records on a step."""

    APPROVE = "approve"
    REJECT = "reject"


class BudgetRequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


# =========================================================================
# Snapshots
# =========================================================================


@dataclass(frozen=True)
class ApprovalStep:
    """One ordered sign-off step, snapshotted from the policy table.

    ``role`` is the role the policy asked for; ``active_role`` is the gate
    currently in force, which differs from ``role`` only after escalation.
    """

    step_id: UUID
    order: int
    role: Role
    active_role: Role
    required_approvers: int
    is_final: bool
    completed_at: datetime | None = None

    @property
    def is_escalated(self) -> bool:
        return self.active_role != self.role


@dataclass(frozen=True)
class StepDecisionRecord:
    """Record of a single step decision. Immutable."""

    decision_id: UUID
    workflow_id: UUID
    step_id: UUID
    actor_id: UUID
    actor_role: Role
    decision: Decision
    notes: str = ""
    decided_at: datetime | None = None


@dataclass(frozen=True)
class ApprovalWorkflow:
    """Immutable snapshot of a workflow instance and its decisions."""

    workflow_id: UUID
    request_type: RequestType
    amount: Decimal
    organization_id: UUID
    region_id: UUID
    budget_request_id: UUID | None
    min_amount: Decimal
    max_amount: Decimal | None
    policy_version: int
    policy_checksum: str
    steps: tuple[ApprovalStep, ...]
    current_step: int
    status: WorkflowStatus
    requested_by: UUID
    submitted_at: datetime
    resolved_at: datetime | None = None
    decisions: tuple[StepDecisionRecord, ...] = ()

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_WORKFLOW_STATUSES

    @property
    def active_step(self) -> ApprovalStep | None:
        """The step awaiting decisions, or None once the workflow is resolved."""
        if self.is_terminal or self.current_step >= len(self.steps):
            return None
        return self.steps[self.current_step]

    def decisions_for(self, step_id: UUID) -> tuple[StepDecisionRecord, ...]:
        return tuple(d for d in self.decisions if d.step_id == step_id)


@dataclass(frozen=True)
class BudgetRequest:
    """A request for funds; resolved only by its workflow's terminal decision."""

    request_id: UUID
    region_id: UUID
    organization_id: UUID
    request_type: RequestType
    current_amount: Decimal
    requested_amount: Decimal
    reason: str
    status: BudgetRequestStatus
    requested_by: UUID
    requested_at: datetime
    processed_at: datetime | None = None
    processed_by: UUID | None = None
    processing_notes: str | None = None


# =========================================================================
# Read projections
# =========================================================================


@dataclass(frozen=True)
class StepStatusView:
    step_id: UUID
    order: int
    role: Role
    active_role: Role
    required_approvers: int
    approvals: int
    rejections: int
    is_final: bool
    is_current: bool
    completed_at: datetime | None = None


@dataclass(frozen=True)
class WorkflowStatusView:
    """Workflow plus per-step approval counts, for approval UIs."""

    workflow: ApprovalWorkflow
    steps: tuple[StepStatusView, ...]

    @property
    def status(self) -> WorkflowStatus:
        return self.workflow.status

    @property
    def completed_steps(self) -> int:
        return sum(1 for s in self.steps if s.completed_at is not None)


@dataclass(frozen=True)
class PendingApproval:
    """A workflow waiting on a given role, as listed in an approval queue."""

    workflow_id: UUID
    request_type: RequestType
    amount: Decimal
    organization_id: UUID
    region_id: UUID
    step_id: UUID
    step_order: int
    active_role: Role
    approvals_so_far: int
    required_approvers: int
    submitted_at: datetime
