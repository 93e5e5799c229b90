"""
Module: budget_kernel.models.workflow
Responsibility: ORM persistence for budget requests, approval workflows,
    their step snapshots, and step decisions.

Architecture position: Kernel > Models.  May import from db/ and domain/ only.

Invariants enforced:
    - Lifecycle: DB check constraint limits status values; the service layer
      enforces WORKFLOW_TRANSITIONS; db.immutability freezes resolved
      workflows.
    - Decision uniqueness: UNIQUE(step_id, actor_id) -- the same actor can
      decide a step at most once, enforced at insert time.
    - Step ordering: UNIQUE(workflow_id, step_order).

Failure modes:
    - IntegrityError on duplicate actor decision (mapped to
      DuplicateDecisionError by the service).
    - ImmutabilityViolationError on decision UPDATE/DELETE.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Iterable
from uuid import UUID

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from budget_kernel.db.base import Base, UTCDateTime, UUIDString
from budget_kernel.exceptions import ImmutabilityViolationError

if TYPE_CHECKING:
    from budget_kernel.domain.workflow import (
        ApprovalStep,
        ApprovalWorkflow,
        BudgetRequest,
        StepDecisionRecord,
    )


class BudgetRequestModel(Base):
    """Persistent budget request.  Never deleted."""

    __tablename__ = "budget_requests"

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'approved', 'rejected')",
            name="ck_budget_requests_status",
        ),
        Index("idx_budget_requests_org", "organization_id", "requested_at"),
        Index("idx_budget_requests_region_status", "region_id", "status"),
    )

    region_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    organization_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    request_type: Mapped[str] = mapped_column(String(50), nullable=False)
    current_amount: Mapped[Decimal] = mapped_column(nullable=False)
    requested_amount: Mapped[Decimal] = mapped_column(nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False, default="")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    requested_by: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    requested_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    processed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    processed_by: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    processing_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<BudgetRequest {self.id} {self.requested_amount} status={self.status}>"

    def to_dto(self) -> BudgetRequest:
        from budget_kernel.domain.workflow import (
            BudgetRequest as BudgetRequestDTO,
            BudgetRequestStatus,
            RequestType,
        )

        return BudgetRequestDTO(
            request_id=self.id,
            region_id=self.region_id,
            organization_id=self.organization_id,
            request_type=RequestType(self.request_type),
            current_amount=self.current_amount,
            requested_amount=self.requested_amount,
            reason=self.reason,
            status=BudgetRequestStatus(self.status),
            requested_by=self.requested_by,
            requested_at=self.requested_at,
            processed_at=self.processed_at,
            processed_by=self.processed_by,
            processing_notes=self.processing_notes,
        )


class ApprovalWorkflowModel(Base):
    """Persistent workflow instance.

    Contract:
        ``approved`` and ``rejected`` are terminal; once flushed in a
        terminal status the row is frozen.

    Guarantees:
        - policy_version, policy_checksum and the bracket bounds record the
          policy table the step snapshots were taken from.
    """

    __tablename__ = "approval_workflows"

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'in_progress', 'approved', 'rejected')",
            name="ck_approval_workflows_status",
        ),
        CheckConstraint(
            "request_type IN ('budget_increase', 'large_disbursement', "
            "'special_allocation')",
            name="ck_approval_workflows_request_type",
        ),
        CheckConstraint("current_step >= 0", name="ck_approval_workflows_current_step"),
        CheckConstraint("amount > 0", name="ck_approval_workflows_amount"),
        # Pending-approvals queue: active workflows oldest first
        Index("idx_approval_workflows_queue", "status", "submitted_at"),
    )

    request_type: Mapped[str] = mapped_column(String(50), nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    organization_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    region_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    budget_request_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("budget_requests.id"), nullable=True,
    )
    min_amount: Mapped[Decimal] = mapped_column(nullable=False)
    max_amount: Mapped[Decimal | None] = mapped_column(nullable=True)
    policy_version: Mapped[int] = mapped_column(Integer, nullable=False)
    policy_checksum: Mapped[str] = mapped_column(String(64), nullable=False)
    current_step: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    requested_by: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    submitted_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    steps: Mapped[list["ApprovalStepModel"]] = relationship(
        "ApprovalStepModel",
        back_populates="workflow",
        order_by="ApprovalStepModel.step_order",
        lazy="selectin",
        cascade="all",
    )

    def __repr__(self) -> str:
        return (
            f"<ApprovalWorkflow {self.id} {self.request_type} "
            f"step={self.current_step} status={self.status}>"
        )

    def to_dto(self, decisions: Iterable["StepDecisionModel"] = ()) -> ApprovalWorkflow:
        """Convert to the frozen domain DTO.

        Decisions are passed in rather than loaded through a relationship so
        the snapshot always reflects rows flushed in the current transaction.
        """
        from budget_kernel.domain.workflow import (
            ApprovalWorkflow as ApprovalWorkflowDTO,
            RequestType,
            WorkflowStatus,
        )

        return ApprovalWorkflowDTO(
            workflow_id=self.id,
            request_type=RequestType(self.request_type),
            amount=self.amount,
            organization_id=self.organization_id,
            region_id=self.region_id,
            budget_request_id=self.budget_request_id,
            min_amount=self.min_amount,
            max_amount=self.max_amount,
            policy_version=self.policy_version,
            policy_checksum=self.policy_checksum,
            steps=tuple(s.to_dto() for s in self.steps),
            current_step=self.current_step,
            status=WorkflowStatus(self.status),
            requested_by=self.requested_by,
            submitted_at=self.submitted_at,
            resolved_at=self.resolved_at,
            decisions=tuple(d.to_dto() for d in decisions),
        )


class ApprovalStepModel(Base):
    """Step snapshot.  ``active_role`` is the only column escalation changes."""

    __tablename__ = "approval_steps"

    __table_args__ = (
        UniqueConstraint("workflow_id", "step_order", name="uq_approval_steps_order"),
        CheckConstraint("required_approvers > 0", name="ck_approval_steps_quorum"),
    )

    workflow_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("approval_workflows.id"), nullable=False,
    )
    step_order: Mapped[int] = mapped_column(Integer, nullable=False)
    role: Mapped[str] = mapped_column(String(50), nullable=False)
    active_role: Mapped[str] = mapped_column(String(50), nullable=False)
    required_approvers: Mapped[int] = mapped_column(Integer, nullable=False)
    is_final: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    workflow: Mapped["ApprovalWorkflowModel"] = relationship(
        "ApprovalWorkflowModel", back_populates="steps",
    )

    def __repr__(self) -> str:
        return f"<ApprovalStep {self.step_order} {self.active_role} final={self.is_final}>"

    def to_dto(self) -> ApprovalStep:
        from budget_kernel.domain.roles import Role
        from budget_kernel.domain.workflow import ApprovalStep as ApprovalStepDTO

        return ApprovalStepDTO(
            step_id=self.id,
            order=self.step_order,
            role=Role(self.role),
            active_role=Role(self.active_role),
            required_approvers=self.required_approvers,
            is_final=self.is_final,
            completed_at=self.completed_at,
        )


class StepDecisionModel(Base):
    """Persistent step decision. Append-only.

    Guarantees:
        - UNIQUE(step_id, actor_id) prevents the same actor deciding twice.
    """

    __tablename__ = "step_decisions"

    __table_args__ = (
        Index("idx_step_decisions_workflow", "workflow_id"),
        UniqueConstraint("step_id", "actor_id", name="uq_step_decisions_actor"),
        CheckConstraint(
            "decision IN ('approve', 'reject')", name="ck_step_decisions_decision",
        ),
    )

    workflow_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("approval_workflows.id"), nullable=False,
    )
    step_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("approval_steps.id"), nullable=False,
    )
    actor_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    actor_role: Mapped[str] = mapped_column(String(50), nullable=False)
    decision: Mapped[str] = mapped_column(String(20), nullable=False)
    notes: Mapped[str] = mapped_column(Text, nullable=False, default="")
    decided_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    def __repr__(self) -> str:
        return f"<StepDecision {self.id} step={self.step_id} decision={self.decision}>"

    def to_dto(self) -> StepDecisionRecord:
        from budget_kernel.domain.roles import Role
        from budget_kernel.domain.workflow import (
            Decision,
            StepDecisionRecord as StepDecisionDTO,
        )

        return StepDecisionDTO(
            decision_id=self.id,
            workflow_id=self.workflow_id,
            step_id=self.step_id,
            actor_id=self.actor_id,
            actor_role=Role(self.actor_role),
            decision=Decision(self.decision),
            notes=self.notes,
            decided_at=self.decided_at,
        )


# =============================================================================
# ORM-Level Immutability for Decisions (Append-Only)
# =============================================================================


@event.listens_for(StepDecisionModel, "before_update")
def prevent_decision_update(mapper, connection, target):
    """Prevent updates to step decision records."""
    raise ImmutabilityViolationError(
        entity_type="StepDecision",
        entity_id=str(target.id),
        reason="Step decisions are immutable -- cannot modify",
    )


@event.listens_for(StepDecisionModel, "before_delete")
def prevent_decision_delete(mapper, connection, target):
    """Prevent deletion of step decision records."""
    raise ImmutabilityViolationError(
        entity_type="StepDecision",
        entity_id=str(target.id),
        reason="Step decisions are immutable -- cannot delete",
    )
