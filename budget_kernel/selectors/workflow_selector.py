"""
Module: budget_kernel.selectors.workflow_selector
Responsibility: Read-only workflow queries: workflow snapshots with their
    decisions, per-step status views, and role approval queues.
Architecture position: Kernel > Selectors.  Quorum counts come from the pure
    ``budget_engines.approval.evaluate_step`` so the read side counts exactly
    the way the engine decides.

Invariants enforced:
    - Approval queues are ordered oldest ``submitted_at`` first.
    - Only active (pending / in_progress) workflows appear in a queue.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import and_, select

from budget_engines.approval import evaluate_step
from budget_kernel.domain.roles import Role, normalize_role
from budget_kernel.domain.workflow import (
    ACTIVE_WORKFLOW_STATUSES,
    ApprovalWorkflow,
    Decision,
    PendingApproval,
    RequestType,
    StepStatusView,
    WorkflowStatusView,
)
from budget_kernel.exceptions import WorkflowNotFoundError
from budget_kernel.models.workflow import (
    ApprovalStepModel,
    ApprovalWorkflowModel,
    StepDecisionModel,
)
from budget_kernel.selectors.base import BaseSelector


class WorkflowSelector(BaseSelector):
    """Queries over approval workflows."""

    def _decisions(self, workflow_id: UUID) -> list[StepDecisionModel]:
        return list(
            self.session.execute(
                select(StepDecisionModel)
                .where(StepDecisionModel.workflow_id == workflow_id)
                .order_by(StepDecisionModel.decided_at, StepDecisionModel.id)
            ).scalars()
        )

    def get_workflow(self, workflow_id: UUID) -> ApprovalWorkflow:
        """
        Raises:
            WorkflowNotFoundError: No workflow with this id.
        """
        model = self.session.get(ApprovalWorkflowModel, workflow_id)
        if model is None:
            raise WorkflowNotFoundError(str(workflow_id))
        return model.to_dto(self._decisions(model.id))

    def workflow_status(self, workflow_id: UUID) -> WorkflowStatusView:
        """Workflow snapshot with approval and rejection counts per step."""
        workflow = self.get_workflow(workflow_id)
        views = []
        for step in workflow.steps:
            step_decisions = workflow.decisions_for(step.step_id)
            evaluation = evaluate_step(step, step_decisions)
            views.append(StepStatusView(
                step_id=step.step_id,
                order=step.order,
                role=step.role,
                active_role=step.active_role,
                required_approvers=step.required_approvers,
                approvals=evaluation.approvals,
                rejections=sum(1 for d in step_decisions if d.decision == Decision.REJECT),
                is_final=step.is_final,
                is_current=(
                    not workflow.is_terminal and step.order == workflow.current_step
                ),
                completed_at=step.completed_at,
            ))
        return WorkflowStatusView(workflow=workflow, steps=tuple(views))

    def pending_approvals(self, role: Role | str) -> list[PendingApproval]:
        """Active workflows whose current step is gated on ``role``, oldest first.

        Raises:
            UnknownRoleError: ``role`` is not a known role.
        """
        role = normalize_role(role)
        rows = self.session.execute(
            select(ApprovalWorkflowModel, ApprovalStepModel)
            .join(
                ApprovalStepModel,
                and_(
                    ApprovalStepModel.workflow_id == ApprovalWorkflowModel.id,
                    ApprovalStepModel.step_order == ApprovalWorkflowModel.current_step,
                ),
            )
            .where(
                ApprovalWorkflowModel.status.in_(
                    [s.value for s in ACTIVE_WORKFLOW_STATUSES]
                ),
                ApprovalStepModel.active_role == role.value,
            )
            .order_by(ApprovalWorkflowModel.submitted_at, ApprovalWorkflowModel.id)
        ).all()

        pending = []
        for workflow, step in rows:
            decisions = [d.to_dto() for d in self._decisions(workflow.id)]
            evaluation = evaluate_step(step.to_dto(), decisions)
            pending.append(PendingApproval(
                workflow_id=workflow.id,
                request_type=RequestType(workflow.request_type),
                amount=workflow.amount,
                organization_id=workflow.organization_id,
                region_id=workflow.region_id,
                step_id=step.id,
                step_order=step.step_order,
                active_role=role,
                approvals_so_far=evaluation.approvals,
                required_approvers=step.required_approvers,
                submitted_at=workflow.submitted_at,
            ))
        return pending
