"""
budget_kernel.services.workflow_service -- Approval workflow engine.

Responsibility:
    Creates approval workflows from the active policy table, records step
    decisions, escalates stalled steps, and on final approval applies the
    budget mutation for the request type in the same transaction.  Rule
    evaluation (bracket selection, quorum, escalation tiers) is delegated to
    the pure ``budget_engines.approval`` functions.

Architecture position:
    Kernel > Services.  May import from domain/, models/, db/ and the pure
    engines.  Calls LedgerService for mutations and AuditorService for the
    audit trail.

Invariants enforced:
    - Lifecycle: ``check_transition`` against WORKFLOW_TRANSITIONS before
      every status write; approved/rejected are terminal.
    - Serialization: the workflow row is locked (SELECT ... FOR UPDATE)
      before any decision is evaluated, and quorum is recounted under the
      lock.
    - Decision uniqueness: UNIQUE(step_id, actor_id); the insert runs in a
      SAVEPOINT and the constraint violation becomes DuplicateDecisionError.
    - ``current_step`` only moves forward.
    - Every process_step call appends exactly one ``approval`` audit row;
      the mutation on final approval appends its own row.
    - Policy snapshot: steps, bracket bounds, policy version and checksum
      are copied onto the workflow at creation.

Failure modes:
    - WorkflowNotFoundError, WorkflowNotActiveError, StepNotActiveError,
      InvalidActorRoleError, DuplicateDecisionError,
      EscalationNotPossibleError, NoMatchingPolicyError,
      ValidationFailedError.
    - StoreTimeoutError when the workflow lock cannot be acquired.
    - Ledger and audit errors propagate; the caller rolls back.
"""

from __future__ import annotations

from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from budget_engines.approval import (
    build_step_snapshots,
    evaluate_step,
    next_escalation_role,
    select_bracket,
)
from budget_kernel.db.errors import translate_store_errors
from budget_kernel.db.types import to_money
from budget_kernel.domain.audit import AuditAction, AuditEntityType
from budget_kernel.domain.clock import Clock, SystemClock
from budget_kernel.domain.collaborators import Notification
from budget_kernel.domain.policy import ApprovalPolicyTable
from budget_kernel.domain.roles import Actor, Role
from budget_kernel.domain.workflow import (
    ACTIVE_WORKFLOW_STATUSES,
    TERMINAL_WORKFLOW_STATUSES,
    ApprovalWorkflow,
    BudgetRequestStatus,
    Decision,
    PendingApproval,
    RequestType,
    WorkflowStatus,
    WorkflowStatusView,
    check_transition,
)
from budget_kernel.exceptions import (
    DuplicateDecisionError,
    EscalationNotPossibleError,
    InvalidActorRoleError,
    StepNotActiveError,
    ValidationFailedError,
    WorkflowNotActiveError,
    WorkflowNotFoundError,
)
from budget_kernel.logging_config import LogContext, get_logger
from budget_kernel.models.workflow import (
    ApprovalStepModel,
    ApprovalWorkflowModel,
    BudgetRequestModel,
    StepDecisionModel,
)
from budget_kernel.selectors.workflow_selector import WorkflowSelector
from budget_kernel.services.auditor_service import AuditorService
from budget_kernel.services.ledger_service import LedgerService, positive_amount
from budget_kernel.services.notifier import BestEffortNotifier

logger = get_logger("services.workflow")


def _coerce_request_type(value: RequestType | str) -> RequestType:
    try:
        return RequestType(value)
    except ValueError:
        raise ValidationFailedError(f"Unknown request type: {value!r}") from None


def _coerce_decision(value: Decision | str) -> Decision:
    try:
        return Decision(value)
    except ValueError:
        raise ValidationFailedError(f"Unknown decision: {value!r}") from None


class ApprovalWorkflowService:
    """
    Approval workflow engine.

    Contract:
        Callers supply a resolved ``Actor``; this service authorizes the
        actor's role against the step gate but never authenticates.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
    """

    def __init__(
        self,
        session: Session,
        auditor: AuditorService,
        ledger: LedgerService,
        policy: ApprovalPolicyTable,
        clock: Clock | None = None,
        notifier: BestEffortNotifier | None = None,
    ) -> None:
        self._session = session
        self._auditor = auditor
        self._ledger = ledger
        self._policy = policy
        self._clock = clock or SystemClock()
        self._notifier = notifier or BestEffortNotifier()

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def _load(self, workflow_id: UUID, lock: bool = False) -> ApprovalWorkflowModel:
        stmt = select(ApprovalWorkflowModel).where(ApprovalWorkflowModel.id == workflow_id)
        if lock:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        with translate_store_errors("load_workflow"):
            model = self._session.execute(stmt).scalar_one_or_none()
        if model is None:
            raise WorkflowNotFoundError(str(workflow_id))
        return model

    def _decisions(self, workflow_id: UUID) -> list[StepDecisionModel]:
        return list(
            self._session.execute(
                select(StepDecisionModel)
                .where(StepDecisionModel.workflow_id == workflow_id)
                .order_by(StepDecisionModel.decided_at, StepDecisionModel.id)
            ).scalars()
        )

    def _budget_request(self, model: ApprovalWorkflowModel) -> BudgetRequestModel | None:
        if model.budget_request_id is None:
            return None
        return self._session.get(BudgetRequestModel, model.budget_request_id)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_workflow(
        self,
        request_type: RequestType | str,
        amount,
        organization_id: UUID,
        actor: Actor,
        reason: str = "",
    ) -> ApprovalWorkflow:
        """Open a workflow for ``amount`` with the policy bracket that contains it.

        Preconditions:
            - ``amount`` > 0 and the organization has a budget this year.
        Postconditions:
            - Workflow, step snapshots and a pending BudgetRequest are
              flushed; ``current_step`` is 0 and status ``pending``.
            - One ``request`` audit row is appended.

        Raises:
            ValidationFailedError: Bad amount, unknown request type or
                unknown organization.
            NoMatchingPolicyError: No bracket contains ``amount``.
        """
        request_type = _coerce_request_type(request_type)
        amount = positive_amount(amount)
        return self._open_workflow(
            request_type, amount, organization_id, actor, reason,
            current_amount=None, requested_amount=amount,
        )

    def submit_budget_request(
        self,
        organization_id: UUID,
        current_amount,
        requested_amount,
        reason: str,
        actor: Actor,
    ) -> ApprovalWorkflow:
        """Ask to raise an organization's budget from ``current_amount`` to
        ``requested_amount``; opens a budget_increase workflow for the
        difference.
        """
        try:
            current = to_money(current_amount)
            requested = to_money(requested_amount)
        except ValueError as exc:
            raise ValidationFailedError(str(exc)) from exc
        if requested <= current:
            raise ValidationFailedError(
                f"Requested amount {requested} must exceed current amount {current}"
            )
        return self._open_workflow(
            RequestType.BUDGET_INCREASE, requested - current, organization_id,
            actor, reason, current_amount=current, requested_amount=requested,
        )

    def _open_workflow(
        self,
        request_type: RequestType,
        amount: Decimal,
        organization_id: UUID,
        actor: Actor,
        reason: str,
        current_amount: Decimal | None,
        requested_amount: Decimal,
    ) -> ApprovalWorkflow:
        organization = self._ledger.get_organization_budget(organization_id)
        if organization is None:
            raise ValidationFailedError(f"Unknown organization: {organization_id}")

        bracket = select_bracket(self._policy, request_type, amount)
        steps = build_step_snapshots(bracket)
        now = self._clock.now()

        request = BudgetRequestModel(
            id=uuid4(),
            region_id=organization.region_id,
            organization_id=organization_id,
            request_type=request_type.value,
            current_amount=(
                current_amount if current_amount is not None else organization.amount
            ),
            requested_amount=requested_amount,
            reason=reason or "",
            status=BudgetRequestStatus.PENDING.value,
            requested_by=actor.actor_id,
            requested_at=now,
        )
        self._session.add(request)
        # No relationship orders the two inserts; the FK needs the request first.
        self._session.flush()

        workflow_id = uuid4()
        model = ApprovalWorkflowModel(
            id=workflow_id,
            request_type=request_type.value,
            amount=amount,
            organization_id=organization_id,
            region_id=organization.region_id,
            budget_request_id=request.id,
            min_amount=bracket.min_amount,
            max_amount=bracket.max_amount,
            policy_version=self._policy.version,
            policy_checksum=self._policy.checksum,
            current_step=0,
            status=WorkflowStatus.PENDING.value,
            requested_by=actor.actor_id,
            submitted_at=now,
        )
        model.steps = [
            ApprovalStepModel(
                id=step.step_id,
                workflow_id=workflow_id,
                step_order=step.order,
                role=step.role.value,
                active_role=step.active_role.value,
                required_approvers=step.required_approvers,
                is_final=step.is_final,
            )
            for step in steps
        ]
        self._session.add(model)
        self._session.flush()

        self._auditor.log_action(
            AuditAction.REQUEST,
            AuditEntityType.WORKFLOW,
            workflow_id,
            changes={"status": {"old": None, "new": WorkflowStatus.PENDING.value}},
            metadata={
                "request_type": request_type.value,
                "amount": amount,
                "organization_id": organization_id,
                "region_id": organization.region_id,
                "budget_request_id": request.id,
                "bracket": bracket.name,
                "policy_version": self._policy.version,
                "policy_checksum": self._policy.checksum,
                "reason": reason,
            },
            actor_id=actor.actor_id,
        )

        logger.info(
            "workflow_created",
            extra={
                "workflow_id": str(workflow_id),
                "request_type": request_type.value,
                "amount": str(amount),
                "bracket": bracket.name,
                "step_count": len(steps),
            },
        )

        self._notifier.notify_on_commit(self._session, Notification(
            kind="workflow_submitted",
            subject_type=AuditEntityType.WORKFLOW.value,
            subject_id=str(workflow_id),
            message=f"{request_type.value} of {amount} awaits approval",
            recipients_role=steps[0].active_role.value,
            data={"organization_id": str(organization_id)},
        ))
        return model.to_dto()

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def process_step(
        self,
        workflow_id: UUID,
        step_id: UUID,
        decision: Decision | str,
        notes: str,
        actor: Actor,
    ) -> ApprovalWorkflow:
        """Record ``actor``'s decision on the workflow's current step.

        A reject resolves the workflow as rejected.  An approve completes the
        step once its quorum of distinct approvers is reached; completing the
        final step approves the workflow and applies its budget mutation.

        Raises:
            WorkflowNotFoundError, WorkflowNotActiveError, StepNotActiveError,
            InvalidActorRoleError, DuplicateDecisionError.
        """
        decision = _coerce_decision(decision)

        with LogContext.bind(workflow_id=workflow_id, actor_id=actor.actor_id):
            model = self._load(workflow_id, lock=True)
            old_status = WorkflowStatus(model.status)
            if old_status in TERMINAL_WORKFLOW_STATUSES:
                raise WorkflowNotActiveError(str(workflow_id), old_status.value)

            step = model.steps[model.current_step]
            if step.id != step_id:
                raise StepNotActiveError(str(workflow_id), str(step_id), model.current_step)

            if actor.role.value != step.active_role:
                logger.warning(
                    "step_decision_role_refused",
                    extra={
                        "step_id": str(step_id),
                        "actor_role": actor.role.value,
                        "required_role": step.active_role,
                    },
                )
                raise InvalidActorRoleError(
                    str(actor.actor_id), actor.role.value, step.active_role,
                )

            now = self._clock.now()
            self._insert_decision(model, step, decision, notes, actor, now)

            decisions = self._decisions(model.id)
            evaluation = evaluate_step(
                step.to_dto(), [d.to_dto() for d in decisions],
            )
            old_step = model.current_step

            if decision == Decision.REJECT:
                new_status = WorkflowStatus.REJECTED
            elif evaluation.quorum_met and step.is_final:
                new_status = WorkflowStatus.APPROVED
            else:
                new_status = WorkflowStatus.IN_PROGRESS

            check_transition(model.id, old_status, new_status)

            if decision == Decision.APPROVE and evaluation.quorum_met:
                step.completed_at = now
                if not step.is_final:
                    model.current_step = old_step + 1
            model.status = new_status.value
            if new_status in TERMINAL_WORKFLOW_STATUSES:
                model.resolved_at = now
                self._resolve_request(model, new_status, actor, notes, now)
            self._session.flush()

            self._auditor.log_action(
                AuditAction.APPROVAL,
                AuditEntityType.WORKFLOW,
                model.id,
                changes={
                    "status": {"old": old_status.value, "new": new_status.value},
                    "current_step": {"old": old_step, "new": model.current_step},
                },
                metadata={
                    "step_id": step.id,
                    "step_order": step.step_order,
                    "decision": decision.value,
                    "actor_role": actor.role.value,
                    "approvals": evaluation.approvals,
                    "required_approvers": evaluation.required_approvers,
                    "notes": notes,
                },
                actor_id=actor.actor_id,
            )

            logger.info(
                "step_decision_recorded",
                extra={
                    "step_order": step.step_order,
                    "decision": decision.value,
                    "approvals": evaluation.approvals,
                    "required_approvers": evaluation.required_approvers,
                    "new_status": new_status.value,
                },
            )

            if new_status == WorkflowStatus.APPROVED:
                self._apply_mutation(model, actor)

            if new_status in TERMINAL_WORKFLOW_STATUSES:
                self._notifier.notify_on_commit(self._session, Notification(
                    kind=f"workflow_{new_status.value}",
                    subject_type=AuditEntityType.WORKFLOW.value,
                    subject_id=str(model.id),
                    message=f"{model.request_type} of {model.amount} {new_status.value}",
                    data={
                        "organization_id": str(model.organization_id),
                        "requested_by": str(model.requested_by),
                    },
                ))

            return model.to_dto(decisions)

    def _insert_decision(
        self,
        model: ApprovalWorkflowModel,
        step: ApprovalStepModel,
        decision: Decision,
        notes: str,
        actor: Actor,
        now,
    ) -> None:
        row = StepDecisionModel(
            workflow_id=model.id,
            step_id=step.id,
            actor_id=actor.actor_id,
            actor_role=actor.role.value,
            decision=decision.value,
            notes=notes or "",
            decided_at=now,
        )
        savepoint = self._session.begin_nested()
        try:
            self._session.add(row)
            self._session.flush()
            savepoint.commit()
        except IntegrityError:
            savepoint.rollback()
            logger.warning(
                "duplicate_step_decision",
                extra={"step_id": str(step.id), "decision": decision.value},
            )
            raise DuplicateDecisionError(str(step.id), str(actor.actor_id)) from None

    def _resolve_request(
        self,
        model: ApprovalWorkflowModel,
        status: WorkflowStatus,
        actor: Actor,
        notes: str,
        now,
    ) -> None:
        request = self._budget_request(model)
        if request is None:
            return
        request.status = (
            BudgetRequestStatus.APPROVED.value
            if status == WorkflowStatus.APPROVED
            else BudgetRequestStatus.REJECTED.value
        )
        request.processed_at = now
        request.processed_by = actor.actor_id
        request.processing_notes = notes or None

    def _apply_mutation(self, model: ApprovalWorkflowModel, actor: Actor) -> None:
        request_type = RequestType(model.request_type)
        if request_type == RequestType.BUDGET_INCREASE:
            self._ledger.increase_region_budget(
                model.region_id, model.amount, actor, workflow_id=model.id,
            )
        elif request_type == RequestType.LARGE_DISBURSEMENT:
            self._ledger.disburse_to_organization(
                model.organization_id, model.amount, actor, workflow_id=model.id,
            )
        else:
            self._ledger.create_special_allocation(
                model.organization_id, model.amount, actor, workflow_id=model.id,
            )
        logger.info(
            "workflow_mutation_applied",
            extra={"request_type": request_type.value, "amount": str(model.amount)},
        )

    # ------------------------------------------------------------------
    # Escalation
    # ------------------------------------------------------------------

    def escalate_workflow(
        self,
        workflow_id: UUID,
        reason: str,
        actor: Actor,
    ) -> ApprovalWorkflow:
        """Move the current step's gate to the next tier of the escalation chain.

        Approvals already given under the previous gate no longer count.
        The workflow status does not change.

        Raises:
            WorkflowNotActiveError: The workflow is approved or rejected.
            EscalationNotPossibleError: The gate is already the top tier.
        """
        with LogContext.bind(workflow_id=workflow_id, actor_id=actor.actor_id):
            model = self._load(workflow_id, lock=True)
            status = WorkflowStatus(model.status)
            if status not in ACTIVE_WORKFLOW_STATUSES:
                raise WorkflowNotActiveError(str(workflow_id), status.value)

            step = model.steps[model.current_step]
            old_role = Role(step.active_role)
            new_role = next_escalation_role(self._policy.escalation_chain, old_role)
            if new_role is None:
                raise EscalationNotPossibleError(str(workflow_id), old_role.value)

            check_transition(model.id, status, status)
            step.active_role = new_role.value
            self._session.flush()

            self._auditor.log_action(
                AuditAction.ESCALATION,
                AuditEntityType.WORKFLOW,
                model.id,
                changes={"active_role": {"old": old_role.value, "new": new_role.value}},
                metadata={
                    "step_id": step.id,
                    "step_order": step.step_order,
                    "reason": reason,
                },
                actor_id=actor.actor_id,
            )

            logger.info(
                "workflow_escalated",
                extra={
                    "step_order": step.step_order,
                    "from_role": old_role.value,
                    "to_role": new_role.value,
                },
            )

            self._notifier.notify_on_commit(self._session, Notification(
                kind="workflow_escalated",
                subject_type=AuditEntityType.WORKFLOW.value,
                subject_id=str(model.id),
                message=f"Approval escalated to {new_role.value}: {reason}",
                recipients_role=new_role.value,
            ))
            return model.to_dto(self._decisions(model.id))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_workflow(self, workflow_id: UUID) -> ApprovalWorkflow:
        return WorkflowSelector(self._session).get_workflow(workflow_id)

    def get_workflow_status(self, workflow_id: UUID) -> WorkflowStatusView:
        """Workflow snapshot with approval and rejection counts per step."""
        return WorkflowSelector(self._session).workflow_status(workflow_id)

    def get_pending_approvals(self, role: Role | str) -> list[PendingApproval]:
        """Active workflows whose current step is gated on ``role``, oldest first."""
        return WorkflowSelector(self._session).pending_approvals(role)
