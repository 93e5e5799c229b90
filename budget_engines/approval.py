"""
budget_engines.approval -- Pure approval workflow evaluation.

Responsibility:
    Select the policy bracket for a request, build step snapshots from it,
    count the quorum at a step, and resolve escalation tiers.  Everything
    the workflow service needs to DECIDE, without touching the database.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import budget_kernel/domain/ types and budget_kernel.exceptions.

Invariants enforced:
    - Bracket selection: ``min_amount <= amount < max_amount``;
      ``max_amount=None`` is open.  Brackets are tried lowest ``min_amount``
      first; first match wins.
    - Quorum: only DISTINCT approving actors count, and only decisions taken
      under the step's current active role (escalation discards the skipped
      role's partial quorum).
    - Reject is absorbing: any reject at a step marks it rejected regardless
      of the approval count.
    - Purity: no clock access, no I/O, no database.

Failure modes:
    - NoMatchingPolicyError when no bracket contains the amount.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable
from uuid import UUID, uuid4

from budget_kernel.domain.policy import ApprovalPolicyTable, PolicyBracket
from budget_kernel.domain.roles import Role
from budget_kernel.domain.workflow import (
    ApprovalStep,
    Decision,
    RequestType,
    StepDecisionRecord,
)
from budget_kernel.exceptions import NoMatchingPolicyError


@dataclass(frozen=True)
class StepEvaluation:
    """Result of evaluating the decisions recorded at one step."""

    step_id: UUID
    approvals: int
    required_approvers: int
    is_rejected: bool = False

    @property
    def quorum_met(self) -> bool:
        return not self.is_rejected and self.approvals >= self.required_approvers


def select_bracket(
    table: ApprovalPolicyTable,
    request_type: RequestType,
    amount: Decimal,
) -> PolicyBracket:
    """Select the bracket whose range contains ``amount``.

    Raises:
        NoMatchingPolicyError: If no bracket for ``request_type`` contains it.
    """
    candidates = sorted(table.brackets_for(request_type), key=lambda b: b.min_amount)
    for bracket in candidates:
        if bracket.contains(amount):
            return bracket
    raise NoMatchingPolicyError(request_type.value, str(amount))


def build_step_snapshots(
    bracket: PolicyBracket,
    id_factory=uuid4,
) -> tuple[ApprovalStep, ...]:
    """Copy a bracket's step templates into per-workflow step snapshots."""
    return tuple(
        ApprovalStep(
            step_id=id_factory(),
            order=template.order,
            role=template.role,
            active_role=template.role,
            required_approvers=template.required_approvers,
            is_final=template.is_final,
        )
        for template in sorted(bracket.steps, key=lambda t: t.order)
    )


def evaluate_step(
    step: ApprovalStep,
    decisions: Iterable[StepDecisionRecord],
) -> StepEvaluation:
    """Count distinct approvers at ``step`` under its active role.

    Args:
        step: The step snapshot (with its current ``active_role``).
        decisions: Decisions recorded for the workflow; other steps' rows
            are ignored.
    """
    approvers: set[UUID] = set()
    rejected = False
    for d in decisions:
        if d.step_id != step.step_id:
            continue
        if d.decision == Decision.REJECT:
            rejected = True
        elif d.actor_role == step.active_role:
            approvers.add(d.actor_id)

    return StepEvaluation(
        step_id=step.step_id,
        approvals=len(approvers),
        required_approvers=step.required_approvers,
        is_rejected=rejected,
    )


def next_escalation_role(
    chain: tuple[Role, ...],
    current: Role,
) -> Role | None:
    """The role tier above ``current`` in ``chain``, or None at the top.

    A role missing from the chain escalates to the chain's first tier.
    """
    if current not in chain:
        return chain[0] if chain else None
    index = chain.index(current)
    if index + 1 < len(chain):
        return chain[index + 1]
    return None


def approval_is_complete(
    steps: tuple[ApprovalStep, ...],
    decisions: Iterable[StepDecisionRecord],
) -> bool:
    """True when every step through the final one met quorum with no reject."""
    decisions = tuple(decisions)
    for step in steps:
        evaluation = evaluate_step(step, decisions)
        if not evaluation.quorum_met:
            return False
        if step.is_final:
            return True
    return False
