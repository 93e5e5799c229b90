"""
Tests for the pure approval workflow engine.

Tests cover:
- select_bracket: half-open ranges, open-ended top bracket, no match
- build_step_snapshots: ordering, active role starts at the policy role
- evaluate_step: distinct approvers, active-role gate, absorbing reject
- next_escalation_role: chain walk, top of chain, role outside the chain
- approval_is_complete: every step through the final one
"""

from dataclasses import replace
from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from budget_config import get_active_policy
from budget_engines.approval import (
    approval_is_complete,
    build_step_snapshots,
    evaluate_step,
    next_escalation_role,
    select_bracket,
)
from budget_kernel.domain.policy import ApprovalPolicyTable, PolicyBracket, StepTemplate
from budget_kernel.domain.roles import Role
from budget_kernel.domain.workflow import (
    ApprovalStep,
    Decision,
    RequestType,
    StepDecisionRecord,
)
from budget_kernel.exceptions import NoMatchingPolicyError

POLICY = get_active_policy()


# =========================================================================
# Factory helpers
# =========================================================================


def make_step(
    role: Role = Role.FINANCE_OFFICER,
    required_approvers: int = 1,
    active_role: Role | None = None,
    order: int = 1,
    is_final: bool = False,
) -> ApprovalStep:
    return ApprovalStep(
        step_id=uuid4(),
        order=order,
        role=role,
        active_role=active_role or role,
        required_approvers=required_approvers,
        is_final=is_final,
    )


def make_decision(
    step: ApprovalStep,
    decision: Decision = Decision.APPROVE,
    actor_role: Role | None = None,
    actor_id=None,
) -> StepDecisionRecord:
    return StepDecisionRecord(
        decision_id=uuid4(),
        workflow_id=uuid4(),
        step_id=step.step_id,
        actor_id=actor_id or uuid4(),
        actor_role=actor_role or step.active_role,
        decision=decision,
    )


# =========================================================================
# select_bracket
# =========================================================================


class TestSelectBracket:
    @pytest.mark.parametrize(
        "amount, expected_min",
        [
            (Decimal("0"), Decimal("0")),
            (Decimal("9999.99"), Decimal("0")),
            (Decimal("10000"), Decimal("10000")),
            (Decimal("50000"), Decimal("10000")),
            (Decimal("99999.99"), Decimal("10000")),
            (Decimal("100000"), Decimal("100000")),
            (Decimal("750000000"), Decimal("100000")),
        ],
    )
    def test_budget_increase_boundaries(self, amount, expected_min):
        bracket = select_bracket(POLICY, RequestType.BUDGET_INCREASE, amount)
        assert bracket.min_amount == expected_min

    def test_top_bracket_is_open(self):
        bracket = select_bracket(POLICY, RequestType.LARGE_DISBURSEMENT, Decimal("250000"))
        assert bracket.max_amount is None
        assert [s.required_approvers for s in bracket.steps] == [1, 2, 2]

    def test_no_bracket_for_amount(self):
        table = ApprovalPolicyTable(
            version=1,
            effective_from=date(2024, 1, 1),
            escalation_chain=(Role.REGIONAL_ADMIN,),
            direct_mutation_limit=Decimal("0"),
            brackets=(
                PolicyBracket(
                    request_type=RequestType.SPECIAL_ALLOCATION,
                    min_amount=Decimal("100"),
                    max_amount=None,
                    steps=(StepTemplate(1, Role.REGIONAL_ADMIN, 1, True),),
                ),
            ),
        )
        with pytest.raises(NoMatchingPolicyError):
            select_bracket(table, RequestType.SPECIAL_ALLOCATION, Decimal("99.99"))
        with pytest.raises(NoMatchingPolicyError):
            select_bracket(table, RequestType.BUDGET_INCREASE, Decimal("500"))

    @settings(max_examples=200)
    @given(
        request_type=st.sampled_from(list(RequestType)),
        amount=st.decimals(
            min_value=Decimal("0"), max_value=Decimal("1000000000"), places=2,
            allow_nan=False, allow_infinity=False,
        ),
    )
    def test_exactly_one_bracket_contains_every_amount(self, request_type, amount):
        containing = [b for b in POLICY.brackets_for(request_type) if b.contains(amount)]
        assert len(containing) == 1
        assert select_bracket(POLICY, request_type, amount) == containing[0]


# =========================================================================
# build_step_snapshots
# =========================================================================


class TestBuildStepSnapshots:
    def test_snapshots_follow_template_order(self):
        bracket = select_bracket(POLICY, RequestType.BUDGET_INCREASE, Decimal("100000"))
        steps = build_step_snapshots(replace(bracket, steps=tuple(reversed(bracket.steps))))

        assert [s.order for s in steps] == [0, 1, 2]
        assert [s.role for s in steps] == [
            Role.REGIONAL_ADMIN, Role.FINANCE_OFFICER, Role.SUPER_ADMIN,
        ]
        assert all(s.active_role == s.role for s in steps)
        assert [s.is_final for s in steps] == [False, False, True]
        assert len({s.step_id for s in steps}) == 3

    def test_id_factory(self):
        bracket = select_bracket(POLICY, RequestType.SPECIAL_ALLOCATION, Decimal("1"))
        fixed = uuid4()
        steps = build_step_snapshots(bracket, id_factory=lambda: fixed)
        assert {s.step_id for s in steps} == {fixed}


# =========================================================================
# evaluate_step
# =========================================================================


class TestEvaluateStep:
    def test_distinct_approvers_only(self):
        step = make_step(required_approvers=2)
        actor = uuid4()
        evaluation = evaluate_step(step, [
            make_decision(step, actor_id=actor),
            make_decision(step, actor_id=actor),
        ])
        assert evaluation.approvals == 1
        assert not evaluation.quorum_met

    def test_quorum_met(self):
        step = make_step(required_approvers=2)
        evaluation = evaluate_step(step, [make_decision(step), make_decision(step)])
        assert evaluation.quorum_met

    def test_other_steps_ignored(self):
        step = make_step()
        other = make_step()
        assert evaluate_step(step, [make_decision(other)]).approvals == 0

    def test_only_active_role_counts(self):
        step = make_step(role=Role.REGIONAL_ADMIN, active_role=Role.FINANCE_OFFICER)
        evaluation = evaluate_step(step, [make_decision(step, actor_role=Role.REGIONAL_ADMIN)])
        assert evaluation.approvals == 0

    def test_reject_is_absorbing(self):
        step = make_step(required_approvers=1)
        evaluation = evaluate_step(step, [
            make_decision(step),
            make_decision(step, Decision.REJECT),
        ])
        assert evaluation.approvals == 1
        assert evaluation.is_rejected
        assert not evaluation.quorum_met


# =========================================================================
# next_escalation_role
# =========================================================================


class TestNextEscalationRole:
    def test_walks_the_chain(self):
        chain = POLICY.escalation_chain
        assert next_escalation_role(chain, Role.REGIONAL_ADMIN) == Role.FINANCE_OFFICER
        assert next_escalation_role(chain, Role.FINANCE_OFFICER) == Role.SUPER_ADMIN

    def test_top_of_chain(self):
        assert next_escalation_role(POLICY.escalation_chain, Role.SUPER_ADMIN) is None

    def test_role_outside_chain(self):
        chain = POLICY.escalation_chain
        assert next_escalation_role(chain, Role.ORGANIZATION_ADMIN) == Role.REGIONAL_ADMIN
        assert next_escalation_role((), Role.ORGANIZATION_ADMIN) is None


# =========================================================================
# approval_is_complete
# =========================================================================


class TestApprovalIsComplete:
    def test_requires_every_step(self):
        first = make_step(order=1)
        final = make_step(role=Role.SUPER_ADMIN, order=2, is_final=True)
        steps = (first, final)

        assert not approval_is_complete(steps, [make_decision(first)])
        assert approval_is_complete(steps, [make_decision(first), make_decision(final)])

    def test_reject_blocks_completion(self):
        final = make_step(is_final=True)
        assert not approval_is_complete(
            (final,), [make_decision(final), make_decision(final, Decision.REJECT)],
        )

    def test_no_final_step(self):
        step = make_step()
        assert not approval_is_complete((step,), [make_decision(step)])
