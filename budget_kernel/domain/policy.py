"""
Approval policy table types (``budget_kernel.domain.policy``).

Responsibility
--------------
The immutable, versioned table of step templates keyed by request type and
amount bracket.  ``budget_config`` builds these from YAML; the workflow
engine snapshots the selected bracket into each workflow at creation.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from budget_kernel.domain.roles import Role
from budget_kernel.domain.workflow import RequestType


@dataclass(frozen=True)
class StepTemplate:
    """One step of a bracket's sign-off sequence."""

    order: int
    role: Role
    required_approvers: int = 1
    is_final: bool = False


@dataclass(frozen=True)
class PolicyBracket:
    """Step template for one request type over ``[min_amount, max_amount)``.

    ``max_amount=None`` means the bracket is open-ended.
    """

    request_type: RequestType
    min_amount: Decimal
    max_amount: Decimal | None
    steps: tuple[StepTemplate, ...]
    name: str = ""

    def contains(self, amount: Decimal) -> bool:
        if amount < self.min_amount:
            return False
        return self.max_amount is None or amount < self.max_amount


@dataclass(frozen=True)
class ApprovalPolicyTable:
    """A versioned approval policy table.

    ``escalation_chain`` lists role tiers lowest first; escalation moves a
    step's active role to the next entry.  ``direct_mutation_limit`` is the
    largest amount the ledger accepts without a workflow.
    """

    version: int
    effective_from: date
    escalation_chain: tuple[Role, ...]
    direct_mutation_limit: Decimal
    brackets: tuple[PolicyBracket, ...]
    checksum: str = ""

    def brackets_for(self, request_type: RequestType) -> tuple[PolicyBracket, ...]:
        return tuple(b for b in self.brackets if b.request_type == request_type)
