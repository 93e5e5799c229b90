"""
Budget ledger domain types.

Frozen snapshots of region and organization budgets, category allocations
and recorded expenses, plus the remaining-balance arithmetic shared by the
ledger service and the batch processor.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

SPECIAL_CATEGORY = "special"


def remaining_of(amount: Decimal, allocated: Decimal, utilized: Decimal) -> Decimal:
    """Remaining balance = amount - allocated - utilized."""
    return amount - allocated - utilized


@dataclass(frozen=True)
class RegionBudgetInfo:
    budget_id: UUID
    region_id: UUID
    fiscal_year: int
    amount: Decimal
    allocated_amount: Decimal
    utilized_amount: Decimal

    @property
    def remaining_amount(self) -> Decimal:
        return remaining_of(self.amount, self.allocated_amount, self.utilized_amount)


@dataclass(frozen=True)
class OrganizationBudgetInfo:
    budget_id: UUID
    organization_id: UUID
    region_id: UUID
    fiscal_year: int
    amount: Decimal
    allocated_amount: Decimal
    utilized_amount: Decimal

    @property
    def remaining_allocation(self) -> Decimal:
        return remaining_of(self.amount, self.allocated_amount, self.utilized_amount)


@dataclass(frozen=True)
class BudgetAllocationInfo:
    """A categorized slice of an organization's budget."""

    allocation_id: UUID
    organization_id: UUID
    fiscal_year: int
    category: str
    amount: Decimal
    utilized_amount: Decimal
    workflow_id: UUID | None = None

    @property
    def remaining_amount(self) -> Decimal:
        return self.amount - self.utilized_amount


@dataclass(frozen=True)
class ExpenseInfo:
    expense_id: UUID
    organization_id: UUID
    fiscal_year: int
    amount: Decimal
    description: str
    expense_date: date
    recorded_by: UUID
    recorded_at: datetime


@dataclass(frozen=True)
class CategoryShare:
    """One row of an organization's category distribution."""

    category: str
    amount: Decimal
    utilized_amount: Decimal
    remaining_amount: Decimal


@dataclass(frozen=True)
class OrganizationBudgetSummary:
    """Organization budget with its category distribution.

    A part that could not be loaded is None, never zero.
    """

    budget: OrganizationBudgetInfo
    categories: tuple[CategoryShare, ...] | None
    expense_total: Decimal | None
    pending_requests: int | None


@dataclass(frozen=True)
class RegionBudgetSummary:
    budget: RegionBudgetInfo
    organization_count: int | None
    organizations_amount: Decimal | None
    organizations_utilized: Decimal | None


@dataclass(frozen=True)
class UtilizationPeriod:
    """Expenses recorded in one calendar month (``period`` is ``YYYY-MM``)."""

    period: str
    expense_total: Decimal
    expense_count: int
    cumulative_total: Decimal


@dataclass(frozen=True)
class UtilizationTrends:
    """Month-by-month spending of a region's organizations.

    Every month of the range appears in ``periods``; a month without
    expenses has a zero total.  ``periods`` is None when the expenses could
    not be loaded, ``organizations_amount`` and ``organizations_utilized``
    when the fiscal-year totals could not.
    """

    region_id: UUID
    start_date: date
    end_date: date
    periods: tuple[UtilizationPeriod, ...] | None
    organizations_amount: Decimal | None
    organizations_utilized: Decimal | None

    @property
    def expense_total(self) -> Decimal | None:
        if self.periods is None:
            return None
        return self.periods[-1].cumulative_total if self.periods else Decimal("0")
