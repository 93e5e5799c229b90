"""
Module: budget_kernel.models.ledger
Responsibility: ORM persistence for the budget ledger -- region budgets,
    organization budgets, categorized allocations and recorded expenses.
Architecture position: Kernel > Models.  May import from db/ and domain/ only.

Invariants enforced:
    - One budget row per (region, fiscal year) and per (organization,
      fiscal year).
    - Amount columns are non-negative (DB check constraints).
    - Rows are mutated only by LedgerService, which locks them first.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import CheckConstraint, Date, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from budget_kernel.db.base import TrackedBase, UTCDateTime, UUIDString
from budget_kernel.domain.ledger import (
    BudgetAllocationInfo,
    ExpenseInfo,
    OrganizationBudgetInfo,
    RegionBudgetInfo,
)

_ZERO = Decimal("0")


class RegionBudget(TrackedBase):
    """A region's budget for one fiscal year."""

    __tablename__ = "region_budgets"

    __table_args__ = (
        UniqueConstraint("region_id", "fiscal_year", name="uq_region_budgets_year"),
        CheckConstraint("amount >= 0", name="ck_region_budgets_amount"),
        CheckConstraint("allocated_amount >= 0", name="ck_region_budgets_allocated"),
        CheckConstraint("utilized_amount >= 0", name="ck_region_budgets_utilized"),
    )

    region_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    fiscal_year: Mapped[int] = mapped_column(Integer, nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False, default=_ZERO)
    allocated_amount: Mapped[Decimal] = mapped_column(nullable=False, default=_ZERO)
    utilized_amount: Mapped[Decimal] = mapped_column(nullable=False, default=_ZERO)

    def __repr__(self) -> str:
        return f"<RegionBudget {self.region_id} FY{self.fiscal_year} amount={self.amount}>"

    def to_dto(self) -> RegionBudgetInfo:
        return RegionBudgetInfo(
            budget_id=self.id,
            region_id=self.region_id,
            fiscal_year=self.fiscal_year,
            amount=self.amount,
            allocated_amount=self.allocated_amount,
            utilized_amount=self.utilized_amount,
        )


class OrganizationBudget(TrackedBase):
    """An organization's budget for one fiscal year.

    The row's existence is what makes an organization known to the ledger.
    """

    __tablename__ = "organization_budgets"

    __table_args__ = (
        UniqueConstraint(
            "organization_id", "fiscal_year", name="uq_organization_budgets_year",
        ),
        Index("idx_organization_budgets_region", "region_id", "fiscal_year"),
        CheckConstraint("amount >= 0", name="ck_organization_budgets_amount"),
        CheckConstraint("allocated_amount >= 0", name="ck_organization_budgets_allocated"),
        CheckConstraint("utilized_amount >= 0", name="ck_organization_budgets_utilized"),
    )

    organization_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    region_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    fiscal_year: Mapped[int] = mapped_column(Integer, nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False, default=_ZERO)
    allocated_amount: Mapped[Decimal] = mapped_column(nullable=False, default=_ZERO)
    utilized_amount: Mapped[Decimal] = mapped_column(nullable=False, default=_ZERO)

    def __repr__(self) -> str:
        return (
            f"<OrganizationBudget {self.organization_id} FY{self.fiscal_year} "
            f"amount={self.amount}>"
        )

    @property
    def remaining_allocation(self) -> Decimal:
        return self.amount - self.allocated_amount - self.utilized_amount

    def to_dto(self) -> OrganizationBudgetInfo:
        return OrganizationBudgetInfo(
            budget_id=self.id,
            organization_id=self.organization_id,
            region_id=self.region_id,
            fiscal_year=self.fiscal_year,
            amount=self.amount,
            allocated_amount=self.allocated_amount,
            utilized_amount=self.utilized_amount,
        )


class BudgetAllocation(TrackedBase):
    """A categorized slice of an organization budget."""

    __tablename__ = "budget_allocations"

    __table_args__ = (
        Index("idx_budget_allocations_org", "organization_id", "fiscal_year"),
        CheckConstraint("amount > 0", name="ck_budget_allocations_amount"),
    )

    organization_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    fiscal_year: Mapped[int] = mapped_column(Integer, nullable=False)
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    utilized_amount: Mapped[Decimal] = mapped_column(nullable=False, default=_ZERO)
    # Set when the allocation was created by an approved workflow
    workflow_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    def to_dto(self) -> BudgetAllocationInfo:
        return BudgetAllocationInfo(
            allocation_id=self.id,
            organization_id=self.organization_id,
            fiscal_year=self.fiscal_year,
            category=self.category,
            amount=self.amount,
            utilized_amount=self.utilized_amount,
            workflow_id=self.workflow_id,
        )


class BudgetExpense(TrackedBase):
    """An expense recorded against an organization budget."""

    __tablename__ = "budget_expenses"

    __table_args__ = (
        Index("idx_budget_expenses_org", "organization_id", "fiscal_year"),
        CheckConstraint("amount > 0", name="ck_budget_expenses_amount"),
    )

    organization_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    fiscal_year: Mapped[int] = mapped_column(Integer, nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    expense_date: Mapped[date] = mapped_column(Date, nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    def to_dto(self) -> ExpenseInfo:
        return ExpenseInfo(
            expense_id=self.id,
            organization_id=self.organization_id,
            fiscal_year=self.fiscal_year,
            amount=self.amount,
            description=self.description,
            expense_date=self.expense_date,
            recorded_by=self.created_by_id,
            recorded_at=self.recorded_at,
        )
