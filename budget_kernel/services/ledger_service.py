"""
LedgerService -- region and organization budgets, allocations, expenses.

Responsibility:
    The only writer of budget rows.  Applies the three approved mutations the
    workflow engine triggers (region increase, disbursement to an
    organization, special allocation), the per-item debit the batch
    processor performs, and the small direct operations (allocation to an
    organization, expense recording) that do not need a workflow.

Architecture position:
    Kernel > Services.  Called by ApprovalWorkflowService and the batch
    processor.  May import from domain/, models/, db/.

Invariants enforced:
    - Every mutation locks the budget rows it touches (SELECT ... FOR UPDATE)
      before reading balances.
    - Remaining balances never go negative:
      InsufficientAllocationError is raised before any write.
    - Every mutating call appends exactly one audit row, after its changes
      are flushed.
    - Direct operations above the policy's ``direct_mutation_limit`` are
      refused with ApprovalRequiredError.

Failure modes:
    - BudgetNotFoundError when a locked budget row does not exist.
    - InsufficientAllocationError, ApprovalRequiredError, ValidationFailedError.
    - StoreTimeoutError on lock waits or statement timeouts (retryable).
    - AuditWriteFailureError propagates; the caller rolls back.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from budget_kernel.db.errors import translate_store_errors
from budget_kernel.db.types import to_money
from budget_kernel.domain.audit import AuditAction, AuditEntityType
from budget_kernel.domain.clock import Clock, SystemClock
from budget_kernel.domain.ledger import (
    SPECIAL_CATEGORY,
    BudgetAllocationInfo,
    ExpenseInfo,
    OrganizationBudgetInfo,
    RegionBudgetInfo,
)
from budget_kernel.domain.policy import ApprovalPolicyTable
from budget_kernel.domain.roles import Actor
from budget_kernel.domain.workflow import BudgetRequest, BudgetRequestStatus
from budget_kernel.exceptions import (
    ApprovalRequiredError,
    BudgetNotFoundError,
    InsufficientAllocationError,
    ValidationFailedError,
)
from budget_kernel.logging_config import get_logger
from budget_kernel.models.ledger import (
    BudgetAllocation,
    BudgetExpense,
    OrganizationBudget,
    RegionBudget,
)
from budget_kernel.models.workflow import BudgetRequestModel
from budget_kernel.services.auditor_service import AuditorService

logger = get_logger("services.ledger")

_ZERO = Decimal("0")


def positive_amount(value) -> Decimal:
    """Coerce ``value`` to Decimal and require it to be > 0."""
    try:
        amount = to_money(value)
    except ValueError as exc:
        raise ValidationFailedError(str(exc)) from exc
    if amount <= _ZERO:
        raise ValidationFailedError(f"Amount must be greater than zero, got {amount}")
    return amount


class LedgerService:
    """
    Budget ledger store.

    Contract:
        Amount arguments accept Decimal, int or numeric strings; floats are
        refused.  ``fiscal_year`` defaults to the clock's current year.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
        - Does NOT decide whether a mutation is approved; callers do.
    """

    def __init__(
        self,
        session: Session,
        auditor: AuditorService,
        clock: Clock | None = None,
        policy: ApprovalPolicyTable | None = None,
    ):
        self._session = session
        self._auditor = auditor
        self._clock = clock or SystemClock()
        # Without a policy table no direct mutation is allowed.
        self._direct_limit = policy.direct_mutation_limit if policy else _ZERO

    def _year(self, fiscal_year: int | None) -> int:
        return fiscal_year if fiscal_year is not None else self._clock.fiscal_year()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _region_row(self, region_id: UUID, year: int, lock: bool = False):
        stmt = select(RegionBudget).where(
            RegionBudget.region_id == region_id,
            RegionBudget.fiscal_year == year,
        )
        if lock:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return self._session.execute(stmt).scalar_one_or_none()

    def _organization_row(self, organization_id: UUID, year: int, lock: bool = False):
        stmt = select(OrganizationBudget).where(
            OrganizationBudget.organization_id == organization_id,
            OrganizationBudget.fiscal_year == year,
        )
        if lock:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return self._session.execute(stmt).scalar_one_or_none()

    def get_region_budget(
        self, region_id: UUID, fiscal_year: int | None = None,
    ) -> RegionBudgetInfo | None:
        row = self._region_row(region_id, self._year(fiscal_year))
        return row.to_dto() if row else None

    def get_organization_budget(
        self, organization_id: UUID, fiscal_year: int | None = None,
    ) -> OrganizationBudgetInfo | None:
        row = self._organization_row(organization_id, self._year(fiscal_year))
        return row.to_dto() if row else None

    def organization_exists(
        self, organization_id: UUID, fiscal_year: int | None = None,
    ) -> bool:
        """An organization is known once it has a budget for the fiscal year."""
        return self._organization_row(organization_id, self._year(fiscal_year)) is not None

    def remaining_allocation(
        self, organization_id: UUID, fiscal_year: int | None = None,
    ) -> Decimal:
        """
        Raises:
            BudgetNotFoundError: The organization has no budget for the year.
        """
        row = self._organization_row(organization_id, self._year(fiscal_year))
        if row is None:
            raise BudgetNotFoundError("organization", str(organization_id))
        return row.remaining_allocation

    def list_allocations(
        self, organization_id: UUID, fiscal_year: int | None = None,
    ) -> list[BudgetAllocationInfo]:
        rows = self._session.execute(
            select(BudgetAllocation)
            .where(
                BudgetAllocation.organization_id == organization_id,
                BudgetAllocation.fiscal_year == self._year(fiscal_year),
            )
            .order_by(BudgetAllocation.category, BudgetAllocation.created_at)
        ).scalars()
        return [row.to_dto() for row in rows]

    def list_expenses(
        self, organization_id: UUID, fiscal_year: int | None = None,
    ) -> list[ExpenseInfo]:
        rows = self._session.execute(
            select(BudgetExpense)
            .where(
                BudgetExpense.organization_id == organization_id,
                BudgetExpense.fiscal_year == self._year(fiscal_year),
            )
            .order_by(BudgetExpense.expense_date.desc(), BudgetExpense.recorded_at.desc())
        ).scalars()
        return [row.to_dto() for row in rows]

    def list_budget_requests(self, organization_id: UUID) -> list[BudgetRequest]:
        """Every budget request of an organization, newest first."""
        rows = self._session.execute(
            select(BudgetRequestModel)
            .where(BudgetRequestModel.organization_id == organization_id)
            .order_by(BudgetRequestModel.requested_at.desc())
        ).scalars()
        return [row.to_dto() for row in rows]

    def pending_budget_requests(self, region_id: UUID) -> list[BudgetRequest]:
        """Pending budget requests within a region, oldest first."""
        rows = self._session.execute(
            select(BudgetRequestModel)
            .where(
                BudgetRequestModel.region_id == region_id,
                BudgetRequestModel.status == BudgetRequestStatus.PENDING.value,
            )
            .order_by(BudgetRequestModel.requested_at)
        ).scalars()
        return [row.to_dto() for row in rows]

    def organization_totals(
        self, region_id: UUID, fiscal_year: int | None = None,
    ) -> tuple[int, Decimal, Decimal]:
        """(organization count, summed amount, summed utilized) for a region."""
        count, amount, utilized = self._session.execute(
            select(
                func.count(OrganizationBudget.id),
                func.coalesce(func.sum(OrganizationBudget.amount), 0),
                func.coalesce(func.sum(OrganizationBudget.utilized_amount), 0),
            ).where(
                OrganizationBudget.region_id == region_id,
                OrganizationBudget.fiscal_year == self._year(fiscal_year),
            )
        ).one()
        return count, to_money(amount), to_money(utilized)

    # ------------------------------------------------------------------
    # Locks
    # ------------------------------------------------------------------

    def lock_organization_budget(
        self, organization_id: UUID, fiscal_year: int | None = None,
    ) -> OrganizationBudget:
        """Lock and return an organization budget row.

        Raises:
            BudgetNotFoundError: No budget for the organization and year.
            StoreTimeoutError: The lock could not be acquired in time.
        """
        with translate_store_errors("lock_organization_budget"):
            row = self._organization_row(organization_id, self._year(fiscal_year), lock=True)
        if row is None:
            raise BudgetNotFoundError("organization", str(organization_id))
        return row

    def lock_region_budget(
        self, region_id: UUID, fiscal_year: int | None = None,
    ) -> RegionBudget:
        """Lock and return a region budget row.

        Raises:
            BudgetNotFoundError: No budget for the region and year.
            StoreTimeoutError: The lock could not be acquired in time.
        """
        with translate_store_errors("lock_region_budget"):
            row = self._region_row(region_id, self._year(fiscal_year), lock=True)
        if row is None:
            raise BudgetNotFoundError("region", str(region_id))
        return row

    # ------------------------------------------------------------------
    # Seeding (stand-in for organization/region administration)
    # ------------------------------------------------------------------

    def open_region_budget(
        self,
        region_id: UUID,
        amount,
        actor: Actor,
        fiscal_year: int | None = None,
    ) -> RegionBudgetInfo:
        """Create a region's budget for a fiscal year."""
        amount = to_money(amount)
        if amount < _ZERO:
            raise ValidationFailedError(f"Budget amount must not be negative, got {amount}")
        year = self._year(fiscal_year)
        if self._region_row(region_id, year) is not None:
            raise ValidationFailedError(
                f"Region {region_id} already has a budget for fiscal year {year}"
            )

        row = RegionBudget(
            region_id=region_id,
            fiscal_year=year,
            amount=amount,
            allocated_amount=_ZERO,
            utilized_amount=_ZERO,
            created_by_id=actor.actor_id,
        )
        self._session.add(row)
        self._session.flush()

        self._auditor.log_action(
            AuditAction.ALLOCATION,
            AuditEntityType.BUDGET,
            row.id,
            changes={"amount": {"old": None, "new": amount}},
            metadata={"region_id": region_id, "fiscal_year": year, "operation": "open"},
            actor_id=actor.actor_id,
        )
        return row.to_dto()

    def open_organization_budget(
        self,
        organization_id: UUID,
        region_id: UUID,
        actor: Actor,
        amount=_ZERO,
        fiscal_year: int | None = None,
    ) -> OrganizationBudgetInfo:
        """Register an organization for a fiscal year with an opening amount."""
        amount = to_money(amount)
        if amount < _ZERO:
            raise ValidationFailedError(f"Budget amount must not be negative, got {amount}")
        year = self._year(fiscal_year)
        if self._organization_row(organization_id, year) is not None:
            raise ValidationFailedError(
                f"Organization {organization_id} already has a budget for fiscal year {year}"
            )

        row = OrganizationBudget(
            organization_id=organization_id,
            region_id=region_id,
            fiscal_year=year,
            amount=amount,
            allocated_amount=_ZERO,
            utilized_amount=_ZERO,
            created_by_id=actor.actor_id,
        )
        self._session.add(row)
        self._session.flush()

        self._auditor.log_action(
            AuditAction.ALLOCATION,
            AuditEntityType.ORGANIZATION,
            organization_id,
            changes={"amount": {"old": None, "new": amount}},
            metadata={"region_id": region_id, "fiscal_year": year, "operation": "open"},
            actor_id=actor.actor_id,
        )
        return row.to_dto()

    # ------------------------------------------------------------------
    # Approved mutations
    # ------------------------------------------------------------------

    def increase_region_budget(
        self,
        region_id: UUID,
        amount,
        actor: Actor,
        workflow_id: UUID | None = None,
        fiscal_year: int | None = None,
    ) -> RegionBudgetInfo:
        """Add ``amount`` to a region budget, opening it if the year has none."""
        amount = positive_amount(amount)
        year = self._year(fiscal_year)

        with translate_store_errors("increase_region_budget"):
            row = self._region_row(region_id, year, lock=True)
        if row is None:
            row = RegionBudget(
                region_id=region_id,
                fiscal_year=year,
                amount=_ZERO,
                allocated_amount=_ZERO,
                utilized_amount=_ZERO,
                created_by_id=actor.actor_id,
            )
            self._session.add(row)

        old_amount = row.amount
        row.amount = old_amount + amount
        self._session.flush()

        self._auditor.log_action(
            AuditAction.ALLOCATION,
            AuditEntityType.BUDGET,
            row.id,
            changes={"amount": {"old": old_amount, "new": row.amount}},
            metadata={
                "region_id": region_id,
                "fiscal_year": year,
                "increase": amount,
                "workflow_id": workflow_id,
            },
            actor_id=actor.actor_id,
        )
        logger.info(
            "region_budget_increased",
            extra={"region_id": str(region_id), "amount": str(amount)},
        )
        return row.to_dto()

    def disburse_to_organization(
        self,
        organization_id: UUID,
        amount,
        actor: Actor,
        workflow_id: UUID | None = None,
        fiscal_year: int | None = None,
    ) -> OrganizationBudgetInfo:
        """Move ``amount`` from the region's unallocated funds to the organization."""
        amount = positive_amount(amount)
        org = self.lock_organization_budget(organization_id, fiscal_year)
        region = self.lock_region_budget(org.region_id, org.fiscal_year)

        remaining = region.amount - region.allocated_amount - region.utilized_amount
        if amount > remaining:
            raise InsufficientAllocationError(
                "region", str(region.region_id), str(amount), str(remaining),
            )

        old_region_allocated = region.allocated_amount
        old_org_amount = org.amount
        region.allocated_amount = old_region_allocated + amount
        org.amount = old_org_amount + amount
        self._session.flush()

        self._auditor.log_action(
            AuditAction.DISBURSEMENT,
            AuditEntityType.BUDGET,
            org.id,
            changes={
                "amount": {"old": old_org_amount, "new": org.amount},
                "region_allocated_amount": {
                    "old": old_region_allocated, "new": region.allocated_amount,
                },
            },
            metadata={
                "organization_id": organization_id,
                "region_id": org.region_id,
                "fiscal_year": org.fiscal_year,
                "workflow_id": workflow_id,
            },
            actor_id=actor.actor_id,
        )
        logger.info(
            "organization_disbursed",
            extra={"organization_id": str(organization_id), "amount": str(amount)},
        )
        return org.to_dto()

    def create_special_allocation(
        self,
        organization_id: UUID,
        amount,
        actor: Actor,
        workflow_id: UUID | None = None,
        category: str = SPECIAL_CATEGORY,
        fiscal_year: int | None = None,
    ) -> BudgetAllocationInfo:
        """Carve a categorized allocation out of the organization's budget."""
        amount = positive_amount(amount)
        org = self.lock_organization_budget(organization_id, fiscal_year)

        remaining = org.remaining_allocation
        if amount > remaining:
            raise InsufficientAllocationError(
                "organization", str(organization_id), str(amount), str(remaining),
            )

        allocation = BudgetAllocation(
            organization_id=organization_id,
            fiscal_year=org.fiscal_year,
            category=category,
            amount=amount,
            utilized_amount=_ZERO,
            workflow_id=workflow_id,
            created_by_id=actor.actor_id,
        )
        self._session.add(allocation)
        old_allocated = org.allocated_amount
        org.allocated_amount = old_allocated + amount
        self._session.flush()

        self._auditor.log_action(
            AuditAction.ALLOCATION,
            AuditEntityType.BUDGET,
            allocation.id,
            changes={
                "allocation_amount": {"old": None, "new": amount},
                "organization_allocated_amount": {
                    "old": old_allocated, "new": org.allocated_amount,
                },
            },
            metadata={
                "organization_id": organization_id,
                "category": category,
                "fiscal_year": org.fiscal_year,
                "workflow_id": workflow_id,
            },
            actor_id=actor.actor_id,
        )
        return allocation.to_dto()

    def debit_organization_allocation(
        self,
        organization_id: UUID,
        amount,
        actor: Actor,
        reference: str | None = None,
        batch_id: UUID | None = None,
        fiscal_year: int | None = None,
    ) -> OrganizationBudgetInfo:
        """Pay out ``amount`` against the organization's remaining allocation.

        Raises:
            InsufficientAllocationError: ``amount`` exceeds the remaining
                allocation after the row lock is held.
        """
        amount = positive_amount(amount)
        org = self.lock_organization_budget(organization_id, fiscal_year)

        remaining = org.remaining_allocation
        if amount > remaining:
            raise InsufficientAllocationError(
                "organization", str(organization_id), str(amount), str(remaining),
            )

        old_utilized = org.utilized_amount
        org.utilized_amount = old_utilized + amount
        self._session.flush()

        self._auditor.log_action(
            AuditAction.DISBURSEMENT,
            AuditEntityType.BUDGET,
            org.id,
            changes={"utilized_amount": {"old": old_utilized, "new": org.utilized_amount}},
            metadata={
                "organization_id": organization_id,
                "reference_number": reference,
                "batch_id": batch_id,
                "fiscal_year": org.fiscal_year,
            },
            actor_id=actor.actor_id,
        )
        return org.to_dto()

    # ------------------------------------------------------------------
    # Direct operations (below the policy's direct mutation limit)
    # ------------------------------------------------------------------

    def _require_direct(self, operation: str, amount: Decimal) -> None:
        if amount > self._direct_limit:
            logger.warning(
                "direct_mutation_refused",
                extra={
                    "operation": operation,
                    "amount": str(amount),
                    "limit": str(self._direct_limit),
                },
            )
            raise ApprovalRequiredError(operation, str(amount), str(self._direct_limit))

    def allocate_organization_budget(
        self,
        region_id: UUID,
        organization_id: UUID,
        amount,
        fiscal_year: int | None,
        actor: Actor,
    ) -> OrganizationBudgetInfo:
        """Assign part of a region's budget to one of its organizations.

        Creates the organization's budget for the year if it has none.

        Raises:
            ApprovalRequiredError: ``amount`` is above the direct mutation limit.
            BudgetNotFoundError: The region has no budget for the year.
            InsufficientAllocationError: The region cannot cover ``amount``.
            ValidationFailedError: The organization belongs to another region.
        """
        amount = positive_amount(amount)
        self._require_direct("allocate_organization_budget", amount)
        year = self._year(fiscal_year)

        region = self.lock_region_budget(region_id, year)
        remaining = region.amount - region.allocated_amount - region.utilized_amount
        if amount > remaining:
            raise InsufficientAllocationError(
                "region", str(region_id), str(amount), str(remaining),
            )

        with translate_store_errors("allocate_organization_budget"):
            org = self._organization_row(organization_id, year, lock=True)
        if org is None:
            org = OrganizationBudget(
                organization_id=organization_id,
                region_id=region_id,
                fiscal_year=year,
                amount=_ZERO,
                allocated_amount=_ZERO,
                utilized_amount=_ZERO,
                created_by_id=actor.actor_id,
            )
            self._session.add(org)
        elif org.region_id != region_id:
            raise ValidationFailedError(
                f"Organization {organization_id} does not belong to region {region_id}"
            )

        old_org_amount = org.amount
        old_region_allocated = region.allocated_amount
        org.amount = old_org_amount + amount
        region.allocated_amount = old_region_allocated + amount
        self._session.flush()

        self._auditor.log_action(
            AuditAction.ALLOCATION,
            AuditEntityType.BUDGET,
            org.id,
            changes={
                "amount": {"old": old_org_amount, "new": org.amount},
                "region_allocated_amount": {
                    "old": old_region_allocated, "new": region.allocated_amount,
                },
            },
            metadata={
                "organization_id": organization_id,
                "region_id": region_id,
                "fiscal_year": year,
            },
            actor_id=actor.actor_id,
        )
        logger.info(
            "organization_budget_allocated",
            extra={"organization_id": str(organization_id), "amount": str(amount)},
        )
        return org.to_dto()

    def record_expense(
        self,
        organization_id: UUID,
        amount,
        description: str,
        expense_date: date,
        actor: Actor,
    ) -> ExpenseInfo:
        """Record an expense against the organization's remaining allocation.

        Raises:
            ApprovalRequiredError: ``amount`` is above the direct mutation limit.
            BudgetNotFoundError: The organization has no budget for the year.
            InsufficientAllocationError: The remaining allocation is too small.
        """
        amount = positive_amount(amount)
        self._require_direct("record_expense", amount)

        org = self.lock_organization_budget(organization_id)
        remaining = org.remaining_allocation
        if amount > remaining:
            raise InsufficientAllocationError(
                "organization", str(organization_id), str(amount), str(remaining),
            )

        expense = BudgetExpense(
            organization_id=organization_id,
            fiscal_year=org.fiscal_year,
            amount=amount,
            description=description or "",
            expense_date=expense_date,
            recorded_at=self._clock.now(),
            created_by_id=actor.actor_id,
        )
        self._session.add(expense)
        old_utilized = org.utilized_amount
        org.utilized_amount = old_utilized + amount
        self._session.flush()

        self._auditor.log_action(
            AuditAction.MODIFICATION,
            AuditEntityType.BUDGET,
            org.id,
            changes={"utilized_amount": {"old": old_utilized, "new": org.utilized_amount}},
            metadata={
                "organization_id": organization_id,
                "expense_id": expense.id,
                "description": description,
                "expense_date": expense_date,
            },
            actor_id=actor.actor_id,
        )
        return expense.to_dto()
