"""
Module: budget_kernel.selectors.reporting_selector
Responsibility: Read-side facade for the UI.  Aggregates approval queues,
    workflow and batch status, budget summaries and monthly utilization
    trends, and reports every
    outcome as a ``FetchResult`` instead of raising.
Architecture position: Kernel > Selectors.  Reads budget_batch models for
    batch status; never imports services.

Invariants enforced:
    - Never raises for expected failures: bad ids and unknown roles are
      ``INVALID_INPUT``, missing rows are ``NOT_FOUND``, store failures are
      ``STORE_UNAVAILABLE``.
    - A summary part that fails to load is reported as None and named in
      ``PartialData.missing``; it is never replaced with zero.
"""

from __future__ import annotations

from collections import Counter, defaultdict
from datetime import date
from decimal import Decimal
from typing import Callable, Iterator, TypeVar
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from budget_batch.domain.types import BatchStatusView
from budget_batch.models.batch import DisbursementBatchModel
from budget_kernel.domain.clock import Clock, SystemClock
from budget_kernel.domain.ledger import (
    CategoryShare,
    OrganizationBudgetSummary,
    RegionBudgetSummary,
    UtilizationPeriod,
    UtilizationTrends,
)
from budget_kernel.domain.results import (
    Err,
    FetchError,
    FetchErrorKind,
    FetchResult,
    Ok,
    PartialData,
)
from budget_kernel.domain.workflow import BudgetRequestStatus
from budget_kernel.exceptions import (
    StoreTimeoutError,
    UnknownRoleError,
    WorkflowNotFoundError,
)
from budget_kernel.logging_config import get_logger
from budget_kernel.models.ledger import (
    BudgetAllocation,
    BudgetExpense,
    OrganizationBudget,
    RegionBudget,
)
from budget_kernel.models.workflow import BudgetRequestModel
from budget_kernel.selectors.base import BaseSelector
from budget_kernel.selectors.workflow_selector import WorkflowSelector

logger = get_logger("selectors.reporting")

T = TypeVar("T")

_STORE_ERRORS = (SQLAlchemyError, StoreTimeoutError)


def _err(kind: FetchErrorKind, message: str) -> Err:
    return Err(FetchError(kind, message))


def _parse_id(value: UUID | str, label: str) -> UUID:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError:
        raise ValueError(f"Invalid {label} id: {value!r}") from None


def _months(start: date, end: date) -> Iterator[str]:
    year, month = start.year, start.month
    while (year, month) <= (end.year, end.month):
        yield f"{year:04d}-{month:02d}"
        year, month = (year + 1, 1) if month == 12 else (year, month + 1)


class ReportingSelector(BaseSelector):
    """Query facade returning ``FetchResult`` values."""

    def __init__(self, session: Session, clock: Clock | None = None):
        super().__init__(session)
        self._clock = clock or SystemClock()
        self._workflows = WorkflowSelector(session)

    def _year(self, fiscal_year: int | None) -> int:
        return fiscal_year if fiscal_year is not None else self._clock.fiscal_year()

    def _store_failure(self, query: str, exc: Exception) -> Err:
        logger.warning(
            "reporting_store_unavailable",
            extra={"query": query, "error": type(exc).__name__},
        )
        return _err(FetchErrorKind.STORE_UNAVAILABLE, f"{query}: {exc}")

    def _optional_part(
        self, name: str, loader: Callable[[], T], missing: list[str],
    ) -> T | None:
        try:
            return loader()
        except _STORE_ERRORS as exc:
            logger.warning(
                "reporting_part_unavailable",
                extra={"part": name, "error": type(exc).__name__},
            )
            missing.append(name)
            return None

    # ------------------------------------------------------------------
    # Workflows
    # ------------------------------------------------------------------

    def pending_approvals_for_role(self, raw_role: str) -> FetchResult:
        try:
            pending = self._workflows.pending_approvals(raw_role)
        except UnknownRoleError as exc:
            return _err(FetchErrorKind.INVALID_INPUT, str(exc))
        except _STORE_ERRORS as exc:
            return self._store_failure("pending_approvals_for_role", exc)
        return Ok(tuple(pending))

    def workflow_status(self, workflow_id: UUID | str) -> FetchResult:
        try:
            workflow_id = _parse_id(workflow_id, "workflow")
        except ValueError as exc:
            return _err(FetchErrorKind.INVALID_INPUT, str(exc))
        try:
            return Ok(self._workflows.workflow_status(workflow_id))
        except WorkflowNotFoundError as exc:
            return _err(FetchErrorKind.NOT_FOUND, str(exc))
        except _STORE_ERRORS as exc:
            return self._store_failure("workflow_status", exc)

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    def batch_status(self, batch_id: UUID | str) -> FetchResult:
        try:
            batch_id = _parse_id(batch_id, "batch")
        except ValueError as exc:
            return _err(FetchErrorKind.INVALID_INPUT, str(exc))
        try:
            model = self.session.get(DisbursementBatchModel, batch_id)
            if model is None:
                return _err(FetchErrorKind.NOT_FOUND, f"Batch not found: {batch_id}")
            return Ok(BatchStatusView.from_batch(model.to_dto()))
        except _STORE_ERRORS as exc:
            return self._store_failure("batch_status", exc)

    # ------------------------------------------------------------------
    # Budgets
    # ------------------------------------------------------------------

    def _categories(self, organization_id: UUID, year: int) -> tuple[CategoryShare, ...]:
        rows = self.session.execute(
            select(
                BudgetAllocation.category,
                func.sum(BudgetAllocation.amount),
                func.sum(BudgetAllocation.utilized_amount),
            )
            .where(
                BudgetAllocation.organization_id == organization_id,
                BudgetAllocation.fiscal_year == year,
            )
            .group_by(BudgetAllocation.category)
            .order_by(BudgetAllocation.category)
        ).all()
        shares = []
        for category, amount, utilized in rows:
            amount = Decimal(amount or 0)
            utilized = Decimal(utilized or 0)
            shares.append(CategoryShare(
                category=category,
                amount=amount,
                utilized_amount=utilized,
                remaining_amount=amount - utilized,
            ))
        return tuple(shares)

    def _expense_total(self, organization_id: UUID, year: int) -> Decimal:
        total = self.session.execute(
            select(func.coalesce(func.sum(BudgetExpense.amount), 0)).where(
                BudgetExpense.organization_id == organization_id,
                BudgetExpense.fiscal_year == year,
            )
        ).scalar_one()
        return Decimal(total)

    def _pending_request_count(self, organization_id: UUID) -> int:
        return self.session.execute(
            select(func.count(BudgetRequestModel.id)).where(
                BudgetRequestModel.organization_id == organization_id,
                BudgetRequestModel.status == BudgetRequestStatus.PENDING.value,
            )
        ).scalar_one()

    def _organization_totals(
        self, region_id: UUID, year: int,
    ) -> tuple[int, Decimal, Decimal]:
        count, amount, utilized = self.session.execute(
            select(
                func.count(OrganizationBudget.id),
                func.coalesce(func.sum(OrganizationBudget.amount), 0),
                func.coalesce(func.sum(OrganizationBudget.utilized_amount), 0),
            ).where(
                OrganizationBudget.region_id == region_id,
                OrganizationBudget.fiscal_year == year,
            )
        ).one()
        return count, Decimal(amount), Decimal(utilized)

    def organization_budget_summary(
        self, organization_id: UUID | str, fiscal_year: int | None = None,
    ) -> FetchResult:
        """Organization budget with category distribution, expenses and open requests.

        The budget row itself is required; the other parts degrade to
        ``PartialData`` when they cannot be loaded.
        """
        try:
            organization_id = _parse_id(organization_id, "organization")
        except ValueError as exc:
            return _err(FetchErrorKind.INVALID_INPUT, str(exc))
        year = self._year(fiscal_year)

        try:
            row = self.session.execute(
                select(OrganizationBudget).where(
                    OrganizationBudget.organization_id == organization_id,
                    OrganizationBudget.fiscal_year == year,
                )
            ).scalar_one_or_none()
        except _STORE_ERRORS as exc:
            return self._store_failure("organization_budget_summary", exc)
        if row is None:
            return _err(
                FetchErrorKind.NOT_FOUND,
                f"No budget for organization {organization_id} in FY{year}",
            )

        missing: list[str] = []
        summary = OrganizationBudgetSummary(
            budget=row.to_dto(),
            categories=self._optional_part(
                "categories", lambda: self._categories(organization_id, year), missing,
            ),
            expense_total=self._optional_part(
                "expense_total", lambda: self._expense_total(organization_id, year), missing,
            ),
            pending_requests=self._optional_part(
                "pending_requests", lambda: self._pending_request_count(organization_id),
                missing,
            ),
        )
        if missing:
            return PartialData(summary, tuple(missing))
        return Ok(summary)

    def region_budget_summary(
        self, region_id: UUID | str, fiscal_year: int | None = None,
    ) -> FetchResult:
        try:
            region_id = _parse_id(region_id, "region")
        except ValueError as exc:
            return _err(FetchErrorKind.INVALID_INPUT, str(exc))
        year = self._year(fiscal_year)

        try:
            row = self.session.execute(
                select(RegionBudget).where(
                    RegionBudget.region_id == region_id,
                    RegionBudget.fiscal_year == year,
                )
            ).scalar_one_or_none()
        except _STORE_ERRORS as exc:
            return self._store_failure("region_budget_summary", exc)
        if row is None:
            return _err(
                FetchErrorKind.NOT_FOUND, f"No budget for region {region_id} in FY{year}",
            )

        missing: list[str] = []
        totals = self._optional_part(
            "organization_totals", lambda: self._organization_totals(region_id, year), missing,
        )
        count, amount, utilized = totals if totals is not None else (None, None, None)
        summary = RegionBudgetSummary(
            budget=row.to_dto(),
            organization_count=count,
            organizations_amount=amount,
            organizations_utilized=utilized,
        )
        if missing:
            return PartialData(summary, tuple(missing))
        return Ok(summary)

    def _monthly_expenses(
        self, region_id: UUID, start_date: date, end_date: date,
    ) -> tuple[UtilizationPeriod, ...]:
        organizations = select(OrganizationBudget.organization_id).where(
            OrganizationBudget.region_id == region_id,
        )
        rows = self.session.execute(
            select(BudgetExpense.expense_date, BudgetExpense.amount).where(
                BudgetExpense.organization_id.in_(organizations),
                BudgetExpense.expense_date >= start_date,
                BudgetExpense.expense_date <= end_date,
            )
        ).all()

        totals: dict[str, Decimal] = defaultdict(lambda: Decimal("0"))
        counts: Counter[str] = Counter()
        for expense_date, amount in rows:
            key = f"{expense_date.year:04d}-{expense_date.month:02d}"
            totals[key] += Decimal(amount)
            counts[key] += 1

        periods = []
        running = Decimal("0")
        for key in _months(start_date, end_date):
            running += totals[key]
            periods.append(UtilizationPeriod(
                period=key,
                expense_total=totals[key],
                expense_count=counts[key],
                cumulative_total=running,
            ))
        return tuple(periods)

    def utilization_trends(
        self, region_id: UUID | str, start_date: date, end_date: date,
    ) -> FetchResult:
        """Monthly expense totals of the region's organizations between two
        dates (inclusive), with the organizations' budget totals for the
        fiscal year of ``end_date``.
        """
        try:
            region_id = _parse_id(region_id, "region")
        except ValueError as exc:
            return _err(FetchErrorKind.INVALID_INPUT, str(exc))
        if start_date > end_date:
            return _err(
                FetchErrorKind.INVALID_INPUT,
                f"start_date {start_date} is after end_date {end_date}",
            )

        try:
            known = self.session.execute(
                select(func.count(RegionBudget.id)).where(RegionBudget.region_id == region_id)
            ).scalar_one()
        except _STORE_ERRORS as exc:
            return self._store_failure("utilization_trends", exc)
        if not known:
            return _err(FetchErrorKind.NOT_FOUND, f"No budget for region {region_id}")

        missing: list[str] = []
        periods = self._optional_part(
            "periods", lambda: self._monthly_expenses(region_id, start_date, end_date), missing,
        )
        totals = self._optional_part(
            "organization_totals",
            lambda: self._organization_totals(region_id, end_date.year),
            missing,
        )
        _, amount, utilized = totals if totals is not None else (None, None, None)
        trends = UtilizationTrends(
            region_id=region_id,
            start_date=start_date,
            end_date=end_date,
            periods=periods,
            organizations_amount=amount,
            organizations_utilized=utilized,
        )
        if missing:
            return PartialData(trends, tuple(missing))
        return Ok(trends)
