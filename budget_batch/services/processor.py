"""
BatchDisbursementProcessor -- SAVEPOINT-per-item disbursement batches.

Contract:
    Validates, creates, runs and re-runs disbursement batches.  A run debits
    each item's organization through LedgerService inside the item's own
    SAVEPOINT; an item failure is captured on the item and never aborts its
    siblings.

Architecture: budget_batch/services.  Imports from budget_batch.domain,
    budget_batch.models, and kernel services.

Invariants enforced:
    - SAVEPOINT isolation per item.
    - Items already ``succeeded`` are never executed again, so re-running a
      batch can not double-debit.
    - ``total_amount`` equals the sum of item amounts; nothing is persisted
      for a batch that fails validation.
    - Concurrency guard: the batch row is locked (FOR UPDATE) for the run.
    - All timestamps from the injected Clock.
    - Audit row for creation and for every run.
"""

from __future__ import annotations

import json
from collections import defaultdict
from dataclasses import replace
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Iterable, Mapping
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from budget_kernel.db.errors import translate_store_errors
from budget_kernel.db.types import to_money
from budget_kernel.domain.audit import AuditAction, AuditEntityType
from budget_kernel.domain.clock import Clock, SystemClock
from budget_kernel.domain.collaborators import Notification
from budget_kernel.domain.roles import Actor, Role
from budget_kernel.exceptions import (
    BatchAlreadyProcessingError,
    BatchNotFailedError,
    BatchNotFoundError,
    BudgetKernelError,
    ValidationFailedError,
)
from budget_kernel.logging_config import LogContext, get_logger
from budget_kernel.services.auditor_service import AuditorService
from budget_kernel.services.ledger_service import LedgerService
from budget_kernel.services.notifier import BestEffortNotifier
from budget_kernel.services.sequence_service import SequenceService
from budget_kernel.utils.dates import to_utc_bound
from budget_kernel.utils.hashing import canonicalize_json

from budget_batch.domain.types import (
    BatchRunResult,
    BatchStatus,
    BatchStatusView,
    BatchSummary,
    DisbursementBatch,
    DisbursementItemInput,
    ItemIssue,
    ItemIssueCode,
    ItemStatus,
    ItemValidation,
    ValidationResult,
)
from budget_batch.models.batch import DisbursementBatchModel, DisbursementItemModel

logger = get_logger("batch.processor")

_ZERO = Decimal("0")


def _organization_key(value: Any) -> UUID | str:
    """UUID when the value parses as one, else the raw text.

    A raw value names no organization, so validation reports it as unknown.
    """
    if isinstance(value, UUID):
        return value
    text = "" if value is None else str(value).strip()
    try:
        return UUID(text)
    except ValueError:
        return text


def _as_input(item: DisbursementItemInput | Mapping[str, Any]) -> DisbursementItemInput:
    if isinstance(item, DisbursementItemInput):
        return replace(item, organization_id=_organization_key(item.organization_id))
    return DisbursementItemInput(
        organization_id=_organization_key(item.get("organization_id")),
        amount=item.get("amount"),
        purpose=item.get("purpose") or "",
        reference_number=item.get("reference_number") or "",
    )


class BatchDisbursementProcessor:
    """Batch disbursement engine with SAVEPOINT-per-item isolation.

    Contract:
        - ``validate_batch()`` checks items without writing anything.
        - ``create_batch_disbursement()`` persists a PENDING batch.
        - ``process_batch()`` / ``retry_failed_items()`` run it.
        - ``get_batch_status()`` / ``get_batch_summary()`` for queries.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
        - Does NOT retry internally; callers re-run failed batches.
    """

    def __init__(
        self,
        session: Session,
        auditor: AuditorService,
        ledger: LedgerService,
        clock: Clock | None = None,
        notifier: BestEffortNotifier | None = None,
        sequence_service: SequenceService | None = None,
    ):
        self._session = session
        self._auditor = auditor
        self._ledger = ledger
        self._clock = clock or SystemClock()
        self._notifier = notifier or BestEffortNotifier()
        self._sequence = sequence_service or SequenceService(session)

    # -------------------------------------------------------------------------
    # Validate
    # -------------------------------------------------------------------------

    def validate_batch(
        self, items: Iterable[DisbursementItemInput | Mapping[str, Any]],
    ) -> ValidationResult:
        """Check every item: positive amount, known organization, unique
        reference number, and per-organization total within the remaining
        allocation.  No mutation.
        """
        inputs = [_as_input(item) for item in items]
        if not inputs:
            return ValidationResult(items=(), batch_errors=("Batch has no items",))

        issues: list[list[ItemIssue]] = [[] for _ in inputs]
        amounts: list[Decimal | None] = []
        seen_references: set[str] = set()

        for index, item in enumerate(inputs):
            try:
                amount = to_money(item.amount)
            except ValueError:
                amount = None
            if amount is None or amount <= _ZERO:
                issues[index].append(ItemIssue(
                    ItemIssueCode.INVALID_AMOUNT,
                    f"Amount must be greater than zero, got {item.amount!r}",
                ))
                amount = None
            amounts.append(amount)

            reference = (item.reference_number or "").strip()
            if not reference:
                issues[index].append(ItemIssue(
                    ItemIssueCode.MISSING_REFERENCE, "Reference number is required",
                ))
            elif reference in seen_references:
                issues[index].append(ItemIssue(
                    ItemIssueCode.DUPLICATE_REFERENCE,
                    f"Reference number {reference!r} appears more than once",
                ))
            seen_references.add(reference)

        remaining: dict[UUID | str, Decimal | None] = {}
        for item in inputs:
            key = item.organization_id
            if key in remaining:
                continue
            budget = (
                self._ledger.get_organization_budget(key) if isinstance(key, UUID) else None
            )
            remaining[key] = budget.remaining_allocation if budget is not None else None

        requested: dict[UUID | str, Decimal] = defaultdict(lambda: _ZERO)
        for item, amount in zip(inputs, amounts):
            if amount is not None:
                requested[item.organization_id] += amount

        for index, item in enumerate(inputs):
            available = remaining[item.organization_id]
            if available is None:
                message = (
                    f"Organization {item.organization_id} has no budget this fiscal year"
                    if isinstance(item.organization_id, UUID)
                    else f"Unknown organization id {item.organization_id!r}"
                )
                issues[index].append(ItemIssue(ItemIssueCode.UNKNOWN_ORGANIZATION, message))
            elif amounts[index] is not None and requested[item.organization_id] > available:
                issues[index].append(ItemIssue(
                    ItemIssueCode.INSUFFICIENT_ALLOCATION,
                    f"Batch requests {requested[item.organization_id]} for organization "
                    f"{item.organization_id}; remaining allocation is {available}",
                ))

        return ValidationResult(items=tuple(
            ItemValidation(
                index=index,
                organization_id=item.organization_id,
                amount=amounts[index],
                reference_number=(item.reference_number or "").strip(),
                issues=tuple(issues[index]),
            )
            for index, item in enumerate(inputs)
        ))

    # -------------------------------------------------------------------------
    # Create
    # -------------------------------------------------------------------------

    def create_batch_disbursement(
        self,
        items: Iterable[DisbursementItemInput | Mapping[str, Any]],
        metadata: dict[str, Any] | None,
        actor: Actor,
    ) -> DisbursementBatch:
        """Persist a PENDING batch of validated items.

        Raises:
            ValidationFailedError: Any item failed validation.  ``result``
                carries the ValidationResult; nothing is persisted.
        """
        inputs = [_as_input(item) for item in items]
        result = self.validate_batch(inputs)
        if not result.is_valid:
            logger.warning(
                "batch_validation_failed",
                extra={
                    "item_count": len(inputs),
                    "failed_count": len(result.failed_items),
                    "batch_errors": list(result.batch_errors),
                },
            )
            raise ValidationFailedError(
                f"Batch validation failed: {len(result.failed_items)} of "
                f"{len(inputs)} item(s) invalid",
                result=result,
            )

        amounts = [to_money(item.amount) for item in inputs]
        total = sum(amounts, _ZERO)
        organization_count = len({item.organization_id for item in inputs})

        fiscal_year = self._clock.fiscal_year()
        batch_number = self._sequence.next_batch_number(fiscal_year)
        now = self._clock.now()

        model = DisbursementBatchModel(
            batch_number=batch_number,
            fiscal_year=fiscal_year,
            total_amount=total,
            organization_count=organization_count,
            status=BatchStatus.PENDING.value,
            attempt_count=0,
            metadata_=json.loads(canonicalize_json(metadata or {})),
            created_by_id=actor.actor_id,
        )
        model.created_at = now
        model.items = [
            DisbursementItemModel(
                item_index=index,
                organization_id=item.organization_id,
                amount=amount,
                purpose=item.purpose or "",
                reference_number=item.reference_number.strip(),
                status=ItemStatus.PENDING.value,
                attempt_count=0,
                created_by_id=actor.actor_id,
            )
            for index, (item, amount) in enumerate(zip(inputs, amounts))
        ]
        self._session.add(model)
        self._session.flush()

        self._auditor.log_action(
            AuditAction.DISBURSEMENT,
            AuditEntityType.BATCH,
            model.id,
            changes={"status": {"old": None, "new": BatchStatus.PENDING.value}},
            metadata={
                "batch_number": batch_number,
                "total_amount": total,
                "item_count": len(inputs),
                "organization_count": organization_count,
            },
            actor_id=actor.actor_id,
        )

        logger.info(
            "batch_created",
            extra={
                "batch_id": str(model.id),
                "batch_number": batch_number,
                "total_amount": str(total),
                "item_count": len(inputs),
            },
        )
        return model.to_dto()

    # -------------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------------

    def _lock(self, batch_id: UUID) -> DisbursementBatchModel:
        with translate_store_errors("lock_batch"):
            model = self._session.execute(
                select(DisbursementBatchModel)
                .where(DisbursementBatchModel.id == batch_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            ).scalar_one_or_none()
        if model is None:
            raise BatchNotFoundError(str(batch_id))
        return model

    def _get(self, batch_id: UUID) -> DisbursementBatchModel:
        model = self._session.get(DisbursementBatchModel, batch_id)
        if model is None:
            raise BatchNotFoundError(str(batch_id))
        return model

    def process_batch(self, batch_id: UUID, actor: Actor) -> BatchRunResult:
        """Execute every item that has not yet succeeded.

        A completed batch returns immediately without re-executing anything.

        Raises:
            BatchNotFoundError: Unknown batch.
            BatchAlreadyProcessingError: Another run holds the batch.
        """
        return self._run(batch_id, actor, only_failed=False)

    def retry_failed_items(self, batch_id: UUID, actor: Actor) -> BatchRunResult:
        """Re-run only the items whose last attempt failed.

        Raises:
            BatchNotFailedError: No item of the batch is failed.
        """
        model = self._get(batch_id)
        if not any(item.status == ItemStatus.FAILED.value for item in model.items):
            raise BatchNotFailedError(str(batch_id), model.status)
        return self._run(batch_id, actor, only_failed=True)

    def _run(self, batch_id: UUID, actor: Actor, only_failed: bool) -> BatchRunResult:
        with LogContext.bind(batch_id=batch_id, actor_id=actor.actor_id):
            model = self._lock(batch_id)
            old_status = BatchStatus(model.status)

            if old_status == BatchStatus.PROCESSING:
                raise BatchAlreadyProcessingError(str(batch_id))

            if old_status == BatchStatus.COMPLETED:
                logger.info(
                    "batch_already_completed",
                    extra={"batch_number": model.batch_number},
                )
                return BatchRunResult(
                    batch_id=model.id,
                    batch_number=model.batch_number,
                    status=BatchStatus.COMPLETED,
                    attempted=0,
                    succeeded=0,
                    failed=0,
                    skipped=len(model.items),
                    item_results=tuple(item.to_dto() for item in model.items),
                    completed_at=model.completed_at,
                )

            started_at = self._clock.now()
            model.status = BatchStatus.PROCESSING.value
            model.attempt_count += 1
            self._session.flush()

            targets = [
                item for item in model.items
                if item.status != ItemStatus.SUCCEEDED.value
                and (not only_failed or item.status == ItemStatus.FAILED.value)
            ]
            skipped = len(model.items) - len(targets)

            succeeded = 0
            failed = 0
            for item in targets:
                if self._execute_item(model, item, actor):
                    succeeded += 1
                else:
                    failed += 1

            all_done = all(item.status == ItemStatus.SUCCEEDED.value for item in model.items)
            final_status = BatchStatus.COMPLETED if all_done else BatchStatus.FAILED
            completed_at = self._clock.now()
            model.status = final_status.value
            if all_done:
                model.completed_at = completed_at
            self._session.flush()

            self._auditor.log_action(
                AuditAction.DISBURSEMENT,
                AuditEntityType.BATCH,
                model.id,
                changes={"status": {"old": old_status.value, "new": final_status.value}},
                metadata={
                    "batch_number": model.batch_number,
                    "attempt": model.attempt_count,
                    "attempted": len(targets),
                    "succeeded": succeeded,
                    "failed": failed,
                    "retry_only": only_failed,
                },
                actor_id=actor.actor_id,
            )

            logger.info(
                "batch_run_finished",
                extra={
                    "batch_number": model.batch_number,
                    "status": final_status.value,
                    "attempted": len(targets),
                    "succeeded": succeeded,
                    "failed": failed,
                },
            )

            self._notifier.notify_on_commit(self._session, Notification(
                kind=f"batch_{final_status.value}",
                subject_type=AuditEntityType.BATCH.value,
                subject_id=str(model.id),
                message=(
                    f"Batch {model.batch_number}: {succeeded} succeeded, "
                    f"{failed} failed"
                ),
                recipients_role=Role.FINANCE_OFFICER.value,
                data={"batch_number": model.batch_number},
            ))

            return BatchRunResult(
                batch_id=model.id,
                batch_number=model.batch_number,
                status=final_status,
                attempted=len(targets),
                succeeded=succeeded,
                failed=failed,
                skipped=skipped,
                item_results=tuple(item.to_dto() for item in targets),
                started_at=started_at,
                completed_at=completed_at,
            )

    def _execute_item(
        self,
        batch: DisbursementBatchModel,
        item: DisbursementItemModel,
        actor: Actor,
    ) -> bool:
        item.attempt_count += 1
        self._session.flush()

        savepoint = self._session.begin_nested()
        try:
            self._ledger.debit_organization_allocation(
                item.organization_id,
                item.amount,
                actor,
                reference=item.reference_number,
                batch_id=batch.id,
                fiscal_year=batch.fiscal_year,
            )
            savepoint.commit()
        except BudgetKernelError as exc:
            savepoint.rollback()
            self._mark_failed(item, exc.code, str(exc))
            return False
        except SQLAlchemyError as exc:
            savepoint.rollback()
            logger.error(
                "batch_item_store_error",
                extra={"item_index": item.item_index},
                exc_info=True,
            )
            self._mark_failed(item, "STORE_ERROR", str(exc))
            return False

        item.status = ItemStatus.SUCCEEDED.value
        item.error_code = None
        item.error_message = None
        item.processed_at = self._clock.now()
        return True

    def _mark_failed(self, item: DisbursementItemModel, code: str, message: str) -> None:
        item.status = ItemStatus.FAILED.value
        item.error_code = code
        item.error_message = message
        item.processed_at = self._clock.now()
        logger.warning(
            "batch_item_failed",
            extra={
                "item_index": item.item_index,
                "reference_number": item.reference_number,
                "error_code": code,
                "attempt_count": item.attempt_count,
            },
        )

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_batch(self, batch_id: UUID) -> DisbursementBatch:
        return self._get(batch_id).to_dto()

    def get_batch_status(self, batch_id: UUID) -> BatchStatusView:
        return BatchStatusView.from_batch(self.get_batch(batch_id))

    def get_batch_summary(
        self,
        start_date: date | datetime | None = None,
        end_date: date | datetime | None = None,
    ) -> BatchSummary:
        """Batches created in ``[start_date, end_date]``; a date end is inclusive."""
        start = to_utc_bound(start_date, end=False)
        end = to_utc_bound(end_date, end=True)

        stmt = select(DisbursementBatchModel)
        if start is not None:
            stmt = stmt.where(DisbursementBatchModel.created_at >= start)
        if end is not None:
            stmt = stmt.where(DisbursementBatchModel.created_at < end)
        batches = self._session.execute(stmt).scalars().all()

        by_status: dict[str, int] = defaultdict(int)
        total = _ZERO
        disbursed = _ZERO
        failed_items = 0
        for batch in batches:
            by_status[batch.status] += 1
            total += batch.total_amount
            for item in batch.items:
                if item.status == ItemStatus.SUCCEEDED.value:
                    disbursed += item.amount
                elif item.status == ItemStatus.FAILED.value:
                    failed_items += 1

        return BatchSummary(
            start_date=start,
            end_date=end,
            batch_count=len(batches),
            total_amount=total,
            disbursed_amount=disbursed,
            by_status=dict(by_status),
            failed_items=failed_items,
        )
