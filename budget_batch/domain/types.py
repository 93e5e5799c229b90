"""
budget_batch.domain.types -- Pure frozen dataclasses for batch disbursements.

ZERO I/O.  Frozen dataclasses with enum status fields and tuples for
immutable collections.

Invariants enforced:
    - ``DisbursementBatch.total_amount`` equals the sum of its item amounts.
    - ``organization_count`` is the number of distinct organizations.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID


# =============================================================================
# Status enums
# =============================================================================


class BatchStatus(str, Enum):
    """Batch-level lifecycle status."""

    PENDING = "pending"  # Created, never run
    PROCESSING = "processing"  # A run holds the batch
    COMPLETED = "completed"  # Every item succeeded
    FAILED = "failed"  # At least one item failed on the last run


class ItemStatus(str, Enum):
    """Per-item status within a batch."""

    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class ItemIssueCode(str, Enum):
    """Reasons an item fails validation."""

    INVALID_AMOUNT = "INVALID_AMOUNT"
    UNKNOWN_ORGANIZATION = "UNKNOWN_ORGANIZATION"
    MISSING_REFERENCE = "MISSING_REFERENCE"
    DUPLICATE_REFERENCE = "DUPLICATE_REFERENCE"
    INSUFFICIENT_ALLOCATION = "INSUFFICIENT_ALLOCATION"


# =============================================================================
# Validation
# =============================================================================


@dataclass(frozen=True)
class DisbursementItemInput:
    """One requested payout, as submitted by the caller."""

    organization_id: UUID | str
    amount: Decimal
    purpose: str = ""
    reference_number: str = ""


@dataclass(frozen=True)
class ItemIssue:
    code: ItemIssueCode
    message: str


@dataclass(frozen=True)
class ItemValidation:
    """Validation outcome of the item at ``index`` (0-based)."""

    index: int
    organization_id: UUID | str
    amount: Decimal | None
    reference_number: str
    issues: tuple[ItemIssue, ...] = ()

    @property
    def is_valid(self) -> bool:
        return not self.issues

    @property
    def issue_codes(self) -> tuple[ItemIssueCode, ...]:
        return tuple(issue.code for issue in self.issues)


@dataclass(frozen=True)
class ValidationResult:
    """Per-item pass/fail for a proposed batch.  Produced without any write."""

    items: tuple[ItemValidation, ...]
    batch_errors: tuple[str, ...] = ()

    @property
    def is_valid(self) -> bool:
        return not self.batch_errors and all(item.is_valid for item in self.items)

    @property
    def failed_items(self) -> tuple[ItemValidation, ...]:
        return tuple(item for item in self.items if not item.is_valid)

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "batch_errors": list(self.batch_errors),
            "failed_items": [
                {
                    "index": item.index,
                    "organization_id": str(item.organization_id),
                    "issues": [
                        {"code": i.code.value, "message": i.message} for i in item.issues
                    ],
                }
                for item in self.failed_items
            ],
        }


# =============================================================================
# Batch DTOs
# =============================================================================


@dataclass(frozen=True)
class DisbursementItem:
    """Immutable snapshot of one batch item."""

    item_id: UUID
    batch_id: UUID
    item_index: int
    organization_id: UUID
    amount: Decimal
    purpose: str
    reference_number: str
    status: ItemStatus
    error_code: str | None = None
    error_message: str | None = None
    attempt_count: int = 0
    processed_at: datetime | None = None


@dataclass(frozen=True)
class DisbursementBatch:
    """Immutable snapshot of a batch and its ordered items."""

    batch_id: UUID
    batch_number: str  # DB-<fiscal year>-<seq:06d>
    fiscal_year: int
    total_amount: Decimal
    organization_count: int
    status: BatchStatus
    created_by: UUID
    created_at: datetime
    completed_at: datetime | None = None
    attempt_count: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)
    items: tuple[DisbursementItem, ...] = ()


@dataclass(frozen=True)
class BatchRunResult:
    """Result of one ``process_batch`` run.

    ``attempted`` counts the items executed by this run; items that had
    already succeeded are not re-executed and are counted in ``skipped``.
    """

    batch_id: UUID
    batch_number: str
    status: BatchStatus
    attempted: int
    succeeded: int
    failed: int
    skipped: int
    item_results: tuple[DisbursementItem, ...] = ()
    started_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass(frozen=True)
class BatchStatusView:
    """A batch with per-status item counts and amounts."""

    batch: DisbursementBatch
    pending_items: int
    succeeded_items: int
    failed_items: int
    disbursed_amount: Decimal
    outstanding_amount: Decimal

    @property
    def status(self) -> BatchStatus:
        return self.batch.status

    @classmethod
    def from_batch(cls, batch: DisbursementBatch) -> BatchStatusView:
        counts = {status: 0 for status in ItemStatus}
        disbursed = Decimal("0")
        for item in batch.items:
            counts[item.status] += 1
            if item.status == ItemStatus.SUCCEEDED:
                disbursed += item.amount
        return cls(
            batch=batch,
            pending_items=counts[ItemStatus.PENDING],
            succeeded_items=counts[ItemStatus.SUCCEEDED],
            failed_items=counts[ItemStatus.FAILED],
            disbursed_amount=disbursed,
            outstanding_amount=batch.total_amount - disbursed,
        )


@dataclass(frozen=True)
class BatchSummary:
    """Batches created in a date range."""

    start_date: datetime | None
    end_date: datetime | None
    batch_count: int
    total_amount: Decimal
    disbursed_amount: Decimal
    by_status: dict[str, int] = field(default_factory=dict)
    failed_items: int = 0
