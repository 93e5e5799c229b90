"""budget_batch.domain -- pure batch disbursement types.  ZERO I/O."""

from budget_batch.domain.types import (
    BatchRunResult,
    BatchStatus,
    BatchStatusView,
    BatchSummary,
    DisbursementBatch,
    DisbursementItem,
    DisbursementItemInput,
    ItemIssue,
    ItemIssueCode,
    ItemStatus,
    ItemValidation,
    ValidationResult,
)

__all__ = [
    "BatchRunResult",
    "BatchStatus",
    "BatchStatusView",
    "BatchSummary",
    "DisbursementBatch",
    "DisbursementItem",
    "DisbursementItemInput",
    "ItemIssue",
    "ItemIssueCode",
    "ItemStatus",
    "ItemValidation",
    "ValidationResult",
]
