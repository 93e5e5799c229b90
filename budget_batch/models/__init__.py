"""
budget_batch.models -- ORM models for batch disbursement persistence.

Architecture: budget_batch/models. Imports from budget_kernel.db.base only.
"""

from budget_batch.models.batch import DisbursementBatchModel, DisbursementItemModel

__all__ = [
    "DisbursementBatchModel",
    "DisbursementItemModel",
]
