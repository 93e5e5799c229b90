"""budget_batch.services -- batch disbursement processing."""

from budget_batch.services.processor import BatchDisbursementProcessor

__all__ = ["BatchDisbursementProcessor"]
