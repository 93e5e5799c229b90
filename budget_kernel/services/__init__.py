"""Services for the budget kernel (write side)."""

from budget_kernel.services.auditor_service import AuditorService
from budget_kernel.services.ledger_service import LedgerService
from budget_kernel.services.notifier import BestEffortNotifier
from budget_kernel.services.sequence_service import SequenceService
from budget_kernel.services.workflow_service import ApprovalWorkflowService

__all__ = [
    "ApprovalWorkflowService",
    "AuditorService",
    "BestEffortNotifier",
    "LedgerService",
    "SequenceService",
]
