"""SQLAlchemy ORM models for the budget kernel."""

from budget_kernel.models.audit_log import AuditLog
from budget_kernel.models.ledger import (
    BudgetAllocation,
    BudgetExpense,
    OrganizationBudget,
    RegionBudget,
)
from budget_kernel.models.sequence import SequenceCounter
from budget_kernel.models.workflow import (
    ApprovalStepModel,
    ApprovalWorkflowModel,
    BudgetRequestModel,
    StepDecisionModel,
)

__all__ = [
    "ApprovalStepModel",
    "ApprovalWorkflowModel",
    "AuditLog",
    "BudgetAllocation",
    "BudgetExpense",
    "BudgetRequestModel",
    "OrganizationBudget",
    "RegionBudget",
    "SequenceCounter",
    "StepDecisionModel",
]
