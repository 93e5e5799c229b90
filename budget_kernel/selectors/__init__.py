"""Read-only query selectors."""

from budget_kernel.selectors.base import BaseSelector
from budget_kernel.selectors.reporting_selector import ReportingSelector
from budget_kernel.selectors.workflow_selector import WorkflowSelector

__all__ = ["BaseSelector", "ReportingSelector", "WorkflowSelector"]
