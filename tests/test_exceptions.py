"""Tests for the typed exception hierarchy and store error translation."""

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from budget_kernel.db.errors import translate_store_errors
from budget_kernel.exceptions import (
    ApprovalRequiredError,
    AuditWriteFailureError,
    BudgetKernelError,
    DuplicateDecisionError,
    InfrastructureError,
    InsufficientAllocationError,
    NoMatchingPolicyError,
    NotFoundError,
    PreconditionError,
    StoreTimeoutError,
    WorkflowNotFoundError,
)


def _all_subclasses(cls):
    for sub in cls.__subclasses__():
        yield sub
        yield from _all_subclasses(sub)


class TestHierarchy:
    def test_codes_are_unique(self):
        codes = [cls.code for cls in _all_subclasses(BudgetKernelError)]
        assert len(codes) == len(set(codes))

    def test_only_infrastructure_is_retryable(self):
        for cls in _all_subclasses(BudgetKernelError):
            assert cls.retryable == issubclass(cls, InfrastructureError), cls.__name__

    def test_categories(self):
        assert issubclass(DuplicateDecisionError, PreconditionError)
        assert issubclass(WorkflowNotFoundError, NotFoundError)
        assert issubclass(StoreTimeoutError, InfrastructureError)
        assert issubclass(AuditWriteFailureError, InfrastructureError)


class TestStructuredData:
    def test_to_dict(self):
        exc = InsufficientAllocationError("organization", "org-1", "500", "20")
        assert exc.to_dict() == {
            "kind": "INSUFFICIENT_ALLOCATION",
            "message": "Organization org-1 has 20 remaining, 500 requested",
            "retryable": False,
        }

    def test_attributes(self):
        exc = ApprovalRequiredError("record_expense", "20000", "10000")
        assert (exc.operation, exc.amount, exc.limit) == ("record_expense", "20000", "10000")

        exc = NoMatchingPolicyError("budget_increase", "5")
        assert exc.request_type == "budget_increase"

    def test_retryable_in_dict(self):
        assert StoreTimeoutError("lock_batch", "lock wait").to_dict()["retryable"] is True


class TestTranslateStoreErrors:
    def test_operational_error_becomes_timeout(self, captured_logs):
        with pytest.raises(StoreTimeoutError) as exc_info:
            with translate_store_errors("lock_workflow"):
                raise OperationalError("SELECT 1 FOR UPDATE", {}, Exception("lock timeout"))

        assert exc_info.value.operation == "lock_workflow"
        assert exc_info.value.retryable
        assert isinstance(exc_info.value.__cause__, OperationalError)
        assert any(r["message"] == "store_timeout" for r in captured_logs())

    def test_other_errors_propagate(self):
        with pytest.raises(IntegrityError):
            with translate_store_errors("insert"):
                raise IntegrityError("INSERT", {}, Exception("duplicate"))

    def test_success_passes_through(self):
        with translate_store_errors("read"):
            value = 1
        assert value == 1
