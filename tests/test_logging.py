"""Tests for the structured logging system (budget_kernel/logging_config.py)."""

import json
import logging
from datetime import datetime, timezone
from decimal import Decimal
from io import StringIO
from uuid import uuid4

import pytest

from budget_kernel.domain.workflow import WorkflowStatus
from budget_kernel.exceptions import InsufficientAllocationError, ValidationFailedError
from budget_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    get_logger,
    reset_logging,
)


@pytest.fixture(autouse=True)
def _clean_logging():
    """Reset logging state between tests, restoring the suite's config after."""
    reset_logging()
    LogContext.clear()
    yield
    LogContext.clear()
    reset_logging()
    configure_logging(level=logging.DEBUG)


def _make_handler() -> tuple[logging.Handler, StringIO]:
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    return handler, stream


def _parse_log(stream: StringIO) -> dict:
    """Parse the first JSON log line from a stream."""
    line = stream.getvalue().strip().split("\n")[0]
    return json.loads(line)


def _parse_all_logs(stream: StringIO) -> list[dict]:
    lines = stream.getvalue().strip().split("\n")
    return [json.loads(line) for line in lines if line]


# ---------------------------------------------------------------------------
# StructuredFormatter tests
# ---------------------------------------------------------------------------


class TestStructuredFormatter:
    """Tests for JSON log output format."""

    def test_basic_json_output(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        get_logger("test").info("hello")

        record = _parse_log(stream)
        assert record["level"] == "INFO"
        assert record["message"] == "hello"
        assert record["logger"] == "budget_kernel.test"
        assert "ts" in record

    def test_extra_fields_included(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        get_logger("test").info("batch_created", extra={"item_count": 3, "status": "pending"})

        record = _parse_log(stream)
        assert record["item_count"] == 3
        assert record["status"] == "pending"

    def test_context_fields_included(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        workflow_id = uuid4()
        LogContext.set(workflow_id=workflow_id, actor_id="actor-1")
        get_logger("test").info("step_decided")

        record = _parse_log(stream)
        assert record["workflow_id"] == str(workflow_id)
        assert record["actor_id"] == "actor-1"

    def test_domain_values_serialized(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        batch_id = uuid4()
        get_logger("test").info(
            "values",
            extra={
                "batch_id": batch_id,
                "amount": Decimal("50000.00"),
                "status": WorkflowStatus.APPROVED,
                "at": datetime(2024, 3, 1, tzinfo=timezone.utc),
            },
        )

        record = _parse_log(stream)
        assert record["batch_id"] == str(batch_id)
        assert record["amount"] == "50000.00"
        assert record["status"] == "approved"
        assert record["at"] == "2024-03-01T00:00:00+00:00"

    def test_exception_fields(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        try:
            raise ValueError("boom")
        except ValueError:
            get_logger("test").error("failed", exc_info=True)

        record = _parse_log(stream)
        assert record["exc_type"] == "ValueError"
        assert record["exc_message"] == "boom"
        assert "traceback" in record

    def test_kernel_exception_fields_extracted(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        try:
            raise InsufficientAllocationError("organization", "org-9", "800", "20")
        except InsufficientAllocationError:
            get_logger("test").error("debit_failed", exc_info=True)

        record = _parse_log(stream)
        assert record["exc_code"] == "INSUFFICIENT_ALLOCATION"
        assert record["exc_retryable"] is False
        assert record["exc_owner_id"] == "org-9"
        assert record["exc_remaining"] == "20"

    def test_validation_result_not_dumped(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        try:
            raise ValidationFailedError("bad batch", result=object())
        except ValidationFailedError:
            get_logger("test").warning("rejected", exc_info=True)

        record = _parse_log(stream)
        assert record["exc_code"] == "VALIDATION_FAILED"
        assert "exc_result" not in record

    def test_no_context_fields_when_empty(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        get_logger("test").info("bare_message")

        record = _parse_log(stream)
        assert "workflow_id" not in record
        assert "batch_id" not in record

    def test_default_level_drops_debug(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        logger.info("first")
        logger.warning("second", extra={"k": "v"})
        logger.debug("third")

        logs = _parse_all_logs(stream)
        assert [r["message"] for r in logs] == ["first", "second"]


# ---------------------------------------------------------------------------
# LogContext tests
# ---------------------------------------------------------------------------


class TestLogContext:
    def test_set_and_get(self):
        LogContext.set(correlation_id="x", batch_id="y")
        assert LogContext.get_all() == {"correlation_id": "x", "batch_id": "y"}

    def test_clear(self):
        LogContext.set(correlation_id="x")
        LogContext.clear()
        assert LogContext.get_all() == {}

    def test_bind_context_manager(self):
        LogContext.set(workflow_id="outer")
        with LogContext.bind(workflow_id="inner"):
            assert LogContext.get_all()["workflow_id"] == "inner"
        assert LogContext.get_all()["workflow_id"] == "outer"

    def test_bind_restores_none(self):
        with LogContext.bind(batch_id="temp"):
            assert LogContext.get_all()["batch_id"] == "temp"
        assert "batch_id" not in LogContext.get_all()

    def test_bind_restores_on_error(self):
        with pytest.raises(RuntimeError):
            with LogContext.bind(actor_id="a"):
                raise RuntimeError("fail")
        assert LogContext.get_all() == {}

    def test_bind_unknown_field(self):
        with pytest.raises(TypeError):
            LogContext.bind(entry_id="n")


# ---------------------------------------------------------------------------
# configure_logging tests
# ---------------------------------------------------------------------------


class TestConfigureLogging:
    def test_idempotent(self):
        h1, _ = _make_handler()
        configure_logging(handler=h1)
        h2, _ = _make_handler()
        configure_logging(handler=h2)
        handlers = logging.getLogger("budget_kernel").handlers
        assert h1 in handlers
        assert h2 not in handlers

    def test_level_by_name(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler, level="debug")
        get_logger("deep.nested.module").debug("hierarchy_test")

        record = _parse_log(stream)
        assert record["message"] == "hierarchy_test"
        assert record["logger"] == "budget_kernel.deep.nested.module"

    def test_unknown_level_name_falls_back_to_info(self):
        configure_logging(handler=_make_handler()[0], level="chatty")
        assert logging.getLogger("budget_kernel").level == logging.INFO
