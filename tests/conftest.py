"""
Pytest fixtures for the budget kernel test suite.

Provides:
- In-memory SQLite engine and session per test
- Deterministic clock, seeded region and organization budgets
- Actors for every role
- Recording notification dispatcher and role directory fakes
- Captured structured logs

Environment Variables:
- BUDGET_TEST_DATABASE_URL: run against another database (e.g. PostgreSQL)
  instead of in-memory SQLite.
  Required by the threaded races in tests/concurrency (markers ``postgres``
  and ``slow_locks``), which are skipped otherwise.
"""

import json
import logging
import os
from datetime import datetime, timezone
from decimal import Decimal
from io import StringIO
from uuid import UUID, uuid4

import pytest

from budget_batch.services.processor import BatchDisbursementProcessor
from budget_config import get_active_policy
from budget_kernel.db.engine import (
    create_tables,
    drop_tables,
    get_session,
    init_engine_from_url,
    reset_engine,
)
from budget_kernel.domain.clock import DeterministicClock
from budget_kernel.domain.collaborators import Notification
from budget_kernel.domain.roles import Actor, Role
from budget_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from budget_kernel.services.auditor_service import AuditorService
from budget_kernel.services.ledger_service import LedgerService
from budget_kernel.services.notifier import BestEffortNotifier
from budget_kernel.services.workflow_service import ApprovalWorkflowService

TEST_DATABASE_URL = os.environ.get("BUDGET_TEST_DATABASE_URL", "sqlite:///:memory:")

REGION_BUDGET = Decimal("1000000")
ORGANIZATION_BUDGET = Decimal("200000")


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture budget_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, workflow_service):
            ...
            logs = captured_logs()
            assert any(r["message"] == "workflow_created" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("budget_kernel")
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)


# =============================================================================
# Database fixtures
# =============================================================================


@pytest.fixture
def engine():
    eng = init_engine_from_url(TEST_DATABASE_URL)
    create_tables()
    yield eng
    drop_tables()
    reset_engine()


@pytest.fixture
def session(engine):
    """A session whose work is rolled back after the test."""
    sess = get_session()
    try:
        yield sess
    finally:
        sess.rollback()
        sess.close()


# =============================================================================
# Collaborator fakes
# =============================================================================


class RecordingDispatcher:
    """NotificationDispatcher that keeps every notification it receives."""

    def __init__(self):
        self.sent: list[Notification] = []

    def dispatch(self, notification: Notification) -> None:
        self.sent.append(notification)

    def kinds(self) -> list[str]:
        return [n.kind for n in self.sent]


class FailingDispatcher:
    """NotificationDispatcher whose queue is always down."""

    def dispatch(self, notification: Notification) -> None:
        raise ConnectionError("notification queue unavailable")


class FakeRoleDirectory:
    """RoleDirectory backed by a dict of raw role strings."""

    def __init__(self, roles: dict[UUID, str] | None = None):
        self.roles = dict(roles or {})

    def get_role(self, user_id: UUID) -> str:
        return self.roles[user_id]


# =============================================================================
# Service fixtures
# =============================================================================


@pytest.fixture
def deterministic_clock():
    return DeterministicClock(datetime(2024, 3, 1, 9, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def policy():
    return get_active_policy()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def notifier(dispatcher):
    return BestEffortNotifier(dispatcher)


@pytest.fixture
def failing_notifier():
    return BestEffortNotifier(FailingDispatcher())


@pytest.fixture
def role_directory():
    return FakeRoleDirectory()


@pytest.fixture
def auditor_service(session, deterministic_clock):
    return AuditorService(session, deterministic_clock)


@pytest.fixture
def ledger_service(session, auditor_service, deterministic_clock, policy):
    return LedgerService(session, auditor_service, deterministic_clock, policy)


@pytest.fixture
def workflow_service(
    session, auditor_service, ledger_service, policy, deterministic_clock, notifier,
):
    return ApprovalWorkflowService(
        session, auditor_service, ledger_service, policy,
        clock=deterministic_clock, notifier=notifier,
    )


@pytest.fixture
def batch_processor(
    session, auditor_service, ledger_service, deterministic_clock, notifier,
):
    return BatchDisbursementProcessor(
        session, auditor_service, ledger_service,
        clock=deterministic_clock, notifier=notifier,
    )


# =============================================================================
# Actors
# =============================================================================


def make_actor(role: Role) -> Actor:
    return Actor(actor_id=uuid4(), role=role)


@pytest.fixture
def org_admin():
    return make_actor(Role.ORGANIZATION_ADMIN)


@pytest.fixture
def regional_admin():
    return make_actor(Role.REGIONAL_ADMIN)


@pytest.fixture
def finance_officer():
    return make_actor(Role.FINANCE_OFFICER)


@pytest.fixture
def second_finance_officer():
    return make_actor(Role.FINANCE_OFFICER)


@pytest.fixture
def super_admin():
    return make_actor(Role.SUPER_ADMIN)


# =============================================================================
# Seeded budgets
# =============================================================================


@pytest.fixture
def region_id():
    return uuid4()


@pytest.fixture
def organization_id():
    return uuid4()


@pytest.fixture
def seeded_budgets(ledger_service, super_admin, region_id, organization_id):
    """Region with 1,000,000 and one organization with 200,000 for FY2024."""
    region = ledger_service.open_region_budget(region_id, REGION_BUDGET, super_admin)
    organization = ledger_service.open_organization_budget(
        organization_id, region_id, super_admin, amount=ORGANIZATION_BUDGET,
    )
    return region, organization
