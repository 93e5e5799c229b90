"""Tests for RuntimeSettings.from_env() and bootstrap()."""

from pathlib import Path

import pytest
from sqlalchemy import func, select

from budget_config import bootstrap
from budget_config.settings import DEFAULT_DATABASE_URL, RuntimeSettings
from budget_kernel.db.engine import drop_tables, reset_engine, session_scope
from budget_kernel.models.audit_log import AuditLog


class TestRuntimeSettings:
    def test_defaults(self):
        settings = RuntimeSettings.from_env({})
        assert settings.database_url == DEFAULT_DATABASE_URL
        assert settings.policy_path is None
        assert settings.log_level == "INFO"
        assert settings.statement_timeout_ms is None

    def test_reads_environment(self):
        settings = RuntimeSettings.from_env({
            "BUDGET_DATABASE_URL": "postgresql://budget@localhost/budget",
            "BUDGET_POLICY_PATH": "/etc/budget/policy.yaml",
            "BUDGET_LOG_LEVEL": "debug",
            "BUDGET_STATEMENT_TIMEOUT_MS": "1500",
        })
        assert settings.database_url == "postgresql://budget@localhost/budget"
        assert settings.policy_path == Path("/etc/budget/policy.yaml")
        assert settings.log_level == "DEBUG"
        assert settings.statement_timeout_ms == 1500

    def test_blank_values_fall_back(self):
        settings = RuntimeSettings.from_env({
            "BUDGET_POLICY_PATH": "",
            "BUDGET_STATEMENT_TIMEOUT_MS": "",
        })
        assert settings.policy_path is None
        assert settings.statement_timeout_ms is None

    def test_process_environment(self, monkeypatch):
        monkeypatch.setenv("BUDGET_LOG_LEVEL", "warning")
        assert RuntimeSettings.from_env().log_level == "WARNING"


class TestBootstrap:
    @pytest.fixture
    def bootstrapped(self):
        yield
        drop_tables()
        reset_engine()

    def test_wires_engine_and_policy(self, bootstrapped):
        policy = bootstrap(RuntimeSettings())

        assert policy.version == 1
        with session_scope() as session:
            assert session.execute(select(func.count(AuditLog.id))).scalar_one() == 0
