"""
Runtime settings read from the environment.

    BUDGET_DATABASE_URL          SQLAlchemy URL (default: in-memory SQLite)
    BUDGET_POLICY_PATH           approval policy YAML (default: packaged table)
    BUDGET_LOG_LEVEL             logging level name (default: INFO)
    BUDGET_STATEMENT_TIMEOUT_MS  PostgreSQL statement timeout (optional)
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

DEFAULT_DATABASE_URL = "sqlite:///:memory:"


@dataclass(frozen=True)
class RuntimeSettings:
    database_url: str = DEFAULT_DATABASE_URL
    policy_path: Path | None = None
    log_level: str = "INFO"
    statement_timeout_ms: int | None = None

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> RuntimeSettings:
        env = os.environ if environ is None else environ
        policy = env.get("BUDGET_POLICY_PATH")
        timeout = env.get("BUDGET_STATEMENT_TIMEOUT_MS")
        return cls(
            database_url=env.get("BUDGET_DATABASE_URL", DEFAULT_DATABASE_URL),
            policy_path=Path(policy) if policy else None,
            log_level=env.get("BUDGET_LOG_LEVEL", "INFO").upper(),
            statement_timeout_ms=int(timeout) if timeout else None,
        )
