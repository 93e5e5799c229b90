"""
budget_config -- single public entrypoint for approval policy configuration.

Responsibility:
    ``get_active_policy()`` is the one way runtime code obtains the approval
    policy table.  ``bootstrap()`` wires settings, logging and the database
    engine for scripts and services.

Architecture position:
    Configuration.  Sits above ``budget_kernel``; the kernel never imports
    from here.

Audit relevance:
    Every ``get_active_policy()`` call logs the policy version and checksum;
    the same checksum is stored on every workflow created under it.
"""

from __future__ import annotations

from pathlib import Path

from budget_config.loader import (
    DEFAULT_POLICY_PATH,
    compute_checksum,
    load_policy_table,
    parse_policy_table,
)
from budget_config.settings import RuntimeSettings
from budget_kernel.domain.policy import ApprovalPolicyTable
from budget_kernel.logging_config import configure_logging, get_logger

_logger = get_logger("config")


def get_active_policy(path: Path | str | None = None) -> ApprovalPolicyTable:
    """Load the approval policy table in force (the packaged default if no path)."""
    table = load_policy_table(path)
    _logger.info(
        "approval_policy_loaded",
        extra={
            "policy_version": table.version,
            "policy_checksum": table.checksum,
            "bracket_count": len(table.brackets),
            "source": str(path or DEFAULT_POLICY_PATH),
        },
    )
    return table


def bootstrap(settings: RuntimeSettings | None = None) -> ApprovalPolicyTable:
    """Configure logging, initialize the engine and tables, return the policy."""
    from budget_kernel.db.engine import create_tables, init_engine_from_url

    settings = settings or RuntimeSettings.from_env()
    configure_logging(level=settings.log_level)
    init_engine_from_url(
        settings.database_url,
        statement_timeout_ms=settings.statement_timeout_ms,
    )
    create_tables()
    return get_active_policy(settings.policy_path)


__all__ = [
    "DEFAULT_POLICY_PATH",
    "RuntimeSettings",
    "bootstrap",
    "compute_checksum",
    "get_active_policy",
    "load_policy_table",
    "parse_policy_table",
]
