"""Database layer for the budget kernel."""

from budget_kernel.db.base import UUID, Base, TrackedBase, UTCDateTime, UUIDString
from budget_kernel.db.engine import (
    create_tables,
    drop_tables,
    get_engine,
    get_session,
    init_engine_from_url,
    reset_engine,
    session_scope,
)
from budget_kernel.db.types import to_money

__all__ = [
    "Base",
    "TrackedBase",
    "UTCDateTime",
    "UUID",
    "UUIDString",
    "create_tables",
    "drop_tables",
    "get_engine",
    "get_session",
    "init_engine_from_url",
    "reset_engine",
    "session_scope",
    "to_money",
]
