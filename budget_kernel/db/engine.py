"""
Engine and session management.

One process-wide engine, built by ``init_engine_from_url()``:

- PostgreSQL runs at READ COMMITTED. Budget, workflow and batch rows that
  need stronger guarantees are locked explicitly with SELECT ... FOR UPDATE.
  ``statement_timeout_ms`` bounds how long a transaction waits on such a lock.
- SQLite (tests, local tooling) shares a single connection for in-memory
  URLs, and SQLAlchemy issues BEGIN itself so SAVEPOINTs work.

``session_scope()`` is the transaction boundary: a budget mutation and its
audit row commit together or not at all.
"""

import atexit
from contextlib import contextmanager
from typing import Any, Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from budget_kernel.logging_config import configure_logging, get_logger

logger = get_logger("db.engine")

_engine: Engine | None = None
_SessionFactory: sessionmaker[Session] | None = None

_IN_MEMORY_URLS = ("sqlite://", "sqlite+pysqlite://")


def _enable_sqlite_savepoints(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def _sqlite_engine(database_url: str, echo: bool) -> Engine:
    options: dict[str, Any] = {"connect_args": {"check_same_thread": False}}
    if ":memory:" in database_url or database_url in _IN_MEMORY_URLS:
        options["poolclass"] = StaticPool
    engine = create_engine(database_url, echo=echo, **options)
    _enable_sqlite_savepoints(engine)
    return engine


def _server_engine(
    database_url: str,
    echo: bool,
    statement_timeout_ms: int | None,
    **pool_options: Any,
) -> Engine:
    connect_args = {}
    if statement_timeout_ms is not None:
        connect_args["options"] = f"-c statement_timeout={statement_timeout_ms}"
    return create_engine(
        database_url,
        echo=echo,
        isolation_level="READ COMMITTED",
        connect_args=connect_args,
        **pool_options,
    )


def init_engine_from_url(
    database_url: str,
    echo: bool = False,
    pool_size: int = 10,
    max_overflow: int = 10,
    pool_pre_ping: bool = True,
    pool_timeout: int = 30,
    statement_timeout_ms: int | None = None,
) -> Engine:
    """Build the process-wide engine and session factory.

    A second call replaces the first. Pool options and
    ``statement_timeout_ms`` only apply to server databases.
    """
    global _engine, _SessionFactory

    if database_url.startswith("sqlite"):
        _engine = _sqlite_engine(database_url, echo)
    else:
        _engine = _server_engine(
            database_url,
            echo,
            statement_timeout_ms,
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_pre_ping=pool_pre_ping,
            pool_timeout=pool_timeout,
        )
    _SessionFactory = sessionmaker(bind=_engine, expire_on_commit=False)

    configure_logging()
    logger.info(
        "engine_initialized",
        extra={"dialect": _engine.dialect.name, "echo": echo},
    )
    return _engine


def get_engine() -> Engine:
    if _engine is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _engine


def get_session() -> Session:
    """New session bound to the engine. RuntimeError before initialization."""
    if _SessionFactory is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _SessionFactory()


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """
    Commit on normal exit, roll back and re-raise on any exception.

    Usage:
        with session_scope() as session:
            service = ApprovalWorkflowService(session, auditor, ledger, policy)
            service.process_step(...)
    """
    session = get_session()
    logger.debug("transaction_started")
    try:
        yield session
        session.commit()
        logger.debug("transaction_committed")
    except Exception:
        session.rollback()
        logger.warning("transaction_rolled_back", exc_info=True)
        raise
    finally:
        session.close()


def create_tables() -> None:
    """
    Create all tables and register immutability listeners.

    Preconditions: Engine must be initialized via init_engine_from_url().
    """
    from budget_kernel.db.base import Base
    from budget_kernel.db.immutability import register_immutability_listeners
    import budget_kernel.models  # noqa: F401
    import budget_batch.models  # noqa: F401

    Base.metadata.create_all(get_engine())
    register_immutability_listeners()


def drop_tables() -> None:
    """Drop all tables.  Primarily for testing."""
    from budget_kernel.db.base import Base

    Base.metadata.drop_all(get_engine())


def reset_engine() -> None:
    """Reset the engine and session factory.  Useful for test cleanup."""
    global _engine, _SessionFactory

    if _engine is not None:
        _engine.dispose()
        _engine = None

    _SessionFactory = None


def _atexit_dispose():
    global _engine
    if _engine is not None:
        _engine.dispose()


atexit.register(_atexit_dispose)
