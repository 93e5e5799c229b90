"""
Store error translation.

Driver-level failures that mean "the store did not answer in time" become
the retryable ``StoreTimeoutError``; everything else propagates unchanged.
There is no internal retry: callers retry with backoff.
"""

from contextlib import contextmanager
from typing import Iterator

from sqlalchemy.exc import OperationalError, TimeoutError as PoolTimeoutError

from budget_kernel.exceptions import StoreTimeoutError
from budget_kernel.logging_config import get_logger

logger = get_logger("db.errors")


@contextmanager
def translate_store_errors(operation: str) -> Iterator[None]:
    """Re-raise lock waits, statement timeouts and pool exhaustion as StoreTimeoutError."""
    try:
        yield
    except (OperationalError, PoolTimeoutError, TimeoutError) as exc:
        logger.warning(
            "store_timeout",
            extra={"operation": operation, "cause": type(exc).__name__},
        )
        raise StoreTimeoutError(operation, str(exc)) from exc
