"""
Module: budget_kernel.db.types
Responsibility: Coercion of caller-supplied amounts into Decimal.  Every
    service funnels monetary input through ``to_money`` before it reaches a
    Numeric column.
Architecture position: Kernel > DB.  MUST NOT import from models/, domain/,
    services/ or selectors/.

Invariants enforced:
    CRITICAL: No floats anywhere in the budget kernel.

Failure modes:
    - ValueError on float, bool or non-numeric input.
"""

from decimal import Decimal, InvalidOperation
from typing import Any


def to_money(value: Any) -> Decimal:
    """
    Coerce an int, str or Decimal into a Decimal amount.

    Floats are refused: ``0.1 + 0.2`` style errors must never reach the ledger.

    Raises:
        ValueError: If the value is a float or not a finite number.
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise ValueError(f"Monetary amounts must not be float or bool: {value!r}")
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value))
        except InvalidOperation as exc:
            raise ValueError(f"Not a monetary amount: {value!r}") from exc
    if not result.is_finite():
        raise ValueError(f"Not a monetary amount: {value!r}")
    return result
