"""
Read-side result contract.

Every reporting query returns exactly one of:

    Ok(value)                      -- complete data
    PartialData(value, missing)    -- usable data, with the parts that could
                                      not be loaded named explicitly
    Err(FetchError(kind, message)) -- nothing usable

Degraded data is never dressed up as real data: a caller can always tell
"genuinely empty" (``Ok(())``) from "could not load" (``PartialData`` or
``Err``).
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar, Union

T = TypeVar("T")


class FetchErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    INVALID_INPUT = "invalid_input"
    STORE_UNAVAILABLE = "store_unavailable"


@dataclass(frozen=True)
class FetchError:
    kind: FetchErrorKind
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind.value, "message": self.message}


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def is_ok(self) -> bool:
        return True

    def unwrap(self) -> T:
        return self.value


@dataclass(frozen=True)
class PartialData(Generic[T]):
    value: T
    missing: tuple[str, ...]

    @property
    def is_ok(self) -> bool:
        return False

    def unwrap(self) -> T:
        return self.value


@dataclass(frozen=True)
class Err:
    error: FetchError

    @property
    def is_ok(self) -> bool:
        return False

    def unwrap(self):
        raise ValueError(f"unwrap() on Err: {self.error.kind.value}: {self.error.message}")


FetchResult = Union[Ok[T], PartialData[T], Err]
