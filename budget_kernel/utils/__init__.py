"""Utility modules for the budget kernel."""

from budget_kernel.utils.hashing import (
    GENESIS,
    canonicalize_json,
    hash_audit_entry,
    hash_payload,
)

__all__ = [
    "GENESIS",
    "canonicalize_json",
    "hash_audit_entry",
    "hash_payload",
]
