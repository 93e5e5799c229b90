"""
Module: budget_engines
Responsibility:
    Re-exports the pure approval evaluation functions.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import budget_kernel/domain types and budget_kernel.exceptions.

Invariants enforced:
    - Purity: engines NEVER call ``datetime.now()`` or touch a session.
"""

from budget_engines.approval import (
    StepEvaluation,
    approval_is_complete,
    build_step_snapshots,
    evaluate_step,
    next_escalation_role,
    select_bracket,
)

__all__ = [
    "StepEvaluation",
    "approval_is_complete",
    "build_step_snapshots",
    "evaluate_step",
    "next_escalation_role",
    "select_bracket",
]
