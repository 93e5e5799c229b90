"""
ORM-Level Immutability Enforcement.

===============================================================================
WHAT THIS ENFORCES
===============================================================================

SQLAlchemy fires events before UPDATE/DELETE statements reach the database.
The listeners registered here intercept those events and refuse changes to
records that must never change:

    session.flush()
         |
         v
    [before_update event] --> _check_*() --> ImmutabilityViolationError
         |                                          ^
         v                                          |
    [before_delete event] --> _check_*_delete() ----+
         |
         v
    SQL sent to database (only if checks pass)

Entity                | When Immutable                      | Why
----------------------|-------------------------------------|------------------------------
AuditLog              | ALWAYS (from creation)              | The audit trail is the record
ApprovalWorkflow      | After status = approved / rejected  | Resolution is terminal
ApprovalWorkflow      | Delete: ALWAYS                      | Retained for audit
BudgetRequest         | Delete: ALWAYS                      | Retained for audit

StepDecision rows are protected by listeners declared next to the model
(``budget_kernel.models.workflow``).

===============================================================================
USAGE
===============================================================================

Called once at startup by ``create_tables()``:

    from budget_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()

To temporarily disable (TESTS ONLY):

    unregister_immutability_listeners()
    # ... forbidden operation ...
    register_immutability_listeners()
"""

from sqlalchemy import event, inspect
from sqlalchemy.orm.attributes import get_history

from budget_kernel.exceptions import ImmutabilityViolationError
from budget_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

_TERMINAL = ("approved", "rejected")


def _blocked(entity_type: str, entity_id: str, operation: str, reason: str, **fields):
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": entity_id,
            "operation": operation,
            **fields,
        },
    )
    return ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=entity_id,
        reason=reason,
    )


def _check_audit_log_immutability(mapper, connection, target):
    """Prevent any update to AuditLog rows."""
    raise _blocked(
        "AuditLog", str(target.id), "UPDATE",
        "Audit log rows are immutable and cannot be modified",
    )


def _check_audit_log_delete(mapper, connection, target):
    """Prevent deletion of AuditLog rows."""
    raise _blocked(
        "AuditLog", str(target.id), "DELETE",
        "Audit log rows are immutable and cannot be deleted",
    )


def _check_workflow_immutability(mapper, connection, target):
    """
    Prevent updates to resolved workflows.

    The resolving transition itself (pending/in_progress -> approved/rejected)
    is allowed; any change after it has been flushed is not.

        1. status changing FROM a terminal value: block
        2. status unchanged AND terminal: block
        3. status changing TO a terminal value: allow
    """
    status_history = get_history(target, "status")

    was_resolved = False
    if status_history.deleted:
        was_resolved = status_history.deleted[0] in _TERMINAL
    elif not status_history.added:
        was_resolved = target.status in _TERMINAL

    if not was_resolved:
        return

    for attr in inspect(target).attrs:
        if attr.history.has_changes():
            raise _blocked(
                "ApprovalWorkflow", str(target.id), "UPDATE",
                f"Cannot modify field '{attr.key}' on a resolved workflow",
                field=attr.key,
            )


def _check_workflow_delete(mapper, connection, target):
    raise _blocked(
        "ApprovalWorkflow", str(target.id), "DELETE",
        "Workflows are retained for audit and cannot be deleted",
    )


def _check_budget_request_delete(mapper, connection, target):
    raise _blocked(
        "BudgetRequest", str(target.id), "DELETE",
        "Budget requests are retained for audit and cannot be deleted",
    )


def _listeners():
    from budget_kernel.models.audit_log import AuditLog
    from budget_kernel.models.workflow import ApprovalWorkflowModel, BudgetRequestModel

    return (
        (AuditLog, "before_update", _check_audit_log_immutability),
        (AuditLog, "before_delete", _check_audit_log_delete),
        (ApprovalWorkflowModel, "before_update", _check_workflow_immutability),
        (ApprovalWorkflowModel, "before_delete", _check_workflow_delete),
        (BudgetRequestModel, "before_delete", _check_budget_request_delete),
    )


def register_immutability_listeners():
    """
    Register all immutability enforcement listeners.

    Idempotent: a listener already registered is not added twice.
    """
    for target, event_name, listener_fn in _listeners():
        if not event.contains(target, event_name, listener_fn):
            event.listen(target, event_name, listener_fn)


def _safe_remove_listener(target, event_name, listener_fn):
    """Remove an event listener, ignoring it if not registered."""
    if event.contains(target, event_name, listener_fn):
        event.remove(target, event_name, listener_fn)


def unregister_immutability_listeners():
    """
    Remove immutability enforcement listeners.

    WARNING: Only use this in tests that must violate immutability on
    purpose, e.g. to prove chain validation detects tampering.
    """
    for target, event_name, listener_fn in _listeners():
        _safe_remove_listener(target, event_name, listener_fn)
