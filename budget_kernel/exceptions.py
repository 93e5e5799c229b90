"""
Typed Exception Hierarchy for the Budget Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers (the UI layer, batch runners, operators' scripts) must be able to react
to a failure without parsing its message:

    try:
        engine.process_step(workflow_id, step_id, "approve", "", actor)
    except DuplicateDecisionError as e:
        ui.show(e.to_dict())           # kind + human message
    except StoreTimeoutError as e:
        if e.retryable:
            schedule_retry()

Every exception therefore has:
  1. a TYPED class (catch by type, not message)
  2. a CODE class attribute (machine-readable, API-safe)
  3. structured DATA attributes (not just a message string)
  4. a RETRYABLE flag (True only for infrastructure faults)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    BudgetKernelError (base)
    |
    +-- ValidationFailedError
    |
    +-- PreconditionError
    |   +-- InvalidActorRoleError
    |   +-- DuplicateDecisionError
    |   +-- WorkflowNotActiveError
    |   +-- StepNotActiveError
    |   +-- InvalidWorkflowTransitionError
    |   +-- EscalationNotPossibleError
    |   +-- ApprovalRequiredError
    |   +-- InsufficientAllocationError
    |   +-- BatchNotFailedError
    |   +-- BatchAlreadyProcessingError
    |
    +-- ConfigurationError
    |   +-- NoMatchingPolicyError
    |   +-- PolicyLoadError
    |
    +-- NotFoundError
    |   +-- WorkflowNotFoundError
    |   +-- BatchNotFoundError
    |   +-- BudgetNotFoundError
    |
    +-- InfrastructureError            (retryable)
    |   +-- AuditWriteFailureError
    |   +-- StoreTimeoutError
    |
    +-- AuditError
    |   +-- AuditChainBrokenError
    |
    +-- ImmutabilityError
    |   +-- ImmutabilityViolationError
    |
    +-- RoleError
        +-- UnknownRoleError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                        | When Raised
----------------|-----------------------------|-----------------------------------------
Validation      | VALIDATION_FAILED           | Input rejected; message safe for users
----------------|-----------------------------|-----------------------------------------
Precondition    | INVALID_ACTOR_ROLE          | Actor role != step's active role
                | DUPLICATE_DECISION          | Same actor decided twice on a step
                | WORKFLOW_NOT_ACTIVE         | Decision/escalation on terminal workflow
                | STEP_NOT_ACTIVE             | Decision on a step that is not current
                | INVALID_WORKFLOW_TRANSITION | Status change not in the transition table
                | ESCALATION_NOT_POSSIBLE     | No higher tier in the escalation chain
                | APPROVAL_REQUIRED           | Direct mutation above the policy limit
                | INSUFFICIENT_ALLOCATION     | Debit exceeds remaining allocation
                | BATCH_NOT_FAILED            | Retry requested with no failed items
                | BATCH_ALREADY_PROCESSING    | Concurrent run of the same batch
----------------|-----------------------------|-----------------------------------------
Configuration   | NO_MATCHING_POLICY          | No bracket contains the amount
                | POLICY_LOAD_FAILED          | Policy table YAML is invalid
----------------|-----------------------------|-----------------------------------------
Not found       | WORKFLOW_NOT_FOUND          | Unknown workflow id
                | BATCH_NOT_FOUND             | Unknown batch id
                | BUDGET_NOT_FOUND            | Unknown region/organization budget
----------------|-----------------------------|-----------------------------------------
Infrastructure  | AUDIT_WRITE_FAILURE         | Audit row could not be appended
                | STORE_TIMEOUT               | Store timed out / lock wait exceeded
----------------|-----------------------------|-----------------------------------------
Integrity       | AUDIT_CHAIN_BROKEN          | Hash chain recomputation mismatch
                | IMMUTABILITY_VIOLATION      | Update/delete of an append-only row
                | UNKNOWN_ROLE                | Raw role string has no mapping
"""

from __future__ import annotations

from typing import Any


class BudgetKernelError(Exception):
    """
    Base exception for all budget kernel errors.

    All subclasses must have a ``code`` class attribute for machine-readable
    error identification.
    """

    code: str = "BUDGET_KERNEL_ERROR"
    retryable: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Render as ``{"kind": code, "message": str, "retryable": bool}``."""
        return {
            "kind": self.code,
            "message": str(self),
            "retryable": self.retryable,
        }


# Validation


class ValidationFailedError(BudgetKernelError):
    """
    Caller input was rejected.  The message is safe to show verbatim.

    ``result`` carries the per-item ValidationResult for batch validation.
    """

    code: str = "VALIDATION_FAILED"

    def __init__(self, message: str, result: Any = None):
        self.result = result
        super().__init__(message)


# Preconditions


class PreconditionError(BudgetKernelError):
    """Base exception for operations whose preconditions do not hold."""

    code: str = "PRECONDITION_FAILED"


class InvalidActorRoleError(PreconditionError):
    """The actor's role does not match the step's active role."""

    code: str = "INVALID_ACTOR_ROLE"

    def __init__(self, actor_id: str, actor_role: str, required_role: str):
        self.actor_id = actor_id
        self.actor_role = actor_role
        self.required_role = required_role
        super().__init__(
            f"Actor {actor_id} with role {actor_role} cannot act on a step "
            f"requiring {required_role}"
        )


class DuplicateDecisionError(PreconditionError):
    """The actor already recorded a decision on this step."""

    code: str = "DUPLICATE_DECISION"

    def __init__(self, step_id: str, actor_id: str):
        self.step_id = step_id
        self.actor_id = actor_id
        super().__init__(
            f"Actor {actor_id} already recorded a decision on step {step_id}"
        )


class WorkflowNotActiveError(PreconditionError):
    """The workflow is approved or rejected; no further decisions allowed."""

    code: str = "WORKFLOW_NOT_ACTIVE"

    def __init__(self, workflow_id: str, status: str):
        self.workflow_id = workflow_id
        self.status = status
        super().__init__(f"Workflow {workflow_id} is not active (status={status})")


class StepNotActiveError(PreconditionError):
    """The step is not the workflow's current step."""

    code: str = "STEP_NOT_ACTIVE"

    def __init__(self, workflow_id: str, step_id: str, current_step: int):
        self.workflow_id = workflow_id
        self.step_id = step_id
        self.current_step = current_step
        super().__init__(
            f"Step {step_id} is not the current step ({current_step}) "
            f"of workflow {workflow_id}"
        )


class InvalidWorkflowTransitionError(PreconditionError):
    """The requested status change is not in the workflow transition table."""

    code: str = "INVALID_WORKFLOW_TRANSITION"

    def __init__(self, workflow_id: str, from_status: str, to_status: str):
        self.workflow_id = workflow_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Workflow {workflow_id} cannot move from {from_status} to {to_status}"
        )


class EscalationNotPossibleError(PreconditionError):
    """The current step's active role is already the top of the chain."""

    code: str = "ESCALATION_NOT_POSSIBLE"

    def __init__(self, workflow_id: str, active_role: str):
        self.workflow_id = workflow_id
        self.active_role = active_role
        super().__init__(
            f"Workflow {workflow_id} cannot escalate beyond {active_role}"
        )


class ApprovalRequiredError(PreconditionError):
    """A direct ledger mutation exceeds the policy's direct mutation limit."""

    code: str = "APPROVAL_REQUIRED"

    def __init__(self, operation: str, amount: str, limit: str):
        self.operation = operation
        self.amount = amount
        self.limit = limit
        super().__init__(
            f"{operation} of {amount} exceeds the direct limit {limit}; "
            f"an approval workflow is required"
        )


class InsufficientAllocationError(PreconditionError):
    """A region or organization budget cannot cover the amount."""

    code: str = "INSUFFICIENT_ALLOCATION"

    def __init__(self, scope: str, owner_id: str, requested: str, remaining: str):
        self.scope = scope
        self.owner_id = owner_id
        self.requested = requested
        self.remaining = remaining
        super().__init__(
            f"{scope.capitalize()} {owner_id} has {remaining} remaining, "
            f"{requested} requested"
        )


class BatchNotFailedError(PreconditionError):
    """Retry requested for a batch that has no failed items."""

    code: str = "BATCH_NOT_FAILED"

    def __init__(self, batch_id: str, status: str):
        self.batch_id = batch_id
        self.status = status
        super().__init__(f"Batch {batch_id} has no failed items (status={status})")


class BatchAlreadyProcessingError(PreconditionError):
    """Another run of the same batch is in progress."""

    code: str = "BATCH_ALREADY_PROCESSING"

    def __init__(self, batch_id: str):
        self.batch_id = batch_id
        super().__init__(f"Batch {batch_id} is already processing")


# Configuration


class ConfigurationError(BudgetKernelError):
    """Base exception for policy configuration gaps."""

    code: str = "CONFIGURATION_ERROR"


class NoMatchingPolicyError(ConfigurationError):
    """No policy bracket contains the amount for the request type."""

    code: str = "NO_MATCHING_POLICY"

    def __init__(self, request_type: str, amount: str):
        self.request_type = request_type
        self.amount = amount
        super().__init__(
            f"No approval policy bracket for {request_type} amount {amount}"
        )


class PolicyLoadError(ConfigurationError):
    """The approval policy table could not be loaded or failed validation."""

    code: str = "POLICY_LOAD_FAILED"

    def __init__(self, source: str, errors: list[str]):
        self.source = source
        self.errors = list(errors)
        super().__init__(
            f"Invalid approval policy table {source}: " + "; ".join(self.errors)
        )


# Not found


class NotFoundError(BudgetKernelError):
    """Base exception for unknown identifiers."""

    code: str = "NOT_FOUND"


class WorkflowNotFoundError(NotFoundError):
    """Workflow with given ID was not found."""

    code: str = "WORKFLOW_NOT_FOUND"

    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"Workflow not found: {workflow_id}")


class BatchNotFoundError(NotFoundError):
    """Disbursement batch with given ID was not found."""

    code: str = "BATCH_NOT_FOUND"

    def __init__(self, batch_id: str):
        self.batch_id = batch_id
        super().__init__(f"Batch not found: {batch_id}")


class BudgetNotFoundError(NotFoundError):
    """Region or organization budget was not found."""

    code: str = "BUDGET_NOT_FOUND"

    def __init__(self, scope: str, owner_id: str):
        self.scope = scope
        self.owner_id = owner_id
        super().__init__(f"No {scope} budget for {owner_id}")


# Infrastructure (retryable)


class InfrastructureError(BudgetKernelError):
    """Base exception for store faults.  Safe to retry the whole operation."""

    code: str = "INFRASTRUCTURE_ERROR"
    retryable: bool = True


class AuditWriteFailureError(InfrastructureError):
    """
    The audit row could not be appended.

    Fatal to the enclosing operation: the caller's transaction rolls back the
    paired mutation.
    """

    code: str = "AUDIT_WRITE_FAILURE"

    def __init__(self, action_type: str, entity_id: str, cause: str):
        self.action_type = action_type
        self.entity_id = entity_id
        self.cause = cause
        super().__init__(
            f"Failed to write {action_type} audit row for {entity_id}: {cause}"
        )


class StoreTimeoutError(InfrastructureError):
    """The store timed out or a lock wait was exceeded."""

    code: str = "STORE_TIMEOUT"

    def __init__(self, operation: str, cause: str):
        self.operation = operation
        self.cause = cause
        super().__init__(f"Store timeout during {operation}: {cause}")


# Audit


class AuditError(BudgetKernelError):
    """Base exception for audit-related errors."""

    code: str = "AUDIT_ERROR"


class AuditChainBrokenError(AuditError):
    """Audit hash chain validation failed."""

    code: str = "AUDIT_CHAIN_BROKEN"

    def __init__(self, audit_log_id: str, expected_hash: str, actual_hash: str):
        self.audit_log_id = audit_log_id
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash
        super().__init__(
            f"Audit chain broken at {audit_log_id}: "
            f"expected {expected_hash}, found {actual_hash}"
        )


# Immutability


class ImmutabilityError(BudgetKernelError):
    """Base exception for immutability violations."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """
    Attempted to modify or delete an immutable record.

    AuditLog rows and StepDecision rows are append-only; resolved workflows
    are frozen.
    """

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )


# Roles


class RoleError(BudgetKernelError):
    """Base exception for role resolution errors."""

    code: str = "ROLE_ERROR"


class UnknownRoleError(RoleError):
    """A raw role string from the role directory has no canonical mapping."""

    code: str = "UNKNOWN_ROLE"

    def __init__(self, raw_role: str):
        self.raw_role = raw_role
        super().__init__(f"Unknown role: {raw_role!r}")
