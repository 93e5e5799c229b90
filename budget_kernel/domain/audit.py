"""
Audit domain types.

Pure value objects for the append-only audit ledger.  The ORM row lives in
``budget_kernel.models.audit_log``; services hand these frozen DTOs out.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID


class AuditAction(str, Enum):
    """What kind of state change an audit row records."""

    ALLOCATION = "allocation"
    DISBURSEMENT = "disbursement"
    APPROVAL = "approval"
    MODIFICATION = "modification"
    REQUEST = "request"
    ESCALATION = "escalation"


class AuditEntityType(str, Enum):
    """What kind of entity an audit row is about."""

    BUDGET = "budget"
    ORGANIZATION = "organization"
    REQUEST = "request"
    WORKFLOW = "workflow"
    BATCH = "batch"
    USER = "user"


@dataclass(frozen=True)
class AuditLogEntry:
    """One immutable audit row with its hash-chain links."""

    audit_id: UUID
    seq: int
    action_type: AuditAction
    entity_type: AuditEntityType
    entity_id: str
    user_id: UUID | None
    changes: dict[str, Any]
    metadata: dict[str, Any]
    occurred_at: datetime
    payload_hash: str
    prev_hash: str | None
    hash: str


@dataclass(frozen=True)
class ActionSummary:
    """Counts of audit rows in a time window."""

    start_date: datetime | None
    end_date: datetime | None
    total: int
    by_action: dict[str, int] = field(default_factory=dict)
    by_entity_type: dict[str, int] = field(default_factory=dict)

    def count(self, action: AuditAction | str) -> int:
        key = action.value if isinstance(action, AuditAction) else action
        return self.by_action.get(key, 0)
