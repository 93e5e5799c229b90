"""
Module: budget_kernel.models.audit_log
Responsibility: ORM persistence for the append-only, hash-chained audit ledger.
Architecture position: Kernel > Models.  May import from db/ and domain/ only.

Invariants enforced:
    - Audit rows are append-only; no UPDATE or DELETE (ORM listeners
      registered by db.immutability).
    - Hash chain: hash = H(seq | action_type | entity_type | entity_id |
      payload_hash | prev_hash).  Validated by AuditorService.
    - seq is strictly increasing, allocated by SequenceService.

Failure modes:
    - ImmutabilityViolationError on any UPDATE/DELETE attempt.
    - AuditChainBrokenError when chain validation detects a mismatch.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, BigInteger, CheckConstraint, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from budget_kernel.db.base import Base, UTCDateTime, UUIDString
from budget_kernel.domain.audit import AuditAction, AuditEntityType, AuditLogEntry


class AuditLog(Base):
    """
    One audit row.

    Contract:
        Rows are never updated or deleted.  Each row's hash includes the
        previous row's hash, so tampering with any row is detectable.

    Non-goals:
        - The model does not compute hashes; AuditorService does.
    """

    __tablename__ = "audit_logs"

    __table_args__ = (
        Index("idx_audit_logs_entity", "entity_type", "entity_id"),
        Index("idx_audit_logs_action", "action_type"),
        Index("idx_audit_logs_occurred", "occurred_at"),
        CheckConstraint(
            "action_type IN ('allocation', 'disbursement', 'approval', "
            "'modification', 'request', 'escalation')",
            name="ck_audit_logs_action_type",
        ),
        CheckConstraint(
            "entity_type IN ('budget', 'organization', 'request', "
            "'workflow', 'batch', 'user')",
            name="ck_audit_logs_entity_type",
        ),
    )

    seq: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True)

    action_type: Mapped[str] = mapped_column(String(30), nullable=False)

    entity_type: Mapped[str] = mapped_column(String(30), nullable=False)

    entity_id: Mapped[str] = mapped_column(String(100), nullable=False)

    # Acting user; None for system-initiated rows
    user_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    changes: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    # "metadata" is reserved on declarative classes
    metadata_: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict,
    )

    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    prev_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)

    hash: Mapped[str] = mapped_column(String(64), nullable=False)

    def __repr__(self) -> str:
        return f"<AuditLog #{self.seq} {self.action_type} on {self.entity_type}:{self.entity_id}>"

    @property
    def is_genesis(self) -> bool:
        return self.prev_hash is None

    def to_dto(self) -> AuditLogEntry:
        return AuditLogEntry(
            audit_id=self.id,
            seq=self.seq,
            action_type=AuditAction(self.action_type),
            entity_type=AuditEntityType(self.entity_type),
            entity_id=self.entity_id,
            user_id=self.user_id,
            changes=dict(self.changes or {}),
            metadata=dict(self.metadata_ or {}),
            occurred_at=self.occurred_at,
            payload_hash=self.payload_hash,
            prev_hash=self.prev_hash,
            hash=self.hash,
        )
