"""
AuditorService -- append-only audit ledger and hash chain maintenance.

Responsibility:
    Appends an immutable, hash-chained AuditLog row for every state-changing
    action (allocations, disbursements, approvals, modifications, requests,
    escalations) and serves the read side: filtered trails, per-entity
    history, action summaries, and chain validation.

Architecture position:
    Kernel > Services -- called by LedgerService, ApprovalWorkflowService and
    the batch processor.  Never commits; the caller's transaction owns both
    the business mutation and its audit row.

Invariants enforced:
    - Sequence monotonicity via SequenceService (never max+1).
    - Chain integrity: ``hash = H(seq | action | entity | payload_hash |
      prev_hash)``; every row links to its predecessor.
    - Append-only: AuditLog rows are never modified or deleted (ORM
      listeners in db.immutability).

Failure modes:
    - AuditWriteFailureError: any store error while appending.  Retryable,
      and fatal to the enclosing operation -- the caller rolls back.
    - AuditChainBrokenError: validate_chain() found a mismatch.
    - ValidationFailedError: unknown action or entity type.
"""

from __future__ import annotations

import json
from datetime import date, datetime
from typing import Any
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from budget_kernel.domain.audit import (
    ActionSummary,
    AuditAction,
    AuditEntityType,
    AuditLogEntry,
)
from budget_kernel.domain.clock import Clock, SystemClock
from budget_kernel.exceptions import (
    AuditChainBrokenError,
    AuditWriteFailureError,
    ValidationFailedError,
)
from budget_kernel.logging_config import get_logger
from budget_kernel.models.audit_log import AuditLog
from budget_kernel.services.sequence_service import SequenceService
from budget_kernel.utils.dates import to_utc_bound
from budget_kernel.utils.hashing import canonicalize_json, hash_audit_entry, hash_payload

logger = get_logger("services.auditor")


def _coerce(enum_cls, value, label: str):
    try:
        return enum_cls(value)
    except ValueError:
        raise ValidationFailedError(f"Unknown {label}: {value!r}") from None


class AuditorService:
    """
    Audit recorder.

    Guarantees:
        - Every ``log_action`` call appends exactly one row.
        - Rows are returned newest first by every query method.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
        - Exposes no update or delete.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self._session = session
        self._clock = clock or SystemClock()
        self._sequence_service = SequenceService(session)

    def _get_last_hash(self) -> str | None:
        last = self._session.execute(
            select(AuditLog.hash).order_by(AuditLog.seq.desc()).limit(1)
        ).scalar_one_or_none()
        return last

    # ------------------------------------------------------------------
    # Write side
    # ------------------------------------------------------------------

    def log_action(
        self,
        action_type: AuditAction | str,
        entity_type: AuditEntityType | str,
        entity_id: UUID | str,
        changes: dict[str, Any],
        metadata: dict[str, Any] | None = None,
        actor_id: UUID | None = None,
    ) -> AuditLogEntry:
        """
        Append one hash-chained audit row.

        Preconditions:
            - Pending business mutations have been flushed by the caller, so
              a store failure here is attributable to the audit write.
        Postconditions:
            - A new AuditLog row is flushed with the next ``seq`` and a
              valid link to the previous row's hash.

        Raises:
            ValidationFailedError: Unknown action or entity type.
            AuditWriteFailureError: The row could not be written.
        """
        action = _coerce(AuditAction, action_type, "audit action type")
        entity = _coerce(AuditEntityType, entity_type, "audit entity type")
        entity_key = str(entity_id)

        # JSON columns cannot hold Decimal/UUID/datetime; store the
        # canonical form that is also what gets hashed.
        changes_data = json.loads(canonicalize_json(changes or {}))
        metadata_data = json.loads(canonicalize_json(metadata or {}))

        try:
            seq = self._sequence_service.next_value(SequenceService.AUDIT_LOG)
            prev_hash = self._get_last_hash()
            payload_hash = hash_payload({"changes": changes_data, "metadata": metadata_data})
            row_hash = hash_audit_entry(
                seq=seq,
                action_type=action.value,
                entity_type=entity.value,
                entity_id=entity_key,
                payload_hash=payload_hash,
                prev_hash=prev_hash,
            )
            row = AuditLog(
                seq=seq,
                action_type=action.value,
                entity_type=entity.value,
                entity_id=entity_key,
                user_id=actor_id,
                changes=changes_data,
                metadata_=metadata_data,
                occurred_at=self._clock.now(),
                payload_hash=payload_hash,
                prev_hash=prev_hash,
                hash=row_hash,
            )
            self._session.add(row)
            self._session.flush()
        except SQLAlchemyError as exc:
            logger.error(
                "audit_write_failed",
                extra={
                    "action_type": action.value,
                    "entity_type": entity.value,
                    "entity_id": entity_key,
                },
                exc_info=True,
            )
            raise AuditWriteFailureError(action.value, entity_key, str(exc)) from exc

        logger.info(
            "audit_log_appended",
            extra={
                "action_type": action.value,
                "entity_type": entity.value,
                "entity_id": entity_key,
                "seq": seq,
            },
        )
        return row.to_dto()

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def get_audit_trail(
        self,
        entity_type: AuditEntityType | str | None = None,
        entity_id: UUID | str | None = None,
        start_date: date | datetime | None = None,
        end_date: date | datetime | None = None,
        action_type: AuditAction | str | None = None,
        limit: int | None = None,
    ) -> list[AuditLogEntry]:
        """Audit rows matching every given filter, newest first.

        ``start_date`` is inclusive; ``end_date`` is exclusive for datetimes
        and inclusive of the whole day for dates.
        """
        stmt = select(AuditLog)
        if entity_type is not None:
            entity = _coerce(AuditEntityType, entity_type, "audit entity type")
            stmt = stmt.where(AuditLog.entity_type == entity.value)
        if entity_id is not None:
            stmt = stmt.where(AuditLog.entity_id == str(entity_id))
        if action_type is not None:
            action = _coerce(AuditAction, action_type, "audit action type")
            stmt = stmt.where(AuditLog.action_type == action.value)
        start = to_utc_bound(start_date, end=False)
        end = to_utc_bound(end_date, end=True)
        if start is not None:
            stmt = stmt.where(AuditLog.occurred_at >= start)
        if end is not None:
            stmt = stmt.where(AuditLog.occurred_at < end)
        stmt = stmt.order_by(AuditLog.seq.desc())
        if limit is not None:
            stmt = stmt.limit(limit)

        return [row.to_dto() for row in self._session.execute(stmt).scalars()]

    def get_entity_history(
        self,
        entity_type: AuditEntityType | str,
        entity_id: UUID | str,
    ) -> list[AuditLogEntry]:
        """Every audit row for one entity, newest first."""
        return self.get_audit_trail(entity_type=entity_type, entity_id=entity_id)

    def get_action_summary(
        self,
        start_date: date | datetime | None = None,
        end_date: date | datetime | None = None,
    ) -> ActionSummary:
        """Counts of audit rows per action type and per entity type."""
        start = to_utc_bound(start_date, end=False)
        end = to_utc_bound(end_date, end=True)

        def _grouped(column) -> dict[str, int]:
            stmt = select(column, func.count(AuditLog.id)).group_by(column)
            if start is not None:
                stmt = stmt.where(AuditLog.occurred_at >= start)
            if end is not None:
                stmt = stmt.where(AuditLog.occurred_at < end)
            return {key: count for key, count in self._session.execute(stmt).all()}

        by_action = _grouped(AuditLog.action_type)
        by_entity = _grouped(AuditLog.entity_type)
        return ActionSummary(
            start_date=start,
            end_date=end,
            total=sum(by_action.values()),
            by_action=by_action,
            by_entity_type=by_entity,
        )

    def validate_chain(self) -> bool:
        """
        Recompute the whole hash chain.

        Raises:
            AuditChainBrokenError: At the first row whose hash or prev_hash
                does not match.
        """
        rows = self._session.execute(
            select(AuditLog).order_by(AuditLog.seq)
        ).scalars().all()

        prev: AuditLog | None = None
        for row in rows:
            expected_prev = prev.hash if prev is not None else None
            if row.prev_hash != expected_prev:
                logger.critical("audit_chain_broken", extra={"seq": row.seq})
                raise AuditChainBrokenError(
                    str(row.id), expected_prev or "None", row.prev_hash or "None",
                )

            expected_payload = hash_payload(
                {"changes": row.changes or {}, "metadata": row.metadata_ or {}}
            )
            expected_hash = hash_audit_entry(
                seq=row.seq,
                action_type=row.action_type,
                entity_type=row.entity_type,
                entity_id=row.entity_id,
                payload_hash=expected_payload,
                prev_hash=row.prev_hash,
            )
            if row.payload_hash != expected_payload or row.hash != expected_hash:
                logger.critical("audit_chain_broken", extra={"seq": row.seq})
                raise AuditChainBrokenError(str(row.id), expected_hash, row.hash)
            prev = row

        logger.info("audit_chain_valid", extra={"row_count": len(rows)})
        return True
