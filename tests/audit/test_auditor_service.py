"""
Tests for AuditorService -- append-only, hash-chained audit trail.

Covers:
- log_action(): sequence, genesis row, chain links, canonical payloads
- immutability: ORM update/delete of audit rows is blocked
- validate_chain(): intact chain, tampered payload, broken link
- get_audit_trail() / get_entity_history() / get_action_summary() filters
"""

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from budget_kernel.db.immutability import (
    register_immutability_listeners,
    unregister_immutability_listeners,
)
from budget_kernel.domain.audit import AuditAction, AuditEntityType
from budget_kernel.exceptions import (
    AuditChainBrokenError,
    ImmutabilityViolationError,
    ValidationFailedError,
)
from budget_kernel.models.audit_log import AuditLog


def _log(auditor, action=AuditAction.ALLOCATION, entity=AuditEntityType.BUDGET, **changes):
    return auditor.log_action(
        action, entity, uuid4(), changes=changes or {"amount": Decimal("10")},
    )


class TestLogAction:
    def test_first_row_is_genesis(self, auditor_service):
        entry = _log(auditor_service)
        assert entry.seq == 1
        assert entry.prev_hash is None
        assert len(entry.hash) == 64

    def test_rows_link_to_predecessor(self, auditor_service):
        first = _log(auditor_service)
        second = _log(auditor_service, AuditAction.APPROVAL, AuditEntityType.WORKFLOW)
        assert second.seq == first.seq + 1
        assert second.prev_hash == first.hash

    def test_payload_is_stored_canonically(self, auditor_service):
        workflow_id = uuid4()
        entry = auditor_service.log_action(
            "approval", "workflow", workflow_id,
            changes={"amount": Decimal("50000.00")},
            metadata={"workflow_id": workflow_id},
        )
        assert entry.changes == {"amount": "50000"}
        assert entry.metadata == {"workflow_id": str(workflow_id)}
        assert entry.entity_id == str(workflow_id)

    def test_occurred_at_from_clock(self, auditor_service, deterministic_clock):
        entry = _log(auditor_service)
        assert entry.occurred_at == deterministic_clock.now()

    def test_unknown_action_refused(self, auditor_service):
        with pytest.raises(ValidationFailedError):
            auditor_service.log_action("deletion", "budget", uuid4(), changes={})


class TestImmutability:
    def test_update_blocked(self, auditor_service, session):
        entry = _log(auditor_service)
        row = session.get(AuditLog, entry.audit_id)
        row.changes = {"amount": "1"}
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_delete_blocked(self, auditor_service, session):
        entry = _log(auditor_service)
        session.delete(session.get(AuditLog, entry.audit_id))
        with pytest.raises(ImmutabilityViolationError):
            session.flush()


class TestChainValidation:
    def test_intact_chain(self, auditor_service):
        for _ in range(5):
            _log(auditor_service)
        assert auditor_service.validate_chain() is True

    def test_empty_chain_is_valid(self, auditor_service):
        assert auditor_service.validate_chain() is True

    def test_tampered_payload_detected(self, auditor_service, session, captured_logs):
        _log(auditor_service)
        target = _log(auditor_service)
        _log(auditor_service)

        unregister_immutability_listeners()
        try:
            row = session.get(AuditLog, target.audit_id)
            row.changes = {"amount": "999999"}
            session.flush()
        finally:
            register_immutability_listeners()

        with pytest.raises(AuditChainBrokenError) as exc_info:
            auditor_service.validate_chain()
        assert exc_info.value.audit_log_id == str(target.audit_id)
        assert any(r["message"] == "audit_chain_broken" for r in captured_logs())

    def test_broken_link_detected(self, auditor_service, session):
        _log(auditor_service)
        target = _log(auditor_service)

        unregister_immutability_listeners()
        try:
            row = session.get(AuditLog, target.audit_id)
            row.prev_hash = "0" * 64
            session.flush()
        finally:
            register_immutability_listeners()

        with pytest.raises(AuditChainBrokenError):
            auditor_service.validate_chain()


class TestQueries:
    def test_entity_history_newest_first(self, auditor_service):
        entity_id = uuid4()
        for action in (AuditAction.REQUEST, AuditAction.APPROVAL, AuditAction.APPROVAL):
            auditor_service.log_action(action, AuditEntityType.WORKFLOW, entity_id, changes={})
        _log(auditor_service)

        history = auditor_service.get_entity_history("workflow", entity_id)
        assert [h.action_type for h in history] == [
            AuditAction.APPROVAL, AuditAction.APPROVAL, AuditAction.REQUEST,
        ]
        assert history[0].seq > history[-1].seq

    def test_filters(self, auditor_service, deterministic_clock):
        _log(auditor_service)
        deterministic_clock.advance(86400)
        late = _log(auditor_service, AuditAction.DISBURSEMENT, AuditEntityType.BATCH)

        by_type = auditor_service.get_audit_trail(action_type="disbursement")
        assert [e.audit_id for e in by_type] == [late.audit_id]

        since = auditor_service.get_audit_trail(start_date=date(2024, 3, 2))
        assert [e.audit_id for e in since] == [late.audit_id]

        until = auditor_service.get_audit_trail(end_date=date(2024, 3, 1))
        assert len(until) == 1
        assert until[0].audit_id != late.audit_id

        assert len(auditor_service.get_audit_trail(limit=1)) == 1

    def test_datetime_end_is_exclusive(self, auditor_service, deterministic_clock):
        entry = _log(auditor_service)
        assert auditor_service.get_audit_trail(end_date=entry.occurred_at) == []
        assert len(auditor_service.get_audit_trail(
            end_date=entry.occurred_at + timedelta(seconds=1),
        )) == 1

    def test_action_summary(self, auditor_service):
        _log(auditor_service)
        _log(auditor_service)
        _log(auditor_service, AuditAction.ESCALATION, AuditEntityType.WORKFLOW)

        summary = auditor_service.get_action_summary(
            start_date=datetime(2024, 1, 1, tzinfo=timezone.utc),
        )
        assert summary.total == 3
        assert summary.by_action == {"allocation": 2, "escalation": 1}
        assert summary.by_entity_type == {"budget": 2, "workflow": 1}
