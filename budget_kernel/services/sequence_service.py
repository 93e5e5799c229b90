"""
SequenceService -- gap-free counters backed by locked rows.

Two counters exist: ``audit_log`` numbers audit rows and
``disbursement_batch`` numbers batches (``DB-<fiscal year>-<seq:06d>``).
Each counter is a ``SequenceCounter`` row read with ``SELECT ... FOR UPDATE``,
so two transactions can never receive the same value and a rolled-back
transaction hands its value back.

Never commits; the caller's transaction owns the increment.
"""

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from budget_kernel.logging_config import get_logger
from budget_kernel.models.sequence import SequenceCounter

logger = get_logger("services.sequence")


class SequenceService:
    AUDIT_LOG = "audit_log"
    DISBURSEMENT_BATCH = "disbursement_batch"

    def __init__(self, session: Session):
        self._session = session

    def _lock(self, name: str) -> SequenceCounter | None:
        stmt = (
            select(SequenceCounter)
            .where(SequenceCounter.name == name)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return self._session.execute(stmt).scalar_one_or_none()

    def _create(self, name: str) -> SequenceCounter:
        # Two first users can race on the insert; the loser re-reads the
        # winner's row under lock.
        savepoint = self._session.begin_nested()
        counter = SequenceCounter(name=name, current_value=0)
        self._session.add(counter)
        try:
            self._session.flush()
        except IntegrityError:
            savepoint.rollback()
            logger.debug("sequence_counter_race", extra={"sequence_name": name})
            existing = self._lock(name)
            if existing is None:
                raise
            return existing
        savepoint.commit()
        return counter

    def next_value(self, name: str) -> int:
        """Increment the named counter and return the new value (first is 1)."""
        counter = self._lock(name) or self._create(name)
        counter.current_value += 1
        self._session.flush()
        logger.debug(
            "sequence_allocated",
            extra={"sequence_name": name, "value": counter.current_value},
        )
        return counter.current_value

    def next_batch_number(self, fiscal_year: int) -> str:
        seq = self.next_value(self.DISBURSEMENT_BATCH)
        return f"DB-{fiscal_year}-{seq:06d}"
