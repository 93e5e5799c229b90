"""
ORM models for batch disbursement persistence.

Contract:
    DisbursementBatchModel and DisbursementItemModel persist batch state and
    per-item outcomes.  Each has a ``to_dto()`` method.

Architecture: budget_batch/models. Imports from budget_kernel.db.base only.

Invariants enforced:
    - ``batch_number`` is UNIQUE, allocated via SequenceService.
    - Items are ordered by ``item_index`` and keyed UNIQUE per batch;
      reference numbers are UNIQUE per batch.
    - ``attempt_count`` records how many runs touched the batch / item.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy import (
    JSON,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from budget_kernel.db.base import TrackedBase, UTCDateTime, UUIDString

if TYPE_CHECKING:
    from budget_batch.domain.types import DisbursementBatch, DisbursementItem


class DisbursementBatchModel(TrackedBase):
    """Persistent disbursement batch."""

    __tablename__ = "disbursement_batches"

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="ck_disbursement_batches_status",
        ),
        CheckConstraint("total_amount > 0", name="ck_disbursement_batches_total"),
        Index("ix_disbursement_batches_status", "status"),
        Index("ix_disbursement_batches_created_at", "created_at"),
    )

    batch_number: Mapped[str] = mapped_column(String(30), nullable=False, unique=True)
    fiscal_year: Mapped[int] = mapped_column(Integer, nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(nullable=False)
    organization_count: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    metadata_: Mapped[dict[str, Any] | None] = mapped_column(
        "metadata", JSON, nullable=True,
    )

    items: Mapped[list["DisbursementItemModel"]] = relationship(
        "DisbursementItemModel",
        back_populates="batch",
        order_by="DisbursementItemModel.item_index",
        lazy="selectin",
        cascade="all",
    )

    def __repr__(self) -> str:
        return f"<DisbursementBatch {self.batch_number} status={self.status}>"

    def to_dto(self) -> DisbursementBatch:
        from budget_batch.domain.types import BatchStatus, DisbursementBatch

        return DisbursementBatch(
            batch_id=self.id,
            batch_number=self.batch_number,
            fiscal_year=self.fiscal_year,
            total_amount=self.total_amount,
            organization_count=self.organization_count,
            status=BatchStatus(self.status),
            created_by=self.created_by_id,
            created_at=self.created_at,
            completed_at=self.completed_at,
            attempt_count=self.attempt_count,
            metadata=self.metadata_ or {},
            items=tuple(item.to_dto() for item in self.items),
        )


class DisbursementItemModel(TrackedBase):
    """One payout within a batch."""

    __tablename__ = "disbursement_items"

    __table_args__ = (
        UniqueConstraint("batch_id", "item_index", name="uq_disbursement_items_index"),
        UniqueConstraint(
            "batch_id", "reference_number", name="uq_disbursement_items_reference",
        ),
        CheckConstraint(
            "status IN ('pending', 'succeeded', 'failed')",
            name="ck_disbursement_items_status",
        ),
        CheckConstraint("amount > 0", name="ck_disbursement_items_amount"),
        Index("ix_disbursement_items_batch_status", "batch_id", "status"),
    )

    batch_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("disbursement_batches.id"),
        nullable=False,
    )
    item_index: Mapped[int] = mapped_column(Integer, nullable=False)
    organization_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    purpose: Mapped[str] = mapped_column(Text, nullable=False, default="")
    reference_number: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    error_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    batch: Mapped["DisbursementBatchModel"] = relationship(
        "DisbursementBatchModel", back_populates="items",
    )

    def to_dto(self) -> DisbursementItem:
        from budget_batch.domain.types import DisbursementItem, ItemStatus

        return DisbursementItem(
            item_id=self.id,
            batch_id=self.batch_id,
            item_index=self.item_index,
            organization_id=self.organization_id,
            amount=self.amount,
            purpose=self.purpose,
            reference_number=self.reference_number,
            status=ItemStatus(self.status),
            error_code=self.error_code,
            error_message=self.error_message,
            attempt_count=self.attempt_count,
            processed_at=self.processed_at,
        )
