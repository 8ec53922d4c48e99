"""AdvanceCheque / AdvanceDeduction: standalone advances and their recovery.

An advance cheque is paid outside the batch cycle and recovered from
later payments.  `outstanding_amount` is drawn down by deductions,
oldest advance first; the sum of a cheque's active deductions never
exceeds `original_amount`.

AdvanceCheque lifecycle:
    active → partially_deducted → fully_deducted
    active → cancelled            (voided before anything was recovered)
    any    → voided
"""

import uuid
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import Date, DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from growerpay.database import Base
from growerpay.models.base import TimestampMixin, VoidableMixin, utcnow


class AdvanceCheque(TimestampMixin, VoidableMixin, Base):
    __tablename__ = "advance_cheques"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    grower_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("growers.id"), nullable=False, index=True
    )

    # ── Instrument ───────────────────────────────────────────
    series_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("cheque_series.id"), nullable=False
    )
    series_code: Mapped[str] = mapped_column(String(10), nullable=False)
    cheque_number: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    # ── Amounts ──────────────────────────────────────────────
    original_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    outstanding_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    advance_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    reason: Mapped[str | None] = mapped_column(Text)

    # ── Status ───────────────────────────────────────────────
    # active | partially_deducted | fully_deducted | cancelled | voided
    status: Mapped[str] = mapped_column(String(30), default="active", index=True)
    printed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_by: Mapped[str] = mapped_column(String(100), nullable=False)

    def refresh_status(self) -> None:
        """Derive the deduction status from the outstanding balance."""
        if self.status in ("cancelled", "voided"):
            return
        if self.outstanding_amount <= 0:
            self.status = "fully_deducted"
        elif self.outstanding_amount < self.original_amount:
            self.status = "partially_deducted"
        else:
            self.status = "active"


class AdvanceDeduction(VoidableMixin, Base):
    __tablename__ = "advance_deductions"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    advance_cheque_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("advance_cheques.id"), nullable=False, index=True
    )
    grower_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("growers.id"), nullable=False, index=True
    )

    # ── What the deduction was taken against ────────────────
    batch_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("payment_batches.id"), index=True
    )
    distribution_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("payment_distributions.id"), index=True
    )
    cheque_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("cheques.id"), index=True
    )

    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    deduction_date: Mapped[date] = mapped_column(Date, nullable=False)
    # fifo | manual
    transaction_type: Mapped[str] = mapped_column(String(20), default="fifo")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    created_by: Mapped[str] = mapped_column(String(100), nullable=False)
