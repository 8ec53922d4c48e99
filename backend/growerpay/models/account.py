"""Account: the grower payment ledger.

Rows are append-only; reversal sets the void columns rather than
deleting.  Positive amounts are owed to the grower, negative amounts
(deductions) reduce what is owed.  A row with neither a cheque nor a
distribution is an open payable awaiting a distribution run.

Entry types:  advance | final | deduction | adjustment
"""

import uuid
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import Date, DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from growerpay.database import Base
from growerpay.models.base import VoidableMixin, utcnow

ENTRY_TYPES = ("advance", "final", "deduction", "adjustment")


class Account(VoidableMixin, Base):
    __tablename__ = "accounts"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    grower_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("growers.id"), nullable=False, index=True
    )

    # ── Entry ────────────────────────────────────────────────
    entry_type: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    entry_date: Mapped[date] = mapped_column(Date, nullable=False)
    tier: Mapped[int | None] = mapped_column(Integer)
    description: Mapped[str | None] = mapped_column(Text)

    # ── Links ────────────────────────────────────────────────
    batch_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("payment_batches.id"), index=True
    )
    receipt_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("receipts.id"))
    cheque_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("cheques.id"), index=True
    )
    advance_cheque_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("advance_cheques.id")
    )
    advance_deduction_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("advance_deductions.id")
    )
    # Distribution run that settled this payable, with or without a cheque
    distribution_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("payment_distributions.id"), index=True
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    created_by: Mapped[str] = mapped_column(String(100), nullable=False)
