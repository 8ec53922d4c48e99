"""ReceiptPaymentAllocation: a receipt paid at one tier by one batch.

At most one *active* allocation exists per (receipt, tier); voiding the
allocation makes the receipt eligible again at that tier.
"""

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import DateTime, ForeignKey, Index, Integer, Numeric, String, text
from sqlalchemy.orm import Mapped, mapped_column

from growerpay.database import Base
from growerpay.models.base import VoidableMixin, utcnow


class ReceiptPaymentAllocation(VoidableMixin, Base):
    __tablename__ = "receipt_payment_allocations"
    __table_args__ = (
        Index(
            "uq_allocation_receipt_tier_active",
            "receipt_id", "tier",
            unique=True,
            postgresql_where=text("voided_at IS NULL"),
            sqlite_where=text("voided_at IS NULL"),
        ),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )

    # ── Links ────────────────────────────────────────────────
    receipt_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("receipts.id"), nullable=False, index=True
    )
    grower_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("growers.id"), nullable=False, index=True
    )
    batch_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("payment_batches.id"), nullable=False, index=True
    )
    price_schedule_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("price_schedules.id")
    )
    cheque_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("cheques.id"), index=True
    )

    # ── Payment ──────────────────────────────────────────────
    tier: Mapped[int] = mapped_column(Integer, nullable=False)
    # Incremental price paid by this tier (cumulative minus earlier tiers)
    price_per_lb: Mapped[Decimal] = mapped_column(Numeric(10, 4), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    allocated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    allocated_by: Mapped[str] = mapped_column(String(100), nullable=False)
