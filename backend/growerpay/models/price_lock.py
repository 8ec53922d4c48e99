"""PriceScheduleLock: pins a price schedule to a posted (batch, tier).

While an active lock exists the price rows it covers must not be
edited; voiding the batch voids its locks.
"""

import uuid
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, text
from sqlalchemy.orm import Mapped, mapped_column

from growerpay.database import Base
from growerpay.models.base import VoidableMixin, utcnow


class PriceScheduleLock(VoidableMixin, Base):
    __tablename__ = "price_schedule_locks"
    __table_args__ = (
        Index(
            "uq_price_lock_schedule_batch_tier_active",
            "price_schedule_id", "batch_id", "tier",
            unique=True,
            postgresql_where=text("voided_at IS NULL"),
            sqlite_where=text("voided_at IS NULL"),
        ),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    price_schedule_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("price_schedules.id"), nullable=False, index=True
    )
    batch_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("payment_batches.id"), nullable=False, index=True
    )
    tier: Mapped[int] = mapped_column(Integer, nullable=False)
    locked_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    locked_by: Mapped[str] = mapped_column(String(100), nullable=False)
