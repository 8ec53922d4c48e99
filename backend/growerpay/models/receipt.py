"""Receipt: one delivery of product from a grower.

Supplied by the receipt import collaborator.  Which payment tiers a
receipt has been paid at is derived from its active allocations, never
stored on the receipt itself.
"""

import uuid
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from growerpay.database import Base
from growerpay.models.base import TimestampMixin


class Receipt(TimestampMixin, Base):
    __tablename__ = "receipts"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    receipt_number: Mapped[str] = mapped_column(
        String(30), unique=True, nullable=False, index=True
    )
    grower_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("growers.id"), nullable=False, index=True
    )

    # ── Product ──────────────────────────────────────────────
    product: Mapped[str] = mapped_column(String(20), nullable=False)
    process: Mapped[str] = mapped_column(String(20), nullable=False)
    grade: Mapped[str | None] = mapped_column(String(10))

    # ── Timing ───────────────────────────────────────────────
    crop_year: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    receipt_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    received_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    net_weight: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    is_voided: Mapped[bool] = mapped_column(Boolean, default=False)
