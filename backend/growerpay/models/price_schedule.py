"""PriceSchedule / PriceDetail: per product/process price table.

A schedule is effective over a date range.  Each PriceDetail row holds
the *cumulative* price per lb for one payment tier:

    tier 1..N   → advance N (running total paid after that advance)
    tier 0      → final (full value of the receipt)

The engine only reads and locks these rows; editing is done elsewhere.
"""

import uuid
from datetime import date, time
from decimal import Decimal

from sqlalchemy import (
    Boolean, Date, ForeignKey, Integer, JSON, Numeric, String, Time,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from growerpay.database import Base
from growerpay.models.base import TimestampMixin


class PriceSchedule(TimestampMixin, Base):
    __tablename__ = "price_schedules"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    product: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    process: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    effective_from: Mapped[date] = mapped_column(Date, nullable=False)
    effective_to: Mapped[date | None] = mapped_column(Date)

    # ── Time premium ─────────────────────────────────────────
    time_premium_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    premium_cutoff: Mapped[time | None] = mapped_column(Time)
    # {"CAD": "0.05", "USD": "0.04"}: premium per lb by grower currency
    premium_per_lb: Mapped[dict | None] = mapped_column(JSON)

    # ── Marketing deduction ──────────────────────────────────
    marketing_rate: Mapped[Decimal] = mapped_column(Numeric(10, 4), default=Decimal("0"))


class PriceDetail(Base):
    __tablename__ = "price_details"
    __table_args__ = (
        UniqueConstraint(
            "schedule_id", "tier", "price_level", "grade",
            name="uq_price_detail_tier_level_grade",
        ),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    schedule_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("price_schedules.id"), nullable=False, index=True
    )
    tier: Mapped[int] = mapped_column(Integer, nullable=False)
    price_level: Mapped[int] = mapped_column(Integer, default=1)
    # NULL grade applies to every grade without a specific row
    grade: Mapped[str | None] = mapped_column(String(10))
    price_per_lb: Mapped[Decimal] = mapped_column(Numeric(10, 4), nullable=False)
