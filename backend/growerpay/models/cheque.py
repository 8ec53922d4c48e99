"""ChequeSeries / Cheque: payment instruments.

Numbers come from the series counter (`next_number`), incremented under
a row lock in the same transaction that inserts the cheque, so numbers
are never issued twice or reused.

Cheque lifecycle:  generated → printed → delivered
                   any non-voided state → voided
"""

import uuid
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean, Date, DateTime, ForeignKey, Integer, Numeric, String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from growerpay.database import Base
from growerpay.models.base import TimestampMixin, VoidableMixin


class ChequeSeries(TimestampMixin, Base):
    __tablename__ = "cheque_series"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    series_code: Mapped[str] = mapped_column(String(10), unique=True, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    next_number: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class Cheque(TimestampMixin, VoidableMixin, Base):
    __tablename__ = "cheques"
    __table_args__ = (
        UniqueConstraint("series_id", "cheque_number", name="uq_cheque_series_number"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    series_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("cheque_series.id"), nullable=False
    )
    series_code: Mapped[str] = mapped_column(String(10), nullable=False)
    cheque_number: Mapped[int] = mapped_column(Integer, nullable=False)

    # ── Payee / amount ───────────────────────────────────────
    grower_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("growers.id"), nullable=False, index=True
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    cheque_date: Mapped[date] = mapped_column(Date, nullable=False)

    # ── Source ───────────────────────────────────────────────
    # Exactly one of these is set
    batch_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("payment_batches.id"), index=True
    )
    distribution_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("payment_distributions.id"), index=True
    )

    # ── Status ───────────────────────────────────────────────
    # generated | printed | delivered | voided
    status: Mapped[str] = mapped_column(String(20), default="generated", index=True)
    printed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_by: Mapped[str] = mapped_column(String(100), nullable=False)

    @property
    def display_number(self) -> str:
        return f"{self.series_code}{self.cheque_number:06d}"
