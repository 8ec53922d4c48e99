"""Grower: master data, read-only to the payment engine.

Maintained by the reference-data screens; the engine only reads the
active/hold flags, currency, pay group and price level.
"""

import uuid

from sqlalchemy import Boolean, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from growerpay.database import Base
from growerpay.models.base import TimestampMixin


class Grower(TimestampMixin, Base):
    __tablename__ = "growers"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    grower_number: Mapped[str] = mapped_column(
        String(20), unique=True, nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    # ── Payment profile ──────────────────────────────────────
    currency: Mapped[str] = mapped_column(String(3), default="CAD")
    pay_group: Mapped[str | None] = mapped_column(String(20), index=True)
    # Selects the price column within a price schedule
    price_level: Mapped[int] = mapped_column(Integer, default=1)

    # ── Flags ────────────────────────────────────────────────
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    is_on_hold: Mapped[bool] = mapped_column(Boolean, default=False)
