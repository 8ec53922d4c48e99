"""PaymentDistribution: a consolidated payment run.

Pays each grower one cheque covering the open payables of several posted
batches in `consolidated` cheque mode.  One item per (grower, batch)
records how much of the cheque came from that batch.

Lifecycle:  generated → voided
"""

import uuid
from datetime import date
from decimal import Decimal

from sqlalchemy import Date, ForeignKey, Integer, JSON, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from growerpay.database import Base
from growerpay.models.base import TimestampMixin, VoidableMixin


class PaymentDistribution(TimestampMixin, VoidableMixin, Base):
    __tablename__ = "payment_distributions"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    # DIST-2025-001
    distribution_number: Mapped[str] = mapped_column(
        String(30), unique=True, nullable=False, index=True
    )
    distribution_date: Mapped[date] = mapped_column(Date, nullable=False)
    # JSON array of source batch IDs
    batch_ids: Mapped[list] = mapped_column(JSON, default=list)

    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    total_growers: Mapped[int] = mapped_column(Integer, default=0)
    total_batches: Mapped[int] = mapped_column(Integer, default=0)

    # generated | voided
    status: Mapped[str] = mapped_column(String(20), default="generated", index=True)
    created_by: Mapped[str] = mapped_column(String(100), nullable=False)


class PaymentDistributionItem(VoidableMixin, Base):
    __tablename__ = "payment_distribution_items"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    distribution_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("payment_distributions.id"), nullable=False, index=True
    )
    grower_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("growers.id"), nullable=False
    )
    batch_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("payment_batches.id"), nullable=False
    )
    cheque_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("cheques.id"))
    # Gross payable contributed by this batch, before advance deductions
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    # pending | paid | voided
    status: Mapped[str] = mapped_column(String(20), default="pending")
