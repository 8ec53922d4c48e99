"""PaymentBatch: one advance or final payment run for a crop year.

The batch owns every allocation, ledger row, cheque and price lock
created when it is posted.  The calculation preview is stored on the
draft so the operator reviews exactly what will be posted.

Lifecycle:  draft → posted → finalized
            draft → voided
            posted → voided   (rollback voids every dependent first)
"""

import uuid
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    Date, DateTime, ForeignKey, Integer, JSON, Numeric, String, Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from growerpay.database import Base
from growerpay.models.base import TimestampMixin, VoidableMixin

BATCH_STATUSES = ("draft", "posted", "finalized", "voided")

# Allowed transitions of the batch state machine
BATCH_TRANSITIONS = {
    "draft": {"posted", "voided"},
    "posted": {"finalized", "voided"},
    "finalized": set(),
    "voided": set(),
}


class PaymentBatch(TimestampMixin, VoidableMixin, Base):
    __tablename__ = "payment_batches"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    # ADV1-2025-001, FINAL-2025-003
    batch_number: Mapped[str] = mapped_column(
        String(30), unique=True, nullable=False, index=True
    )

    # ── Payment type ─────────────────────────────────────────
    # 1..N for advances, 0 for the final payment
    tier: Mapped[int] = mapped_column(Integer, nullable=False)
    crop_year: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    batch_date: Mapped[date] = mapped_column(Date, nullable=False)
    cutoff_date: Mapped[date] = mapped_column(Date, nullable=False)
    # per_batch: cheques issued at posting
    # consolidated: payables left open for a distribution run
    cheque_mode: Mapped[str] = mapped_column(String(20), default="per_batch")

    # ── Inputs / preview ─────────────────────────────────────
    filters: Mapped[dict | None] = mapped_column(JSON)
    preview: Mapped[dict | None] = mapped_column(JSON)

    # ── Totals (fixed at posting) ────────────────────────────
    total_growers: Mapped[int] = mapped_column(Integer, default=0)
    total_receipts: Mapped[int] = mapped_column(Integer, default=0)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))

    # ── Status ───────────────────────────────────────────────
    # draft | posted | finalized | voided
    status: Mapped[str] = mapped_column(String(20), default="draft", index=True)
    created_by: Mapped[str] = mapped_column(String(100), nullable=False)
    posted_by: Mapped[str | None] = mapped_column(String(100))
    posted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    finalized_by: Mapped[str | None] = mapped_column(String(100))
    finalized_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Distribution run that settled the last open payable of this batch
    consolidated_distribution_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("payment_distributions.id")
    )

    notes: Mapped[str | None] = mapped_column(Text)

    @property
    def type_code(self) -> str:
        return "FINAL" if self.tier == 0 else f"ADV{self.tier}"

    def can_transition(self, target: str) -> bool:
        return target in BATCH_TRANSITIONS.get(self.status, set())
