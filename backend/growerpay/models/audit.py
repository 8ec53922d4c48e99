"""PaymentAuditLog / PaymentException: the audit trail and reconciliation findings.

PaymentAuditLog is append-only: one row per void, rollback or balance
correction with the before/after state.

PaymentException lifecycle:  open → resolved | dismissed
"""

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import DateTime, JSON, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from growerpay.database import Base
from growerpay.models.base import TimestampMixin, utcnow


class PaymentAuditLog(Base):
    __tablename__ = "payment_audit_logs"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    # cheque | advance_cheque | distribution | batch | advance_deduction
    entity_type: Mapped[str] = mapped_column(String(30), nullable=False, index=True)
    entity_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    # voided | rolled_back | posted | finalized | balance_corrected | ...
    action: Mapped[str] = mapped_column(String(30), nullable=False)
    old_values: Mapped[dict | None] = mapped_column(JSON)
    new_values: Mapped[dict | None] = mapped_column(JSON)
    reason: Mapped[str | None] = mapped_column(Text)
    changed_by: Mapped[str] = mapped_column(String(100), nullable=False)
    changed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, index=True
    )


class PaymentException(TimestampMixin, Base):
    __tablename__ = "payment_exceptions"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )

    # ── Classification ───────────────────────────────────────
    # missing_payment | amount_discrepancy | advance_balance_mismatch |
    # advance_over_deducted | advance_status_mismatch | orphaned_deduction |
    # batch_total_mismatch
    exception_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    # critical | high | medium | low
    severity: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    description: Mapped[str] = mapped_column(Text, nullable=False)

    # ── Mismatch details ─────────────────────────────────────
    expected_value: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    actual_value: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    difference: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    # {"advance_cheque_id": "...", "grower_id": "..."}
    entity_refs: Mapped[dict | None] = mapped_column(JSON)

    # ── Status ───────────────────────────────────────────────
    status: Mapped[str] = mapped_column(String(20), default="open", index=True)
    resolution: Mapped[str | None] = mapped_column(Text)
    resolved_by: Mapped[str | None] = mapped_column(String(100))
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    run_id: Mapped[str | None] = mapped_column(String(36), index=True)
