"""Lightweight helpers for the payment audit trail.

Usage:
    log_audit(
        db, actor, entity_type="cheque", entity_id=cheque.id,
        action="voided", old_values={"status": "printed"},
        new_values={"status": "voided"}, reason="Lost in mail",
    )

The row is added to the current session and committed with the
enclosing transaction; no extra flush is performed.
"""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from growerpay.models.audit import PaymentAuditLog


def log_audit(
    db: AsyncSession,
    actor: str,
    *,
    entity_type: str,
    entity_id: str,
    action: str,
    old_values: dict | None = None,
    new_values: dict | None = None,
    reason: str | None = None,
) -> PaymentAuditLog:
    """Append an audit row to the current DB session."""
    entry = PaymentAuditLog(
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        old_values=old_values,
        new_values=new_values,
        reason=reason,
        changed_by=actor,
    )
    db.add(entry)
    return entry


async def get_audit_trail(
    db: AsyncSession, entity_type: str, entity_id: str
) -> list[PaymentAuditLog]:
    result = await db.execute(
        select(PaymentAuditLog)
        .where(
            PaymentAuditLog.entity_type == entity_type,
            PaymentAuditLog.entity_id == entity_id,
        )
        .order_by(PaymentAuditLog.changed_at)
    )
    return list(result.scalars().all())
