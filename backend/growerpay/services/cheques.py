"""Cheque issuance and print/delivery tracking.

Lifecycle:  generated → printed → delivered
            (voiding goes through the voiding engine)
"""

import logging
from datetime import date
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from growerpay.exceptions import InvalidTransitionError, ResourceNotFoundError
from growerpay.models.base import utcnow
from growerpay.models.cheque import Cheque
from growerpay.utils.money import money
from growerpay.utils.numbering import reserve_cheque_number

logger = logging.getLogger(__name__)

CHEQUE_TRANSITIONS = {
    "generated": {"printed"},
    "printed": {"delivered"},
    "delivered": set(),
    "voided": set(),
}


async def issue_cheque(
    db: AsyncSession,
    *,
    grower_id: str,
    currency: str,
    amount: Decimal,
    cheque_date: date,
    actor: str,
    batch_id: str | None = None,
    distribution_id: str | None = None,
) -> Cheque:
    """Reserve the next number in the currency's series and write the cheque."""
    series, number = await reserve_cheque_number(db, currency)
    cheque = Cheque(
        series_id=series.id,
        series_code=series.series_code,
        cheque_number=number,
        grower_id=grower_id,
        amount=money(amount),
        currency=currency,
        cheque_date=cheque_date,
        batch_id=batch_id,
        distribution_id=distribution_id,
        created_by=actor,
    )
    db.add(cheque)
    await db.flush()
    logger.info("Issued cheque %s for %s %s", cheque.display_number, cheque.amount, currency)
    return cheque


async def get_cheque(db: AsyncSession, cheque_id: str, *, lock: bool = False) -> Cheque:
    stmt = select(Cheque).where(Cheque.id == cheque_id)
    if lock:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt)
    cheque = result.scalar_one_or_none()
    if cheque is None:
        raise ResourceNotFoundError("Cheque", cheque_id)
    return cheque


async def _advance_status(db: AsyncSession, cheque_id: str, target: str) -> Cheque:
    cheque = await get_cheque(db, cheque_id, lock=True)
    if target not in CHEQUE_TRANSITIONS.get(cheque.status, set()):
        raise InvalidTransitionError(f"Cheque {cheque.display_number}", cheque.status, target)
    cheque.status = target
    if target == "printed":
        cheque.printed_at = utcnow()
    else:
        cheque.delivered_at = utcnow()
    await db.flush()
    return cheque


async def mark_cheque_printed(db: AsyncSession, cheque_id: str) -> Cheque:
    return await _advance_status(db, cheque_id, "printed")


async def mark_cheque_delivered(db: AsyncSession, cheque_id: str) -> Cheque:
    return await _advance_status(db, cheque_id, "delivered")
