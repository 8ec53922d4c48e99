"""Standalone advance cheques, issued outside the batch cycle.

Issuing an advance takes a number from the grower's cheque series and
writes an `advance` ledger row.  The outstanding balance is recovered
later by the deduction engine.
"""

import logging
from datetime import date

from sqlalchemy.ext.asyncio import AsyncSession

from growerpay.exceptions import ResourceNotFoundError, ValidationFailedError
from growerpay.models.account import Account
from growerpay.models.advance import AdvanceCheque
from growerpay.models.base import utcnow
from growerpay.models.grower import Grower
from growerpay.services.deductions import DeductionEngine
from growerpay.utils.audit import log_audit
from growerpay.utils.money import money
from growerpay.utils.numbering import reserve_cheque_number

logger = logging.getLogger(__name__)


async def issue_advance_cheque(
    db: AsyncSession,
    *,
    grower_id: str,
    amount,
    actor: str,
    advance_date: date | None = None,
    reason: str | None = None,
) -> AdvanceCheque:
    amount = money(amount)
    if amount <= 0:
        raise ValidationFailedError("Advance amount must be positive")

    grower = await db.get(Grower, grower_id)
    if grower is None:
        raise ResourceNotFoundError("Grower", grower_id)
    errors = []
    if not grower.is_active:
        errors.append(f"Grower {grower.grower_number} is inactive")
    if grower.is_on_hold:
        errors.append(f"Grower {grower.grower_number} is on hold")
    if errors:
        raise ValidationFailedError(errors)

    advance_date = advance_date or date.today()
    series, number = await reserve_cheque_number(db, grower.currency)
    advance = AdvanceCheque(
        grower_id=grower.id,
        series_id=series.id,
        series_code=series.series_code,
        cheque_number=number,
        currency=grower.currency,
        original_amount=amount,
        outstanding_amount=amount,
        advance_date=advance_date,
        reason=reason,
        created_by=actor,
    )
    db.add(advance)
    await db.flush()

    db.add(Account(
        grower_id=grower.id,
        entry_type="advance",
        amount=amount,
        currency=grower.currency,
        entry_date=advance_date,
        description=f"Advance cheque {series.series_code}{number}",
        advance_cheque_id=advance.id,
        created_by=actor,
    ))
    log_audit(
        db, actor,
        entity_type="advance_cheque", entity_id=advance.id, action="issued",
        new_values={"amount": str(amount), "cheque": f"{series.series_code}{number}"},
        reason=reason,
    )
    await db.flush()
    logger.info(
        "Issued advance cheque %s%s for %s to grower %s",
        series.series_code, number, amount, grower.grower_number,
    )
    return advance


async def list_outstanding_advances(db: AsyncSession, grower_id: str) -> list[AdvanceCheque]:
    return await DeductionEngine(db).outstanding_advances(grower_id)


async def mark_advance_printed(db: AsyncSession, advance_cheque_id: str) -> AdvanceCheque:
    advance = await db.get(AdvanceCheque, advance_cheque_id)
    if advance is None:
        raise ResourceNotFoundError("Advance cheque", advance_cheque_id)
    advance.printed_at = utcnow()
    await db.flush()
    return advance
