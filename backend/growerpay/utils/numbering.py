"""Number generation for batches, distributions and cheques.

Every counter is read and incremented under a row lock in the same
transaction that consumes the number, so two concurrent approvals can
never be handed the same value.  A racing first insert of a counter row
surfaces as a ConcurrencyConflictError; the caller retries.

Formats:
  batch:         {TypeCode}-{CropYear}-{seq:3}    ADV1-2025-001, FINAL-2025-002
  distribution:  DIST-{year}-{seq:3}              DIST-2025-004
  cheque:        next_number of the currency's series
"""

import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from growerpay.config import settings
from growerpay.exceptions import ConcurrencyConflictError, ValidationFailedError
from growerpay.models.cheque import ChequeSeries
from growerpay.models.sequence import NumberSequence

logger = logging.getLogger(__name__)


async def _next_value(db: AsyncSession, key: str) -> int:
    result = await db.execute(
        select(NumberSequence).where(NumberSequence.key == key).with_for_update()
    )
    counter = result.scalar_one_or_none()
    if counter is None:
        counter = NumberSequence(key=key, last_value=0)
        db.add(counter)
        try:
            await db.flush()
        except IntegrityError as exc:
            raise ConcurrencyConflictError(
                f"Counter {key} was created by a concurrent operation"
            ) from exc
    counter.last_value += 1
    await db.flush()
    return counter.last_value


async def next_batch_number(db: AsyncSession, type_code: str, crop_year: int) -> str:
    prefix = f"{type_code}-{crop_year}"
    seq = await _next_value(db, prefix)
    return f"{prefix}-{seq:03d}"


async def next_distribution_number(db: AsyncSession, year: int) -> str:
    prefix = f"DIST-{year}"
    seq = await _next_value(db, prefix)
    return f"{prefix}-{seq:03d}"


async def get_series_for_currency(db: AsyncSession, currency: str) -> ChequeSeries:
    """Lock and return the active cheque series for a currency."""
    code = settings.cheque_series_by_currency.get(currency)
    stmt = select(ChequeSeries).where(ChequeSeries.is_active == True)  # noqa: E712
    if code:
        stmt = stmt.where(ChequeSeries.series_code == code)
    else:
        stmt = stmt.where(ChequeSeries.currency == currency)
    result = await db.execute(stmt.with_for_update())
    series = result.scalars().first()
    if series is None:
        raise ValidationFailedError(f"No active cheque series for currency {currency}")
    return series


async def reserve_cheque_number(db: AsyncSession, currency: str) -> tuple[ChequeSeries, int]:
    """Take the next cheque number from the currency's series."""
    series = await get_series_for_currency(db, currency)
    number = series.next_number
    series.next_number = number + 1
    await db.flush()
    logger.debug("Reserved cheque %s%06d", series.series_code, number)
    return series, number
