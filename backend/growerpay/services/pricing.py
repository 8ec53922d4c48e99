"""Price lookup for a receipt at a payment tier.

Finds the schedule effective on the receipt date for its product and
process, then the detail row for the tier and the grower's price level,
preferring a grade-specific row over the any-grade row.  Lookups are
cached for the life of the resolver, which is one calculation run.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from growerpay.models.grower import Grower
from growerpay.models.price_schedule import PriceDetail, PriceSchedule
from growerpay.models.receipt import Receipt
from growerpay.services.tiers import AdvanceTier
from growerpay.utils.money import ZERO, to_decimal


@dataclass
class ResolvedPrice:
    schedule_id: str
    price_per_lb: Decimal       # cumulative price for the tier
    premium_per_lb: Decimal = ZERO
    marketing_rate: Decimal = ZERO


class PriceResolver:
    def __init__(self, db: AsyncSession):
        self.db = db
        self._schedules: dict[tuple[str, str, date], PriceSchedule | None] = {}
        self._details: dict[tuple[str, int, int], list[PriceDetail]] = {}

    async def find_schedule(
        self, product: str, process: str, on_date: date
    ) -> PriceSchedule | None:
        key = (product, process, on_date)
        if key not in self._schedules:
            result = await self.db.execute(
                select(PriceSchedule)
                .where(
                    PriceSchedule.product == product,
                    PriceSchedule.process == process,
                    PriceSchedule.effective_from <= on_date,
                    or_(
                        PriceSchedule.effective_to.is_(None),
                        PriceSchedule.effective_to >= on_date,
                    ),
                )
                .order_by(PriceSchedule.effective_from.desc())
                .limit(1)
            )
            self._schedules[key] = result.scalar_one_or_none()
        return self._schedules[key]

    async def _detail_rows(
        self, schedule_id: str, tier: int, price_level: int
    ) -> list[PriceDetail]:
        key = (schedule_id, tier, price_level)
        if key not in self._details:
            result = await self.db.execute(
                select(PriceDetail).where(
                    PriceDetail.schedule_id == schedule_id,
                    PriceDetail.tier == tier,
                    PriceDetail.price_level == price_level,
                )
            )
            self._details[key] = list(result.scalars().all())
        return self._details[key]

    async def resolve(
        self, receipt: Receipt, grower: Grower, tier: AdvanceTier
    ) -> ResolvedPrice | None:
        """Return the price for `receipt` at `tier`, or None when unpriced."""
        schedule = await self.find_schedule(
            receipt.product, receipt.process, receipt.receipt_date
        )
        if schedule is None:
            return None

        rows = await self._detail_rows(schedule.id, tier.number, grower.price_level or 1)
        detail = next((r for r in rows if r.grade and r.grade == receipt.grade), None)
        if detail is None:
            detail = next((r for r in rows if r.grade is None), None)
        if detail is None:
            return None

        resolved = ResolvedPrice(
            schedule_id=schedule.id,
            price_per_lb=to_decimal(detail.price_per_lb),
        )
        if tier.carries_premium:
            resolved.premium_per_lb = self.time_premium(schedule, receipt, grower)
            resolved.marketing_rate = to_decimal(schedule.marketing_rate)
        return resolved

    @staticmethod
    def time_premium(schedule: PriceSchedule, receipt: Receipt, grower: Grower) -> Decimal:
        """Premium per lb for deliveries received at or before the cutoff time."""
        if not schedule.time_premium_enabled or schedule.premium_cutoff is None:
            return ZERO
        if receipt.received_at is None:
            return ZERO
        if receipt.received_at.time() > schedule.premium_cutoff:
            return ZERO
        amounts = schedule.premium_per_lb or {}
        return to_decimal(amounts.get(grower.currency, 0))
