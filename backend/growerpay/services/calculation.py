"""Payment calculation: builds the per-grower preview of an advance or final run.

Nothing here writes to the database.  Every grower with eligible receipts
appears in the result; problems (missing price, inactive or held grower,
tier price regression) are attached to that grower as validation
messages so the run always completes and posting later skips the flagged
growers.

Advance N, per receipt:
    incremental  = cumulative price(N) − price already paid by earlier tiers
    amount       = net × incremental + net × premium − net × marketing rate
    (premium and marketing apply on advance 1 only)

Final, per receipt:
    full value   = net × final price + net × premium − net × marketing rate
    amount       = full value − advances already paid (by amount)
"""

from __future__ import annotations

import logging
from datetime import date

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from growerpay.exceptions import CalculationCancelled, TierPriceRegressionError
from growerpay.models.allocation import ReceiptPaymentAllocation
from growerpay.models.grower import Grower
from growerpay.models.receipt import Receipt
from growerpay.schemas.payment import (
    BatchFilters,
    CalculationResult,
    GrowerPayment,
    ReceiptDetail,
)
from growerpay.services.deductions import DeductionEngine
from growerpay.services.eligibility import eligible_receipts, prior_allocations
from growerpay.services.pricing import PriceResolver
from growerpay.services.tiers import AdvanceTier, TierPriceSequence
from growerpay.utils.money import ZERO, extend, money, to_decimal

logger = logging.getLogger(__name__)


class CancellationToken:
    """Cooperative cancellation, checked once per grower."""

    def __init__(self):
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise CalculationCancelled()


class PaymentCalculationEngine:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.prices = PriceResolver(db)
        self.deductions = DeductionEngine(db)

    async def calculate_advance_batch(
        self,
        advance_number: int,
        payment_date: date,
        cutoff_date: date,
        crop_year: int,
        filters: BatchFilters | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> CalculationResult:
        tier = AdvanceTier.advance(advance_number)
        return await self._calculate(
            tier, payment_date, cutoff_date, crop_year, filters, cancel_token
        )

    async def calculate_final_payment(
        self,
        payment_date: date,
        cutoff_date: date,
        crop_year: int,
        filters: BatchFilters | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> CalculationResult:
        return await self._calculate(
            AdvanceTier.final(), payment_date, cutoff_date, crop_year, filters, cancel_token
        )

    async def _calculate(
        self,
        tier: AdvanceTier,
        payment_date: date,
        cutoff_date: date,
        crop_year: int,
        filters: BatchFilters | None,
        cancel_token: CancellationToken | None,
    ) -> CalculationResult:
        result = CalculationResult(
            tier=tier.number,
            crop_year=crop_year,
            payment_date=payment_date,
            cutoff_date=cutoff_date,
        )

        by_grower = await eligible_receipts(
            self.db, tier=tier, crop_year=crop_year,
            cutoff_date=cutoff_date, filters=filters,
        )
        if not by_grower:
            return result

        growers = await self._load_growers(list(by_grower))
        receipt_ids = [r.id for receipts in by_grower.values() for r in receipts]
        prior = await prior_allocations(self.db, receipt_ids, tier)

        for grower_id, receipts in by_grower.items():
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            grower = growers.get(grower_id)
            if grower is None:
                result.general_errors.append(f"Grower {grower_id} not found")
                continue
            result.growers.append(
                await self._grower_payment(grower, receipts, tier, prior)
            )

        logger.info(
            "Calculated %s for crop year %s: %d grower(s), %d flagged",
            tier.label, crop_year, len(result.growers), len(result.flagged_growers),
        )
        return result

    async def _load_growers(self, grower_ids: list[str]) -> dict[str, Grower]:
        result = await self.db.execute(select(Grower).where(Grower.id.in_(grower_ids)))
        return {g.id: g for g in result.scalars().all()}

    async def _grower_payment(
        self,
        grower: Grower,
        receipts: list[Receipt],
        tier: AdvanceTier,
        prior: dict[str, list[ReceiptPaymentAllocation]],
    ) -> GrowerPayment:
        payment = GrowerPayment(
            grower_id=grower.id,
            grower_number=grower.grower_number,
            grower_name=grower.name,
            currency=grower.currency,
        )
        if not grower.is_active:
            payment.errors.append(f"Grower {grower.grower_number} is inactive")
        if grower.is_on_hold:
            payment.errors.append(f"Grower {grower.grower_number} is on hold")

        for receipt in receipts:
            detail = await self._receipt_detail(
                receipt, grower, tier, prior.get(receipt.id, [])
            )
            payment.receipts.append(detail)
            if detail.error:
                payment.errors.append(f"Receipt {receipt.receipt_number}: {detail.error}")
                continue
            payment.advance_amount += detail.advance_amount
            payment.premium_amount += detail.premium_amount
            payment.deduction_amount += detail.deduction_amount
            payment.total_amount += detail.amount

        if payment.total_amount > 0:
            projection = await self.deductions.preview_deductions(
                grower.id, payment.total_amount
            )
            payment.projected_advance_deductions = projection.total_deducted
            if projection.total_deducted:
                payment.warnings.append(
                    f"{projection.total_deducted} of outstanding advances will be recovered"
                )
        payment.net_amount = payment.total_amount - payment.projected_advance_deductions
        return payment

    async def _receipt_detail(
        self,
        receipt: Receipt,
        grower: Grower,
        tier: AdvanceTier,
        prior: list[ReceiptPaymentAllocation],
    ) -> ReceiptDetail:
        net = to_decimal(receipt.net_weight)
        detail = ReceiptDetail(
            receipt_id=receipt.id,
            receipt_number=receipt.receipt_number,
            receipt_date=receipt.receipt_date,
            product=receipt.product,
            process=receipt.process,
            grade=receipt.grade,
            net_weight=net,
            tier=tier.number,
        )

        resolved = await self.prices.resolve(receipt, grower, tier)
        if resolved is None:
            detail.error = (
                f"No {tier.label} price for {receipt.product}/{receipt.process} "
                f"on {receipt.receipt_date.isoformat()}"
            )
            return detail

        detail.price_schedule_id = resolved.schedule_id
        detail.cumulative_price = resolved.price_per_lb
        detail.premium_per_lb = resolved.premium_per_lb
        detail.marketing_rate = resolved.marketing_rate

        try:
            detail.price_per_lb = TierPriceSequence.from_allocations(prior).incremental_for(
                tier, resolved.price_per_lb
            )
        except TierPriceRegressionError as exc:
            detail.error = exc.message
            return detail

        detail.advance_amount = extend(net, detail.price_per_lb)
        detail.premium_amount = extend(net, detail.premium_per_lb)
        detail.deduction_amount = extend(net, detail.marketing_rate)

        if tier.is_final:
            full_value = (
                extend(net, resolved.price_per_lb)
                + detail.premium_amount
                - detail.deduction_amount
            )
            detail.prior_advances = money(sum((to_decimal(a.amount) for a in prior), ZERO))
            detail.amount = full_value - detail.prior_advances
            if detail.amount < 0:
                detail.error = (
                    f"Advances paid {detail.prior_advances} exceed final value {full_value}"
                )
        else:
            detail.amount = detail.advance_amount + detail.premium_amount - detail.deduction_amount
            if detail.amount < 0:
                detail.error = f"Computed amount {detail.amount} is negative"
        return detail
