"""Receipt selection for a payment run.

A receipt is eligible at a tier when it belongs to the crop year, was
received on or before the cutoff, is not voided and has no active
allocation at that tier or a later one.  Tiers only move forward: once
advance 2 has been paid on a receipt, advance 1 can no longer be, and
once the final has been paid no further advance can be.
"""

from __future__ import annotations

from collections import defaultdict
from datetime import date

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from growerpay.models.allocation import ReceiptPaymentAllocation
from growerpay.models.grower import Grower
from growerpay.models.receipt import Receipt
from growerpay.schemas.payment import BatchFilters
from growerpay.services.tiers import FINAL_TIER, AdvanceTier


def _blocks(tier: AdvanceTier):
    """Allocations that close a receipt to `tier`: the same tier, any later
    advance, or the final."""
    if tier.is_final:
        return ReceiptPaymentAllocation.tier == FINAL_TIER
    return or_(
        ReceiptPaymentAllocation.tier >= tier.number,
        ReceiptPaymentAllocation.tier == FINAL_TIER,
    )


async def eligible_receipts(
    db: AsyncSession,
    *,
    tier: AdvanceTier,
    crop_year: int,
    cutoff_date: date,
    filters: BatchFilters | None = None,
) -> dict[str, list[Receipt]]:
    """Unpaid receipts at `tier`, grouped by grower id in grower-number order."""
    filters = filters or BatchFilters()

    paid = (
        select(ReceiptPaymentAllocation.receipt_id)
        .where(
            _blocks(tier),
            ReceiptPaymentAllocation.is_active,
        )
    )

    stmt = (
        select(Receipt)
        .join(Grower, Grower.id == Receipt.grower_id)
        .where(
            Receipt.crop_year == crop_year,
            Receipt.receipt_date <= cutoff_date,
            Receipt.is_voided == False,  # noqa: E712
            Receipt.id.not_in(paid),
        )
    )
    if filters.grower_ids:
        stmt = stmt.where(Receipt.grower_id.in_(filters.grower_ids))
    if filters.exclude_grower_ids:
        stmt = stmt.where(Receipt.grower_id.not_in(filters.exclude_grower_ids))
    if filters.pay_groups:
        stmt = stmt.where(Grower.pay_group.in_(filters.pay_groups))
    if filters.exclude_pay_groups:
        stmt = stmt.where(Grower.pay_group.not_in(filters.exclude_pay_groups))
    if filters.products:
        stmt = stmt.where(Receipt.product.in_(filters.products))
    if filters.processes:
        stmt = stmt.where(Receipt.process.in_(filters.processes))

    stmt = stmt.order_by(Grower.grower_number, Receipt.receipt_date, Receipt.receipt_number)
    result = await db.execute(stmt)

    grouped: dict[str, list[Receipt]] = defaultdict(list)
    for receipt in result.scalars().all():
        grouped[receipt.grower_id].append(receipt)
    return dict(grouped)


async def prior_allocations(
    db: AsyncSession, receipt_ids: list[str], tier: AdvanceTier
) -> dict[str, list[ReceiptPaymentAllocation]]:
    """Active allocations of earlier tiers, by receipt id."""
    if not receipt_ids:
        return {}
    result = await db.execute(
        select(ReceiptPaymentAllocation).where(
            ReceiptPaymentAllocation.receipt_id.in_(receipt_ids),
            ReceiptPaymentAllocation.tier != FINAL_TIER,
            ReceiptPaymentAllocation.is_active,
        )
    )
    grouped: dict[str, list[ReceiptPaymentAllocation]] = defaultdict(list)
    for alloc in result.scalars().all():
        if AdvanceTier(alloc.tier).precedes(tier):
            grouped[alloc.receipt_id].append(alloc)
    return dict(grouped)


async def already_allocated(
    db: AsyncSession, receipt_ids: list[str], tier: AdvanceTier
) -> set[str]:
    """Receipt ids that are no longer payable at `tier`."""
    if not receipt_ids:
        return set()
    result = await db.execute(
        select(ReceiptPaymentAllocation.receipt_id).where(
            ReceiptPaymentAllocation.receipt_id.in_(receipt_ids),
            _blocks(tier),
            ReceiptPaymentAllocation.is_active,
        )
    )
    blocked = set(result.scalars().all())

    result = await db.execute(
        select(Receipt.id).where(
            Receipt.id.in_(receipt_ids),
            Receipt.is_voided == True,  # noqa: E712
        )
    )
    blocked.update(result.scalars().all())
    return blocked
