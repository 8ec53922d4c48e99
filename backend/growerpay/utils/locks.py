"""Price locking: report which price fields posted batches have pinned.

The check returns a LockInfo describing which fields are locked and why,
without raising.  The price editor decides whether to block an update
based on which fields it is changing.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from growerpay.models.payment_batch import PaymentBatch
from growerpay.models.price_lock import PriceScheduleLock

# Schedule / detail fields that change what a posted payment was worth
PRICE_FIELDS = [
    "price_per_lb",
    "effective_from",
    "effective_to",
    "time_premium_enabled",
    "premium_cutoff",
    "premium_per_lb",
    "marketing_rate",
]


# ── Data structures ────────────────────────────────────────────


@dataclass
class FieldLock:
    """A single locked field with the batch that pins it."""
    field: str
    reason: str
    blocker_ref: str    # batch number, e.g. "ADV1-2025-001"
    unlock_hint: str


@dataclass
class LockInfo:
    """Lock state for a price schedule.  Empty locked_fields means editable."""
    locked_fields: dict[str, FieldLock] = field(default_factory=dict)
    locked_tiers: set[int] = field(default_factory=set)

    @property
    def is_locked(self) -> bool:
        return len(self.locked_fields) > 0

    def check_update(self, updating_fields: set[str]) -> FieldLock | None:
        """Return the first FieldLock that conflicts, or None."""
        for f in sorted(updating_fields):
            if f in self.locked_fields:
                return self.locked_fields[f]
        return None

    def locked_field_names(self) -> list[str]:
        return list(self.locked_fields.keys())


async def get_price_schedule_locks(db: AsyncSession, schedule_id: str) -> LockInfo:
    """Collect the active locks held on a price schedule."""
    info = LockInfo()
    result = await db.execute(
        select(PriceScheduleLock.tier, PaymentBatch.batch_number)
        .join(PaymentBatch, PaymentBatch.id == PriceScheduleLock.batch_id)
        .where(
            PriceScheduleLock.price_schedule_id == schedule_id,
            PriceScheduleLock.is_active,
        )
        .order_by(PaymentBatch.batch_number)
    )
    for tier, batch_number in result.all():
        info.locked_tiers.add(tier)
        for name in PRICE_FIELDS:
            if name in info.locked_fields:
                continue
            info.locked_fields[name] = FieldLock(
                field=name,
                reason=f"Used by posted batch {batch_number}",
                blocker_ref=batch_number,
                unlock_hint="Void the batch before changing its prices.",
            )
    return info
