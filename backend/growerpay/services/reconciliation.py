"""Reconciliation: re-derives balances from the ledger and flags mismatches.

Each check_* function recomputes an expected figure from allocations,
deductions or cheques, compares it with the stored figure and returns
PaymentException objects (unsaved).  The public reconcile/validate/find
functions persist what their check found; `run_full_reconciliation`
runs every check under one run id and returns a summary.

Nothing here edits financial data except `reconcile_advance_amounts`,
which rewrites advance outstanding balances from their deductions when
explicitly asked to, and audits each correction.

Thresholds:
    - AMOUNT_TOLERANCE: ignore monetary variances at or below this value
"""

import logging
import uuid
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from growerpay.config import settings
from growerpay.exceptions import ResourceNotFoundError, ValidationFailedError
from growerpay.models.advance import AdvanceCheque, AdvanceDeduction
from growerpay.models.allocation import ReceiptPaymentAllocation
from growerpay.models.audit import PaymentException
from growerpay.models.base import utcnow
from growerpay.models.cheque import Cheque
from growerpay.models.distribution import PaymentDistribution, PaymentDistributionItem
from growerpay.models.payment_batch import PaymentBatch
from growerpay.utils.audit import log_audit
from growerpay.utils.money import ZERO, money

logger = logging.getLogger(__name__)

AMOUNT_TOLERANCE = settings.reconciliation_amount_tolerance


def _severity(variance_pct: Decimal) -> str:
    """Map variance percentage to severity level."""
    abs_pct = abs(variance_pct) if variance_pct else 0
    if abs_pct >= 20:
        return "critical"
    if abs_pct >= 10:
        return "high"
    if abs_pct >= 5:
        return "medium"
    return "low"


def _safe_pct(expected: Decimal, actual: Decimal) -> Decimal:
    """Calculate percentage variance safely."""
    if not expected:
        return Decimal("100") if actual else ZERO
    return (abs(actual - expected) / abs(expected) * 100).quantize(Decimal("0.01"))


def _mismatch(
    exception_type: str,
    description: str,
    expected: Decimal,
    actual: Decimal,
    refs: dict,
    run_id: str | None,
    severity: str | None = None,
) -> PaymentException:
    return PaymentException(
        exception_type=exception_type,
        severity=severity or _severity(_safe_pct(expected, actual)),
        description=description,
        expected_value=money(expected),
        actual_value=money(actual),
        difference=money(actual - expected),
        entity_refs=refs,
        run_id=run_id,
    )


# ─────────────────────────────────────────────────────────────
# CHECK 1:  distribution total  ≠  sum of its live cheques
# ─────────────────────────────────────────────────────────────

async def check_distribution(
    db: AsyncSession, distribution_id: str, run_id: str | None = None
) -> list[PaymentException]:
    dist = await db.get(PaymentDistribution, distribution_id)
    if dist is None:
        raise ResourceNotFoundError("Distribution", distribution_id)
    if not dist.is_active:
        return []

    found: list[PaymentException] = []
    items = (await db.execute(
        select(PaymentDistributionItem).where(
            PaymentDistributionItem.distribution_id == dist.id,
            PaymentDistributionItem.is_active,
        )
    )).scalars().all()
    live_cheques = {
        c.id: c for c in (await db.execute(
            select(Cheque).where(Cheque.distribution_id == dist.id, Cheque.is_active)
        )).scalars().all()
    }

    for item in items:
        if item.status == "paid" and item.cheque_id and item.cheque_id not in live_cheques:
            found.append(_mismatch(
                "missing_payment",
                f"Distribution {dist.distribution_number}: item for batch "
                f"{item.batch_id} has no live cheque",
                item.amount, ZERO,
                {"distribution_id": dist.id, "item_id": item.id, "grower_id": item.grower_id},
                run_id, severity="high",
            ))

    actual = money(sum((c.amount for c in live_cheques.values()), ZERO))
    expected = money(dist.total_amount)
    if abs(actual - expected) > AMOUNT_TOLERANCE:
        found.append(_mismatch(
            "amount_discrepancy",
            f"Distribution {dist.distribution_number} total {expected} but live "
            f"cheques sum to {actual}",
            expected, actual,
            {"distribution_id": dist.id},
            run_id,
        ))
    return found


# ─────────────────────────────────────────────────────────────
# CHECK 2:  advance outstanding  ≠  original − active deductions
# ─────────────────────────────────────────────────────────────

async def _advance_deduction_totals(db: AsyncSession) -> dict[str, Decimal]:
    result = await db.execute(
        select(
            AdvanceDeduction.advance_cheque_id,
            func.coalesce(func.sum(AdvanceDeduction.amount), 0),
        )
        .where(AdvanceDeduction.is_active)
        .group_by(AdvanceDeduction.advance_cheque_id)
    )
    return {row[0]: money(row[1]) for row in result.all()}


def _expected_status(advance: AdvanceCheque, outstanding: Decimal) -> str:
    if outstanding <= 0:
        return "fully_deducted"
    if outstanding < advance.original_amount:
        return "partially_deducted"
    return "active"


async def check_advance_balances(
    db: AsyncSession, run_id: str | None = None
) -> list[PaymentException]:
    deducted = await _advance_deduction_totals(db)
    advances = (await db.execute(
        select(AdvanceCheque).where(AdvanceCheque.is_active)
    )).scalars().all()

    found: list[PaymentException] = []
    for advance in advances:
        original = money(advance.original_amount)
        total = deducted.get(advance.id, ZERO)
        refs = {"advance_cheque_id": advance.id, "grower_id": advance.grower_id}
        label = f"Advance {advance.series_code}{advance.cheque_number}"

        if total > original + AMOUNT_TOLERANCE:
            found.append(_mismatch(
                "advance_over_deducted",
                f"{label}: deductions {total} exceed original amount {original}",
                original, total, refs, run_id, severity="critical",
            ))
            continue

        expected = original - total
        stored = money(advance.outstanding_amount)
        if abs(expected - stored) > AMOUNT_TOLERANCE:
            found.append(_mismatch(
                "advance_balance_mismatch",
                f"{label}: outstanding {stored} but original {original} less "
                f"deductions {total} is {expected}",
                expected, stored, refs, run_id,
            ))
        elif advance.status != "cancelled" and advance.status != _expected_status(advance, stored):
            found.append(_mismatch(
                "advance_status_mismatch",
                f"{label}: status {advance.status} does not match outstanding {stored}",
                expected, stored, refs, run_id, severity="low",
            ))
    return found


# ─────────────────────────────────────────────────────────────
# CHECK 3:  active deductions pointing at reversed records
# ─────────────────────────────────────────────────────────────

async def check_orphaned_deductions(
    db: AsyncSession, run_id: str | None = None
) -> list[PaymentException]:
    result = await db.execute(
        select(AdvanceDeduction, AdvanceCheque, Cheque, PaymentBatch)
        .outerjoin(AdvanceCheque, AdvanceCheque.id == AdvanceDeduction.advance_cheque_id)
        .outerjoin(Cheque, Cheque.id == AdvanceDeduction.cheque_id)
        .outerjoin(PaymentBatch, PaymentBatch.id == AdvanceDeduction.batch_id)
        .where(AdvanceDeduction.is_active)
    )

    found: list[PaymentException] = []
    for deduction, advance, cheque, batch in result.all():
        problems = []
        if advance is None:
            problems.append("its advance cheque does not exist")
        elif not advance.is_active:
            problems.append("its advance cheque is voided")
        if deduction.cheque_id and (cheque is None or not cheque.is_active):
            problems.append("the cheque it netted is voided")
        if batch is not None and batch.status == "voided":
            problems.append(f"batch {batch.batch_number} is voided")
        if not problems:
            continue
        found.append(_mismatch(
            "orphaned_deduction",
            f"Deduction of {money(deduction.amount)} is still active but "
            + " and ".join(problems),
            ZERO, money(deduction.amount),
            {
                "advance_deduction_id": deduction.id,
                "advance_cheque_id": deduction.advance_cheque_id,
                "grower_id": deduction.grower_id,
            },
            run_id, severity="high",
        ))
    return found


# ─────────────────────────────────────────────────────────────
# CHECK 4:  posted batch totals  ≠  sum of its allocations
# ─────────────────────────────────────────────────────────────

async def check_batch_totals(
    db: AsyncSession, run_id: str | None = None
) -> list[PaymentException]:
    alloc_totals = (
        select(
            ReceiptPaymentAllocation.batch_id,
            func.coalesce(func.sum(ReceiptPaymentAllocation.amount), 0).label("amount"),
            func.count(ReceiptPaymentAllocation.id).label("receipts"),
        )
        .where(ReceiptPaymentAllocation.is_active)
        .group_by(ReceiptPaymentAllocation.batch_id)
        .subquery()
    )
    result = await db.execute(
        select(PaymentBatch, alloc_totals.c.amount, alloc_totals.c.receipts)
        .outerjoin(alloc_totals, PaymentBatch.id == alloc_totals.c.batch_id)
        .where(PaymentBatch.status.in_(["posted", "finalized"]))
    )

    found: list[PaymentException] = []
    for batch, amount, receipts in result.all():
        actual = money(amount or 0)
        expected = money(batch.total_amount)
        refs = {"batch_id": batch.id}
        if abs(actual - expected) > AMOUNT_TOLERANCE:
            found.append(_mismatch(
                "batch_total_mismatch",
                f"Batch {batch.batch_number} total {expected} but allocations sum to {actual}",
                expected, actual, refs, run_id,
            ))
        elif (receipts or 0) != batch.total_receipts:
            found.append(_mismatch(
                "batch_total_mismatch",
                f"Batch {batch.batch_number} lists {batch.total_receipts} receipts "
                f"but has {receipts or 0} allocations",
                Decimal(batch.total_receipts), Decimal(receipts or 0), refs, run_id,
            ))
    return found


# ── Persisting entry points ─────────────────────────────────

async def _persist(db: AsyncSession, found: list[PaymentException]) -> list[PaymentException]:
    db.add_all(found)
    await db.flush()
    for exc in found:
        logger.warning("Reconciliation %s [%s]: %s", exc.exception_type, exc.severity, exc.description)
    return found


async def reconcile_distribution(db: AsyncSession, distribution_id: str) -> list[PaymentException]:
    return await _persist(db, await check_distribution(db, distribution_id))


async def validate_advance_balances(db: AsyncSession) -> list[PaymentException]:
    return await _persist(db, await check_advance_balances(db))


async def find_orphaned_deductions(db: AsyncSession) -> list[PaymentException]:
    return await _persist(db, await check_orphaned_deductions(db))


async def reconcile_batch_totals(db: AsyncSession) -> list[PaymentException]:
    return await _persist(db, await check_batch_totals(db))


async def reconcile_advance_amounts(
    db: AsyncSession,
    *,
    actor: str,
    advance_ids: list[str] | None = None,
    reason: str = "Recalculated from active deductions",
) -> list[dict]:
    """Rewrite outstanding balances and statuses from active deductions.

    Returns one entry per corrected advance:
        {"advance_cheque_id": ..., "old_outstanding": ..., "new_outstanding": ...}
    """
    deducted = await _advance_deduction_totals(db)
    stmt = select(AdvanceCheque).where(AdvanceCheque.is_active).with_for_update()
    if advance_ids:
        stmt = stmt.where(AdvanceCheque.id.in_(advance_ids))
    advances = (await db.execute(stmt)).scalars().all()

    corrections = []
    for advance in advances:
        total = deducted.get(advance.id, ZERO)
        if total > money(advance.original_amount) + AMOUNT_TOLERANCE:
            raise ValidationFailedError(
                f"Advance {advance.series_code}{advance.cheque_number} is over-deducted "
                f"({total} of {advance.original_amount}); void the excess deductions first"
            )
        expected = money(advance.original_amount) - total
        if expected == money(advance.outstanding_amount) and (
            advance.status == "cancelled" or advance.status == _expected_status(advance, expected)
        ):
            continue

        old = {"outstanding_amount": str(advance.outstanding_amount), "status": advance.status}
        advance.outstanding_amount = expected
        advance.refresh_status()
        log_audit(
            db, actor,
            entity_type="advance_cheque", entity_id=advance.id, action="balance_corrected",
            old_values=old,
            new_values={"outstanding_amount": str(expected), "status": advance.status},
            reason=reason,
        )
        corrections.append({
            "advance_cheque_id": advance.id,
            "old_outstanding": Decimal(old["outstanding_amount"]),
            "new_outstanding": expected,
        })
    await db.flush()
    if corrections:
        logger.info("Corrected %d advance balance(s)", len(corrections))
    return corrections


async def resolve_exception(
    db: AsyncSession,
    exception_id: str,
    *,
    actor: str,
    resolution: str,
    status: str = "resolved",
) -> PaymentException:
    if status not in ("resolved", "dismissed"):
        raise ValidationFailedError("status must be 'resolved' or 'dismissed'")
    exc = await db.get(PaymentException, exception_id)
    if exc is None:
        raise ResourceNotFoundError("Payment exception", exception_id)
    exc.status = status
    exc.resolution = resolution
    exc.resolved_by = actor
    exc.resolved_at = utcnow()
    await db.flush()
    return exc


async def run_full_reconciliation(db: AsyncSession) -> dict:
    """Execute all reconciliation checks, persist exceptions, return summary.

    Returns:
        {
            "run_id": "...",
            "ran_at": "...",
            "total_exceptions": int,
            "by_type": {"advance_balance_mismatch": int, ...},
            "by_severity": {"critical": int, "high": int, ...},
        }
    """
    run_id = str(uuid.uuid4())

    # Auto-resolve stale open exceptions from previous runs
    # (if a mismatch no longer appears, it was fixed)
    old_open = await db.execute(
        select(PaymentException).where(
            PaymentException.status == "open",
            PaymentException.run_id.is_not(None),
        )
    )
    for old in old_open.scalars().all():
        old.status = "resolved"
        old.resolution = "Auto-resolved: mismatch no longer detected"
        old.resolved_at = utcnow()
    await db.flush()

    found: list[PaymentException] = []
    found += await check_advance_balances(db, run_id)
    found += await check_orphaned_deductions(db, run_id)
    found += await check_batch_totals(db, run_id)
    distributions = (await db.execute(
        select(PaymentDistribution.id).where(PaymentDistribution.is_active)
    )).scalars().all()
    for distribution_id in distributions:
        found += await check_distribution(db, distribution_id, run_id)

    await _persist(db, found)

    by_type: dict[str, int] = {}
    by_severity: dict[str, int] = {}
    for exc in found:
        by_type[exc.exception_type] = by_type.get(exc.exception_type, 0) + 1
        by_severity[exc.severity] = by_severity.get(exc.severity, 0) + 1

    return {
        "run_id": run_id,
        "ran_at": utcnow().isoformat(),
        "total_exceptions": len(found),
        "by_type": by_type,
        "by_severity": by_severity,
    }
