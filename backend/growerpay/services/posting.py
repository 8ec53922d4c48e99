"""Posting: turns a reviewed calculation into ledger, allocation and cheque rows.

Runs entirely inside the caller's session; the batch manager commits
once for the whole batch, so a failure part-way leaves nothing behind.

Per valid grower:
  1. one allocation and one `advance`/`final` ledger row per receipt
  2. (per_batch mode) FIFO advance recovery against the grower total
  3. (per_batch mode) one cheque for the net amount, when positive
Then one price lock per schedule used, and the batch totals.

Flagged growers are skipped and reported as warnings.  Unique indexes
on allocations and cheque numbers turn a racing double-post into a
ConcurrencyConflictError instead of a second payment.
"""

from __future__ import annotations

import logging

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from growerpay.config import settings
from growerpay.exceptions import ConcurrencyConflictError, ValidationFailedError
from growerpay.models.account import Account
from growerpay.models.allocation import ReceiptPaymentAllocation
from growerpay.models.payment_batch import PaymentBatch
from growerpay.models.price_lock import PriceScheduleLock
from growerpay.schemas.payment import GrowerPayment
from growerpay.schemas.results import PostingResult
from growerpay.services.cheques import issue_cheque
from growerpay.services.deductions import DeductionEngine
from growerpay.utils.money import ZERO, money

logger = logging.getLogger(__name__)


def _describe(payment: GrowerPayment) -> str:
    return payment.grower_number or payment.grower_id


class PostingEngine:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.deductions = DeductionEngine(db)

    async def post_batch(
        self,
        batch: PaymentBatch,
        grower_payments: list[GrowerPayment],
        *,
        actor: str,
        require_all_valid: bool | None = None,
    ) -> PostingResult:
        if require_all_valid is None:
            require_all_valid = settings.require_all_growers_valid

        result = PostingResult(batch_id=batch.id)
        valid = [g for g in grower_payments if g.is_valid]
        flagged = [g for g in grower_payments if not g.is_valid]

        skipped = [
            f"Grower {_describe(g)} skipped: {'; '.join(g.errors)}" for g in flagged
        ]
        if require_all_valid and flagged:
            raise ValidationFailedError(skipped)
        if not valid:
            raise ValidationFailedError(
                skipped or [f"Batch {batch.batch_number} has no grower payments to post"]
            )
        result.warnings.extend(skipped)

        schedule_ids: set[str] = set()
        for payment in valid:
            await self._post_grower(batch, payment, actor, result)
            schedule_ids.update(
                d.price_schedule_id for d in payment.receipts if d.price_schedule_id
            )

        for schedule_id in sorted(schedule_ids):
            self.db.add(PriceScheduleLock(
                price_schedule_id=schedule_id,
                batch_id=batch.id,
                tier=batch.tier,
                locked_by=actor,
            ))
        await self._flush(f"price schedules for batch {batch.batch_number} are already locked")

        await self._set_totals(batch, result)
        logger.info(
            "Posted batch %s: %d grower(s), %d receipt(s), %s, %d cheque(s)",
            batch.batch_number, result.growers_posted, result.receipts_updated,
            result.total_amount, result.cheques_generated,
        )
        return result

    async def _post_grower(
        self,
        batch: PaymentBatch,
        payment: GrowerPayment,
        actor: str,
        result: PostingResult,
    ) -> None:
        entry_type = "final" if batch.tier == 0 else "advance"
        allocations: list[ReceiptPaymentAllocation] = []
        ledger: list[Account] = []

        for detail in payment.receipts:
            allocations.append(ReceiptPaymentAllocation(
                receipt_id=detail.receipt_id,
                grower_id=payment.grower_id,
                batch_id=batch.id,
                price_schedule_id=detail.price_schedule_id,
                tier=batch.tier,
                price_per_lb=detail.price_per_lb,
                quantity=detail.net_weight,
                amount=money(detail.amount),
                allocated_by=actor,
            ))
            ledger.append(Account(
                grower_id=payment.grower_id,
                entry_type=entry_type,
                amount=money(detail.amount),
                currency=payment.currency,
                entry_date=batch.batch_date,
                tier=batch.tier,
                description=f"{batch.batch_number} receipt {detail.receipt_number}",
                batch_id=batch.id,
                receipt_id=detail.receipt_id,
                created_by=actor,
            ))

        self.db.add_all(allocations)
        self.db.add_all(ledger)
        await self._flush(
            f"receipts of grower {_describe(payment)} were already paid at this tier "
            f"by another batch"
        )
        result.growers_posted += 1
        result.receipts_updated += len(allocations)
        result.transactions_created += len(ledger)

        if batch.cheque_mode == "consolidated":
            return

        gross = money(sum((a.amount for a in allocations), ZERO))
        recovery = await self.deductions.apply_deductions(
            payment.grower_id, gross,
            actor=actor,
            deduction_date=batch.batch_date,
            batch_id=batch.id,
        )
        result.deductions_applied += recovery.total_deducted
        result.transactions_created += len(recovery.deductions)

        if recovery.net_amount <= 0:
            result.warnings.append(
                f"Grower {_describe(payment)}: payment of {gross} fully absorbed by "
                f"advance deductions, no cheque issued"
            )
            return

        try:
            cheque = await issue_cheque(
                self.db,
                grower_id=payment.grower_id,
                currency=payment.currency,
                amount=recovery.net_amount,
                cheque_date=batch.batch_date,
                actor=actor,
                batch_id=batch.id,
            )
        except IntegrityError as exc:
            raise ConcurrencyConflictError(
                "Cheque number was taken by a concurrent posting"
            ) from exc

        for row in allocations + ledger:
            row.cheque_id = cheque.id
        await self.deductions.attach_cheque(
            [d.deduction_id for d in recovery.deductions if d.deduction_id], cheque.id
        )
        result.cheques_generated += 1
        result.cheque_ids.append(cheque.id)

    async def _set_totals(self, batch: PaymentBatch, result: PostingResult) -> None:
        """Fix the batch totals from the allocations actually written."""
        row = (await self.db.execute(
            select(
                func.count(ReceiptPaymentAllocation.id),
                func.count(func.distinct(ReceiptPaymentAllocation.grower_id)),
                func.coalesce(func.sum(ReceiptPaymentAllocation.amount), 0),
            ).where(
                ReceiptPaymentAllocation.batch_id == batch.id,
                ReceiptPaymentAllocation.is_active,
            )
        )).one()
        batch.total_receipts = row[0]
        batch.total_growers = row[1]
        batch.total_amount = money(row[2])
        result.total_amount = batch.total_amount

    async def _flush(self, conflict_message: str) -> None:
        try:
            await self.db.flush()
        except IntegrityError as exc:
            raise ConcurrencyConflictError(conflict_message) from exc
