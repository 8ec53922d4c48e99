"""Advance recovery: drawing outstanding advance cheques down against payments.

FIFO:  outstanding advances are consumed oldest first, each taking
       min(outstanding, remaining payment), until the payment is absorbed
       or the advances run out.  The remainder is the net payable.
Manual: one named advance, one explicit amount, never more than its
       outstanding balance.

Each deduction writes a negative `deduction` ledger row and updates the
parent balance in the caller's session, so the recovery commits or rolls
back together with the payment it was taken from.
"""

from __future__ import annotations

import logging
import uuid
from datetime import date
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from growerpay.exceptions import (
    BusinessRuleError,
    DeductionExceedsBalanceError,
    ResourceNotFoundError,
    ValidationFailedError,
)
from growerpay.models.account import Account
from growerpay.models.advance import AdvanceCheque, AdvanceDeduction
from growerpay.schemas.results import DeductionLine, DeductionResult
from growerpay.utils.money import ZERO, money

logger = logging.getLogger(__name__)

RECOVERABLE_STATUSES = ("active", "partially_deducted")


class DeductionEngine:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def outstanding_advances(
        self, grower_id: str, *, lock: bool = False
    ) -> list[AdvanceCheque]:
        """Recoverable advances for a grower, oldest first."""
        stmt = (
            select(AdvanceCheque)
            .where(
                AdvanceCheque.grower_id == grower_id,
                AdvanceCheque.is_active,
                AdvanceCheque.status.in_(RECOVERABLE_STATUSES),
                AdvanceCheque.outstanding_amount > 0,
            )
            .order_by(
                AdvanceCheque.advance_date,
                AdvanceCheque.created_at,
                AdvanceCheque.cheque_number,
            )
        )
        if lock:
            stmt = stmt.with_for_update()
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def preview_deductions(self, grower_id: str, payment_amount) -> DeductionResult:
        """FIFO projection without writing anything."""
        gross = money(payment_amount)
        remaining = gross
        lines: list[DeductionLine] = []
        if remaining > 0:
            for advance in await self.outstanding_advances(grower_id):
                if remaining <= 0:
                    break
                take = min(money(advance.outstanding_amount), remaining)
                lines.append(DeductionLine(
                    advance_cheque_id=advance.id,
                    amount=take,
                    remaining_outstanding=money(advance.outstanding_amount) - take,
                ))
                remaining -= take
        return DeductionResult(gross_amount=gross, net_amount=remaining, deductions=lines)

    async def apply_deductions(
        self,
        grower_id: str,
        payment_amount,
        *,
        actor: str,
        deduction_date: date,
        batch_id: str | None = None,
        distribution_id: str | None = None,
        cheque_id: str | None = None,
    ) -> DeductionResult:
        """Recover outstanding advances FIFO from a payment."""
        gross = money(payment_amount)
        remaining = gross
        lines: list[DeductionLine] = []
        if remaining <= 0:
            return DeductionResult(gross_amount=gross, net_amount=remaining)

        for advance in await self.outstanding_advances(grower_id, lock=True):
            if remaining <= 0:
                break
            take = min(money(advance.outstanding_amount), remaining)
            if take <= 0:
                continue
            deduction = await self._record(
                advance, take,
                actor=actor,
                deduction_date=deduction_date,
                batch_id=batch_id,
                distribution_id=distribution_id,
                cheque_id=cheque_id,
                transaction_type="fifo",
            )
            remaining -= take
            lines.append(DeductionLine(
                advance_cheque_id=advance.id,
                deduction_id=deduction.id,
                amount=take,
                remaining_outstanding=advance.outstanding_amount,
            ))

        await self.db.flush()
        if lines:
            logger.info(
                "Recovered %s from %d advance(s) for grower %s",
                gross - remaining, len(lines), grower_id,
            )
        return DeductionResult(gross_amount=gross, net_amount=remaining, deductions=lines)

    async def apply_manual_deduction(
        self,
        advance_cheque_id: str,
        amount,
        *,
        actor: str,
        deduction_date: date,
        batch_id: str | None = None,
        cheque_id: str | None = None,
    ) -> AdvanceDeduction:
        """Deduct an explicit amount from one advance, bypassing FIFO."""
        amount = money(amount)
        if amount <= 0:
            raise ValidationFailedError("Deduction amount must be positive")

        advance = await self._get_advance(advance_cheque_id, lock=True)
        if not advance.is_active or advance.status not in RECOVERABLE_STATUSES:
            raise BusinessRuleError(
                f"Advance {advance.series_code}{advance.cheque_number} is {advance.status}"
            )
        if amount > advance.outstanding_amount:
            raise DeductionExceedsBalanceError(
                advance.id, amount, money(advance.outstanding_amount)
            )

        deduction = await self._record(
            advance, amount,
            actor=actor,
            deduction_date=deduction_date,
            batch_id=batch_id,
            cheque_id=cheque_id,
            transaction_type="manual",
        )
        await self.db.flush()
        return deduction

    async def attach_cheque(self, deduction_ids: list[str], cheque_id: str) -> None:
        """Link deductions, and their ledger rows, to the cheque they netted."""
        if not deduction_ids:
            return
        await self.db.execute(
            update(AdvanceDeduction)
            .where(AdvanceDeduction.id.in_(deduction_ids))
            .values(cheque_id=cheque_id)
        )
        await self.db.execute(
            update(Account)
            .where(Account.advance_deduction_id.in_(deduction_ids))
            .values(cheque_id=cheque_id)
        )

    async def restore_deduction(
        self, deduction: AdvanceDeduction, *, actor: str, reason: str
    ) -> Decimal:
        """Void a deduction, its ledger row, and give the amount back to its advance.

        Returns the amount restored; zero when the deduction was already void.
        """
        if not deduction.is_active:
            return ZERO
        deduction.mark_voided(actor, reason)
        await self._void_ledger_rows(deduction.id, actor, reason)

        advance = await self._get_advance(deduction.advance_cheque_id, lock=True)
        if advance.is_active:
            advance.outstanding_amount = money(advance.outstanding_amount + deduction.amount)
            advance.refresh_status()
        await self.db.flush()
        return money(deduction.amount)

    # ── Internals ─────────────────────────────────────────────

    async def _record(
        self,
        advance: AdvanceCheque,
        amount: Decimal,
        *,
        actor: str,
        deduction_date: date,
        transaction_type: str,
        batch_id: str | None = None,
        distribution_id: str | None = None,
        cheque_id: str | None = None,
    ) -> AdvanceDeduction:
        deduction = AdvanceDeduction(
            id=str(uuid.uuid4()),
            advance_cheque_id=advance.id,
            grower_id=advance.grower_id,
            batch_id=batch_id,
            distribution_id=distribution_id,
            cheque_id=cheque_id,
            amount=amount,
            deduction_date=deduction_date,
            transaction_type=transaction_type,
            created_by=actor,
        )
        self.db.add(deduction)
        await self.db.flush()
        self.db.add(Account(
            grower_id=advance.grower_id,
            entry_type="deduction",
            amount=-amount,
            currency=advance.currency,
            entry_date=deduction_date,
            description=(
                f"Advance {advance.series_code}{advance.cheque_number} recovery"
            ),
            batch_id=batch_id,
            cheque_id=cheque_id,
            advance_cheque_id=advance.id,
            advance_deduction_id=deduction.id,
            created_by=actor,
        ))
        advance.outstanding_amount = money(advance.outstanding_amount - amount)
        advance.refresh_status()
        return deduction

    async def _get_advance(self, advance_cheque_id: str, *, lock: bool) -> AdvanceCheque:
        stmt = select(AdvanceCheque).where(AdvanceCheque.id == advance_cheque_id)
        if lock:
            stmt = stmt.with_for_update()
        result = await self.db.execute(stmt)
        advance = result.scalar_one_or_none()
        if advance is None:
            raise ResourceNotFoundError("Advance cheque", advance_cheque_id)
        return advance

    async def _void_ledger_rows(self, deduction_id: str, actor: str, reason: str) -> None:
        result = await self.db.execute(
            select(Account).where(
                Account.advance_deduction_id == deduction_id,
                Account.is_active,
            )
        )
        for row in result.scalars().all():
            row.mark_voided(actor, reason)
