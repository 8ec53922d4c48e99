"""Voiding: one entry point that reverses any posted payment unit.

    engine.void(VoidTarget.cheque(id), reason=..., actor=...)

Targets and their cascade:

  cheque          cheque voided; with reverse_accounting its ledger rows,
                  allocations (receipts eligible again) and advance
                  deductions are voided, otherwise they stay recorded and
                  are detached so the payable is open for re-payment
  advance_cheque  advance voided with its ledger row; the deductions drawn
                  from it are voided and their amounts re-applied FIFO to
                  the grower's other outstanding advances, any remainder
                  becoming an open `adjustment` payable
  distribution    every distribution cheque voided, its deductions
                  restored, source payables reopened and the source
                  batches released from consolidation

`reissue_cheque` voids a cheque without reversal and moves its payable to a
replacement cheque for the same amount.

Voiding is idempotent and re-entrant: the engine looks for remaining
active dependents instead of trusting the entity status, finishes
whatever is left, and writes one audit row only when something changed.
Batch rollback reuses `void_batch_postings` inside the manager's
transaction.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import date
from typing import Awaitable, Callable

from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from growerpay.database import async_session, unit_of_work
from growerpay.exceptions import (
    BusinessRuleError,
    ConcurrencyConflictError,
    GrowerPayError,
    ResourceNotFoundError,
    ValidationFailedError,
)
from growerpay.models.account import Account
from growerpay.models.advance import AdvanceCheque, AdvanceDeduction
from growerpay.models.allocation import ReceiptPaymentAllocation
from growerpay.models.cheque import Cheque
from growerpay.models.distribution import PaymentDistribution, PaymentDistributionItem
from growerpay.models.payment_batch import PaymentBatch
from growerpay.models.price_lock import PriceScheduleLock
from growerpay.schemas.results import VoidingResult
from growerpay.services.cheques import issue_cheque
from growerpay.services.deductions import DeductionEngine
from growerpay.utils.audit import log_audit
from growerpay.utils.money import ZERO, money

logger = logging.getLogger(__name__)


class VoidTargetKind(str, enum.Enum):
    CHEQUE = "cheque"
    ADVANCE_CHEQUE = "advance_cheque"
    DISTRIBUTION = "distribution"


@dataclass(frozen=True)
class VoidTarget:
    kind: VoidTargetKind
    entity_id: str

    @classmethod
    def cheque(cls, cheque_id: str) -> "VoidTarget":
        return cls(VoidTargetKind.CHEQUE, cheque_id)

    @classmethod
    def advance_cheque(cls, advance_cheque_id: str) -> "VoidTarget":
        return cls(VoidTargetKind.ADVANCE_CHEQUE, advance_cheque_id)

    @classmethod
    def distribution(cls, distribution_id: str) -> "VoidTarget":
        return cls(VoidTargetKind.DISTRIBUTION, distribution_id)


async def _locked(db: AsyncSession, model, entity_id: str, label: str):
    result = await db.execute(
        select(model).where(model.id == entity_id).with_for_update()
    )
    entity = result.scalar_one_or_none()
    if entity is None:
        raise ResourceNotFoundError(label, entity_id)
    return entity


class VoidingEngine:
    def __init__(self, session_factory: async_sessionmaker = async_session):
        self.session_factory = session_factory

    async def void(
        self,
        target: VoidTarget,
        *,
        reason: str,
        actor: str,
        reverse_accounting: bool = True,
        session: AsyncSession | None = None,
    ) -> VoidingResult:
        """Void `target` and everything that depends on it as one unit."""
        base = VoidingResult(entity_type=target.kind.value, entity_id=target.entity_id)
        if not reason or not reason.strip():
            base.outcome = "not_run"
            base.errors.append("A reason is required to void")
            return base

        handlers = {
            VoidTargetKind.CHEQUE: self._void_cheque,
            VoidTargetKind.ADVANCE_CHEQUE: self._void_advance_cheque,
            VoidTargetKind.DISTRIBUTION: self._void_distribution,
        }
        handler = handlers[target.kind]
        return await self._run(
            base,
            lambda db: handler(db, target.entity_id, reason.strip(), actor, reverse_accounting),
            session,
        )

    async def reissue_cheque(
        self,
        cheque_id: str,
        *,
        cheque_date: date,
        actor: str,
        reason: str | None = None,
        session: AsyncSession | None = None,
    ) -> VoidingResult:
        """Void a cheque without reversing it and pay the same amount on a new number.

        Ledger rows, allocations, deductions and distribution items move to
        the replacement, which is reported in `replacement_cheque_id`.
        """
        base = VoidingResult(entity_type="cheque", entity_id=cheque_id)
        reason = (reason or "").strip() or f"Reissued on {cheque_date.isoformat()}"
        return await self._run(
            base,
            lambda db: self._reissue(db, cheque_id, cheque_date, reason, actor),
            session,
        )

    async def _run(
        self,
        base: VoidingResult,
        work: Callable[[AsyncSession], Awaitable[VoidingResult]],
        session: AsyncSession | None,
    ) -> VoidingResult:
        try:
            async with unit_of_work(self.session_factory, session) as db:
                result = await work(db)
            if result.warnings:
                result.outcome = "completed_with_warnings"
            return result
        except ValidationFailedError as exc:
            base.outcome = "not_run"
            base.errors.extend(exc.messages)
        except ConcurrencyConflictError as exc:
            logger.warning("Void of %s %s conflicted: %s", base.entity_type, base.entity_id, exc)
            base.outcome = "conflict"
            base.errors.append(exc.message)
        except GrowerPayError as exc:
            base.outcome = "not_run"
            base.errors.append(exc.message)
        except SQLAlchemyError as exc:
            logger.exception("Void of %s %s failed", base.entity_type, base.entity_id)
            base.outcome = "fatal"
            base.errors.append(f"Database error: {exc.__class__.__name__}")
        except Exception as exc:
            logger.exception("Void of %s %s failed", base.entity_type, base.entity_id)
            base.outcome = "fatal"
            base.errors.append(f"Unexpected error: {exc}")
        return base

    # ── Cheque ────────────────────────────────────────────────

    async def _void_cheque(
        self, db: AsyncSession, cheque_id: str, reason: str, actor: str,
        reverse_accounting: bool,
    ) -> VoidingResult:
        cheque = await _locked(db, Cheque, cheque_id, "Cheque")
        if cheque.distribution_id and cheque.is_active:
            raise BusinessRuleError(
                f"Cheque {cheque.display_number} belongs to a distribution; "
                f"void the distribution instead"
            )

        result = VoidingResult(entity_type="cheque", entity_id=cheque.id)
        old = {"status": cheque.status, "amount": str(cheque.amount)}
        changed = await self.reverse_cheque(
            db, cheque, reason=reason, actor=actor,
            reverse_accounting=reverse_accounting, result=result,
        )
        if not changed:
            result.already_voided = True
            return result

        log_audit(
            db, actor,
            entity_type="cheque", entity_id=cheque.id, action="voided",
            old_values=old,
            new_values={
                "status": cheque.status,
                "reverse_accounting": reverse_accounting,
                "allocations_voided": result.allocations_voided,
                "ledger_entries_voided": result.ledger_entries_voided,
                "deductions_reversed": result.deductions_reversed,
            },
            reason=reason,
        )
        logger.info("Voided cheque %s (%s)", cheque.display_number, reason)
        return result

    async def _reissue(
        self, db: AsyncSession, cheque_id: str, cheque_date: date, reason: str, actor: str
    ) -> VoidingResult:
        cheque = await _locked(db, Cheque, cheque_id, "Cheque")
        if not cheque.is_active:
            raise BusinessRuleError(f"Cheque {cheque.display_number} is already voided")

        ledger = await self._active_ledger(db, Account.cheque_id == cheque.id)
        linked = []
        for model in (ReceiptPaymentAllocation, AdvanceDeduction, PaymentDistributionItem):
            linked += (await db.execute(
                select(model).where(model.cheque_id == cheque.id, model.is_active)
            )).scalars().all()

        old_status = cheque.status
        result = VoidingResult(entity_type="cheque", entity_id=cheque.id)
        await self.reverse_cheque(
            db, cheque, reason=reason, actor=actor,
            reverse_accounting=False, result=result,
        )
        # Nothing is left open: the payable moves to the replacement
        result.warnings.clear()

        replacement = await issue_cheque(
            db,
            grower_id=cheque.grower_id,
            currency=cheque.currency,
            amount=cheque.amount,
            cheque_date=cheque_date,
            actor=actor,
            batch_id=cheque.batch_id,
            distribution_id=cheque.distribution_id,
        )
        for row in ledger + linked:
            row.cheque_id = replacement.id
        await db.flush()
        result.replacement_cheque_id = replacement.id

        log_audit(
            db, actor,
            entity_type="cheque", entity_id=cheque.id, action="reissued",
            old_values={"status": old_status, "cheque": cheque.display_number},
            new_values={
                "replacement_cheque_id": replacement.id,
                "replacement": replacement.display_number,
                "amount": str(replacement.amount),
            },
            reason=reason,
        )
        logger.info(
            "Reissued cheque %s as %s", cheque.display_number, replacement.display_number
        )
        return result

    async def reverse_cheque(
        self,
        db: AsyncSession,
        cheque: Cheque,
        *,
        reason: str,
        actor: str,
        reverse_accounting: bool,
        result: VoidingResult,
        adjust_batch_totals: bool = True,
    ) -> bool:
        """Reverse whatever is still active under `cheque`.  True if anything changed."""
        changed = False
        allocations = list((await db.execute(
            select(ReceiptPaymentAllocation).where(
                ReceiptPaymentAllocation.cheque_id == cheque.id,
                ReceiptPaymentAllocation.is_active,
            )
        )).scalars().all())
        deductions = list((await db.execute(
            select(AdvanceDeduction).where(
                AdvanceDeduction.cheque_id == cheque.id,
                AdvanceDeduction.is_active,
            )
        )).scalars().all())

        batch = await db.get(PaymentBatch, cheque.batch_id) if cheque.batch_id else None

        if reverse_accounting:
            if batch is not None and batch.status == "finalized" and allocations:
                raise BusinessRuleError(
                    f"Batch {batch.batch_number} is finalized; its postings cannot be reversed"
                )
            engine = DeductionEngine(db)
            for deduction in deductions:
                await engine.restore_deduction(deduction, actor=actor, reason=reason)
                result.deductions_reversed += 1
                changed = True
            for alloc in allocations:
                alloc.mark_voided(actor, reason)
                result.allocations_voided += 1
                changed = True
            ledger = await self._active_ledger(db, Account.cheque_id == cheque.id)
            for row in ledger:
                row.mark_voided(actor, reason)
                result.ledger_entries_voided += 1
                changed = True
            if batch is not None and allocations and adjust_batch_totals:
                await self._reduce_batch_totals(db, batch, allocations)
        else:
            ledger = await self._active_ledger(db, Account.cheque_id == cheque.id)
            for row in ledger + allocations + deductions:
                row.cheque_id = None
                changed = True
            if ledger:
                result.warnings.append(
                    f"{sum((r.amount for r in ledger), ZERO)} left open as payable"
                )

        if cheque.is_active or cheque.status != "voided":
            cheque.status = "voided"
            if cheque.is_active:
                cheque.mark_voided(actor, reason)
            result.cheques_voided += 1
            result.amount_reversed += money(cheque.amount)
            changed = True

        await db.flush()
        return changed

    # ── Advance cheque ───────────────────────────────────────

    async def _void_advance_cheque(
        self, db: AsyncSession, advance_id: str, reason: str, actor: str,
        reverse_accounting: bool,
    ) -> VoidingResult:
        advance = await _locked(db, AdvanceCheque, advance_id, "Advance cheque")
        result = VoidingResult(entity_type="advance_cheque", entity_id=advance.id)

        deductions = list((await db.execute(
            select(AdvanceDeduction).where(
                AdvanceDeduction.advance_cheque_id == advance.id,
                AdvanceDeduction.is_active,
            )
        )).scalars().all())
        own_ledger = await self._active_ledger(
            db,
            Account.advance_cheque_id == advance.id,
            Account.entry_type == "advance",
        )
        if not advance.is_active and not deductions and not own_ledger:
            result.already_voided = True
            return result

        old = {
            "status": advance.status,
            "outstanding_amount": str(advance.outstanding_amount),
        }
        if advance.is_active:
            drawn = bool(deductions) or advance.outstanding_amount < advance.original_amount
            advance.status = "voided" if drawn else "cancelled"
            advance.outstanding_amount = ZERO
            advance.mark_voided(actor, reason)
            result.amount_reversed += money(advance.original_amount)
        for row in own_ledger:
            row.mark_voided(actor, reason)
            result.ledger_entries_voided += 1
        await db.flush()

        engine = DeductionEngine(db)
        returned = ZERO
        for deduction in deductions:
            deduction.mark_voided(actor, reason)
            result.deductions_reversed += 1
            # The recovery stays on the cheque it netted; the grower is owed it back
            db.add(Account(
                grower_id=deduction.grower_id,
                entry_type="adjustment",
                amount=money(deduction.amount),
                currency=advance.currency,
                entry_date=deduction.deduction_date,
                description=(
                    f"Recovery reversed: advance "
                    f"{advance.series_code}{advance.cheque_number} voided"
                ),
                batch_id=deduction.batch_id,
                advance_cheque_id=advance.id,
                created_by=actor,
            ))
            redeployed = await engine.apply_deductions(
                deduction.grower_id, deduction.amount,
                actor=actor,
                deduction_date=deduction.deduction_date,
                batch_id=deduction.batch_id,
                distribution_id=deduction.distribution_id,
            )
            returned += redeployed.net_amount
        await db.flush()

        if returned:
            result.warnings.append(f"{returned} returned to the grower as an open adjustment")
        log_audit(
            db, actor,
            entity_type="advance_cheque", entity_id=advance.id, action="voided",
            old_values=old,
            new_values={
                "status": advance.status,
                "deductions_reversed": result.deductions_reversed,
                "returned_to_grower": str(returned),
            },
            reason=reason,
        )
        logger.info(
            "Voided advance cheque %s%s (%s)",
            advance.series_code, advance.cheque_number, reason,
        )
        return result

    # ── Distribution ─────────────────────────────────────────

    async def _void_distribution(
        self, db: AsyncSession, distribution_id: str, reason: str, actor: str,
        reverse_accounting: bool,
    ) -> VoidingResult:
        dist = await _locked(db, PaymentDistribution, distribution_id, "Distribution")
        result = VoidingResult(entity_type="distribution", entity_id=dist.id)

        cheques = list((await db.execute(
            select(Cheque).where(Cheque.distribution_id == dist.id, Cheque.is_active)
        )).scalars().all())
        items = list((await db.execute(
            select(PaymentDistributionItem).where(
                PaymentDistributionItem.distribution_id == dist.id,
                PaymentDistributionItem.is_active,
            )
        )).scalars().all())
        batches = list((await db.execute(
            select(PaymentBatch)
            .where(
                PaymentBatch.consolidated_distribution_id.is_not(None),
                or_(
                    PaymentBatch.consolidated_distribution_id == dist.id,
                    PaymentBatch.id.in_(sorted({item.batch_id for item in items})),
                ),
            )
            .with_for_update()
        )).scalars().all())
        if not dist.is_active and not cheques and not items and not batches:
            result.already_voided = True
            return result

        old = {"status": dist.status, "total_amount": str(dist.total_amount)}
        engine = DeductionEngine(db)
        deductions = (await db.execute(
            select(AdvanceDeduction).where(
                AdvanceDeduction.distribution_id == dist.id,
                AdvanceDeduction.is_active,
            )
        )).scalars().all()
        for deduction in deductions:
            await engine.restore_deduction(deduction, actor=actor, reason=reason)
            result.deductions_reversed += 1

        for cheque in cheques:
            # Source payables reopen; the batches still own them
            await self.reverse_cheque(
                db, cheque, reason=reason, actor=actor,
                reverse_accounting=False, result=result,
            )
        for row in await self._active_ledger(db, Account.distribution_id == dist.id):
            row.distribution_id = None
        for item in items:
            item.status = "voided"
            item.mark_voided(actor, reason)
        for batch in batches:
            batch.consolidated_distribution_id = None

        if dist.is_active:
            dist.status = "voided"
            dist.mark_voided(actor, reason)
        await db.flush()

        log_audit(
            db, actor,
            entity_type="distribution", entity_id=dist.id, action="voided",
            old_values=old,
            new_values={
                "status": dist.status,
                "cheques_voided": result.cheques_voided,
                "batches_released": [b.batch_number for b in batches],
            },
            reason=reason,
        )
        logger.info("Voided distribution %s (%s)", dist.distribution_number, reason)
        return result

    # ── Batch (called by the batch manager) ──────────────────

    async def void_batch_postings(
        self, db: AsyncSession, batch: PaymentBatch, *, reason: str, actor: str
    ) -> VoidingResult:
        """Reverse every cheque, allocation, deduction, ledger row and price
        lock a posted batch created.  The caller marks the batch itself."""
        distributed = (await db.execute(
            select(PaymentDistributionItem.id).where(
                PaymentDistributionItem.batch_id == batch.id,
                PaymentDistributionItem.is_active,
            ).limit(1)
        )).scalar_one_or_none()
        if batch.consolidated_distribution_id or distributed:
            raise BusinessRuleError(
                f"Batch {batch.batch_number} is consolidated into a distribution; "
                f"void the distribution first"
            )
        result = VoidingResult(entity_type="batch", entity_id=batch.id)

        cheques = (await db.execute(
            select(Cheque).where(Cheque.batch_id == batch.id, Cheque.is_active)
        )).scalars().all()
        for cheque in cheques:
            await self.reverse_cheque(
                db, cheque, reason=reason, actor=actor, reverse_accounting=True,
                result=result, adjust_batch_totals=False,
            )

        # Postings without a cheque: fully absorbed or consolidated payables
        engine = DeductionEngine(db)
        deductions = (await db.execute(
            select(AdvanceDeduction).where(
                AdvanceDeduction.batch_id == batch.id,
                AdvanceDeduction.is_active,
            )
        )).scalars().all()
        for deduction in deductions:
            await engine.restore_deduction(deduction, actor=actor, reason=reason)
            result.deductions_reversed += 1

        allocations = (await db.execute(
            select(ReceiptPaymentAllocation).where(
                ReceiptPaymentAllocation.batch_id == batch.id,
                ReceiptPaymentAllocation.is_active,
            )
        )).scalars().all()
        for alloc in allocations:
            alloc.mark_voided(actor, reason)
            result.allocations_voided += 1

        for row in await self._active_ledger(db, Account.batch_id == batch.id):
            row.mark_voided(actor, reason)
            result.ledger_entries_voided += 1

        locks = (await db.execute(
            select(PriceScheduleLock).where(
                PriceScheduleLock.batch_id == batch.id,
                PriceScheduleLock.is_active,
            )
        )).scalars().all()
        for lock in locks:
            lock.mark_voided(actor, reason)

        await db.flush()
        return result

    # ── Helpers ──────────────────────────────────────────────

    @staticmethod
    async def _active_ledger(db: AsyncSession, *criteria) -> list[Account]:
        result = await db.execute(select(Account).where(Account.is_active, *criteria))
        return list(result.scalars().all())

    @staticmethod
    async def _reduce_batch_totals(
        db: AsyncSession, batch: PaymentBatch, voided: list[ReceiptPaymentAllocation]
    ) -> None:
        await db.flush()
        batch.total_amount = money(batch.total_amount - sum((a.amount for a in voided), ZERO))
        batch.total_receipts = batch.total_receipts - len(voided)
        growers = (await db.execute(
            select(ReceiptPaymentAllocation.grower_id)
            .where(
                ReceiptPaymentAllocation.batch_id == batch.id,
                ReceiptPaymentAllocation.is_active,
            )
            .distinct()
        )).scalars().all()
        batch.total_growers = len(growers)
