"""Payment batch manager: owns the batch state machine.

    create_draft      numbers the batch, validates inputs, runs the
                      calculation and stores the preview (Draft)
    approve_batch     re-checks eligibility, recovers advances and posts
                      (Draft → Posted)
    process_payments  closes the batch for edits (Posted → Finalized)
    rollback_batch    voids everything the batch posted (Draft/Posted → Voided)

Each transition is one unit of work: on any failure the batch stays in
its prior state.  Errors come back as a BatchOperationResult, never as
an exception.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Awaitable, Callable

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from growerpay.database import async_session, unit_of_work
from growerpay.exceptions import (
    ConcurrencyConflictError,
    GrowerPayError,
    InvalidTransitionError,
    ResourceNotFoundError,
    TierPriceRegressionError,
    ValidationFailedError,
)
from growerpay.models.allocation import ReceiptPaymentAllocation
from growerpay.models.base import utcnow
from growerpay.models.grower import Grower
from growerpay.models.payment_batch import PaymentBatch
from growerpay.schemas.payment import BatchFilters, CalculationResult, DraftBatchRequest
from growerpay.schemas.results import BatchOperationResult
from growerpay.services.calculation import CancellationToken, PaymentCalculationEngine
from growerpay.services.eligibility import already_allocated, prior_allocations
from growerpay.services.posting import PostingEngine
from growerpay.services.tiers import AdvanceTier, TierPriceSequence
from growerpay.services.voiding import VoidingEngine
from growerpay.utils.audit import log_audit
from growerpay.utils.money import ZERO, money, to_decimal
from growerpay.utils.numbering import next_batch_number

logger = logging.getLogger(__name__)

Operation = Callable[[AsyncSession], Awaitable[BatchOperationResult]]


class PaymentBatchManager:
    def __init__(self, session_factory: async_sessionmaker = async_session):
        self.session_factory = session_factory
        self.voiding = VoidingEngine(session_factory)

    # ── Boundary ─────────────────────────────────────────────

    async def _run(
        self,
        operation: Operation,
        *,
        label: str,
        batch_id: str | None = None,
        session: AsyncSession | None = None,
    ) -> BatchOperationResult:
        try:
            async with unit_of_work(self.session_factory, session) as db:
                return await operation(db)
        except ValidationFailedError as exc:
            return BatchOperationResult(outcome="not_run", batch_id=batch_id, errors=exc.messages)
        except ConcurrencyConflictError as exc:
            logger.warning("%s conflicted: %s", label, exc)
            return BatchOperationResult(
                outcome="conflict", batch_id=batch_id, errors=[exc.message]
            )
        except GrowerPayError as exc:
            return BatchOperationResult(outcome="not_run", batch_id=batch_id, errors=[exc.message])
        except SQLAlchemyError as exc:
            logger.exception("%s failed", label)
            return BatchOperationResult(
                outcome="fatal", batch_id=batch_id,
                errors=[f"Database error: {exc.__class__.__name__}"],
            )
        except Exception as exc:
            logger.exception("%s failed", label)
            return BatchOperationResult(
                outcome="fatal", batch_id=batch_id, errors=[f"Unexpected error: {exc}"]
            )

    @staticmethod
    async def _lock_batch(db: AsyncSession, batch_id: str) -> PaymentBatch:
        result = await db.execute(
            select(PaymentBatch).where(PaymentBatch.id == batch_id).with_for_update()
        )
        batch = result.scalar_one_or_none()
        if batch is None:
            raise ResourceNotFoundError("Payment batch", batch_id)
        return batch

    @staticmethod
    def _require_transition(batch: PaymentBatch, target: str) -> None:
        if not batch.can_transition(target):
            raise InvalidTransitionError(f"Batch {batch.batch_number}", batch.status, target)

    @staticmethod
    def _done(batch: PaymentBatch, warnings: list[str] | None = None, **extra) -> BatchOperationResult:
        warnings = warnings or []
        return BatchOperationResult(
            outcome="completed_with_warnings" if warnings else "completed",
            batch_id=batch.id,
            batch_number=batch.batch_number,
            status=batch.status,
            warnings=warnings,
            **extra,
        )

    # ── Draft ────────────────────────────────────────────────

    async def create_draft(
        self,
        *,
        tier: int,
        crop_year: int,
        payment_date: date,
        cutoff_date: date,
        actor: str,
        filters: BatchFilters | dict | None = None,
        cheque_mode: str = "per_batch",
        notes: str | None = None,
        cancel_token: CancellationToken | None = None,
        session: AsyncSession | None = None,
    ) -> BatchOperationResult:
        """Calculate a payment run and store it as a Draft batch."""
        try:
            request = DraftBatchRequest(
                tier=tier,
                crop_year=crop_year,
                payment_date=payment_date,
                cutoff_date=cutoff_date,
                filters=filters or BatchFilters(),
                cheque_mode=cheque_mode,
                notes=notes,
            )
        except ValidationError as exc:
            return BatchOperationResult(
                outcome="not_run", errors=[err["msg"] for err in exc.errors()]
            )

        async def operation(db: AsyncSession) -> BatchOperationResult:
            engine = PaymentCalculationEngine(db)
            if request.tier == 0:
                calc = await engine.calculate_final_payment(
                    request.payment_date, request.cutoff_date, request.crop_year,
                    request.filters, cancel_token,
                )
            else:
                calc = await engine.calculate_advance_batch(
                    request.tier, request.payment_date, request.cutoff_date,
                    request.crop_year, request.filters, cancel_token,
                )
            if not calc.growers:
                raise ValidationFailedError(
                    calc.general_errors or ["No eligible receipts for this payment run"]
                )

            payment_tier = AdvanceTier(request.tier)
            batch = PaymentBatch(
                batch_number=await next_batch_number(db, payment_tier.type_code, request.crop_year),
                tier=request.tier,
                crop_year=request.crop_year,
                batch_date=request.payment_date,
                cutoff_date=request.cutoff_date,
                cheque_mode=request.cheque_mode,
                filters=request.filters.model_dump(),
                preview=calc.model_dump(mode="json"),
                notes=request.notes,
                created_by=actor,
            )
            db.add(batch)
            await db.flush()
            logger.info(
                "Created draft batch %s with %d grower(s)",
                batch.batch_number, len(calc.growers),
            )
            warnings = [
                f"Grower {g.grower_number}: {'; '.join(g.errors)}"
                for g in calc.flagged_growers
            ] + calc.general_errors
            return self._done(batch, warnings)

        return await self._run(operation, label="Create draft", session=session)

    # ── Draft → Posted ───────────────────────────────────────

    async def approve_batch(
        self,
        batch_id: str,
        *,
        actor: str,
        require_all_valid: bool | None = None,
        session: AsyncSession | None = None,
    ) -> BatchOperationResult:
        async def operation(db: AsyncSession) -> BatchOperationResult:
            batch = await self._lock_batch(db, batch_id)
            self._require_transition(batch, "posted")
            calc = CalculationResult.model_validate(batch.preview or {})
            await self._revalidate(db, batch, calc)

            posting = await PostingEngine(db).post_batch(
                batch, calc.growers, actor=actor, require_all_valid=require_all_valid
            )
            batch.status = "posted"
            batch.posted_by = actor
            batch.posted_at = utcnow()
            log_audit(
                db, actor,
                entity_type="batch", entity_id=batch.id, action="posted",
                old_values={"status": "draft"},
                new_values={
                    "status": "posted",
                    "total_growers": batch.total_growers,
                    "total_receipts": batch.total_receipts,
                    "total_amount": str(batch.total_amount),
                },
            )
            await db.flush()
            return self._done(batch, list(posting.warnings), posting=posting)

        return await self._run(
            operation, label=f"Approve batch {batch_id}", batch_id=batch_id, session=session
        )

    async def _revalidate(
        self, db: AsyncSession, batch: PaymentBatch, calc: CalculationResult
    ) -> None:
        """Receipts must still be payable at the prices the preview used, and
        growers still payable."""
        tier = AdvanceTier(batch.tier)
        receipt_ids = [d.receipt_id for g in calc.valid_growers for d in g.receipts]
        taken = await already_allocated(db, receipt_ids, tier)
        if taken:
            numbers = sorted(
                d.receipt_number
                for g in calc.valid_growers for d in g.receipts
                if d.receipt_id in taken
            )
            raise ConcurrencyConflictError(
                f"{len(numbers)} receipt(s) are no longer payable since calculation: "
                f"{', '.join(numbers)}"
            )

        stale = await self._stale_receipts(db, calc, tier)
        if stale:
            raise ConcurrencyConflictError(
                f"Earlier payments changed on {len(stale)} receipt(s) since calculation: "
                f"{', '.join(sorted(stale))}"
            )

        grower_ids = [g.grower_id for g in calc.valid_growers]
        if not grower_ids:
            return
        growers = {
            g.id: g for g in (await db.execute(
                select(Grower).where(Grower.id.in_(grower_ids))
            )).scalars().all()
        }
        for payment in calc.valid_growers:
            grower = growers.get(payment.grower_id)
            if grower is None:
                payment.errors.append("Grower no longer exists")
            elif not grower.is_active:
                payment.errors.append(f"Grower {grower.grower_number} became inactive")
            elif grower.is_on_hold:
                payment.errors.append(f"Grower {grower.grower_number} was put on hold")

    @staticmethod
    async def _stale_receipts(
        db: AsyncSession, calc: CalculationResult, tier: AdvanceTier
    ) -> list[str]:
        """Receipt numbers whose earlier-tier payments no longer match the preview."""
        details = [d for g in calc.valid_growers for d in g.receipts]
        prior = await prior_allocations(db, [d.receipt_id for d in details], tier)
        stale = []
        for detail in details:
            allocations = prior.get(detail.receipt_id, [])
            try:
                incremental = TierPriceSequence.from_allocations(allocations).incremental_for(
                    tier, detail.cumulative_price
                )
            except TierPriceRegressionError:
                stale.append(detail.receipt_number)
                continue
            paid = money(sum((to_decimal(a.amount) for a in allocations), ZERO))
            if incremental != detail.price_per_lb or (
                tier.is_final and paid != detail.prior_advances
            ):
                stale.append(detail.receipt_number)
        return stale

    # ── Posted → Finalized ───────────────────────────────────

    async def process_payments(
        self, batch_id: str, *, actor: str, session: AsyncSession | None = None
    ) -> BatchOperationResult:
        async def operation(db: AsyncSession) -> BatchOperationResult:
            batch = await self._lock_batch(db, batch_id)
            self._require_transition(batch, "finalized")
            batch.status = "finalized"
            batch.finalized_by = actor
            batch.finalized_at = utcnow()
            log_audit(
                db, actor,
                entity_type="batch", entity_id=batch.id, action="finalized",
                old_values={"status": "posted"},
                new_values={"status": "finalized"},
            )
            await db.flush()
            logger.info("Finalized batch %s", batch.batch_number)
            return self._done(batch)

        return await self._run(
            operation, label=f"Finalize batch {batch_id}", batch_id=batch_id, session=session
        )

    # ── Draft/Posted → Voided ────────────────────────────────

    async def rollback_batch(
        self,
        batch_id: str,
        *,
        reason: str,
        actor: str,
        session: AsyncSession | None = None,
    ) -> BatchOperationResult:
        if not reason or not reason.strip():
            return BatchOperationResult(
                outcome="not_run", batch_id=batch_id,
                errors=["A reason is required to roll back a batch"],
            )

        async def operation(db: AsyncSession) -> BatchOperationResult:
            batch = await self._lock_batch(db, batch_id)
            self._require_transition(batch, "voided")
            old_status = batch.status

            voiding = None
            if old_status == "posted":
                voiding = await self.voiding.void_batch_postings(
                    db, batch, reason=reason, actor=actor
                )
            batch.status = "voided"
            batch.mark_voided(actor, reason)
            log_audit(
                db, actor,
                entity_type="batch", entity_id=batch.id, action="rolled_back",
                old_values={"status": old_status},
                new_values={
                    "status": "voided",
                    "cheques_voided": voiding.cheques_voided if voiding else 0,
                    "allocations_voided": voiding.allocations_voided if voiding else 0,
                },
                reason=reason,
            )
            await db.flush()
            logger.info("Rolled back batch %s from %s", batch.batch_number, old_status)
            return self._done(batch, voiding=voiding)

        return await self._run(
            operation, label=f"Roll back batch {batch_id}", batch_id=batch_id, session=session
        )

    # ── Queries ──────────────────────────────────────────────

    async def get_batch(self, batch_id: str) -> PaymentBatch | None:
        async with self.session_factory() as db:
            return await db.get(PaymentBatch, batch_id)

    async def list_batches(
        self, *, crop_year: int | None = None, status: str | None = None
    ) -> list[PaymentBatch]:
        stmt = select(PaymentBatch).order_by(PaymentBatch.created_at.desc())
        if crop_year is not None:
            stmt = stmt.where(PaymentBatch.crop_year == crop_year)
        if status is not None:
            stmt = stmt.where(PaymentBatch.status == status)
        async with self.session_factory() as db:
            return list((await db.execute(stmt)).scalars().all())

    async def get_batch_allocations(
        self, batch_id: str, *, include_voided: bool = False
    ) -> list[ReceiptPaymentAllocation]:
        stmt = select(ReceiptPaymentAllocation).where(
            ReceiptPaymentAllocation.batch_id == batch_id
        )
        if not include_voided:
            stmt = stmt.where(ReceiptPaymentAllocation.is_active)
        async with self.session_factory() as db:
            return list((await db.execute(stmt)).scalars().all())
