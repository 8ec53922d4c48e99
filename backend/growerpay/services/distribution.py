"""Consolidated payments: one cheque per grower across several batches.

Batches posted in `consolidated` cheque mode leave their ledger rows
open (no cheque).  A distribution run gathers those open payables per
grower, recovers outstanding advances FIFO, issues one cheque for the
net.  Every payable it settles, with or without a cheque, is stamped
with the distribution.  Payables of held growers stay open for a later
run, and a batch counts as consolidated only once none are left.
Voiding the distribution (see voiding.py) reopens the payables and
releases the batches.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import date
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from growerpay.database import async_session, unit_of_work
from growerpay.exceptions import (
    ConcurrencyConflictError,
    GrowerPayError,
    ValidationFailedError,
)
from growerpay.models.account import Account
from growerpay.models.allocation import ReceiptPaymentAllocation
from growerpay.models.distribution import PaymentDistribution, PaymentDistributionItem
from growerpay.models.grower import Grower
from growerpay.models.payment_batch import PaymentBatch
from growerpay.schemas.results import DistributionResult
from growerpay.services.cheques import issue_cheque
from growerpay.services.deductions import DeductionEngine
from growerpay.utils.audit import log_audit
from growerpay.utils.money import ZERO, money
from growerpay.utils.numbering import next_distribution_number

logger = logging.getLogger(__name__)


class DistributionService:
    def __init__(self, session_factory: async_sessionmaker = async_session):
        self.session_factory = session_factory

    async def create_consolidated_payment(
        self,
        batch_ids: list[str],
        *,
        actor: str,
        distribution_date: date | None = None,
        session: AsyncSession | None = None,
    ) -> DistributionResult:
        try:
            async with unit_of_work(self.session_factory, session) as db:
                return await self._create(
                    db, batch_ids, actor, distribution_date or date.today()
                )
        except ValidationFailedError as exc:
            return DistributionResult(outcome="not_run", errors=exc.messages)
        except ConcurrencyConflictError as exc:
            logger.warning("Distribution run conflicted: %s", exc)
            return DistributionResult(outcome="conflict", errors=[exc.message])
        except GrowerPayError as exc:
            return DistributionResult(outcome="not_run", errors=[exc.message])
        except SQLAlchemyError as exc:
            logger.exception("Distribution run failed")
            return DistributionResult(
                outcome="fatal", errors=[f"Database error: {exc.__class__.__name__}"]
            )
        except Exception as exc:
            logger.exception("Distribution run failed")
            return DistributionResult(outcome="fatal", errors=[f"Unexpected error: {exc}"])

    async def _create(
        self, db: AsyncSession, batch_ids: list[str], actor: str, on_date: date
    ) -> DistributionResult:
        batch_ids = sorted(set(batch_ids))
        if not batch_ids:
            raise ValidationFailedError("At least one batch is required")

        batches = list((await db.execute(
            select(PaymentBatch)
            .where(PaymentBatch.id.in_(batch_ids))
            .order_by(PaymentBatch.batch_number)
            .with_for_update()
        )).scalars().all())
        errors = [f"Batch {bid} not found" for bid in set(batch_ids) - {b.id for b in batches}]
        for batch in batches:
            if batch.status not in ("posted", "finalized"):
                errors.append(f"Batch {batch.batch_number} is {batch.status}")
            if batch.cheque_mode != "consolidated":
                errors.append(f"Batch {batch.batch_number} issues its own cheques")
        if errors:
            raise ValidationFailedError(errors)

        open_rows = await _open_payables(db, batch_ids)
        for batch in batches:
            if any(row.batch_id == batch.id for row in open_rows):
                continue
            if batch.consolidated_distribution_id:
                errors.append(f"Batch {batch.batch_number} is already consolidated")
            else:
                errors.append(f"Batch {batch.batch_number} has no open payables")
        if errors:
            raise ValidationFailedError(errors)

        number = await next_distribution_number(db, on_date.year)
        dist = PaymentDistribution(
            distribution_number=number,
            distribution_date=on_date,
            batch_ids=batch_ids,
            total_batches=len(batches),
            created_by=actor,
        )
        db.add(dist)
        await db.flush()

        by_grower: dict[str, list[Account]] = defaultdict(list)
        for row in open_rows:
            by_grower[row.grower_id].append(row)
        growers = {
            g.id: g for g in (await db.execute(
                select(Grower).where(Grower.id.in_(list(by_grower)))
            )).scalars().all()
        }

        result = DistributionResult(
            outcome="completed", distribution_id=dist.id, distribution_number=number
        )
        engine = DeductionEngine(db)
        for grower_id in sorted(by_grower, key=lambda gid: growers[gid].grower_number):
            grower = growers[grower_id]
            rows = by_grower[grower_id]
            gross = money(sum((r.amount for r in rows), ZERO))
            if grower.is_on_hold:
                result.warnings.append(f"Grower {grower.grower_number} is on hold, left open")
                continue
            if gross <= 0:
                result.warnings.append(
                    f"Grower {grower.grower_number} has no positive balance ({gross})"
                )
                continue

            recovery = await engine.apply_deductions(
                grower_id, gross,
                actor=actor, deduction_date=on_date, distribution_id=dist.id,
            )
            for row in rows:
                row.distribution_id = dist.id
            cheque_id = None
            if recovery.net_amount > 0:
                cheque = await issue_cheque(
                    db,
                    grower_id=grower_id,
                    currency=grower.currency,
                    amount=recovery.net_amount,
                    cheque_date=on_date,
                    actor=actor,
                    distribution_id=dist.id,
                )
                cheque_id = cheque.id
                result.cheques_generated += 1
                result.cheque_ids.append(cheque.id)
                result.total_amount += cheque.amount
                await self._attach(db, rows, grower_id, batch_ids, cheque_id)
                await engine.attach_cheque(
                    [d.deduction_id for d in recovery.deductions if d.deduction_id],
                    cheque_id,
                )
            else:
                result.warnings.append(
                    f"Grower {grower.grower_number}: {gross} fully absorbed by "
                    f"advance deductions, no cheque issued"
                )

            per_batch: dict[str, Decimal] = defaultdict(lambda: ZERO)
            for row in rows:
                per_batch[row.batch_id] += row.amount
            for batch_id, amount in sorted(per_batch.items()):
                db.add(PaymentDistributionItem(
                    distribution_id=dist.id,
                    grower_id=grower_id,
                    batch_id=batch_id,
                    cheque_id=cheque_id,
                    amount=money(amount),
                    status="paid",
                ))
            dist.total_growers += 1

        if not dist.total_growers:
            raise ValidationFailedError(result.warnings or ["No grower could be paid"])

        dist.total_amount = money(result.total_amount)
        await db.flush()
        still_open = {row.batch_id for row in await _open_payables(db, batch_ids)}
        for batch in batches:
            if batch.id not in still_open:
                batch.consolidated_distribution_id = dist.id
        await db.flush()

        log_audit(
            db, actor,
            entity_type="distribution", entity_id=dist.id, action="generated",
            new_values={
                "distribution_number": number,
                "batches": [b.batch_number for b in batches],
                "left_open": sorted(
                    b.batch_number for b in batches if b.id in still_open
                ),
                "total_amount": str(dist.total_amount),
            },
        )
        if result.warnings:
            result.outcome = "completed_with_warnings"
        logger.info(
            "Distribution %s: %d cheque(s), %s across %d batch(es)",
            number, result.cheques_generated, dist.total_amount, len(batches),
        )
        return result

    @staticmethod
    async def _attach(
        db: AsyncSession,
        rows: list[Account],
        grower_id: str,
        batch_ids: list[str],
        cheque_id: str,
    ) -> None:
        for row in rows:
            row.cheque_id = cheque_id
        allocations = (await db.execute(
            select(ReceiptPaymentAllocation).where(
                ReceiptPaymentAllocation.grower_id == grower_id,
                ReceiptPaymentAllocation.batch_id.in_(batch_ids),
                ReceiptPaymentAllocation.cheque_id.is_(None),
                ReceiptPaymentAllocation.is_active,
            )
        )).scalars().all()
        for alloc in allocations:
            alloc.cheque_id = cheque_id


async def _open_payables(db: AsyncSession, batch_ids: list[str]) -> list[Account]:
    result = await db.execute(
        select(Account).where(
            Account.batch_id.in_(batch_ids),
            Account.cheque_id.is_(None),
            Account.distribution_id.is_(None),
            Account.is_active,
        )
    )
    return list(result.scalars().all())
