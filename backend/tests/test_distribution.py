"""Consolidated distributions across batches, and voiding them."""

from decimal import Decimal

import pytest
from sqlalchemy import update

from conftest import ACTOR, CROP_YEAR, CUTOFF_DATE, PAYMENT_DATE, count, fetch
from growerpay.models import (
    Account,
    AdvanceCheque,
    Cheque,
    Grower,
    PaymentBatch,
    PaymentDistribution,
    PaymentDistributionItem,
)
from growerpay.services.batches import PaymentBatchManager
from growerpay.services.distribution import DistributionService
from growerpay.services.voiding import VoidingEngine, VoidTarget


@pytest.fixture
def service(session_factory) -> DistributionService:
    return DistributionService(session_factory)


async def post(session_factory, tier: int, cheque_mode: str = "consolidated") -> str:
    manager = PaymentBatchManager(session_factory)
    created = await manager.create_draft(
        tier=tier, crop_year=CROP_YEAR, payment_date=PAYMENT_DATE,
        cutoff_date=CUTOFF_DATE, actor=ACTOR, cheque_mode=cheque_mode,
    )
    assert created.success, created.errors
    approved = await manager.approve_batch(created.batch_id, actor=ACTOR)
    assert approved.success, approved.errors
    return created.batch_id


async def distribute(service, batch_ids):
    return await service.create_consolidated_payment(
        batch_ids, actor=ACTOR, distribution_date=PAYMENT_DATE
    )


@pytest.mark.asyncio
class TestCreateDistribution:
    async def test_one_cheque_per_grower_across_batches(self, seed, service, session_factory):
        grower = await seed.grower("G001")
        await seed.receipt(grower)
        first = await post(session_factory, 1)
        second = await post(session_factory, 2)

        result = await distribute(service, [first, second])

        assert result.outcome == "completed"
        assert result.distribution_number == "DIST-2025-001"
        assert result.cheques_generated == 1
        assert result.total_amount == Decimal("740.00")
        cheque = (await fetch(session_factory, Cheque))[0]
        assert cheque.distribution_id == result.distribution_id
        assert cheque.batch_id is None
        items = await fetch(session_factory, PaymentDistributionItem)
        assert sorted(i.amount for i in items) == [Decimal("200.00"), Decimal("540.00")]
        batches = await fetch(session_factory, PaymentBatch)
        assert {b.consolidated_distribution_id for b in batches} == {result.distribution_id}
        assert await count(
            session_factory, Account, Account.batch_id.is_not(None), Account.cheque_id.is_(None)
        ) == 0

    async def test_advances_are_recovered(self, seed, service, session_factory):
        grower = await seed.grower("G001")
        await seed.receipt(grower)
        await seed.advance(grower, "100")
        batch_id = await post(session_factory, 1)

        result = await distribute(service, [batch_id])

        assert result.total_amount == Decimal("440.00")
        advance = (await fetch(session_factory, AdvanceCheque))[0]
        assert advance.status == "fully_deducted"

    async def test_on_hold_grower_is_left_open_for_a_later_run(
        self, seed, service, session_factory
    ):
        await seed.receipt(await seed.grower("G001"))
        held = await seed.grower("G002")
        await seed.receipt(held)
        batch_id = await post(session_factory, 1)
        async with session_factory() as session:
            await session.execute(
                update(Grower).where(Grower.id == held.id).values(is_on_hold=True)
            )
            await session.commit()

        result = await distribute(service, [batch_id])

        assert result.outcome == "completed_with_warnings"
        assert result.cheques_generated == 1
        assert result.warnings == ["Grower G002 is on hold, left open"]
        batch = (await fetch(session_factory, PaymentBatch))[0]
        assert batch.consolidated_distribution_id is None

        async with session_factory() as session:
            await session.execute(
                update(Grower).where(Grower.id == held.id).values(is_on_hold=False)
            )
            await session.commit()
        later = await distribute(service, [batch_id])

        assert later.outcome == "completed"
        assert later.distribution_number == "DIST-2025-002"
        assert later.cheques_generated == 1
        assert later.total_amount == Decimal("540.00")
        batch = (await fetch(session_factory, PaymentBatch))[0]
        assert batch.consolidated_distribution_id == later.distribution_id
        assert await count(session_factory, Cheque, Cheque.is_active) == 2

    async def test_per_batch_batches_are_rejected(self, seed, service, session_factory):
        await seed.receipt(await seed.grower("G001"))
        batch_id = await post(session_factory, 1, cheque_mode="per_batch")

        result = await distribute(service, [batch_id])

        assert result.outcome == "not_run"
        assert "issues its own cheques" in result.errors[0]
        assert await count(session_factory, PaymentDistribution) == 0

    async def test_batch_cannot_be_consolidated_twice(self, seed, service, session_factory):
        await seed.receipt(await seed.grower("G001"))
        batch_id = await post(session_factory, 1)
        await distribute(service, [batch_id])

        again = await distribute(service, [batch_id])

        assert again.outcome == "not_run"
        assert "already consolidated" in again.errors[0]

    async def test_absorbed_payables_are_not_distributed_again(
        self, seed, service, session_factory
    ):
        grower = await seed.grower("G001")
        await seed.receipt(grower)
        await seed.advance(grower, "600")
        batch_id = await post(session_factory, 1)

        first = await distribute(service, [batch_id])
        again = await distribute(service, [batch_id])

        assert first.cheques_generated == 0
        assert any("fully absorbed" in w for w in first.warnings)
        assert again.outcome == "not_run"
        assert "already consolidated" in again.errors[0]
        advance = (await fetch(session_factory, AdvanceCheque))[0]
        assert advance.outstanding_amount == Decimal("60.00")

    async def test_no_batches(self, service):
        result = await distribute(service, [])

        assert result.outcome == "not_run"


@pytest.mark.asyncio
class TestVoidDistribution:
    async def test_void_reopens_payables_and_releases_batches(
        self, seed, service, session_factory
    ):
        grower = await seed.grower("G001")
        await seed.receipt(grower)
        await seed.advance(grower, "100")
        batch_id = await post(session_factory, 1)
        created = await distribute(service, [batch_id])

        result = await VoidingEngine(session_factory).void(
            VoidTarget.distribution(created.distribution_id),
            reason="Bank file rejected", actor=ACTOR,
        )

        assert result.success
        assert result.cheques_voided == 1
        assert result.deductions_reversed == 1
        dist = (await fetch(session_factory, PaymentDistribution))[0]
        assert dist.status == "voided"
        assert await count(
            session_factory, PaymentDistributionItem, PaymentDistributionItem.is_active
        ) == 0
        batch = (await fetch(session_factory, PaymentBatch))[0]
        assert batch.consolidated_distribution_id is None
        advance = (await fetch(session_factory, AdvanceCheque))[0]
        assert advance.outstanding_amount == Decimal("100.00")
        open_rows = await fetch(
            session_factory, Account,
            Account.batch_id == batch_id, Account.cheque_id.is_(None), Account.is_active,
        )
        assert [r.amount for r in open_rows] == [Decimal("540.00")]

        # The batch can be distributed again
        redo = await distribute(service, [batch_id])
        assert redo.distribution_number == "DIST-2025-002"
        assert redo.total_amount == Decimal("440.00")

    async def test_distribution_cheque_cannot_be_voided_alone(
        self, seed, service, session_factory
    ):
        await seed.receipt(await seed.grower("G001"))
        created = await distribute(service, [await post(session_factory, 1)])

        result = await VoidingEngine(session_factory).void(
            VoidTarget.cheque(created.cheque_ids[0]), reason="Lost", actor=ACTOR
        )

        assert result.outcome == "not_run"
        assert "void the distribution instead" in result.errors[0]

    async def test_consolidated_batch_rolls_back_after_distribution_void(
        self, seed, service, session_factory
    ):
        await seed.receipt(await seed.grower("G001"))
        batch_id = await post(session_factory, 1)
        created = await distribute(service, [batch_id])
        manager = PaymentBatchManager(session_factory)

        blocked = await manager.rollback_batch(batch_id, reason="Re-run", actor=ACTOR)
        await VoidingEngine(session_factory).void(
            VoidTarget.distribution(created.distribution_id), reason="Re-run", actor=ACTOR
        )
        rolled = await manager.rollback_batch(batch_id, reason="Re-run", actor=ACTOR)

        assert blocked.outcome == "not_run"
        assert rolled.status == "voided"
        assert await count(session_factory, Account, Account.is_active) == 0

    async def test_second_void_is_a_no_op(self, seed, service, session_factory):
        await seed.receipt(await seed.grower("G001"))
        created = await distribute(service, [await post(session_factory, 1)])
        target = VoidTarget.distribution(created.distribution_id)
        engine = VoidingEngine(session_factory)

        await engine.void(target, reason="Re-run", actor=ACTOR)
        again = await engine.void(target, reason="Re-run", actor=ACTOR)

        assert again.already_voided

    async def test_partly_distributed_batch_is_released_by_either_void(
        self, seed, service, session_factory
    ):
        await seed.receipt(await seed.grower("G001"))
        held = await seed.grower("G002")
        await seed.receipt(held)
        batch_id = await post(session_factory, 1)
        async with session_factory() as session:
            await session.execute(
                update(Grower).where(Grower.id == held.id).values(is_on_hold=True)
            )
            await session.commit()
        first = await distribute(service, [batch_id])
        manager = PaymentBatchManager(session_factory)

        blocked = await manager.rollback_batch(batch_id, reason="Re-run", actor=ACTOR)
        async with session_factory() as session:
            await session.execute(
                update(Grower).where(Grower.id == held.id).values(is_on_hold=False)
            )
            await session.commit()
        await distribute(service, [batch_id])
        await VoidingEngine(session_factory).void(
            VoidTarget.distribution(first.distribution_id), reason="Re-run", actor=ACTOR
        )

        assert blocked.outcome == "not_run"
        batch = (await fetch(session_factory, PaymentBatch))[0]
        assert batch.consolidated_distribution_id is None
        open_rows = await fetch(
            session_factory, Account,
            Account.batch_id == batch_id,
            Account.cheque_id.is_(None),
            Account.distribution_id.is_(None),
            Account.is_active,
        )
        assert [r.amount for r in open_rows] == [Decimal("540.00")]
        redo = await distribute(service, [batch_id])
        assert redo.distribution_number == "DIST-2025-003"
        assert redo.total_amount == Decimal("540.00")
