"""Payment batch lifecycle: draft, approve, finalize, rollback."""

from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import update

from conftest import ACTOR, CROP_YEAR, CUTOFF_DATE, PAYMENT_DATE, count, fetch
from growerpay.models import (
    Account,
    AdvanceCheque,
    Cheque,
    Grower,
    PaymentAuditLog,
    PaymentBatch,
    PriceScheduleLock,
    ReceiptPaymentAllocation,
)
from growerpay.services.batches import PaymentBatchManager


@pytest.fixture
def manager(session_factory) -> PaymentBatchManager:
    return PaymentBatchManager(session_factory)


async def draft(manager, tier: int = 1, **kwargs):
    kwargs.setdefault("crop_year", CROP_YEAR)
    kwargs.setdefault("payment_date", PAYMENT_DATE)
    kwargs.setdefault("cutoff_date", CUTOFF_DATE)
    return await manager.create_draft(tier=tier, actor=ACTOR, **kwargs)


async def posted(manager, tier: int = 1, **kwargs):
    created = await draft(manager, tier, **kwargs)
    assert created.success, created.errors
    approved = await manager.approve_batch(created.batch_id, actor=ACTOR)
    assert approved.success, approved.errors
    return approved


async def paid_total(session_factory) -> Decimal:
    allocations = await fetch(
        session_factory, ReceiptPaymentAllocation, ReceiptPaymentAllocation.is_active
    )
    return sum((a.amount for a in allocations), Decimal("0"))


@pytest.mark.asyncio
class TestDraft:
    async def test_draft_is_numbered_by_tier_and_year(self, seed, manager):
        grower = await seed.grower("G001")
        await seed.receipt(grower)

        first = await draft(manager, 1)
        second = await draft(manager, 1)

        assert first.outcome == "completed"
        assert first.status == "draft"
        assert first.batch_number == "ADV1-2025-001"
        assert second.batch_number == "ADV1-2025-002"

    async def test_draft_writes_no_payments(self, seed, manager, session_factory):
        grower = await seed.grower("G001")
        await seed.receipt(grower)

        created = await draft(manager)
        batch = await manager.get_batch(created.batch_id)

        assert Decimal(batch.preview["growers"][0]["total_amount"]) == Decimal("540")
        assert await count(session_factory, ReceiptPaymentAllocation) == 0
        assert await count(session_factory, Cheque) == 0

    async def test_flagged_growers_become_warnings(self, seed, manager):
        await seed.receipt(await seed.grower("G001"))
        await seed.receipt(await seed.grower("G003", is_active=False))

        created = await draft(manager)

        assert created.outcome == "completed_with_warnings"
        assert any("G003" in w for w in created.warnings)

    async def test_no_eligible_receipts(self, seed, manager, session_factory):
        await seed.grower("G001")

        created = await draft(manager)

        assert created.outcome == "not_run"
        assert created.errors == ["No eligible receipts for this payment run"]
        assert await count(session_factory, PaymentBatch) == 0

    async def test_cutoff_after_payment_date_is_rejected(self, seed, manager):
        created = await draft(manager, cutoff_date=date(2025, 10, 15))

        assert created.outcome == "not_run"
        assert created.errors

    async def test_overlapping_filters_are_rejected(self, seed, manager):
        created = await draft(
            manager, filters={"pay_groups": ["REG"], "exclude_pay_groups": ["REG"]}
        )

        assert created.outcome == "not_run"

    async def test_unknown_cheque_mode_is_rejected(self, seed, manager):
        created = await draft(manager, cheque_mode="wire")

        assert created.outcome == "not_run"


@pytest.mark.asyncio
class TestApprove:
    async def test_posts_valid_growers_and_skips_flagged(self, seed, manager, session_factory):
        for number in ("G001", "G002"):
            await seed.receipt(await seed.grower(number))
        await seed.receipt(await seed.grower("G003", is_active=False))
        created = await draft(manager)

        approved = await manager.approve_batch(created.batch_id, actor=ACTOR)

        assert approved.outcome == "completed_with_warnings"
        assert approved.status == "posted"
        assert approved.posting.cheques_generated == 2
        assert approved.posting.growers_posted == 2
        assert any("G003 skipped" in w for w in approved.warnings)

        cheques = await fetch(session_factory, Cheque)
        assert sorted(c.cheque_number for c in cheques) == [1001, 1002]
        assert all(c.amount == Decimal("540.00") for c in cheques)

        batch = await manager.get_batch(created.batch_id)
        assert batch.total_growers == 2
        assert batch.total_receipts == 2
        assert batch.total_amount == Decimal("1080.00")
        assert batch.posted_by == ACTOR

    async def test_each_receipt_gets_allocation_and_ledger_row(self, seed, manager, session_factory):
        grower = await seed.grower("G001")
        await seed.receipt(grower, "1000")
        await seed.receipt(grower, "500")

        approved = await posted(manager)

        allocations = await manager.get_batch_allocations(approved.batch_id)
        rows = await fetch(session_factory, Account, Account.batch_id == approved.batch_id)
        assert len(allocations) == 2
        assert all(a.tier == 1 for a in allocations)
        assert {r.entry_type for r in rows} == {"advance"}
        assert sum(r.amount for r in rows) == Decimal("810.00")
        assert await count(session_factory, Cheque) == 1
        assert await count(
            session_factory, PriceScheduleLock, PriceScheduleLock.batch_id == approved.batch_id
        ) == 1

    async def test_approving_twice_is_rejected(self, seed, manager, session_factory):
        await seed.receipt(await seed.grower("G001"))
        created = await draft(manager)
        await manager.approve_batch(created.batch_id, actor=ACTOR)

        again = await manager.approve_batch(created.batch_id, actor=ACTOR)

        assert again.outcome == "not_run"
        assert "cannot move from posted to posted" in again.errors[0]
        assert await count(session_factory, Cheque) == 1

    async def test_competing_drafts_pay_receipts_once(self, seed, manager, session_factory):
        await seed.receipt(await seed.grower("G001"))
        first = await draft(manager)
        second = await draft(manager)

        assert (await manager.approve_batch(first.batch_id, actor=ACTOR)).success
        lost = await manager.approve_batch(second.batch_id, actor=ACTOR)

        assert lost.outcome == "conflict"
        assert (await manager.get_batch(second.batch_id)).status == "draft"
        assert await count(session_factory, ReceiptPaymentAllocation) == 1

    async def test_lower_tier_run_after_higher_tier_finds_nothing(
        self, seed, manager, session_factory
    ):
        await seed.receipt(await seed.grower("G001"))
        await posted(manager, 2)

        late = await draft(manager, 1)

        assert late.outcome == "not_run"
        assert await paid_total(session_factory) == Decimal("700.00")

    async def test_lower_tier_draft_conflicts_when_higher_tier_posts_first(
        self, seed, manager, session_factory
    ):
        await seed.receipt(await seed.grower("G001"))
        first = await draft(manager, 1)
        await posted(manager, 2)

        lost = await manager.approve_batch(first.batch_id, actor=ACTOR)

        assert lost.outcome == "conflict"
        assert (await manager.get_batch(first.batch_id)).status == "draft"
        assert await paid_total(session_factory) == Decimal("700.00")

    async def test_higher_tier_draft_conflicts_when_lower_tier_posts_first(
        self, seed, manager, session_factory
    ):
        await seed.receipt(await seed.grower("G001"))
        second = await draft(manager, 2)
        await posted(manager, 1)

        stale = await manager.approve_batch(second.batch_id, actor=ACTOR)

        assert stale.outcome == "conflict"
        assert "Earlier payments changed on 1 receipt(s)" in stale.errors[0]
        assert await paid_total(session_factory) == Decimal("540.00")

        redo = await posted(manager, 2)
        assert redo.posting.total_amount == Decimal("200.00")
        assert await paid_total(session_factory) == Decimal("740.00")

    async def test_final_draft_conflicts_when_an_advance_posts_first(
        self, seed, manager, session_factory
    ):
        await seed.receipt(await seed.grower("G001"))
        final = await draft(manager, 0)
        await posted(manager, 1)

        stale = await manager.approve_batch(final.batch_id, actor=ACTOR)

        assert stale.outcome == "conflict"
        assert (await manager.get_batch(final.batch_id)).status == "draft"
        assert await paid_total(session_factory) == Decimal("540.00")

        await manager.rollback_batch(final.batch_id, reason="Stale preview", actor=ACTOR)
        await posted(manager, 0)
        assert await paid_total(session_factory) == Decimal("1040.00")

    async def test_all_or_nothing_posts_nothing(self, seed, manager, session_factory):
        await seed.receipt(await seed.grower("G001"))
        await seed.receipt(await seed.grower("G003", is_on_hold=True))
        created = await draft(manager)

        approved = await manager.approve_batch(
            created.batch_id, actor=ACTOR, require_all_valid=True
        )

        assert approved.outcome == "not_run"
        assert (await manager.get_batch(created.batch_id)).status == "draft"
        assert await count(session_factory, ReceiptPaymentAllocation) == 0

    async def test_grower_put_on_hold_after_draft_is_skipped(self, seed, manager, session_factory):
        await seed.receipt(await seed.grower("G001"))
        held = await seed.grower("G002")
        await seed.receipt(held)
        created = await draft(manager)
        async with session_factory() as session:
            await session.execute(
                update(Grower).where(Grower.id == held.id).values(is_on_hold=True)
            )
            await session.commit()

        approved = await manager.approve_batch(created.batch_id, actor=ACTOR)

        assert approved.posting.growers_posted == 1
        assert any("G002 was put on hold" in w for w in approved.warnings)

    async def test_advances_are_recovered_from_the_cheque(self, seed, manager, session_factory):
        grower = await seed.grower("G001")
        await seed.receipt(grower)
        await seed.advance(grower, "100", date(2025, 5, 1))
        await seed.advance(grower, "50", date(2025, 6, 1))

        approved = await posted(manager)

        cheque = (await fetch(session_factory, Cheque, Cheque.batch_id == approved.batch_id))[0]
        assert cheque.amount == Decimal("390.00")
        assert approved.posting.deductions_applied == Decimal("150.00")
        advances = await fetch(session_factory, AdvanceCheque)
        assert {a.status for a in advances} == {"fully_deducted"}

    async def test_payment_absorbed_by_advances_issues_no_cheque(self, seed, manager, session_factory):
        grower = await seed.grower("G001")
        await seed.receipt(grower)
        await seed.advance(grower, "600")

        approved = await posted(manager)

        assert approved.posting.cheques_generated == 0
        assert any("fully absorbed" in w for w in approved.warnings)
        assert await count(session_factory, Cheque, Cheque.batch_id == approved.batch_id) == 0
        advance = (await fetch(session_factory, AdvanceCheque))[0]
        assert advance.outstanding_amount == Decimal("60.00")
        assert advance.status == "partially_deducted"

    async def test_consolidated_mode_leaves_payables_open(self, seed, manager, session_factory):
        await seed.receipt(await seed.grower("G001"))

        approved = await posted(manager, cheque_mode="consolidated")

        assert approved.posting.cheques_generated == 0
        rows = await fetch(session_factory, Account, Account.batch_id == approved.batch_id)
        assert [r.cheque_id for r in rows] == [None]


@pytest.mark.asyncio
class TestFinalizeAndRollback:
    async def test_finalize_closes_the_batch(self, seed, manager):
        await seed.receipt(await seed.grower("G001"))
        approved = await posted(manager)

        finalized = await manager.process_payments(approved.batch_id, actor=ACTOR)
        rollback = await manager.rollback_batch(
            approved.batch_id, reason="Wrong price", actor=ACTOR
        )

        assert finalized.status == "finalized"
        assert rollback.outcome == "not_run"
        assert (await manager.get_batch(approved.batch_id)).status == "finalized"

    async def test_finalize_requires_posted(self, seed, manager):
        await seed.receipt(await seed.grower("G001"))
        created = await draft(manager)

        result = await manager.process_payments(created.batch_id, actor=ACTOR)

        assert result.outcome == "not_run"

    async def test_rollback_draft(self, seed, manager):
        await seed.receipt(await seed.grower("G001"))
        created = await draft(manager)

        result = await manager.rollback_batch(created.batch_id, reason="Duplicate", actor=ACTOR)

        assert result.status == "voided"
        assert result.voiding is None
        batch = await manager.get_batch(created.batch_id)
        assert batch.void_reason == "Duplicate"

    async def test_rollback_posted_reverses_everything(self, seed, manager, session_factory):
        for number in ("G001", "G002", "G003", "G004", "G005"):
            grower = await seed.grower(number)
            await seed.receipt(grower)
        await seed.advance(grower, "100")
        approved = await posted(manager)

        result = await manager.rollback_batch(
            approved.batch_id, reason="Wrong price list", actor=ACTOR
        )

        assert result.outcome == "completed"
        assert result.voiding.cheques_voided == 5
        assert result.voiding.allocations_voided == 5
        assert result.voiding.deductions_reversed == 1
        assert await count(session_factory, Cheque, Cheque.status != "voided") == 0
        assert await count(
            session_factory, ReceiptPaymentAllocation, ReceiptPaymentAllocation.is_active
        ) == 0
        assert await count(
            session_factory, Account, Account.batch_id == approved.batch_id, Account.is_active
        ) == 0
        assert await count(session_factory, PriceScheduleLock, PriceScheduleLock.is_active) == 0
        advance = (await fetch(session_factory, AdvanceCheque))[0]
        assert advance.outstanding_amount == Decimal("100.00")

        # Receipts are payable again
        redo = await draft(manager)
        assert redo.success
        assert redo.batch_number == "ADV1-2025-002"

    async def test_rollback_requires_reason(self, seed, manager):
        await seed.receipt(await seed.grower("G001"))
        created = await draft(manager)

        result = await manager.rollback_batch(created.batch_id, reason="  ", actor=ACTOR)

        assert result.outcome == "not_run"
        assert (await manager.get_batch(created.batch_id)).status == "draft"

    async def test_unknown_batch(self, seed, manager):
        result = await manager.approve_batch("missing", actor=ACTOR)

        assert result.outcome == "not_run"
        assert "not found" in result.errors[0]

    async def test_lifecycle_is_audited(self, seed, manager, session_factory):
        await seed.receipt(await seed.grower("G001"))
        approved = await posted(manager)
        await manager.rollback_batch(approved.batch_id, reason="Re-run", actor=ACTOR)

        logs = await fetch(
            session_factory, PaymentAuditLog, PaymentAuditLog.entity_id == approved.batch_id
        )
        assert sorted(log.action for log in logs) == ["posted", "rolled_back"]


@pytest.mark.asyncio
class TestQueries:
    async def test_list_batches_by_status(self, seed, manager):
        await seed.receipt(await seed.grower("G001"))
        approved = await posted(manager)
        await draft(manager, 2)

        drafts = await manager.list_batches(crop_year=CROP_YEAR, status="draft")
        everything = await manager.list_batches()

        assert [b.batch_number for b in drafts] == ["ADV2-2025-001"]
        assert approved.batch_id in {b.id for b in everything}
