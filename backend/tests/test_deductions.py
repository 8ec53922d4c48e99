"""Advance recovery tests: FIFO, manual deductions and restoration."""

from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import select

from conftest import ACTOR, count, fetch
from growerpay.exceptions import BusinessRuleError, DeductionExceedsBalanceError
from growerpay.models import Account, AdvanceCheque, AdvanceDeduction
from growerpay.services.advances import list_outstanding_advances
from growerpay.services.deductions import DeductionEngine

TODAY = date(2025, 9, 30)


async def reload(db, advance: AdvanceCheque) -> AdvanceCheque:
    return (await db.execute(
        select(AdvanceCheque)
        .where(AdvanceCheque.id == advance.id)
        .execution_options(populate_existing=True)
    )).scalar_one()


@pytest.mark.asyncio
class TestFifoDeductions:
    async def test_oldest_advance_is_consumed_first(self, seed, db, session_factory):
        """$100 (older) and $50 (newer) against a $120 payment."""
        grower = await seed.grower("G001")
        older = await seed.advance(grower, "100", date(2025, 5, 1))
        newer = await seed.advance(grower, "50", date(2025, 6, 1))

        result = await DeductionEngine(db).apply_deductions(
            grower.id, Decimal("120"), actor=ACTOR, deduction_date=TODAY
        )
        await db.commit()

        assert [(d.advance_cheque_id, d.amount) for d in result.deductions] == [
            (older.id, Decimal("100.00")),
            (newer.id, Decimal("20.00")),
        ]
        assert result.net_amount == Decimal("0.00")
        older_now, newer_now = await reload(db, older), await reload(db, newer)
        assert older_now.outstanding_amount == Decimal("0.00")
        assert older_now.status == "fully_deducted"
        assert newer_now.outstanding_amount == Decimal("30.00")
        assert newer_now.status == "partially_deducted"

    async def test_payment_larger_than_advances_leaves_net(self, seed, db):
        grower = await seed.grower("G001")
        await seed.advance(grower, "100")

        result = await DeductionEngine(db).apply_deductions(
            grower.id, Decimal("540"), actor=ACTOR, deduction_date=TODAY
        )

        assert result.total_deducted == Decimal("100.00")
        assert result.net_amount == Decimal("440.00")

    async def test_each_deduction_writes_a_negative_ledger_row(self, seed, db, session_factory):
        grower = await seed.grower("G001")
        await seed.advance(grower, "100")

        result = await DeductionEngine(db).apply_deductions(
            grower.id, Decimal("60"), actor=ACTOR, deduction_date=TODAY
        )
        await db.commit()

        rows = await fetch(
            session_factory, Account,
            Account.advance_deduction_id == result.deductions[0].deduction_id,
        )
        assert len(rows) == 1
        assert rows[0].entry_type == "deduction"
        assert rows[0].amount == Decimal("-60.00")

    async def test_other_growers_advances_untouched(self, seed, db):
        grower = await seed.grower("G001")
        other = await seed.grower("G002")
        await seed.advance(other, "100")

        result = await DeductionEngine(db).apply_deductions(
            grower.id, Decimal("50"), actor=ACTOR, deduction_date=TODAY
        )

        assert result.deductions == []
        assert result.net_amount == Decimal("50.00")

    async def test_preview_writes_nothing(self, seed, db, session_factory):
        grower = await seed.grower("G001")
        advance = await seed.advance(grower, "100")

        preview = await DeductionEngine(db).preview_deductions(grower.id, Decimal("30"))
        await db.commit()

        assert preview.total_deducted == Decimal("30.00")
        assert await count(session_factory, AdvanceDeduction) == 0
        assert (await reload(db, advance)).outstanding_amount == Decimal("100.00")


@pytest.mark.asyncio
class TestManualDeductions:
    async def test_manual_deduction_bypasses_fifo(self, seed, db):
        grower = await seed.grower("G001")
        await seed.advance(grower, "100", date(2025, 5, 1))
        newer = await seed.advance(grower, "50", date(2025, 6, 1))

        deduction = await DeductionEngine(db).apply_manual_deduction(
            newer.id, Decimal("50"), actor=ACTOR, deduction_date=TODAY
        )

        assert deduction.transaction_type == "manual"
        assert (await reload(db, newer)).status == "fully_deducted"

    async def test_amount_above_outstanding_is_rejected(self, seed, db):
        grower = await seed.grower("G001")
        advance = await seed.advance(grower, "100")

        with pytest.raises(DeductionExceedsBalanceError):
            await DeductionEngine(db).apply_manual_deduction(
                advance.id, Decimal("100.01"), actor=ACTOR, deduction_date=TODAY
            )

    async def test_fully_deducted_advance_rejects_manual_deduction(self, seed, db):
        grower = await seed.grower("G001")
        advance = await seed.advance(grower, "100")
        engine = DeductionEngine(db)
        await engine.apply_manual_deduction(
            advance.id, Decimal("100"), actor=ACTOR, deduction_date=TODAY
        )

        with pytest.raises(BusinessRuleError):
            await engine.apply_manual_deduction(
                advance.id, Decimal("1"), actor=ACTOR, deduction_date=TODAY
            )


@pytest.mark.asyncio
class TestRestoreDeduction:
    async def test_restore_gives_balance_back(self, seed, db):
        grower = await seed.grower("G001")
        advance = await seed.advance(grower, "100")
        engine = DeductionEngine(db)
        deduction = await engine.apply_manual_deduction(
            advance.id, Decimal("100"), actor=ACTOR, deduction_date=TODAY
        )

        restored = await engine.restore_deduction(deduction, actor=ACTOR, reason="Keyed twice")
        again = await engine.restore_deduction(deduction, actor=ACTOR, reason="Keyed twice")

        advance_now = await reload(db, advance)
        assert restored == Decimal("100.00")
        assert again == Decimal("0.00")
        assert advance_now.outstanding_amount == Decimal("100.00")
        assert advance_now.status == "active"
        assert not deduction.is_active

    async def test_outstanding_list_excludes_recovered(self, seed, db):
        grower = await seed.grower("G001")
        first = await seed.advance(grower, "100", date(2025, 5, 1))
        second = await seed.advance(grower, "50", date(2025, 6, 1))
        await DeductionEngine(db).apply_manual_deduction(
            first.id, Decimal("100"), actor=ACTOR, deduction_date=TODAY
        )

        outstanding = await list_outstanding_advances(db, grower.id)

        assert [a.id for a in outstanding] == [second.id]
