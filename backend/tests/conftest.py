"""Pytest configuration and fixtures for growerpay tests.

Every test gets a fresh SQLite database (aiosqlite) with the full schema,
a packhouse seeded with cheque series and a blueberry price schedule,
and a `seed` helper for growers, receipts and advance cheques.
"""

import os

os.environ.setdefault("GROWERPAY_DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from datetime import date, datetime, time  # noqa: E402
from decimal import Decimal  # noqa: E402
from typing import AsyncGenerator  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy import func, select  # noqa: E402
from sqlalchemy.ext.asyncio import (  # noqa: E402
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from growerpay.database import create_schema  # noqa: E402
from growerpay.models import (  # noqa: E402
    AdvanceCheque,
    ChequeSeries,
    Grower,
    PriceDetail,
    PriceSchedule,
    Receipt,
)
from growerpay.services.advances import issue_advance_cheque  # noqa: E402

CROP_YEAR = 2025
PAYMENT_DATE = date(2025, 9, 30)
CUTOFF_DATE = date(2025, 9, 15)
ACTOR = "clerk@packhouse"

# Cumulative price per lb by tier (0 = final)
BLUEBERRY_PRICES = {1: "0.50", 2: "0.70", 3: "0.80", 0: "1.00"}


# ── Database ─────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def engine(tmp_path):
    """Fresh database file per test."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'growerpay.db'}")
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine) -> async_sessionmaker:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """A session for direct service calls and assertions."""
    async with session_factory() as session:
        yield session


# ── Seed data ────────────────────────────────────────────────────

class Seeder:
    """Writes master data in its own committed sessions."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory
        self._receipt_seq = 0

    async def _save(self, *objects):
        async with self.session_factory() as session:
            for obj in objects:
                session.add(obj)
                await session.flush()
            await session.commit()
        return objects[0] if len(objects) == 1 else objects

    async def packhouse(self) -> PriceSchedule:
        await self._save(
            ChequeSeries(series_code="C", currency="CAD", next_number=1001),
            ChequeSeries(series_code="U", currency="USD", next_number=5001),
        )
        return await self.price_schedule("BLUE", "FRESH", BLUEBERRY_PRICES)

    async def price_schedule(
        self, product: str, process: str, prices: dict[int, str], **kwargs
    ) -> PriceSchedule:
        schedule = PriceSchedule(
            product=product,
            process=process,
            effective_from=kwargs.pop("effective_from", date(2025, 1, 1)),
            time_premium_enabled=kwargs.pop("time_premium_enabled", True),
            premium_cutoff=kwargs.pop("premium_cutoff", time(10, 0)),
            premium_per_lb=kwargs.pop("premium_per_lb", {"CAD": "0.05", "USD": "0.04"}),
            marketing_rate=kwargs.pop("marketing_rate", Decimal("0.01")),
            **kwargs,
        )
        await self._save(schedule)
        for tier, price in prices.items():
            await self.price(schedule.id, tier, price)
        return schedule

    async def price(self, schedule_id: str, tier: int, price: str, **kwargs) -> PriceDetail:
        return await self._save(PriceDetail(
            schedule_id=schedule_id,
            tier=tier,
            price_per_lb=Decimal(price),
            price_level=kwargs.get("price_level", 1),
            grade=kwargs.get("grade"),
        ))

    async def set_price(self, schedule_id: str, tier: int, price: str) -> None:
        async with self.session_factory() as session:
            detail = (await session.execute(
                select(PriceDetail).where(
                    PriceDetail.schedule_id == schedule_id, PriceDetail.tier == tier
                )
            )).scalar_one()
            detail.price_per_lb = Decimal(price)
            await session.commit()

    async def grower(self, number: str, **kwargs) -> Grower:
        return await self._save(Grower(
            grower_number=number,
            name=kwargs.pop("name", f"Grower {number}"),
            currency=kwargs.pop("currency", "CAD"),
            pay_group=kwargs.pop("pay_group", "REG"),
            **kwargs,
        ))

    async def receipt(
        self,
        grower: Grower,
        net_weight: str = "1000",
        *,
        received: datetime = datetime(2025, 7, 10, 8, 30),
        product: str = "BLUE",
        process: str = "FRESH",
        **kwargs,
    ) -> Receipt:
        self._receipt_seq += 1
        return await self._save(Receipt(
            receipt_number=kwargs.pop("receipt_number", f"R{self._receipt_seq:05d}"),
            grower_id=grower.id,
            product=product,
            process=process,
            crop_year=kwargs.pop("crop_year", CROP_YEAR),
            receipt_date=received.date(),
            received_at=received,
            net_weight=Decimal(net_weight),
            **kwargs,
        ))

    async def advance(
        self, grower: Grower, amount: str, advance_date: date = date(2025, 6, 1)
    ) -> AdvanceCheque:
        async with self.session_factory() as session:
            advance = await issue_advance_cheque(
                session,
                grower_id=grower.id,
                amount=Decimal(amount),
                actor=ACTOR,
                advance_date=advance_date,
                reason="Early season advance",
            )
            await session.commit()
        return advance


@pytest_asyncio.fixture
async def seed(session_factory) -> Seeder:
    seeder = Seeder(session_factory)
    seeder.schedule = await seeder.packhouse()
    return seeder


# ── Helpers ──────────────────────────────────────────────────────

async def count(session_factory, model, *criteria) -> int:
    async with session_factory() as session:
        return (await session.execute(
            select(func.count()).select_from(model).where(*criteria)
        )).scalar_one()


async def fetch(session_factory, model, *criteria) -> list:
    async with session_factory() as session:
        return list((await session.execute(select(model).where(*criteria))).scalars().all())


# ── Test Markers ─────────────────────────────────────────────────

def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
