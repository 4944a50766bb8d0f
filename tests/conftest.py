"""Shared fixtures: a throwaway SQLite database and row seeding helpers."""

from __future__ import annotations

from collections.abc import AsyncIterator
from decimal import Decimal
from pathlib import Path
from typing import Any

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine

from payment_gatekeeper.statuses import TransactionStatus
from payment_gatekeeper.storage import (
    AlertDTO,
    AlertRepository,
    BotDTO,
    BotRepository,
    ChannelDTO,
    ChannelRepository,
    ContactDTO,
    ContactRepository,
    DownsellDTO,
    DownsellRepository,
    SessionFactory,
    TransactionDTO,
    TransactionRepository,
    create_engine,
    create_session_factory,
    init_db,
)

# ============================================================================
# Database
# ============================================================================


@pytest.fixture
async def engine(tmp_path: Path) -> AsyncIterator[AsyncEngine]:
    """Create a file-backed SQLite engine with the schema in place."""
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> SessionFactory:
    """Create a session factory bound to the test engine."""
    return create_session_factory(engine)


# ============================================================================
# Seeding
# ============================================================================


class Seeder:
    """Inserts rows in their own committed unit of work."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self.session_factory = session_factory
        self._telegram_ids = 1000

    async def bot(self, **overrides: Any) -> BotDTO:
        values: dict[str, Any] = {"name": "Main Bot", "token": "123:ABC"}
        values.update(overrides)
        async with self.session_factory() as session:
            bot = await BotRepository(session).insert(BotDTO(**values))
            await session.commit()
        return bot

    async def contact(self, bot_id: int, **overrides: Any) -> ContactDTO:
        self._telegram_ids += 1
        values: dict[str, Any] = {
            "bot_id": bot_id,
            "telegram_id": self._telegram_ids,
            "first_name": "Ana",
            "language": "pt",
        }
        values.update(overrides)
        async with self.session_factory() as session:
            contact = await ContactRepository(session).insert(ContactDTO(**values))
            await session.commit()
        return contact

    async def transaction(
        self,
        bot_id: int,
        contact_id: int,
        status: TransactionStatus = TransactionStatus.PENDING,
        **overrides: Any,
    ) -> TransactionDTO:
        values: dict[str, Any] = {
            "bot_id": bot_id,
            "contact_id": contact_id,
            "amount": Decimal("49.90"),
            "payment_plan_id": 7,
            "status": status,
        }
        values.update(overrides)
        async with self.session_factory() as session:
            tx = await TransactionRepository(session).insert(TransactionDTO(**values))
            await session.commit()
        return tx

    async def channel(self, bot_id: int, **overrides: Any) -> ChannelDTO:
        values: dict[str, Any] = {
            "bot_id": bot_id,
            "telegram_chat_id": "-1001234567890",
            "payment_plan_id": 7,
            "title": "VIP",
        }
        values.update(overrides)
        async with self.session_factory() as session:
            channel = await ChannelRepository(session).insert(ChannelDTO(**values))
            await session.commit()
        return channel

    async def alert(self, bot_id: int, **overrides: Any) -> AlertDTO:
        values: dict[str, Any] = {"bot_id": bot_id, "message": "Big news today!"}
        values.update(overrides)
        async with self.session_factory() as session:
            alert = await AlertRepository(session).insert(AlertDTO(**values))
            await session.commit()
        return alert

    async def downsell(self, bot_id: int, **overrides: Any) -> DownsellDTO:
        values: dict[str, Any] = {
            "bot_id": bot_id,
            "message": "Only {promotional_price} instead of {original_price}!",
            "promotional_value": Decimal("29.90"),
            "plan_id": 7,
            "plan_name": "VIP Monthly",
        }
        values.update(overrides)
        async with self.session_factory() as session:
            downsell = await DownsellRepository(session).insert(DownsellDTO(**values))
            await session.commit()
        return downsell


@pytest.fixture
def seed(session_factory: SessionFactory) -> Seeder:
    """Create a row seeder for the test database."""
    return Seeder(session_factory)
