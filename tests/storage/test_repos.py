"""Tests for the storage repositories."""

from datetime import date
from decimal import Decimal

import pytest

from payment_gatekeeper.statuses import AlertStatus, AlertType, DownsellEvent, TransactionStatus
from payment_gatekeeper.storage import (
    AlertRepository,
    ChannelRepository,
    ContactActionDTO,
    ContactActionRepository,
    ContactRepository,
    DownsellRepository,
    TransactionDTO,
    TransactionRepository,
    UnsavedRecordError,
    require_id,
)


class TestTransactionRepository:
    """Tests for TransactionRepository."""

    async def test_insert_and_get(self, seed, session_factory) -> None:
        """Test a stored transaction round-trips with aware timestamps."""
        bot = await seed.bot()
        contact = await seed.contact(bot.id)
        tx = await seed.transaction(bot.id, contact.id, metadata={"gateway": "pix"})

        async with session_factory() as session:
            stored = await TransactionRepository(session).get(tx.id, for_update=True)

        assert stored is not None
        assert stored.amount == Decimal("49.90")
        assert stored.status == TransactionStatus.PENDING
        assert stored.metadata == {"gateway": "pix"}
        assert stored.created_at is not None
        assert stored.created_at.tzinfo is not None

    async def test_update_status(self, seed, session_factory) -> None:
        """Test status updates report whether a row changed."""
        bot = await seed.bot()
        contact = await seed.contact(bot.id)
        tx = await seed.transaction(bot.id, contact.id)

        async with session_factory() as session:
            repo = TransactionRepository(session)
            assert await repo.update_status(tx.id, TransactionStatus.PAID)
            assert not await repo.update_status(404, TransactionStatus.PAID)
            await session.commit()

        async with session_factory() as session:
            stored = await TransactionRepository(session).get(tx.id)
        assert stored is not None
        assert stored.status == TransactionStatus.PAID


class TestContactRepository:
    """Tests for ContactRepository."""

    async def test_alert_recipients(self, seed, session_factory) -> None:
        """Test only reachable human contacts of the bot are returned."""
        bot = await seed.bot()
        other_bot = await seed.bot(name="Other")
        reachable = await seed.contact(bot.id)
        await seed.contact(bot.id, is_blocked=True)
        await seed.contact(bot.id, is_bot=True)
        await seed.contact(other_bot.id)

        async with session_factory() as session:
            recipients = await ContactRepository(session).get_alert_recipients(bot.id)

        assert [c.id for c in recipients] == [reachable.id]


class TestChannelRepository:
    """Tests for ChannelRepository."""

    async def test_plan_channels_first(self, seed, session_factory) -> None:
        """Test plan-bound channels precede unbound ones."""
        bot = await seed.bot()
        unbound = await seed.channel(bot.id, payment_plan_id=None, telegram_chat_id="-100111")
        bound = await seed.channel(bot.id, payment_plan_id=7, telegram_chat_id="-100222")
        await seed.channel(bot.id, payment_plan_id=8, telegram_chat_id="-100333")

        async with session_factory() as session:
            channels = await ChannelRepository(session).get_for_plan(bot.id, 7)

        assert [c.id for c in channels] == [bound.id, unbound.id]

    async def test_no_plan_matches_unbound_only(self, seed, session_factory) -> None:
        """Test transactions without a plan only see unbound channels."""
        bot = await seed.bot()
        unbound = await seed.channel(bot.id, payment_plan_id=None)
        await seed.channel(bot.id, payment_plan_id=7)

        async with session_factory() as session:
            channels = await ChannelRepository(session).get_for_plan(bot.id, None)

        assert [c.id for c in channels] == [unbound.id]

    async def test_cache_invite_link_keeps_first(self, seed, session_factory) -> None:
        """Test a cached link is never overwritten."""
        bot = await seed.bot()
        channel = await seed.channel(bot.id)

        async with session_factory() as session:
            repo = ChannelRepository(session)
            first = await repo.cache_invite_link(channel.id, "https://t.me/+first")
            second = await repo.cache_invite_link(channel.id, "https://t.me/+second")
            await session.commit()

        assert first == "https://t.me/+first"
        assert second == "https://t.me/+first"

    async def test_set_membership_upserts(self, seed, session_factory) -> None:
        """Test membership records are updated in place."""
        bot = await seed.bot()
        contact = await seed.contact(bot.id)
        channel = await seed.channel(bot.id)

        async with session_factory() as session:
            repo = ChannelRepository(session)
            await repo.set_membership(channel.id, contact.id, is_member=True, transaction_id=1)
            await repo.set_membership(channel.id, contact.id, is_member=False, transaction_id=2)
            await session.commit()

        async with session_factory() as session:
            membership = await ChannelRepository(session).get_membership(channel.id, contact.id)

        assert membership is not None
        assert not membership.is_member
        assert membership.transaction_id == 2


class TestAlertRepository:
    """Tests for AlertRepository."""

    async def test_claim_scheduled_once(self, seed, session_factory) -> None:
        """Test only the first claim of a scheduled alert succeeds."""
        bot = await seed.bot()
        alert = await seed.alert(
            bot.id, alert_type=AlertType.SCHEDULED, scheduled_date=date(2026, 1, 1)
        )

        async with session_factory() as session:
            repo = AlertRepository(session)
            assert await repo.claim_scheduled(alert.id)
            assert not await repo.claim_scheduled(alert.id)
            await session.commit()

        async with session_factory() as session:
            stored = await AlertRepository(session).get(alert.id)
        assert stored is not None
        assert stored.status == AlertStatus.SENT

    async def test_common_alert_cannot_be_claimed(self, seed, session_factory) -> None:
        """Test common alerts are never moved to sent."""
        bot = await seed.bot()
        alert = await seed.alert(bot.id)

        async with session_factory() as session:
            assert not await AlertRepository(session).claim_scheduled(alert.id)


class TestDownsellRepository:
    """Tests for DownsellRepository."""

    async def test_find_applicable_first_by_id(self, seed, session_factory) -> None:
        """Test the oldest matching offer wins."""
        bot = await seed.bot()
        first = await seed.downsell(bot.id)
        await seed.downsell(bot.id)

        async with session_factory() as session:
            found = await DownsellRepository(session).find_applicable(
                bot.id, 7, DownsellEvent.PAYMENT_PENDING
            )

        assert found is not None
        assert found.id == first.id

    async def test_null_plan_matches_only_null(self, seed, session_factory) -> None:
        """Test offers without a plan apply only to transactions without one."""
        bot = await seed.bot()
        await seed.downsell(bot.id, plan_id=None)

        async with session_factory() as session:
            repo = DownsellRepository(session)
            assert await repo.find_applicable(bot.id, 7, DownsellEvent.PAYMENT_PENDING) is None
            assert await repo.find_applicable(bot.id, None, DownsellEvent.PAYMENT_PENDING)

    async def test_claim_usage_respects_cap(self, seed, session_factory) -> None:
        """Test uses are counted up to the cap only."""
        bot = await seed.bot()
        downsell = await seed.downsell(bot.id, max_uses=2)

        async with session_factory() as session:
            repo = DownsellRepository(session)
            results = [await repo.claim_usage(downsell.id) for _ in range(3)]
            await session.commit()

        assert results == [True, True, False]


class TestContactActionRepository:
    """Tests for ContactActionRepository."""

    async def test_record_and_list(self, seed, session_factory) -> None:
        """Test audit entries are listed oldest first."""
        bot = await seed.bot()
        contact = await seed.contact(bot.id)

        async with session_factory() as session:
            repo = ContactActionRepository(session)
            for action in ("group_add", "group_remove"):
                await repo.record(
                    ContactActionDTO(
                        bot_id=bot.id,
                        contact_id=contact.id,
                        action=action,
                        description=f"{action} test",
                        metadata={"channel_id": 1},
                    )
                )
            await session.commit()

        async with session_factory() as session:
            actions = await ContactActionRepository(session).list_for_contact(contact.id)

        assert [a.action for a in actions] == ["group_add", "group_remove"]
        assert actions[0].metadata == {"channel_id": 1}
        assert actions[0].status == "success"


class TestRequireId:
    """Tests for require_id."""

    def test_stored_record(self) -> None:
        """Test a stored record yields its id."""
        tx = TransactionDTO(bot_id=1, contact_id=2, amount=Decimal("10.00"), id=7)
        assert require_id(tx) == 7

    def test_unsaved_record_raises(self) -> None:
        """Test a record without an id raises instead of passing None on."""
        tx = TransactionDTO(bot_id=1, contact_id=2, amount=Decimal("10.00"))
        with pytest.raises(UnsavedRecordError, match="TransactionDTO has no id"):
            require_id(tx)

    def test_error_is_value_error(self) -> None:
        """Test callers catching ValueError also catch unsaved records."""
        assert issubclass(UnsavedRecordError, ValueError)
