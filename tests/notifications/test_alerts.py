"""Tests for the alert broadcaster."""

from datetime import UTC, date, datetime, time
from unittest.mock import AsyncMock
from zoneinfo import ZoneInfo

import pytest

from payment_gatekeeper.channels.base import ChannelClientError
from payment_gatekeeper.channels.dry_run import DryRunChannelClient
from payment_gatekeeper.dispatch.dispatcher import (
    DispatchJob,
    JobDispatcher,
    RetryPolicy,
    SkipJob,
)
from payment_gatekeeper.notifications.alerts import ALERT_JOB, AlertBroadcaster
from payment_gatekeeper.statuses import AlertStatus, AlertType
from payment_gatekeeper.storage import AlertRepository, SessionFactory

NOW = datetime(2026, 3, 10, 12, 30, tzinfo=UTC)

# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def client() -> DryRunChannelClient:
    """Create a recording channel client."""
    return DryRunChannelClient()


@pytest.fixture
def dispatcher() -> JobDispatcher:
    """Create a dispatcher with no retry delay."""
    return JobDispatcher(default_policy=RetryPolicy(backoff_seconds=0))


@pytest.fixture
def broadcaster(session_factory, client, dispatcher) -> AlertBroadcaster:
    """Create a broadcaster with a fixed clock."""
    broadcaster = AlertBroadcaster(session_factory, client, dispatcher, clock=lambda: NOW)
    broadcaster.register()
    return broadcaster


@pytest.fixture
async def bot(seed):
    """Seed a bot."""
    return await seed.bot()


async def load_alert(session_factory: SessionFactory, alert_id: int):
    async with session_factory() as session:
        return await AlertRepository(session).get(alert_id)


async def drain(dispatcher: JobDispatcher) -> None:
    await dispatcher.start(workers=1)
    await dispatcher.join()
    await dispatcher.stop()


def sent_texts(client: DryRunChannelClient) -> list[str]:
    return [details["text"] for method, details in client.calls if method == "send_message"]


# ============================================================================
# Selection
# ============================================================================


class TestRunOnce:
    """Tests for AlertBroadcaster.run_once."""

    async def test_common_alert_fans_out(
        self, broadcaster, dispatcher, client, seed, bot, session_factory
    ) -> None:
        """Test a common alert reaches every reachable contact."""
        await seed.contact(bot.id)
        await seed.contact(bot.id)
        await seed.contact(bot.id, is_blocked=True)
        await seed.contact(bot.id, is_bot=True)
        await seed.contact(bot.id, telegram_status="blocked")
        alert = await seed.alert(bot.id)

        summary = await broadcaster.run_once()

        assert summary.alerts_selected == 1
        assert summary.alerts_broadcast == 1
        assert summary.jobs_enqueued == 2
        await drain(dispatcher)
        assert sent_texts(client) == ["Big news today!", "Big news today!"]
        stored = await load_alert(session_factory, alert.id)
        assert stored.sent_count == 2
        assert stored.sent_at is not None
        assert stored.status == AlertStatus.ACTIVE

    async def test_common_alert_stays_eligible(self, broadcaster, seed, bot) -> None:
        """Test common alerts are selected again on the next tick."""
        await seed.contact(bot.id)
        await seed.alert(bot.id)

        first = await broadcaster.run_once()
        second = await broadcaster.run_once()

        assert first.jobs_enqueued == 1
        assert second.jobs_enqueued == 1

    async def test_language_filter(self, broadcaster, seed, bot) -> None:
        """Test alerts with a language reach only matching contacts."""
        await seed.contact(bot.id, language="pt")
        await seed.contact(bot.id, language="en")
        await seed.alert(bot.id, user_language="en")

        summary = await broadcaster.run_once()

        assert summary.jobs_enqueued == 1

    async def test_recipient_filter(self, session_factory, client, dispatcher, seed, bot) -> None:
        """Test the extra recipient predicate is applied."""
        keep = await seed.contact(bot.id, first_name="Keep")
        await seed.contact(bot.id, first_name="Drop")
        await seed.alert(bot.id)
        broadcaster = AlertBroadcaster(
            session_factory,
            client,
            dispatcher,
            clock=lambda: NOW,
            recipient_filter=lambda alert, contact: contact.first_name == "Keep",
        )
        broadcaster.register()
        enqueued: list[DispatchJob] = []
        dispatcher.enqueue = enqueued.append

        await broadcaster.run_once()

        assert [job.recipient_id for job in enqueued] == [keep.id]

    async def test_bot_filter(self, broadcaster, seed, bot) -> None:
        """Test a pass can be restricted to one bot."""
        other = await seed.bot(name="Other Bot")
        await seed.contact(bot.id)
        await seed.contact(other.id)
        await seed.alert(bot.id)
        await seed.alert(other.id)

        summary = await broadcaster.run_once(bot_id=other.id)

        assert summary.alerts_selected == 1

    async def test_no_recipients_keeps_scheduled_active(
        self, broadcaster, seed, bot, session_factory
    ) -> None:
        """Test a scheduled alert without recipients is not consumed."""
        alert = await seed.alert(
            bot.id, alert_type=AlertType.SCHEDULED, scheduled_date=date(2026, 3, 1)
        )

        summary = await broadcaster.run_once()

        assert summary.passes[0].skipped_reason == "no recipients"
        assert summary.alerts_broadcast == 0
        stored = await load_alert(session_factory, alert.id)
        assert stored.status == AlertStatus.ACTIVE

    async def test_enqueue_failure_is_counted(self, broadcaster, dispatcher, seed, bot) -> None:
        """Test a failing enqueue does not stop the other recipients."""
        await seed.contact(bot.id)
        await seed.contact(bot.id)
        await seed.alert(bot.id)
        original = dispatcher.enqueue
        calls = 0

        def flaky(job: DispatchJob, **kwargs) -> DispatchJob:
            nonlocal calls
            calls += 1
            if calls == 1:
                raise RuntimeError("queue closed")
            return original(job, **kwargs)

        dispatcher.enqueue = flaky

        summary = await broadcaster.run_once()

        assert summary.passes[0].enqueue_failures == 1
        assert summary.passes[0].enqueued == 1


class TestScheduledAlerts:
    """Tests for scheduled alert eligibility and claiming."""

    async def test_past_date_sent_once(self, broadcaster, seed, bot, session_factory) -> None:
        """Test a past-dated scheduled alert is sent and marked sent."""
        await seed.contact(bot.id)
        alert = await seed.alert(
            bot.id, alert_type=AlertType.SCHEDULED, scheduled_date=date(2026, 3, 9)
        )

        first = await broadcaster.run_once()
        second = await broadcaster.run_once()

        assert first.jobs_enqueued == 1
        assert second.alerts_selected == 0
        stored = await load_alert(session_factory, alert.id)
        assert stored.status == AlertStatus.SENT

    async def test_today_time_passed(self, broadcaster, seed, bot) -> None:
        """Test an alert due earlier today is selected."""
        await seed.contact(bot.id)
        await seed.alert(
            bot.id,
            alert_type=AlertType.SCHEDULED,
            scheduled_date=date(2026, 3, 10),
            scheduled_time=time(9, 0),
        )

        assert (await broadcaster.run_once()).alerts_selected == 1

    async def test_today_without_time(self, broadcaster, seed, bot) -> None:
        """Test an alert dated today without a time is due."""
        await seed.contact(bot.id)
        await seed.alert(bot.id, alert_type=AlertType.SCHEDULED, scheduled_date=date(2026, 3, 10))

        assert (await broadcaster.run_once()).alerts_selected == 1

    async def test_today_time_not_reached(self, broadcaster, seed, bot) -> None:
        """Test an alert due later today is not selected yet."""
        await seed.contact(bot.id)
        await seed.alert(
            bot.id,
            alert_type=AlertType.SCHEDULED,
            scheduled_date=date(2026, 3, 10),
            scheduled_time=time(18, 0),
        )

        assert (await broadcaster.run_once()).alerts_selected == 0

    async def test_past_date_time_not_reached(self, broadcaster, seed, bot) -> None:
        """Test the time of day is checked even when the date has passed."""
        await seed.contact(bot.id)
        await seed.alert(
            bot.id,
            alert_type=AlertType.SCHEDULED,
            scheduled_date=date(2026, 3, 9),
            scheduled_time=time(18, 0),
        )

        summary = await broadcaster.run_once()

        assert summary.alerts_selected == 0
        assert summary.jobs_enqueued == 0

    async def test_past_date_time_reached(self, broadcaster, seed, bot) -> None:
        """Test a past-dated alert is due once its time of day has passed."""
        await seed.contact(bot.id)
        await seed.alert(
            bot.id,
            alert_type=AlertType.SCHEDULED,
            scheduled_date=date(2026, 3, 9),
            scheduled_time=time(8, 0),
        )

        assert (await broadcaster.run_once()).alerts_selected == 1

    async def test_future_date(self, broadcaster, seed, bot) -> None:
        """Test a future-dated alert is not selected."""
        await seed.contact(bot.id)
        await seed.alert(bot.id, alert_type=AlertType.SCHEDULED, scheduled_date=date(2026, 3, 11))

        assert (await broadcaster.run_once()).alerts_selected == 0

    async def test_schedule_uses_configured_timezone(
        self, session_factory, client, dispatcher, seed, bot
    ) -> None:
        """Test due dates are evaluated in the configured zone."""
        await seed.contact(bot.id)
        await seed.alert(bot.id, alert_type=AlertType.SCHEDULED, scheduled_date=date(2026, 3, 10))
        # 02:00 UTC on the 10th is still the 9th in Sao Paulo
        broadcaster = AlertBroadcaster(
            session_factory,
            client,
            dispatcher,
            timezone=ZoneInfo("America/Sao_Paulo"),
            clock=lambda: datetime(2026, 3, 10, 2, 0, tzinfo=UTC),
        )

        assert (await broadcaster.run_once()).alerts_selected == 0

    async def test_claimed_alert_not_broadcast_twice(self, broadcaster, seed, bot) -> None:
        """Test an alert claimed by an overlapping tick is skipped."""
        await seed.contact(bot.id)
        alert = await seed.alert(
            bot.id, alert_type=AlertType.SCHEDULED, scheduled_date=date(2026, 3, 9)
        )

        first = await broadcaster._process_alert(alert)
        second = await broadcaster._process_alert(alert)

        assert first.enqueued == 1
        assert second.enqueued == 0
        assert second.skipped_reason == "already claimed"


# ============================================================================
# Delivery
# ============================================================================


class TestDeliver:
    """Tests for AlertBroadcaster.deliver."""

    async def test_sends_message_and_media(
        self, broadcaster, client, seed, bot, session_factory
    ) -> None:
        """Test the message and its media are sent and counted."""
        contact = await seed.contact(bot.id)
        alert = await seed.alert(bot.id, file_url="https://cdn.test/promo.jpg")
        job = DispatchJob(kind=ALERT_JOB, payload={"alert_id": alert.id}, recipient_id=contact.id)

        await broadcaster.deliver(job)

        assert [method for method, _ in client.calls] == ["send_message", "send_media"]
        assert (await load_alert(session_factory, alert.id)).sent_count == 1

    async def test_blocked_contact_skipped(self, broadcaster, seed, bot) -> None:
        """Test a contact blocked since enqueue is skipped."""
        contact = await seed.contact(bot.id, is_blocked=True)
        alert = await seed.alert(bot.id)
        job = DispatchJob(kind=ALERT_JOB, payload={"alert_id": alert.id}, recipient_id=contact.id)

        with pytest.raises(SkipJob):
            await broadcaster.deliver(job)

    async def test_inactive_bot_skipped(self, broadcaster, seed) -> None:
        """Test alerts of an inactive bot are skipped."""
        bot = await seed.bot(activated=False)
        contact = await seed.contact(bot.id)
        alert = await seed.alert(bot.id)
        job = DispatchJob(kind=ALERT_JOB, payload={"alert_id": alert.id}, recipient_id=contact.id)

        with pytest.raises(SkipJob):
            await broadcaster.deliver(job)

    async def test_missing_alert_skipped(self, broadcaster, seed, bot) -> None:
        """Test a deleted alert is skipped."""
        contact = await seed.contact(bot.id)
        job = DispatchJob(kind=ALERT_JOB, payload={"alert_id": 404}, recipient_id=contact.id)

        with pytest.raises(SkipJob):
            await broadcaster.deliver(job)

    async def test_media_failure_is_tolerated(
        self, session_factory, dispatcher, seed, bot
    ) -> None:
        """Test a failed attachment does not fail the delivery."""
        contact = await seed.contact(bot.id)
        alert = await seed.alert(bot.id, file_url="https://cdn.test/promo.jpg")
        client = AsyncMock()
        client.send_media.side_effect = ChannelClientError("file too big")
        broadcaster = AlertBroadcaster(session_factory, client, dispatcher, clock=lambda: NOW)
        job = DispatchJob(kind=ALERT_JOB, payload={"alert_id": alert.id}, recipient_id=contact.id)

        await broadcaster.deliver(job)

        client.send_message.assert_awaited_once()
        assert (await load_alert(session_factory, alert.id)).sent_count == 1

    async def test_retry_does_not_resend_message(
        self, session_factory, dispatcher, seed, bot
    ) -> None:
        """Test a retried job skips the steps it already completed."""
        contact = await seed.contact(bot.id)
        alert = await seed.alert(bot.id)
        client = AsyncMock()
        broadcaster = AlertBroadcaster(session_factory, client, dispatcher, clock=lambda: NOW)
        job = DispatchJob(kind=ALERT_JOB, payload={"alert_id": alert.id}, recipient_id=contact.id)

        await broadcaster.deliver(job)
        await broadcaster.deliver(job)

        client.send_message.assert_awaited_once()
        assert (await load_alert(session_factory, alert.id)).sent_count == 1
