"""Broadcast alert scheduling and delivery.

Each tick selects the alerts that are due, resolves their recipients and
enqueues one delivery job per recipient. Scheduled alerts are claimed with a
single conditional update before their jobs are enqueued, so two overlapping
ticks can never both broadcast the same scheduled alert. Common alerts are
recurring and stay eligible on every tick.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, tzinfo
from typing import TYPE_CHECKING

from payment_gatekeeper.channels.base import ChannelClientError
from payment_gatekeeper.dispatch.dispatcher import DispatchJob, RetryPolicy, SkipJob
from payment_gatekeeper.statuses import AlertType
from payment_gatekeeper.storage.repos import (
    AlertDTO,
    AlertRepository,
    BotRepository,
    ContactDTO,
    ContactRepository,
    require_id,
)

if TYPE_CHECKING:
    from payment_gatekeeper.channels.base import ChannelClient
    from payment_gatekeeper.dispatch.dispatcher import JobDispatcher
    from payment_gatekeeper.storage.database import SessionFactory

logger = logging.getLogger(__name__)

ALERT_JOB = "alert.deliver"

RecipientFilter = Callable[[AlertDTO, ContactDTO], bool]


def accept_all(alert: AlertDTO, contact: ContactDTO) -> bool:
    """Default recipient filter."""
    return True


@dataclass
class AlertPass:
    """What one tick did with one alert."""

    alert_id: int
    recipients: int = 0
    enqueued: int = 0
    enqueue_failures: int = 0
    skipped_reason: str | None = None


@dataclass
class BroadcastSummary:
    """Result of one broadcaster tick."""

    alerts_selected: int = 0
    alerts_broadcast: int = 0
    alerts_failed: int = 0
    passes: list[AlertPass] = field(default_factory=list)

    @property
    def jobs_enqueued(self) -> int:
        """Return the number of delivery jobs enqueued."""
        return sum(p.enqueued for p in self.passes)


class AlertBroadcaster:
    """Selects due alerts and fans them out through the job dispatcher.

    Example:
        ```python
        broadcaster = AlertBroadcaster(session_factory, client, dispatcher)
        broadcaster.register()
        summary = await broadcaster.run_once()
        ```
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        client: ChannelClient,
        dispatcher: JobDispatcher,
        *,
        timezone: tzinfo = UTC,
        recipient_filter: RecipientFilter = accept_all,
        policy: RetryPolicy | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the broadcaster.

        Args:
            session_factory: Factory for database sessions.
            client: Channel client used by the delivery jobs.
            dispatcher: Dispatcher receiving the delivery jobs.
            timezone: Zone in which scheduled dates and times are expressed.
            recipient_filter: Extra predicate applied to every recipient.
            policy: Retry policy of delivery jobs.
            clock: Returns the current aware datetime.
        """
        self._session_factory = session_factory
        self._client = client
        self._dispatcher = dispatcher
        self._tz = timezone
        self._recipient_filter = recipient_filter
        self._policy = policy
        self._clock = clock or (lambda: datetime.now(UTC))

    def register(self) -> None:
        """Register the delivery handler with the dispatcher."""
        self._dispatcher.register(ALERT_JOB, self.deliver, policy=self._policy)

    async def run_once(self, bot_id: int | None = None) -> BroadcastSummary:
        """Run one selection pass.

        Args:
            bot_id: Restrict the pass to one bot.

        Returns:
            BroadcastSummary of the pass.
        """
        now = self._clock().astimezone(self._tz)
        async with self._session_factory() as session:
            alerts = await AlertRepository(session).get_eligible(
                now.date(), now.time().replace(tzinfo=None), bot_id
            )

        summary = BroadcastSummary(alerts_selected=len(alerts))
        for alert in alerts:
            try:
                result = await self._process_alert(alert)
            except Exception as e:
                summary.alerts_failed += 1
                logger.exception("Failed to process alert %s: %s", alert.id, e)
                continue
            summary.passes.append(result)
            if result.enqueued:
                summary.alerts_broadcast += 1

        if alerts:
            logger.info(
                "Alert tick: %d selected, %d broadcast, %d jobs enqueued, %d failed",
                summary.alerts_selected,
                summary.alerts_broadcast,
                summary.jobs_enqueued,
                summary.alerts_failed,
            )
        return summary

    async def _process_alert(self, alert: AlertDTO) -> AlertPass:
        alert_id = require_id(alert)
        result = AlertPass(alert_id=alert_id)

        async with self._session_factory() as session:
            candidates = await ContactRepository(session).get_alert_recipients(
                alert.bot_id, alert.user_language
            )
        recipients = [c for c in candidates if self._recipient_filter(alert, c)]
        result.recipients = len(recipients)

        if not recipients:
            result.skipped_reason = "no recipients"
            logger.info("Alert %d has no recipients, leaving it active", alert_id)
            return result

        if alert.alert_type is AlertType.SCHEDULED:
            async with self._session_factory() as session:
                claimed = await AlertRepository(session).claim_scheduled(alert_id)
                await session.commit()
            if not claimed:
                result.skipped_reason = "already claimed"
                logger.info("Scheduled alert %d was claimed by another tick", alert_id)
                return result

        for contact in recipients:
            try:
                self._dispatcher.enqueue(
                    DispatchJob(
                        kind=ALERT_JOB,
                        payload={"alert_id": alert_id},
                        recipient_id=contact.id,
                    )
                )
                result.enqueued += 1
            except Exception as e:
                result.enqueue_failures += 1
                logger.error(
                    "Failed to enqueue alert %d for contact %s: %s", alert_id, contact.id, e
                )

        logger.info("Alert %d enqueued for %d recipients", alert_id, result.enqueued)
        return result

    async def deliver(self, job: DispatchJob) -> None:
        """Dispatcher handler delivering one alert to one recipient.

        Raises:
            SkipJob: If the alert, bot or recipient can no longer receive it.
            ChannelClientError: If sending the message fails.
        """
        alert_id = int(job.payload["alert_id"])
        async with self._session_factory() as session:
            alert = await AlertRepository(session).get(alert_id)
            contact = (
                await ContactRepository(session).get(job.recipient_id)
                if job.recipient_id is not None
                else None
            )
            bot = await BotRepository(session).get(alert.bot_id) if alert else None

        if alert is None:
            raise SkipJob(f"alert {alert_id} no longer exists")
        if bot is None or not bot.is_available:
            raise SkipJob(f"bot {alert.bot_id} is inactive")
        if contact is None or contact.is_blocked:
            raise SkipJob(f"contact {job.recipient_id} is blocked or gone")

        if not job.context.get("message_sent"):
            await self._client.send_message(bot, contact, alert.message)
            job.context["message_sent"] = True

        if alert.file_url and not job.context.get("media_attempted"):
            job.context["media_attempted"] = True
            try:
                await self._client.send_media(bot, contact, alert.file_url)
            except ChannelClientError as e:
                logger.warning("Media of alert %d not delivered to %s: %s", alert_id, contact.id, e)

        if not job.context.get("delivery_counted"):
            async with self._session_factory() as session:
                await AlertRepository(session).record_delivery(alert_id)
                await session.commit()
            job.context["delivery_counted"] = True
