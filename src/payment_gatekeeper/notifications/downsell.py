"""Time-delayed downsell offers for unpaid transactions.

A downsell is scheduled when a transaction is created (pending offers) or
when it is cancelled or expires. Every precondition is re-checked when the
job runs; the usage counter is claimed with a single conditional update so
concurrent jobs can never push it past the cap.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from payment_gatekeeper.channels.base import ChannelClientError
from payment_gatekeeper.dispatch.dispatcher import DispatchJob, RetryPolicy, SkipJob
from payment_gatekeeper.notifications.formatter import NoticeFormatter
from payment_gatekeeper.statuses import OPEN_STATUSES, DownsellEvent
from payment_gatekeeper.storage.repos import (
    BotRepository,
    ContactRepository,
    DownsellRepository,
    TransactionRepository,
)
from payment_gatekeeper.transactions.models import (
    TransactionCreated,
    TransactionEvent,
    TransactionStatusChanged,
)

if TYPE_CHECKING:
    from payment_gatekeeper.channels.base import ChannelClient
    from payment_gatekeeper.dispatch.dispatcher import JobDispatcher
    from payment_gatekeeper.storage.database import SessionFactory
    from payment_gatekeeper.transactions.events import EventBus

logger = logging.getLogger(__name__)

DOWNSELL_JOB = "downsell.send"


class DownsellTrigger:
    """Schedules and sends downsell offers through the job dispatcher."""

    def __init__(
        self,
        session_factory: SessionFactory,
        client: ChannelClient,
        dispatcher: JobDispatcher,
        *,
        formatter: NoticeFormatter | None = None,
        policy: RetryPolicy | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the trigger.

        Args:
            session_factory: Factory for database sessions.
            client: Channel client sending the offer.
            dispatcher: Dispatcher running the offer jobs.
            formatter: Builder of offer texts.
            policy: Retry policy of offer jobs (time-sensitive by default).
            clock: Returns the current aware datetime.
        """
        self._session_factory = session_factory
        self._client = client
        self._dispatcher = dispatcher
        self._formatter = formatter or NoticeFormatter()
        self._policy = policy or RetryPolicy.time_sensitive()
        self._clock = clock or (lambda: datetime.now(UTC))

    def register(self, bus: EventBus | None = None) -> None:
        """Register the job handler and, with a bus, the scheduling hooks."""
        self._dispatcher.register(DOWNSELL_JOB, self.execute, policy=self._policy)
        if bus is not None:
            bus.subscribe(TransactionCreated, self.on_created)
            bus.subscribe(TransactionStatusChanged, self.on_status_changed)

    async def on_created(self, event: TransactionEvent) -> None:
        if event.new_status in OPEN_STATUSES:
            await self.schedule_for(event.transaction_id, DownsellEvent.PAYMENT_PENDING)

    async def on_status_changed(self, event: TransactionEvent) -> None:
        trigger = DownsellEvent.for_status(event.new_status)
        if trigger is not None:
            await self.schedule_for(event.transaction_id, trigger)

    async def schedule_for(
        self,
        transaction_id: int,
        trigger_event: DownsellEvent = DownsellEvent.PAYMENT_PENDING,
    ) -> DispatchJob | None:
        """Enqueue the first applicable downsell for a transaction.

        Pending offers are due ``trigger_after_minutes`` after the transaction
        was created; cancellation and expiry offers are due that long after
        now. Past-due offers are enqueued immediately.

        Returns:
            The enqueued job, or None if no downsell applies.
        """
        async with self._session_factory() as session:
            tx = await TransactionRepository(session).get(transaction_id)
            if tx is None:
                logger.warning("Cannot schedule downsell: transaction %d not found", transaction_id)
                return None
            downsell = await DownsellRepository(session).find_applicable(
                tx.bot_id, tx.payment_plan_id, trigger_event
            )

        if downsell is None:
            logger.debug(
                "No %s downsell for transaction %d", trigger_event.value, transaction_id
            )
            return None

        now = self._clock()
        base = tx.created_at if trigger_event is DownsellEvent.PAYMENT_PENDING else None
        due = (base or now) + timedelta(minutes=downsell.trigger_after_minutes)
        delay = max((due - now).total_seconds(), 0.0)

        job = DispatchJob(
            kind=DOWNSELL_JOB,
            payload={
                "downsell_id": downsell.id,
                "transaction_id": transaction_id,
                "trigger_event": trigger_event.value,
            },
            recipient_id=tx.contact_id,
        )
        self._dispatcher.enqueue(job, delay=delay or None)
        logger.info(
            "Downsell %s scheduled for transaction %d in %.0fs",
            downsell.id,
            transaction_id,
            delay,
        )
        return job

    async def execute(self, job: DispatchJob) -> None:
        """Dispatcher handler sending one downsell offer.

        Raises:
            SkipJob: If the offer no longer applies.
            ChannelClientError: If sending the offer fails.
        """
        downsell_id = int(job.payload["downsell_id"])
        transaction_id = int(job.payload["transaction_id"])
        trigger = DownsellEvent(job.payload.get("trigger_event", DownsellEvent.PAYMENT_PENDING))

        async with self._session_factory() as session:
            downsell = await DownsellRepository(session).get(downsell_id)
            tx = await TransactionRepository(session).get(transaction_id)
            bot = await BotRepository(session).get(tx.bot_id) if tx else None
            contact = await ContactRepository(session).get(tx.contact_id) if tx else None

        if downsell is None or tx is None:
            raise SkipJob(f"downsell {downsell_id} or transaction {transaction_id} is gone")
        if tx.status not in trigger.matching_statuses:
            raise SkipJob(f"transaction {transaction_id} is now {tx.status.value}")
        if bot is None or not bot.is_available:
            raise SkipJob(f"bot {tx.bot_id} is inactive")
        if contact is None or contact.is_blocked:
            raise SkipJob(f"contact {tx.contact_id} is blocked or gone")

        if not job.context.get("usage_claimed"):
            if not downsell.can_be_used:
                raise SkipJob(f"downsell {downsell_id} is inactive or at its cap")
            async with self._session_factory() as session:
                claimed = await DownsellRepository(session).claim_usage(downsell_id)
                if not claimed:
                    raise SkipJob(f"downsell {downsell_id} reached its cap")
                # A cancelled commit may still have landed; only a failed one is retried.
                job.context["usage_claimed"] = True
                try:
                    await session.commit()
                except Exception:
                    job.context.pop("usage_claimed", None)
                    raise

        if downsell.initial_media_url and not job.context.get("media_attempted"):
            job.context["media_attempted"] = True
            try:
                await self._client.send_media(bot, contact, downsell.initial_media_url)
            except ChannelClientError as e:
                logger.warning("Media of downsell %d not delivered: %s", downsell_id, e)

        if not job.context.get("message_sent"):
            await self._client.send_message(
                bot, contact, self._formatter.downsell_message(downsell, tx)
            )
            job.context["message_sent"] = True

        text, keyboard = self._formatter.downsell_offer(downsell, tx)
        await self._client.send_message(bot, contact, text, reply_markup=keyboard)
        logger.info(
            "Downsell %d sent to contact %s for transaction %d",
            downsell_id,
            contact.id,
            transaction_id,
        )
