"""Channel access reconciliation driven by transaction events.

The reconciler is the only writer of recorded channel memberships. Every
reconciliation re-reads the transaction and the recorded membership before
acting, so redelivered or stale events are harmless.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from prometheus_client import Counter

from payment_gatekeeper.channels.base import ChannelClientError
from payment_gatekeeper.dispatch.dispatcher import DispatchJob
from payment_gatekeeper.notifications.formatter import NoticeFormatter
from payment_gatekeeper.storage.repos import (
    BotRepository,
    ChannelRepository,
    ContactActionDTO,
    ContactActionRepository,
    ContactRepository,
    TransactionRepository,
    require_id,
)
from payment_gatekeeper.transactions.models import (
    TransactionEvent,
    TransactionGranted,
    TransactionRevoked,
)

if TYPE_CHECKING:
    from payment_gatekeeper.channels.base import ChannelClient, MembershipChange
    from payment_gatekeeper.dispatch.dispatcher import JobDispatcher
    from payment_gatekeeper.storage.database import SessionFactory
    from payment_gatekeeper.storage.repos import (
        BotDTO,
        ChannelDTO,
        ContactDTO,
        TransactionDTO,
    )
    from payment_gatekeeper.transactions.events import EventBus

logger = logging.getLogger(__name__)

GRANT_JOB = "access.grant"
REVOKE_JOB = "access.revoke"

ACTION_GROUP_ADD = "group_add"
ACTION_GROUP_REMOVE = "group_remove"

RECONCILIATIONS_TOTAL = Counter(
    "gatekeeper_reconciliations_total",
    "Total number of access reconciliations by outcome",
    ["action", "outcome"],
)


class ReconciliationOutcome(str, Enum):
    """Result of reconciling one transaction (or one of its channels)."""

    GRANTED = "granted"
    REVOKED = "revoked"
    ALREADY_MEMBER = "already_member"
    NOT_MEMBER = "not_member"
    STALE = "stale"
    NO_CHANNEL = "no_channel"
    MISSING_RECIPIENT = "missing_recipient"


@dataclass
class ChannelReconciliation:
    """Outcome for a single gated channel."""

    channel_id: int
    outcome: ReconciliationOutcome
    invite_link: str | None = None


@dataclass
class ReconciliationResult:
    """Outcome of a grant or revoke request."""

    transaction_id: int
    outcome: ReconciliationOutcome
    channels: list[ChannelReconciliation] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        """Return True if any membership was changed."""
        return self.outcome in (ReconciliationOutcome.GRANTED, ReconciliationOutcome.REVOKED)


class AccessReconciler:
    """Grants and revokes gated-channel access for transactions.

    Remote failures raise ChannelClientError to the caller; when wired
    through the job dispatcher the job's retry policy governs retries.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        client: ChannelClient,
        *,
        formatter: NoticeFormatter | None = None,
        send_notices: bool = True,
    ) -> None:
        """Initialize the reconciler.

        Args:
            session_factory: Factory for database sessions.
            client: Channel client acting on the messaging platform.
            formatter: Builder of welcome and removal notices.
            send_notices: Message the contact after a membership change.
        """
        self._session_factory = session_factory
        self._client = client
        self._formatter = formatter or NoticeFormatter()
        self._send_notices = send_notices

    def register(self, bus: EventBus, dispatcher: JobDispatcher | None = None) -> None:
        """Subscribe to grant and revoke events.

        With a dispatcher, events are turned into queued jobs; without one,
        reconciliation runs inside ``publish``.
        """
        if dispatcher is None:
            bus.subscribe(TransactionGranted, self.on_granted)
            bus.subscribe(TransactionRevoked, self.on_revoked)
            return

        dispatcher.register(GRANT_JOB, self.run_job)
        dispatcher.register(REVOKE_JOB, self.run_job)

        async def enqueue_grant(event: TransactionGranted) -> None:
            dispatcher.enqueue(self._job_for(GRANT_JOB, event))

        async def enqueue_revoke(event: TransactionRevoked) -> None:
            dispatcher.enqueue(self._job_for(REVOKE_JOB, event))

        bus.subscribe(TransactionGranted, enqueue_grant)
        bus.subscribe(TransactionRevoked, enqueue_revoke)

    @staticmethod
    def _job_for(kind: str, event: TransactionEvent) -> DispatchJob:
        return DispatchJob(
            kind=kind,
            payload={"transaction_id": event.transaction_id},
            recipient_id=event.contact_id,
        )

    async def run_job(self, job: DispatchJob) -> None:
        """Dispatcher handler for queued grant and revoke jobs."""
        transaction_id = int(job.payload["transaction_id"])
        if job.kind == REVOKE_JOB:
            await self.revoke(transaction_id)
        else:
            await self.grant(transaction_id)

    async def on_granted(self, event: TransactionEvent) -> ReconciliationResult:
        """Handle a grant event."""
        return await self.grant(event.transaction_id)

    async def on_revoked(self, event: TransactionEvent) -> ReconciliationResult:
        """Handle a revoke event."""
        return await self.revoke(event.transaction_id)

    async def grant(self, transaction_id: int) -> ReconciliationResult:
        """Ensure the transaction's contact is a member of its gated channels.

        Raises:
            ChannelClientError: If the channel client fails.
        """
        return await self._reconcile(transaction_id, grant=True)

    async def revoke(self, transaction_id: int) -> ReconciliationResult:
        """Ensure the transaction's contact is no longer a member.

        Raises:
            ChannelClientError: If the channel client fails.
        """
        return await self._reconcile(transaction_id, grant=False)

    async def _reconcile(self, transaction_id: int, *, grant: bool) -> ReconciliationResult:
        action = "grant" if grant else "revoke"

        async with self._session_factory() as session:
            tx = await TransactionRepository(session).get(transaction_id)
            if tx is None or not (tx.status.is_granted if grant else tx.status.is_revoked):
                logger.info(
                    "Skipping %s for transaction %d: current status %s",
                    action,
                    transaction_id,
                    tx.status.value if tx else "missing",
                )
                return self._finish(action, transaction_id, ReconciliationOutcome.STALE)

            bot = await BotRepository(session).get(tx.bot_id)
            contact = await ContactRepository(session).get(tx.contact_id)
            channels = await ChannelRepository(session).get_for_plan(tx.bot_id, tx.payment_plan_id)

        if bot is None or contact is None:
            logger.warning("Transaction %d has no bot or contact to reconcile", transaction_id)
            return self._finish(
                action, transaction_id, ReconciliationOutcome.MISSING_RECIPIENT
            )
        if not channels:
            logger.info("No gated channel for transaction %d", transaction_id)
            return self._finish(action, transaction_id, ReconciliationOutcome.NO_CHANNEL)

        results = []
        for channel in channels:
            if grant:
                results.append(await self._grant_channel(tx, bot, contact, channel))
            else:
                results.append(await self._revoke_channel(tx, bot, contact, channel))

        changed = ReconciliationOutcome.GRANTED if grant else ReconciliationOutcome.REVOKED
        unchanged = (
            ReconciliationOutcome.ALREADY_MEMBER if grant else ReconciliationOutcome.NOT_MEMBER
        )
        outcome = changed if any(r.outcome is changed for r in results) else unchanged
        return self._finish(action, transaction_id, outcome, results)

    @staticmethod
    def _finish(
        action: str,
        transaction_id: int,
        outcome: ReconciliationOutcome,
        channels: list[ChannelReconciliation] | None = None,
    ) -> ReconciliationResult:
        RECONCILIATIONS_TOTAL.labels(action=action, outcome=outcome.value).inc()
        return ReconciliationResult(
            transaction_id=transaction_id, outcome=outcome, channels=channels or []
        )

    async def _grant_channel(
        self, tx: TransactionDTO, bot: BotDTO, contact: ContactDTO, channel: ChannelDTO
    ) -> ChannelReconciliation:
        channel_id, contact_id = require_id(channel), require_id(contact)
        async with self._session_factory() as session:
            membership = await ChannelRepository(session).get_membership(channel_id, contact_id)
        if membership is not None and membership.is_member:
            return ChannelReconciliation(channel_id, ReconciliationOutcome.ALREADY_MEMBER)

        invite_link = channel.invite_link or await self._mint_invite_link(bot, channel)
        try:
            change = await self._client.add_member(bot, channel, contact)
        except ChannelClientError as e:
            await self._audit_failure(tx, channel, ACTION_GROUP_ADD, e)
            raise

        await self._record(
            tx, channel, is_member=True, action=ACTION_GROUP_ADD, change=change
        )
        logger.info(
            "Contact %d granted access to channel %d (transaction %s)",
            contact_id,
            channel_id,
            tx.id,
        )
        if change.changed:
            await self._notify(
                bot, contact, self._formatter.member_added(contact, tx, invite_link)
            )
        outcome = (
            ReconciliationOutcome.GRANTED
            if change.changed
            else ReconciliationOutcome.ALREADY_MEMBER
        )
        return ChannelReconciliation(channel_id, outcome, invite_link)

    async def _revoke_channel(
        self, tx: TransactionDTO, bot: BotDTO, contact: ContactDTO, channel: ChannelDTO
    ) -> ChannelReconciliation:
        channel_id, contact_id = require_id(channel), require_id(contact)
        async with self._session_factory() as session:
            membership = await ChannelRepository(session).get_membership(channel_id, contact_id)
        if membership is None or not membership.is_member:
            return ChannelReconciliation(channel_id, ReconciliationOutcome.NOT_MEMBER)

        try:
            change = await self._client.remove_member(bot, channel, contact)
        except ChannelClientError as e:
            await self._audit_failure(tx, channel, ACTION_GROUP_REMOVE, e)
            raise

        await self._record(
            tx, channel, is_member=False, action=ACTION_GROUP_REMOVE, change=change
        )
        logger.info(
            "Contact %d removed from channel %d (transaction %s)", contact_id, channel_id, tx.id
        )
        if change.changed:
            await self._notify(bot, contact, self._formatter.member_removed(contact, tx))
        outcome = (
            ReconciliationOutcome.REVOKED if change.changed else ReconciliationOutcome.NOT_MEMBER
        )
        return ChannelReconciliation(channel_id, outcome)

    async def _mint_invite_link(self, bot: BotDTO, channel: ChannelDTO) -> str | None:
        """Export an invite link and cache it on the channel."""
        channel_id = require_id(channel)
        link = await self._client.export_invite_link(bot, channel)
        if not link:
            logger.warning("No invite link available for channel %d", channel_id)
            return None
        async with self._session_factory() as session:
            stored = await ChannelRepository(session).cache_invite_link(channel_id, link)
            await session.commit()
        return stored

    async def _record(
        self,
        tx: TransactionDTO,
        channel: ChannelDTO,
        *,
        is_member: bool,
        action: str,
        change: MembershipChange,
    ) -> None:
        channel_id = require_id(channel)
        verb = "added to" if is_member else "removed from"
        target = channel.title or channel.telegram_chat_id
        async with self._session_factory() as session:
            await ChannelRepository(session).set_membership(
                channel_id, tx.contact_id, is_member=is_member, transaction_id=tx.id
            )
            await ContactActionRepository(session).record(
                ContactActionDTO(
                    bot_id=tx.bot_id,
                    contact_id=tx.contact_id,
                    transaction_id=tx.id,
                    action=action,
                    description=f"Contact {verb} channel {target}",
                    metadata={
                        "channel_id": channel_id,
                        "telegram_chat_id": channel.telegram_chat_id,
                        "transaction_status": tx.status.value,
                        "remote_changed": change.changed,
                        "remote_detail": change.detail,
                    },
                )
            )
            await session.commit()

    async def _audit_failure(
        self, tx: TransactionDTO, channel: ChannelDTO, action: str, error: Exception
    ) -> None:
        logger.warning(
            "Channel client failed on %s for transaction %s: %s", action, tx.id, error
        )
        async with self._session_factory() as session:
            await ContactActionRepository(session).record(
                ContactActionDTO(
                    bot_id=tx.bot_id,
                    contact_id=tx.contact_id,
                    transaction_id=tx.id,
                    action=action,
                    description=f"Channel client error: {error}",
                    metadata={"channel_id": channel.id},
                    status="failed",
                )
            )
            await session.commit()

    async def _notify(self, bot: BotDTO, contact: ContactDTO, text: str) -> None:
        if not self._send_notices:
            return
        try:
            await self._client.send_message(bot, contact, text)
        except ChannelClientError as e:
            logger.warning("Could not notify contact %s: %s", contact.id, e)
