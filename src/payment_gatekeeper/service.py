"""Service composition for the payment gatekeeper.

Wires storage, the channel client, the job dispatcher, the transaction
state machine and its subscribers, and runs the recurring alert tick.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from typing import TYPE_CHECKING

from redis.asyncio import Redis

from payment_gatekeeper.access.reconciler import AccessReconciler
from payment_gatekeeper.channels.dry_run import DryRunChannelClient
from payment_gatekeeper.channels.telegram import TelegramChannelClient
from payment_gatekeeper.dispatch.dead_letter import (
    DeadLetterSink,
    LoggingDeadLetterSink,
    RedisDeadLetterSink,
)
from payment_gatekeeper.dispatch.dispatcher import JobDispatcher, RetryPolicy
from payment_gatekeeper.notifications.alerts import AlertBroadcaster, BroadcastSummary
from payment_gatekeeper.notifications.downsell import DownsellTrigger
from payment_gatekeeper.storage.database import (
    create_engine,
    create_session_factory,
    init_db,
)
from payment_gatekeeper.transactions.events import EventBus
from payment_gatekeeper.transactions.state_machine import TransactionStateMachine

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

    from payment_gatekeeper.channels.base import ChannelClient
    from payment_gatekeeper.config import Settings

logger = logging.getLogger(__name__)


class ServiceNotReadyError(RuntimeError):
    """Raised when a component is used before ``setup()``."""


class GatekeeperService:
    """Owns every long-lived resource of the gatekeeper.

    Example:
        ```python
        service = GatekeeperService(settings)
        await service.start()
        result = await service.state_machine.apply_status_change(tx_id, "paid")
        await service.stop()
        ```
    """

    def __init__(
        self,
        settings: Settings,
        *,
        dry_run: bool = False,
        engine: AsyncEngine | None = None,
        redis: Redis | None = None,
        client: ChannelClient | None = None,
    ) -> None:
        """Initialize the service.

        Args:
            settings: Application settings.
            dry_run: Log channel operations instead of calling Telegram and
                skip the Redis dead-letter stream.
            engine: Engine to use instead of one built from settings.
            redis: Redis client to use instead of one built from settings.
            client: Channel client to use instead of the default one.
        """
        self.settings = settings
        self.dry_run = dry_run
        self._engine = engine
        self._owns_engine = engine is None
        self._redis = redis
        self._owns_redis = redis is None
        self._client = client

        self.bus = EventBus()
        self._dispatcher: JobDispatcher | None = None
        self._state_machine: TransactionStateMachine | None = None
        self._reconciler: AccessReconciler | None = None
        self._broadcaster: AlertBroadcaster | None = None
        self._downsell: DownsellTrigger | None = None
        self._tick_task: asyncio.Task[None] | None = None

    @property
    def dispatcher(self) -> JobDispatcher:
        if self._dispatcher is None:
            raise ServiceNotReadyError("Service is not set up")
        return self._dispatcher

    @property
    def state_machine(self) -> TransactionStateMachine:
        if self._state_machine is None:
            raise ServiceNotReadyError("Service is not set up")
        return self._state_machine

    @property
    def reconciler(self) -> AccessReconciler:
        if self._reconciler is None:
            raise ServiceNotReadyError("Service is not set up")
        return self._reconciler

    @property
    def broadcaster(self) -> AlertBroadcaster:
        if self._broadcaster is None:
            raise ServiceNotReadyError("Service is not set up")
        return self._broadcaster

    @property
    def downsell(self) -> DownsellTrigger:
        if self._downsell is None:
            raise ServiceNotReadyError("Service is not set up")
        return self._downsell

    def _build_client(self) -> ChannelClient:
        if self._client is not None:
            return self._client
        if self.dry_run:
            return DryRunChannelClient()
        return TelegramChannelClient(
            api_base=self.settings.telegram.api_base,
            timeout=self.settings.telegram.timeout,
        )

    def _build_sinks(self) -> list[DeadLetterSink]:
        sinks: list[DeadLetterSink] = [LoggingDeadLetterSink()]
        if self.dry_run and self._redis is None:
            return sinks
        if self._redis is None:
            self._redis = Redis.from_url(self.settings.redis.url)
        sinks.append(
            RedisDeadLetterSink(
                self._redis,
                stream_name=self.settings.redis.dead_letter_stream,
                max_len=self.settings.redis.dead_letter_max_len,
            )
        )
        return sinks

    async def setup(self) -> None:
        """Create the schema and compose every component."""
        if self._dispatcher is not None:
            return

        if self._engine is None:
            self._engine = create_engine(
                self.settings.database.url, echo=self.settings.database.echo
            )
        await init_db(self._engine)
        session_factory = create_session_factory(self._engine)

        dispatch = self.settings.dispatcher
        client = self._build_client()
        self._dispatcher = JobDispatcher(
            default_policy=RetryPolicy(
                max_attempts=dispatch.max_attempts, backoff_seconds=dispatch.backoff_seconds
            ),
            dead_letter_sinks=self._build_sinks(),
        )

        self._state_machine = TransactionStateMachine(session_factory, self.bus)

        self._reconciler = AccessReconciler(session_factory, client)
        self._reconciler.register(self.bus, self._dispatcher)

        self._broadcaster = AlertBroadcaster(
            session_factory,
            client,
            self._dispatcher,
            timezone=self.settings.scheduler.tzinfo,
        )
        self._broadcaster.register()

        self._downsell = DownsellTrigger(
            session_factory,
            client,
            self._dispatcher,
            policy=RetryPolicy(
                max_attempts=dispatch.max_attempts,
                timeout_seconds=dispatch.downsell_timeout,
                backoff_seconds=dispatch.backoff_seconds,
            ),
        )
        self._downsell.register(self.bus)
        logger.info("Gatekeeper components ready (dry_run=%s)", self.dry_run)

    async def start(self) -> None:
        """Start the dispatcher workers and the alert tick."""
        await self.setup()
        await self.dispatcher.start(self.settings.dispatcher.workers)
        if self._tick_task is None:
            self._tick_task = asyncio.create_task(self._alert_loop(), name="alert-tick")
        logger.info(
            "Gatekeeper started, alert tick every %.0fs",
            self.settings.scheduler.alert_tick_seconds,
        )

    async def _alert_loop(self) -> None:
        while True:
            try:
                await self.broadcaster.run_once()
            except Exception as e:
                logger.exception("Alert tick failed: %s", e)
            await asyncio.sleep(self.settings.scheduler.alert_tick_seconds)

    async def run_alert_tick(self, bot_id: int | None = None) -> BroadcastSummary:
        """Run one broadcaster pass and wait for its deliveries."""
        await self.setup()
        await self.dispatcher.start(self.settings.dispatcher.workers)
        summary = await self.broadcaster.run_once(bot_id)
        await self.dispatcher.join()
        return summary

    async def stop(self) -> None:
        """Stop the tick and the workers and release connections."""
        if self._tick_task is not None:
            self._tick_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._tick_task
            self._tick_task = None

        if self._dispatcher is not None:
            await self._dispatcher.stop()

        if self._redis is not None and self._owns_redis:
            await self._redis.aclose()
            self._redis = None

        if self._engine is not None and self._owns_engine:
            await self._engine.dispose()
            self._engine = None
        logger.info("Gatekeeper stopped")
