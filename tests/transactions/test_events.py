"""Tests for the in-process event bus."""

from unittest.mock import AsyncMock

import pytest

from payment_gatekeeper.statuses import TransactionStatus
from payment_gatekeeper.transactions.events import EventBus
from payment_gatekeeper.transactions.models import (
    TransactionGranted,
    TransactionRevoked,
)


@pytest.fixture
def granted_event() -> TransactionGranted:
    """Create a sample grant event."""
    return TransactionGranted(
        transaction_id=10,
        bot_id=1,
        contact_id=2,
        payment_plan_id=7,
        previous_status=TransactionStatus.PENDING,
        new_status=TransactionStatus.PAID,
    )


class TestEventBus:
    """Tests for EventBus."""

    async def test_publish_calls_subscribers_in_order(
        self, granted_event: TransactionGranted
    ) -> None:
        """Test handlers run in subscription order."""
        calls: list[str] = []

        async def first(event: TransactionGranted) -> None:
            calls.append("first")

        async def second(event: TransactionGranted) -> None:
            calls.append("second")

        bus = EventBus()
        bus.subscribe(TransactionGranted, first)
        bus.subscribe(TransactionGranted, second)

        delivered = await bus.publish(granted_event)

        assert delivered == 2
        assert calls == ["first", "second"]

    async def test_publish_matches_exact_type(self, granted_event: TransactionGranted) -> None:
        """Test handlers of other event types are not called."""
        handler = AsyncMock()
        bus = EventBus()
        bus.subscribe(TransactionRevoked, handler)

        assert await bus.publish(granted_event) == 0
        handler.assert_not_called()

    async def test_failing_handler_does_not_stop_others(
        self, granted_event: TransactionGranted
    ) -> None:
        """Test a raising handler is isolated."""
        failing = AsyncMock(side_effect=RuntimeError("boom"))
        succeeding = AsyncMock()
        bus = EventBus()
        bus.subscribe(TransactionGranted, failing)
        bus.subscribe(TransactionGranted, succeeding)

        delivered = await bus.publish(granted_event)

        assert delivered == 1
        succeeding.assert_awaited_once_with(granted_event)

    def test_handlers_for_returns_copy(self) -> None:
        """Test the returned handler list cannot mutate the bus."""
        bus = EventBus()
        bus.subscribe(TransactionGranted, AsyncMock())
        bus.handlers_for(TransactionGranted).clear()
        assert len(bus.handlers_for(TransactionGranted)) == 1

    def test_handlers_for_unknown_type(self) -> None:
        """Test an unsubscribed type has no handlers."""
        assert EventBus().handlers_for(TransactionRevoked) == []
