"""Transaction status state machine.

Applies status changes to stored transactions and publishes the resulting
events. The new status is committed before any event is published, so a
failing subscriber can never undo a status change.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from payment_gatekeeper.statuses import OPEN_STATUSES, TransactionStatus
from payment_gatekeeper.storage.repos import TransactionDTO, TransactionRepository, require_id
from payment_gatekeeper.transactions.models import (
    TransactionCreated,
    TransactionEvent,
    TransactionGranted,
    TransactionRevoked,
    TransactionStatusChanged,
    TransitionEffect,
    TransitionResult,
    classify_transition,
)

if TYPE_CHECKING:
    from payment_gatekeeper.storage.database import SessionFactory
    from payment_gatekeeper.transactions.events import EventBus

logger = logging.getLogger(__name__)


class TransactionError(Exception):
    """Base exception for transaction errors."""

    pass


class TransactionNotFoundError(TransactionError):
    """Raised when a transaction does not exist."""

    def __init__(self, transaction_id: int) -> None:
        super().__init__(f"Transaction {transaction_id} not found")
        self.transaction_id = transaction_id


class InvalidTransitionError(TransactionError):
    """Raised when a settled transaction is asked to reopen."""

    def __init__(self, previous: TransactionStatus, new: TransactionStatus) -> None:
        super().__init__(f"Cannot move transaction from {previous.value} to {new.value}")
        self.previous = previous
        self.new = new


def _event_fields(
    tx: TransactionDTO, previous: TransactionStatus, new: TransactionStatus
) -> dict[str, Any]:
    return {
        "transaction_id": require_id(tx),
        "bot_id": tx.bot_id,
        "contact_id": tx.contact_id,
        "payment_plan_id": tx.payment_plan_id,
        "previous_status": previous,
        "new_status": new,
    }


class TransactionStateMachine:
    """Validates and applies transaction status transitions.

    Example:
        ```python
        machine = TransactionStateMachine(session_factory, bus)
        result = await machine.apply_status_change(tx_id, "approved")
        if result.accepted:
            ...
        ```
    """

    def __init__(self, session_factory: SessionFactory, bus: EventBus) -> None:
        """Initialize the state machine.

        Args:
            session_factory: Factory for database sessions.
            bus: Bus on which transition events are published.
        """
        self._session_factory = session_factory
        self._bus = bus

    async def apply_status_change(
        self, transaction_id: int, new_status: TransactionStatus | str
    ) -> TransitionResult:
        """Move a transaction to a new status.

        Args:
            transaction_id: Transaction to update.
            new_status: Target status (enum member or its value).

        Returns:
            TransitionResult; ``accepted`` is False for a no-op.

        Raises:
            ValueError: If the status is unknown.
            TransactionNotFoundError: If the transaction does not exist.
            InvalidTransitionError: If a settled transaction would reopen.
        """
        status = TransactionStatus(new_status)

        async with self._session_factory() as session:
            repo = TransactionRepository(session)
            tx = await repo.get(transaction_id, for_update=True)
            if tx is None:
                raise TransactionNotFoundError(transaction_id)

            previous = tx.status
            if previous == status:
                logger.debug("Transaction %d already %s", transaction_id, status.value)
                return TransitionResult(
                    accepted=False, previous_status=previous, new_status=status
                )
            if previous.is_settled and status in OPEN_STATUSES:
                raise InvalidTransitionError(previous, status)

            await repo.update_status(transaction_id, status)
            await session.commit()

        logger.info(
            "Transaction %d status changed: %s -> %s",
            transaction_id,
            previous.value,
            status.value,
        )

        events: list[TransactionEvent] = []
        fields = _event_fields(tx, previous, status)
        effects = classify_transition(previous, status)
        if TransitionEffect.GRANT in effects:
            events.append(TransactionGranted(**fields))
        if TransitionEffect.REVOKE in effects:
            events.append(TransactionRevoked(**fields))
        events.append(TransactionStatusChanged(**fields))

        for event in events:
            await self._bus.publish(event)

        return TransitionResult(
            accepted=True, previous_status=previous, new_status=status, events=events
        )

    async def create_transaction(
        self,
        bot_id: int,
        contact_id: int,
        amount: Decimal,
        *,
        payment_plan_id: int | None = None,
        currency: str = "BRL",
        status: TransactionStatus | str = TransactionStatus.PENDING,
        metadata: dict[str, Any] | None = None,
    ) -> TransactionDTO:
        """Create a transaction and publish its creation.

        A transaction created directly in a granted status also publishes a
        grant, as if it had moved there from pending.

        Returns:
            The stored transaction.
        """
        initial = TransactionStatus(status)

        async with self._session_factory() as session:
            tx = await TransactionRepository(session).insert(
                TransactionDTO(
                    bot_id=bot_id,
                    contact_id=contact_id,
                    amount=Decimal(amount),
                    payment_plan_id=payment_plan_id,
                    currency=currency,
                    status=initial,
                    metadata=dict(metadata or {}),
                )
            )
            await session.commit()

        logger.info("Transaction %s created with status %s", tx.id, initial.value)

        await self._bus.publish(TransactionCreated(**_event_fields(tx, initial, initial)))
        if TransitionEffect.GRANT in classify_transition(TransactionStatus.PENDING, initial):
            await self._bus.publish(
                TransactionGranted(**_event_fields(tx, TransactionStatus.PENDING, initial))
            )
        return tx
