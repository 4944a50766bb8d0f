"""Transaction layer - status transitions and their events."""

from payment_gatekeeper.transactions.events import EventBus, EventHandler
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
from payment_gatekeeper.transactions.state_machine import (
    InvalidTransitionError,
    TransactionError,
    TransactionNotFoundError,
    TransactionStateMachine,
)

__all__ = [
    "EventBus",
    "EventHandler",
    "InvalidTransitionError",
    "TransactionCreated",
    "TransactionError",
    "TransactionEvent",
    "TransactionGranted",
    "TransactionNotFoundError",
    "TransactionRevoked",
    "TransactionStateMachine",
    "TransactionStatusChanged",
    "TransitionEffect",
    "TransitionResult",
    "classify_transition",
]
