"""Transition events and results for payment transactions."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

from payment_gatekeeper.statuses import TransactionStatus


class TransitionEffect(str, Enum):
    """Access effect of a status transition."""

    GRANT = "grant"
    REVOKE = "revoke"


def classify_transition(
    previous: TransactionStatus, new: TransactionStatus
) -> frozenset[TransitionEffect]:
    """Return the access effects fired by moving from one status to another.

    A grant fires on entering the granted set from outside it. A revoke fires
    only on moving from the granted set into the revoked set, so revoking a
    transaction that never granted access is silent.
    """
    if previous == new:
        return frozenset()
    effects = set()
    if new.is_granted and not previous.is_granted:
        effects.add(TransitionEffect.GRANT)
    if new.is_revoked and previous.is_granted:
        effects.add(TransitionEffect.REVOKE)
    return frozenset(effects)


@dataclass(frozen=True)
class TransactionEvent:
    """Base class for events published about a transaction."""

    transaction_id: int
    bot_id: int
    contact_id: int
    payment_plan_id: int | None
    previous_status: TransactionStatus
    new_status: TransactionStatus
    occurred_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass(frozen=True)
class TransactionCreated(TransactionEvent):
    """A transaction was created (previous status mirrors the initial one)."""


@dataclass(frozen=True)
class TransactionStatusChanged(TransactionEvent):
    """An accepted status change, whatever its access effect."""


@dataclass(frozen=True)
class TransactionGranted(TransactionEvent):
    """The transaction entered the granted set."""


@dataclass(frozen=True)
class TransactionRevoked(TransactionEvent):
    """The transaction moved from the granted set into the revoked set."""


@dataclass
class TransitionResult:
    """Outcome of a status change request."""

    accepted: bool
    previous_status: TransactionStatus
    new_status: TransactionStatus
    events: list[TransactionEvent] = field(default_factory=list)

    @property
    def effects(self) -> frozenset[TransitionEffect]:
        """Return the access effects carried by the published events."""
        found = set()
        for event in self.events:
            if isinstance(event, TransactionGranted):
                found.add(TransitionEffect.GRANT)
            elif isinstance(event, TransactionRevoked):
                found.add(TransitionEffect.REVOKE)
        return frozenset(found)
