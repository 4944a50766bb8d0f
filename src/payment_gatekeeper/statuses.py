"""Status vocabularies shared by storage and the engine components."""

from __future__ import annotations

from enum import Enum


class TransactionStatus(str, Enum):
    """Payment transaction status."""

    PENDING = "pending"
    PROCESSING = "processing"
    APPROVED = "approved"
    PAID = "paid"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    REFUNDED = "refunded"

    @property
    def is_granted(self) -> bool:
        """Return True if this status grants channel access."""
        return self in GRANTED_STATUSES

    @property
    def is_revoked(self) -> bool:
        """Return True if this status revokes channel access."""
        return self in REVOKED_STATUSES

    @property
    def is_settled(self) -> bool:
        """Return True once the payment left the open (pending/processing) phase."""
        return self.is_granted or self.is_revoked


GRANTED_STATUSES = frozenset(
    {TransactionStatus.APPROVED, TransactionStatus.PAID, TransactionStatus.COMPLETED}
)
REVOKED_STATUSES = frozenset(
    {TransactionStatus.CANCELLED, TransactionStatus.EXPIRED, TransactionStatus.REFUNDED}
)
OPEN_STATUSES = frozenset({TransactionStatus.PENDING, TransactionStatus.PROCESSING})


class AlertType(str, Enum):
    """Broadcast alert type."""

    COMMON = "common"
    SCHEDULED = "scheduled"


class AlertStatus(str, Enum):
    """Broadcast alert lifecycle status."""

    ACTIVE = "active"
    SENT = "sent"


class DownsellEvent(str, Enum):
    """Transaction lifecycle event a downsell offer reacts to."""

    PAYMENT_PENDING = "payment_pending"
    PAYMENT_CANCELLED = "payment_cancelled"
    PAYMENT_EXPIRED = "payment_expired"

    @property
    def matching_statuses(self) -> frozenset[TransactionStatus]:
        """Statuses a transaction must still be in for the offer to apply."""
        return _DOWNSELL_EVENT_STATUSES[self]

    @classmethod
    def for_status(cls, status: TransactionStatus) -> DownsellEvent | None:
        """Return the downsell event triggered by entering a status, if any."""
        for event, statuses in _DOWNSELL_EVENT_STATUSES.items():
            if event is not cls.PAYMENT_PENDING and status in statuses:
                return event
        return None


_DOWNSELL_EVENT_STATUSES: dict[DownsellEvent, frozenset[TransactionStatus]] = {
    DownsellEvent.PAYMENT_PENDING: OPEN_STATUSES,
    DownsellEvent.PAYMENT_CANCELLED: frozenset({TransactionStatus.CANCELLED}),
    DownsellEvent.PAYMENT_EXPIRED: frozenset({TransactionStatus.EXPIRED}),
}

MESSAGING_ACTIVE = "active"
