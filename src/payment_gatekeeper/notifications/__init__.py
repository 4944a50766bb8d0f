"""Notification layer - broadcast alerts and downsell offers."""

from payment_gatekeeper.notifications.alerts import (
    ALERT_JOB,
    AlertBroadcaster,
    AlertPass,
    BroadcastSummary,
    RecipientFilter,
    accept_all,
)
from payment_gatekeeper.notifications.downsell import DOWNSELL_JOB, DownsellTrigger
from payment_gatekeeper.notifications.formatter import (
    NoticeFormatter,
    accept_callback_data,
    format_amount,
    parse_accept_callback,
)

__all__ = [
    "ALERT_JOB",
    "DOWNSELL_JOB",
    "AlertBroadcaster",
    "AlertPass",
    "BroadcastSummary",
    "DownsellTrigger",
    "NoticeFormatter",
    "RecipientFilter",
    "accept_all",
    "accept_callback_data",
    "format_amount",
    "parse_accept_callback",
]
