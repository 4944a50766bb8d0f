"""Channel client implementations for messaging platforms."""

from payment_gatekeeper.channels.base import (
    ChannelClient,
    ChannelClientError,
    ChannelRateLimitedError,
    MembershipChange,
)
from payment_gatekeeper.channels.dry_run import DryRunChannelClient
from payment_gatekeeper.channels.telegram import (
    TelegramAPIError,
    TelegramChannelClient,
    normalize_chat_id,
)

__all__ = [
    "ChannelClient",
    "ChannelClientError",
    "ChannelRateLimitedError",
    "DryRunChannelClient",
    "MembershipChange",
    "TelegramAPIError",
    "TelegramChannelClient",
    "normalize_chat_id",
]
