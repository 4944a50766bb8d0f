"""Channel client protocol and shared types."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from payment_gatekeeper.storage.repos import BotDTO, ChannelDTO, ContactDTO


class ChannelClientError(Exception):
    """Base exception for channel client errors.

    Raised for transient or remote failures; callers running inside the job
    dispatcher let it propagate so the job is retried.
    """

    def __init__(self, message: str, *, error_code: int | None = None) -> None:
        super().__init__(message)
        self.error_code = error_code


class ChannelRateLimitedError(ChannelClientError):
    """Raised when the remote API asks the caller to slow down."""

    def __init__(self, message: str, *, retry_after: float = 1.0) -> None:
        super().__init__(message, error_code=429)
        self.retry_after = retry_after


@dataclass(frozen=True)
class MembershipChange:
    """Result of a membership operation.

    Attributes:
        changed: False when the contact was already in the requested state.
        detail: Short description of what happened remotely.
    """

    changed: bool
    detail: str = ""


class ChannelClient(Protocol):
    """Protocol for the messaging platform a bot operates on."""

    async def add_member(
        self, bot: BotDTO, channel: ChannelDTO, contact: ContactDTO
    ) -> MembershipChange:
        """Let a contact into a gated channel."""
        ...

    async def remove_member(
        self, bot: BotDTO, channel: ChannelDTO, contact: ContactDTO
    ) -> MembershipChange:
        """Remove a contact from a gated channel."""
        ...

    async def export_invite_link(self, bot: BotDTO, channel: ChannelDTO) -> str | None:
        """Return an invite link for a channel, None if none can be made."""
        ...

    async def send_message(
        self,
        bot: BotDTO,
        contact: ContactDTO,
        text: str,
        *,
        reply_markup: dict[str, Any] | None = None,
    ) -> None:
        """Send a text message to a contact."""
        ...

    async def send_media(
        self, bot: BotDTO, contact: ContactDTO, media_url: str, *, caption: str | None = None
    ) -> None:
        """Send a photo, video or document to a contact."""
        ...
