"""Channel client that logs instead of calling out."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from payment_gatekeeper.channels.base import MembershipChange

if TYPE_CHECKING:
    from payment_gatekeeper.storage.repos import BotDTO, ChannelDTO, ContactDTO

logger = logging.getLogger(__name__)


class DryRunChannelClient:
    """Records every call and reports success.

    Used with ``--dry-run`` and as a stand-in when wiring the service without
    network access. ``calls`` keeps ``(method, details)`` tuples in order.
    """

    def __init__(self, invite_link_template: str = "https://t.me/+dry-run-{channel_id}") -> None:
        self.invite_link_template = invite_link_template
        self.name = "dry-run"
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def _record(self, method: str, **details: Any) -> None:
        self.calls.append((method, details))
        logger.info("[dry-run] %s %s", method, details)

    async def add_member(
        self, bot: BotDTO, channel: ChannelDTO, contact: ContactDTO
    ) -> MembershipChange:
        self._record("add_member", chat_id=channel.telegram_chat_id, user_id=contact.telegram_id)
        return MembershipChange(changed=True, detail="dry run")

    async def remove_member(
        self, bot: BotDTO, channel: ChannelDTO, contact: ContactDTO
    ) -> MembershipChange:
        self._record(
            "remove_member", chat_id=channel.telegram_chat_id, user_id=contact.telegram_id
        )
        return MembershipChange(changed=True, detail="dry run")

    async def export_invite_link(self, bot: BotDTO, channel: ChannelDTO) -> str | None:
        self._record("export_invite_link", chat_id=channel.telegram_chat_id)
        return self.invite_link_template.format(channel_id=channel.id)

    async def send_message(
        self,
        bot: BotDTO,
        contact: ContactDTO,
        text: str,
        *,
        reply_markup: dict[str, Any] | None = None,
    ) -> None:
        self._record(
            "send_message", user_id=contact.telegram_id, text=text, reply_markup=reply_markup
        )

    async def send_media(
        self, bot: BotDTO, contact: ContactDTO, media_url: str, *, caption: str | None = None
    ) -> None:
        self._record("send_media", user_id=contact.telegram_id, media_url=media_url)
