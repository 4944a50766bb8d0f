"""Telegram Bot API channel client implementation."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any
from urllib.parse import urlparse

import httpx

from payment_gatekeeper.channels.base import (
    ChannelClientError,
    ChannelRateLimitedError,
    MembershipChange,
)

if TYPE_CHECKING:
    from payment_gatekeeper.storage.repos import BotDTO, ChannelDTO, ContactDTO

logger = logging.getLogger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org"

MEMBER_STATUSES = frozenset({"member", "administrator", "creator"})

PHOTO_EXTENSIONS = frozenset({".jpg", ".jpeg", ".png", ".gif", ".webp"})
VIDEO_EXTENSIONS = frozenset({".mp4", ".mov", ".avi", ".mkv", ".webm"})


class TelegramAPIError(ChannelClientError):
    """Raised when the Bot API answers with ``ok: false``."""

    def __init__(self, method: str, error_code: int, description: str) -> None:
        super().__init__(
            f"Telegram {method} failed: {error_code} - {description}", error_code=error_code
        )
        self.method = method
        self.description = description


def normalize_chat_id(chat_id: str | int) -> str:
    """Normalize a stored chat identifier for the Bot API.

    Public usernames keep their ``@``; numeric group ids without a sign are
    assumed to be groups and get the ``-`` prefix Telegram expects.
    """
    value = str(chat_id).strip()
    if value.startswith("@"):
        return value
    value = value.replace("@", "")
    if value.lstrip("-").isdigit() and not value.startswith("-"):
        return f"-{value}"
    return value


def media_method(media_url: str) -> tuple[str, str]:
    """Return the Bot API method and its file field for a media URL."""
    path = urlparse(media_url).path.lower()
    extension = path[path.rfind(".") :] if "." in path else ""
    if extension in PHOTO_EXTENSIONS:
        return "sendPhoto", "photo"
    if extension in VIDEO_EXTENSIONS:
        return "sendVideo", "video"
    return "sendDocument", "document"


class TelegramChannelClient:
    """Channel client talking to the Telegram Bot API over HTTP.

    Every call uses the token of the bot it acts for. Requests share a
    sliding-window rate limit; errors are raised to the caller, which decides
    whether to retry.
    """

    def __init__(
        self,
        *,
        api_base: str = TELEGRAM_API_BASE,
        timeout: float = 10.0,
        rate_limit_per_minute: int = 1200,
    ) -> None:
        """Initialize the client.

        Args:
            api_base: Bot API root URL.
            timeout: HTTP request timeout in seconds.
            rate_limit_per_minute: Maximum requests per minute across all bots.
        """
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self.rate_limit_per_minute = rate_limit_per_minute
        self.name = "telegram"

        # Rate limiting state
        self._request_times: list[float] = []
        self._lock = asyncio.Lock()

    async def _wait_for_rate_limit(self) -> None:
        """Wait if rate limit is exceeded."""
        async with self._lock:
            now = asyncio.get_running_loop().time()
            self._request_times = [t for t in self._request_times if now - t < 60]

            if len(self._request_times) >= self.rate_limit_per_minute:
                wait_time = 60 - (now - self._request_times[0])
                if wait_time > 0:
                    logger.debug(f"Telegram rate limit hit, waiting {wait_time:.2f}s")
                    await asyncio.sleep(wait_time)

            self._request_times.append(now)

    async def call(self, token: str, method: str, params: dict[str, Any]) -> Any:
        """Invoke a Bot API method.

        Returns:
            The ``result`` field of the response.

        Raises:
            ChannelRateLimitedError: On HTTP 429 style answers.
            TelegramAPIError: On any other ``ok: false`` answer.
            ChannelClientError: On transport failures.
        """
        await self._wait_for_rate_limit()
        url = f"{self.api_base}/bot{token}/{method}"

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(url, json=params)
                data = response.json()
        except httpx.TimeoutException as e:
            raise ChannelClientError(f"Telegram {method} timed out") from e
        except httpx.HTTPError as e:
            raise ChannelClientError(f"Telegram {method} failed: {e}") from e
        except ValueError as e:
            raise ChannelClientError(f"Telegram {method} returned invalid JSON") from e

        if data.get("ok"):
            return data.get("result")

        error_code = data.get("error_code", 0)
        description = data.get("description", "Unknown error")
        if error_code == 429:
            retry_after = data.get("parameters", {}).get("retry_after", 1)
            logger.warning(f"Telegram rate limited on {method}, retry after {retry_after}s")
            raise ChannelRateLimitedError(description, retry_after=float(retry_after))

        raise TelegramAPIError(method, error_code, description)

    async def get_member_status(self, bot: BotDTO, chat_id: str, user_id: int) -> str | None:
        """Return a user's membership status in a chat, None if unknown to it."""
        try:
            result = await self.call(
                bot.token, "getChatMember", {"chat_id": chat_id, "user_id": user_id}
            )
        except TelegramAPIError as e:
            if e.error_code == 400:
                return None
            raise
        return (result or {}).get("status")

    async def add_member(
        self, bot: BotDTO, channel: ChannelDTO, contact: ContactDTO
    ) -> MembershipChange:
        """Let a contact into a channel.

        Bots cannot pull users into a chat; this lifts any previous ban so the
        contact can join through the invite link.
        """
        chat_id = normalize_chat_id(channel.telegram_chat_id)
        status = await self.get_member_status(bot, chat_id, contact.telegram_id)
        if status in MEMBER_STATUSES:
            return MembershipChange(changed=False, detail="already a member")

        await self.call(
            bot.token,
            "unbanChatMember",
            {"chat_id": chat_id, "user_id": contact.telegram_id, "only_if_banned": True},
        )
        logger.info(f"Telegram user {contact.telegram_id} cleared to join {chat_id}")
        return MembershipChange(changed=True, detail="cleared to join")

    async def remove_member(
        self, bot: BotDTO, channel: ChannelDTO, contact: ContactDTO
    ) -> MembershipChange:
        """Remove a contact from a channel.

        The ban is lifted right away so the contact can rejoin after paying
        again.
        """
        chat_id = normalize_chat_id(channel.telegram_chat_id)
        status = await self.get_member_status(bot, chat_id, contact.telegram_id)
        if status not in MEMBER_STATUSES:
            return MembershipChange(changed=False, detail="not a member")
        if status == "creator":
            raise ChannelClientError(f"Cannot remove the owner of {chat_id}")

        params = {"chat_id": chat_id, "user_id": contact.telegram_id}
        await self.call(bot.token, "banChatMember", params)
        await self.call(bot.token, "unbanChatMember", {**params, "only_if_banned": True})
        logger.info(f"Telegram user {contact.telegram_id} removed from {chat_id}")
        return MembershipChange(changed=True, detail="removed")

    async def export_invite_link(self, bot: BotDTO, channel: ChannelDTO) -> str | None:
        """Return the primary invite link, creating one if export is refused."""
        chat_id = normalize_chat_id(channel.telegram_chat_id)
        try:
            link = await self.call(bot.token, "exportChatInviteLink", {"chat_id": chat_id})
            if link:
                return str(link)
        except TelegramAPIError as e:
            logger.warning(f"exportChatInviteLink refused for {chat_id}: {e.description}")

        try:
            result = await self.call(bot.token, "createChatInviteLink", {"chat_id": chat_id})
        except TelegramAPIError as e:
            logger.warning(f"createChatInviteLink refused for {chat_id}: {e.description}")
            return None
        return (result or {}).get("invite_link")

    async def send_message(
        self,
        bot: BotDTO,
        contact: ContactDTO,
        text: str,
        *,
        reply_markup: dict[str, Any] | None = None,
    ) -> None:
        payload: dict[str, Any] = {
            "chat_id": contact.telegram_id,
            "text": text,
            "parse_mode": "HTML",
        }
        if reply_markup is not None:
            payload["reply_markup"] = reply_markup
        await self.call(bot.token, "sendMessage", payload)

    async def send_media(
        self, bot: BotDTO, contact: ContactDTO, media_url: str, *, caption: str | None = None
    ) -> None:
        method, file_field = media_method(media_url)
        payload: dict[str, Any] = {"chat_id": contact.telegram_id, file_field: media_url}
        if caption:
            payload["caption"] = caption
            payload["parse_mode"] = "HTML"
        await self.call(bot.token, method, payload)
