"""Message formatting for subscriber notices and downsell offers.

All texts use Telegram HTML parse mode; user-provided names are escaped.
Offer templates may reference ``{promotional_price}``, ``{original_price}``,
``{discount}`` and ``{plan_name}``.
"""

from __future__ import annotations

import html
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from payment_gatekeeper.storage.repos import require_id

if TYPE_CHECKING:
    from payment_gatekeeper.storage.repos import ContactDTO, DownsellDTO, TransactionDTO

ACCEPT_BUTTON_TEXT = "✅ Accept special offer"
ACCEPT_CALLBACK_PREFIX = "downsell_accept"


def format_decimal(amount: Decimal) -> str:
    """Format an amount as 1.234,56 (Brazilian grouping)."""
    text = f"{amount:,.2f}"
    return text.replace(",", "_").replace(".", ",").replace("_", ".")


def format_amount(amount: Decimal, currency: str = "BRL") -> str:
    """Format an amount with its currency symbol."""
    if currency == "BRL":
        return f"R$ {format_decimal(amount)}"
    return f"{currency} {amount:,.2f}"


def accept_callback_data(downsell_id: int, transaction_id: int) -> str:
    """Build the callback payload of the accept-offer button."""
    return f"{ACCEPT_CALLBACK_PREFIX}_{downsell_id}_{transaction_id}"


def parse_accept_callback(data: str) -> tuple[int, int] | None:
    """Parse an accept-offer callback payload into (downsell_id, transaction_id)."""
    prefix = f"{ACCEPT_CALLBACK_PREFIX}_"
    if not data.startswith(prefix):
        return None
    parts = data[len(prefix) :].split("_")
    if len(parts) != 2 or not all(p.isdigit() for p in parts):
        return None
    return int(parts[0]), int(parts[1])


class NoticeFormatter:
    """Builds the texts sent to subscribers."""

    def member_added(
        self,
        contact: ContactDTO,
        transaction: TransactionDTO | None = None,
        invite_link: str | None = None,
    ) -> str:
        """Welcome notice sent after access is granted."""
        lines = [
            "🎉 <b>Welcome to the group!</b>",
            "",
            f"Hello, {html.escape(contact.display_name)}!",
            "",
            "Your access to the group has been granted.",
        ]
        if transaction is not None:
            lines += [
                "",
                "📋 <b>Payment details:</b>",
                f"• Amount: {format_amount(transaction.amount, transaction.currency)}",
                f"• Status: {transaction.status.value.capitalize()}",
            ]
        if invite_link:
            lines += ["", "🔗 <b>Join the group:</b>", invite_link]
        lines += ["", "Enjoy your access!"]
        return "\n".join(lines)

    def member_removed(
        self, contact: ContactDTO, transaction: TransactionDTO | None = None
    ) -> str:
        """Removal notice sent after access is revoked."""
        lines = [
            "⚠️ <b>Group access removed</b>",
            "",
            f"Hello, {html.escape(contact.display_name)}!",
            "",
            "Your access to the group has been removed.",
        ]
        if transaction is not None:
            lines += [
                "",
                "📋 <b>Details:</b>",
                f"• Payment status: {transaction.status.value.capitalize()}",
            ]
        lines += ["", "To regain access, please make a new payment."]
        return "\n".join(lines)

    def downsell_message(self, downsell: DownsellDTO, transaction: TransactionDTO) -> str:
        """Render the offer template with its placeholders."""
        replacements = {
            "{promotional_price}": format_decimal(downsell.promotional_value),
            "{original_price}": format_decimal(transaction.amount),
            "{discount}": format_decimal(transaction.amount - downsell.promotional_value),
            "{plan_name}": downsell.plan_name or "",
        }
        text = downsell.message
        for placeholder, value in replacements.items():
            text = text.replace(placeholder, value)
        return text

    def downsell_offer(
        self, downsell: DownsellDTO, transaction: TransactionDTO
    ) -> tuple[str, dict[str, Any]]:
        """Build the accept-offer message and its inline keyboard."""
        lines = [
            "💎 <b>Special offer!</b>",
            "",
            "💰 Promotional price: "
            f"{format_amount(downsell.promotional_value, transaction.currency)}",
        ]
        if downsell.plan_name:
            lines.append(f"📦 Plan: {html.escape(downsell.plan_name)}")
        lines += ["", "Tap the button below to accept this exclusive offer!"]
        keyboard = {
            "inline_keyboard": [
                [
                    {
                        "text": ACCEPT_BUTTON_TEXT,
                        "callback_data": accept_callback_data(
                            require_id(downsell), require_id(transaction)
                        ),
                    }
                ]
            ]
        }
        return "\n".join(lines), keyboard
