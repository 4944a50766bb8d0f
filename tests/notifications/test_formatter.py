"""Tests for subscriber notice formatting."""

from decimal import Decimal

import pytest

from payment_gatekeeper.notifications.formatter import (
    ACCEPT_BUTTON_TEXT,
    NoticeFormatter,
    accept_callback_data,
    format_amount,
    format_decimal,
    parse_accept_callback,
)
from payment_gatekeeper.statuses import TransactionStatus
from payment_gatekeeper.storage.repos import (
    ContactDTO,
    DownsellDTO,
    TransactionDTO,
    UnsavedRecordError,
)

# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def formatter() -> NoticeFormatter:
    """Create a formatter."""
    return NoticeFormatter()


@pytest.fixture
def contact() -> ContactDTO:
    """Create a sample contact."""
    return ContactDTO(id=9, bot_id=1, telegram_id=555, first_name="Ana <3", username="ana")


@pytest.fixture
def transaction() -> TransactionDTO:
    """Create a sample paid transaction."""
    return TransactionDTO(
        id=20,
        bot_id=1,
        contact_id=9,
        amount=Decimal("1249.90"),
        status=TransactionStatus.PAID,
    )


@pytest.fixture
def downsell() -> DownsellDTO:
    """Create a sample downsell offer."""
    return DownsellDTO(
        id=4,
        bot_id=1,
        message="{plan_name}: {promotional_price} instead of {original_price}, save {discount}",
        promotional_value=Decimal("999.90"),
        plan_name="VIP Annual",
    )


# ============================================================================
# Amounts and callbacks
# ============================================================================


class TestAmounts:
    """Tests for amount formatting."""

    def test_format_decimal_grouping(self) -> None:
        """Test Brazilian thousands and decimal separators."""
        assert format_decimal(Decimal("1234.5")) == "1.234,50"
        assert format_decimal(Decimal("29.9")) == "29,90"
        assert format_decimal(Decimal("1000000")) == "1.000.000,00"

    def test_format_amount_brl(self) -> None:
        """Test BRL amounts get the real symbol."""
        assert format_amount(Decimal("49.90")) == "R$ 49,90"

    def test_format_amount_other_currency(self) -> None:
        """Test other currencies keep their code."""
        assert format_amount(Decimal("1234.5"), "USD") == "USD 1,234.50"


class TestAcceptCallback:
    """Tests for accept-offer callback payloads."""

    def test_build(self) -> None:
        """Test the payload layout."""
        assert accept_callback_data(4, 20) == "downsell_accept_4_20"

    def test_parse_roundtrip(self) -> None:
        """Test a built payload parses back to its ids."""
        assert parse_accept_callback(accept_callback_data(4, 20)) == (4, 20)

    @pytest.mark.parametrize(
        "data", ["other_4_20", "downsell_accept_4", "downsell_accept_a_20", "downsell_accept_1_2_3"]
    )
    def test_parse_rejects_malformed(self, data: str) -> None:
        """Test malformed payloads are rejected."""
        assert parse_accept_callback(data) is None


# ============================================================================
# Notices
# ============================================================================


class TestNotices:
    """Tests for membership notices."""

    def test_member_added(self, formatter, contact, transaction) -> None:
        """Test the welcome notice content."""
        text = formatter.member_added(contact, transaction, "https://t.me/+abc")

        assert "Welcome" in text
        assert "Ana &lt;3" in text
        assert "R$ 1.249,90" in text
        assert "Paid" in text
        assert "https://t.me/+abc" in text

    def test_member_added_without_link(self, formatter, contact) -> None:
        """Test the welcome notice without payment details or link."""
        text = formatter.member_added(contact)
        assert "Welcome" in text
        assert "Join the group" not in text
        assert "Payment details" not in text

    def test_member_removed(self, formatter, contact, transaction) -> None:
        """Test the removal notice content."""
        transaction.status = TransactionStatus.REFUNDED
        text = formatter.member_removed(contact, transaction)

        assert "removed" in text
        assert "Refunded" in text

    def test_display_name_fallback(self, formatter) -> None:
        """Test the greeting falls back to the username."""
        contact = ContactDTO(bot_id=1, telegram_id=1, username="bob")
        assert "Hello, bob!" in formatter.member_removed(contact)


class TestDownsell:
    """Tests for downsell offer rendering."""

    def test_placeholders_replaced(self, formatter, downsell, transaction) -> None:
        """Test every placeholder is rendered."""
        text = formatter.downsell_message(downsell, transaction)
        assert text == "VIP Annual: 999,90 instead of 1.249,90, save 250,00"

    def test_text_without_placeholders_unchanged(
        self, formatter, downsell, transaction
    ) -> None:
        """Test plain templates pass through."""
        downsell.message = "Come back!"
        assert formatter.downsell_message(downsell, transaction) == "Come back!"

    def test_offer_keyboard(self, formatter, downsell, transaction) -> None:
        """Test the offer carries one accept button bound to the ids."""
        text, keyboard = formatter.downsell_offer(downsell, transaction)

        assert "R$ 999,90" in text
        assert "VIP Annual" in text
        button = keyboard["inline_keyboard"][0][0]
        assert button["text"] == ACCEPT_BUTTON_TEXT
        assert button["callback_data"] == "downsell_accept_4_20"

    def test_offer_for_unsaved_downsell_raises(self, formatter, downsell, transaction) -> None:
        """Test an offer cannot be built without stored ids."""
        downsell.id = None

        with pytest.raises(UnsavedRecordError, match="DownsellDTO"):
            formatter.downsell_offer(downsell, transaction)
