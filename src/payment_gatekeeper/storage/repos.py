"""Repository pattern implementations for data access.

This module provides data access abstractions for bots, contacts,
transactions, gated channels, alerts, downsells and the audit trail.
Repositories flush but never commit: the caller owns the unit of work.

Mutations that must be atomic with respect to concurrent ticks (claiming a
scheduled alert, claiming a downsell use, counting an alert delivery) are
single conditional UPDATE statements whose row count tells the caller whether
the claim succeeded.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import UTC, date, datetime, time
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import and_, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from payment_gatekeeper.statuses import (
    MESSAGING_ACTIVE,
    AlertStatus,
    AlertType,
    DownsellEvent,
    TransactionStatus,
)
from payment_gatekeeper.storage.models import (
    AlertModel,
    BotModel,
    ChannelMembershipModel,
    ContactActionModel,
    ContactModel,
    DownsellModel,
    TelegramGroupModel,
    TransactionModel,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


def _as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops the offset)."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


class UnsavedRecordError(ValueError):
    """Raised when a record that must already be stored has no id."""


def require_id(record: Any) -> int:
    """Return the id of a stored record.

    Raises:
        UnsavedRecordError: If the record was never persisted.
    """
    if record.id is None:
        raise UnsavedRecordError(f"{type(record).__name__} has no id")
    return int(record.id)


# ============================================================================
# Data transfer objects
# ============================================================================


@dataclass
class BotDTO:
    """Data transfer object for channel bots."""

    name: str
    token: str
    active: bool = True
    activated: bool = True
    id: int | None = None

    @property
    def is_available(self) -> bool:
        """Return True if the bot may deliver messages."""
        return self.active and self.activated

    @classmethod
    def from_model(cls, model: BotModel) -> BotDTO:
        """Create DTO from SQLAlchemy model."""
        return cls(
            id=model.id,
            name=model.name,
            token=model.token,
            active=model.active,
            activated=model.activated,
        )


@dataclass
class ContactDTO:
    """Data transfer object for contacts."""

    bot_id: int
    telegram_id: int
    username: str | None = None
    first_name: str | None = None
    language: str | None = None
    is_bot: bool = False
    is_blocked: bool = False
    telegram_status: str = MESSAGING_ACTIVE
    id: int | None = None

    @property
    def display_name(self) -> str:
        """Return the best available name for greetings."""
        return self.first_name or self.username or "there"

    @classmethod
    def from_model(cls, model: ContactModel) -> ContactDTO:
        """Create DTO from SQLAlchemy model."""
        return cls(
            id=model.id,
            bot_id=model.bot_id,
            telegram_id=model.telegram_id,
            username=model.username,
            first_name=model.first_name,
            language=model.language,
            is_bot=model.is_bot,
            is_blocked=model.is_blocked,
            telegram_status=model.telegram_status,
        )


@dataclass
class TransactionDTO:
    """Data transfer object for payment transactions."""

    bot_id: int
    contact_id: int
    amount: Decimal
    payment_plan_id: int | None = None
    currency: str = "BRL"
    status: TransactionStatus = TransactionStatus.PENDING
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None
    id: int | None = None

    @classmethod
    def from_model(cls, model: TransactionModel) -> TransactionDTO:
        """Create DTO from SQLAlchemy model."""
        return cls(
            id=model.id,
            bot_id=model.bot_id,
            contact_id=model.contact_id,
            payment_plan_id=model.payment_plan_id,
            amount=Decimal(model.amount),
            currency=model.currency,
            status=TransactionStatus(model.status),
            metadata=dict(model.metadata_ or {}),
            created_at=_as_utc(model.created_at),
            updated_at=_as_utc(model.updated_at),
        )


@dataclass
class ChannelDTO:
    """Data transfer object for gated channels."""

    bot_id: int
    telegram_chat_id: str
    payment_plan_id: int | None = None
    title: str | None = None
    invite_link: str | None = None
    active: bool = True
    id: int | None = None

    @classmethod
    def from_model(cls, model: TelegramGroupModel) -> ChannelDTO:
        """Create DTO from SQLAlchemy model."""
        return cls(
            id=model.id,
            bot_id=model.bot_id,
            telegram_chat_id=model.telegram_chat_id,
            payment_plan_id=model.payment_plan_id,
            title=model.title,
            invite_link=model.invite_link,
            active=model.active,
        )


@dataclass
class MembershipDTO:
    """Data transfer object for recorded channel memberships."""

    channel_id: int
    contact_id: int
    is_member: bool
    transaction_id: int | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, model: ChannelMembershipModel) -> MembershipDTO:
        """Create DTO from SQLAlchemy model."""
        return cls(
            channel_id=model.channel_id,
            contact_id=model.contact_id,
            is_member=model.is_member,
            transaction_id=model.transaction_id,
            updated_at=_as_utc(model.updated_at),
        )


@dataclass
class AlertDTO:
    """Data transfer object for broadcast alerts."""

    bot_id: int
    message: str
    alert_type: AlertType = AlertType.COMMON
    plan_id: int | None = None
    scheduled_date: date | None = None
    scheduled_time: time | None = None
    user_language: str | None = None
    user_category: str = "all"
    file_url: str | None = None
    status: AlertStatus = AlertStatus.ACTIVE
    sent_count: int = 0
    sent_at: datetime | None = None
    id: int | None = None

    @classmethod
    def from_model(cls, model: AlertModel) -> AlertDTO:
        """Create DTO from SQLAlchemy model."""
        return cls(
            id=model.id,
            bot_id=model.bot_id,
            message=model.message,
            alert_type=AlertType(model.alert_type),
            plan_id=model.plan_id,
            scheduled_date=model.scheduled_date,
            scheduled_time=model.scheduled_time,
            user_language=model.user_language,
            user_category=model.user_category,
            file_url=model.file_url,
            status=AlertStatus(model.status),
            sent_count=model.sent_count,
            sent_at=_as_utc(model.sent_at),
        )


@dataclass
class DownsellDTO:
    """Data transfer object for downsell offers."""

    bot_id: int
    message: str
    promotional_value: Decimal
    plan_id: int | None = None
    title: str = ""
    plan_name: str | None = None
    initial_media_url: str | None = None
    quantity_uses: int = 0
    max_uses: int | None = None
    trigger_after_minutes: int = 0
    trigger_event: DownsellEvent = DownsellEvent.PAYMENT_PENDING
    active: bool = True
    id: int | None = None

    @property
    def can_be_used(self) -> bool:
        """Return True if the offer is active and under its usage cap."""
        if not self.active:
            return False
        if self.max_uses is None:
            return True
        return self.quantity_uses < self.max_uses

    @classmethod
    def from_model(cls, model: DownsellModel) -> DownsellDTO:
        """Create DTO from SQLAlchemy model."""
        return cls(
            id=model.id,
            bot_id=model.bot_id,
            plan_id=model.plan_id,
            title=model.title,
            plan_name=model.plan_name,
            message=model.message,
            initial_media_url=model.initial_media_url,
            promotional_value=Decimal(model.promotional_value),
            quantity_uses=model.quantity_uses,
            max_uses=model.max_uses,
            trigger_after_minutes=model.trigger_after_minutes,
            trigger_event=DownsellEvent(model.trigger_event),
            active=model.active,
        )


@dataclass
class ContactActionDTO:
    """Data transfer object for audit trail entries."""

    bot_id: int
    contact_id: int
    action: str
    description: str
    transaction_id: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    status: str = "success"
    created_at: datetime | None = None
    id: int | None = None

    @classmethod
    def from_model(cls, model: ContactActionModel) -> ContactActionDTO:
        """Create DTO from SQLAlchemy model."""
        return cls(
            id=model.id,
            bot_id=model.bot_id,
            contact_id=model.contact_id,
            transaction_id=model.transaction_id,
            action=model.action,
            description=model.description,
            metadata=dict(model.metadata_ or {}),
            status=model.status,
            created_at=_as_utc(model.created_at),
        )


# ============================================================================
# Repositories
# ============================================================================


class BotRepository:
    """Repository for channel bot data access."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, bot_id: int) -> BotDTO | None:
        """Get bot by ID."""
        model = await self.session.get(BotModel, bot_id)
        return BotDTO.from_model(model) if model else None

    async def insert(self, dto: BotDTO) -> BotDTO:
        """Insert a new bot and return it with its ID."""
        model = BotModel(
            name=dto.name, token=dto.token, active=dto.active, activated=dto.activated
        )
        self.session.add(model)
        await self.session.flush()
        return replace(dto, id=model.id)


class ContactRepository:
    """Repository for contact data access."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, contact_id: int) -> ContactDTO | None:
        """Get contact by ID."""
        model = await self.session.get(ContactModel, contact_id)
        return ContactDTO.from_model(model) if model else None

    async def insert(self, dto: ContactDTO) -> ContactDTO:
        """Insert a new contact and return it with its ID."""
        model = ContactModel(
            bot_id=dto.bot_id,
            telegram_id=dto.telegram_id,
            username=dto.username,
            first_name=dto.first_name,
            language=dto.language,
            is_bot=dto.is_bot,
            is_blocked=dto.is_blocked,
            telegram_status=dto.telegram_status,
        )
        self.session.add(model)
        await self.session.flush()
        return replace(dto, id=model.id)

    async def get_alert_recipients(
        self, bot_id: int, language: str | None = None
    ) -> list[ContactDTO]:
        """Get contacts eligible to receive a broadcast.

        Args:
            bot_id: Owning bot.
            language: Optional language filter.

        Returns:
            Reachable human contacts of the bot, ordered by ID.
        """
        stmt = select(ContactModel).where(
            ContactModel.bot_id == bot_id,
            ContactModel.is_bot.is_(False),
            ContactModel.is_blocked.is_(False),
            ContactModel.telegram_status == MESSAGING_ACTIVE,
        )
        if language:
            stmt = stmt.where(ContactModel.language == language)
        result = await self.session.execute(stmt.order_by(ContactModel.id))
        return [ContactDTO.from_model(m) for m in result.scalars().all()]


class TransactionRepository:
    """Repository for transaction data access."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, transaction_id: int, *, for_update: bool = False) -> TransactionDTO | None:
        """Get transaction by ID.

        Args:
            transaction_id: Transaction ID.
            for_update: Lock the row until the surrounding unit of work ends.
        """
        stmt = select(TransactionModel).where(TransactionModel.id == transaction_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        model = result.scalar_one_or_none()
        return TransactionDTO.from_model(model) if model else None

    async def insert(self, dto: TransactionDTO) -> TransactionDTO:
        """Insert a new transaction and return it as stored."""
        model = TransactionModel(
            bot_id=dto.bot_id,
            contact_id=dto.contact_id,
            payment_plan_id=dto.payment_plan_id,
            amount=dto.amount,
            currency=dto.currency,
            status=TransactionStatus(dto.status).value,
            metadata_=dict(dto.metadata),
        )
        self.session.add(model)
        await self.session.flush()
        await self.session.refresh(model)
        return TransactionDTO.from_model(model)

    async def update_status(self, transaction_id: int, status: TransactionStatus) -> bool:
        """Set a transaction's status.

        Returns:
            True if updated, False if not found.
        """
        result = await self.session.execute(
            update(TransactionModel)
            .where(TransactionModel.id == transaction_id)
            .values(status=status.value, updated_at=datetime.now(UTC))
        )
        return result.rowcount > 0


class ChannelRepository:
    """Repository for gated channels and their recorded memberships."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, channel_id: int) -> ChannelDTO | None:
        """Get channel by ID."""
        model = await self.session.get(TelegramGroupModel, channel_id)
        return ChannelDTO.from_model(model) if model else None

    async def insert(self, dto: ChannelDTO) -> ChannelDTO:
        """Insert a new gated channel and return it with its ID."""
        model = TelegramGroupModel(
            bot_id=dto.bot_id,
            telegram_chat_id=dto.telegram_chat_id,
            payment_plan_id=dto.payment_plan_id,
            title=dto.title,
            invite_link=dto.invite_link,
            active=dto.active,
        )
        self.session.add(model)
        await self.session.flush()
        return replace(dto, id=model.id)

    async def get_for_plan(self, bot_id: int, plan_id: int | None) -> list[ChannelDTO]:
        """Get active channels gating a plan.

        Channels bound to the plan come first, followed by the bot's channels
        that are not bound to any plan.
        """
        plan_filter = TelegramGroupModel.payment_plan_id.is_(None)
        if plan_id is not None:
            plan_filter = or_(TelegramGroupModel.payment_plan_id == plan_id, plan_filter)
        result = await self.session.execute(
            select(TelegramGroupModel)
            .where(
                TelegramGroupModel.bot_id == bot_id,
                TelegramGroupModel.active.is_(True),
                plan_filter,
            )
            .order_by(TelegramGroupModel.payment_plan_id.is_(None), TelegramGroupModel.id)
        )
        return [ChannelDTO.from_model(m) for m in result.scalars().all()]

    async def cache_invite_link(self, channel_id: int, invite_link: str) -> str:
        """Store an invite link unless one is already cached.

        Returns:
            The link stored on the channel after the call.
        """
        await self.session.execute(
            update(TelegramGroupModel)
            .where(
                TelegramGroupModel.id == channel_id,
                TelegramGroupModel.invite_link.is_(None),
            )
            .values(invite_link=invite_link)
        )
        result = await self.session.execute(
            select(TelegramGroupModel.invite_link).where(TelegramGroupModel.id == channel_id)
        )
        return result.scalar_one_or_none() or invite_link

    async def get_membership(self, channel_id: int, contact_id: int) -> MembershipDTO | None:
        """Get the recorded membership of a contact in a channel."""
        result = await self.session.execute(
            select(ChannelMembershipModel).where(
                ChannelMembershipModel.channel_id == channel_id,
                ChannelMembershipModel.contact_id == contact_id,
            )
        )
        model = result.scalar_one_or_none()
        return MembershipDTO.from_model(model) if model else None

    async def set_membership(
        self,
        channel_id: int,
        contact_id: int,
        *,
        is_member: bool,
        transaction_id: int | None = None,
    ) -> MembershipDTO:
        """Insert or update the recorded membership of a contact."""
        now = datetime.now(UTC)
        values = {
            "channel_id": channel_id,
            "contact_id": contact_id,
            "is_member": is_member,
            "transaction_id": transaction_id,
            "updated_at": now,
        }

        dialect = self.session.get_bind().dialect.name
        insert = pg_insert if dialect == "postgresql" else sqlite_insert
        stmt = insert(ChannelMembershipModel).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["channel_id", "contact_id"],
            set_={
                "is_member": stmt.excluded.is_member,
                "transaction_id": stmt.excluded.transaction_id,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        await self.session.execute(stmt)
        await self.session.flush()
        return MembershipDTO(**values)


class AlertRepository:
    """Repository for broadcast alert data access."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, alert_id: int) -> AlertDTO | None:
        """Get alert by ID."""
        model = await self.session.get(AlertModel, alert_id)
        return AlertDTO.from_model(model) if model else None

    async def insert(self, dto: AlertDTO) -> AlertDTO:
        """Insert a new alert and return it with its ID."""
        model = AlertModel(
            bot_id=dto.bot_id,
            plan_id=dto.plan_id,
            alert_type=AlertType(dto.alert_type).value,
            message=dto.message,
            scheduled_date=dto.scheduled_date,
            scheduled_time=dto.scheduled_time,
            user_language=dto.user_language,
            user_category=dto.user_category,
            file_url=dto.file_url,
            status=AlertStatus(dto.status).value,
            sent_count=dto.sent_count,
        )
        self.session.add(model)
        await self.session.flush()
        return replace(dto, id=model.id)

    async def get_eligible(
        self, today: date, now: time, bot_id: int | None = None
    ) -> list[AlertDTO]:
        """Get active alerts that are due.

        Common alerts are always due. Scheduled alerts are due when their
        date is today or earlier and their time, if set, is not later than now.

        Args:
            today: Current local date.
            now: Current local wall-clock time (naive).
            bot_id: Optional bot filter.

        Returns:
            Due alerts in retrieval (ID) order.
        """
        stmt = select(AlertModel).where(
            AlertModel.status == AlertStatus.ACTIVE.value,
            or_(
                AlertModel.alert_type == AlertType.COMMON.value,
                and_(
                    AlertModel.alert_type == AlertType.SCHEDULED.value,
                    AlertModel.scheduled_date <= today,
                    or_(AlertModel.scheduled_time.is_(None), AlertModel.scheduled_time <= now),
                ),
            ),
        )
        if bot_id is not None:
            stmt = stmt.where(AlertModel.bot_id == bot_id)
        result = await self.session.execute(stmt.order_by(AlertModel.id))
        return [AlertDTO.from_model(m) for m in result.scalars().all()]

    async def claim_scheduled(self, alert_id: int) -> bool:
        """Atomically move a scheduled alert from active to sent.

        Returns:
            True if this call made the transition, False if another did.
        """
        result = await self.session.execute(
            update(AlertModel)
            .where(
                AlertModel.id == alert_id,
                AlertModel.alert_type == AlertType.SCHEDULED.value,
                AlertModel.status == AlertStatus.ACTIVE.value,
            )
            .values(status=AlertStatus.SENT.value)
        )
        return result.rowcount == 1

    async def record_delivery(self, alert_id: int) -> None:
        """Count one delivered message for an alert."""
        await self.session.execute(
            update(AlertModel)
            .where(AlertModel.id == alert_id)
            .values(sent_count=AlertModel.sent_count + 1, sent_at=datetime.now(UTC))
        )


class DownsellRepository:
    """Repository for downsell offer data access."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, downsell_id: int) -> DownsellDTO | None:
        """Get downsell by ID."""
        model = await self.session.get(DownsellModel, downsell_id)
        return DownsellDTO.from_model(model) if model else None

    async def insert(self, dto: DownsellDTO) -> DownsellDTO:
        """Insert a new downsell and return it with its ID."""
        model = DownsellModel(
            bot_id=dto.bot_id,
            plan_id=dto.plan_id,
            title=dto.title,
            plan_name=dto.plan_name,
            message=dto.message,
            initial_media_url=dto.initial_media_url,
            promotional_value=dto.promotional_value,
            quantity_uses=dto.quantity_uses,
            max_uses=dto.max_uses,
            trigger_after_minutes=dto.trigger_after_minutes,
            trigger_event=DownsellEvent(dto.trigger_event).value,
            active=dto.active,
        )
        self.session.add(model)
        await self.session.flush()
        return replace(dto, id=model.id)

    async def find_applicable(
        self, bot_id: int, plan_id: int | None, event: DownsellEvent
    ) -> DownsellDTO | None:
        """Get the first usable downsell for a bot, plan and trigger event."""
        stmt = select(DownsellModel).where(
            DownsellModel.bot_id == bot_id,
            DownsellModel.trigger_event == event.value,
            DownsellModel.active.is_(True),
            or_(
                DownsellModel.max_uses.is_(None),
                DownsellModel.quantity_uses < DownsellModel.max_uses,
            ),
        )
        if plan_id is None:
            stmt = stmt.where(DownsellModel.plan_id.is_(None))
        else:
            stmt = stmt.where(DownsellModel.plan_id == plan_id)
        result = await self.session.execute(stmt.order_by(DownsellModel.id).limit(1))
        model = result.scalar_one_or_none()
        return DownsellDTO.from_model(model) if model else None

    async def claim_usage(self, downsell_id: int) -> bool:
        """Atomically count one use while the downsell is still usable.

        Returns:
            True if the use was counted, False if the offer is inactive or
            its cap was already reached.
        """
        result = await self.session.execute(
            update(DownsellModel)
            .where(
                DownsellModel.id == downsell_id,
                DownsellModel.active.is_(True),
                or_(
                    DownsellModel.max_uses.is_(None),
                    DownsellModel.quantity_uses < DownsellModel.max_uses,
                ),
            )
            .values(quantity_uses=DownsellModel.quantity_uses + 1)
        )
        return result.rowcount == 1


class ContactActionRepository:
    """Repository for the contact action audit trail."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def record(self, dto: ContactActionDTO) -> ContactActionDTO:
        """Append an audit entry."""
        model = ContactActionModel(
            bot_id=dto.bot_id,
            contact_id=dto.contact_id,
            transaction_id=dto.transaction_id,
            action=dto.action,
            description=dto.description,
            metadata_=dict(dto.metadata),
            status=dto.status,
        )
        self.session.add(model)
        await self.session.flush()
        return replace(dto, id=model.id)

    async def list_for_contact(self, contact_id: int, limit: int = 100) -> list[ContactActionDTO]:
        """Get audit entries of a contact, oldest first."""
        result = await self.session.execute(
            select(ContactActionModel)
            .where(ContactActionModel.contact_id == contact_id)
            .order_by(ContactActionModel.id.asc())
            .limit(limit)
        )
        return [ContactActionDTO.from_model(m) for m in result.scalars().all()]
