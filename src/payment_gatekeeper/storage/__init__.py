"""Storage layer - SQLAlchemy models, DTOs and repositories."""

from payment_gatekeeper.storage.database import (
    SessionFactory,
    create_engine,
    create_session_factory,
    init_db,
)
from payment_gatekeeper.storage.repos import (
    AlertDTO,
    AlertRepository,
    BotDTO,
    BotRepository,
    ChannelDTO,
    ChannelRepository,
    ContactActionDTO,
    ContactActionRepository,
    ContactDTO,
    ContactRepository,
    DownsellDTO,
    DownsellRepository,
    MembershipDTO,
    TransactionDTO,
    TransactionRepository,
    UnsavedRecordError,
    require_id,
)

__all__ = [
    "AlertDTO",
    "AlertRepository",
    "BotDTO",
    "BotRepository",
    "ChannelDTO",
    "ChannelRepository",
    "ContactActionDTO",
    "ContactActionRepository",
    "ContactDTO",
    "ContactRepository",
    "DownsellDTO",
    "DownsellRepository",
    "MembershipDTO",
    "SessionFactory",
    "TransactionDTO",
    "TransactionRepository",
    "UnsavedRecordError",
    "create_engine",
    "create_session_factory",
    "init_db",
    "require_id",
]
