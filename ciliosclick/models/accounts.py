"""
SQLAlchemy models for the pre-provisioned account pool.
"""
import enum
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    ForeignKey,
    Index,
    String,
    Text,
    TIMESTAMP,
    Uuid,
    func,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class AccountStatusEnum(enum.Enum):
    """Pre-provisioned account status."""
    AVAILABLE = "available"
    OCCUPIED = "occupied"
    SUSPENDED = "suspended"

    def __str__(self):
        return self.value


class PreProvisionedAccount(Base):
    """Login credential created ahead of demand and handed to a buyer on purchase."""

    __tablename__ = "pre_users"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    username: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        unique=True,
        comment="Login username, e.g. user0001"
    )
    email: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        unique=True,
        comment="Login email of the account"
    )
    password_hash: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="scrypt hash of the temporary password issued on allocation"
    )
    status: Mapped[str] = mapped_column(
        String(20),  # String instead of Enum, like the other status columns
        nullable=False,
        default=AccountStatusEnum.AVAILABLE.value,
        index=True,
        comment="available, occupied or suspended"
    )
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
        index=True,
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False
    )


class AllocationRecord(Base):
    """Binding of a pre-provisioned account to one purchase transaction."""

    __tablename__ = "user_assignments"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    pre_user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("pre_users.id"),
        nullable=False,
        index=True,
    )
    buyer_email: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        index=True,
    )
    buyer_name: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )
    transaction_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        unique=True,
        comment="Hotmart purchase.transaction, idempotency key"
    )
    notification_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        comment="Hotmart delivery id of the originating notification"
    )
    event: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        comment="Event that created the allocation"
    )
    assigned_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False
    )
    expires_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=True,
    )
    released_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=True,
        comment="Set when the allocation is closed by a release"
    )
    release_event: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
    )
    note: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )

    __table_args__ = (
        # One open allocation per account
        Index(
            "uq_user_assignments_open_account",
            "pre_user_id",
            unique=True,
            postgresql_where=text("released_at IS NULL"),
            sqlite_where=text("released_at IS NULL"),
        ),
    )

    @property
    def is_open(self) -> bool:
        return self.released_at is None
