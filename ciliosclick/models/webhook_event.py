"""
Audit log of every inbound webhook delivery.
"""
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, Index, LargeBinary, String, Text, TIMESTAMP, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from ciliosclick.models.accounts import Base, utcnow


class WebhookEvent(Base):
    """Raw webhook delivery, stored before any processing."""

    __tablename__ = "webhook_events"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    source: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        index=True,
    )
    event_type: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        index=True,
    )
    raw_payload: Mapped[bytes] = mapped_column(
        LargeBinary,
        nullable=False,
        comment="Request body exactly as received"
    )
    signature_valid: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
    )
    received_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
        index=True,
    )
    processed: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
    )
    processed_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=True,
    )
    error_message: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )

    __table_args__ = (
        Index("ix_webhook_events_processed_received", "processed", "received_at"),
    )
