"""Superseded remote subscription model (pending upgrade cleanup)."""

import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import ForeignKey, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from app.core.database import Base


class SupersededState(str, Enum):
    """Cleanup state enumeration."""

    PENDING = "pending"
    CANCELLED = "cancelled"
    FAILED = "failed"  # Needs manual follow-up


class SupersededRemoteSubscription(Base):
    """Old remote subscription kept alive until its replacement is paid."""

    __tablename__ = "superseded_remote_subscriptions"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
        index=True,
    )
    subscription_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("subscriptions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    remote_subscription_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        index=True,
    )
    plan_type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
    )
    replaced_by_remote_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    state: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=SupersededState.PENDING.value,
        index=True,
    )
    last_error: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        server_default=func.now(),
        nullable=False,
    )
    resolved_at: Mapped[datetime | None] = mapped_column(
        nullable=True,
    )

    def __repr__(self) -> str:
        """String representation."""
        return f"<SupersededRemoteSubscription {self.remote_subscription_id} {self.state}>"
