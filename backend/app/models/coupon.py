"""Trial coupon database model."""

import uuid
from datetime import datetime

from sqlalchemy import Boolean, CheckConstraint, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from app.core.database import Base


class Coupon(Base):
    """Trial-granting coupon code."""

    __tablename__ = "coupons"
    __table_args__ = (
        CheckConstraint(
            "max_uses IS NULL OR current_uses <= max_uses",
            name="ck_coupons_uses_within_max",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
        index=True,
    )
    code: Mapped[str] = mapped_column(
        String(64),
        unique=True,
        nullable=False,
        index=True,
    )  # Stored upper-case
    description: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    trial_days: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    valid_from: Mapped[datetime | None] = mapped_column(
        nullable=True,
    )
    valid_until: Mapped[datetime | None] = mapped_column(
        nullable=True,
    )
    max_uses: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
    )  # null = unlimited
    current_uses: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
    )

    created_at: Mapped[datetime] = mapped_column(
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        """String representation."""
        return f"<Coupon {self.code} {self.current_uses}/{self.max_uses or 'unlimited'}>"
