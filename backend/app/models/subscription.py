"""Subscription database model."""

import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import Boolean, ForeignKey, Numeric, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from app.core.database import Base


class PlanType(str, Enum):
    """Plan type enumeration."""

    MONTHLY = "monthly"
    ANNUAL = "annual"
    FREE = "free"
    TRIAL = "trial"


class SubscriptionStatus(str, Enum):
    """Subscription status enumeration."""

    TRIAL = "trial"  # Local coupon trial
    TRIALING = "trialing"  # Provider-side trial window
    ACTIVE = "active"
    SUSPENDED = "suspended"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    FREE = "free"  # Admin-granted free access


class Subscription(Base):
    """One subscription per user, mirrored against the billing provider."""

    __tablename__ = "subscriptions"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
        index=True,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
        index=True,
    )

    plan_type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
    )  # monthly, annual, free, trial
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        index=True,
    )
    status_changed_at: Mapped[datetime | None] = mapped_column(
        nullable=True,
    )  # Last applied status transition

    # Provider data
    remote_subscription_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        unique=True,
        index=True,
    )  # null for free/coupon access
    remote_plan_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )

    # Billing period
    start_date: Mapped[datetime] = mapped_column(
        nullable=False,
    )
    end_date: Mapped[datetime | None] = mapped_column(
        nullable=True,
    )  # Renewal date for paid plans, expiry for grants
    trial_end_date: Mapped[datetime | None] = mapped_column(
        nullable=True,
    )

    price: Mapped[Decimal] = mapped_column(
        Numeric(10, 2),
        nullable=False,
        default=0,
    )
    currency: Mapped[str] = mapped_column(
        String(3),
        nullable=False,
        default="USD",
    )

    # Coupons and grants
    coupon_code: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
    )
    coupon_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("coupons.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    is_free_access: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    is_trial_coupon: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    granted_by_admin_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    # Relationships (ledger is always queried explicitly, never lazy-loaded)
    billing_history: Mapped[list["BillingHistory"]] = relationship(  # type: ignore
        "BillingHistory",
        back_populates="subscription",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="raise",
    )

    def __repr__(self) -> str:
        """String representation."""
        return f"<Subscription user_id={self.user_id} plan={self.plan_type} status={self.status}>"
