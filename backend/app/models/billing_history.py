"""Billing history (payment ledger) database model."""

import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import ForeignKey, Numeric, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from app.core.database import Base


class BillingStatus(str, Enum):
    """Billing history entry status enumeration."""

    PAID = "paid"
    PENDING = "pending"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


class BillingHistory(Base):
    """Append-only ledger row for a subscription charge."""

    __tablename__ = "billing_history"

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

    invoice_number: Mapped[str] = mapped_column(
        String(64),
        unique=True,
        nullable=False,
    )
    remote_transaction_id: Mapped[str | None] = mapped_column(
        String(255),
        unique=True,
        nullable=True,
        index=True,
    )  # Unique: the same provider charge is never recorded twice
    remote_sale_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        index=True,
    )  # Sale/capture id used for refunds

    amount: Mapped[Decimal] = mapped_column(
        Numeric(10, 2),
        nullable=False,
    )
    currency: Mapped[str] = mapped_column(
        String(3),
        nullable=False,
        default="USD",
    )
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        index=True,
    )
    payment_date: Mapped[datetime] = mapped_column(
        nullable=False,
    )

    # Refunds
    refunded_amount: Mapped[Decimal | None] = mapped_column(
        Numeric(10, 2),
        nullable=True,
    )
    refunded_date: Mapped[datetime | None] = mapped_column(
        nullable=True,
    )
    refund_reason: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    remote_refund_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )

    invoice_url: Mapped[str | None] = mapped_column(
        String(512),
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        server_default=func.now(),
        nullable=False,
    )

    subscription: Mapped["Subscription"] = relationship(  # type: ignore
        "Subscription",
        back_populates="billing_history",
        lazy="raise",
    )

    def __repr__(self) -> str:
        """String representation."""
        return f"<BillingHistory {self.invoice_number} {self.amount}{self.currency} {self.status}>"
