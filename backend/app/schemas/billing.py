"""Billing history, refund and webhook schemas."""

from datetime import datetime
from decimal import Decimal
from typing import Any, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class BillingHistoryResponse(BaseModel):
    """Ledger row response schema."""

    id: UUID
    subscription_id: UUID
    invoice_number: str
    remote_transaction_id: Optional[str] = None
    remote_sale_id: Optional[str] = None
    amount: Decimal
    currency: str
    status: str = Field(..., description="paid, pending, failed, refunded, partially_refunded")
    payment_date: datetime
    refunded_amount: Optional[Decimal] = None
    refunded_date: Optional[datetime] = None
    refund_reason: Optional[str] = None
    invoice_url: Optional[str] = None
    created_at: datetime

    class Config:
        """Pydantic config."""

        from_attributes = True


class AdminPaymentResponse(BillingHistoryResponse):
    """Ledger row with its owner for the admin payment views."""

    user_id: UUID
    user_email: str
    plan_type: str
    remote_subscription_id: Optional[str] = None


class BillingHistoryItemResponse(BillingHistoryResponse):
    """Ledger row with the provider subscription link."""

    subscription_url: Optional[str] = None


class RefundRequest(BaseModel):
    """Admin refund request. Omit amount to refund the remainder."""

    amount: Optional[Decimal] = Field(None, gt=0, decimal_places=2)
    reason: Optional[str] = Field(None, max_length=500)


class RefundResponse(BaseModel):
    """Admin refund response."""

    entry: BillingHistoryResponse
    refund_id: str
    refund_status: str
    full_refund: bool
    subscription_cancelled: bool
    warning: Optional[str] = None


class ManualPaymentRequest(BaseModel):
    """Ledger row entered by an administrator."""

    subscription_id: UUID
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    payment_date: datetime
    status: Literal["paid", "pending", "failed"] = "paid"
    remote_transaction_id: Optional[str] = None
    remote_sale_id: Optional[str] = None


class PaymentStatsResponse(BaseModel):
    """Ledger aggregates."""

    payments_by_status: dict[str, int]
    total_revenue: Decimal
    total_refunded: Decimal
    net_revenue: Decimal
    subscriptions_by_status: dict[str, int]


class PaymentSyncResponse(BaseModel):
    """Result of syncing one subscription."""

    subscription_id: str
    synced: int
    skipped: int


class PaymentSyncAllResponse(BaseModel):
    """Result of syncing all subscriptions."""

    subscriptions: int
    synced: int
    failed: int
    errors: list[dict[str, str]]


class WebhookAckResponse(BaseModel):
    """Acknowledgement returned to the provider."""

    received: bool = True
    duplicate: bool = False


class WebhookEventResponse(BaseModel):
    """Stored webhook event."""

    id: UUID
    provider_event_id: str
    event_type: str
    event_time: Optional[datetime] = None
    processed: bool
    processed_at: Optional[datetime] = None
    error: Optional[str] = None
    attempts: int
    created_at: datetime
    payload: Optional[dict[str, Any]] = None

    class Config:
        """Pydantic config."""

        from_attributes = True
