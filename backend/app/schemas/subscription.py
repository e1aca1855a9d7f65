"""Subscription request/response schemas."""

from datetime import datetime
from decimal import Decimal
from typing import Literal, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class SubscriptionResponse(BaseModel):
    """Subscription response schema."""

    id: UUID
    user_id: UUID
    plan_type: str = Field(..., description="Plan type (monthly, annual, free, trial)")
    status: str = Field(
        ...,
        description="Status (trial, trialing, active, suspended, cancelled, expired, free)",
    )
    remote_subscription_id: Optional[str] = Field(None, description="Provider subscription ID")
    remote_plan_id: Optional[str] = Field(None, description="Provider plan ID")
    start_date: datetime
    end_date: Optional[datetime] = Field(None, description="Renewal or grant expiry date")
    trial_end_date: Optional[datetime] = Field(None, description="Provider trial end")
    price: Decimal
    currency: str
    coupon_code: Optional[str] = None
    is_free_access: bool
    is_trial_coupon: bool
    status_changed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        """Pydantic config."""

        from_attributes = True


class AccessResponse(BaseModel):
    """Derived access decision."""

    has_full_access: bool
    expiration_date: Optional[datetime] = None
    display_status: str = Field(..., description="active, trial, expired or none")


class SubscriptionStatusResponse(BaseModel):
    """Subscription with derived access facts."""

    subscription: Optional[SubscriptionResponse] = None
    access: AccessResponse
    user_status: str = Field(
        ..., description="Free trial, Active user (Paid), Churned or Free access"
    )
    has_paid_history: bool
    trial_end_date: Optional[datetime] = None
    manage_url: Optional[str] = Field(None, description="Provider subscription management link")


class CheckAccessResponse(BaseModel):
    """Access check response."""

    has_access: bool
    access: AccessResponse
    user_status: str


class TrialCheckResponse(BaseModel):
    """Trial expiration check response."""

    expired: bool
    subscription: SubscriptionResponse


class ClientConfigResponse(BaseModel):
    """Provider configuration needed by the checkout button."""

    client_id: str
    mode: str
    plans: dict[str, str] = Field(..., description="Plan type to provider plan ID")
    prices: dict[str, Decimal]
    currency: str


class LinkSubscriptionRequest(BaseModel):
    """Link a provider subscription approved by the user."""

    subscription_id: str = Field(..., min_length=1, max_length=255, description="Provider subscription ID")
    plan_type: Literal["monthly", "annual"]


class CancelSubscriptionRequest(BaseModel):
    """Cancel request."""

    reason: Optional[str] = Field(None, max_length=500)


class CancelSubscriptionResponse(BaseModel):
    """Cancel response."""

    subscription: SubscriptionResponse
    remote_cancelled: bool
    warning: Optional[str] = None


class RedeemCouponRequest(BaseModel):
    """Coupon redemption request."""

    code: str = Field(..., min_length=1, max_length=64)


class GrantFreeAccessRequest(BaseModel):
    """Admin free access grant. Either end_date or days."""

    end_date: Optional[datetime] = None
    days: Optional[int] = Field(None, ge=1, le=3650)


class AdminActionRequest(BaseModel):
    """Admin action with an optional reason."""

    reason: Optional[str] = Field(None, max_length=500)


class SweepResponse(BaseModel):
    """Trial sweep result."""

    examined: int
    updated: int
    errors: int


class SubscriptionOwner(BaseModel):
    """User summary shown next to a subscription."""

    id: UUID
    email: str
    full_name: Optional[str] = None
    created_at: datetime

    class Config:
        """Pydantic config."""

        from_attributes = True


class AdminSubscriptionResponse(BaseModel):
    """Subscription row in the admin overview."""

    subscription: SubscriptionResponse
    user: SubscriptionOwner
    user_status: str = Field(
        ..., description="Free trial, Active user (Paid), Churned or Free access"
    )
    has_full_access: bool
    has_paid_history: bool
    is_provider_trial: bool = Field(
        ..., description="Live provider subscription that has not been charged yet"
    )
    trial_end_date: Optional[datetime] = None


class SubscriptionStatsResponse(BaseModel):
    """Subscription counts for the admin dashboard."""

    total_subscriptions: int
    active_paid: int
    provider_trials: int
    coupon_trials: int
    free_access: int
    churned: int
    cancelled: int
    by_user_status: dict[str, int]
    total_revenue: Decimal
    net_revenue: Decimal
