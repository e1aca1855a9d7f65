"""Coupon request/response schemas."""

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field

from app.schemas.subscription import SubscriptionResponse


class CouponBase(BaseModel):
    """Shared coupon fields."""

    description: Optional[str] = Field(None, max_length=500)
    trial_days: int = Field(..., ge=1, le=365, description="Trial length granted on redemption")
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    max_uses: Optional[int] = Field(None, ge=1, description="null = unlimited")
    is_active: bool = True


class CouponCreate(CouponBase):
    """Coupon creation schema."""

    code: str = Field(..., min_length=3, max_length=64, pattern=r"^[A-Za-z0-9_-]+$")


class CouponUpdate(BaseModel):
    """Coupon update schema."""

    code: Optional[str] = Field(None, min_length=3, max_length=64, pattern=r"^[A-Za-z0-9_-]+$")
    description: Optional[str] = Field(None, max_length=500)
    trial_days: Optional[int] = Field(None, ge=1, le=365)
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    max_uses: Optional[int] = Field(None, ge=1)
    is_active: Optional[bool] = None


class CouponResponse(CouponBase):
    """Coupon response schema."""

    id: UUID
    code: str
    current_uses: int
    created_at: datetime
    updated_at: datetime

    class Config:
        """Pydantic config."""

        from_attributes = True


class CouponUsageResponse(BaseModel):
    """Coupon with the subscriptions created from it."""

    coupon: CouponResponse
    redemptions: list[SubscriptionResponse]
