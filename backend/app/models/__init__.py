"""SQLAlchemy database models."""

from app.models.user import User
from app.models.coupon import Coupon
from app.models.subscription import PlanType, Subscription, SubscriptionStatus
from app.models.billing_history import BillingHistory, BillingStatus
from app.models.payment_webhook import PaymentWebhookEvent
from app.models.superseded_remote_subscription import (
    SupersededRemoteSubscription,
    SupersededState,
)

__all__ = [
    "User",
    "Coupon",
    "PlanType",
    "Subscription",
    "SubscriptionStatus",
    "BillingHistory",
    "BillingStatus",
    "PaymentWebhookEvent",
    "SupersededRemoteSubscription",
    "SupersededState",
]
