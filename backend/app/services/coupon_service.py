"""Trial coupon redemption."""

import uuid
from datetime import datetime, timedelta
from decimal import Decimal

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import CouponUnavailableError, InvalidTransitionError
from app.crud import coupon as coupon_crud
from app.crud import subscription as subscription_crud
from app.models.coupon import Coupon
from app.models.subscription import PlanType, Subscription, SubscriptionStatus
from app.services.notification_service import NotificationEmitter
from app.services.subscription_state import (
    SubscriptionEvent,
    decide_transition,
    derive_access,
    utcnow,
)

logger = structlog.get_logger()


class CouponService:
    """Validates and redeems trial coupons."""

    def __init__(self, db: AsyncSession, notifier: NotificationEmitter | None = None):
        self.db = db
        self.notifier = notifier or NotificationEmitter()

    async def validate(self, code: str, now: datetime | None = None) -> Coupon:
        """
        Check that a coupon can be redeemed right now.

        Args:
            code: Coupon code in any case
            now: Evaluation time

        Returns:
            The coupon

        Raises:
            CouponUnavailableError: Missing, inactive, outside its validity
                window, or out of uses
        """
        now = now or utcnow()
        coupon = await coupon_crud.get_coupon_by_code(self.db, code)
        if coupon is None:
            raise CouponUnavailableError("Invalid coupon code")
        if not coupon.is_active:
            raise CouponUnavailableError("This coupon is no longer active")
        if coupon.valid_from is not None and now < coupon.valid_from:
            raise CouponUnavailableError("This coupon is not valid yet")
        if coupon.valid_until is not None and now > coupon.valid_until:
            raise CouponUnavailableError("This coupon has expired")
        if coupon.max_uses is not None and coupon.current_uses >= coupon.max_uses:
            raise CouponUnavailableError("This coupon has reached its usage limit")
        return coupon

    async def redeem(
        self, user_id: uuid.UUID, code: str, now: datetime | None = None
    ) -> Subscription:
        """
        Redeem a coupon into a local trial subscription.

        The use-counter claim and the subscription write are committed as a
        single transaction; if the subscription write fails the claim is
        rolled back with it.

        Args:
            user_id: Redeeming user
            code: Coupon code
            now: Evaluation time

        Returns:
            The trial subscription

        Raises:
            InvalidTransitionError: User already has full access
            CouponUnavailableError: Coupon cannot be redeemed
        """
        now = now or utcnow()
        subscription = await subscription_crud.get_subscription_by_user_id(self.db, user_id)
        if derive_access(subscription, now).has_full_access:
            raise InvalidTransitionError(
                "You already have an active subscription",
                current_status=subscription.status,
                code="ACTIVE_SUBSCRIPTION_EXISTS",
            )

        coupon = await self.validate(code, now)
        if subscription is not None and subscription.coupon_id == coupon.id:
            raise CouponUnavailableError("You have already redeemed this coupon")

        coupon_id = coupon.id
        coupon_code = coupon.code
        trial_days = coupon.trial_days

        claimed = await coupon_crud.claim_coupon_use(self.db, coupon_id)
        if not claimed:
            await self.db.rollback()
            raise CouponUnavailableError("This coupon has reached its usage limit")

        fields = dict(
            plan_type=PlanType.TRIAL.value,
            start_date=now,
            end_date=now + timedelta(days=trial_days),
            trial_end_date=None,
            price=Decimal("0"),
            coupon_code=coupon_code,
            coupon_id=coupon_id,
            is_trial_coupon=True,
            is_free_access=False,
            granted_by_admin_id=None,
        )

        try:
            if subscription is None:
                subscription = Subscription(
                    user_id=user_id,
                    status=SubscriptionStatus.TRIAL.value,
                    status_changed_at=now,
                    **fields,
                )
                self.db.add(subscription)
                await self.db.commit()
                await self.db.refresh(subscription)
            else:
                transition = decide_transition(subscription, SubscriptionEvent.COUPON_REDEEMED)
                subscription = await subscription_crud.transition_status(
                    self.db,
                    subscription,
                    transition.next_status,
                    expected_status=transition.previous_status,
                    **fields,
                )
        except Exception:
            await self.db.rollback()
            logger.error("coupon.redeem_failed", user_id=str(user_id), coupon=coupon_code)
            raise

        logger.info(
            "coupon.redeemed",
            user_id=str(user_id),
            coupon=coupon_code,
            trial_days=trial_days,
            subscription_id=str(subscription.id),
        )
        await self.notifier.emit_status_updated(
            user_id, subscription.id, subscription.status, subscription.plan_type
        )
        return subscription
