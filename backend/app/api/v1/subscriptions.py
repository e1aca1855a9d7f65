"""Subscription API endpoints."""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_billing_gateway, get_current_active_user, get_notifier
from app.core.config import settings
from app.core.database import get_db
from app.core.exceptions import BillingError
from app.core.rate_limit import coupon_redeem_limit
from app.crud import subscription as subscription_crud
from app.models.subscription import PlanType
from app.models.user import User
from app.schemas.billing import BillingHistoryItemResponse, BillingHistoryResponse
from app.schemas.subscription import (
    AccessResponse,
    CancelSubscriptionRequest,
    CancelSubscriptionResponse,
    CheckAccessResponse,
    ClientConfigResponse,
    LinkSubscriptionRequest,
    RedeemCouponRequest,
    SubscriptionResponse,
    SubscriptionStatusResponse,
    TrialCheckResponse,
)
from app.services.billing_gateway import BillingGatewayClient
from app.services.coupon_service import CouponService
from app.services.notification_service import NotificationEmitter
from app.services.subscription_service import SubscriptionOverview, SubscriptionService
from app.services.trial_sweeper import TrialSweeper

logger = logging.getLogger(__name__)

router = APIRouter()


def _status_response(overview: SubscriptionOverview) -> SubscriptionStatusResponse:
    return SubscriptionStatusResponse(
        subscription=(
            SubscriptionResponse.model_validate(overview.subscription)
            if overview.subscription is not None
            else None
        ),
        access=AccessResponse(
            has_full_access=overview.access.has_full_access,
            expiration_date=overview.access.expiration_date,
            display_status=overview.access.display_status,
        ),
        user_status=overview.user_status.value,
        has_paid_history=overview.has_paid_history,
        trial_end_date=overview.trial_end_date,
        manage_url=overview.manage_url,
    )


@router.get("/status", response_model=SubscriptionStatusResponse)
async def get_subscription_status(
    current_user: Annotated[User, Depends(get_current_active_user)],
    db: Annotated[AsyncSession, Depends(get_db)],
    gateway: Annotated[BillingGatewayClient, Depends(get_billing_gateway)],
    notifier: Annotated[NotificationEmitter, Depends(get_notifier)],
) -> SubscriptionStatusResponse:
    """Get the current user's subscription with derived access and status."""
    service = SubscriptionService(db, gateway, notifier)
    overview = await service.get_status(current_user.id)
    return _status_response(overview)


@router.get("/client-config", response_model=ClientConfigResponse)
async def get_client_config(
    gateway: Annotated[BillingGatewayClient, Depends(get_billing_gateway)],
) -> ClientConfigResponse:
    """Provider client id and plan ids for the checkout button.

    Raises:
        HTTPException: 503 if provider credentials are not configured
    """
    if not gateway.client_id:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Billing provider is not configured",
        )
    return ClientConfigResponse(
        client_id=gateway.client_id,
        mode=settings.PAYPAL_MODE,
        plans={
            PlanType.MONTHLY.value: gateway.plan_id_for(PlanType.MONTHLY.value),
            PlanType.ANNUAL.value: gateway.plan_id_for(PlanType.ANNUAL.value),
        },
        prices={
            PlanType.MONTHLY.value: settings.PLAN_PRICE_MONTHLY,
            PlanType.ANNUAL.value: settings.PLAN_PRICE_ANNUAL,
        },
        currency=settings.BILLING_CURRENCY,
    )


@router.post("/link", response_model=SubscriptionResponse)
async def link_subscription(
    link_in: LinkSubscriptionRequest,
    current_user: Annotated[User, Depends(get_current_active_user)],
    db: Annotated[AsyncSession, Depends(get_db)],
    gateway: Annotated[BillingGatewayClient, Depends(get_billing_gateway)],
    notifier: Annotated[NotificationEmitter, Depends(get_notifier)],
) -> SubscriptionResponse:
    """
    Link a provider subscription after the user approved it at checkout.

    Args:
        link_in: Provider subscription id and plan type

    Returns:
        Linked subscription
    """
    service = SubscriptionService(db, gateway, notifier)
    subscription = await service.link_remote_subscription(
        current_user.id, link_in.subscription_id, link_in.plan_type
    )
    logger.info(f"Subscription {subscription.id} linked for user {current_user.id}")
    return SubscriptionResponse.model_validate(subscription)


@router.post("/cancel", response_model=CancelSubscriptionResponse)
async def cancel_subscription(
    cancel_in: CancelSubscriptionRequest,
    current_user: Annotated[User, Depends(get_current_active_user)],
    db: Annotated[AsyncSession, Depends(get_db)],
    gateway: Annotated[BillingGatewayClient, Depends(get_billing_gateway)],
    notifier: Annotated[NotificationEmitter, Depends(get_notifier)],
) -> CancelSubscriptionResponse:
    """
    Cancel the current user's subscription.

    The local subscription is cancelled even if the provider call fails;
    the response then carries a warning.
    """
    service = SubscriptionService(db, gateway, notifier)
    result = await service.cancel_subscription(current_user.id, cancel_in.reason)
    return CancelSubscriptionResponse(
        subscription=SubscriptionResponse.model_validate(result.subscription),
        remote_cancelled=result.remote_cancelled,
        warning=result.warning,
    )


@router.get("/billing-history", response_model=list[BillingHistoryItemResponse])
async def get_billing_history(
    current_user: Annotated[User, Depends(get_current_active_user)],
    db: Annotated[AsyncSession, Depends(get_db)],
    gateway: Annotated[BillingGatewayClient, Depends(get_billing_gateway)],
    notifier: Annotated[NotificationEmitter, Depends(get_notifier)],
) -> list[BillingHistoryItemResponse]:
    """Billing history of the current user, newest first."""
    service = SubscriptionService(db, gateway, notifier)
    items = await service.billing_history(current_user.id)
    return [
        BillingHistoryItemResponse(
            **BillingHistoryResponse.model_validate(item.entry).model_dump(exclude={"invoice_url"}),
            invoice_url=item.invoice_url,
            subscription_url=item.subscription_url,
        )
        for item in items
    ]


@router.post("/redeem-coupon", response_model=SubscriptionResponse)
@coupon_redeem_limit
async def redeem_coupon(
    request: Request,
    coupon_in: RedeemCouponRequest,
    current_user: Annotated[User, Depends(get_current_active_user)],
    db: Annotated[AsyncSession, Depends(get_db)],
    notifier: Annotated[NotificationEmitter, Depends(get_notifier)],
) -> SubscriptionResponse:
    """
    Redeem a trial coupon.

    Returns:
        The new trial subscription
    """
    service = CouponService(db, notifier)
    subscription = await service.redeem(current_user.id, coupon_in.code)
    return SubscriptionResponse.model_validate(subscription)


@router.get("/check-access", response_model=CheckAccessResponse)
async def check_access(
    current_user: Annotated[User, Depends(get_current_active_user)],
    db: Annotated[AsyncSession, Depends(get_db)],
    gateway: Annotated[BillingGatewayClient, Depends(get_billing_gateway)],
    notifier: Annotated[NotificationEmitter, Depends(get_notifier)],
) -> CheckAccessResponse:
    """
    Check whether the current user has full access.

    Expires a passed provider trial first so the answer reflects it.
    """
    subscription = await subscription_crud.get_subscription_by_user_id(db, current_user.id)
    if subscription is not None and subscription.remote_subscription_id:
        try:
            await TrialSweeper(db, notifier=notifier).check_subscription(subscription.id)
        except BillingError as e:
            await db.rollback()
            logger.warning(f"Could not check trial expiration for {subscription.id}: {e}")

    overview = await SubscriptionService(db, gateway, notifier).get_status(current_user.id)
    response = _status_response(overview)
    return CheckAccessResponse(
        has_access=overview.access.has_full_access,
        access=response.access,
        user_status=response.user_status,
    )


@router.post("/check-trial-expiration", response_model=TrialCheckResponse)
async def check_trial_expiration(
    current_user: Annotated[User, Depends(get_current_active_user)],
    db: Annotated[AsyncSession, Depends(get_db)],
    gateway: Annotated[BillingGatewayClient, Depends(get_billing_gateway)],
    notifier: Annotated[NotificationEmitter, Depends(get_notifier)],
) -> TrialCheckResponse:
    """
    Apply the trial expiration rule to the current user's subscription.

    Raises:
        HTTPException: 404 if the user has no subscription
    """
    subscription = await subscription_crud.get_subscription_by_user_id(db, current_user.id)
    if subscription is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No subscription found",
        )

    expired = await TrialSweeper(db, gateway, notifier).check_subscription(subscription.id)
    subscription = await subscription_crud.get_subscription_by_id(db, subscription.id)
    return TrialCheckResponse(
        expired=expired,
        subscription=SubscriptionResponse.model_validate(subscription),
    )
