"""Admin billing endpoints: grants, lifecycle actions, refunds, coupons and webhooks."""

import logging
from typing import Annotated, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_billing_gateway, get_current_superuser, get_notifier
from app.core.database import get_db
from app.core.rate_limit import admin_limit
from app.crud import coupon as coupon_crud
from app.crud import subscription as subscription_crud
from app.crud import webhook_event as webhook_crud
from app.models.user import User
from app.schemas.billing import (
    AdminPaymentResponse,
    BillingHistoryResponse,
    ManualPaymentRequest,
    PaymentStatsResponse,
    PaymentSyncAllResponse,
    PaymentSyncResponse,
    RefundRequest,
    RefundResponse,
    WebhookEventResponse,
)
from app.schemas.coupon import CouponCreate, CouponResponse, CouponUpdate, CouponUsageResponse
from app.schemas.subscription import (
    AdminActionRequest,
    AdminSubscriptionResponse,
    CancelSubscriptionResponse,
    GrantFreeAccessRequest,
    SubscriptionOwner,
    SubscriptionResponse,
    SubscriptionStatsResponse,
    SweepResponse,
)
from app.services.billing_gateway import BillingGatewayClient
from app.services.notification_service import NotificationEmitter
from app.services.payment_sync_service import PaymentSyncService
from app.services.subscription_service import AdminPaymentRow, SubscriptionService
from app.services.trial_sweeper import TrialSweeper

logger = logging.getLogger(__name__)

router = APIRouter()


def _service(
    db: AsyncSession, gateway: BillingGatewayClient, notifier: NotificationEmitter
) -> SubscriptionService:
    return SubscriptionService(db, gateway, notifier)


# Free access


@router.put("/users/{user_id}/free-access", response_model=SubscriptionResponse)
@admin_limit
async def grant_free_access(
    request: Request,
    user_id: UUID,
    grant_in: GrantFreeAccessRequest,
    admin: Annotated[User, Depends(get_current_superuser)],
    db: Annotated[AsyncSession, Depends(get_db)],
    gateway: Annotated[BillingGatewayClient, Depends(get_billing_gateway)],
    notifier: Annotated[NotificationEmitter, Depends(get_notifier)],
) -> SubscriptionResponse:
    """
    Grant free access to a user until a date or for a number of days.

    A local grant takes precedence over provider events until it ends.
    """
    subscription = await _service(db, gateway, notifier).grant_free_access(
        user_id, admin.id, end_date=grant_in.end_date, days=grant_in.days
    )
    logger.info(f"Admin {admin.email} granted free access to user {user_id}")
    return SubscriptionResponse.model_validate(subscription)


@router.delete("/users/{user_id}/free-access", response_model=SubscriptionResponse)
@admin_limit
async def revoke_free_access(
    request: Request,
    user_id: UUID,
    admin: Annotated[User, Depends(get_current_superuser)],
    db: Annotated[AsyncSession, Depends(get_db)],
    gateway: Annotated[BillingGatewayClient, Depends(get_billing_gateway)],
    notifier: Annotated[NotificationEmitter, Depends(get_notifier)],
) -> SubscriptionResponse:
    """Revoke a free access grant; access ends immediately."""
    subscription = await _service(db, gateway, notifier).revoke_free_access(user_id)
    logger.info(f"Admin {admin.email} revoked free access of user {user_id}")
    return SubscriptionResponse.model_validate(subscription)


# Subscription overview


@router.get("/subscriptions", response_model=list[AdminSubscriptionResponse])
@admin_limit
async def list_subscriptions(
    request: Request,
    admin: Annotated[User, Depends(get_current_superuser)],
    db: Annotated[AsyncSession, Depends(get_db)],
    gateway: Annotated[BillingGatewayClient, Depends(get_billing_gateway)],
    notifier: Annotated[NotificationEmitter, Depends(get_notifier)],
    subscription_status: Optional[str] = Query(None, alias="status"),
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
) -> list[AdminSubscriptionResponse]:
    """All subscriptions with their owners and derived user status, newest first."""
    rows = await _service(db, gateway, notifier).list_subscriptions(
        status=subscription_status, skip=skip, limit=limit
    )
    return [
        AdminSubscriptionResponse(
            subscription=SubscriptionResponse.model_validate(row.subscription),
            user=SubscriptionOwner.model_validate(row.user),
            user_status=row.user_status.value,
            has_full_access=row.has_full_access,
            has_paid_history=row.has_paid_history,
            is_provider_trial=row.is_provider_trial,
            trial_end_date=row.trial_end_date,
        )
        for row in rows
    ]


@router.get("/subscriptions/stats", response_model=SubscriptionStatsResponse)
@admin_limit
async def get_subscription_stats(
    request: Request,
    admin: Annotated[User, Depends(get_current_superuser)],
    db: Annotated[AsyncSession, Depends(get_db)],
    gateway: Annotated[BillingGatewayClient, Depends(get_billing_gateway)],
    notifier: Annotated[NotificationEmitter, Depends(get_notifier)],
) -> SubscriptionStatsResponse:
    """Subscription counts by derived user status plus revenue."""
    stats = await _service(db, gateway, notifier).subscription_stats()
    return SubscriptionStatsResponse(**stats)


# Subscription lifecycle


@router.post("/subscriptions/{subscription_id}/cancel", response_model=CancelSubscriptionResponse)
@admin_limit
async def cancel_subscription(
    request: Request,
    subscription_id: UUID,
    action_in: AdminActionRequest,
    admin: Annotated[User, Depends(get_current_superuser)],
    db: Annotated[AsyncSession, Depends(get_db)],
    gateway: Annotated[BillingGatewayClient, Depends(get_billing_gateway)],
    notifier: Annotated[NotificationEmitter, Depends(get_notifier)],
) -> CancelSubscriptionResponse:
    """Cancel a subscription locally and at the provider."""
    result = await _service(db, gateway, notifier).admin_cancel(subscription_id, action_in.reason)
    logger.info(f"Admin {admin.email} cancelled subscription {subscription_id}")
    return CancelSubscriptionResponse(
        subscription=SubscriptionResponse.model_validate(result.subscription),
        remote_cancelled=result.remote_cancelled,
        warning=result.warning,
    )


@router.post("/subscriptions/{subscription_id}/suspend", response_model=SubscriptionResponse)
@admin_limit
async def suspend_subscription(
    request: Request,
    subscription_id: UUID,
    action_in: AdminActionRequest,
    admin: Annotated[User, Depends(get_current_superuser)],
    db: Annotated[AsyncSession, Depends(get_db)],
    gateway: Annotated[BillingGatewayClient, Depends(get_billing_gateway)],
    notifier: Annotated[NotificationEmitter, Depends(get_notifier)],
) -> SubscriptionResponse:
    """Suspend a subscription at the provider and locally."""
    subscription = await _service(db, gateway, notifier).admin_suspend(
        subscription_id, action_in.reason
    )
    logger.info(f"Admin {admin.email} suspended subscription {subscription_id}")
    return SubscriptionResponse.model_validate(subscription)


@router.post("/subscriptions/{subscription_id}/activate", response_model=SubscriptionResponse)
@admin_limit
async def reactivate_subscription(
    request: Request,
    subscription_id: UUID,
    action_in: AdminActionRequest,
    admin: Annotated[User, Depends(get_current_superuser)],
    db: Annotated[AsyncSession, Depends(get_db)],
    gateway: Annotated[BillingGatewayClient, Depends(get_billing_gateway)],
    notifier: Annotated[NotificationEmitter, Depends(get_notifier)],
) -> SubscriptionResponse:
    """Reactivate a suspended subscription."""
    subscription = await _service(db, gateway, notifier).admin_reactivate(
        subscription_id, action_in.reason
    )
    logger.info(f"Admin {admin.email} reactivated subscription {subscription_id}")
    return SubscriptionResponse.model_validate(subscription)


@router.post("/trials/sweep", response_model=SweepResponse)
@admin_limit
async def sweep_trials(
    request: Request,
    admin: Annotated[User, Depends(get_current_superuser)],
    db: Annotated[AsyncSession, Depends(get_db)],
    notifier: Annotated[NotificationEmitter, Depends(get_notifier)],
) -> SweepResponse:
    """Run the trial expiration sweep now."""
    result = await TrialSweeper(db, notifier=notifier).sweep()
    return SweepResponse(examined=result.examined, updated=result.updated, errors=result.errors)


# Payments


@router.post("/payments/{entry_id}/refund", response_model=RefundResponse)
@admin_limit
async def refund_payment(
    request: Request,
    entry_id: UUID,
    refund_in: RefundRequest,
    admin: Annotated[User, Depends(get_current_superuser)],
    db: Annotated[AsyncSession, Depends(get_db)],
    gateway: Annotated[BillingGatewayClient, Depends(get_billing_gateway)],
    notifier: Annotated[NotificationEmitter, Depends(get_notifier)],
) -> RefundResponse:
    """
    Refund a payment in full or in part.

    A full refund also cancels the subscription.
    """
    result = await _service(db, gateway, notifier).refund_payment(
        entry_id, amount=refund_in.amount, reason=refund_in.reason
    )
    logger.info(f"Admin {admin.email} refunded payment {entry_id}")
    return RefundResponse(
        entry=BillingHistoryResponse.model_validate(result.entry),
        refund_id=result.refund.id,
        refund_status=result.refund.status,
        full_refund=result.full_refund,
        subscription_cancelled=result.subscription_cancelled,
        warning=result.warning,
    )


@router.post(
    "/payments/manual",
    response_model=BillingHistoryResponse,
    status_code=status.HTTP_201_CREATED,
)
@admin_limit
async def record_manual_payment(
    request: Request,
    payment_in: ManualPaymentRequest,
    admin: Annotated[User, Depends(get_current_superuser)],
    db: Annotated[AsyncSession, Depends(get_db)],
    gateway: Annotated[BillingGatewayClient, Depends(get_billing_gateway)],
    notifier: Annotated[NotificationEmitter, Depends(get_notifier)],
) -> BillingHistoryResponse:
    """Enter a ledger row by hand."""
    entry = await _service(db, gateway, notifier).record_manual_payment(
        payment_in.subscription_id,
        amount=payment_in.amount,
        payment_date=payment_in.payment_date,
        currency=payment_in.currency,
        status=payment_in.status,
        remote_transaction_id=payment_in.remote_transaction_id,
        remote_sale_id=payment_in.remote_sale_id,
    )
    logger.info(f"Admin {admin.email} recorded manual payment {entry.id}")
    return BillingHistoryResponse.model_validate(entry)


def _payment_response(row: AdminPaymentRow) -> AdminPaymentResponse:
    return AdminPaymentResponse(
        **BillingHistoryResponse.model_validate(row.entry).model_dump(exclude={"invoice_url"}),
        invoice_url=row.invoice_url,
        user_id=row.user.id,
        user_email=row.user.email,
        plan_type=row.subscription.plan_type,
        remote_subscription_id=row.subscription.remote_subscription_id,
    )


@router.get("/payments", response_model=list[AdminPaymentResponse])
@admin_limit
async def list_payments(
    request: Request,
    admin: Annotated[User, Depends(get_current_superuser)],
    db: Annotated[AsyncSession, Depends(get_db)],
    gateway: Annotated[BillingGatewayClient, Depends(get_billing_gateway)],
    notifier: Annotated[NotificationEmitter, Depends(get_notifier)],
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
) -> list[AdminPaymentResponse]:
    """Ledger rows of all users, newest payment first."""
    rows = await _service(db, gateway, notifier).list_payments(skip=skip, limit=limit)
    return [_payment_response(row) for row in rows]


@router.get("/payments/refund-history", response_model=list[AdminPaymentResponse])
@admin_limit
async def list_refunds(
    request: Request,
    admin: Annotated[User, Depends(get_current_superuser)],
    db: Annotated[AsyncSession, Depends(get_db)],
    gateway: Annotated[BillingGatewayClient, Depends(get_billing_gateway)],
    notifier: Annotated[NotificationEmitter, Depends(get_notifier)],
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
) -> list[AdminPaymentResponse]:
    """Refunded and partially refunded ledger rows, newest refund first."""
    rows = await _service(db, gateway, notifier).list_payments(
        refunds_only=True, skip=skip, limit=limit
    )
    return [_payment_response(row) for row in rows]


@router.get("/payments/stats", response_model=PaymentStatsResponse)
@admin_limit
async def get_payment_stats(
    request: Request,
    admin: Annotated[User, Depends(get_current_superuser)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> PaymentStatsResponse:
    """Ledger totals and subscription counts."""
    stats = await subscription_crud.payment_stats(db)
    return PaymentStatsResponse(
        **stats,
        net_revenue=stats["total_revenue"] - stats["total_refunded"],
    )


@router.post("/payments/sync/{subscription_id}", response_model=PaymentSyncResponse)
@admin_limit
async def sync_subscription_payments(
    request: Request,
    subscription_id: UUID,
    admin: Annotated[User, Depends(get_current_superuser)],
    db: Annotated[AsyncSession, Depends(get_db)],
    gateway: Annotated[BillingGatewayClient, Depends(get_billing_gateway)],
) -> PaymentSyncResponse:
    """Pull completed provider transactions of one subscription into the ledger."""
    result = await PaymentSyncService(db, gateway).sync_subscription_payments(subscription_id)
    return PaymentSyncResponse(
        subscription_id=result.subscription_id,
        synced=result.synced,
        skipped=result.skipped,
    )


@router.post("/payments/sync-all", response_model=PaymentSyncAllResponse)
@admin_limit
async def sync_all_payments(
    request: Request,
    admin: Annotated[User, Depends(get_current_superuser)],
    db: Annotated[AsyncSession, Depends(get_db)],
    gateway: Annotated[BillingGatewayClient, Depends(get_billing_gateway)],
) -> PaymentSyncAllResponse:
    """Sync every provider-linked subscription."""
    result = await PaymentSyncService(db, gateway).sync_all_subscription_payments()
    return PaymentSyncAllResponse(
        subscriptions=result.subscriptions,
        synced=result.synced,
        failed=result.failed,
        errors=result.errors,
    )


# Coupons


@router.get("/coupons", response_model=list[CouponResponse])
@admin_limit
async def list_coupons(
    request: Request,
    admin: Annotated[User, Depends(get_current_superuser)],
    db: Annotated[AsyncSession, Depends(get_db)],
    include_inactive: bool = True,
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
) -> list[CouponResponse]:
    """List coupons."""
    coupons = await coupon_crud.list_coupons(
        db, include_inactive=include_inactive, skip=skip, limit=limit
    )
    return [CouponResponse.model_validate(coupon) for coupon in coupons]


@router.post("/coupons", response_model=CouponResponse, status_code=status.HTTP_201_CREATED)
@admin_limit
async def create_coupon(
    request: Request,
    coupon_in: CouponCreate,
    admin: Annotated[User, Depends(get_current_superuser)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> CouponResponse:
    """Create a trial coupon."""
    data = coupon_in.model_dump()
    coupon = await coupon_crud.create_coupon(
        db, code=data.pop("code"), trial_days=data.pop("trial_days"), **data
    )
    logger.info(f"Admin {admin.email} created coupon {coupon.code}")
    return CouponResponse.model_validate(coupon)


@router.patch("/coupons/{coupon_id}", response_model=CouponResponse)
@admin_limit
async def update_coupon(
    request: Request,
    coupon_id: UUID,
    coupon_in: CouponUpdate,
    admin: Annotated[User, Depends(get_current_superuser)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> CouponResponse:
    """Update a coupon."""
    coupon = await coupon_crud.get_coupon_by_id(db, coupon_id)
    if coupon is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Coupon not found")
    coupon = await coupon_crud.update_coupon(db, coupon, **coupon_in.model_dump(exclude_unset=True))
    return CouponResponse.model_validate(coupon)


@router.delete("/coupons/{coupon_id}", response_model=CouponResponse)
@admin_limit
async def deactivate_coupon(
    request: Request,
    coupon_id: UUID,
    admin: Annotated[User, Depends(get_current_superuser)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> CouponResponse:
    """Deactivate a coupon. Trials already granted are kept."""
    coupon = await coupon_crud.get_coupon_by_id(db, coupon_id)
    if coupon is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Coupon not found")
    coupon = await coupon_crud.deactivate_coupon(db, coupon)
    logger.info(f"Admin {admin.email} deactivated coupon {coupon.code}")
    return CouponResponse.model_validate(coupon)


@router.get("/coupons/{code}/usage", response_model=CouponUsageResponse)
@admin_limit
async def get_coupon_usage(
    request: Request,
    code: str,
    admin: Annotated[User, Depends(get_current_superuser)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> CouponUsageResponse:
    """Coupon with the subscriptions redeemed from it."""
    coupon = await coupon_crud.get_coupon_by_code(db, code)
    if coupon is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Coupon not found")
    redemptions = await coupon_crud.list_coupon_redemptions(db, coupon.id)
    return CouponUsageResponse(
        coupon=CouponResponse.model_validate(coupon),
        redemptions=[SubscriptionResponse.model_validate(sub) for sub in redemptions],
    )


# Webhooks


@router.get("/webhooks", response_model=list[WebhookEventResponse])
@admin_limit
async def list_webhook_events(
    request: Request,
    admin: Annotated[User, Depends(get_current_superuser)],
    db: Annotated[AsyncSession, Depends(get_db)],
    failed_only: bool = False,
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
) -> list[WebhookEventResponse]:
    """Stored provider events, newest first."""
    events = await webhook_crud.list_webhook_events(
        db, failed_only=failed_only, skip=skip, limit=limit
    )
    return [WebhookEventResponse.model_validate(event) for event in events]


@router.post("/webhooks/{event_id}/retry", response_model=WebhookEventResponse)
@admin_limit
async def retry_webhook_event(
    request: Request,
    event_id: UUID,
    admin: Annotated[User, Depends(get_current_superuser)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> WebhookEventResponse:
    """
    Re-queue an unprocessed event with a fresh set of attempts.

    Raises:
        HTTPException: 404 if unknown, 400 if already processed
    """
    event = await webhook_crud.get_webhook_event_by_id(db, event_id)
    if event is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Webhook event not found")
    if event.processed:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Webhook event already processed",
        )

    event = await webhook_crud.reset_attempts(db, event)

    from app.workers.tasks import process_webhook_event

    process_webhook_event.delay(str(event.id))
    logger.info(f"Admin {admin.email} re-queued webhook event {event.provider_event_id}")
    return WebhookEventResponse.model_validate(event)
