"""User and admin subscription actions.

Every status change goes through decide_transition and is written with a
compare-and-set, the same path the webhook processor and trial sweeper use.
When a remote call fails after the local decision was made, the local
change is kept and the failure is logged for reconciliation.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import (
    BillingError,
    InvalidTransitionError,
    NotFoundError,
    RefundWindowExpiredError,
)
from app.crud import subscription as subscription_crud
from app.crud import user as user_crud
from app.models.billing_history import BillingHistory, BillingStatus
from app.models.subscription import PlanType, Subscription, SubscriptionStatus
from app.models.user import User
from app.services.billing_gateway import (
    REMOTE_STATUS_SUSPENDED,
    BillingGatewayClient,
    RemoteRefund,
    RemoteSubscription,
)
from app.services.notification_service import NotificationEmitter
from app.services.subscription_state import (
    CANCELLABLE_STATUSES,
    REACTIVATABLE_STATUSES,
    AccessDecision,
    SubscriptionEvent,
    TransitionContext,
    UserFacingStatus,
    decide_transition,
    derive_access,
    derive_user_facing_status,
    resolve_trial_end_date,
    utcnow,
)
from app.services.upgrade_coordinator import UpgradeCoordinator

logger = structlog.get_logger()

LIVE_STATUSES = (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value)
REFUND_STATUSES = (BillingStatus.REFUNDED.value, BillingStatus.PARTIALLY_REFUNDED.value)


@dataclass
class SubscriptionOverview:
    """Subscription together with its derived access facts."""

    subscription: Subscription | None
    access: AccessDecision
    user_status: UserFacingStatus
    has_paid_history: bool
    trial_end_date: datetime | None
    manage_url: str | None


@dataclass
class CancelResult:
    """Outcome of a cancellation."""

    subscription: Subscription
    remote_cancelled: bool
    warning: str | None = None


@dataclass
class RefundResult:
    """Outcome of an admin refund."""

    entry: BillingHistory
    refund: RemoteRefund
    full_refund: bool
    subscription_cancelled: bool
    warning: str | None = None


@dataclass
class BillingHistoryItem:
    """Ledger row with provider links."""

    entry: BillingHistory
    invoice_url: str | None
    subscription_url: str | None


@dataclass
class AdminSubscriptionRow:
    """Subscription with its owner and derived classification for admin views."""

    subscription: Subscription
    user: User
    user_status: UserFacingStatus
    has_full_access: bool
    has_paid_history: bool
    is_provider_trial: bool
    trial_end_date: datetime | None


@dataclass
class AdminPaymentRow:
    """Ledger row with its subscription and owner."""

    entry: BillingHistory
    subscription: Subscription
    user: User
    invoice_url: str | None


class SubscriptionService:
    """Subscription operations initiated by users and administrators."""

    def __init__(
        self,
        db: AsyncSession,
        gateway: BillingGatewayClient,
        notifier: NotificationEmitter | None = None,
    ):
        """Initialize subscription service.

        Args:
            db: Database session
            gateway: Billing provider client
            notifier: Notification emitter
        """
        self.db = db
        self.gateway = gateway
        self.notifier = notifier or NotificationEmitter()

    async def _get_for_user(self, user_id: uuid.UUID) -> Subscription:
        subscription = await subscription_crud.get_subscription_by_user_id(self.db, user_id)
        if subscription is None:
            raise NotFoundError("No subscription found")
        return subscription

    async def _get_by_id(self, subscription_id: uuid.UUID) -> Subscription:
        subscription = await subscription_crud.get_subscription_by_id(self.db, subscription_id)
        if subscription is None:
            raise NotFoundError("Subscription not found")
        return subscription

    async def _notify_status(self, subscription: Subscription) -> None:
        await self.notifier.emit_status_updated(
            subscription.user_id, subscription.id, subscription.status, subscription.plan_type
        )

    async def _apply_event(
        self,
        subscription: Subscription,
        event: SubscriptionEvent,
        context: TransitionContext | None = None,
        **fields: Any,
    ) -> Subscription:
        transition = decide_transition(subscription, event, context)
        subscription = await subscription_crud.transition_status(
            self.db,
            subscription,
            transition.next_status,
            expected_status=transition.previous_status,
            **fields,
        )
        if transition.changed:
            logger.info(
                "subscription.status_changed",
                subscription_id=str(subscription.id),
                old_status=transition.previous_status,
                new_status=transition.next_status,
                event=event.value,
            )
        return subscription

    # Read side

    async def get_status(
        self, user_id: uuid.UUID, now: datetime | None = None
    ) -> SubscriptionOverview:
        """
        Subscription plus derived access and user-facing status.

        Args:
            user_id: User UUID
            now: Evaluation time

        Returns:
            SubscriptionOverview (subscription is None when the user has none)
        """
        now = now or utcnow()
        subscription = await subscription_crud.get_subscription_by_user_id(self.db, user_id)
        has_paid = False
        trial_end = None
        manage_url = None
        if subscription is not None:
            has_paid = await subscription_crud.has_paid_billing_history(self.db, subscription.id)
            trial_end = resolve_trial_end_date(subscription, settings.TRIAL_FALLBACK_DAYS)
            if subscription.remote_subscription_id:
                manage_url = self.gateway.subscription_url(subscription.remote_subscription_id)

        return SubscriptionOverview(
            subscription=subscription,
            access=derive_access(subscription, now),
            user_status=derive_user_facing_status(subscription, has_paid, now),
            has_paid_history=has_paid,
            trial_end_date=trial_end,
            manage_url=manage_url,
        )

    async def billing_history(self, user_id: uuid.UUID) -> list[BillingHistoryItem]:
        """Ledger rows for the user's subscription with provider links."""
        subscription = await subscription_crud.get_subscription_by_user_id(self.db, user_id)
        if subscription is None:
            return []

        entries = await subscription_crud.list_billing_history(self.db, subscription.id)
        subscription_url = (
            self.gateway.subscription_url(subscription.remote_subscription_id)
            if subscription.remote_subscription_id
            else None
        )
        items = []
        for entry in entries:
            invoice_url = entry.invoice_url
            if not invoice_url and entry.remote_transaction_id:
                invoice_url = self.gateway.transaction_url(entry.remote_transaction_id)
            items.append(BillingHistoryItem(entry, invoice_url, subscription_url))
        return items

    # Admin read side

    def _admin_row(
        self, subscription: Subscription, user: User, has_paid: bool, now: datetime
    ) -> AdminSubscriptionRow:
        is_provider_trial = bool(
            not subscription.is_trial_coupon
            and subscription.remote_subscription_id
            and subscription.status in LIVE_STATUSES
            and not has_paid
        )
        return AdminSubscriptionRow(
            subscription=subscription,
            user=user,
            user_status=derive_user_facing_status(subscription, has_paid, now),
            has_full_access=derive_access(subscription, now).has_full_access,
            has_paid_history=has_paid,
            is_provider_trial=is_provider_trial,
            trial_end_date=resolve_trial_end_date(subscription, settings.TRIAL_FALLBACK_DAYS),
        )

    async def list_subscriptions(
        self,
        status: str | None = None,
        skip: int = 0,
        limit: int = 100,
        now: datetime | None = None,
    ) -> list[AdminSubscriptionRow]:
        """
        Subscriptions for the admin overview, each with its derived classification.

        Trial deadlines come from the stored dates (with the fallback trial
        length); the provider is not queried per row.

        Args:
            status: Only subscriptions in this stored status
            skip: Rows to skip
            limit: Maximum rows
            now: Evaluation time

        Returns:
            List of AdminSubscriptionRow, newest first
        """
        now = now or utcnow()
        rows = await subscription_crud.list_subscriptions_with_users(
            self.db, status=status, skip=skip, limit=limit
        )
        paid_ids = await subscription_crud.get_paid_subscription_ids(
            self.db, [subscription.id for subscription, _ in rows]
        )
        return [
            self._admin_row(subscription, user, subscription.id in paid_ids, now)
            for subscription, user in rows
        ]

    async def subscription_stats(self, now: datetime | None = None) -> dict[str, Any]:
        """Subscription counts by derived classification plus ledger revenue."""
        now = now or utcnow()
        subscriptions = await subscription_crud.list_all_subscriptions(self.db)
        paid_ids = await subscription_crud.get_paid_subscription_ids(self.db)
        ledger = await subscription_crud.payment_stats(self.db)

        by_user_status = {status.value: 0 for status in UserFacingStatus}
        provider_trials = 0
        coupon_trials = 0
        cancelled = 0
        for subscription in subscriptions:
            has_paid = subscription.id in paid_ids
            user_status = derive_user_facing_status(subscription, has_paid, now)
            by_user_status[user_status.value] += 1
            if user_status == UserFacingStatus.FREE_TRIAL:
                if subscription.is_trial_coupon:
                    coupon_trials += 1
                else:
                    provider_trials += 1
            if subscription.status == SubscriptionStatus.CANCELLED.value:
                cancelled += 1

        return {
            "total_subscriptions": len(subscriptions),
            "active_paid": by_user_status[UserFacingStatus.ACTIVE_PAID.value],
            "provider_trials": provider_trials,
            "coupon_trials": coupon_trials,
            "free_access": by_user_status[UserFacingStatus.FREE_ACCESS.value],
            "churned": by_user_status[UserFacingStatus.CHURNED.value],
            "cancelled": cancelled,
            "by_user_status": by_user_status,
            "total_revenue": ledger["total_revenue"],
            "net_revenue": ledger["total_revenue"] - ledger["total_refunded"],
        }

    async def list_payments(
        self, refunds_only: bool = False, skip: int = 0, limit: int = 100
    ) -> list[AdminPaymentRow]:
        """
        Ledger rows across all users, newest first.

        With refunds_only, only refunded and partially refunded rows are
        returned, ordered by refund date.
        """
        statuses = REFUND_STATUSES if refunds_only else None
        rows = await subscription_crud.list_billing_entries_with_users(
            self.db,
            statuses=statuses,
            skip=skip,
            limit=limit,
            newest_refund_first=refunds_only,
        )
        return [
            AdminPaymentRow(
                entry=entry,
                subscription=subscription,
                user=user,
                invoice_url=entry.invoice_url
                or (
                    self.gateway.transaction_url(entry.remote_transaction_id)
                    if entry.remote_transaction_id
                    else None
                ),
            )
            for entry, subscription, user in rows
        ]

    # User actions

    async def _check_duplicate(self, subscription: Subscription, plan_type: str) -> None:
        """Refuse a new remote subscription that would double-bill or re-trial."""
        if subscription.plan_type == plan_type:
            has_history = await subscription_crud.has_billing_history(self.db, subscription.id)
            if plan_type == PlanType.MONTHLY.value and not has_history:
                raise InvalidTransitionError(
                    "You already have an active monthly trial subscription. "
                    "Please cancel it first or wait for it to end.",
                    current_status=subscription.status,
                    code="DUPLICATE_TRIAL",
                )
            if subscription.status in LIVE_STATUSES:
                if not has_history:
                    raise InvalidTransitionError(
                        f"You already have an active {plan_type} trial subscription. "
                        "Please cancel it first or wait for it to end.",
                        current_status=subscription.status,
                        code="DUPLICATE_TRIAL",
                    )
                raise InvalidTransitionError(
                    f"You already have an active {plan_type} subscription. "
                    "Please cancel it first before starting a new one.",
                    current_status=subscription.status,
                    code="ACTIVE_SUBSCRIPTION_EXISTS",
                )

        if (
            subscription.plan_type == PlanType.ANNUAL.value
            and plan_type == PlanType.MONTHLY.value
            and subscription.remote_subscription_id
            and subscription.status in CANCELLABLE_STATUSES
        ):
            raise InvalidTransitionError(
                "You already have an active annual subscription. "
                "Please cancel it first before switching to monthly billing.",
                current_status=subscription.status,
                code="ACTIVE_SUBSCRIPTION_EXISTS",
            )

    async def _fetch_remote(self, remote_id: str) -> RemoteSubscription | None:
        try:
            return await self.gateway.get_remote_subscription(remote_id)
        except BillingError as e:
            logger.warning(
                "subscription.remote_details_unavailable",
                remote_subscription_id=remote_id,
                error=str(e),
            )
            return None

    async def link_remote_subscription(
        self,
        user_id: uuid.UUID,
        remote_id: str,
        plan_type: str,
        now: datetime | None = None,
    ) -> Subscription:
        """
        Associate a provider subscription approved by the user.

        Monthly to annual switches are handed to the upgrade coordinator;
        everything else creates or replaces the user's subscription.

        Args:
            user_id: User UUID
            remote_id: Provider subscription id
            plan_type: "monthly" or "annual"
            now: Evaluation time

        Returns:
            Linked subscription

        Raises:
            InvalidTransitionError: Duplicate trial or active subscription exists
            ConflictError: Remote id already linked to another user
        """
        if plan_type not in (PlanType.MONTHLY.value, PlanType.ANNUAL.value):
            raise InvalidTransitionError('planType must be "monthly" or "annual"')

        now = now or utcnow()
        linked = await subscription_crud.get_subscription_by_remote_id(self.db, remote_id)
        if linked is not None:
            if linked.user_id == user_id:
                return linked
            raise InvalidTransitionError(
                "This subscription is linked to another account",
                code="REMOTE_ALREADY_LINKED",
            )

        subscription = await subscription_crud.get_subscription_by_user_id(self.db, user_id)
        if subscription is not None:
            await self._check_duplicate(subscription, plan_type)

        remote = await self._fetch_remote(remote_id)

        if (
            subscription is not None
            and subscription.plan_type == PlanType.MONTHLY.value
            and plan_type == PlanType.ANNUAL.value
        ):
            subscription = await UpgradeCoordinator(self.db, self.gateway).begin_upgrade(
                subscription, remote_id, remote
            )
            await self._notify_status(subscription)
            return subscription

        trial_end = remote.trial_end_date if remote is not None else None
        if trial_end is None and subscription is None:
            trial_end = now + timedelta(days=settings.NEW_SUBSCRIPTION_TRIAL_DAYS)
        in_trial = trial_end is not None and now < trial_end

        price = (
            settings.PLAN_PRICE_MONTHLY
            if plan_type == PlanType.MONTHLY.value
            else settings.PLAN_PRICE_ANNUAL
        )
        fields: dict[str, Any] = dict(
            plan_type=plan_type,
            remote_subscription_id=remote_id,
            remote_plan_id=(remote.plan_id if remote and remote.plan_id else self.gateway.plan_id_for(plan_type)),
            start_date=(remote.start_time if remote and remote.start_time else now),
            trial_end_date=trial_end,
            end_date=None,
            price=price,
            currency=settings.BILLING_CURRENCY,
            coupon_code=None,
            coupon_id=None,
            is_free_access=False,
            is_trial_coupon=False,
            granted_by_admin_id=None,
        )

        if subscription is None:
            status = (
                SubscriptionStatus.TRIALING.value if in_trial else SubscriptionStatus.ACTIVE.value
            )
            subscription = await subscription_crud.create_subscription(
                self.db, user_id=user_id, status=status, status_changed_at=now, **fields
            )
        else:
            subscription = await self._apply_event(
                subscription,
                SubscriptionEvent.REMOTE_LINKED,
                TransitionContext(in_provider_trial=in_trial),
                **fields,
            )

        logger.info(
            "subscription.linked",
            user_id=str(user_id),
            subscription_id=str(subscription.id),
            remote_subscription_id=remote_id,
            plan_type=plan_type,
            status=subscription.status,
        )
        await self._notify_status(subscription)
        return subscription

    async def _cancel(
        self,
        subscription: Subscription,
        event: SubscriptionEvent,
        reason: str | None,
    ) -> CancelResult:
        # Refuse before any remote call
        decide_transition(subscription, event)

        remote_id = subscription.remote_subscription_id
        remote_cancelled = False
        warning = None
        if remote_id:
            try:
                await self.gateway.cancel_remote(remote_id, reason)
                remote_cancelled = True
            except (InvalidTransitionError, NotFoundError) as e:
                # Already gone at the provider
                logger.info(
                    "subscription.remote_already_cancelled",
                    remote_subscription_id=remote_id,
                    error=str(e),
                )
            except BillingError as e:
                warning = (
                    "Subscription was cancelled locally but the billing provider could not be "
                    f"reached. Remote subscription {remote_id} needs manual cancellation."
                )
                logger.error(
                    "subscription.remote_cancel_failed",
                    subscription_id=str(subscription.id),
                    remote_subscription_id=remote_id,
                    error=str(e),
                )

        subscription = await self._apply_event(subscription, event)
        await self._notify_status(subscription)
        await self.notifier.emit_cancelled(subscription.user_id, subscription.id, reason=reason)
        return CancelResult(subscription, remote_cancelled, warning)

    async def cancel_subscription(
        self, user_id: uuid.UUID, reason: str | None = None
    ) -> CancelResult:
        """
        Cancel the user's subscription.

        Raises:
            NotFoundError: User has no subscription
            InvalidTransitionError: Subscription is not cancellable (no remote
                call is made in that case)
        """
        subscription = await self._get_for_user(user_id)
        if not subscription.remote_subscription_id:
            raise InvalidTransitionError(
                "Only provider-billed subscriptions can be cancelled here.",
                current_status=subscription.status,
                eligible_statuses=CANCELLABLE_STATUSES,
            )
        return await self._cancel(
            subscription, SubscriptionEvent.USER_CANCEL, reason or "User requested cancellation"
        )

    # Admin actions

    async def grant_free_access(
        self,
        user_id: uuid.UUID,
        admin_id: uuid.UUID,
        end_date: datetime | None = None,
        days: int | None = None,
        now: datetime | None = None,
    ) -> Subscription:
        """
        Grant free access until end_date (or for a number of days).

        Raises:
            NotFoundError: User does not exist
        """
        now = now or utcnow()
        if await user_crud.get_user_by_id(self.db, user_id) is None:
            raise NotFoundError("User not found")

        expiration = end_date or now + timedelta(days=days or settings.FREE_ACCESS_DEFAULT_DAYS)
        fields: dict[str, Any] = dict(
            plan_type=PlanType.FREE.value,
            price=Decimal("0"),
            end_date=expiration,
            is_free_access=True,
            is_trial_coupon=False,
            granted_by_admin_id=admin_id,
        )

        subscription = await subscription_crud.get_subscription_by_user_id(self.db, user_id)
        if subscription is None:
            subscription = await subscription_crud.create_subscription(
                self.db,
                user_id=user_id,
                status=SubscriptionStatus.FREE.value,
                start_date=now,
                **fields,
            )
        else:
            subscription = await self._apply_event(
                subscription, SubscriptionEvent.ADMIN_GRANT_FREE, **fields
            )

        logger.info(
            "subscription.free_access_granted",
            user_id=str(user_id),
            admin_id=str(admin_id),
            end_date=expiration.isoformat(),
        )
        await self._notify_status(subscription)
        return subscription

    async def revoke_free_access(
        self, user_id: uuid.UUID, now: datetime | None = None
    ) -> Subscription:
        """Expire free access immediately."""
        now = now or utcnow()
        subscription = await self._get_for_user(user_id)
        subscription = await self._apply_event(
            subscription,
            SubscriptionEvent.ADMIN_REVOKE_FREE,
            end_date=now - timedelta(days=1),
            is_free_access=False,
        )
        logger.info("subscription.free_access_revoked", user_id=str(user_id))
        await self._notify_status(subscription)
        return subscription

    async def admin_cancel(
        self, subscription_id: uuid.UUID, reason: str | None = None
    ) -> CancelResult:
        """Cancel any provider-billed subscription."""
        subscription = await self._get_by_id(subscription_id)
        if not subscription.remote_subscription_id:
            raise InvalidTransitionError(
                "Subscription is not billed through the provider",
                current_status=subscription.status,
            )
        return await self._cancel(
            subscription, SubscriptionEvent.ADMIN_CANCEL, reason or "Cancelled by administrator"
        )

    async def admin_suspend(
        self, subscription_id: uuid.UUID, reason: str | None = None
    ) -> Subscription:
        """
        Suspend a subscription at the provider, then locally.

        Raises:
            NotFoundError: Subscription missing or not provider-billed
            InvalidTransitionError: Not suspendable
        """
        subscription = await self._get_by_id(subscription_id)
        if not subscription.remote_subscription_id:
            raise NotFoundError("Provider subscription not found")

        decide_transition(subscription, SubscriptionEvent.ADMIN_SUSPEND)
        await self.gateway.suspend_remote(subscription.remote_subscription_id, reason)
        subscription = await self._apply_event(subscription, SubscriptionEvent.ADMIN_SUSPEND)
        await self._notify_status(subscription)
        return subscription

    async def admin_reactivate(
        self, subscription_id: uuid.UUID, reason: str | None = None
    ) -> Subscription:
        """
        Reactivate a suspended subscription.

        Both the local and the provider status must be suspended; a
        cancelled provider subscription can never be reactivated.

        Raises:
            NotFoundError: Subscription missing or not provider-billed
            InvalidTransitionError: Either side is not suspended
        """
        subscription = await self._get_by_id(subscription_id)
        if not subscription.remote_subscription_id:
            raise NotFoundError("Provider subscription not found")

        decide_transition(subscription, SubscriptionEvent.ADMIN_REACTIVATE)

        try:
            remote = await self.gateway.get_remote_subscription(
                subscription.remote_subscription_id
            )
        except NotFoundError as e:
            raise InvalidTransitionError(
                "The provider subscription no longer exists. "
                "The user needs to create a new subscription.",
                current_status=subscription.status,
                eligible_statuses=REACTIVATABLE_STATUSES,
            ) from e

        if remote.status != REMOTE_STATUS_SUSPENDED:
            remote_status = remote.status.lower()
            if remote_status == SubscriptionStatus.CANCELLED.value:
                message = (
                    "Provider subscription is cancelled. Cancelled subscriptions cannot be "
                    "reactivated. The user needs to create a new subscription."
                )
            else:
                message = (
                    f'Provider subscription status is "{remote_status}". '
                    "Only suspended subscriptions can be reactivated."
                )
            raise InvalidTransitionError(
                message,
                current_status=remote_status,
                eligible_statuses=REACTIVATABLE_STATUSES,
            )

        await self.gateway.reactivate_remote(subscription.remote_subscription_id, reason)
        subscription = await self._apply_event(subscription, SubscriptionEvent.ADMIN_REACTIVATE)
        await self._notify_status(subscription)
        return subscription

    async def refund_payment(
        self,
        entry_id: uuid.UUID,
        amount: Decimal | None = None,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> RefundResult:
        """
        Refund a captured payment through the provider.

        Args:
            entry_id: Ledger row UUID
            amount: Amount to refund (defaults to the refundable remainder)
            reason: Refund reason
            now: Evaluation time

        Returns:
            RefundResult

        Raises:
            NotFoundError: Ledger row missing
            InvalidTransitionError: Not refundable or amount too large
            RefundWindowExpiredError: Payment older than the refund window
        """
        now = now or utcnow()
        entry = await subscription_crud.get_billing_entry_by_id(self.db, entry_id)
        if entry is None:
            raise NotFoundError("Payment not found")

        capture_id = entry.remote_sale_id or entry.remote_transaction_id
        if not capture_id:
            raise InvalidTransitionError("Payment does not have a provider sale id")
        if entry.status not in (BillingStatus.PAID.value, BillingStatus.PARTIALLY_REFUNDED.value):
            raise InvalidTransitionError(
                f"Payment is {entry.status} and cannot be refunded",
                current_status=entry.status,
                eligible_statuses=(BillingStatus.PAID.value, BillingStatus.PARTIALLY_REFUNDED.value),
            )
        if now - entry.payment_date > timedelta(days=settings.REFUND_WINDOW_DAYS):
            raise RefundWindowExpiredError(
                f"Refund must be issued within {settings.REFUND_WINDOW_DAYS} days of payment. "
                "Use the provider dashboard to refund manually."
            )

        already_refunded = entry.refunded_amount or Decimal("0")
        refundable = entry.amount - already_refunded
        refund_amount = amount if amount is not None else refundable
        if refund_amount <= 0 or refund_amount > refundable:
            raise InvalidTransitionError(
                f"Refund amount must be between 0 and {refundable} {entry.currency}"
            )

        refund = await self.gateway.refund(capture_id, refund_amount, entry.currency, reason)

        cumulative = already_refunded + refund_amount
        entry = await subscription_crud.update_billing_history_refund(
            self.db,
            entry,
            refunded_amount=cumulative,
            refund_reason=reason,
            remote_refund_id=refund.id or None,
            refunded_date=now,
        )
        full_refund = cumulative >= entry.amount
        logger.info(
            "subscription.refund_recorded",
            billing_entry_id=str(entry.id),
            amount=str(refund_amount),
            full_refund=full_refund,
        )

        cancelled = False
        warning = None
        if full_refund:
            subscription = await self._get_by_id(entry.subscription_id)
            if subscription.status in CANCELLABLE_STATUSES:
                result = await self._cancel(
                    subscription, SubscriptionEvent.ADMIN_CANCEL, reason or "Payment refunded"
                )
                cancelled = True
                warning = result.warning

        return RefundResult(entry, refund, full_refund, cancelled, warning)

    async def record_manual_payment(
        self,
        subscription_id: uuid.UUID,
        amount: Decimal,
        payment_date: datetime,
        currency: str | None = None,
        status: str = BillingStatus.PAID.value,
        remote_transaction_id: str | None = None,
        remote_sale_id: str | None = None,
    ) -> BillingHistory:
        """
        Add a ledger row by hand (payments the provider never reported).

        Raises:
            NotFoundError: Subscription missing
            ConflictError: Transaction id already recorded
        """
        subscription = await self._get_by_id(subscription_id)
        entry = await subscription_crud.append_billing_history(
            self.db,
            subscription_id=subscription.id,
            amount=amount,
            currency=currency or subscription.currency,
            status=status,
            remote_transaction_id=remote_transaction_id,
            remote_sale_id=remote_sale_id or remote_transaction_id,
            payment_date=payment_date,
            invoice_url=(
                self.gateway.transaction_url(remote_transaction_id)
                if remote_transaction_id
                else None
            ),
        )
        logger.info(
            "subscription.manual_payment_recorded",
            subscription_id=str(subscription_id),
            amount=str(amount),
            status=status,
        )
        return entry

