"""Trial expiration reconciliation.

Catches provider trials that ended without a payment but whose local status
was never moved (missed or delayed webhook). The local trial deadline is
authoritative; the provider's status is looked up only as corroborating
evidence and a failed lookup never blocks the local expiry. The sweep only
moves subscriptions forward, so it is safe to run at any frequency.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import BillingError, NotFoundError
from app.crud import subscription as subscription_crud
from app.models.subscription import Subscription
from app.services.billing_gateway import BillingGatewayClient
from app.services.notification_service import NotificationEmitter
from app.services.subscription_state import (
    TRIAL_SWEEP_STATUSES,
    SubscriptionEvent,
    decide_transition,
    is_trial_expired,
    resolve_trial_end_date,
    utcnow,
)

logger = structlog.get_logger()

RECONCILIATION_POLICY = "local-trial-deadline-authoritative"


@dataclass
class SweepResult:
    """Counts from one sweep."""

    examined: int = 0
    updated: int = 0
    errors: int = 0
    expired_subscription_ids: list[str] = field(default_factory=list)


class TrialSweeper:
    """Expires provider trials whose deadline passed without a payment."""

    def __init__(
        self,
        db: AsyncSession,
        gateway: BillingGatewayClient | None = None,
        notifier: NotificationEmitter | None = None,
        fallback_days: int | None = None,
        remote_call_timeout: float | None = None,
    ):
        """Initialize trial sweeper.

        Args:
            db: Database session
            gateway: Billing provider client for the status cross-check (optional)
            notifier: Notification emitter
            fallback_days: Trial length assumed when none was recorded
            remote_call_timeout: Upper bound for the status lookup
        """
        self.db = db
        self.gateway = gateway
        self.notifier = notifier or NotificationEmitter()
        self.fallback_days = (
            settings.TRIAL_FALLBACK_DAYS if fallback_days is None else fallback_days
        )
        self.remote_call_timeout = (
            remote_call_timeout or settings.BILLING_REMOTE_CALL_TIMEOUT_SECONDS
        )

    async def sweep(self, now: datetime | None = None) -> SweepResult:
        """
        Check every remote-linked active or trialing subscription.

        A failure on one subscription is logged and counted; the remaining
        subscriptions are still checked.

        Returns:
            SweepResult
        """
        now = now or utcnow()
        result = SweepResult()
        candidates = await subscription_crud.list_trial_candidates(self.db)
        candidate_ids = [candidate.id for candidate in candidates]

        for subscription_id in candidate_ids:
            result.examined += 1
            try:
                subscription = await subscription_crud.get_subscription_by_id(
                    self.db, subscription_id
                )
                if subscription is not None and await self._check(subscription, now):
                    result.updated += 1
                    result.expired_subscription_ids.append(str(subscription_id))
            except Exception as e:
                await self.db.rollback()
                result.errors += 1
                logger.error(
                    "trial_sweep.subscription_failed",
                    subscription_id=str(subscription_id),
                    error=str(e),
                    exc_info=True,
                )

        logger.info(
            "trial_sweep.completed",
            policy=RECONCILIATION_POLICY,
            examined=result.examined,
            updated=result.updated,
            errors=result.errors,
        )
        return result

    async def check_subscription(
        self, subscription_id: uuid.UUID, now: datetime | None = None
    ) -> bool:
        """
        Apply the sweep rule to one subscription.

        Args:
            subscription_id: Subscription UUID
            now: Evaluation time

        Returns:
            True if the subscription was expired by this call

        Raises:
            NotFoundError: Subscription does not exist
        """
        subscription = await subscription_crud.get_subscription_by_id(self.db, subscription_id)
        if subscription is None:
            raise NotFoundError(f"Subscription {subscription_id} not found")
        if (
            subscription.status not in TRIAL_SWEEP_STATUSES
            or not subscription.remote_subscription_id
        ):
            return False
        return await self._check(subscription, now or utcnow())

    async def _remote_status(self, subscription: Subscription) -> str | None:
        if self.gateway is None:
            return None
        try:
            remote = await asyncio.wait_for(
                self.gateway.get_remote_subscription(subscription.remote_subscription_id),
                timeout=self.remote_call_timeout,
            )
        except (BillingError, asyncio.TimeoutError) as e:
            logger.warning(
                "trial_sweep.remote_lookup_failed",
                subscription_id=str(subscription.id),
                remote_subscription_id=subscription.remote_subscription_id,
                error=str(e) or type(e).__name__,
            )
            return None

        last_payment = (remote.raw.get("billing_info") or {}).get("last_payment")
        if last_payment:
            logger.warning(
                "trial_sweep.remote_reports_payment",
                subscription_id=str(subscription.id),
                remote_subscription_id=subscription.remote_subscription_id,
                remote_status=remote.status,
            )
        return remote.status

    async def _check(self, subscription: Subscription, now: datetime) -> bool:
        if await subscription_crud.has_paid_billing_history(self.db, subscription.id):
            return False

        if subscription.trial_end_date is None:
            deadline = resolve_trial_end_date(subscription, self.fallback_days)
            if deadline is not None:
                subscription = await subscription_crud.update_subscription(
                    self.db, subscription, trial_end_date=deadline
                )
                logger.info(
                    "trial_sweep.trial_end_backfilled",
                    subscription_id=str(subscription.id),
                    trial_end_date=deadline.isoformat(),
                )

        if not is_trial_expired(subscription, False, self.fallback_days, now):
            return False

        remote_status = await self._remote_status(subscription)
        transition = decide_transition(subscription, SubscriptionEvent.TRIAL_DEADLINE_PASSED)
        if not transition.changed:
            return False

        subscription = await subscription_crud.transition_status(
            self.db,
            subscription,
            transition.next_status,
            expected_status=transition.previous_status,
        )
        logger.info(
            "trial_sweep.subscription_expired",
            subscription_id=str(subscription.id),
            remote_subscription_id=subscription.remote_subscription_id,
            remote_status=remote_status,
            trial_end_date=subscription.trial_end_date.isoformat()
            if subscription.trial_end_date
            else None,
        )
        await self.notifier.emit_status_updated(
            subscription.user_id, subscription.id, subscription.status, subscription.plan_type
        )
        return True
