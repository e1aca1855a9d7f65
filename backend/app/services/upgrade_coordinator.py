"""Monthly to annual plan upgrades.

The old monthly remote subscription is never cancelled when the user
switches: it is tracked as superseded and only cancelled once the first
payment of the new annual subscription has been confirmed. If the annual
charge never clears, the monthly subscription keeps running.
"""

import asyncio
from dataclasses import dataclass, field

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import (
    BillingError,
    InvalidTransitionError,
    RemoteNotFoundError,
)
from app.crud import subscription as subscription_crud
from app.models.subscription import PlanType, Subscription
from app.models.superseded_remote_subscription import SupersededState
from app.services.billing_gateway import (
    REMOTE_STATUS_ACTIVE,
    REMOTE_STATUS_APPROVED,
    REMOTE_STATUS_SUSPENDED,
    BillingGatewayClient,
    RemoteSubscription,
)
from app.services.subscription_state import (
    SubscriptionEvent,
    TransitionContext,
    decide_transition,
)

logger = structlog.get_logger()

CANCELLABLE_REMOTE_STATUSES = frozenset(
    {REMOTE_STATUS_ACTIVE, REMOTE_STATUS_APPROVED, REMOTE_STATUS_SUSPENDED}
)


@dataclass
class UpgradeCleanupResult:
    """Outcome of cancelling superseded remote subscriptions."""

    cancelled: int = 0
    already_gone: int = 0
    failed: int = 0
    failed_remote_ids: list[str] = field(default_factory=list)


class UpgradeCoordinator:
    """Coordinates the two remote subscriptions involved in an upgrade."""

    def __init__(
        self,
        db: AsyncSession,
        gateway: BillingGatewayClient,
        remote_call_timeout: float | None = None,
    ):
        """Initialize upgrade coordinator.

        Args:
            db: Database session
            gateway: Billing provider client
            remote_call_timeout: Upper bound for each remote call
        """
        self.db = db
        self.gateway = gateway
        self.remote_call_timeout = (
            remote_call_timeout or settings.BILLING_REMOTE_CALL_TIMEOUT_SECONDS
        )

    async def begin_upgrade(
        self,
        subscription: Subscription,
        new_remote_id: str,
        remote: RemoteSubscription | None = None,
    ) -> Subscription:
        """
        Switch the local subscription to the annual plan.

        The previous monthly remote id is recorded as pending cleanup in the
        same transaction; no remote cancellation happens here.

        Args:
            subscription: User's current (monthly) subscription
            new_remote_id: Provider id of the new annual subscription
            remote: Provider snapshot of the new subscription, if fetched

        Returns:
            Updated subscription
        """
        old_remote_id = subscription.remote_subscription_id
        old_plan_type = subscription.plan_type

        if (
            old_remote_id
            and old_remote_id != new_remote_id
            and old_plan_type == PlanType.MONTHLY.value
        ):
            await subscription_crud.add_superseded_remote(
                self.db,
                subscription,
                remote_subscription_id=old_remote_id,
                plan_type=old_plan_type,
                replaced_by_remote_id=new_remote_id,
                commit=False,
            )

        in_trial = remote.in_trial if remote is not None else False
        transition = decide_transition(
            subscription,
            SubscriptionEvent.USER_UPGRADE,
            TransitionContext(in_provider_trial=in_trial),
        )
        subscription = await subscription_crud.transition_status(
            self.db,
            subscription,
            transition.next_status,
            expected_status=transition.previous_status,
            plan_type=PlanType.ANNUAL.value,
            remote_subscription_id=new_remote_id,
            remote_plan_id=remote.plan_id if remote else self.gateway.plan_id_for(PlanType.ANNUAL.value),
            trial_end_date=remote.trial_end_date if remote else None,
            price=settings.PLAN_PRICE_ANNUAL,
            currency=settings.BILLING_CURRENCY,
            is_free_access=False,
            is_trial_coupon=False,
        )

        logger.info(
            "upgrade.started",
            subscription_id=str(subscription.id),
            old_remote_subscription_id=old_remote_id,
            new_remote_subscription_id=new_remote_id,
        )
        return subscription

    async def complete_upgrade(self, subscription: Subscription) -> UpgradeCleanupResult:
        """
        Cancel superseded monthly remotes after the annual payment cleared.

        Each remote call is bounded by remote_call_timeout. Remotes that are
        already gone count as resolved; unexpected failures are marked
        failed for manual follow-up and the loop moves on.

        Args:
            subscription: Annual subscription whose payment was confirmed

        Returns:
            UpgradeCleanupResult
        """
        result = UpgradeCleanupResult()
        pending = await subscription_crud.list_pending_superseded(
            self.db, subscription.user_id, plan_types=[PlanType.MONTHLY.value]
        )

        for row in pending:
            remote_id = row.remote_subscription_id
            if remote_id == subscription.remote_subscription_id:
                continue

            try:
                remote = await asyncio.wait_for(
                    self.gateway.get_remote_subscription(remote_id),
                    timeout=self.remote_call_timeout,
                )
                if remote.status in CANCELLABLE_REMOTE_STATUSES:
                    await asyncio.wait_for(
                        self.gateway.cancel_remote(remote_id, reason="Upgraded to annual plan"),
                        timeout=self.remote_call_timeout,
                    )
                    result.cancelled += 1
                    logger.info("upgrade.superseded_cancelled", remote_subscription_id=remote_id)
                else:
                    result.already_gone += 1
                    logger.info(
                        "upgrade.superseded_not_cancellable",
                        remote_subscription_id=remote_id,
                        remote_status=remote.status,
                    )
                await subscription_crud.resolve_superseded(
                    self.db, row, SupersededState.CANCELLED.value
                )
            except (RemoteNotFoundError, InvalidTransitionError) as e:
                result.already_gone += 1
                logger.info(
                    "upgrade.superseded_already_gone",
                    remote_subscription_id=remote_id,
                    error=str(e),
                )
                await subscription_crud.resolve_superseded(
                    self.db, row, SupersededState.CANCELLED.value, error=str(e)
                )
            except (BillingError, asyncio.TimeoutError) as e:
                result.failed += 1
                result.failed_remote_ids.append(remote_id)
                message = str(e) or type(e).__name__
                logger.error(
                    "upgrade.superseded_cancel_failed",
                    remote_subscription_id=remote_id,
                    user_id=str(subscription.user_id),
                    error=message,
                )
                await subscription_crud.resolve_superseded(
                    self.db, row, SupersededState.FAILED.value, error=message
                )

        if pending:
            logger.info(
                "upgrade.cleanup_completed",
                subscription_id=str(subscription.id),
                cancelled=result.cancelled,
                already_gone=result.already_gone,
                failed=result.failed,
            )
        return result
