"""Tests for the trial expiration sweep."""

import uuid
from datetime import timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import NotFoundError, ProviderUnavailableError
from app.crud import subscription as subscription_crud
from app.models.subscription import PlanType, SubscriptionStatus
from app.models.user import User
from app.services.subscription_state import utcnow
from app.services.trial_sweeper import TrialSweeper


class TestTrialSweep:
    """Batch sweep over remote-linked subscriptions."""

    @pytest.mark.asyncio
    async def test_fallback_deadline_expires_unpaid_trial(
        self, db_session: AsyncSession, test_user: User, make_subscription, gateway, notifier
    ):
        """Without a recorded trial end, start plus five days is the deadline."""
        start = utcnow() - timedelta(days=6)
        subscription = await make_subscription(test_user, start_date=start)
        gateway.add_remote("I-MONTHLY-1")

        result = await TrialSweeper(db_session, gateway, notifier).sweep()

        assert result.examined == 1
        assert result.updated == 1
        assert result.expired_subscription_ids == [str(subscription.id)]
        stored = await subscription_crud.get_subscription_by_id(db_session, subscription.id)
        assert stored.status == SubscriptionStatus.EXPIRED.value
        assert stored.trial_end_date == start + timedelta(days=5)
        assert notifier.names() == ["subscription:status_updated"]

    @pytest.mark.asyncio
    async def test_deadline_not_reached(
        self, db_session: AsyncSession, test_user: User, make_subscription, notifier
    ):
        """Trials inside their window are left alone but get a deadline recorded."""
        start = utcnow() - timedelta(days=4)
        subscription = await make_subscription(test_user, start_date=start)

        result = await TrialSweeper(db_session, notifier=notifier).sweep()

        assert result.updated == 0
        stored = await subscription_crud.get_subscription_by_id(db_session, subscription.id)
        assert stored.status == SubscriptionStatus.ACTIVE.value
        assert stored.trial_end_date == start + timedelta(days=5)

    @pytest.mark.asyncio
    async def test_paid_subscription_never_expires(
        self,
        db_session: AsyncSession,
        test_user: User,
        make_subscription,
        make_payment,
        notifier,
    ):
        """Any charged payment ends the trial question."""
        subscription = await make_subscription(
            test_user, start_date=utcnow() - timedelta(days=60)
        )
        await make_payment(subscription)

        result = await TrialSweeper(db_session, notifier=notifier).sweep()

        assert result.updated == 0
        stored = await subscription_crud.get_subscription_by_id(db_session, subscription.id)
        assert stored.status == SubscriptionStatus.ACTIVE.value

    @pytest.mark.asyncio
    async def test_remote_lookup_failure_does_not_block(
        self, db_session: AsyncSession, test_user: User, make_subscription, gateway, notifier
    ):
        """The local deadline decides even when the provider is down."""
        subscription = await make_subscription(
            test_user,
            status=SubscriptionStatus.TRIALING.value,
            trial_end_date=utcnow() - timedelta(hours=1),
        )
        gateway.errors["get_remote_subscription"] = ProviderUnavailableError("timeout")

        result = await TrialSweeper(db_session, gateway, notifier).sweep()

        assert result.updated == 1
        assert result.errors == 0
        stored = await subscription_crud.get_subscription_by_id(db_session, subscription.id)
        assert stored.status == SubscriptionStatus.EXPIRED.value

    @pytest.mark.asyncio
    async def test_failure_on_one_subscription_is_isolated(
        self,
        db_session: AsyncSession,
        test_user: User,
        other_user: User,
        make_subscription,
        notifier,
        monkeypatch,
    ):
        """A failing subscription is counted and the rest are still swept."""
        broken = await make_subscription(
            test_user,
            start_date=utcnow() - timedelta(days=20),
            remote_subscription_id="I-BROKEN",
        )
        healthy = await make_subscription(
            other_user,
            start_date=utcnow() - timedelta(days=10),
            remote_subscription_id="I-HEALTHY",
        )
        broken_id = broken.id
        healthy_id = healthy.id
        original = subscription_crud.has_paid_billing_history

        async def flaky_paid_history(db, subscription_id):
            if subscription_id == broken_id:
                raise RuntimeError("database hiccup")
            return await original(db, subscription_id)

        monkeypatch.setattr(subscription_crud, "has_paid_billing_history", flaky_paid_history)

        result = await TrialSweeper(db_session, notifier=notifier).sweep()

        assert result.examined == 2
        assert result.errors == 1
        assert result.expired_subscription_ids == [str(healthy_id)]

    @pytest.mark.asyncio
    async def test_local_grants_are_not_candidates(
        self, db_session: AsyncSession, test_user: User, make_subscription, notifier
    ):
        """Coupon trials without a remote id are outside the sweep."""
        await make_subscription(
            test_user,
            status=SubscriptionStatus.TRIAL.value,
            plan_type=PlanType.TRIAL.value,
            remote_subscription_id=None,
            is_trial_coupon=True,
            start_date=utcnow() - timedelta(days=30),
            end_date=utcnow() - timedelta(days=16),
        )

        result = await TrialSweeper(db_session, notifier=notifier).sweep()

        assert result.examined == 0


class TestCheckSubscription:
    """Single-subscription check used by access lookups."""

    @pytest.mark.asyncio
    async def test_missing_subscription(self, db_session: AsyncSession, notifier):
        """Unknown ids raise NotFoundError."""
        with pytest.raises(NotFoundError):
            await TrialSweeper(db_session, notifier=notifier).check_subscription(uuid.uuid4())

    @pytest.mark.asyncio
    async def test_cancelled_subscription_is_skipped(
        self, db_session: AsyncSession, test_user: User, make_subscription, notifier
    ):
        """Only active or trialing subscriptions can expire by deadline."""
        subscription = await make_subscription(
            test_user,
            status=SubscriptionStatus.CANCELLED.value,
            start_date=utcnow() - timedelta(days=30),
        )

        expired = await TrialSweeper(db_session, notifier=notifier).check_subscription(
            subscription.id
        )

        assert expired is False

    @pytest.mark.asyncio
    async def test_expires_exactly_after_deadline(
        self, db_session: AsyncSession, test_user: User, make_subscription, notifier
    ):
        """The deadline itself is still inside the trial."""
        deadline = utcnow() - timedelta(days=1)
        subscription = await make_subscription(test_user, trial_end_date=deadline)
        sweeper = TrialSweeper(db_session, notifier=notifier)

        assert await sweeper.check_subscription(subscription.id, now=deadline) is False
        assert (
            await sweeper.check_subscription(subscription.id, now=deadline + timedelta(seconds=1))
            is True
        )
