"""Tests for the admin billing endpoints."""

from datetime import timedelta
from decimal import Decimal

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from app.crud import coupon as coupon_crud
from app.crud import subscription as subscription_crud
from app.crud import webhook_event as webhook_crud
from app.models.billing_history import BillingStatus
from app.models.subscription import PlanType, SubscriptionStatus
from app.models.user import User
from app.services.billing_gateway import RemoteTransaction
from app.services.subscription_state import utcnow
from app.workers import tasks

ADMIN_URL = "/api/v1/admin"


@pytest.fixture
def queued(monkeypatch) -> list[str]:
    """Capture worker dispatches instead of talking to the broker."""
    sent: list[str] = []
    monkeypatch.setattr(tasks.process_webhook_event, "delay", lambda event_id: sent.append(event_id))
    return sent


class TestAdminAuthorization:
    """Only superusers reach the admin API."""

    @pytest.mark.asyncio
    async def test_regular_user_forbidden(self, async_client: AsyncClient, test_user: User, auth_headers):
        """Regular users get 403."""
        response = await async_client.get(f"{ADMIN_URL}/coupons", headers=auth_headers(test_user))

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_read_views_forbidden_for_users(
        self, async_client: AsyncClient, test_user: User, auth_headers
    ):
        """Subscription and payment listings are admin only."""
        for path in ("/subscriptions", "/subscriptions/stats", "/payments", "/payments/refund-history"):
            response = await async_client.get(f"{ADMIN_URL}{path}", headers=auth_headers(test_user))

            assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_anonymous_unauthorized(self, async_client: AsyncClient):
        """Anonymous requests get 401."""
        response = await async_client.get(f"{ADMIN_URL}/coupons")

        assert response.status_code == 401


class TestFreeAccess:
    """PUT/DELETE /users/{id}/free-access."""

    @pytest.mark.asyncio
    async def test_grant_for_days(
        self, async_client: AsyncClient, test_user: User, test_superuser: User, auth_headers, notifier
    ):
        """A grant creates a free subscription ending after the given days."""
        response = await async_client.put(
            f"{ADMIN_URL}/users/{test_user.id}/free-access",
            json={"days": 30},
            headers=auth_headers(test_superuser),
        )

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == SubscriptionStatus.FREE.value
        assert data["plan_type"] == PlanType.FREE.value
        assert data["is_free_access"] is True
        assert data["end_date"] is not None
        assert notifier.names() == ["subscription:status_updated"]

    @pytest.mark.asyncio
    async def test_grant_unknown_user(self, async_client: AsyncClient, test_superuser: User, auth_headers):
        """Grants need an existing user."""
        response = await async_client.put(
            f"{ADMIN_URL}/users/00000000-0000-0000-0000-000000000000/free-access",
            json={"days": 30},
            headers=auth_headers(test_superuser),
        )

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_revoke(
        self, async_client: AsyncClient, test_user: User, test_superuser: User, auth_headers
    ):
        """Revoking ends access at once."""
        await async_client.put(
            f"{ADMIN_URL}/users/{test_user.id}/free-access",
            json={"days": 30},
            headers=auth_headers(test_superuser),
        )

        response = await async_client.delete(
            f"{ADMIN_URL}/users/{test_user.id}/free-access",
            headers=auth_headers(test_superuser),
        )

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == SubscriptionStatus.EXPIRED.value
        assert data["is_free_access"] is False


class TestLifecycleActions:
    """Admin cancel, suspend and reactivate."""

    @pytest.mark.asyncio
    async def test_suspend(
        self,
        async_client: AsyncClient,
        test_user: User,
        test_superuser: User,
        auth_headers,
        make_subscription,
        gateway,
    ):
        """Suspension happens at the provider first, then locally."""
        subscription = await make_subscription(test_user)
        gateway.add_remote("I-MONTHLY-1")

        response = await async_client.post(
            f"{ADMIN_URL}/subscriptions/{subscription.id}/suspend",
            json={"reason": "Chargeback"},
            headers=auth_headers(test_superuser),
        )

        assert response.status_code == 200
        assert response.json()["status"] == SubscriptionStatus.SUSPENDED.value
        assert gateway.method_calls("suspend_remote") == ["I-MONTHLY-1"]

    @pytest.mark.asyncio
    async def test_reactivate(
        self,
        async_client: AsyncClient,
        test_user: User,
        test_superuser: User,
        auth_headers,
        make_subscription,
        gateway,
    ):
        """Suspended on both sides reactivates."""
        subscription = await make_subscription(test_user, status=SubscriptionStatus.SUSPENDED.value)
        gateway.add_remote("I-MONTHLY-1", status="SUSPENDED")

        response = await async_client.post(
            f"{ADMIN_URL}/subscriptions/{subscription.id}/activate",
            json={},
            headers=auth_headers(test_superuser),
        )

        assert response.status_code == 200
        assert response.json()["status"] == SubscriptionStatus.ACTIVE.value

    @pytest.mark.asyncio
    async def test_reactivate_cancelled_remote_refused(
        self,
        async_client: AsyncClient,
        test_user: User,
        test_superuser: User,
        auth_headers,
        make_subscription,
        gateway,
    ):
        """A cancelled provider subscription cannot come back."""
        subscription = await make_subscription(test_user, status=SubscriptionStatus.SUSPENDED.value)
        gateway.add_remote("I-MONTHLY-1", status="CANCELLED")

        response = await async_client.post(
            f"{ADMIN_URL}/subscriptions/{subscription.id}/activate",
            json={},
            headers=auth_headers(test_superuser),
        )

        assert response.status_code == 400
        detail = response.json()["detail"]
        assert detail["current_status"] == "cancelled"
        assert detail["eligible_statuses"] == ["suspended"]
        assert gateway.method_calls("reactivate_remote") == []

    @pytest.mark.asyncio
    async def test_cancel_unknown_subscription(
        self, async_client: AsyncClient, test_superuser: User, auth_headers
    ):
        """404 for unknown subscriptions."""
        response = await async_client.post(
            f"{ADMIN_URL}/subscriptions/00000000-0000-0000-0000-000000000000/cancel",
            json={},
            headers=auth_headers(test_superuser),
        )

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_sweep_trials(
        self,
        async_client: AsyncClient,
        test_user: User,
        test_superuser: User,
        auth_headers,
        make_subscription,
    ):
        """The sweep endpoint expires unpaid trials past their end."""
        await make_subscription(
            test_user,
            status=SubscriptionStatus.TRIALING.value,
            start_date=utcnow() - timedelta(days=10),
            trial_end_date=utcnow() - timedelta(days=5),
        )

        response = await async_client.post(
            f"{ADMIN_URL}/trials/sweep", headers=auth_headers(test_superuser)
        )

        assert response.status_code == 200
        assert response.json() == {"examined": 1, "updated": 1, "errors": 0}


class TestPayments:
    """Refunds, manual payments, stats and sync."""

    @pytest.mark.asyncio
    async def test_full_refund_cancels_subscription(
        self,
        async_client: AsyncClient,
        db_session: AsyncSession,
        test_user: User,
        test_superuser: User,
        auth_headers,
        make_subscription,
        make_payment,
        gateway,
    ):
        """Refunding everything marks the row refunded and cancels."""
        subscription = await make_subscription(test_user)
        entry = await make_payment(subscription)
        gateway.add_remote("I-MONTHLY-1")

        response = await async_client.post(
            f"{ADMIN_URL}/payments/{entry.id}/refund",
            json={"reason": "Duplicate charge"},
            headers=auth_headers(test_superuser),
        )

        assert response.status_code == 200
        data = response.json()
        assert data["full_refund"] is True
        assert data["subscription_cancelled"] is True
        assert data["entry"]["status"] == BillingStatus.REFUNDED.value
        assert gateway.method_calls("refund") == [("SALE-1", Decimal("12.90"))]

        refreshed = await subscription_crud.get_subscription_by_id(db_session, subscription.id)
        await db_session.refresh(refreshed)
        assert refreshed.status == SubscriptionStatus.CANCELLED.value

    @pytest.mark.asyncio
    async def test_partial_refund(
        self,
        async_client: AsyncClient,
        test_user: User,
        test_superuser: User,
        auth_headers,
        make_subscription,
        make_payment,
    ):
        """Partial refunds keep the subscription."""
        subscription = await make_subscription(test_user)
        entry = await make_payment(subscription)

        response = await async_client.post(
            f"{ADMIN_URL}/payments/{entry.id}/refund",
            json={"amount": "5.00"},
            headers=auth_headers(test_superuser),
        )

        assert response.status_code == 200
        data = response.json()
        assert data["full_refund"] is False
        assert data["subscription_cancelled"] is False
        assert data["entry"]["status"] == BillingStatus.PARTIALLY_REFUNDED.value

    @pytest.mark.asyncio
    async def test_refund_window_expired(
        self,
        async_client: AsyncClient,
        test_user: User,
        test_superuser: User,
        auth_headers,
        make_subscription,
        make_payment,
        gateway,
    ):
        """Payments older than the refund window are refused without a provider call."""
        subscription = await make_subscription(test_user)
        entry = await make_payment(subscription, payment_date=utcnow() - timedelta(days=181))

        response = await async_client.post(
            f"{ADMIN_URL}/payments/{entry.id}/refund",
            json={},
            headers=auth_headers(test_superuser),
        )

        assert response.status_code == 400
        assert "180 days" in response.json()["detail"]
        assert gateway.method_calls("refund") == []

    @pytest.mark.asyncio
    async def test_manual_payment_and_stats(
        self,
        async_client: AsyncClient,
        test_user: User,
        test_superuser: User,
        auth_headers,
        make_subscription,
    ):
        """Manual rows count towards the ledger totals."""
        subscription = await make_subscription(test_user)

        created = await async_client.post(
            f"{ADMIN_URL}/payments/manual",
            json={
                "subscription_id": str(subscription.id),
                "amount": "118.80",
                "payment_date": utcnow().isoformat(),
                "remote_transaction_id": "MANUAL-1",
            },
            headers=auth_headers(test_superuser),
        )
        stats = await async_client.get(
            f"{ADMIN_URL}/payments/stats", headers=auth_headers(test_superuser)
        )

        assert created.status_code == 201
        assert created.json()["invoice_url"] == "https://provider.test/activity/payment/MANUAL-1"
        assert stats.status_code == 200
        data = stats.json()
        assert data["payments_by_status"] == {"paid": 1}
        assert Decimal(data["total_revenue"]) == Decimal("118.80")
        assert Decimal(data["net_revenue"]) == Decimal("118.80")
        assert data["subscriptions_by_status"] == {"active": 1}

    @pytest.mark.asyncio
    async def test_duplicate_manual_payment(
        self,
        async_client: AsyncClient,
        test_user: User,
        test_superuser: User,
        auth_headers,
        make_subscription,
        make_payment,
    ):
        """A transaction id is recorded once."""
        subscription = await make_subscription(test_user)
        await make_payment(subscription, transaction_id="SALE-1")

        response = await async_client.post(
            f"{ADMIN_URL}/payments/manual",
            json={
                "subscription_id": str(subscription.id),
                "amount": "12.90",
                "payment_date": utcnow().isoformat(),
                "remote_transaction_id": "SALE-1",
            },
            headers=auth_headers(test_superuser),
        )

        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_sync_subscription_payments(
        self,
        async_client: AsyncClient,
        test_user: User,
        test_superuser: User,
        auth_headers,
        make_subscription,
        gateway,
    ):
        """Completed provider transactions are pulled into the ledger."""
        subscription = await make_subscription(test_user)
        gateway.transactions["I-MONTHLY-1"] = [
            RemoteTransaction("TX-1", "S", Decimal("12.90"), "USD", utcnow()),
            RemoteTransaction("TX-2", "D", Decimal("12.90"), "USD", utcnow()),
        ]

        response = await async_client.post(
            f"{ADMIN_URL}/payments/sync/{subscription.id}",
            headers=auth_headers(test_superuser),
        )

        assert response.status_code == 200
        assert response.json() == {
            "subscription_id": str(subscription.id),
            "synced": 1,
            "skipped": 1,
        }


class TestAdminReadViews:
    """Subscription overview, stats and payment listings."""

    @pytest.mark.asyncio
    async def test_subscription_list_classifies_users(
        self,
        async_client: AsyncClient,
        test_user: User,
        other_user: User,
        test_superuser: User,
        auth_headers,
        make_subscription,
        make_payment,
    ):
        """An unpaid provider subscription is a trial; a charged one is paid."""
        await make_subscription(test_user)
        paid = await make_subscription(other_user, remote_subscription_id="I-MONTHLY-2")
        await make_payment(paid)

        response = await async_client.get(
            f"{ADMIN_URL}/subscriptions", headers=auth_headers(test_superuser)
        )

        assert response.status_code == 200
        rows = {row["user"]["email"]: row for row in response.json()}
        assert set(rows) == {"test@example.com", "other@example.com"}

        trial = rows["test@example.com"]
        assert trial["user_status"] == "Free trial"
        assert trial["is_provider_trial"] is True
        assert trial["has_paid_history"] is False
        assert trial["has_full_access"] is True
        assert trial["subscription"]["remote_subscription_id"] == "I-MONTHLY-1"
        assert trial["trial_end_date"] is not None

        active = rows["other@example.com"]
        assert active["user_status"] == "Active user (Paid)"
        assert active["is_provider_trial"] is False
        assert active["has_paid_history"] is True
        assert active["user"]["full_name"] == "Other User"

    @pytest.mark.asyncio
    async def test_subscription_list_status_filter(
        self,
        async_client: AsyncClient,
        test_user: User,
        other_user: User,
        test_superuser: User,
        auth_headers,
        make_subscription,
    ):
        """The status filter matches the stored status."""
        await make_subscription(test_user)
        await make_subscription(
            other_user,
            status=SubscriptionStatus.CANCELLED.value,
            remote_subscription_id="I-MONTHLY-2",
        )

        response = await async_client.get(
            f"{ADMIN_URL}/subscriptions",
            params={"status": SubscriptionStatus.CANCELLED.value},
            headers=auth_headers(test_superuser),
        )

        assert response.status_code == 200
        data = response.json()
        assert len(data) == 1
        assert data[0]["user"]["email"] == "other@example.com"
        assert data[0]["user_status"] == "Churned"

    @pytest.mark.asyncio
    async def test_subscription_stats(
        self,
        async_client: AsyncClient,
        test_user: User,
        other_user: User,
        test_superuser: User,
        auth_headers,
        make_subscription,
        make_payment,
    ):
        """Counts follow the derived user status, revenue follows the ledger."""
        await make_subscription(test_user)
        paid = await make_subscription(other_user, remote_subscription_id="I-MONTHLY-2")
        await make_payment(paid)
        await make_subscription(
            test_superuser,
            status=SubscriptionStatus.CANCELLED.value,
            remote_subscription_id="I-MONTHLY-3",
        )

        response = await async_client.get(
            f"{ADMIN_URL}/subscriptions/stats", headers=auth_headers(test_superuser)
        )

        assert response.status_code == 200
        data = response.json()
        assert data["total_subscriptions"] == 3
        assert data["active_paid"] == 1
        assert data["provider_trials"] == 1
        assert data["coupon_trials"] == 0
        assert data["churned"] == 1
        assert data["cancelled"] == 1
        assert data["by_user_status"] == {
            "Free trial": 1,
            "Active user (Paid)": 1,
            "Churned": 1,
            "Free access": 0,
        }
        assert Decimal(data["total_revenue"]) == Decimal("12.90")
        assert Decimal(data["net_revenue"]) == Decimal("12.90")

    @pytest.mark.asyncio
    async def test_payment_list_includes_owner(
        self,
        async_client: AsyncClient,
        test_user: User,
        other_user: User,
        test_superuser: User,
        auth_headers,
        make_subscription,
        make_payment,
    ):
        """Every ledger row carries its owner and plan, newest first."""
        first = await make_subscription(test_user)
        second = await make_subscription(other_user, remote_subscription_id="I-MONTHLY-2")
        await make_payment(first, transaction_id="SALE-OLD", payment_date=utcnow() - timedelta(days=3))
        await make_payment(second, transaction_id="SALE-NEW")

        response = await async_client.get(
            f"{ADMIN_URL}/payments", headers=auth_headers(test_superuser)
        )

        assert response.status_code == 200
        data = response.json()
        assert [row["remote_transaction_id"] for row in data] == ["SALE-NEW", "SALE-OLD"]
        assert data[0]["user_email"] == "other@example.com"
        assert data[0]["user_id"] == str(other_user.id)
        assert data[0]["remote_subscription_id"] == "I-MONTHLY-2"
        assert data[1]["user_email"] == "test@example.com"
        assert data[1]["plan_type"] == PlanType.MONTHLY.value
        assert data[1]["invoice_url"] == "https://provider.test/activity/payment/SALE-OLD"

    @pytest.mark.asyncio
    async def test_refund_history_only_refunds(
        self,
        async_client: AsyncClient,
        test_user: User,
        test_superuser: User,
        auth_headers,
        make_subscription,
        make_payment,
    ):
        """Paid rows are left out of the refund history."""
        subscription = await make_subscription(test_user)
        await make_payment(subscription, transaction_id="SALE-PAID")
        await make_payment(
            subscription, transaction_id="SALE-REFUNDED", status=BillingStatus.REFUNDED.value
        )
        await make_payment(
            subscription,
            transaction_id="SALE-PARTIAL",
            status=BillingStatus.PARTIALLY_REFUNDED.value,
        )

        response = await async_client.get(
            f"{ADMIN_URL}/payments/refund-history", headers=auth_headers(test_superuser)
        )

        assert response.status_code == 200
        data = response.json()
        assert {row["remote_transaction_id"] for row in data} == {"SALE-REFUNDED", "SALE-PARTIAL"}
        assert all(row["user_email"] == "test@example.com" for row in data)


class TestCoupons:
    """Coupon administration."""

    @pytest.mark.asyncio
    async def test_create_and_list(self, async_client: AsyncClient, test_superuser: User, auth_headers):
        """Codes are stored upper-case."""
        created = await async_client.post(
            f"{ADMIN_URL}/coupons",
            json={"code": "launch-week", "trial_days": 14, "max_uses": 100},
            headers=auth_headers(test_superuser),
        )
        listed = await async_client.get(f"{ADMIN_URL}/coupons", headers=auth_headers(test_superuser))

        assert created.status_code == 201
        assert created.json()["code"] == "LAUNCH-WEEK"
        assert created.json()["current_uses"] == 0
        assert [c["code"] for c in listed.json()] == ["LAUNCH-WEEK"]

    @pytest.mark.asyncio
    async def test_duplicate_code(
        self, async_client: AsyncClient, db_session: AsyncSession, test_superuser: User, auth_headers
    ):
        """Codes are unique regardless of case."""
        await coupon_crud.create_coupon(db_session, "LAUNCH", 14)

        response = await async_client.post(
            f"{ADMIN_URL}/coupons",
            json={"code": "launch", "trial_days": 7},
            headers=auth_headers(test_superuser),
        )

        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_max_uses_below_current_uses(
        self, async_client: AsyncClient, db_session: AsyncSession, test_superuser: User, auth_headers
    ):
        """The cap cannot drop below uses already granted."""
        coupon = await coupon_crud.create_coupon(db_session, "LAUNCH", 14, max_uses=10)
        coupon.current_uses = 5
        await db_session.commit()

        response = await async_client.patch(
            f"{ADMIN_URL}/coupons/{coupon.id}",
            json={"max_uses": 3},
            headers=auth_headers(test_superuser),
        )

        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_deactivate_and_usage(
        self,
        async_client: AsyncClient,
        db_session: AsyncSession,
        test_user: User,
        test_superuser: User,
        auth_headers,
    ):
        """Deactivation keeps granted trials visible in the usage report."""
        coupon = await coupon_crud.create_coupon(db_session, "LAUNCH", 14)
        await async_client.post(
            "/api/v1/subscriptions/redeem-coupon",
            json={"code": "LAUNCH"},
            headers=auth_headers(test_user),
        )

        deactivated = await async_client.delete(
            f"{ADMIN_URL}/coupons/{coupon.id}", headers=auth_headers(test_superuser)
        )
        usage = await async_client.get(
            f"{ADMIN_URL}/coupons/launch/usage", headers=auth_headers(test_superuser)
        )

        assert deactivated.json()["is_active"] is False
        data = usage.json()
        assert data["coupon"]["current_uses"] == 1
        assert [s["user_id"] for s in data["redemptions"]] == [str(test_user.id)]

    @pytest.mark.asyncio
    async def test_unknown_coupon(self, async_client: AsyncClient, test_superuser: User, auth_headers):
        """404 for unknown coupons."""
        response = await async_client.get(
            f"{ADMIN_URL}/coupons/NOPE/usage", headers=auth_headers(test_superuser)
        )

        assert response.status_code == 404


class TestWebhookAdmin:
    """Stored webhook events."""

    @pytest.mark.asyncio
    async def test_list_failed_only(
        self, async_client: AsyncClient, db_session: AsyncSession, test_superuser: User, auth_headers
    ):
        """failed_only shows unfinished events that recorded an error."""
        done = await webhook_crud.create_webhook_event(
            db_session, "WH-DONE", "PAYMENT.SALE.COMPLETED", {"id": "WH-DONE"}
        )
        await webhook_crud.mark_processed(db_session, done)
        pending = await webhook_crud.create_webhook_event(
            db_session, "WH-PENDING", "PAYMENT.SALE.COMPLETED", {"id": "WH-PENDING"}
        )
        pending.error = "Subscription not found"
        await db_session.commit()

        response = await async_client.get(
            f"{ADMIN_URL}/webhooks", params={"failed_only": True}, headers=auth_headers(test_superuser)
        )

        assert response.status_code == 200
        assert [e["provider_event_id"] for e in response.json()] == ["WH-PENDING"]

    @pytest.mark.asyncio
    async def test_retry_requeues_with_fresh_attempts(
        self,
        async_client: AsyncClient,
        db_session: AsyncSession,
        test_superuser: User,
        auth_headers,
        queued: list[str],
    ):
        """An exhausted event gets its attempt counter reset."""
        event = await webhook_crud.create_webhook_event(
            db_session, "WH-STUCK", "PAYMENT.SALE.COMPLETED", {"id": "WH-STUCK"}
        )
        event.attempts = 5
        event.error = "Subscription not found"
        await db_session.commit()

        response = await async_client.post(
            f"{ADMIN_URL}/webhooks/{event.id}/retry", headers=auth_headers(test_superuser)
        )

        assert response.status_code == 200
        assert response.json()["attempts"] == 0
        assert queued == [str(event.id)]

    @pytest.mark.asyncio
    async def test_retry_processed_refused(
        self,
        async_client: AsyncClient,
        db_session: AsyncSession,
        test_superuser: User,
        auth_headers,
        queued: list[str],
    ):
        """Completed events are never re-run."""
        event = await webhook_crud.create_webhook_event(
            db_session, "WH-DONE", "PAYMENT.SALE.COMPLETED", {"id": "WH-DONE"}
        )
        await webhook_crud.mark_processed(db_session, event)

        response = await async_client.post(
            f"{ADMIN_URL}/webhooks/{event.id}/retry", headers=auth_headers(test_superuser)
        )

        assert response.status_code == 400
        assert queued == []
