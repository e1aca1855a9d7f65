"""Tests for the provider webhook endpoint."""

import json

import pytest
from httpx import AsyncClient
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import ProviderUnavailableError
from app.crud import webhook_event as webhook_crud
from app.models.payment_webhook import PaymentWebhookEvent
from app.workers import tasks

WEBHOOK_URL = "/api/v1/payments/webhook"


def _event(event_id: str = "WH-EVT-1", event_type: str = "BILLING.SUBSCRIPTION.ACTIVATED") -> dict:
    return {
        "id": event_id,
        "event_type": event_type,
        "create_time": "2026-10-01T10:00:00Z",
        "resource": {"id": "I-MONTHLY-1", "status": "ACTIVE"},
    }


@pytest.fixture
def queued(monkeypatch) -> list[str]:
    """Capture worker dispatches instead of talking to the broker."""
    sent: list[str] = []
    monkeypatch.setattr(tasks.process_webhook_event, "delay", lambda event_id: sent.append(event_id))
    return sent


class TestWebhookIngestion:
    """Store-and-acknowledge behaviour."""

    @pytest.mark.asyncio
    async def test_new_event_stored_and_queued(
        self, async_client: AsyncClient, db_session: AsyncSession, queued: list[str]
    ):
        """A new delivery is persisted and handed to a worker."""
        response = await async_client.post(WEBHOOK_URL, json=_event())

        assert response.status_code == 200
        assert response.json() == {"received": True, "duplicate": False}

        event = await webhook_crud.get_by_provider_event_id(db_session, "WH-EVT-1")
        assert event is not None
        assert event.event_type == "BILLING.SUBSCRIPTION.ACTIVATED"
        assert event.processed is False
        assert queued == [str(event.id)]

    @pytest.mark.asyncio
    async def test_processed_duplicate_not_queued(
        self, async_client: AsyncClient, db_session: AsyncSession, queued: list[str]
    ):
        """Redelivery of a completed event is acknowledged without work."""
        await async_client.post(WEBHOOK_URL, json=_event())
        event = await webhook_crud.get_by_provider_event_id(db_session, "WH-EVT-1")
        await webhook_crud.mark_processed(db_session, event)
        queued.clear()

        response = await async_client.post(WEBHOOK_URL, json=_event())

        assert response.status_code == 200
        assert response.json()["duplicate"] is True
        assert queued == []

    @pytest.mark.asyncio
    async def test_unprocessed_duplicate_queued_again(
        self, async_client: AsyncClient, queued: list[str]
    ):
        """Redelivery of an unfinished event re-attempts it."""
        await async_client.post(WEBHOOK_URL, json=_event())

        response = await async_client.post(WEBHOOK_URL, json=_event())

        assert response.json()["duplicate"] is True
        assert len(queued) == 2
        assert queued[0] == queued[1]

    @pytest.mark.asyncio
    async def test_invalid_json(self, async_client: AsyncClient, queued: list[str]):
        """Unparseable bodies are rejected."""
        response = await async_client.post(
            WEBHOOK_URL,
            content=b"not json",
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 400
        assert queued == []

    @pytest.mark.asyncio
    async def test_non_object_body(self, async_client: AsyncClient, queued: list[str]):
        """A JSON array is not an event."""
        response = await async_client.post(WEBHOOK_URL, content=json.dumps([1, 2]).encode())

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_event_without_id_rejected(
        self, async_client: AsyncClient, db_session: AsyncSession, queued: list[str]
    ):
        """Events without a provider id cannot be deduplicated and are refused."""
        payload = _event()
        del payload["id"]

        first = await async_client.post(WEBHOOK_URL, json=payload)
        second = await async_client.post(WEBHOOK_URL, json=payload)

        assert first.status_code == 400
        assert second.status_code == 400
        assert first.json()["detail"] == "Webhook event id missing"
        assert queued == []
        stored = await db_session.execute(select(func.count()).select_from(PaymentWebhookEvent))
        assert stored.scalar_one() == 0

    @pytest.mark.asyncio
    async def test_enqueue_failure_still_acknowledged(
        self, async_client: AsyncClient, db_session: AsyncSession, monkeypatch
    ):
        """A broker outage leaves the event stored for the retry sweep."""

        def broken(event_id: str) -> None:
            raise ConnectionError("broker down")

        monkeypatch.setattr(tasks.process_webhook_event, "delay", broken)

        response = await async_client.post(WEBHOOK_URL, json=_event("WH-EVT-2"))

        assert response.status_code == 200
        assert await webhook_crud.get_by_provider_event_id(db_session, "WH-EVT-2") is not None


class TestWebhookSignature:
    """Signature policy."""

    @pytest.mark.asyncio
    async def test_unverified_accepted_by_default(
        self, async_client: AsyncClient, gateway, queued: list[str], monkeypatch
    ):
        """Fail-open: unverified deliveries are stored with a warning."""
        monkeypatch.setattr(settings, "WEBHOOK_REJECT_UNVERIFIED", False)
        gateway.verify_result = False

        response = await async_client.post(WEBHOOK_URL, json=_event())

        assert response.status_code == 200
        assert len(queued) == 1

    @pytest.mark.asyncio
    async def test_unverified_rejected_when_strict(
        self, async_client: AsyncClient, db_session: AsyncSession, gateway, queued: list[str], monkeypatch
    ):
        """With strict verification nothing is stored."""
        monkeypatch.setattr(settings, "WEBHOOK_REJECT_UNVERIFIED", True)
        gateway.verify_result = False

        response = await async_client.post(WEBHOOK_URL, json=_event())

        assert response.status_code == 401
        assert queued == []
        assert await webhook_crud.get_by_provider_event_id(db_session, "WH-EVT-1") is None

    @pytest.mark.asyncio
    async def test_verification_error_treated_as_unverified(
        self, async_client: AsyncClient, gateway, queued: list[str], monkeypatch
    ):
        """Provider outages during verification do not lose the event."""
        monkeypatch.setattr(settings, "WEBHOOK_REJECT_UNVERIFIED", False)
        gateway.errors["verify_webhook_signature"] = ProviderUnavailableError("down")

        response = await async_client.post(WEBHOOK_URL, json=_event())

        assert response.status_code == 200
        assert len(queued) == 1
