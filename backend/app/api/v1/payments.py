"""Billing provider webhook endpoint."""

import json
from typing import Annotated

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_billing_gateway
from app.core.config import settings
from app.core.database import get_db
from app.core.exceptions import BillingError
from app.schemas.billing import WebhookAckResponse
from app.services.billing_gateway import BillingGatewayClient
from app.services.webhook_processor import WebhookIngestor

logger = structlog.get_logger()

router = APIRouter()


@router.post("/webhook", response_model=WebhookAckResponse)
async def receive_webhook(
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
    gateway: Annotated[BillingGatewayClient, Depends(get_billing_gateway)],
) -> WebhookAckResponse:
    """
    Receive a provider webhook delivery.

    The event is stored and acknowledged; processing happens in a worker.

    Raises:
        HTTPException: 400 on an unparseable body or a missing event id, 401 on a rejected signature
    """
    raw_body = await request.body()

    try:
        verified = await gateway.verify_webhook_signature(request.headers, raw_body)
    except BillingError as e:
        logger.warning("webhook.verification_error", error=str(e))
        verified = False

    if not verified:
        logger.warning(
            "webhook.signature_unverified",
            transmission_id=request.headers.get("paypal-transmission-id"),
            rejected=settings.WEBHOOK_REJECT_UNVERIFIED,
        )
        if settings.WEBHOOK_REJECT_UNVERIFIED:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid webhook signature",
            )

    try:
        payload = json.loads(raw_body)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid JSON payload",
        )
    if not isinstance(payload, dict):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid JSON payload",
        )
    if not isinstance(payload.get("id"), str) or not payload["id"]:
        # Redeliveries are deduplicated on the provider event id
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Webhook event id missing",
        )

    result = await WebhookIngestor(db).ingest(payload)

    if result.should_dispatch:
        # Imported here to keep the API importable without a broker
        from app.workers.tasks import process_webhook_event

        try:
            process_webhook_event.delay(str(result.event_id))
        except Exception as e:
            # Stored event is picked up by the retry sweep
            logger.error(
                "webhook.enqueue_failed",
                provider_event_id=result.provider_event_id,
                error=str(e),
            )

    return WebhookAckResponse(received=True, duplicate=result.duplicate)
