"""Celery background tasks for webhook processing and billing reconciliation."""

import asyncio
import uuid
from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from app.core.config import settings
from app.crud import webhook_event as webhook_crud
from app.services.billing_gateway import BillingGatewayClient
from app.services.notification_service import NotificationEmitter
from app.services.payment_sync_service import PaymentSyncService
from app.services.trial_sweeper import TrialSweeper
from app.services.webhook_processor import WebhookProcessor
from app.workers.celery_app import celery_app

logger = structlog.get_logger()

# Create async engine for database operations
engine = create_async_engine(str(settings.DATABASE_URL), echo=False, pool_pre_ping=True)
AsyncSessionLocal = sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False  # type: ignore
)


def _run(coro_factory: Callable[[], Awaitable[dict[str, Any]]]) -> dict[str, Any]:
    """Run a coroutine on the worker's event loop."""
    # Get or create event loop for Celery solo pool
    try:
        loop = asyncio.get_event_loop()
        if loop.is_closed():
            loop = asyncio.new_event_loop()
            asyncio.set_event_loop(loop)
    except RuntimeError:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)

    return loop.run_until_complete(coro_factory())


@celery_app.task(name="app.workers.tasks.process_webhook_event")
def process_webhook_event(event_id: str) -> dict[str, Any]:
    """
    Process one stored provider webhook event.

    Args:
        event_id: UUID of the stored event

    Returns:
        Dict with task results
    """
    return _run(lambda: _process_webhook_event_async(event_id))


async def _process_webhook_event_async(event_id: str) -> dict[str, Any]:
    gateway = BillingGatewayClient()
    notifier = NotificationEmitter()
    try:
        async with AsyncSessionLocal() as db:
            processed = await WebhookProcessor(db, gateway, notifier).process(
                uuid.UUID(event_id)
            )
    finally:
        await gateway.close()
        await notifier.close()

    return {"status": "processed" if processed else "skipped", "event_id": event_id}


@celery_app.task(name="app.workers.tasks.sweep_expired_trials")
def sweep_expired_trials() -> dict[str, Any]:
    """
    Expire trials whose deadline has passed without a payment.

    Runs daily via Celery Beat.

    Returns:
        Dict with sweep counts
    """
    return _run(_sweep_expired_trials_async)


async def _sweep_expired_trials_async() -> dict[str, Any]:
    gateway = BillingGatewayClient()
    notifier = NotificationEmitter()
    try:
        async with AsyncSessionLocal() as db:
            sweeper = TrialSweeper(
                db,
                gateway=gateway if gateway.is_configured else None,
                notifier=notifier,
            )
            result = await sweeper.sweep()
    finally:
        await gateway.close()
        await notifier.close()

    return {
        "status": "success",
        "examined": result.examined,
        "updated": result.updated,
        "errors": result.errors,
        "expired_subscription_ids": result.expired_subscription_ids,
    }


@celery_app.task(name="app.workers.tasks.retry_pending_webhooks")
def retry_pending_webhooks() -> dict[str, Any]:
    """
    Re-attempt stored events that have not completed.

    Covers deliveries whose enqueue failed, crashed workers whose lease
    expired, and handler failures below the attempt cap.

    Returns:
        Dict with retry counts
    """
    return _run(_retry_pending_webhooks_async)


async def _retry_pending_webhooks_async() -> dict[str, Any]:
    gateway = BillingGatewayClient()
    notifier = NotificationEmitter()
    processed_count = 0
    failed_count = 0
    try:
        async with AsyncSessionLocal() as db:
            events = await webhook_crud.list_retryable_events(
                db,
                max_attempts=settings.WEBHOOK_MAX_ATTEMPTS,
                lease_seconds=settings.WEBHOOK_PROCESSING_LEASE_SECONDS,
            )
            event_ids = [event.id for event in events]

            processor = WebhookProcessor(db, gateway, notifier)
            for event_id in event_ids:
                try:
                    if await processor.process(event_id):
                        processed_count += 1
                    else:
                        failed_count += 1
                except Exception as e:
                    await db.rollback()
                    failed_count += 1
                    logger.error(
                        "webhook.retry_failed",
                        event_id=str(event_id),
                        error=str(e),
                    )
    finally:
        await gateway.close()
        await notifier.close()

    logger.info(
        "webhook.retry_sweep_completed",
        candidates=len(event_ids),
        processed=processed_count,
        failed=failed_count,
    )
    return {
        "status": "success",
        "candidates": len(event_ids),
        "processed": processed_count,
        "failed": failed_count,
    }


@celery_app.task(name="app.workers.tasks.sync_all_payments")
def sync_all_payments() -> dict[str, Any]:
    """
    Pull completed provider transactions of all linked subscriptions.

    Returns:
        Dict with sync counts
    """
    return _run(_sync_all_payments_async)


async def _sync_all_payments_async() -> dict[str, Any]:
    gateway = BillingGatewayClient()
    if not gateway.is_configured:
        await gateway.close()
        logger.warning("payment_sync.skipped", reason="provider credentials not configured")
        return {"status": "skipped"}

    try:
        async with AsyncSessionLocal() as db:
            result = await PaymentSyncService(db, gateway).sync_all_subscription_payments()
    finally:
        await gateway.close()

    return {
        "status": "success",
        "subscriptions": result.subscriptions,
        "synced": result.synced,
        "failed": result.failed,
    }
