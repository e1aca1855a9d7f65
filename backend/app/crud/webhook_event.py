"""CRUD operations for PaymentWebhookEvent model."""

import uuid
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import ConflictError
from app.models.payment_webhook import PaymentWebhookEvent
from app.services.subscription_state import utcnow


async def get_webhook_event_by_id(
    db: AsyncSession, event_id: uuid.UUID
) -> PaymentWebhookEvent | None:
    """Get stored webhook event by ID."""
    result = await db.execute(
        select(PaymentWebhookEvent).where(PaymentWebhookEvent.id == event_id)
    )
    return result.scalar_one_or_none()


async def get_by_provider_event_id(
    db: AsyncSession, provider_event_id: str
) -> PaymentWebhookEvent | None:
    """
    Get stored webhook event by provider event id.

    Args:
        db: Database session
        provider_event_id: Provider-side event id (idempotency key)

    Returns:
        Stored event or None
    """
    result = await db.execute(
        select(PaymentWebhookEvent).where(
            PaymentWebhookEvent.provider_event_id == provider_event_id
        )
    )
    return result.scalar_one_or_none()


async def create_webhook_event(
    db: AsyncSession,
    provider_event_id: str,
    event_type: str,
    payload: dict[str, Any],
    event_time: datetime | None = None,
) -> PaymentWebhookEvent:
    """
    Persist an inbound webhook event.

    Raises:
        ConflictError: An event with the same provider id is already stored
    """
    event = PaymentWebhookEvent(
        provider_event_id=provider_event_id,
        event_type=event_type,
        payload=payload,
        event_time=event_time,
        processed=False,
        attempts=0,
    )
    db.add(event)
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise ConflictError(f"Webhook event {provider_event_id} already stored") from exc
    await db.refresh(event)
    return event


async def claim_webhook_event(
    db: AsyncSession,
    event_id: uuid.UUID,
    lease_seconds: int,
    max_attempts: int,
) -> PaymentWebhookEvent | None:
    """
    Take the processing lease on an event.

    An event can be claimed when it is unprocessed, below the attempt cap,
    and either unclaimed or holding an expired lease. Only one worker wins.

    Args:
        db: Database session
        event_id: Stored event UUID
        lease_seconds: Lease length
        max_attempts: Attempt cap

    Returns:
        The claimed event, or None if it is done, exhausted or leased elsewhere
    """
    now = utcnow()
    lease_cutoff = now - timedelta(seconds=lease_seconds)
    result = await db.execute(
        update(PaymentWebhookEvent)
        .where(
            PaymentWebhookEvent.id == event_id,
            PaymentWebhookEvent.processed.is_(False),
            PaymentWebhookEvent.attempts < max_attempts,
            or_(
                PaymentWebhookEvent.claimed_at.is_(None),
                PaymentWebhookEvent.claimed_at < lease_cutoff,
            ),
        )
        .values(
            claimed_at=now,
            attempts=PaymentWebhookEvent.attempts + 1,
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if result.rowcount == 0:
        return None

    event = await get_webhook_event_by_id(db, event_id)
    if event is not None:
        await db.refresh(event)
    return event


async def mark_processed(db: AsyncSession, event: PaymentWebhookEvent) -> PaymentWebhookEvent:
    """Record successful processing and release the lease."""
    event.processed = True
    event.processed_at = utcnow()
    event.error = None
    event.claimed_at = None
    await db.commit()
    await db.refresh(event)
    return event


async def mark_failed(
    db: AsyncSession, event: PaymentWebhookEvent, error: str
) -> PaymentWebhookEvent:
    """Record a processing error and release the lease for a later retry."""
    event.processed = False
    event.error = error[:2000]
    event.claimed_at = None
    await db.commit()
    await db.refresh(event)
    return event


async def reset_attempts(db: AsyncSession, event: PaymentWebhookEvent) -> PaymentWebhookEvent:
    """Give an exhausted event a fresh set of attempts (admin retry)."""
    event.attempts = 0
    event.claimed_at = None
    await db.commit()
    await db.refresh(event)
    return event


async def list_retryable_events(
    db: AsyncSession,
    max_attempts: int,
    lease_seconds: int,
    limit: int = 100,
) -> list[PaymentWebhookEvent]:
    """Unprocessed events below the attempt cap whose lease is free."""
    lease_cutoff = utcnow() - timedelta(seconds=lease_seconds)
    result = await db.execute(
        select(PaymentWebhookEvent)
        .where(
            and_(
                PaymentWebhookEvent.processed.is_(False),
                PaymentWebhookEvent.attempts < max_attempts,
                or_(
                    PaymentWebhookEvent.claimed_at.is_(None),
                    PaymentWebhookEvent.claimed_at < lease_cutoff,
                ),
            )
        )
        .order_by(PaymentWebhookEvent.created_at)
        .limit(limit)
    )
    return list(result.scalars().all())


async def list_webhook_events(
    db: AsyncSession,
    failed_only: bool = False,
    skip: int = 0,
    limit: int = 100,
) -> list[PaymentWebhookEvent]:
    """Stored events, newest first."""
    query = select(PaymentWebhookEvent)
    if failed_only:
        query = query.where(
            PaymentWebhookEvent.processed.is_(False),
            PaymentWebhookEvent.error.is_not(None),
        )
    result = await db.execute(
        query.order_by(PaymentWebhookEvent.created_at.desc()).offset(skip).limit(limit)
    )
    return list(result.scalars().all())
