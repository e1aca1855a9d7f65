"""Subscription notifications pushed to connected clients.

Events are published as JSON to the Redis channel ``user:{user_id}``; a
realtime relay subscribed to those channels forwards them to browsers.
Publishing is fire-and-forget: failures are logged and never raised.
"""

import json
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any

import redis.asyncio as aioredis
import structlog

from app.core.config import settings

logger = structlog.get_logger()

EVENT_STATUS_UPDATED = "subscription:status_updated"
EVENT_PAYMENT_CONFIRMED = "payment:confirmed"
EVENT_PAYMENT_FAILED = "payment:failed"
EVENT_CANCELLED = "subscription:cancelled"
EVENT_RENEWED = "subscription:renewed"


def _json_default(value: Any) -> Any:
    if isinstance(value, (uuid.UUID, Decimal)):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Unserializable value: {value!r}")


class NotificationEmitter:
    """Publishes subscription events for a user."""

    def __init__(self, redis_client: aioredis.Redis | None = None):
        """Initialize emitter.

        Args:
            redis_client: Redis client (a lazy client on REDIS_URL if omitted)
        """
        self._redis = redis_client

    def _get_redis(self) -> aioredis.Redis:
        if self._redis is None:
            self._redis = aioredis.from_url(settings.REDIS_URL, decode_responses=True)
        return self._redis

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    @staticmethod
    def channel_for(user_id: uuid.UUID | str) -> str:
        return f"user:{user_id}"

    async def emit(self, user_id: uuid.UUID | str, event: str, data: dict[str, Any]) -> None:
        """Publish one event. Never raises."""
        message = json.dumps({"event": event, "data": data}, default=_json_default)
        try:
            await self._get_redis().publish(self.channel_for(user_id), message)
        except Exception as e:
            logger.warning(
                "notification.publish_failed",
                user_id=str(user_id),
                event=event,
                error=str(e),
            )
            return
        logger.debug("notification.published", user_id=str(user_id), event=event)

    async def emit_status_updated(
        self,
        user_id: uuid.UUID,
        subscription_id: uuid.UUID,
        status: str,
        plan_type: str,
    ) -> None:
        await self.emit(
            user_id,
            EVENT_STATUS_UPDATED,
            {"subscriptionId": subscription_id, "status": status, "planType": plan_type},
        )

    async def emit_payment_confirmed(
        self,
        user_id: uuid.UUID,
        subscription_id: uuid.UUID,
        amount: Decimal,
        currency: str,
        transaction_id: str | None,
    ) -> None:
        await self.emit(
            user_id,
            EVENT_PAYMENT_CONFIRMED,
            {
                "subscriptionId": subscription_id,
                "amount": amount,
                "currency": currency,
                "transactionId": transaction_id,
            },
        )

    async def emit_payment_failed(
        self,
        user_id: uuid.UUID,
        subscription_id: uuid.UUID,
        amount: Decimal | None,
        currency: str,
        reason: str | None = None,
    ) -> None:
        await self.emit(
            user_id,
            EVENT_PAYMENT_FAILED,
            {
                "subscriptionId": subscription_id,
                "amount": amount,
                "currency": currency,
                "reason": reason,
            },
        )

    async def emit_cancelled(
        self,
        user_id: uuid.UUID,
        subscription_id: uuid.UUID,
        reason: str | None = None,
    ) -> None:
        await self.emit(
            user_id,
            EVENT_CANCELLED,
            {"subscriptionId": subscription_id, "reason": reason},
        )

    async def emit_renewed(
        self,
        user_id: uuid.UUID,
        subscription_id: uuid.UUID,
        end_date: datetime | None,
        plan_type: str,
    ) -> None:
        await self.emit(
            user_id,
            EVENT_RENEWED,
            {"subscriptionId": subscription_id, "endDate": end_date, "planType": plan_type},
        )
