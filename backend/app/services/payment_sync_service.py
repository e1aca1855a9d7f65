"""Backfill of provider payments missing from the ledger."""

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import timedelta

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import ConflictError, NotFoundError
from app.crud import subscription as subscription_crud
from app.models.billing_history import BillingStatus
from app.services.billing_gateway import BillingGatewayClient
from app.services.subscription_state import utcnow

logger = structlog.get_logger()

COMPLETED_TRANSACTION_STATUSES = {"S", "COMPLETED"}


@dataclass
class SyncResult:
    """Counts for one subscription."""

    subscription_id: str
    synced: int = 0
    skipped: int = 0


@dataclass
class SyncAllResult:
    """Counts across all remote-linked subscriptions."""

    subscriptions: int = 0
    synced: int = 0
    failed: int = 0
    errors: list[dict[str, str]] = field(default_factory=list)


class PaymentSyncService:
    """Pulls completed charges from the provider into the ledger."""

    def __init__(self, db: AsyncSession, gateway: BillingGatewayClient):
        self.db = db
        self.gateway = gateway

    async def sync_subscription_payments(self, subscription_id: uuid.UUID) -> SyncResult:
        """
        Append paid rows for provider charges the ledger does not know about.

        Args:
            subscription_id: Subscription UUID

        Returns:
            SyncResult

        Raises:
            NotFoundError: Subscription missing or not provider-billed
        """
        subscription = await subscription_crud.get_subscription_by_id(self.db, subscription_id)
        if subscription is None or not subscription.remote_subscription_id:
            raise NotFoundError("Provider subscription not found")

        result = SyncResult(subscription_id=str(subscription_id))
        start = subscription.start_date - timedelta(days=1)
        transactions = await asyncio.wait_for(
            self.gateway.search_transactions(subscription.remote_subscription_id, start, utcnow()),
            timeout=settings.BILLING_REMOTE_CALL_TIMEOUT_SECONDS,
        )

        for transaction in transactions:
            if (
                not transaction.id
                or transaction.amount is None
                or transaction.amount <= 0
                or (transaction.status and transaction.status not in COMPLETED_TRANSACTION_STATUSES)
            ):
                result.skipped += 1
                continue

            try:
                await subscription_crud.append_billing_history(
                    self.db,
                    subscription_id=subscription.id,
                    amount=transaction.amount,
                    currency=transaction.currency or subscription.currency,
                    status=BillingStatus.PAID.value,
                    remote_transaction_id=transaction.id,
                    remote_sale_id=transaction.id,
                    payment_date=transaction.time or utcnow(),
                    invoice_url=self.gateway.transaction_url(transaction.id),
                )
            except ConflictError:
                result.skipped += 1
                continue
            result.synced += 1

        logger.info(
            "payment_sync.subscription_synced",
            subscription_id=str(subscription_id),
            synced=result.synced,
            skipped=result.skipped,
        )
        return result

    async def sync_all_subscription_payments(self) -> SyncAllResult:
        """Sync every remote-linked subscription; one failure does not stop the batch."""
        summary = SyncAllResult()
        subscriptions = await subscription_crud.list_remote_linked_subscriptions(self.db)
        subscription_ids = [subscription.id for subscription in subscriptions]

        for subscription_id in subscription_ids:
            summary.subscriptions += 1
            try:
                result = await self.sync_subscription_payments(subscription_id)
            except Exception as e:
                await self.db.rollback()
                summary.failed += 1
                summary.errors.append({"subscription_id": str(subscription_id), "error": str(e)})
                logger.error(
                    "payment_sync.subscription_failed",
                    subscription_id=str(subscription_id),
                    error=str(e),
                )
                continue
            summary.synced += result.synced

        logger.info(
            "payment_sync.completed",
            subscriptions=summary.subscriptions,
            synced=summary.synced,
            failed=summary.failed,
        )
        return summary
