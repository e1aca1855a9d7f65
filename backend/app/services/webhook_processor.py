"""Billing provider webhook ingestion and processing.

Ingestion only persists the event; processing happens later in a worker,
driven by the stored event id. Each provider event id is processed to
completion at most once: a worker takes a time-limited lease on the row,
and failures are recorded on it for the redelivery sweep.
"""

import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import ConflictError
from app.crud import subscription as subscription_crud
from app.crud import webhook_event as webhook_crud
from app.models.billing_history import BillingStatus
from app.models.payment_webhook import PaymentWebhookEvent
from app.models.subscription import PlanType, Subscription, SubscriptionStatus
from app.services.billing_gateway import (
    BillingGatewayClient,
    extract_trial_end_date,
    parse_amount,
    parse_provider_time,
)
from app.services.notification_service import NotificationEmitter
from app.services.subscription_state import (
    SubscriptionEvent,
    Transition,
    TransitionContext,
    decide_transition,
    next_renewal_date,
    resolve_trial_end_date,
    utcnow,
)
from app.services.upgrade_coordinator import UpgradeCoordinator

logger = structlog.get_logger()

# Provider event types
SUBSCRIPTION_CREATED = "BILLING.SUBSCRIPTION.CREATED"
SUBSCRIPTION_ACTIVATED = "BILLING.SUBSCRIPTION.ACTIVATED"
SUBSCRIPTION_CANCELLED = "BILLING.SUBSCRIPTION.CANCELLED"
SUBSCRIPTION_EXPIRED = "BILLING.SUBSCRIPTION.EXPIRED"
SUBSCRIPTION_SUSPENDED = "BILLING.SUBSCRIPTION.SUSPENDED"
SALE_COMPLETED = "PAYMENT.SALE.COMPLETED"
SALE_DENIED = "PAYMENT.SALE.DENIED"
SALE_REFUNDED = "PAYMENT.SALE.REFUNDED"
CAPTURE_REFUNDED = "PAYMENT.CAPTURE.REFUNDED"

REMOTE_STATUS_EVENTS = {
    SUBSCRIPTION_CREATED: SubscriptionEvent.REMOTE_CREATED,
    SUBSCRIPTION_ACTIVATED: SubscriptionEvent.REMOTE_ACTIVATED,
    SUBSCRIPTION_CANCELLED: SubscriptionEvent.REMOTE_CANCELLED,
    SUBSCRIPTION_EXPIRED: SubscriptionEvent.REMOTE_EXPIRED,
    SUBSCRIPTION_SUSPENDED: SubscriptionEvent.REMOTE_SUSPENDED,
}


@dataclass(frozen=True)
class IngestResult:
    """Outcome of persisting an inbound event."""

    event_id: uuid.UUID
    provider_event_id: str
    duplicate: bool
    should_dispatch: bool


def _money(resource: dict[str, Any]) -> tuple[Decimal | None, str]:
    amount = resource.get("amount") or {}
    value = amount.get("total") or amount.get("value")
    currency = amount.get("currency") or amount.get("currency_code") or settings.BILLING_CURRENCY
    return parse_amount(value), currency


def _refunded_capture_id(resource: dict[str, Any]) -> str | None:
    capture_id = resource.get("sale_id") or resource.get("capture_id")
    if capture_id:
        return capture_id
    for link in resource.get("links") or []:
        href = link.get("href") or ""
        if link.get("rel") == "up" and ("/captures/" in href or "/sale/" in href):
            return href.rstrip("/").rsplit("/", 1)[-1]
    return None


def _total_refunded(resource: dict[str, Any]) -> Decimal | None:
    total = resource.get("total_refunded_amount")
    if total is None:
        breakdown = resource.get("seller_payable_breakdown") or {}
        total = breakdown.get("total_refunded_amount")
    if isinstance(total, dict):
        return parse_amount(total.get("value") or total.get("total"))
    return parse_amount(total)


class WebhookIngestor:
    """Persists inbound provider events before any processing."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def ingest(self, payload: dict[str, Any]) -> IngestResult:
        """
        Store an event, idempotently on its provider event id.

        A stored event that already completed is reported as a duplicate and
        not dispatched again; a stored event that has not completed is
        dispatched again so redelivery can re-attempt it.

        Args:
            payload: Parsed webhook body

        Returns:
            IngestResult

        Raises:
            ValueError: Payload carries no provider event id
        """
        provider_event_id = payload.get("id")
        if not provider_event_id:
            raise ValueError("Webhook payload has no event id")
        event_type = payload.get("event_type") or "UNKNOWN"

        existing = await webhook_crud.get_by_provider_event_id(self.db, provider_event_id)
        if existing is None:
            try:
                event = await webhook_crud.create_webhook_event(
                    self.db,
                    provider_event_id=provider_event_id,
                    event_type=event_type,
                    payload=payload,
                    event_time=parse_provider_time(payload.get("create_time")),
                )
            except ConflictError:
                # Concurrent delivery of the same event won the insert
                existing = await webhook_crud.get_by_provider_event_id(self.db, provider_event_id)
            else:
                logger.info(
                    "webhook.received",
                    provider_event_id=provider_event_id,
                    event_type=event_type,
                )
                return IngestResult(event.id, provider_event_id, False, True)

        if existing is None:
            raise ConflictError(f"Webhook event {provider_event_id} vanished during ingestion")

        logger.info(
            "webhook.duplicate_delivery",
            provider_event_id=provider_event_id,
            processed=existing.processed,
        )
        return IngestResult(existing.id, provider_event_id, True, not existing.processed)


class WebhookProcessor:
    """Applies stored provider events to local subscriptions."""

    def __init__(
        self,
        db: AsyncSession,
        gateway: BillingGatewayClient,
        notifier: NotificationEmitter | None = None,
    ):
        """Initialize webhook processor.

        Args:
            db: Database session
            gateway: Billing provider client (links and upgrade cleanup)
            notifier: Notification emitter
        """
        self.db = db
        self.gateway = gateway
        self.notifier = notifier or NotificationEmitter()
        self._handlers: dict[str, Callable[[dict[str, Any], PaymentWebhookEvent], Awaitable[None]]] = {
            SALE_COMPLETED: self._handle_payment_completed,
            SALE_DENIED: self._handle_payment_denied,
            SALE_REFUNDED: self._handle_payment_refunded,
            CAPTURE_REFUNDED: self._handle_payment_refunded,
        }
        for event_type in REMOTE_STATUS_EVENTS:
            self._handlers[event_type] = self._handle_subscription_status

    async def process(self, event_id: uuid.UUID) -> bool:
        """
        Process one stored event. Never raises for handler failures.

        Args:
            event_id: Stored event UUID

        Returns:
            True if the event completed, False if skipped or failed
        """
        event = await webhook_crud.claim_webhook_event(
            self.db,
            event_id,
            lease_seconds=settings.WEBHOOK_PROCESSING_LEASE_SECONDS,
            max_attempts=settings.WEBHOOK_MAX_ATTEMPTS,
        )
        if event is None:
            logger.info("webhook.not_claimable", event_id=str(event_id))
            return False

        provider_event_id = event.provider_event_id
        event_type = event.event_type
        attempt = event.attempts
        handler = self._handlers.get(event_type)

        try:
            if handler is None:
                logger.info("webhook.unhandled_event_type", event_type=event_type)
            else:
                await handler(event.payload.get("resource") or {}, event)
        except Exception as e:
            await self.db.rollback()
            logger.error(
                "webhook.processing_failed",
                provider_event_id=provider_event_id,
                event_type=event_type,
                attempt=attempt,
                error=str(e),
                exc_info=True,
            )
            event = await webhook_crud.get_webhook_event_by_id(self.db, event_id)
            if event is not None:
                await webhook_crud.mark_failed(self.db, event, f"{type(e).__name__}: {e}")
            return False

        await webhook_crud.mark_processed(self.db, event)
        logger.info(
            "webhook.processed",
            provider_event_id=provider_event_id,
            event_type=event_type,
            attempt=attempt,
        )
        return True

    async def _apply(
        self,
        subscription: Subscription,
        transition: Transition,
        **fields: Any,
    ) -> Subscription:
        """Write a transition (and related fields) with compare-and-set."""
        if not transition.changed and not fields:
            await self.db.commit()
            return subscription
        return await subscription_crud.transition_status(
            self.db,
            subscription,
            transition.next_status,
            expected_status=transition.previous_status,
            **fields,
        )

    async def _handle_subscription_status(
        self, resource: dict[str, Any], event: PaymentWebhookEvent
    ) -> None:
        remote_id = resource.get("id")
        if not remote_id:
            logger.warning("webhook.missing_subscription_id", event_type=event.event_type)
            return

        subscription = await subscription_crud.get_subscription_by_remote_id(self.db, remote_id)
        if subscription is None:
            # The link call, not the webhook, creates the first association
            logger.info(
                "webhook.subscription_not_found",
                remote_subscription_id=remote_id,
                event_type=event.event_type,
            )
            return

        fields: dict[str, Any] = {}
        if subscription.trial_end_date is None:
            remote_trial_end = extract_trial_end_date(resource)
            if remote_trial_end is not None:
                fields["trial_end_date"] = remote_trial_end

        state_event = REMOTE_STATUS_EVENTS[event.event_type]
        context = TransitionContext(event_time=event.event_time)
        if state_event == SubscriptionEvent.REMOTE_SUSPENDED:
            has_paid = await subscription_crud.has_paid_billing_history(self.db, subscription.id)
            deadline = fields.get("trial_end_date") or resolve_trial_end_date(
                subscription, settings.TRIAL_FALLBACK_DAYS
            )
            context = TransitionContext(
                event_time=event.event_time,
                has_paid_history=has_paid,
                trial_window_passed=deadline is not None and utcnow() > deadline,
            )

        transition = decide_transition(subscription, state_event, context)
        if not transition.changed:
            logger.info(
                "webhook.transition_skipped",
                subscription_id=str(subscription.id),
                status=transition.previous_status,
                event_type=event.event_type,
                reason=transition.reason,
            )

        subscription = await self._apply(subscription, transition, **fields)
        if not transition.changed:
            return

        logger.info(
            "subscription.status_changed",
            subscription_id=str(subscription.id),
            old_status=transition.previous_status,
            new_status=transition.next_status,
            reason=transition.reason,
        )
        await self.notifier.emit_status_updated(
            subscription.user_id, subscription.id, subscription.status, subscription.plan_type
        )
        if transition.next_status == SubscriptionStatus.CANCELLED.value:
            await self.notifier.emit_cancelled(
                subscription.user_id, subscription.id, reason=transition.reason
            )

    async def _handle_payment_completed(
        self, resource: dict[str, Any], event: PaymentWebhookEvent
    ) -> None:
        remote_id = resource.get("billing_agreement_id")
        transaction_id = resource.get("id")
        if not remote_id or not transaction_id:
            logger.warning("webhook.payment_missing_references", event_type=event.event_type)
            return

        subscription = await subscription_crud.get_subscription_by_remote_id(self.db, remote_id)
        if subscription is None:
            if await subscription_crud.is_superseded_remote(self.db, remote_id):
                logger.info(
                    "webhook.payment_for_superseded_subscription",
                    remote_subscription_id=remote_id,
                    transaction_id=transaction_id,
                )
            else:
                logger.warning(
                    "webhook.subscription_not_found",
                    remote_subscription_id=remote_id,
                    event_type=event.event_type,
                )
            return

        existing = await subscription_crud.get_billing_entry_by_transaction_id(
            self.db, transaction_id
        )
        if existing is not None:
            logger.info("webhook.payment_already_recorded", transaction_id=transaction_id)
            if subscription.plan_type == PlanType.ANNUAL.value:
                # An earlier attempt may have recorded the payment but not
                # finished cancelling the superseded monthly remotes
                await UpgradeCoordinator(self.db, self.gateway).complete_upgrade(subscription)
            return

        had_paid = await subscription_crud.has_paid_billing_history(self.db, subscription.id)
        amount, currency = _money(resource)
        payment_time = parse_provider_time(resource.get("create_time")) or event.event_time
        await subscription_crud.append_billing_history(
            self.db,
            subscription_id=subscription.id,
            amount=amount if amount is not None else subscription.price,
            currency=currency,
            status=BillingStatus.PAID.value,
            remote_transaction_id=transaction_id,
            remote_sale_id=transaction_id,
            payment_date=payment_time,
            invoice_url=self.gateway.transaction_url(transaction_id),
            commit=False,
        )

        transition = decide_transition(
            subscription,
            SubscriptionEvent.PAYMENT_COMPLETED,
            TransitionContext(event_time=event.event_time, has_paid_history=had_paid),
        )
        fields: dict[str, Any] = {}
        if transition.next_status == SubscriptionStatus.ACTIVE.value:
            new_end = next_renewal_date(subscription.plan_type, subscription.end_date)
            if new_end is not None:
                fields["end_date"] = new_end
        subscription = await self._apply(subscription, transition, **fields)

        logger.info(
            "subscription.payment_recorded",
            subscription_id=str(subscription.id),
            transaction_id=transaction_id,
            amount=str(amount),
            currency=currency,
            status=subscription.status,
        )
        await self.notifier.emit_payment_confirmed(
            subscription.user_id, subscription.id, amount, currency, transaction_id
        )
        if "end_date" in fields:
            await self.notifier.emit_renewed(
                subscription.user_id, subscription.id, subscription.end_date, subscription.plan_type
            )
        if transition.changed:
            await self.notifier.emit_status_updated(
                subscription.user_id, subscription.id, subscription.status, subscription.plan_type
            )

        if subscription.plan_type == PlanType.ANNUAL.value:
            await UpgradeCoordinator(self.db, self.gateway).complete_upgrade(subscription)

    async def _handle_payment_denied(
        self, resource: dict[str, Any], event: PaymentWebhookEvent
    ) -> None:
        remote_id = resource.get("billing_agreement_id")
        transaction_id = resource.get("id")
        if not remote_id:
            logger.warning("webhook.payment_missing_references", event_type=event.event_type)
            return

        subscription = await subscription_crud.get_subscription_by_remote_id(self.db, remote_id)
        if subscription is None:
            logger.warning(
                "webhook.subscription_not_found",
                remote_subscription_id=remote_id,
                event_type=event.event_type,
            )
            return

        if transaction_id and await subscription_crud.get_billing_entry_by_transaction_id(
            self.db, transaction_id
        ):
            logger.info("webhook.payment_already_recorded", transaction_id=transaction_id)
            return

        amount, currency = _money(resource)
        await subscription_crud.append_billing_history(
            self.db,
            subscription_id=subscription.id,
            amount=amount if amount is not None else subscription.price,
            currency=currency,
            status=BillingStatus.FAILED.value,
            remote_transaction_id=transaction_id,
            remote_sale_id=transaction_id,
            payment_date=parse_provider_time(resource.get("create_time")) or event.event_time,
        )
        # No status change: the provider suspends separately once retries run out
        logger.warning(
            "subscription.payment_failed",
            subscription_id=str(subscription.id),
            transaction_id=transaction_id,
            reason=resource.get("reason_code"),
        )
        await self.notifier.emit_payment_failed(
            subscription.user_id,
            subscription.id,
            amount,
            currency,
            reason=resource.get("reason_code"),
        )

    async def _handle_payment_refunded(
        self, resource: dict[str, Any], event: PaymentWebhookEvent
    ) -> None:
        refund_id = resource.get("id")
        capture_id = _refunded_capture_id(resource)
        if not capture_id:
            logger.warning("webhook.refund_missing_capture", event_type=event.event_type)
            return

        entry = await subscription_crud.get_billing_entry_by_capture_id(self.db, capture_id)
        if entry is None:
            logger.warning("webhook.refund_entry_not_found", capture_id=capture_id)
            return

        if refund_id and entry.remote_refund_id == refund_id:
            logger.info("webhook.refund_already_recorded", refund_id=refund_id)
            return

        refund_amount, _ = _money(resource)
        cumulative = _total_refunded(resource)
        if cumulative is None:
            cumulative = (entry.refunded_amount or Decimal("0")) + (refund_amount or entry.amount)

        await subscription_crud.update_billing_history_refund(
            self.db,
            entry,
            refunded_amount=cumulative,
            refund_reason=resource.get("note_to_payer") or entry.refund_reason,
            remote_refund_id=refund_id,
            refunded_date=parse_provider_time(resource.get("create_time")),
            commit=False,
        )
        full_refund = cumulative >= entry.amount

        subscription = await subscription_crud.get_subscription_by_id(self.db, entry.subscription_id)
        transition = decide_transition(
            subscription,
            SubscriptionEvent.PAYMENT_REFUNDED,
            TransitionContext(event_time=event.event_time, full_refund=full_refund),
        )
        subscription = await self._apply(subscription, transition)

        logger.info(
            "subscription.payment_refunded",
            subscription_id=str(subscription.id),
            capture_id=capture_id,
            refunded_amount=str(cumulative),
            full_refund=full_refund,
        )
        if transition.changed:
            await self.notifier.emit_status_updated(
                subscription.user_id, subscription.id, subscription.status, subscription.plan_type
            )
            await self.notifier.emit_cancelled(
                subscription.user_id, subscription.id, reason="Payment refunded"
            )
