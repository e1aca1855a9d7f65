"""Billing provider gateway (PayPal REST API).

All network access to the provider goes through BillingGatewayClient. The
client owns its HTTP connection pool and its access-token cache; nothing
is stored locally.
"""

import asyncio
import json
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from app.core.config import settings
from app.core.exceptions import (
    AuthFailureError,
    CredentialsMissingError,
    InvalidTransitionError,
    ProviderUnavailableError,
    RemoteNotFoundError,
)
from app.models.subscription import PlanType
from app.services.subscription_state import add_months, utcnow

logger = structlog.get_logger()

DEFAULT_TOKEN_LIFETIME_SECONDS = 32400

# Remote statuses reported by the provider
REMOTE_STATUS_APPROVAL_PENDING = "APPROVAL_PENDING"
REMOTE_STATUS_APPROVED = "APPROVED"
REMOTE_STATUS_ACTIVE = "ACTIVE"
REMOTE_STATUS_SUSPENDED = "SUSPENDED"
REMOTE_STATUS_CANCELLED = "CANCELLED"
REMOTE_STATUS_EXPIRED = "EXPIRED"

WEBHOOK_SIGNATURE_HEADERS = {
    "auth_algo": "paypal-auth-algo",
    "cert_url": "paypal-cert-url",
    "transmission_id": "paypal-transmission-id",
    "transmission_sig": "paypal-transmission-sig",
    "transmission_time": "paypal-transmission-time",
}

# Idempotent calls only: token issue, reads, signature verification
idempotent_retry = retry(
    retry=retry_if_exception_type(ProviderUnavailableError),
    stop=stop_after_attempt(settings.BILLING_RETRY_ATTEMPTS),
    wait=wait_exponential(multiplier=settings.BILLING_RETRY_BACKOFF_SECONDS, max=5),
    reraise=True,
)


def parse_provider_time(value: str | None) -> datetime | None:
    """Parse a provider ISO-8601 timestamp into naive UTC."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning("billing.unparseable_timestamp", value=value)
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def parse_amount(value: Any) -> Decimal | None:
    """Parse a provider money value ("12.90") into Decimal."""
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def extract_trial_end_date(details: Mapping[str, Any] | None) -> datetime | None:
    """
    Trial end date from provider subscription details.

    Tries, in order: billing_info.trial_ended_at, the TRIAL billing cycle
    added to the start time, then billing_info.next_billing_time.

    Args:
        details: Raw provider subscription payload

    Returns:
        Naive UTC trial end, or None when the provider exposes nothing
    """
    if not details:
        return None

    billing_info = details.get("billing_info") or {}
    trial_ended_at = parse_provider_time(billing_info.get("trial_ended_at"))
    if trial_ended_at is not None:
        return trial_ended_at

    for cycle in details.get("billing_cycles") or []:
        if cycle.get("tenure_type") != "TRIAL":
            continue
        start = parse_provider_time(
            details.get("start_time")
            or details.get("create_time")
            or billing_info.get("next_billing_time")
        )
        frequency = cycle.get("frequency") or {}
        if start is None or not frequency:
            break
        count = int(frequency.get("interval_count") or 1)
        unit = (frequency.get("interval_unit") or "DAY").upper()
        if unit == "DAY":
            return start + timedelta(days=count)
        if unit == "WEEK":
            return start + timedelta(weeks=count)
        if unit == "MONTH":
            return add_months(start, count)
        if unit == "YEAR":
            return add_months(start, 12 * count)
        break

    return parse_provider_time(billing_info.get("next_billing_time"))


@dataclass(frozen=True)
class RemoteSubscription:
    """Snapshot of a provider subscription."""

    id: str
    status: str
    plan_id: str | None
    start_time: datetime | None
    trial_end_date: datetime | None
    next_billing_time: datetime | None
    raw: dict[str, Any] = field(repr=False, default_factory=dict)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "RemoteSubscription":
        billing_info = payload.get("billing_info") or {}
        return cls(
            id=payload.get("id", ""),
            status=(payload.get("status") or "").upper(),
            plan_id=payload.get("plan_id"),
            start_time=parse_provider_time(payload.get("start_time")),
            trial_end_date=extract_trial_end_date(payload),
            next_billing_time=parse_provider_time(billing_info.get("next_billing_time")),
            raw=payload,
        )

    @property
    def in_trial(self) -> bool:
        """True while the provider trial window is still open."""
        return self.trial_end_date is not None and self.trial_end_date > utcnow()


@dataclass(frozen=True)
class RemoteRefund:
    """Result of a refund call."""

    id: str
    status: str
    amount: Decimal | None
    currency: str | None


@dataclass(frozen=True)
class RemoteTransaction:
    """One completed provider charge from transaction search."""

    id: str
    status: str
    amount: Decimal | None
    currency: str | None
    time: datetime | None


@dataclass
class AccessTokenCache:
    """
    Bearer token cache owned by one gateway client.

    Tokens are considered stale refresh_margin_seconds before their real
    expiry. The lock serializes refreshes so concurrent callers share one
    token request.
    """

    refresh_margin_seconds: int = 300
    token: str | None = None
    expires_at: float = 0.0
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    def get(self, now: float | None = None) -> str | None:
        now = time.monotonic() if now is None else now
        if self.token and now < self.expires_at:
            return self.token
        return None

    def store(self, token: str, expires_in: int, now: float | None = None) -> None:
        now = time.monotonic() if now is None else now
        self.token = token
        self.expires_at = now + max(expires_in - self.refresh_margin_seconds, 0)

    def invalidate(self) -> None:
        self.token = None
        self.expires_at = 0.0


def _error_message(response: httpx.Response) -> tuple[str, str | None]:
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}", None
    details = body.get("details") or []
    if details and isinstance(details, list):
        first = details[0]
        message = first.get("description") or first.get("issue") or body.get("message")
        return message or f"HTTP {response.status_code}", first.get("issue") or body.get("name")
    return body.get("message") or body.get("error_description") or f"HTTP {response.status_code}", body.get("name") or body.get("error")


class BillingGatewayClient:
    """
    Client for the billing provider REST API.

    Failure mapping:
        network errors, timeouts and 5xx -> ProviderUnavailableError
        404                              -> RemoteNotFoundError
        other 4xx                        -> InvalidTransitionError
        401 on an API call               -> token refresh, one retry
    """

    def __init__(
        self,
        client_id: str | None = None,
        client_secret: str | None = None,
        base_url: str | None = None,
        web_base_url: str | None = None,
        webhook_id: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        token_cache: AccessTokenCache | None = None,
    ):
        """Initialize gateway client.

        Args:
            client_id: Provider client id (defaults to settings)
            client_secret: Provider client secret (defaults to settings)
            base_url: API base URL (defaults to sandbox/live by PAYPAL_MODE)
            web_base_url: Website base URL used for dashboard links
            webhook_id: Webhook id used for signature verification
            timeout: Per-request timeout in seconds
            transport: Custom httpx transport (tests)
            token_cache: Shared token cache
        """
        self.client_id = settings.PAYPAL_CLIENT_ID if client_id is None else client_id
        self.client_secret = (
            settings.PAYPAL_CLIENT_SECRET if client_secret is None else client_secret
        )
        self.webhook_id = settings.PAYPAL_WEBHOOK_ID if webhook_id is None else webhook_id
        self.web_base_url = web_base_url or settings.paypal_web_base_url
        self.token_cache = token_cache or AccessTokenCache(
            refresh_margin_seconds=settings.BILLING_TOKEN_REFRESH_MARGIN_SECONDS
        )
        self._client = httpx.AsyncClient(
            base_url=base_url or settings.paypal_api_base_url,
            timeout=timeout or settings.BILLING_HTTP_TIMEOUT_SECONDS,
            transport=transport,
        )

    async def close(self) -> None:
        """Close the underlying HTTP connection pool."""
        await self._client.aclose()

    async def __aenter__(self) -> "BillingGatewayClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    @idempotent_retry
    async def get_access_token(self) -> str:
        """
        Return a cached bearer token, issuing a new one when stale.

        Raises:
            CredentialsMissingError: client id/secret not configured
            AuthFailureError: provider rejected the credentials
            ProviderUnavailableError: provider unreachable
        """
        cached = self.token_cache.get()
        if cached:
            return cached

        async with self.token_cache.lock:
            # Another caller may have refreshed while we waited
            cached = self.token_cache.get()
            if cached:
                return cached

            if not self.is_configured:
                raise CredentialsMissingError(
                    "Billing provider credentials not configured. "
                    "Set PAYPAL_CLIENT_ID and PAYPAL_CLIENT_SECRET"
                )

            try:
                response = await self._client.post(
                    "/v1/oauth2/token",
                    data={"grant_type": "client_credentials"},
                    auth=(self.client_id, self.client_secret),
                    headers={"Accept": "application/json"},
                )
            except httpx.HTTPError as exc:
                raise ProviderUnavailableError(f"Token request failed: {exc}") from exc

            if response.status_code >= 500:
                raise ProviderUnavailableError(
                    f"Token endpoint returned {response.status_code}",
                    status_code=response.status_code,
                )
            if not response.is_success:
                message, _ = _error_message(response)
                logger.error(
                    "billing.token_rejected",
                    status_code=response.status_code,
                    error=message,
                )
                raise AuthFailureError(f"Failed to get access token: {message}")

            data = response.json()
            self.token_cache.store(
                data["access_token"],
                int(data.get("expires_in") or DEFAULT_TOKEN_LIFETIME_SECONDS),
            )
            logger.info("billing.token_refreshed")
            return data["access_token"]

    async def _request(
        self,
        method: str,
        path: str,
        json_body: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        retry_on_unauthorized: bool = True,
    ) -> dict[str, Any] | None:
        token = await self.get_access_token()
        try:
            response = await self._client.request(
                method,
                path,
                json=json_body,
                params=params,
                headers={
                    "Authorization": f"Bearer {token}",
                    "Content-Type": "application/json",
                },
            )
        except httpx.TimeoutException as exc:
            raise ProviderUnavailableError(f"{method} {path} timed out") from exc
        except httpx.HTTPError as exc:
            raise ProviderUnavailableError(f"{method} {path} failed: {exc}") from exc

        if response.status_code == 401:
            self.token_cache.invalidate()
            if retry_on_unauthorized:
                return await self._request(
                    method, path, json_body=json_body, params=params, retry_on_unauthorized=False
                )
            raise AuthFailureError(f"{method} {path} unauthorized after token refresh")

        if response.status_code == 404:
            raise RemoteNotFoundError(f"{path} not found at billing provider")

        if response.status_code >= 500:
            raise ProviderUnavailableError(
                f"{method} {path} returned {response.status_code}",
                status_code=response.status_code,
            )

        if response.status_code >= 400:
            message, code = _error_message(response)
            raise InvalidTransitionError(message, code=code)

        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    @idempotent_retry
    async def get_remote_subscription(self, remote_id: str) -> RemoteSubscription:
        """
        Fetch the provider's view of a subscription.

        Args:
            remote_id: Provider subscription id

        Returns:
            RemoteSubscription snapshot
        """
        payload = await self._request("GET", f"/v1/billing/subscriptions/{remote_id}")
        return RemoteSubscription.from_payload(payload or {"id": remote_id})

    async def _subscription_action(self, remote_id: str, action: str, reason: str | None) -> None:
        await self._request(
            "POST",
            f"/v1/billing/subscriptions/{remote_id}/{action}",
            json_body={"reason": reason or f"{action.capitalize()} requested"},
        )
        logger.info("billing.remote_action", action=action, remote_subscription_id=remote_id)

    async def cancel_remote(self, remote_id: str, reason: str | None = None) -> None:
        """Cancel a provider subscription."""
        await self._subscription_action(remote_id, "cancel", reason or "User requested cancellation")

    async def suspend_remote(self, remote_id: str, reason: str | None = None) -> None:
        """Suspend a provider subscription."""
        await self._subscription_action(remote_id, "suspend", reason or "Suspended by administrator")

    async def reactivate_remote(self, remote_id: str, reason: str | None = None) -> None:
        """Reactivate a suspended provider subscription. Cancelled ones cannot be."""
        await self._subscription_action(remote_id, "activate", reason or "Reactivated by administrator")

    async def refund(
        self,
        capture_id: str,
        amount: Decimal | None = None,
        currency: str = "USD",
        reason: str | None = None,
    ) -> RemoteRefund:
        """
        Refund a captured payment, fully or partially.

        The 180-day refund window must be checked by the caller.

        Args:
            capture_id: Provider capture/sale id
            amount: Amount to refund (None refunds the full capture)
            currency: ISO currency code
            reason: Note to the payer

        Returns:
            RemoteRefund
        """
        body: dict[str, Any] = {}
        if amount is not None:
            body["amount"] = {"value": f"{amount:.2f}", "currency_code": currency}
        if reason:
            body["note_to_payer"] = reason

        payload = await self._request(
            "POST", f"/v2/payments/captures/{capture_id}/refund", json_body=body
        ) or {}
        amount_info = payload.get("amount") or {}
        refund = RemoteRefund(
            id=payload.get("id", ""),
            status=payload.get("status", ""),
            amount=parse_amount(amount_info.get("value")) or amount,
            currency=amount_info.get("currency_code") or currency,
        )
        logger.info(
            "billing.refund_issued",
            capture_id=capture_id,
            refund_id=refund.id,
            amount=str(refund.amount) if refund.amount is not None else None,
        )
        return refund

    @idempotent_retry
    async def search_transactions(
        self,
        remote_id: str,
        start: datetime,
        end: datetime | None = None,
    ) -> list[RemoteTransaction]:
        """
        Completed charges for a provider subscription.

        Transaction search needs an extra account permission; when the
        endpoint is unavailable an empty list is returned.

        Args:
            remote_id: Provider subscription id
            start: Search window start (naive UTC)
            end: Search window end (defaults to now)

        Returns:
            Matching transactions
        """
        end = end or utcnow()
        params = {
            "start_date": start.strftime("%Y-%m-%dT%H:%M:%SZ"),
            "end_date": end.strftime("%Y-%m-%dT%H:%M:%SZ"),
            "fields": "all",
            "page_size": 100,
            "page": 1,
        }
        try:
            payload = await self._request("GET", "/v1/reporting/transactions", params=params)
        except RemoteNotFoundError:
            logger.warning("billing.transaction_search_unavailable", remote_subscription_id=remote_id)
            return []

        transactions = []
        for item in (payload or {}).get("transaction_details") or []:
            info = item.get("transaction_info") or item
            if remote_id not in (
                info.get("billing_agreement_id"),
                info.get("instrument_id"),
                (item.get("payer_info") or {}).get("billing_agreement_id"),
            ):
                continue
            amount_info = info.get("transaction_amount") or {}
            transactions.append(
                RemoteTransaction(
                    id=info.get("transaction_id") or item.get("id", ""),
                    status=info.get("transaction_status") or "",
                    amount=parse_amount(amount_info.get("value")),
                    currency=amount_info.get("currency_code"),
                    time=parse_provider_time(
                        info.get("transaction_initiation_date") or info.get("transaction_updated_date")
                    ),
                )
            )
        return transactions

    @idempotent_retry
    async def verify_webhook_signature(self, headers: Mapping[str, str], raw_body: bytes) -> bool:
        """
        Verify a webhook delivery with the provider.

        Without a configured webhook id verification is skipped and the
        delivery is treated as valid; a warning is logged every time.

        Args:
            headers: Inbound request headers
            raw_body: Raw request body

        Returns:
            True if the provider confirms the signature
        """
        if not self.webhook_id:
            logger.warning("billing.webhook_verification_skipped", reason="PAYPAL_WEBHOOK_ID not set")
            return True

        lowered = {key.lower(): value for key, value in headers.items()}
        signature = {}
        for field_name, header in WEBHOOK_SIGNATURE_HEADERS.items():
            if not lowered.get(header):
                logger.warning("billing.webhook_signature_header_missing", header=header)
                return False
            signature[field_name] = lowered[header]

        try:
            event = json.loads(raw_body)
        except ValueError:
            return False

        try:
            payload = await self._request(
                "POST",
                "/v1/notifications/verify-webhook-signature",
                json_body={**signature, "webhook_id": self.webhook_id, "webhook_event": event},
            )
        except InvalidTransitionError as exc:
            logger.warning("billing.webhook_verification_rejected", error=str(exc))
            return False

        return (payload or {}).get("verification_status") == "SUCCESS"

    def plan_id_for(self, plan_type: str) -> str:
        """Provider plan id for a paid plan type."""
        if plan_type == PlanType.MONTHLY.value:
            return settings.PAYPAL_PLAN_MONTHLY
        if plan_type == PlanType.ANNUAL.value:
            return settings.PAYPAL_PLAN_ANNUAL
        raise ValueError(f"No provider plan for plan type {plan_type}")

    def transaction_url(self, transaction_id: str) -> str:
        """Provider dashboard link for a transaction."""
        return f"{self.web_base_url}/activity/payment/{transaction_id}"

    def subscription_url(self, remote_id: str) -> str:
        """Provider dashboard link for managing a subscription."""
        return f"{self.web_base_url}/myaccount/autopay/connect/{remote_id}"
