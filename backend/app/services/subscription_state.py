"""Subscription state machine.

Pure decision logic shared by the webhook processor, the trial sweeper and
user/admin actions. Nothing here touches the database or the network:
every function takes the subscription (any object exposing the
Subscription columns) plus explicit context, and returns a decision.

Reconciliation policy: the local trial deadline is authoritative. Remote
status reported by the billing provider is corroborating evidence only,
so the two sources may disagree and the local deadline wins.
"""

import calendar
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from app.core.exceptions import InvalidTransitionError
from app.models.subscription import PlanType, SubscriptionStatus

TERMINAL_STATUSES = frozenset({SubscriptionStatus.CANCELLED.value, SubscriptionStatus.EXPIRED.value})
CANCELLABLE_STATUSES = (
    SubscriptionStatus.ACTIVE.value,
    SubscriptionStatus.TRIALING.value,
    SubscriptionStatus.SUSPENDED.value,
)
SUSPENDABLE_STATUSES = (
    SubscriptionStatus.ACTIVE.value,
    SubscriptionStatus.TRIALING.value,
)
REACTIVATABLE_STATUSES = (SubscriptionStatus.SUSPENDED.value,)
TRIAL_SWEEP_STATUSES = (
    SubscriptionStatus.ACTIVE.value,
    SubscriptionStatus.TRIALING.value,
)


class SubscriptionEvent(str, Enum):
    """Inputs that drive subscription transitions."""

    REMOTE_CREATED = "remote_created"
    REMOTE_CANCELLED = "remote_cancelled"
    REMOTE_EXPIRED = "remote_expired"
    REMOTE_ACTIVATED = "remote_activated"
    REMOTE_SUSPENDED = "remote_suspended"
    REMOTE_LINKED = "remote_linked"
    PAYMENT_COMPLETED = "payment_completed"
    PAYMENT_DENIED = "payment_denied"
    PAYMENT_REFUNDED = "payment_refunded"
    ADMIN_GRANT_FREE = "admin_grant_free"
    ADMIN_REVOKE_FREE = "admin_revoke_free"
    ADMIN_SUSPEND = "admin_suspend"
    ADMIN_REACTIVATE = "admin_reactivate"
    ADMIN_CANCEL = "admin_cancel"
    COUPON_REDEEMED = "coupon_redeemed"
    TRIAL_DEADLINE_PASSED = "trial_deadline_passed"
    USER_CANCEL = "user_cancel"
    USER_UPGRADE = "user_upgrade"


# Events reported by the provider; these never raise and yield to local grants
REMOTE_EVENTS = frozenset(
    {
        SubscriptionEvent.REMOTE_CREATED,
        SubscriptionEvent.REMOTE_CANCELLED,
        SubscriptionEvent.REMOTE_EXPIRED,
        SubscriptionEvent.REMOTE_ACTIVATED,
        SubscriptionEvent.REMOTE_SUSPENDED,
        SubscriptionEvent.PAYMENT_COMPLETED,
        SubscriptionEvent.PAYMENT_DENIED,
        SubscriptionEvent.PAYMENT_REFUNDED,
    }
)


class UserFacingStatus(str, Enum):
    """Customer classification shown in admin and account views."""

    FREE_TRIAL = "Free trial"
    ACTIVE_PAID = "Active user (Paid)"
    CHURNED = "Churned"
    FREE_ACCESS = "Free access"


class DisplayStatus(str, Enum):
    """Coarse access status for the client."""

    ACTIVE = "active"
    TRIAL = "trial"
    EXPIRED = "expired"
    NONE = "none"


@dataclass(frozen=True)
class AccessDecision:
    """Result of an access check."""

    has_full_access: bool
    expiration_date: datetime | None
    display_status: str


@dataclass(frozen=True)
class TransitionContext:
    """Facts a transition may depend on, gathered by the caller."""

    event_time: datetime | None = None
    has_paid_history: bool = False
    trial_window_passed: bool = False
    full_refund: bool = False
    in_provider_trial: bool = False


@dataclass(frozen=True)
class Transition:
    """Outcome of decide_transition."""

    previous_status: str
    next_status: str
    reason: str

    @property
    def changed(self) -> bool:
        return self.previous_status != self.next_status


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how datetimes are stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _value(enum_or_str: Any) -> str:
    return enum_or_str.value if isinstance(enum_or_str, Enum) else enum_or_str


def has_local_grant(subscription: Any) -> bool:
    """True when access comes from a coupon trial or an admin free grant."""
    plan_type = _value(subscription.plan_type)
    return bool(
        (subscription.is_trial_coupon and plan_type == PlanType.TRIAL.value)
        or (subscription.is_free_access and plan_type == PlanType.FREE.value)
    )


def _grant_is_live(subscription: Any, now: datetime) -> bool:
    if _value(subscription.status) in TERMINAL_STATUSES:
        return False
    return subscription.end_date is None or now < subscription.end_date


def derive_access(subscription: Any, now: datetime | None = None) -> AccessDecision:
    """
    Decide whether a subscription grants full access.

    Coupon trials and admin free grants are evaluated before any remote/paid
    check, so a live grant wins over a stale remote id from an older plan.

    Args:
        subscription: Subscription (or None)
        now: Evaluation time (defaults to current UTC time)

    Returns:
        AccessDecision
    """
    if subscription is None:
        return AccessDecision(False, None, DisplayStatus.NONE.value)

    now = now or utcnow()
    status = _value(subscription.status)
    plan_type = _value(subscription.plan_type)
    end_date = subscription.end_date

    if has_local_grant(subscription):
        live = _grant_is_live(subscription, now)
        return AccessDecision(
            live, end_date, DisplayStatus.TRIAL.value if live else DisplayStatus.EXPIRED.value
        )

    if status == SubscriptionStatus.SUSPENDED.value:
        return AccessDecision(False, end_date, DisplayStatus.EXPIRED.value)

    # Paid (or provider-trial) subscription
    if status in TRIAL_SWEEP_STATUSES and subscription.remote_subscription_id:
        return AccessDecision(True, end_date, DisplayStatus.ACTIVE.value)

    if plan_type in (PlanType.FREE.value, PlanType.TRIAL.value):
        live = _grant_is_live(subscription, now)
        return AccessDecision(
            live, end_date, DisplayStatus.TRIAL.value if live else DisplayStatus.EXPIRED.value
        )

    return AccessDecision(False, end_date, DisplayStatus.EXPIRED.value)


def derive_user_facing_status(
    subscription: Any,
    has_paid_history: bool,
    now: datetime | None = None,
) -> UserFacingStatus:
    """
    Classify a subscription for display.

    A subscription that is active with a remote id but has no paid ledger
    entry is still inside the provider's trial window and is reported as
    a free trial, whatever its stored status says.

    Args:
        subscription: Subscription (or None)
        has_paid_history: Whether at least one paid billing-history row exists
        now: Evaluation time

    Returns:
        UserFacingStatus
    """
    if subscription is None:
        return UserFacingStatus.CHURNED

    now = now or utcnow()
    status = _value(subscription.status)
    plan_type = _value(subscription.plan_type)

    if subscription.is_free_access and plan_type == PlanType.FREE.value:
        return UserFacingStatus.FREE_ACCESS if _grant_is_live(subscription, now) else UserFacingStatus.CHURNED

    if subscription.is_trial_coupon and plan_type == PlanType.TRIAL.value:
        return UserFacingStatus.FREE_TRIAL if _grant_is_live(subscription, now) else UserFacingStatus.CHURNED

    if status == SubscriptionStatus.SUSPENDED.value:
        return UserFacingStatus.CHURNED

    if status in TRIAL_SWEEP_STATUSES and subscription.remote_subscription_id:
        if not has_paid_history:
            return UserFacingStatus.FREE_TRIAL
        return UserFacingStatus.ACTIVE_PAID

    if status in TERMINAL_STATUSES:
        return UserFacingStatus.CHURNED

    if plan_type in (PlanType.FREE.value, PlanType.TRIAL.value):
        if not _grant_is_live(subscription, now):
            return UserFacingStatus.CHURNED
        if plan_type == PlanType.FREE.value:
            return UserFacingStatus.FREE_ACCESS
        return UserFacingStatus.FREE_TRIAL

    return UserFacingStatus.CHURNED


def resolve_trial_end_date(subscription: Any, fallback_days: int) -> datetime | None:
    """
    Trial deadline for a subscription.

    Uses the recorded trial end, then the end date, then start date plus
    fallback_days for remote subscriptions whose provider never reported a
    trial end. Returns None when no deadline can be determined.
    """
    if subscription.trial_end_date is not None:
        return subscription.trial_end_date
    if subscription.end_date is not None:
        return subscription.end_date
    if subscription.remote_subscription_id and subscription.start_date is not None:
        return subscription.start_date + timedelta(days=fallback_days)
    return None


def is_trial_expired(
    subscription: Any,
    has_paid_history: bool,
    fallback_days: int,
    now: datetime | None = None,
) -> bool:
    """True iff no payment was ever made and the trial deadline has passed."""
    if has_paid_history:
        return False
    deadline = resolve_trial_end_date(subscription, fallback_days)
    if deadline is None:
        return False
    return (now or utcnow()) > deadline


def _newer_than_last_transition(subscription: Any, event_time: datetime | None) -> bool:
    if event_time is None:
        return False
    changed_at = subscription.status_changed_at
    return changed_at is None or event_time > changed_at


def _refuse(current: str, eligible: tuple[str, ...], message: str, code: str | None = None) -> None:
    raise InvalidTransitionError(message, current_status=current, eligible_statuses=eligible, code=code)


def decide_transition(
    subscription: Any,
    event: SubscriptionEvent,
    context: TransitionContext | None = None,
) -> Transition:
    """
    Compute the next status for an event.

    Remote-driven events never raise: when they cannot apply (stale,
    out-of-order, overridden by a local grant) the subscription stays where
    it is and the reason says why. Cancelled is sticky against every remote
    event; expired only yields to activation or payment evidence that is
    newer than the expiry itself. User and admin actions raise
    InvalidTransitionError naming the statuses they are allowed from.

    Args:
        subscription: Current subscription
        event: Event to apply
        context: Extra facts for the decision

    Returns:
        Transition
    """
    ctx = context or TransitionContext()
    current = _value(subscription.status)

    def stay(reason: str) -> Transition:
        return Transition(current, current, reason)

    def move(target: SubscriptionStatus, reason: str) -> Transition:
        return Transition(current, target.value, reason)

    if event in REMOTE_EVENTS and has_local_grant(subscription):
        return stay("local grant takes precedence over remote state")

    if event == SubscriptionEvent.REMOTE_CREATED:
        if current in TERMINAL_STATUSES or current == SubscriptionStatus.SUSPENDED.value:
            return stay("creation notice arrived after a later state")
        return move(SubscriptionStatus.ACTIVE, "remote subscription created")

    if event == SubscriptionEvent.REMOTE_ACTIVATED:
        if current == SubscriptionStatus.CANCELLED.value:
            return stay("cancelled is terminal")
        if current == SubscriptionStatus.EXPIRED.value and not _newer_than_last_transition(
            subscription, ctx.event_time
        ):
            return stay("activation is older than the expiry")
        return move(SubscriptionStatus.ACTIVE, "remote subscription activated")

    if event == SubscriptionEvent.REMOTE_CANCELLED:
        return move(SubscriptionStatus.CANCELLED, "remote subscription cancelled")

    if event == SubscriptionEvent.REMOTE_EXPIRED:
        if current in TERMINAL_STATUSES:
            return stay("already terminal")
        return move(SubscriptionStatus.EXPIRED, "remote subscription expired")

    if event == SubscriptionEvent.REMOTE_SUSPENDED:
        if current in TERMINAL_STATUSES:
            return stay("already terminal")
        if ctx.trial_window_passed and not ctx.has_paid_history:
            return move(SubscriptionStatus.EXPIRED, "trial ended without a payment")
        return move(SubscriptionStatus.SUSPENDED, "payment method failure after billing")

    if event == SubscriptionEvent.PAYMENT_COMPLETED:
        if current == SubscriptionStatus.CANCELLED.value:
            return stay("payment recorded on a cancelled subscription")
        if current == SubscriptionStatus.EXPIRED.value:
            # A never-paid row only expires when its trial ends; the first
            # charge ends that trial whenever its webhook lands
            if not ctx.has_paid_history:
                return move(SubscriptionStatus.ACTIVE, "first payment after trial expiry")
            if not _newer_than_last_transition(subscription, ctx.event_time):
                return stay("payment is older than the expiry")
        return move(SubscriptionStatus.ACTIVE, "payment completed")

    if event == SubscriptionEvent.PAYMENT_DENIED:
        return stay("provider emits suspension separately when retries are exhausted")

    if event == SubscriptionEvent.PAYMENT_REFUNDED:
        if ctx.full_refund and current != SubscriptionStatus.CANCELLED.value:
            return move(SubscriptionStatus.CANCELLED, "payment fully refunded")
        return stay("partial refund")

    if event == SubscriptionEvent.TRIAL_DEADLINE_PASSED:
        if current in TRIAL_SWEEP_STATUSES:
            return move(SubscriptionStatus.EXPIRED, "trial deadline passed without payment")
        return stay("only active or trialing subscriptions expire by deadline")

    if event in (SubscriptionEvent.REMOTE_LINKED, SubscriptionEvent.USER_UPGRADE):
        if ctx.in_provider_trial:
            return move(SubscriptionStatus.TRIALING, "linked inside provider trial window")
        return move(SubscriptionStatus.ACTIVE, "linked remote subscription")

    if event == SubscriptionEvent.COUPON_REDEEMED:
        return move(SubscriptionStatus.TRIAL, "coupon trial started")

    if event == SubscriptionEvent.ADMIN_GRANT_FREE:
        return move(SubscriptionStatus.FREE, "free access granted")

    if event == SubscriptionEvent.ADMIN_REVOKE_FREE:
        if current == SubscriptionStatus.EXPIRED.value:
            return stay("already expired")
        return move(SubscriptionStatus.EXPIRED, "free access revoked")

    if event in (SubscriptionEvent.USER_CANCEL, SubscriptionEvent.ADMIN_CANCEL):
        if current not in CANCELLABLE_STATUSES:
            _refuse(
                current,
                CANCELLABLE_STATUSES,
                f"Subscription is {current}. Only active, trialing or suspended subscriptions can be cancelled.",
            )
        return move(SubscriptionStatus.CANCELLED, "cancelled on request")

    if event == SubscriptionEvent.ADMIN_SUSPEND:
        if current not in SUSPENDABLE_STATUSES:
            _refuse(
                current,
                SUSPENDABLE_STATUSES,
                f"Subscription is {current}. Only active or trialing subscriptions can be suspended.",
            )
        return move(SubscriptionStatus.SUSPENDED, "suspended by admin")

    if event == SubscriptionEvent.ADMIN_REACTIVATE:
        if current not in REACTIVATABLE_STATUSES:
            if current in TERMINAL_STATUSES:
                message = (
                    f"{current.capitalize()} subscriptions cannot be reactivated. "
                    "The user needs to create a new subscription."
                )
            else:
                message = f"Subscription is {current}. Only suspended subscriptions can be reactivated."
            _refuse(current, REACTIVATABLE_STATUSES, message)
        return move(SubscriptionStatus.ACTIVE, "reactivated by admin")

    raise ValueError(f"Unhandled subscription event: {event}")


def add_months(value: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the target month's length."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def next_renewal_date(
    plan_type: str,
    current_end: datetime | None,
    now: datetime | None = None,
) -> datetime | None:
    """One billing period past the later of now and the current renewal date."""
    now = now or utcnow()
    base = current_end if current_end is not None and current_end > now else now
    plan_type = _value(plan_type)
    if plan_type == PlanType.MONTHLY.value:
        return add_months(base, 1)
    if plan_type == PlanType.ANNUAL.value:
        return add_months(base, 12)
    return None
