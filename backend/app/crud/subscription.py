"""CRUD operations for Subscription, BillingHistory and superseded remotes."""

import uuid
from collections.abc import Sequence
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import ConflictError
from app.models.billing_history import BillingHistory, BillingStatus
from app.models.subscription import Subscription
from app.models.superseded_remote_subscription import (
    SupersededRemoteSubscription,
    SupersededState,
)
from app.models.user import User
from app.services.subscription_state import TRIAL_SWEEP_STATUSES, utcnow

CHARGED_STATUSES = (
    BillingStatus.PAID.value,
    BillingStatus.PARTIALLY_REFUNDED.value,
    BillingStatus.REFUNDED.value,
)


async def get_subscription_by_user_id(
    db: AsyncSession, user_id: uuid.UUID
) -> Subscription | None:
    """
    Get the subscription owned by a user.

    Args:
        db: Database session
        user_id: User UUID

    Returns:
        Subscription or None if the user never had one
    """
    result = await db.execute(
        select(Subscription).where(Subscription.user_id == user_id)
    )
    return result.scalar_one_or_none()


async def get_subscription_by_id(
    db: AsyncSession, subscription_id: uuid.UUID
) -> Subscription | None:
    """Get subscription by ID."""
    result = await db.execute(
        select(Subscription).where(Subscription.id == subscription_id)
    )
    return result.scalar_one_or_none()


async def get_subscription_by_remote_id(
    db: AsyncSession, remote_subscription_id: str
) -> Subscription | None:
    """
    Get subscription by provider subscription id.

    Args:
        db: Database session
        remote_subscription_id: Provider subscription id

    Returns:
        Subscription or None if no local row references it
    """
    result = await db.execute(
        select(Subscription).where(
            Subscription.remote_subscription_id == remote_subscription_id
        )
    )
    return result.scalar_one_or_none()


async def create_subscription(db: AsyncSession, **fields: Any) -> Subscription:
    """
    Create a subscription.

    Args:
        db: Database session
        **fields: Column values (user_id, plan_type and status are required)

    Returns:
        Created subscription

    Raises:
        ConflictError: The user already has a subscription, or the remote id
            is already linked to another user
    """
    fields.setdefault("start_date", utcnow())
    fields.setdefault("status_changed_at", utcnow())
    db_subscription = Subscription(**fields)
    db.add(db_subscription)
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise ConflictError("Subscription already exists for this user or remote id") from exc
    await db.refresh(db_subscription)
    return db_subscription


async def update_subscription(
    db: AsyncSession,
    db_subscription: Subscription,
    **fields: Any,
) -> Subscription:
    """
    Update independent subscription fields (last writer wins).

    Status is deliberately refused here; status changes go through
    transition_status so a stale read cannot clobber a fresh transition.

    Args:
        db: Database session
        db_subscription: Existing subscription
        **fields: Column values to set

    Returns:
        Updated subscription
    """
    if "status" in fields:
        raise ValueError("Use transition_status to change subscription status")

    for field, value in fields.items():
        setattr(db_subscription, field, value)

    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise ConflictError("Remote subscription id is already linked") from exc
    await db.refresh(db_subscription)
    return db_subscription


async def transition_status(
    db: AsyncSession,
    db_subscription: Subscription,
    new_status: str,
    expected_status: str | None = None,
    commit: bool = True,
    **fields: Any,
) -> Subscription:
    """
    Move a subscription to a new status with compare-and-set semantics.

    The UPDATE only matches when the stored status still equals
    expected_status (defaults to the status on the loaded object).

    Args:
        db: Database session
        db_subscription: Subscription as read by the caller
        new_status: Target status
        expected_status: Status the caller based its decision on
        commit: Commit the transaction (False lets callers group writes)
        **fields: Other columns written in the same statement

    Returns:
        Refreshed subscription

    Raises:
        ConflictError: Status moved since it was read
    """
    if expected_status is None:
        expected_status = db_subscription.status

    now = utcnow()
    values = dict(fields)
    values["status"] = new_status
    values["updated_at"] = now
    if new_status != expected_status:
        values["status_changed_at"] = now

    subscription_id = db_subscription.id
    try:
        result = await db.execute(
            update(Subscription)
            .where(
                Subscription.id == subscription_id,
                Subscription.status == expected_status,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
    except IntegrityError as exc:
        await db.rollback()
        raise ConflictError("Remote subscription id is already linked") from exc

    if result.rowcount == 0:
        await db.rollback()
        raise ConflictError(
            f"Subscription {subscription_id} is no longer {expected_status}"
        )

    if commit:
        await db.commit()
    else:
        await db.flush()
    await db.refresh(db_subscription)
    return db_subscription


async def list_trial_candidates(db: AsyncSession) -> list[Subscription]:
    """Subscriptions with a remote id that may still be inside their trial window."""
    result = await db.execute(
        select(Subscription)
        .where(
            Subscription.remote_subscription_id.is_not(None),
            Subscription.status.in_(TRIAL_SWEEP_STATUSES),
        )
        .order_by(Subscription.start_date)
    )
    return list(result.scalars().all())


async def list_remote_linked_subscriptions(db: AsyncSession) -> list[Subscription]:
    """All subscriptions that reference a provider subscription."""
    result = await db.execute(
        select(Subscription)
        .where(Subscription.remote_subscription_id.is_not(None))
        .order_by(Subscription.created_at)
    )
    return list(result.scalars().all())


async def has_paid_billing_history(
    db: AsyncSession, subscription_id: uuid.UUID
) -> bool:
    """
    True when at least one charge went through for the subscription.

    Refunded charges still count: the trial window ended when they cleared.
    """
    result = await db.execute(
        select(BillingHistory.id)
        .where(
            BillingHistory.subscription_id == subscription_id,
            BillingHistory.status.in_(CHARGED_STATUSES),
        )
        .limit(1)
    )
    return result.first() is not None


async def has_billing_history(db: AsyncSession, subscription_id: uuid.UUID) -> bool:
    """True when any ledger row exists for the subscription."""
    result = await db.execute(
        select(BillingHistory.id)
        .where(BillingHistory.subscription_id == subscription_id)
        .limit(1)
    )
    return result.first() is not None


def generate_invoice_number(now: datetime | None = None) -> str:
    """Invoice number of the form INV-<epoch ms>-<9 hex chars>."""
    now = now or utcnow()
    epoch = datetime(1970, 1, 1)
    millis = int((now - epoch).total_seconds() * 1000)
    return f"INV-{millis}-{uuid.uuid4().hex[:9].upper()}"


async def append_billing_history(
    db: AsyncSession,
    subscription_id: uuid.UUID,
    amount: Decimal,
    currency: str,
    status: str,
    remote_transaction_id: str | None = None,
    remote_sale_id: str | None = None,
    payment_date: datetime | None = None,
    invoice_url: str | None = None,
    commit: bool = True,
) -> BillingHistory:
    """
    Append a ledger row.

    Args:
        db: Database session
        subscription_id: Owning subscription
        amount: Charged amount
        currency: ISO currency code
        status: BillingStatus value
        remote_transaction_id: Provider transaction id (unique)
        remote_sale_id: Provider sale/capture id used for refunds
        payment_date: When the charge happened
        invoice_url: Provider-side receipt link
        commit: Commit the transaction

    Returns:
        Created ledger row

    Raises:
        ConflictError: A row with the same transaction id already exists
    """
    entry = BillingHistory(
        subscription_id=subscription_id,
        invoice_number=generate_invoice_number(),
        remote_transaction_id=remote_transaction_id,
        remote_sale_id=remote_sale_id,
        amount=amount,
        currency=currency,
        status=status,
        payment_date=payment_date or utcnow(),
        invoice_url=invoice_url,
    )
    if remote_transaction_id is not None:
        existing = await get_billing_entry_by_transaction_id(db, remote_transaction_id)
        if existing is not None:
            raise ConflictError(
                f"Billing history entry for transaction {remote_transaction_id} already exists"
            )

    db.add(entry)
    try:
        if commit:
            await db.commit()
        else:
            await db.flush()
    except IntegrityError as exc:
        await db.rollback()
        raise ConflictError(
            f"Billing history entry for transaction {remote_transaction_id} already exists"
        ) from exc

    if commit:
        await db.refresh(entry)
    return entry


async def get_billing_entry_by_id(
    db: AsyncSession, entry_id: uuid.UUID
) -> BillingHistory | None:
    """Get ledger row by ID."""
    result = await db.execute(select(BillingHistory).where(BillingHistory.id == entry_id))
    return result.scalar_one_or_none()


async def get_billing_entry_by_transaction_id(
    db: AsyncSession, remote_transaction_id: str
) -> BillingHistory | None:
    """Get ledger row by provider transaction id."""
    result = await db.execute(
        select(BillingHistory).where(
            BillingHistory.remote_transaction_id == remote_transaction_id
        )
    )
    return result.scalar_one_or_none()


async def get_billing_entry_by_capture_id(
    db: AsyncSession, capture_id: str
) -> BillingHistory | None:
    """
    Get ledger row for a refunded capture/sale.

    Refund notifications reference either the sale id or the transaction
    id depending on the event family, so both columns are matched.
    """
    result = await db.execute(
        select(BillingHistory)
        .where(
            (BillingHistory.remote_sale_id == capture_id)
            | (BillingHistory.remote_transaction_id == capture_id)
        )
        .limit(1)
    )
    return result.scalar_one_or_none()


async def update_billing_history_refund(
    db: AsyncSession,
    entry: BillingHistory,
    refunded_amount: Decimal,
    refund_reason: str | None = None,
    remote_refund_id: str | None = None,
    refunded_date: datetime | None = None,
    commit: bool = True,
) -> BillingHistory:
    """
    Record a refund on a ledger row.

    Args:
        db: Database session
        entry: Ledger row
        refunded_amount: Cumulative refunded amount
        refund_reason: Free-text reason
        remote_refund_id: Provider refund id
        refunded_date: When the refund happened
        commit: Commit the transaction

    Returns:
        Updated ledger row
    """
    entry.refunded_amount = refunded_amount
    entry.refunded_date = refunded_date or utcnow()
    if refund_reason is not None:
        entry.refund_reason = refund_reason
    if remote_refund_id is not None:
        entry.remote_refund_id = remote_refund_id
    entry.status = (
        BillingStatus.REFUNDED.value
        if refunded_amount >= entry.amount
        else BillingStatus.PARTIALLY_REFUNDED.value
    )

    if commit:
        await db.commit()
        await db.refresh(entry)
    else:
        await db.flush()
    return entry


async def list_billing_history(
    db: AsyncSession,
    subscription_id: uuid.UUID,
    skip: int = 0,
    limit: int = 100,
) -> list[BillingHistory]:
    """Ledger rows for a subscription, newest first."""
    result = await db.execute(
        select(BillingHistory)
        .where(BillingHistory.subscription_id == subscription_id)
        .order_by(BillingHistory.payment_date.desc())
        .offset(skip)
        .limit(limit)
    )
    return list(result.scalars().all())


async def payment_stats(db: AsyncSession) -> dict[str, Any]:
    """
    Aggregate ledger totals for the admin dashboard.

    Returns:
        Dict with counts per status, total revenue and total refunded
    """
    counts_result = await db.execute(
        select(BillingHistory.status, func.count(BillingHistory.id)).group_by(
            BillingHistory.status
        )
    )
    counts = {status: count for status, count in counts_result.all()}

    revenue_result = await db.execute(
        select(func.coalesce(func.sum(BillingHistory.amount), 0)).where(
            BillingHistory.status.in_(CHARGED_STATUSES)
        )
    )
    refunded_result = await db.execute(
        select(func.coalesce(func.sum(BillingHistory.refunded_amount), 0))
    )

    subscriptions_result = await db.execute(
        select(Subscription.status, func.count(Subscription.id)).group_by(
            Subscription.status
        )
    )

    return {
        "payments_by_status": counts,
        "total_revenue": Decimal(str(revenue_result.scalar_one())),
        "total_refunded": Decimal(str(refunded_result.scalar_one())),
        "subscriptions_by_status": {
            status: count for status, count in subscriptions_result.all()
        },
    }


async def list_subscriptions_with_users(
    db: AsyncSession,
    status: str | None = None,
    skip: int = 0,
    limit: int = 100,
) -> list[tuple[Subscription, User]]:
    """Subscriptions joined with their owners, newest first."""
    query = select(Subscription, User).join(User, User.id == Subscription.user_id)
    if status is not None:
        query = query.where(Subscription.status == status)
    result = await db.execute(
        query.order_by(Subscription.created_at.desc()).offset(skip).limit(limit)
    )
    return [(subscription, user) for subscription, user in result.all()]


async def list_all_subscriptions(db: AsyncSession) -> list[Subscription]:
    """Every subscription row."""
    result = await db.execute(select(Subscription))
    return list(result.scalars().all())


async def get_paid_subscription_ids(
    db: AsyncSession, subscription_ids: Sequence[uuid.UUID] | None = None
) -> set[uuid.UUID]:
    """Ids among subscription_ids (all when None) with at least one charge."""
    query = select(BillingHistory.subscription_id).where(
        BillingHistory.status.in_(CHARGED_STATUSES)
    )
    if subscription_ids is not None:
        if not subscription_ids:
            return set()
        query = query.where(BillingHistory.subscription_id.in_(subscription_ids))
    result = await db.execute(query.distinct())
    return set(result.scalars().all())


async def list_billing_entries_with_users(
    db: AsyncSession,
    statuses: Sequence[str] | None = None,
    skip: int = 0,
    limit: int = 100,
    newest_refund_first: bool = False,
) -> list[tuple[BillingHistory, Subscription, User]]:
    """
    Ledger rows across all subscriptions with their subscription and owner.

    Args:
        db: Database session
        statuses: Only rows in these BillingStatus values
        skip: Rows to skip
        limit: Maximum rows
        newest_refund_first: Order by refund date instead of payment date

    Returns:
        (entry, subscription, user) tuples
    """
    query = (
        select(BillingHistory, Subscription, User)
        .join(Subscription, Subscription.id == BillingHistory.subscription_id)
        .join(User, User.id == Subscription.user_id)
    )
    if statuses:
        query = query.where(BillingHistory.status.in_(statuses))
    order = (
        BillingHistory.refunded_date.desc()
        if newest_refund_first
        else BillingHistory.payment_date.desc()
    )
    result = await db.execute(query.order_by(order).offset(skip).limit(limit))
    return [(entry, subscription, user) for entry, subscription, user in result.all()]


async def add_superseded_remote(
    db: AsyncSession,
    subscription: Subscription,
    remote_subscription_id: str,
    plan_type: str,
    replaced_by_remote_id: str,
    commit: bool = True,
) -> SupersededRemoteSubscription:
    """
    Track a remote subscription that must be cancelled once its
    replacement is paid.
    """
    result = await db.execute(
        select(SupersededRemoteSubscription).where(
            SupersededRemoteSubscription.remote_subscription_id == remote_subscription_id,
            SupersededRemoteSubscription.state == SupersededState.PENDING.value,
        )
    )
    existing = result.scalar_one_or_none()
    if existing is not None:
        existing.replaced_by_remote_id = replaced_by_remote_id
        row = existing
    else:
        row = SupersededRemoteSubscription(
            subscription_id=subscription.id,
            user_id=subscription.user_id,
            remote_subscription_id=remote_subscription_id,
            plan_type=plan_type,
            replaced_by_remote_id=replaced_by_remote_id,
            state=SupersededState.PENDING.value,
        )
        db.add(row)

    if commit:
        await db.commit()
        await db.refresh(row)
    else:
        await db.flush()
    return row


async def list_pending_superseded(
    db: AsyncSession,
    user_id: uuid.UUID,
    plan_types: Sequence[str] | None = None,
) -> list[SupersededRemoteSubscription]:
    """Pending superseded remotes for a user."""
    query = select(SupersededRemoteSubscription).where(
        SupersededRemoteSubscription.user_id == user_id,
        SupersededRemoteSubscription.state == SupersededState.PENDING.value,
    )
    if plan_types:
        query = query.where(SupersededRemoteSubscription.plan_type.in_(plan_types))
    result = await db.execute(query.order_by(SupersededRemoteSubscription.created_at))
    return list(result.scalars().all())


async def is_superseded_remote(db: AsyncSession, remote_subscription_id: str) -> bool:
    """True when the remote id was replaced by an upgrade."""
    result = await db.execute(
        select(SupersededRemoteSubscription.id)
        .where(SupersededRemoteSubscription.remote_subscription_id == remote_subscription_id)
        .limit(1)
    )
    return result.first() is not None


async def resolve_superseded(
    db: AsyncSession,
    row: SupersededRemoteSubscription,
    state: str,
    error: str | None = None,
) -> SupersededRemoteSubscription:
    """
    Close out a superseded remote.

    Args:
        db: Database session
        row: Tracked superseded remote
        state: SupersededState value
        error: Failure detail for manual follow-up

    Returns:
        Updated row
    """
    if state not in {s.value for s in SupersededState}:
        raise ValueError(f"Unknown superseded state: {state}")
    row.state = state
    row.last_error = error
    row.resolved_at = utcnow()
    await db.commit()
    await db.refresh(row)
    return row
