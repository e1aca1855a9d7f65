"""CRUD operations for Coupon model."""

import uuid
from typing import Any

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import ConflictError
from app.models.coupon import Coupon
from app.models.subscription import Subscription


def normalize_code(code: str) -> str:
    """Coupon codes are matched case-insensitively and stored upper-case."""
    return code.strip().upper()


async def get_coupon_by_id(db: AsyncSession, coupon_id: uuid.UUID) -> Coupon | None:
    """Get coupon by ID."""
    result = await db.execute(select(Coupon).where(Coupon.id == coupon_id))
    return result.scalar_one_or_none()


async def get_coupon_by_code(db: AsyncSession, code: str) -> Coupon | None:
    """
    Get coupon by code.

    Args:
        db: Database session
        code: Coupon code in any case

    Returns:
        Coupon or None if not found
    """
    result = await db.execute(
        select(Coupon).where(Coupon.code == normalize_code(code))
    )
    return result.scalar_one_or_none()


async def create_coupon(db: AsyncSession, code: str, trial_days: int, **fields: Any) -> Coupon:
    """
    Create a coupon.

    Args:
        db: Database session
        code: Coupon code
        trial_days: Trial length granted on redemption
        **fields: description, valid_from, valid_until, max_uses, is_active

    Returns:
        Created coupon

    Raises:
        ConflictError: Code already exists
    """
    coupon = Coupon(code=normalize_code(code), trial_days=trial_days, current_uses=0, **fields)
    db.add(coupon)
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise ConflictError(f"Coupon code {coupon.code} already exists") from exc
    await db.refresh(coupon)
    return coupon


async def update_coupon(db: AsyncSession, coupon: Coupon, **fields: Any) -> Coupon:
    """Update coupon fields. The use counter is not writable here."""
    fields.pop("current_uses", None)
    if "code" in fields and fields["code"] is not None:
        fields["code"] = normalize_code(fields["code"])
    max_uses = fields.get("max_uses")
    if max_uses is not None and max_uses < coupon.current_uses:
        raise ConflictError(
            f"Coupon {coupon.code} was already used {coupon.current_uses} times"
        )

    for field, value in fields.items():
        setattr(coupon, field, value)

    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise ConflictError(f"Coupon code {fields.get('code')} already exists") from exc
    await db.refresh(coupon)
    return coupon


async def deactivate_coupon(db: AsyncSession, coupon: Coupon) -> Coupon:
    """Soft-delete a coupon; redemptions already granted stay valid."""
    coupon.is_active = False
    await db.commit()
    await db.refresh(coupon)
    return coupon


async def list_coupons(
    db: AsyncSession,
    include_inactive: bool = True,
    skip: int = 0,
    limit: int = 100,
) -> list[Coupon]:
    """List coupons, newest first."""
    query = select(Coupon)
    if not include_inactive:
        query = query.where(Coupon.is_active.is_(True))
    result = await db.execute(
        query.order_by(Coupon.created_at.desc()).offset(skip).limit(limit)
    )
    return list(result.scalars().all())


async def list_coupon_redemptions(
    db: AsyncSession, coupon_id: uuid.UUID
) -> list[Subscription]:
    """Subscriptions that were created from a coupon."""
    result = await db.execute(
        select(Subscription)
        .where(Subscription.coupon_id == coupon_id)
        .order_by(Subscription.start_date.desc())
    )
    return list(result.scalars().all())


async def claim_coupon_use(db: AsyncSession, coupon_id: uuid.UUID) -> bool:
    """
    Atomically take one use of a coupon.

    The increment is guarded in the UPDATE itself so two concurrent
    redemptions of the last remaining use cannot both succeed. Does not
    commit: the claim belongs to the caller's redemption transaction.

    Args:
        db: Database session
        coupon_id: Coupon UUID

    Returns:
        True if a use was claimed, False when the coupon is exhausted or inactive
    """
    result = await db.execute(
        update(Coupon)
        .where(
            Coupon.id == coupon_id,
            Coupon.is_active.is_(True),
            or_(Coupon.max_uses.is_(None), Coupon.current_uses < Coupon.max_uses),
        )
        .values(current_uses=Coupon.current_uses + 1)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1
