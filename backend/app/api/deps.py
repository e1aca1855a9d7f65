"""API dependencies: authentication and billing collaborators."""

import uuid
from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.core.security import decode_token
from app.crud import user as user_crud
from app.models.user import User
from app.services.billing_gateway import BillingGatewayClient
from app.services.notification_service import NotificationEmitter

bearer_scheme = HTTPBearer(auto_error=False)

_gateway: BillingGatewayClient | None = None
_notifier: NotificationEmitter | None = None


async def get_current_user(
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)],
) -> User:
    """
    Resolve the user from a bearer JWT.

    Raises:
        HTTPException: 401 if the token is missing, invalid or unknown
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if credentials is None:
        raise credentials_exception

    payload = decode_token(credentials.credentials)
    if payload is None or payload.get("type") != "access":
        raise credentials_exception

    try:
        user_id = uuid.UUID(str(payload.get("sub")))
    except ValueError:
        raise credentials_exception

    user = await user_crud.get_user_by_id(db, user_id)
    if user is None:
        raise credentials_exception

    # Used by the rate limiter key function
    request.state.user = user
    return user


async def get_current_active_user(
    current_user: Annotated[User, Depends(get_current_user)],
) -> User:
    """Reject deactivated accounts."""
    if not current_user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Inactive user",
        )
    return current_user


async def get_current_superuser(
    current_user: Annotated[User, Depends(get_current_active_user)],
) -> User:
    """Require administrator privileges."""
    if not current_user.is_superuser:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not enough privileges",
        )
    return current_user


def get_billing_gateway() -> BillingGatewayClient:
    """Process-wide billing gateway (one connection pool and token cache)."""
    global _gateway
    if _gateway is None:
        _gateway = BillingGatewayClient()
    return _gateway


def get_notifier() -> NotificationEmitter:
    """Process-wide notification emitter."""
    global _notifier
    if _notifier is None:
        _notifier = NotificationEmitter()
    return _notifier


async def close_billing_clients() -> None:
    """Release the shared gateway and notifier connections."""
    global _gateway, _notifier
    if _gateway is not None:
        await _gateway.close()
        _gateway = None
    if _notifier is not None:
        await _notifier.close()
        _notifier = None
