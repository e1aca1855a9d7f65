"""Rate limiting configuration using SlowAPI and Redis."""

from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from app.core.config import settings


def get_user_identifier(request: Request) -> str:
    """
    Get rate limit identifier from request.

    Priority order:
    1. User ID (if authenticated, set on request.state by the auth dependency)
    2. IP address (for non-authenticated requests)

    Args:
        request: FastAPI request object

    Returns:
        Unique identifier string for rate limiting
    """
    if hasattr(request.state, "user") and request.state.user:
        user_id = getattr(request.state.user, "id", None)
        if user_id:
            return f"user:{user_id}"

    return f"ip:{get_remote_address(request)}"


limiter = Limiter(
    key_func=get_user_identifier,
    storage_uri=settings.RATE_LIMIT_STORAGE_URI or settings.REDIS_URL,
    enabled=settings.RATE_LIMIT_ENABLED,
    default_limits=[settings.RATE_LIMIT_API_DEFAULT],
    headers_enabled=False,
)

# Coupon redemption (prevents brute-forcing trial codes)
coupon_redeem_limit = limiter.limit(settings.RATE_LIMIT_COUPON_REDEEM)

# Admin endpoints
admin_limit = limiter.limit(settings.RATE_LIMIT_ADMIN)
