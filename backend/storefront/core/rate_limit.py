"""
Rate limiting for the public shipping endpoints

Rate quotes and tracking lookups each fan out to paid carrier APIs, so both
are limited per client IP (RATE_LIMIT_SHIPPING_RATES, RATE_LIMIT_SHIPPING_TRACK).
Storage is in-memory: limits are per process.
"""
import logging
from slowapi import Limiter
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from starlette.requests import Request
from starlette.responses import JSONResponse

from storefront.core.config import settings

logger = logging.getLogger(__name__)

DEFAULT_RETRY_AFTER_SECONDS = 60

# Path suffix -> client-facing message
RATE_LIMIT_MESSAGES = {
    "/shipping/rates": "Too many shipping quote requests. Please wait before requesting new rates.",
    "/shipping/track": "Too many tracking lookups. Please wait before checking this shipment again.",
}
DEFAULT_RATE_LIMIT_MESSAGE = "Too many shipping requests. Please try again later."


def get_client_ip(request: Request) -> str:
    """
    Get client IP, respecting X-Forwarded-For for proxied requests.
    Falls back to direct IP if header not present.
    """
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        # First IP in the chain is the original client
        return forwarded.split(",")[0].strip()
    return get_remote_address(request)


limiter = Limiter(
    key_func=get_client_ip,
    enabled=settings.RATE_LIMIT_ENABLED,
    default_limits=[settings.RATE_LIMIT_DEFAULT],
)


def rate_limit_message(path: str) -> str:
    for suffix, message in RATE_LIMIT_MESSAGES.items():
        if path.rstrip("/").endswith(suffix):
            return message
    return DEFAULT_RATE_LIMIT_MESSAGE


def retry_after_seconds(exc: RateLimitExceeded) -> int:
    """Window length of the limit that tripped, e.g. 60 for "20/minute"."""
    limit = getattr(exc, "limit", None)
    item = getattr(limit, "limit", None)
    if item is None:
        return DEFAULT_RETRY_AFTER_SECONDS
    return int(item.get_expiry())


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """429 with a message naming the shipping operation that was throttled."""
    logger.warning(
        f"Shipping rate limit exceeded: {get_client_ip(request)} on {request.url.path} ({exc.detail})"
    )

    retry_after = retry_after_seconds(exc)
    return JSONResponse(
        status_code=429,
        content={
            "error": "rate_limit_exceeded",
            "message": rate_limit_message(request.url.path),
            "retry_after": retry_after,
        },
        headers={"Retry-After": str(retry_after)},
    )
