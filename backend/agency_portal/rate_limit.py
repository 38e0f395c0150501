"""
Rate limiting configuration and utilities.
"""
import logging

from fastapi import Request
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from agency_portal.config import settings

logger = logging.getLogger(__name__)

# Use Redis if explicitly configured, otherwise fallback to memory
storage_uri = settings.REDIS_URL or "memory://"

if not settings.REDIS_URL:
    logger.warning("REDIS_URL not set using memory storage for rate limiting")

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=["100/minute"],
    storage_uri=storage_uri,
    strategy="fixed-window"
)


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Handle rate limit exceeded errors."""
    logger.warning(
        "Rate limit exceeded for %s on %s", get_remote_address(request), request.url.path,
        extra={"status": 429}
    )

    return JSONResponse(
        status_code=429,
        content={
            "error_code": "RATE_LIMIT_EXCEEDED",
            "message": "Too many requests. Please try again later.",
            "details": {
                "retry_after": "60 seconds"
            }
        }
    )


# Token endpoints are anonymous; the link is the only credential
PUBLIC_SIGNING_RATE_LIMIT = settings.public_rate_limit
AUTH_RATE_LIMIT = "5/minute"
