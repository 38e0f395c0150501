"""
Request ID tracking middleware for log correlation and signature provenance.
"""
import logging
import time
import uuid

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

logger = logging.getLogger(__name__)


def _client_ip(request: Request) -> str:
    # First hop of X-Forwarded-For is the original client behind the proxy
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client:
        return request.client.host
    return "unknown"


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Stamps each request with an ID and records the caller's IP and user agent
    on ``request.state`` so signature capture can store them.
    """

    def __init__(self, app: ASGIApp):
        super().__init__(app)

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        request.state.client_ip = _client_ip(request)
        request.state.user_agent = request.headers.get("User-Agent", "unknown")

        start = time.time()
        try:
            response: Response = await call_next(request)
        except Exception as e:
            duration_ms = int((time.time() - start) * 1000)
            logger.error(
                "Request failed: %s", e,
                extra={"request_id": request_id, "duration_ms": duration_ms},
                exc_info=True,
            )
            raise

        response.headers["X-Request-ID"] = request_id
        duration_ms = int((time.time() - start) * 1000)
        logger.info(
            "%s %s", request.method, request.url.path,
            extra={
                "request_id": request_id,
                "status": response.status_code,
                "duration_ms": duration_ms,
            },
        )
        return response


def get_request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


def get_client_ip(request: Request) -> str:
    return getattr(request.state, "client_ip", None) or _client_ip(request)


def get_user_agent(request: Request) -> str:
    return getattr(request.state, "user_agent", None) or request.headers.get("User-Agent", "unknown")
