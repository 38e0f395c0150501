from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

from agency_portal.config import settings


class BodySizeLimitMiddleware(BaseHTTPMiddleware):
    """Reject oversized request bodies before they reach the signing endpoints."""

    def __init__(self, app, max_bytes: int = None):
        super().__init__(app)
        self.max_bytes = max_bytes or settings.MAX_REQUEST_BODY_BYTES

    async def dispatch(self, request: Request, call_next):
        content_length = request.headers.get("content-length")
        if content_length:
            try:
                too_large = int(content_length) > self.max_bytes
            except ValueError:
                too_large = False
            if too_large:
                return JSONResponse(
                    status_code=413,
                    content={
                        "error_code": "PAYLOAD_TOO_LARGE",
                        "message": "Request body too large",
                        "details": {"max_bytes": self.max_bytes},
                    },
                )
        return await call_next(request)
