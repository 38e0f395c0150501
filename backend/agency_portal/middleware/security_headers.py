from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

TOKEN_ROUTE_PREFIXES = ("/contracts/by-token/", "/contracts/sign-by-token/")


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("X-Frame-Options", "DENY")
        if request.url.path.startswith(TOKEN_ROUTE_PREFIXES):
            # Links carry a bearer credential in the path: never cache or leak it onward
            response.headers["Cache-Control"] = "no-store"
            response.headers["Referrer-Policy"] = "no-referrer"
        else:
            response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        return response
