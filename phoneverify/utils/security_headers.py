from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Secure defaults for a JSON API.

    HSTS is only sent when ``hsts`` is enabled (every non-dev environment).
    Responses to verification requests are never cacheable.
    """

    def __init__(self, app, hsts: bool = True, hsts_max_age: int = 31536000) -> None:
        super().__init__(app)
        self.hsts = hsts
        self.hsts_max_age = hsts_max_age

    async def dispatch(self, request: Request, call_next) -> Response:
        response: Response = await call_next(request)
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        if self.hsts:
            response.headers.setdefault(
                "Strict-Transport-Security", f"max-age={self.hsts_max_age}; includeSubDomains"
            )
        if request.method.upper() in ("POST", "PUT", "PATCH", "DELETE"):
            response.headers.setdefault("Cache-Control", "no-store")
        return response
