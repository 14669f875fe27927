from starlette.middleware.base import BaseHTTPMiddleware


class RateLimitHeadersMiddleware(BaseHTTPMiddleware):
    """Copies X-RateLimit-* headers onto every response, errors included."""

    async def dispatch(self, request, call_next):
        response = await call_next(request)
        headers = getattr(request.state, "rate_limit_headers", None) or {}
        for name, value in headers.items():
            if name not in response.headers:
                response.headers[name] = value
        return response
