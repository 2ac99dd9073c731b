"""Per-client fixed-window rate limiting backed by Redis."""

import time
from typing import Any

import structlog
from redis.exceptions import RedisError
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from kartpark.redis_client import get_optional_redis

logger = structlog.get_logger()

# Probes and the timing ingester, which uploads a burst of sessions after each heat
_EXEMPT = frozenset({("GET", "/health"), ("GET", "/ready"), ("GET", "/version"), ("POST", "/api/v1/sessions")})


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Count requests per client address per window; reject above the limit with 429."""

    def __init__(self, app: Any, requests_per_window: int = 100, window_seconds: int = 60) -> None:  # noqa: ANN401
        super().__init__(app)
        self.limit = requests_per_window
        self.window_seconds = window_seconds

    def _key(self, request: Request) -> str:
        client = request.client.host if request.client else "unknown"
        return f"ratelimit:{client}:{int(time.time()) // self.window_seconds}"

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        redis = get_optional_redis()
        if redis is None or (request.method, request.url.path) in _EXEMPT:
            return await call_next(request)

        key = self._key(request)
        try:
            async with redis.pipeline(transaction=True) as pipe:
                pipe.incr(key)
                pipe.expire(key, self.window_seconds + 1)
                count, _ = await pipe.execute()
        except RedisError as e:
            # Fail open: a Redis outage must not take the API down with it.
            logger.warning("rate_limit_unavailable", error=str(e))
            return await call_next(request)

        headers = {"X-RateLimit-Limit": str(self.limit), "X-RateLimit-Remaining": str(max(0, self.limit - count))}
        if count > self.limit:
            logger.info("rate_limited", key=key, count=count)
            return JSONResponse(
                status_code=429,
                content={"detail": "Too many requests, slow down", "code": "rate_limited"},
                headers={**headers, "Retry-After": str(self.window_seconds)},
            )

        response = await call_next(request)
        response.headers.update(headers)
        return response
