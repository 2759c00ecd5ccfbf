"""Rate limiting middleware: Redis-based fixed window per minute.

Learn: Each IP gets a counter key like "skillsauth:rl:{ip}:{minute}"
covering the endpoints that mint something (device codes, CLI sessions,
token exchange, refresh). Approval and read endpoints are not limited.

This is coarse abuse protection only. Device-code poll throttling is a
separate, durable mechanism (last_polled_at → slow_down) that works
whether or not Redis is up.

Gracefully skips rate limiting if Redis is unavailable (e.g., in tests).
"""

import time

import structlog
from redis.exceptions import RedisError
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from skillsauth.errors import error_response
from skillsauth.redis_client import get_redis

logger = structlog.get_logger()

ISSUANCE_PATHS = (
    "/api/v1/device/code",
    "/api/v1/device/refresh",
    "/api/v1/auth/cli/init",
    "/api/v1/auth/cli/token",
)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Redis-based rate limiting of issuance endpoints per IP per minute."""

    def __init__(self, app, rpm: int = 20, paths: tuple[str, ...] = ISSUANCE_PATHS):
        super().__init__(app)
        self.rpm = rpm
        self.paths = paths

    async def dispatch(self, request: Request, call_next) -> Response:
        if request.method != "POST" or request.url.path not in self.paths:
            return await call_next(request)

        redis = get_redis()
        if redis is None:
            return await call_next(request)

        client_ip = request.client.host if request.client else "unknown"
        window = int(time.time() // 60)
        key = f"skillsauth:rl:{client_ip}:{window}"

        try:
            count = await redis.incr(key)
            if count == 1:
                await redis.expire(key, 120)
        except RedisError as e:
            logger.warning("rate_limit.redis_error", error=str(e))
            return await call_next(request)

        if count > self.rpm:
            logger.info("rate_limit.exceeded", client_ip=client_ip, path=request.url.path)
            return error_response("rate_limited", 429, headers={"Retry-After": "60"})

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(self.rpm)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.rpm - count))
        return response
