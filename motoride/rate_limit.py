"""Per-IP request limit on the API, counted in Redis.

Fixed window: ``RATE_LIMIT_MAX_REQUESTS`` per ``RATE_LIMIT_WINDOW_SEC`` for
each client address. Only paths under the API prefix are counted.
"""
from typing import Callable, Tuple
import logging
import time

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError
from starlette.middleware.base import BaseHTTPMiddleware

from . import cache
from .config import settings
from .errors import RateLimited
from .security import get_redis

logger = logging.getLogger(__name__)


class RateLimitMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, prefix: str = "/api/v1"):
        super().__init__(app)
        self.prefix = prefix

    async def _redis(self, request: Request):
        # same client the routes get, including dependency overrides
        getter = request.app.dependency_overrides.get(get_redis, get_redis)
        return await getter()

    async def _hit(self, redis, client: str) -> Tuple[int, int]:
        """Count one request; returns (requests in this window, seconds until it resets)."""
        window_sec = settings.RATE_LIMIT_WINDOW_SEC
        now = time.time()
        window = int(now // window_sec)
        key = cache.rate_limit_key(client, window)
        count = await redis.incr(key)
        if count == 1:
            await redis.expire(key, window_sec)
        return count, max(1, int((window + 1) * window_sec - now))

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if not settings.RATE_LIMIT_ENABLED or not request.url.path.startswith(self.prefix):
            return await call_next(request)

        client = request.client.host if request.client else "unknown"
        try:
            count, retry_after = await self._hit(await self._redis(request), client)
        except RedisError as e:
            # Redis down: let the request through
            logger.warning("rate_limit_unavailable: client=%s error=%s", client, e)
            return await call_next(request)

        if count > settings.RATE_LIMIT_MAX_REQUESTS:
            err = RateLimited("Too many requests from this IP, please try again later.")
            logger.info("rate_limited: client=%s path=%s count=%d", client, request.url.path, count)
            return JSONResponse(
                status_code=err.status_code,
                content={"detail": err.message, "code": err.code},
                headers={"Retry-After": str(retry_after)},
            )
        return await call_next(request)
