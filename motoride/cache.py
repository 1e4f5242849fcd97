import logging

from redis.asyncio import Redis
from .config import settings


logger = logging.getLogger(__name__)

redis_client = Redis.from_url(settings.REDIS_URL, decode_responses=True)


def otp_key(phone: str) -> str:
    return f"otp:{phone}"


def revoked_key(jti: str) -> str:
    return f"revoked:{jti}"


def rate_limit_key(client: str, window: int) -> str:
    return f"ratelimit:{client}:{window}"


async def ping(client=None) -> bool:
    try:
        return bool(await (client if client is not None else redis_client).ping())
    except Exception as e:
        logger.warning("redis_ping_failed: %s", e)
        return False
