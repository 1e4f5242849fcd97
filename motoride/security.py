"""Bearer tokens and the FastAPI dependencies that resolve the caller."""
from datetime import timedelta
from typing import Optional
import logging
import uuid

from fastapi import Depends, Header
from jose import jwt, JWTError

from . import cache
from .config import settings
from .errors import Unauthorized
from .models import utc_now

logger = logging.getLogger(__name__)


def create_token(user_id: str, phone: str) -> str:
    now = utc_now()
    claims = {
        "sub": user_id,
        "phone": phone,
        "jti": uuid.uuid4().hex,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=settings.JWT_EXPIRES_MIN)).timestamp()),
    }
    return jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str) -> dict:
    try:
        claims = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as e:
        logger.debug("decode_token: rejected token: %s", e)
        raise Unauthorized("Invalid or expired token")
    if not claims.get("sub"):
        raise Unauthorized("Invalid token")
    return claims


async def resolve_token(token: str, redis) -> dict:
    claims = decode_token(token)
    if claims.get("jti") and await redis.exists(cache.revoked_key(claims["jti"])):
        raise Unauthorized("Token has been revoked")
    return claims


def _bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization or not authorization.startswith("Bearer "):
        return None
    return authorization[len("Bearer "):].strip() or None


async def get_redis():
    return cache.redis_client


async def current_claims(authorization: Optional[str] = Header(None), redis=Depends(get_redis)) -> dict:
    token = _bearer(authorization)
    if token is None:
        raise Unauthorized("No token provided")
    return await resolve_token(token, redis)


async def current_user_id(claims: dict = Depends(current_claims)) -> str:
    return claims["sub"]


async def optional_user_id(authorization: Optional[str] = Header(None), redis=Depends(get_redis)) -> Optional[str]:
    """Caller id when a valid token is sent, otherwise None."""
    token = _bearer(authorization)
    if token is None:
        return None
    try:
        claims = await resolve_token(token, redis)
    except Unauthorized:
        return None
    return claims["sub"]
