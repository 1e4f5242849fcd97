"""Phone + one-time-code login.

Codes live in Redis under ``otp:<phone>`` with a TTL. A second login for the
same phone overwrites the first code.
"""
from datetime import datetime, timezone
import logging
import secrets

from sqlalchemy import select, insert

from . import cache, models, schemas, security
from .config import settings
from .errors import NotFound, Unauthorized
from .models import utc_now

logger = logging.getLogger(__name__)

users = models.users
USER_FIELDS = ("id", "name", "phone", "city", "vehicle_number", "created_at", "updated_at")


def generate_otp() -> str:
    return f"{secrets.randbelow(900000) + 100000}"


async def login(conn, redis, data: schemas.LoginRequest) -> dict:
    logger.info("login: phone=%s", data.phone)
    async with conn.begin():
        user = (await conn.execute(select(users).where(users.c.phone == data.phone))).first()
        if user is None:
            # profile may stay empty until the user fills it in
            user_id = models.new_id()
            now = utc_now()
            await conn.execute(
                insert(users).values(
                    id=user_id,
                    phone=data.phone,
                    name=data.name or "",
                    city=data.city or "",
                    created_at=now,
                    updated_at=now,
                )
            )
            logger.info("user_created: user=%s", user_id)
        else:
            user_id = user.id

    otp = generate_otp()
    await redis.set(cache.otp_key(data.phone), otp, ex=settings.OTP_TTL_SEC)
    # no SMS gateway: the code only goes to the log
    logger.info("otp_generated: phone=%s otp=%s", data.phone, otp)

    out = {"message": "OTP sent successfully", "user_id": user_id}
    if settings.EXPOSE_OTP:
        out["otp"] = otp
    return out


async def verify_otp(conn, redis, data: schemas.VerifyOtpRequest) -> dict:
    key = cache.otp_key(data.phone)
    stored = await redis.get(key)
    if stored is None:
        raise Unauthorized("OTP not found or expired. Please request a new one.")
    if not secrets.compare_digest(stored, data.otp):
        logger.warning("verify_otp: mismatch phone=%s", data.phone)
        raise Unauthorized("Invalid OTP")
    await redis.delete(key)

    async with conn.begin():
        user = (await conn.execute(select(users).where(users.c.phone == data.phone))).first()
    if user is None:
        raise NotFound("User not found")

    token = security.create_token(user.id, user.phone)
    logger.info("user_authenticated: user=%s", user.id)
    return {"token": token, "user": {f: user._mapping[f] for f in USER_FIELDS}}


async def logout(redis, claims: dict) -> dict:
    """Revoke the presented token until it would have expired anyway."""
    jti = claims.get("jti")
    exp = claims.get("exp")
    if jti and exp:
        ttl = int(exp - datetime.now(timezone.utc).timestamp())
        if ttl > 0:
            await redis.set(cache.revoked_key(jti), "1", ex=ttl)
    logger.info("user_logged_out: user=%s", claims.get("sub"))
    return {"message": "Logged out successfully"}
