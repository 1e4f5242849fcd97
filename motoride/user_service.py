import logging

from sqlalchemy import select, update, func

from . import models, schemas
from .errors import NotFound
from .models import utc_now

logger = logging.getLogger(__name__)

users = models.users
PROFILE_FIELDS = ("id", "name", "phone", "city", "vehicle_number", "created_at", "updated_at")
PUBLIC_FIELDS = ("id", "name", "city", "vehicle_number")


async def _get_user_row(conn, user_id: str):
    return (await conn.execute(select(users).where(users.c.id == user_id))).first()


async def get_user(conn, user_id: str, public: bool = False) -> dict:
    async with conn.begin():
        row = await _get_user_row(conn, user_id)
    if row is None:
        raise NotFound("User not found")
    fields = PUBLIC_FIELDS if public else PROFILE_FIELDS
    return {f: row._mapping[f] for f in fields}


async def update_user(conn, user_id: str, data: schemas.UserUpdate) -> dict:
    changes = data.model_dump(exclude_unset=True, exclude_none=True)
    if "vehicle_number" in changes:
        changes["vehicle_number"] = changes["vehicle_number"].strip() or None
    async with conn.begin():
        if changes:
            res = await conn.execute(
                update(users).where(users.c.id == user_id).values(**changes, updated_at=utc_now())
            )
            if res.rowcount != 1:
                raise NotFound("User not found")
        row = await _get_user_row(conn, user_id)
    if row is None:
        raise NotFound("User not found")
    logger.info("user_updated: user=%s fields=%s", user_id, sorted(changes))
    return {f: row._mapping[f] for f in PROFILE_FIELDS}


async def get_user_stats(conn, user_id: str) -> dict:
    async with conn.begin():
        if await _get_user_row(conn, user_id) is None:
            raise NotFound("User not found")
        created = (
            await conn.execute(select(func.count()).select_from(models.rides).where(models.rides.c.rider_id == user_id))
        ).scalar_one()
        joined = (
            await conn.execute(
                select(func.count()).select_from(models.rides).where(models.rides.c.passenger_id == user_id)
            )
        ).scalar_one()
        avg, total = (
            await conn.execute(
                select(func.avg(models.feedback.c.rating), func.count(models.feedback.c.id)).where(
                    models.feedback.c.to_user_id == user_id
                )
            )
        ).one()
    return {
        "rides_created": created,
        "rides_joined": joined,
        "average_rating": round(float(avg), 2) if avg is not None else 0.0,
        "total_feedbacks": total,
    }
