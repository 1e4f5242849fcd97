"""Ratings left by ride participants once a ride is COMPLETED."""
from typing import Optional
import logging

from sqlalchemy import select, insert, and_, desc
from sqlalchemy.exc import IntegrityError

from . import models, schemas
from .errors import NotFound, Forbidden, InvalidState, Conflict, PreconditionFailed
from .models import utc_now
from .ride_service import load_users

logger = logging.getLogger(__name__)

feedback = models.feedback
rides = models.rides


def _person(people: dict, user_id: Optional[str]) -> Optional[dict]:
    user = people.get(user_id)
    return {"id": user["id"], "name": user["name"]} if user else None


def summarize(ratings: list[int]) -> dict:
    total = len(ratings)
    return {
        "total_feedbacks": total,
        "average_rating": round(sum(ratings) / total, 2) if total else 0.0,
        "rating_distribution": {score: ratings.count(score) for score in (5, 4, 3, 2, 1)},
    }


async def create_feedback(conn, from_user_id: str, data: schemas.FeedbackCreate) -> dict:
    try:
        async with conn.begin():
            ride = (await conn.execute(select(rides).where(rides.c.id == data.ride_id))).first()
            if ride is None:
                raise NotFound("Ride not found")
            if ride.status != models.RIDE_COMPLETED:
                raise InvalidState("Feedback can only be given for completed rides")
            if from_user_id not in (ride.rider_id, ride.passenger_id):
                raise Forbidden("You can only give feedback for rides you participated in")

            other = ride.passenger_id if from_user_id == ride.rider_id else ride.rider_id
            if other is None or data.to_user_id != other:
                raise PreconditionFailed("You can only give feedback to the other party in the ride")

            existing = (
                await conn.execute(
                    select(feedback.c.id).where(
                        and_(feedback.c.ride_id == data.ride_id, feedback.c.from_user_id == from_user_id)
                    )
                )
            ).first()
            if existing:
                raise Conflict("You have already given feedback for this ride")

            feedback_id = models.new_id()
            await conn.execute(
                insert(feedback).values(
                    id=feedback_id,
                    ride_id=data.ride_id,
                    from_user_id=from_user_id,
                    to_user_id=data.to_user_id,
                    user_role=models.ROLE_RIDER if from_user_id == ride.rider_id else models.ROLE_PASSENGER,
                    rating=data.rating,
                    comment=data.comment,
                    created_at=utc_now(),
                )
            )
            row = (await conn.execute(select(feedback).where(feedback.c.id == feedback_id))).first()
            people = await load_users(conn, [from_user_id, data.to_user_id])
    except IntegrityError:
        raise Conflict("You have already given feedback for this ride")

    out = dict(row._mapping)
    out["from_user"] = _person(people, from_user_id)
    out["to_user"] = _person(people, data.to_user_id)
    logger.info(
        "feedback_created: feedback=%s ride=%s from=%s to=%s rating=%s",
        feedback_id, data.ride_id, from_user_id, data.to_user_id, data.rating,
    )
    return out


async def get_user_feedback(conn, user_id: str) -> dict:
    """Feedback received by `user_id`, newest first, with aggregate stats."""
    async with conn.begin():
        res = await conn.execute(
            select(feedback).where(feedback.c.to_user_id == user_id).order_by(desc(feedback.c.created_at))
        )
        items = [dict(row._mapping) for row in res]
        people = await load_users(conn, [f["from_user_id"] for f in items])
    for item in items:
        item["from_user"] = _person(people, item["from_user_id"])
    return {"feedback": items, "stats": summarize([f["rating"] for f in items])}


async def get_ride_feedback(conn, ride_id: str) -> list[dict]:
    async with conn.begin():
        res = await conn.execute(select(feedback).where(feedback.c.ride_id == ride_id))
        items = [dict(row._mapping) for row in res]
        people = await load_users(conn, [f["from_user_id"] for f in items] + [f["to_user_id"] for f in items])
    for item in items:
        item["from_user"] = _person(people, item["from_user_id"])
        item["to_user"] = _person(people, item["to_user_id"])
    return items
