"""Ride requests and the matching transaction.

A request moves PENDING -> ACCEPTED | REJECTED, or is deleted by its passenger
while still PENDING. Accepting one request matches the ride: the request is
accepted, its PENDING siblings are rejected in bulk and the ride becomes
MATCHED, all in one transaction (see :func:`apply_match`).
"""
from typing import Optional
import logging

from sqlalchemy import select, insert, update, delete, and_, asc, desc
from sqlalchemy.exc import IntegrityError

from . import models, schemas
from .errors import NotFound, Forbidden, SelfReference, InvalidState, Conflict
from .models import utc_now
from .notifications import (
    Outbox,
    ToUser,
    REQUEST_CREATED,
    REQUEST_ACCEPTED,
    REQUEST_REJECTED,
    REQUEST_CANCELLED,
)
from .ride_service import annotate_rides, get_ride_detail, load_users

logger = logging.getLogger(__name__)

rides = models.rides
ride_requests = models.ride_requests
users = models.users

PASSENGER_FIELDS = ("id", "name", "phone", "city")


async def _load_request(conn, request_id: str) -> Optional[dict]:
    """Request row joined with the owning rider and the ride status."""
    res = await conn.execute(
        select(ride_requests, rides.c.rider_id, rides.c.status.label("ride_status"))
        .select_from(ride_requests.join(rides, ride_requests.c.ride_id == rides.c.id))
        .where(ride_requests.c.id == request_id)
    )
    row = res.first()
    return dict(row._mapping) if row else None


async def _request_dict(conn, request_id: str) -> dict:
    row = (await conn.execute(select(ride_requests).where(ride_requests.c.id == request_id))).first()
    return dict(row._mapping)


async def apply_match(conn, request: dict) -> int:
    """Match `request` to its ride. Must run inside a transaction.

    Every statement re-checks its precondition in the WHERE clause, so a
    caller that lost a race gets ``InvalidState`` and the surrounding
    transaction rolls back. Returns the number of sibling requests rejected.
    """
    now = utc_now()
    ride_id = request["ride_id"]

    # take the ride first: a concurrent accept blocks here and then sees MATCHED
    res = await conn.execute(
        update(rides)
        .where(and_(rides.c.id == ride_id, rides.c.status == models.RIDE_OPEN))
        .values(status=models.RIDE_MATCHED, passenger_id=request["passenger_id"], updated_at=now)
    )
    if res.rowcount != 1:
        raise InvalidState("This ride is not accepting requests")

    res = await conn.execute(
        update(ride_requests)
        .where(and_(ride_requests.c.id == request["id"], ride_requests.c.status == models.REQ_PENDING))
        .values(status=models.REQ_ACCEPTED, updated_at=now)
    )
    if res.rowcount != 1:
        raise InvalidState("This request is no longer pending")

    res = await conn.execute(
        update(ride_requests)
        .where(
            and_(
                ride_requests.c.ride_id == ride_id,
                ride_requests.c.id != request["id"],
                ride_requests.c.status == models.REQ_PENDING,
            )
        )
        .values(status=models.REQ_REJECTED, updated_at=now)
    )
    return res.rowcount


async def create_request(
    conn, ride_id: str, passenger_id: str, data: schemas.RequestCreate, outbox: Optional[Outbox] = None
) -> dict:
    try:
        async with conn.begin():
            # FOR SHARE: a concurrent accept waits for this insert and then rejects it with the other siblings
            ride = (
                await conn.execute(select(rides).where(rides.c.id == ride_id).with_for_update(read=True))
            ).first()
            if ride is None:
                raise NotFound("Ride not found")
            if ride.rider_id == passenger_id:
                raise SelfReference("You cannot request your own ride")
            if ride.status != models.RIDE_OPEN:
                raise InvalidState("This ride is not accepting requests")

            passenger = (await conn.execute(select(users).where(users.c.id == passenger_id))).first()
            if passenger is None:
                raise NotFound("User not found")

            existing = (
                await conn.execute(
                    select(ride_requests.c.id).where(
                        and_(ride_requests.c.ride_id == ride_id, ride_requests.c.passenger_id == passenger_id)
                    )
                )
            ).first()
            if existing:
                raise Conflict("You have already requested this ride")

            request_id = models.new_id()
            now = utc_now()
            await conn.execute(
                insert(ride_requests).values(
                    id=request_id,
                    ride_id=ride_id,
                    passenger_id=passenger_id,
                    note=data.note,
                    status=models.REQ_PENDING,
                    created_at=now,
                    updated_at=now,
                )
            )
            # SQLite has no row locks; re-read under the write lock the insert now holds
            status = (await conn.execute(select(rides.c.status).where(rides.c.id == ride_id))).scalar_one_or_none()
            if status != models.RIDE_OPEN:
                raise InvalidState("This ride is not accepting requests")
            request = await _request_dict(conn, request_id)
    except IntegrityError:
        # lost an insert race on (ride_id, passenger_id)
        logger.warning("create_request: duplicate ride=%s passenger=%s", ride_id, passenger_id)
        raise Conflict("You have already requested this ride")

    request["passenger"] = {f: passenger._mapping[f] for f in PASSENGER_FIELDS}
    logger.info("request_created: request=%s ride=%s passenger=%s", request_id, ride_id, passenger_id)
    if outbox is not None:
        outbox.add(REQUEST_CREATED, ToUser(ride.rider_id), request)
    return request


async def list_ride_requests(conn, ride_id: str, caller_id: str) -> list[dict]:
    async with conn.begin():
        ride = (await conn.execute(select(rides).where(rides.c.id == ride_id))).first()
        if ride is None:
            raise NotFound("Ride not found")
        if ride.rider_id != caller_id:
            raise Forbidden("Only the rider can view requests")

        res = await conn.execute(
            select(ride_requests).where(ride_requests.c.ride_id == ride_id).order_by(asc(ride_requests.c.created_at))
        )
        out = [dict(row._mapping) for row in res]
        people = await load_users(conn, [r["passenger_id"] for r in out])
    for req in out:
        person = people.get(req["passenger_id"])
        req["passenger"] = {f: person[f] for f in PASSENGER_FIELDS} if person else None
    return out


async def list_user_requests(conn, passenger_id: str) -> list[dict]:
    """Every request the passenger made, newest first, with the current ride."""
    async with conn.begin():
        res = await conn.execute(
            select(ride_requests)
            .where(ride_requests.c.passenger_id == passenger_id)
            .order_by(desc(ride_requests.c.created_at))
        )
        out = [dict(row._mapping) for row in res]
        ride_rows = (
            await conn.execute(select(rides).where(rides.c.id.in_(list({r["ride_id"] for r in out}))))
        ).all() if out else []
        annotated = {ride["id"]: ride for ride in await annotate_rides(conn, ride_rows, passenger_id)}
    for req in out:
        req["ride"] = annotated.get(req["ride_id"])
    return out


async def accept_request(conn, request_id: str, rider_id: str, outbox: Optional[Outbox] = None) -> dict:
    async with conn.begin():
        request = await _load_request(conn, request_id)
        if request is None:
            raise NotFound("Request not found")
        if request["rider_id"] != rider_id:
            raise Forbidden("Only the rider can accept requests")
        if request["ride_status"] != models.RIDE_OPEN:
            raise InvalidState("This ride is not accepting requests")
        if request["status"] != models.REQ_PENDING:
            raise InvalidState("This request is no longer pending")

        rejected = await apply_match(conn, request)

        accepted = await _request_dict(conn, request_id)
        ride = await get_ride_detail(conn, request["ride_id"], rider_id)

    logger.info(
        "request_accepted: request=%s ride=%s rider=%s passenger=%s siblings_rejected=%d",
        request_id, request["ride_id"], rider_id, request["passenger_id"], rejected,
    )
    if outbox is not None:
        outbox.add(
            REQUEST_ACCEPTED,
            ToUser(request["passenger_id"]),
            {"request_id": request_id, "ride_id": request["ride_id"], "status": accepted["status"], "ride_details": ride},
        )
    return {"request": accepted, "ride": ride}


async def reject_request(conn, request_id: str, rider_id: str, outbox: Optional[Outbox] = None) -> dict:
    async with conn.begin():
        request = await _load_request(conn, request_id)
        if request is None:
            raise NotFound("Request not found")
        if request["rider_id"] != rider_id:
            raise Forbidden("Only the rider can reject requests")
        if request["status"] != models.REQ_PENDING:
            raise InvalidState("This request is no longer pending")

        res = await conn.execute(
            update(ride_requests)
            .where(and_(ride_requests.c.id == request_id, ride_requests.c.status == models.REQ_PENDING))
            .values(status=models.REQ_REJECTED, updated_at=utc_now())
        )
        if res.rowcount != 1:
            raise InvalidState("This request is no longer pending")
        rejected = await _request_dict(conn, request_id)

    logger.info("request_rejected: request=%s rider=%s", request_id, rider_id)
    if outbox is not None:
        outbox.add(
            REQUEST_REJECTED,
            ToUser(request["passenger_id"]),
            {"request_id": request_id, "ride_id": request["ride_id"], "status": rejected["status"]},
        )
    return rejected


async def cancel_request(conn, request_id: str, passenger_id: str, outbox: Optional[Outbox] = None) -> dict:
    async with conn.begin():
        request = await _load_request(conn, request_id)
        if request is None:
            raise NotFound("Request not found")
        if request["passenger_id"] != passenger_id:
            raise Forbidden("You can only cancel your own requests")
        if request["status"] != models.REQ_PENDING:
            raise InvalidState("Only pending requests can be cancelled")

        res = await conn.execute(
            delete(ride_requests).where(
                and_(ride_requests.c.id == request_id, ride_requests.c.status == models.REQ_PENDING)
            )
        )
        if res.rowcount != 1:
            raise InvalidState("Only pending requests can be cancelled")

    logger.info("request_cancelled: request=%s passenger=%s", request_id, passenger_id)
    if outbox is not None:
        outbox.add(REQUEST_CANCELLED, ToUser(request["rider_id"]), {"request_id": request_id, "ride_id": request["ride_id"]})
    return {"message": "Request cancelled successfully"}
