"""Ride lifecycle: create, browse, complete, cancel and the departure sweep.

All public functions take an open ``AsyncConnection`` and run their work in
one transaction. Status changes are written as compare-and-set updates on the
``status`` column so they serialize with ``request_service.accept_request``.
"""
from datetime import datetime
from typing import Iterable, Optional
import logging

from sqlalchemy import select, insert, update, delete, func, and_, or_, case, desc

from . import db, geo, models, schemas
from .config import settings
from .errors import NotFound, Forbidden, InvalidState, PreconditionFailed
from .models import utc_now
from .notifications import Outbox, AllExcept, RIDE_CREATED, RIDE_CANCELLED, RIDE_COMPLETED

logger = logging.getLogger(__name__)

rides = models.rides
ride_requests = models.ride_requests
users = models.users


def _ride_dict(row) -> dict:
    ride = dict(row._mapping)
    ride.pop("start_lat", None)
    ride.pop("start_lng", None)
    ride.pop("requested", None)
    return ride


def _summary(user: Optional[dict], fields: Iterable[str]) -> Optional[dict]:
    if user is None:
        return None
    return {f: user.get(f) for f in fields}


async def load_users(conn, user_ids: Iterable[str]) -> dict:
    ids = {u for u in user_ids if u}
    if not ids:
        return {}
    res = await conn.execute(select(users).where(users.c.id.in_(list(ids))))
    return {row.id: dict(row._mapping) for row in res}


async def annotate_rides(conn, rows, user_id: Optional[str] = None, contacts: bool = False) -> list[dict]:
    """Turn ride rows into response dicts.

    Adds rider/passenger summaries, ``request_count`` and ``has_requested`` for
    `user_id`. Phone numbers are only included when `contacts` is set.
    """
    rows = list(rows)
    if not rows:
        return []
    ride_ids = [row.id for row in rows]

    people = await load_users(conn, [r.rider_id for r in rows] + [r.passenger_id for r in rows])

    count_res = await conn.execute(
        select(ride_requests.c.ride_id, func.count(ride_requests.c.id))
        .where(ride_requests.c.ride_id.in_(ride_ids))
        .group_by(ride_requests.c.ride_id)
    )
    counts = {rid: n for rid, n in count_res}

    requested = set()
    if user_id:
        req_res = await conn.execute(
            select(ride_requests.c.ride_id).where(
                and_(ride_requests.c.ride_id.in_(ride_ids), ride_requests.c.passenger_id == user_id)
            )
        )
        requested = {rid for (rid,) in req_res}

    rider_fields = ("id", "name", "city", "vehicle_number") + (("phone",) if contacts else ())
    passenger_fields = ("id", "name") + (("phone",) if contacts else ())

    out = []
    for row in rows:
        ride = _ride_dict(row)
        ride["rider"] = _summary(people.get(row.rider_id), rider_fields)
        ride["passenger"] = _summary(people.get(row.passenger_id), passenger_fields)
        ride["request_count"] = counts.get(row.id, 0)
        ride["has_requested"] = row.id in requested
        out.append(ride)
    return out


async def get_ride_detail(conn, ride_id: str, user_id: Optional[str] = None) -> Optional[dict]:
    row = (await conn.execute(select(rides).where(rides.c.id == ride_id))).first()
    if row is None:
        return None
    # contact details only for the two participants
    contacts = user_id is not None and user_id in (row.rider_id, row.passenger_id)
    return (await annotate_rides(conn, [row], user_id, contacts=contacts))[0]


async def _get_ride_row(conn, ride_id: str):
    return (await conn.execute(select(rides).where(rides.c.id == ride_id))).first()


async def create_ride(conn, rider_id: str, data: schemas.RideCreate, outbox: Optional[Outbox] = None) -> dict:
    async with conn.begin():
        user = (await conn.execute(select(users).where(users.c.id == rider_id))).first()
        if not user:
            raise NotFound("User not found")
        if not (user.vehicle_number or "").strip():
            raise PreconditionFailed("Vehicle number is required to create a ride")

        ride_id = models.new_id()
        now = utc_now()
        await conn.execute(
            insert(rides).values(
                id=ride_id,
                rider_id=rider_id,
                passenger_id=None,
                start_location=data.start_location.model_dump(),
                end_location=data.end_location.model_dump(),
                start_lat=data.start_location.lat,
                start_lng=data.start_location.lng,
                departure_time=data.departure_time,
                note=data.note,
                status=models.RIDE_OPEN,
                created_at=now,
                updated_at=now,
            )
        )
        ride = await get_ride_detail(conn, ride_id, rider_id)

    logger.info("ride_created: ride=%s rider=%s departure=%s", ride_id, rider_id, data.departure_time.isoformat())
    if outbox is not None:
        outbox.add(RIDE_CREATED, AllExcept(rider_id), ride)
    return ride


async def list_rides(conn, filters: schemas.RideFilters, user_id: Optional[str] = None) -> dict:
    conds = [rides.c.status == filters.status]
    if filters.departure_from is not None:
        conds.append(rides.c.departure_time >= filters.departure_from)
    if filters.departure_to is not None:
        conds.append(rides.c.departure_time <= filters.departure_to)
    if user_id:
        # a rider does not browse their own rides
        conds.append(rides.c.rider_id != user_id)

    point = None
    radius = settings.NEARBY_RADIUS_KM
    if filters.lat is not None and filters.lng is not None:
        point = (filters.lat, filters.lng)
        min_lat, max_lat, min_lng, max_lng = geo.bounding_box(point, radius)
        conds.append(rides.c.start_lat.between(min_lat, max_lat))
        conds.append(or_(*(rides.c.start_lng.between(lo, hi) for lo, hi in geo.longitude_ranges(min_lng, max_lng))))

    if user_id:
        source = rides.outerjoin(
            ride_requests,
            and_(ride_requests.c.ride_id == rides.c.id, ride_requests.c.passenger_id == user_id),
        )
        requested = case((ride_requests.c.id.is_not(None), 1), else_=0).label("requested")
    else:
        source = rides
        requested = None

    columns = [rides] + ([requested] if requested is not None else [])
    base = select(*columns).select_from(source).where(and_(*conds))

    async with conn.begin():
        if point is None:
            total = (await conn.execute(select(func.count()).select_from(rides).where(and_(*conds)))).scalar_one()
            order = ([requested.desc()] if requested is not None else []) + [desc(rides.c.created_at)]
            res = await conn.execute(base.order_by(*order).limit(filters.limit).offset(filters.offset))
            page = [(row, None) for row in res]
        else:
            scored = []
            for row in await conn.execute(base):
                dist = geo.haversine_km(point, (row.start_lat, row.start_lng))
                if dist <= radius:
                    scored.append((row, dist))
            # newest first, then stable re-sort by (already requested, distance)
            scored.sort(key=lambda item: item[0].created_at, reverse=True)
            scored.sort(key=lambda item: (-(item[0].requested if requested is not None else 0), item[1]))
            total = len(scored)
            page = scored[filters.offset:filters.offset + filters.limit]

        items = await annotate_rides(conn, [row for row, _ in page], user_id)

    for item, (_, dist) in zip(items, page):
        if dist is not None:
            item["distance_km"] = round(dist, 3)

    logger.debug("list_rides: user=%s status=%s point=%s total=%s", user_id, filters.status, point, total)
    return {
        "rides": items,
        "pagination": {"total": total, "limit": filters.limit, "offset": filters.offset},
    }


async def get_ride(conn, ride_id: str, user_id: Optional[str] = None) -> dict:
    async with conn.begin():
        ride = await get_ride_detail(conn, ride_id, user_id)
    if ride is None:
        raise NotFound("Ride not found")
    return ride


async def complete_ride(conn, ride_id: str, rider_id: str, outbox: Optional[Outbox] = None) -> dict:
    async with conn.begin():
        row = await _get_ride_row(conn, ride_id)
        if row is None:
            raise NotFound("Ride not found")
        if row.rider_id != rider_id:
            raise Forbidden("Only the rider can complete this ride")
        if row.status != models.RIDE_MATCHED:
            raise InvalidState("Only matched rides can be completed")

        res = await conn.execute(
            update(rides)
            .where(and_(rides.c.id == ride_id, rides.c.status == models.RIDE_MATCHED))
            .values(status=models.RIDE_COMPLETED, updated_at=utc_now())
        )
        if res.rowcount != 1:
            raise InvalidState("Only matched rides can be completed")
        ride = await get_ride_detail(conn, ride_id, rider_id)

    logger.info("ride_completed: ride=%s rider=%s", ride_id, rider_id)
    if outbox is not None:
        outbox.add(RIDE_COMPLETED, AllExcept(rider_id), {"ride_id": ride_id, "rider_id": rider_id})
    return ride


async def cancel_ride(conn, ride_id: str, rider_id: str, outbox: Optional[Outbox] = None) -> dict:
    async with conn.begin():
        row = await _get_ride_row(conn, ride_id)
        if row is None:
            raise NotFound("Ride not found")
        if row.rider_id != rider_id:
            raise Forbidden("Only the rider can cancel this ride")
        if row.status != models.RIDE_OPEN:
            raise InvalidState("Only open rides can be cancelled")

        # requests go with the ride (ON DELETE CASCADE)
        res = await conn.execute(
            delete(rides).where(and_(rides.c.id == ride_id, rides.c.status == models.RIDE_OPEN))
        )
        if res.rowcount != 1:
            raise InvalidState("Only open rides can be cancelled")

    logger.info("ride_cancelled: ride=%s rider=%s", ride_id, rider_id)
    if outbox is not None:
        outbox.add(RIDE_CANCELLED, AllExcept(rider_id), {"ride_id": ride_id, "rider_id": rider_id})
    return {"message": "Ride cancelled successfully"}


async def list_user_rides(conn, user_id: str, kind: str) -> list[dict]:
    """Rides a user created (`kind="created"`) or asked to join (`kind="joined"`)."""
    async with conn.begin():
        if kind == "created":
            res = await conn.execute(
                select(rides).where(rides.c.rider_id == user_id).order_by(desc(rides.c.departure_time))
            )
            return await annotate_rides(conn, res.all(), user_id, contacts=True)

        if kind != "joined":
            raise ValueError(f"unknown ride list kind: {kind}")
        res = await conn.execute(
            select(rides, ride_requests.c.status.label("request_status"))
            .select_from(rides.join(ride_requests, ride_requests.c.ride_id == rides.c.id))
            .where(ride_requests.c.passenger_id == user_id)
            .order_by(desc(ride_requests.c.created_at))
        )
        rows = res.all()
        out = await annotate_rides(conn, rows, user_id)
    for ride, row in zip(out, rows):
        ride["request_status"] = row.request_status
    return out


async def auto_complete_departed_rides(conn, now: Optional[datetime] = None, include_open: Optional[bool] = None) -> int:
    """Complete rides whose departure time has passed. Returns the number of rides completed.

    Only MATCHED rides are touched unless `include_open` (or the
    ``SWEEP_COMPLETES_OPEN_RIDES`` setting) asks for the legacy behaviour of
    completing every ride that is not yet COMPLETED.
    """
    now = now or utc_now()
    if include_open is None:
        include_open = settings.SWEEP_COMPLETES_OPEN_RIDES
    statuses = [models.RIDE_MATCHED] + ([models.RIDE_OPEN] if include_open else [])

    async with conn.begin():
        res = await conn.execute(
            update(rides)
            .where(and_(rides.c.departure_time <= now, rides.c.status.in_(statuses)))
            .values(status=models.RIDE_COMPLETED, updated_at=utc_now())
        )
    if res.rowcount:
        logger.info("auto_complete_departed_rides: completed=%d now=%s", res.rowcount, now.isoformat())
    return res.rowcount


async def sweep_departed_rides():
    """One pass of the background sweep; errors are logged, never raised."""
    try:
        async with db.engine.connect() as conn:
            await auto_complete_departed_rides(conn)
    except Exception as e:
        logger.error("sweep_departed_rides: error during sweep: %s", e)
