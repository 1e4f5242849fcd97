import asyncio
import pytest
from sqlalchemy import select
from motoride import models, schemas
from motoride.errors import NotFound, Forbidden, SelfReference, InvalidState, Conflict
from motoride.notifications import Outbox, ToUser, REQUEST_ACCEPTED, REQUEST_CREATED, REQUEST_CANCELLED
import motoride.request_service as request_service
import motoride.ride_service as ride_service
from conftest import make_user, make_ride, fetch


async def _request(engine, ride_id, passenger_id, note=None):
    async with engine.connect() as c:
        return await request_service.create_request(c, ride_id, passenger_id, schemas.RequestCreate(note=note))


async def _requests_for(engine, ride_id):
    async with engine.connect() as c:
        res = await c.execute(select(models.ride_requests).where(models.ride_requests.c.ride_id == ride_id))
        return {row.id: row.status for row in res}


@pytest.fixture
async def ride_with_two_requests(engine):
    rider = await make_user(engine, "9000000001", "Rider", vehicle="MH12AB1234")
    alice = await make_user(engine, "9000000002", "Alice")
    bob = await make_user(engine, "9000000003", "Bob")
    ride = await make_ride(engine, rider)
    q1 = await _request(engine, ride["id"], alice)
    q2 = await _request(engine, ride["id"], bob)
    return {"rider": rider, "alice": alice, "bob": bob, "ride": ride, "q1": q1, "q2": q2}


async def test_accept_matches_ride_and_rejects_sibling(engine, conn, ride_with_two_requests):
    s = ride_with_two_requests
    outbox = Outbox()

    result = await request_service.accept_request(conn, s["q1"]["id"], s["rider"], outbox)

    assert result["request"]["status"] == models.REQ_ACCEPTED
    assert result["ride"]["status"] == models.RIDE_MATCHED
    assert result["ride"]["passenger_id"] == s["alice"]

    statuses = await _requests_for(engine, s["ride"]["id"])
    assert statuses == {s["q1"]["id"]: models.REQ_ACCEPTED, s["q2"]["id"]: models.REQ_REJECTED}
    ride = await fetch(engine, models.rides, s["ride"]["id"])
    assert ride["status"] == models.RIDE_MATCHED
    assert ride["passenger_id"] == s["alice"]

    # only the accepted passenger is notified
    assert [(e.kind, e.audience) for e in outbox.events] == [(REQUEST_ACCEPTED, ToUser(s["alice"]))]
    assert outbox.events[0].payload["ride_details"]["id"] == s["ride"]["id"]


async def test_second_accept_on_matched_ride_fails_without_changes(engine, conn, ride_with_two_requests):
    s = ride_with_two_requests
    await request_service.accept_request(conn, s["q1"]["id"], s["rider"])

    with pytest.raises(InvalidState):
        await request_service.accept_request(conn, s["q2"]["id"], s["rider"])

    statuses = await _requests_for(engine, s["ride"]["id"])
    assert statuses[s["q1"]["id"]] == models.REQ_ACCEPTED
    assert statuses[s["q2"]["id"]] == models.REQ_REJECTED
    ride = await fetch(engine, models.rides, s["ride"]["id"])
    assert ride["passenger_id"] == s["alice"]


async def test_match_with_stale_precheck_rolls_back(engine, conn, ride_with_two_requests):
    """A caller whose pre-checks passed before another accept committed still loses cleanly."""
    s = ride_with_two_requests
    stale = await request_service._load_request(conn, s["q2"]["id"])
    await conn.commit()
    assert stale["ride_status"] == models.RIDE_OPEN

    await request_service.accept_request(conn, s["q1"]["id"], s["rider"])

    with pytest.raises(InvalidState):
        async with conn.begin():
            await request_service.apply_match(conn, stale)

    statuses = await _requests_for(engine, s["ride"]["id"])
    assert statuses == {s["q1"]["id"]: models.REQ_ACCEPTED, s["q2"]["id"]: models.REQ_REJECTED}
    ride = await fetch(engine, models.rides, s["ride"]["id"])
    assert ride["passenger_id"] == s["alice"]


async def test_concurrent_accepts_only_one_wins(engine):
    rider = await make_user(engine, "9000000010", "Rider", vehicle="MH12CD5678")
    ride = await make_ride(engine, rider)
    requests = []
    for i in range(4):
        passenger = await make_user(engine, f"90000001{i:02d}", f"P{i}")
        requests.append(await _request(engine, ride["id"], passenger))

    async def attempt(request_id):
        async with engine.connect() as c:
            try:
                await request_service.accept_request(c, request_id, rider)
                return "ok"
            except InvalidState:
                return "lost"

    outcomes = await asyncio.gather(*(attempt(r["id"]) for r in requests))

    assert sorted(outcomes) == ["lost", "lost", "lost", "ok"]
    statuses = list((await _requests_for(engine, ride["id"])).values())
    assert statuses.count(models.REQ_ACCEPTED) == 1
    assert statuses.count(models.REQ_REJECTED) == 3


async def test_accept_leaves_already_decided_requests_untouched(engine, conn):
    rider = await make_user(engine, "9000000020", "Rider", vehicle="KA01EF1111")
    ride = await make_ride(engine, rider)
    ids = []
    for i in range(3):
        passenger = await make_user(engine, f"90000002{i:02d}", f"P{i}")
        ids.append((await _request(engine, ride["id"], passenger))["id"])

    rejected = await request_service.reject_request(conn, ids[0], rider)
    assert rejected["status"] == models.REQ_REJECTED
    before = (await fetch(engine, models.ride_requests, ids[0]))["updated_at"]

    await request_service.accept_request(conn, ids[1], rider)

    after = await fetch(engine, models.ride_requests, ids[0])
    assert after["status"] == models.REQ_REJECTED
    assert after["updated_at"] == before
    assert (await fetch(engine, models.ride_requests, ids[2]))["status"] == models.REQ_REJECTED


async def test_accept_checks_caller_and_status(engine, conn, ride_with_two_requests):
    s = ride_with_two_requests
    with pytest.raises(NotFound):
        await request_service.accept_request(conn, "missing", s["rider"])
    with pytest.raises(Forbidden):
        await request_service.accept_request(conn, s["q1"]["id"], s["alice"])

    await request_service.reject_request(conn, s["q1"]["id"], s["rider"])
    with pytest.raises(InvalidState):
        await request_service.accept_request(conn, s["q1"]["id"], s["rider"])

    ride = await fetch(engine, models.rides, s["ride"]["id"])
    assert ride["status"] == models.RIDE_OPEN
    assert ride["passenger_id"] is None


async def test_duplicate_request_conflicts_until_cancelled(engine, conn):
    rider = await make_user(engine, "9000000030", "Rider", vehicle="DL3CAB0001")
    passenger = await make_user(engine, "9000000031", "Passenger")
    ride = await make_ride(engine, rider)

    outbox = Outbox()
    first = await request_service.create_request(conn, ride["id"], passenger, schemas.RequestCreate(note="hi"), outbox)
    assert first["status"] == models.REQ_PENDING
    assert first["passenger"]["name"] == "Passenger"
    assert [(e.kind, e.audience) for e in outbox.events] == [(REQUEST_CREATED, ToUser(rider))]

    with pytest.raises(Conflict):
        await request_service.create_request(conn, ride["id"], passenger, schemas.RequestCreate())

    cancel_box = Outbox()
    await request_service.cancel_request(conn, first["id"], passenger, cancel_box)
    assert await fetch(engine, models.ride_requests, first["id"]) is None
    assert cancel_box.events[0].kind == REQUEST_CANCELLED
    assert cancel_box.events[0].audience == ToUser(rider)

    again = await request_service.create_request(conn, ride["id"], passenger, schemas.RequestCreate())
    assert again["id"] != first["id"]
    assert again["status"] == models.REQ_PENDING


async def test_rider_cannot_request_own_ride_in_any_state(engine, conn, ride_with_two_requests):
    s = ride_with_two_requests
    with pytest.raises(SelfReference):
        await request_service.create_request(conn, s["ride"]["id"], s["rider"], schemas.RequestCreate())

    await request_service.accept_request(conn, s["q1"]["id"], s["rider"])
    with pytest.raises(Forbidden):
        await request_service.create_request(conn, s["ride"]["id"], s["rider"], schemas.RequestCreate())


async def test_request_against_matched_or_missing_ride(engine, conn, ride_with_two_requests):
    s = ride_with_two_requests
    late = await make_user(engine, "9000000040", "Late")
    await request_service.accept_request(conn, s["q1"]["id"], s["rider"])

    with pytest.raises(InvalidState):
        await request_service.create_request(conn, s["ride"]["id"], late, schemas.RequestCreate())
    with pytest.raises(NotFound):
        await request_service.create_request(conn, "no-such-ride", late, schemas.RequestCreate())


async def test_cancel_accepted_request_fails_and_changes_nothing(engine, conn, ride_with_two_requests):
    s = ride_with_two_requests
    await request_service.accept_request(conn, s["q1"]["id"], s["rider"])
    ride_before = await fetch(engine, models.rides, s["ride"]["id"])

    with pytest.raises(InvalidState):
        await request_service.cancel_request(conn, s["q1"]["id"], s["alice"])

    assert (await fetch(engine, models.ride_requests, s["q1"]["id"]))["status"] == models.REQ_ACCEPTED
    assert await fetch(engine, models.rides, s["ride"]["id"]) == ride_before


async def test_only_the_passenger_cancels_and_only_the_rider_rejects(engine, conn, ride_with_two_requests):
    s = ride_with_two_requests
    with pytest.raises(Forbidden):
        await request_service.cancel_request(conn, s["q1"]["id"], s["bob"])
    with pytest.raises(Forbidden):
        await request_service.reject_request(conn, s["q1"]["id"], s["alice"])
    with pytest.raises(NotFound):
        await request_service.reject_request(conn, "missing", s["rider"])

    await request_service.reject_request(conn, s["q1"]["id"], s["rider"])
    with pytest.raises(InvalidState):
        await request_service.reject_request(conn, s["q1"]["id"], s["rider"])


async def test_listing_requests(engine, conn, ride_with_two_requests):
    s = ride_with_two_requests
    listed = await request_service.list_ride_requests(conn, s["ride"]["id"], s["rider"])
    assert {r["id"] for r in listed} == {s["q1"]["id"], s["q2"]["id"]}
    assert all(r["passenger"]["phone"] for r in listed)

    with pytest.raises(Forbidden):
        await request_service.list_ride_requests(conn, s["ride"]["id"], s["alice"])

    await request_service.accept_request(conn, s["q1"]["id"], s["rider"])
    mine = await request_service.list_user_requests(conn, s["bob"])
    assert len(mine) == 1
    assert mine[0]["status"] == models.REQ_REJECTED
    assert mine[0]["ride"]["status"] == models.RIDE_MATCHED
    assert mine[0]["ride"]["has_requested"] is True

    assert await request_service.list_user_requests(conn, s["rider"]) == []


async def test_cancelling_ride_removes_its_requests(engine, conn, ride_with_two_requests):
    s = ride_with_two_requests
    await ride_service.cancel_ride(conn, s["ride"]["id"], s["rider"])
    assert await fetch(engine, models.ride_requests, s["q1"]["id"]) is None
    assert await fetch(engine, models.ride_requests, s["q2"]["id"]) is None


class AcceptAfterFirstRead:
    """Connection wrapper that lets a rider accept another request right after the first query."""

    def __init__(self, conn, accept):
        self._conn = conn
        self._accept = accept
        self._done = False

    def __getattr__(self, name):
        return getattr(self._conn, name)

    async def execute(self, statement, *args, **kwargs):
        result = await self._conn.execute(statement, *args, **kwargs)
        if not self._done:
            self._done = True
            await self._accept()
        return result


async def test_request_racing_an_accept_is_not_left_pending(engine, conn, ride_with_two_requests):
    s = ride_with_two_requests
    late = await make_user(engine, "9000000050", "Late")

    async def accept_first():
        async with engine.connect() as other:
            await request_service.accept_request(other, s["q1"]["id"], s["rider"])

    racing = AcceptAfterFirstRead(conn, accept_first)
    with pytest.raises(InvalidState):
        await request_service.create_request(racing, s["ride"]["id"], late, schemas.RequestCreate())

    statuses = await _requests_for(engine, s["ride"]["id"])
    assert models.REQ_PENDING not in statuses.values()
    assert len(statuses) == 2
    assert (await fetch(engine, models.rides, s["ride"]["id"]))["status"] == models.RIDE_MATCHED
