from datetime import datetime, timedelta, timezone
import pytest
from sqlalchemy import insert, select
from sqlalchemy.pool import NullPool
from motoride import db, models, schemas
import motoride.ride_service as ride_service


class FakeRedis:
    def __init__(self):
        self.store = {}
        self.ttls = {}

    async def get(self, key):
        return self.store.get(key)

    async def set(self, key, value, ex=None):
        self.store[key] = value
        self.ttls[key] = ex
        return True

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
        return removed

    async def incr(self, key):
        self.store[key] = int(self.store.get(key, 0)) + 1
        return self.store[key]

    async def expire(self, key, seconds):
        self.ttls[key] = seconds
        return key in self.store

    async def exists(self, *keys):
        return sum(1 for key in keys if key in self.store)

    async def ping(self):
        return True


def sqlite_url(tmp_path) -> str:
    # file-backed so every connection sees the same database
    return f"sqlite+aiosqlite:///{tmp_path / 'motoride.db'}"


@pytest.fixture
async def engine(tmp_path):
    eng = db.make_engine(sqlite_url(tmp_path), poolclass=NullPool)
    await db.init_db(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
async def conn(engine):
    async with engine.connect() as c:
        yield c


@pytest.fixture
def fake_redis():
    return FakeRedis()


async def make_user(engine, phone: str, name: str = "Test User", vehicle: str | None = None) -> str:
    user_id = models.new_id()
    async with engine.begin() as c:
        await c.execute(
            insert(models.users).values(id=user_id, phone=phone, name=name, city="Pune", vehicle_number=vehicle)
        )
    return user_id


def ride_payload(lat: float = 18.5204, lng: float = 73.8567, hours_ahead: int = 2, note: str | None = None):
    return schemas.RideCreate(
        start_location={"lat": lat, "lng": lng, "address": "Shivajinagar"},
        end_location={"lat": 18.5590, "lng": 73.7868, "address": "Hinjewadi"},
        departure_time=datetime.now(timezone.utc) + timedelta(hours=hours_ahead),
        note=note,
    )


async def make_ride(engine, rider_id: str, **kwargs) -> dict:
    async with engine.connect() as c:
        return await ride_service.create_ride(c, rider_id, ride_payload(**kwargs))


async def fetch(engine, table, row_id: str):
    async with engine.connect() as c:
        row = (await c.execute(select(table).where(table.c.id == row_id))).first()
    return dict(row._mapping) if row else None
