import uuid
from datetime import datetime, timezone
from sqlalchemy import (
    Table,
    Column,
    Integer,
    String,
    Float,
    DateTime,
    JSON,
    Text,
    ForeignKey,
    UniqueConstraint,
    Index,
    MetaData,
)


# Status constants
RIDE_OPEN = "OPEN"
RIDE_MATCHED = "MATCHED"
RIDE_COMPLETED = "COMPLETED"

REQ_PENDING = "PENDING"
REQ_ACCEPTED = "ACCEPTED"
REQ_REJECTED = "REJECTED"

ROLE_RIDER = "RIDER"
ROLE_PASSENGER = "PASSENGER"


def new_id() -> str:
    return str(uuid.uuid4())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", String(36), primary_key=True, default=new_id),
    Column("phone", String(15), nullable=False, unique=True),
    Column("name", String, nullable=False, default=""),
    Column("city", String, nullable=False, default="", index=True),
    Column("vehicle_number", String, nullable=True),
    Column("created_at", DateTime(timezone=True), default=utc_now),
    Column("updated_at", DateTime(timezone=True), default=utc_now, onupdate=utc_now),
)

rides = Table(
    "rides",
    metadata,
    Column("id", String(36), primary_key=True, default=new_id),
    Column("rider_id", String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("passenger_id", String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True),
    Column("start_location", JSON, nullable=False),
    Column("end_location", JSON, nullable=False),
    # copied out of start_location for proximity queries
    Column("start_lat", Float, nullable=False),
    Column("start_lng", Float, nullable=False),
    Column("departure_time", DateTime(timezone=True), nullable=False, index=True),
    Column("note", Text, nullable=True),
    Column("status", String(16), nullable=False, default=RIDE_OPEN, index=True),
    Column("created_at", DateTime(timezone=True), default=utc_now),
    Column("updated_at", DateTime(timezone=True), default=utc_now, onupdate=utc_now),
    Index("ix_rides_start_point", "start_lat", "start_lng"),
)

ride_requests = Table(
    "ride_requests",
    metadata,
    Column("id", String(36), primary_key=True, default=new_id),
    Column("ride_id", String(36), ForeignKey("rides.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("passenger_id", String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("note", Text, nullable=True),
    Column("status", String(16), nullable=False, default=REQ_PENDING, index=True),
    Column("created_at", DateTime(timezone=True), default=utc_now),
    Column("updated_at", DateTime(timezone=True), default=utc_now, onupdate=utc_now),
    UniqueConstraint("ride_id", "passenger_id", name="uq_ride_requests_ride_passenger"),
)

feedback = Table(
    "feedback",
    metadata,
    Column("id", String(36), primary_key=True, default=new_id),
    Column("ride_id", String(36), ForeignKey("rides.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("from_user_id", String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("to_user_id", String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("user_role", String(16), nullable=False),
    Column("rating", Integer, nullable=False),
    Column("comment", String(500), nullable=True),
    Column("created_at", DateTime(timezone=True), default=utc_now),
    UniqueConstraint("ride_id", "from_user_id", name="uq_feedback_ride_author"),
)

addresses = Table(
    "addresses",
    metadata,
    Column("id", String(36), primary_key=True, default=new_id),
    Column("user_id", String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("title", String(50), nullable=False),
    Column("details", JSON, nullable=False),
    Column("created_at", DateTime(timezone=True), default=utc_now),
    Column("updated_at", DateTime(timezone=True), default=utc_now, onupdate=utc_now),
)
