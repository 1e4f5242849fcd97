from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Optional, Literal
from datetime import datetime, timezone


class Location(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    address: str = Field(..., min_length=1, max_length=500)


def _to_utc(v: datetime) -> datetime:
    if v.tzinfo is None:
        return v.replace(tzinfo=timezone.utc)
    return v.astimezone(timezone.utc)


# ---- auth / users ----

class LoginRequest(BaseModel):
    phone: str = Field(..., min_length=10, max_length=15)
    name: Optional[str] = Field(None, min_length=2, max_length=100)
    city: Optional[str] = Field(None, min_length=2, max_length=100)


class LoginResponse(BaseModel):
    message: str
    user_id: str
    otp: Optional[str] = None


class VerifyOtpRequest(BaseModel):
    phone: str = Field(..., min_length=10, max_length=15)
    otp: str = Field(..., min_length=6, max_length=6)

    @field_validator('otp')
    @classmethod
    def validate_otp(cls, v):
        if not v.isdigit():
            raise ValueError('otp must be 6 digits')
        return v


class UserOut(BaseModel):
    id: str
    name: str
    phone: str
    city: str
    vehicle_number: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class PublicUserOut(BaseModel):
    id: str
    name: str
    city: str
    vehicle_number: Optional[str] = None


class TokenResponse(BaseModel):
    token: str
    user: UserOut


class UserUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=100)
    city: Optional[str] = Field(None, min_length=2, max_length=100)
    vehicle_number: Optional[str] = Field(None, max_length=20)


class UserStats(BaseModel):
    rides_created: int
    rides_joined: int
    average_rating: float
    total_feedbacks: int


class MessageResponse(BaseModel):
    message: str


# ---- addresses ----

class AddressDetails(BaseModel):
    line1: str = Field(..., min_length=1, max_length=200)
    line2: Optional[str] = Field(None, max_length=200)
    landmark: Optional[str] = Field(None, max_length=200)
    city: Optional[str] = Field(None, max_length=100)
    state: Optional[str] = Field(None, max_length=100)
    postal_code: Optional[str] = Field(None, max_length=20)
    lat: Optional[float] = Field(None, ge=-90, le=90)
    lng: Optional[float] = Field(None, ge=-180, le=180)


class AddressCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=50)
    details: AddressDetails


class AddressUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=50)
    details: Optional[AddressDetails] = None


class AddressOut(BaseModel):
    id: str
    user_id: str
    title: str
    details: AddressDetails
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# ---- rides ----

class RideCreate(BaseModel):
    start_location: Location
    end_location: Location
    departure_time: datetime
    note: Optional[str] = Field(None, max_length=500)

    @field_validator('departure_time')
    @classmethod
    def validate_departure_time(cls, v):
        return _to_utc(v)


class RideFilters(BaseModel):
    status: Literal["OPEN", "MATCHED", "COMPLETED"] = "OPEN"
    departure_from: Optional[datetime] = None
    departure_to: Optional[datetime] = None
    lat: Optional[float] = Field(None, ge=-90, le=90)
    lng: Optional[float] = Field(None, ge=-180, le=180)
    limit: int = Field(20, ge=1, le=100)
    offset: int = Field(0, ge=0)

    @field_validator('departure_from', 'departure_to')
    @classmethod
    def validate_range(cls, v):
        return _to_utc(v) if v is not None else v

    @model_validator(mode='after')
    def check_point(self):
        if (self.lat is None) != (self.lng is None):
            raise ValueError('lat and lng must be given together')
        return self


class UserSummary(BaseModel):
    id: str
    name: str
    phone: Optional[str] = None
    city: Optional[str] = None
    vehicle_number: Optional[str] = None


class RideOut(BaseModel):
    id: str
    rider_id: str
    passenger_id: Optional[str] = None
    start_location: Location
    end_location: Location
    departure_time: datetime
    note: Optional[str] = None
    status: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    rider: Optional[UserSummary] = None
    passenger: Optional[UserSummary] = None
    has_requested: bool = False
    request_count: Optional[int] = None
    request_status: Optional[str] = None
    distance_km: Optional[float] = None


class Pagination(BaseModel):
    total: int
    limit: int
    offset: int


class RideList(BaseModel):
    rides: list[RideOut]
    pagination: Pagination


# ---- requests ----

class RequestCreate(BaseModel):
    note: Optional[str] = Field(None, max_length=500)


class RequestOut(BaseModel):
    id: str
    ride_id: str
    passenger_id: str
    note: Optional[str] = None
    status: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    passenger: Optional[UserSummary] = None
    ride: Optional[RideOut] = None


class AcceptResponse(BaseModel):
    request: RequestOut
    ride: RideOut


# ---- feedback ----

class FeedbackCreate(BaseModel):
    ride_id: str = Field(..., min_length=1)
    to_user_id: str = Field(..., min_length=1)
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=500)


class FeedbackOut(BaseModel):
    id: str
    ride_id: str
    from_user_id: str
    to_user_id: str
    user_role: str
    rating: int
    comment: Optional[str] = None
    created_at: Optional[datetime] = None
    from_user: Optional[UserSummary] = None
    to_user: Optional[UserSummary] = None


class FeedbackStats(BaseModel):
    total_feedbacks: int
    average_rating: float
    rating_distribution: dict[int, int]


class UserFeedback(BaseModel):
    feedback: list[FeedbackOut]
    stats: FeedbackStats
