from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from typing import Annotated, Literal, Optional
import json
import logging

from . import (
    db,
    notifications,
    schemas,
    security,
    auth_service,
    user_service,
    address_service,
    ride_service,
    request_service,
    feedback_service,
)
from .errors import Unauthorized
from .security import current_user_id, optional_user_id, current_claims, get_redis

logger = logging.getLogger(__name__)

router = APIRouter()


async def get_conn():
    async with db.get_conn() as conn:
        yield conn


async def get_outbox():
    """Collect events during the request and deliver them once it succeeded."""
    outbox = notifications.Outbox()
    yield outbox
    await outbox.flush(notifications.relay)


# ---- auth ----

@router.post("/auth/login", response_model=schemas.LoginResponse)
async def login(req: schemas.LoginRequest, conn=Depends(get_conn), redis=Depends(get_redis)):
    return await auth_service.login(conn, redis, req)


@router.post("/auth/verify-otp", response_model=schemas.TokenResponse)
async def verify_otp(req: schemas.VerifyOtpRequest, conn=Depends(get_conn), redis=Depends(get_redis)):
    return await auth_service.verify_otp(conn, redis, req)


@router.post("/auth/logout", response_model=schemas.MessageResponse)
async def logout(claims: dict = Depends(current_claims), redis=Depends(get_redis)):
    return await auth_service.logout(redis, claims)


# ---- users ----

@router.get("/users/me", response_model=schemas.UserOut)
async def get_profile(user_id: str = Depends(current_user_id), conn=Depends(get_conn)):
    return await user_service.get_user(conn, user_id)


@router.patch("/users/me", response_model=schemas.UserOut)
async def update_profile(req: schemas.UserUpdate, user_id: str = Depends(current_user_id), conn=Depends(get_conn)):
    return await user_service.update_user(conn, user_id, req)


@router.get("/users/me/stats", response_model=schemas.UserStats)
async def get_stats(user_id: str = Depends(current_user_id), conn=Depends(get_conn)):
    return await user_service.get_user_stats(conn, user_id)


@router.get("/users/{user_id}", response_model=schemas.PublicUserOut)
async def get_user(user_id: str, conn=Depends(get_conn)):
    return await user_service.get_user(conn, user_id, public=True)


# ---- addresses ----

@router.post("/addresses", response_model=schemas.AddressOut, status_code=201)
async def create_address(req: schemas.AddressCreate, user_id: str = Depends(current_user_id), conn=Depends(get_conn)):
    return await address_service.create_address(conn, user_id, req)


@router.get("/addresses", response_model=list[schemas.AddressOut])
async def list_addresses(user_id: str = Depends(current_user_id), conn=Depends(get_conn)):
    return await address_service.list_addresses(conn, user_id)


@router.get("/addresses/{address_id}", response_model=schemas.AddressOut)
async def get_address(address_id: str, user_id: str = Depends(current_user_id), conn=Depends(get_conn)):
    return await address_service.get_address(conn, address_id, user_id)


@router.put("/addresses/{address_id}", response_model=schemas.AddressOut)
async def update_address(
    address_id: str, req: schemas.AddressUpdate, user_id: str = Depends(current_user_id), conn=Depends(get_conn)
):
    return await address_service.update_address(conn, address_id, user_id, req)


@router.delete("/addresses/{address_id}", response_model=schemas.MessageResponse)
async def delete_address(address_id: str, user_id: str = Depends(current_user_id), conn=Depends(get_conn)):
    return await address_service.delete_address(conn, address_id, user_id)


# ---- rides ----

@router.post("/rides", response_model=schemas.RideOut, status_code=201)
async def create_ride(
    req: schemas.RideCreate,
    user_id: str = Depends(current_user_id),
    conn=Depends(get_conn),
    outbox=Depends(get_outbox),
):
    return await ride_service.create_ride(conn, user_id, req, outbox)


@router.get("/rides", response_model=schemas.RideList)
async def list_rides(
    filters: Annotated[schemas.RideFilters, Query()],
    user_id: Optional[str] = Depends(optional_user_id),
    conn=Depends(get_conn),
):
    return await ride_service.list_rides(conn, filters, user_id)


@router.get("/rides/me/{kind}", response_model=list[schemas.RideOut])
async def my_rides(kind: Literal["created", "joined"], user_id: str = Depends(current_user_id), conn=Depends(get_conn)):
    return await ride_service.list_user_rides(conn, user_id, kind)


@router.get("/rides/{ride_id}", response_model=schemas.RideOut)
async def get_ride(ride_id: str, user_id: Optional[str] = Depends(optional_user_id), conn=Depends(get_conn)):
    return await ride_service.get_ride(conn, ride_id, user_id)


@router.post("/rides/{ride_id}/complete", response_model=schemas.RideOut)
async def complete_ride(
    ride_id: str, user_id: str = Depends(current_user_id), conn=Depends(get_conn), outbox=Depends(get_outbox)
):
    return await ride_service.complete_ride(conn, ride_id, user_id, outbox)


@router.delete("/rides/{ride_id}", response_model=schemas.MessageResponse)
async def cancel_ride(
    ride_id: str, user_id: str = Depends(current_user_id), conn=Depends(get_conn), outbox=Depends(get_outbox)
):
    return await ride_service.cancel_ride(conn, ride_id, user_id, outbox)


# ---- requests ----

@router.post("/rides/{ride_id}/request", response_model=schemas.RequestOut, status_code=201)
async def create_request(
    ride_id: str,
    req: Optional[schemas.RequestCreate] = None,
    user_id: str = Depends(current_user_id),
    conn=Depends(get_conn),
    outbox=Depends(get_outbox),
):
    return await request_service.create_request(conn, ride_id, user_id, req or schemas.RequestCreate(), outbox)


@router.get("/rides/{ride_id}/requests", response_model=list[schemas.RequestOut])
async def list_ride_requests(ride_id: str, user_id: str = Depends(current_user_id), conn=Depends(get_conn)):
    return await request_service.list_ride_requests(conn, ride_id, user_id)


@router.get("/requests/me", response_model=list[schemas.RequestOut])
async def my_requests(user_id: str = Depends(current_user_id), conn=Depends(get_conn)):
    return await request_service.list_user_requests(conn, user_id)


@router.post("/requests/{request_id}/accept", response_model=schemas.AcceptResponse)
async def accept_request(
    request_id: str, user_id: str = Depends(current_user_id), conn=Depends(get_conn), outbox=Depends(get_outbox)
):
    return await request_service.accept_request(conn, request_id, user_id, outbox)


@router.post("/requests/{request_id}/reject", response_model=schemas.RequestOut)
async def reject_request(
    request_id: str, user_id: str = Depends(current_user_id), conn=Depends(get_conn), outbox=Depends(get_outbox)
):
    return await request_service.reject_request(conn, request_id, user_id, outbox)


@router.delete("/requests/{request_id}", response_model=schemas.MessageResponse)
async def cancel_request(
    request_id: str, user_id: str = Depends(current_user_id), conn=Depends(get_conn), outbox=Depends(get_outbox)
):
    return await request_service.cancel_request(conn, request_id, user_id, outbox)


# ---- feedback ----

@router.post("/feedback", response_model=schemas.FeedbackOut, status_code=201)
async def create_feedback(req: schemas.FeedbackCreate, user_id: str = Depends(current_user_id), conn=Depends(get_conn)):
    return await feedback_service.create_feedback(conn, user_id, req)


@router.get("/feedback/me", response_model=schemas.UserFeedback)
async def my_feedback(user_id: str = Depends(current_user_id), conn=Depends(get_conn)):
    return await feedback_service.get_user_feedback(conn, user_id)


@router.get("/feedback/user/{user_id}", response_model=schemas.UserFeedback)
async def user_feedback(user_id: str, conn=Depends(get_conn)):
    return await feedback_service.get_user_feedback(conn, user_id)


@router.get("/feedback/ride/{ride_id}", response_model=list[schemas.FeedbackOut])
async def ride_feedback(ride_id: str, conn=Depends(get_conn)):
    return await feedback_service.get_ride_feedback(conn, ride_id)


# ---- realtime ----

@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, token: str = Query(...), redis=Depends(get_redis)):
    try:
        claims = await security.resolve_token(token, redis)
    except Unauthorized:
        await websocket.close(code=4001, reason="Invalid token")
        return
    user_id = claims["sub"]
    manager = notifications.manager

    await manager.connect(websocket, user_id)
    try:
        await websocket.send_json({"event": "connected", "data": {"user_id": user_id}})
        while True:
            data = await websocket.receive_text()
            try:
                message = json.loads(data)
            except json.JSONDecodeError:
                continue
            if isinstance(message, dict) and message.get("type") == "ping":
                await websocket.send_json({"event": "pong"})
    except WebSocketDisconnect:
        pass
    finally:
        manager.disconnect(websocket, user_id)
