import logging

from sqlalchemy import select, insert, update, delete, desc

from . import models, schemas
from .errors import NotFound, Forbidden
from .models import utc_now

logger = logging.getLogger(__name__)

addresses = models.addresses


async def _owned(conn, address_id: str, user_id: str, action: str):
    row = (await conn.execute(select(addresses).where(addresses.c.id == address_id))).first()
    if row is None:
        raise NotFound("Address not found")
    if row.user_id != user_id:
        raise Forbidden(f"You can only {action} your own addresses")
    return row


async def create_address(conn, user_id: str, data: schemas.AddressCreate) -> dict:
    address_id = models.new_id()
    now = utc_now()
    async with conn.begin():
        await conn.execute(
            insert(addresses).values(
                id=address_id,
                user_id=user_id,
                title=data.title,
                details=data.details.model_dump(),
                created_at=now,
                updated_at=now,
            )
        )
        row = (await conn.execute(select(addresses).where(addresses.c.id == address_id))).first()
    logger.info("address_created: address=%s user=%s", address_id, user_id)
    return dict(row._mapping)


async def list_addresses(conn, user_id: str) -> list[dict]:
    async with conn.begin():
        res = await conn.execute(
            select(addresses).where(addresses.c.user_id == user_id).order_by(desc(addresses.c.created_at))
        )
        return [dict(row._mapping) for row in res]


async def get_address(conn, address_id: str, user_id: str) -> dict:
    async with conn.begin():
        row = await _owned(conn, address_id, user_id, "view")
    return dict(row._mapping)


async def update_address(conn, address_id: str, user_id: str, data: schemas.AddressUpdate) -> dict:
    changes = {}
    if data.title is not None:
        changes["title"] = data.title
    if data.details is not None:
        changes["details"] = data.details.model_dump()
    async with conn.begin():
        await _owned(conn, address_id, user_id, "update")
        if changes:
            await conn.execute(
                update(addresses).where(addresses.c.id == address_id).values(**changes, updated_at=utc_now())
            )
        row = (await conn.execute(select(addresses).where(addresses.c.id == address_id))).first()
    logger.info("address_updated: address=%s user=%s", address_id, user_id)
    return dict(row._mapping)


async def delete_address(conn, address_id: str, user_id: str) -> dict:
    async with conn.begin():
        await _owned(conn, address_id, user_id, "delete")
        await conn.execute(delete(addresses).where(addresses.c.id == address_id))
    logger.info("address_deleted: address=%s user=%s", address_id, user_id)
    return {"message": "Address deleted successfully"}
