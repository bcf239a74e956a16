# app/listings.py
"""
Colaborador de anuncios (driveways). Solo lectura: el CRUD de anuncios vive
fuera de este servicio, aquí únicamente se consulta tarifa, capacidad y dueño.
"""
from decimal import Decimal
from typing import Optional
from pydantic import BaseModel
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import PyMongoError

from .errors import NotFoundError, PersistenceError, ValidationError
from .utils import to_object_id

class Space(BaseModel):
    id: str
    owner_id: str
    title: str = ""
    address: Optional[str] = None
    price_per_hour: Decimal
    capacity: int = 1

async def get_space(db: AsyncIOMotorDatabase, space_id: str) -> Space:
    try:
        doc = await db.spaces.find_one({"_id": to_object_id(space_id, "space ID")})
    except PyMongoError as e:
        raise PersistenceError("Could not load space") from e
    if not doc or not doc.get("is_active", True):
        raise NotFoundError("Driveway not found")
    return Space(
        id=str(doc["_id"]),
        owner_id=str(doc["owner_id"]),
        title=doc.get("title", ""),
        address=doc.get("address"),
        price_per_hour=Decimal(str(doc["price_per_hour"])),
        capacity=max(1, int(doc.get("capacity", 1))),
    )

async def get_user_email(db: AsyncIOMotorDatabase, user_id: str) -> Optional[str]:
    """Email del usuario (colección `users`), o None si no existe."""
    try:
        oid = to_object_id(user_id, "user ID")
    except ValidationError:
        return None
    doc = await db.users.find_one({"_id": oid}, {"email": 1})
    return doc.get("email") if doc else None
