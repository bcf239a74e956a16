from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from .config import get_settings

_settings = get_settings()
_client: AsyncIOMotorClient | None = None
_db: AsyncIOMotorDatabase | None = None

async def ensure_indexes(db: AsyncIOMotorDatabase) -> None:
    await db.bookings.create_index([("space_id", 1), ("status", 1), ("start_time", 1), ("end_time", 1)])
    await db.bookings.create_index([("driver_id", 1), ("created_at", -1)])
    await db.bookings.create_index([("owner_id", 1), ("created_at", -1)])
    await db.bookings.create_index([("payment_reference", 1)])
    # Barridos: PENDING por antigüedad y CONFIRMED por fin de ventana
    await db.bookings.create_index([("status", 1), ("payment_status", 1), ("created_at", 1)])
    await db.bookings.create_index([("status", 1), ("end_time", 1)])
    await db.bookings.create_index([("sweep_id", 1)])
    await db.notifications.create_index([("user_id", 1), ("created_at", -1)])
    await db.email_outbox.create_index([("status", 1), ("created_at", 1)])

async def get_db() -> AsyncIOMotorDatabase:
    global _client, _db
    if _db is None:
        _client = AsyncIOMotorClient(_settings.mongodb_uri)
        _db = _client[_settings.db_name]
        await ensure_indexes(_db)
    return _db
