# app/availability.py
"""
Admisión de reservas bajo concurrencia.

El conteo de solapes y la inserción de la nueva reserva se hacen dentro de un
lease por plaza (`space_locks`), que se adquiere con un insert atómico sobre
el `_id` de la plaza. Dos peticiones concurrentes sobre la misma plaza quedan
serializadas; un lease caducado (proceso caído) se puede romper.
"""
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import AsyncIterator, Optional
from uuid import uuid4
from zoneinfo import ZoneInfo
import asyncio
import logging

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import DuplicateKeyError, PyMongoError

from .booking_store import count_overlapping, insert_booking
from .config import get_settings
from .errors import PersistenceError, SlotUnavailableError, ValidationError
from .listings import Space
from .pricing import demand_multiplier_for, price, validate_duration
from .schemas.booking import Booking, BookingCreate, BookingStatus, BookingWindow, PaymentStatus
from .schemas.pricing import PricingBreakdown
from .utils import utcnow

logger = logging.getLogger(__name__)

settings = get_settings()

def to_pricing_time(value: datetime, tz_name: str) -> datetime:
    """UTC (naive) -> hora local de tarificación (naive)."""
    tz = timezone.utc if tz_name.upper() == "UTC" else ZoneInfo(tz_name)
    return value.replace(tzinfo=timezone.utc).astimezone(tz).replace(tzinfo=None)

@asynccontextmanager
async def space_lock(db: AsyncIOMotorDatabase, space_id: str) -> AsyncIterator[str]:
    token = uuid4().hex
    ttl = timedelta(seconds=settings.admission_lock_ttl_seconds)
    acquired = False
    for _ in range(settings.admission_lock_attempts):
        now = utcnow()
        try:
            await db.space_locks.insert_one({"_id": space_id, "token": token, "expires_at": now + ttl})
            acquired = True
            break
        except DuplicateKeyError:
            # Ocupado: si el lease ya caducó lo rompemos antes de reintentar
            try:
                await db.space_locks.delete_one({"_id": space_id, "expires_at": {"$lt": now}})
            except PyMongoError as e:
                raise PersistenceError("Booking store is unavailable, please retry") from e
            await asyncio.sleep(settings.admission_lock_wait_seconds)
        except PyMongoError as e:
            raise PersistenceError("Booking store is unavailable, please retry") from e
    if not acquired:
        logger.warning(f"No se pudo adquirir el lease de la plaza {space_id}")
        raise PersistenceError("This driveway is busy right now, please retry")

    try:
        yield token
    finally:
        try:
            await db.space_locks.delete_one({"_id": space_id, "token": token})
        except PyMongoError:
            # El lease caduca solo por TTL
            logger.warning(f"No se pudo liberar el lease de la plaza {space_id}", exc_info=True)

async def _renew_lease(db: AsyncIOMotorDatabase, space_id: str, token: str) -> None:
    """Confirma que el lease sigue siendo nuestro y lo prolonga antes de escribir."""
    try:
        held = await db.space_locks.find_one_and_update(
            {"_id": space_id, "token": token},
            {"$set": {"expires_at": utcnow() + timedelta(seconds=settings.admission_lock_ttl_seconds)}},
        )
    except PyMongoError as e:
        raise PersistenceError("Booking store is unavailable, please retry") from e
    if held is None:
        logger.warning(f"Lease de la plaza {space_id} perdido antes de insertar la reserva")
        raise PersistenceError("This driveway is busy right now, please retry")

def _validate_window(window: BookingWindow) -> None:
    validate_duration(window.start_time, window.end_time)
    if window.start_time < utcnow() - timedelta(minutes=settings.start_grace_minutes):
        raise ValidationError("Start time cannot be in the past")

def _price_window(space: Space, window: BookingWindow, booked: int) -> PricingBreakdown:
    demand: Optional[Decimal] = None
    if settings.demand_pricing_enabled:
        demand = demand_multiplier_for(booked, space.capacity)
    return price(
        space.price_per_hour,
        to_pricing_time(window.start_time, settings.pricing_timezone),
        to_pricing_time(window.end_time, settings.pricing_timezone),
        demand,
    )

async def quote(db: AsyncIOMotorDatabase, space: Space, window: BookingWindow) -> PricingBreakdown:
    """Precio orientativo, sin reservar nada."""
    validate_duration(window.start_time, window.end_time)
    booked = 0
    if settings.demand_pricing_enabled:
        booked = await count_overlapping(db, space.id, window.start_time, window.end_time)
    return _price_window(space, window, booked)

async def check_and_reserve(
    db: AsyncIOMotorDatabase,
    space: Space,
    payload: BookingCreate,
    driver_id: str,
) -> Booking:
    """
    Admite la reserva si la plaza tiene capacidad en la ventana pedida.
    Lanza SlotUnavailableError (409) si no; nunca se reintenta automáticamente.
    """
    _validate_window(payload)
    if driver_id == space.owner_id:
        raise ValidationError("You cannot book your own driveway")

    async with space_lock(db, space.id) as token:
        booked = await count_overlapping(db, space.id, payload.start_time, payload.end_time)
        if booked >= space.capacity:
            logger.info(f"Plaza {space.id} completa ({booked}/{space.capacity}) para {payload.start_time} - {payload.end_time}")
            raise SlotUnavailableError()

        breakdown = _price_window(space, payload, booked)
        now = utcnow()
        doc = {
            "driver_id": driver_id,
            "space_id": space.id,
            "owner_id": space.owner_id,
            "space_title": space.title,
            "start_time": payload.start_time,
            "end_time": payload.end_time,
            "status": BookingStatus.PENDING.value,
            "payment_status": PaymentStatus.PENDING.value,
            "total_price": str(breakdown.final_price),
            "pricing": breakdown.model_dump(mode="json"),
            "payment_reference": None,
            "special_requests": payload.special_requests,
            "vehicle_info": payload.vehicle_info.model_dump() if payload.vehicle_info else None,
            "created_at": now,
            "updated_at": now,
        }
        await _renew_lease(db, space.id, token)
        booking = await insert_booking(db, doc)

    logger.info(f"Reserva {booking.id} creada en plaza {space.id} por {driver_id}: {booking.total_price}")
    return booking
