# app/booking_store.py
"""
Almacén de reservas sobre la colección `bookings`.

Toda mutación de estado pasa por `transition` / `bulk_transition`: una única
actualización condicional ("cambia a X solo si el estado actual está en S")
que MongoDB aplica de forma atómica. Nunca se lee el estado para escribirlo
después en otra operación. Si la guarda no se cumple el resultado es None
(o lista vacía), y quien llama decide si eso es un no-op o un error.
"""
from functools import wraps
from typing import Any, Dict, Iterable, List, Optional, Tuple
from datetime import datetime
from uuid import uuid4
import logging

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from .errors import NotFoundError, PersistenceError, ValidationError
from .schemas.booking import ACTIVE_STATUSES, Booking, BookingStatus, PaymentStatus
from .utils import to_object_id, utcnow

logger = logging.getLogger(__name__)

ALLOWED: dict[BookingStatus, set[BookingStatus]] = {
    BookingStatus.PENDING: {BookingStatus.CONFIRMED, BookingStatus.CANCELLED, BookingStatus.EXPIRED},
    BookingStatus.CONFIRMED: {BookingStatus.COMPLETED, BookingStatus.CANCELLED},
    BookingStatus.CANCELLED: set(),
    BookingStatus.COMPLETED: set(),
    BookingStatus.EXPIRED: set(),
}

def _store_errors(fn):
    @wraps(fn)
    async def wrapper(*args, **kwargs):
        try:
            return await fn(*args, **kwargs)
        except PyMongoError as e:
            logger.error(f"Error de base de datos en {fn.__name__}: {e}", exc_info=True)
            raise PersistenceError("Booking store is unavailable, please retry") from e
    return wrapper

def _check_transition(from_statuses: Iterable[BookingStatus], to_status: BookingStatus) -> None:
    # Permanecer en el mismo estado es válido (p. ej. PENDING con pago FAILED)
    for source in from_statuses:
        if source != to_status and to_status not in ALLOWED[source]:
            raise ValueError(f"Transición no permitida: {source.value} → {to_status.value}")

def _values(statuses: Iterable[Any]) -> List[str]:
    return [s.value for s in statuses]

@_store_errors
async def insert_booking(db: AsyncIOMotorDatabase, doc: Dict[str, Any]) -> Booking:
    res = await db.bookings.insert_one(doc)
    doc["_id"] = res.inserted_id
    return Booking.from_doc(doc)

@_store_errors
async def get_booking(db: AsyncIOMotorDatabase, booking_id: str) -> Booking:
    doc = await db.bookings.find_one({"_id": to_object_id(booking_id, "booking ID")})
    if not doc:
        raise NotFoundError("Booking not found")
    return Booking.from_doc(doc)

@_store_errors
async def list_bookings_for_user(
    db: AsyncIOMotorDatabase,
    user_id: str,
    status: Optional[BookingStatus] = None,
    page: int = 1,
    limit: int = 10,
) -> Tuple[List[Booking], int]:
    q: Dict[str, Any] = {"$or": [{"driver_id": user_id}, {"owner_id": user_id}]}
    if status:
        q["status"] = status.value
    total = await db.bookings.count_documents(q)
    docs = await db.bookings.find(q).sort("created_at", -1).skip((page - 1) * limit).limit(limit).to_list(limit)
    return [Booking.from_doc(d) for d in docs], total

@_store_errors
async def count_overlapping(db: AsyncIOMotorDatabase, space_id: str, start: datetime, end: datetime) -> int:
    # [s1,e1) y [s2,e2) se solapan si s1 < e2 y s2 < e1
    return await db.bookings.count_documents({
        "space_id": space_id,
        "status": {"$in": _values(ACTIVE_STATUSES)},
        "start_time": {"$lt": end},
        "end_time": {"$gt": start},
    })

@_store_errors
async def transition(
    db: AsyncIOMotorDatabase,
    match: Dict[str, Any],
    from_statuses: Iterable[BookingStatus],
    to_status: BookingStatus,
    payment_status: Optional[PaymentStatus] = None,
    extra_guard: Optional[Dict[str, Any]] = None,
    extra_set: Optional[Dict[str, Any]] = None,
) -> Optional[Booking]:
    """
    Transición guardada sobre una reserva.

    `match` identifica la fila (por `_id` o por `payment_reference`) y
    `extra_guard` añade condiciones, p. ej. sobre `payment_status`.
    Devuelve la reserva ya actualizada, o None si la guarda no se cumplió.
    """
    from_statuses = list(from_statuses)
    _check_transition(from_statuses, to_status)

    query = dict(match)
    if extra_guard:
        query.update(extra_guard)
    query["status"] = {"$in": _values(from_statuses)}

    update: Dict[str, Any] = {"status": to_status.value, "updated_at": utcnow()}
    if payment_status is not None:
        update["payment_status"] = payment_status.value
    if extra_set:
        update.update(extra_set)

    doc = await db.bookings.find_one_and_update(
        query,
        {"$set": update},
        return_document=ReturnDocument.AFTER,
    )
    return Booking.from_doc(doc) if doc else None

@_store_errors
async def assign_payment_reference(db: AsyncIOMotorDatabase, booking_id: str, reference: str) -> Booking:
    """Fija la referencia de pago si no la tiene. Otra referencia distinta es un error."""
    oid = to_object_id(booking_id, "booking ID")
    doc = await db.bookings.find_one_and_update(
        {"_id": oid, "$or": [{"payment_reference": None}, {"payment_reference": reference}]},
        {"$set": {"payment_reference": reference, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if doc:
        return Booking.from_doc(doc)
    if not await db.bookings.find_one({"_id": oid}, {"_id": 1}):
        raise NotFoundError("Booking not found")
    raise ValidationError("Payment reference does not match this booking")

@_store_errors
async def bulk_transition(
    db: AsyncIOMotorDatabase,
    predicate: Dict[str, Any],
    to_status: BookingStatus,
    payment_status: Optional[PaymentStatus] = None,
    collect: bool = True,
) -> Tuple[int, List[Booking]]:
    """
    Transición masiva con un único update_many.

    Cada ejecución marca las filas que cambia con un `sweep_id` propio, así se
    recuperan exactamente esas filas (y solo esas) para los efectos laterales.
    """
    sweep_id = uuid4().hex
    update: Dict[str, Any] = {"status": to_status.value, "updated_at": utcnow(), "sweep_id": sweep_id}
    if payment_status is not None:
        update["payment_status"] = payment_status.value

    result = await db.bookings.update_many(predicate, {"$set": update})
    if result.modified_count == 0 or not collect:
        return result.modified_count, []
    docs = await db.bookings.find({"sweep_id": sweep_id}).to_list(None)
    changed = [Booking.from_doc(d) for d in docs]
    return result.modified_count, changed

@_store_errors
async def find_by_reference(db: AsyncIOMotorDatabase, reference: str) -> Optional[Booking]:
    doc = await db.bookings.find_one({"payment_reference": reference})
    return Booking.from_doc(doc) if doc else None
