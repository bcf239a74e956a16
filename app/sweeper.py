# app/sweeper.py
"""
Barridos periódicos del ciclo de vida (los lanza el cron).

- expire_stale: PENDING sin pagar durante más de PENDING_TIMEOUT_MINUTES -> EXPIRED (pago FAILED).
- complete_finished: CONFIRMED cuyo end_time ya pasó -> COMPLETED.

Cada barrido es un único update_many condicional; solo las filas que cambian
en esta ejecución generan notificaciones, así que repetir un barrido no
duplica nada.
"""
from datetime import datetime, timedelta
from typing import Dict, Optional
import logging

from motor.motor_asyncio import AsyncIOMotorDatabase

from . import booking_store as store
from .config import get_settings
from .notifications import Severity, email_user, notify
from .schemas.booking import Booking, BookingStatus, PaymentStatus
from .utils import utcnow

logger = logging.getLogger(__name__)

settings = get_settings()

async def _on_expired(db: AsyncIOMotorDatabase, booking: Booking) -> None:
    title = booking.space_title or "your driveway"
    await notify(db, booking.driver_id, "Booking Expired",
                 f"Your booking for {title} has expired due to non-payment.", Severity.warning, booking.id)
    await notify(db, booking.owner_id, "Booking Expired",
                 f"A booking request for {title} has expired.", Severity.info, booking.id)
    await email_user(db, booking.driver_id, "booking_expired",
                     {"booking_id": booking.id, "space_title": booking.space_title or ""})

async def expire_stale(db: AsyncIOMotorDatabase, now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    cutoff = now - timedelta(minutes=settings.pending_timeout_minutes)
    count, expired = await store.bulk_transition(
        db,
        {
            "status": BookingStatus.PENDING.value,
            "payment_status": {"$in": [PaymentStatus.PENDING.value, PaymentStatus.FAILED.value]},
            "created_at": {"$lt": cutoff},
        },
        BookingStatus.EXPIRED,
        PaymentStatus.FAILED,
    )
    for booking in expired:
        await _on_expired(db, booking)
    if count:
        logger.info(f"⏰ {count} reservas expiradas (creadas antes de {cutoff.isoformat()})")
    return count

async def complete_finished(db: AsyncIOMotorDatabase, now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    count, _ = await store.bulk_transition(
        db,
        {"status": BookingStatus.CONFIRMED.value, "end_time": {"$lt": now}},
        BookingStatus.COMPLETED,
        collect=False,
    )
    if count:
        logger.info(f"✅ {count} reservas completadas")
    return count

async def run_sweep(db: AsyncIOMotorDatabase, now: Optional[datetime] = None) -> Dict[str, int]:
    now = now or utcnow()
    return {
        "expiredCount": await expire_stale(db, now),
        "completedCount": await complete_finished(db, now),
    }
