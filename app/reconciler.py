# app/reconciler.py
"""
Reconciliación de reservas con el procesador de pagos.

Dos caminos compiten por la misma transición PENDING -> CONFIRMED:

- el webhook del procesador, que es la fuente de verdad;
- el "verify" del cliente justo después de confirmar el pago, que solo sirve
  para dar feedback inmediato y nunca debe romper el checkout.

Ambos usan la misma transición guardada del almacén, así que gane quien gane
la fila cambia una sola vez. Los efectos laterales (notificaciones y emails)
solo se disparan cuando la actualización condicional cambió la fila; un
reintento del webhook o el camino que llega segundo son no-ops silenciosos.
"""
from typing import Any, Dict, Optional
import logging

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase

from . import booking_store as store
from .errors import (
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    PersistenceError,
    UpstreamProcessorError,
    ValidationError,
)
from .notifications import Severity, email_user, notify
from .processor import PaymentProcessor, to_minor_units
from .schemas.booking import Booking, BookingStatus, PaymentStatus
from .schemas.payment import PaymentIntentOut, ProcessorEvent, VerifyResult, VerifyStatus
from .utils import utcnow

logger = logging.getLogger(__name__)

EVENT_PAYMENT_SUCCEEDED = "payment_intent.succeeded"
EVENT_PAYMENT_FAILED = "payment_intent.payment_failed"
EVENT_CHARGE_REFUNDED = "charge.refunded"

def _reference_match(intent_id: str, booking_id: Optional[str]) -> Dict[str, Any]:
    """
    Filtro por referencia de pago. Si el evento trae el id de la reserva se
    acepta también una reserva que aún no tiene referencia (se fija en la
    misma actualización).
    """
    if booking_id and ObjectId.is_valid(booking_id):
        return {
            "_id": ObjectId(booking_id),
            "$or": [{"payment_reference": intent_id}, {"payment_reference": None}],
        }
    return {"payment_reference": intent_id}

async def _current(db: AsyncIOMotorDatabase, intent_id: str, booking_id: Optional[str]) -> Booking:
    """Estado actual tras un no-op, para explicar por qué no hubo transición."""
    if booking_id and ObjectId.is_valid(booking_id):
        booking = await store.get_booking(db, booking_id)
        if booking.payment_reference and booking.payment_reference != intent_id:
            raise ValidationError("Payment reference does not match this booking")
        return booking
    booking = await store.find_by_reference(db, intent_id)
    if not booking:
        raise NotFoundError(f"No booking for payment {intent_id}")
    return booking

def _booking_data(booking: Booking) -> Dict[str, Any]:
    return {
        "booking_id": booking.id,
        "space_title": booking.space_title or "",
        "start_time": booking.start_time.isoformat(),
        "end_time": booking.end_time.isoformat(),
        "total_price": str(booking.total_price),
    }

# ==================== Efectos laterales ====================

async def _on_confirmed(db: AsyncIOMotorDatabase, booking: Booking) -> None:
    title = booking.space_title or "your driveway"
    await notify(db, booking.driver_id, "Booking Confirmed",
                 f"Your booking for {title} is confirmed.", Severity.success, booking.id)
    await notify(db, booking.owner_id, "Payment Received",
                 f"A booking for {title} has been paid (${booking.total_price}).", Severity.info, booking.id)
    data = _booking_data(booking)
    await email_user(db, booking.driver_id, "booking_confirmation", data)
    await email_user(db, booking.owner_id, "payment_received", data)

async def _on_payment_failed(db: AsyncIOMotorDatabase, booking: Booking) -> None:
    await notify(db, booking.driver_id, "Payment Failed",
                 f"Your payment for {booking.space_title or 'your booking'} failed. Please try again before the booking expires.",
                 Severity.warning, booking.id)

async def _on_refunded(db: AsyncIOMotorDatabase, booking: Booking) -> None:
    title = booking.space_title or "your driveway"
    await notify(db, booking.driver_id, "Refund Processed",
                 f"Your booking for {title} was cancelled and refunded.", Severity.info, booking.id)
    await notify(db, booking.owner_id, "Booking Refunded",
                 f"A booking for {title} was cancelled and refunded.", Severity.warning, booking.id)
    await email_user(db, booking.driver_id, "refund_processed", _booking_data(booking))

async def _on_cancelled(db: AsyncIOMotorDatabase, booking: Booking, cancelled_by: str) -> None:
    title = booking.space_title or "your driveway"
    other = booking.owner_id if cancelled_by == booking.driver_id else booking.driver_id
    await notify(db, other, "Booking Cancelled",
                 f"The booking for {title} on {booking.start_time:%Y-%m-%d %H:%M} was cancelled.",
                 Severity.warning, booking.id)

# ==================== Transiciones guiadas por pagos ====================

async def apply_payment_succeeded(
    db: AsyncIOMotorDatabase, intent_id: str, booking_id: Optional[str] = None
) -> Optional[Booking]:
    """PENDING -> CONFIRMED / pago COMPLETED. None si la guarda no se cumplió."""
    booking = await store.transition(
        db,
        _reference_match(intent_id, booking_id),
        [BookingStatus.PENDING],
        BookingStatus.CONFIRMED,
        PaymentStatus.COMPLETED,
        extra_set={"payment_reference": intent_id, "paid_at": utcnow()},
    )
    if booking:
        logger.info(f"Reserva {booking.id} confirmada por pago {intent_id}")
        await _on_confirmed(db, booking)
    return booking

async def apply_payment_failed(
    db: AsyncIOMotorDatabase, intent_id: str, booking_id: Optional[str] = None
) -> Optional[Booking]:
    """La reserva sigue PENDING (el usuario puede reintentar); el pago pasa a FAILED."""
    booking = await store.transition(
        db,
        _reference_match(intent_id, booking_id),
        [BookingStatus.PENDING],
        BookingStatus.PENDING,
        PaymentStatus.FAILED,
        extra_guard={"payment_status": PaymentStatus.PENDING.value},
        extra_set={"payment_reference": intent_id},
    )
    if booking:
        logger.info(f"Pago {intent_id} fallido para reserva {booking.id}")
        await _on_payment_failed(db, booking)
    return booking

async def apply_refund(db: AsyncIOMotorDatabase, intent_id: str) -> Optional[Booking]:
    """-> CANCELLED / REFUNDED. Una reserva COMPLETED nunca se toca."""
    booking = await store.transition(
        db,
        {"payment_reference": intent_id},
        [BookingStatus.PENDING, BookingStatus.CONFIRMED, BookingStatus.CANCELLED],
        BookingStatus.CANCELLED,
        PaymentStatus.REFUNDED,
        extra_guard={"payment_status": {"$ne": PaymentStatus.REFUNDED.value}},
    )
    if booking:
        logger.info(f"Reserva {booking.id} reembolsada ({intent_id})")
        await _on_refunded(db, booking)
    return booking

async def handle_event(db: AsyncIOMotorDatabase, event: ProcessorEvent) -> str:
    """
    Aplica un evento ya verificado. Devuelve un resultado corto para el log.

    Los "no encaja" de negocio (reserva inexistente, ya terminal, referencia
    distinta) se registran como warning y se dan por recibidos: el procesador
    no reintenta un evento confirmado. Los errores de almacenamiento se
    propagan para que sí lo reintente.
    """
    obj = event.data.object
    if event.type in (EVENT_PAYMENT_SUCCEEDED, EVENT_PAYMENT_FAILED):
        intent_id = obj.get("id")
        booking_id = (obj.get("metadata") or {}).get("booking_id")
    elif event.type == EVENT_CHARGE_REFUNDED:
        intent_id = obj.get("payment_intent")
        booking_id = None
    else:
        logger.info(f"Evento {event.type} ({event.id}) ignorado")
        return "ignored"

    if not intent_id:
        logger.warning(f"Evento {event.type} ({event.id}) sin payment intent")
        return "ignored"

    try:
        if event.type == EVENT_PAYMENT_SUCCEEDED:
            changed = await apply_payment_succeeded(db, intent_id, booking_id)
        elif event.type == EVENT_PAYMENT_FAILED:
            changed = await apply_payment_failed(db, intent_id, booking_id)
        else:
            changed = await apply_refund(db, intent_id)
        if changed:
            return "applied"
        current = await _current(db, intent_id, booking_id)
    except (NotFoundError, ValidationError) as e:
        logger.warning(f"Webhook {event.type} ({event.id}) para {intent_id}: {e.detail}")
        return "unmatched"

    if event.type == EVENT_PAYMENT_SUCCEEDED and current.status in (BookingStatus.EXPIRED, BookingStatus.CANCELLED):
        logger.warning(
            f"Pago {intent_id} cobrado para reserva {current.id} en estado {current.status.value}; requiere revisión"
        )
    else:
        logger.info(f"Webhook {event.type} ({event.id}) sin cambios: reserva {current.id} en {current.status.value}")
    return "noop"

# ==================== Endpoints de pago ====================

async def create_payment_intent(
    db: AsyncIOMotorDatabase, processor: PaymentProcessor, booking_id: str, user_id: str
) -> PaymentIntentOut:
    booking = await store.get_booking(db, booking_id)
    if booking.driver_id != user_id:
        raise ForbiddenError("Not authorized to access this booking")
    if booking.payment_status == PaymentStatus.COMPLETED:
        raise ValidationError("Booking already paid")
    if booking.status != BookingStatus.PENDING:
        raise ValidationError(f"Booking is {booking.status.value.lower()} and cannot be paid")

    amount = to_minor_units(booking.total_price)
    if not booking.payment_reference:
        intent = await processor.create_intent(booking.total_price, booking.id, user_id)
        try:
            booking = await store.assign_payment_reference(db, booking.id, intent.id)
        except ValidationError:
            # Otra petición fijó su intent antes: se reutiliza el registrado
            booking = await store.get_booking(db, booking_id)
            logger.info(f"Intent {intent.id} descartado; la reserva {booking_id} ya tiene {booking.payment_reference}")
        else:
            return PaymentIntentOut(client_secret=intent.client_secret or "", amount=amount, payment_reference=intent.id)

    intent = await processor.retrieve_intent(booking.payment_reference)
    if intent.amount and intent.amount != amount:
        logger.warning(f"Importe distinto en intent {intent.id}: {intent.amount} vs {amount} (reserva {booking.id})")
    if not intent.client_secret:
        raise UpstreamProcessorError("Payment intent has no client secret")
    return PaymentIntentOut(client_secret=intent.client_secret, amount=amount, payment_reference=intent.id)

async def _verify(
    db: AsyncIOMotorDatabase, processor: PaymentProcessor, booking_id: str, reference: str, user_id: str
) -> VerifyResult:
    booking = await store.get_booking(db, booking_id)
    if booking.driver_id != user_id:
        raise ForbiddenError("Not authorized")
    if booking.payment_reference and booking.payment_reference != reference:
        raise ValidationError("Payment reference does not match this booking")

    if booking.status in (BookingStatus.CONFIRMED, BookingStatus.COMPLETED):
        return VerifyResult(booking_id=booking_id, status=VerifyStatus.CONFIRMED,
                            booking_status=booking.status, message="Booking already confirmed")

    intent = await processor.retrieve_intent(reference)
    intent_booking = intent.metadata.get("booking_id")
    if intent_booking and intent_booking != booking_id:
        raise ValidationError("Payment reference does not match this booking")
    if intent.status == "processing":
        return VerifyResult(booking_id=booking_id, status=VerifyStatus.PROCESSING, booking_status=booking.status,
                            message="Payment is processing. Webhook will update booking when complete.")
    if intent.status != "succeeded":
        return VerifyResult(booking_id=booking_id, status=VerifyStatus.PENDING, booking_status=booking.status,
                            message=f"Payment status is {intent.status}, not succeeded yet")

    updated = await apply_payment_succeeded(db, reference, booking_id)
    if updated:
        return VerifyResult(booking_id=booking_id, status=VerifyStatus.CONFIRMED, booking_status=updated.status,
                            message="Payment verified and booking confirmed")

    # Otro camino (normalmente el webhook) ya aplicó la transición
    current = await _current(db, reference, booking_id)
    if current.status in (BookingStatus.CONFIRMED, BookingStatus.COMPLETED):
        return VerifyResult(booking_id=booking_id, status=VerifyStatus.CONFIRMED, booking_status=current.status,
                            message="Booking already confirmed")
    return VerifyResult(booking_id=booking_id, status=VerifyStatus.PENDING, booking_status=current.status,
                        message=f"Booking is {current.status.value.lower()}; payment will be reviewed")

async def verify_payment(
    db: AsyncIOMotorDatabase, processor: PaymentProcessor, booking_id: str, reference: str, user_id: str
) -> VerifyResult:
    """
    Camino rápido tras el pago en cliente. Los fallos del procesador o del
    almacén se convierten en PENDING: el webhook terminará el trabajo.
    """
    try:
        return await _verify(db, processor, booking_id, reference, user_id)
    except (UpstreamProcessorError, PersistenceError) as e:
        logger.warning(f"Verify de {booking_id} sin confirmar (el webhook lo hará): {e.detail}")
        return VerifyResult(booking_id=booking_id, status=VerifyStatus.PENDING,
                            message="Webhook will process payment confirmation")

# ==================== Cancelación ====================

async def cancel_booking(
    db: AsyncIOMotorDatabase, processor: PaymentProcessor, booking_id: str, user_id: str
) -> Booking:
    """
    Cancelación por conductor o dueño. Un pago pendiente pasa a FAILED; uno
    ya cobrado se reembolsa primero y solo entonces la reserva pasa a
    CANCELLED / REFUNDED. Si el reembolso falla la reserva no cambia.
    """
    booking = await store.get_booking(db, booking_id)
    if not booking.involves(user_id):
        raise ForbiddenError("Only the driver or the owner can cancel this booking")
    if booking.status == BookingStatus.CANCELLED:
        return booking

    match = {"_id": ObjectId(booking.id)}
    cancellable = [BookingStatus.PENDING, BookingStatus.CONFIRMED]
    extra = {"cancelled_by": user_id, "cancelled_at": utcnow()}

    refunded = False
    if booking.payment_status == PaymentStatus.COMPLETED and booking.status in cancellable:
        if not booking.payment_reference:
            raise InvalidTransitionError("Paid booking has no payment reference to refund")
        # El procesador deduplica el reembolso por intent (idempotency key)
        await processor.refund(booking.payment_reference)
        updated = await store.transition(
            db, match, cancellable, BookingStatus.CANCELLED, PaymentStatus.REFUNDED,
            extra_guard={"payment_status": PaymentStatus.COMPLETED.value},
            extra_set=extra,
        )
        refunded = updated is not None
        if not updated:
            logger.error(f"Reembolso de {booking.payment_reference} emitido pero la reserva {booking.id} ya no era cancelable; requiere revisión")
    else:
        updated = await store.transition(
            db, match, cancellable, BookingStatus.CANCELLED, PaymentStatus.FAILED,
            extra_guard={"payment_status": {"$in": [PaymentStatus.PENDING.value, PaymentStatus.FAILED.value]}},
            extra_set=extra,
        )

    if not updated:
        current = await store.get_booking(db, booking_id)
        if current.status == BookingStatus.CANCELLED:
            return current
        raise InvalidTransitionError(f"Booking cannot be cancelled once {current.status.value.lower()}")

    logger.info(f"Reserva {updated.id} cancelada por {user_id}{' y reembolsada' if refunded else ''}")
    await _on_cancelled(db, updated, user_id)
    if refunded:
        await _on_refunded(db, updated)
    return updated
