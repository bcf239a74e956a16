# app/routers/payments.py
from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from typing import Optional, Set
from motor.motor_asyncio import AsyncIOMotorDatabase
import asyncio
import logging

from ..config import get_settings
from ..db import get_db
from ..middleware.rate_limit import apply_rate_limit
from ..processor import PaymentProcessor, get_processor
from ..reconciler import create_payment_intent, handle_event, verify_payment
from ..schemas.payment import PaymentIntentCreate, PaymentIntentOut, VerifyRequest, VerifyResult
from ..security import get_current_user_id

logger = logging.getLogger(__name__)

router = APIRouter()

settings = get_settings()

# Webhooks que superaron el límite y terminan en segundo plano
_background: Set[asyncio.Task] = set()

def _finish_background(task: asyncio.Task) -> None:
    _background.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(f"Webhook en segundo plano falló: {exc}", exc_info=exc)
    else:
        logger.info(f"Webhook en segundo plano terminado: {task.result()}")

@router.post("/intent", response_model=PaymentIntentOut)
async def create_intent(
    request: Request,
    payload: PaymentIntentCreate,
    db: AsyncIOMotorDatabase = Depends(get_db),
    processor: PaymentProcessor = Depends(get_processor),
    user_id: str = Depends(get_current_user_id),
):
    apply_rate_limit(request, "10/minute", "payments:intent", user_id)
    return await create_payment_intent(db, processor, payload.booking_id, user_id)

@router.post("/verify", response_model=VerifyResult)
async def verify(
    payload: VerifyRequest,
    db: AsyncIOMotorDatabase = Depends(get_db),
    processor: PaymentProcessor = Depends(get_processor),
    user_id: str = Depends(get_current_user_id),
):
    """
    Verificación inmediata tras el pago en cliente. Si el procesador no
    responde devuelve PENDING y el webhook completará la confirmación.
    """
    return await verify_payment(db, processor, payload.booking_id, payload.payment_reference, user_id)

@router.post("/webhook")
async def webhook(
    request: Request,
    db: AsyncIOMotorDatabase = Depends(get_db),
    processor: PaymentProcessor = Depends(get_processor),
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
):
    # La firma se calcula sobre el body crudo: no se parsea nada antes
    payload = await request.body()
    if len(payload) > settings.webhook_max_body_bytes:
        raise HTTPException(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail="Payload too large")

    event = processor.parse_event(payload, stripe_signature)
    task = asyncio.ensure_future(handle_event(db, event))
    try:
        # shield: el límite corta la respuesta, nunca la transición ya iniciada ni sus efectos
        outcome = await asyncio.wait_for(asyncio.shield(task), timeout=settings.webhook_timeout_seconds)
    except asyncio.TimeoutError:
        _background.add(task)
        task.add_done_callback(_finish_background)
        logger.error(f"Webhook {event.type} ({event.id}) excedió {settings.webhook_timeout_seconds}s; sigue en segundo plano")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Webhook processing timed out")

    logger.info(f"Webhook {event.type} ({event.id}): {outcome}")
    return {"received": True}
