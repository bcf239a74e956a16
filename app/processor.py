# app/processor.py
"""
Procesador de pagos (Stripe o mock de desarrollo, según PAYMENT_PROVIDER).

El SDK de Stripe es síncrono: las llamadas de red se ejecutan en un hilo para
no bloquear el event loop. Los errores del SDK salen como
UpstreamProcessorError; la verificación de firma del webhook es local (HMAC)
y no necesita API key, por eso la comparten ambos proveedores.
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict
from uuid import uuid4
import asyncio
import logging

import stripe
from fastapi import Depends
from motor.motor_asyncio import AsyncIOMotorDatabase
from pydantic import ValidationError as PydanticValidationError
from pymongo.errors import PyMongoError

from .config import get_settings
from .db import get_db
from .errors import SignatureError, UpstreamProcessorError, ValidationError
from .schemas.payment import IntentInfo, ProcessorEvent
from .utils import utcnow

logger = logging.getLogger(__name__)

settings = get_settings()

SIGNATURE_TOLERANCE_SECONDS = 300

def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).to_integral_value(rounding=ROUND_HALF_UP))

def _as_dict(obj: Any) -> Dict[str, Any]:
    if obj is None:
        return {}
    to_dict = getattr(obj, "to_dict", None)
    return dict(to_dict()) if callable(to_dict) else dict(obj)


class PaymentProcessor:
    def __init__(self, webhook_secret: str, currency: str = "usd"):
        self.webhook_secret = webhook_secret
        self.currency = currency

    async def create_intent(self, amount: Decimal, booking_id: str, driver_id: str) -> IntentInfo:
        raise NotImplementedError

    async def retrieve_intent(self, intent_id: str) -> IntentInfo:
        raise NotImplementedError

    async def refund(self, intent_id: str) -> None:
        raise NotImplementedError

    def parse_event(self, payload: bytes, signature: str | None) -> ProcessorEvent:
        """Verifica la firma sobre el body crudo y solo entonces lo parsea."""
        if not signature:
            raise SignatureError("Missing signature header")
        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"),
                signature,
                self.webhook_secret,
                tolerance=SIGNATURE_TOLERANCE_SECONDS,
            )
        except (stripe.SignatureVerificationError, UnicodeDecodeError) as e:
            raise SignatureError("Invalid signature") from e
        try:
            return ProcessorEvent.model_validate_json(payload)
        except PydanticValidationError as e:
            raise ValidationError("Malformed event payload") from e


class StripeProcessor(PaymentProcessor):
    def __init__(self, api_key: str, webhook_secret: str, currency: str = "usd"):
        super().__init__(webhook_secret, currency)
        self.api_key = api_key

    def _require_key(self) -> None:
        if not self.api_key:
            logger.error("STRIPE_SECRET_KEY no configurada")
            raise UpstreamProcessorError("Payment processing is not configured")

    @staticmethod
    def _to_info(intent: Any) -> IntentInfo:
        return IntentInfo(
            id=intent.id,
            status=intent.status,
            amount=intent.amount or 0,
            client_secret=getattr(intent, "client_secret", None),
            metadata={k: str(v) for k, v in _as_dict(getattr(intent, "metadata", None)).items()},
        )

    async def create_intent(self, amount: Decimal, booking_id: str, driver_id: str) -> IntentInfo:
        self._require_key()
        try:
            intent = await asyncio.to_thread(
                stripe.PaymentIntent.create,
                api_key=self.api_key,
                amount=to_minor_units(amount),
                currency=self.currency,
                automatic_payment_methods={"enabled": True},
                metadata={"booking_id": booking_id, "driver_id": driver_id, "total_price": str(amount)},
                idempotency_key=f"booking-intent-{booking_id}",
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe create_intent falló para {booking_id}: {e}", exc_info=True)
            raise UpstreamProcessorError("Unable to set up payment. Please try again in a moment.") from e
        return self._to_info(intent)

    async def retrieve_intent(self, intent_id: str) -> IntentInfo:
        self._require_key()
        try:
            intent = await asyncio.to_thread(stripe.PaymentIntent.retrieve, intent_id, api_key=self.api_key)
        except stripe.StripeError as e:
            logger.warning(f"Stripe retrieve_intent falló para {intent_id}: {e}")
            raise UpstreamProcessorError("Failed to retrieve payment from processor") from e
        return self._to_info(intent)

    async def refund(self, intent_id: str) -> None:
        self._require_key()
        try:
            await asyncio.to_thread(
                stripe.Refund.create,
                api_key=self.api_key,
                payment_intent=intent_id,
                idempotency_key=f"refund-{intent_id}",
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe refund falló para {intent_id}: {e}", exc_info=True)
            raise UpstreamProcessorError("Unable to refund payment") from e


class MockProcessor(PaymentProcessor):
    """
    Procesador de desarrollo: los intents viven en la colección `mock_intents`
    y se dan por cobrados al crearlos (demo sin tarjeta).
    """
    def __init__(self, db: AsyncIOMotorDatabase, webhook_secret: str, currency: str = "usd"):
        super().__init__(webhook_secret, currency)
        self.db = db

    @staticmethod
    def _to_info(doc: Dict[str, Any]) -> IntentInfo:
        return IntentInfo(
            id=doc["_id"],
            status=doc["status"],
            amount=doc.get("amount", 0),
            client_secret=doc.get("client_secret"),
            metadata=doc.get("metadata", {}),
        )

    async def create_intent(self, amount: Decimal, booking_id: str, driver_id: str) -> IntentInfo:
        intent_id = f"pi_mock_{uuid4().hex[:24]}"
        doc = {
            "_id": intent_id,
            "status": "succeeded",
            "amount": to_minor_units(amount),
            "currency": self.currency,
            "client_secret": f"{intent_id}_secret_{uuid4().hex[:16]}",
            "metadata": {"booking_id": booking_id, "driver_id": driver_id},
            "created_at": utcnow(),
        }
        try:
            await self.db.mock_intents.insert_one(doc)
        except PyMongoError as e:
            raise UpstreamProcessorError("Unable to set up payment. Please try again in a moment.") from e
        return self._to_info(doc)

    async def retrieve_intent(self, intent_id: str) -> IntentInfo:
        try:
            doc = await self.db.mock_intents.find_one({"_id": intent_id})
        except PyMongoError as e:
            raise UpstreamProcessorError("Failed to retrieve payment from processor") from e
        if not doc:
            raise UpstreamProcessorError(f"No such payment_intent: {intent_id}")
        return self._to_info(doc)

    async def refund(self, intent_id: str) -> None:
        try:
            res = await self.db.mock_intents.update_one({"_id": intent_id}, {"$set": {"status": "refunded"}})
        except PyMongoError as e:
            raise UpstreamProcessorError("Unable to refund payment") from e
        if res.matched_count == 0:
            raise UpstreamProcessorError(f"No such payment_intent: {intent_id}")


async def get_processor(db: AsyncIOMotorDatabase = Depends(get_db)) -> PaymentProcessor:
    if settings.payment_provider == "stripe":
        return StripeProcessor(settings.stripe_secret_key, settings.stripe_webhook_secret, settings.currency)
    return MockProcessor(db, settings.stripe_webhook_secret, settings.currency)
