# app/notifications.py
"""
Efectos laterales hacia el usuario: notificaciones in-app y emails.

Nada de esto bloquea ni hace fallar la operación que lo origina: las
notificaciones son filas en `notifications` y los emails se encolan en
`email_outbox`; `dispatch_emails` los entrega más tarde (cron) vía Resend.
"""
from enum import Enum
from html import escape
from typing import Any, Callable, Dict, Optional, Tuple
import logging

import httpx
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from .config import get_settings
from .listings import get_user_email
from .utils import utcnow

logger = logging.getLogger(__name__)

settings = get_settings()

RESEND_URL = "https://api.resend.com/emails"
MAX_EMAIL_ATTEMPTS = 5

class Severity(str, Enum):
    info = "info"
    success = "success"
    warning = "warning"
    error = "error"

async def notify(
    db: AsyncIOMotorDatabase,
    user_id: str,
    title: str,
    message: str,
    severity: Severity = Severity.info,
    booking_id: Optional[str] = None,
) -> None:
    try:
        await db.notifications.insert_one({
            "user_id": user_id,
            "title": title,
            "message": message,
            "type": severity.value,
            "booking_id": booking_id,
            "read": False,
            "created_at": utcnow(),
        })
    except PyMongoError as e:
        logger.error(f"No se pudo crear la notificación '{title}' para {user_id}: {e}", exc_info=True)

async def send_email(db: AsyncIOMotorDatabase, to: str, template: str, data: Dict[str, Any]) -> None:
    if template not in EMAIL_TEMPLATES:
        raise ValueError(f"Plantilla de email desconocida: {template}")
    try:
        await db.email_outbox.insert_one({
            "to": to,
            "template": template,
            "data": data,
            "status": "queued",
            "attempts": 0,
            "created_at": utcnow(),
        })
    except PyMongoError as e:
        logger.error(f"No se pudo encolar el email '{template}' para {to}: {e}", exc_info=True)

async def email_user(db: AsyncIOMotorDatabase, user_id: str, template: str, data: Dict[str, Any]) -> None:
    try:
        to = await get_user_email(db, user_id)
    except PyMongoError as e:
        logger.error(f"No se pudo resolver el email de {user_id}: {e}", exc_info=True)
        return
    if not to:
        logger.warning(f"Usuario {user_id} sin email; se omite '{template}'")
        return
    await send_email(db, to, template, data)

# ==================== Plantillas ====================

def _layout(heading: str, intro: str, rows: Dict[str, Any], outro: str = "Thank you for using Parkway!") -> str:
    details = "".join(f"<p><strong>{escape(k)}:</strong> {escape(str(v))}</p>" for k, v in rows.items())
    return (
        '<!DOCTYPE html><html><body style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">'
        f"<h1>Parkway</h1><h2>{escape(heading)}</h2><p>{escape(intro)}</p>"
        f"<div>{details}</div><p>{escape(outro)}</p></body></html>"
    )

def _booking_confirmation(d: Dict[str, Any]) -> Tuple[str, str]:
    return "Booking Confirmed - Parkway", _layout(
        "Booking Confirmed!",
        "Your booking has been confirmed. Here are the details:",
        {
            "Driveway": d.get("space_title", ""),
            "Start Time": d.get("start_time", ""),
            "End Time": d.get("end_time", ""),
            "Total Price": f"${d.get('total_price', '')}",
            "Booking ID": d.get("booking_id", ""),
        },
    )

def _payment_received(d: Dict[str, Any]) -> Tuple[str, str]:
    return "Payment Received - Parkway", _layout(
        "Payment Received!",
        "You have received payment for your driveway booking:",
        {"Driveway": d.get("space_title", ""), "Amount": f"${d.get('total_price', '')}", "Booking ID": d.get("booking_id", "")},
        "The payment has been processed successfully.",
    )

def _refund_processed(d: Dict[str, Any]) -> Tuple[str, str]:
    return "Refund Processed - Parkway", _layout(
        "Refund Processed",
        "Your booking was cancelled and the payment has been refunded.",
        {"Driveway": d.get("space_title", ""), "Amount": f"${d.get('total_price', '')}", "Booking ID": d.get("booking_id", "")},
    )

def _booking_expired(d: Dict[str, Any]) -> Tuple[str, str]:
    return "Booking Expired - Parkway", _layout(
        "Booking Expired",
        "Your booking expired because payment was not completed in time.",
        {"Driveway": d.get("space_title", ""), "Booking ID": d.get("booking_id", "")},
    )

EMAIL_TEMPLATES: Dict[str, Callable[[Dict[str, Any]], Tuple[str, str]]] = {
    "booking_confirmation": _booking_confirmation,
    "payment_received": _payment_received,
    "refund_processed": _refund_processed,
    "booking_expired": _booking_expired,
}

# ==================== Entrega ====================

async def _deliver(client: httpx.AsyncClient, email: Dict[str, Any]) -> bool:
    subject, html = EMAIL_TEMPLATES[email["template"]](email.get("data", {}))
    if not settings.resend_api_key:
        logger.info(f"📧 Email (Resend no configurado) a {email['to']}: {subject}")
        return True
    try:
        resp = await client.post(
            RESEND_URL,
            headers={"Authorization": f"Bearer {settings.resend_api_key}"},
            json={"from": settings.email_from, "to": email["to"], "subject": subject, "html": html},
        )
    except httpx.HTTPError as e:
        logger.warning(f"Error enviando email a {email['to']}: {e}")
        return False
    if resp.status_code >= 400:
        logger.warning(f"Resend rechazó el email a {email['to']}: {resp.status_code} {resp.text}")
        return False
    return True

async def dispatch_emails(db: AsyncIOMotorDatabase, batch_size: int = 50, client: Optional[httpx.AsyncClient] = None) -> int:
    """Entrega hasta `batch_size` emails encolados. Devuelve cuántos se enviaron."""
    sent = 0
    tried: list = []
    own_client = client is None
    client = client or httpx.AsyncClient(timeout=10)
    try:
        for _ in range(batch_size):
            # Reclamar el email de forma atómica para que dos ticks no lo envíen dos veces
            email = await db.email_outbox.find_one_and_update(
                {"status": "queued", "_id": {"$nin": tried}},
                {"$set": {"status": "sending", "claimed_at": utcnow()}},
                sort=[("created_at", 1)],
                return_document=ReturnDocument.AFTER,
            )
            if not email:
                break
            tried.append(email["_id"])
            if await _deliver(client, email):
                await db.email_outbox.update_one({"_id": email["_id"]}, {"$set": {"status": "sent", "sent_at": utcnow()}})
                sent += 1
            else:
                attempts = email.get("attempts", 0) + 1
                status = "failed" if attempts >= MAX_EMAIL_ATTEMPTS else "queued"
                await db.email_outbox.update_one({"_id": email["_id"]}, {"$set": {"status": status, "attempts": attempts}})
    finally:
        if own_client:
            await client.aclose()
    return sent
