"""
Configuración de pytest para tests
"""
import hashlib
import hmac
import json
import os
import time
from datetime import datetime, timedelta

import pytest
from bson import ObjectId
from httpx import AsyncClient, ASGITransport
from mongomock_motor import AsyncMongoMockClient

# Variables de entorno de test antes de importar la app (la config se cachea)
os.environ.setdefault("APP_ENV", "test")
os.environ["PAYMENT_PROVIDER"] = "mock"
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test"
os.environ["CRON_SECRET"] = "test-cron-secret"
os.environ["RESEND_API_KEY"] = ""

from app.db import ensure_indexes, get_db  # noqa: E402
from app.main import app  # noqa: E402
from app.security import create_access_token  # noqa: E402

WEBHOOK_SECRET = "whsec_test"
CRON_SECRET = "test-cron-secret"

DRIVER_ID = "65a000000000000000000001"
OWNER_ID = "65a000000000000000000002"
OTHER_ID = "65a000000000000000000003"


def auth_headers(user_id: str) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user_id)}"}


def signed_webhook(event: dict, secret: str = WEBHOOK_SECRET, timestamp: int = None):
    """Body y cabecera Stripe-Signature (t=...,v1=HMAC-SHA256) para un evento."""
    payload = json.dumps(event)
    ts = timestamp or int(time.time())
    sig = hmac.new(secret.encode("utf-8"), f"{ts}.{payload}".encode("utf-8"), hashlib.sha256).hexdigest()
    return payload, {"Stripe-Signature": f"t={ts},v1={sig}", "Content-Type": "application/json"}


def intent_event(event_type: str, intent_id: str, booking_id: str = None, event_id: str = None) -> dict:
    obj = {"id": intent_id, "object": "payment_intent", "metadata": {}}
    if booking_id:
        obj["metadata"]["booking_id"] = booking_id
    return {"id": event_id or f"evt_{ObjectId()}", "type": event_type, "data": {"object": obj}}


def refund_event(intent_id: str) -> dict:
    return {
        "id": f"evt_{ObjectId()}",
        "type": "charge.refunded",
        "data": {"object": {"id": f"ch_{ObjectId()}", "object": "charge", "payment_intent": intent_id}},
    }


def next_weekday_at(hour: int, weekday: int = 1) -> datetime:
    """Próximo día de la semana (lunes = 0) a la hora dada, siempre en el futuro."""
    now = datetime.utcnow()
    days = (weekday - now.weekday()) % 7 or 7
    return (now + timedelta(days=days)).replace(hour=hour, minute=0, second=0, microsecond=0)


@pytest.fixture
async def db():
    """Base de datos en memoria, nueva para cada test"""
    client = AsyncMongoMockClient()
    database = client["parkway_test"]
    await ensure_indexes(database)
    await database.users.insert_many([
        {"_id": ObjectId(DRIVER_ID), "name": "Driver", "email": "driver@example.com"},
        {"_id": ObjectId(OWNER_ID), "name": "Owner", "email": "owner@example.com"},
        {"_id": ObjectId(OTHER_ID), "name": "Other", "email": "other@example.com"},
    ])
    yield database


@pytest.fixture
async def client(db):
    """Cliente HTTP sobre la app con la base de datos de test"""
    app.state.limiter = None
    app.dependency_overrides[get_db] = lambda: db
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
async def space(db):
    """Plaza de capacidad 1 a 10/h del propietario de test"""
    res = await db.spaces.insert_one({
        "owner_id": OWNER_ID,
        "title": "Sunny Driveway",
        "address": "1 Main St",
        "price_per_hour": 10.0,
        "capacity": 1,
        "is_active": True,
    })
    return str(res.inserted_id)


@pytest.fixture
def make_booking(db, space):
    """Inserta una reserva directamente en la colección (sin pasar por la admisión)"""
    async def _make(
        status: str = "PENDING",
        payment_status: str = "PENDING",
        payment_reference: str = None,
        created_at: datetime = None,
        start_time: datetime = None,
        end_time: datetime = None,
        total_price: str = "20.00",
    ) -> str:
        now = datetime.utcnow()
        start = start_time or now + timedelta(days=1)
        doc = {
            "driver_id": DRIVER_ID,
            "space_id": space,
            "owner_id": OWNER_ID,
            "space_title": "Sunny Driveway",
            "start_time": start,
            "end_time": end_time or start + timedelta(hours=2),
            "status": status,
            "payment_status": payment_status,
            "total_price": total_price,
            "payment_reference": payment_reference,
            "created_at": created_at or now,
            "updated_at": created_at or now,
        }
        res = await db.bookings.insert_one(doc)
        return str(res.inserted_id)
    return _make
