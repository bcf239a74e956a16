"""
Tests de los barridos del ciclo de vida y de los endpoints /cron
"""
from datetime import datetime, timedelta

import pytest
from bson import ObjectId
from fastapi import status

from app.sweeper import complete_finished, expire_stale, run_sweep
from tests.conftest import CRON_SECRET, DRIVER_ID, OWNER_ID

CRON_HEADERS = {"Authorization": f"Bearer {CRON_SECRET}"}


@pytest.mark.asyncio
async def test_expire_after_timeout_only(db, make_booking):
    """Creada hace 16 minutos: expira. Creada hace 10 minutos: no se toca."""
    now = datetime.utcnow()
    stale = await make_booking(created_at=now - timedelta(minutes=16))
    fresh = await make_booking(created_at=now - timedelta(minutes=10))

    assert await expire_stale(db, now) == 1

    stale_doc = await db.bookings.find_one({"_id": ObjectId(stale)})
    assert stale_doc["status"] == "EXPIRED"
    assert stale_doc["payment_status"] == "FAILED"
    fresh_doc = await db.bookings.find_one({"_id": ObjectId(fresh)})
    assert fresh_doc["status"] == "PENDING"


@pytest.mark.asyncio
async def test_expire_notifies_driver_and_owner_once(db, make_booking):
    now = datetime.utcnow()
    await make_booking(created_at=now - timedelta(hours=1))

    assert await expire_stale(db, now) == 1
    assert await expire_stale(db, now) == 0

    driver_note = await db.notifications.find_one({"user_id": DRIVER_ID})
    owner_note = await db.notifications.find_one({"user_id": OWNER_ID})
    assert driver_note["title"] == "Booking Expired"
    assert driver_note["type"] == "warning"
    assert "expired due to non-payment" in driver_note["message"]
    assert owner_note["type"] == "info"
    assert await db.notifications.count_documents({}) == 2
    assert await db.email_outbox.count_documents({"template": "booking_expired"}) == 1


@pytest.mark.asyncio
async def test_expire_skips_paid_and_confirmed_bookings(db, make_booking):
    old = datetime.utcnow() - timedelta(hours=1)
    await make_booking(status="CONFIRMED", payment_status="COMPLETED", created_at=old)
    await make_booking(status="CANCELLED", payment_status="FAILED", created_at=old)
    assert await expire_stale(db) == 0


@pytest.mark.asyncio
async def test_expire_includes_failed_payments(db, make_booking):
    booking_id = await make_booking(payment_status="FAILED", created_at=datetime.utcnow() - timedelta(minutes=20))
    assert await expire_stale(db) == 1
    doc = await db.bookings.find_one({"_id": ObjectId(booking_id)})
    assert doc["status"] == "EXPIRED"


@pytest.mark.asyncio
async def test_complete_finished_bookings(db, make_booking):
    now = datetime.utcnow()
    past = await make_booking(
        status="CONFIRMED", payment_status="COMPLETED",
        start_time=now - timedelta(hours=3), end_time=now - timedelta(hours=1),
    )
    ongoing = await make_booking(
        status="CONFIRMED", payment_status="COMPLETED",
        start_time=now - timedelta(hours=1), end_time=now + timedelta(hours=1),
    )
    await make_booking(start_time=now - timedelta(hours=3), end_time=now - timedelta(hours=1))

    assert await complete_finished(db, now) == 1
    assert (await db.bookings.find_one({"_id": ObjectId(past)}))["status"] == "COMPLETED"
    assert (await db.bookings.find_one({"_id": ObjectId(ongoing)}))["status"] == "CONFIRMED"
    assert await complete_finished(db, now) == 0


@pytest.mark.asyncio
async def test_run_sweep_counts(db, make_booking):
    now = datetime.utcnow()
    await make_booking(created_at=now - timedelta(minutes=30))
    await make_booking(
        status="CONFIRMED", payment_status="COMPLETED",
        start_time=now - timedelta(hours=2), end_time=now - timedelta(minutes=1),
    )
    assert await run_sweep(db, now) == {"expiredCount": 1, "completedCount": 1}


@pytest.mark.asyncio
async def test_cron_sweep_endpoint(client, make_booking):
    await make_booking(created_at=datetime.utcnow() - timedelta(minutes=16))
    response = await client.post("/cron/sweep", headers=CRON_HEADERS)
    assert response.status_code == status.HTTP_200_OK
    assert response.json() == {"expiredCount": 1, "completedCount": 0}


@pytest.mark.asyncio
async def test_cron_split_endpoints(client, make_booking):
    await make_booking(created_at=datetime.utcnow() - timedelta(minutes=16))
    response = await client.post("/cron/expire-bookings", headers=CRON_HEADERS)
    assert response.json()["expiredCount"] == 1
    response = await client.post("/cron/complete-bookings", headers=CRON_HEADERS)
    assert response.json()["completedCount"] == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("headers", [
    {},
    {"Authorization": "Bearer wrong-secret"},
    {"Authorization": CRON_SECRET},
])
async def test_cron_requires_secret(client, make_booking, db, headers):
    booking_id = await make_booking(created_at=datetime.utcnow() - timedelta(minutes=16))
    response = await client.post("/cron/sweep", headers=headers)
    assert response.status_code == status.HTTP_401_UNAUTHORIZED
    assert (await db.bookings.find_one({"_id": ObjectId(booking_id)}))["status"] == "PENDING"
