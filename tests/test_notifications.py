"""
Tests de la cola de emails (outbox) y su entrega vía Resend
"""
import httpx
import pytest
from fastapi import status

from app import notifications
from app.notifications import dispatch_emails, email_user, send_email
from tests.conftest import CRON_SECRET, DRIVER_ID

DATA = {"booking_id": "b1", "space_title": "Sunny Driveway", "total_price": "20.00"}


@pytest.mark.asyncio
async def test_email_user_enqueues_with_user_address(db):
    await email_user(db, DRIVER_ID, "booking_confirmation", DATA)
    email = await db.email_outbox.find_one({})
    assert email["to"] == "driver@example.com"
    assert email["status"] == "queued"
    assert email["attempts"] == 0


@pytest.mark.asyncio
async def test_email_user_skips_unknown_user(db):
    await email_user(db, "not-an-id", "booking_confirmation", DATA)
    assert await db.email_outbox.count_documents({}) == 0


@pytest.mark.asyncio
async def test_unknown_template_is_rejected(db):
    with pytest.raises(ValueError):
        await send_email(db, "a@example.com", "welcome", DATA)


@pytest.mark.asyncio
async def test_dispatch_without_api_key_only_logs(db):
    await send_email(db, "a@example.com", "booking_expired", DATA)
    await send_email(db, "b@example.com", "refund_processed", DATA)
    assert await dispatch_emails(db) == 2
    assert await db.email_outbox.count_documents({"status": "sent"}) == 2
    assert await dispatch_emails(db) == 0


@pytest.mark.asyncio
async def test_dispatch_through_resend(db, monkeypatch):
    sent = []

    def handler(request: httpx.Request) -> httpx.Response:
        sent.append(request)
        return httpx.Response(200, json={"id": "email_1"})

    monkeypatch.setattr(notifications.settings, "resend_api_key", "re_test")
    await send_email(db, "a@example.com", "booking_confirmation", DATA)
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        assert await dispatch_emails(db, client=client) == 1

    assert len(sent) == 1
    assert sent[0].headers["Authorization"] == "Bearer re_test"
    assert b"Booking Confirmed" in sent[0].content


@pytest.mark.asyncio
async def test_failed_delivery_is_requeued(db, monkeypatch):
    monkeypatch.setattr(notifications.settings, "resend_api_key", "re_test")
    await send_email(db, "a@example.com", "booking_confirmation", DATA)
    transport = httpx.MockTransport(lambda request: httpx.Response(500, text="boom"))
    async with httpx.AsyncClient(transport=transport) as client:
        assert await dispatch_emails(db, client=client) == 0

    email = await db.email_outbox.find_one({})
    assert email["status"] == "queued"
    assert email["attempts"] == 1


@pytest.mark.asyncio
async def test_cron_dispatch_endpoint(client, db):
    await send_email(db, "a@example.com", "booking_expired", DATA)
    response = await client.post("/cron/dispatch-emails", headers={"Authorization": f"Bearer {CRON_SECRET}"})
    assert response.status_code == status.HTTP_200_OK
    assert response.json() == {"sentCount": 1}
