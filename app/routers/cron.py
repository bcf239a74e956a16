# app/routers/cron.py
"""
Endpoints para el planificador externo (Vercel cron, k8s CronJob...).
Se autentican con `Authorization: Bearer <CRON_SECRET>`.
"""
from fastapi import APIRouter, Depends, Header
from typing import Optional
from motor.motor_asyncio import AsyncIOMotorDatabase
import hmac
import logging

from ..config import get_settings
from ..db import get_db
from ..errors import UnauthorizedError
from ..notifications import dispatch_emails
from ..sweeper import complete_finished, expire_stale, run_sweep

logger = logging.getLogger(__name__)

router = APIRouter()

settings = get_settings()

def require_cron_secret(authorization: Optional[str] = Header(None)) -> None:
    # Sin CRON_SECRET configurado no se acepta ninguna llamada
    expected = f"Bearer {settings.cron_secret}"
    if not settings.cron_secret or not authorization or not hmac.compare_digest(authorization.encode(), expected.encode()):
        logger.warning("Llamada a cron con credenciales inválidas")
        raise UnauthorizedError("Unauthorized")

@router.post("/sweep", dependencies=[Depends(require_cron_secret)])
async def sweep(db: AsyncIOMotorDatabase = Depends(get_db)):
    return await run_sweep(db)

@router.post("/expire-bookings", dependencies=[Depends(require_cron_secret)])
async def expire_bookings(db: AsyncIOMotorDatabase = Depends(get_db)):
    return {"expiredCount": await expire_stale(db), "completedCount": 0}

@router.post("/complete-bookings", dependencies=[Depends(require_cron_secret)])
async def complete_bookings(db: AsyncIOMotorDatabase = Depends(get_db)):
    return {"expiredCount": 0, "completedCount": await complete_finished(db)}

@router.post("/dispatch-emails", dependencies=[Depends(require_cron_secret)])
async def send_queued_emails(db: AsyncIOMotorDatabase = Depends(get_db)):
    return {"sentCount": await dispatch_emails(db)}
