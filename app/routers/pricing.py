# app/routers/pricing.py
from fastapi import APIRouter, Depends
from motor.motor_asyncio import AsyncIOMotorDatabase

from ..availability import quote
from ..config import get_settings
from ..db import get_db
from ..listings import get_space
from ..pricing import limits
from ..schemas.booking import BookingWindow
from ..schemas.pricing import PricingBreakdown, PricingLimits

router = APIRouter()

settings = get_settings()

@router.post("/quote", response_model=PricingBreakdown)
async def quote_window(payload: BookingWindow, db: AsyncIOMotorDatabase = Depends(get_db)):
    """Precio orientativo para una ventana; el precio definitivo se fija al reservar."""
    space = await get_space(db, payload.space_id)
    return await quote(db, space, payload)

@router.get("/limits", response_model=PricingLimits)
async def pricing_limits():
    return limits(settings.currency)
