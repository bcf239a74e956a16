# app/routers/bookings.py
from fastapi import APIRouter, Depends, Query, Request, status
from typing import Optional
from motor.motor_asyncio import AsyncIOMotorDatabase
import math
import logging

from .. import booking_store as store
from ..availability import check_and_reserve
from ..db import get_db
from ..errors import ForbiddenError, ValidationError
from ..listings import get_space
from ..middleware.rate_limit import apply_rate_limit
from ..processor import PaymentProcessor, get_processor
from ..reconciler import cancel_booking
from ..schemas.booking import Booking, BookingCreate, BookingPage, BookingStatus, Pagination, StatusPatch
from ..security import get_current_user_id

logger = logging.getLogger(__name__)

router = APIRouter()

# ---------- Endpoints ----------

@router.post("", response_model=Booking, status_code=status.HTTP_201_CREATED)
async def create_booking(
    request: Request,
    payload: BookingCreate,
    db: AsyncIOMotorDatabase = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    apply_rate_limit(request, "10/minute", "bookings:create", user_id)
    space = await get_space(db, payload.space_id)
    return await check_and_reserve(db, space, payload, user_id)

@router.get("/mine", response_model=BookingPage)
async def list_my_bookings(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=50),
    status_filter: Optional[BookingStatus] = Query(None, alias="status"),
    db: AsyncIOMotorDatabase = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    """Reservas donde el usuario es conductor o dueño de la plaza, más recientes primero."""
    bookings, total = await store.list_bookings_for_user(db, user_id, status_filter, page, limit)
    return BookingPage(
        bookings=bookings,
        pagination=Pagination(page=page, limit=limit, total=total, total_pages=math.ceil(total / limit)),
    )

@router.get("/{booking_id}", response_model=Booking)
async def get_booking(
    booking_id: str,
    db: AsyncIOMotorDatabase = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    booking = await store.get_booking(db, booking_id)
    if not booking.involves(user_id):
        raise ForbiddenError("Not authorized to view this booking")
    return booking

@router.patch("/{booking_id}", response_model=Booking)
async def update_booking_status(
    request: Request,
    booking_id: str,
    payload: StatusPatch,
    db: AsyncIOMotorDatabase = Depends(get_db),
    processor: PaymentProcessor = Depends(get_processor),
    user_id: str = Depends(get_current_user_id),
):
    # El resto de transiciones las hacen el pago y los barridos, nunca el usuario
    if payload.status != BookingStatus.CANCELLED:
        raise ValidationError("Bookings can only be cancelled through this endpoint")
    apply_rate_limit(request, "20/minute", "bookings:update", user_id)
    return await cancel_booking(db, processor, booking_id, user_id)
