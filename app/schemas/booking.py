from pydantic import BaseModel, ConfigDict, Field, field_validator
from enum import Enum
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
import re

from ..utils import to_id, to_naive_utc

class BookingStatus(str, Enum):
    PENDING   = "PENDING"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"
    COMPLETED = "COMPLETED"
    EXPIRED   = "EXPIRED"

class PaymentStatus(str, Enum):
    PENDING   = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED    = "FAILED"
    REFUNDED  = "REFUNDED"

# Estados que ocupan capacidad en la plaza
ACTIVE_STATUSES = (BookingStatus.PENDING, BookingStatus.CONFIRMED)
TERMINAL_STATUSES = (BookingStatus.CANCELLED, BookingStatus.COMPLETED, BookingStatus.EXPIRED)

class VehicleInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    make: str = Field(..., min_length=1, max_length=40)
    model: str = Field(..., min_length=1, max_length=40)
    color: str = Field(..., min_length=1, max_length=30)
    license_plate: str = Field(..., min_length=1, max_length=15, alias="licensePlate")

class BookingWindow(BaseModel):
    """Ventana [start_time, end_time) sobre una plaza. Las fechas se normalizan a UTC."""
    model_config = ConfigDict(populate_by_name=True)

    space_id: str = Field(..., alias="spaceId", description="ID de la plaza (driveway)")
    start_time: datetime = Field(..., alias="startTime")
    end_time: datetime = Field(..., alias="endTime")

    @field_validator("space_id")
    @classmethod
    def validate_space_id(cls, v: str) -> str:
        if not re.match(r"^[0-9a-fA-F]{24}$", v):
            raise ValueError("Invalid space ID")
        return v

    @field_validator("start_time", "end_time")
    @classmethod
    def normalize_datetime(cls, v: datetime) -> datetime:
        return to_naive_utc(v)

class BookingCreate(BookingWindow):
    special_requests: Optional[str] = Field(None, max_length=500, alias="specialRequests")
    vehicle_info: Optional[VehicleInfo] = Field(None, alias="vehicleInfo")

class Booking(BaseModel):
    """Registro de reserva tal y como vive en la colección `bookings`."""
    id: str
    driver_id: str
    space_id: str
    owner_id: str
    space_title: Optional[str] = None
    start_time: datetime
    end_time: datetime
    status: BookingStatus
    payment_status: PaymentStatus
    total_price: Decimal
    pricing: Optional[Dict[str, Any]] = None
    payment_reference: Optional[str] = None
    special_requests: Optional[str] = None
    vehicle_info: Optional[VehicleInfo] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> "Booking":
        return cls.model_validate(to_id(doc))

    def involves(self, user_id: str) -> bool:
        return user_id in (self.driver_id, self.owner_id)

class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int

class BookingPage(BaseModel):
    bookings: List[Booking]
    pagination: Pagination

class StatusPatch(BaseModel):
    status: BookingStatus
