from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from enum import Enum
from typing import Any, Dict, Optional
import re

from .booking import BookingStatus

def _validate_object_id(v: str) -> str:
    if not re.match(r"^[0-9a-fA-F]{24}$", v):
        raise ValueError("Invalid booking ID")
    return v

class PaymentIntentCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    booking_id: str = Field(..., alias="bookingId", description="ID de la reserva a pagar")

    @field_validator("booking_id")
    @classmethod
    def validate_booking_id(cls, v: str) -> str:
        return _validate_object_id(v)

class PaymentIntentOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    client_secret: str = Field(..., serialization_alias="clientSecret")
    amount: int = Field(..., description="Importe en unidades menores (céntimos)")
    payment_reference: str = Field(..., serialization_alias="paymentReference")

class VerifyRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    booking_id: str = Field(..., alias="bookingId")
    payment_reference: str = Field(
        ...,
        min_length=1,
        max_length=255,
        validation_alias=AliasChoices("paymentReference", "paymentIntentId", "payment_reference"),
    )

    @field_validator("booking_id")
    @classmethod
    def validate_booking_id(cls, v: str) -> str:
        return _validate_object_id(v)

class VerifyStatus(str, Enum):
    CONFIRMED  = "CONFIRMED"
    PROCESSING = "PROCESSING"
    PENDING    = "PENDING"

class VerifyResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    booking_id: str = Field(..., serialization_alias="bookingId")
    status: VerifyStatus
    booking_status: Optional[BookingStatus] = Field(None, serialization_alias="bookingStatus")
    message: str

# ---------- Eventos del procesador (webhook) ----------

class IntentInfo(BaseModel):
    """Vista mínima de un payment intent del procesador."""
    id: str
    status: str
    amount: int = 0
    client_secret: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)

class EventData(BaseModel):
    object: Dict[str, Any]

class ProcessorEvent(BaseModel):
    id: str
    type: str
    data: EventData
