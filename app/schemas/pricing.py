from pydantic import BaseModel
from decimal import Decimal

class PricingBreakdown(BaseModel):
    base_rate: Decimal
    hours: Decimal
    base_total: Decimal
    time_multiplier: Decimal
    day_multiplier: Decimal
    demand_multiplier: Decimal
    subtotal: Decimal
    final_price: Decimal
    minimum_price: Decimal
    minimum_applied: bool

class PricingLimits(BaseModel):
    min_price: Decimal
    min_duration_minutes: int
    max_duration_days: int
    min_listing_rate: Decimal
    currency: str
