"""
Motor de precios de reservas.

Funciones puras: mismo input, mismo output, sin I/O. Toda la aritmética es
`Decimal` para que el redondeo a céntimos sea exacto (ROUND_HALF_UP).

Factores:
- hora punta (7-9h y 17-19h): +20%; nocturno (22-6h): -10%
- fin de semana: +15%
- demanda (ocupación de la plaza): hasta x2.0
- precio mínimo cobrable: 0.50
"""
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from .errors import ValidationError
from .schemas.pricing import PricingBreakdown, PricingLimits

MIN_PRICE = Decimal("0.50")
MIN_DURATION = timedelta(minutes=10)
MAX_DURATION = timedelta(days=7)

# Tarifa mínima de un anuncio: la reserva más corta debe poder superar el mínimo de cobro
MIN_LISTING_RATE = (MIN_PRICE / (Decimal(int(MIN_DURATION.total_seconds())) / Decimal(3600))).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)

PEAK_MULTIPLIER = Decimal("1.2")
NIGHT_MULTIPLIER = Decimal("0.9")
WEEKEND_MULTIPLIER = Decimal("1.15")
NO_MULTIPLIER = Decimal("1.0")

# (ocupación mínima, multiplicador), de mayor a menor
DEMAND_TIERS = (
    (Decimal("0.90"), Decimal("2.0")),
    (Decimal("0.75"), Decimal("1.5")),
    (Decimal("0.50"), Decimal("1.2")),
)

_CENT = Decimal("0.01")


def _money(value: Decimal) -> Decimal:
    return value.quantize(_CENT, rounding=ROUND_HALF_UP)


def time_of_day_multiplier(start: datetime) -> Decimal:
    hour = start.hour
    if 7 <= hour < 9 or 17 <= hour < 19:
        return PEAK_MULTIPLIER
    if hour >= 22 or hour < 6:
        return NIGHT_MULTIPLIER
    return NO_MULTIPLIER


def day_of_week_multiplier(start: datetime) -> Decimal:
    # weekday(): sábado = 5, domingo = 6
    if start.weekday() >= 5:
        return WEEKEND_MULTIPLIER
    return NO_MULTIPLIER


def demand_multiplier_for(booked: int, capacity: int) -> Decimal:
    """Multiplicador por ocupación de la plaza (reservas activas / capacidad)."""
    if capacity <= 0:
        return NO_MULTIPLIER
    utilization = Decimal(booked) / Decimal(capacity)
    for threshold, multiplier in DEMAND_TIERS:
        if utilization >= threshold:
            return multiplier
    return NO_MULTIPLIER


def validate_duration(start: datetime, end: datetime) -> timedelta:
    duration = end - start
    if duration <= timedelta(0):
        raise ValidationError("End time must be after start time")
    if duration < MIN_DURATION:
        minutes = int(MIN_DURATION.total_seconds() // 60)
        raise ValidationError(
            f"Minimum booking duration is {minutes} minutes. Please select a longer time period."
        )
    if duration > MAX_DURATION:
        raise ValidationError(
            f"Maximum booking duration is {MAX_DURATION.days} days. Please select a shorter time period."
        )
    return duration


def validate_listing_rate(rate_per_hour: Decimal) -> Decimal:
    """Para el alta de anuncios: rechaza tarifas que nunca alcanzarían el mínimo de cobro."""
    rate = Decimal(str(rate_per_hour))
    if rate < MIN_LISTING_RATE:
        raise ValidationError(f"Minimum hourly rate is ${MIN_LISTING_RATE}")
    return rate


def price(
    base_rate_per_hour: Decimal,
    start: datetime,
    end: datetime,
    demand_multiplier: Optional[Decimal] = None,
) -> PricingBreakdown:
    """
    Calcula el desglose de precio de una ventana.

    `start` y `end` deben venir en la hora local de tarificación: los factores
    de hora y día se leen directamente de `start`.
    """
    rate = Decimal(str(base_rate_per_hour))
    hours = Decimal(int((end - start).total_seconds())) / Decimal(3600)
    base_total = hours * rate

    time_mult = time_of_day_multiplier(start)
    day_mult = day_of_week_multiplier(start)
    demand_mult = NO_MULTIPLIER if demand_multiplier is None else Decimal(str(demand_multiplier))

    subtotal = _money(base_total * time_mult * day_mult * demand_mult)
    minimum_applied = subtotal < MIN_PRICE
    final_price = MIN_PRICE if minimum_applied else subtotal

    return PricingBreakdown(
        base_rate=rate,
        hours=hours.quantize(Decimal("0.0001"), rounding=ROUND_HALF_UP),
        base_total=_money(base_total),
        time_multiplier=time_mult,
        day_multiplier=day_mult,
        demand_multiplier=demand_mult,
        subtotal=subtotal,
        final_price=final_price,
        minimum_price=MIN_PRICE,
        minimum_applied=minimum_applied,
    )


def limits(currency: str) -> PricingLimits:
    return PricingLimits(
        min_price=MIN_PRICE,
        min_duration_minutes=int(MIN_DURATION.total_seconds() // 60),
        max_duration_days=MAX_DURATION.days,
        min_listing_rate=MIN_LISTING_RATE,
        currency=currency,
    )
