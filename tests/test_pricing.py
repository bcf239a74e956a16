"""
Tests del motor de precios (funciones puras) y de los endpoints /pricing
"""
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from fastapi import status

from app.errors import ValidationError
from app.pricing import (
    MIN_LISTING_RATE,
    demand_multiplier_for,
    price,
    validate_duration,
    validate_listing_rate,
)
from tests.conftest import next_weekday_at

# Martes 2 de enero de 2024 y sábado 6 de enero de 2024
TUESDAY_2PM = datetime(2024, 1, 2, 14, 0)
SATURDAY_8AM = datetime(2024, 1, 6, 8, 0)


def test_weekday_afternoon_has_no_multipliers():
    """2h a 10/h un martes a las 14h: 20.00 sin recargos"""
    breakdown = price(Decimal("10"), TUESDAY_2PM, TUESDAY_2PM + timedelta(hours=2))
    assert breakdown.final_price == Decimal("20.00")
    assert breakdown.time_multiplier == Decimal("1.0")
    assert breakdown.day_multiplier == Decimal("1.0")
    assert breakdown.minimum_applied is False


def test_saturday_peak_applies_both_multipliers():
    """20.00 x 1.2 (hora punta) x 1.15 (fin de semana) = 27.60"""
    breakdown = price(Decimal("10"), SATURDAY_8AM, SATURDAY_8AM + timedelta(hours=2))
    assert breakdown.base_total == Decimal("20.00")
    assert breakdown.time_multiplier == Decimal("1.2")
    assert breakdown.day_multiplier == Decimal("1.15")
    assert breakdown.final_price == Decimal("27.60")


def test_night_discount():
    start = datetime(2024, 1, 2, 23, 0)
    breakdown = price(Decimal("10"), start, start + timedelta(hours=1))
    assert breakdown.time_multiplier == Decimal("0.9")
    assert breakdown.final_price == Decimal("9.00")


def test_price_is_deterministic():
    a = price(Decimal("13.37"), SATURDAY_8AM, SATURDAY_8AM + timedelta(minutes=95))
    b = price(Decimal("13.37"), SATURDAY_8AM, SATURDAY_8AM + timedelta(minutes=95))
    assert a.model_dump_json() == b.model_dump_json()


def test_ten_minutes_at_three_dollars_reaches_floor_exactly():
    breakdown = price(Decimal("3.00"), TUESDAY_2PM, TUESDAY_2PM + timedelta(minutes=10))
    assert breakdown.subtotal == Decimal("0.50")
    assert breakdown.final_price == Decimal("0.50")
    assert breakdown.minimum_applied is False


def test_ten_minutes_at_two_dollars_is_raised_to_floor():
    breakdown = price(Decimal("2.00"), TUESDAY_2PM, TUESDAY_2PM + timedelta(minutes=10))
    assert breakdown.subtotal == Decimal("0.33")
    assert breakdown.final_price == Decimal("0.50")
    assert breakdown.minimum_applied is True


def test_explicit_demand_multiplier():
    breakdown = price(Decimal("10"), TUESDAY_2PM, TUESDAY_2PM + timedelta(hours=2), Decimal("1.5"))
    assert breakdown.demand_multiplier == Decimal("1.5")
    assert breakdown.final_price == Decimal("30.00")


@pytest.mark.parametrize("booked,capacity,expected", [
    (0, 4, "1.0"),
    (1, 4, "1.0"),
    (2, 4, "1.2"),
    (3, 4, "1.5"),
    (9, 10, "2.0"),
    (1, 1, "2.0"),
])
def test_demand_tiers(booked, capacity, expected):
    assert demand_multiplier_for(booked, capacity) == Decimal(expected)


def test_duration_bounds():
    """5 min se rechaza, 10 min se acepta, 8 días se rechaza"""
    with pytest.raises(ValidationError) as exc:
        validate_duration(TUESDAY_2PM, TUESDAY_2PM + timedelta(minutes=5))
    assert "Minimum booking duration is 10 minutes" in exc.value.detail

    assert validate_duration(TUESDAY_2PM, TUESDAY_2PM + timedelta(minutes=10)) == timedelta(minutes=10)

    with pytest.raises(ValidationError) as exc:
        validate_duration(TUESDAY_2PM, TUESDAY_2PM + timedelta(days=8))
    assert "Maximum booking duration is 7 days" in exc.value.detail


def test_end_before_start_is_rejected():
    with pytest.raises(ValidationError):
        validate_duration(TUESDAY_2PM, TUESDAY_2PM - timedelta(hours=1))


def test_min_listing_rate():
    """0.50 / (10 min en horas) = 3.00/h"""
    assert MIN_LISTING_RATE == Decimal("3.00")
    assert validate_listing_rate(Decimal("3.00")) == Decimal("3.00")
    with pytest.raises(ValidationError):
        validate_listing_rate(Decimal("2.99"))


@pytest.mark.asyncio
async def test_quote_endpoint(client, space):
    start = next_weekday_at(14, weekday=1)
    response = await client.post("/pricing/quote", json={
        "spaceId": space,
        "startTime": start.isoformat(),
        "endTime": (start + timedelta(hours=2)).isoformat(),
    })
    assert response.status_code == status.HTTP_200_OK
    assert Decimal(response.json()["final_price"]) == Decimal("20.00")


@pytest.mark.asyncio
async def test_quote_rejects_short_window(client, space):
    start = next_weekday_at(14)
    response = await client.post("/pricing/quote", json={
        "spaceId": space,
        "startTime": start.isoformat(),
        "endTime": (start + timedelta(minutes=5)).isoformat(),
    })
    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert response.json()["code"] == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_limits_endpoint(client):
    response = await client.get("/pricing/limits")
    assert response.status_code == status.HTTP_200_OK
    data = response.json()
    assert Decimal(data["min_price"]) == Decimal("0.50")
    assert data["min_duration_minutes"] == 10
    assert data["max_duration_days"] == 7
    assert Decimal(data["min_listing_rate"]) == Decimal("3.00")
