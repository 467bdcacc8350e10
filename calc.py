"""Shiftdesk calculators — trip profitability, shift wages, reporting periods"""
import math
from datetime import date, datetime, timedelta
from typing import Optional

# Per vehicle type: fuel l/100km, daily taxes UAH, depreciation UAH/km
TYPE_DEFAULTS = {
    "van": {"fuel": 12, "daily_taxes": 150, "depreciation": 1.2},
    "truck": {"fuel": 30, "daily_taxes": 300, "depreciation": 7},
}

DEFAULT_HOURLY_RATE = 100
MAX_SHIFT_HOURS = 24
UNCATEGORIZED = "Uncategorized"


def r2(value: float) -> float:
    return math.floor(value * 100 + 0.5) / 100


def _non_negative(value) -> float:
    if value is None:
        return 0.0
    return max(0.0, float(value))


def calculate_trip_metrics(trip: dict) -> dict:
    """Cost and profit figures for one trip.

    Missing numeric inputs count as 0, negative ones are clamped to 0 and
    ``days_count`` is at least 1. Raises ValueError when the end odometer
    reading is below the start reading.
    """
    start = trip.get("start_odometer_km") or 0
    end = trip.get("end_odometer_km") or 0
    if end < start:
        raise ValueError("end_odometer_km cannot be less than start_odometer_km")

    days = trip.get("days_count") or 0
    if days < 1:
        days = 1

    consumption = _non_negative(trip.get("fuel_consumption_l_per_100km"))
    fuel_price = _non_negative(trip.get("fuel_price_uah_per_l"))
    depreciation_per_km = _non_negative(trip.get("depreciation_uah_per_km"))
    daily_taxes = _non_negative(trip.get("daily_taxes_uah"))
    freight = _non_negative(trip.get("freight_uah"))
    extra = _non_negative(trip.get("extra_costs_uah"))

    distance = r2(end - start)
    fuel_used = r2(distance * consumption / 100)
    fuel_cost = r2(fuel_used * fuel_price)
    depreciation_cost = r2(distance * depreciation_per_km)
    taxes_cost = r2(daily_taxes * days)

    if (trip.get("driver_pay_mode") or "per_trip") == "per_trip":
        driver_cost = _non_negative(trip.get("driver_pay_uah"))
    else:
        driver_cost = r2(_non_negative(trip.get("driver_pay_uah_per_day")) * days)
    driver_cost = r2(driver_cost)

    total = r2(fuel_cost + depreciation_cost + taxes_cost + driver_cost + extra)
    profit = r2(freight - total)
    profit_per_km = r2(profit / distance) if distance > 0 else 0
    roi = r2(profit / total * 100) if total > 0 else 0

    if profit > 0:
        status = "profit"
    elif profit == 0:
        status = "breakeven"
    else:
        status = "loss"

    return {
        "distance_km": distance,
        "fuel_used_l": fuel_used,
        "fuel_cost_uah": fuel_cost,
        "depreciation_cost_uah": depreciation_cost,
        "taxes_cost_uah": taxes_cost,
        "driver_cost_uah": driver_cost,
        "total_costs_uah": total,
        "profit_uah": profit,
        "profit_per_km_uah": profit_per_km,
        "roi_percent": roi,
        "status": status,
    }


def _parse_ts(value) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value.replace(tzinfo=None)
    text = str(value).replace("T", " ").rstrip("Z")
    try:
        return datetime.fromisoformat(text).replace(tzinfo=None)
    except ValueError:
        return None


def shift_hours(created_at, completed_at) -> float:
    """Hours between opening and closing a shift, capped at a full day"""
    start, end = _parse_ts(created_at), _parse_ts(completed_at)
    if not start or not end or end < start:
        return 0.0
    hours = (end - start).total_seconds() / 3600
    return min(hours, MAX_SHIFT_HOURS)


def calculate_shift_wages(production, created_at=None, completed_at=None,
                          hourly_rate: float = DEFAULT_HOURLY_RATE, hours: Optional[float] = None) -> dict:
    lines = []
    product_wages = 0.0
    for item in production:
        reward = item.get("reward") or 0
        quantity = item.get("quantity") or 0
        if reward <= 0:
            continue
        amount = quantity * reward
        product_wages += amount
        lines.append({"product_id": item.get("product_id"), "name": item.get("name"),
                      "quantity": quantity, "reward": reward, "amount": r2(amount)})

    if hours is None:
        hours = shift_hours(created_at, completed_at)
    hourly_wages = hours * hourly_rate
    return {
        "hours": r2(hours),
        "hourly_rate": hourly_rate,
        "hourly_wages": r2(hourly_wages),
        "product_wages": r2(product_wages),
        "total_wages": r2(hourly_wages + product_wages),
        "products": lines,
    }


def period_start(period: str, today: Optional[date] = None) -> date:
    """First day of the current year, month, ISO week (Monday) or the day itself"""
    today = today or date.today()
    if period == "month":
        return today.replace(day=1)
    if period == "week":
        return today - timedelta(days=today.weekday())
    if period == "day":
        return today
    return today.replace(month=1, day=1)


def expense_period_start(period: str, today: Optional[date] = None) -> date:
    """Like period_start, but the expense week runs Saturday to Friday"""
    today = today or date.today()
    if period == "week":
        return today - timedelta(days=(today.weekday() - 5) % 7)
    return period_start(period, today)


def period_end(period: str, today: Optional[date] = None) -> date:
    """Last day (inclusive) of the expense reporting period containing today"""
    today = today or date.today()
    if period == "month":
        first_of_next = (today.replace(day=28) + timedelta(days=4)).replace(day=1)
        return first_of_next - timedelta(days=1)
    if period == "week":
        return expense_period_start(period, today) + timedelta(days=6)
    if period == "day":
        return today
    return today.replace(month=12, day=31)
