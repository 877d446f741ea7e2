from __future__ import annotations

import datetime as dt
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Tuple, Union

UTC = dt.timezone.utc

CENT = Decimal("0.01")
MINUTES_PER_HOUR = Decimal(60)

Number = Union[Decimal, int, float, str]


def now_utc() -> dt.datetime:
    return dt.datetime.now(UTC)


def ensure_utc(value: dt.datetime) -> dt.datetime:
    """Normalize a datetime to aware UTC; naive values are read as UTC (SQLite drops tzinfo)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def optional_utc(value: Optional[dt.datetime]) -> Optional[dt.datetime]:
    if value is None:
        return None
    return ensure_utc(value)


def to_decimal(value: Optional[Number]) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round_money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def amount_for_minutes(minutes: int, hourly_rate: Optional[Number]) -> Decimal:
    """Money for whole minutes at an hourly rate, rounded half-up to cents."""
    if minutes <= 0 or hourly_rate is None:
        return Decimal("0.00")
    return round_money(Decimal(minutes) * to_decimal(hourly_rate) / MINUTES_PER_HOUR)


def minutes_to_hours(minutes: Optional[int]) -> Decimal:
    if not minutes:
        return Decimal("0.00")
    return round_money(Decimal(minutes) / MINUTES_PER_HOUR)


def hours_to_minutes(hours: Number) -> int:
    return int((to_decimal(hours) * MINUTES_PER_HOUR).to_integral_value(rounding=ROUND_HALF_UP))


def whole_minutes(delta: dt.timedelta) -> int:
    seconds = int(delta.total_seconds())
    if seconds <= 0:
        return 0
    return seconds // 60


def local_date(value: dt.datetime, tz: dt.tzinfo) -> dt.date:
    """Calendar date of an instant in the configured local time zone."""
    return ensure_utc(value).astimezone(tz).date()


def local_day_bounds(start_day: dt.date, end_day: dt.date, tz: dt.tzinfo) -> Tuple[dt.datetime, dt.datetime]:
    """UTC instants covering the local calendar days ``start_day`` through ``end_day``."""
    start_local = dt.datetime.combine(start_day, dt.time.min, tzinfo=tz)
    end_local = dt.datetime.combine(end_day, dt.time.min, tzinfo=tz) + dt.timedelta(days=1)
    return start_local.astimezone(UTC), end_local.astimezone(UTC)
