"""Lenient normalization of dashboard query parameters.

Bad values never raise: they fall back to "no filter", a default, or the
nearest valid bound.
"""
from __future__ import annotations

import math
import re
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

from .models import DEVICE_TYPES, utcnow
from .schemas import AnalyticsFilters, DimensionFilters, Granularity

DEFAULT_GRANULARITY: Granularity = "daily"
GRANULARITIES = ("daily", "weekly", "monthly")
DEFAULT_RANGE_DAYS = 30
MAX_RANGE_DAYS = 90

BROWSER_MAX_LENGTH = 100
BROWSER_PATTERN = re.compile(r"^[\w .+()/-]+$")
COUNTRY_PATTERN = re.compile(r"^[A-Z]{2}$")
DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def normalize_device(value: Optional[str]) -> Optional[str]:
    if value in DEVICE_TYPES:
        return value
    return None


def normalize_browser(value: Optional[str]) -> Optional[str]:
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    if not trimmed or len(trimmed) > BROWSER_MAX_LENGTH:
        return None
    if not BROWSER_PATTERN.match(trimmed):
        return None
    return trimmed


def normalize_country(value: Optional[str]) -> Optional[str]:
    if not isinstance(value, str):
        return None
    candidate = value.strip().upper()
    if not COUNTRY_PATTERN.match(candidate):
        return None
    return candidate


def normalize_minutes(value: Optional[str], default: int = 5, maximum: int = 30) -> int:
    try:
        parsed = float(value) if value is not None else math.nan
    except (TypeError, ValueError):
        return default
    if not math.isfinite(parsed):
        return default
    rounded = math.floor(parsed)
    if rounded < 1:
        return default
    return min(rounded, maximum)


def normalize_granularity(value: Optional[str]) -> Granularity:
    if value in GRANULARITIES:
        return value  # type: ignore[return-value]
    return DEFAULT_GRANULARITY


def start_of_day(value: datetime) -> datetime:
    return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)


def end_of_day(value: datetime) -> datetime:
    return start_of_day(value) + timedelta(days=1, microseconds=-1)


def parse_date_param(value: Optional[str]) -> Optional[datetime]:
    if not isinstance(value, str) or not DATE_PATTERN.match(value):
        return None
    year, month, day = (int(part) for part in value.split("-"))
    try:
        return datetime(year, month, day, tzinfo=timezone.utc)
    except ValueError:
        return None


def normalize_range(
    from_param: Optional[str],
    to_param: Optional[str],
    now: Optional[datetime] = None,
) -> Tuple[datetime, datetime]:
    now = now or utcnow()
    default_to = end_of_day(now)
    default_from = start_of_day(now - timedelta(days=DEFAULT_RANGE_DAYS - 1))

    start = start_of_day(parse_date_param(from_param) or default_from)
    end = end_of_day(parse_date_param(to_param) or default_to)

    if end > default_to:
        end = default_to
    if start > end:
        start, end = default_from, default_to

    range_days = (end - start).days + 1
    if range_days > MAX_RANGE_DAYS:
        end = end_of_day(start + timedelta(days=MAX_RANGE_DAYS - 1))
    return start, end


def build_dimension_filters(
    device: Optional[str] = None,
    browser: Optional[str] = None,
    country: Optional[str] = None,
) -> DimensionFilters:
    return DimensionFilters(
        device_type=normalize_device(device),
        browser=normalize_browser(browser),
        country=normalize_country(country),
    )


def build_analytics_filters(
    from_param: Optional[str] = None,
    to_param: Optional[str] = None,
    device: Optional[str] = None,
    browser: Optional[str] = None,
    country: Optional[str] = None,
    now: Optional[datetime] = None,
) -> AnalyticsFilters:
    start, end = normalize_range(from_param, to_param, now=now)
    dimensions = build_dimension_filters(device, browser, country)
    return AnalyticsFilters(start=start, end=end, **dimensions.model_dump())
