"""Read-side aggregation over persisted page-view events and sessions.

Every query is scoped to one website, counts only ``page_view`` events and
is bounded by the caller's time range and top-N limits. Nothing here writes.
"""
from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from typing import Dict, Iterable, List, Optional

from sqlalchemy import distinct, func, literal_column, select
from sqlalchemy.orm import Session

from .filters import start_of_day
from .models import PAGE_VIEW, UNKNOWN_DEVICE, Event, VisitorSession, utcnow
from .schemas import (
    AnalyticsFilters,
    AppliedFilters,
    BreakdownEntry,
    DashboardOut,
    DimensionFilters,
    FilterOptions,
    Granularity,
    OverviewMetrics,
    TimeSeriesPoint,
)

logger = logging.getLogger(__name__)

TOP_N = 12
DEFAULT_ACTIVE_MINUTES = 5
MAX_ACTIVE_MINUTES = 30

BREAKDOWN_DIMENSIONS = {
    "device": Event.device_type,
    "browser": Event.browser,
    "country": Event.country,
    "os": Event.os,
    "page": func.coalesce(Event.page_path, Event.page_url),
    "referrer": Event.referrer,
}

# Distinct sessions, or the coarse client signature when a session id is missing.
VISITOR_KEY = func.coalesce(Event.session_id, Event.user_agent)

_TRUNC_UNITS = {"daily": "day", "weekly": "week", "monthly": "month"}
_SQLITE_BUCKETS = {
    "daily": lambda column: func.date(column),
    # Monday of the ISO week.
    "weekly": lambda column: func.date(column, literal_column("'weekday 0'"), literal_column("'-6 days'")),
    "monthly": lambda column: func.strftime(literal_column("'%Y-%m-01'"), column),
}


def _event_conditions(
    website_id: str,
    filters: DimensionFilters,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    exclude: Iterable[str] = (),
) -> list:
    exclude = set(exclude)
    conditions = [Event.website_id == website_id, Event.event_type == PAGE_VIEW]
    if start is not None:
        conditions.append(Event.occurred_at >= start)
    if end is not None:
        conditions.append(Event.occurred_at <= end)
    if filters.device_type and "device" not in exclude:
        conditions.append(Event.device_type == filters.device_type)
    if filters.browser and "browser" not in exclude:
        conditions.append(Event.browser == filters.browser)
    if filters.country and "country" not in exclude:
        conditions.append(Event.country == filters.country)
    return conditions


def _session_conditions(website_id: str, filters: DimensionFilters) -> list:
    conditions = [VisitorSession.website_id == website_id]
    if filters.device_type:
        conditions.append(VisitorSession.device_type == filters.device_type)
    if filters.browser:
        conditions.append(VisitorSession.browser == filters.browser)
    if filters.country:
        conditions.append(VisitorSession.country == filters.country)
    return conditions


def clamp_active_minutes(minutes: int, maximum: int = MAX_ACTIVE_MINUTES) -> int:
    return max(1, min(int(minutes), maximum))


def active_users(
    db: Session,
    website_id: str,
    filters: DimensionFilters,
    minutes: int = DEFAULT_ACTIVE_MINUTES,
    now: Optional[datetime] = None,
    max_minutes: int = MAX_ACTIVE_MINUTES,
) -> int:
    """Distinct sessions seen within the trailing window.

    The session store is authoritative. When it reports nobody, fall back to
    the newest events per session, which covers events whose session upsert
    is not visible yet.
    """
    cutoff = (now or utcnow()) - timedelta(minutes=clamp_active_minutes(minutes, max_minutes))

    session_stmt = (
        select(func.count())
        .select_from(VisitorSession)
        .where(*_session_conditions(website_id, filters), VisitorSession.last_seen_at >= cutoff)
    )
    session_count = db.execute(session_stmt).scalar_one() or 0
    if session_count:
        return session_count

    event_stmt = select(func.count(distinct(Event.session_id))).where(
        *_event_conditions(website_id, filters), Event.occurred_at >= cutoff
    )
    event_count = db.execute(event_stmt).scalar_one() or 0
    if event_count:
        logger.debug("Active users for %s served from events (%d)", website_id, event_count)
    return event_count


def overview_metrics(
    db: Session,
    website_id: str,
    filters: AnalyticsFilters,
    active_minutes: int = DEFAULT_ACTIVE_MINUTES,
    now: Optional[datetime] = None,
    max_minutes: int = MAX_ACTIVE_MINUTES,
) -> OverviewMetrics:
    stmt = select(
        func.count(),
        func.count(distinct(Event.session_id)),
        func.count(distinct(VISITOR_KEY)),
    ).where(*_event_conditions(website_id, filters, filters.start, filters.end))
    page_views, sessions, visitors = db.execute(stmt).one()
    return OverviewMetrics(
        visitors=visitors or 0,
        page_views=page_views or 0,
        sessions=sessions or 0,
        active_users=active_users(db, website_id, filters, active_minutes, now=now, max_minutes=max_minutes),
    )


# Time series


def truncate_to_bucket(value: datetime, granularity: Granularity) -> datetime:
    day = start_of_day(value)
    if granularity == "weekly":
        return day - timedelta(days=day.weekday())
    if granularity == "monthly":
        return day.replace(day=1)
    return day


def next_bucket(bucket: datetime, granularity: Granularity) -> datetime:
    if granularity == "weekly":
        return bucket + timedelta(days=7)
    if granularity == "monthly":
        if bucket.month == 12:
            return bucket.replace(year=bucket.year + 1, month=1)
        return bucket.replace(month=bucket.month + 1)
    return bucket + timedelta(days=1)


def bucket_starts(start: datetime, end: datetime, granularity: Granularity) -> List[datetime]:
    buckets = []
    current = truncate_to_bucket(start, granularity)
    last = truncate_to_bucket(end, granularity)
    while current <= last:
        buckets.append(current)
        current = next_bucket(current, granularity)
    return buckets


def _bucket_expression(dialect_name: str, granularity: Granularity):
    if dialect_name == "postgresql":
        unit = _TRUNC_UNITS[granularity]
        return func.date_trunc(
            literal_column(f"'{unit}'"),
            func.timezone(literal_column("'UTC'"), Event.occurred_at),
        )
    return _SQLITE_BUCKETS[granularity](Event.occurred_at)


def _bucket_key(value) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def time_series(
    db: Session,
    website_id: str,
    filters: AnalyticsFilters,
    granularity: Granularity = "daily",
) -> List[TimeSeriesPoint]:
    """Dense per-bucket series from ``trunc(start)`` through ``trunc(end)``.

    Buckets without traffic are emitted with zero counts.
    """
    bucket = _bucket_expression(db.get_bind().dialect.name, granularity).label("bucket")
    stmt = (
        select(
            bucket,
            func.count().label("page_views"),
            func.count(distinct(Event.session_id)).label("sessions"),
            func.count(distinct(VISITOR_KEY)).label("visitors"),
        )
        .where(*_event_conditions(website_id, filters, filters.start, filters.end))
        .group_by(bucket)
    )
    aggregated = {_bucket_key(row.bucket): row for row in db.execute(stmt)}

    points = []
    for bucket_start in bucket_starts(filters.start, filters.end, granularity):
        row = aggregated.get(bucket_start.date())
        points.append(
            TimeSeriesPoint(
                bucket=bucket_start,
                visitors=row.visitors if row else 0,
                page_views=row.page_views if row else 0,
                sessions=row.sessions if row else 0,
            )
        )
    return points


# Breakdowns


def breakdown(
    db: Session,
    website_id: str,
    filters: AnalyticsFilters,
    dimension: str,
    limit: int = TOP_N,
    exclude_self: bool = False,
) -> List[BreakdownEntry]:
    """Ranked ``(label, count)`` pairs for one dimension.

    With ``exclude_self`` the filter on ``dimension`` itself is ignored while
    every other active filter still applies.
    """
    try:
        column = BREAKDOWN_DIMENSIONS[dimension]
    except KeyError:
        raise ValueError(f"Unknown breakdown dimension: {dimension}") from None

    label = column.label("label")
    total = func.count().label("total")
    conditions = _event_conditions(
        website_id,
        filters,
        filters.start,
        filters.end,
        exclude=(dimension,) if exclude_self else (),
    )
    stmt = (
        select(label, total)
        .where(*conditions, column.is_not(None), column != "")
        .group_by(label)
        .order_by(total.desc(), label.asc())
        .limit(limit)
    )
    return [
        BreakdownEntry(label=row.label, count=row.total)
        for row in db.execute(stmt)
        if row.label and row.label.strip()
    ]


def all_breakdowns(db: Session, website_id: str, filters: AnalyticsFilters) -> Dict[str, List[BreakdownEntry]]:
    return {dimension: breakdown(db, website_id, filters, dimension) for dimension in BREAKDOWN_DIMENSIONS}


def filter_options(db: Session, website_id: str, filters: AnalyticsFilters) -> FilterOptions:
    """Candidate values for each filter dropdown, each ignoring its own filter."""

    def candidates(dimension: str) -> List[str]:
        return [entry.label for entry in breakdown(db, website_id, filters, dimension, exclude_self=True)]

    return FilterOptions(
        devices=[label for label in candidates("device") if label != UNKNOWN_DEVICE],
        browsers=candidates("browser"),
        countries=candidates("country"),
    )


def dashboard(
    db: Session,
    website_id: str,
    filters: AnalyticsFilters,
    granularity: Granularity = "daily",
    active_minutes: int = DEFAULT_ACTIVE_MINUTES,
    now: Optional[datetime] = None,
    max_minutes: int = MAX_ACTIVE_MINUTES,
) -> DashboardOut:
    active_minutes = clamp_active_minutes(active_minutes, max_minutes)
    return DashboardOut(
        website_id=website_id,
        filters=AppliedFilters(
            start=filters.start,
            end=filters.end,
            granularity=granularity,
            device_type=filters.device_type,
            browser=filters.browser,
            country=filters.country,
        ),
        active_minutes=active_minutes,
        overview=overview_metrics(db, website_id, filters, active_minutes, now=now, max_minutes=max_minutes),
        time_series=time_series(db, website_id, filters, granularity),
        filter_options=filter_options(db, website_id, filters),
        breakdowns=all_breakdowns(db, website_id, filters),
    )
