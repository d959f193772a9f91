"""FastAPI application entrypoint for beacon ingestion and dashboard queries."""
from __future__ import annotations

import logging
from typing import Dict, Iterator, List, Mapping, Optional, Tuple

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from . import aggregation
from .auth import current_owner_id
from .config import clear_settings_cache, get_settings
from .database import SessionLocal, engine
from .errors import IngestionError, WriteFailure
from .filters import build_analytics_filters, build_dimension_filters, normalize_granularity, normalize_minutes
from .ingest import ingest_beacon
from .models import Base, Website, utcnow
from .rate_limit import FixedWindowRateLimiter, build_rate_limiter, hash_client_ip
from .registry import delete_website, get_owned_website
from .schemas import (
    ActiveUsersOut,
    AnalyticsFilters,
    BreakdownEntry,
    DashboardOut,
    FilterOptions,
    OverviewMetrics,
    TimeSeriesPoint,
)

logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)

Base.metadata.create_all(bind=engine)

app = FastAPI(
    title="Page-View Analytics API",
    description="Collects page-view beacons from tracked websites and serves aggregated analytics.",
    version="0.1.0",
)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}
GENERIC_INGESTION_ERROR = "Unable to process tracking event."


def get_db() -> Iterator[Session]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _get_track_rate_limiter() -> FixedWindowRateLimiter:
    settings = get_settings()
    return build_rate_limiter(settings.track_rate_limit, settings.track_rate_window, settings)


def _get_query_rate_limiter() -> FixedWindowRateLimiter:
    settings = get_settings()
    return build_rate_limiter(settings.query_rate_limit, settings.query_rate_window, settings)


_track_rate_limiter = _get_track_rate_limiter()
_query_rate_limiter = _get_query_rate_limiter()


def _cors_json(status_code: int, content: Dict) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=content, headers=CORS_HEADERS)


def handle_track(body: bytes, headers: Mapping[str, str], db: Session) -> JSONResponse:
    try:
        ingest_beacon(db, body, headers, _track_rate_limiter)
    except WriteFailure:
        return _cors_json(status.HTTP_500_INTERNAL_SERVER_ERROR, {"error": GENERIC_INGESTION_ERROR})
    except IngestionError as exc:
        return _cors_json(exc.status_code, {"error": exc.message})
    except Exception:  # pragma: no cover - log unexpected failures
        logger.exception("Unexpected failure while ingesting beacon")
        return _cors_json(status.HTTP_500_INTERNAL_SERVER_ERROR, {"error": GENERIC_INGESTION_ERROR})
    return _cors_json(status.HTTP_200_OK, {"success": True})


@app.options("/api/track")
def track_preflight() -> Response:
    return Response(status_code=status.HTTP_204_NO_CONTENT, headers=CORS_HEADERS)


@app.post("/api/track")
async def track(request: Request, db: Session = Depends(get_db)) -> JSONResponse:
    body = await request.body()
    return await run_in_threadpool(handle_track, body, request.headers, db)


# Dashboard queries


def _enforce_query_rate_limit(request: Request) -> None:
    client_identifier = "anonymous"
    if request.client:
        client_identifier = request.client.host or client_identifier

    key = hash_client_ip(client_identifier, get_settings().ip_hash_salt)
    if not _query_rate_limiter.admit(key):
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail="Rate limit exceeded")


def owned_website(
    website_id: str,
    owner_id: str = Depends(current_owner_id),
    db: Session = Depends(get_db),
) -> Website:
    website = get_owned_website(db, website_id, owner_id)
    if website is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not found")
    return website


def _dashboard_active_window() -> Tuple[int, int]:
    settings = get_settings()
    maximum = settings.max_active_minutes
    return aggregation.clamp_active_minutes(settings.default_active_minutes, maximum), maximum


def query_filters(
    from_: Optional[str] = Query(None, alias="from"),
    to: Optional[str] = Query(None),
    device: Optional[str] = Query(None),
    browser: Optional[str] = Query(None),
    country: Optional[str] = Query(None),
) -> AnalyticsFilters:
    return build_analytics_filters(from_, to, device, browser, country)


@app.get("/api/analytics/active", response_model=ActiveUsersOut)
def get_active_users(
    request: Request,
    response: Response,
    website_id: Optional[str] = Query(None, alias="websiteId"),
    minutes: Optional[str] = Query(None),
    device: Optional[str] = Query(None),
    browser: Optional[str] = Query(None),
    country: Optional[str] = Query(None),
    owner_id: str = Depends(current_owner_id),
    db: Session = Depends(get_db),
) -> ActiveUsersOut:
    _enforce_query_rate_limit(request)
    if not website_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing websiteId")
    website = owned_website(website_id, owner_id, db)

    settings = get_settings()
    window = normalize_minutes(minutes, settings.default_active_minutes, settings.max_active_minutes)
    filters = build_dimension_filters(device, browser, country)
    count = aggregation.active_users(
        db, website.id, filters, window, max_minutes=settings.max_active_minutes
    )

    response.headers["Cache-Control"] = "no-store"
    return ActiveUsersOut(active_users=count, updated_at=utcnow())


@app.get("/api/analytics/{website_id}/overview", response_model=OverviewMetrics)
def get_overview(
    website: Website = Depends(owned_website),
    filters: AnalyticsFilters = Depends(query_filters),
    db: Session = Depends(get_db),
) -> OverviewMetrics:
    minutes, maximum = _dashboard_active_window()
    return aggregation.overview_metrics(db, website.id, filters, minutes, max_minutes=maximum)


@app.get("/api/analytics/{website_id}/timeseries", response_model=List[TimeSeriesPoint])
def get_time_series(
    granularity: Optional[str] = Query(None),
    website: Website = Depends(owned_website),
    filters: AnalyticsFilters = Depends(query_filters),
    db: Session = Depends(get_db),
) -> List[TimeSeriesPoint]:
    return aggregation.time_series(db, website.id, filters, normalize_granularity(granularity))


@app.get("/api/analytics/{website_id}/breakdowns/{dimension}", response_model=List[BreakdownEntry])
def get_breakdown(
    dimension: str,
    website: Website = Depends(owned_website),
    filters: AnalyticsFilters = Depends(query_filters),
    db: Session = Depends(get_db),
) -> List[BreakdownEntry]:
    if dimension not in aggregation.BREAKDOWN_DIMENSIONS:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown breakdown")
    return aggregation.breakdown(db, website.id, filters, dimension)


@app.get("/api/analytics/{website_id}/filters", response_model=FilterOptions)
def get_filter_options(
    website: Website = Depends(owned_website),
    filters: AnalyticsFilters = Depends(query_filters),
    db: Session = Depends(get_db),
) -> FilterOptions:
    return aggregation.filter_options(db, website.id, filters)


@app.get("/api/analytics/{website_id}/dashboard", response_model=DashboardOut)
def get_dashboard(
    granularity: Optional[str] = Query(None),
    website: Website = Depends(owned_website),
    filters: AnalyticsFilters = Depends(query_filters),
    db: Session = Depends(get_db),
) -> DashboardOut:
    minutes, maximum = _dashboard_active_window()
    return aggregation.dashboard(
        db,
        website.id,
        filters,
        normalize_granularity(granularity),
        minutes,
        max_minutes=maximum,
    )


@app.delete("/api/websites/{website_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_website(
    website: Website = Depends(owned_website),
    db: Session = Depends(get_db),
) -> Response:
    delete_website(db, website.id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


def reset_application_state() -> None:
    """Reset mutable globals for test isolation."""

    global _track_rate_limiter, _query_rate_limiter
    clear_settings_cache()
    _track_rate_limiter = _get_track_rate_limiter()
    _query_rate_limiter = _get_query_rate_limiter()
