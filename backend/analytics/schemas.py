"""Pydantic models for beacon payloads, pipeline records and query responses."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

Granularity = Literal["daily", "weekly", "monthly"]


# Beacon input. Anything that does not fit these shapes is malformed input.


class PageInfo(BaseModel):
    url: Optional[str] = None
    pathname: Optional[str] = None
    title: Optional[str] = None


class DeviceInfo(BaseModel):
    user_agent: Optional[str] = None
    device_type: Any = None
    os_name: Optional[str] = None
    browser_name: Optional[str] = None


class EventPayload(BaseModel):
    page: Optional[PageInfo] = None
    device: Optional[DeviceInfo] = None
    referrer: Optional[str] = None
    timestamp: Any = None


class BeaconEvent(BaseModel):
    tracking_id: Optional[str] = Field(None, description="Per-website tracking credential")
    session_id: Optional[str] = Field(None, description="Client-generated session identifier")
    event_type: Optional[str] = Field(None, description="Type of the event, e.g. page_view")
    event_payload: Optional[EventPayload] = None


class BeaconBatch(BaseModel):
    """A structurally valid batch whose items all carry one tracking id."""

    tracking_id: str
    events: List[BeaconEvent]


# Pipeline records


class ValidatedEvent(BaseModel):
    website_id: str
    tracking_id: str
    session_id: str
    event_type: str
    page_url: Optional[str] = None
    page_path: Optional[str] = None
    page_title: Optional[str] = None
    referrer: Optional[str] = None
    user_agent: Optional[str] = None
    device_type: str = "unknown"
    browser: Optional[str] = None
    os: Optional[str] = None
    country: Optional[str] = None
    occurred_at: datetime
    received_at: datetime


class SessionUpsert(BaseModel):
    id: str
    website_id: str
    first_seen_at: datetime
    last_seen_at: datetime
    device_type: str = "unknown"
    browser: Optional[str] = None
    os: Optional[str] = None
    country: Optional[str] = None


# Query parameters


class DimensionFilters(BaseModel):
    device_type: Optional[Literal["mobile", "tablet", "desktop"]] = None
    browser: Optional[str] = None
    country: Optional[str] = None


class AnalyticsFilters(DimensionFilters):
    start: datetime
    end: datetime


# Responses


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class OverviewMetrics(CamelModel):
    visitors: int = 0
    page_views: int = 0
    sessions: int = 0
    active_users: int = 0


class TimeSeriesPoint(CamelModel):
    bucket: datetime
    visitors: int = 0
    page_views: int = 0
    sessions: int = 0


class BreakdownEntry(CamelModel):
    label: str
    count: int


class FilterOptions(CamelModel):
    devices: List[str] = Field(default_factory=list)
    browsers: List[str] = Field(default_factory=list)
    countries: List[str] = Field(default_factory=list)


class ActiveUsersOut(CamelModel):
    active_users: int
    updated_at: datetime


class AppliedFilters(CamelModel):
    start: datetime
    end: datetime
    granularity: Granularity
    device_type: Optional[str] = None
    browser: Optional[str] = None
    country: Optional[str] = None


class DashboardOut(CamelModel):
    website_id: str
    filters: AppliedFilters
    active_minutes: int
    overview: OverviewMetrics
    time_series: List[TimeSeriesPoint]
    filter_options: FilterOptions
    breakdowns: Dict[str, List[BreakdownEntry]]
