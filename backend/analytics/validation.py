"""Beacon batch parsing and per-event normalization."""
from __future__ import annotations

import json
import re
from datetime import datetime, timedelta
from typing import Any, List, Mapping, Optional

from pydantic import ValidationError
from sqlalchemy.orm import Session

from .config import Settings, get_settings
from .errors import MalformedInput, PayloadTooLarge, UnknownTenant
from .models import DEVICE_TYPES, UNKNOWN_DEVICE, Website, as_utc, utcnow
from .registry import resolve_tracking_id
from .schemas import BeaconBatch, BeaconEvent, DeviceInfo, EventPayload, PageInfo, ValidatedEvent

ID_MAX_LENGTH = 64
EVENT_TYPE_MAX_LENGTH = 50
URL_MAX_LENGTH = 1000
TITLE_MAX_LENGTH = 500
REFERRER_MAX_LENGTH = 500
USER_AGENT_MAX_LENGTH = 500
LABEL_MAX_LENGTH = 100

# Client clocks are trusted only inside this window around receipt time.
MAX_CLIENT_CLOCK_AHEAD = timedelta(minutes=5)
MAX_CLIENT_EVENT_AGE = timedelta(hours=24)

COUNTRY_PATTERN = re.compile(r"^[A-Z]{2}$")
COUNTRY_HEADERS = ("x-vercel-ip-country", "cf-ipcountry", "x-country", "x-geo-country")
DEV_COUNTRY_HEADER = "x-dev-country"


def safe_string(value: Any, max_length: int) -> Optional[str]:
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    if not trimmed:
        return None
    try:
        trimmed.encode("utf-8")
    except UnicodeEncodeError as exc:
        raise MalformedInput("Invalid event payload.") from exc
    return trimmed[:max_length]


def safe_country(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    candidate = value.strip().upper()
    if not COUNTRY_PATTERN.match(candidate):
        return None
    return candidate


def normalize_device_type(value: Any) -> str:
    if value in DEVICE_TYPES:
        return value
    return UNKNOWN_DEVICE


def resolve_country(headers: Mapping[str, str], settings: Optional[Settings] = None) -> Optional[str]:
    """Pick the first valid country code from upstream geo headers."""
    for header in COUNTRY_HEADERS:
        country = safe_country(headers.get(header))
        if country:
            return country

    settings = settings or get_settings()
    if settings.is_development:
        return safe_country(settings.dev_country) or safe_country(headers.get(DEV_COUNTRY_HEADER))
    return None


def parse_client_timestamp(value: Any, received_at: datetime) -> Optional[datetime]:
    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = as_utc(datetime.fromisoformat(text))
    except (ValueError, OverflowError):
        return None
    if parsed > received_at + MAX_CLIENT_CLOCK_AHEAD:
        return None
    if parsed < received_at - MAX_CLIENT_EVENT_AGE:
        return None
    return parsed


def parse_batch(body: bytes, max_events: int, max_body_bytes: int) -> BeaconBatch:
    """Decode a raw request body into a single-tenant batch of beacon events."""
    if len(body) > max_body_bytes:
        raise PayloadTooLarge("Payload too large.")

    try:
        raw = json.loads(body)
    except (ValueError, RecursionError) as exc:
        raise MalformedInput("Malformed JSON payload.") from exc

    items = raw if isinstance(raw, list) else [raw]
    if not items or len(items) > max_events:
        raise MalformedInput("Invalid batch size.")

    events: List[BeaconEvent] = []
    for item in items:
        if not isinstance(item, dict):
            raise MalformedInput("Invalid event payload.")
        try:
            events.append(BeaconEvent.model_validate(item))
        except ValidationError as exc:
            raise MalformedInput("Invalid event payload.") from exc

    tracking_id = safe_string(events[0].tracking_id, ID_MAX_LENGTH)
    if not tracking_id:
        raise MalformedInput("Tracking ID is required.")
    if any(safe_string(event.tracking_id, ID_MAX_LENGTH) != tracking_id for event in events):
        raise MalformedInput("Mixed tracking IDs are not allowed.")

    return BeaconBatch(tracking_id=tracking_id, events=events)


def _validate_event(
    event: BeaconEvent,
    website: Website,
    tracking_id: str,
    country: Optional[str],
    received_at: datetime,
) -> ValidatedEvent:
    event_type = safe_string(event.event_type, EVENT_TYPE_MAX_LENGTH)
    session_id = safe_string(event.session_id, ID_MAX_LENGTH)
    payload: Optional[EventPayload] = event.event_payload
    if not event_type or not session_id or payload is None:
        raise MalformedInput("Invalid event payload.")

    page = payload.page or PageInfo()
    device = payload.device or DeviceInfo()
    page_url = safe_string(page.url, URL_MAX_LENGTH)
    page_path = safe_string(page.pathname, URL_MAX_LENGTH)
    if not page_url and not page_path:
        raise MalformedInput("Page data is required.")

    occurred_at = parse_client_timestamp(payload.timestamp, received_at) or received_at
    return ValidatedEvent(
        website_id=website.id,
        tracking_id=tracking_id,
        session_id=session_id,
        event_type=event_type,
        page_url=page_url,
        page_path=page_path,
        page_title=safe_string(page.title, TITLE_MAX_LENGTH),
        referrer=safe_string(payload.referrer, REFERRER_MAX_LENGTH),
        user_agent=safe_string(device.user_agent, USER_AGENT_MAX_LENGTH),
        device_type=normalize_device_type(device.device_type),
        browser=safe_string(device.browser_name, LABEL_MAX_LENGTH),
        os=safe_string(device.os_name, LABEL_MAX_LENGTH),
        country=safe_country(country),
        occurred_at=occurred_at,
        received_at=received_at,
    )


def validate_batch(
    db: Session,
    batch: BeaconBatch,
    country: Optional[str] = None,
    received_at: Optional[datetime] = None,
) -> List[ValidatedEvent]:
    """Resolve the tenant and normalize every event, or reject the whole batch."""
    website = resolve_tracking_id(db, batch.tracking_id)
    if website is None:
        raise UnknownTenant("Tracking ID not found.")

    received_at = as_utc(received_at) if received_at is not None else utcnow()
    return [
        _validate_event(event, website, batch.tracking_id, country, received_at)
        for event in batch.events
    ]
