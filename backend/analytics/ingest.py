"""Beacon ingestion pipeline: parse, admit, validate, reconcile, commit."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Mapping, Optional

from sqlalchemy.orm import Session

from .config import Settings, get_settings
from .errors import PayloadTooLarge
from .rate_limit import FixedWindowRateLimiter
from .sessions import reconcile
from .validation import parse_batch, resolve_country, validate_batch
from .writer import commit_batch

logger = logging.getLogger(__name__)


def ingest_beacon(
    db: Session,
    body: bytes,
    headers: Mapping[str, str],
    limiter: FixedWindowRateLimiter,
    settings: Optional[Settings] = None,
    received_at: Optional[datetime] = None,
) -> int:
    """Process one beacon request and return the number of stored events.

    Raises an ``IngestionError`` subclass when the request is rejected.
    Nothing is written unless every event in the batch is valid.
    """
    settings = settings or get_settings()

    content_length = headers.get("content-length", "")
    if content_length.isdigit() and int(content_length) > settings.max_body_bytes:
        raise PayloadTooLarge("Payload too large.")

    batch = parse_batch(body, settings.max_batch_events, settings.max_body_bytes)
    limiter.check(batch.tracking_id)

    country = resolve_country(headers, settings)
    events = validate_batch(db, batch, country=country, received_at=received_at)
    sessions = reconcile(events)
    commit_batch(db, events, sessions.values())

    logger.debug(
        "Stored %d events across %d sessions for tracking id %s",
        len(events),
        len(sessions),
        batch.tracking_id,
    )
    return len(events)
