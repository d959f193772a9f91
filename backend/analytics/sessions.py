"""Session reconciliation: fold a batch of events into per-session upserts."""
from __future__ import annotations

from typing import Dict, Iterable

from .models import UNKNOWN_DEVICE
from .schemas import SessionUpsert, ValidatedEvent


def reconcile(events: Iterable[ValidatedEvent]) -> Dict[str, SessionUpsert]:
    """Group events by session id into watermark upsert descriptors.

    ``first_seen_at``/``last_seen_at`` are the min/max event times of the
    group. Each dimensional field takes the value of the latest event that
    knows it.
    """
    sessions: Dict[str, SessionUpsert] = {}
    for event in sorted(events, key=lambda item: item.occurred_at):
        current = sessions.get(event.session_id)
        if current is None:
            sessions[event.session_id] = SessionUpsert(
                id=event.session_id,
                website_id=event.website_id,
                first_seen_at=event.occurred_at,
                last_seen_at=event.occurred_at,
                device_type=event.device_type,
                browser=event.browser,
                os=event.os,
                country=event.country,
            )
            continue

        current.first_seen_at = min(current.first_seen_at, event.occurred_at)
        current.last_seen_at = max(current.last_seen_at, event.occurred_at)
        if event.device_type != UNKNOWN_DEVICE:
            current.device_type = event.device_type
        if event.browser:
            current.browser = event.browser
        if event.os:
            current.os = event.os
        if event.country:
            current.country = event.country
    return sessions
