"""SQLAlchemy models for websites, page-view events and visitor sessions."""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Column, DateTime, Index, String, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()

DEVICE_TYPES = ("mobile", "tablet", "desktop")
UNKNOWN_DEVICE = "unknown"
PAGE_VIEW = "page_view"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive values read back from stores without tz support."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class Website(Base):
    __tablename__ = "websites"

    id = Column(String(36), primary_key=True, default=_new_id)
    owner_id = Column(String(255), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    domain = Column(String(255), nullable=False)
    tracking_id = Column(String(64), nullable=False, unique=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class Event(Base):
    __tablename__ = "events"
    __table_args__ = (
        Index("events_website_occurred_idx", "website_id", "occurred_at"),
        Index("events_website_session_idx", "website_id", "session_id"),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    website_id = Column(String(36), nullable=False)
    tracking_id = Column(String(64), nullable=False, index=True)
    session_id = Column(String(64), nullable=False)
    event_type = Column(String(50), nullable=False, index=True)
    page_url = Column(Text, nullable=True)
    page_path = Column(Text, nullable=True)
    page_title = Column(Text, nullable=True)
    referrer = Column(Text, nullable=True)
    user_agent = Column(String(500), nullable=True)
    device_type = Column(String(50), nullable=False, default=UNKNOWN_DEVICE)
    browser = Column(String(100), nullable=True)
    os = Column(String(100), nullable=True)
    country = Column(String(2), nullable=True)
    occurred_at = Column(DateTime(timezone=True), nullable=False)
    received_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class VisitorSession(Base):
    __tablename__ = "sessions"
    __table_args__ = (Index("sessions_website_last_seen_idx", "website_id", "last_seen_at"),)

    website_id = Column(String(36), primary_key=True)
    id = Column(String(64), primary_key=True)
    first_seen_at = Column(DateTime(timezone=True), nullable=False)
    last_seen_at = Column(DateTime(timezone=True), nullable=False)
    device_type = Column(String(50), nullable=False, default=UNKNOWN_DEVICE)
    browser = Column(String(100), nullable=True)
    os = Column(String(100), nullable=True)
    country = Column(String(2), nullable=True)
