import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from backend.analytics.models import Base  # noqa: E402
from backend.analytics.registry import register_website  # noqa: E402
from backend.analytics.schemas import ValidatedEvent  # noqa: E402

NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def db_session(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'analytics.db'}", future=True)
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    with factory() as session:
        yield session
    engine.dispose()


@pytest.fixture
def website(db_session):
    return register_website(db_session, owner_id="owner-1", name="Example", domain="example.com")


@pytest.fixture
def beacon():
    def _beacon(tracking_id, session_id="session-1", event_type="page_view", page=None, device=None, **extra):
        payload = {
            "page": page if page is not None else {"url": "https://example.com/", "pathname": "/"},
            "device": device if device is not None else {"device_type": "desktop", "browser_name": "Chrome"},
        }
        payload.update(extra)
        return {
            "tracking_id": tracking_id,
            "session_id": session_id,
            "event_type": event_type,
            "event_payload": payload,
        }

    return _beacon


@pytest.fixture
def make_event(website):
    def _make_event(session_id="session-1", occurred_at=NOW, **fields):
        values = {
            "website_id": website.id,
            "tracking_id": website.tracking_id,
            "session_id": session_id,
            "event_type": "page_view",
            "page_path": "/",
            "device_type": "desktop",
            "browser": "Chrome",
            "occurred_at": occurred_at,
            "received_at": occurred_at,
        }
        values.update(fields)
        return ValidatedEvent(**values)

    return _make_event
