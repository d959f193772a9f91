import re

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from backend.analytics import registry
from backend.analytics.models import Event, VisitorSession, Website
from backend.analytics.sessions import reconcile
from backend.analytics.writer import commit_batch


def test_register_website_issues_hex_tracking_id(db_session):
    website = registry.register_website(db_session, "owner-1", "Blog", "blog.example.com")

    assert re.fullmatch(r"[0-9a-f]{32}", website.tracking_id)
    assert registry.resolve_tracking_id(db_session, website.tracking_id).id == website.id
    assert registry.resolve_tracking_id(db_session, "missing") is None


def test_register_website_retries_tracking_id_collision(db_session, monkeypatch):
    existing = registry.register_website(db_session, "owner-1", "Blog", "blog.example.com")
    issued = iter([existing.tracking_id, "f" * 32])
    monkeypatch.setattr(registry, "generate_tracking_id", lambda: next(issued))

    website = registry.register_website(db_session, "owner-1", "Shop", "shop.example.com")
    assert website.tracking_id == "f" * 32


def test_register_website_gives_up_after_repeated_collisions(db_session, monkeypatch):
    taken = registry.register_website(db_session, "owner-1", "Blog", "blog.example.com").tracking_id
    monkeypatch.setattr(registry, "generate_tracking_id", lambda: taken)

    with pytest.raises(IntegrityError):
        registry.register_website(db_session, "owner-1", "Shop", "shop.example.com")


def test_get_owned_website_checks_owner(db_session, website):
    assert registry.get_owned_website(db_session, website.id, "owner-1").id == website.id
    assert registry.get_owned_website(db_session, website.id, "someone-else") is None


def test_delete_website_cascades_to_events_and_sessions(db_session, website, make_event):
    other = registry.register_website(db_session, "owner-2", "Other", "other.example.com")
    events = [make_event("a"), make_event("b"), make_event("c", website_id=other.id)]
    commit_batch(db_session, events, reconcile(events).values())

    website_id = website.id
    assert registry.delete_website(db_session, website_id) is True

    def count(model):
        return db_session.execute(select(func.count()).select_from(model)).scalar_one()

    assert count(Website) == 1
    assert count(Event) == 1
    assert count(VisitorSession) == 1
    assert registry.delete_website(db_session, website_id) is False
