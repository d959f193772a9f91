"""Tenant registry: tracking id resolution and the website delete cascade."""
from __future__ import annotations

import logging
import secrets
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .models import Event, VisitorSession, Website

logger = logging.getLogger(__name__)

TRACKING_ID_ATTEMPTS = 3


def generate_tracking_id() -> str:
    return secrets.token_hex(16)


def resolve_tracking_id(db: Session, tracking_id: str) -> Optional[Website]:
    stmt = select(Website).where(Website.tracking_id == tracking_id).limit(1)
    return db.execute(stmt).scalar_one_or_none()


def get_owned_website(db: Session, website_id: str, owner_id: str) -> Optional[Website]:
    stmt = select(Website).where(Website.id == website_id, Website.owner_id == owner_id).limit(1)
    return db.execute(stmt).scalar_one_or_none()


def register_website(db: Session, owner_id: str, name: str, domain: str) -> Website:
    """Create a website with a freshly issued tracking id.

    A tracking id collision is retried with a new id; any other integrity
    error propagates.
    """
    for attempt in range(TRACKING_ID_ATTEMPTS):
        website = Website(
            owner_id=owner_id,
            name=name,
            domain=domain,
            tracking_id=generate_tracking_id(),
        )
        db.add(website)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            if attempt + 1 >= TRACKING_ID_ATTEMPTS:
                raise
            logger.warning("Tracking id collision on attempt %d, retrying", attempt + 1)
            continue
        db.refresh(website)
        return website
    raise RuntimeError("unreachable")  # pragma: no cover


def delete_website(db: Session, website_id: str) -> bool:
    """Delete a website together with its events and sessions."""
    website = db.get(Website, website_id)
    if website is None:
        return False
    db.execute(delete(Event).where(Event.website_id == website_id))
    db.execute(delete(VisitorSession).where(VisitorSession.website_id == website_id))
    db.delete(website)
    db.commit()
    logger.info("Deleted website %s and its analytics data", website_id)
    return True
