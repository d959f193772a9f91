"""Durable writes for validated events and reconciled sessions."""
from __future__ import annotations

import logging
from typing import Iterable, Sequence

from sqlalchemy import and_, case, func, insert, or_
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .errors import WriteFailure
from .models import UNKNOWN_DEVICE, Event, VisitorSession
from .schemas import SessionUpsert, ValidatedEvent

logger = logging.getLogger(__name__)

_DIALECT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def session_upsert_statement(dialect_name: str, upsert: SessionUpsert):
    """Build the merge-on-conflict insert for one session.

    The merge keeps the stored ``first_seen_at``, takes the later
    ``last_seen_at`` and only fills dimensional fields the stored row lacks,
    so applying it in any order or more than once gives the same row.
    """
    dialect_insert = _DIALECT_INSERTS.get(dialect_name)
    if dialect_insert is None:
        raise WriteFailure(f"Session upserts are not supported on {dialect_name}.")

    table = VisitorSession.__table__
    stmt = dialect_insert(table).values(**upsert.model_dump())
    excluded = stmt.excluded
    return stmt.on_conflict_do_update(
        index_elements=[table.c.website_id, table.c.id],
        set_={
            "last_seen_at": case(
                (excluded.last_seen_at > table.c.last_seen_at, excluded.last_seen_at),
                else_=table.c.last_seen_at,
            ),
            "device_type": case(
                (
                    and_(
                        excluded.device_type != UNKNOWN_DEVICE,
                        or_(table.c.device_type.is_(None), table.c.device_type == UNKNOWN_DEVICE),
                    ),
                    excluded.device_type,
                ),
                else_=table.c.device_type,
            ),
            "browser": func.coalesce(table.c.browser, excluded.browser),
            "os": func.coalesce(table.c.os, excluded.os),
            "country": func.coalesce(table.c.country, excluded.country),
        },
    )


def upsert_sessions(db: Session, upserts: Iterable[SessionUpsert]) -> None:
    dialect_name = db.get_bind().dialect.name
    try:
        for upsert in upserts:
            db.execute(session_upsert_statement(dialect_name, upsert))
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Failed to upsert sessions")
        raise WriteFailure("Unable to process tracking event.") from exc


def insert_events(db: Session, events: Sequence[ValidatedEvent]) -> None:
    if not events:
        return
    try:
        db.execute(insert(Event), [event.model_dump() for event in events])
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Failed to insert %d events", len(events))
        raise WriteFailure("Unable to process tracking event.") from exc


def commit_batch(
    db: Session,
    events: Sequence[ValidatedEvent],
    session_upserts: Iterable[SessionUpsert],
) -> None:
    """Persist session upserts, then the events, in two transactions.

    Sessions that committed stay committed when the event insert fails.
    """
    upsert_sessions(db, session_upserts)
    insert_events(db, events)
