"""
Event recorder — the only writer of ``envelope_events``.

Exposes ``record`` and read helpers only; rows are never updated or
deleted.  ``record`` flushes inside the caller's transaction so
an event is committed together with the state change it describes.
"""

from __future__ import annotations

import logging

from sqlalchemy import func, select

from esign.core.exceptions import ValidationError
from esign.models import db
from esign.models.event import EVENT_EXECUTED, VALID_EVENT_TYPES, EnvelopeEvent

logger = logging.getLogger(__name__)


def record(
    event_type: str,
    *,
    envelope_id: str | None = None,
    document_id: str | None = None,
    actor_id: str | None = None,
    recipient_id: str | None = None,
    status_from: str | None = None,
    status_to: str | None = None,
    payload: dict | None = None,
) -> EnvelopeEvent:
    """Append one lifecycle event.  Flushes; the caller commits."""
    if event_type not in VALID_EVENT_TYPES:
        raise ValidationError(
            f"Unknown event_type '{event_type}'",
            details={"event_type": sorted(VALID_EVENT_TYPES)},
        )
    if envelope_id is None and document_id is None:
        raise ValidationError("An event needs an envelope_id or a document_id")

    event = EnvelopeEvent(
        envelope_id=envelope_id,
        document_id=document_id,
        actor_id=actor_id,
        recipient_id=recipient_id,
        event_type=event_type,
        status_from=status_from,
        status_to=status_to,
        payload=dict(payload or {}),
    )
    db.session.add(event)
    db.session.flush()

    logger.info(
        "Envelope event recorded: %s", event_type,
        extra={"envelope_id": envelope_id, "document_id": document_id, "event_type": event_type},
    )
    return event


def list_events(envelope_id: str, event_type: str | None = None) -> list[EnvelopeEvent]:
    stmt = select(EnvelopeEvent).where(EnvelopeEvent.envelope_id == envelope_id)
    if event_type:
        stmt = stmt.where(EnvelopeEvent.event_type == event_type)
    stmt = stmt.order_by(EnvelopeEvent.created_at, EnvelopeEvent.id)
    return list(db.session.execute(stmt).scalars())


def latest_event(envelope_id: str, event_type: str) -> EnvelopeEvent | None:
    stmt = (
        select(EnvelopeEvent)
        .where(EnvelopeEvent.envelope_id == envelope_id, EnvelopeEvent.event_type == event_type)
        .order_by(EnvelopeEvent.created_at.desc())
        .limit(1)
    )
    return db.session.execute(stmt).scalars().first()


def count_events(envelope_id: str, event_type: str) -> int:
    stmt = select(func.count(EnvelopeEvent.id)).where(
        EnvelopeEvent.envelope_id == envelope_id,
        EnvelopeEvent.event_type == event_type,
    )
    return db.session.execute(stmt).scalar_one()


def has_executed_event(envelope_id: str) -> bool:
    return count_events(envelope_id, EVENT_EXECUTED) > 0


def last_event_times(envelope_ids: list[str]) -> dict[str, object]:
    """Map envelope_id → created_at of its most recent event."""
    if not envelope_ids:
        return {}
    stmt = (
        select(EnvelopeEvent.envelope_id, func.max(EnvelopeEvent.created_at))
        .where(EnvelopeEvent.envelope_id.in_(envelope_ids))
        .group_by(EnvelopeEvent.envelope_id)
    )
    return {envelope_id: created_at for envelope_id, created_at in db.session.execute(stmt)}
