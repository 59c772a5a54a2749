"""
Envelope event log — append-only lifecycle audit.

Business rules:
- Rows are NEVER updated or deleted.  The ORM rejects both via mapper
  events; raw SQL bypassing the ORM is the caller's problem.
- At most one ``envelope_executed`` row exists per envelope.  This is
  guaranteed by the envelope status CAS in ``envelope_service``, not by a
  uniqueness constraint here.
- Downstream consumers (contract conversion, notification fan-out) poll
  by ``event_type``.
"""

from sqlalchemy import event as _sa_event

from esign.models import db
from esign.models._helpers import _iso, _utcnow, _uuid

EVENT_DRAFT_CREATED = "envelope_draft_created"
EVENT_CREATED = "envelope_created"
EVENT_SENT = "envelope_sent"
EVENT_VIEWED = "envelope_viewed"
EVENT_RECIPIENT_SIGNED = "recipient_signed"
EVENT_EXECUTED = "envelope_executed"
EVENT_VOIDED = "envelope_voided"
EVENT_REMINDER_SENT = "envelope_reminder_sent"

VALID_EVENT_TYPES = frozenset({
    EVENT_DRAFT_CREATED,
    EVENT_CREATED,
    EVENT_SENT,
    EVENT_VIEWED,
    EVENT_RECIPIENT_SIGNED,
    EVENT_EXECUTED,
    EVENT_VOIDED,
    EVENT_REMINDER_SENT,
})


class EnvelopeEvent(db.Model):
    """Immutable lifecycle record keyed to an envelope and/or document."""

    __tablename__ = "envelope_events"
    __table_args__ = (
        db.Index("ix_envelope_events_envelope_created", "envelope_id", "created_at"),
        db.Index("ix_envelope_events_type_created", "event_type", "created_at"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    envelope_id = db.Column(
        db.String(36), db.ForeignKey("envelopes.id", ondelete="CASCADE"), nullable=True,
    )
    document_id = db.Column(db.String(36), nullable=True, index=True)
    recipient_id = db.Column(db.String(36), nullable=True)
    event_type = db.Column(
        db.String(40), nullable=False,
        comment="envelope_created | envelope_sent | envelope_executed | envelope_voided | ...",
    )
    status_from = db.Column(db.String(20), nullable=True)
    status_to = db.Column(db.String(20), nullable=True)
    actor_id = db.Column(db.String(36), nullable=True)
    payload = db.Column(db.JSON, nullable=False, default=dict)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "envelope_id": self.envelope_id,
            "document_id": self.document_id,
            "recipient_id": self.recipient_id,
            "event_type": self.event_type,
            "status_from": self.status_from,
            "status_to": self.status_to,
            "actor_id": self.actor_id,
            "payload": self.payload or {},
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<EnvelopeEvent {self.event_type} env={self.envelope_id}>"


@_sa_event.listens_for(EnvelopeEvent, "before_update")
def _reject_event_update(mapper, connection, target):
    raise RuntimeError("EnvelopeEvent rows are append-only and cannot be updated")


@_sa_event.listens_for(EnvelopeEvent, "before_delete")
def _reject_event_delete(mapper, connection, target):
    raise RuntimeError("EnvelopeEvent rows are append-only and cannot be deleted")
