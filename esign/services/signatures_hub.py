"""
Signatures hub — read-only projection of envelopes for the back office.

One row per envelope (newest first, capped at HUB_ROW_LIMIT) with signer
counts, the next pending batch, action flags and queue flags.  Nothing
here writes.

Queue flags (7-day window):
    waiting_on_client   in flight and a required signer is pending
    executed_this_week  executed within the last 7 days
    expiring_soon       in flight, expires_at in the future and within 7 days
"""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timedelta

from sqlalchemy import select

from esign.middleware.permission_required import PERM_READ, requires_permission
from esign.models import db
from esign.models._helpers import _aware, _iso, _utcnow
from esign.models.envelope import (
    IN_FLIGHT_ENVELOPE_STATUSES,
    LIVE_ENVELOPE_STATUSES,
    Envelope,
    EnvelopeRecipient,
    EnvelopeStatus,
    RecipientRole,
    SigningRequest,
    SigningRequestStatus,
    _values,
)
from esign.services import event_recorder, sequencer

HUB_ROW_LIMIT = 500
QUEUE_WINDOW = timedelta(days=7)

_IN_FLIGHT = frozenset(_values(IN_FLIGHT_ENVELOPE_STATUSES))
_LIVE = frozenset(_values(LIVE_ENVELOPE_STATUSES))
_FLAGS = ("waiting_on_client", "executed_this_week", "expiring_soon")


def _last_activity(envelope: Envelope, pending, last_event_at) -> datetime | None:
    if last_event_at is not None:
        return _aware(last_event_at)
    stamps = [
        _aware(value)
        for request in pending
        for value in (request.signed_at, request.viewed_at, request.created_at)
        if value is not None
    ]
    if stamps:
        return max(stamps)
    for value in (envelope.executed_at, envelope.voided_at, envelope.sent_at, envelope.created_at):
        if value is not None:
            return _aware(value)
    return None


def _build_row(envelope: Envelope, requests, signers, last_event_at, now: datetime) -> dict:
    document = envelope.document
    required = [r for r in requests if r.required is not False]
    signed = sum(1 for r in required if r.status == SigningRequestStatus.SIGNED.value)
    viewed = sum(1 for r in required if r.viewed_at is not None)
    pending = sequencer.pending_required(requests)
    batch = sequencer.next_required_batch(requests)

    names_by_id = {s.id: s.name.strip() for s in signers if s.name and s.name.strip()}
    next_names = [names_by_id[r.recipient_id] for r in batch.requests if r.recipient_id in names_by_id]
    if not next_names and batch.sequence is not None:
        next_names = [
            s.name.strip() for s in signers
            if (s.sequence or 1) == batch.sequence and s.name and s.name.strip()
        ]
    next_emails = [r.sent_to_email.strip() for r in batch.requests if (r.sent_to_email or "").strip()]

    status = envelope.status
    in_flight = status in _IN_FLIGHT
    executed_at = _aware(envelope.executed_at)
    expires_at = _aware(envelope.expires_at)

    return {
        "envelope_id": envelope.id,
        "document_id": envelope.document_id,
        "document_title": document.title if document else "Document",
        "document_type": document.document_type if document else "other",
        "document_status": document.status if document else status,
        "project_id": envelope.project_id,
        "source_entity_type": envelope.source_entity_type,
        "source_entity_id": envelope.source_entity_id,
        "envelope_status": status,
        "created_at": _iso(envelope.created_at),
        "sent_at": _iso(envelope.sent_at),
        "executed_at": _iso(envelope.executed_at),
        "expires_at": _iso(envelope.expires_at),
        "voided_at": _iso(envelope.voided_at),
        "signer_summary": {
            "total": len(required),
            "signed": signed,
            "viewed": viewed,
            "pending": max(len(required) - signed, 0),
        },
        "next_pending_request_id": batch.requests[0].id if batch else None,
        "next_pending_sequence": batch.sequence,
        "next_pending_emails": next_emails,
        "next_pending_names": next_names,
        "recipient_names": [s.name.strip() for s in signers if s.name and s.name.strip()],
        "last_event_at": _iso(_last_activity(envelope, pending, last_event_at)),
        "can_remind": in_flight and bool(next_emails),
        "can_void": status in _LIVE,
        "can_resend": status != EnvelopeStatus.EXECUTED.value,
        "can_download": status == EnvelopeStatus.EXECUTED.value,
        "queue_flags": {
            "waiting_on_client": in_flight and bool(pending),
            "executed_this_week": (
                status == EnvelopeStatus.EXECUTED.value
                and executed_at is not None
                and now - executed_at <= QUEUE_WINDOW
            ),
            "expiring_soon": (
                in_flight
                and expires_at is not None
                and now < expires_at <= now + QUEUE_WINDOW
            ),
        },
    }


@requires_permission(PERM_READ)
def build_signatures_hub(project_id: str | None = None, now: datetime | None = None, *, actor_id=None) -> dict:
    """Return {rows, summary, generated_at} for the signatures hub."""
    now = _aware(now) or _utcnow()

    stmt = select(Envelope).order_by(Envelope.created_at.desc()).limit(HUB_ROW_LIMIT)
    if project_id:
        stmt = stmt.where(Envelope.project_id == project_id)
    envelopes = list(db.session.execute(stmt).scalars())

    summary = {"total": 0, **{flag: 0 for flag in _FLAGS}}
    if not envelopes:
        return {"rows": [], "summary": summary, "generated_at": now.isoformat()}

    envelope_ids = [e.id for e in envelopes]
    requests_by_envelope = defaultdict(list)
    for request in db.session.execute(
        select(SigningRequest)
        .where(SigningRequest.envelope_id.in_(envelope_ids))
        .order_by(SigningRequest.sequence, SigningRequest.created_at)
    ).scalars():
        requests_by_envelope[request.envelope_id].append(request)

    signers_by_envelope = defaultdict(list)
    for recipient in db.session.execute(
        select(EnvelopeRecipient)
        .where(
            EnvelopeRecipient.envelope_id.in_(envelope_ids),
            EnvelopeRecipient.role == RecipientRole.SIGNER.value,
        )
        .order_by(EnvelopeRecipient.sequence, EnvelopeRecipient.position)
    ).scalars():
        signers_by_envelope[recipient.envelope_id].append(recipient)

    last_events = event_recorder.last_event_times(envelope_ids)

    rows = [
        _build_row(
            envelope,
            requests_by_envelope[envelope.id],
            signers_by_envelope[envelope.id],
            last_events.get(envelope.id),
            now,
        )
        for envelope in envelopes
    ]
    for row in rows:
        summary["total"] += 1
        for flag in _FLAGS:
            if row["queue_flags"][flag]:
                summary[flag] += 1

    return {"rows": rows, "summary": summary, "generated_at": now.isoformat()}
