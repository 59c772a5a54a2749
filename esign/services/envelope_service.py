"""
Envelope lifecycle controller.

The only module that changes Envelope.status.  Every status change is a
compare-and-set UPDATE (``status IN expected``) checked by rowcount, so two
concurrent actors cannot both win a transition.  In particular, of two
last co-signers completing at the same time only one performs
sent/partially_signed → executed and writes the envelope_executed event.

Transitions:
    (none)            ensure draft   → draft
    draft             send           → sent
    sent/partially    signer signs   → partially_signed | executed
    draft/sent/part.  void           → voided   (voided again: idempotent)
    draft/sent/part.  resend         → source voided, new envelope sent
    sent/partially    remind         → unchanged
    sent/partially    reconcile      → re-run the advance step (stalled recovery)
    executed          anything       → rejected

Design decisions:
    - Services own commits.  State is committed before emails go out, so a
      failed delivery never rolls back an issued link; the reminder path
      re-issues it.
    - The sequencer is re-run on freshly loaded rows immediately before
      every decision (``populate_existing``).
    - Draft requests are claimed with a draft → sent CAS before a link is
      issued, so concurrent advances never mint two links for one signer.
    - Void, its request cascade and the document update commit together.
"""

from __future__ import annotations

import logging

from flask import current_app
from sqlalchemy import func, select, update

from esign.core.exceptions import NotFoundError, StateViolationError
from esign.middleware.permission_required import PERM_MANAGE, PERM_READ, requires_permission
from esign.models import db
from esign.models._helpers import _utcnow
from esign.models.document import Document, Proposal
from esign.models.envelope import (
    IN_FLIGHT_ENVELOPE_STATUSES,
    LIVE_ENVELOPE_STATUSES,
    OPEN_REQUEST_STATUSES,
    Envelope,
    EnvelopeRecipient,
    EnvelopeStatus,
    RecipientRole,
    SigningRequest,
    SigningRequestStatus,
    SourceEntityType,
    _values,
    validate_envelope_transition,
    validate_request_transition,
)
from esign.models.event import (
    EVENT_CREATED,
    EVENT_DRAFT_CREATED,
    EVENT_EXECUTED,
    EVENT_RECIPIENT_SIGNED,
    EVENT_REMINDER_SENT,
    EVENT_SENT,
    EVENT_VOIDED,
)
from esign.services import event_recorder, recipient_ledger, sequencer
from esign.services.email_service import EmailService, OutboundEmail
from esign.services.executed_artifact import (
    build_executed_artifact,
    executed_url,
    get_executed_secret,
    mint_executed_token,
)
from esign.services.token_service import get_signing_secret, issue_signing_link

logger = logging.getLogger(__name__)

COMPLETION_EVENTS = {
    SourceEntityType.PROPOSAL.value: "proposal.accepted_contract_created",
    SourceEntityType.CHANGE_ORDER.value: "change_order.approved",
    SourceEntityType.LIEN_WAIVER.value: "lien_waiver.signed",
    SourceEntityType.SELECTION.value: "selection.confirmed",
}

_SOURCE_ENTITY_TYPES = frozenset(t.value for t in SourceEntityType)
_VOID_META_KEYS = ("void_reason", "voided_by_user_id", "voided_via")


# ── Loaders ──────────────────────────────────────────────────────────────────


def _get_document(document_id: str) -> Document:
    document = db.session.get(Document, document_id)
    if not document:
        raise NotFoundError(resource="Document", resource_id=document_id)
    return document


def _get_envelope(envelope_id: str) -> Envelope:
    envelope = db.session.get(Envelope, envelope_id, populate_existing=True)
    if not envelope:
        raise NotFoundError(resource="Envelope", resource_id=envelope_id)
    return envelope


def _get_request(request_id: str) -> SigningRequest:
    request = db.session.get(SigningRequest, request_id, populate_existing=True)
    if not request:
        raise NotFoundError(resource="SigningRequest", resource_id=request_id)
    return request


def load_envelope_requests(envelope_id: str) -> list[SigningRequest]:
    stmt = (
        select(SigningRequest)
        .where(SigningRequest.envelope_id == envelope_id)
        .order_by(SigningRequest.sequence, SigningRequest.created_at)
        .execution_options(populate_existing=True)
    )
    return list(db.session.execute(stmt).scalars())


def load_group_requests(request: SigningRequest) -> list[SigningRequest]:
    """All requests sharing this request's envelope, or its legacy group."""
    if request.envelope_id:
        return load_envelope_requests(request.envelope_id)
    group_id = request.group_id or request.id
    stmt = (
        select(SigningRequest)
        .where(
            SigningRequest.envelope_id.is_(None),
            (SigningRequest.group_id == group_id) | (SigningRequest.id == group_id),
        )
        .order_by(SigningRequest.sequence, SigningRequest.created_at)
        .execution_options(populate_existing=True)
    )
    return list(db.session.execute(stmt).scalars())


def _live_envelopes(document_id: str, exclude_id: str | None = None) -> list[Envelope]:
    stmt = (
        select(Envelope)
        .where(
            Envelope.document_id == document_id,
            Envelope.status.in_(_values(LIVE_ENVELOPE_STATUSES)),
        )
        .order_by(Envelope.created_at.desc())
    )
    if exclude_id:
        stmt = stmt.where(Envelope.id != exclude_id)
    return list(db.session.execute(stmt).scalars())


# ── Compare-and-set ──────────────────────────────────────────────────────────


def _cas_envelope_status(envelope_id: str, expected, new_status: EnvelopeStatus, **values) -> bool:
    """UPDATE envelopes SET status=new WHERE id=? AND status IN expected.  True if won."""
    expected_values = _values(expected)
    for old in expected_values:
        if not validate_envelope_transition(old, new_status):
            raise ValueError(f"Illegal envelope transition {old} → {new_status.value}")
    result = db.session.execute(
        update(Envelope)
        .where(Envelope.id == envelope_id, Envelope.status.in_(expected_values))
        .values(status=new_status.value, updated_at=_utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _cas_request_status(request_id: str, expected, new_status: SigningRequestStatus, **values) -> bool:
    expected_values = _values(expected)
    for old in expected_values:
        if not validate_request_transition(old, new_status):
            raise ValueError(f"Illegal signing request transition {old} → {new_status.value}")
    result = db.session.execute(
        update(SigningRequest)
        .where(SigningRequest.id == request_id, SigningRequest.status.in_(expected_values))
        .values(status=new_status.value, **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


# ── Source entity guard & completion ─────────────────────────────────────────


def resolve_source_entity(document: Document) -> tuple[str | None, str | None]:
    meta = document.meta or {}
    entity_type = document.source_entity_type or meta.get("source_entity_type")
    if entity_type not in _SOURCE_ENTITY_TYPES:
        entity_type = None
    entity_id = document.source_entity_id or meta.get("source_entity_id")
    return entity_type, entity_id


def _assert_proposal_sendable(entity_type: str | None, entity_id: str | None) -> None:
    """A proposal that is accepted, or already has an executed envelope, cannot be re-sent."""
    if entity_type != SourceEntityType.PROPOSAL.value or not entity_id:
        return
    proposal = db.session.get(Proposal, entity_id)
    if proposal is not None and proposal.is_accepted:
        raise StateViolationError(
            "This proposal has already been accepted and cannot request a new signature envelope.",
            current_status=proposal.status,
        )
    executed = db.session.execute(
        select(Envelope.id)
        .where(
            Envelope.source_entity_type == SourceEntityType.PROPOSAL.value,
            Envelope.source_entity_id == entity_id,
            Envelope.status == EnvelopeStatus.EXECUTED.value,
        )
        .limit(1)
    ).scalar()
    if executed:
        raise StateViolationError(
            "An executed signature envelope already exists for this proposal.",
            current_status=EnvelopeStatus.EXECUTED.value,
        )


def _run_source_completion(envelope: Envelope, document: Document, now) -> None:
    entity_type = envelope.source_entity_type or resolve_source_entity(document)[0]
    entity_id = envelope.source_entity_id or resolve_source_entity(document)[1]
    if entity_type != SourceEntityType.PROPOSAL.value or not entity_id:
        return
    proposal = db.session.get(Proposal, entity_id)
    if proposal is None or proposal.is_accepted:
        return
    proposal.status = "accepted"
    proposal.accepted_at = now
    proposal.accepted_envelope_id = envelope.id
    logger.info("Proposal %s accepted from envelope execution", proposal.id,
                extra={"envelope_id": envelope.id})


# ── Drafts & signing requests ────────────────────────────────────────────────


def _ensure_draft_envelope(
    document: Document,
    *,
    subject=None,
    message=None,
    expires_at=None,
    actor_id=None,
) -> Envelope:
    """Return the document's draft envelope, creating it if needed."""
    live = _live_envelopes(document.id)
    in_flight = [e for e in live if e.status != EnvelopeStatus.DRAFT.value]
    if in_flight:
        raise StateViolationError(
            "This document already has an envelope out for signature. Void or resend it instead.",
            current_status=in_flight[0].status,
        )

    entity_type, entity_id = resolve_source_entity(document)
    draft = live[0] if live else None
    if draft is None:
        draft = Envelope(
            project_id=document.project_id,
            document_id=document.id,
            status=EnvelopeStatus.DRAFT.value,
            created_by=actor_id,
            meta={},
        )
        db.session.add(draft)
        created = True
    else:
        created = False

    draft.document_revision = document.current_revision or 1
    draft.source_entity_type = entity_type
    draft.source_entity_id = entity_id
    draft.subject = subject
    draft.message = message
    draft.expires_at = expires_at
    if entity_type and entity_id:
        draft.meta = {**(draft.meta or {}), f"{entity_type}_id": entity_id}
    db.session.flush()

    if created:
        event_recorder.record(
            EVENT_DRAFT_CREATED,
            envelope_id=draft.id,
            document_id=document.id,
            actor_id=actor_id,
            status_to=EnvelopeStatus.DRAFT.value,
            payload={"project_id": document.project_id},
        )
        logger.info("Draft envelope created", extra={"envelope_id": draft.id, "document_id": document.id})
    return draft


def _create_signing_requests(envelope: Envelope, recipients: list[EnvelopeRecipient], actor_id=None) -> list[SigningRequest]:
    """One draft SigningRequest per signer recipient.  cc recipients get none."""
    signers = [r for r in recipients if r.role == RecipientRole.SIGNER.value]
    if not signers:
        raise StateViolationError("At least one signer recipient is required")

    existing = load_envelope_requests(envelope.id)
    if any(r.status != SigningRequestStatus.DRAFT.value for r in existing):
        raise StateViolationError("Cannot regenerate signing requests for a non-draft envelope")
    for r in existing:
        db.session.delete(r)
    db.session.flush()

    max_uses = int(current_app.config.get("SIGNING_REQUEST_MAX_USES", 1))
    requests = []
    for index, recipient in enumerate(signers):
        request = SigningRequest(
            envelope_id=envelope.id,
            recipient_id=recipient.id,
            group_id=envelope.id,
            document_id=envelope.document_id,
            revision=envelope.document_revision or 1,
            sequence=recipient.sequence,
            required=recipient.required is not False,
            status=SigningRequestStatus.DRAFT.value,
            sent_to_email=recipient.email,
            signer_role=recipient.signer_role or f"signer_{index + 1}",
            expires_at=envelope.expires_at,
            max_uses=max_uses,
            used_count=0,
            created_by=actor_id,
        )
        db.session.add(request)
        requests.append(request)
    db.session.flush()
    return requests


# ── Link issuance & delivery ─────────────────────────────────────────────────


def _issue_batch_links(requests: list[SigningRequest]) -> list[tuple[SigningRequest, object]]:
    """
    Issue links for the sendable members of an active batch.

    Draft requests are claimed with a CAS first; a request claimed by a
    concurrent actor is skipped.  Requests without an email are skipped.
    """
    issued = []
    for request in requests:
        if request.status != SigningRequestStatus.DRAFT.value or not request.sent_to_email:
            continue
        if not _cas_request_status(request.id, {SigningRequestStatus.DRAFT}, SigningRequestStatus.SENT):
            continue
        db.session.refresh(request)
        issued.append((request, issue_signing_link(request)))
    return issued


def _signing_messages(document: Document, issued, *, template: str, category: str) -> list[OutboundEmail]:
    messages = []
    for request, link in issued:
        name = request.recipient.name if request.recipient else None
        messages.append(OutboundEmail(
            to_email=request.sent_to_email,
            to_name=name,
            template_name=template,
            category=category,
            context={
                "document_title": document.title,
                "recipient_name": name or "there",
                "signing_url": link.url,
            },
            envelope_id=request.envelope_id,
            signing_request_id=request.id,
        ))
    return messages


def _deliver(messages: list[OutboundEmail]) -> list:
    """Send after the state change is committed; log rows are committed here."""
    if not messages:
        return []
    results = EmailService.send_batch(messages)
    db.session.commit()
    return results


def _delivery_summary(results) -> dict:
    failed = [r for r in results if not r.ok]
    return {
        "failed_deliveries": len(failed),
        "deliveries": [r.to_dict() for r in results],
    }


def _dispatch_draft(envelope: Envelope, document: Document, requests, *, actor_id, source: str,
                    extra_payload: dict | None = None) -> dict:
    """draft → sent: CAS the envelope, issue the first batch, write envelope_sent, commit, deliver."""
    now = _utcnow()
    if not _cas_envelope_status(envelope.id, {EnvelopeStatus.DRAFT}, EnvelopeStatus.SENT, sent_at=now):
        db.session.rollback()
        raise StateViolationError("Envelope was changed concurrently and is no longer a draft")
    db.session.refresh(envelope)

    document.status = "sent"
    signer_count = len(requests)
    batch = sequencer.next_required_batch(requests)
    issued = _issue_batch_links(batch.requests)
    sent_now = len(issued)
    pending_signers = max(signer_count - sent_now, 0)

    event_recorder.record(
        EVENT_SENT,
        envelope_id=envelope.id,
        document_id=document.id,
        actor_id=actor_id,
        status_from=EnvelopeStatus.DRAFT.value,
        status_to=EnvelopeStatus.SENT.value,
        payload={
            "source": source,
            "sent_now": sent_now,
            "pending_signers": pending_signers,
            "signer_count": signer_count,
            "active_sequence": batch.sequence,
            **(extra_payload or {}),
        },
    )
    db.session.commit()
    logger.info(
        "Envelope sent: %d link(s) issued, %d signer(s) pending", sent_now, pending_signers,
        extra={"envelope_id": envelope.id, "document_id": document.id, "actor_id": actor_id},
    )

    results = _deliver(_signing_messages(document, issued, template="signing_request", category="signing"))
    return {
        "success": True,
        "envelope_id": envelope.id,
        "group_id": envelope.id,
        "status": envelope.status,
        "signer_count": signer_count,
        "sent_now": sent_now,
        "pending_signers": pending_signers,
        **_delivery_summary(results),
    }


# ═════════════════════════════════════════════════════════════════════════════
# Public API
# ═════════════════════════════════════════════════════════════════════════════


@requires_permission(PERM_MANAGE)
def save_draft(document_id: str, recipients=None, *, subject=None, message=None, expires_at=None,
               actor_id=None) -> dict:
    """Create or update the document's draft envelope and replace its ledger.  No signer required."""
    normalized = recipient_ledger.normalize_draft_recipients(recipients)
    document = _get_document(document_id)

    envelope = _ensure_draft_envelope(
        document, subject=subject, message=message, expires_at=expires_at, actor_id=actor_id,
    )
    rows = recipient_ledger.replace_recipients(envelope, normalized)
    db.session.commit()

    logger.info("Draft envelope saved", extra={"envelope_id": envelope.id, "actor_id": actor_id})
    return {
        "success": True,
        "envelope": envelope.to_dict(),
        "recipients": [r.to_dict() for r in rows],
    }


@requires_permission(PERM_MANAGE)
def send_envelope(document_id: str, recipients=None, *, subject=None, message=None, expires_at=None,
                  actor_id=None) -> dict:
    """
    Send a document for signature.

    Validates recipients, applies the proposal guard, ensures a draft
    envelope, replaces its ledger, creates one signing request per signer
    and issues links for the first active batch only.
    """
    normalized = recipient_ledger.normalize_send_recipients(recipients)
    recipient_ledger.require_signer(normalized)
    get_signing_secret()

    document = _get_document(document_id)
    _assert_proposal_sendable(*resolve_source_entity(document))

    envelope = _ensure_draft_envelope(
        document, subject=subject, message=message, expires_at=expires_at, actor_id=actor_id,
    )
    rows = recipient_ledger.replace_recipients(envelope, normalized)
    requests = _create_signing_requests(envelope, rows, actor_id=actor_id)
    cc_count = sum(1 for r in rows if r.role == RecipientRole.CC.value)

    event_recorder.record(
        EVENT_CREATED,
        envelope_id=envelope.id,
        document_id=document.id,
        actor_id=actor_id,
        payload={"source": "send_envelope", "signer_count": len(requests), "cc_count": cc_count},
    )
    result = _dispatch_draft(envelope, document, requests, actor_id=actor_id, source="send_envelope")
    result["cc_count"] = cc_count
    return result


@requires_permission(PERM_MANAGE)
def send_reminder(signing_request_id: str, *, actor_id=None) -> dict:
    """Re-issue one active signer's link and email it again."""
    request = _get_request(signing_request_id)
    if not request.sent_to_email:
        raise StateViolationError("This signer does not have an email address")
    if request.status == SigningRequestStatus.SIGNED.value:
        raise StateViolationError("This signer has already completed signature", current_status=request.status)
    if request.status in (SigningRequestStatus.VOIDED.value, SigningRequestStatus.EXPIRED.value):
        raise StateViolationError("This signing request is no longer active", current_status=request.status)

    if request.envelope_id:
        envelope = _get_envelope(request.envelope_id)
        if EnvelopeStatus(envelope.status) not in IN_FLIGHT_ENVELOPE_STATUSES:
            raise StateViolationError(
                f"Reminders can only be sent for sent envelopes (status '{envelope.status}')",
                current_status=envelope.status,
            )

    batch = sequencer.next_required_batch(load_group_requests(request))
    if not sequencer.is_request_active(request, batch):
        raise StateViolationError("This signer is not currently active in the signing order")

    get_signing_secret()
    document = _get_document(request.document_id)
    link = issue_signing_link(request, mark_sent=request.status == SigningRequestStatus.DRAFT.value)
    event_recorder.record(
        EVENT_REMINDER_SENT,
        envelope_id=request.envelope_id,
        document_id=request.document_id,
        actor_id=actor_id,
        recipient_id=request.recipient_id,
        payload={"signing_request_id": request.id, "sequence": request.effective_sequence},
    )
    db.session.commit()

    results = _deliver(_signing_messages(document, [(request, link)], template="signing_reminder",
                                         category="reminder"))
    logger.info("Signing reminder sent", extra={"signing_request_id": request.id, "actor_id": actor_id})
    return {
        "success": True,
        "signing_request_id": request.id,
        "sent_at": request.sent_at.isoformat() if request.sent_at else None,
        **_delivery_summary(results),
    }


def _void(envelope: Envelope, *, reason, actor_id, via: str) -> dict:
    """Void inside the caller's transaction.  Flushes; never commits."""
    if envelope.status == EnvelopeStatus.EXECUTED.value:
        raise StateViolationError("Executed envelopes cannot be voided", current_status=envelope.status)
    if envelope.status == EnvelopeStatus.VOIDED.value:
        return {"success": True, "idempotent": True, "envelope_id": envelope.id}
    if envelope.status == EnvelopeStatus.EXPIRED.value:
        raise StateViolationError("Expired envelopes cannot be voided", current_status=envelope.status)

    now = _utcnow()
    status_from = envelope.status
    reason = (reason or "").strip() or None
    meta = {
        **(envelope.meta or {}),
        "void_reason": reason,
        "voided_by_user_id": actor_id,
        "voided_via": via,
    }
    if not _cas_envelope_status(envelope.id, LIVE_ENVELOPE_STATUSES, EnvelopeStatus.VOIDED,
                                voided_at=now, meta=meta):
        db.session.refresh(envelope)
        if envelope.status == EnvelopeStatus.VOIDED.value:
            return {"success": True, "idempotent": True, "envelope_id": envelope.id}
        raise StateViolationError(
            f"Envelope cannot be voided from status '{envelope.status}'", current_status=envelope.status,
        )

    voided_requests = db.session.execute(
        update(SigningRequest)
        .where(
            SigningRequest.envelope_id == envelope.id,
            SigningRequest.status.in_(_values(OPEN_REQUEST_STATUSES)),
        )
        .values(status=SigningRequestStatus.VOIDED.value)
        .execution_options(synchronize_session=False)
    ).rowcount

    document_voided = False
    if not _live_envelopes(envelope.document_id, exclude_id=envelope.id):
        document_voided = db.session.execute(
            update(Document)
            .where(
                Document.id == envelope.document_id,
                Document.status.in_(["draft", "sent", "expired", "voided"]),
            )
            .values(status="voided", updated_at=now)
            .execution_options(synchronize_session=False)
        ).rowcount == 1
        if document_voided:
            db.session.refresh(_get_document(envelope.document_id))

    event_recorder.record(
        EVENT_VOIDED,
        envelope_id=envelope.id,
        document_id=envelope.document_id,
        actor_id=actor_id,
        status_from=status_from,
        status_to=EnvelopeStatus.VOIDED.value,
        payload={"reason": reason, "voided_via": via, "voided_requests": voided_requests},
    )
    db.session.refresh(envelope)
    logger.info(
        "Envelope voided (%d request(s) voided)", voided_requests,
        extra={"envelope_id": envelope.id, "actor_id": actor_id, "reason": reason},
    )
    return {
        "success": True,
        "idempotent": False,
        "envelope_id": envelope.id,
        "voided_requests": voided_requests,
        "document_voided": document_voided,
    }


@requires_permission(PERM_MANAGE)
def void_envelope(envelope_id: str, *, reason=None, actor_id=None, via: str = "signatures_hub") -> dict:
    """Void a live envelope and cascade to its open requests.  Voiding twice is a no-op."""
    envelope = _get_envelope(envelope_id)
    result = _void(envelope, reason=reason, actor_id=actor_id, via=via)
    db.session.commit()
    return result


@requires_permission(PERM_MANAGE)
def resend_envelope(envelope_id: str, *, actor_id=None) -> dict:
    """
    Supersede an envelope with a fresh one.

    The source ledger is cloned (source rows untouched).  A live source is
    voided with reason "Superseded by resend"; a terminal source is left
    as is.
    """
    source = _get_envelope(envelope_id)
    if source.status == EnvelopeStatus.EXECUTED.value:
        raise StateViolationError("Executed envelopes cannot be resent", current_status=source.status)

    cloned = recipient_ledger.clone_recipients(source.id)
    signer_count = sum(1 for r in cloned if r.is_signer)
    if signer_count == 0:
        raise StateViolationError("Envelope has no signer recipients to resend")

    get_signing_secret()
    document = _get_document(source.document_id)
    _assert_proposal_sendable(source.source_entity_type, source.source_entity_id)

    source_meta = {k: v for k, v in (source.meta or {}).items() if k not in _VOID_META_KEYS}
    source_was_live = source.is_live
    if source_was_live:
        _void(source, reason="Superseded by resend", actor_id=actor_id, via="resend")

    others = _live_envelopes(document.id, exclude_id=source.id)
    if others:
        db.session.rollback()
        raise StateViolationError(
            "This document already has another active envelope",
            current_status=others[0].status,
        )

    now = _utcnow()
    new_envelope = Envelope(
        project_id=source.project_id,
        document_id=source.document_id,
        document_revision=source.document_revision or 1,
        source_entity_type=source.source_entity_type,
        source_entity_id=source.source_entity_id,
        status=EnvelopeStatus.DRAFT.value,
        subject=source.subject,
        message=source.message,
        expires_at=source.expires_at,
        meta={
            **source_meta,
            "resend_of_envelope_id": source.id,
            "resend_requested_at": now.isoformat(),
            "resend_requested_by": actor_id,
        },
        created_by=actor_id,
    )
    db.session.add(new_envelope)
    db.session.flush()

    rows = recipient_ledger.replace_recipients(new_envelope, cloned)
    requests = _create_signing_requests(new_envelope, rows, actor_id=actor_id)
    event_recorder.record(
        EVENT_CREATED,
        envelope_id=new_envelope.id,
        document_id=document.id,
        actor_id=actor_id,
        payload={"source": "resend_envelope", "resend_of_envelope_id": source.id, "signer_count": signer_count},
    )
    result = _dispatch_draft(
        new_envelope, document, requests, actor_id=actor_id, source="resend_envelope",
        extra_payload={"resend_of_envelope_id": source.id},
    )
    result["resend_of_envelope_id"] = source.id
    result["source_voided"] = source_was_live
    return result


# ── Completion ───────────────────────────────────────────────────────────────


def _is_last_required(request: SigningRequest) -> bool:
    """Would signing this request leave no required request unsigned?"""
    unsigned = [
        r for r in load_envelope_requests(request.envelope_id)
        if r.required is not False and r.status != SigningRequestStatus.SIGNED.value
    ]
    return [r.id for r in unsigned] == [request.id]


def complete_signing_request(signing_request_id: str, *, actor_id=None) -> dict:
    """
    Mark one request signed (CAS sent/viewed → signed, used_count + 1),
    record recipient_signed, commit, then advance its envelope.

    The executed-file secret is checked up front when this signature would
    execute the envelope, so a missing secret aborts before any write.

    Raises StateViolationError if the request is not awaiting a signature,
    which is what the loser of a concurrent double-submit sees.
    """
    request = _get_request(signing_request_id)
    if request.envelope_id and _is_last_required(request):
        get_executed_secret()
    now = _utcnow()
    status_from = request.status
    won = _cas_request_status(
        request.id,
        {SigningRequestStatus.SENT, SigningRequestStatus.VIEWED},
        SigningRequestStatus.SIGNED,
        signed_at=now,
        used_count=SigningRequest.used_count + 1,
    )
    if not won:
        db.session.rollback()
        raise StateViolationError("Signing request is not awaiting a signature", current_status=status_from)
    db.session.refresh(request)

    event_recorder.record(
        EVENT_RECIPIENT_SIGNED,
        envelope_id=request.envelope_id,
        document_id=request.document_id,
        actor_id=actor_id,
        recipient_id=request.recipient_id,
        status_from=status_from,
        status_to=SigningRequestStatus.SIGNED.value,
        payload={
            "signing_request_id": request.id,
            "sequence": request.effective_sequence,
            "signer_role": request.signer_role,
            "signed_at": now.isoformat(),
        },
    )
    db.session.commit()
    logger.info("Recipient signed", extra={"signing_request_id": request.id, "envelope_id": request.envelope_id})

    if request.envelope_id:
        outcome = advance_envelope(request.envelope_id)
    else:
        outcome = _advance_legacy_group(request)
    outcome["signing_request_id"] = request.id
    return outcome


def _finalise_execution(envelope: Envelope, document: Document, status_from: str, now) -> str | None:
    """Work done by the executed CAS winner before its commit.  Returns the file id."""
    file_id = build_executed_artifact(envelope, document)
    document.status = "signed"
    if file_id:
        document.executed_file_id = file_id
    entity_type = envelope.source_entity_type or resolve_source_entity(document)[0]
    event_recorder.record(
        EVENT_EXECUTED,
        envelope_id=envelope.id,
        document_id=document.id,
        status_from=status_from,
        status_to=EnvelopeStatus.EXECUTED.value,
        payload={
            "executed_file_id": file_id,
            "executed_at": now.isoformat(),
            "completion_event": COMPLETION_EVENTS.get(entity_type),
        },
    )
    _run_source_completion(envelope, document, now)
    db.session.commit()
    return file_id


def is_envelope_stalled(envelope_id: str) -> bool:
    """In flight although every required request is signed."""
    envelope = _get_envelope(envelope_id)
    return envelope.status in _values(IN_FLIGHT_ENVELOPE_STATUSES) and sequencer.all_required_signed(
        load_envelope_requests(envelope.id)
    )


@requires_permission(PERM_MANAGE)
def reconcile_envelope(envelope_id: str, *, actor_id=None) -> dict:
    """
    Re-run the advance step for an in-flight envelope.

    Recovers an envelope whose signature was committed but whose advance
    failed (artifact builder error, crash between commits).  Idempotent:
    draft claims and the executed CAS keep a second run from double-issuing.
    """
    envelope = _get_envelope(envelope_id)
    if envelope.status not in _values(IN_FLIGHT_ENVELOPE_STATUSES):
        raise StateViolationError("Only sent or partially signed envelopes can be reconciled",
                                  current_status=envelope.status)
    logger.info("Reconciling envelope", extra={"envelope_id": envelope.id, "actor_id": actor_id})
    return advance_envelope(envelope.id)


def advance_envelope(envelope_id: str) -> dict:
    """
    Re-evaluate an envelope after a signature.

    All required requests signed → CAS to executed; only the CAS winner
    builds the artifact, writes envelope_executed, updates the document and
    runs completion.  If any of that fails the CAS is rolled back with it,
    leaving the envelope in flight for ``reconcile_envelope``.
    Otherwise → partially_signed (when someone has signed) and links for
    the newly active batch.
    """
    envelope = _get_envelope(envelope_id)
    requests = load_envelope_requests(envelope.id)
    document = _get_document(envelope.document_id)
    now = _utcnow()

    if sequencer.all_required_signed(requests):
        get_executed_secret()
        status_from = envelope.status
        if not _cas_envelope_status(envelope.id, IN_FLIGHT_ENVELOPE_STATUSES, EnvelopeStatus.EXECUTED,
                                    executed_at=now):
            db.session.rollback()
            envelope = _get_envelope(envelope_id)
            logger.info("Envelope already finalised by a concurrent signer",
                        extra={"envelope_id": envelope.id})
            return {"envelope_id": envelope.id, "status": envelope.status, "executed": False,
                    "executed_document_url": None}
        db.session.refresh(envelope)

        try:
            file_id = _finalise_execution(envelope, document, status_from, now)
        except Exception:
            db.session.rollback()
            logger.exception("Envelope execution failed, left in flight", extra={"envelope_id": envelope_id})
            raise
        logger.info("Envelope executed", extra={"envelope_id": envelope.id, "document_id": document.id})

        url, results = _send_executed_copies(envelope, document, file_id)
        return {
            "envelope_id": envelope.id,
            "status": envelope.status,
            "executed": True,
            "executed_file_id": file_id,
            "executed_document_url": url,
            **_delivery_summary(results),
        }

    required = [r for r in requests if r.required is not False]
    signed = [r for r in required if r.status == SigningRequestStatus.SIGNED.value]
    if signed and envelope.status == EnvelopeStatus.SENT.value:
        if _cas_envelope_status(envelope.id, {EnvelopeStatus.SENT}, EnvelopeStatus.PARTIALLY_SIGNED):
            db.session.refresh(envelope)

    batch = sequencer.next_required_batch(requests)
    issued = _issue_batch_links(batch.requests)
    if issued:
        event_recorder.record(
            EVENT_SENT,
            envelope_id=envelope.id,
            document_id=document.id,
            payload={
                "sent_now": len(issued),
                "trigger": "next_required_sequence",
                "active_sequence": batch.sequence,
            },
        )
    db.session.commit()

    results = _deliver(_signing_messages(document, issued, template="signing_request", category="signing"))
    return {
        "envelope_id": envelope.id,
        "status": envelope.status,
        "executed": False,
        "executed_document_url": None,
        "sent_now": len(issued),
        "active_sequence": batch.sequence,
        **_delivery_summary(results),
    }


def _advance_legacy_group(request: SigningRequest) -> dict:
    """Ungrouped (pre-envelope) requests: the document row carries the state."""
    requests = load_group_requests(request)
    document = _get_document(request.document_id)

    if sequencer.all_required_signed(requests):
        won = db.session.execute(
            update(Document)
            .where(Document.id == document.id, Document.status != "signed")
            .values(status="signed", updated_at=_utcnow())
            .execution_options(synchronize_session=False)
        ).rowcount == 1
        if won:
            db.session.refresh(document)
            event_recorder.record(
                EVENT_EXECUTED,
                document_id=document.id,
                status_to="signed",
                payload={"group_id": request.group_id or request.id,
                         "executed_file_id": document.executed_file_id},
            )
        db.session.commit()
        return {"envelope_id": None, "status": document.status, "executed": won, "executed_document_url": None}

    issued = _issue_batch_links(sequencer.next_required_batch(requests).requests)
    db.session.commit()
    results = _deliver(_signing_messages(document, issued, template="signing_request", category="signing"))
    return {
        "envelope_id": None,
        "status": document.status,
        "executed": False,
        "executed_document_url": None,
        "sent_now": len(issued),
        **_delivery_summary(results),
    }


def _send_executed_copies(envelope: Envelope, document: Document, file_id: str | None):
    if not file_id:
        logger.warning("Executed envelope has no file to share", extra={"envelope_id": envelope.id})
        return None, []
    token, _ = mint_executed_token(file_id, envelope.id)
    url = executed_url(token)

    seen = set()
    messages = []
    for recipient in recipient_ledger.list_recipients(envelope.id):
        email = (recipient.email or "").strip()
        if not email or email.lower() in seen:
            continue
        seen.add(email.lower())
        messages.append(OutboundEmail(
            to_email=email,
            to_name=recipient.name,
            template_name="executed_copy",
            category="executed",
            context={
                "document_title": document.title,
                "recipient_name": recipient.name or "there",
                "download_url": url,
            },
            envelope_id=envelope.id,
        ))
    return url, _deliver(messages)


# ── Queries ──────────────────────────────────────────────────────────────────


def _signer_rows(requests, batch, *, in_flight: bool) -> list[dict]:
    rows = []
    for request in requests:
        row = request.to_dict()
        active = sequencer.is_request_active(request, batch)
        row["name"] = request.recipient.name if request.recipient else None
        row["is_active"] = active
        row["can_remind"] = bool(in_flight and active and request.sent_to_email)
        rows.append(row)
    return rows


def _signer_summary(requests) -> dict:
    required = [r for r in requests if r.required is not False]
    signed = sum(1 for r in required if r.status == SigningRequestStatus.SIGNED.value)
    viewed = sum(1 for r in required if r.viewed_at is not None)
    return {
        "total": len(required),
        "signed": signed,
        "viewed": viewed,
        "pending": max(len(required) - signed, 0),
    }


def _envelope_status_payload(envelope: Envelope) -> dict:
    requests = load_envelope_requests(envelope.id)
    batch = sequencer.next_required_batch(requests)
    in_flight = EnvelopeStatus(envelope.status) in IN_FLIGHT_ENVELOPE_STATUSES
    return {
        "envelope": envelope.to_dict(),
        "status": envelope.status,
        "recipients": [r.to_dict() for r in recipient_ledger.list_recipients(envelope.id)],
        "signers": _signer_rows(requests, batch, in_flight=in_flight),
        "active_sequence": batch.sequence,
        "summary": _signer_summary(requests),
    }


@requires_permission(PERM_READ)
def get_envelope_status(envelope_id: str, *, actor_id=None) -> dict:
    return _envelope_status_payload(_get_envelope(envelope_id))


def derive_legacy_status(document_status: str, required_count: int, signed_count: int) -> str:
    """Envelope-style status for ungrouped requests, derived from the document row."""
    if document_status in ("draft", "voided", "expired"):
        return document_status
    if document_status == "signed":
        return EnvelopeStatus.EXECUTED.value
    if 0 < signed_count < required_count:
        return EnvelopeStatus.PARTIALLY_SIGNED.value
    if required_count > 0 and signed_count >= required_count:
        return EnvelopeStatus.EXECUTED.value
    return EnvelopeStatus.SENT.value


@requires_permission(PERM_READ)
def get_document_envelope_status(document_id: str, *, actor_id=None) -> dict:
    """Status of the document's latest envelope, or of its latest legacy request group."""
    document = _get_document(document_id)
    envelope = db.session.execute(
        select(Envelope)
        .where(Envelope.document_id == document.id)
        .order_by(Envelope.created_at.desc())
        .limit(1)
    ).scalars().first()
    if envelope is not None:
        payload = _envelope_status_payload(envelope)
        payload["document"] = document.to_dict()
        return payload

    legacy = list(db.session.execute(
        select(SigningRequest)
        .where(SigningRequest.document_id == document.id, SigningRequest.envelope_id.is_(None))
        .order_by(SigningRequest.created_at.desc())
    ).scalars())
    if not legacy:
        return {
            "envelope": None,
            "document": document.to_dict(),
            "status": None,
            "recipients": [],
            "signers": [],
            "active_sequence": None,
            "summary": _signer_summary([]),
        }

    group_id = legacy[0].grouping_key
    group = load_group_requests(legacy[0])
    batch = sequencer.next_required_batch(group)
    summary = _signer_summary(group)
    status = derive_legacy_status(document.status, summary["total"], summary["signed"])
    return {
        "envelope": None,
        "group_id": group_id,
        "document": document.to_dict(),
        "status": status,
        "recipients": [],
        "signers": _signer_rows(group, batch, in_flight=status in ("sent", "partially_signed")),
        "active_sequence": batch.sequence,
        "summary": summary,
    }


@requires_permission(PERM_READ)
def list_envelope_events(envelope_id: str, *, actor_id=None) -> list[dict]:
    _get_envelope(envelope_id)
    return [e.to_dict() for e in event_recorder.list_events(envelope_id)]


def count_live_envelopes(document_id: str) -> int:
    return db.session.execute(
        select(func.count(Envelope.id)).where(
            Envelope.document_id == document_id,
            Envelope.status.in_(_values(LIVE_ENVELOPE_STATUSES)),
        )
    ).scalar_one()
