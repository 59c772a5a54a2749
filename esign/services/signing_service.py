"""
Public signing flow — what a signer reaches through ``/signing/<token>``.

    open_signing_link   token → request; stamps viewed_at / sent → viewed once
    submit_signature    token → SignatureRecord + completion

A token is looked up by its HMAC digest and re-verified in constant time.
Every presentation re-checks the request's status; expiry and the use
bound are enforced on submit.  Voiding an envelope revokes its links.
Resubmitting a signed link whose envelope stalled after the signature
was committed re-runs the advance step instead of rejecting the link.
"""

from __future__ import annotations

import logging

from sqlalchemy import select, update

from esign.core.exceptions import (
    ConfigurationError,
    InvalidTokenError,
    StateViolationError,
    ValidationError,
)
from esign.models import db
from esign.models._helpers import _aware, _utcnow
from esign.models.document import Document
from esign.models.envelope import SignatureRecord, SigningRequest, SigningRequestStatus
from esign.models.event import EVENT_VIEWED
from esign.services import envelope_service, event_recorder, sequencer
from esign.services.token_service import get_signing_secret, hash_token, verify_token

logger = logging.getLogger(__name__)

_INACTIVE = frozenset({SigningRequestStatus.VOIDED.value, SigningRequestStatus.EXPIRED.value})


def _find_request(token: str) -> SigningRequest:
    secret = get_signing_secret()
    if not token:
        raise InvalidTokenError("not_found", "Signing link is invalid")
    digest = hash_token(secret, token)
    request = db.session.execute(
        select(SigningRequest)
        .where(SigningRequest.token_hash == digest)
        .execution_options(populate_existing=True)
    ).scalars().first()
    if request is None or not verify_token(secret, token, request.token_hash):
        raise InvalidTokenError("not_found", "Signing link is invalid")
    return request


def _check_usable(request: SigningRequest, *, enforce_expiry: bool = True) -> None:
    if request.status in _INACTIVE:
        raise InvalidTokenError("inactive", "This signing link is no longer active")
    if request.status == SigningRequestStatus.SIGNED.value:
        raise InvalidTokenError("used", "This document has already been signed")
    expires_at = _aware(request.expires_at)
    if enforce_expiry and expires_at is not None and expires_at <= _utcnow():
        raise InvalidTokenError("expired", "This signing link has expired")


def _gate(request: SigningRequest) -> tuple[bool, bool]:
    """Return (is_active, can_sign) from a fresh read of the request's group."""
    batch = sequencer.next_required_batch(envelope_service.load_group_requests(request))
    return sequencer.is_request_active(request, batch), sequencer.can_sign_now(request, batch)


def open_signing_link(token: str, *, signer_ip: str | None = None, user_agent: str | None = None) -> dict:
    """Resolve a signing link for display.  First open records envelope_viewed."""
    request = _find_request(token)
    _check_usable(request, enforce_expiry=False)

    if request.viewed_at is None:
        now = _utcnow()
        stamped = db.session.execute(
            update(SigningRequest)
            .where(SigningRequest.id == request.id, SigningRequest.viewed_at.is_(None))
            .values(viewed_at=now)
            .execution_options(synchronize_session=False)
        ).rowcount == 1
        if stamped:
            db.session.execute(
                update(SigningRequest)
                .where(SigningRequest.id == request.id,
                       SigningRequest.status == SigningRequestStatus.SENT.value)
                .values(status=SigningRequestStatus.VIEWED.value)
                .execution_options(synchronize_session=False)
            )
            event_recorder.record(
                EVENT_VIEWED,
                envelope_id=request.envelope_id,
                document_id=request.document_id,
                recipient_id=request.recipient_id,
                payload={"signing_request_id": request.id, "signer_ip": signer_ip, "user_agent": user_agent},
            )
        db.session.commit()
        db.session.refresh(request)

    document = db.session.get(Document, request.document_id)
    is_active, can_sign = _gate(request)
    return {
        "signing_request": request.to_dict(),
        "signer_name": request.recipient.name if request.recipient else None,
        "document": {
            "id": document.id,
            "title": document.title,
            "revision": request.revision,
            "source_file_id": document.source_file_id,
        } if document else None,
        "is_active": is_active,
        "can_sign": can_sign,
    }


def submit_signature(
    token: str,
    *,
    signer_name: str | None,
    consent_text: str | None,
    signer_email: str | None = None,
    values: dict | None = None,
    signer_ip: str | None = None,
    user_agent: str | None = None,
) -> dict:
    """
    Capture a signature and complete the request.

    Raises:
        ValidationError: name or consent missing.
        InvalidTokenError: unknown, inactive, expired or already used link.
        StateViolationError: a required signer earlier in the order is pending.
    """
    errors = {}
    if not (signer_name or "").strip():
        errors["signer_name"] = "Signer name is required"
    if not (consent_text or "").strip():
        errors["consent_text"] = "Consent is required"
    if errors:
        raise ValidationError("Signature is incomplete", details=errors)
    if values is not None and not isinstance(values, dict):
        raise ValidationError("values must be an object", details={"values": "Expected an object"})

    request = _find_request(token)
    if (request.status == SigningRequestStatus.SIGNED.value and request.envelope_id
            and envelope_service.is_envelope_stalled(request.envelope_id)):
        # The signature is on file; only the advance step is missing.
        outcome = envelope_service.advance_envelope(request.envelope_id)
        logger.info("Stalled envelope advanced on resubmission",
                    extra={"signing_request_id": request.id, "envelope_id": request.envelope_id})
        return _submit_result(request, outcome)

    _check_usable(request)
    if request.used_count >= request.max_uses:
        raise InvalidTokenError("used", "This signing link has already been used")

    _, can_sign = _gate(request)
    if not can_sign:
        raise StateViolationError("This signer is not yet authorized to sign", current_status=request.status)

    db.session.add(SignatureRecord(
        signing_request_id=request.id,
        document_id=request.document_id,
        revision=request.revision,
        signer_name=signer_name.strip(),
        signer_email=(signer_email or request.sent_to_email or "").strip() or None,
        signer_ip=signer_ip,
        user_agent=(user_agent or "")[:500] or None,
        consent_text=consent_text.strip(),
        values=dict(values or {}),
    ))
    db.session.flush()

    try:
        outcome = envelope_service.complete_signing_request(request.id)
    except StateViolationError:
        db.session.rollback()
        raise InvalidTokenError("used", "This signing link has already been used")
    except ConfigurationError:
        db.session.rollback()
        raise

    logger.info(
        "Signature captured", extra={"signing_request_id": request.id, "envelope_id": request.envelope_id},
    )
    return _submit_result(request, outcome)


def _submit_result(request: SigningRequest, outcome: dict) -> dict:
    return {
        "success": True,
        "signing_request_id": request.id,
        "envelope_id": request.envelope_id,
        "envelope_status": outcome.get("status"),
        "executed": outcome.get("executed", False),
        "executed_document_url": outcome.get("executed_document_url"),
    }
