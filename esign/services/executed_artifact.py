"""
Executed artifact resolver.

Maps an executed envelope to its final signed file and mints bounded-use
download tokens for it.

File id resolution order:
    1. ``executed_file_id`` on the envelope's latest envelope_executed event
    2. ``Document.executed_file_id``
Neither → NotFoundError("Executed file").

Download tokens are HS256 JWTs signed with EXECUTED_FILE_TOKEN_SECRET, a
separate secret from the signing-link HMAC key.  Claims:
    typ          "executed_file"
    file_id      resolved file id
    envelope_id  source envelope
    jti          redemption ledger key
    max_uses     copied from EXECUTED_LINK_MAX_USES at mint time
    iat / exp    EXECUTED_LINK_TTL_SECONDS lifetime

The host application may register an artifact builder that produces the
executed file (e.g. stamps signatures onto the PDF) when an envelope
completes.  PDF generation itself is not part of the engine.
"""

from __future__ import annotations

import logging
import uuid
from datetime import timedelta
from typing import Callable

import jwt
from flask import current_app
from sqlalchemy import select, update

from esign.core.exceptions import (
    ConfigurationError,
    InvalidTokenError,
    NotFoundError,
    StateViolationError,
)
from esign.middleware.permission_required import PERM_READ, requires_permission
from esign.models import db
from esign.models._helpers import _utcnow
from esign.models.access import ExecutedLinkRedemption
from esign.models.document import Document
from esign.models.envelope import Envelope, EnvelopeStatus
from esign.models.event import EVENT_EXECUTED
from esign.services import event_recorder
from esign.services.token_service import build_public_url

logger = logging.getLogger(__name__)

TOKEN_TYPE = "executed_file"
_ALGORITHM = "HS256"
_BUILDER_KEY = "esign_artifact_builder"

ArtifactBuilder = Callable[[Envelope, Document], "str | None"]


# ── Artifact builder hook ────────────────────────────────────────────────────


def set_artifact_builder(app, builder: ArtifactBuilder | None) -> None:
    """Register ``builder(envelope, document) -> file_id`` (None to clear)."""
    app.extensions[_BUILDER_KEY] = builder


def build_executed_artifact(envelope: Envelope, document: Document) -> str | None:
    """Run the registered builder, falling back to the document's current file."""
    builder = current_app.extensions.get(_BUILDER_KEY)
    if builder is not None:
        file_id = builder(envelope, document)
        if file_id:
            return file_id
    return document.executed_file_id or document.source_file_id


# ── Resolution ───────────────────────────────────────────────────────────────


def resolve_executed_file_id(envelope: Envelope) -> str:
    if envelope.status != EnvelopeStatus.EXECUTED.value:
        raise StateViolationError("Envelope is not executed yet", current_status=envelope.status)

    executed_event = event_recorder.latest_event(envelope.id, EVENT_EXECUTED)
    file_id = (executed_event.payload or {}).get("executed_file_id") if executed_event else None
    if not file_id:
        document = db.session.get(Document, envelope.document_id)
        file_id = document.executed_file_id if document else None
    if not file_id:
        raise NotFoundError(resource="Executed file", resource_id=envelope.id)
    return file_id


def get_executed_secret() -> str:
    secret = current_app.config.get("EXECUTED_FILE_TOKEN_SECRET")
    if not secret:
        raise ConfigurationError("EXECUTED_FILE_TOKEN_SECRET")
    return secret


def mint_executed_token(file_id: str, envelope_id: str | None = None) -> tuple[str, dict]:
    """Return (token, claims) for one executed-file download link."""
    secret = get_executed_secret()
    now = _utcnow()
    ttl = int(current_app.config.get("EXECUTED_LINK_TTL_SECONDS", 7 * 24 * 3600))
    claims = {
        "typ": TOKEN_TYPE,
        "file_id": file_id,
        "envelope_id": envelope_id,
        "jti": uuid.uuid4().hex,
        "max_uses": int(current_app.config.get("EXECUTED_LINK_MAX_USES", 5)),
        "iat": now,
        "exp": now + timedelta(seconds=ttl),
    }
    token = jwt.encode(claims, secret, algorithm=_ALGORITHM)
    return token, claims


def executed_url(token: str) -> str:
    return build_public_url(f"/executed/{token}")


@requires_permission(PERM_READ)
def get_executed_download_link(envelope_id: str, *, actor_id: str | None = None) -> dict:
    """Resolve the executed file of an envelope and mint a download link."""
    envelope = db.session.get(Envelope, envelope_id)
    if not envelope:
        raise NotFoundError(resource="Envelope", resource_id=envelope_id)

    file_id = resolve_executed_file_id(envelope)
    token, claims = mint_executed_token(file_id, envelope.id)
    logger.info("Executed download link minted", extra={"envelope_id": envelope.id, "actor_id": actor_id})
    return {
        "envelope_id": envelope.id,
        "file_id": file_id,
        "url": executed_url(token),
        "expires_at": claims["exp"].isoformat(),
        "max_uses": claims["max_uses"],
    }


# ── Redemption ───────────────────────────────────────────────────────────────


def _decode(token: str) -> dict:
    try:
        claims = jwt.decode(
            token, get_executed_secret(), algorithms=[_ALGORITHM],
            options={"require": ["exp", "jti", "typ", "file_id"]},
        )
    except jwt.ExpiredSignatureError:
        raise InvalidTokenError("expired", "Download link has expired")
    except jwt.InvalidTokenError:
        raise InvalidTokenError("not_found", "Download link is invalid")
    if claims.get("typ") != TOKEN_TYPE:
        raise InvalidTokenError("wrong_type", "Download link is invalid")
    return claims


def redeem_executed_token(token: str) -> dict:
    """
    Validate a download token and count one use against it.

    Raises InvalidTokenError (expired / used / not_found / wrong_type).
    Commits the redemption counter.
    """
    claims = _decode(token)
    jti = claims["jti"]
    max_uses = int(claims.get("max_uses") or 1)

    redemption = db.session.execute(
        select(ExecutedLinkRedemption).where(ExecutedLinkRedemption.jti == jti)
    ).scalars().first()
    if redemption is None:
        redemption = ExecutedLinkRedemption(
            jti=jti,
            file_id=claims["file_id"],
            envelope_id=claims.get("envelope_id"),
            use_count=0,
            max_uses=max_uses,
        )
        db.session.add(redemption)
        db.session.flush()

    now = _utcnow()
    result = db.session.execute(
        update(ExecutedLinkRedemption)
        .where(
            ExecutedLinkRedemption.jti == jti,
            ExecutedLinkRedemption.use_count < ExecutedLinkRedemption.max_uses,
        )
        .values(
            use_count=ExecutedLinkRedemption.use_count + 1,
            first_redeemed_at=db.func.coalesce(ExecutedLinkRedemption.first_redeemed_at, now),
            last_redeemed_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.session.rollback()
        logger.warning("Executed download link exhausted", extra={"reason": "used"})
        raise InvalidTokenError("used", "Download link has already been used the maximum number of times")

    db.session.commit()
    db.session.refresh(redemption)
    logger.info("Executed download link redeemed", extra={"envelope_id": claims.get("envelope_id")})
    return {
        "file_id": claims["file_id"],
        "envelope_id": claims.get("envelope_id"),
        "remaining_uses": redemption.remaining_uses,
    }
