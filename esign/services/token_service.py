"""
Signing-link token issuer.

Tokens are 256-bit random hex strings.  Only ``HMAC-SHA256(secret, token)``
is persisted (on ``SigningRequest.token_hash``); the cleartext exists only
in the return value of ``issue_signing_link`` and in the outbound email.

There is no token registry.  A token is bound to exactly one request by
its digest, so the signing flow must re-check the request's status on
every presentation; voiding a request is what revokes its link.

Configuration:
    DOCUMENT_SIGNING_SECRET   HMAC key.  Missing → ConfigurationError,
                              raised before anything is written.
    APP_BASE_URL              Prefix for ``/signing/<token>`` links.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass

from flask import current_app

from esign.core.exceptions import ConfigurationError
from esign.models import db
from esign.models._helpers import _utcnow
from esign.models.envelope import SigningRequest, SigningRequestStatus

logger = logging.getLogger(__name__)

TOKEN_BYTES = 32


@dataclass(frozen=True)
class IssuedLink:
    """Result of issuing a link.  Never log or persist ``token``."""

    signing_request_id: str
    token: str
    url: str

    def __repr__(self):
        return f"IssuedLink(signing_request_id={self.signing_request_id!r}, url=<redacted>)"


def get_signing_secret() -> str:
    secret = current_app.config.get("DOCUMENT_SIGNING_SECRET")
    if not secret:
        raise ConfigurationError("DOCUMENT_SIGNING_SECRET")
    return secret


def generate_token() -> str:
    return secrets.token_hex(TOKEN_BYTES)


def hash_token(secret: str, token: str) -> str:
    """Return the hex HMAC-SHA256 digest of ``token`` keyed by ``secret``."""
    if not secret:
        raise ConfigurationError("DOCUMENT_SIGNING_SECRET")
    return hmac.new(secret.encode("utf-8"), token.encode("utf-8"), hashlib.sha256).hexdigest()


def verify_token(secret: str, presented_token: str, stored_digest: str | None) -> bool:
    """Recompute the digest and compare in constant time."""
    if not presented_token or not stored_digest:
        return False
    expected = hash_token(secret, presented_token)
    return hmac.compare_digest(expected, stored_digest)


def build_public_url(path: str) -> str:
    base = (current_app.config.get("APP_BASE_URL") or "").rstrip("/")
    return f"{base}{path}"


def signing_url(token: str) -> str:
    return build_public_url(f"/signing/{token}")


def issue_signing_link(signing_request: SigningRequest, *, mark_sent: bool = False) -> IssuedLink:
    """
    Mint a fresh token for one signing request.

    Overwrites any earlier digest, so a reminder invalidates the previous
    link.  Stamps ``sent_at``; with ``mark_sent`` a draft request is also
    flipped to sent.  Flushes but does not commit: the caller owns the
    transaction.
    """
    secret = get_signing_secret()
    token = generate_token()

    signing_request.token_hash = hash_token(secret, token)
    signing_request.sent_at = _utcnow()
    if mark_sent and signing_request.status == SigningRequestStatus.DRAFT.value:
        signing_request.status = SigningRequestStatus.SENT.value

    db.session.flush()

    logger.info(
        "Signing link issued",
        extra={
            "signing_request_id": signing_request.id,
            "envelope_id": signing_request.envelope_id,
        },
    )
    return IssuedLink(signing_request_id=signing_request.id, token=token, url=signing_url(token))
