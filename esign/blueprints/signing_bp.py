"""Public signing blueprint.

Token-addressed endpoints reached from signing and executed-copy emails.
No actor header: the token is the credential.

  GET  /signing/<token>    open_signing_link
  POST /signing/<token>    submit_signature
  GET  /executed/<token>   redeem_executed_token (returns the file id)

Rejected tokens map to 404 (unknown / inactive / wrong type) or 410
(expired / used).  The token value is never logged.
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

from esign.core.exceptions import (
    ConfigurationError,
    InvalidTokenError,
    StateViolationError,
    ValidationError,
)
from esign.services import signing_service
from esign.services.executed_artifact import redeem_executed_token

logger = logging.getLogger(__name__)

signing_bp = Blueprint("signing", __name__)

_GONE_REASONS = frozenset({"expired", "used"})


def _client_ip() -> str | None:
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    return request.remote_addr


# ── Error handlers ────────────────────────────────────────────────────────────


@signing_bp.errorhandler(InvalidTokenError)
def _handle_token(error: InvalidTokenError):
    status = 410 if error.reason in _GONE_REASONS else 404
    logger.info("Token rejected: %s", error.reason, extra={"reason": error.reason})
    return jsonify({"error": str(error), "reason": error.reason}), status


@signing_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    return jsonify({"error": str(error), "details": error.details}), 422


@signing_bp.errorhandler(StateViolationError)
def _handle_state(error: StateViolationError):
    return jsonify({"error": str(error)}), 409


@signing_bp.errorhandler(ConfigurationError)
def _handle_configuration(error: ConfigurationError):
    logger.error("Engine misconfigured: %s", error)
    return jsonify({"error": "Signing is not configured"}), 503


@signing_bp.errorhandler(Exception)
def _handle_unexpected(error: Exception):
    logger.exception("Unexpected error in signing_bp endpoint=%s", request.endpoint)
    return jsonify({"error": "Internal server error"}), 500


# ── Routes ────────────────────────────────────────────────────────────────────


@signing_bp.route("/signing/<token>", methods=["GET"])
def open_link(token):
    result = signing_service.open_signing_link(
        token, signer_ip=_client_ip(), user_agent=request.headers.get("User-Agent"),
    )
    return jsonify(result), 200


@signing_bp.route("/signing/<token>", methods=["POST"])
def submit(token):
    """Submit a signature.

    Body: {signer_name, consent_text, signer_email?, values?}
    """
    data = request.get_json(silent=True) or {}
    result = signing_service.submit_signature(
        token,
        signer_name=data.get("signer_name"),
        consent_text=data.get("consent_text"),
        signer_email=data.get("signer_email"),
        values=data.get("values"),
        signer_ip=_client_ip(),
        user_agent=request.headers.get("User-Agent"),
    )
    return jsonify(result), 200


@signing_bp.route("/executed/<token>", methods=["GET"])
def executed_download(token):
    return jsonify(redeem_executed_token(token)), 200
