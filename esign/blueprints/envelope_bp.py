"""Envelope management blueprint.

REST API used by the back office to send documents for signature and
manage envelopes.

Endpoint groups:
  Draft & send        POST /api/v1/documents/<id>/envelope/draft
                      POST /api/v1/documents/<id>/envelope/send
  Status              GET  /api/v1/documents/<id>/envelope
                      GET  /api/v1/envelopes/<id>
                      GET  /api/v1/envelopes/<id>/events
  Lifecycle actions   POST /api/v1/envelopes/<id>/void
                      POST /api/v1/envelopes/<id>/resend
                      POST /api/v1/envelopes/<id>/reconcile
                      POST /api/v1/signing-requests/<id>/remind
  Executed copy       GET  /api/v1/envelopes/<id>/executed-link
  Signatures hub      GET  /api/v1/signatures-hub

The actor is read from the X-Actor-Id header set by the host
application's auth layer; once a permission checker is registered a
request without it gets 401.  Service layer owns all business logic and
commits.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from flask import Blueprint, jsonify, request

from esign.core.exceptions import (
    AuthenticationRequiredError,
    ConfigurationError,
    InvalidTokenError,
    NotFoundError,
    PermissionDeniedError,
    StateViolationError,
    ValidationError,
)
from esign.middleware.permission_required import get_permission_checker
from esign.services import envelope_service, signatures_hub
from esign.services.executed_artifact import get_executed_download_link

logger = logging.getLogger(__name__)

envelope_bp = Blueprint("envelopes", __name__, url_prefix="/api/v1")


# ── Request helpers ───────────────────────────────────────────────────────────


def _actor_id() -> str | None:
    """X-Actor-Id, required whenever the host has registered a permission checker."""
    actor_id = (request.headers.get("X-Actor-Id") or "").strip() or None
    if actor_id is None and get_permission_checker() is not None:
        raise AuthenticationRequiredError()
    return actor_id


def _parse_datetime(value, field: str) -> datetime | None:
    if value in (None, ""):
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError(f"{field} must be an ISO-8601 datetime", details={field: "Invalid datetime"})
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _envelope_fields(data: dict) -> dict:
    return {
        "subject": (data.get("subject") or "").strip() or None,
        "message": (data.get("message") or "").strip() or None,
        "expires_at": _parse_datetime(data.get("expires_at"), "expires_at"),
    }


# ── Error handlers ────────────────────────────────────────────────────────────


@envelope_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return jsonify({"error": str(error)}), 404


@envelope_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    return jsonify({"error": str(error), "details": error.details}), 422


@envelope_bp.errorhandler(StateViolationError)
def _handle_state(error: StateViolationError):
    return jsonify({"error": str(error), "current_status": error.current_status}), 409


@envelope_bp.errorhandler(AuthenticationRequiredError)
def _handle_unauthenticated(error: AuthenticationRequiredError):
    return jsonify({"error": str(error)}), 401


@envelope_bp.errorhandler(PermissionDeniedError)
def _handle_permission(error: PermissionDeniedError):
    return jsonify({"error": str(error), "permission": error.permission}), 403


@envelope_bp.errorhandler(InvalidTokenError)
def _handle_token(error: InvalidTokenError):
    return jsonify({"error": str(error), "reason": error.reason}), 400


@envelope_bp.errorhandler(ConfigurationError)
def _handle_configuration(error: ConfigurationError):
    logger.error("Engine misconfigured: %s", error)
    return jsonify({"error": "Signing is not configured"}), 503


@envelope_bp.errorhandler(Exception)
def _handle_unexpected(error: Exception):
    logger.exception("Unexpected error in envelope_bp endpoint=%s", request.endpoint)
    return jsonify({"error": "Internal server error"}), 500


# ═════════════════════════════════════════════════════════════════════════
# Draft & send  (/api/v1/documents/<id>/envelope)
# ═════════════════════════════════════════════════════════════════════════


@envelope_bp.route("/documents/<document_id>/envelope/draft", methods=["POST"])
def save_draft(document_id):
    """Create or update the document's draft envelope.

    Body: {recipients?, subject?, message?, expires_at?}
    Returns: {envelope, recipients} (200).
    """
    data = request.get_json(silent=True) or {}
    result = envelope_service.save_draft(
        document_id, data.get("recipients"), actor_id=_actor_id(), **_envelope_fields(data),
    )
    return jsonify(result), 200


@envelope_bp.route("/documents/<document_id>/envelope/send", methods=["POST"])
def send_envelope(document_id):
    """Send the document for signature.

    Body: {recipients, subject?, message?, expires_at?}
    Returns: send summary (201).
    """
    data = request.get_json(silent=True) or {}
    result = envelope_service.send_envelope(
        document_id, data.get("recipients"), actor_id=_actor_id(), **_envelope_fields(data),
    )
    return jsonify(result), 201


# ═════════════════════════════════════════════════════════════════════════
# Status
# ═════════════════════════════════════════════════════════════════════════


@envelope_bp.route("/documents/<document_id>/envelope", methods=["GET"])
def document_envelope_status(document_id):
    return jsonify(envelope_service.get_document_envelope_status(document_id, actor_id=_actor_id())), 200


@envelope_bp.route("/envelopes/<envelope_id>", methods=["GET"])
def envelope_status(envelope_id):
    return jsonify(envelope_service.get_envelope_status(envelope_id, actor_id=_actor_id())), 200


@envelope_bp.route("/envelopes/<envelope_id>/events", methods=["GET"])
def envelope_events(envelope_id):
    events = envelope_service.list_envelope_events(envelope_id, actor_id=_actor_id())
    return jsonify({"items": events, "total": len(events)}), 200


# ═════════════════════════════════════════════════════════════════════════
# Lifecycle actions
# ═════════════════════════════════════════════════════════════════════════


@envelope_bp.route("/envelopes/<envelope_id>/void", methods=["POST"])
def void_envelope(envelope_id):
    """Void a live envelope.  Voiding an already voided envelope returns 200.

    Body: {reason?}
    """
    data = request.get_json(silent=True) or {}
    result = envelope_service.void_envelope(
        envelope_id, reason=data.get("reason"), actor_id=_actor_id(), via="api",
    )
    return jsonify(result), 200


@envelope_bp.route("/envelopes/<envelope_id>/resend", methods=["POST"])
def resend_envelope(envelope_id):
    result = envelope_service.resend_envelope(envelope_id, actor_id=_actor_id())
    return jsonify(result), 201


@envelope_bp.route("/envelopes/<envelope_id>/reconcile", methods=["POST"])
def reconcile_envelope(envelope_id):
    """Re-run the advance step for an envelope stuck in flight."""
    result = envelope_service.reconcile_envelope(envelope_id, actor_id=_actor_id())
    return jsonify(result), 200


@envelope_bp.route("/signing-requests/<signing_request_id>/remind", methods=["POST"])
def send_reminder(signing_request_id):
    result = envelope_service.send_reminder(signing_request_id, actor_id=_actor_id())
    return jsonify(result), 200


# ═════════════════════════════════════════════════════════════════════════
# Executed copy & hub
# ═════════════════════════════════════════════════════════════════════════


@envelope_bp.route("/envelopes/<envelope_id>/executed-link", methods=["GET"])
def executed_link(envelope_id):
    return jsonify(get_executed_download_link(envelope_id, actor_id=_actor_id())), 200


@envelope_bp.route("/signatures-hub", methods=["GET"])
def signatures_hub_view():
    """Signatures hub rows and queue counts.

    Query params: project_id (optional)
    """
    project_id = request.args.get("project_id") or None
    return jsonify(signatures_hub.build_signatures_hub(project_id, actor_id=_actor_id())), 200
