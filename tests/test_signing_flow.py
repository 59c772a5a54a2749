"""Signer-facing flow: opening a link and submitting a signature."""

from datetime import timedelta

import pytest
from sqlalchemy import select

from esign.core.exceptions import InvalidTokenError, StateViolationError, ValidationError
from esign.models import db as _db
from esign.models._helpers import _utcnow
from esign.models.envelope import SignatureRecord
from esign.models.event import EVENT_VIEWED
from esign.services import envelope_service, event_recorder, signing_service
from esign.services.token_service import issue_signing_link
from factories import signer, tokens_by_email

CONSENT = "I agree to use electronic records and signatures."


def _send(document, recipients, **kwargs):
    result = envelope_service.send_envelope(document.id, recipients, **kwargs)
    return result["envelope_id"]


def _request_for(envelope_id, email):
    return [r for r in envelope_service.load_envelope_requests(envelope_id) if r.sent_to_email == email][0]


# ── open_signing_link ────────────────────────────────────────────────────────


class TestOpenSigningLink:
    def test_open_stamps_viewed_once(self, document, outbox):
        env_id = _send(document, [signer("a@example.com", name="Ann")])
        token = tokens_by_email(outbox)["a@example.com"]

        first = signing_service.open_signing_link(token, signer_ip="10.0.0.1")
        second = signing_service.open_signing_link(token)

        assert first["signing_request"]["status"] == "viewed"
        assert first["signer_name"] == "Ann"
        assert first["document"]["title"] == document.title
        assert first["is_active"] is True
        assert first["can_sign"] is True
        assert second["signing_request"]["viewed_at"] == first["signing_request"]["viewed_at"]
        assert event_recorder.count_events(env_id, EVENT_VIEWED) == 1

    def test_open_unknown_token(self):
        with pytest.raises(InvalidTokenError) as exc:
            signing_service.open_signing_link("f" * 64)
        assert exc.value.reason == "not_found"

    def test_open_voided_request_rejected_even_with_valid_digest(self, document, outbox):
        env_id = _send(document, [signer("a@example.com")])
        token = tokens_by_email(outbox)["a@example.com"]
        envelope_service.void_envelope(env_id)

        with pytest.raises(InvalidTokenError) as exc:
            signing_service.open_signing_link(token)
        assert exc.value.reason == "inactive"

    def test_open_reports_inactive_when_not_yet_in_batch(self, document, outbox):
        env_id = _send(document, [signer("a@example.com", sequence=1), signer("b@example.com", sequence=2)])
        later = _request_for(env_id, "b@example.com")
        # A link issued out of order (e.g. by the host app) still cannot sign early.
        link = issue_signing_link(later, mark_sent=True)
        _db.session.commit()

        view = signing_service.open_signing_link(link.token)

        assert view["is_active"] is False
        assert view["can_sign"] is False
        with pytest.raises(StateViolationError, match="not yet authorized"):
            signing_service.submit_signature(link.token, signer_name="Bob", consent_text=CONSENT)


# ── submit_signature ─────────────────────────────────────────────────────────


class TestSubmitSignature:
    def test_submit_captures_signature(self, document, outbox):
        env_id = _send(document, [signer("a@example.com")])
        token = tokens_by_email(outbox)["a@example.com"]

        result = signing_service.submit_signature(
            token, signer_name=" Ann Owner ", consent_text=CONSENT,
            values={"initials": "AO"}, signer_ip="10.0.0.9", user_agent="pytest",
        )

        assert result["success"] is True
        assert result["envelope_id"] == env_id
        assert result["executed"] is True
        record = _db.session.execute(select(SignatureRecord)).scalars().one()
        assert record.signer_name == "Ann Owner"
        assert record.signer_email == "a@example.com"
        assert record.values == {"initials": "AO"}
        assert record.signer_ip == "10.0.0.9"

    @pytest.mark.parametrize("name, consent, field", [
        ("", CONSENT, "signer_name"),
        ("Ann", "  ", "consent_text"),
    ])
    def test_submit_requires_name_and_consent(self, document, outbox, name, consent, field):
        _send(document, [signer("a@example.com")])
        token = tokens_by_email(outbox)["a@example.com"]
        with pytest.raises(ValidationError) as exc:
            signing_service.submit_signature(token, signer_name=name, consent_text=consent)
        assert field in exc.value.details

    def test_submit_twice_is_rejected_as_used(self, document, outbox):
        _send(document, [signer("a@example.com"), signer("b@example.com", sequence=1)])
        token = tokens_by_email(outbox)["a@example.com"]
        signing_service.submit_signature(token, signer_name="Ann", consent_text=CONSENT)

        with pytest.raises(InvalidTokenError) as exc:
            signing_service.submit_signature(token, signer_name="Ann", consent_text=CONSENT)
        assert exc.value.reason == "used"
        assert _db.session.query(SignatureRecord).count() == 1

    def test_submit_expired_link(self, document, outbox):
        env_id = _send(document, [signer("a@example.com")], expires_at=_utcnow() + timedelta(days=3))
        token = tokens_by_email(outbox)["a@example.com"]
        req = _request_for(env_id, "a@example.com")
        req.expires_at = _utcnow() - timedelta(minutes=1)
        _db.session.commit()

        # Opening still works; only submission enforces expiry.
        signing_service.open_signing_link(token)
        with pytest.raises(InvalidTokenError) as exc:
            signing_service.submit_signature(token, signer_name="Ann", consent_text=CONSENT)
        assert exc.value.reason == "expired"

    def test_submit_after_void_is_inactive(self, document, outbox):
        env_id = _send(document, [signer("a@example.com")])
        token = tokens_by_email(outbox)["a@example.com"]
        envelope_service.void_envelope(env_id)
        with pytest.raises(InvalidTokenError) as exc:
            signing_service.submit_signature(token, signer_name="Ann", consent_text=CONSENT)
        assert exc.value.reason == "inactive"

    def test_reminder_link_replaces_original(self, document, outbox):
        env_id = _send(document, [signer("a@example.com")])
        original = tokens_by_email(outbox)["a@example.com"]
        envelope_service.send_reminder(_request_for(env_id, "a@example.com").id)
        reminder = tokens_by_email(outbox, "signing_reminder")["a@example.com"]

        with pytest.raises(InvalidTokenError):
            signing_service.open_signing_link(original)
        assert signing_service.open_signing_link(reminder)["can_sign"] is True
