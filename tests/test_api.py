"""HTTP surface tests: envelope management, public signing and health."""

from esign.middleware.permission_required import set_permission_checker
from esign.models import db as _db
from esign.models.envelope import SigningRequest
from esign.services.executed_artifact import set_artifact_builder
from esign.services.token_service import issue_signing_link
from factories import cc, signer, tokens_by_email

BASE = "/api/v1"
ACTOR = {"X-Actor-Id": "user-1"}


def _send(client, document, recipients, **body):
    res = client.post(
        f"{BASE}/documents/{document.id}/envelope/send",
        json={"recipients": recipients, **body}, headers=ACTOR,
    )
    assert res.status_code == 201, res.get_json()
    return res.get_json()


# ═════════════════════════════════════════════════════════════════════════
# Draft & send
# ═════════════════════════════════════════════════════════════════════════


class TestDraftAndSend:
    def test_save_draft(self, client, document):
        res = client.post(
            f"{BASE}/documents/{document.id}/envelope/draft",
            json={"recipients": [signer("a@example.com")], "subject": "Please sign"},
            headers=ACTOR,
        )
        assert res.status_code == 200
        data = res.get_json()
        assert data["envelope"]["status"] == "draft"
        assert data["envelope"]["subject"] == "Please sign"
        assert [r["email"] for r in data["recipients"]] == ["a@example.com"]

    def test_send_envelope(self, client, document, outbox):
        data = _send(client, document, [signer("a@example.com"), cc("c@example.com")],
                     expires_at="2099-01-01T00:00:00Z")
        assert data["status"] == "sent"
        assert data["signer_count"] == 1
        assert data["sent_now"] == 1
        assert data["cc_count"] == 1
        assert data["failed_deliveries"] == 0

    def test_send_unknown_document_404(self, client):
        res = client.post(f"{BASE}/documents/nope/envelope/send", json={"recipients": [signer("a@example.com")]})
        assert res.status_code == 404

    def test_send_invalid_recipients_422(self, client, document):
        res = client.post(
            f"{BASE}/documents/{document.id}/envelope/send",
            json={"recipients": [{"name": "No Email"}]},
        )
        assert res.status_code == 422
        assert "recipients" in res.get_json()["details"]

    def test_send_bad_expiry_422(self, client, document):
        res = client.post(
            f"{BASE}/documents/{document.id}/envelope/send",
            json={"recipients": [signer("a@example.com")], "expires_at": "next tuesday"},
        )
        assert res.status_code == 422
        assert "expires_at" in res.get_json()["details"]

    def test_send_cc_only_409(self, client, document):
        res = client.post(
            f"{BASE}/documents/{document.id}/envelope/send",
            json={"recipients": [cc("c@example.com")]},
        )
        assert res.status_code == 409

    def test_second_send_while_live_409(self, client, document, outbox):
        _send(client, document, [signer("a@example.com")])
        res = client.post(
            f"{BASE}/documents/{document.id}/envelope/send",
            json={"recipients": [signer("b@example.com")]},
        )
        assert res.status_code == 409
        assert "already has an envelope" in res.get_json()["error"]

    def test_send_without_signing_secret_503(self, app, client, document, monkeypatch):
        monkeypatch.setitem(app.config, "DOCUMENT_SIGNING_SECRET", None)
        res = client.post(
            f"{BASE}/documents/{document.id}/envelope/send",
            json={"recipients": [signer("a@example.com")]},
        )
        assert res.status_code == 503

    def test_permission_denied_403(self, app, client, document):
        set_permission_checker(app, lambda actor_id, codename: codename == "envelope.read")
        res = client.post(
            f"{BASE}/documents/{document.id}/envelope/send",
            json={"recipients": [signer("a@example.com")]}, headers=ACTOR,
        )
        assert res.status_code == 403
        assert res.get_json()["permission"] == "envelope.manage"

        res = client.get(f"{BASE}/signatures-hub", headers=ACTOR)
        assert res.status_code == 200


# ═════════════════════════════════════════════════════════════════════════
# Status & lifecycle
# ═════════════════════════════════════════════════════════════════════════


class TestStatusAndLifecycle:
    def test_status_endpoints(self, client, document, outbox):
        sent = _send(client, document, [signer("a@example.com", sequence=1), signer("b@example.com", sequence=2)])

        res = client.get(f"{BASE}/envelopes/{sent['envelope_id']}")
        assert res.status_code == 200
        data = res.get_json()
        assert data["status"] == "sent"
        assert data["active_sequence"] == 1
        assert [s["is_active"] for s in data["signers"]] == [True, False]

        res = client.get(f"{BASE}/documents/{document.id}/envelope")
        assert res.get_json()["document"]["id"] == document.id

        res = client.get(f"{BASE}/envelopes/{sent['envelope_id']}/events")
        data = res.get_json()
        assert data["total"] == len(data["items"])
        assert {e["event_type"] for e in data["items"]} >= {"envelope_draft_created", "envelope_sent"}

    def test_document_without_envelope(self, client, document):
        data = client.get(f"{BASE}/documents/{document.id}/envelope").get_json()
        assert data["envelope"] is None
        assert data["status"] is None

    def test_unknown_envelope_404(self, client):
        assert client.get(f"{BASE}/envelopes/missing").status_code == 404

    def test_void_then_void_again(self, client, document, outbox):
        sent = _send(client, document, [signer("a@example.com")])

        res = client.post(f"{BASE}/envelopes/{sent['envelope_id']}/void", json={"reason": "Wrong price"}, headers=ACTOR)
        assert res.status_code == 200
        assert res.get_json()["idempotent"] is False

        res = client.post(f"{BASE}/envelopes/{sent['envelope_id']}/void", json={})
        assert res.status_code == 200
        assert res.get_json()["idempotent"] is True

    def test_resend(self, client, document, outbox):
        sent = _send(client, document, [signer("a@example.com")])
        client.post(f"{BASE}/envelopes/{sent['envelope_id']}/void", json={})

        res = client.post(f"{BASE}/envelopes/{sent['envelope_id']}/resend", headers=ACTOR)

        assert res.status_code == 201
        data = res.get_json()
        assert data["resend_of_envelope_id"] == sent["envelope_id"]
        assert data["envelope_id"] != sent["envelope_id"]

    def test_remind(self, client, document, outbox):
        sent = _send(client, document, [signer("a@example.com")])
        req = _db.session.query(SigningRequest).filter_by(envelope_id=sent["envelope_id"]).one()

        res = client.post(f"{BASE}/signing-requests/{req.id}/remind", headers=ACTOR)

        assert res.status_code == 200
        assert "a@example.com" in tokens_by_email(outbox, "signing_reminder")

    def test_missing_actor_rejected_once_checker_registered(self, app, client, document, outbox):
        sent = _send(client, document, [signer("a@example.com")])
        set_permission_checker(app, lambda actor_id, codename: False)

        res = client.post(f"{BASE}/envelopes/{sent['envelope_id']}/void", json={})
        assert res.status_code == 401

        res = client.post(f"{BASE}/envelopes/{sent['envelope_id']}/void", json={}, headers=ACTOR)
        assert res.status_code == 403
        assert client.get(f"{BASE}/envelopes/{sent['envelope_id']}", headers=ACTOR).status_code == 403

        set_permission_checker(app, None)
        assert client.get(f"{BASE}/envelopes/{sent['envelope_id']}").get_json()["status"] == "sent"

    def test_reconcile_stalled_envelope(self, app, client, document, outbox):
        def failing_builder(envelope, doc):
            raise RuntimeError("stamping service unavailable")

        set_artifact_builder(app, failing_builder)
        sent = _send(client, document, [signer("a@example.com")])
        token = tokens_by_email(outbox)["a@example.com"]
        res = client.post(f"/signing/{token}", json={"signer_name": "Ann", "consent_text": "I agree"})
        assert res.status_code == 500

        set_artifact_builder(app, None)
        res = client.post(f"{BASE}/envelopes/{sent['envelope_id']}/reconcile", headers=ACTOR)
        assert res.status_code == 200
        assert res.get_json()["executed"] is True

        res = client.post(f"{BASE}/envelopes/{sent['envelope_id']}/reconcile", headers=ACTOR)
        assert res.status_code == 409

    def test_executed_link_before_execution_409(self, client, document, outbox):
        sent = _send(client, document, [signer("a@example.com")])
        res = client.get(f"{BASE}/envelopes/{sent['envelope_id']}/executed-link")
        assert res.status_code == 409


# ═════════════════════════════════════════════════════════════════════════
# Public signing
# ═════════════════════════════════════════════════════════════════════════


class TestPublicSigning:
    def test_sign_and_download(self, client, document, outbox):
        sent = _send(client, document, [signer("a@example.com")])
        token = tokens_by_email(outbox)["a@example.com"]

        res = client.get(f"/signing/{token}", headers={"X-Forwarded-For": "203.0.113.7, 10.0.0.1"})
        assert res.status_code == 200
        assert res.get_json()["can_sign"] is True

        res = client.post(f"/signing/{token}", json={"signer_name": "Ann", "consent_text": "I agree"})
        assert res.status_code == 200
        data = res.get_json()
        assert data["executed"] is True

        download = data["executed_document_url"].rsplit("/", 1)[1]
        res = client.get(f"/executed/{download}")
        assert res.status_code == 200
        assert res.get_json()["file_id"] == "file-source-1"

        res = client.get(f"{BASE}/envelopes/{sent['envelope_id']}/executed-link")
        assert res.status_code == 200
        assert res.get_json()["file_id"] == "file-source-1"

    def test_signed_link_is_gone(self, client, document, outbox):
        _send(client, document, [signer("a@example.com")])
        token = tokens_by_email(outbox)["a@example.com"]
        client.post(f"/signing/{token}", json={"signer_name": "Ann", "consent_text": "I agree"})

        res = client.post(f"/signing/{token}", json={"signer_name": "Ann", "consent_text": "I agree"})

        assert res.status_code == 410
        assert res.get_json()["reason"] == "used"

    def test_unknown_signing_token_404(self, client):
        res = client.get(f"/signing/{'0' * 64}")
        assert res.status_code == 404
        assert res.get_json()["reason"] == "not_found"

    def test_signature_missing_consent_422(self, client, document, outbox):
        _send(client, document, [signer("a@example.com")])
        token = tokens_by_email(outbox)["a@example.com"]
        res = client.post(f"/signing/{token}", json={"signer_name": "Ann"})
        assert res.status_code == 422
        assert "consent_text" in res.get_json()["details"]

    def test_out_of_order_signature_409(self, client, document, outbox):
        sent = _send(client, document, [signer("a@example.com", sequence=1), signer("b@example.com", sequence=2)])
        later = _db.session.query(SigningRequest).filter_by(
            envelope_id=sent["envelope_id"], sent_to_email="b@example.com",
        ).one()
        link = issue_signing_link(later, mark_sent=True)
        _db.session.commit()

        res = client.post(f"/signing/{link.token}", json={"signer_name": "Bob", "consent_text": "I agree"})
        assert res.status_code == 409


# ═════════════════════════════════════════════════════════════════════════
# Health
# ═════════════════════════════════════════════════════════════════════════


class TestHealth:
    def test_health(self, client):
        assert client.get(f"{BASE}/health").status_code == 200
        assert client.get(f"{BASE}/health/ready").get_json() == {"status": "ok"}

    def test_health_live_reports_missing_secret(self, app, client, monkeypatch):
        res = client.get(f"{BASE}/health/live")
        assert res.status_code == 200
        assert res.get_json()["checks"]["mail"]["status"] == "log_only"

        monkeypatch.setitem(app.config, "EXECUTED_FILE_TOKEN_SECRET", "")
        res = client.get(f"{BASE}/health/live")
        assert res.status_code == 503
        assert res.get_json()["checks"]["executed_file_token_secret"]["status"] == "missing"

    def test_request_id_header(self, client):
        res = client.get(f"{BASE}/health/ready", headers={"X-Request-ID": "req-123"})
        assert res.headers["X-Request-ID"] == "req-123"
        assert "X-Request-Duration-Ms" in res.headers
