"""Signatures hub projection tests."""

from datetime import timedelta

import pytest

from esign.core.exceptions import PermissionDeniedError
from esign.middleware.permission_required import set_permission_checker
from esign.models._helpers import _utcnow
from esign.services import envelope_service, signatures_hub
from factories import cc, make_document, signer


def _rows_by_title(hub):
    return {row["document_title"]: row for row in hub["rows"]}


def test_empty_hub():
    hub = signatures_hub.build_signatures_hub()
    assert hub["rows"] == []
    assert hub["summary"] == {"total": 0, "waiting_on_client": 0, "executed_this_week": 0, "expiring_soon": 0}


def test_queue_flags_and_summary(outbox):
    now = _utcnow()
    expiring = make_document(title="Expiring")
    executed = make_document(title="Executed")
    waiting = make_document(title="Waiting")
    envelope_service.send_envelope(
        expiring.id, [signer("a@example.com")], expires_at=now + timedelta(days=3),
    )
    done = envelope_service.send_envelope(executed.id, [signer("b@example.com")])
    envelope_service.complete_signing_request(envelope_service.load_envelope_requests(done["envelope_id"])[0].id)
    envelope_service.send_envelope(
        waiting.id, [signer("c@example.com")], expires_at=now + timedelta(days=30),
    )

    hub = signatures_hub.build_signatures_hub(now=now + timedelta(minutes=1))
    rows = _rows_by_title(hub)

    assert hub["summary"] == {"total": 3, "waiting_on_client": 2, "executed_this_week": 1, "expiring_soon": 1}
    assert rows["Expiring"]["queue_flags"] == {
        "waiting_on_client": True, "executed_this_week": False, "expiring_soon": True,
    }
    assert rows["Waiting"]["queue_flags"]["expiring_soon"] is False
    assert rows["Executed"]["queue_flags"]["executed_this_week"] is True
    assert rows["Executed"]["can_download"] is True
    assert rows["Executed"]["can_resend"] is False
    assert rows["Executed"]["can_void"] is False
    assert rows["Waiting"]["can_remind"] is True
    assert rows["Waiting"]["can_void"] is True


def test_executed_flag_ages_out(outbox):
    doc = make_document(title="Old")
    done = envelope_service.send_envelope(doc.id, [signer("b@example.com")])
    envelope_service.complete_signing_request(envelope_service.load_envelope_requests(done["envelope_id"])[0].id)

    hub = signatures_hub.build_signatures_hub(now=_utcnow() + timedelta(days=8))

    assert hub["summary"]["executed_this_week"] == 0


def test_row_describes_signers_and_next_batch(document, outbox):
    envelope_service.send_envelope(document.id, [
        signer("owner@example.com", name="Olivia Owner", sequence=1),
        signer("sub@example.com", name="Sam Sub", sequence=2),
        cc("pm@example.com", name="Pat PM"),
    ])

    row = signatures_hub.build_signatures_hub()["rows"][0]

    assert row["envelope_status"] == "sent"
    assert row["signer_summary"] == {"total": 2, "signed": 0, "viewed": 0, "pending": 2}
    assert row["next_pending_sequence"] == 1
    assert row["next_pending_emails"] == ["owner@example.com"]
    assert row["next_pending_names"] == ["Olivia Owner"]
    assert row["recipient_names"] == ["Olivia Owner", "Sam Sub"]
    assert row["last_event_at"] is not None


def test_voided_row_has_no_actions_but_resend(document, outbox):
    result = envelope_service.send_envelope(document.id, [signer("a@example.com")])
    envelope_service.void_envelope(result["envelope_id"], reason="wrong scope")

    row = signatures_hub.build_signatures_hub()["rows"][0]

    assert row["envelope_status"] == "voided"
    assert row["can_void"] is False
    assert row["can_remind"] is False
    assert row["can_resend"] is True
    assert row["queue_flags"]["waiting_on_client"] is False


def test_project_filter(outbox):
    mine = make_document(title="Mine", project_id="project-1")
    theirs = make_document(title="Theirs", project_id="project-2")
    envelope_service.save_draft(mine.id, [signer("a@example.com")])
    envelope_service.save_draft(theirs.id, [signer("b@example.com")])

    hub = signatures_hub.build_signatures_hub("project-2")

    assert [row["document_title"] for row in hub["rows"]] == ["Theirs"]


def test_hub_requires_read_permission(app):
    set_permission_checker(app, lambda actor_id, codename: False)
    with pytest.raises(PermissionDeniedError):
        signatures_hub.build_signatures_hub(actor_id="user-9")
