"""Signing requests created before envelopes existed (grouped by group_id)."""

import pytest

from esign.models import db as _db
from esign.models.envelope import SigningRequest
from esign.models.event import EnvelopeEvent
from esign.services import envelope_service


def _legacy_group(document):
    document.status = "sent"
    first = SigningRequest(document_id=document.id, group_id="grp-1", sequence=1,
                           status="sent", sent_to_email="owner@example.com")
    second = SigningRequest(document_id=document.id, group_id="grp-1", sequence=2,
                            status="draft", sent_to_email="sub@example.com")
    _db.session.add_all([first, second])
    _db.session.commit()
    return first, second


@pytest.mark.parametrize("document_status, required, signed, expected", [
    ("draft", 2, 0, "draft"),
    ("voided", 2, 1, "voided"),
    ("signed", 2, 1, "executed"),
    ("sent", 2, 0, "sent"),
    ("sent", 2, 1, "partially_signed"),
    ("sent", 2, 2, "executed"),
])
def test_derive_legacy_status(document_status, required, signed, expected):
    assert envelope_service.derive_legacy_status(document_status, required, signed) == expected


def test_legacy_group_advances_and_executes(document, outbox):
    first, second = _legacy_group(document)

    outcome = envelope_service.complete_signing_request(first.id)

    assert outcome["executed"] is False
    assert outcome["sent_now"] == 1
    assert [m.to_email for m in outbox] == ["sub@example.com"]
    status = envelope_service.get_document_envelope_status(document.id)
    assert status["envelope"] is None
    assert status["group_id"] == "grp-1"
    assert status["status"] == "partially_signed"
    assert status["active_sequence"] == 2

    outcome = envelope_service.complete_signing_request(second.id)

    assert outcome["executed"] is True
    _db.session.refresh(document)
    assert document.status == "signed"
    assert envelope_service.get_document_envelope_status(document.id)["status"] == "executed"
    executed = _db.session.query(EnvelopeEvent).filter_by(event_type="envelope_executed").one()
    assert executed.envelope_id is None
    assert executed.payload["group_id"] == "grp-1"
