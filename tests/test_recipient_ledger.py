"""Recipient ledger normalisation and replace-semantics tests."""

import pytest

from esign.core.exceptions import StateViolationError, ValidationError
from esign.models import db as _db
from esign.models.envelope import Envelope, EnvelopeRecipient
from esign.services import recipient_ledger
from factories import cc, signer


def _make_envelope(document, status="draft") -> Envelope:
    env = Envelope(project_id=document.project_id, document_id=document.id, status=status, meta={})
    _db.session.add(env)
    _db.session.flush()
    return env


# ── Normalisation ────────────────────────────────────────────────────────────


def test_defaults_applied_by_position():
    rows = recipient_ledger.normalize_draft_recipients([
        {"email": " a@example.com ", "name": " Ann "},
        {"email": "b@example.com", "role": "cc"},
    ])
    first, second = rows
    assert first.type == "external_email"
    assert first.role == "signer"
    assert first.email == "a@example.com"
    assert first.name == "Ann"
    assert first.signer_role == "signer_1"
    assert first.required is True
    assert second.role == "cc"
    assert second.signer_role is None
    assert second.required is False


def test_draft_allows_missing_email():
    rows = recipient_ledger.normalize_draft_recipients([{"name": "No Email"}])
    assert rows[0].email is None


def test_send_requires_email_and_ids():
    with pytest.raises(ValidationError) as exc:
        recipient_ledger.normalize_send_recipients([
            {"name": "No Email"},
            {"email": "c@example.com", "type": "contact"},
            {"email": "u@example.com", "type": "internal_user"},
        ])
    errors = exc.value.details["recipients"]
    assert "email" in errors["0"]
    assert "contact_id" in errors["1"]
    assert "user_id" in errors["2"]


@pytest.mark.parametrize("bad", [
    {"email": "a@example.com", "sequence": 0},
    {"email": "a@example.com", "sequence": "2"},
    {"email": "a@example.com", "role": "approver"},
    {"email": "a@example.com", "type": "fax"},
    "not-an-object",
])
def test_send_rejects_malformed_entries(bad):
    with pytest.raises(ValidationError):
        recipient_ledger.normalize_send_recipients([bad])


def test_recipients_must_be_a_list():
    with pytest.raises(ValidationError):
        recipient_ledger.normalize_draft_recipients({"email": "a@example.com"})


def test_require_signer():
    rows = recipient_ledger.normalize_send_recipients([cc("c@example.com")])
    with pytest.raises(StateViolationError, match="At least one signer"):
        recipient_ledger.require_signer(rows)


def test_default_sequence():
    rows = recipient_ledger.normalize_draft_recipients([signer("a@example.com"), signer("b@example.com", sequence=1)])
    assert recipient_ledger.default_sequence(rows[0], 0) == 1
    assert recipient_ledger.default_sequence(rows[1], 1) == 1
    rows = recipient_ledger.normalize_draft_recipients([signer("a@example.com"), signer("b@example.com")])
    assert recipient_ledger.default_sequence(rows[1], 1) == 2


# ── Persistence ──────────────────────────────────────────────────────────────


def test_replace_deletes_then_inserts(document):
    env = _make_envelope(document)
    recipient_ledger.replace_recipients(
        env, recipient_ledger.normalize_draft_recipients([signer("a@example.com"), signer("b@example.com")]),
    )
    recipient_ledger.replace_recipients(
        env, recipient_ledger.normalize_draft_recipients([cc("c@example.com")]),
    )

    rows = recipient_ledger.list_recipients(env.id)
    assert [r.email for r in rows] == ["c@example.com"]
    assert _db.session.query(EnvelopeRecipient).count() == 1


def test_replace_keeps_input_order(document):
    env = _make_envelope(document)
    recipient_ledger.replace_recipients(env, recipient_ledger.normalize_draft_recipients([
        signer("late@example.com", sequence=2),
        signer("early@example.com", sequence=1),
    ]))
    rows = recipient_ledger.list_recipients(env.id)
    assert [r.position for r in rows] == [0, 1]
    assert [r.sequence for r in rows] == [2, 1]


def test_replace_rejects_non_draft(document):
    env = _make_envelope(document, status="sent")
    with pytest.raises(StateViolationError, match="Only draft envelopes"):
        recipient_ledger.replace_recipients(env, [])


def test_clone_leaves_source_untouched(document):
    env = _make_envelope(document)
    recipient_ledger.replace_recipients(env, recipient_ledger.normalize_draft_recipients([
        signer("a@example.com", signer_role="owner"),
        cc("c@example.com"),
    ]))

    cloned = recipient_ledger.clone_recipients(env.id)

    assert [(c.role, c.email, c.signer_role) for c in cloned] == [
        ("signer", "a@example.com", "owner"),
        ("cc", "c@example.com", None),
    ]
    assert len(recipient_ledger.list_recipients(env.id)) == 2
