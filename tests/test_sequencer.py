"""
Signing-order sequencer tests.

The sequencer is pure, so requests are plain namespaces here.  The
property test draws random sequence/required/status assignments from a
seeded RNG and checks the active batch against a brute-force oracle.
"""

import random
from types import SimpleNamespace

import pytest

from esign.models.envelope import (
    ENVELOPE_TRANSITIONS,
    SIGNING_REQUEST_TRANSITIONS,
    EnvelopeStatus,
    SigningRequestStatus,
    validate_envelope_transition,
    validate_request_transition,
)
from esign.services import sequencer

STATUSES = ["draft", "sent", "viewed", "signed", "voided", "expired"]


def _req(id, sequence=1, status="sent", required=True):
    return SimpleNamespace(id=id, sequence=sequence, status=status, required=required)


# ── next_required_batch ──────────────────────────────────────────────────────


def test_batch_is_lowest_pending_sequence():
    requests = [_req("a", 2), _req("b", 1), _req("c", 3)]
    batch = sequencer.next_required_batch(requests)
    assert batch.sequence == 1
    assert batch.ids == {"b"}


def test_co_signers_share_a_batch():
    requests = [_req("a", 1), _req("b", 1), _req("c", 2)]
    batch = sequencer.next_required_batch(requests)
    assert batch.sequence == 1
    assert batch.ids == {"a", "b"}
    assert len(batch) == 2


def test_signed_requests_advance_the_batch():
    requests = [_req("a", 1, "signed"), _req("b", 1, "signed"), _req("c", 2, "draft")]
    batch = sequencer.next_required_batch(requests)
    assert batch.sequence == 2
    assert batch.ids == {"c"}


def test_voided_entries_are_skipped_not_blocking():
    requests = [
        _req("a", 1, "signed"),
        _req("b", 2, "voided"),
        _req("c", 3, "sent"),
    ]
    batch = sequencer.next_required_batch(requests)
    assert batch.sequence == 3
    assert batch.ids == {"c"}


def test_optional_requests_never_gate():
    requests = [_req("opt", 1, "sent", required=False), _req("a", 2)]
    batch = sequencer.next_required_batch(requests)
    assert batch.ids == {"a"}


def test_null_required_counts_as_required():
    batch = sequencer.next_required_batch([_req("a", 1, required=None)])
    assert batch.ids == {"a"}


def test_null_sequence_defaults_to_one():
    requests = [_req("a", None), _req("b", 2)]
    batch = sequencer.next_required_batch(requests)
    assert batch.sequence == 1
    assert batch.ids == {"a"}


def test_empty_when_everything_settled():
    requests = [_req("a", 1, "signed"), _req("b", 2, "expired")]
    batch = sequencer.next_required_batch(requests)
    assert not batch
    assert batch.sequence is None


def test_enum_statuses_are_accepted():
    from esign.models.envelope import SigningRequestStatus

    requests = [_req("a", 1, SigningRequestStatus.SIGNED), _req("b", 2, SigningRequestStatus.SENT)]
    assert sequencer.next_required_batch(requests).ids == {"b"}


# ── Gates ────────────────────────────────────────────────────────────────────


def test_is_request_active():
    a, b = _req("a", 1), _req("b", 2)
    batch = sequencer.next_required_batch([a, b])
    assert sequencer.is_request_active(a, batch)
    assert not sequencer.is_request_active(b, batch)


def test_can_sign_now_blocks_later_sequences():
    a, b = _req("a", 1), _req("b", 2)
    batch = sequencer.next_required_batch([a, b])
    assert sequencer.can_sign_now(a, batch)
    assert not sequencer.can_sign_now(b, batch)


def test_optional_signer_admitted_once_order_reaches_it():
    a = _req("a", 2)
    opt = _req("opt", 1, required=False)
    batch = sequencer.next_required_batch([a, opt])
    assert sequencer.can_sign_now(opt, batch)
    assert not sequencer.is_request_active(opt, batch)


def test_can_sign_now_when_no_batch():
    opt = _req("opt", 5, required=False)
    assert sequencer.can_sign_now(opt, sequencer.ActiveBatch())


@pytest.mark.parametrize("statuses, expected", [
    (["signed", "signed"], True),
    (["signed", "sent"], False),
    (["signed", "voided"], False),
    ([], False),
])
def test_all_required_signed(statuses, expected):
    requests = [_req(str(i), i + 1, s) for i, s in enumerate(statuses)]
    assert sequencer.all_required_signed(requests) is expected


def test_all_required_signed_ignores_optional():
    requests = [_req("a", 1, "signed"), _req("opt", 2, "sent", required=False)]
    assert sequencer.all_required_signed(requests) is True


def test_all_optional_is_never_complete():
    assert sequencer.all_required_signed([_req("opt", 1, "signed", required=False)]) is False


# ── Property test ────────────────────────────────────────────────────────────


def _oracle(requests):
    pending = [
        r for r in requests
        if r.required is not False and r.status not in ("signed", "voided", "expired")
    ]
    if not pending:
        return None, set()
    seqs = {r.sequence if r.sequence is not None else 1 for r in pending}
    low = min(seqs)
    return low, {r.id for r in pending if (r.sequence if r.sequence is not None else 1) == low}


@pytest.mark.parametrize("seed", range(25))
def test_active_batch_property(seed):
    rng = random.Random(seed)
    for _ in range(40):
        requests = [
            _req(
                f"r{i}",
                rng.choice([None, 1, 1, 2, 3, 4]),
                rng.choice(STATUSES),
                rng.choice([True, True, False, None]),
            )
            for i in range(rng.randint(0, 8))
        ]
        batch = sequencer.next_required_batch(requests)
        expected_seq, expected_ids = _oracle(requests)

        assert batch.sequence == expected_seq
        assert batch.ids == expected_ids
        if batch:
            # exactly one minimal sequence, and every member sits at it
            assert {r.sequence or 1 for r in batch.requests} == {batch.sequence}
            assert all(r.required is not False for r in batch.requests)


# ── Status transition tables ─────────────────────────────────────────────────


def test_transition_tables_cover_every_status():
    assert set(ENVELOPE_TRANSITIONS) == set(EnvelopeStatus)
    assert set(SIGNING_REQUEST_TRANSITIONS) == set(SigningRequestStatus)


@pytest.mark.parametrize("terminal", ["executed", "voided", "expired"])
def test_terminal_envelope_statuses_have_no_exit(terminal):
    assert not any(validate_envelope_transition(terminal, s) for s in EnvelopeStatus)


def test_nothing_returns_to_draft():
    assert not any(validate_envelope_transition(s, "draft") for s in EnvelopeStatus)
    assert not any(validate_request_transition(s, "draft") for s in SigningRequestStatus)
