"""
Signing-order sequencer — pure functions, no DB access.

Given every signing request of one group (same envelope, or same legacy
``group_id``), compute the *active batch*:

    1. keep requests where ``required`` is not False
    2. drop requests already signed, voided or expired
    3. nothing left → no active batch (complete, or blocked only by voids)
    4. min_sequence = min(sequence or 1)
    5. active batch = remaining requests at min_sequence

Requests sharing a sequence number are co-signers and act concurrently.
Callers must pass freshly loaded rows; nothing here caches.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Protocol

from esign.models.envelope import SETTLED_REQUEST_STATUSES, SigningRequestStatus

_SETTLED = frozenset(s.value for s in SETTLED_REQUEST_STATUSES)


class SequencedRequest(Protocol):
    """Anything with the three attributes the sequencer reads."""

    id: str
    sequence: int | None
    required: bool | None
    status: str


@dataclass
class ActiveBatch:
    sequence: int | None = None
    requests: list = field(default_factory=list)

    @property
    def ids(self) -> set[str]:
        return {r.id for r in self.requests}

    def __bool__(self) -> bool:
        return bool(self.requests)

    def __len__(self) -> int:
        return len(self.requests)


def _sequence_of(request: SequencedRequest) -> int:
    return request.sequence if request.sequence is not None else 1


def _status_of(request: SequencedRequest) -> str:
    status = request.status
    return status.value if isinstance(status, SigningRequestStatus) else status


def pending_required(requests: Iterable[SequencedRequest]) -> list:
    """Required requests that still gate the signing order."""
    return [
        r for r in requests
        if r.required is not False and _status_of(r) not in _SETTLED
    ]


def next_required_batch(requests: Iterable[SequencedRequest]) -> ActiveBatch:
    """Return the active batch for one group of signing requests."""
    remaining = pending_required(requests)
    if not remaining:
        return ActiveBatch()
    min_sequence = min(_sequence_of(r) for r in remaining)
    return ActiveBatch(
        sequence=min_sequence,
        requests=[r for r in remaining if _sequence_of(r) == min_sequence],
    )


def is_request_active(request: SequencedRequest, batch: ActiveBatch) -> bool:
    """Can this request's signer act right now?"""
    return request.id in batch.ids


def all_required_signed(requests: Iterable[SequencedRequest]) -> bool:
    """True when every required request is signed (and at least one exists)."""
    required = [r for r in requests if r.required is not False]
    return bool(required) and all(
        _status_of(r) == SigningRequestStatus.SIGNED.value for r in required
    )


def can_sign_now(request: SequencedRequest, batch: ActiveBatch) -> bool:
    """
    Signing gate.  No required signer with a lower sequence may still be
    pending; optional signers are admitted once the order reaches them.
    """
    if not batch:
        return True
    return _sequence_of(request) <= batch.sequence
