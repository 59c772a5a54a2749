"""
Recipient ledger — the ordered, typed party list of one envelope.

Two normalisers turn caller payloads into ``NormalizedRecipient`` values:

    normalize_draft_recipients   lenient; used by draft save
    normalize_send_recipients    strict; every recipient needs an email,
                                 contact/internal recipients need their id,
                                 signers need a signer_role (defaulted)

``replace_recipients`` deletes every row of the envelope and inserts the
new set in one flush.  Rows are never patched in place.  Only draft
envelopes accept a replacement; resend builds its new ledger with
``clone_recipients`` and never touches the source rows.

Defaults, applied by input position (0-based ``index``):
    signer_role   signer_{index + 1} for signers, None for cc
    sequence      index + 1 for signers, max(index + 1, 1) for cc
    required      True for signers, False for cc
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sqlalchemy import delete, select

from esign.core.exceptions import StateViolationError, ValidationError
from esign.models import db
from esign.models.envelope import (
    Envelope,
    EnvelopeRecipient,
    EnvelopeStatus,
    RecipientRole,
    RecipientType,
)

logger = logging.getLogger(__name__)

_VALID_TYPES = frozenset(t.value for t in RecipientType)
_VALID_ROLES = frozenset(r.value for r in RecipientRole)


@dataclass
class NormalizedRecipient:
    type: str
    role: str
    name: str = ""
    email: str | None = None
    contact_id: str | None = None
    user_id: str | None = None
    signer_role: str | None = None
    sequence: int | None = None
    required: bool = True
    metadata: dict = field(default_factory=dict)

    @property
    def is_signer(self) -> bool:
        return self.role == RecipientRole.SIGNER.value

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "role": self.role,
            "name": self.name,
            "email": self.email,
            "contact_id": self.contact_id,
            "user_id": self.user_id,
            "signer_role": self.signer_role,
            "sequence": self.sequence,
            "required": self.required,
        }


def _clean(value) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _parse_one(index: int, item, errors: dict) -> NormalizedRecipient | None:
    if not isinstance(item, dict):
        errors[str(index)] = {"recipient": "Recipient must be an object"}
        return None

    problems: dict[str, str] = {}

    rtype = _clean(item.get("type")) or RecipientType.EXTERNAL_EMAIL.value
    if rtype not in _VALID_TYPES:
        problems["type"] = f"Must be one of: {', '.join(sorted(_VALID_TYPES))}"

    role = _clean(item.get("role")) or RecipientRole.SIGNER.value
    if role not in _VALID_ROLES:
        problems["role"] = f"Must be one of: {', '.join(sorted(_VALID_ROLES))}"

    sequence = item.get("sequence")
    if sequence is not None:
        if isinstance(sequence, bool) or not isinstance(sequence, int):
            problems["sequence"] = "Sequence must be an integer"
        elif sequence < 1:
            problems["sequence"] = "Sequence must be >= 1"

    required = item.get("required")
    if required is not None and not isinstance(required, bool):
        problems["required"] = "required must be a boolean"

    if problems:
        errors[str(index)] = problems
        return None

    is_signer = role == RecipientRole.SIGNER.value
    return NormalizedRecipient(
        type=rtype,
        role=role,
        name=_clean(item.get("name")) or "",
        email=_clean(item.get("email")),
        contact_id=_clean(item.get("contact_id")),
        user_id=_clean(item.get("user_id")),
        signer_role=(_clean(item.get("signer_role")) or f"signer_{index + 1}") if is_signer else None,
        sequence=sequence,
        required=required if required is not None else is_signer,
        metadata=dict(item.get("metadata") or {}),
    )


def _normalize(items, *, strict: bool) -> list[NormalizedRecipient]:
    if items is None:
        items = []
    if not isinstance(items, list):
        raise ValidationError("recipients must be a list", details={"recipients": "Expected a list"})

    errors: dict[str, dict] = {}
    normalized: list[NormalizedRecipient] = []
    for index, item in enumerate(items):
        recipient = _parse_one(index, item, errors)
        if recipient is None:
            continue
        if strict:
            problems: dict[str, str] = {}
            if not recipient.email:
                problems["email"] = "Email is required to send signing requests"
            if recipient.type == RecipientType.CONTACT.value and not recipient.contact_id:
                problems["contact_id"] = "Contact recipients require contact_id"
            if recipient.type == RecipientType.INTERNAL_USER.value and not recipient.user_id:
                problems["user_id"] = "Internal recipients require user_id"
            if problems:
                errors[str(index)] = problems
                continue
        normalized.append(recipient)

    if errors:
        raise ValidationError("Invalid recipients", details={"recipients": errors})
    return normalized


def normalize_draft_recipients(items) -> list[NormalizedRecipient]:
    """Normalise recipients for a draft save.  Email is optional."""
    return _normalize(items, strict=False)


def normalize_send_recipients(items) -> list[NormalizedRecipient]:
    """Normalise recipients for a send.  Raises ValidationError on any gap."""
    return _normalize(items, strict=True)


def default_sequence(recipient: NormalizedRecipient, index: int) -> int:
    if recipient.sequence is not None:
        return recipient.sequence
    if recipient.is_signer:
        return index + 1
    return max(index + 1, 1)


def require_signer(recipients) -> None:
    """Sending needs at least one signer; draft save does not."""
    if not any(r.role == RecipientRole.SIGNER.value for r in recipients):
        raise StateViolationError("At least one signer is required")


# ── Persistence ──────────────────────────────────────────────────────────────


def list_recipients(envelope_id: str) -> list[EnvelopeRecipient]:
    stmt = (
        select(EnvelopeRecipient)
        .where(EnvelopeRecipient.envelope_id == envelope_id)
        .order_by(EnvelopeRecipient.position, EnvelopeRecipient.sequence)
    )
    return list(db.session.execute(stmt).scalars())


def replace_recipients(envelope: Envelope, recipients: list[NormalizedRecipient]) -> list[EnvelopeRecipient]:
    """
    Delete every recipient row of ``envelope`` and insert ``recipients``.

    The envelope must be a draft.  Flushes; the caller commits.
    """
    if envelope.status != EnvelopeStatus.DRAFT.value:
        raise StateViolationError("Only draft envelopes can be updated", current_status=envelope.status)

    db.session.execute(
        delete(EnvelopeRecipient)
        .where(EnvelopeRecipient.envelope_id == envelope.id)
        .execution_options(synchronize_session="fetch")
    )

    rows = []
    for index, recipient in enumerate(recipients):
        row = EnvelopeRecipient(
            envelope_id=envelope.id,
            recipient_type=recipient.type,
            contact_id=recipient.contact_id,
            user_id=recipient.user_id,
            name=recipient.name or None,
            email=recipient.email,
            role=recipient.role,
            signer_role=recipient.signer_role if recipient.is_signer else None,
            sequence=default_sequence(recipient, index),
            required=recipient.required,
            position=index,
            meta=dict(recipient.metadata),
        )
        db.session.add(row)
        rows.append(row)
    db.session.flush()

    logger.info(
        "Recipient ledger replaced: %d recipients", len(rows),
        extra={"envelope_id": envelope.id},
    )
    return rows


def clone_recipients(source_envelope_id: str) -> list[NormalizedRecipient]:
    """Copy a ledger into fresh NormalizedRecipient values (source rows untouched)."""
    return [
        NormalizedRecipient(
            type=row.recipient_type,
            role=row.role,
            name=row.name or "",
            email=row.email,
            contact_id=row.contact_id,
            user_id=row.user_id,
            signer_role=row.signer_role,
            sequence=row.sequence,
            required=bool(row.required),
            metadata=dict(row.meta or {}),
        )
        for row in list_recipients(source_envelope_id)
    ]
