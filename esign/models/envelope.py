"""
E-Sign domain model — envelopes, recipients, signing requests.

Models:
    - Envelope:           one signature round for a document
    - EnvelopeRecipient:  ordered, typed party list (the recipient ledger)
    - SigningRequest:     per-signer actionable record a signing link targets
    - SignatureRecord:    append-only capture of a submitted signature

Status values are closed enums with explicit transition tables.
Envelope lifecycle:
    draft → sent → partially_signed → executed
    draft | sent | partially_signed → voided | expired
    executed, voided, expired are terminal.  Nothing returns to draft.

SigningRequest lifecycle:
    draft → sent → viewed → signed
    draft | sent | viewed → voided | expired
"""

from enum import Enum

from esign.models import db
from esign.models._helpers import _iso, _utcnow, _uuid


# ── Enums ────────────────────────────────────────────────────────────────────


class EnvelopeStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"
    PARTIALLY_SIGNED = "partially_signed"
    EXECUTED = "executed"
    VOIDED = "voided"
    EXPIRED = "expired"


class SigningRequestStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"
    VIEWED = "viewed"
    SIGNED = "signed"
    VOIDED = "voided"
    EXPIRED = "expired"


class RecipientRole(str, Enum):
    SIGNER = "signer"
    CC = "cc"


class RecipientType(str, Enum):
    EXTERNAL_EMAIL = "external_email"
    CONTACT = "contact"
    INTERNAL_USER = "internal_user"


class SourceEntityType(str, Enum):
    PROPOSAL = "proposal"
    CHANGE_ORDER = "change_order"
    LIEN_WAIVER = "lien_waiver"
    SELECTION = "selection"
    SUBCONTRACT = "subcontract"
    CLOSEOUT = "closeout"
    OTHER = "other"


# ── Transition tables ────────────────────────────────────────────────────────

ENVELOPE_TRANSITIONS = {
    EnvelopeStatus.DRAFT: {EnvelopeStatus.SENT, EnvelopeStatus.VOIDED, EnvelopeStatus.EXPIRED},
    EnvelopeStatus.SENT: {
        EnvelopeStatus.PARTIALLY_SIGNED, EnvelopeStatus.EXECUTED,
        EnvelopeStatus.VOIDED, EnvelopeStatus.EXPIRED,
    },
    EnvelopeStatus.PARTIALLY_SIGNED: {
        EnvelopeStatus.EXECUTED, EnvelopeStatus.VOIDED, EnvelopeStatus.EXPIRED,
    },
    EnvelopeStatus.EXECUTED: set(),
    EnvelopeStatus.VOIDED: set(),
    EnvelopeStatus.EXPIRED: set(),
}

SIGNING_REQUEST_TRANSITIONS = {
    SigningRequestStatus.DRAFT: {
        SigningRequestStatus.SENT, SigningRequestStatus.VOIDED, SigningRequestStatus.EXPIRED,
    },
    SigningRequestStatus.SENT: {
        SigningRequestStatus.VIEWED, SigningRequestStatus.SIGNED,
        SigningRequestStatus.VOIDED, SigningRequestStatus.EXPIRED,
    },
    SigningRequestStatus.VIEWED: {
        SigningRequestStatus.SIGNED, SigningRequestStatus.VOIDED, SigningRequestStatus.EXPIRED,
    },
    SigningRequestStatus.SIGNED: set(),
    SigningRequestStatus.VOIDED: set(),
    SigningRequestStatus.EXPIRED: set(),
}

LIVE_ENVELOPE_STATUSES = frozenset({
    EnvelopeStatus.DRAFT, EnvelopeStatus.SENT, EnvelopeStatus.PARTIALLY_SIGNED,
})
IN_FLIGHT_ENVELOPE_STATUSES = frozenset({EnvelopeStatus.SENT, EnvelopeStatus.PARTIALLY_SIGNED})

# Requests in these states no longer gate the signing order.
SETTLED_REQUEST_STATUSES = frozenset({
    SigningRequestStatus.SIGNED, SigningRequestStatus.VOIDED, SigningRequestStatus.EXPIRED,
})
OPEN_REQUEST_STATUSES = frozenset({
    SigningRequestStatus.DRAFT, SigningRequestStatus.SENT, SigningRequestStatus.VIEWED,
})


def validate_envelope_transition(old_status, new_status) -> bool:
    """Check whether an envelope status transition is allowed."""
    return EnvelopeStatus(new_status) in ENVELOPE_TRANSITIONS[EnvelopeStatus(old_status)]


def validate_request_transition(old_status, new_status) -> bool:
    """Check whether a signing request status transition is allowed."""
    return SigningRequestStatus(new_status) in SIGNING_REQUEST_TRANSITIONS[SigningRequestStatus(old_status)]


def _values(statuses) -> list[str]:
    return sorted(s.value for s in statuses)


# ═════════════════════════════════════════════════════════════════════════════
# Envelope
# ═════════════════════════════════════════════════════════════════════════════


class Envelope(db.Model):
    """
    One signature round for a document.

    Never physically deleted: voided and executed envelopes are retained
    for audit.  Status is changed only through compare-and-set updates in
    ``envelope_service`` so concurrent transitions cannot both win.
    """

    __tablename__ = "envelopes"
    __table_args__ = (
        db.Index("ix_envelopes_project_created", "project_id", "created_at"),
        db.Index("ix_envelopes_document_created", "document_id", "created_at"),
        db.Index("ix_envelopes_status_created", "status", "created_at"),
        db.Index("ix_envelopes_source_entity", "source_entity_type", "source_entity_id"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    project_id = db.Column(db.String(36), nullable=False)
    document_id = db.Column(
        db.String(36), db.ForeignKey("documents.id", ondelete="CASCADE"), nullable=False,
    )
    document_revision = db.Column(db.Integer, nullable=False, default=1)
    source_entity_type = db.Column(
        db.String(30), nullable=True,
        comment="proposal | change_order | lien_waiver | selection | subcontract | closeout | other",
    )
    source_entity_id = db.Column(db.String(36), nullable=True)
    status = db.Column(
        db.String(20), nullable=False, default=EnvelopeStatus.DRAFT.value,
        comment="draft | sent | partially_signed | executed | voided | expired",
    )
    subject = db.Column(db.String(255), nullable=True)
    message = db.Column(db.Text, nullable=True)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=True)
    sent_at = db.Column(db.DateTime(timezone=True), nullable=True)
    executed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    voided_at = db.Column(db.DateTime(timezone=True), nullable=True)
    meta = db.Column("metadata", db.JSON, nullable=False, default=dict)
    created_by = db.Column(db.String(36), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    document = db.relationship("Document", lazy="joined")
    recipients = db.relationship(
        "EnvelopeRecipient", back_populates="envelope", lazy="dynamic",
        order_by="(EnvelopeRecipient.sequence, EnvelopeRecipient.position)",
    )
    signing_requests = db.relationship(
        "SigningRequest", back_populates="envelope", lazy="dynamic",
        order_by="(SigningRequest.sequence, SigningRequest.created_at)",
    )

    @property
    def lifecycle_status(self) -> EnvelopeStatus:
        return EnvelopeStatus(self.status)

    @property
    def is_live(self) -> bool:
        return self.lifecycle_status in LIVE_ENVELOPE_STATUSES

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "document_id": self.document_id,
            "document_revision": self.document_revision,
            "source_entity_type": self.source_entity_type,
            "source_entity_id": self.source_entity_id,
            "status": self.status,
            "subject": self.subject,
            "message": self.message,
            "expires_at": _iso(self.expires_at),
            "sent_at": _iso(self.sent_at),
            "executed_at": _iso(self.executed_at),
            "voided_at": _iso(self.voided_at),
            "metadata": self.meta or {},
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<Envelope {self.id} doc={self.document_id} [{self.status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# EnvelopeRecipient: the recipient ledger
# ═════════════════════════════════════════════════════════════════════════════


class EnvelopeRecipient(db.Model):
    """
    A named/emailed party attached to one envelope.

    Rows are replaced wholesale (delete-then-insert) on every draft save
    or send; they are never patched.  cc recipients never produce signing
    requests.
    """

    __tablename__ = "envelope_recipients"
    __table_args__ = (
        db.Index("ix_envelope_recipients_envelope_sequence", "envelope_id", "sequence"),
        db.Index("ix_envelope_recipients_email", "email"),
        db.CheckConstraint("sequence >= 1", name="ck_envelope_recipients_sequence"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    envelope_id = db.Column(
        db.String(36), db.ForeignKey("envelopes.id", ondelete="CASCADE"), nullable=False,
    )
    recipient_type = db.Column(
        db.String(20), nullable=False, default=RecipientType.EXTERNAL_EMAIL.value,
        comment="external_email | contact | internal_user",
    )
    contact_id = db.Column(db.String(36), nullable=True)
    user_id = db.Column(db.String(36), nullable=True)
    name = db.Column(db.String(255), nullable=True)
    email = db.Column(db.String(255), nullable=True)
    role = db.Column(db.String(10), nullable=False, default=RecipientRole.SIGNER.value, comment="signer | cc")
    signer_role = db.Column(db.String(50), nullable=True)
    sequence = db.Column(db.Integer, nullable=False, default=1)
    required = db.Column(db.Boolean, nullable=False, default=True)
    position = db.Column(db.Integer, nullable=False, default=0, comment="Input order within the ledger")
    meta = db.Column("metadata", db.JSON, nullable=False, default=dict)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    envelope = db.relationship("Envelope", back_populates="recipients")

    @property
    def is_signer(self) -> bool:
        return self.role == RecipientRole.SIGNER.value

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "envelope_id": self.envelope_id,
            "type": self.recipient_type,
            "contact_id": self.contact_id,
            "user_id": self.user_id,
            "name": self.name,
            "email": self.email,
            "role": self.role,
            "signer_role": self.signer_role,
            "sequence": self.sequence,
            "required": self.required,
            "metadata": self.meta or {},
        }

    def __repr__(self):
        return f"<EnvelopeRecipient {self.role}:{self.email} seq={self.sequence}>"


# ═════════════════════════════════════════════════════════════════════════════
# SigningRequest
# ═════════════════════════════════════════════════════════════════════════════


class SigningRequest(db.Model):
    """
    The actionable unit a signer interacts with.

    Only the HMAC-SHA256 digest of the link token is stored.  Legacy rows
    created before envelopes existed have no envelope_id and are grouped
    by ``group_id`` instead.
    """

    __tablename__ = "signing_requests"
    __table_args__ = (
        db.Index("ix_signing_requests_envelope_sequence", "envelope_id", "sequence"),
        db.Index("ix_signing_requests_group", "group_id"),
        db.Index("ix_signing_requests_document", "document_id"),
        db.Index("uq_signing_requests_token_hash", "token_hash", unique=True),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    envelope_id = db.Column(
        db.String(36), db.ForeignKey("envelopes.id", ondelete="CASCADE"), nullable=True,
    )
    recipient_id = db.Column(
        db.String(36), db.ForeignKey("envelope_recipients.id", ondelete="SET NULL"), nullable=True,
    )
    group_id = db.Column(db.String(36), nullable=True, comment="Legacy grouping for ungrouped documents")
    document_id = db.Column(
        db.String(36), db.ForeignKey("documents.id", ondelete="CASCADE"), nullable=False,
    )
    revision = db.Column(db.Integer, nullable=False, default=1)
    sequence = db.Column(db.Integer, nullable=True, default=1)
    required = db.Column(db.Boolean, nullable=True, default=True)
    status = db.Column(
        db.String(20), nullable=False, default=SigningRequestStatus.DRAFT.value,
        comment="draft | sent | viewed | signed | voided | expired",
    )
    sent_to_email = db.Column(db.String(255), nullable=True)
    signer_role = db.Column(db.String(50), nullable=True)
    token_hash = db.Column(db.String(64), nullable=True)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=True)
    max_uses = db.Column(db.Integer, nullable=False, default=1)
    used_count = db.Column(db.Integer, nullable=False, default=0)
    sent_at = db.Column(db.DateTime(timezone=True), nullable=True)
    viewed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    signed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_by = db.Column(db.String(36), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    envelope = db.relationship("Envelope", back_populates="signing_requests")
    recipient = db.relationship("EnvelopeRecipient", lazy="joined")

    @property
    def lifecycle_status(self) -> SigningRequestStatus:
        return SigningRequestStatus(self.status)

    @property
    def effective_sequence(self) -> int:
        return self.sequence if self.sequence is not None else 1

    @property
    def is_required(self) -> bool:
        return self.required is not False

    @property
    def is_open(self) -> bool:
        return self.lifecycle_status in OPEN_REQUEST_STATUSES

    @property
    def grouping_key(self) -> str:
        return self.envelope_id or self.group_id or self.id

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "envelope_id": self.envelope_id,
            "recipient_id": self.recipient_id,
            "group_id": self.group_id,
            "document_id": self.document_id,
            "revision": self.revision,
            "sequence": self.sequence,
            "required": self.required,
            "status": self.status,
            "sent_to_email": self.sent_to_email,
            "signer_role": self.signer_role,
            "expires_at": _iso(self.expires_at),
            "max_uses": self.max_uses,
            "used_count": self.used_count,
            "sent_at": _iso(self.sent_at),
            "viewed_at": _iso(self.viewed_at),
            "signed_at": _iso(self.signed_at),
        }

    def __repr__(self):
        return f"<SigningRequest {self.id} seq={self.sequence} [{self.status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# SignatureRecord
# ═════════════════════════════════════════════════════════════════════════════


class SignatureRecord(db.Model):
    """Signer identity, consent and field values captured at submission time."""

    __tablename__ = "signature_records"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    signing_request_id = db.Column(
        db.String(36), db.ForeignKey("signing_requests.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    document_id = db.Column(db.String(36), nullable=False, index=True)
    revision = db.Column(db.Integer, nullable=False, default=1)
    signer_name = db.Column(db.String(255), nullable=False)
    signer_email = db.Column(db.String(255), nullable=True)
    signer_ip = db.Column(db.String(45), nullable=True)
    user_agent = db.Column(db.String(500), nullable=True)
    consent_text = db.Column(db.Text, nullable=False)
    values = db.Column(db.JSON, nullable=False, default=dict)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "signing_request_id": self.signing_request_id,
            "document_id": self.document_id,
            "revision": self.revision,
            "signer_name": self.signer_name,
            "signer_email": self.signer_email,
            "signer_ip": self.signer_ip,
            "created_at": _iso(self.created_at),
        }
