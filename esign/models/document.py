"""
Collaborator records — Document and Proposal.

Both tables are owned by the surrounding application (document editors,
proposal builder).  The envelope engine reads them and performs the few
status updates the signing lifecycle requires:

    Document.status     draft → sent → signed | voided
    Document.executed_file_id   set when an envelope is executed
    Proposal.status     → accepted when its envelope is executed
"""

from esign.models import db
from esign.models._helpers import _iso, _utcnow, _uuid

DOCUMENT_TYPES = frozenset({"proposal", "contract", "change_order", "other"})
DOCUMENT_STATUSES = frozenset({"draft", "sent", "signed", "voided", "expired"})


class Document(db.Model):
    """A signable document revision set (proposal, change order, lien waiver, …)."""

    __tablename__ = "documents"
    __table_args__ = (
        db.Index("ix_documents_project_created", "project_id", "created_at"),
        db.Index("ix_documents_source_entity", "source_entity_type", "source_entity_id"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    project_id = db.Column(db.String(36), nullable=False, index=True)
    document_type = db.Column(
        db.String(30), nullable=False, default="other",
        comment="proposal | contract | change_order | other",
    )
    title = db.Column(db.String(255), nullable=False)
    status = db.Column(
        db.String(20), nullable=False, default="draft",
        comment="draft | sent | signed | voided | expired",
    )
    source_file_id = db.Column(db.String(36), nullable=True)
    executed_file_id = db.Column(db.String(36), nullable=True)
    current_revision = db.Column(db.Integer, nullable=False, default=1)
    source_entity_type = db.Column(db.String(30), nullable=True)
    source_entity_id = db.Column(db.String(36), nullable=True)
    meta = db.Column("metadata", db.JSON, nullable=False, default=dict)
    created_by = db.Column(db.String(36), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "document_type": self.document_type,
            "title": self.title,
            "status": self.status,
            "source_file_id": self.source_file_id,
            "executed_file_id": self.executed_file_id,
            "current_revision": self.current_revision,
            "source_entity_type": self.source_entity_type,
            "source_entity_id": self.source_entity_id,
            "metadata": self.meta or {},
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<Document {self.id}: {self.title!r} [{self.status}]>"


class Proposal(db.Model):
    """Minimal proposal record used by the send guard and the completion hook."""

    __tablename__ = "proposals"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    project_id = db.Column(db.String(36), nullable=False, index=True)
    title = db.Column(db.String(255), nullable=True)
    status = db.Column(
        db.String(20), nullable=False, default="draft",
        comment="draft | sent | accepted | rejected",
    )
    accepted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    accepted_envelope_id = db.Column(db.String(36), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    @property
    def is_accepted(self) -> bool:
        return self.status == "accepted" or self.accepted_at is not None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "title": self.title,
            "status": self.status,
            "accepted_at": _iso(self.accepted_at),
            "accepted_envelope_id": self.accepted_envelope_id,
        }

    def __repr__(self):
        return f"<Proposal {self.id} [{self.status}]>"
