"""esign_envelope_tables

Creates the e-sign envelope engine tables:
  - documents / proposals          — collaborator records read by the engine
  - envelopes                      — one signature round per document
  - envelope_recipients            — ordered recipient ledger
  - signing_requests               — per-signer actionable records
  - signature_records              — captured signatures
  - envelope_events                — append-only lifecycle log
  - email_logs                     — outbound email audit
  - executed_link_redemptions      — executed-file token use counter

Tables created conditionally (IF NOT EXISTS semantics) to support idempotent
execution against databases that already received these tables via db.create_all()
in a development environment.

Revision ID: 5e1f0c2a9b7d
Revises:
Create Date: 2026-10-19 09:12:40.118203
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = '5e1f0c2a9b7d'
down_revision = None
branch_labels = None
depends_on = None


def _ts(name, nullable=True):
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing = set(inspector.get_table_names())

    # ── Documents ─────────────────────────────────────────────────────────
    if "documents" not in existing:
        op.create_table(
            "documents",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("project_id", sa.String(length=36), nullable=False),
            sa.Column("document_type", sa.String(length=30), nullable=False,
                      comment="proposal | contract | change_order | other"),
            sa.Column("title", sa.String(length=255), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False,
                      comment="draft | sent | signed | voided | expired"),
            sa.Column("source_file_id", sa.String(length=36), nullable=True),
            sa.Column("executed_file_id", sa.String(length=36), nullable=True),
            sa.Column("current_revision", sa.Integer(), nullable=False),
            sa.Column("source_entity_type", sa.String(length=30), nullable=True),
            sa.Column("source_entity_id", sa.String(length=36), nullable=True),
            sa.Column("metadata", sa.JSON(), nullable=False),
            sa.Column("created_by", sa.String(length=36), nullable=True),
            _ts("created_at", nullable=False),
            _ts("updated_at", nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_documents_project_id", "documents", ["project_id"])
        op.create_index("ix_documents_project_created", "documents", ["project_id", "created_at"])
        op.create_index("ix_documents_source_entity", "documents", ["source_entity_type", "source_entity_id"])

    # ── Proposals ─────────────────────────────────────────────────────────
    if "proposals" not in existing:
        op.create_table(
            "proposals",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("project_id", sa.String(length=36), nullable=False),
            sa.Column("title", sa.String(length=255), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False,
                      comment="draft | sent | accepted | rejected"),
            _ts("accepted_at"),
            sa.Column("accepted_envelope_id", sa.String(length=36), nullable=True),
            _ts("created_at", nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_proposals_project_id", "proposals", ["project_id"])

    # ── Envelopes ─────────────────────────────────────────────────────────
    if "envelopes" not in existing:
        op.create_table(
            "envelopes",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("project_id", sa.String(length=36), nullable=False),
            sa.Column("document_id", sa.String(length=36), nullable=False),
            sa.Column("document_revision", sa.Integer(), nullable=False),
            sa.Column("source_entity_type", sa.String(length=30), nullable=True),
            sa.Column("source_entity_id", sa.String(length=36), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False,
                      comment="draft | sent | partially_signed | executed | voided | expired"),
            sa.Column("subject", sa.String(length=255), nullable=True),
            sa.Column("message", sa.Text(), nullable=True),
            _ts("expires_at"),
            _ts("sent_at"),
            _ts("executed_at"),
            _ts("voided_at"),
            sa.Column("metadata", sa.JSON(), nullable=False),
            sa.Column("created_by", sa.String(length=36), nullable=True),
            _ts("created_at", nullable=False),
            _ts("updated_at", nullable=False),
            sa.ForeignKeyConstraint(["document_id"], ["documents.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_envelopes_project_created", "envelopes", ["project_id", "created_at"])
        op.create_index("ix_envelopes_document_created", "envelopes", ["document_id", "created_at"])
        op.create_index("ix_envelopes_status_created", "envelopes", ["status", "created_at"])
        op.create_index("ix_envelopes_source_entity", "envelopes", ["source_entity_type", "source_entity_id"])

    # ── Envelope recipients ───────────────────────────────────────────────
    if "envelope_recipients" not in existing:
        op.create_table(
            "envelope_recipients",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("envelope_id", sa.String(length=36), nullable=False),
            sa.Column("recipient_type", sa.String(length=20), nullable=False,
                      comment="external_email | contact | internal_user"),
            sa.Column("contact_id", sa.String(length=36), nullable=True),
            sa.Column("user_id", sa.String(length=36), nullable=True),
            sa.Column("name", sa.String(length=255), nullable=True),
            sa.Column("email", sa.String(length=255), nullable=True),
            sa.Column("role", sa.String(length=10), nullable=False, comment="signer | cc"),
            sa.Column("signer_role", sa.String(length=50), nullable=True),
            sa.Column("sequence", sa.Integer(), nullable=False),
            sa.Column("required", sa.Boolean(), nullable=False),
            sa.Column("position", sa.Integer(), nullable=False),
            sa.Column("metadata", sa.JSON(), nullable=False),
            _ts("created_at", nullable=False),
            sa.CheckConstraint("sequence >= 1", name="ck_envelope_recipients_sequence"),
            sa.ForeignKeyConstraint(["envelope_id"], ["envelopes.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_envelope_recipients_envelope_sequence", "envelope_recipients",
                        ["envelope_id", "sequence"])
        op.create_index("ix_envelope_recipients_email", "envelope_recipients", ["email"])

    # ── Signing requests ──────────────────────────────────────────────────
    if "signing_requests" not in existing:
        op.create_table(
            "signing_requests",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("envelope_id", sa.String(length=36), nullable=True),
            sa.Column("recipient_id", sa.String(length=36), nullable=True),
            sa.Column("group_id", sa.String(length=36), nullable=True),
            sa.Column("document_id", sa.String(length=36), nullable=False),
            sa.Column("revision", sa.Integer(), nullable=False),
            sa.Column("sequence", sa.Integer(), nullable=True),
            sa.Column("required", sa.Boolean(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False,
                      comment="draft | sent | viewed | signed | voided | expired"),
            sa.Column("sent_to_email", sa.String(length=255), nullable=True),
            sa.Column("signer_role", sa.String(length=50), nullable=True),
            sa.Column("token_hash", sa.String(length=64), nullable=True),
            _ts("expires_at"),
            sa.Column("max_uses", sa.Integer(), nullable=False),
            sa.Column("used_count", sa.Integer(), nullable=False),
            _ts("sent_at"),
            _ts("viewed_at"),
            _ts("signed_at"),
            sa.Column("created_by", sa.String(length=36), nullable=True),
            _ts("created_at", nullable=False),
            sa.ForeignKeyConstraint(["envelope_id"], ["envelopes.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["recipient_id"], ["envelope_recipients.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["document_id"], ["documents.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_signing_requests_envelope_sequence", "signing_requests",
                        ["envelope_id", "sequence"])
        op.create_index("ix_signing_requests_group", "signing_requests", ["group_id"])
        op.create_index("ix_signing_requests_document", "signing_requests", ["document_id"])
        op.create_index("uq_signing_requests_token_hash", "signing_requests", ["token_hash"], unique=True)

    # ── Signature records ─────────────────────────────────────────────────
    if "signature_records" not in existing:
        op.create_table(
            "signature_records",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("signing_request_id", sa.String(length=36), nullable=False),
            sa.Column("document_id", sa.String(length=36), nullable=False),
            sa.Column("revision", sa.Integer(), nullable=False),
            sa.Column("signer_name", sa.String(length=255), nullable=False),
            sa.Column("signer_email", sa.String(length=255), nullable=True),
            sa.Column("signer_ip", sa.String(length=45), nullable=True),
            sa.Column("user_agent", sa.String(length=500), nullable=True),
            sa.Column("consent_text", sa.Text(), nullable=False),
            sa.Column("values", sa.JSON(), nullable=False),
            _ts("created_at", nullable=False),
            sa.ForeignKeyConstraint(["signing_request_id"], ["signing_requests.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_signature_records_signing_request_id", "signature_records", ["signing_request_id"])
        op.create_index("ix_signature_records_document_id", "signature_records", ["document_id"])

    # ── Envelope events (append-only) ─────────────────────────────────────
    if "envelope_events" not in existing:
        op.create_table(
            "envelope_events",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("envelope_id", sa.String(length=36), nullable=True),
            sa.Column("document_id", sa.String(length=36), nullable=True),
            sa.Column("recipient_id", sa.String(length=36), nullable=True),
            sa.Column("event_type", sa.String(length=40), nullable=False),
            sa.Column("status_from", sa.String(length=20), nullable=True),
            sa.Column("status_to", sa.String(length=20), nullable=True),
            sa.Column("actor_id", sa.String(length=36), nullable=True),
            sa.Column("payload", sa.JSON(), nullable=False),
            _ts("created_at", nullable=False),
            sa.ForeignKeyConstraint(["envelope_id"], ["envelopes.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_envelope_events_envelope_created", "envelope_events", ["envelope_id", "created_at"])
        op.create_index("ix_envelope_events_type_created", "envelope_events", ["event_type", "created_at"])
        op.create_index("ix_envelope_events_document_id", "envelope_events", ["document_id"])

    # ── Email logs ────────────────────────────────────────────────────────
    if "email_logs" not in existing:
        op.create_table(
            "email_logs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("recipient_email", sa.String(length=255), nullable=False),
            sa.Column("recipient_name", sa.String(length=150), nullable=True),
            sa.Column("subject", sa.String(length=500), nullable=False),
            sa.Column("template_name", sa.String(length=100), nullable=True),
            sa.Column("category", sa.String(length=30), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=True),
            sa.Column("error_message", sa.Text(), nullable=True),
            sa.Column("envelope_id", sa.String(length=36), nullable=True),
            sa.Column("signing_request_id", sa.String(length=36), nullable=True),
            _ts("sent_at"),
            _ts("created_at"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_email_logs_recipient_email", "email_logs", ["recipient_email"])
        op.create_index("ix_email_logs_envelope_id", "email_logs", ["envelope_id"])

    # ── Executed-link redemptions ─────────────────────────────────────────
    if "executed_link_redemptions" not in existing:
        op.create_table(
            "executed_link_redemptions",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("jti", sa.String(length=64), nullable=False),
            sa.Column("file_id", sa.String(length=36), nullable=False),
            sa.Column("envelope_id", sa.String(length=36), nullable=True),
            sa.Column("use_count", sa.Integer(), nullable=False),
            sa.Column("max_uses", sa.Integer(), nullable=False),
            _ts("first_redeemed_at"),
            _ts("last_redeemed_at"),
            _ts("created_at", nullable=False),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("jti"),
        )
        op.create_index("ix_executed_link_redemptions_envelope_id", "executed_link_redemptions", ["envelope_id"])


def downgrade():
    for table in (
        "executed_link_redemptions",
        "email_logs",
        "envelope_events",
        "signature_records",
        "signing_requests",
        "envelope_recipients",
        "envelopes",
        "proposals",
        "documents",
    ):
        op.drop_table(table)
