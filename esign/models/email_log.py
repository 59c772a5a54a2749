"""Outbound email audit log."""

from esign.models import db
from esign.models._helpers import _iso, _utcnow


class EmailLog(db.Model):
    """
    Outbound email audit log.

    Every signing, reminder and executed-copy email is logged here, whether
    it was delivered over SMTP, failed, or only logged (no MAIL_SERVER).
    """

    __tablename__ = "email_logs"

    id = db.Column(db.Integer, primary_key=True)
    recipient_email = db.Column(db.String(255), nullable=False, index=True)
    recipient_name = db.Column(db.String(150), nullable=True)
    subject = db.Column(db.String(500), nullable=False)
    template_name = db.Column(db.String(100), nullable=True,
                              comment="Email template used")
    category = db.Column(db.String(30), default="signing",
                         comment="signing | reminder | executed")
    status = db.Column(db.String(20), default="queued",
                       comment="queued, sent, failed, logged")
    error_message = db.Column(db.Text, nullable=True)

    envelope_id = db.Column(db.String(36), nullable=True, index=True)
    signing_request_id = db.Column(db.String(36), nullable=True)

    sent_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "recipient_email": self.recipient_email,
            "recipient_name": self.recipient_name,
            "subject": self.subject,
            "template_name": self.template_name,
            "category": self.category,
            "status": self.status,
            "error_message": self.error_message,
            "envelope_id": self.envelope_id,
            "signing_request_id": self.signing_request_id,
            "sent_at": _iso(self.sent_at),
            "created_at": _iso(self.created_at),
        }
