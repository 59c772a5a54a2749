"""
Construction E-Sign Envelope Engine
Email Service.

Sends signing, reminder and executed-copy emails from named templates.
When SMTP is not configured, emails are logged but not sent (dev/test mode).

Fan-out for an active batch runs in a thread pool: workers only talk to
SMTP and never touch the DB session.  EmailLog rows are written by the
calling thread once every worker has returned.  A failed delivery is
reported in its DeliveryResult and never raised.

Configuration (env vars):
    MAIL_SERVER     SMTP host (default: None → log-only mode)
    MAIL_PORT       SMTP port (default: 587)
    MAIL_USE_TLS    Use TLS (default: true)
    MAIL_USERNAME   SMTP username
    MAIL_PASSWORD   SMTP password
    MAIL_DEFAULT_SENDER  Default from address
    NOTIFY_MAX_WORKERS   Thread pool size for batch delivery (default: 4)
"""

from __future__ import annotations

import html
import logging
import smtplib
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any

from flask import current_app

from esign.models import db
from esign.models.email_log import EmailLog

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Email Templates
# ═══════════════════════════════════════════════════════════════════════════

_LAYOUT = """
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
    <div style="background: #1e293b; color: white; padding: 16px 24px; border-radius: 8px 8px 0 0;">
        <h2 style="margin: 0; font-size: 18px;">{document_title}</h2>
    </div>
    <div style="background: #f8fafc; padding: 24px; border: 1px solid #e2e8f0; border-top: none;">
        {body}
    </div>
</div>
"""

_TEMPLATES: dict[str, dict[str, str]] = {
    "signing_request": {
        "subject": "Signature requested: {document_title}",
        "body": """
        <p>Hi {recipient_name},</p>
        <p>You have been asked to review and sign <strong>{document_title}</strong>.</p>
        <p><a href="{signing_url}" style="background: #2563eb; color: white; padding: 10px 18px;
              border-radius: 6px; text-decoration: none;">Review &amp; sign</a></p>
        """,
    },
    "signing_reminder": {
        "subject": "Reminder: please sign {document_title}",
        "body": """
        <p>Hi {recipient_name},</p>
        <p>This is a reminder that <strong>{document_title}</strong> is waiting for your signature.</p>
        <p><a href="{signing_url}">Review &amp; sign</a></p>
        """,
    },
    "executed_copy": {
        "subject": "Fully signed: {document_title}",
        "body": """
        <p>Hi {recipient_name},</p>
        <p>All parties have signed <strong>{document_title}</strong>.</p>
        <p><a href="{download_url}">Download the executed copy</a></p>
        """,
    },
}


@dataclass
class OutboundEmail:
    to_email: str
    template_name: str
    context: dict
    to_name: str | None = None
    category: str = "signing"
    envelope_id: str | None = None
    signing_request_id: str | None = None


@dataclass
class DeliveryResult:
    to_email: str
    status: str  # sent | failed | logged
    signing_request_id: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status != "failed"

    def to_dict(self) -> dict:
        return {
            "to_email": self.to_email,
            "status": self.status,
            "signing_request_id": self.signing_request_id,
            "error": self.error,
        }


class EmailService:
    """
    Email sending service with template support.

    In development/test mode (no MAIL_SERVER configured), emails are
    logged to the database with status 'logged' and not sent via SMTP.
    """

    @staticmethod
    def is_configured() -> bool:
        return bool(current_app.config.get("MAIL_SERVER"))

    @staticmethod
    def get_template(template_name: str) -> dict[str, str] | None:
        return _TEMPLATES.get(template_name)

    @classmethod
    def render(cls, template_name: str, context: dict[str, Any]) -> tuple[str, str]:
        """Return (subject, html_body).  Context values are HTML-escaped in the body."""
        template = cls.get_template(template_name)
        if not template:
            raise KeyError(f"Email template not found: {template_name}")
        subject = template["subject"].format_map(_SafeDict(context))
        escaped = _SafeDict({k: html.escape(str(v)) for k, v in context.items()})
        body = template["body"].format_map(escaped)
        html_body = _LAYOUT.format_map(_SafeDict(document_title=escaped.get("document_title", ""), body=body))
        return subject, html_body

    @classmethod
    def send_batch(cls, messages: list[OutboundEmail]) -> list[DeliveryResult]:
        """
        Deliver ``messages`` in parallel and log each attempt.

        Returns one DeliveryResult per message, in input order.
        """
        if not messages:
            return []

        rendered = [cls.render(m.template_name, m.context) for m in messages]
        smtp_settings = cls._smtp_settings()
        results: list[DeliveryResult | None] = [None] * len(messages)

        if smtp_settings is None:
            for i, message in enumerate(messages):
                logger.info(
                    "Email (dev mode): to=%s template=%s", message.to_email, message.template_name,
                    extra={"envelope_id": message.envelope_id, "signing_request_id": message.signing_request_id},
                )
                results[i] = DeliveryResult(message.to_email, "logged", message.signing_request_id)
        else:
            max_workers = max(1, min(current_app.config.get("NOTIFY_MAX_WORKERS", 4), len(messages)))
            with ThreadPoolExecutor(max_workers=max_workers) as executor:
                futures = {
                    executor.submit(
                        _send_smtp, smtp_settings,
                        to_email=m.to_email, to_name=m.to_name,
                        subject=rendered[i][0], html_body=rendered[i][1],
                    ): i
                    for i, m in enumerate(messages)
                }
                for future in as_completed(futures):
                    i = futures[future]
                    message = messages[i]
                    try:
                        future.result()
                        results[i] = DeliveryResult(message.to_email, "sent", message.signing_request_id)
                    except Exception as exc:
                        logger.warning(
                            "Email failed: to=%s error=%s", message.to_email, exc,
                            extra={"envelope_id": message.envelope_id,
                                   "signing_request_id": message.signing_request_id},
                        )
                        results[i] = DeliveryResult(
                            message.to_email, "failed", message.signing_request_id, error=str(exc)[:1000],
                        )

        now = datetime.now(timezone.utc)
        for message, (subject, _), result in zip(messages, rendered, results):
            db.session.add(EmailLog(
                recipient_email=message.to_email,
                recipient_name=message.to_name,
                subject=subject[:500],
                template_name=message.template_name,
                category=message.category,
                status=result.status,
                error_message=result.error,
                envelope_id=message.envelope_id,
                signing_request_id=message.signing_request_id,
                sent_at=now if result.ok else None,
            ))
        db.session.flush()
        return results

    @classmethod
    def send(cls, message: OutboundEmail) -> DeliveryResult:
        return cls.send_batch([message])[0]

    @staticmethod
    def _smtp_settings() -> dict | None:
        cfg = current_app.config
        server = cfg.get("MAIL_SERVER")
        if not server:
            return None
        return {
            "server": server,
            "port": cfg.get("MAIL_PORT", 587),
            "use_tls": cfg.get("MAIL_USE_TLS", True),
            "username": cfg.get("MAIL_USERNAME"),
            "password": cfg.get("MAIL_PASSWORD"),
            "sender": cfg.get("MAIL_DEFAULT_SENDER", f"noreply@{server}"),
        }


def _send_smtp(settings: dict, *, to_email: str, to_name: str | None,
               subject: str, html_body: str) -> None:
    """Actually send via SMTP.  Runs in a worker thread: no app context."""
    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = settings["sender"]
    msg["To"] = f"{to_name} <{to_email}>" if to_name else to_email
    msg.attach(MIMEText(html_body, "html"))

    with smtplib.SMTP(settings["server"], settings["port"], timeout=30) as smtp:
        if settings["use_tls"]:
            smtp.starttls()
        if settings["username"] and settings["password"]:
            smtp.login(settings["username"], settings["password"])
        smtp.send_message(msg)


class _SafeDict(dict):
    """Dict that returns {key} for missing keys instead of raising."""

    def __missing__(self, key):
        return f"{{{key}}}"
