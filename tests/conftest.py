"""
Shared pytest fixtures for the e-sign envelope engine test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - outbox: captures every OutboundEmail handed to the email service
    - document / proposal_document: pre-created Document rows
"""

import pytest

from esign import create_app
from esign.middleware.permission_required import set_permission_checker
from esign.models import db as _db
from esign.models.document import Proposal
from esign.services.executed_artifact import set_artifact_builder
from esign.services.email_service import EmailService
from factories import make_document


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        # Hooks registered by a test must not leak into the next one
        set_permission_checker(app, None)
        set_artifact_builder(app, None)
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Email capture ────────────────────────────────────────────────────────


@pytest.fixture()
def outbox(monkeypatch):
    """Record outbound emails while still running the real (log-only) delivery."""
    captured = []
    original = EmailService.send_batch.__func__

    def _capture(cls, messages):
        captured.extend(messages)
        return original(cls, messages)

    monkeypatch.setattr(EmailService, "send_batch", classmethod(_capture))
    return captured


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def document():
    return make_document()


@pytest.fixture()
def proposal():
    p = Proposal(project_id="project-1", title="Kitchen Remodel Proposal", status="sent")
    _db.session.add(p)
    _db.session.commit()
    return p


@pytest.fixture()
def proposal_document(proposal):
    return make_document(
        document_type="proposal",
        title="Kitchen Remodel Proposal",
        source_entity_type="proposal",
        source_entity_id=proposal.id,
    )

