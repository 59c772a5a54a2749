"""Log formatting and token redaction tests."""

import json
import logging

from esign.middleware.logging_config import (
    JSONFormatter,
    TokenRedactionFilter,
    redact_tokens,
)


def _record(msg, *args, **extra):
    record = logging.LogRecord("esign.test", logging.INFO, __file__, 10, msg, args, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_redact_tokens_masks_signing_and_executed_paths():
    assert redact_tokens("GET /signing/abc123def") == "GET /signing/<token>"
    assert redact_tokens("https://app.test/executed/eyJ.a-b_c") == "https://app.test/executed/<token>"
    assert redact_tokens("/api/v1/envelopes/42") == "/api/v1/envelopes/42"


def test_filter_rewrites_formatted_message():
    record = _record("Fetching %s", "https://app.test/signing/deadbeef")
    assert TokenRedactionFilter().filter(record) is True
    assert record.getMessage() == "Fetching https://app.test/signing/<token>"


def test_json_formatter_promotes_context_fields():
    record = _record("Envelope sent", envelope_id="env-1", signing_request_id=None, actor_id="user-1")
    entry = json.loads(JSONFormatter().format(record))
    assert entry["message"] == "Envelope sent"
    assert entry["envelope_id"] == "env-1"
    assert entry["actor_id"] == "user-1"
    assert "signing_request_id" not in entry
