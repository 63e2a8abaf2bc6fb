import logging

import pytest

from logging_config import (
    REDACTED,
    CorrelationIdFilter,
    JSONFormatter,
    RedactionFilter,
    correlation_id,
    redact,
)


@pytest.mark.parametrize(
    "message, secret",
    [
        ("GET /oauth-callback?code=abc123&state=BLOBBLOB", "abc123"),
        ("GET /oauth-callback?code=abc123&state=BLOBBLOB", "BLOBBLOB"),
        ('{"access_token": "eyJhbGciOi", "token_type": "Bearer"}', "eyJhbGciOi"),
        ("refresh_token=rt-secret", "rt-secret"),
        ("client_assertion=eyJ0eXAi.x.y", "eyJ0eXAi.x.y"),
        ("code_verifier: verifier-value", "verifier-value"),
        ("POST /consent request=ENCRYPTED csrf_token=jwtjwt", "ENCRYPTED"),
    ],
)
def test_redact_masks_secret_values(message, secret):
    redacted = redact(message)
    assert secret not in redacted
    assert REDACTED in redacted


def test_redact_leaves_ordinary_text():
    message = "[TOKEN] Issued tokens for client abc (authorization_code)"
    assert redact(message) == message


def _record(msg, *args):
    return logging.LogRecord("test", logging.INFO, __file__, 1, msg, args, None)


def test_redaction_filter_renders_args_first():
    record = _record("exchanging code=%s", "secret-code")
    RedactionFilter().filter(record)
    assert record.getMessage() == f"exchanging code={REDACTED}"


def test_json_formatter_extracts_tag_and_correlation_id():
    token = correlation_id.set("req-0001")
    try:
        record = _record("[CALLBACK] Issued client code for client abc")
        CorrelationIdFilter().filter(record)
        entry = JSONFormatter("oauth-gateway").format(record)
    finally:
        correlation_id.reset(token)

    assert entry["tag"] == "CALLBACK"
    assert entry["message"] == "Issued client code for client abc"
    assert entry["correlation_id"] == "req-0001"
    assert entry["service"] == "oauth-gateway"


def test_error_page_carries_request_id(client):
    response = client.get("/authorize", params={"client_id": "missing"}, headers={"X-Request-ID": "req-abcdef12"})
    assert response.status_code == 400
    assert "req-abcdef12" in response.text
    assert response.headers["x-request-id"] == "req-abcdef12"


def test_supabase_handler_ships_redacted_rows():
    from unittest.mock import MagicMock

    from logging_config import SupabaseHandler

    supabase = MagicMock()
    handler = SupabaseHandler(supabase, service_name="oauth-gateway", capacity=2, interval=3600)
    handler.addFilter(CorrelationIdFilter())
    handler.addFilter(RedactionFilter())
    try:
        handler.handle(_record("[TOKEN] first code=%s", "secret-1"))
        supabase.table.assert_not_called()
        handler.handle(_record("[TOKEN] second"))
    finally:
        handler.close()

    supabase.table.assert_called_with("gateway_logs")
    rows = supabase.table.return_value.insert.call_args[0][0]
    assert [row["tag"] for row in rows] == ["TOKEN", "TOKEN"]
    assert "secret-1" not in rows[0]["message"]


def test_state_rejection_log_keeps_error_class(client, caplog):
    caplog.set_level(logging.WARNING, logger="gateway.callback")
    response = client.get("/oauth-callback", params={"code": "UPSTREAM1", "state": "A" * 200})
    assert response.status_code == 400

    records = [r for r in caplog.records if r.name == "gateway.callback"]
    assert records
    RedactionFilter().filter(records[0])
    message = records[0].getMessage()
    assert "StateTampered" in message
    assert "UPSTREAM1" not in message
