"""Tests for structured logging and request_id propagation."""

import json
import logging

from snippetfactory.core.logging import JsonFormatter, RequestIdFilter, request_id_ctx_var


def test_request_id_in_response_and_logs(client, caplog):
    with caplog.at_level(logging.INFO, logger="snippetfactory"):
        response = client.get("/healthz")
    rid = response.headers.get("x-request-id")
    assert rid
    records = [r for r in caplog.records if getattr(r, "request_id", None) == rid]
    assert records, "Expected logs to contain request_id from response"
    assert {r.getMessage() for r in records} >= {"request.complete"}


def test_request_id_in_error_response(client, make_principal, headers_for):
    make_principal("u1")
    response = client.delete("/api/snippets/non-existent", headers=headers_for("u1"))
    rid = response.headers.get("x-request-id")
    assert response.status_code == 404
    assert rid
    assert response.json()["error"]["request_id"] == rid


def test_denials_are_logged_with_request_id(client, make_principal, headers_for, caplog):
    make_principal("u1")
    with caplog.at_level(logging.INFO, logger="snippetfactory"):
        response = client.get("/api/analytics", headers={**headers_for("u1"), "x-request-id": "rid-42"})
    assert response.status_code == 403
    errors = [r for r in caplog.records if r.getMessage() == "app.error"]
    assert errors
    assert errors[0].request_id == "rid-42"
    assert errors[0].error_code == "feature_not_available"


def test_context_var_is_reset_after_request(client):
    client.get("/healthz", headers={"x-request-id": "rid-1"})
    assert request_id_ctx_var.get() is None


def test_json_formatter_includes_context_and_extras():
    record = logging.LogRecord("snippetfactory.test", logging.INFO, __file__, 1, "[quotas] reserved", None, None)
    record.user_id = "u1"
    token = request_id_ctx_var.set("rid-json")
    try:
        RequestIdFilter().filter(record)
    finally:
        request_id_ctx_var.reset(token)

    payload = json.loads(JsonFormatter().format(record))
    assert payload["message"] == "[quotas] reserved"
    assert payload["request_id"] == "rid-json"
    assert payload["user_id"] == "u1"
    assert payload["level"] == "INFO"
