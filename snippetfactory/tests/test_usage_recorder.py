"""Tests for usage recording isolation and usage summaries."""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from snippetfactory.features.usage.service import (
    UsageRecorder,
    count_usage_events,
    get_usage_events,
    summarize_usage,
)


NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


def test_record_appends_event(usage_recorder):
    event = usage_recorder.record("u1", "analytics", "view_dashboard", metadata={"window": 30}, occurred_at=NOW)
    assert event.quantity == 1

    events = get_usage_events("u1", feature="analytics")
    assert len(events) == 1
    assert events[0].usage_type == "view_dashboard"
    assert events[0].metadata == {"window": 30}
    assert events[0].occurred_at == NOW


def test_record_rejects_non_positive_quantity(usage_recorder):
    with pytest.raises(ValueError):
        usage_recorder.record("u1", "api", "call", quantity=0)


def test_record_safely_swallows_failures(usage_recorder, monkeypatch):
    def explode(*args, **kwargs):
        raise RuntimeError("ledger offline")

    monkeypatch.setattr(usage_recorder, "record", explode)
    assert usage_recorder.record_safely("u1", "api", "call") is None


def test_dispatch_is_fire_and_forget(usage_recorder):
    future = usage_recorder.dispatch("u1", "snippets", "snippet_create")
    assert future is not None
    usage_recorder.flush(timeout=5)
    assert count_usage_events("u1", "snippets", since=NOW - timedelta(days=3650)) == 1


def test_record_with_timeout_gives_up_without_raising():
    recorder = UsageRecorder(max_workers=1, timeout_seconds=0.05)
    release = threading.Event()

    def slow_record(*args, **kwargs):
        release.wait(5)

    recorder.record = slow_record
    try:
        assert recorder.record_with_timeout("u1", "api", "call") is None
    finally:
        release.set()
        recorder.shutdown(wait=True)


def test_dispatch_after_shutdown_is_ignored():
    recorder = UsageRecorder(max_workers=1)
    recorder.shutdown(wait=True)
    assert recorder.dispatch("u1", "api", "call") is None


def test_failed_recording_does_not_fail_the_request(client, make_principal, headers_for, usage_recorder, monkeypatch):
    make_principal("u1")

    def explode(*args, **kwargs):
        raise RuntimeError("ledger offline")

    monkeypatch.setattr(usage_recorder, "record", explode)
    resp = client.post(
        "/api/snippets",
        json={"title": "Hi", "code": "print(1)", "language": "python"},
        headers=headers_for("u1"),
    )
    usage_recorder.flush(timeout=5)
    assert resp.status_code == 201
    assert resp.json()["snippet"]["title"] == "Hi"


def test_count_window_bounds(usage_recorder):
    usage_recorder.record("u1", "api", "call", occurred_at=NOW - timedelta(hours=2))
    usage_recorder.record("u1", "api", "call", occurred_at=NOW - timedelta(minutes=30))
    usage_recorder.record("u1", "api", "call", quantity=5, occurred_at=NOW)

    assert count_usage_events("u1", "api", since=NOW - timedelta(hours=1)) == 2
    assert count_usage_events("u1", "api", since=NOW - timedelta(hours=3), until=NOW - timedelta(hours=1)) == 1
    assert count_usage_events("u2", "api", since=NOW - timedelta(hours=3)) == 0


def test_summarize_usage_sums_quantity_per_feature(usage_recorder):
    usage_recorder.record("u1", "api", "call", quantity=3, occurred_at=NOW - timedelta(days=1))
    usage_recorder.record("u1", "api", "call", occurred_at=NOW)
    usage_recorder.record("u1", "snippets", "snippet_create", occurred_at=NOW - timedelta(days=2))
    usage_recorder.record("u1", "snippets", "snippet_create", occurred_at=NOW - timedelta(days=40))
    usage_recorder.record("u1", "api", "call", occurred_at=NOW + timedelta(days=1))

    assert summarize_usage("u1", now=NOW, window_days=30) == {"api": 4, "snippets": 1}
    assert summarize_usage("u1", now=NOW) == {"api": 4, "snippets": 2}
    assert summarize_usage("u1", now=NOW, window_days=30) == summarize_usage("u1", now=NOW, window_days=30)


def test_analytics_endpoint_records_a_view(client, make_principal, headers_for, usage_recorder):
    make_principal("u1", "basic")
    resp = client.get("/api/analytics", headers=headers_for("u1"))
    assert resp.status_code == 200
    usage_recorder.flush(timeout=5)

    events = get_usage_events("u1", feature="analytics")
    assert [e.usage_type for e in events] == ["view_dashboard"]
