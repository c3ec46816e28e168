"""End-to-end flows through the HTTP surface."""

from datetime import datetime, timedelta, timezone

import jwt
import pytest

from snippetfactory.api.team import _team_stats
from snippetfactory.core.config import settings
from snippetfactory.features.principals.service import assign_plan, get_principal
from snippetfactory.features.usage.service import get_usage_events
from snippetfactory.models.principal import SubscriptionStatus


def _create(client, headers, title="Snippet"):
    return client.post(
        "/api/snippets",
        json={"title": title, "code": "print('hi')", "language": "Python", "tags": ["demo"]},
        headers=headers,
    )


def test_healthz(client):
    assert client.get("/healthz").json() == {"status": "ok"}


def test_readyz_checks_tables(client):
    resp = client.get("/readyz")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


def test_first_request_creates_free_principal(client, headers_for):
    resp = client.get("/api/entitlements", headers=headers_for("newcomer"))
    assert resp.status_code == 200
    body = resp.json()
    assert body["plan"] == "free"
    assert body["limits"]["snippet"] == {"current": 0, "max": 50, "remaining": 50}
    assert body["apiRateLimitPerHour"] == 0
    assert get_principal("newcomer") is not None


def test_free_user_hits_cap_then_upgrades(client, make_principal, headers_for):
    make_principal("u1", snippet_count=49)
    headers = headers_for("u1")

    assert _create(client, headers, "last free one").status_code == 201

    denied = _create(client, headers, "one too many")
    assert denied.status_code == 403
    body = denied.json()
    assert body["currentCount"] == 50
    assert body["maxCount"] == 50
    assert body["currentPlan"] == "free"
    assert body["upgradeUrl"] == "/pricing"

    assign_plan("u1", "pro")
    allowed = _create(client, headers, "unlimited now")
    assert allowed.status_code == 201
    assert get_principal("u1").snippet_count == 51

    limits = client.get("/api/entitlements", headers=headers).json()["limits"]
    assert limits["snippet"]["max"] == "unlimited"
    assert limits["snippet"]["remaining"] == "unlimited"


def test_snippet_list_and_delete(client, make_principal, headers_for):
    make_principal("u1")
    headers = headers_for("u1")
    created = _create(client, headers).json()["snippet"]
    assert created["language"] == "python"

    listing = client.get("/api/snippets", headers=headers).json()
    assert listing["pagination"]["total"] == 1
    assert listing["snippets"][0]["id"] == created["id"]

    assert client.delete(f"/api/snippets/{created['id']}", headers=headers).status_code == 200
    assert get_principal("u1").snippet_count == 0


def test_snippet_create_validation(client, make_principal, headers_for):
    make_principal("u1")
    resp = client.post(
        "/api/snippets",
        json={"title": "  ", "code": "x", "language": "go"},
        headers=headers_for("u1"),
    )
    assert resp.status_code == 400
    assert get_principal("u1").snippet_count == 0


def test_v1_flow_with_generated_key(client, make_principal, headers_for, usage_recorder):
    make_principal("dev", "pro")
    generated = client.post("/api/keys/generate", json={"name": "cli"}, headers=headers_for("dev")).json()
    api_headers = {"X-API-Key": generated["apiKey"]}

    created = client.post(
        "/api/v1/snippets",
        json={"title": "From API", "code": "1+1", "language": "python"},
        headers=api_headers,
    )
    assert created.status_code == 201
    assert created.headers["X-RateLimit-Limit"] == "100"

    listed = client.get("/api/v1/snippets", params={"api_key": generated["apiKey"]})
    assert listed.status_code == 200
    assert listed.json()["pagination"]["total"] == 1

    usage_recorder.flush(timeout=5)
    events = get_usage_events("dev", feature="api")
    assert sorted(e.usage_type for e in events) == ["snippet_create", "snippets_list"]
    assert all(e.metadata["api_key_id"] == generated["keyId"] for e in events)


def test_v1_rejects_unknown_and_revoked_keys(client, make_principal, headers_for):
    make_principal("dev", "pro")
    generated = client.post("/api/keys/generate", json={}, headers=headers_for("dev")).json()
    assert generated["name"] == "Default API Key"

    bogus = client.get("/api/v1/snippets", headers={"X-API-Key": "sf_" + "0" * 64})
    assert bogus.status_code == 401

    client.delete(f"/api/keys/{generated['keyId']}", headers=headers_for("dev"))
    revoked = client.get("/api/v1/snippets", headers={"X-API-Key": generated["apiKey"]})
    assert revoked.status_code == 401


def test_v1_denied_after_downgrade(client, make_principal, headers_for):
    make_principal("dev", "pro")
    generated = client.post("/api/keys/generate", json={"name": "cli"}, headers=headers_for("dev")).json()
    assign_plan("dev", "basic")

    resp = client.get("/api/v1/snippets", headers={"X-API-Key": generated["apiKey"]})
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "feature_not_available"


def test_team_add_list_remove(client, make_principal, headers_for):
    make_principal("owner", "pro")
    make_principal("mate", email="Mate@Example.com")
    headers = headers_for("owner")

    added = client.post("/api/team/members", json={"email": "MATE@example.com", "role": "admin"}, headers=headers)
    assert added.status_code == 200
    member = added.json()["member"]

    listing = client.get("/api/team/members", headers=headers).json()
    assert len(listing["members"]) == 1
    assert listing["stats"]["currentCount"] == 1
    assert listing["stats"]["maxMembers"] == 10
    assert listing["stats"]["canAddMore"] is True

    removed = client.delete("/api/team/members", params={"id": member["id"]}, headers=headers)
    assert removed.status_code == 200
    assert get_principal("owner").team_member_count == 0


def test_team_quota_blocks_extra_members(client, make_principal, headers_for):
    make_principal("owner", "pro", team_member_count=10)
    make_principal("mate", email="mate@example.com")
    resp = client.post("/api/team/members", json={"email": "mate@example.com"}, headers=headers_for("owner"))
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "quota_exceeded"


def test_team_add_unknown_email(client, make_principal, headers_for):
    make_principal("owner", "pro")
    resp = client.post("/api/team/members", json={"email": "ghost@example.com"}, headers=headers_for("owner"))
    assert resp.status_code == 404
    assert get_principal("owner").team_member_count == 0


def test_team_add_self_rejected(client, make_principal, headers_for):
    make_principal("owner", "pro", email="owner@example.com")
    resp = client.post("/api/team/members", json={"email": "owner@example.com"}, headers=headers_for("owner"))
    assert resp.status_code == 400


def test_team_stats_report_effective_plan(make_principal):
    make_principal("active-owner", "pro")
    make_principal("lapsed-owner", "pro", subscription_status=SubscriptionStatus.PAST_DUE)

    active = _team_stats("active-owner")
    assert active["plan"] == "pro"
    assert active["maxMembers"] == 10

    lapsed = _team_stats("lapsed-owner")
    assert lapsed["plan"] == "free"
    assert lapsed["maxMembers"] == 1


@pytest.fixture
def jwt_secret(monkeypatch):
    monkeypatch.setattr(settings, "AUTH_JWT_SECRET", "test-secret")
    return "test-secret"


def test_bearer_jwt_identifies_user(client, jwt_secret):
    token = jwt.encode(
        {
            "sub": "jwt-user",
            "email": "JWT@example.com",
            "exp": datetime.now(timezone.utc) + timedelta(minutes=5),
        },
        jwt_secret,
        algorithm="HS256",
    )
    resp = client.get("/api/entitlements", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 200
    assert get_principal("jwt-user").email == "jwt@example.com"


def test_expired_jwt_rejected(client, jwt_secret):
    token = jwt.encode(
        {"sub": "jwt-user", "exp": datetime.now(timezone.utc) - timedelta(minutes=5)},
        jwt_secret,
        algorithm="HS256",
    )
    resp = client.get("/api/entitlements", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 401
    assert get_principal("jwt-user") is None


def test_user_id_header_can_be_disabled(client, monkeypatch, headers_for):
    monkeypatch.setattr(settings, "ALLOW_USER_ID_HEADER", False)
    assert client.get("/api/entitlements", headers=headers_for("u1")).status_code == 401
