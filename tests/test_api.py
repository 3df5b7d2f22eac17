"""HTTP surface: envelopes, status codes and headers."""

import asyncio

import pytest
from fastapi.testclient import TestClient

from tenantauth.app import app
from tenantauth.service.runtime import get_runtime
from tenantauth.storage.models import UserStatus

PASSWORD = "Str0ng!Passw0rd"
TENANT = {"X-Tenant-ID": "tenant-a"}


def _seed_user(email="alice@example.com", tenant="tenant-a", **kwargs):
    return asyncio.run(get_runtime().auth.register_user(tenant, email, PASSWORD, **kwargs))


def _login(client, email="alice@example.com", password=PASSWORD, headers=TENANT):
    return client.post(
        "/v1/auth/login", json={"email": email, "password": password}, headers=headers
    )


@pytest.fixture
def client():
    return TestClient(app)


def test_login_returns_token_envelope(client):
    _seed_user()
    resp = _login(client)
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ok"
    data = body["data"]
    assert data["status"] == "authenticated"
    assert data["token_type"] == "Bearer"
    assert data["expires_in"] == 900
    assert data["user"]["email"] == "alice@example.com"
    assert "password_hash" not in data["user"]
    assert resp.headers["Cache-Control"].startswith("no-store")
    assert resp.headers["X-Request-ID"]


def test_login_requires_tenant_header(client):
    _seed_user()
    resp = _login(client, headers={})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "validation_error"


def test_wrong_tenant_is_unauthorized(client):
    _seed_user()
    resp = _login(client, headers={"X-Tenant-ID": "tenant-b"})
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "unauthorized"


def test_malformed_body_is_validation_error(client):
    resp = client.post("/v1/auth/login", json={"email": "nope"}, headers=TENANT)
    assert resp.status_code == 400
    assert resp.json()["status"] == "error"


def test_inactive_account_is_locked(client):
    _seed_user(status=UserStatus.INACTIVE)
    resp = _login(client)
    assert resp.status_code == 423
    assert resp.json()["error"]["code"] == "account_locked"


def test_rate_limit_sets_retry_after(client):
    _seed_user()
    for _ in range(5):
        assert _login(client, password="Wr0ng!Password").status_code == 401
    resp = _login(client)
    assert resp.status_code == 429
    assert resp.json()["error"]["code"] == "rate_limited"
    assert int(resp.headers["Retry-After"]) == 900


def test_refresh_logout_and_validate(client):
    _seed_user()
    tokens = _login(client).json()["data"]
    bearer = {"Authorization": f"Bearer {tokens['access_token']}"}

    valid = client.post("/v1/auth/validate", headers=bearer)
    assert valid.json()["data"] == {"valid": True}

    rotated = client.post("/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
    assert rotated.status_code == 200
    replay = client.post("/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
    assert replay.status_code == 401

    new_tokens = rotated.json()["data"]
    out = client.post(
        "/v1/auth/logout",
        json={"refresh_token": new_tokens["refresh_token"]},
        headers={"Authorization": f"Bearer {new_tokens['access_token']}"},
    )
    assert out.status_code == 200
    assert out.json()["data"] == {"logged_out": True}
    after = client.post(
        "/v1/auth/validate", headers={"Authorization": f"Bearer {new_tokens['access_token']}"}
    )
    assert after.json()["data"] == {"valid": False}


def test_validate_never_errors_on_garbage(client):
    assert client.post("/v1/auth/validate").json()["data"] == {"valid": False}
    resp = client.post("/v1/auth/validate", headers={"Authorization": "Bearer x.y.z"})
    assert resp.status_code == 200
    assert resp.json()["data"] == {"valid": False}


def test_logout_requires_bearer(client):
    resp = client.post("/v1/auth/logout")
    assert resp.status_code == 401


def test_mfa_setup_then_login_requires_code(client):
    _seed_user()
    access = _login(client).json()["data"]["access_token"]
    setup = client.post(
        "/v1/auth/mfa/setup", headers={"Authorization": f"Bearer {access}", **TENANT}
    )
    assert setup.status_code == 200
    assert len(setup.json()["data"]["backup_codes"]) == 10

    pending = _login(client).json()["data"]
    assert pending["status"] == "mfa_required"
    assert pending["access_token"] is None
    assert pending["user"] is None


def test_mfa_setup_rejects_other_tenant_header(client):
    _seed_user()
    access = _login(client).json()["data"]["access_token"]
    resp = client.post(
        "/v1/auth/mfa/setup",
        headers={"Authorization": f"Bearer {access}", "X-Tenant-ID": "tenant-b"},
    )
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "tenant_mismatch"


def test_healthz(client):
    resp = client.get("/healthz")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "healthy"
    assert body["checks"]["cache"]["type"] == "MemoryCache"
    assert body["checks"]["circuit"]["state"] == "closed"


def test_user_listing_requires_permission(client):
    _seed_user(role="manager")
    _seed_user(email="bob@example.com")
    _seed_user(email="carol@example.com", tenant="tenant-b")

    manager = _login(client).json()["data"]["access_token"]
    resp = client.get("/v1/users", headers={"Authorization": f"Bearer {manager}", **TENANT})
    assert resp.status_code == 200
    emails = sorted(item["email"] for item in resp.json()["data"]["items"])
    assert emails == ["alice@example.com", "bob@example.com"]

    agent = _login(client, email="bob@example.com").json()["data"]["access_token"]
    denied = client.get("/v1/users", headers={"Authorization": f"Bearer {agent}", **TENANT})
    assert denied.status_code == 403
    assert denied.json()["error"]["code"] == "forbidden"
