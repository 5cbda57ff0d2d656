"""
tests/test_api_auth.py -- Integration tests for api/routes/v1/auth.py.

Runs the real app (routes, dependencies, exception handlers, slowapi) over
the module-scoped api_client harness. Each test uses its own email so the
shared database never couples tests; request-rate and failure counters are
reset before every test because every TestClient request comes from the
same address.
"""

from __future__ import annotations

import uuid

import pytest
from conftest import PASSWORD

from api.limiter import limiter
from auth.service import FORGOT_PASSWORD_MESSAGE, RESEND_VERIFICATION_MESSAGE
from core.config import Settings

NEW_PASSWORD = "N3w-Password!"


@pytest.fixture(autouse=True)
def _reset_rate_state(api_client):
    limiter.reset()
    api_client.counters.clear()
    yield


def _email() -> str:
    return f"u{uuid.uuid4().hex[:12]}@x.com"


def _create(api_client, email: str | None = None, role: str = "user") -> str:
    email = email or _email()
    api_client.service.create_account(email, PASSWORD, role=role)
    return email


def _login(api_client, email: str, password: str = PASSWORD):
    return api_client.client.post("/api/v1/auth/login", json={"email": email, "password": password})


def _auth(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


# ---------------------------------------------------------------------------
# Registration and login
# ---------------------------------------------------------------------------


def test_register_verify_login(api_client):
    email = _email()
    resp = api_client.client.post(
        "/api/v1/auth/register",
        json={"email": email.upper(), "password": PASSWORD, "first_name": "Ren"},
    )
    assert resp.status_code == 201
    assert resp.json()["email"] == email
    assert resp.json()["status"] == "pending_verification"

    assert _login(api_client, email).json()["error"]["code"] == "account_inactive"

    token = api_client.mailer.last_token("verification")
    resp = api_client.client.post("/api/v1/auth/verify-email", json={"token": token})
    assert resp.status_code == 200
    assert resp.json()["status"] == "active"

    resp = _login(api_client, email)
    assert resp.status_code == 200
    assert resp.headers["Cache-Control"] == "no-store"
    body = resp.json()
    assert body["token_type"] == "bearer"
    assert body["expires_in"] == 24 * 60 * 60
    assert body["account"]["email"] == email
    assert "password_hash" not in body["account"]


def test_resend_verification(api_client):
    email = _email()
    api_client.client.post("/api/v1/auth/register", json={"email": email, "password": PASSWORD})
    first = api_client.mailer.last_token("verification")

    pending = api_client.client.post("/api/v1/auth/resend-verification", json={"email": email})
    unknown = api_client.client.post("/api/v1/auth/resend-verification", json={"email": _email()})
    assert pending.status_code == unknown.status_code == 200
    assert pending.json() == unknown.json() == {"message": RESEND_VERIFICATION_MESSAGE}

    second = api_client.mailer.last_token("verification")
    assert second != first
    assert api_client.client.post("/api/v1/auth/verify-email", json={"token": first}).status_code == 400
    assert api_client.client.post("/api/v1/auth/verify-email", json={"token": second}).status_code == 200


def test_register_duplicate_and_weak(api_client):
    email = _create(api_client)
    resp = api_client.client.post("/api/v1/auth/register", json={"email": email, "password": PASSWORD})
    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "account_exists"

    resp = api_client.client.post("/api/v1/auth/register", json={"email": _email(), "password": "short"})
    assert resp.status_code == 422
    assert resp.json()["error"]["code"] == "weak_password"


def test_invalid_credentials_do_not_reveal_the_email(api_client):
    email = _create(api_client)
    wrong_password = _login(api_client, email, "Wrong-pass1!")
    unknown_email = _login(api_client, _email())
    assert wrong_password.status_code == unknown_email.status_code == 401
    assert wrong_password.json() == unknown_email.json()
    assert wrong_password.json()["error"]["code"] == "invalid_credentials"


def test_lockout_after_five_failures(api_client):
    email = _create(api_client)
    for _ in range(5):
        assert _login(api_client, email, "Wrong-pass1!").status_code == 401
    resp = _login(api_client, email)
    assert resp.status_code == 423
    assert resp.json()["error"]["code"] == "account_locked"


def test_blocked_ip_gets_429_with_retry_after(api_client):
    email = _create(api_client)
    for i in range(10):
        api_client.service.monitor.record_failed_attempt(f"spray{i}@x.com", "testclient")
    resp = _login(api_client, email)
    assert resp.status_code == 429
    assert resp.json()["error"]["code"] == "rate_limited"
    assert 0 < int(resp.headers["Retry-After"]) <= 3601


def test_login_request_rate_limit(api_client):
    email = _create(api_client)
    for _ in range(10):
        assert _login(api_client, email).status_code == 200
    resp = _login(api_client, email)
    assert resp.status_code == 429
    assert resp.json()["error"]["code"] == "rate_limited"
    assert "Retry-After" in resp.headers


def test_validation_error_envelope(api_client):
    resp = api_client.client.post("/api/v1/auth/login", json={"email": "a@x.com"})
    assert resp.status_code == 422
    assert resp.json()["error"]["code"] == "validation_error"


def test_malformed_login_email_counts_as_a_failure(api_client):
    resp = _login(api_client, "not-an-email")
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "invalid_credentials"
    assert api_client.service.monitor.get_login_attempts("not-an-email", "testclient") == 1


def test_unknown_host_is_rejected(api_client):
    resp = api_client.client.get("/api/v1/health", headers={"Host": "evil.example"})
    assert resp.status_code == 400


def test_default_hosts_do_not_include_the_test_client():
    assert "testserver" not in Settings.model_fields["allowed_hosts"].default


# ---------------------------------------------------------------------------
# Token lifecycle
# ---------------------------------------------------------------------------


def test_refresh_rotates_and_rejects_replay(api_client):
    email = _create(api_client)
    tokens = _login(api_client, email).json()

    resp = api_client.client.post("/api/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
    assert resp.status_code == 200
    assert resp.headers["Cache-Control"] == "no-store"
    assert resp.json()["session_id"] == tokens["session_id"]

    replay = api_client.client.post("/api/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
    assert replay.status_code == 401
    assert replay.json()["error"]["code"] == "invalid_refresh_token"


def test_me_requires_auth(api_client):
    resp = api_client.client.get("/api/v1/auth/me")
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "unauthorized"
    assert resp.headers["WWW-Authenticate"] == "Bearer"

    email = _create(api_client)
    token = _login(api_client, email).json()["access_token"]
    resp = api_client.client.get("/api/v1/auth/me", headers=_auth(token))
    assert resp.status_code == 200
    assert resp.json()["email"] == email


def test_validate_endpoint(api_client):
    email = _create(api_client)
    tokens = _login(api_client, email).json()

    resp = api_client.client.post("/api/v1/auth/validate", json={"token": tokens["access_token"]})
    assert resp.status_code == 200
    assert resp.json()["valid"] is True
    assert resp.json()["payload"]["sid"] == tokens["session_id"]

    resp = api_client.client.post("/api/v1/auth/validate", json={"token": "garbage"})
    assert resp.json() == {"valid": False, "payload": None}


def test_logout_ends_the_session(api_client):
    email = _create(api_client)
    token = _login(api_client, email).json()["access_token"]
    resp = api_client.client.post("/api/v1/auth/logout", headers=_auth(token))
    assert resp.status_code == 200
    assert api_client.client.get("/api/v1/auth/me", headers=_auth(token)).status_code == 401


def test_logout_all(api_client):
    email = _create(api_client)
    first = _login(api_client, email).json()
    second = _login(api_client, email).json()
    resp = api_client.client.post("/api/v1/auth/logout/all", headers=_auth(second["access_token"]))
    assert resp.status_code == 200
    assert resp.json()["revoked"] == 2
    assert api_client.client.get("/api/v1/auth/me", headers=_auth(first["access_token"])).status_code == 401


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


def test_forgot_password_is_generic(api_client):
    email = _create(api_client)
    sent_before = len(api_client.mailer.of_kind("reset"))
    known = api_client.client.post("/api/v1/auth/forgot-password", json={"email": email})
    unknown = api_client.client.post("/api/v1/auth/forgot-password", json={"email": _email()})
    assert known.status_code == unknown.status_code == 200
    assert known.json() == unknown.json() == {"message": FORGOT_PASSWORD_MESSAGE}
    assert len(api_client.mailer.of_kind("reset")) == sent_before + 1


def test_reset_password_flow(api_client):
    email = _create(api_client)
    api_client.client.post("/api/v1/auth/forgot-password", json={"email": email})
    token = api_client.mailer.last_token("reset")

    resp = api_client.client.post("/api/v1/auth/reset-password/validate", json={"token": token})
    assert resp.json() == {"valid": True}

    resp = api_client.client.post(
        "/api/v1/auth/reset-password", json={"token": token, "new_password": "weakpass"}
    )
    assert resp.status_code == 422
    assert resp.json()["error"]["code"] == "weak_password"

    resp = api_client.client.post(
        "/api/v1/auth/reset-password", json={"token": token, "new_password": NEW_PASSWORD}
    )
    assert resp.status_code == 200

    resp = api_client.client.post(
        "/api/v1/auth/reset-password", json={"token": token, "new_password": NEW_PASSWORD}
    )
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "invalid_or_expired_reset_token"

    resp = api_client.client.post("/api/v1/auth/reset-password/validate", json={"token": token})
    assert resp.json() == {"valid": False}
    assert _login(api_client, email, NEW_PASSWORD).status_code == 200


def test_reset_token_shape_is_validated(api_client):
    resp = api_client.client.post("/api/v1/auth/reset-password/validate", json={"token": "short"})
    assert resp.status_code == 422


# ---------------------------------------------------------------------------
# Sessions and accounts
# ---------------------------------------------------------------------------


def test_list_and_revoke_sessions(api_client):
    email = _create(api_client)
    first = _login(api_client, email).json()
    second = _login(api_client, email).json()

    resp = api_client.client.get("/api/v1/auth/sessions", headers=_auth(second["access_token"]))
    assert resp.status_code == 200
    sessions = {s["id"]: s for s in resp.json()}
    assert set(sessions) == {first["session_id"], second["session_id"]}
    assert sessions[second["session_id"]]["current"] is True
    assert sessions[first["session_id"]]["current"] is False

    resp = api_client.client.delete(
        f"/api/v1/auth/sessions/{first['session_id']}", headers=_auth(second["access_token"])
    )
    assert resp.status_code == 204
    assert api_client.client.get("/api/v1/auth/me", headers=_auth(first["access_token"])).status_code == 401


def test_cannot_revoke_someone_elses_session(api_client):
    victim = _login(api_client, _create(api_client)).json()
    attacker = _login(api_client, _create(api_client)).json()
    resp = api_client.client.delete(
        f"/api/v1/auth/sessions/{victim['session_id']}", headers=_auth(attacker["access_token"])
    )
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "not_found"
    assert api_client.client.get("/api/v1/auth/me", headers=_auth(victim["access_token"])).status_code == 200


def test_delete_account_is_admin_only(api_client):
    target_email = _create(api_client)
    target = _login(api_client, target_email).json()
    target_id = target["account"]["id"]

    user_token = _login(api_client, _create(api_client)).json()["access_token"]
    resp = api_client.client.delete(f"/api/v1/auth/accounts/{target_id}", headers=_auth(user_token))
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "forbidden"

    admin = _login(api_client, "admin@x.com").json()
    resp = api_client.client.delete(f"/api/v1/auth/accounts/{target_id}", headers=_auth(admin["access_token"]))
    assert resp.status_code == 204
    assert api_client.client.get("/api/v1/auth/me", headers=_auth(target["access_token"])).status_code == 401

    resp = api_client.client.delete(f"/api/v1/auth/accounts/{target_id}", headers=_auth(admin["access_token"]))
    assert resp.status_code == 404

    resp = api_client.client.delete(
        f"/api/v1/auth/accounts/{admin['account']['id']}", headers=_auth(admin["access_token"])
    )
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "self_deletion"
