"""Integration tests for the HTTP authentication surface.

Covers, through the FastAPI app:
- CSRF issuance, registration and credential login
- Session validation, refresh and logout
- Rate limit headers and the 429 envelope
- The OAuth start/callback round trip and the account-linking decision
"""

import base64
import json
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from fastapi.testclient import TestClient

from roastauth import app as app_module
from roastauth.service.runtime import Runtime, get_runtime, set_runtime

PASSWORD = "TestPassword123!"
NO_STORE = "no-cache, no-store, must-revalidate"


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _csrf(client):
    return client.get("/v1/auth/csrf").json()["data"]["csrfToken"]


def _register(client, email="member@example.com", password=PASSWORD):
    return client.post(
        "/v1/auth/register",
        json={
            "email": email,
            "password": password,
            "firstName": "Ada",
            "lastName": "Lovelace",
            "termsAccepted": True,
            "marketingConsent": False,
            "csrfToken": _csrf(client),
        },
    )


def _login(client, email="member@example.com", password=PASSWORD):
    return client.post(
        "/v1/auth/login",
        json={"email": email, "password": password, "csrfToken": _csrf(client)},
    )


def _provider_handler(request: httpx.Request) -> httpx.Response:
    url = str(request.url)
    if request.method == "POST" and url == "https://oauth2.googleapis.com/token":
        return httpx.Response(200, json={"access_token": "access-abc", "token_type": "Bearer"})
    if request.method == "POST" and url == "https://appleid.apple.com/auth/token":
        claims = base64.urlsafe_b64encode(
            json.dumps({"sub": "apple-1", "email": "apple@example.com", "email_verified": "true"}).encode()
        ).decode().rstrip("=")
        return httpx.Response(200, json={"access_token": "access-abc", "id_token": f"e30.{claims}.sig"})
    if url == "https://www.googleapis.com/oauth2/v2/userinfo":
        return httpx.Response(
            200,
            json={
                "id": "google-123",
                "email": "member@example.com",
                "verified_email": True,
                "name": "Ada Lovelace",
            },
        )
    return httpx.Response(404, json={"error": "not_found"})


@pytest.fixture
def oauth_runtime():
    return set_runtime(Runtime(oauth_transport=httpx.MockTransport(_provider_handler)))


def _start_oauth(client, provider="google"):
    response = client.get(f"/v1/auth/oauth/{provider}/start", follow_redirects=False)
    assert response.status_code == 302
    query = parse_qs(urlparse(response.headers["location"]).query)
    return response, query["state"][0]


class TestCredentialFlow:
    def test_csrf_endpoint_issues_token(self, client):
        response = client.get("/v1/auth/csrf")

        assert response.status_code == 200
        assert len(response.json()["data"]["csrfToken"]) == 64
        assert response.headers["Cache-Control"] == NO_STORE

    def test_register_returns_201_without_session(self, client):
        response = _register(client)

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "ok"
        assert body["data"]["user"]["email"] == "member@example.com"
        assert "session_id" not in response.cookies

    def test_register_duplicate_conflicts(self, client):
        _register(client)

        response = _register(client)

        assert response.status_code == 409
        assert response.json()["error"]["type"] == "conflict"

    def test_login_sets_cookie_and_rate_limit_headers(self, client):
        _register(client)

        response = _login(client)

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["user"]["email"] == "member@example.com"
        assert data["authMethod"] == "email"
        assert data["isAuthenticated"] is True
        assert response.cookies.get("session_id")
        assert response.headers["X-RateLimit-Limit"] == "10"
        assert response.headers["X-RateLimit-Reset"].isdigit()
        assert response.headers["Cache-Control"] == NO_STORE
        assert response.headers["Pragma"] == "no-cache"

    def test_login_failure_envelope(self, client):
        _register(client)

        response = _login(client, password="WrongPassword1!")

        assert response.status_code == 401
        error = response.json()["error"]
        assert response.json()["status"] == "error"
        assert error["type"] == "validation_error"
        assert error["recoverable"] is True
        assert "code" in error and "message" in error

    def test_locked_account_is_423(self, client):
        user_id = _register(client).json()["data"]["user"]["id"]
        get_runtime().store.set_user_locked(user_id, True)

        response = _login(client)

        assert response.status_code == 423
        assert response.json()["error"]["recoverable"] is False

    def test_eleventh_login_attempt_is_429(self, client):
        _register(client)
        for _ in range(10):
            assert _login(client, password="WrongPassword1!").status_code == 401

        response = _login(client)

        assert response.status_code == 429
        assert response.json()["error"]["type"] == "rate_limit_exceeded"
        assert int(response.headers["Retry-After"]) > 0
        assert response.headers["X-RateLimit-Remaining"] == "0"

    def test_malformed_json_is_validation_error(self, client):
        response = client.post(
            "/v1/auth/login",
            content="{not json",
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 400
        assert response.json()["error"]["type"] == "validation_error"

    def test_missing_csrf_is_403(self, client):
        _register(client)

        response = client.post("/v1/auth/login", json={"email": "member@example.com", "password": PASSWORD})

        assert response.status_code == 403
        assert response.json()["error"]["type"] == "csrf_violation"


class TestSessionEndpoints:
    def test_validate_without_session_is_200_invalid(self, client):
        response = client.get("/v1/auth/session/validate")

        assert response.status_code == 200
        assert response.json()["data"]["valid"] is False
        assert response.headers["Cache-Control"] == NO_STORE

    def test_validate_with_session(self, client):
        _register(client)
        _login(client)

        response = client.get("/v1/auth/session/validate")

        data = response.json()["data"]
        assert data["valid"] is True
        assert data["user"]["email"] == "member@example.com"

    def test_refresh_far_from_expiry(self, client):
        _register(client)
        csrf = _login(client).json()["data"]["csrfToken"]

        response = client.post("/v1/auth/session/refresh", json={"csrfToken": csrf})

        assert response.status_code == 200
        assert response.json()["data"]["refreshed"] is False
        assert response.headers["Cache-Control"] == NO_STORE

    def test_refresh_requires_session(self, client):
        response = client.post("/v1/auth/session/refresh", json={"csrfToken": "a" * 64})

        assert response.status_code == 401

    def test_logout_ends_session(self, client):
        _register(client)
        csrf = _login(client).json()["data"]["csrfToken"]

        response = client.post("/v1/auth/logout", json={"csrfToken": csrf})

        assert response.status_code == 200
        assert response.json()["data"]["loggedOut"] is True
        assert client.get("/v1/auth/session/validate").json()["data"]["valid"] is False


class TestOAuthEndpoints:
    def test_providers_follow_platform(self, client):
        response = client.get(
            "/v1/auth/providers",
            headers={"User-Agent": "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X)"},
        )

        data = response.json()["data"]
        assert data["platform"] == "ios"
        assert [p["id"] for p in data["providers"]][:2] == ["apple", "google"]

    def test_start_redirects_with_pkce(self, client):
        response, _ = _start_oauth(client)

        location = response.headers["location"]
        assert location.startswith("https://accounts.google.com/o/oauth2/v2/auth?")
        assert "code_challenge_method=S256" in location
        assert response.cookies.get("oauth_client")

    def test_unknown_provider_is_404(self, client):
        response = client.get("/v1/auth/oauth/myspace/start", follow_redirects=False)

        assert response.status_code == 404
        assert response.json()["error"]["type"] == "not_found"

    def test_double_start_is_409(self, client):
        _start_oauth(client)

        response = client.get("/v1/auth/oauth/google/start", follow_redirects=False)

        assert response.status_code == 409

    def test_callback_without_state_is_rejected(self, client):
        response = client.get("/v1/auth/oauth/google/callback", params={"code": "abc", "state": "0" * 32})

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["type"] == "oauth_state_mismatch"
        assert error["recoverable"] is False

    def test_callback_creates_session(self, client, oauth_runtime):
        _, state = _start_oauth(client)

        response = client.get("/v1/auth/oauth/google/callback", params={"code": "abc", "state": state})

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["status"] == "session_created"
        assert data["isNewUser"] is True
        assert data["oauthProvider"] == "google"
        assert response.cookies.get("session_id")

    def test_apple_form_post_callback(self, client, oauth_runtime):
        _, state = _start_oauth(client, "apple")

        response = client.post(
            "/v1/auth/oauth/apple/callback",
            data={
                "code": "abc",
                "state": state,
                "user": json.dumps({"name": {"firstName": "Grace", "lastName": "Hopper"}}),
            },
        )

        assert response.status_code == 200
        assert response.json()["data"]["user"]["name"] == "Grace Hopper"

    def test_denied_consent_is_401(self, client, oauth_runtime):
        _, state = _start_oauth(client)

        response = client.get(
            "/v1/auth/oauth/google/callback", params={"error": "access_denied", "state": state}
        )

        assert response.status_code == 401
        assert response.json()["error"]["type"] == "oauth_access_denied"

    def test_collision_then_link(self, client, oauth_runtime):
        _register(client)
        _, state = _start_oauth(client)

        collision = client.get("/v1/auth/oauth/google/callback", params={"code": "abc", "state": state})

        assert collision.status_code == 200
        pending = collision.json()["data"]
        assert pending["status"] == "awaiting_user_choice"
        assert pending["existingUser"]["authMethods"] == ["email"]
        assert "session_id" not in collision.cookies

        linked = client.post(
            "/v1/auth/oauth/link",
            json={"linkToken": pending["linkToken"], "decision": "link", "csrfToken": pending["csrfToken"]},
        )

        assert linked.status_code == 200
        data = linked.json()["data"]
        assert data["status"] == "linked"
        assert data["user"]["id"] == pending["existingUser"]["id"]
        assert [a["provider"] for a in data["linkedAccounts"]] == ["google"]

    def test_link_with_bad_decision_is_400(self, client, oauth_runtime):
        response = client.post(
            "/v1/auth/oauth/link",
            json={"linkToken": "tok", "decision": "merge", "csrfToken": "a" * 64},
        )

        assert response.status_code == 400
        assert response.json()["error"]["type"] == "validation_error"

    def test_expired_link_token(self, client, oauth_runtime):
        response = client.post(
            "/v1/auth/oauth/link",
            json={"linkToken": "gone", "decision": "separate", "csrfToken": "a" * 64},
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "LINK_EXPIRED"


def test_healthz_reports_components(client):
    response = client.get("/healthz")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["checks"]["cache"]["type"] == "MemoryCache"
    assert response.headers["X-Frame-Options"] == "DENY"
