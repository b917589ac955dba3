"""HTTP-level tests for the /api surface.

Tests the complete flows through FastAPI including:
- Registration, login and bearer-protected routes
- The 428 2FA challenge handshake
- Google redirect flow
- Error envelopes, rate limiting and correlation ids
"""

from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from fastapi.testclient import TestClient

from turnstile import app as app_module
from turnstile.service.oauth import GoogleOAuthClient
from turnstile.service.rate_limit import RateLimiter
from turnstile.service.runtime import get_runtime

PASSWORD = "Secret123!"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


def _register(client, username="alice", email="alice@example.com", password=PASSWORD):
    return client.post(
        "/api/users/",
        json={"username": username, "email": email, "password": password},
    )


def _login(client, identifier="alice", password=PASSWORD):
    return client.post(
        "/api/users/loginByIdentifier",
        json={"identifier": identifier, "password": password},
    )


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def token(client):
    _register(client)
    return _login(client).json()["data"]["token"]


class TestRegistration:
    def test_register_created(self, client):
        response = _register(client, email="Alice@Example.com")

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "ok"
        assert body["data"]["username"] == "alice"
        assert body["data"]["email"] == "alice@example.com"
        assert body["data"]["twoFa"] is False
        assert body["data"]["token"] is None

    def test_register_duplicate(self, client):
        _register(client)

        response = _register(client, email="other@example.com")

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    @pytest.mark.parametrize(
        "payload",
        [
            {"username": "al", "email": "a@example.com", "password": PASSWORD},
            {"username": "bad name", "email": "a@example.com", "password": PASSWORD},
            {"username": "alice", "email": "not-an-email", "password": PASSWORD},
            {"username": "alice", "email": "a@example.com", "password": "x" * 21},
            {"username": "alice", "email": "a@example.com", "password": "no spaces"},
            {"username": "alice", "email": "a@example.com"},
        ],
    )
    def test_register_validation(self, client, payload):
        response = client.post("/api/users/", json=payload)

        assert response.status_code == 400
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "validation_error"


class TestLogin:
    def test_login_returns_session(self, client):
        _register(client)

        response = _login(client, identifier="alice@example.com")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["username"] == "alice"
        assert data["token"]

    def test_wrong_password(self, client):
        _register(client)

        response = _login(client, password="Wrong123!")

        assert response.status_code == 401
        assert response.json()["error"] == {
            "code": "unauthorized",
            "message": "invalid credentials",
            "details": None,
        }

    def test_validate_endpoint(self, client, token):
        me = client.get("/api/users/me", headers=_auth(token)).json()["data"]

        response = client.post("/api/users/validate", headers=_auth(token))

        assert response.status_code == 200
        assert response.json()["data"] == {"userId": me["id"]}

    @pytest.mark.parametrize("headers", [{}, {"Authorization": "Bearer nope"}, {"Authorization": "Basic x"}])
    def test_protected_route_requires_session(self, client, headers):
        response = client.get("/api/users/me", headers=headers)

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "invalid or expired token"


class TestProfile:
    def test_get_and_update_me(self, client, token):
        response = client.put(
            "/api/users/me",
            headers=_auth(token),
            json={"username": "alice2", "avatar": "https://img.example.com/a.png"},
        )

        assert response.status_code == 200
        me = client.get("/api/users/me", headers=_auth(token)).json()["data"]
        assert me["username"] == "alice2"
        assert me["avatar"] == "https://img.example.com/a.png"

    def test_change_password_rotates_session(self, client, token):
        response = client.put(
            "/api/users/password",
            headers=_auth(token),
            json={"oldPassword": PASSWORD, "newPassword": "Changed456!"},
        )

        assert response.status_code == 200
        new_token = response.json()["data"]["token"]
        assert client.get("/api/users/me", headers=_auth(token)).status_code == 401
        assert client.get("/api/users/me", headers=_auth(new_token)).status_code == 200

    def test_logout(self, client, token):
        response = client.delete("/api/users/logout", headers=_auth(token))

        assert response.status_code == 204
        assert client.get("/api/users/me", headers=_auth(token)).status_code == 401

    def test_delete_me(self, client, token):
        response = client.delete("/api/users/me", headers=_auth(token))

        assert response.status_code == 204
        assert _login(client).status_code == 401


class TestTwoFactorHandshake:
    def test_setup_confirm_challenge_disable(self, client, token):
        totp = get_runtime().totp
        setup = client.post("/api/users/2fa/setup", headers=_auth(token)).json()["data"]
        assert setup["twoFaUri"].startswith("otpauth://totp/")

        confirmed = client.post(
            "/api/users/2fa/confirm",
            headers=_auth(token),
            json={"twoFaCode": totp.current_code(setup["twoFaSecret"]), "setupToken": setup["setupToken"]},
        )
        assert confirmed.status_code == 200
        assert confirmed.json()["data"]["twoFa"] is True
        enabled_token = confirmed.json()["data"]["token"]
        assert client.get("/api/users/me", headers=_auth(token)).status_code == 401

        pending = _login(client)
        assert pending.status_code == 428
        body = pending.json()
        assert body["status"] == "2FA_REQUIRED"
        challenge = body["data"]["sessionToken"]
        assert client.get("/api/users/me", headers=_auth(challenge)).status_code == 401

        completed = client.post(
            "/api/users/2fa",
            json={"twoFaCode": totp.current_code(setup["twoFaSecret"]), "sessionToken": challenge},
        )
        assert completed.status_code == 200
        challenge_token = completed.json()["data"]["token"]
        assert client.get("/api/users/me", headers=_auth(enabled_token)).status_code == 200

        disabled = client.put(
            "/api/users/2fa/disable",
            headers=_auth(challenge_token),
            json={"password": PASSWORD},
        )
        assert disabled.status_code == 200
        assert disabled.json()["data"]["twoFa"] is False
        assert client.get("/api/users/me", headers=_auth(enabled_token)).status_code == 401
        assert _login(client).status_code == 200

    def test_confirm_without_setup_token_match(self, client, token):
        client.post("/api/users/2fa/setup", headers=_auth(token))

        response = client.post(
            "/api/users/2fa/confirm",
            headers=_auth(token),
            json={"twoFaCode": "123456", "setupToken": token},
        )

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "invalid setup token"

    def test_code_must_be_six_digits(self, client, token):
        response = client.post(
            "/api/users/2fa/confirm",
            headers=_auth(token),
            json={"twoFaCode": "12ab56", "setupToken": "x"},
        )

        assert response.status_code == 400

    def test_disable_when_not_enabled(self, client, token):
        response = client.put(
            "/api/users/2fa/disable", headers=_auth(token), json={"password": PASSWORD}
        )

        assert response.status_code == 400
        assert response.json()["error"]["message"] == "2FA is not enabled"


class TestFriendsAndDirectory:
    def test_add_and_list_friends(self, client, token):
        _register(client, username="bob", email="bob@example.com")
        bob_token = _login(client, identifier="bob").json()["data"]["token"]
        bob_id = client.get("/api/users/me", headers=_auth(bob_token)).json()["data"]["id"]
        assert get_runtime().dispatcher.drain(timeout=5)

        added = client.post("/api/users/friends", headers=_auth(token), json={"userId": bob_id})
        duplicate = client.post("/api/users/friends", headers=_auth(token), json={"userId": bob_id})
        friends = client.get("/api/users/friends", headers=_auth(token)).json()["data"]["friends"]

        assert added.status_code == 201
        assert duplicate.status_code == 409
        assert friends == [{"id": bob_id, "username": "bob", "avatar": None, "online": True}]

    def test_list_users(self, client, token):
        _register(client, username="bob", email="bob@example.com")

        users = client.get("/api/users/", headers=_auth(token)).json()["data"]

        assert [u["username"] for u in users] == ["alice", "bob"]
        assert set(users[0]) == {"id", "username", "avatar"}


def _google_transport():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "oauth2.googleapis.com":
            return httpx.Response(200, json={"access_token": "google-access"})
        return httpx.Response(
            200, json={"id": "11223344556677", "email": "jane@gmail.com", "verified_email": True}
        )

    return httpx.MockTransport(handler)


class TestGoogleRedirects:
    def test_login_redirects_to_consent_page(self, client):
        response = client.get("/api/users/google/login", follow_redirects=False)

        assert response.status_code == 307
        assert response.headers["location"].startswith("https://accounts.google.com/")

    def test_callback_success_hands_token_to_frontend(self, client):
        runtime = get_runtime()
        runtime.accounts.oauth = GoogleOAuthClient(
            "client-id", "client-secret", "http://localhost/cb", transport=_google_transport()
        )
        login = client.get("/api/users/google/login", follow_redirects=False)
        state = parse_qs(urlparse(login.headers["location"]).query)["state"][0]

        response = client.get(
            "/api/users/google/callback",
            params={"code": "auth-code", "state": state},
            follow_redirects=False,
        )

        location = urlparse(response.headers["location"])
        assert location.path == "/user/oauth-callback-google"
        issued = parse_qs(location.query)["token"][0]
        me = client.get("/api/users/me", headers=_auth(issued)).json()["data"]
        assert me["username"] == "G_11223344"
        assert me["googleOauthId"] == "11223344556677"

    @pytest.mark.parametrize("params", [{}, {"code": "c", "state": "forged"}])
    def test_callback_failure_redirects_with_error(self, client, params):
        response = client.get("/api/users/google/callback", params=params, follow_redirects=False)

        query = parse_qs(urlparse(response.headers["location"]).query)
        assert query == {"error": ["Failed to handle Google OAuth callback."]}


class TestCrossCutting:
    def test_ping(self, client):
        response = client.get("/api/ping")

        assert response.status_code == 200
        assert response.json()["data"] == {"message": "pong"}

    def test_rate_limit(self, client):
        get_runtime().rate_limiter = RateLimiter(
            limit=2, window_seconds=60, cleanup_interval_seconds=300
        )

        origin = {"Origin": "http://localhost:5173"}
        assert client.get("/api/ping", headers=origin).status_code == 200
        assert client.get("/api/ping", headers=origin).status_code == 200
        limited = client.get("/api/ping", headers=origin)
        assert limited.status_code == 429
        assert limited.json()["error"]["code"] == "rate_limited"
        # Browsers can only read the 429 when it carries CORS headers
        assert limited.headers["access-control-allow-origin"] == "http://localhost:5173"

        preflight = client.options(
            "/api/ping",
            headers={"Origin": "http://localhost:5173", "Access-Control-Request-Method": "GET"},
        )
        assert preflight.status_code == 200

    def test_correlation_id_echoed(self, client):
        response = client.get("/api/ping", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"

    def test_unhandled_error_is_opaque(self, monkeypatch, token):
        client = TestClient(app_module.app, raise_server_exceptions=False)

        def explode():
            raise RuntimeError("connection reset by peer")

        monkeypatch.setattr(get_runtime().accounts, "list_users", explode)
        response = client.get("/api/users/", headers=_auth(token))

        assert response.status_code == 500
        assert response.json()["error"] == {
            "code": "server_error",
            "message": "internal server error",
            "details": None,
        }

    def test_unknown_route_uses_error_envelope(self, client):
        response = client.get("/api/nothing-here")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"
