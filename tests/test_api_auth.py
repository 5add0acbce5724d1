"""
tests/test_api_auth.py -- Integration tests for /api/v1/auth/* endpoints.

Covers:
  - Scenario A: password-only login sets the cookie; /me reports the user
  - Scenario B: TOTP login returns a challenge (no cookie), then a session
  - Scenario C: three wrong codes lock the challenge, even for the right code
  - Wrong password and unknown user produce identical 401 bodies
  - Logout always clears the cookie: with, without, and despite any server-side failure
  - The cookie value carries no identity
  - Password change rotates the session; TOTP enroll / confirm / disable
  - Current-password guesses on /password and DELETE /totp hit 429
  - Over-long new passwords are a 422, never a 500
  - A store outage during login or session validation is 503, not 401
  - Error envelope and Cache-Control: no-store
  - OAuth providers list and callback (mocked registry)
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pyotp
from jose import jwt

from auth.errors import StoreUnavailable
from auth.models import Role
from tests.conftest import DEFAULT_PASSWORD, current_code, make_user, wrong_code

COOKIE = "shared-thread-session"
LOGIN = "/api/v1/auth/login"
TOTP = "/api/v1/auth/totp"


def _login(client, identifier, password=DEFAULT_PASSWORD):
    return client.post(LOGIN, json={"identifier": identifier, "password": password})


class TestPasswordLogin:
    def test_scenario_a_login_then_me(self, client, auth):
        """Correct credentials without 2FA yield a session; /me returns that user."""
        user = make_user(auth, role=Role.ADMIN)
        resp = _login(client, user.username)
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "authenticated"
        assert body["user"]["username"] == user.username
        assert "challenge_id" not in body
        assert COOKIE in resp.cookies
        assert resp.headers["cache-control"] == "no-store"

        me = client.get("/api/v1/auth/me")
        assert me.status_code == 200
        assert me.json() == {
            "id": user.id,
            "username": user.username,
            "display_name": user.username,
            "role": "admin",
        }

    def test_login_by_email(self, client, auth):
        user = make_user(auth)
        assert _login(client, user.email).json()["status"] == "authenticated"

    def test_wrong_password_and_unknown_user_identical(self, client, auth):
        user = make_user(auth)
        wrong = _login(client, user.username, "not the password")
        unknown = _login(client, "no_such_user_anywhere")
        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json() == unknown.json() == {
            "error": {"code": "invalid_credentials", "message": "Invalid username or password."}
        }
        assert COOKIE not in wrong.cookies

    def test_identifier_lockout(self, client, auth):
        user = make_user(auth)
        for _ in range(5):
            assert _login(client, user.username, "wrong").status_code == 401
        resp = _login(client, user.username)
        assert resp.status_code == 429
        assert resp.json()["error"]["code"] == "rate_limited"
        assert int(resp.headers["retry-after"]) > 0

    def test_cookie_carries_no_identity(self, client, auth):
        user = make_user(auth, role=Role.ADMIN)
        resp = _login(client, user.username)
        claims = jwt.get_unverified_claims(resp.cookies[COOKIE])
        assert set(claims) == {"sid", "typ", "exp"}
        assert user.username not in str(claims)

    def test_validation_error_does_not_echo_password(self, client):
        resp = client.post(LOGIN, json={"identifier": "someone", "password": ""})
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"
        assert "password" in resp.json()["error"]["detail"]


class TestSecondFactor:
    def test_scenario_b_challenge_then_session(self, client, auth):
        user = make_user(auth, totp=True)
        resp = _login(client, user.username)
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "second_factor_required"
        assert body["challenge_id"]
        assert body["expires_at"]
        assert COOKIE not in resp.cookies
        assert client.get("/api/v1/auth/me").status_code == 401

        resp = client.post(TOTP, json={"challenge_id": body["challenge_id"], "code": current_code(user)})
        assert resp.status_code == 200
        assert resp.json()["status"] == "authenticated"
        assert COOKIE in resp.cookies
        assert client.get("/api/v1/auth/me").json()["id"] == user.id

    def test_scenario_c_three_wrong_codes_then_locked(self, client, auth):
        user = make_user(auth, totp=True)
        challenge = _login(client, user.username).json()["challenge_id"]
        bad = wrong_code(user.totp_secret)
        for _ in range(3):
            resp = client.post(TOTP, json={"challenge_id": challenge, "code": bad})
            assert resp.status_code == 401
            assert resp.json()["error"]["code"] == "challenge_code_invalid"
        resp = client.post(TOTP, json={"challenge_id": challenge, "code": current_code(user)})
        assert resp.status_code == 429
        assert resp.json()["error"]["code"] == "rate_limited"
        assert "retry-after" in resp.headers
        assert COOKIE not in resp.cookies

    def test_unknown_challenge(self, client):
        resp = client.post(TOTP, json={"challenge_id": "made-up", "code": "123456"})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "challenge_expired"

    def test_code_replay_rejected(self, client, auth):
        user = make_user(auth, totp=True)
        code = current_code(user)
        first = _login(client, user.username).json()["challenge_id"]
        assert client.post(TOTP, json={"challenge_id": first, "code": code}).status_code == 200
        client.cookies.clear()
        second = _login(client, user.username).json()["challenge_id"]
        resp = client.post(TOTP, json={"challenge_id": second, "code": code})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "challenge_code_invalid"


class TestLogout:
    def test_logout_revokes_and_clears(self, client, auth):
        user = make_user(auth)
        cookie_value = _login(client, user.username).cookies[COOKIE]
        resp = client.post("/api/v1/auth/logout")
        assert resp.status_code == 200
        set_cookie = resp.headers["set-cookie"].lower()
        assert set_cookie.startswith(f"{COOKIE}=")
        assert "max-age=0" in set_cookie
        assert "path=/" in set_cookie
        assert COOKIE not in client.cookies

        # The old value is dead server-side, not merely forgotten by the browser.
        client.cookies.set(COOKIE, cookie_value)
        assert client.get("/api/v1/auth/me").status_code == 401

    def test_logout_without_session_still_clears(self, client):
        resp = client.post("/api/v1/auth/logout")
        assert resp.status_code == 200
        assert "max-age=0" in resp.headers["set-cookie"].lower()

    def test_logout_with_garbage_cookie(self, client):
        client.cookies.set(COOKIE, "garbage")
        resp = client.post("/api/v1/auth/logout")
        assert resp.status_code == 200
        assert "max-age=0" in resp.headers["set-cookie"].lower()

    def test_logout_clears_cookie_when_store_down(self, client, auth, monkeypatch):
        user = make_user(auth)
        _login(client, user.username)

        def boom(session_id):
            raise StoreUnavailable("simulated outage")

        monkeypatch.setattr(auth, "logout", boom)
        resp = client.post("/api/v1/auth/logout")
        assert resp.status_code == 200
        assert "max-age=0" in resp.headers["set-cookie"].lower()

    def test_logout_clears_cookie_on_unexpected_error(self, client, auth, monkeypatch):
        user = make_user(auth)
        _login(client, user.username)

        def boom(session_id):
            raise RuntimeError("unexpected failure")

        monkeypatch.setattr(auth, "logout", boom)
        resp = client.post("/api/v1/auth/logout")
        assert resp.status_code == 200
        assert "max-age=0" in resp.headers["set-cookie"].lower()
        assert COOKIE not in client.cookies


class TestMe:
    def test_me_requires_session(self, client):
        resp = client.get("/api/v1/auth/me")
        assert resp.status_code == 401
        assert resp.json() == {"error": {"code": "unauthenticated", "message": "Authentication required."}}

    def test_tampered_cookie(self, client, auth):
        user = make_user(auth)
        value = _login(client, user.username).cookies[COOKIE]
        client.cookies.clear()
        client.cookies.set(COOKIE, value[:-3] + "abc")
        assert client.get("/api/v1/auth/me").status_code == 401

    def test_no_secret_material(self, client, auth):
        user = make_user(auth)
        _login(client, user.username)
        body = client.get("/api/v1/auth/me").json()
        assert set(body) == {"id", "username", "display_name", "role"}


class TestAccountManagement:
    def test_password_change_rotates_session(self, client, auth):
        user = make_user(auth)
        old = _login(client, user.username).cookies[COOKIE]
        resp = client.post(
            "/api/v1/auth/password",
            json={"current_password": DEFAULT_PASSWORD, "new_password": "an entirely new passphrase"},
        )
        assert resp.status_code == 200
        new = resp.cookies[COOKIE]
        assert new != old
        assert client.get("/api/v1/auth/me").status_code == 200

        client.cookies.clear()
        client.cookies.set(COOKIE, old)
        assert client.get("/api/v1/auth/me").status_code == 401

    def test_password_change_wrong_current(self, client, auth):
        user = make_user(auth)
        _login(client, user.username)
        resp = client.post(
            "/api/v1/auth/password",
            json={"current_password": "wrong", "new_password": "an entirely new passphrase"},
        )
        assert resp.status_code == 401
        assert resp.json()["error"]["message"] == "Current password is incorrect."

    def test_password_guesses_rate_limited(self, client, auth):
        user = make_user(auth)
        _login(client, user.username)
        for _ in range(5):
            resp = client.post(
                "/api/v1/auth/password",
                json={"current_password": "guess", "new_password": "an entirely new passphrase"},
            )
            assert resp.status_code == 401
        resp = client.post(
            "/api/v1/auth/password",
            json={"current_password": DEFAULT_PASSWORD, "new_password": "an entirely new passphrase"},
        )
        assert resp.status_code == 429
        assert resp.json()["error"]["code"] == "rate_limited"
        assert int(resp.headers["retry-after"]) > 0
        assert auth.login(user.username, DEFAULT_PASSWORD).authenticated

    def test_totp_removal_guesses_rate_limited(self, client, auth):
        user = make_user(auth)
        _login(client, user.username)
        auth.store.update_user(user.id, totp_secret=pyotp.random_base32(length=32))
        for _ in range(5):
            resp = client.request("DELETE", "/api/v1/auth/totp", json={"password": "guess"})
            assert resp.status_code == 401
        resp = client.request("DELETE", "/api/v1/auth/totp", json={"password": DEFAULT_PASSWORD})
        assert resp.status_code == 429
        assert auth.store.get_by_id(user.id).totp_secret is not None

    def test_overlong_new_password_is_validation_error(self, client, auth):
        user = make_user(auth)
        _login(client, user.username)
        resp = client.post(
            "/api/v1/auth/password",
            json={"current_password": DEFAULT_PASSWORD, "new_password": "x" * 100},
        )
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"
        assert "new_password" in resp.json()["error"]["detail"]

    def test_totp_enroll_confirm_disable(self, client, auth):
        user = make_user(auth)
        _login(client, user.username)

        enroll = client.post("/api/v1/auth/totp/enroll")
        assert enroll.status_code == 200
        secret = enroll.json()["secret"]
        assert enroll.json()["provisioning_uri"].startswith("otpauth://totp/")

        confirm = client.post("/api/v1/auth/totp/confirm", json={"secret": secret, "code": pyotp.TOTP(secret).now()})
        assert confirm.status_code == 200
        assert auth.store.get_by_id(user.id).totp_secret == secret

        # A challenge response sets no cookie, so the jar keeps the original session.
        assert _login(client, user.username).json()["status"] == "second_factor_required"

        resp = client.request("DELETE", "/api/v1/auth/totp", json={"password": DEFAULT_PASSWORD})
        assert resp.status_code == 200
        assert auth.store.get_by_id(user.id).totp_secret is None

    def test_enroll_requires_session(self, client):
        assert client.post("/api/v1/auth/totp/enroll").status_code == 401


class TestFederation:
    def test_no_providers_configured(self, client):
        assert client.get("/api/v1/auth/providers").json() == []

    def test_unknown_provider_redirects_to_login(self, client):
        resp = client.get("/api/v1/auth/oauth/myspace", follow_redirects=False)
        assert resp.status_code == 302
        assert resp.headers["location"] == "/login?error=oauth_failed"

    def test_oidc_callback_creates_session(self, client, auth, monkeypatch):
        monkeypatch.setattr(auth.settings, "google_client_id", "cid")
        monkeypatch.setattr(auth.settings, "google_client_secret", "csecret")
        provider = MagicMock()
        provider.authorize_access_token = AsyncMock(
            return_value={
                "userinfo": {"sub": "g-42", "email": "gina@example.org", "email_verified": True, "name": "Gina"}
            }
        )
        registry = client.app.state.oauth
        registry.create_client.return_value = provider

        assert {"name": "google", "label": "Google"} in client.get("/api/v1/auth/providers").json()

        resp = client.get("/api/v1/auth/oauth/google/callback?code=x&state=y", follow_redirects=False)
        assert resp.status_code == 302
        assert resp.headers["location"] == "/"
        assert COOKIE in resp.cookies
        assert client.get("/api/v1/auth/me").json()["display_name"] == "Gina"

    def test_unverified_email_rejected(self, client, auth, monkeypatch):
        monkeypatch.setattr(auth.settings, "google_client_id", "cid")
        monkeypatch.setattr(auth.settings, "google_client_secret", "csecret")
        provider = MagicMock()
        provider.authorize_access_token = AsyncMock(
            return_value={"userinfo": {"sub": "g-43", "email": "eve@example.org", "email_verified": False}}
        )
        client.app.state.oauth.create_client.return_value = provider

        resp = client.get("/api/v1/auth/oauth/google/callback?code=x&state=y", follow_redirects=False)
        assert resp.status_code == 302
        assert resp.headers["location"] == "/login?error=oauth_failed"
        assert auth.store.get_by_email("eve@example.org") is None


class TestStoreOutage:
    @staticmethod
    def _down(*args, **kwargs):
        raise StoreUnavailable("simulated outage")

    def test_login_returns_503(self, client, auth, monkeypatch):
        user = make_user(auth)
        monkeypatch.setattr(auth.store, "get_failures", self._down)
        resp = _login(client, user.username)
        assert resp.status_code == 503
        assert resp.json()["error"]["code"] == "temporarily_unavailable"
        assert COOKIE not in resp.cookies

    def test_me_returns_503(self, client, auth, monkeypatch):
        user = make_user(auth)
        _login(client, user.username)
        monkeypatch.setattr(auth.store, "get_session", self._down)
        resp = client.get("/api/v1/auth/me")
        assert resp.status_code == 503
        assert resp.json()["error"]["code"] == "temporarily_unavailable"
