"""Integration tests for multi-device sessions, role gates and OAuth sign-in."""

import asyncio
from urllib.parse import parse_qs, urlparse

import pytest

from parcelhub.service.cookies import CookieKind
from parcelhub.service.runtime import get_runtime, reset_runtime_for_tests

from conftest import FIREFOX_LINUX, make_client, signin

ACCESS = "xa91fe7"


def _session_hash(client):
    runtime = get_runtime()
    return runtime.crypto.hmac(runtime.cookies.read(CookieKind.ACCESS, client.cookies))


class TestSessionManagement:
    """Session history and revocation across devices."""

    def test_history_lists_every_device(self, make_user):
        make_user()
        laptop, phone = make_client(), make_client(FIREFOX_LINUX)
        signin(laptop)
        signin(phone)
        response = laptop.get("/v1/sessions")
        assert response.status_code == 200
        sessions = response.json()["data"]["sessions"]
        assert len(sessions) == 2
        assert {s["device_info"]["browser"] for s in sessions} == {"Chrome", "Firefox"}
        assert {s["token"] for s in sessions} == {_session_hash(laptop), _session_hash(phone)}

    def test_revoke_other_device(self, make_user):
        user = make_user()
        laptop, phone = make_client(), make_client(FIREFOX_LINUX)
        signin(laptop)
        signin(phone)
        target = _session_hash(phone)

        response = laptop.post(f"/v1/sessions/{target}/revoke")
        assert response.status_code == 200
        assert phone.get("/v1/me").status_code == 401
        assert laptop.get("/v1/me").status_code == 200
        assert ACCESS in laptop.cookies

        history = {s.token: s for s in get_runtime().store.list_sessions(user.id)}
        assert history[target].status is False
        assert len(history) == 2

        again = laptop.post(f"/v1/sessions/{target}/revoke")
        assert again.status_code == 404
        assert again.json()["error"]["code"] == "not_found"

    def test_revoking_own_session_clears_cookies(self, client, make_user):
        make_user()
        signin(client)
        response = client.post(f"/v1/sessions/{_session_hash(client)}/revoke")
        assert response.status_code == 200
        assert ACCESS not in client.cookies

    def test_revoke_all_others(self, make_user):
        user = make_user()
        clients = [make_client(), make_client(FIREFOX_LINUX), make_client()]
        for c in clients:
            signin(c)
        keeper, *others = clients

        response = keeper.post("/v1/sessions/revoke-all")
        assert response.status_code == 200
        assert keeper.get("/v1/me").status_code == 200
        for other in others:
            assert other.get("/v1/me").status_code == 401

        sessions = get_runtime().store.list_sessions(user.id)
        assert [s.token for s in sessions] == [_session_hash(keeper)]

    def test_users_cannot_revoke_each_other(self, make_user):
        make_user(email="ada@example.com")
        make_user(email="bola@example.com", family_name="Adeyemi")
        ada, bola = make_client(), make_client()
        signin(ada, email="ada@example.com")
        signin(bola, email="bola@example.com")

        response = ada.post(f"/v1/sessions/{_session_hash(bola)}/revoke")
        assert response.status_code == 404
        assert bola.get("/v1/me").status_code == 200

    def test_sessions_require_auth(self, client):
        assert client.get("/v1/sessions").status_code == 401
        assert client.post("/v1/sessions/revoke-all").status_code == 401


class TestProfile:
    """Profile projection for the signed-in user."""

    def test_me_fields_projection(self, client, make_user):
        make_user()
        signin(client)
        response = client.get("/v1/me/fields", params={"fields": "given_name,email,role"})
        assert response.status_code == 200
        assert response.json()["data"]["user"] == {"given_name": "Ada", "role": "customer"}

    def test_me_fields_default_hides_email(self, client, make_user):
        make_user()
        signin(client)
        user = client.get("/v1/me/fields").json()["data"]["user"]
        assert "email" not in user
        assert "normalized_email" not in user
        assert user["family_name"] == "Okafor"


class TestRoleGate:
    """Role restriction on staff-only routes."""

    def test_customer_is_forbidden(self, client, make_user):
        make_user()
        signin(client)
        response = client.get("/v1/admin/ping")
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_admin_is_allowed(self, client, make_user):
        make_user(role="admin")
        signin(client)
        response = client.get("/v1/admin/ping")
        assert response.status_code == 200
        assert response.json()["message"] == "pong"

    def test_anonymous_is_unauthorized(self, client):
        assert client.get("/v1/admin/ping").status_code == 401

    def test_role_comes_from_cached_snapshot(self, client, make_user):
        user = make_user()
        signin(client)
        runtime = get_runtime()
        runtime.store.set_role(user.id, "admin")
        assert client.get("/v1/admin/ping").status_code == 403
        asyncio.run(runtime.sessions.refresh_snapshot(runtime.store.get_user(user.id)))
        assert client.get("/v1/admin/ping").status_code == 200


@pytest.fixture
def google(monkeypatch):
    monkeypatch.setenv("OAUTH_GOOGLE_CLIENT_ID", "google-client")
    monkeypatch.setenv("OAUTH_GOOGLE_CLIENT_SECRET", "google-secret")
    return reset_runtime_for_tests()


def _start(client, provider="google"):
    response = client.get(f"/v1/oauth/{provider}", follow_redirects=False)
    assert response.status_code == 302
    location = response.headers["location"]
    return location, parse_qs(urlparse(location).query)["state"][0]


def _google_userinfo(email="ada.okafor@gmail.com"):
    return {
        "sub": "10987",
        "email": email,
        "email_verified": True,
        "family_name": "Okafor",
        "given_name": "Ada",
        "picture": "https://img.example/ada.png",
        "locale": "en",
    }


class TestOAuthFlow:
    """OAuth sign-in through the registered code exchange."""

    def test_new_user_signs_in(self, client, google):
        location, state = _start(client)
        assert location.startswith("https://accounts.google.com/")
        google.oauth.register_code("google", "code-1", _google_userinfo())

        response = client.get(
            "/v1/oauth/google/callback",
            params={"code": "code-1", "state": state},
            follow_redirects=False,
        )
        assert response.status_code == 302
        assert response.headers["location"] == "https://hub.example.test/sign-in?role=customer"
        assert ACCESS in client.cookies
        assert client.get("/v1/me").status_code == 200

        user = google.store.find_by_email("ada.okafor@gmail.com")
        assert user.verified
        assert user.password_hash is None
        assert [entry.provider for entry in user.auth] == ["google"]
        # only the normalized identity tuple is stored
        assert set(user.auth[0].profile) == {
            "email",
            "verified",
            "family_name",
            "given_name",
            "avatar_url",
        }

    def test_existing_account_is_linked(self, client, google, make_user):
        existing = make_user(email="adaokafor@gmail.com")
        _, state = _start(client)
        google.oauth.register_code("google", "code-2", _google_userinfo("Ada.Okafor@gmail.com"))
        response = client.get(
            "/v1/oauth/google/callback",
            params={"code": "code-2", "state": state},
            follow_redirects=False,
        )
        assert response.status_code == 302
        user = google.store.get_user(existing.id)
        assert {entry.provider for entry in user.auth} == {"jwt", "google"}

    def test_state_is_single_use(self, client, google):
        _, state = _start(client)
        google.oauth.register_code("google", "code-3", _google_userinfo())
        client.get(
            "/v1/oauth/google/callback",
            params={"code": "code-3", "state": state},
            follow_redirects=False,
        )
        replay = make_client()
        google.oauth.register_code("google", "code-4", _google_userinfo())
        response = replay.get(
            "/v1/oauth/google/callback",
            params={"code": "code-4", "state": state},
            follow_redirects=False,
        )
        assert response.status_code == 302
        assert response.headers["location"] == "https://hub.example.test/sign-in"
        assert ACCESS not in replay.cookies

    def test_provider_error_redirects_to_sign_in(self, client, google):
        _, state = _start(client)
        response = client.get(
            "/v1/oauth/google/callback",
            params={"error": "access_denied", "state": state},
            follow_redirects=False,
        )
        assert response.status_code == 302
        assert response.headers["location"] == "https://hub.example.test/sign-in"

    def test_unconfigured_provider(self, client, google):
        response = client.get("/v1/oauth/github", follow_redirects=False)
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"
        assert client.get("/v1/oauth/myspace", follow_redirects=False).status_code == 404
