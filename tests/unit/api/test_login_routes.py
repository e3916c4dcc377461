"""Tests for the login page and the OAuth callback."""

from urllib.parse import quote

import pytest

from noknok.api.login import (
    MSG_ACCESS_DENIED,
    MSG_AUTH_FAILED,
    MSG_HANDLE_REQUIRED,
    MSG_START_FAILED,
    REDIRECT_COOKIE_NAME,
    is_allowed_redirect,
)
from noknok.infra.session import COOKIE_NAME


class TestIsAllowedRedirect:
    """Tests for post-login redirect validation."""

    @pytest.mark.parametrize(
        ("target", "allowed"),
        [
            ("https://wiki.example.test/page", True),
            ("http://example.test", True),
            ("https://app.other.test/", True),
            ("https://evil.test/", False),
            ("https://example.test.evil.test/", False),
            ("javascript:alert(1)", False),
            ("/relative", False),
            ("//wiki.example.test", False),
            ("https://WIKI.example.test:8443/x", True),
            ("https://wiki.example.test@evil.test/", False),
            ("https://user@wiki.example.test/", False),
            ("https://evil.test\\@wiki.example.test/", False),
        ],
    )
    def test_targets(self, settings, target, allowed) -> None:
        assert is_allowed_redirect(target, settings) is allowed


class TestLoginPage:
    """Tests for GET /login."""

    def test_renders_form(self, client) -> None:
        response = client.get("/login")
        assert response.status_code == 200
        assert "text/html" in response.headers["content-type"]
        assert 'class="close-btn"' not in response.text

    def test_error_and_redirect_escaped(self, client) -> None:
        response = client.get(
            "/login", params={"error": "<b>bad</b>", "redirect": 'https://x.test/"><script>'}
        )
        assert '<div class="error">&lt;b&gt;bad&lt;/b&gt;</div>' in response.text
        assert "<script>" not in response.text
        assert 'name="redirect"' in response.text

    def test_public_services_listed(self, client, run, store) -> None:
        wiki = run(
            store.create_service,
            "wiki",
            "Wiki",
            "https://wiki.example.test/",
            description="Team knowledge base and notes",
        )
        run(store.create_service, "git", "Private Git", "https://git.example.test")
        run(store.toggle_service_public, wiki.id)

        response = client.get("/login")
        assert "Wiki" in response.text
        assert "Team knowledge base ..." in response.text
        assert "https://wiki.example.test/favicon.ico" in response.text
        assert "Private Git" not in response.text

    def test_cancel_link_with_session(self, client, sign_in, settings) -> None:
        sign_in(settings.owner_did, "owner.test")
        response = client.get("/login")
        assert '<a href="/" class="close-btn" title="Cancel">&times;</a>' in response.text


class TestLoginSubmit:
    """Tests for POST /login."""

    def test_empty_handle(self, client, fake_oauth) -> None:
        response = client.post("/login", data={"handle": "   "})
        assert response.status_code == 200
        assert MSG_HANDLE_REQUIRED in response.text
        assert fake_oauth.started == []

    def test_bare_name_gets_default_suffix(self, client, fake_oauth) -> None:
        response = client.post("/login", data={"handle": "alice"})
        assert response.status_code == 302
        assert response.headers["location"] == fake_oauth.authorize_url
        assert fake_oauth.started == ["alice.bsky.social"]

    @pytest.mark.parametrize("handle", ["alice.example.test", "did:plc:alice"])
    def test_full_handle_or_did_kept(self, client, fake_oauth, handle) -> None:
        client.post("/login", data={"handle": f" {handle} "})
        assert fake_oauth.started == [handle]

    def test_start_failure(self, client, fake_oauth) -> None:
        fake_oauth.start_error = True
        response = client.post("/login", data={"handle": "alice.example.test"})
        assert response.status_code == 200
        assert MSG_START_FAILED in response.text

    def test_allowed_redirect_parked(self, client) -> None:
        response = client.post(
            "/login",
            data={"handle": "alice.example.test", "redirect": "https://wiki.example.test/x"},
        )
        cookie = response.headers["set-cookie"]
        assert cookie.startswith(f"{REDIRECT_COOKIE_NAME}=")
        assert "Max-Age=600" in cookie
        assert "HttpOnly" in cookie

    def test_foreign_redirect_dropped(self, client) -> None:
        response = client.post(
            "/login", data={"handle": "alice.example.test", "redirect": "https://evil.test/"}
        )
        assert "set-cookie" not in response.headers


class TestCallback:
    """Tests for GET /oauth/callback."""

    def test_rejected_callback(self, client, fake_oauth) -> None:
        fake_oauth.callback_error = True
        response = client.get("/oauth/callback", params={"state": "s", "code": "c"})
        assert response.status_code == 302
        assert response.headers["location"] == (
            f"https://auth.example.test/login?error={quote(MSG_AUTH_FAILED)}"
        )

    def test_unknown_did_denied(self, client, sign_in) -> None:
        response = sign_in("did:plc:stranger", "stranger.test")
        assert response.headers["location"] == (
            f"https://auth.example.test/login?error={quote(MSG_ACCESS_DENIED)}"
        )
        assert client.cookies.get(COOKIE_NAME) is None

    def test_success_sets_cookie(self, client, sign_in, settings, fake_oauth) -> None:
        response = sign_in(settings.owner_did, "owner.test")
        assert response.status_code == 302
        assert response.headers["location"] == "https://auth.example.test/"

        cookie = response.headers["set-cookie"]
        assert cookie.startswith(f"{COOKIE_NAME}=")
        assert "Domain=.example.test" in cookie
        assert "Secure" in cookie
        assert fake_oauth.callback_params[-1] == {"code": "c", "state": "s"}

    def test_parked_redirect_followed(self, client, sign_in, settings) -> None:
        client.post(
            "/login",
            data={"handle": "owner.test", "redirect": "https://wiki.example.test/x?y=1"},
        )
        response = sign_in(settings.owner_did, "owner.test")

        assert response.headers["location"] == "https://wiki.example.test/x?y=1"
        assert client.cookies.get(REDIRECT_COOKIE_NAME) is None

    def test_repeat_login_switches_instead_of_duplicating(
        self, client, sign_in, settings, run, store
    ) -> None:
        bob = run(store.create_user, "did:plc:bob", "bob.test", "user")
        sign_in(settings.owner_did, "owner.test")
        owner_cookie = client.cookies.get(COOKIE_NAME)
        sign_in(bob.did, "bob.test")

        response = sign_in(settings.owner_did, "owner.test")
        assert response.status_code == 302
        assert client.cookies.get(COOKIE_NAME) == owner_cookie
        assert len(client.get("/api/identities").json()) == 2

    def test_handle_refreshed_on_login(self, client, sign_in, settings, run, store) -> None:
        sign_in(settings.owner_did, "boss.example.test")
        owner = run(store.find_user_by_did, settings.owner_did)
        assert owner.handle == "boss.example.test"


class TestClientDocuments:
    """Tests for the public OAuth documents."""

    def test_client_metadata(self, client) -> None:
        response = client.get("/.well-known/oauth-client-metadata")
        assert response.status_code == 200
        assert response.json()["client_id"].endswith("/.well-known/oauth-client-metadata")

    def test_jwks(self, client) -> None:
        response = client.get("/oauth/jwks.json")
        assert response.json()["keys"][0]["kid"] == "noknok-1"
