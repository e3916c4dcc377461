"""Tests for forward-auth and browser session routes."""

import pytest

from noknok.infra.session import COOKIE_NAME

HTML = "text/html,application/xhtml+xml"


@pytest.fixture
def wiki(run, store):
    return run(store.create_service, "wiki", "My Wiki", "https://wiki.example.test")


@pytest.fixture
def bob(run, store):
    return run(store.create_user, "did:plc:bob", "bob.test", "user")


def _forward(client, host="wiki.example.test", uri="/", accept="application/json", **headers):
    return client.get(
        "/auth",
        headers={
            "X-Forwarded-Host": host,
            "X-Forwarded-Uri": uri,
            "X-Forwarded-Proto": "https",
            "Accept": accept,
            **headers,
        },
    )


class TestForwardAuth:
    """Tests for GET /auth."""

    def test_browser_redirected_to_login(self, client, wiki) -> None:
        response = _forward(client, uri="/page", accept=HTML)
        assert response.status_code == 302
        assert response.headers["location"] == (
            "https://auth.example.test/login?redirect=https%3A%2F%2Fwiki.example.test%2Fpage"
        )
        assert response.content == b""

    def test_api_client_unauthorized(self, client, wiki) -> None:
        response = _forward(client)
        assert response.status_code == 401
        assert response.content == b""

    def test_forwarded_accept_preferred(self, client, wiki) -> None:
        response = _forward(client, **{"X-Forwarded-Accept": HTML})
        assert response.status_code == 302

    def test_authorization_passthrough(self, client, wiki) -> None:
        response = _forward(client, **{"X-Forwarded-Authorization": "Bearer abc"})
        assert response.status_code == 200
        assert "X-User-DID" not in response.headers

    def test_session_allows_with_identity_headers(self, client, sign_in, settings, wiki) -> None:
        sign_in(settings.owner_did, "owner.test")

        response = _forward(client)
        assert response.status_code == 200
        assert response.headers["X-User-DID"] == settings.owner_did
        assert response.headers["X-User-Handle"] == "owner.test"
        assert response.headers["X-User-Role"] == "admin"

    def test_head_supported(self, client, sign_in, settings, wiki) -> None:
        sign_in(settings.owner_did, "owner.test")
        response = client.head(
            "/auth", headers={"X-Forwarded-Host": "wiki.example.test", "Accept": "*/*"}
        )
        assert response.status_code == 200

    def test_policy_denied(self, client, sign_in, bob, wiki) -> None:
        sign_in(bob.did, "bob.test")
        assert _forward(client).status_code == 403
        response = _forward(client, accept=HTML)
        assert response.status_code == 302
        assert response.headers["location"] == "https://auth.example.test/"

    def test_disabled_service(self, client, run, store, sign_in, settings, wiki) -> None:
        sign_in(settings.owner_did, "owner.test")
        run(store.toggle_service_enabled, wiki.id)

        assert _forward(client).status_code == 503
        response = _forward(client, accept=HTML)
        assert response.headers["location"] == (
            "https://auth.example.test/disabled?service=My%20Wiki"
        )


class TestLogout:
    """Tests for the identity menu routes."""

    def test_logout_clears_everything(self, client, sign_in, settings, bob, wiki) -> None:
        sign_in(settings.owner_did, "owner.test")
        sign_in(bob.did, "bob.test")

        response = client.post("/logout")
        assert response.status_code == 302
        assert response.headers["location"] == "https://auth.example.test/login"
        assert client.cookies.get(COOKIE_NAME) is None
        assert client.get("/api/identities").status_code == 401

    def test_logout_without_session(self, client) -> None:
        response = client.post("/logout")
        assert response.status_code == 302

    def test_logout_inactive_identity(self, client, sign_in, settings, bob, session_cookie) -> None:
        sign_in(settings.owner_did, "owner.test")
        sign_in(bob.did, "bob.test")
        active = session_cookie()
        owner_id = next(i["id"] for i in client.get("/api/identities").json() if not i["active"])

        response = client.post("/logout/one", data={"id": owner_id})
        assert response.status_code == 302
        assert response.headers["location"] == "https://auth.example.test/"
        assert session_cookie() == active
        assert [i["did"] for i in client.get("/api/identities").json()] == [bob.did]

    def test_logout_active_identity_moves_cookie(
        self, client, sign_in, settings, bob, session_cookie
    ) -> None:
        sign_in(settings.owner_did, "owner.test")
        first = session_cookie()
        sign_in(bob.did, "bob.test")
        bob_id = next(i["id"] for i in client.get("/api/identities").json() if i["active"])

        response = client.post("/logout/one", data={"id": bob_id})
        assert response.headers["location"] == "https://auth.example.test/"
        assert session_cookie() == first

    def test_logout_last_identity(self, client, sign_in, settings) -> None:
        sign_in(settings.owner_did, "owner.test")
        [me] = client.get("/api/identities").json()

        response = client.post("/logout/one", data={"id": me["id"]})
        assert response.headers["location"] == "https://auth.example.test/login"
        assert client.cookies.get(COOKIE_NAME) is None

    def test_logout_one_without_session(self, client) -> None:
        response = client.post("/logout/one", data={"id": 1})
        assert response.headers["location"] == "https://auth.example.test/login"


class TestSwitch:
    """Tests for POST /switch."""

    def test_switch_identity(self, client, sign_in, settings, bob, session_cookie) -> None:
        sign_in(settings.owner_did, "owner.test")
        first = session_cookie()
        sign_in(bob.did, "bob.test")
        owner_id = next(i["id"] for i in client.get("/api/identities").json() if not i["active"])

        response = client.post("/switch", data={"id": owner_id})
        assert response.status_code == 302
        assert response.headers["location"] == "https://auth.example.test/"
        assert session_cookie() == first

    def test_switch_unknown_id_ignored(self, client, sign_in, settings, session_cookie) -> None:
        sign_in(settings.owner_did, "owner.test")
        before = session_cookie()

        response = client.post("/switch", data={"id": 99999})
        assert response.status_code == 302
        assert "set-cookie" not in response.headers
        assert session_cookie() == before

    def test_switch_without_session(self, client) -> None:
        response = client.post("/switch", data={"id": 1})
        assert response.headers["location"] == "https://auth.example.test/login"

    def test_switch_requires_id(self, client, sign_in, settings) -> None:
        sign_in(settings.owner_did, "owner.test")
        assert client.post("/switch", data={}).status_code == 400


class TestIdentities:
    """Tests for GET /api/identities."""

    def test_requires_session(self, client) -> None:
        response = client.get("/api/identities")
        assert response.status_code == 401
        assert response.json() == {"error": "not authenticated"}

    def test_lists_group(self, client, sign_in, settings, bob) -> None:
        sign_in(settings.owner_did, "owner.test")
        sign_in(bob.did, "bob.test")

        identities = client.get("/api/identities").json()
        assert [(i["did"], i["active"]) for i in identities] == [
            (settings.owner_did, False),
            (bob.did, True),
        ]
        assert all("token" not in i for i in identities)


class TestRelay:
    """Tests for GET /__relay."""

    def test_missing_token(self, client) -> None:
        response = client.get("https://app.other.test/__relay")
        assert response.status_code == 400
        assert response.content == b""

    def test_invalid_token(self, client) -> None:
        response = client.get("https://app.other.test/__relay", params={"t": "0" * 64})
        assert response.status_code == 302
        assert response.headers["location"] == "https://auth.example.test/login"

    def test_installs_cookie_for_domain(self, client, sign_in, settings, session_cookie) -> None:
        sign_in(settings.owner_did, "owner.test")
        token = session_cookie()

        response = client.get(
            "https://app.other.test/__relay", params={"t": token, "r": "/dash?x=1"}
        )
        assert response.status_code == 302
        assert response.headers["location"] == "/dash?x=1"
        assert response.headers["cache-control"] == "no-store"
        assert response.headers["referrer-policy"] == "no-referrer"
        cookie = response.headers["set-cookie"]
        assert cookie.startswith(f"{COOKIE_NAME}={token}")
        assert "Domain=.other.test" in cookie

    @pytest.mark.parametrize("target", ["https://evil.test/", "//evil.test", "/\\evil.test", ""])
    def test_non_relative_target_goes_home(
        self, client, sign_in, settings, session_cookie, target
    ) -> None:
        sign_in(settings.owner_did, "owner.test")
        response = client.get(
            "https://app.other.test/__relay", params={"t": session_cookie(), "r": target}
        )
        assert response.headers["location"] == "/"

    def test_unknown_domain_gets_host_only_cookie(
        self, client, sign_in, settings, session_cookie
    ) -> None:
        sign_in(settings.owner_did, "owner.test")
        response = client.get("https://stray.test/__relay", params={"t": session_cookie()})
        assert response.status_code == 302
        assert "Domain=" not in response.headers["set-cookie"]
