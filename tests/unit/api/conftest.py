"""Fixtures for HTTP route tests.

The app runs its real lifespan against the per-test SQLite file, with the
in-memory OAuth gateway and a mocked transport for the health poller.
Store calls made from a test go through ``client.portal`` so they run on
the app's event loop.
"""

import functools

import httpx
import pytest
from fastapi.testclient import TestClient

from noknok.api.http import create_http_app
from noknok.infra.session import COOKIE_NAME


def _health_transport(request: httpx.Request) -> httpx.Response:
    if request.url.host.startswith("down."):
        raise httpx.ConnectError("connection refused", request=request)
    return httpx.Response(200)


@pytest.fixture
def app(settings, fake_oauth):
    return create_http_app(
        settings,
        oauth=fake_oauth,
        health_http_client=httpx.AsyncClient(transport=httpx.MockTransport(_health_transport)),
        start_scheduler=False,
    )


@pytest.fixture
def client(app, settings):
    with TestClient(app, base_url=settings.public_url, follow_redirects=False) as client:
        yield client


@pytest.fixture
def run(client):
    """Run a coroutine function on the app's event loop."""

    def _run(func, *args, **kwargs):
        return client.portal.call(functools.partial(func, *args, **kwargs))

    return _run


@pytest.fixture
def store(client):
    return client.app.state.store


@pytest.fixture
def sign_in(client, fake_oauth):
    """Complete an OAuth callback as ``did``; the cookie lands in the client's jar."""

    def _sign_in(did: str, handle: str) -> httpx.Response:
        fake_oauth.callback_result = (did, handle)
        return client.get("/oauth/callback", params={"code": "c", "state": "s"})

    return _sign_in


@pytest.fixture
def session_cookie(client):
    def _value() -> str | None:
        return client.cookies.get(COOKIE_NAME)

    return _value
