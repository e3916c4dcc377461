"""Shared pytest fixtures.

Key goals:
- Prevent global singletons (settings, DB session manager) from leaking
  state across tests.
- Provide a file-backed SQLite store with the schema bootstrapped, so
  tests exercise the same SQL the gateway runs.
- Provide an in-memory OAuth gateway for tests that drive the login flow
  without network access.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import pytest

from noknok.config import Settings, reset_settings
from noknok.infra.db.session import (
    DatabaseSessionManager,
    bootstrap_schema,
    reset_session_manager,
)
from noknok.infra.db.store import Store
from noknok.infra.session import SessionManager
from noknok.security.crypto import generate_private_key_multibase
from noknok.security.oauth import CallbackRejectedError, InvalidHandleError, ProviderError

OWNER_DID = "did:plc:owner0000000000000000000"
PUBLIC_URL = "https://auth.example.test"


@pytest.fixture(autouse=True)
def _reset_global_singletons() -> None:
    """Ensure global singletons do not leak between tests."""
    reset_settings()
    reset_session_manager()
    yield
    reset_settings()
    reset_session_manager()


@pytest.fixture(scope="session")
def oauth_key() -> str:
    return generate_private_key_multibase()


@pytest.fixture
def settings(tmp_path, oauth_key) -> Settings:
    """Settings pointing at a temporary SQLite file."""
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'noknok.db'}",
        owner_did=OWNER_DID,
        oauth_key=oauth_key,
        public_url=PUBLIC_URL,
        cookie_domain=".example.test",
        cookie_domains=".other.test",
        services_file=str(tmp_path / "services.json"),
        metrics_enabled=True,
    )


@pytest.fixture
async def db(settings: Settings) -> DatabaseSessionManager:
    """Initialized session manager with all tables created."""
    manager = DatabaseSessionManager(settings)
    await manager.init()
    await bootstrap_schema(manager)

    yield manager

    await manager.close()


@pytest.fixture
async def store(db: DatabaseSessionManager) -> Store:
    return Store(db)


@pytest.fixture
async def sessions(db: DatabaseSessionManager, settings: Settings) -> SessionManager:
    manager = SessionManager(db, settings)

    yield manager

    # Let detached last_seen writes finish before the engine is disposed
    await manager.drain()


class FakeOAuthGateway:
    """In-memory stand-in for the ATProto OAuth client.

    Attributes:
        identities: handle -> (did, canonical handle) for resolve_handle
        callback_result: (did, handle) returned by handle_callback
        start_error / callback_error: set to make the respective step fail
        started: handles passed to start_login
    """

    authorize_url = "https://pds.example.test/oauth/authorize?request_uri=urn%3Areq%3A1"

    def __init__(self) -> None:
        self.identities: dict[str, tuple[str, str]] = {}
        self.callback_result: tuple[str, str] | None = None
        self.start_error = False
        self.callback_error = False
        self.started: list[str] = []
        self.callback_params: list[dict[str, str]] = []

    async def resolve_handle(self, text: str) -> tuple[str, str]:
        try:
            return self.identities[text]
        except KeyError:
            raise InvalidHandleError(f"unknown handle {text}") from None

    async def start_login(self, text: str) -> str:
        self.started.append(text)
        if self.start_error:
            raise ProviderError("authorization server unreachable")
        return self.authorize_url

    async def handle_callback(self, params: Mapping[str, str]) -> tuple[str, str]:
        self.callback_params.append(dict(params))
        if self.callback_error or self.callback_result is None:
            raise CallbackRejectedError("unknown or already used state")
        return self.callback_result

    def client_metadata(self) -> dict[str, Any]:
        return {"client_id": f"{PUBLIC_URL}/.well-known/oauth-client-metadata"}

    def public_jwks(self) -> dict[str, Any]:
        return {"keys": [{"kty": "EC", "kid": "noknok-1"}]}


@pytest.fixture
def fake_oauth() -> FakeOAuthGateway:
    return FakeOAuthGateway()
