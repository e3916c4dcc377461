"""Request-scoped accessors for the components wired in the app lifespan."""

from fastapi import Request

from noknok.config import Settings
from noknok.domain.exceptions import AuthenticationError, PermissionDeniedError
from noknok.domain.models import SessionRecord, User, is_admin_role
from noknok.domain.services import (
    CatalogService,
    ForwardAuthService,
    GrantService,
    HealthPoller,
    UserService,
)
from noknok.infra.db.store import Store
from noknok.infra.session import COOKIE_NAME, SessionManager, SessionNotFoundError
from noknok.security.oauth import OAuthGateway


def get_settings_dep(request: Request) -> Settings:
    return request.app.state.settings


def get_store(request: Request) -> Store:
    return request.app.state.store


def get_sessions(request: Request) -> SessionManager:
    return request.app.state.sessions


def get_oauth(request: Request) -> OAuthGateway:
    return request.app.state.oauth


def get_forward_auth(request: Request) -> ForwardAuthService:
    return request.app.state.forward_auth


def get_user_service(request: Request) -> UserService:
    return request.app.state.users


def get_catalog_service(request: Request) -> CatalogService:
    return request.app.state.catalog


def get_grant_service(request: Request) -> GrantService:
    return request.app.state.grants


def get_health_poller(request: Request) -> HealthPoller:
    return request.app.state.health


def session_token(request: Request) -> str:
    """Value of the session cookie, or ""."""
    return request.cookies.get(COOKIE_NAME, "")


async def current_session(request: Request) -> SessionRecord | None:
    """Validate the browser's session cookie.

    Returns:
        The live session, or None when there is no cookie or it is invalid
    """
    token = session_token(request)
    if not token:
        return None
    try:
        return await get_sessions(request).validate(token)
    except SessionNotFoundError:
        return None


async def require_admin(request: Request) -> User:
    """Dependency guarding the admin API.

    Stores the caller on ``request.state.caller``.

    Raises:
        AuthenticationError: Missing cookie, invalid session or unknown user
        PermissionDeniedError: Caller is not an owner or admin
    """
    token = session_token(request)
    if not token:
        raise AuthenticationError("not authenticated")
    try:
        record = await get_sessions(request).validate(token)
    except SessionNotFoundError as e:
        raise AuthenticationError("invalid session") from e

    user = await get_store(request).find_user_by_did(record.did)
    if user is None:
        raise AuthenticationError("user not found")
    if not is_admin_role(user.role):
        raise PermissionDeniedError("admin access required", context={"did": user.did})

    request.state.caller = user
    return user
