"""Login page, OAuth callback and the public OAuth client documents."""

import logging
from urllib.parse import quote, urlsplit

from fastapi import APIRouter, Depends, Form, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse

from noknok.api.deps import (
    current_session,
    get_oauth,
    get_sessions,
    get_settings_dep,
    get_store,
)
from noknok.api.pages import render_login
from noknok.config import Settings
from noknok.domain.exceptions import StoreError
from noknok.infra.db.store import Store
from noknok.infra.observability import record_login, record_session_created
from noknok.infra.session import SessionCookie, SessionManager, SessionNotFoundError
from noknok.security.oauth import OAuthError, OAuthGateway

logger = logging.getLogger(__name__)

router = APIRouter(tags=["login"])

REDIRECT_COOKIE_NAME = "noknok_redirect"
REDIRECT_COOKIE_MAX_AGE = 600

MSG_HANDLE_REQUIRED = "Handle is required."
MSG_START_FAILED = "Could not start login. Check your handle and try again."
MSG_AUTH_FAILED = "Authentication failed. Please try again."
MSG_ACCESS_DENIED = "Access denied. You are not authorized."
MSG_INTERNAL = "Internal error. Please try again."


def is_allowed_redirect(target: str, settings: Settings) -> bool:
    """Post-login destinations must be http(s) URLs under a cookie domain.

    Targets carrying userinfo or a backslash are refused.
    """
    if "\\" in target:
        return False
    try:
        parts = urlsplit(target)
    except ValueError:
        return False
    if parts.scheme not in ("http", "https") or not parts.hostname or "@" in parts.netloc:
        return False
    return settings.domain_for_host(parts.hostname) is not None


def _login_error(settings: Settings, message: str) -> RedirectResponse:
    return RedirectResponse(
        f"{settings.public_url}/login?error={quote(message)}", status_code=302
    )


async def _public_services(store: Store) -> list:
    try:
        return await store.list_public_services()
    except StoreError:
        logger.warning("Could not load public services for login page")
        return []


@router.get("/login", response_class=HTMLResponse)
async def login_page(
    request: Request,
    redirect: str = "",
    error: str = "",
    store: Store = Depends(get_store),
) -> HTMLResponse:
    has_session = await current_session(request) is not None
    services = await _public_services(store)
    return HTMLResponse(render_login(redirect, error, has_session, services))


@router.post("/login", response_model=None)
async def login_submit(
    request: Request,
    handle: str = Form(""),
    redirect: str = Form(""),
    settings: Settings = Depends(get_settings_dep),
    oauth: OAuthGateway = Depends(get_oauth),
) -> HTMLResponse | RedirectResponse:
    """Start the OAuth flow for the submitted handle.

    Bare names without a dot are taken as ``<name>.bsky.social``. An allowed
    ``redirect`` is parked in a short-lived cookie until the callback.
    """
    handle = handle.strip()
    if not handle:
        has_session = await current_session(request) is not None
        return HTMLResponse(render_login(redirect, MSG_HANDLE_REQUIRED, has_session))

    if "." not in handle and not handle.startswith("did:"):
        handle += ".bsky.social"

    try:
        auth_url = await oauth.start_login(handle)
    except OAuthError as e:
        logger.warning("OAuth start failed", extra={"handle": handle, "error": str(e)})
        record_login("start_failed")
        has_session = await current_session(request) is not None
        return HTMLResponse(render_login(redirect, MSG_START_FAILED, has_session))

    record_login("started")
    response = RedirectResponse(auth_url, status_code=302)
    if redirect and is_allowed_redirect(redirect, settings):
        response.set_cookie(
            REDIRECT_COOKIE_NAME,
            redirect,
            max_age=REDIRECT_COOKIE_MAX_AGE,
            path="/",
            secure=settings.secure_cookies,
            httponly=True,
            samesite="lax",
        )
    return response


@router.get("/oauth/callback")
async def oauth_callback(
    request: Request,
    settings: Settings = Depends(get_settings_dep),
    store: Store = Depends(get_store),
    sessions: SessionManager = Depends(get_sessions),
    oauth: OAuthGateway = Depends(get_oauth),
) -> RedirectResponse:
    """Finish the OAuth flow and sign the identity in.

    When the browser already has a valid session the new identity joins its
    group; an identity that is already in the group is switched to instead.
    """
    try:
        did, handle = await oauth.handle_callback(request.query_params)
    except OAuthError as e:
        logger.warning("OAuth callback failed", extra={"error": str(e)})
        record_login("callback_failed")
        return _login_error(settings, MSG_AUTH_FAILED)

    try:
        user = await store.find_user_by_did(did)
        if user is None:
            logger.warning(
                "Unauthorized DID attempted login", extra={"did": did, "handle": handle}
            )
            record_login("denied")
            return _login_error(settings, MSG_ACCESS_DENIED)

        group_id = ""
        existing = await current_session(request)
        cookie = None
        if existing is not None:
            group_id = existing.group_id
            member = await sessions.group_has_did(group_id, did)
            if member is not None:
                try:
                    cookie = await sessions.switch_to(group_id, member[0])
                except SessionNotFoundError:
                    logger.warning("Switch to existing identity failed", extra={"did": did})
                logger.info(
                    "Switched to existing identity in group",
                    extra={"did": did, "handle": handle},
                )
                record_login("switched")
                return _finish_login(request, settings, cookie)

        cookie = await sessions.create(user.id, did, handle, group_id)
    except StoreError:
        logger.error("Login failed on store error", extra={"did": did}, exc_info=True)
        record_login("error")
        return _login_error(settings, MSG_INTERNAL)

    record_session_created()
    record_login("success")
    logger.info("Login successful", extra={"did": did, "handle": handle})
    return _finish_login(request, settings, cookie)


def _finish_login(
    request: Request, settings: Settings, cookie: SessionCookie | None
) -> RedirectResponse:
    destination = f"{settings.public_url}/"
    parked = request.cookies.get(REDIRECT_COOKIE_NAME, "")
    if parked and is_allowed_redirect(parked, settings):
        destination = parked

    response = RedirectResponse(destination, status_code=302)
    if cookie is not None:
        cookie.apply(response)
    if parked:
        response.delete_cookie(REDIRECT_COOKIE_NAME, path="/")
    return response


@router.get("/.well-known/oauth-client-metadata")
async def client_metadata(oauth: OAuthGateway = Depends(get_oauth)) -> JSONResponse:
    return JSONResponse(oauth.client_metadata())


@router.get("/oauth/jwks.json")
async def jwks(oauth: OAuthGateway = Depends(get_oauth)) -> JSONResponse:
    return JSONResponse(oauth.public_jwks())
