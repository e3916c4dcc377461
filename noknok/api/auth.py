"""Forward-auth endpoint and browser session routes.

- ``GET /auth``: sub-request from the reverse proxy
- ``POST /logout``, ``POST /logout/one``, ``POST /switch``: identity menu
- ``GET /api/identities``: identities of the browser's session group
- ``GET /__relay``: installs the session cookie on an additional domain
"""

import logging
import time

from fastapi import APIRouter, Depends, Form, Request, Response
from fastapi.responses import RedirectResponse

from noknok.api.deps import (
    current_session,
    get_forward_auth,
    get_sessions,
    get_settings_dep,
    session_token,
)
from noknok.config import Settings
from noknok.domain.exceptions import AuthenticationError
from noknok.domain.models import Identity
from noknok.domain.services.forward_auth import (
    ForwardAuthRequest,
    ForwardAuthService,
    verdict_kind,
)
from noknok.infra.observability import record_forward_auth
from noknok.infra.session import SessionManager, SessionNotFoundError

logger = logging.getLogger(__name__)

router = APIRouter(tags=["auth"])


def is_relative_path(target: str) -> bool:
    """Same-origin path check used by the relay redirect."""
    return target.startswith("/") and not target.startswith(("//", "/\\"))


@router.api_route("/auth", methods=["GET", "HEAD"])
async def forward_auth(
    request: Request,
    service: ForwardAuthService = Depends(get_forward_auth),
) -> Response:
    """Answer a forward-auth sub-request.

    The verdict's status and headers are copied onto an empty response.
    """
    headers = request.headers
    auth_request = ForwardAuthRequest(
        host=headers.get("X-Forwarded-Host", ""),
        uri=headers.get("X-Forwarded-Uri", ""),
        scheme=headers.get("X-Forwarded-Proto") or "https",
        accept=headers.get("X-Forwarded-Accept") or headers.get("Accept", ""),
        authorization=(
            headers.get("X-Forwarded-Authorization") or headers.get("Authorization", "")
        ),
        session_token=session_token(request),
    )

    started = time.perf_counter()
    verdict = await service.decide(auth_request)
    record_forward_auth(verdict_kind(verdict), verdict.reason, time.perf_counter() - started)

    return Response(status_code=verdict.status_code, headers=verdict.headers)


@router.post("/logout")
async def logout(
    request: Request,
    settings: Settings = Depends(get_settings_dep),
    sessions: SessionManager = Depends(get_sessions),
) -> RedirectResponse:
    """Sign every identity of this browser out."""
    token = session_token(request)
    if token:
        record = await current_session(request)
        if record is not None and record.group_id:
            await sessions.destroy_group(record.group_id)
        else:
            await sessions.destroy(token)

    response = RedirectResponse(f"{settings.public_url}/login", status_code=302)
    sessions.clear_cookie().apply(response)
    return response


@router.post("/logout/one")
async def logout_one(
    request: Request,
    id: int = Form(...),
    settings: Settings = Depends(get_settings_dep),
    sessions: SessionManager = Depends(get_sessions),
) -> RedirectResponse:
    """Sign one identity of the group out.

    Removing the active identity moves the cookie to the earliest remaining
    one, or clears it when none is left.
    """
    record = await current_session(request)
    if record is None:
        return RedirectResponse(f"{settings.public_url}/login", status_code=302)

    was_active = id == record.id
    if record.group_id:
        cookie = await sessions.destroy_one(record.group_id, id, was_active)
    elif was_active:
        await sessions.destroy(record.token)
        cookie = sessions.clear_cookie()
    else:
        cookie = None

    if cookie is not None and cookie.clear:
        response = RedirectResponse(f"{settings.public_url}/login", status_code=302)
    else:
        response = RedirectResponse(f"{settings.public_url}/", status_code=302)
    if cookie is not None:
        cookie.apply(response)

    logger.info(
        "Identity signed out",
        extra={"session_id": id, "group_id": record.group_id, "was_active": was_active},
    )
    return response


@router.post("/switch")
async def switch_identity(
    request: Request,
    id: int = Form(...),
    settings: Settings = Depends(get_settings_dep),
    sessions: SessionManager = Depends(get_sessions),
) -> RedirectResponse:
    """Make another identity of the group the active one."""
    record = await current_session(request)
    if record is None:
        return RedirectResponse(f"{settings.public_url}/login", status_code=302)

    response = RedirectResponse(f"{settings.public_url}/", status_code=302)
    try:
        cookie = await sessions.switch_to(record.group_id, id)
    except SessionNotFoundError:
        logger.warning(
            "Switch to unknown session ignored",
            extra={"session_id": id, "group_id": record.group_id},
        )
        return response

    cookie.apply(response)
    return response


@router.get("/api/identities")
async def list_identities(
    request: Request,
    sessions: SessionManager = Depends(get_sessions),
) -> list[dict]:
    """Identities of the browser's session group, without tokens."""
    record = await current_session(request)
    if record is None:
        raise AuthenticationError("not authenticated")

    group = await sessions.list_group(record.group_id) or [record]
    return [
        Identity(
            id=member.id,
            did=member.did,
            handle=member.handle,
            username=member.username,
            active=member.token == record.token,
            created_at=member.created_at,
        ).model_dump(mode="json")
        for member in group
    ]


@router.get("/__relay")
async def relay(
    request: Request,
    t: str = "",
    r: str = "",
    settings: Settings = Depends(get_settings_dep),
    sessions: SessionManager = Depends(get_sessions),
) -> Response:
    """Install the session cookie for this request's domain and bounce to ``r``."""
    if not t:
        return Response(status_code=400)

    try:
        record = await sessions.validate(t)
    except SessionNotFoundError:
        return RedirectResponse(f"{settings.public_url}/login", status_code=302)

    host = request.headers.get("host", "")
    domain = settings.domain_for_host(host)
    target = r if is_relative_path(r) else "/"

    response = RedirectResponse(target, status_code=302)
    response.headers["Cache-Control"] = "no-store"
    response.headers["Referrer-Policy"] = "no-referrer"
    sessions.make_cookie_for_domain(t, record.expires_at, domain).apply(response)

    logger.info("Session relayed", extra={"host": host, "cookie_domain": domain})
    return response
