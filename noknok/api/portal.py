"""Portal, admin page and the disabled-service notice."""

import logging
from urllib.parse import urlsplit

from fastapi import APIRouter, Depends, Request
from fastapi.responses import HTMLResponse, RedirectResponse

from noknok.api.deps import (
    current_session,
    get_health_poller,
    get_sessions,
    get_settings_dep,
    get_store,
)
from noknok.api.pages import relay_link, render_admin, render_disabled, render_portal
from noknok.config import Settings
from noknok.domain.exceptions import StoreError
from noknok.domain.models import Service, User, is_admin_role
from noknok.domain.services import HealthPoller
from noknok.infra.db.store import Store
from noknok.infra.session import SessionManager

logger = logging.getLogger(__name__)

router = APIRouter(tags=["portal"])


def relay_links(services: list[Service], token: str, settings: Settings) -> dict[int, str]:
    """Relay hrefs for services hosted under an additional cookie domain.

    The primary cookie domain already covers its own services, so only the
    extra domains need the cookie installed first.
    """
    extra = set(settings.additional_cookie_domains)
    if not extra:
        return {}
    links = {}
    for service in services:
        host = urlsplit(service.url).netloc
        if settings.domain_for_host(host) in extra:
            links[service.id] = relay_link(service.url, token)
    return links


async def _signed_in_user(request: Request, store: Store):
    record = await current_session(request)
    if record is None:
        return None, None
    user = await store.find_user_by_did(record.did)
    if user is None:
        logger.warning("Portal user lookup failed", extra={"did": record.did})
        return record, None
    return record, user


async def _visible_services(store: Store, user: User) -> list[Service]:
    try:
        if is_admin_role(user.role):
            return await store.list_services()
        return await store.list_services_for_user(user.id)
    except StoreError:
        logger.error("Portal could not load services", extra={"did": user.did})
        return []


@router.get("/", response_class=HTMLResponse, response_model=None)
async def portal(
    request: Request,
    settings: Settings = Depends(get_settings_dep),
    store: Store = Depends(get_store),
    sessions: SessionManager = Depends(get_sessions),
    health: HealthPoller = Depends(get_health_poller),
) -> HTMLResponse | RedirectResponse:
    """Service grid and identity menu for the signed-in browser."""
    record, user = await _signed_in_user(request, store)
    if record is None or user is None:
        return RedirectResponse(f"{settings.public_url}/login", status_code=302)

    services = await _visible_services(store, user)
    group = await sessions.list_group(record.group_id) or [record]

    html = render_portal(
        active=record,
        group=group,
        services=services,
        health=health.snapshot(),
        is_admin=is_admin_role(user.role),
        links=relay_links(services, record.token, settings),
    )
    return HTMLResponse(html)


@router.get("/admin", response_class=HTMLResponse, response_model=None)
async def admin_page(
    request: Request,
    settings: Settings = Depends(get_settings_dep),
    store: Store = Depends(get_store),
) -> HTMLResponse | RedirectResponse:
    """Serve the admin UI.

    The page itself only drives ``/admin/api``; the API enforces access.
    """
    record, user = await _signed_in_user(request, store)
    if record is None or user is None:
        return RedirectResponse(f"{settings.public_url}/login", status_code=302)
    if not is_admin_role(user.role):
        return RedirectResponse(f"{settings.public_url}/", status_code=302)
    return HTMLResponse(render_admin(user.role))


@router.get("/disabled", response_class=HTMLResponse)
async def disabled(
    service: str = "",
    settings: Settings = Depends(get_settings_dep),
) -> HTMLResponse:
    return HTMLResponse(render_disabled(service, f"{settings.public_url}/"))
