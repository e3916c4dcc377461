"""Server-rendered HTML pages (login, portal, admin, disabled notice).

Templates live in ``templates/`` and are rendered with Jinja2; autoescape
is on for every page.
"""

from pathlib import Path
from urllib.parse import urlencode, urlsplit

from jinja2 import Environment, FileSystemLoader, select_autoescape

from noknok.domain.models import Service, SessionRecord

TEMPLATES_DIR = Path(__file__).parent / "templates"

DESCRIPTION_PREVIEW_CHARS = 20

env = Environment(
    loader=FileSystemLoader(TEMPLATES_DIR),
    autoescape=select_autoescape(["html"]),
    trim_blocks=True,
    lstrip_blocks=True,
)


def _initial(name: str) -> str:
    return name[:1] if name else "?"


def _preview(description: str) -> str:
    if len(description) > DESCRIPTION_PREVIEW_CHARS:
        return description[:DESCRIPTION_PREVIEW_CHARS] + "..."
    return description


def _health_class(alive: bool | None) -> str:
    if alive is None:
        return "health"
    return "health health-up" if alive else "health health-down"


def render_login(
    redirect: str = "",
    error: str = "",
    has_session: bool = False,
    services: list[Service] | None = None,
) -> str:
    """Render the sign-in page.

    Args:
        redirect: Post-login destination carried in a hidden field
        error: Banner message
        has_session: Show a cancel link back to the portal
        services: Public services shown as cards under the form
    """
    cards = [
        {
            "url": service.url,
            "slug": service.slug,
            "name": service.name,
            "initial": _initial(service.name),
            "favicon": service.url.rstrip("/") + "/favicon.ico",
            "description": _preview(service.description),
        }
        for service in services or []
    ]
    return env.get_template("login.html").render(
        redirect=redirect,
        error=error,
        has_session=has_session,
        cards=cards,
    )


def relay_link(service_url: str, token: str) -> str:
    """Link that installs the session cookie on the service's own domain first."""
    parts = urlsplit(service_url)
    path = parts.path or "/"
    if parts.query:
        path += "?" + parts.query
    query = urlencode({"t": token, "r": path})
    return f"{parts.scheme}://{parts.netloc}/__relay?{query}"


def render_portal(
    active: SessionRecord,
    group: list[SessionRecord],
    services: list[Service],
    health: dict[int, bool],
    is_admin: bool,
    links: dict[int, str] | None = None,
) -> str:
    """Render the service portal.

    Args:
        active: Session the browser is using
        group: Every live identity of the browser's group
        services: Services the user may open
        health: Last health snapshot
        is_admin: Show the admin entry
        links: Per-service href overrides (relay links)
    """
    links = links or {}

    cards = [
        {
            "id": service.id,
            "href": links.get(service.id, service.url),
            "slug": service.slug,
            "name": service.name,
            "initial": _initial(service.name),
            "description": service.description,
            "health_class": _health_class(health.get(service.id)),
        }
        for service in services
    ]
    identities = [
        {
            "id": member.id,
            "label": member.handle or member.did,
            "active": member.token == active.token,
        }
        for member in group
    ]

    return env.get_template("portal.html").render(
        active_label=active.handle or active.did,
        identities=identities,
        is_admin=is_admin,
        cards=cards,
    )


def render_admin(role: str) -> str:
    return env.get_template("admin.html").render(role=role)


def render_disabled(service_name: str, portal_url: str) -> str:
    title = f"{service_name} is disabled" if service_name else "Service disabled"
    return env.get_template("disabled.html").render(title=title, portal_url=portal_url)
