"""Forward-auth decision procedure.

The reverse proxy sends every inbound request here as a sub-request carrying
``X-Forwarded-*`` headers and the browser's cookies. The answer is one of
four verdicts; the HTTP adapter copies its status and headers onto an empty
response and the proxy acts on it.

Order of checks:

1. Service gate: a disabled service is refused before any session work
2. Session: a valid session is authorized through the policy engine
3. Authorization header: passed through for the backend to validate
4. Non-browser clients get 401
5. Browsers are redirected to the login page
"""

import logging
from dataclasses import dataclass, field
from urllib.parse import quote, urlencode

from noknok.config import strip_port
from noknok.domain.services.policy import PolicyEngine
from noknok.infra.db.store import Store
from noknok.infra.session.manager import SessionManager, SessionNotFoundError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ForwardAuthRequest:
    """What the proxy told us about the original request.

    Attributes:
        host: X-Forwarded-Host
        uri: X-Forwarded-Uri
        scheme: X-Forwarded-Proto ("https" when absent)
        accept: X-Forwarded-Accept, else Accept
        authorization: X-Forwarded-Authorization, else Authorization
        session_token: Value of the session cookie
    """

    host: str = ""
    uri: str = ""
    scheme: str = "https"
    accept: str = ""
    authorization: str = ""
    session_token: str = ""

    @property
    def wants_html(self) -> bool:
        return "text/html" in self.accept


@dataclass(frozen=True)
class Allow:
    headers: dict[str, str]
    reason: str = "session"
    status_code: int = 200


@dataclass(frozen=True)
class Deny:
    status_code: int
    reason: str = ""
    headers: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Redirect:
    location: str
    reason: str = ""
    status_code: int = 302

    @property
    def headers(self) -> dict[str, str]:
        return {"Location": self.location}


@dataclass(frozen=True)
class Passthrough:
    reason: str = "authorization"
    status_code: int = 200
    headers: dict[str, str] = field(default_factory=dict)


Verdict = Allow | Deny | Redirect | Passthrough


def verdict_kind(verdict: Verdict) -> str:
    return type(verdict).__name__.lower()


class ForwardAuthService:
    """Decides allow/deny/redirect for one forward-auth sub-request.

    Example:
        service = ForwardAuthService(store, sessions, PolicyEngine(store), public_url)
        verdict = await service.decide(ForwardAuthRequest(host="gitea.example.test"))
        response = Response(status_code=verdict.status_code, headers=verdict.headers)
    """

    def __init__(
        self,
        store: Store,
        sessions: SessionManager,
        policy: PolicyEngine,
        public_url: str,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.policy = policy
        self.public_url = public_url

    async def decide(self, request: ForwardAuthRequest) -> Verdict:
        host = strip_port(request.host)

        if host:
            service = await self.store.find_service_by_host(host)
            if service is not None and not service.enabled:
                logger.info(
                    "Forward-auth refused disabled service",
                    extra={"host": host, "service": service.slug},
                )
                if request.wants_html:
                    query = urlencode({"service": service.name}, quote_via=quote)
                    return Redirect(f"{self.public_url}/disabled?{query}", reason="disabled")
                return Deny(503, reason="disabled")

        if request.session_token:
            try:
                record = await self.sessions.validate(request.session_token)
            except SessionNotFoundError:
                record = None

            if record is not None:
                role = await self.policy.evaluate(record.did, host)
                if not role:
                    logger.info(
                        "Forward-auth denied by policy",
                        extra={"did": record.did, "host": host},
                    )
                    if request.wants_html:
                        return Redirect(f"{self.public_url}/", reason="policy")
                    return Deny(403, reason="policy")

                headers = {
                    "X-User-DID": record.did,
                    "X-User-Handle": record.handle,
                    "X-User-Role": role,
                }
                if record.username:
                    headers["X-WEBAUTH-USER"] = record.username
                return Allow(headers)

        if request.authorization:
            return Passthrough()

        if not request.wants_html:
            return Deny(401, reason="unauthenticated")

        login_url = f"{self.public_url}/login"
        if request.host:
            target = f"{request.scheme or 'https'}://{request.host}{request.uri}"
            login_url += "?" + urlencode({"redirect": target})
        return Redirect(login_url, reason="login")
