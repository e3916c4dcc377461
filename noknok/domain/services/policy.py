"""Per-service access policy.

Maps (identity, forwarded host) to the role label a backend receives in
``X-User-Role``. An empty label means deny. The engine holds no state of
its own; every decision reads the current users, services and grants.

Rules, in order:

1. The DID must belong to a known user
2. Some service URL must contain the host (lowest id wins)
3. Owners and admins get the service's ``admin_role`` (``admin`` if blank)
4. Everyone else needs a grant with a non-empty role

The service's ``enabled`` flag is not consulted here; the forward-auth
loop checks it before any session work.
"""

import logging

from noknok.config import strip_port
from noknok.domain.models import is_admin_role
from noknok.infra.db.store import Store

logger = logging.getLogger(__name__)

DENY = ""


class PolicyEngine:
    """Evaluates access for a DID on a forwarded host.

    Example:
        engine = PolicyEngine(store)
        role = await engine.evaluate("did:plc:abc", "gitea.example.test:443")
        if not role:
            ...  # deny
    """

    def __init__(self, store: Store) -> None:
        self.store = store

    async def evaluate(self, did: str, host: str) -> str:
        """Return the role label for ``did`` on ``host``, or "" to deny.

        Args:
            did: Identity DID from the validated session
            host: Forwarded host, possibly with a port

        Returns:
            Role label, "" when access is denied
        """
        host = strip_port(host)
        if not host:
            return DENY

        user = await self.store.find_user_by_did(did)
        if user is None:
            logger.debug("Policy deny: unknown user", extra={"did": did, "host": host})
            return DENY

        service = await self.store.find_service_by_host(host)
        if service is None:
            logger.debug("Policy deny: no service for host", extra={"did": did, "host": host})
            return DENY

        if is_admin_role(user.role):
            return service.admin_role or "admin"

        role = await self.store.get_grant_role(user.id, service.id)
        if not role:
            logger.debug(
                "Policy deny: no grant",
                extra={"did": did, "service": service.slug},
            )
            return DENY
        return role
