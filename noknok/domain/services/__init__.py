"""Domain services for noknok.

Domain services hold the gateway's decisions and administrative rules on
top of the store, the session manager and the OAuth client.

Services in this package:
- PolicyEngine: Role label for (identity, host)
- ForwardAuthService: Allow/deny/redirect verdicts for the proxy
- UserService, CatalogService, GrantService: Admin operations
- HealthPoller: Backend liveness snapshot
"""

from noknok.domain.services.catalog import CatalogService
from noknok.domain.services.forward_auth import ForwardAuthService
from noknok.domain.services.grant import GrantService
from noknok.domain.services.health import HealthPoller
from noknok.domain.services.policy import PolicyEngine
from noknok.domain.services.user import UserService

__all__ = [
    "CatalogService",
    "ForwardAuthService",
    "GrantService",
    "HealthPoller",
    "PolicyEngine",
    "UserService",
]
