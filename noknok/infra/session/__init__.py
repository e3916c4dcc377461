"""Browser session infrastructure.

Sessions live in the relational store and are grouped per browser so one
browser can hold several identities at once.
"""

from noknok.infra.session.manager import (
    COOKIE_NAME,
    SessionCookie,
    SessionManager,
    SessionNotFoundError,
)

__all__ = [
    "COOKIE_NAME",
    "SessionCookie",
    "SessionManager",
    "SessionNotFoundError",
]
