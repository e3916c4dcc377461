"""Database infrastructure module.

This module provides the ORM models, session management and the relational
store used by every other component.

Key components:
- models: SQLAlchemy ORM models
- session: Database session management and schema bootstrap
- store: Store operations returning domain DTOs
"""

from noknok.infra.db.models import (
    Base,
    Grant,
    OAuthRequest,
    OAuthSession,
    Service,
    User,
    UserSession,
)
from noknok.infra.db.session import (
    DatabaseSessionManager,
    bootstrap_schema,
    get_session_manager,
    initialize_session_manager,
    reset_session_manager,
)
from noknok.infra.db.store import Store

__all__ = [
    # Models
    "Base",
    "User",
    "Service",
    "Grant",
    "UserSession",
    "OAuthRequest",
    "OAuthSession",
    # Session management
    "DatabaseSessionManager",
    "bootstrap_schema",
    "get_session_manager",
    "initialize_session_manager",
    "reset_session_manager",
    # Store
    "Store",
]
