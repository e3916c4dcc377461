"""Domain models for noknok.

Pydantic models representing domain entities and DTOs for the service layer.
These are separate from SQLAlchemy ORM models to maintain clean separation
between domain and infrastructure layers.
"""

import re
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,39}$")
USERNAME_RULES = "invalid username (alphanumeric, hyphens, underscores, 1-39 chars)"


class UserRole(str, Enum):
    """Global user role.

    OWNER and ADMIN see every service and receive the service's admin_role;
    USER needs an explicit grant per service.
    """

    OWNER = "owner"
    ADMIN = "admin"
    USER = "user"


VALID_ROLES = frozenset(role.value for role in UserRole)


def is_admin_role(role: str) -> bool:
    """Check whether a global role grants admin access."""
    return role in (UserRole.OWNER.value, UserRole.ADMIN.value)


def is_valid_username(username: str) -> bool:
    return bool(USERNAME_PATTERN.match(username))


class User(BaseModel):
    """User DTO."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    did: str
    handle: str
    username: str = ""
    role: str
    created_at: datetime | None = None
    updated_at: datetime | None = None


class Service(BaseModel):
    """Service catalog entry DTO."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    slug: str
    name: str
    description: str = ""
    url: str
    icon_url: str = ""
    admin_role: str = "admin"
    enabled: bool = True
    public: bool = False
    created_at: datetime | None = None


class Grant(BaseModel):
    """Grant DTO joined with the user's handle and the service's name."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    service_id: int
    role: str
    granted_by: int | None = None
    created_at: datetime | None = None
    user_handle: str = ""
    service_name: str = ""


class ServiceSeed(BaseModel):
    """One record of the JSON service catalog loaded at startup."""

    slug: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    description: str = ""
    url: str = Field(..., min_length=1)
    icon_url: str = ""
    admin_role: str = ""


class Identity(BaseModel):
    """One identity of the browser's session group, as exposed to the UI."""

    id: int
    did: str
    handle: str
    username: str = ""
    active: bool
    created_at: datetime


@dataclass(frozen=True)
class SessionRecord:
    """Snapshot of one session row.

    Attributes:
        id: Session primary key
        token: Bearer token (64 hex chars)
        user_id: Owning user
        did: Identity DID
        handle: Handle observed at login
        username: Username snapshot (kept in sync by admin changes)
        group_id: Browser session group (UUID v4)
        created_at: Creation time
        expires_at: Hard expiry
        last_seen: Last successful validation
    """

    id: int
    token: str
    user_id: int | None
    did: str
    handle: str
    username: str
    group_id: str
    created_at: datetime
    expires_at: datetime
    last_seen: datetime
