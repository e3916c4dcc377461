"""Request models for the admin API.

Missing fields default to empty values so the service layer can answer
with its own error messages instead of a generic validation failure.
"""

from pydantic import BaseModel, Field


class CreateUserRequest(BaseModel):
    """Register an identity by handle."""

    handle: str = Field(default="", description="Handle or DID to resolve")
    role: str = Field(default="", description="Global role (user when empty)")
    username: str = Field(default="", description="Optional internal username")


class UpdateRoleRequest(BaseModel):
    role: str = Field(default="", description="New global role")


class UpdateUsernameRequest(BaseModel):
    username: str = Field(default="", description="New username (empty clears it)")


class CreateServiceRequest(BaseModel):
    """Add a backend service to the catalog."""

    slug: str = ""
    name: str = ""
    url: str = ""
    description: str = ""
    icon_url: str = ""
    admin_role: str = ""


class UpdateServiceRequest(BaseModel):
    name: str = ""
    url: str = ""
    description: str = ""
    icon_url: str = ""
    admin_role: str = ""


class GrantRequest(BaseModel):
    """Grant a user access to a service.

    An explicit empty role is stored as a deny entry.
    """

    user_id: int | None = None
    service_id: int | None = None
    role: str = Field(default="user", description="Role label sent to the backend")
