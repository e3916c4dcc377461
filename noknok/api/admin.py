"""Admin API routes for the browser-based admin UI.

Provides JSON endpoints for users, services and grants. Every route
requires a session whose user is an owner or admin; errors are returned as
``{"error": "..."}`` by the app's exception handlers.
"""

import logging
from typing import Any

from fastapi import APIRouter, Depends, Request, Response, status

from noknok.api.admin_models import (
    CreateServiceRequest,
    CreateUserRequest,
    GrantRequest,
    UpdateRoleRequest,
    UpdateServiceRequest,
    UpdateUsernameRequest,
)
from noknok.api.deps import (
    get_catalog_service,
    get_grant_service,
    get_health_poller,
    get_user_service,
    require_admin,
)
from noknok.domain.models import User
from noknok.domain.services import CatalogService, GrantService, HealthPoller, UserService

logger = logging.getLogger(__name__)


# Admin router
router = APIRouter(prefix="/admin/api", tags=["admin"], dependencies=[Depends(require_admin)])


def get_caller(request: Request) -> User:
    """Caller stored by the router's admin guard."""
    return request.state.caller


# ========================================
# Users
# ========================================


@router.get("/users")
async def list_users(users: UserService = Depends(get_user_service)) -> list[dict[str, Any]]:
    return [user.model_dump(mode="json") for user in await users.list_users()]


@router.post("/users", status_code=status.HTTP_201_CREATED)
async def create_user(
    body: CreateUserRequest,
    caller: User = Depends(get_caller),
    users: UserService = Depends(get_user_service),
) -> dict[str, Any]:
    """Resolve a handle and register it.

    Args:
        body: Handle, role and optional username
        caller: Admin performing the change
        users: User service dependency

    Returns:
        The created user
    """
    user = await users.create_user(caller, body.handle, role=body.role, username=body.username)
    return user.model_dump(mode="json")


@router.put("/users/{user_id}/role")
async def update_user_role(
    user_id: int,
    body: UpdateRoleRequest,
    caller: User = Depends(get_caller),
    users: UserService = Depends(get_user_service),
) -> dict[str, str]:
    await users.update_role(caller, user_id, body.role)
    return {"status": "ok"}


@router.put("/users/{user_id}/username")
async def update_user_username(
    user_id: int,
    body: UpdateUsernameRequest,
    caller: User = Depends(get_caller),
    users: UserService = Depends(get_user_service),
) -> dict[str, str]:
    """Set a username; live sessions of the user pick it up immediately."""
    await users.update_username(caller, user_id, body.username.strip())
    return {"status": "ok"}


@router.delete("/users/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_user(
    user_id: int,
    caller: User = Depends(get_caller),
    users: UserService = Depends(get_user_service),
) -> Response:
    await users.delete_user(caller, user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ========================================
# Services
# ========================================


@router.get("/services")
async def list_services(
    catalog: CatalogService = Depends(get_catalog_service),
) -> list[dict[str, Any]]:
    return [service.model_dump(mode="json") for service in await catalog.list_services()]


@router.post("/services", status_code=status.HTTP_201_CREATED)
async def create_service(
    body: CreateServiceRequest,
    caller: User = Depends(get_caller),
    catalog: CatalogService = Depends(get_catalog_service),
) -> dict[str, Any]:
    service = await catalog.create_service(
        caller,
        body.slug.strip(),
        body.name.strip(),
        body.url.strip(),
        description=body.description,
        icon_url=body.icon_url,
        admin_role=body.admin_role,
    )
    return service.model_dump(mode="json")


@router.get("/services/health")
async def service_health(health: HealthPoller = Depends(get_health_poller)) -> dict[str, bool]:
    """Last health snapshot keyed by service id."""
    return {str(service_id): alive for service_id, alive in health.snapshot().items()}


@router.put("/services/{service_id}")
async def update_service(
    service_id: int,
    body: UpdateServiceRequest,
    caller: User = Depends(get_caller),
    catalog: CatalogService = Depends(get_catalog_service),
) -> dict[str, str]:
    await catalog.update_service(
        caller,
        service_id,
        body.name.strip(),
        body.url.strip(),
        description=body.description,
        icon_url=body.icon_url,
        admin_role=body.admin_role,
    )
    return {"status": "ok"}


@router.post("/services/{service_id}/enabled")
async def toggle_service_enabled(
    service_id: int,
    caller: User = Depends(get_caller),
    catalog: CatalogService = Depends(get_catalog_service),
) -> dict[str, bool]:
    return {"enabled": await catalog.toggle_enabled(caller, service_id)}


@router.post("/services/{service_id}/public")
async def toggle_service_public(
    service_id: int,
    caller: User = Depends(get_caller),
    catalog: CatalogService = Depends(get_catalog_service),
) -> dict[str, bool]:
    return {"public": await catalog.toggle_public(caller, service_id)}


@router.delete("/services/{service_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_service(
    service_id: int,
    caller: User = Depends(get_caller),
    catalog: CatalogService = Depends(get_catalog_service),
) -> Response:
    await catalog.delete_service(caller, service_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ========================================
# Grants
# ========================================


@router.get("/grants")
async def list_grants(grants: GrantService = Depends(get_grant_service)) -> list[dict[str, Any]]:
    return [grant.model_dump(mode="json") for grant in await grants.list_grants()]


@router.post("/grants", status_code=status.HTTP_201_CREATED)
async def upsert_grant(
    body: GrantRequest,
    caller: User = Depends(get_caller),
    grants: GrantService = Depends(get_grant_service),
) -> dict[str, Any]:
    grant = await grants.upsert_grant(caller, body.user_id, body.service_id, body.role)
    return grant.model_dump(mode="json")


@router.delete("/grants/{grant_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_grant(
    grant_id: int,
    caller: User = Depends(get_caller),
    grants: GrantService = Depends(get_grant_service),
) -> Response:
    await grants.delete_grant(caller, grant_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
