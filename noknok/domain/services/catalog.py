"""Service catalog administration and seeding."""

import logging
from pathlib import Path

from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from noknok.domain.exceptions import ValidationError
from noknok.domain.models import Service, ServiceSeed, User
from noknok.infra.db.store import Store
from noknok.infra.observability.metrics import record_admin_mutation

logger = logging.getLogger(__name__)

_SEEDS = TypeAdapter(list[ServiceSeed])


class CatalogError(Exception):
    """Raised when the services file exists but cannot be used."""

    pass


def load_service_seeds(path: Path | str) -> list[ServiceSeed] | None:
    """Read the JSON service catalog.

    Args:
        path: Path to a JSON array of service records

    Returns:
        Parsed records, or None when the file does not exist

    Raises:
        CatalogError: If the file is unreadable or malformed
    """
    path = Path(path)
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except OSError as e:
        raise CatalogError(f"read {path}: {e}") from e

    try:
        return _SEEDS.validate_json(raw)
    except PydanticValidationError as e:
        raise CatalogError(f"parse {path}: {e}") from e


class CatalogService:
    """Service for the backend catalog.

    Example:
        catalog = CatalogService(store)
        await catalog.seed_from_file("services.json")
        enabled = await catalog.toggle_enabled(caller, service_id)
    """

    def __init__(self, store: Store) -> None:
        self.store = store

    async def seed_from_file(self, path: Path | str) -> int:
        """Upsert the services file into the catalog.

        A missing file is logged and skipped.

        Raises:
            CatalogError: If the file is malformed
        """
        seeds = load_service_seeds(path)
        if seeds is None:
            logger.info("No services file, skipping seed", extra={"path": str(path)})
            return 0
        count = await self.store.seed_services(seeds)
        logger.info("Services seeded", extra={"path": str(path), "count": count})
        return count

    async def list_services(self) -> list[Service]:
        return await self.store.list_services()

    async def create_service(
        self,
        caller: User,
        slug: str,
        name: str,
        url: str,
        description: str = "",
        icon_url: str = "",
        admin_role: str = "",
    ) -> Service:
        if not slug or not name or not url:
            raise ValidationError("slug, name, and url are required")

        service = await self.store.create_service(
            slug, name, url, description=description, icon_url=icon_url, admin_role=admin_role
        )
        record_admin_mutation("service_create")
        logger.info("Service created", extra={"slug": slug, "by": caller.handle})
        return service

    async def update_service(
        self,
        caller: User,
        service_id: int,
        name: str,
        url: str,
        description: str = "",
        icon_url: str = "",
        admin_role: str = "",
    ) -> Service:
        if not name or not url:
            raise ValidationError("name and url are required")

        service = await self.store.update_service(
            service_id,
            name,
            url,
            description=description,
            icon_url=icon_url,
            admin_role=admin_role,
        )
        record_admin_mutation("service_update")
        logger.info("Service updated", extra={"service_id": service_id, "by": caller.handle})
        return service

    async def toggle_enabled(self, caller: User, service_id: int) -> bool:
        enabled = await self.store.toggle_service_enabled(service_id)
        record_admin_mutation("service_enabled")
        logger.info(
            "Service enabled toggled",
            extra={"service_id": service_id, "enabled": enabled, "by": caller.handle},
        )
        return enabled

    async def toggle_public(self, caller: User, service_id: int) -> bool:
        public = await self.store.toggle_service_public(service_id)
        record_admin_mutation("service_public")
        logger.info(
            "Service public toggled",
            extra={"service_id": service_id, "public": public, "by": caller.handle},
        )
        return public

    async def delete_service(self, caller: User, service_id: int) -> None:
        await self.store.delete_service(service_id)
        record_admin_mutation("service_delete")
        logger.info("Service deleted", extra={"service_id": service_id, "by": caller.handle})
