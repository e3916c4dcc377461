"""Per-service grants."""

import logging

from noknok.domain.exceptions import ValidationError
from noknok.domain.models import Grant, User
from noknok.infra.db.store import Store
from noknok.infra.observability.metrics import record_admin_mutation

logger = logging.getLogger(__name__)


class GrantService:
    """Issues and revokes (user, service) grants.

    Re-issuing a grant for the same pair replaces its role.
    """

    def __init__(self, store: Store) -> None:
        self.store = store

    async def list_grants(self) -> list[Grant]:
        return await self.store.list_grants()

    async def upsert_grant(
        self, caller: User, user_id: int | None, service_id: int | None, role: str
    ) -> Grant:
        """Create or update a grant.

        Raises:
            ValidationError: If either id is missing
            NotFoundError: If the user or service does not exist
        """
        if not user_id or not service_id:
            raise ValidationError("user_id and service_id are required")

        grant = await self.store.upsert_grant(user_id, service_id, role, granted_by=caller.id)
        record_admin_mutation("grant_upsert")
        logger.info(
            "Grant created",
            extra={
                "user_id": user_id,
                "service_id": service_id,
                "role": role,
                "by": caller.handle,
            },
        )
        return grant

    async def delete_grant(self, caller: User, grant_id: int) -> None:
        await self.store.delete_grant(grant_id)
        record_admin_mutation("grant_delete")
        logger.info("Grant deleted", extra={"grant_id": grant_id, "by": caller.handle})
