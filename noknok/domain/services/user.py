"""User administration.

Applies the role rules of the admin surface on top of the store:

- Only owners may hand out ``admin`` or ``owner``
- The bootstrap owner's role can never change and it cannot be deleted
- Nobody deletes themselves, and admins only delete plain users

Every successful mutation is audit-logged with the caller's handle.
"""

import logging

from noknok.domain.exceptions import PermissionDeniedError, ValidationError
from noknok.domain.models import (
    USERNAME_RULES,
    VALID_ROLES,
    User,
    UserRole,
    is_valid_username,
)
from noknok.infra.db.store import Store
from noknok.infra.observability.metrics import record_admin_mutation
from noknok.security.oauth import InvalidHandleError, OAuthGateway

logger = logging.getLogger(__name__)


class UserService:
    """Service for user management.

    Example:
        service = UserService(store, oauth, owner_did=settings.owner_did)
        user = await service.create_user(caller, handle="bob.example.com")
        await service.update_username(caller, user.id, "bob")
    """

    def __init__(self, store: Store, oauth: OAuthGateway, owner_did: str) -> None:
        self.store = store
        self.oauth = oauth
        self.owner_did = owner_did

    async def list_users(self) -> list[User]:
        return await self.store.list_users()

    async def create_user(
        self, caller: User, handle: str, role: str = "", username: str = ""
    ) -> User:
        """Resolve a handle and register the identity.

        Args:
            caller: Admin performing the change
            handle: Handle (or DID) to resolve
            role: Global role ("user" when empty)
            username: Optional internal username

        Raises:
            ValidationError: Missing handle, unknown role, bad username, or
                a handle that does not resolve
            PermissionDeniedError: Non-owner assigning an elevated role
            ConflictError: DID or username already registered
        """
        handle = handle.strip()
        if not handle:
            raise ValidationError("handle is required")
        role = role or UserRole.USER.value

        if caller.role != UserRole.OWNER.value and role != UserRole.USER.value:
            raise PermissionDeniedError("only owners can assign admin/owner roles")
        if role not in VALID_ROLES:
            raise ValidationError("invalid role", context={"role": role})

        try:
            did, resolved = await self.oauth.resolve_handle(handle)
        except InvalidHandleError as e:
            logger.warning(
                "Handle resolution failed", extra={"handle": handle, "error": str(e)}
            )
            raise ValidationError("could not resolve handle", context={"handle": handle}) from e

        if username and not is_valid_username(username):
            raise ValidationError(USERNAME_RULES)

        user = await self.store.create_user(did, resolved, role, username)
        record_admin_mutation("user_create")
        logger.info(
            "User created",
            extra={"did": did, "handle": resolved, "role": role, "by": caller.handle},
        )
        return user

    async def update_role(self, caller: User, user_id: int, role: str) -> User:
        if role not in VALID_ROLES:
            raise ValidationError("invalid role", context={"role": role})
        if caller.role != UserRole.OWNER.value and role != UserRole.USER.value:
            raise PermissionDeniedError("only owners can assign admin/owner roles")

        target = await self.store.get_user(user_id)
        if target.did == self.owner_did:
            raise PermissionDeniedError("cannot change seed owner role")

        user = await self.store.update_user_role(user_id, role)
        record_admin_mutation("user_role")
        logger.info(
            "User role updated",
            extra={"user_id": user_id, "role": role, "by": caller.handle},
        )
        return user

    async def update_username(self, caller: User, user_id: int, username: str) -> User:
        """Set (or clear) a username and push it onto the user's live sessions."""
        if username and not is_valid_username(username):
            raise ValidationError(USERNAME_RULES)

        user, sessions = await self.store.update_user_username(user_id, username)
        record_admin_mutation("user_username")
        logger.info(
            "User username updated",
            extra={
                "user_id": user_id,
                "username": username,
                "sessions_updated": sessions,
                "by": caller.handle,
            },
        )
        return user

    async def delete_user(self, caller: User, user_id: int) -> None:
        if user_id == caller.id:
            raise PermissionDeniedError("cannot delete yourself")

        target = await self.store.get_user(user_id)
        if target.did == self.owner_did:
            raise PermissionDeniedError("cannot delete seed owner")
        if caller.role != UserRole.OWNER.value and target.role != UserRole.USER.value:
            raise PermissionDeniedError("only owners can delete admins/owners")

        await self.store.delete_user(user_id)
        record_admin_mutation("user_delete")
        logger.info("User deleted", extra={"user_id": user_id, "by": caller.handle})
