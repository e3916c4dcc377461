"""Persistent store for users, services, grants and OAuth state.

Every operation opens its own transaction through the shared
DatabaseSessionManager and returns domain DTOs. Driver failures are
categorized into the domain taxonomy:

- NotFoundError: the referenced row does not exist
- ConflictError: a unique constraint would be violated
- StoreError: anything else the database raised

Session rows are owned by the session manager; the only session write here
is the username propagation that accompanies an admin username change.
"""

import logging
from collections.abc import AsyncGenerator, Iterable
from contextlib import asynccontextmanager
from datetime import datetime

from sqlalchemy import delete, not_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from noknok.domain.exceptions import ConflictError, DomainError, NotFoundError, StoreError
from noknok.domain.models import Grant, Service, ServiceSeed, User, UserRole
from noknok.infra.db import models as orm
from noknok.infra.db.models import utcnow
from noknok.infra.db.session import DatabaseSessionManager

logger = logging.getLogger(__name__)


class Store:
    """Relational store over the async session manager.

    Example:
        store = Store(get_session_manager())
        user = await store.find_user_by_did("did:plc:abc")
        service = await store.find_service_by_host("gitea.example.test")
    """

    def __init__(self, db: DatabaseSessionManager) -> None:
        self.db = db

    @asynccontextmanager
    async def _transaction(self, conflict_message: str = "conflict") -> AsyncGenerator[AsyncSession, None]:
        try:
            async with self.db.session() as session:
                yield session
        except DomainError:
            raise
        except IntegrityError as e:
            raise ConflictError(conflict_message, context={"error": str(e.orig)}) from e
        except SQLAlchemyError as e:
            logger.error("Store operation failed", exc_info=True, extra={"error": str(e)})
            raise StoreError("internal error", context={"error": str(e)}) from e

    # ========================================
    # Users
    # ========================================

    async def list_users(self) -> list[User]:
        async with self._transaction() as session:
            result = await session.execute(select(orm.User).order_by(orm.User.id))
            return [User.model_validate(row) for row in result.scalars().all()]

    async def get_user(self, user_id: int) -> User:
        """Get user by primary key.

        Raises:
            NotFoundError: If the user does not exist
        """
        async with self._transaction() as session:
            user = await session.get(orm.User, user_id)
            if user is None:
                raise NotFoundError("user not found", context={"user_id": user_id})
            return User.model_validate(user)

    async def find_user_by_did(self, did: str) -> User | None:
        async with self._transaction() as session:
            result = await session.execute(select(orm.User).where(orm.User.did == did))
            user = result.scalar_one_or_none()
            return User.model_validate(user) if user else None

    async def create_user(self, did: str, handle: str, role: str, username: str = "") -> User:
        """Insert a user.

        Raises:
            ConflictError: If the DID (or a non-empty username) is taken
        """
        async with self._transaction("user already exists") as session:
            existing = await session.execute(select(orm.User.id).where(orm.User.did == did))
            if existing.scalar_one_or_none() is not None:
                raise ConflictError("user already exists", context={"did": did})
            if username:
                await self._ensure_username_free(session, username)

            user = orm.User(did=did, handle=handle, role=role, username=username)
            session.add(user)
            await session.flush()
            await session.refresh(user)
            return User.model_validate(user)

    async def update_user_role(self, user_id: int, role: str) -> User:
        async with self._transaction() as session:
            user = await session.get(orm.User, user_id)
            if user is None:
                raise NotFoundError("user not found", context={"user_id": user_id})
            user.role = role
            user.updated_at = utcnow()
            await session.flush()
            return User.model_validate(user)

    async def update_user_username(self, user_id: int, username: str) -> tuple[User, int]:
        """Change a user's username and copy it onto their live sessions.

        Both writes happen in one transaction, so the next validation of any
        of the user's sessions observes the new value.

        Args:
            user_id: User primary key
            username: New username ("" clears it)

        Returns:
            Tuple of (updated user, number of sessions updated)

        Raises:
            NotFoundError: If the user does not exist
            ConflictError: If another user holds the username
        """
        async with self._transaction("username already taken") as session:
            user = await session.get(orm.User, user_id)
            if user is None:
                raise NotFoundError("user not found", context={"user_id": user_id})
            if username == user.username:
                return User.model_validate(user), 0
            if username:
                await self._ensure_username_free(session, username, exclude_id=user_id)

            user.username = username
            user.updated_at = utcnow()
            result = await session.execute(
                update(orm.UserSession)
                .where(orm.UserSession.did == user.did)
                .where(orm.UserSession.expires_at > utcnow())
                .values(username=username)
            )
            await session.flush()
            return User.model_validate(user), result.rowcount or 0

    async def delete_user(self, user_id: int) -> None:
        """Delete a user; grants and sessions go with it (FK cascade)."""
        async with self._transaction() as session:
            result = await session.execute(delete(orm.User).where(orm.User.id == user_id))
            if not result.rowcount:
                raise NotFoundError("user not found", context={"user_id": user_id})

    async def seed_owner(self, did: str, username: str = "") -> User:
        """Assert the bootstrap owner exists with role owner.

        An existing username is only overwritten by a non-empty one.
        """
        async with self._transaction() as session:
            result = await session.execute(select(orm.User).where(orm.User.did == did))
            user = result.scalar_one_or_none()
            if user is None:
                user = orm.User(did=did, handle="", role=UserRole.OWNER.value, username=username)
                session.add(user)
            else:
                user.role = UserRole.OWNER.value
                if username:
                    user.username = username
                user.updated_at = utcnow()
            await session.flush()
            await session.refresh(user)
            return User.model_validate(user)

    async def _ensure_username_free(
        self, session: AsyncSession, username: str, exclude_id: int | None = None
    ) -> None:
        query = select(orm.User.id).where(orm.User.username == username)
        if exclude_id is not None:
            query = query.where(orm.User.id != exclude_id)
        taken = await session.execute(query)
        if taken.first() is not None:
            raise ConflictError("username already taken", context={"username": username})

    # ========================================
    # Services
    # ========================================

    async def list_services(self) -> list[Service]:
        async with self._transaction() as session:
            result = await session.execute(select(orm.Service).order_by(orm.Service.id))
            return [Service.model_validate(row) for row in result.scalars().all()]

    async def list_public_services(self) -> list[Service]:
        async with self._transaction() as session:
            result = await session.execute(
                select(orm.Service)
                .where(orm.Service.public.is_(True))
                .where(orm.Service.enabled.is_(True))
                .order_by(orm.Service.id)
            )
            return [Service.model_validate(row) for row in result.scalars().all()]

    async def list_services_for_user(self, user_id: int) -> list[Service]:
        """Services the user holds a non-empty grant for."""
        async with self._transaction() as session:
            result = await session.execute(
                select(orm.Service)
                .join(orm.Grant, orm.Grant.service_id == orm.Service.id)
                .where(orm.Grant.user_id == user_id)
                .where(orm.Grant.role != "")
                .order_by(orm.Service.id)
            )
            return [Service.model_validate(row) for row in result.scalars().all()]

    async def find_service_by_host(self, host: str) -> Service | None:
        """First service (lowest id) whose URL contains ``host``.

        LIKE narrows the candidates; the final check is a case-sensitive
        substring test because SQLite's LIKE ignores ASCII case.
        """
        if not host:
            return None
        async with self._transaction() as session:
            result = await session.execute(
                select(orm.Service)
                .where(orm.Service.url.contains(host, autoescape=True))
                .order_by(orm.Service.id)
            )
            for service in result.scalars():
                if host in service.url:
                    return Service.model_validate(service)
            return None

    async def create_service(
        self,
        slug: str,
        name: str,
        url: str,
        description: str = "",
        icon_url: str = "",
        admin_role: str = "",
    ) -> Service:
        async with self._transaction("service slug already exists") as session:
            existing = await session.execute(
                select(orm.Service.id).where(orm.Service.slug == slug)
            )
            if existing.scalar_one_or_none() is not None:
                raise ConflictError("service slug already exists", context={"slug": slug})

            service = orm.Service(
                slug=slug,
                name=name,
                url=url,
                description=description,
                icon_url=icon_url,
                admin_role=admin_role or "admin",
            )
            session.add(service)
            await session.flush()
            await session.refresh(service)
            return Service.model_validate(service)

    async def update_service(
        self,
        service_id: int,
        name: str,
        url: str,
        description: str = "",
        icon_url: str = "",
        admin_role: str = "",
    ) -> Service:
        async with self._transaction() as session:
            service = await session.get(orm.Service, service_id)
            if service is None:
                raise NotFoundError("service not found", context={"service_id": service_id})
            service.name = name
            service.url = url
            service.description = description
            service.icon_url = icon_url
            service.admin_role = admin_role or "admin"
            await session.flush()
            return Service.model_validate(service)

    async def delete_service(self, service_id: int) -> None:
        async with self._transaction() as session:
            result = await session.execute(
                delete(orm.Service).where(orm.Service.id == service_id)
            )
            if not result.rowcount:
                raise NotFoundError("service not found", context={"service_id": service_id})

    async def toggle_service_enabled(self, service_id: int) -> bool:
        """Flip ``enabled`` in one statement and return the new value."""
        return await self._toggle(service_id, orm.Service.enabled)

    async def toggle_service_public(self, service_id: int) -> bool:
        """Flip ``public`` in one statement and return the new value."""
        return await self._toggle(service_id, orm.Service.public)

    async def _toggle(self, service_id: int, column) -> bool:
        async with self._transaction() as session:
            result = await session.execute(
                update(orm.Service)
                .where(orm.Service.id == service_id)
                .values({column.key: not_(column)})
                .returning(column)
            )
            value = result.scalar_one_or_none()
            if value is None:
                raise NotFoundError("service not found", context={"service_id": service_id})
            return bool(value)

    async def seed_services(self, seeds: Iterable[ServiceSeed]) -> int:
        """Upsert catalog records by slug.

        Re-seeding a slug updates name, description, url, icon_url and
        admin_role; enabled/public flags set by admins are kept.

        Returns:
            Number of records applied
        """
        count = 0
        async with self._transaction() as session:
            for seed in seeds:
                result = await session.execute(
                    select(orm.Service).where(orm.Service.slug == seed.slug)
                )
                service = result.scalar_one_or_none()
                if service is None:
                    service = orm.Service(slug=seed.slug)
                    session.add(service)
                service.name = seed.name
                service.description = seed.description
                service.url = seed.url
                service.icon_url = seed.icon_url
                service.admin_role = seed.admin_role or "admin"
                count += 1
            await session.flush()
        return count

    # ========================================
    # Grants
    # ========================================

    async def list_grants(self) -> list[Grant]:
        async with self._transaction() as session:
            result = await session.execute(
                select(orm.Grant, orm.User.handle, orm.Service.name)
                .join(orm.User, orm.Grant.user_id == orm.User.id)
                .join(orm.Service, orm.Grant.service_id == orm.Service.id)
                .order_by(orm.Grant.id)
            )
            return [
                _grant_dto(grant, user_handle, service_name)
                for grant, user_handle, service_name in result.all()
            ]

    async def get_grant_role(self, user_id: int, service_id: int) -> str | None:
        async with self._transaction() as session:
            result = await session.execute(
                select(orm.Grant.role)
                .where(orm.Grant.user_id == user_id)
                .where(orm.Grant.service_id == service_id)
            )
            return result.scalar_one_or_none()

    async def upsert_grant(
        self, user_id: int, service_id: int, role: str, granted_by: int | None = None
    ) -> Grant:
        """Insert the (user, service) grant or update its role.

        Raises:
            NotFoundError: If the user or the service does not exist
        """
        async with self._transaction() as session:
            user = await session.get(orm.User, user_id)
            if user is None:
                raise NotFoundError("user not found", context={"user_id": user_id})
            service = await session.get(orm.Service, service_id)
            if service is None:
                raise NotFoundError("service not found", context={"service_id": service_id})

            result = await session.execute(
                select(orm.Grant)
                .where(orm.Grant.user_id == user_id)
                .where(orm.Grant.service_id == service_id)
            )
            grant = result.scalar_one_or_none()
            if grant is None:
                grant = orm.Grant(
                    user_id=user_id, service_id=service_id, role=role, granted_by=granted_by
                )
                session.add(grant)
            else:
                grant.role = role
                grant.granted_by = granted_by
            await session.flush()
            await session.refresh(grant)
            return _grant_dto(grant, user.handle, service.name)

    async def delete_grant(self, grant_id: int) -> None:
        async with self._transaction() as session:
            result = await session.execute(delete(orm.Grant).where(orm.Grant.id == grant_id))
            if not result.rowcount:
                raise NotFoundError("grant not found", context={"grant_id": grant_id})

    # ========================================
    # OAuth state
    # ========================================

    async def save_oauth_request(self, record: orm.OAuthRequest) -> None:
        async with self._transaction("duplicate oauth state") as session:
            session.add(record)

    async def pop_oauth_request(self, state: str) -> orm.OAuthRequest | None:
        """Fetch and delete the transient record for ``state``."""
        async with self._transaction() as session:
            record = await session.get(orm.OAuthRequest, state)
            if record is None:
                return None
            await session.delete(record)
            return record

    async def delete_expired_oauth_requests(self, now: datetime | None = None) -> int:
        async with self._transaction() as session:
            result = await session.execute(
                delete(orm.OAuthRequest).where(orm.OAuthRequest.expires_at <= (now or utcnow()))
            )
            return result.rowcount or 0

    async def save_oauth_session(self, record: orm.OAuthSession) -> None:
        async with self._transaction() as session:
            await session.merge(record)

    async def get_oauth_session(self, did: str) -> orm.OAuthSession | None:
        async with self._transaction() as session:
            return await session.get(orm.OAuthSession, did)


def _grant_dto(grant: orm.Grant, user_handle: str, service_name: str) -> Grant:
    return Grant(
        id=grant.id,
        user_id=grant.user_id,
        service_id=grant.service_id,
        role=grant.role,
        granted_by=grant.granted_by,
        created_at=grant.created_at,
        user_handle=user_handle,
        service_name=service_name,
    )
