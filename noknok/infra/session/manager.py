"""Server-side browser sessions with multi-identity grouping.

A browser holds one cookie naming its active session. Every session also
carries a group id shared by all identities signed in from that browser,
so the portal can switch between them without a new OAuth round trip.

Sessions are rows in the ``sessions`` table. A session is valid while its
token exists and ``expires_at`` lies in the future; expired rows are swept
by a scheduled cleanup job.

Example:
    manager = SessionManager(get_session_manager(), settings)

    cookie = await manager.create(user.id, user.did, "alice.example.com")
    cookie.apply(response)

    record = await manager.validate(request.cookies[COOKIE_NAME])
"""

import asyncio
import logging
import secrets
import uuid
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.responses import Response

from noknok.config import Settings
from noknok.domain.exceptions import NotFoundError, StoreError
from noknok.domain.models import SessionRecord
from noknok.infra.db.models import User, UserSession, as_utc, utcnow
from noknok.infra.db.session import DatabaseSessionManager

logger = logging.getLogger(__name__)

COOKIE_NAME = "noknok_session"

# Bound on the detached last_seen write
LAST_SEEN_TIMEOUT_SECONDS = 5.0


class SessionNotFoundError(NotFoundError):
    """Token unknown, expired, or not part of the expected group."""


@dataclass(frozen=True)
class SessionCookie:
    """Session cookie to attach to a response.

    Attributes:
        value: Session token ("" when clearing)
        domain: Cookie domain (None for a host-only cookie)
        expires: Absolute expiry, or None when clearing
        secure: Whether the Secure attribute is set
        clear: Whether this cookie deletes the browser's session cookie
    """

    value: str
    domain: str | None
    expires: datetime | None
    secure: bool
    clear: bool = False
    name: str = COOKIE_NAME
    path: str = "/"

    def apply(self, response: Response) -> None:
        if self.clear:
            response.set_cookie(
                self.name,
                "",
                max_age=0,
                expires=0,
                path=self.path,
                domain=self.domain,
                secure=self.secure,
                httponly=True,
                samesite="lax",
            )
            return
        response.set_cookie(
            self.name,
            self.value,
            expires=self.expires,
            path=self.path,
            domain=self.domain,
            secure=self.secure,
            httponly=True,
            samesite="lax",
        )


def generate_token() -> str:
    """32 random bytes, hex encoded."""
    return secrets.token_hex(32)


def _to_record(row: UserSession) -> SessionRecord:
    return SessionRecord(
        id=row.id,
        token=row.token,
        user_id=row.user_id,
        did=row.did,
        handle=row.handle,
        username=row.username,
        group_id=row.group_id or "",
        created_at=as_utc(row.created_at),
        expires_at=as_utc(row.expires_at),
        last_seen=as_utc(row.last_seen),
    )


class SessionManager:
    """Creates, validates, switches and destroys browser sessions."""

    def __init__(self, db: DatabaseSessionManager, settings: Settings) -> None:
        self.db = db
        self.ttl = settings.session_ttl
        self.cookie_domain = settings.cookie_domain or None
        self.secure = settings.secure_cookies
        self._pending: set[asyncio.Task] = set()

    @asynccontextmanager
    async def _session(self) -> AsyncGenerator[AsyncSession, None]:
        try:
            async with self.db.session() as session:
                yield session
        except SQLAlchemyError as e:
            logger.error("Session store operation failed", exc_info=True)
            raise StoreError("session store failure", context={"error": str(e)}) from e

    async def create(
        self, user_id: int, did: str, handle: str, group_id: str = ""
    ) -> SessionCookie:
        """Insert a new session for ``did`` and return its cookie.

        A group holds at most one session per DID. When a concurrent sign-in
        already inserted one, that session is reused instead.

        Args:
            user_id: Owning user
            did: Identity DID
            handle: Handle observed at login
            group_id: Existing browser group to join ("" starts a new group)

        Returns:
            Cookie for the primary cookie domain
        """
        token = generate_token()
        if not group_id:
            group_id = str(uuid.uuid4())

        now = utcnow()
        expires_at = now + self.ttl
        duplicate = False
        async with self._session() as session:
            # Expired leftovers of the same identity would block the insert
            await session.execute(
                delete(UserSession)
                .where(UserSession.group_id == group_id)
                .where(UserSession.did == did)
                .where(UserSession.expires_at <= now)
            )
            user = await session.get(User, user_id)
            username = user.username if user is not None else ""
            session.add(
                UserSession(
                    token=token,
                    user_id=user_id,
                    did=did,
                    handle=handle,
                    username=username,
                    group_id=group_id,
                    created_at=now,
                    expires_at=expires_at,
                    last_seen=now,
                )
            )
            try:
                await session.flush()
            except IntegrityError:
                await session.rollback()
                duplicate = True
            else:
                if user is not None and handle and user.handle != handle:
                    user.handle = handle

        if duplicate:
            return await self._reuse_group_session(group_id, did)

        logger.info(
            "Session created",
            extra={"did": did, "handle": handle, "group_id": group_id},
        )
        return self._make_cookie(token, expires_at, self.cookie_domain)

    async def _reuse_group_session(self, group_id: str, did: str) -> SessionCookie:
        member = await self.group_has_did(group_id, did)
        if member is None:
            raise StoreError(
                "session insert conflicted", context={"group_id": group_id, "did": did}
            )
        logger.info(
            "Concurrent sign-in reused existing session",
            extra={"did": did, "group_id": group_id, "session_id": member[0]},
        )
        return await self.switch_to(group_id, member[0])

    async def validate(self, token: str) -> SessionRecord:
        """Look up a live session by token.

        On success a detached task moves ``last_seen`` forward.

        Raises:
            SessionNotFoundError: If the token is unknown or expired
        """
        if not token:
            raise SessionNotFoundError("invalid session")
        async with self._session() as session:
            result = await session.execute(
                select(UserSession)
                .where(UserSession.token == token)
                .where(UserSession.expires_at > utcnow())
            )
            row = result.scalar_one_or_none()
            if row is None:
                raise SessionNotFoundError("invalid session")
            record = _to_record(row)

        self._schedule_touch(token)
        return record

    def _schedule_touch(self, token: str) -> None:
        task = asyncio.create_task(self._touch(token))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _touch(self, token: str) -> None:
        try:
            await asyncio.wait_for(self._update_last_seen(token), LAST_SEEN_TIMEOUT_SECONDS)
        except Exception:
            logger.warning("Failed to update session last_seen", exc_info=True)

    async def _update_last_seen(self, token: str) -> None:
        now = utcnow()
        async with self._session() as session:
            await session.execute(
                update(UserSession)
                .where(UserSession.token == token)
                .where(UserSession.last_seen < now)
                .values(last_seen=now)
            )

    async def drain(self) -> None:
        """Wait for outstanding last_seen updates."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def list_group(self, group_id: str) -> list[SessionRecord]:
        """Live sessions of a group ordered by creation time."""
        if not group_id:
            return []
        async with self._session() as session:
            result = await session.execute(
                select(UserSession)
                .where(UserSession.group_id == group_id)
                .where(UserSession.expires_at > utcnow())
                .order_by(UserSession.created_at, UserSession.id)
            )
            return [_to_record(row) for row in result.scalars().all()]

    async def group_has_did(self, group_id: str, did: str) -> tuple[int, str] | None:
        """Return (session_id, token) of the group's live session for ``did``."""
        if not group_id:
            return None
        async with self._session() as session:
            result = await session.execute(
                select(UserSession.id, UserSession.token)
                .where(UserSession.group_id == group_id)
                .where(UserSession.did == did)
                .where(UserSession.expires_at > utcnow())
                .order_by(UserSession.created_at, UserSession.id)
                .limit(1)
            )
            row = result.first()
            return (row.id, row.token) if row else None

    async def switch_to(self, group_id: str, session_id: int) -> SessionCookie:
        """Make another live session of the group the active one.

        Raises:
            SessionNotFoundError: If the session is not a live member of the group
        """
        async with self._session() as session:
            result = await session.execute(
                select(UserSession.token, UserSession.expires_at)
                .where(UserSession.id == session_id)
                .where(UserSession.group_id == group_id)
                .where(UserSession.expires_at > utcnow())
            )
            row = result.first()
        if row is None or not group_id:
            raise SessionNotFoundError(
                "session not found in group",
                context={"group_id": group_id, "session_id": session_id},
            )
        return self._make_cookie(row.token, as_utc(row.expires_at), self.cookie_domain)

    async def destroy_one(
        self, group_id: str, session_id: int, was_active: bool
    ) -> SessionCookie | None:
        """Delete one session of a group.

        Args:
            group_id: Group the session must belong to
            session_id: Session to delete
            was_active: Whether the browser's cookie points at that session

        Returns:
            None when the active session is unaffected, otherwise a cookie for
            the earliest remaining live session, or a clearing cookie
        """
        async with self._session() as session:
            await session.execute(
                delete(UserSession)
                .where(UserSession.id == session_id)
                .where(UserSession.group_id == group_id)
            )

        if not was_active:
            return None

        async with self._session() as session:
            result = await session.execute(
                select(UserSession.token, UserSession.expires_at)
                .where(UserSession.group_id == group_id)
                .where(UserSession.expires_at > utcnow())
                .order_by(UserSession.created_at, UserSession.id)
                .limit(1)
            )
            row = result.first()
        if row is None:
            return self.clear_cookie()
        return self._make_cookie(row.token, as_utc(row.expires_at), self.cookie_domain)

    async def destroy_group(self, group_id: str) -> int:
        if not group_id:
            return 0
        async with self._session() as session:
            result = await session.execute(
                delete(UserSession).where(UserSession.group_id == group_id)
            )
            deleted = result.rowcount or 0
        logger.info("Session group destroyed", extra={"group_id": group_id, "count": deleted})
        return deleted

    async def destroy(self, token: str) -> None:
        async with self._session() as session:
            await session.execute(delete(UserSession).where(UserSession.token == token))

    async def cleanup_expired(self) -> int:
        """Delete every session whose expiry has passed.

        Returns:
            Number of rows deleted
        """
        async with self._session() as session:
            result = await session.execute(
                delete(UserSession).where(UserSession.expires_at <= utcnow())
            )
            deleted = result.rowcount or 0
        if deleted:
            logger.info("Cleaned up expired sessions", extra={"count": deleted})
        return deleted

    def clear_cookie(self) -> SessionCookie:
        return self.clear_cookie_for_domain(self.cookie_domain)

    def make_cookie_for_domain(
        self, token: str, expires_at: datetime, domain: str | None
    ) -> SessionCookie:
        return self._make_cookie(token, expires_at, domain)

    def clear_cookie_for_domain(self, domain: str | None) -> SessionCookie:
        return SessionCookie(
            value="", domain=domain, expires=None, secure=self.secure, clear=True
        )

    def _make_cookie(self, token: str, expires_at: datetime, domain: str | None) -> SessionCookie:
        return SessionCookie(value=token, domain=domain, expires=expires_at, secure=self.secure)
