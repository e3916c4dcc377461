"""SQLAlchemy ORM models for noknok.

This module defines the database schema using SQLAlchemy 2.x ORM models.
All models support both SQLite (development, tests) and PostgreSQL
(production).

Design Principles:
- Domain models are kept separate (no SQLAlchemy in noknok/domain/)
- All timestamps are timezone-aware UTC, filled in by Python so that
  ordering and expiry comparisons behave the same on both backends
- Cascade deletes from users and services to grants and sessions
- Username uniqueness is enforced only over non-empty values
"""

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# SQLite only auto-increments INTEGER PRIMARY KEY columns
BigIntPK = BigInteger().with_variant(Integer, "sqlite")


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all database models.

    Provides:
    - Async attribute loading via AsyncAttrs
    - Common created_at timestamp
    """

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
        comment="Record creation timestamp",
    )


class User(Base):
    """An identity allowed to sign in.

    The DID is the durable key; handle and username are display values.
    """

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)

    did: Mapped[str] = mapped_column(
        String(255), nullable=False, unique=True, comment="Decentralized identifier"
    )

    handle: Mapped[str] = mapped_column(
        String(255), nullable=False, default="", server_default="", comment="Last seen handle"
    )

    username: Mapped[str] = mapped_column(
        String(39),
        nullable=False,
        default="",
        server_default="",
        comment="Internal username forwarded as X-WEBAUTH-USER",
    )

    role: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default="user",
        server_default="user",
        comment="Global role: owner/admin/user",
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        server_default=func.now(),
        nullable=False,
        comment="Record last update timestamp",
    )

    __table_args__ = (
        Index(
            "uq_users_username",
            "username",
            unique=True,
            postgresql_where=text("username <> ''"),
            sqlite_where=text("username <> ''"),
        ),
    )


class Service(Base):
    """A backend behind the proxy, matched to requests by URL host."""

    __tablename__ = "services"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)

    slug: Mapped[str] = mapped_column(
        String(64), nullable=False, unique=True, comment="Immutable identifier"
    )

    name: Mapped[str] = mapped_column(String(255), nullable=False)

    description: Mapped[str] = mapped_column(
        Text, nullable=False, default="", server_default=""
    )

    url: Mapped[str] = mapped_column(
        String(1024), nullable=False, comment="Upstream URL, host-matched for authorization"
    )

    icon_url: Mapped[str] = mapped_column(
        String(1024), nullable=False, default="", server_default=""
    )

    admin_role: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        default="admin",
        server_default="admin",
        comment="Role label returned to global owners/admins",
    )

    enabled: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        server_default=text("true"),
        comment="Operational kill-switch, checked before any session",
    )

    public: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=text("false"),
        comment="Advertised on the login page",
    )


class Grant(Base):
    """Explicit (user, service) authorization carrying a role label."""

    __tablename__ = "grants"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)

    user_id: Mapped[int] = mapped_column(
        BigIntPK, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )

    service_id: Mapped[int] = mapped_column(
        BigIntPK, ForeignKey("services.id", ondelete="CASCADE"), nullable=False
    )

    role: Mapped[str] = mapped_column(
        String(64), nullable=False, default="user", server_default="user"
    )

    granted_by: Mapped[int | None] = mapped_column(
        BigIntPK, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )

    __table_args__ = (
        UniqueConstraint("user_id", "service_id", name="uq_grants_user_service"),
        Index("idx_grants_service", "service_id"),
    )


class UserSession(Base):
    """Server-side browser session."""

    __tablename__ = "sessions"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)

    token: Mapped[str] = mapped_column(
        String(64), nullable=False, unique=True, comment="Hex-encoded 256-bit bearer token"
    )

    user_id: Mapped[int | None] = mapped_column(
        BigIntPK, ForeignKey("users.id", ondelete="CASCADE"), nullable=True
    )

    did: Mapped[str] = mapped_column(String(255), nullable=False)

    handle: Mapped[str] = mapped_column(String(255), nullable=False, default="")

    username: Mapped[str] = mapped_column(
        String(39), nullable=False, default="", server_default=""
    )

    group_id: Mapped[str] = mapped_column(
        String(36), nullable=False, default="", server_default="", comment="Browser group UUID"
    )

    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    last_seen: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )

    __table_args__ = (
        Index(
            "uq_sessions_group_did",
            "group_id",
            "did",
            unique=True,
            postgresql_where=text("group_id <> ''"),
            sqlite_where=text("group_id <> ''"),
        ),
        Index("idx_sessions_group", "group_id"),
        Index("idx_sessions_did", "did"),
        Index("idx_sessions_expires", "expires_at"),
    )


class OAuthRequest(Base):
    """OAuth authorization request state with PKCE and DPoP parameters.

    Written at login start, consumed at callback.
    """

    __tablename__ = "oauth_requests"

    state: Mapped[str] = mapped_column(String(128), primary_key=True)

    issuer: Mapped[str] = mapped_column(String(512), nullable=False)

    did: Mapped[str | None] = mapped_column(String(255), nullable=True)

    handle: Mapped[str] = mapped_column(String(255), nullable=False, default="")

    pds_url: Mapped[str] = mapped_column(String(512), nullable=False, default="")

    authorization_endpoint: Mapped[str] = mapped_column(String(512), nullable=False)

    token_endpoint: Mapped[str] = mapped_column(String(512), nullable=False)

    pkce_verifier: Mapped[str] = mapped_column(String(128), nullable=False)

    dpop_jwk: Mapped[Any] = mapped_column(JSON, nullable=False)

    dpop_nonce: Mapped[str] = mapped_column(String(512), nullable=False, default="")

    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class OAuthSession(Base):
    """Per-DID OAuth tokens and DPoP key obtained at the last login."""

    __tablename__ = "oauth_sessions"

    did: Mapped[str] = mapped_column(String(255), primary_key=True)

    handle: Mapped[str] = mapped_column(String(255), nullable=False, default="")

    issuer: Mapped[str] = mapped_column(String(512), nullable=False)

    pds_url: Mapped[str] = mapped_column(String(512), nullable=False, default="")

    token_endpoint: Mapped[str] = mapped_column(String(512), nullable=False, default="")

    access_token: Mapped[str] = mapped_column(Text, nullable=False)

    refresh_token: Mapped[str] = mapped_column(Text, nullable=False, default="")

    scope: Mapped[str] = mapped_column(String(255), nullable=False, default="")

    dpop_jwk: Mapped[Any] = mapped_column(JSON, nullable=False)

    dpop_nonce: Mapped[str] = mapped_column(String(512), nullable=False, default="")

    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        server_default=func.now(),
        nullable=False,
    )
