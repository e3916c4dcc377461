"""Tests for grouped browser sessions."""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select, update
from starlette.responses import Response

from noknok.infra.db.models import UserSession, utcnow
from noknok.infra.session import COOKIE_NAME, SessionManager, SessionNotFoundError


async def _expire(db, token: str) -> None:
    async with db.session() as session:
        await session.execute(
            update(UserSession)
            .where(UserSession.token == token)
            .values(expires_at=utcnow() - timedelta(minutes=1))
        )


@pytest.fixture
async def alice(store):
    return await store.create_user("did:plc:alice", "alice.test", "user", username="alice")


@pytest.fixture
async def bob(store):
    return await store.create_user("did:plc:bob", "bob.test", "user")


class TestCreateAndValidate:
    """Tests for session creation and validation."""

    @pytest.mark.asyncio
    async def test_create_returns_cookie(self, sessions: SessionManager, alice, settings) -> None:
        cookie = await sessions.create(alice.id, alice.did, "alice.test")

        assert len(cookie.value) == 64
        int(cookie.value, 16)
        assert cookie.domain == ".example.test"
        assert cookie.secure is True
        assert cookie.clear is False
        assert cookie.expires is not None

        record = await sessions.validate(cookie.value)
        assert record.did == alice.did
        assert record.username == "alice"
        assert record.group_id
        assert record.expires_at - record.created_at == settings.session_ttl

    @pytest.mark.asyncio
    async def test_tokens_are_unique(self, sessions: SessionManager, alice) -> None:
        first = await sessions.create(alice.id, alice.did, "alice.test")
        second = await sessions.create(alice.id, alice.did, "alice.test")
        assert first.value != second.value

    @pytest.mark.asyncio
    async def test_create_refreshes_handle(self, sessions: SessionManager, store, alice) -> None:
        await sessions.create(alice.id, alice.did, "alice.new.test")
        user = await store.get_user(alice.id)
        assert user.handle == "alice.new.test"

    @pytest.mark.asyncio
    async def test_validate_rejects_unknown_and_empty(self, sessions: SessionManager) -> None:
        with pytest.raises(SessionNotFoundError):
            await sessions.validate("")
        with pytest.raises(SessionNotFoundError):
            await sessions.validate("f" * 64)

    @pytest.mark.asyncio
    async def test_validate_rejects_expired(self, sessions: SessionManager, db, alice) -> None:
        cookie = await sessions.create(alice.id, alice.did, "alice.test")
        await _expire(db, cookie.value)
        with pytest.raises(SessionNotFoundError):
            await sessions.validate(cookie.value)

    @pytest.mark.asyncio
    async def test_validate_moves_last_seen(self, sessions: SessionManager, db, alice) -> None:
        cookie = await sessions.create(alice.id, alice.did, "alice.test")
        past = utcnow() - timedelta(hours=1)
        async with db.session() as session:
            await session.execute(
                update(UserSession).where(UserSession.token == cookie.value).values(last_seen=past)
            )

        await sessions.validate(cookie.value)
        await sessions.drain()

        record = await sessions.validate(cookie.value)
        assert record.last_seen > past + timedelta(minutes=59)


class TestGroups:
    """Tests for multi-identity session groups."""

    @pytest.mark.asyncio
    async def test_join_group_and_list(self, sessions: SessionManager, alice, bob) -> None:
        first = await sessions.create(alice.id, alice.did, "alice.test")
        group_id = (await sessions.validate(first.value)).group_id
        await sessions.create(bob.id, bob.did, "bob.test", group_id)

        group = await sessions.list_group(group_id)
        assert [member.did for member in group] == [alice.did, bob.did]
        assert await sessions.list_group("") == []

    @pytest.mark.asyncio
    async def test_group_has_did(self, sessions: SessionManager, alice, bob) -> None:
        first = await sessions.create(alice.id, alice.did, "alice.test")
        record = await sessions.validate(first.value)

        member = await sessions.group_has_did(record.group_id, alice.did)
        assert member == (record.id, record.token)
        assert await sessions.group_has_did(record.group_id, bob.did) is None
        assert await sessions.group_has_did("", alice.did) is None

    @pytest.mark.asyncio
    async def test_switch_to_member(self, sessions: SessionManager, alice, bob) -> None:
        first = await sessions.create(alice.id, alice.did, "alice.test")
        group_id = (await sessions.validate(first.value)).group_id
        second = await sessions.create(bob.id, bob.did, "bob.test", group_id)
        bob_record = await sessions.validate(second.value)

        cookie = await sessions.switch_to(group_id, bob_record.id)
        assert cookie.value == second.value

    @pytest.mark.asyncio
    async def test_switch_rejects_other_group(self, sessions: SessionManager, alice, bob) -> None:
        first = await sessions.create(alice.id, alice.did, "alice.test")
        other = await sessions.create(bob.id, bob.did, "bob.test")
        group_id = (await sessions.validate(first.value)).group_id
        other_id = (await sessions.validate(other.value)).id

        with pytest.raises(SessionNotFoundError):
            await sessions.switch_to(group_id, other_id)

    @pytest.mark.asyncio
    async def test_switch_rejects_expired(self, sessions: SessionManager, db, alice, bob) -> None:
        first = await sessions.create(alice.id, alice.did, "alice.test")
        group_id = (await sessions.validate(first.value)).group_id
        second = await sessions.create(bob.id, bob.did, "bob.test", group_id)
        bob_id = (await sessions.validate(second.value)).id
        await _expire(db, second.value)

        with pytest.raises(SessionNotFoundError):
            await sessions.switch_to(group_id, bob_id)

    @pytest.mark.asyncio
    async def test_destroy_inactive_member(self, sessions: SessionManager, alice, bob) -> None:
        first = await sessions.create(alice.id, alice.did, "alice.test")
        group_id = (await sessions.validate(first.value)).group_id
        second = await sessions.create(bob.id, bob.did, "bob.test", group_id)
        bob_id = (await sessions.validate(second.value)).id

        assert await sessions.destroy_one(group_id, bob_id, was_active=False) is None
        assert [m.did for m in await sessions.list_group(group_id)] == [alice.did]

    @pytest.mark.asyncio
    async def test_destroy_active_falls_back_to_earliest(
        self, sessions: SessionManager, alice, bob
    ) -> None:
        first = await sessions.create(alice.id, alice.did, "alice.test")
        group_id = (await sessions.validate(first.value)).group_id
        second = await sessions.create(bob.id, bob.did, "bob.test", group_id)
        bob_id = (await sessions.validate(second.value)).id

        cookie = await sessions.destroy_one(group_id, bob_id, was_active=True)
        assert cookie is not None
        assert cookie.value == first.value

    @pytest.mark.asyncio
    async def test_destroy_last_member_clears_cookie(self, sessions: SessionManager, alice) -> None:
        first = await sessions.create(alice.id, alice.did, "alice.test")
        record = await sessions.validate(first.value)

        cookie = await sessions.destroy_one(record.group_id, record.id, was_active=True)
        assert cookie is not None
        assert cookie.clear is True

    @pytest.mark.asyncio
    async def test_destroy_group(self, sessions: SessionManager, alice, bob) -> None:
        first = await sessions.create(alice.id, alice.did, "alice.test")
        group_id = (await sessions.validate(first.value)).group_id
        await sessions.create(bob.id, bob.did, "bob.test", group_id)

        assert await sessions.destroy_group(group_id) == 2
        assert await sessions.list_group(group_id) == []
        assert await sessions.destroy_group("") == 0

    @pytest.mark.asyncio
    async def test_same_did_in_group_reuses_session(
        self, sessions: SessionManager, alice, bob
    ) -> None:
        first = await sessions.create(alice.id, alice.did, "alice.test")
        group_id = (await sessions.validate(first.value)).group_id
        second = await sessions.create(bob.id, bob.did, "bob.test", group_id)

        again = await sessions.create(bob.id, bob.did, "bob.test", group_id)

        assert again.value == second.value
        group = await sessions.list_group(group_id)
        assert [member.did for member in group] == [alice.did, bob.did]

    @pytest.mark.asyncio
    async def test_concurrent_sign_ins_keep_one_session_per_did(
        self, sessions: SessionManager, alice, bob
    ) -> None:
        first = await sessions.create(alice.id, alice.did, "alice.test")
        group_id = (await sessions.validate(first.value)).group_id

        cookies = await asyncio.gather(
            sessions.create(bob.id, bob.did, "bob.test", group_id),
            sessions.create(bob.id, bob.did, "bob.test", group_id),
        )

        assert cookies[0].value == cookies[1].value
        group = await sessions.list_group(group_id)
        assert [member.did for member in group] == [alice.did, bob.did]

    @pytest.mark.asyncio
    async def test_expired_member_replaced(self, sessions: SessionManager, db, alice, bob) -> None:
        first = await sessions.create(alice.id, alice.did, "alice.test")
        group_id = (await sessions.validate(first.value)).group_id
        stale = await sessions.create(bob.id, bob.did, "bob.test", group_id)
        await _expire(db, stale.value)

        fresh = await sessions.create(bob.id, bob.did, "bob.test", group_id)

        assert fresh.value != stale.value
        async with db.session() as session:
            result = await session.execute(
                select(UserSession.token)
                .where(UserSession.group_id == group_id)
                .where(UserSession.did == bob.did)
            )
            assert result.scalars().all() == [fresh.value]


class TestCleanup:
    """Tests for the expired session sweep."""

    @pytest.mark.asyncio
    async def test_cleanup_removes_only_expired(self, sessions: SessionManager, db, alice) -> None:
        live = await sessions.create(alice.id, alice.did, "alice.test")
        dead = await sessions.create(alice.id, alice.did, "alice.test")
        await _expire(db, dead.value)

        assert await sessions.cleanup_expired() == 1

        async with db.session() as session:
            result = await session.execute(select(UserSession.token))
            assert [row[0] for row in result.all()] == [live.value]


class TestSessionCookie:
    """Tests for cookie rendering."""

    @pytest.mark.asyncio
    async def test_apply_sets_attributes(self, sessions: SessionManager, alice) -> None:
        cookie = await sessions.create(alice.id, alice.did, "alice.test")
        response = Response()
        cookie.apply(response)

        header = response.headers["set-cookie"]
        assert header.startswith(f"{COOKIE_NAME}={cookie.value}")
        assert "Domain=.example.test" in header
        assert "HttpOnly" in header
        assert "Secure" in header
        assert "SameSite=lax" in header
        assert "Path=/" in header

    @pytest.mark.asyncio
    async def test_clear_cookie(self, sessions: SessionManager) -> None:
        response = Response()
        sessions.clear_cookie().apply(response)
        header = response.headers["set-cookie"]
        assert "Max-Age=0" in header
        assert "Domain=.example.test" in header

    @pytest.mark.asyncio
    async def test_host_only_cookie_for_unknown_domain(self, sessions: SessionManager) -> None:
        cookie = sessions.make_cookie_for_domain("ab" * 32, utcnow(), None)
        response = Response()
        cookie.apply(response)
        assert "Domain" not in response.headers["set-cookie"]
