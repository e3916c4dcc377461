"""Tests for user administration rules."""

import pytest

from noknok.domain.exceptions import (
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from noknok.domain.services.user import UserService

SEED_OWNER = "did:plc:seed"


@pytest.fixture
def users(store, fake_oauth) -> UserService:
    fake_oauth.identities["bob.test"] = ("did:plc:bob", "bob.test")
    fake_oauth.identities["carol.test"] = ("did:plc:carol", "carol.test")
    return UserService(store, fake_oauth, owner_did=SEED_OWNER)


@pytest.fixture
async def owner(store):
    return await store.seed_owner(SEED_OWNER)


@pytest.fixture
async def admin(store):
    return await store.create_user("did:plc:admin", "admin.test", "admin")


class TestCreateUser:
    """Tests for UserService.create_user."""

    @pytest.mark.asyncio
    async def test_defaults_to_user_role(self, users, owner) -> None:
        user = await users.create_user(owner, " bob.test ")
        assert user.did == "did:plc:bob"
        assert user.handle == "bob.test"
        assert user.role == "user"

    @pytest.mark.asyncio
    async def test_owner_can_create_admin(self, users, owner) -> None:
        user = await users.create_user(owner, "bob.test", role="admin", username="bob")
        assert user.role == "admin"
        assert user.username == "bob"

    @pytest.mark.asyncio
    async def test_admin_cannot_create_admin(self, users, admin) -> None:
        with pytest.raises(PermissionDeniedError, match="only owners"):
            await users.create_user(admin, "bob.test", role="admin")

    @pytest.mark.asyncio
    async def test_requires_handle(self, users, owner) -> None:
        with pytest.raises(ValidationError, match="handle is required"):
            await users.create_user(owner, "   ")

    @pytest.mark.asyncio
    async def test_invalid_role(self, users, owner) -> None:
        with pytest.raises(ValidationError, match="invalid role"):
            await users.create_user(owner, "bob.test", role="root")

    @pytest.mark.asyncio
    async def test_unresolvable_handle(self, users, owner) -> None:
        with pytest.raises(ValidationError, match="could not resolve handle"):
            await users.create_user(owner, "ghost.test")

    @pytest.mark.asyncio
    async def test_invalid_username(self, users, owner) -> None:
        with pytest.raises(ValidationError, match="invalid username"):
            await users.create_user(owner, "bob.test", username="bob smith")

    @pytest.mark.asyncio
    async def test_duplicate(self, users, owner) -> None:
        await users.create_user(owner, "bob.test")
        with pytest.raises(ConflictError):
            await users.create_user(owner, "bob.test")


class TestUpdateRole:
    """Tests for UserService.update_role."""

    @pytest.mark.asyncio
    async def test_owner_promotes(self, users, owner) -> None:
        bob = await users.create_user(owner, "bob.test")
        assert (await users.update_role(owner, bob.id, "admin")).role == "admin"

    @pytest.mark.asyncio
    async def test_admin_may_only_assign_user(self, users, owner, admin) -> None:
        bob = await users.create_user(owner, "bob.test", role="admin")
        with pytest.raises(PermissionDeniedError):
            await users.update_role(admin, bob.id, "owner")
        assert (await users.update_role(admin, bob.id, "user")).role == "user"

    @pytest.mark.asyncio
    async def test_seed_owner_role_is_fixed(self, users, owner) -> None:
        with pytest.raises(PermissionDeniedError, match="cannot change seed owner role"):
            await users.update_role(owner, owner.id, "user")

    @pytest.mark.asyncio
    async def test_invalid_role(self, users, owner) -> None:
        with pytest.raises(ValidationError, match="invalid role"):
            await users.update_role(owner, owner.id, "")

    @pytest.mark.asyncio
    async def test_missing_user(self, users, owner) -> None:
        with pytest.raises(NotFoundError):
            await users.update_role(owner, 9999, "user")


class TestUpdateUsername:
    """Tests for UserService.update_username."""

    @pytest.mark.asyncio
    async def test_set_and_clear(self, users, owner) -> None:
        bob = await users.create_user(owner, "bob.test")
        assert (await users.update_username(owner, bob.id, "bob_1")).username == "bob_1"
        assert (await users.update_username(owner, bob.id, "")).username == ""

    @pytest.mark.asyncio
    async def test_rules(self, users, owner) -> None:
        bob = await users.create_user(owner, "bob.test")
        with pytest.raises(ValidationError, match="1-39 chars"):
            await users.update_username(owner, bob.id, "x" * 40)


class TestDeleteUser:
    """Tests for UserService.delete_user."""

    @pytest.mark.asyncio
    async def test_cannot_delete_self(self, users, admin) -> None:
        with pytest.raises(PermissionDeniedError, match="cannot delete yourself"):
            await users.delete_user(admin, admin.id)

    @pytest.mark.asyncio
    async def test_cannot_delete_seed_owner(self, users, owner, admin) -> None:
        with pytest.raises(PermissionDeniedError, match="cannot delete seed owner"):
            await users.delete_user(admin, owner.id)

    @pytest.mark.asyncio
    async def test_admin_cannot_delete_admin(self, users, owner, admin) -> None:
        other = await users.create_user(owner, "bob.test", role="admin")
        with pytest.raises(PermissionDeniedError, match="only owners can delete"):
            await users.delete_user(admin, other.id)

    @pytest.mark.asyncio
    async def test_admin_deletes_user(self, users, store, owner, admin) -> None:
        bob = await users.create_user(owner, "bob.test")
        await users.delete_user(admin, bob.id)
        assert await store.find_user_by_did("did:plc:bob") is None

    @pytest.mark.asyncio
    async def test_owner_deletes_admin(self, users, owner, admin) -> None:
        await users.delete_user(owner, admin.id)
        assert [u.did for u in await users.list_users()] == [SEED_OWNER]
