"""Unit tests for UserService.

Tests for:
- Input validation at the service boundary
- Read-through caching and write-through invalidation
- Mapping of store failures onto service errors
- Rollback of a cancelled create
"""

import asyncio
import uuid
from datetime import timedelta

import pytest

from todoauth.service.errors import (
    EmailExistsError,
    NotFoundError,
    ServerError,
    ValidationError,
)
from todoauth.service.user_cache import UserCache
from todoauth.service.users import UserService
from todoauth.storage.errors import ConstraintViolation
from todoauth.storage.memory import MemoryStore
from todoauth.storage.memory_cache import MemoryCache
from todoauth.storage.models import (
    CreateAuthIdentityParams,
    CreateUserParams,
    PageParams,
    Role,
    UpdateUserParams,
)


class CountingStore(MemoryStore):
    """Memory store that records how often each read reaches it."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.reads = {"get_user": 0, "get_user_by_email": 0, "list_users": 0}

    def get_user(self, user_id):
        self.reads["get_user"] += 1
        return super().get_user(user_id)

    def get_user_by_email(self, email):
        self.reads["get_user_by_email"] += 1
        return super().get_user_by_email(email)

    def list_users(self, limit, offset):
        self.reads["list_users"] += 1
        return super().list_users(limit, offset)


class ExplodingStore(MemoryStore):
    def get_user(self, user_id):
        raise OSError("connection reset")

    def create_user(self, params):
        raise ConstraintViolation("check failed", {"field": "name"})


@pytest.fixture
def store(clock):
    return CountingStore(clock=clock)


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock)


@pytest.fixture
def user_cache(cache):
    return UserCache(cache, ttl=timedelta(minutes=10))


@pytest.fixture
def service(store, user_cache):
    return UserService(store, user_cache)


async def _create(service, name="Ada", email="ada@example.com", role=Role.USER):
    return await service.create_user(CreateUserParams(name=name, email=email, role=role))


class TestValidation:
    @pytest.mark.parametrize(
        "name,email",
        [("", "ada@example.com"), ("   ", "ada@example.com"), ("Ada", ""), ("Ada", "ab")],
    )
    async def test_create_rejects_bad_input(self, service, name, email):
        with pytest.raises(ValidationError):
            await _create(service, name=name, email=email)

    async def test_create_rejects_overlong_email(self, service):
        with pytest.raises(ValidationError):
            await _create(service, email="a" * 315 + "@x.com")

    async def test_create_rejects_unknown_role(self, service):
        with pytest.raises(ValidationError):
            await service.create_user(CreateUserParams(name="Ada", email="ada@example.com", role="root"))

    async def test_nil_id_rejected(self, service):
        with pytest.raises(ValidationError):
            await service.get_user(uuid.UUID(int=0))

    async def test_malformed_id_rejected(self, service):
        with pytest.raises(ValidationError):
            await service.get_user("not-a-uuid")

    async def test_negative_paging_rejected(self, service):
        with pytest.raises(ValidationError):
            await service.list_users(PageParams(limit=-1, offset=0))
        with pytest.raises(ValidationError):
            await service.list_users(PageParams(limit=1, offset=-1))

    async def test_update_without_fields_rejected(self, service):
        user = await _create(service)

        with pytest.raises(ValidationError):
            await service.update_user(UpdateUserParams(id=user.id))


class TestCreate:
    async def test_create_populates_cache(self, service, store):
        user = await _create(service)

        assert (await service.get_user(user.id)) == user
        assert (await service.get_user_by_email(user.email)) == user
        assert store.reads["get_user"] == 0
        assert store.reads["get_user_by_email"] == 0

    async def test_duplicate_email_is_email_exists(self, service, store, cache):
        await _create(service)
        keys_before = set(cache._entries)

        with pytest.raises(EmailExistsError):
            await _create(service, name="Other")

        assert len(store.users) == 1
        assert set(cache._entries) == keys_before

    async def test_other_constraint_is_internal(self, user_cache):
        service = UserService(ExplodingStore(), user_cache)

        with pytest.raises(ServerError):
            await _create(service)

    async def test_cancelled_create_removes_row(self, clock):
        store = MemoryStore(clock=clock)
        entered = asyncio.Event()
        release = asyncio.Event()

        class BlockingCache(MemoryCache):
            async def set(self, key, value, ttl_seconds):
                entered.set()
                await release.wait()
                await super().set(key, value, ttl_seconds)

        service = UserService(store, UserCache(BlockingCache(clock=clock)))
        task = asyncio.create_task(_create(service))
        await entered.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert store.users == {}


class TestRead:
    async def test_cache_miss_falls_back_and_fills(self, service, store, cache):
        user = await _create(service)
        await cache.delete(service.cache.id_key(user.id))

        assert await service.get_user(user.id) == user
        assert await service.get_user(user.id) == user
        assert store.reads["get_user"] == 1

    async def test_expired_entry_reads_store(self, service, store, clock):
        user = await _create(service)
        clock.advance(minutes=11)

        await service.get_user(user.id)

        assert store.reads["get_user"] == 1

    async def test_missing_user_is_not_found(self, service):
        with pytest.raises(NotFoundError):
            await service.get_user(uuid.uuid4())
        with pytest.raises(NotFoundError):
            await service.get_user_by_email("nobody@example.com")

    async def test_store_failure_is_internal(self, user_cache):
        service = UserService(ExplodingStore(), user_cache)

        with pytest.raises(ServerError):
            await service.get_user(uuid.uuid4())

    async def test_lookup_by_external_id(self, service, store):
        user = await _create(service)
        store.create_auth_identity(
            CreateAuthIdentityParams(auth_id="ext-1", provider="google", user_id=user.id)
        )

        assert await service.get_user_by_external_id("ext-1") == user
        assert await service.cache.get_by_external_id("ext-1") == user


class TestList:
    async def test_pages_are_cached(self, service, store, clock):
        for i in range(3):
            await _create(service, name=f"U{i}", email=f"u{i}@example.com")
            clock.advance(seconds=1)

        first = await service.list_users(PageParams(limit=2, offset=0))
        again = await service.list_users(PageParams(limit=2, offset=0))

        assert [u.name for u in first] == ["U0", "U1"]
        assert again == first
        assert store.reads["list_users"] == 1

    async def test_zero_limit_returns_empty(self, service, store):
        await _create(service)

        assert await service.list_users(PageParams(limit=0, offset=0)) == []
        assert store.reads["list_users"] == 0

    async def test_offset_past_end_returns_empty(self, service):
        await _create(service)

        assert await service.list_users(PageParams(limit=10, offset=5)) == []

    async def test_create_evicts_cached_pages(self, service, clock):
        await _create(service)
        clock.advance(seconds=1)
        assert len(await service.list_users(PageParams())) == 1

        await _create(service, name="Bob", email="bob@example.com")

        assert len(await service.list_users(PageParams())) == 2


class TestUpdate:
    async def test_email_change_moves_pointer(self, service, store, clock):
        user = await _create(service)
        clock.advance(seconds=1)

        updated = await service.update_user(UpdateUserParams(id=user.id, email="new@example.com"))

        assert updated.email == "new@example.com"
        assert updated.updated_at > user.updated_at
        assert await service.cache.get_by_email("ada@example.com") is None
        assert await service.get_user_by_email("new@example.com") == updated
        with pytest.raises(NotFoundError):
            await service.get_user_by_email("ada@example.com")

    async def test_role_change_visible_through_cache(self, service):
        user = await _create(service)

        await service.update_user(UpdateUserParams(id=user.id, role=Role.ADMIN))

        assert (await service.get_user(user.id)).role == Role.ADMIN

    async def test_email_conflict(self, service):
        await _create(service)
        bob = await _create(service, name="Bob", email="bob@example.com")

        with pytest.raises(EmailExistsError):
            await service.update_user(UpdateUserParams(id=bob.id, email="ada@example.com"))

    async def test_update_missing_user(self, service):
        with pytest.raises(NotFoundError):
            await service.update_user(UpdateUserParams(id=uuid.uuid4(), name="Ghost"))


class TestDelete:
    async def test_delete_clears_store_and_cache(self, service, store):
        user = await _create(service)
        store.create_auth_identity(
            CreateAuthIdentityParams(auth_id="ext-1", provider="google", user_id=user.id)
        )
        await service.remember_external_id("ext-1", user)

        await service.delete_user(user.id)

        assert user.id not in store.users
        assert store.identities == {}
        assert await service.cache.get_by_id(user.id) is None
        assert await service.cache.get_by_external_id("ext-1") is None
        with pytest.raises(NotFoundError):
            await service.get_user(user.id)

    async def test_delete_missing_user(self, service):
        with pytest.raises(NotFoundError):
            await service.delete_user(uuid.uuid4())
