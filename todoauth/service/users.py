from __future__ import annotations

import asyncio
import uuid
from typing import Any, Callable, List, Protocol

from todoauth.logging import get_logger
from todoauth.service.errors import (
    EmailExistsError,
    NotFoundError,
    ServerError,
    ServiceError,
    ValidationError,
)
from todoauth.service.user_cache import UserCache
from todoauth.storage.common import parse_role, parse_user_id
from todoauth.storage.errors import ConstraintViolation, InvalidIdentifier, RecordNotFound
from todoauth.storage.models import (
    AuthIdentity,
    CreateUserParams,
    PageParams,
    UpdateUserParams,
    User,
)

MIN_EMAIL_LENGTH = 3
MAX_EMAIL_LENGTH = 320


class UserStore(Protocol):
    def create_user(self, params: CreateUserParams) -> User: ...

    def get_user(self, user_id: uuid.UUID) -> User: ...

    def get_user_by_email(self, email: str) -> User: ...

    def get_user_by_auth_id(self, auth_id: str) -> User: ...

    def list_users(self, limit: int, offset: int) -> List[User]: ...

    def update_user(self, params: UpdateUserParams) -> User: ...

    def delete_user(self, user_id: uuid.UUID) -> int: ...

    def list_auth_identities(self, user_id: uuid.UUID) -> List[AuthIdentity]: ...


def _validate_name(name: Any) -> str:
    if not isinstance(name, str) or not name.strip():
        raise ValidationError("name is required", detail={"field": "name"})
    return name


def _validate_email(email: Any) -> str:
    if not isinstance(email, str) or not email.strip():
        raise ValidationError("email is required", detail={"field": "email"})
    if not MIN_EMAIL_LENGTH <= len(email) <= MAX_EMAIL_LENGTH:
        raise ValidationError(
            f"email must be between {MIN_EMAIL_LENGTH} and {MAX_EMAIL_LENGTH} characters",
            detail={"field": "email"},
        )
    return email


def _validate_user_id(user_id: Any) -> uuid.UUID:
    try:
        return parse_user_id(user_id)
    except InvalidIdentifier as exc:
        raise ValidationError(str(exc), detail={"field": "id"}) from exc


class UserService:
    """User CRUD over the store with the user cache kept consistent.

    Store exceptions never leave this class: missing rows become
    ``NotFoundError``, email conflicts ``EmailExistsError``, bad identifiers
    ``ValidationError`` and anything else is logged and raised as
    ``ServerError``.
    """

    def __init__(self, store: UserStore, cache: UserCache, *, logger=None) -> None:
        self.store = store
        self.cache = cache
        self.logger = logger or get_logger(__name__)

    def _internal(self, op: str, exc: Exception) -> ServerError:
        self.logger.error(
            "user_store_failed",
            op=op,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return ServerError("internal error")

    def _call(self, op: str, func: Callable[..., Any], *args: Any) -> Any:
        try:
            return func(*args)
        except RecordNotFound as exc:
            raise NotFoundError("user not found") from exc
        except ConstraintViolation as exc:
            if exc.field == "email":
                raise EmailExistsError("email already exists", detail={"field": "email"}) from exc
            raise self._internal(op, exc) from exc
        except InvalidIdentifier as exc:
            raise ValidationError(str(exc), detail={"field": "id"}) from exc
        except ServiceError:
            raise
        except Exception as exc:
            raise self._internal(op, exc) from exc

    async def create_user(self, params: CreateUserParams) -> User:
        _validate_name(params.name)
        _validate_email(params.email)
        try:
            role = parse_role(params.role)
        except ValueError as exc:
            raise ValidationError(str(exc), detail={"field": "role"}) from exc
        user = self._call(
            "create_user",
            self.store.create_user,
            CreateUserParams(name=params.name, email=params.email, role=role),
        )
        try:
            await self.cache.put_by_id(user)
            await self.cache.put_pointer_by_email(user.email, user.id)
            await self.cache.evict_pages()
        except asyncio.CancelledError:
            # A cancelled create must not leave the row behind
            await self._rollback_create(user)
            raise
        self.logger.info("user_created", user_id=str(user.id), role=user.role.value)
        return user

    async def _rollback_create(self, user: User) -> None:
        try:
            self.store.delete_user(user.id)
        except Exception as exc:
            self.logger.error("user_create_rollback_failed", user_id=str(user.id), error=str(exc))
        await self.cache.evict_user(user.id, email=user.email)

    async def get_user(self, user_id: uuid.UUID) -> User:
        user_id = _validate_user_id(user_id)
        cached = await self.cache.get_by_id(user_id)
        if cached is not None:
            return cached
        self.logger.warning("user_cache_miss", lookup="id", user_id=str(user_id))
        user = self._call("get_user", self.store.get_user, user_id)
        await self.cache.put_by_id(user)
        return user

    async def get_user_by_email(self, email: str) -> User:
        _validate_email(email)
        cached = await self.cache.get_by_email(email)
        if cached is not None:
            return cached
        self.logger.warning("user_cache_miss", lookup="email")
        user = self._call("get_user_by_email", self.store.get_user_by_email, email)
        await self.cache.put_by_id(user)
        await self.cache.put_pointer_by_email(user.email, user.id)
        return user

    async def get_user_by_external_id(self, auth_id: str) -> User:
        if not isinstance(auth_id, str) or not auth_id:
            raise ValidationError("external id is required", detail={"field": "auth_id"})
        cached = await self.cache.get_by_external_id(auth_id)
        if cached is not None:
            return cached
        self.logger.warning("user_cache_miss", lookup="external_id")
        user = self._call("get_user_by_auth_id", self.store.get_user_by_auth_id, auth_id)
        await self.cache.put_by_id(user)
        await self.cache.put_pointer_by_external_id(auth_id, user.id)
        return user

    async def list_users(self, params: PageParams) -> List[User]:
        if params.limit < 0:
            raise ValidationError("limit must not be negative", detail={"field": "limit"})
        if params.offset < 0:
            raise ValidationError("offset must not be negative", detail={"field": "offset"})
        if params.limit == 0:
            return []
        cached = await self.cache.get_page(params)
        if cached is not None:
            return cached
        self.logger.warning("user_cache_miss", lookup="page", limit=params.limit, offset=params.offset)
        try:
            users = self._call("list_users", self.store.list_users, params.limit, params.offset)
        except NotFoundError:
            users = []
        await self.cache.put_page(params, users)
        return users

    async def update_user(self, params: UpdateUserParams) -> User:
        user_id = _validate_user_id(params.id)
        if not params.has_changes():
            raise ValidationError("no fields to update")
        if params.name is not None:
            _validate_name(params.name)
        if params.email is not None:
            _validate_email(params.email)
        role = None
        if params.role is not None:
            try:
                role = parse_role(params.role)
            except ValueError as exc:
                raise ValidationError(str(exc), detail={"field": "role"}) from exc

        previous = await self.get_user(user_id)
        updated = self._call(
            "update_user",
            self.store.update_user,
            UpdateUserParams(id=user_id, name=params.name, email=params.email, role=role),
        )
        await self.cache.put_by_id(updated)
        if previous.email != updated.email:
            await self.cache.evict_pointer_by_email(previous.email)
        await self.cache.put_pointer_by_email(updated.email, updated.id)
        await self.cache.evict_pages()
        self.logger.info("user_updated", user_id=str(user_id))
        return updated

    async def delete_user(self, user_id: uuid.UUID) -> None:
        user_id = _validate_user_id(user_id)
        user = await self.get_user(user_id)
        identities = self._call("list_auth_identities", self.store.list_auth_identities, user_id)
        removed = self._call("delete_user", self.store.delete_user, user_id)
        await self.cache.evict_user(
            user_id,
            email=user.email,
            external_ids=[identity.auth_id for identity in identities],
        )
        await self.cache.evict_pages()
        if not removed:
            raise NotFoundError("user not found")
        self.logger.info("user_deleted", user_id=str(user_id), identities=len(identities))

    async def remember_external_id(self, auth_id: str, user: User) -> None:
        """Cache the external-id pointer once the identity row exists."""
        await self.cache.put_pointer_by_external_id(auth_id, user.id)
