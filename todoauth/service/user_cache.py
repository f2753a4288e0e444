from __future__ import annotations

import json
import uuid
from datetime import timedelta
from typing import Iterable, List, Optional

from todoauth.logging import get_logger
from todoauth.storage.common import parse_user_id, user_from_record, user_to_record
from todoauth.storage.models import PageParams, User


class UserCache:
    """Read-through/write-through cache of user records.

    Key families under one prefix:

    - ``<prefix>:<uuid>`` holds the serialised user
    - ``<prefix>:email:<email>`` and ``<prefix>:auth:<auth_id>`` hold the
      user id as a pointer
    - ``<prefix>:page:limit=<n>:offset=<m>`` holds a serialised list

    Every entry shares one TTL. The cache is strictly optional: read errors
    and corrupt entries are misses, write and delete errors are logged and
    swallowed.
    """

    def __init__(
        self,
        cache,
        prefix: str = "user",
        ttl: timedelta = timedelta(minutes=10),
        *,
        logger=None,
    ) -> None:
        self.cache = cache
        self.prefix = prefix
        self.ttl_seconds = max(1, int(ttl.total_seconds()))
        self.logger = logger or get_logger(__name__)

    # keys
    def id_key(self, user_id: uuid.UUID) -> str:
        return f"{self.prefix}:{user_id}"

    def email_key(self, email: str) -> str:
        return f"{self.prefix}:email:{email}"

    def auth_key(self, auth_id: str) -> str:
        return f"{self.prefix}:auth:{auth_id}"

    def page_key(self, params: PageParams) -> str:
        return f"{self.prefix}:page:limit={params.limit}:offset={params.offset}"

    def page_pattern(self) -> str:
        return f"{self.prefix}:page:*"

    # raw access
    async def _read(self, key: str) -> Optional[str]:
        try:
            return await self.cache.get(key)
        except Exception as exc:
            self.logger.warning("user_cache_read_failed", key=key, error=str(exc))
            return None

    async def _write(self, key: str, value: str) -> None:
        try:
            await self.cache.set(key, value, self.ttl_seconds)
        except Exception as exc:
            self.logger.warning("user_cache_write_failed", key=key, error=str(exc))

    async def _delete(self, *keys: str) -> None:
        try:
            await self.cache.delete(*keys)
        except Exception as exc:
            self.logger.warning("user_cache_delete_failed", keys=list(keys), error=str(exc))

    # writes
    async def put_by_id(self, user: User) -> None:
        await self._write(self.id_key(user.id), json.dumps(user_to_record(user)))

    async def put_pointer_by_email(self, email: str, user_id: uuid.UUID) -> None:
        await self._write(self.email_key(email), str(user_id))

    async def put_pointer_by_external_id(self, auth_id: str, user_id: uuid.UUID) -> None:
        await self._write(self.auth_key(auth_id), str(user_id))

    async def put_page(self, params: PageParams, users: List[User]) -> None:
        payload = json.dumps([user_to_record(user) for user in users])
        await self._write(self.page_key(params), payload)

    # reads
    async def get_by_id(self, user_id: uuid.UUID) -> Optional[User]:
        key = self.id_key(user_id)
        raw = await self._read(key)
        if raw is None:
            return None
        try:
            user = user_from_record(json.loads(raw))
        except (ValueError, KeyError, TypeError) as exc:
            self.logger.warning("user_cache_corrupt_entry", key=key, error=str(exc))
            await self._delete(key)
            return None
        if user.id != user_id:
            self.logger.warning("user_cache_mismatched_entry", key=key)
            await self._delete(key)
            return None
        return user

    async def _resolve_pointer(self, pointer_key: str) -> Optional[User]:
        raw = await self._read(pointer_key)
        if raw is None:
            return None
        try:
            user_id = parse_user_id(raw)
        except ValueError:
            self.logger.warning("user_cache_pointer_cleanup", key=pointer_key, reason="corrupt")
            await self._delete(pointer_key)
            return None
        user = await self.get_by_id(user_id)
        if user is None:
            self.logger.warning("user_cache_pointer_cleanup", key=pointer_key, reason="dangling")
            await self._delete(pointer_key)
        return user

    async def get_by_email(self, email: str) -> Optional[User]:
        key = self.email_key(email)
        user = await self._resolve_pointer(key)
        if user is not None and user.email != email:
            # Pointer outlived an email change
            self.logger.warning("user_cache_pointer_cleanup", key=key, reason="stale")
            await self._delete(key)
            return None
        return user

    async def get_by_external_id(self, auth_id: str) -> Optional[User]:
        return await self._resolve_pointer(self.auth_key(auth_id))

    async def get_page(self, params: PageParams) -> Optional[List[User]]:
        key = self.page_key(params)
        raw = await self._read(key)
        if raw is None:
            return None
        try:
            records = json.loads(raw)
            if not isinstance(records, list):
                raise TypeError("page entry is not a list")
            return [user_from_record(record) for record in records]
        except (ValueError, KeyError, TypeError) as exc:
            self.logger.warning("user_cache_corrupt_entry", key=key, error=str(exc))
            await self._delete(key)
            return None

    # invalidation
    async def evict_pointer_by_email(self, email: str) -> None:
        await self._delete(self.email_key(email))

    async def evict_user(
        self,
        user_id: uuid.UUID,
        email: Optional[str] = None,
        external_ids: Iterable[str] = (),
    ) -> None:
        keys = [self.id_key(user_id)]
        if email:
            keys.append(self.email_key(email))
        keys.extend(self.auth_key(auth_id) for auth_id in external_ids)
        await self._delete(*keys)

    async def evict_pages(self) -> None:
        try:
            await self.cache.delete_matching(self.page_pattern())
        except Exception as exc:
            self.logger.warning("user_cache_page_evict_failed", error=str(exc))
