from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from todoauth.storage.common import parse_user_id
from todoauth.storage.errors import ConstraintViolation, RecordNotFound
from todoauth.storage.models import (
    AuthIdentity,
    CreateAuthIdentityParams,
    CreateUserParams,
    Role,
    UpdateUserParams,
    User,
)


class MemoryStore:
    """In-memory user and identity store for tests and local development.

    Mirrors the constraints of the Postgres schema: unique email, unique
    auth_id, identity rows referencing an existing user and cascading on
    user deletion. Records are copied on the way in and out so callers never
    alias stored state.
    """

    def __init__(self, *, clock: Optional[Callable[[], datetime]] = None) -> None:
        self.users: Dict[uuid.UUID, User] = {}
        self.identities: Dict[str, AuthIdentity] = {}
        # RLock so helpers can re-enter while a public method holds the lock
        self._data_lock = threading.RLock()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _now(self) -> datetime:
        return self._clock()

    def verify_connection(self) -> None:
        return None

    # users
    def create_user(self, params: CreateUserParams) -> User:
        with self._data_lock:
            if any(existing.email == params.email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            now = self._now()
            user = User(
                id=uuid.uuid4(),
                name=params.name,
                email=params.email,
                role=params.role,
                created_at=now,
                updated_at=now,
            )
            self.users[user.id] = user
            return replace(user)

    def get_user(self, user_id: uuid.UUID) -> User:
        user_id = parse_user_id(user_id)
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise RecordNotFound("user", user_id)
            return replace(user)

    def get_user_by_email(self, email: str) -> User:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            if not user:
                raise RecordNotFound("user", email)
            return replace(user)

    def get_user_by_auth_id(self, auth_id: str) -> User:
        with self._data_lock:
            identity = self.identities.get(auth_id)
            user = self.users.get(identity.user_id) if identity else None
            if not user:
                raise RecordNotFound("user", auth_id)
            return replace(user)

    def list_users(self, limit: int, offset: int) -> List[User]:
        with self._data_lock:
            ordered = sorted(self.users.values(), key=lambda u: (u.created_at, str(u.id)))
            return [replace(u) for u in ordered[offset : offset + limit]]

    def update_user(self, params: UpdateUserParams) -> User:
        user_id = parse_user_id(params.id)
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise RecordNotFound("user", user_id)
            if params.email is not None and any(
                other.email == params.email and other.id != user_id
                for other in self.users.values()
            ):
                raise ConstraintViolation("email already exists", {"field": "email"})
            updated = replace(
                user,
                name=params.name if params.name is not None else user.name,
                email=params.email if params.email is not None else user.email,
                role=params.role if params.role is not None else user.role,
                updated_at=max(self._now(), user.updated_at),
            )
            self.users[user_id] = updated
            return replace(updated)

    def delete_user(self, user_id: uuid.UUID) -> int:
        user_id = parse_user_id(user_id)
        with self._data_lock:
            if self.users.pop(user_id, None) is None:
                return 0
            for auth_id, identity in list(self.identities.items()):
                if identity.user_id == user_id:
                    self.identities.pop(auth_id, None)
            return 1

    # identities
    def create_auth_identity(self, params: CreateAuthIdentityParams) -> AuthIdentity:
        user_id = parse_user_id(params.user_id)
        with self._data_lock:
            if params.auth_id in self.identities:
                raise ConstraintViolation("auth_id already exists", {"field": "auth_id"})
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"field": "user_id"})
            now = self._now()
            identity = AuthIdentity(
                auth_id=params.auth_id,
                provider=params.provider,
                user_id=user_id,
                role=params.role,
                created_at=now,
                updated_at=now,
            )
            self.identities[identity.auth_id] = identity
            return replace(identity)

    def get_auth_identity(self, auth_id: str) -> AuthIdentity:
        with self._data_lock:
            identity = self.identities.get(auth_id)
            if not identity:
                raise RecordNotFound("auth_identity", auth_id)
            return replace(identity)

    def list_auth_identities(self, user_id: uuid.UUID) -> List[AuthIdentity]:
        user_id = parse_user_id(user_id)
        with self._data_lock:
            matches = [i for i in self.identities.values() if i.user_id == user_id]
            return [replace(i) for i in sorted(matches, key=lambda i: i.created_at)]

    def update_auth_identity_role(self, auth_id: str, role: Role) -> AuthIdentity:
        with self._data_lock:
            identity = self.identities.get(auth_id)
            if not identity:
                raise RecordNotFound("auth_identity", auth_id)
            updated = replace(
                identity, role=role, updated_at=max(self._now(), identity.updated_at)
            )
            self.identities[auth_id] = updated
            return replace(updated)

    def delete_auth_identity(self, auth_id: str, user_id: uuid.UUID) -> int:
        user_id = parse_user_id(user_id)
        with self._data_lock:
            identity = self.identities.get(auth_id)
            if not identity or identity.user_id != user_id:
                return 0
            self.identities.pop(auth_id, None)
            return 1
