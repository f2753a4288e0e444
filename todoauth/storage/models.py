from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """Roles carried on users, identities and token claims."""

    USER = "user"
    ADMIN = "admin"


@dataclass
class User:
    id: uuid.UUID
    name: str
    email: str
    role: Role = Role.USER
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)


@dataclass
class AuthIdentity:
    auth_id: str
    provider: str
    user_id: uuid.UUID
    role: Role = Role.USER
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)


@dataclass
class CreateUserParams:
    name: str
    email: str
    role: Role = Role.USER


@dataclass
class UpdateUserParams:
    """Partial update; a field left as None is unchanged."""

    id: uuid.UUID
    name: Optional[str] = None
    email: Optional[str] = None
    role: Optional[Role] = None

    def has_changes(self) -> bool:
        return any(value is not None for value in (self.name, self.email, self.role))


@dataclass(frozen=True)
class PageParams:
    limit: int = 10
    offset: int = 0


@dataclass
class CreateAuthIdentityParams:
    auth_id: str
    provider: str
    user_id: uuid.UUID
    role: Role = Role.USER


@dataclass
class LoginParams:
    """Identity assertion already validated by a trusted upstream."""

    external_id: str
    provider: str
    email: str
    name: str


@dataclass(frozen=True)
class TokenInfo:
    user_id: uuid.UUID
    role: Role
