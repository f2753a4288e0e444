"""Conversions shared by the memory and postgres stores and the user cache.

Domain types never carry storage representations; everything crossing a
storage boundary goes through one of these functions.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Mapping

from todoauth.storage.errors import InvalidIdentifier
from todoauth.storage.models import AuthIdentity, Role, User


def parse_user_id(value: Any) -> uuid.UUID:
    """Coerce ``value`` into a non-nil UUID or raise ``InvalidIdentifier``."""
    if isinstance(value, uuid.UUID):
        parsed = value
    else:
        try:
            parsed = uuid.UUID(str(value))
        except (TypeError, ValueError, AttributeError) as exc:
            raise InvalidIdentifier(f"invalid user id: {value!r}") from exc
    if parsed.int == 0:
        raise InvalidIdentifier("user id must not be nil")
    return parsed


def parse_role(value: Any) -> Role:
    if isinstance(value, Role):
        return value
    try:
        return Role(str(value))
    except ValueError as exc:
        raise ValueError(f"unknown role: {value!r}") from exc


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def user_to_record(user: User) -> Dict[str, Any]:
    """Serialise a user into a JSON-safe dict for the cache."""
    return {
        "id": str(user.id),
        "name": user.name,
        "email": user.email,
        "role": user.role.value,
        "created_at": as_utc(user.created_at).isoformat(),
        "updated_at": as_utc(user.updated_at).isoformat(),
    }


def user_from_record(record: Mapping[str, Any]) -> User:
    """Inverse of :func:`user_to_record`; raises on malformed records."""
    return User(
        id=parse_user_id(record["id"]),
        name=str(record["name"]),
        email=str(record["email"]),
        role=parse_role(record["role"]),
        created_at=as_utc(datetime.fromisoformat(record["created_at"])),
        updated_at=as_utc(datetime.fromisoformat(record["updated_at"])),
    )


def row_to_user(row: Mapping[str, Any]) -> User:
    return User(
        id=parse_user_id(row["id"]),
        name=row["name"],
        email=row["email"],
        role=parse_role(row.get("role") or Role.USER),
        created_at=as_utc(row["created_at"]),
        updated_at=as_utc(row["updated_at"]),
    )


def row_to_identity(row: Mapping[str, Any]) -> AuthIdentity:
    return AuthIdentity(
        auth_id=row["auth_id"],
        provider=row["provider"],
        user_id=parse_user_id(row["user_id"]),
        role=parse_role(row.get("role") or Role.USER),
        created_at=as_utc(row["created_at"]),
        updated_at=as_utc(row["updated_at"]),
    )
