from __future__ import annotations

import unicodedata
from datetime import datetime
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from todoauth.storage.models import User

# Mirrors the service-layer email bounds
MAX_EMAIL_LENGTH = 320
MAX_NAME_LENGTH = 256
MAX_EXTERNAL_ID_LENGTH = 512


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then apply NFKC."""
    zero_width = '\u200b\u200c\u200d\ufeff'
    cleaned = ''.join(c for c in value if c not in zero_width)

    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = ''.join(c for c in cleaned if c not in bidi_overrides)

    return unicodedata.normalize('NFKC', cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "invalid_token",
    "token_expired",
    "token_revoked",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "email_exists",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope format."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class LoginRequest(BaseModel):
    """Identity assertion already verified by the upstream provider."""

    external_id: str = Field(..., min_length=1, max_length=MAX_EXTERNAL_ID_LENGTH)
    provider: str = Field(..., min_length=1, max_length=64)
    email: str = Field(..., min_length=1, max_length=MAX_EMAIL_LENGTH)
    name: str = Field(..., min_length=1, max_length=MAX_NAME_LENGTH)

    @field_validator("name")
    @classmethod
    def _normalize_name(cls, value: str) -> str:
        return _normalize_unicode(value)


class UserResponse(BaseModel):
    id: str
    name: str
    email: str
    role: str
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=str(user.id),
            name=user.name,
            email=user.email,
            role=user.role.value,
            created_at=user.created_at,
            updated_at=user.updated_at,
        )


class UserListResponse(BaseModel):
    items: List[UserResponse]
    limit: int
    offset: int


class AuthResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user: UserResponse


class TokenInfoResponse(BaseModel):
    user_id: str
    role: str


class LogoutResponse(BaseModel):
    revoked: bool = True


class CreateUserRequest(BaseModel):
    name: str = Field(..., max_length=MAX_NAME_LENGTH)
    email: str = Field(..., max_length=MAX_EMAIL_LENGTH)
    role: Literal["admin", "user"] = "user"

    @field_validator("name")
    @classmethod
    def _normalize_name(cls, value: str) -> str:
        return _normalize_unicode(value)


class UpdateUserRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, max_length=MAX_NAME_LENGTH)
    email: Optional[str] = Field(default=None, max_length=MAX_EMAIL_LENGTH)
    role: Optional[Literal["admin", "user"]] = None

    @field_validator("name")
    @classmethod
    def _normalize_name(cls, value: Optional[str]) -> Optional[str]:
        return _normalize_unicode(value) if value is not None else None

    @model_validator(mode="after")
    def _require_change(self):
        if self.name is None and self.email is None and self.role is None:
            raise ValueError("at least one of name, email or role is required")
        return self
