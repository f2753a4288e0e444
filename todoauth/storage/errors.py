from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    @property
    def field(self) -> Optional[str]:
        return self.detail.get("field")


class RecordNotFound(LookupError):
    """Raised when a read or update addresses a key that does not exist."""

    def __init__(self, entity: str, key: Any):
        super().__init__(f"{entity} not found: {key}")
        self.entity = entity
        self.key = key


class InvalidIdentifier(ValueError):
    """Raised when an identifier is nil or cannot be parsed as a UUID."""


__all__ = ["ConstraintViolation", "RecordNotFound", "InvalidIdentifier"]
