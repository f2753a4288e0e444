from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from todoauth.config import Settings
from todoauth.logging import get_logger
from todoauth.service.errors import ExpiredTokenError, InvalidTokenError
from todoauth.storage.common import parse_role, parse_user_id
from todoauth.storage.models import Role

Clock = Callable[[], datetime]

_REQUIRED_CLAIMS = ("sub", "role", "iat", "exp", "iss", "jti")
# Minted tokens are a few hundred bytes
MAX_TOKEN_LENGTH = 4096


def utc_now() -> datetime:
    """Timezone-aware UTC clock used unless a test injects its own."""
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class TokenPayload:
    user_id: uuid.UUID
    role: Role


@dataclass(frozen=True)
class TokenClaims:
    user_id: uuid.UUID
    role: Role
    jti: str
    issuer: str
    issued_at: datetime
    expires_at: datetime

    def remaining(self, now: datetime) -> timedelta:
        return self.expires_at - now


class TokenCodec:
    """HS256 JWT minting and verification.

    Tokens are ``<header>.<payload>.<signature>`` with base64url JSON segments
    and an HMAC-SHA256 signature over the first two. The header algorithm is
    pinned; anything else is rejected before the signature is checked.
    """

    ALGORITHM = "HS256"

    def __init__(
        self,
        secret: str,
        issuer: str,
        duration: timedelta,
        *,
        clock: Optional[Clock] = None,
        logger=None,
    ) -> None:
        if not secret:
            raise ValueError("token secret must not be empty")
        if not issuer:
            raise ValueError("token issuer must not be empty")
        if duration.total_seconds() < 1:
            raise ValueError("token duration must be at least one second")
        self._secret = secret.encode()
        self.issuer = issuer
        self.duration = duration
        self.clock: Clock = clock or utc_now
        self.logger = logger or get_logger(__name__)

    @classmethod
    def from_settings(cls, settings: Settings, *, clock: Optional[Clock] = None) -> "TokenCodec":
        return cls(
            settings.token_secret,
            settings.token_issuer,
            timedelta(minutes=settings.token_duration_minutes),
            clock=clock,
        )

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def encode(self, claims: dict[str, Any]) -> str:
        """Sign an arbitrary claim set; ``mint`` is the normal entry point."""
        header = {"alg": self.ALGORITHM, "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(claims, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def mint(self, payload: TokenPayload) -> str:
        issued_at = int(self.clock().timestamp())
        claims = {
            "sub": str(payload.user_id),
            "role": Role(payload.role).value,
            "iat": issued_at,
            "exp": issued_at + int(self.duration.total_seconds()),
            "iss": self.issuer,
            "jti": str(uuid.uuid4()),
        }
        return self.encode(claims)

    def parse(self, token: str) -> TokenClaims:
        if not isinstance(token, str):
            raise InvalidTokenError("token must be a string")
        if len(token) > MAX_TOKEN_LENGTH:
            raise InvalidTokenError("token too long")
        parts = token.split(".")
        if len(parts) != 3 or not all(parts):
            raise InvalidTokenError("malformed token")
        header_b64, payload_b64, sig_b64 = parts

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, RecursionError):
            raise InvalidTokenError("malformed token header")
        if not isinstance(header, dict) or header.get("alg") != self.ALGORITHM:
            alg = header.get("alg") if isinstance(header, dict) else None
            self.logger.warning("token_invalid_algorithm", alg=alg)
            raise InvalidTokenError("unsupported token algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not sig_b64.isascii() or not hmac.compare_digest(expected_sig, sig_b64):
            raise InvalidTokenError("token signature mismatch")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, RecursionError):
            raise InvalidTokenError("malformed token payload")
        if not isinstance(payload, dict):
            raise InvalidTokenError("malformed token payload")
        missing = [claim for claim in _REQUIRED_CLAIMS if claim not in payload]
        if missing:
            raise InvalidTokenError("token is missing claims", detail={"missing": missing})
        if payload["iss"] != self.issuer:
            raise InvalidTokenError("token issuer mismatch")

        iat, exp = payload["iat"], payload["exp"]
        if not _is_timestamp(iat) or not _is_timestamp(exp) or exp <= iat:
            raise InvalidTokenError("token has invalid lifetime claims")
        jti = payload["jti"]
        if not isinstance(jti, str) or not jti:
            raise InvalidTokenError("token has invalid jti")
        try:
            user_id = parse_user_id(payload["sub"])
            role = parse_role(payload["role"])
        except ValueError:
            raise InvalidTokenError("token has invalid subject claims")

        # exp == now counts as expired
        if exp <= self.clock().timestamp():
            raise ExpiredTokenError("token has expired")

        return TokenClaims(
            user_id=user_id,
            role=role,
            jti=jti,
            issuer=payload["iss"],
            issued_at=datetime.fromtimestamp(iat, tz=timezone.utc),
            expires_at=datetime.fromtimestamp(exp, tz=timezone.utc),
        )


def _is_timestamp(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)
