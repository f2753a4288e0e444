from __future__ import annotations

import math
from datetime import timedelta

from todoauth.logging import get_logger


class DenyList:
    """Revoked token ids, each kept until at least the token's own expiry.

    The deny list is an optimistic channel: lookups fail open because every
    token expires by itself, while revocation errors propagate so logout can
    report them.
    """

    MARKER = "1"

    def __init__(self, cache, prefix: str = "blacklist", *, logger=None) -> None:
        self.cache = cache
        self.prefix = prefix
        self.logger = logger or get_logger(__name__)

    def key(self, jti: str) -> str:
        return f"{self.prefix}:{jti}"

    async def revoke(self, jti: str, ttl: timedelta) -> None:
        """Record ``jti`` as revoked for ``ttl``; repeat calls just refresh the entry."""
        # Round up so the entry never lapses before the token does
        seconds = math.ceil(ttl.total_seconds())
        if seconds <= 0:
            return
        await self.cache.set(self.key(jti), self.MARKER, seconds)

    async def is_revoked(self, jti: str) -> bool:
        try:
            return bool(await self.cache.exists(self.key(jti)))
        except Exception as exc:
            self.logger.warning(
                "denylist_check_failed",
                jti=jti,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
