"""
Double-submit CSRF protection.

A random token is handed out in an HTTP-only cookie; mutating requests must
echo the same value in the x-csrf-token header.
"""

import hmac
import re
import secrets
import time
from typing import Callable, Optional, Tuple

from app.core.config import settings
from app.core.kv_store import KeyValueStore, state_store

SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})

_TOKEN_PATTERN = re.compile(r"^[0-9a-f]{128}$")


class CsrfGuard:
    def __init__(
        self,
        store: KeyValueStore,
        ttl_seconds: int = 600,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    @staticmethod
    def _key(token: str) -> str:
        return f"csrf:{token}"

    def issue(self, existing: Optional[str] = None) -> Tuple[str, bool]:
        """
        Return a token for the caller.

        An existing well-formed token that is still tracked is reused;
        otherwise a new 64-byte token is minted and tracked for ttl_seconds.

        Returns:
            (token, created) where created tells the caller to set the cookie
        """
        if existing and _TOKEN_PATTERN.match(existing) and self.store.get(self._key(existing)):
            return existing, False

        token = secrets.token_hex(64)
        self.store.set(self._key(token), True, self._clock() + self.ttl_seconds)
        return token, True

    def validate(self, cookie_value: Optional[str], header_value: Optional[str], method: str) -> bool:
        if method.upper() in SAFE_METHODS:
            return True
        if not cookie_value or not header_value:
            return False
        return hmac.compare_digest(cookie_value.encode("utf-8"), header_value.encode("utf-8"))


# Singleton instance
csrf_guard = CsrfGuard(state_store, ttl_seconds=settings.CSRF_TOKEN_TTL_SECONDS)
