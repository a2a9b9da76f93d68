"""
Fixed-window rate limiting for auth, API, password reset and webhook traffic.

Counters live in the shared key/value store so that the check-and-increment
for one caller is atomic, while different callers never block each other.
"""

import logging
import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from fastapi import Request

from app.core.config import settings
from app.core.errors import RateLimited
from app.core.kv_store import KeyValueStore, state_store

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitPolicy:
    window_seconds: int
    max_requests: int


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: float
    retry_after: Optional[int] = None
    limit: Optional[int] = None


DEFAULT_POLICIES: Dict[str, RateLimitPolicy] = {
    "auth": RateLimitPolicy(window_seconds=15 * 60, max_requests=5),
    "api": RateLimitPolicy(window_seconds=15 * 60, max_requests=50),
    "password_reset": RateLimitPolicy(window_seconds=60 * 60, max_requests=2),
    "webhook": RateLimitPolicy(window_seconds=60, max_requests=30),
    "sender": RateLimitPolicy(window_seconds=60, max_requests=settings.SENDER_MAX_MESSAGES_PER_MINUTE),
}


class RateLimiter:
    """
    Per-category fixed windows keyed by caller fingerprint.

    The first request in a window starts it with count 1. Requests are
    counted while below the maximum; once the maximum is reached further
    requests are denied without being counted until the window has passed.
    """

    def __init__(
        self,
        store: KeyValueStore,
        policies: Optional[Dict[str, RateLimitPolicy]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.policies = dict(policies or DEFAULT_POLICIES)
        self._clock = clock

    def policy(self, category: str) -> RateLimitPolicy:
        try:
            return self.policies[category]
        except KeyError:
            raise ValueError(f"Unknown rate limit category: {category}")

    def check(self, category: str, fingerprint: str) -> RateLimitResult:
        """
        Count one request for fingerprint in category.

        Args:
            category: One of the configured policy names (auth, api, ...)
            fingerprint: Caller identity, usually "<ip>:<user-agent prefix>"

        Returns:
            RateLimitResult; retry_after is set only when the request is denied
        """
        policy = self.policy(category)
        now = self._clock()

        def _mutate(entry):
            if entry is None or now > entry["reset_at"]:
                reset_at = now + policy.window_seconds
                fresh = {"count": 1, "reset_at": reset_at}
                result = RateLimitResult(
                    allowed=True,
                    remaining=policy.max_requests - 1,
                    reset_at=reset_at,
                    limit=policy.max_requests,
                )
                # Kept one second past the window so "now > reset_at" decides the reset
                return fresh, reset_at + 1, result

            reset_at = entry["reset_at"]
            if entry["count"] >= policy.max_requests:
                result = RateLimitResult(
                    allowed=False,
                    remaining=0,
                    reset_at=reset_at,
                    retry_after=max(1, math.ceil(reset_at - now)),
                    limit=policy.max_requests,
                )
                return None, None, result

            count = entry["count"] + 1
            result = RateLimitResult(
                allowed=True,
                remaining=policy.max_requests - count,
                reset_at=reset_at,
                limit=policy.max_requests,
            )
            return {"count": count, "reset_at": reset_at}, reset_at + 1, result

        return self.store.update(f"ratelimit:{category}:{fingerprint}", _mutate)


def get_client_ip(request: Request) -> str:
    """
    Extract the client's IP address from the request.

    Handles X-Forwarded-For and X-Real-IP headers for proxied requests.
    """
    # X-Forwarded-For can contain multiple IPs, take the first (client IP)
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        first_hop = forwarded_for.split(",")[0].strip()
        if first_hop:
            return first_hop

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    # Fall back to direct connection IP
    return request.client.host if request.client else "unknown"


def get_fingerprint(request: Request) -> str:
    """Caller fingerprint: client IP plus the first 20 characters of the user agent."""
    user_agent = request.headers.get("user-agent", "")
    return f"{get_client_ip(request)}:{user_agent[:20]}"


# Singleton instance
rate_limiter = RateLimiter(state_store)


def enforce_rate_limit(request: Request, category: str, limiter: Optional[RateLimiter] = None) -> RateLimitResult:
    """
    Count the request against category and reject it when over the limit.

    Raises:
        RateLimited: 429 carrying retry_after and the limit headers
    """
    result = (limiter or rate_limiter).check(category, get_fingerprint(request))
    if not result.allowed:
        raise RateLimited(
            retry_after=result.retry_after,
            limit=result.limit,
            reset_at=result.reset_at,
            operation=f"rate_limit:{category}",
        )
    return result
