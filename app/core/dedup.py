"""
Replay protection for inbound webhook messages.

The platform retries deliveries, so the same message id can arrive several
times. Each id is processed at most once within the retention window.
"""

import logging
import time
from typing import Callable, Optional

from app.core.config import settings
from app.core.kv_store import KeyValueStore, state_store
from app.core.rate_limiter import RateLimiter, rate_limiter

logger = logging.getLogger(__name__)


class MessageDedupGuard:
    """
    Tracks processed message ids and throttles individual senders.

    Args:
        store: Shared key/value store
        limiter: Rate limiter providing the "sender" category
        retention_seconds: How long a processed id is remembered
    """

    def __init__(
        self,
        store: KeyValueStore,
        limiter: RateLimiter,
        retention_seconds: int = 24 * 60 * 60,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.limiter = limiter
        self.retention_seconds = retention_seconds
        self._clock = clock

    @staticmethod
    def _key(message_id: str) -> str:
        return f"dedup:{message_id}"

    def seen(self, message_id: str) -> bool:
        return self.store.get(self._key(message_id)) is not None

    def record(self, message_id: str) -> None:
        self.store.set(self._key(message_id), self._clock(), self._clock() + self.retention_seconds)

    def check_and_record(self, message_id: Optional[str]) -> bool:
        """
        Atomically record message_id.

        Returns:
            True only for the first delivery of message_id
        """
        if not message_id:
            return False
        now = self._clock()

        def _mutate(current):
            if current is not None:
                return None, None, False
            return now, now + self.retention_seconds, True

        first = self.store.update(self._key(message_id), _mutate)
        if not first:
            logger.info("Duplicate webhook message ignored", extra={"message_id": message_id})
        return first

    def forget(self, message_id: str) -> None:
        """Drop message_id so a redelivery is processed again."""
        self.store.delete(self._key(message_id))

    def allow_sender(self, sender: str) -> bool:
        """Per-sender limit, independent of the shared webhook budget."""
        result = self.limiter.check("sender", sender)
        if not result.allowed:
            logger.warning("Sender exceeded message limit", extra={"retry_after": result.retry_after})
        return result.allowed


# Singleton instance
dedup_guard = MessageDedupGuard(
    state_store,
    rate_limiter,
    retention_seconds=settings.DEDUP_RETENTION_SECONDS,
)
