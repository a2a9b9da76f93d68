"""
Authentication of inbound WhatsApp webhook deliveries.

Deliveries are signed by the platform with HMAC-SHA-256 over the raw body
using the app secret (X-Hub-Signature-256: sha256=<hex>). Subscription
setup uses a GET handshake echoing a challenge when the verify token matches.
"""

import hashlib
import hmac
import logging
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from app.core.config import settings
from app.core.errors import ConfigError

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Hub-Signature-256"

_SIGNATURE_PATTERN = re.compile(r"^sha256=[0-9a-f]{64}$")


@dataclass(frozen=True)
class WebhookAuthResult:
    is_valid: bool
    reason: Optional[str] = None


class WebhookAuthenticator:
    """
    Verify webhook signatures and subscription handshakes.

    Raises:
        ConfigError: If the app secret or verify token is missing
    """

    def __init__(
        self,
        app_secret: str,
        verify_token: str,
        max_payload_bytes: int = 1024 * 1024,
        failure_delay: float = 1.0,
    ):
        if not app_secret:
            raise ConfigError(detail="WHATSAPP_APP_SECRET is required", operation="startup")
        if not verify_token:
            raise ConfigError(detail="WHATSAPP_VERIFY_TOKEN is required", operation="startup")
        self._app_secret = app_secret.encode("utf-8")
        self._verify_token = verify_token
        self.max_payload_bytes = max_payload_bytes
        self.failure_delay = failure_delay

    def sign(self, payload: bytes) -> str:
        digest = hmac.new(self._app_secret, payload, hashlib.sha256).hexdigest()
        return f"sha256={digest}"

    def authenticate(
        self,
        payload: bytes,
        signature_header: Optional[str],
        content_length: Optional[int] = None,
    ) -> WebhookAuthResult:
        """
        Check a delivery, in order: size, header presence, header shape, HMAC.

        The reason is for the server log only.
        """
        if content_length is not None and content_length > self.max_payload_bytes:
            return WebhookAuthResult(False, "payload too large")
        if len(payload) > self.max_payload_bytes:
            return WebhookAuthResult(False, "payload too large")
        if not signature_header:
            return WebhookAuthResult(False, "missing signature")
        if not _SIGNATURE_PATTERN.match(signature_header):
            return WebhookAuthResult(False, "malformed signature")

        expected = self.sign(payload)
        if not hmac.compare_digest(expected.encode("ascii"), signature_header.encode("ascii")):
            return WebhookAuthResult(False, "signature mismatch")
        return WebhookAuthResult(True)

    def handshake(self, mode: Optional[str], verify_token: Optional[str], challenge: Optional[str]) -> Optional[str]:
        """Return the challenge to echo, or None when the subscription is refused."""
        if mode != "subscribe" or not verify_token or challenge is None:
            return None
        if not hmac.compare_digest(verify_token.encode("utf-8"), self._verify_token.encode("utf-8")):
            logger.warning("Webhook handshake with wrong verify token")
            return None
        return challenge


@lru_cache
def get_webhook_authenticator() -> WebhookAuthenticator:
    return WebhookAuthenticator(
        app_secret=settings.WHATSAPP_APP_SECRET,
        verify_token=settings.WHATSAPP_VERIFY_TOKEN,
        max_payload_bytes=settings.WEBHOOK_MAX_PAYLOAD_BYTES,
        failure_delay=settings.WEBHOOK_FAILURE_DELAY_SECONDS,
    )
