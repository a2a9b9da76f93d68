"""
WhatsApp Cloud API client for outbound text messages.

Used for the replies sent after a code arrives over WhatsApp.
"""

import logging
from typing import Any, Dict, Optional

import httpx

from app.core.config import settings
from app.core.errors import UpstreamError

logger = logging.getLogger(__name__)


class WhatsAppService:
    """
    Thin wrapper over POST {api_url}/{phone_number_id}/messages.

    A transport failure, timeout or non-2xx answer raises UpstreamError;
    retrying is left to the Celery task.
    """

    def __init__(
        self,
        api_url: Optional[str] = None,
        phone_number_id: Optional[str] = None,
        access_token: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.api_url = (api_url or settings.WHATSAPP_API_URL).rstrip("/")
        self.phone_number_id = phone_number_id or settings.WHATSAPP_PHONE_NUMBER_ID
        self.access_token = access_token or settings.WHATSAPP_ACCESS_TOKEN
        self.timeout = timeout or settings.WHATSAPP_SEND_TIMEOUT_SECONDS
        self._transport = transport

    @property
    def messages_url(self) -> str:
        return f"{self.api_url}/{self.phone_number_id}/messages"

    def send_message(self, to: str, text: str) -> Dict[str, Any]:
        """
        Send a text message.

        Args:
            to: Recipient phone number, digits only
            text: Message body

        Returns:
            Decoded JSON response from the Graph API

        Raises:
            UpstreamError: If the message could not be delivered to the API
        """
        if not self.phone_number_id or not self.access_token:
            raise UpstreamError(detail="WhatsApp credentials are not configured", operation="whatsapp_send")

        payload = {
            "messaging_product": "whatsapp",
            "to": to,
            "type": "text",
            "text": {"body": text},
        }
        headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }

        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                response = client.post(self.messages_url, json=payload, headers=headers)
                response.raise_for_status()
        except httpx.TimeoutException as e:
            logger.error("WhatsApp send timed out")
            raise UpstreamError(detail=e, operation="whatsapp_send")
        except httpx.HTTPStatusError as e:
            logger.error(f"WhatsApp API returned {e.response.status_code}")
            raise UpstreamError(detail=f"status {e.response.status_code}", operation="whatsapp_send")
        except httpx.HTTPError as e:
            logger.error(f"WhatsApp API request failed: {type(e).__name__}")
            raise UpstreamError(detail=e, operation="whatsapp_send")

        logger.info("WhatsApp message sent")
        return response.json()


# Singleton instance
whatsapp_service = WhatsAppService()
