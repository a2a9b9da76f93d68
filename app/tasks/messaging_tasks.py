"""
Celery tasks for outbound WhatsApp messages.

Sends are the only operation in the service that is retried automatically.
"""

import logging

from app.core.celery_app import celery_app
from app.core.celery_utils import queue_task_safely
from app.core.errors import UpstreamError
from app.services.whatsapp_service import whatsapp_service

logger = logging.getLogger(__name__)


@celery_app.task(
    bind=True,
    name="send_whatsapp_message_task",
    max_retries=3,
    default_retry_delay=30,
    autoretry_for=(UpstreamError,),
    retry_backoff=True,
    retry_backoff_max=300,  # Max 5 minutes between retries
    retry_jitter=True
)
def send_whatsapp_message_task(self, to: str, text: str):
    """
    Send a WhatsApp text message, retrying with exponential backoff.

    Raises:
        UpstreamError: If the send fails (triggers a Celery retry)
    """
    logger.info(f"Sending WhatsApp message (attempt {self.request.retries + 1})")
    try:
        whatsapp_service.send_message(to, text)
    except UpstreamError:
        if self.request.retries >= self.max_retries:
            logger.error("All retry attempts exhausted for WhatsApp message")
        raise
    return {"status": "success"}


def queue_whatsapp_message(to: str, text: str) -> bool:
    """
    Queue a message for delivery.

    Returns:
        False if the broker could not accept the task; the caller carries on
    """
    return queue_task_safely(send_whatsapp_message_task, to=to, text=text)
