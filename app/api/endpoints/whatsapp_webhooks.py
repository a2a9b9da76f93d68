"""
WhatsApp Cloud API webhook.

- GET /whatsapp: Subscription handshake (hub.mode / hub.verify_token / hub.challenge)
- POST /whatsapp: Inbound messages. Users confirm their phone by sending
  the verification code shown at signup.

Deliveries are retried by the platform, so every message is acknowledged
with 200 once the signature has been accepted, including duplicates and
messages that are rate limited.
"""

import asyncio
import json
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import PlainTextResponse
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool

from app.core.dedup import dedup_guard
from app.core.deps import get_verification_flow
from app.core.errors import AuthInvalid, ValidationFailed
from app.core.rate_limiter import enforce_rate_limit
from app.core.webhook_security import (
    SIGNATURE_HEADER,
    WebhookAuthenticator,
    WebhookAuthResult,
    get_webhook_authenticator,
)
from app.schemas.whatsapp import MessageResult, WebhookPayload, WebhookResponse
from app.services.verification_flow import VerificationFlow

router = APIRouter(prefix="/webhooks", tags=["WhatsApp Webhooks"])
logger = logging.getLogger(__name__)


def _declared_length(request: Request) -> Optional[int]:
    raw = request.headers.get("content-length")
    try:
        return int(raw) if raw is not None else None
    except ValueError:
        return None


async def read_limited_body(request: Request, max_bytes: int) -> Optional[bytes]:
    """
    Read the request body, giving up as soon as it exceeds max_bytes.

    Returns:
        The body, or None when the declared or streamed size is over the limit
    """
    declared = _declared_length(request)
    if declared is not None and declared > max_bytes:
        return None

    body = bytearray()
    async for chunk in request.stream():
        body.extend(chunk)
        if len(body) > max_bytes:
            return None
    return bytes(body)


@router.get("/whatsapp", response_class=PlainTextResponse)
def verify_subscription(
    mode: Optional[str] = Query(None, alias="hub.mode"),
    verify_token: Optional[str] = Query(None, alias="hub.verify_token"),
    challenge: Optional[str] = Query(None, alias="hub.challenge"),
    authenticator: WebhookAuthenticator = Depends(get_webhook_authenticator),
):
    """Echo the challenge when the platform subscribes with our verify token."""
    echoed = authenticator.handshake(mode, verify_token, challenge)
    if echoed is None:
        return PlainTextResponse("Forbidden", status_code=403)
    logger.info("WhatsApp webhook subscription verified")
    return PlainTextResponse(echoed)


def _process_messages(payload: WebhookPayload, flow: VerificationFlow) -> List[MessageResult]:
    results = []
    for message in payload.messages():
        if not message.id or not message.sender:
            results.append(MessageResult(message_id=message.id, status="ignored"))
            continue

        if not dedup_guard.check_and_record(message.id):
            results.append(MessageResult(message_id=message.id, status="duplicate"))
            continue

        if not dedup_guard.allow_sender(message.sender):
            results.append(MessageResult(message_id=message.id, status="rate_limited"))
            continue

        if message.type not in (None, "text") or message.text is None:
            results.append(MessageResult(message_id=message.id, status="ignored"))
            continue

        try:
            outcome = flow.handle_inbound_message(message.sender, message.text.body)
        except Exception:
            # A redelivery of this message must not count as a duplicate
            dedup_guard.forget(message.id)
            raise
        status = "ignored" if outcome.status == "ignored" else "processed"
        results.append(MessageResult(message_id=message.id, status=status))
    return results


@router.post("/whatsapp", response_model=WebhookResponse)
async def receive_messages(
    request: Request,
    authenticator: WebhookAuthenticator = Depends(get_webhook_authenticator),
    flow: VerificationFlow = Depends(get_verification_flow),
):
    """
    Handle inbound WhatsApp messages.

    Order: size, signature, webhook rate limit, payload parse, then per
    message dedup, sender limit and code handling.
    """
    body = await read_limited_body(request, authenticator.max_payload_bytes)
    if body is None:
        verdict = WebhookAuthResult(False, "payload too large")
    else:
        verdict = authenticator.authenticate(
            body,
            request.headers.get(SIGNATURE_HEADER),
            content_length=_declared_length(request),
        )
    if not verdict.is_valid:
        # Failed signatures are answered after a fixed delay
        await asyncio.sleep(authenticator.failure_delay)
        raise AuthInvalid(detail=verdict.reason, operation="whatsapp_webhook")

    enforce_rate_limit(request, "webhook")

    try:
        payload = WebhookPayload.model_validate(json.loads(body))
    except (ValueError, ValidationError) as e:
        raise ValidationFailed(detail=type(e).__name__, operation="whatsapp_webhook")

    results = await run_in_threadpool(_process_messages, payload, flow)
    return WebhookResponse(results=results)
