"""
FastAPI dependencies for sessions, CSRF and the verification flow.

These dependencies are used to protect endpoints and extract session context.
"""

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.csrf import csrf_guard
from app.core.database import get_db
from app.core.errors import AuthInvalid, AuthRequired, CsrfInvalid
from app.core.security import SignedToken, get_token_signer
from app.schemas.session import SessionClaims
from app.services.verification_flow import MessageSender, VerificationFlow
from app.tasks.messaging_tasks import queue_whatsapp_message


def get_message_sender() -> MessageSender:
    """Outbound WhatsApp sender; overridden in tests."""
    return queue_whatsapp_message


def get_signer() -> SignedToken:
    return get_token_signer()


def get_verification_flow(
    db: Session = Depends(get_db),
    sender: MessageSender = Depends(get_message_sender),
    signer: SignedToken = Depends(get_signer),
) -> VerificationFlow:
    return VerificationFlow(db, sender, signer)


def require_csrf(request: Request) -> None:
    """
    Double-submit check for state-changing requests.

    Raises:
        CsrfInvalid: 403 if the cookie and header are missing or differ
    """
    cookie_value = request.cookies.get(settings.CSRF_COOKIE_NAME)
    header_value = request.headers.get(settings.CSRF_HEADER_NAME)
    if not csrf_guard.validate(cookie_value, header_value, request.method):
        raise CsrfInvalid(operation=request.url.path)


def get_session_claims(
    request: Request,
    signer: SignedToken = Depends(get_signer),
) -> SessionClaims:
    """
    Extract and validate the current session from the auth_token cookie.

    Raises:
        AuthRequired: 401 if there is no cookie
        AuthInvalid: 401 if the token is tampered with, expired or malformed
    """
    token = request.cookies.get(settings.AUTH_COOKIE_NAME)
    if not token:
        raise AuthRequired(operation=request.url.path)

    claims = signer.verify(token)
    if claims is None:
        raise AuthInvalid(detail="session token rejected", operation=request.url.path)
    return claims
