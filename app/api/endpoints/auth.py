"""
Phone verification and password authentication endpoints.

Sessions live in an HTTP-only auth_token cookie:
- GET /csrf-token: Issue (or reuse) the double-submit CSRF token
- POST /generate-code: Start signup, returns the code to send over WhatsApp
- POST /verify-and-auth: Trade a code confirmed over WhatsApp for a session
- POST /set-password: Set a password for the verified phone
- POST /auth-password: Log in with phone and password
- POST /reset-password: Start a password reset for an existing account
- GET /session: Current session state
- POST /logout: Clear the session cookie
"""

import logging
from fastapi import APIRouter, Depends, Request, Response

from app.core.config import settings
from app.core.csrf import csrf_guard
from app.core.deps import get_session_claims, get_signer, get_verification_flow, require_csrf
from app.core.errors import ValidationFailed
from app.core.rate_limiter import enforce_rate_limit
from app.core.security import SignedToken
from app.schemas.auth import (
    AccountResponse,
    AccountView,
    CodeIssuedResponse,
    CsrfTokenResponse,
    ExchangeCodeRequest,
    GenerateCodeRequest,
    PasswordLoginRequest,
    ResetPasswordRequest,
    SessionResponse,
    SessionView,
    SetPasswordRequest,
    SimpleResponse,
)
from app.schemas.session import SessionClaims
from app.services.verification_flow import VerificationFlow

router = APIRouter(prefix="/auth", tags=["Authentication"])
logger = logging.getLogger(__name__)


def _set_cookie(response: Response, name: str, value: str, max_age: int) -> None:
    response.set_cookie(
        key=name,
        value=value,
        max_age=max_age,
        path="/",
        httponly=True,
        secure=settings.COOKIE_SECURE,
        samesite="strict",
    )


def set_auth_cookie(response: Response, token: str, max_age: int) -> None:
    _set_cookie(response, settings.AUTH_COOKIE_NAME, token, max_age)


@router.get("/csrf-token", response_model=CsrfTokenResponse)
def get_csrf_token(request: Request, response: Response):
    """
    Issue a CSRF token.

    A still-valid token from the cookie is returned as is; the cookie is only
    set when a new token was generated.
    """
    if not request.headers.get("user-agent"):
        raise ValidationFailed(detail="missing user agent", operation="csrf_token")

    existing = request.cookies.get(settings.CSRF_COOKIE_NAME)
    token, created = csrf_guard.issue(existing)
    if created:
        _set_cookie(response, settings.CSRF_COOKIE_NAME, token, settings.CSRF_TOKEN_TTL_SECONDS)

    return CsrfTokenResponse(
        token=token,
        expiresIn=settings.CSRF_TOKEN_TTL_SECONDS,
        message="CSRF token generated successfully" if created else "CSRF token retrieved successfully",
    )


@router.post("/generate-code", response_model=CodeIssuedResponse, dependencies=[Depends(require_csrf)])
def generate_code(
    payload: GenerateCodeRequest,
    request: Request,
    response: Response,
    flow: VerificationFlow = Depends(get_verification_flow),
):
    """
    Start signup.

    The returned code must be sent from the user's phone to the service's
    WhatsApp number. Sets a 24 hour unverified session cookie.
    """
    enforce_rate_limit(request, "api")

    record, token = flow.start_signup(payload.name, payload.phone)
    set_auth_cookie(response, token, settings.VERIFICATION_TOKEN_TTL_SECONDS)

    return CodeIssuedResponse(
        code=record.code,
        message="Send this code to our WhatsApp number to verify your phone",
        expires_in_minutes=settings.VERIFICATION_CODE_TTL_MINUTES,
    )


@router.post("/verify-and-auth", response_model=SessionResponse, dependencies=[Depends(require_csrf)])
def verify_and_auth(
    payload: ExchangeCodeRequest,
    request: Request,
    response: Response,
    flow: VerificationFlow = Depends(get_verification_flow),
):
    """Exchange a code confirmed over WhatsApp for a 1 hour session."""
    enforce_rate_limit(request, "auth")

    record, token = flow.exchange_code(payload.code)
    set_auth_cookie(response, token, settings.SESSION_TOKEN_TTL_SECONDS)

    return SessionResponse(data=SessionView(code=record.code, name=record.name, verified=True))


@router.post("/set-password", response_model=AccountResponse, dependencies=[Depends(require_csrf)])
def set_password(
    payload: SetPasswordRequest,
    request: Request,
    response: Response,
    signer: SignedToken = Depends(get_signer),
    flow: VerificationFlow = Depends(get_verification_flow),
):
    """
    Set a password for the verified phone bound to the current session.

    Replaces the verification session with a 1 hour password session.
    """
    enforce_rate_limit(request, "api")
    claims = get_session_claims(request, signer)

    user, token = flow.set_password(claims, payload.code, payload.password)
    set_auth_cookie(response, token, settings.SESSION_TOKEN_TTL_SECONDS)

    return AccountResponse(
        message="Password set successfully",
        user=AccountView(id=str(user.id), name=user.name, phone=user.phone),
    )


@router.post("/auth-password", response_model=AccountResponse, dependencies=[Depends(require_csrf)])
def auth_password(
    payload: PasswordLoginRequest,
    request: Request,
    response: Response,
    flow: VerificationFlow = Depends(get_verification_flow),
):
    enforce_rate_limit(request, "auth")

    user, token = flow.authenticate_password(payload.phone, payload.password)
    set_auth_cookie(response, token, settings.SESSION_TOKEN_TTL_SECONDS)
    logger.info("Password login succeeded", extra={"user_id": str(user.id)})

    return AccountResponse(
        message="Authentication successful",
        user=AccountView(id=str(user.id), name=user.name, phone=user.phone),
    )


@router.post("/reset-password", response_model=CodeIssuedResponse, dependencies=[Depends(require_csrf)])
def reset_password(
    payload: ResetPasswordRequest,
    request: Request,
    response: Response,
    flow: VerificationFlow = Depends(get_verification_flow),
):
    """Start a password reset; the new code is confirmed over WhatsApp like a signup."""
    enforce_rate_limit(request, "password_reset")

    record, token = flow.start_password_reset(payload.phone)
    set_auth_cookie(response, token, settings.VERIFICATION_TOKEN_TTL_SECONDS)

    return CodeIssuedResponse(
        code=record.code,
        message="Reset code issued. Send it to our WhatsApp number",
        expires_in_minutes=settings.VERIFICATION_CODE_TTL_MINUTES,
    )


@router.get("/session", response_model=SessionResponse)
def get_session(
    response: Response,
    claims: SessionClaims = Depends(get_session_claims),
    flow: VerificationFlow = Depends(get_verification_flow),
):
    """
    Describe the current session.

    If the verification state changed since the cookie was issued, the
    cookie is re-issued with the new state.
    """
    view, refreshed = flow.describe_session(claims)
    if refreshed:
        max_age = settings.SESSION_TOKEN_TTL_SECONDS if view.verified else settings.VERIFICATION_TOKEN_TTL_SECONDS
        set_auth_cookie(response, refreshed, max_age)
    return SessionResponse(data=view)


@router.post("/logout", response_model=SimpleResponse, dependencies=[Depends(require_csrf)])
def logout(response: Response):
    response.delete_cookie(
        key=settings.AUTH_COOKIE_NAME,
        path="/",
        httponly=True,
        secure=settings.COOKIE_SECURE,
        samesite="strict",
    )
    return SimpleResponse(message="Logged out")
