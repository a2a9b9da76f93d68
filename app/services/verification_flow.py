"""
Phone verification and password business logic.

A verification record moves CREATED -> VERIFIED when its code arrives over
WhatsApp, and the verified identity can then set a password (PASSWORD_SET).
Every HTTP endpoint and the inbound webhook go through VerificationFlow.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional, Tuple

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import (
    AuthInvalid,
    CodeExpired,
    RecordExists,
    RecordNotFound,
    SecurityError,
    Unauthorized,
    ValidationFailed,
    VerificationPending,
)
from app.core.security import (
    SignedToken,
    dummy_verify,
    generate_session_id,
    get_password_hash,
    verify_password,
)
from app.core.verification import (
    create_unique_verification,
    extract_verification_code,
    validate_name,
    validate_password,
    validate_phone,
    validate_verification_code,
)
from app.crud import verification as verification_crud
from app.models.user import User
from app.models.verification_code import VerificationCode
from app.schemas.auth import SessionView
from app.schemas.session import AuthMethod, SessionClaims

logger = logging.getLogger(__name__)

# send(to, text) -> queued?
MessageSender = Callable[[str, str], bool]

INVALID_CODE_REPLY = "❌ Invalid verification code. Please check and try again."
ALREADY_VERIFIED_REPLY = "✅ You are already verified! You can access the protected page."
VERIFY_ERROR_REPLY = "❌ Error verifying your code. Please try again."
WELCOME_REPLY = "✅ Verification successful!\n\nWelcome, {name}! You can now access the protected page."


@dataclass(frozen=True)
class InboundOutcome:
    """What handling one inbound message did."""
    status: str  # ignored | invalid | already_verified | verified | error
    code: Optional[str] = None
    reply_queued: bool = False


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored in UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class VerificationFlow:
    """
    Args:
        db: Database session
        sender: Callable queueing an outbound WhatsApp message
        signer: Token signer for the auth_token cookie
        now: Clock returning an aware UTC datetime (default: current time)
    """

    def __init__(
        self,
        db: Session,
        sender: MessageSender,
        signer: SignedToken,
        now: Optional[Callable[[], datetime]] = None,
    ):
        self.db = db
        self.sender = sender
        self.signer = signer
        self._now = now or _utcnow

    def _verification_token(self, record: VerificationCode, verified: bool, ttl_seconds: int) -> str:
        claims = SessionClaims(
            subject=record.code,
            display_name=record.name,
            phone=record.phone,
            method=AuthMethod.VERIFICATION,
            verified=verified,
        )
        return self.signer.mint(claims, ttl_seconds=ttl_seconds)

    def _password_token(self, user: User) -> str:
        claims = SessionClaims(
            subject=generate_session_id(),
            display_name=user.name,
            phone=user.phone,
            method=AuthMethod.PASSWORD,
            verified=True,
        )
        return self.signer.mint(claims, ttl_seconds=settings.SESSION_TOKEN_TTL_SECONDS)

    def _reply(self, to: str, text: str) -> bool:
        queued = self.sender(to, text)
        if not queued:
            logger.warning("Reply could not be queued")
        return queued

    def start_signup(self, name: str, phone: str) -> Tuple[VerificationCode, str]:
        """
        Issue a code for a new phone number.

        Returns:
            (record, token) where token is a 24 hour unverified session

        Raises:
            ValidationFailed: Bad name or phone
            RecordExists: A verified account already uses this phone
        """
        name = validate_name(name)
        phone = validate_phone(phone)

        existing = verification_crud.find_user_by_phone(self.db, phone)
        if existing is not None and existing.verified:
            raise RecordExists(detail="phone already registered", operation="start_signup")

        record = create_unique_verification(self.db, name, phone, now=self._now())
        logger.info("Signup verification code issued", extra={"record_id": record.id})
        token = self._verification_token(record, False, settings.VERIFICATION_TOKEN_TTL_SECONDS)
        return record, token

    def start_password_reset(self, phone: str) -> Tuple[VerificationCode, str]:
        """
        Issue a fresh code for an existing verified account.

        Raises:
            RecordNotFound: No verified account for this phone (ACCOUNT_NOT_FOUND)
        """
        phone = validate_phone(phone)

        user = verification_crud.find_user_by_phone(self.db, phone)
        if user is None or not user.verified:
            raise RecordNotFound(detail="no verified account", operation="start_password_reset", code="ACCOUNT_NOT_FOUND")

        record = create_unique_verification(self.db, user.name, phone, now=self._now())
        logger.info("Password reset code issued", extra={"record_id": record.id})
        token = self._verification_token(record, False, settings.VERIFICATION_TOKEN_TTL_SECONDS)
        return record, token

    def handle_inbound_message(self, sender: str, text: Optional[str]) -> InboundOutcome:
        """
        Process one inbound WhatsApp text.

        Messages without a code are ignored without a reply. A record is
        flipped to verified at most once; later deliveries of the same code
        get an informational reply and change nothing.
        """
        code = extract_verification_code(text or "")
        if code is None:
            logger.debug("Inbound message without a verification code ignored")
            return InboundOutcome(status="ignored")

        now = self._now()
        record = verification_crud.find_verification_by_code(self.db, code, now=now)
        if record is None:
            return InboundOutcome("invalid", code, self._reply(sender, INVALID_CODE_REPLY))
        if record.verified:
            return InboundOutcome("already_verified", code, self._reply(sender, ALREADY_VERIFIED_REPLY))

        try:
            flipped = verification_crud.update_verification_verified(self.db, code, now=now)
        except SecurityError as e:
            logger.error(f"Could not mark code verified: {e.code}")
            return InboundOutcome("error", code, self._reply(sender, VERIFY_ERROR_REPLY))

        if not flipped:
            # A concurrent delivery got there first
            return InboundOutcome("already_verified", code, self._reply(sender, ALREADY_VERIFIED_REPLY))

        logger.info("Verification code confirmed", extra={"record_id": record.id})
        return InboundOutcome("verified", code, self._reply(sender, WELCOME_REPLY.format(name=record.name)))

    def exchange_code(self, code: str) -> Tuple[VerificationCode, str]:
        """
        Trade a verified code for a 1 hour session.

        Raises:
            ValidationFailed: Code is missing or not 6 letters and digits
            RecordNotFound: Unknown or expired code (indistinguishable)
            VerificationPending: Code exists but has not arrived over WhatsApp yet
        """
        code = validate_verification_code(code)

        record = verification_crud.find_verification_by_code(self.db, code, now=self._now())
        if record is None:
            raise RecordNotFound(detail="unknown or expired code", operation="exchange_code")
        if not record.verified:
            raise VerificationPending(detail="code not verified yet", operation="exchange_code")

        token = self._verification_token(record, True, settings.SESSION_TOKEN_TTL_SECONDS)
        return record, token

    def set_password(self, claims: SessionClaims, code: str, password: str) -> Tuple[User, str]:
        """
        Set (or reset) the password for the identity bound to claims.

        Raises:
            Unauthorized: Session is not a verification session for this code
            ValidationFailed: Password breaks the policy
            CodeExpired: Bound record was verified but has since expired
            RecordNotFound: Bound record is missing or not verified
        """
        normalized = (code or "").strip().upper()
        if claims.is_password_session or claims.subject != normalized:
            raise Unauthorized(detail="session not bound to this code", operation="set_password")

        validate_password(password)

        record = verification_crud.find_verification_by_code(self.db, normalized, include_expired=True)
        if record is None or not record.verified:
            raise RecordNotFound(detail="no verified record for code", operation="set_password")
        if record.phone != claims.phone:
            raise Unauthorized(detail="session phone does not match record", operation="set_password")
        if _as_utc(record.expires_at) <= self._now():
            raise CodeExpired(operation="set_password")

        user = verification_crud.upsert_user(
            self.db,
            phone=record.phone,
            name=record.name,
            password_hash=get_password_hash(password),
        )
        logger.info("Password set", extra={"user_id": str(user.id)})
        return user, self._password_token(user)

    def authenticate_password(self, phone: str, password: str) -> Tuple[User, str]:
        """
        Log in with phone and password.

        Unknown phone, unverified account and wrong password all raise the
        same AuthInvalid after one bcrypt check.
        """
        phone = validate_phone(phone)
        if not password:
            raise ValidationFailed(detail="password is required", operation="authenticate_password")

        user = verification_crud.find_user_by_phone(self.db, phone)
        if user is None or not user.verified:
            dummy_verify()
            raise AuthInvalid(detail="unknown or unverified account", operation="authenticate_password")
        if not verify_password(password, user.password_hash):
            raise AuthInvalid(detail="wrong password", operation="authenticate_password")

        return user, self._password_token(user)

    def describe_session(self, claims: SessionClaims) -> Tuple[SessionView, Optional[str]]:
        """
        Current view of a session.

        Password sessions are self-contained. Verification sessions re-read
        their record and return a re-minted token when the verified flag has
        changed since the token was issued.

        Returns:
            (view, refreshed_token or None)

        Raises:
            RecordNotFound: The bound record is gone or expired
        """
        if claims.is_password_session:
            view = SessionView(code=claims.subject, name=claims.display_name, verified=claims.verified)
            return view, None

        record = verification_crud.find_verification_by_code(self.db, claims.subject, now=self._now())
        if record is None:
            raise RecordNotFound(detail="session record missing", operation="describe_session")

        view = SessionView(code=record.code, name=record.name, verified=record.verified)
        refreshed = None
        if record.verified != claims.verified:
            ttl = settings.SESSION_TOKEN_TTL_SECONDS if record.verified else settings.VERIFICATION_TOKEN_TTL_SECONDS
            refreshed = self._verification_token(record, record.verified, ttl)
        return view, refreshed
