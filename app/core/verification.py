"""
Core phone verification logic.

Handles generation and extraction of 6-character verification codes and the
input rules for names, phone numbers and passwords.
"""

import logging
import re
import secrets
import string
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import RecordExists, UpstreamError, ValidationFailed
from app.crud import verification as verification_crud
from app.models.verification_code import VerificationCode

logger = logging.getLogger(__name__)


# Security constants
CODE_LENGTH = 6
CODE_ALPHABET = string.ascii_uppercase + string.digits
NAME_MIN_LENGTH = 2
NAME_MAX_LENGTH = 100
PASSWORD_MIN_LENGTH = 6
PASSWORD_MAX_LENGTH = 128

_CODE_CANDIDATE = re.compile(r"\b[A-Za-z0-9]{6}\b", re.ASCII)
_CODE_FORMAT = re.compile(r"^[A-Z0-9]{6}$")
_SCRIPT_TAG = re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE)
_HTML_TAG = re.compile(r"<[^>]*>")
_DANGEROUS_CHARS = re.compile(r"[<>\"'`]")
_JS_PROTOCOL = re.compile(r"javascript:", re.IGNORECASE)
_EVENT_HANDLER = re.compile(r"on\w+\s*=", re.IGNORECASE)
_NAME_CHARS = re.compile(r"^[a-zA-Z\s\-']+$")
_REPEATED_RUN = re.compile(r"(.)\1{3,}")


def _has_letter_and_digit(value: str) -> bool:
    return any(c.isalpha() for c in value) and any(c.isdigit() for c in value)


def generate_verification_code() -> str:
    """
    Generate a 6-character code from A-Z and 0-9.

    Candidates are redrawn until one contains at least one letter and one
    digit, so codes never look like plain words or plain numbers.
    """
    while True:
        code = ''.join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))
        if _has_letter_and_digit(code):
            return code


def extract_verification_code(message: str) -> Optional[str]:
    """
    Find the verification code in a free-text message.

    Returns the first standalone 6-character alphanumeric run that mixes
    letters and digits, upper-cased; None if there is none.

    >>> extract_verification_code("my code is ab12cd thanks")
    'AB12CD'
    >>> extract_verification_code("PLEASE VERIFY 123456") is None
    True
    """
    if not message:
        return None
    for candidate in _CODE_CANDIDATE.findall(message):
        if _has_letter_and_digit(candidate):
            return candidate.upper()
    return None


def validate_verification_code(code: Optional[str]) -> str:
    if not code or not isinstance(code, str):
        raise ValidationFailed(detail="verification code is required", operation="validate_code")
    code = code.strip().upper()
    if not _CODE_FORMAT.match(code) or not _has_letter_and_digit(code):
        raise ValidationFailed(detail="invalid verification code format", operation="validate_code")
    return code


def validate_name(name: Optional[str]) -> str:
    """Strip markup and dangerous characters, then check length and charset."""
    if not name or not isinstance(name, str):
        raise ValidationFailed(detail="name is required", operation="validate_name")

    cleaned = _SCRIPT_TAG.sub('', name)
    cleaned = _HTML_TAG.sub('', cleaned)
    cleaned = _DANGEROUS_CHARS.sub('', cleaned)
    cleaned = _JS_PROTOCOL.sub('', cleaned)
    cleaned = _EVENT_HANDLER.sub('', cleaned)
    cleaned = cleaned.strip()

    if len(cleaned) < NAME_MIN_LENGTH or len(cleaned) > NAME_MAX_LENGTH:
        raise ValidationFailed(detail="name length out of range", operation="validate_name")
    if not _NAME_CHARS.match(cleaned):
        raise ValidationFailed(detail="name contains invalid characters", operation="validate_name")
    return cleaned


def validate_phone(phone: Optional[str]) -> str:
    """Reduce to digits; 10-15 digits, no leading 0 when longer than 10."""
    if not phone or not isinstance(phone, str):
        raise ValidationFailed(detail="phone is required", operation="validate_phone")

    cleaned = re.sub(r"\D", "", phone)
    if len(cleaned) < 10 or len(cleaned) > 15:
        raise ValidationFailed(detail="phone length out of range", operation="validate_phone")
    if len(cleaned) > 10 and cleaned.startswith('0'):
        raise ValidationFailed(detail="phone has leading zero", operation="validate_phone")
    return cleaned


def validate_password(password: Optional[str]) -> str:
    """
    Password policy:
    - 6 to 128 characters
    - at least one letter
    - must not contain "password" or "123456" (case-insensitive)
    - no character repeated 4 or more times in a row
    """
    if not password or not isinstance(password, str):
        raise ValidationFailed(detail="password is required", operation="validate_password")
    if len(password) < PASSWORD_MIN_LENGTH or len(password) > PASSWORD_MAX_LENGTH:
        raise ValidationFailed(detail="password length out of range", operation="validate_password")
    if not re.search(r"[a-zA-Z]", password):
        raise ValidationFailed(detail="password needs a letter", operation="validate_password")
    lowered = password.lower()
    if "password" in lowered or "123456" in lowered:
        raise ValidationFailed(detail="password contains a weak pattern", operation="validate_password")
    if _REPEATED_RUN.search(password):
        raise ValidationFailed(detail="password contains a repeated run", operation="validate_password")
    return password


def create_unique_verification(
    db: Session,
    name: str,
    phone: str,
    now: Optional[datetime] = None,
    max_attempts: Optional[int] = None,
) -> VerificationCode:
    """
    Create a verification record with a code no live record uses.

    Each attempt probes for an unexpired record holding the candidate and
    then inserts; a unique violation on insert counts as a collision too.

    Raises:
        UpstreamError: If no free code was found within max_attempts
    """
    now = now or datetime.now(timezone.utc)
    max_attempts = max_attempts or settings.MAX_CODE_GENERATION_ATTEMPTS
    expires_at = now + timedelta(minutes=settings.VERIFICATION_CODE_TTL_MINUTES)

    for attempt in range(1, max_attempts + 1):
        code = generate_verification_code()
        if verification_crud.find_verification_by_code(db, code, now=now) is not None:
            continue

        record = VerificationCode(
            code=code,
            name=name,
            phone=phone,
            verified=False,
            expires_at=expires_at,
            created_at=now,
        )
        try:
            return verification_crud.insert_verification(db, record)
        except RecordExists:
            logger.info(f"Verification code collision on insert (attempt {attempt})")

    logger.critical(
        "Could not generate a unique verification code",
        extra={"attempts": max_attempts},
    )
    raise UpstreamError(detail="verification code space exhausted", operation="create_unique_verification")
