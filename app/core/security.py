"""
Security utilities for signed session tokens and password hashing.

Implements stateless HS256 tokens (header.payload.signature) carried in an
HTTP-only cookie. Passwords are hashed using bcrypt.
"""

import base64
import binascii
import math
import secrets
import time
from collections import Counter
from functools import lru_cache
from typing import Callable, Optional

from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import ValidationError

from app.core.config import settings
from app.core.errors import ConfigError
from app.schemas.session import AuthMethod, SessionClaims

# Password hashing context (bcrypt, 12 rounds)
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=12)

MIN_SECRET_LENGTH = 64
MIN_SECRET_ENTROPY = 4.0

# Compared against when an account does not exist so every login pays for one bcrypt check
_DUMMY_HASH = pwd_context.hash(secrets.token_hex(16))


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a plain password against a hashed password."""
    # Bcrypt has a 72-byte limit - truncate if necessary
    password_bytes = plain_password.encode('utf-8')[:72]
    return pwd_context.verify(password_bytes, hashed_password)


def get_password_hash(password: str) -> str:
    """
    Hash a password using bcrypt.

    Note: Bcrypt has a 72-byte limit. Passwords longer than 72 bytes
    are automatically truncated to comply with this limitation.
    """
    password_bytes = password.encode('utf-8')[:72]
    return pwd_context.hash(password_bytes)


def dummy_verify() -> None:
    """Spend the same bcrypt work as a real check, for unknown accounts."""
    pwd_context.verify("not-the-password", _DUMMY_HASH)


def generate_session_id() -> str:
    """128 hex characters of cryptographic randomness."""
    return secrets.token_hex(64)


def shannon_entropy(value: str) -> float:
    """Shannon entropy of value in bits per character."""
    if not value:
        return 0.0
    length = len(value)
    return -sum((count / length) * math.log2(count / length) for count in Counter(value).values())


def validate_secret_strength(secret: Optional[str]) -> str:
    """
    Ensure a signing secret is long and random enough.

    Raises:
        ConfigError: If the secret is missing, shorter than 64 characters,
            or below 4 bits of entropy per character
    """
    if not secret:
        raise ConfigError(detail="JWT_SECRET is required", operation="startup")
    if len(secret) < MIN_SECRET_LENGTH:
        raise ConfigError(detail=f"JWT_SECRET must be at least {MIN_SECRET_LENGTH} characters", operation="startup")
    if shannon_entropy(secret) < MIN_SECRET_ENTROPY:
        raise ConfigError(detail="JWT_SECRET does not contain sufficient entropy", operation="startup")
    return secret


def _is_canonical_b64url(segment: str) -> bool:
    # Rejects encodings whose unused trailing bits were altered
    try:
        decoded = base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4))
    except (binascii.Error, ValueError):
        return False
    return base64.urlsafe_b64encode(decoded).rstrip(b"=").decode("ascii") == segment


class SignedToken:
    """
    Mint and verify tamper-evident session tokens.

    Payload fields: userId, username, phone, role, method, verified,
    iat, exp, iss, aud. The signature is HMAC-SHA-256 over the first two
    segments using the configured secret.
    """

    def __init__(
        self,
        secret: str,
        issuer: str,
        audience: str,
        algorithm: str = "HS256",
        default_ttl_seconds: int = 3600,
        clock: Callable[[], float] = time.time,
    ):
        self._secret = validate_secret_strength(secret)
        self.issuer = issuer
        self.audience = audience
        self.algorithm = algorithm
        self.default_ttl_seconds = default_ttl_seconds
        self._clock = clock

    def mint(self, claims: SessionClaims, ttl_seconds: Optional[int] = None) -> str:
        """
        Create a signed token for claims.

        Args:
            claims: Session claims; issued_at/expires_at are ignored and recomputed
            ttl_seconds: Lifetime (default: 1 hour)

        Returns:
            Encoded token as a string
        """
        issued_at = int(self._clock())
        expires_at = issued_at + (ttl_seconds or self.default_ttl_seconds)
        payload = {
            "userId": claims.subject,
            "username": claims.display_name,
            "phone": claims.phone,
            "role": claims.role,
            "method": claims.method.value,
            "verified": claims.verified,
            "iat": issued_at,
            "exp": expires_at,
            "iss": self.issuer,
            "aud": self.audience,
        }
        return jwt.encode(payload, self._secret, algorithm=self.algorithm)

    def verify(self, token: Optional[str]) -> Optional[SessionClaims]:
        """
        Decode and validate a token.

        Returns:
            The claims, or None when the token is malformed, tampered with,
            signed with another algorithm, issued for another issuer/audience
            or expired. Callers get no indication of which check failed.
        """
        if not token or not isinstance(token, str):
            return None

        segments = token.split(".")
        if len(segments) != 3 or not _is_canonical_b64url(segments[2]):
            return None

        try:
            header = jwt.get_unverified_header(token)
            if header.get("alg") != self.algorithm:
                return None
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[self.algorithm],
                audience=self.audience,
                issuer=self.issuer,
                # Expiry is checked below against the injected clock
                options={"verify_exp": False},
            )
        except JWTError:
            return None

        expires_at = payload.get("exp")
        if not isinstance(expires_at, int) or self._clock() >= expires_at:
            return None

        try:
            return SessionClaims(
                subject=payload["userId"],
                display_name=payload["username"],
                phone=payload["phone"],
                role=payload.get("role", "user"),
                method=AuthMethod(payload["method"]),
                verified=bool(payload.get("verified", False)),
                issued_at=payload.get("iat"),
                expires_at=expires_at,
            )
        except (KeyError, ValueError, ValidationError):
            return None


@lru_cache
def get_token_signer() -> SignedToken:
    """
    Process-wide token signer built from settings.

    Raises:
        ConfigError: If JWT_SECRET is missing or weak
    """
    return SignedToken(
        secret=settings.JWT_SECRET,
        issuer=settings.JWT_ISSUER,
        audience=settings.JWT_AUDIENCE,
        algorithm=settings.JWT_ALGORITHM,
        default_ttl_seconds=settings.SESSION_TOKEN_TTL_SECONDS,
    )
