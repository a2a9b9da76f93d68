"""
Tests for signed session tokens and password hashing.

Tests:
- Token mint/verify and every rejection path
- Secret strength validation
- bcrypt helpers
"""

import string

import pytest
from jose import jwt

from app.core.errors import ConfigError
from app.core.security import (
    SignedToken,
    dummy_verify,
    generate_session_id,
    get_password_hash,
    shannon_entropy,
    validate_secret_strength,
    verify_password,
)
from app.schemas.session import AuthMethod, SessionClaims

SECRET = string.ascii_letters + string.digits + "-_"
OTHER_SECRET = SECRET[::-1]
ISSUER = "whatsapp-auth-system"
AUDIENCE = "auth-app"
B64URL = string.ascii_uppercase + string.ascii_lowercase + string.digits + "-_"


class FakeClock:
    def __init__(self, now: float = 1_760_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def token_signer(clock):
    return SignedToken(SECRET, ISSUER, AUDIENCE, clock=clock)


@pytest.fixture
def claims():
    return SessionClaims(
        subject="AB12CD",
        display_name="Ada Lovelace",
        phone="15551234567",
        method=AuthMethod.VERIFICATION,
        verified=True,
    )


def _flip_middle(segment: str) -> str:
    i = len(segment) // 2
    replacement = "A" if segment[i] != "A" else "B"
    return segment[:i] + replacement + segment[i + 1:]


class TestSignedToken:
    """Mint and verify"""

    def test_round_trip_preserves_claims(self, token_signer, claims, clock):
        token = token_signer.mint(claims)
        decoded = token_signer.verify(token)

        assert decoded is not None
        assert decoded.subject == "AB12CD"
        assert decoded.display_name == "Ada Lovelace"
        assert decoded.phone == "15551234567"
        assert decoded.method == AuthMethod.VERIFICATION
        assert decoded.verified is True
        assert decoded.expires_at == int(clock.now) + 3600

    def test_payload_uses_wire_field_names(self, token_signer, claims):
        token = token_signer.mint(claims, ttl_seconds=60)
        payload = jwt.get_unverified_claims(token)

        assert set(payload) == {
            "userId", "username", "phone", "role", "method",
            "verified", "iat", "exp", "iss", "aud",
        }
        assert payload["method"] == "verification"
        assert payload["exp"] - payload["iat"] == 60

    def test_expired_exactly_at_exp(self, token_signer, claims, clock):
        token = token_signer.mint(claims, ttl_seconds=10)

        clock.now += 9
        assert token_signer.verify(token) is not None
        clock.now += 1
        assert token_signer.verify(token) is None

    def test_tampering_any_segment_is_rejected(self, token_signer, claims):
        token = token_signer.mint(claims)
        header, payload, signature = token.split(".")

        assert token_signer.verify(f"{_flip_middle(header)}.{payload}.{signature}") is None
        assert token_signer.verify(f"{header}.{_flip_middle(payload)}.{signature}") is None
        assert token_signer.verify(f"{header}.{payload}.{_flip_middle(signature)}") is None

    def test_non_canonical_signature_encoding_is_rejected(self, token_signer, claims):
        token = token_signer.mint(claims)
        header, payload, signature = token.split(".")
        # The last character of a 32-byte signature carries two unused bits
        last = signature[-1]
        altered = B64URL[B64URL.index(last) ^ 1]

        assert token_signer.verify(f"{header}.{payload}.{signature[:-1]}{altered}") is None

    def test_wrong_secret_is_rejected(self, claims, clock):
        token = SignedToken(OTHER_SECRET, ISSUER, AUDIENCE, clock=clock).mint(claims)
        assert SignedToken(SECRET, ISSUER, AUDIENCE, clock=clock).verify(token) is None

    def test_wrong_issuer_or_audience_is_rejected(self, token_signer, claims, clock):
        assert token_signer.verify(SignedToken(SECRET, "someone-else", AUDIENCE, clock=clock).mint(claims)) is None
        assert token_signer.verify(SignedToken(SECRET, ISSUER, "other-app", clock=clock).mint(claims)) is None

    def test_other_algorithm_is_rejected(self, token_signer, claims, clock):
        token = SignedToken(SECRET, ISSUER, AUDIENCE, algorithm="HS512", clock=clock).mint(claims)
        assert token_signer.verify(token) is None

    @pytest.mark.parametrize("token", [None, "", "abc", "a.b", "a.b.c.d", "not.a.token"])
    def test_malformed_tokens_are_rejected(self, token_signer, token):
        assert token_signer.verify(token) is None

    def test_unknown_method_is_rejected(self, token_signer, clock):
        payload = {
            "userId": "AB12CD", "username": "Ada", "phone": "15551234567",
            "role": "user", "method": "magic-link", "verified": True,
            "iat": int(clock.now), "exp": int(clock.now) + 60,
            "iss": ISSUER, "aud": AUDIENCE,
        }
        token = jwt.encode(payload, SECRET, algorithm="HS256")
        assert token_signer.verify(token) is None

    def test_password_session_is_tagged_explicitly(self, token_signer):
        session_id = generate_session_id()
        claims = SessionClaims(
            subject=session_id,
            display_name="Ada",
            phone="15551234567",
            method=AuthMethod.PASSWORD,
            verified=True,
        )
        decoded = token_signer.verify(token_signer.mint(claims))
        assert decoded.method == AuthMethod.PASSWORD
        assert decoded.is_password_session


class TestSecretStrength:
    def test_missing_secret(self):
        with pytest.raises(ConfigError):
            validate_secret_strength("")

    def test_short_secret(self):
        with pytest.raises(ConfigError):
            validate_secret_strength(SECRET[:63])

    def test_low_entropy_secret(self):
        low = "ab" * 40
        assert shannon_entropy(low) == pytest.approx(1.0)
        with pytest.raises(ConfigError):
            validate_secret_strength(low)

    def test_strong_secret(self):
        assert validate_secret_strength(SECRET) == SECRET

    def test_signer_refuses_weak_secret(self):
        with pytest.raises(ConfigError):
            SignedToken("x" * 64, ISSUER, AUDIENCE)


class TestPasswords:
    def test_hash_and_verify(self):
        hashed = get_password_hash("correct horse 7")
        assert hashed != "correct horse 7"
        assert verify_password("correct horse 7", hashed)
        assert not verify_password("wrong horse 7", hashed)

    def test_passwords_are_truncated_at_72_bytes(self):
        hashed = get_password_hash("a" * 72 + "suffix")
        assert verify_password("a" * 72 + "different", hashed)

    def test_dummy_verify_runs(self):
        dummy_verify()

    def test_session_id_is_128_hex(self):
        session_id = generate_session_id()
        assert len(session_id) == 128
        int(session_id, 16)
        assert generate_session_id() != session_id
