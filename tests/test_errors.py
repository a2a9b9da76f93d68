"""
Tests for error sanitizing, log redaction and health endpoints.
"""

import logging

from app.core.errors import REDACTED, RateLimited, build_error_response, sanitize_for_logging
from app.core.logging_config import RedactingFilter

API = "/api/v1"


def make_record(msg, **extra):
    record = logging.LogRecord("test", logging.INFO, __file__, 1, msg, (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestSanitizeForLogging:
    def test_sensitive_keys_are_redacted(self):
        sanitized = sanitize_for_logging({"password": "tulip7", "csrf_token": "x", "phone": "15551234567"})
        assert sanitized == {"password": REDACTED, "csrf_token": REDACTED, "phone": "15551234567"}

    def test_token_like_strings_are_masked(self):
        text = "cookie " + "ab" * 64 + " and eyJhbGci.eyJzdWIi.c2lnbmF0dXJl"
        sanitized = sanitize_for_logging(text)
        assert "ab" * 64 not in sanitized
        assert "eyJhbGci" not in sanitized

    def test_key_value_pairs_are_masked(self):
        assert sanitize_for_logging("secret=hunter2, user=ada") == f"secret={REDACTED}, user=ada"

    def test_exceptions_are_reduced(self):
        sanitized = sanitize_for_logging(ValueError("password: tulip7"))
        assert sanitized["type"] == "ValueError"
        assert "tulip7" not in sanitized["message"]


class TestRedactingFilter:
    def test_masks_extra_and_message(self):
        record = make_record("token=abc123 sent", auth_token="eyJ.eyJ.sig", record_id=7)

        assert RedactingFilter().filter(record)
        assert record.auth_token == REDACTED
        assert record.record_id == 7
        assert "abc123" not in record.getMessage()


class TestErrorResponses:
    def test_rate_limited_headers(self):
        response = build_error_response(RateLimited(retry_after=30, limit=5, reset_at=1_760_000_030))

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "30"
        assert response.headers["X-RateLimit-Limit"] == "5"
        assert response.headers["X-RateLimit-Remaining"] == "0"
        assert response.headers["X-RateLimit-Reset"] == "1760000030"

    def test_detail_is_not_sent_outside_development(self):
        response = build_error_response(RateLimited(retry_after=1, detail="internal detail"))
        assert b"internal detail" not in response.body


class TestHealth:
    def test_health(self, client):
        response = client.get(f"{API}/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_detailed_health(self, client):
        data = client.get(f"{API}/health/detailed").json()

        assert data["status"] == "healthy"
        assert data["checks"]["database"] == {"status": "healthy"}
        assert data["checks"]["state_store"]["backend"] == "InMemoryKeyValueStore"
