"""
Pytest configuration and fixtures for testing.

This file provides reusable test fixtures for:
- Database setup/teardown
- FastAPI test client (https, so Secure cookies round-trip)
- Recording outbound WhatsApp messages instead of queueing them
- CSRF tokens and signed webhook deliveries
"""

import json
import os
import string

# Settings are read at import time, so the environment must be ready first
os.environ["JWT_SECRET"] = string.ascii_letters + string.digits + "-_"
os.environ["WHATSAPP_APP_SECRET"] = "test-app-secret"
os.environ["WHATSAPP_VERIFY_TOKEN"] = "test-verify-token"
os.environ["WEBHOOK_FAILURE_DELAY_SECONDS"] = "0"
os.environ["STATE_BACKEND"] = "memory"
os.environ["ENVIRONMENT"] = "test"
os.environ["JSON_LOGS"] = "false"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.database import Base, get_db
from app.core.deps import get_message_sender
from app.core.kv_store import state_store
from app.core.security import get_token_signer
from app.core.webhook_security import get_webhook_authenticator
from app.models import User, VerificationCode  # noqa: F401
from main import app


# Use in-memory SQLite for testing (fast, isolated)
SQLALCHEMY_TEST_DATABASE_URL = "sqlite:///:memory:"

engine = create_engine(
    SQLALCHEMY_TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

API = "/api/v1"
USER_AGENT = "pytest-browser/1.0"


@pytest.fixture(autouse=True)
def reset_security_state():
    """Rate limits, CSRF tokens and dedup entries never leak between tests."""
    state_store.clear()
    yield
    state_store.clear()


@pytest.fixture
def db_session():
    """
    Create a fresh database for each test.
    """
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def sent_messages():
    """List of (to, text) pairs the service tried to send."""
    return []


@pytest.fixture
def recording_sender(sent_messages):
    def send(to: str, text: str) -> bool:
        sent_messages.append((to, text))
        return True
    return send


@pytest.fixture
def client(db_session, recording_sender):
    """
    FastAPI test client with overridden database and messaging dependencies.
    """
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_message_sender] = lambda: recording_sender

    with TestClient(app, base_url="https://testserver", headers={"User-Agent": USER_AGENT}) as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture
def csrf_headers(client):
    """Fetch a CSRF token (which also sets the cookie) and return the matching header."""
    response = client.get(f"{API}/auth/csrf-token")
    assert response.status_code == 200
    return {"x-csrf-token": response.json()["token"]}


@pytest.fixture
def signer():
    return get_token_signer()


@pytest.fixture
def sign_payload():
    """Return a function producing the X-Hub-Signature-256 header for a body."""
    return get_webhook_authenticator().sign


def build_webhook_body(sender: str, text: str, message_id: str) -> bytes:
    """Minimal WhatsApp Cloud API inbound text message delivery."""
    payload = {
        "object": "whatsapp_business_account",
        "entry": [{
            "id": "WABA_ID",
            "changes": [{
                "field": "messages",
                "value": {
                    "messaging_product": "whatsapp",
                    "messages": [{
                        "id": message_id,
                        "from": sender,
                        "timestamp": "1760000000",
                        "type": "text",
                        "text": {"body": text},
                    }],
                },
            }],
        }],
    }
    return json.dumps(payload).encode("utf-8")


@pytest.fixture
def deliver(client, sign_payload):
    """Post a correctly signed inbound message to the webhook."""
    def _deliver(sender: str, text: str, message_id: str):
        body = build_webhook_body(sender, text, message_id)
        return client.post(
            f"{API}/webhooks/whatsapp",
            content=body,
            headers={
                "Content-Type": "application/json",
                "X-Hub-Signature-256": sign_payload(body),
            },
        )
    return _deliver


@pytest.fixture
def make_webhook_body():
    return build_webhook_body
