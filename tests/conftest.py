"""
Pytest configuration and shared fixtures.

Test environment variables are set here, before any chatrelay import, so
settings, the engine and the logging setup all see them.
"""

import json
import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_chatrelay.db")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("WEBHOOK_SECRET", "testsecret")
os.environ.setdefault("VERIFY_TOKEN", "verify-me")
os.environ.setdefault("BUSINESS_OWNER_ID", "owner-account")
os.environ.setdefault("WHATSAPP_TOKEN", "test-token")
os.environ.setdefault("PHONE_NUMBER_ID", "1098765432")
os.environ.pop("MEDIA_BUCKET", None)

import pytest
from fastapi.testclient import TestClient

# Clear settings cache before any app imports to ensure test env vars are used
from chatrelay.config import get_settings
get_settings.cache_clear()

from chatrelay import models  # noqa: E402,F401
from chatrelay.main import app  # noqa: E402
from chatrelay.storage import Base, SessionLocal, engine  # noqa: E402
from chatrelay.utils import sign_body  # noqa: E402


OWNER_ID = os.environ["BUSINESS_OWNER_ID"]
PHONE_NUMBER_ID = os.environ["PHONE_NUMBER_ID"]
WEBHOOK_SECRET = os.environ["WEBHOOK_SECRET"]


@pytest.fixture(scope="function")
def client():
    """Create test client with fresh database for each test."""
    Base.metadata.create_all(bind=engine)

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db():
    """Session on a fresh database, for tests that call the domain layer directly."""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()

    yield session

    session.close()
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def owner_headers() -> dict:
    return {"X-Account-Id": OWNER_ID}


def webhook_body(messages=None, contacts=None, statuses=None, phone_number_id=PHONE_NUMBER_ID) -> str:
    """Build a WhatsApp Cloud API webhook body."""
    value = {
        "messaging_product": "whatsapp",
        "metadata": {"display_phone_number": "15550001111", "phone_number_id": phone_number_id},
    }
    if contacts is not None:
        value["contacts"] = contacts
    if messages is not None:
        value["messages"] = messages
    if statuses is not None:
        value["statuses"] = statuses
    return json.dumps({
        "object": "whatsapp_business_account",
        "entry": [{"id": "WABA_ID", "changes": [{"field": "messages", "value": value}]}],
    })


def text_message(message_id: str, sender: str, body: str, timestamp: int = 1736935200) -> dict:
    return {
        "from": sender,
        "id": message_id,
        "timestamp": str(timestamp),
        "type": "text",
        "text": {"body": body},
    }


@pytest.fixture
def post_webhook(client):
    """POST a body to /webhook with a valid signature."""
    def post(body: str, secret: str = WEBHOOK_SECRET):
        return client.post(
            "/webhook",
            content=body,
            headers={
                "Content-Type": "application/json",
                "X-Hub-Signature-256": sign_body(body.encode("utf-8"), secret),
            },
        )
    return post
