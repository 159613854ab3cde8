"""
Pytest configuration and shared fixtures.

Environment defaults are set before any tgcomment import so the settings
and the engine are built against the test database.
"""

import os

import pytest

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_tgcomment.db")
os.environ.setdefault("TELEGRAM_BOT_TOKEN", "123456:TEST-TOKEN")
os.environ.setdefault("WEBHOOK_SECRET", "test-webhook-secret")

# Clear settings cache before any other tgcomment import
from tgcomment.config import get_settings  # noqa: E402

get_settings.cache_clear()

from tgcomment import models  # noqa: E402,F401
from tgcomment.storage import Base, SessionLocal, engine  # noqa: E402

from tests.fakes import FakeStore, FakeTelegramClient  # noqa: E402

CLIENT_ID = 1
DOCTOR_ID = 2
CLIENT_PLATFORM_ID = 1001
DOCTOR_PLATFORM_ID = 2002
RECORD_ID = 42


@pytest.fixture(scope="function")
def db():
    """Fresh queue tables for each test."""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def store() -> FakeStore:
    """A client and a doctor sharing consultation 42."""
    store = FakeStore()
    store.add_user(CLIENT_ID, "Alice Client", platform_user_id=CLIENT_PLATFORM_ID)
    store.add_user(DOCTOR_ID, "Dr. Bob", platform_user_id=DOCTOR_PLATFORM_ID)
    store.add_record(RECORD_ID, "Knee pain", doctor_id=DOCTOR_ID, client_id=CLIENT_ID)
    return store


@pytest.fixture
def tg() -> FakeTelegramClient:
    return FakeTelegramClient()


def make_message(
    message_id: int,
    from_id: int = CLIENT_PLATFORM_ID,
    chat_id: int = CLIENT_PLATFORM_ID,
    text=None,
    **fields,
) -> dict:
    """Raw platform message as it appears inside an update."""
    message = {
        "message_id": message_id,
        "from": {"id": from_id, "is_bot": False, "first_name": "Test"},
        "chat": {"id": chat_id, "type": "private"},
        "date": 1700000000,
    }
    if text is not None:
        message["text"] = text
    message.update(fields)
    return message


def make_update(update_id: int, message: dict, kind: str = "message") -> dict:
    return {"update_id": update_id, kind: message}
