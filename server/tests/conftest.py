"""
Pytest configuration and shared fixtures.
"""
import pytest
import os
import sys
from typing import Generator, Dict
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from models import Base, get_db
from main import app, get_registry, get_message_board
from message_board import MessageBoard
from registry import ClientRegistry


class FakeClock:
    """Manually advanced wall clock (seconds)."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


@pytest.fixture(autouse=True)
def no_admin_key(monkeypatch):
    """Admin routes are open unless a test sets ADMIN_KEY itself."""
    monkeypatch.delenv("ADMIN_KEY", raising=False)


@pytest.fixture(scope="function")
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture(scope="function")
def registry(clock: FakeClock) -> ClientRegistry:
    return ClientRegistry(clock=clock, online_timeout=30, eviction_threshold=24 * 60 * 60)


@pytest.fixture(scope="function")
def message_board(clock: FakeClock) -> MessageBoard:
    return MessageBoard(max_messages=100, clock=clock)


@pytest.fixture(scope="function")
def test_db() -> Generator[Session, None, None]:
    """
    Create a clean license database for each test.
    Uses in-memory SQLite for fast test execution.
    """
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    Base.metadata.create_all(bind=engine)

    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def client(test_db: Session, registry: ClientRegistry, message_board: MessageBoard) -> TestClient:
    """
    Create a test client with a fresh registry, message board and database.
    """
    def override_get_db():
        try:
            yield test_db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_registry] = lambda: registry
    app.dependency_overrides[get_message_board] = lambda: message_board

    client = TestClient(app)
    yield client

    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def admin_key(monkeypatch) -> Dict[str, str]:
    """Configure ADMIN_KEY and return matching headers."""
    key = "test-admin-key-0123456789"
    monkeypatch.setenv("ADMIN_KEY", key)
    return {"X-Admin-Key": key}


@pytest.fixture(scope="function")
def polled_client(client: TestClient) -> str:
    """Poll once as a new device and return the minted client id."""
    response = client.post("/client/poll", json={"deviceId": "device-001", "foregroundApp": "Browser"})
    assert response.status_code == 200
    return response.json()["clientId"]


@pytest.fixture(scope="function")
def capture_logs(monkeypatch):
    """
    Capture structured logs emitted during tests.
    """
    logs = []

    from observability import StructuredLogger

    original_log_event = StructuredLogger.log_event

    def capture_log_event(self, event: str, level: str = "INFO", **fields):
        logs.append({
            "event": event,
            "level": level,
            **fields
        })
        original_log_event(self, event, level, **fields)

    monkeypatch.setattr(StructuredLogger, "log_event", capture_log_event)

    return logs
