"""Root conftest for all tests.

Every test gets its own in-memory SQLite database and in-memory queue; the
process-wide settings are pointed at them before any app module is imported.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("QUEUE_BACKEND", "memory")
os.environ.setdefault("ROOK_SECRET_HASH_KEY", "test-secret")
os.environ.setdefault("ENVIRONMENT", "test")

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.db.models import Base
from app.persistence.health_state import HealthStateStore
from app.persistence.raw_webhooks import RawWebhookStore
from app.queue.memory import InMemoryWebhookQueue
from app.webhooks.ingress import WebhookIngress
from app.webhooks.signature import SIGNATURE_HEADER, SIGNATURE_PREFIX, WebhookSignatureVerifier, compute_signature
from app.workers.webhook_consumer import WebhookConsumer

TEST_SECRET = "test-secret"


# Enable foreign key constraints for SQLite
@event.listens_for(Engine, "connect")
def _set_sqlite_pragma(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class FakeClock:
    """Manually advanced clock for visibility-timeout tests."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def engine():
    """Isolated in-memory SQLite database shared across threads."""
    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture
def raw_store(session_factory) -> RawWebhookStore:
    return RawWebhookStore(session_factory)


@pytest.fixture
def state_store(session_factory) -> HealthStateStore:
    return HealthStateStore(session_factory)


@pytest.fixture
def user_id(state_store) -> str:
    return state_store.create_user(email="runner@example.com")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def queue(clock) -> InMemoryWebhookQueue:
    return InMemoryWebhookQueue("test-webhooks", visibility_timeout=60, max_receive_count=3, clock=clock)


@pytest.fixture
def verifier() -> WebhookSignatureVerifier:
    return WebhookSignatureVerifier(TEST_SECRET, production=True)


@pytest.fixture
def ingress(verifier, raw_store, state_store, queue) -> WebhookIngress:
    return WebhookIngress(verifier, raw_store, state_store, queue)


@pytest.fixture
def consumer(queue, raw_store, state_store) -> WebhookConsumer:
    return WebhookConsumer(
        queue,
        raw_store,
        state_store,
        max_messages=1,
        wait_seconds=0,
        poll_interval=0,
        error_backoff=0,
        retry_attempts=3,
        retry_delay=0,
        sleep=lambda _seconds: None,
    )


def signed_headers(body: bytes, secret: str = TEST_SECRET) -> dict[str, str]:
    return {SIGNATURE_HEADER: f"{SIGNATURE_PREFIX}{compute_signature(secret, body)}", "User-Agent": "rook-test"}


@pytest.fixture
def sign():
    return signed_headers


def sleep_payload(user_id: str, *, duration_seconds=28_800, updated="2024-01-01T08:00:00Z", source="Oura") -> dict:
    return {
        "client_uuid": "c0ffee00-0000-4000-8000-000000000000",
        "user_id": user_id,
        "data_structure": "sleep_summary",
        "sleep_health": {
            "summary": {
                "sleep_summary": {
                    "duration": {"sleep_duration_seconds_int": duration_seconds},
                    "metadata": {"datetime_string": updated, "sources_of_data_array": [source]},
                }
            }
        },
    }


def activity_payload(user_id: str, events: list[dict], *, source="Garmin") -> dict:
    return {
        "user_id": user_id,
        "data_structure": "activity_event",
        "data_source": source,
        "physical_health": {"events": {"activity_event": events}},
    }


def activity_event(start: str, *, updated="2024-01-01T12:00:00Z", activity_type="running", calories=None) -> dict:
    event = {
        "activity": {"activity_type_name_string": activity_type, "activity_start_datetime_string": start},
        "metadata": {"datetime_string": updated},
    }
    if calories is not None:
        event["calories"] = {"calories_net_active_kcal_float": calories}
    return event


@pytest.fixture
def payloads():
    """Builders for realistic ROOK payloads."""

    class Payloads:
        sleep = staticmethod(sleep_payload)
        activity = staticmethod(activity_payload)
        event = staticmethod(activity_event)

    return Payloads
