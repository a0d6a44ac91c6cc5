import os


# Ensure sensible defaults for tests before app import
os.environ.setdefault("ENV", "dev")
os.environ["DB_URL"] = "sqlite:///:memory:"
os.environ.setdefault("OTP_STORAGE_SECRET", "test-otp-secret")
os.environ.setdefault("LOOKUP_PROVIDER", "none")
os.environ.setdefault("SMS_PROVIDER", "log")
os.environ.setdefault("RATE_LIMIT_BACKEND", "memory")
os.environ.setdefault("RATE_LIMIT_PER_MINUTE", "100000")
os.environ.setdefault("OTP_GATEWAY_SOFT_FAIL", "false")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from phoneverify.store_memory import InMemoryStore  # noqa: E402

from .utils import FrozenClock, RecordingGateway, StubLookup, make_service  # noqa: E402


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def gateway():
    return RecordingGateway()


@pytest.fixture
def lookup():
    return StubLookup()


@pytest.fixture
def service(store, gateway, clock):
    # no lookup client: every number goes through the heuristic fallback
    return make_service(store, gateway, clock)


@pytest.fixture
def client(service):
    from phoneverify.main import create_app

    return TestClient(create_app(service=service))
