from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

from webhook_retry.api import routes
from webhook_retry.api.server import create_app
from webhook_retry.common.backoff import BackoffPolicy
from webhook_retry.common.config import (
    ApiConfig,
    DispatcherConfig,
    MetricsConfig,
    SQLStoreConfig,
    StoreType,
)
from webhook_retry.common.store import InMemoryTaskStore, SQLTaskStore
from webhook_retry.dispatcher.dispatcher import WebhookDispatcher


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start=None):
        self.now = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now = self.now + timedelta(seconds=seconds)


class MockResponse:
    def __init__(self, status, text="OK"):
        self.status = status
        self._text = text

    async def text(self):
        return self._text


class _MockRequest:
    def __init__(self, outcome):
        self.outcome = outcome

    async def __aenter__(self):
        if isinstance(self.outcome, BaseException):
            raise self.outcome
        return self.outcome

    async def __aexit__(self, exc_type, exc, tb):
        return None


class MockHTTPSession:
    """Stands in for aiohttp.ClientSession.

    Each target URL maps to a list of outcomes consumed one per request: an
    int is a response status, an exception is raised from the request.
    """

    def __init__(self, outcomes=None, default=200):
        self.outcomes = {url: list(values) for url, values in (outcomes or {}).items()}
        self.default = default
        self.requests = []

    def post(self, url, data=None, headers=None, timeout=None):
        self.requests.append({"url": url, "data": data, "headers": headers, "timeout": timeout})
        queued = self.outcomes.get(url)
        outcome = queued.pop(0) if queued else self.default
        if isinstance(outcome, int):
            outcome = MockResponse(outcome)
        return _MockRequest(outcome)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store(clock):
    return InMemoryTaskStore(clock=clock)


@pytest_asyncio.fixture
async def sql_store(clock):
    store = SQLTaskStore(SQLStoreConfig(url="sqlite://"), clock=clock)
    yield store
    await store.close()


@pytest_asyncio.fixture(params=["memory", "sql"])
async def store(request, clock):
    """Runs a test against every store implementation."""
    if request.param == "memory":
        store = InMemoryTaskStore(clock=clock)
    else:
        store = SQLTaskStore(SQLStoreConfig(url="sqlite://"), clock=clock)
    yield store
    await store.close()


@pytest.fixture
def make_session():
    """Factory for MockHTTPSession instances."""
    return MockHTTPSession


@pytest.fixture
def dispatcher(store):
    return WebhookDispatcher(
        store=store,
        backoff=BackoffPolicy(),
        headers={"Authorization": "Bearer test-token"},
        timeout=5,
        batch_size=100,
        claim_ttl=30,
    )


@pytest.fixture
def sample_payload():
    return {
        "type": "key.overdue",
        "shop_id": "shop-42",
        "vehicle": {"plate": "AB-123-CD", "key_tag": "K17"},
    }


@pytest.fixture
def dispatcher_config():
    return DispatcherConfig(
        log_level="INFO",
        store_type=StoreType.SQL,
        sql_config=SQLStoreConfig(url="sqlite://"),
        metrics=MetricsConfig(enabled=True, port=9191),
        batch_size=50,
        timeout=5,
        poll_interval=1,
        claim_ttl=30,
        backoff_table=[1, 5, 15, 60, 300],
        headers={"X-Source": "aros"},
    )


@pytest.fixture
def api_config():
    return ApiConfig(
        host="0.0.0.0",
        port=8000,
        log_level="INFO",
        store_type=StoreType.MEMORY,
        metrics=MetricsConfig(enabled=False),
    )


@pytest.fixture
def api_app(api_config, memory_store):
    app = create_app(api_config)
    app.dependency_overrides[routes.get_task_store] = lambda: memory_store
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
def api_client(api_app):
    return TestClient(api_app)
