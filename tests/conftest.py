"""Shared fixtures for the webhook integration tests."""

from datetime import UTC, datetime, timedelta

import httpx
import pytest

from resource_webhooks.notifications import InMemoryNotificationStore
from resource_webhooks.resources import InMemoryResourceCatalog, Resource, ResourceType
from resource_webhooks.webhooks.manager import SubscriptionManager
from resource_webhooks.webhooks.matcher import SubscriptionMatcher
from resource_webhooks.webhooks.store import WebhookStore

START = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


class FrozenClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class RecordingEndpoint:
    """httpx MockTransport handler that records requests and replies with a fixed status."""

    def __init__(self, status_code: int = 200, body: str = "ok") -> None:
        self.status_code = status_code
        self.body = body
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, text=self.body)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


@pytest.fixture
def clock():
    """Frozen clock starting at a fixed instant."""
    return FrozenClock()


@pytest.fixture
def catalog():
    """Two-site resource hierarchy.

    site-a:
        dc-1 (storage)
        └── rack-1 (storage)
            └── srv-1 (server)
        srv-2 (server)
    site-b:
        srv-b (server)
    """
    return InMemoryResourceCatalog(
        resource_types=[
            ResourceType(id="rt-server", name="Server", tenant_id="site-a"),
            ResourceType(id="rt-storage", name="Storage", tenant_id="site-a"),
            ResourceType(id="rt-b", name="Server", tenant_id="site-b"),
        ],
        resources=[
            Resource(id="dc-1", name="Datacenter 1", tenant_id="site-a", type_id="rt-storage"),
            Resource(
                id="rack-1",
                name="Rack 1",
                tenant_id="site-a",
                type_id="rt-storage",
                parent_id="dc-1",
            ),
            Resource(
                id="srv-1",
                name="Server 1",
                tenant_id="site-a",
                type_id="rt-server",
                parent_id="rack-1",
            ),
            Resource(id="srv-2", name="Server 2", tenant_id="site-a", type_id="rt-server"),
            Resource(id="srv-b", name="Server B", tenant_id="site-b", type_id="rt-b"),
        ],
    )


@pytest.fixture
async def store(tmp_path):
    """Initialized SQLite store in a temporary directory."""
    webhook_store = WebhookStore(str(tmp_path / "webhooks.db"))
    await webhook_store.initialize()
    yield webhook_store
    await webhook_store.close()


@pytest.fixture
def matcher(store, catalog):
    """Matcher over the test store and catalog."""
    return SubscriptionMatcher(store, catalog, max_depth=16)


@pytest.fixture
def manager(store, catalog, clock):
    """Subscription manager over the test store and catalog."""
    return SubscriptionManager(store, catalog, clock=clock)


@pytest.fixture
def notifications():
    """In-memory notification sink."""
    return InMemoryNotificationStore()


@pytest.fixture
def make_endpoint():
    """Factory for recording subscriber endpoints."""
    return RecordingEndpoint
