"""Tests for the SQLite webhook store."""

import asyncio
from datetime import timedelta

import pytest

from resource_webhooks.webhooks.events import WebhookEventType
from resource_webhooks.webhooks.models import DeliveryAttempt, RetryClaimState, Subscription
from resource_webhooks.webhooks.store import WebhookStore

# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def subscription(clock):
    """Create a sample subscription."""
    return Subscription(
        tenant_id="site-a",
        name="Hook",
        url="https://example.com/hook",
        signing_key="key",
        created_at=clock(),
        updated_at=clock(),
    )


@pytest.fixture
def make_attempt(clock):
    """Factory for attempt rows."""

    def _make(subscription, **fields):
        base = {
            "subscription_id": subscription.id,
            "tenant_id": subscription.tenant_id,
            "event_type": WebhookEventType.RESOURCE_UPDATED,
            "resource_id": "srv-1",
            "payload": '{"eventType":"RESOURCE_UPDATED"}',
            "status_code": 500,
            "created_at": clock(),
        }
        base.update(fields)
        return DeliveryAttempt(**base)

    return _make


# ============================================================================
# Subscription Tests
# ============================================================================


class TestSubscriptions:
    """Tests for subscription persistence."""

    @pytest.mark.asyncio
    async def test_insert_and_get(self, store, subscription):
        """Test round-trip of every column, including the signing key."""
        await store.insert_subscription(subscription)

        loaded = await store.get_subscription(subscription.id)

        assert loaded == subscription
        assert loaded.signing_key == "key"

    @pytest.mark.asyncio
    async def test_get_missing(self, store):
        """Test getting an unknown subscription."""
        assert await store.get_subscription("wh_missing") is None

    @pytest.mark.asyncio
    async def test_update_keeps_signing_key(self, store, subscription):
        """Test that updates never touch the signing key."""
        await store.insert_subscription(subscription)

        changed = subscription.model_copy(update={"name": "Renamed", "signing_key": "other"})
        await store.update_subscription(changed)
        loaded = await store.get_subscription(subscription.id)

        assert loaded.name == "Renamed"
        assert loaded.signing_key == "key"

    @pytest.mark.asyncio
    async def test_delete(self, store, subscription):
        """Test deletion."""
        await store.insert_subscription(subscription)

        assert await store.delete_subscription(subscription.id) is True
        assert await store.delete_subscription(subscription.id) is False
        assert await store.get_subscription(subscription.id) is None

    @pytest.mark.asyncio
    async def test_list_by_tenant_and_enabled(self, store):
        """Test listing filters."""
        a1 = Subscription(tenant_id="site-a", name="a1", url="https://e.com", signing_key="k")
        a2 = Subscription(
            tenant_id="site-a", name="a2", url="https://e.com", signing_key="k", enabled=False
        )
        b1 = Subscription(tenant_id="site-b", name="b1", url="https://e.com", signing_key="k")
        for s in (a1, a2, b1):
            await store.insert_subscription(s)

        assert {s.id for s in await store.list_subscriptions()} == {a1.id, a2.id, b1.id}
        assert {s.id for s in await store.list_subscriptions(tenant_ids=["site-a"])} == {
            a1.id,
            a2.id,
        }
        enabled = await store.list_subscriptions(tenant_ids=["site-a"], enabled=True)
        assert [s.id for s in enabled] == [a1.id]
        assert await store.list_subscriptions(tenant_ids=[]) == []


# ============================================================================
# Attempt Tests
# ============================================================================


class TestAttempts:
    """Tests for the append-only delivery log."""

    @pytest.mark.asyncio
    async def test_append_assigns_id(self, store, subscription, make_attempt):
        """Test that appended rows receive ids and read back intact."""
        await store.insert_subscription(subscription)

        stored = await store.append_attempt(make_attempt(subscription, response_body="oops"))

        assert stored.id is not None
        loaded = await store.get_attempt(stored.id)
        assert loaded == stored

    @pytest.mark.asyncio
    async def test_list_newest_first_with_paging(self, store, subscription, make_attempt, clock):
        """Test ordering and page metadata."""
        await store.insert_subscription(subscription)
        for _ in range(5):
            await store.append_attempt(make_attempt(subscription, created_at=clock()))
            clock.advance(1)

        first = await store.list_attempts(subscription_ids=[subscription.id], page=0, size=2)
        last = await store.list_attempts(subscription_ids=[subscription.id], page=2, size=2)

        assert first.total == 5
        assert first.total_pages == 3
        assert first.has_next and not first.has_previous
        assert first.items[0].created_at > first.items[1].created_at
        assert len(last.items) == 1
        assert not last.has_next

    @pytest.mark.asyncio
    async def test_filter_by_success(self, store, subscription, make_attempt):
        """Test the success filter."""
        await store.insert_subscription(subscription)
        await store.append_attempt(make_attempt(subscription, success=True, status_code=200))
        await store.append_attempt(make_attempt(subscription))

        ok = await store.list_attempts(success=True)
        failed = await store.list_attempts(success=False)

        assert [a.status_code for a in ok.items] == [200]
        assert [a.status_code for a in failed.items] == [500]

    @pytest.mark.asyncio
    async def test_query_is_case_insensitive(self, store, subscription, make_attempt):
        """Test free-text search over payload and response body."""
        await store.insert_subscription(subscription)
        await store.append_attempt(make_attempt(subscription, payload='{"name":"Rack 7"}'))
        await store.append_attempt(make_attempt(subscription, response_body="Gateway TIMEOUT"))
        await store.append_attempt(make_attempt(subscription, payload='{"name":"100%_x"}'))

        assert (await store.list_attempts(query="rack 7")).total == 1
        assert (await store.list_attempts(query="timeout")).total == 1
        assert (await store.list_attempts(query="%_")).total == 1
        assert (await store.list_attempts(query="nothing")).total == 0

    @pytest.mark.asyncio
    async def test_query_folds_non_ascii_case(self, store, subscription, make_attempt):
        """Test that search folds case beyond ASCII on both sides."""
        await store.insert_subscription(subscription)
        await store.append_attempt(make_attempt(subscription, payload='{"name":"SALLE ÉTÉ"}'))
        await store.append_attempt(make_attempt(subscription, response_body="Straße gesperrt"))

        assert (await store.list_attempts(query="salle été")).total == 1
        assert (await store.list_attempts(query="SALLE ÉTÉ")).total == 1
        assert (await store.list_attempts(query="STRASSE")).total == 1

    @pytest.mark.asyncio
    async def test_tenant_scoping(self, store, subscription, make_attempt):
        """Test tenant filter and empty visibility."""
        await store.insert_subscription(subscription)
        await store.append_attempt(make_attempt(subscription))

        assert (await store.list_attempts(tenant_ids=["site-a"])).total == 1
        assert (await store.list_attempts(tenant_ids=["site-b"])).total == 0
        assert (await store.list_attempts(tenant_ids=[])).total == 0

    @pytest.mark.asyncio
    async def test_attempts_survive_subscription_delete(self, store, subscription, make_attempt):
        """Test that logs stay queryable by tenant after deletion."""
        await store.insert_subscription(subscription)
        await store.append_attempt(make_attempt(subscription))

        await store.delete_subscription(subscription.id)

        page = await store.list_attempts(tenant_ids=["site-a"])
        assert page.total == 1
        assert page.items[0].subscription_id == subscription.id

    @pytest.mark.asyncio
    async def test_list_delivery_orders_by_retry_count(self, store, subscription, make_attempt):
        """Test grouping by logical delivery."""
        await store.insert_subscription(subscription)
        first = await store.append_attempt(make_attempt(subscription))
        await store.append_attempt(
            make_attempt(subscription, delivery_id=first.delivery_id, retry_count=1)
        )
        await store.append_attempt(make_attempt(subscription))

        attempts = await store.list_delivery(first.delivery_id)

        assert [a.retry_count for a in attempts] == [0, 1]

    @pytest.mark.asyncio
    async def test_retry_time_dropped_for_disabled_subscription(
        self, store, subscription, make_attempt, clock
    ):
        """Test that a row appended after a disable commits owes no retry."""
        await store.insert_subscription(subscription)
        await store.update_subscription(subscription.model_copy(update={"enabled": False}))

        stored = await store.append_attempt(make_attempt(subscription, next_retry_at=clock()))

        assert stored.next_retry_at is None
        assert (await store.get_attempt(stored.id)).next_retry_at is None

        await store.update_subscription(subscription)
        assert await store.find_due_retries(clock()) == []

    @pytest.mark.asyncio
    async def test_retry_time_dropped_for_deleted_subscription(
        self, store, subscription, make_attempt, clock
    ):
        """Test that a row appended for a deleted subscription owes no retry."""
        stored = await store.append_attempt(make_attempt(subscription, next_retry_at=clock()))

        assert stored.next_retry_at is None
        assert (await store.get_attempt(stored.id)).next_retry_at is None

    @pytest.mark.asyncio
    async def test_retry_time_kept_for_enabled_subscription(
        self, store, subscription, make_attempt, clock
    ):
        """Test that the requested retry time is stored and returned."""
        await store.insert_subscription(subscription)
        retry_at = clock() + timedelta(seconds=60)

        stored = await store.append_attempt(make_attempt(subscription, next_retry_at=retry_at))

        assert stored.next_retry_at == retry_at
        assert (await store.get_attempt(stored.id)).next_retry_at == retry_at


# ============================================================================
# Retry Claim Tests
# ============================================================================


class TestRetryClaims:
    """Tests for atomic retry claims."""

    @pytest.mark.asyncio
    async def test_due_retries(self, store, subscription, make_attempt, clock):
        """Test that only failed rows past their retry time are due."""
        await store.insert_subscription(subscription)
        due = await store.append_attempt(make_attempt(subscription, next_retry_at=clock()))
        await store.append_attempt(
            make_attempt(subscription, next_retry_at=clock() + timedelta(seconds=60))
        )
        await store.append_attempt(make_attempt(subscription))
        await store.append_attempt(make_attempt(subscription, success=True, status_code=200))

        result = await store.find_due_retries(clock())

        assert [a.id for a in result] == [due.id]

    @pytest.mark.asyncio
    async def test_claim_is_exclusive(self, store, subscription, make_attempt, clock):
        """Test that exactly one concurrent claim wins."""
        await store.insert_subscription(subscription)
        attempt = await store.append_attempt(make_attempt(subscription, next_retry_at=clock()))

        results = await asyncio.gather(
            *(store.claim_retry(attempt.id, f"worker-{i}", clock()) for i in range(5))
        )

        assert sorted(results) == [False, False, False, False, True]
        assert await store.find_due_retries(clock()) == []

    @pytest.mark.asyncio
    async def test_claim_is_exclusive_across_connections(
        self, store, subscription, make_attempt, clock
    ):
        """Test that two workers with their own connections cannot both claim."""
        await store.insert_subscription(subscription)
        attempt = await store.append_attempt(make_attempt(subscription, next_retry_at=clock()))

        other = WebhookStore(store.db_path)
        await other.initialize()
        try:
            results = await asyncio.gather(
                store.claim_retry(attempt.id, "worker-a", clock()),
                other.claim_retry(attempt.id, "worker-b", clock()),
            )
        finally:
            await other.close()

        assert sorted(results) == [False, True]

    @pytest.mark.asyncio
    async def test_resolved_claim_effective_next_retry(
        self, store, subscription, make_attempt, clock
    ):
        """Test that cancelled or exhausted claims make the row terminal."""
        await store.insert_subscription(subscription)
        sent = await store.append_attempt(make_attempt(subscription, next_retry_at=clock()))
        exhausted = await store.append_attempt(make_attempt(subscription, next_retry_at=clock()))

        for attempt in (sent, exhausted):
            await store.claim_retry(attempt.id, "w", clock())
        await store.resolve_claim(sent.id, RetryClaimState.SENT, clock())
        await store.resolve_claim(exhausted.id, RetryClaimState.EXHAUSTED, clock())

        assert (await store.get_attempt(sent.id)).next_retry_at == clock()
        assert (await store.get_attempt(exhausted.id)).next_retry_at is None

    @pytest.mark.asyncio
    async def test_cancel_pending_retries(self, store, subscription, make_attempt, clock):
        """Test cancellation of every unclaimed pending row of a subscription."""
        await store.insert_subscription(subscription)
        future = clock() + timedelta(seconds=60)
        pending = await store.append_attempt(make_attempt(subscription, next_retry_at=future))
        claimed = await store.append_attempt(make_attempt(subscription, next_retry_at=clock()))
        await store.append_attempt(make_attempt(subscription))
        await store.claim_retry(claimed.id, "w", clock())

        cancelled = await store.cancel_pending_retries(subscription.id, clock())

        assert cancelled == 1
        assert (await store.get_attempt(pending.id)).next_retry_at is None
        assert await store.claim_retry(pending.id, "w", clock()) is False
        assert await store.cancel_pending_retries(subscription.id, clock()) == 0

    @pytest.mark.asyncio
    async def test_disabled_and_deleted_subscriptions_never_due(
        self, store, make_attempt, clock
    ):
        """Test that due rows require a live, enabled subscription."""
        disabled = Subscription(
            tenant_id="site-a", name="d", url="https://e.com", signing_key="k", enabled=False
        )
        deleted = Subscription(tenant_id="site-a", name="x", url="https://e.com", signing_key="k")
        await store.insert_subscription(disabled)
        await store.insert_subscription(deleted)
        await store.append_attempt(make_attempt(disabled, next_retry_at=clock()))
        await store.append_attempt(make_attempt(deleted, next_retry_at=clock()))
        await store.delete_subscription(deleted.id)

        assert await store.find_due_retries(clock()) == []

    @pytest.mark.asyncio
    async def test_release_stale_claims(self, store, subscription, make_attempt, clock):
        """Test that abandoned claims are released for re-drive."""
        await store.insert_subscription(subscription)
        attempt = await store.append_attempt(make_attempt(subscription, next_retry_at=clock()))
        await store.claim_retry(attempt.id, "crashed-worker", clock())

        assert await store.release_stale_claims(clock() - timedelta(seconds=600), clock()) == 0

        clock.advance(601)
        released = await store.release_stale_claims(clock() - timedelta(seconds=600), clock())

        assert released == 1
        assert [a.id for a in await store.find_due_retries(clock())] == [attempt.id]

    @pytest.mark.asyncio
    async def test_stale_claim_with_logged_successor_is_not_released(
        self, store, subscription, make_attempt, clock
    ):
        """Test that a retry that was already sent is never re-driven."""
        await store.insert_subscription(subscription)
        attempt = await store.append_attempt(make_attempt(subscription, next_retry_at=clock()))
        await store.claim_retry(attempt.id, "crashed-worker", clock())
        await store.append_attempt(
            make_attempt(subscription, delivery_id=attempt.delivery_id, retry_count=1)
        )

        clock.advance(601)
        released = await store.release_stale_claims(clock() - timedelta(seconds=600), clock())

        assert released == 0
        assert await store.find_due_retries(clock()) == []
