"""Tests for webhook events and the outbound envelope."""

import json
from datetime import UTC, datetime, timedelta, timezone

import pytest

from resource_webhooks.resources import Resource
from resource_webhooks.webhooks.events import (
    DomainEvent,
    WebhookEnvelope,
    WebhookEventType,
    build_booking_event,
    build_payload,
    build_resource_event,
)

FIXED = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


@pytest.fixture
def server():
    """Create a sample resource."""
    return Resource(
        id="srv-1",
        name="Server 1",
        tenant_id="site-a",
        type_id="rt-server",
        parent_id="rack-1",
        specs="64 cores",
    )


@pytest.fixture
def sample_event(server):
    """Create a sample domain event."""
    return build_resource_event(WebhookEventType.RESOURCE_UPDATED, server, timestamp=FIXED)


# ============================================================================
# Event Type Tests
# ============================================================================


class TestWebhookEventType:
    """Tests for WebhookEventType enum."""

    def test_booking_events_use_event_wire_names(self):
        """Test that booking events are named EVENT_* on the wire."""
        assert WebhookEventType.BOOKING_CREATED.value == "EVENT_CREATED"
        assert WebhookEventType.BOOKING_UPDATED.value == "EVENT_UPDATED"
        assert WebhookEventType.BOOKING_DELETED.value == "EVENT_DELETED"
        assert WebhookEventType.BOOKING_START.value == "EVENT_START"
        assert WebhookEventType.BOOKING_END.value == "EVENT_END"

    def test_resource_events(self):
        """Test resource event values."""
        assert WebhookEventType.RESOURCE_CREATED.value == "RESOURCE_CREATED"
        assert WebhookEventType.RESOURCE_STATUS_CHANGED.value == "RESOURCE_STATUS_CHANGED"
        assert WebhookEventType.RESOURCE_DELETED.value == "RESOURCE_DELETED"

    def test_wildcard(self):
        """Test the wildcard value."""
        assert WebhookEventType("ALL") is WebhookEventType.ALL
        assert len(WebhookEventType) == 10


# ============================================================================
# Event Builder Tests
# ============================================================================


class TestEventBuilders:
    """Tests for domain event builders."""

    def test_build_resource_event(self, server):
        """Test that resource events capture matching context and REST data."""
        event = build_resource_event(WebhookEventType.RESOURCE_CREATED, server)

        assert event.tenant_id == "site-a"
        assert event.resource_id == "srv-1"
        assert event.resource_type_id == "rt-server"
        assert event.parent_id == "rack-1"
        assert event.data["name"] == "Server 1"
        assert event.data["specs"] == "64 cores"
        assert event.timestamp.tzinfo is not None

    def test_build_resource_event_with_timestamp(self, server):
        """Test explicit event timestamp."""
        event = build_resource_event(WebhookEventType.RESOURCE_DELETED, server, timestamp=FIXED)

        assert event.timestamp == FIXED

    def test_build_booking_event(self, server):
        """Test that booking events carry the booking but match on its resource."""
        booking = {"id": "bk-1", "title": "Maintenance", "resourceId": "srv-1"}
        event = build_booking_event(WebhookEventType.BOOKING_START, booking, server)

        assert event.event_type == WebhookEventType.BOOKING_START
        assert event.resource_id == "srv-1"
        assert event.resource_type_id == "rt-server"
        assert event.data == booking


# ============================================================================
# Envelope Tests
# ============================================================================


class TestWebhookEnvelope:
    """Tests for the canonical outbound envelope."""

    def test_wire_keys_in_order(self, sample_event):
        """Test envelope keys and order."""
        envelope = build_payload(sample_event, "wh_123", clock=lambda: FIXED)
        parsed = json.loads(envelope.to_json())

        assert list(parsed) == ["eventType", "timestamp", "subscriptionId", "data"]
        assert parsed["eventType"] == "RESOURCE_UPDATED"
        assert parsed["subscriptionId"] == "wh_123"
        assert parsed["data"]["id"] == "srv-1"

    def test_timestamp_is_utc_iso(self, sample_event):
        """Test that timestamps are rendered in UTC."""
        local = datetime(2026, 3, 2, 11, 0, tzinfo=timezone(timedelta(hours=2)))
        envelope = build_payload(sample_event, "wh_123", clock=lambda: local)

        assert envelope.to_json_dict()["timestamp"] == "2026-03-02T09:00:00+00:00"

    def test_compact_serialization(self, sample_event):
        """Test that the body has no insignificant whitespace."""
        body = build_payload(sample_event, "wh_123", clock=lambda: FIXED).to_json()

        assert ", " not in body
        assert ": " not in body

    def test_frozen_clock_is_byte_identical(self, sample_event):
        """Test that building twice with a frozen clock yields identical bytes."""
        first = build_payload(sample_event, "wh_123", clock=lambda: FIXED)
        second = build_payload(sample_event, "wh_123", clock=lambda: FIXED)

        assert first.to_json().encode() == second.to_json().encode()

    def test_moving_clock_only_changes_timestamp(self, sample_event):
        """Test that only the timestamp drifts when the clock moves."""
        first = build_payload(sample_event, "wh_123", clock=lambda: FIXED).to_json_dict()
        second = build_payload(
            sample_event, "wh_123", clock=lambda: FIXED + timedelta(seconds=5)
        ).to_json_dict()

        assert first["timestamp"] != second["timestamp"]
        first.pop("timestamp")
        second.pop("timestamp")
        assert first == second

    def test_non_ascii_data(self):
        """Test that non-ASCII text is sent as UTF-8, not escaped."""
        event = DomainEvent(
            event_type=WebhookEventType.BOOKING_CREATED,
            tenant_id="site-a",
            data={"title": "Réunion"},
        )
        body = build_payload(event, "wh_1", clock=lambda: FIXED).to_json()

        assert "Réunion" in body

    def test_envelope_with_nested_datetimes(self):
        """Test that datetimes inside data are serialized."""
        envelope = WebhookEnvelope(
            event_type=WebhookEventType.BOOKING_CREATED,
            timestamp=FIXED,
            subscription_id="wh_1",
            data={"start": FIXED},
        )

        assert json.loads(envelope.to_json())["data"]["start"].startswith("2026-03-02T09:00:00")
