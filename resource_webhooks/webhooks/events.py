"""Webhook event types, domain events and the outbound envelope.

Domain events are raised by the booking and resource services. Each
matched subscription receives one envelope:

    {"eventType": ..., "timestamp": ..., "subscriptionId": ..., "data": {...}}

where ``data`` is the same representation the REST layer returns for
the affected resource or booking.
"""

import json
from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field
from pydantic_core import to_jsonable_python

from resource_webhooks.resources import Resource

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Default clock."""
    return datetime.now(UTC)


class WebhookEventType(str, Enum):
    """Supported webhook event types.

    Bookings are called events on the wire, hence the ``EVENT_*`` values.
    ``ALL`` is only valid as a subscription filter and for test deliveries.
    """

    # Booking events
    BOOKING_CREATED = "EVENT_CREATED"
    BOOKING_UPDATED = "EVENT_UPDATED"
    BOOKING_DELETED = "EVENT_DELETED"
    BOOKING_START = "EVENT_START"
    BOOKING_END = "EVENT_END"

    # Resource events
    RESOURCE_CREATED = "RESOURCE_CREATED"
    RESOURCE_UPDATED = "RESOURCE_UPDATED"
    RESOURCE_STATUS_CHANGED = "RESOURCE_STATUS_CHANGED"
    RESOURCE_DELETED = "RESOURCE_DELETED"

    # Wildcard
    ALL = "ALL"


class DomainEvent(BaseModel):
    """An internal occurrence that may warrant outbound notification.

    Not persisted. ``resource_type_id`` and ``parent_id`` are captured
    when the event is raised so matching still works after the resource
    itself has been deleted.
    """

    event_type: WebhookEventType = Field(..., description="Event type")
    tenant_id: str = Field(..., description="Tenant (site) the event belongs to")
    resource_id: str | None = Field(default=None, description="Resource involved")
    resource_type_id: str | None = Field(default=None, description="Type of that resource")
    parent_id: str | None = Field(default=None, description="Parent of that resource")
    timestamp: datetime = Field(default_factory=utc_now, description="When the event occurred")
    data: dict[str, Any] = Field(default_factory=dict, description="Affected entity")


class WebhookEnvelope(BaseModel):
    """Canonical outbound payload."""

    event_type: WebhookEventType
    timestamp: datetime
    subscription_id: str
    data: Any = None

    def to_json_dict(self) -> dict[str, Any]:
        """Convert to the wire dictionary, keys in wire order.

        Returns:
            Dictionary with ISO-formatted UTC timestamp.
        """
        return {
            "eventType": self.event_type.value,
            "timestamp": self.timestamp.astimezone(UTC).isoformat(),
            "subscriptionId": self.subscription_id,
            "data": to_jsonable_python(self.data),
        }

    def to_json(self) -> str:
        """Serialize to the exact string that is signed and transmitted."""
        return json.dumps(self.to_json_dict(), separators=(",", ":"), ensure_ascii=False)


def build_payload(
    event: DomainEvent,
    subscription_id: str,
    *,
    clock: Clock = utc_now,
) -> WebhookEnvelope:
    """Build the envelope for one matched subscription.

    Pure apart from the clock: with a frozen clock two calls produce
    byte-identical envelopes.

    Args:
        event: Domain event being delivered.
        subscription_id: Receiving subscription.
        clock: Source of the envelope timestamp.

    Returns:
        Envelope ready for signing.
    """
    return WebhookEnvelope(
        event_type=event.event_type,
        timestamp=clock(),
        subscription_id=subscription_id,
        data=event.data,
    )


# Event builders for the services that raise domain events


def build_resource_event(
    event_type: WebhookEventType,
    resource: Resource,
    *,
    timestamp: datetime | None = None,
) -> DomainEvent:
    """Build a resource lifecycle event.

    Args:
        event_type: One of the RESOURCE_* types.
        resource: Resource as returned by the REST layer.
        timestamp: Optional event time.

    Returns:
        Domain event scoped to the resource's tenant.
    """
    event = DomainEvent(
        event_type=event_type,
        tenant_id=resource.tenant_id,
        resource_id=resource.id,
        resource_type_id=resource.type_id,
        parent_id=resource.parent_id,
        data=resource.to_data(),
    )
    if timestamp:
        event.timestamp = timestamp
    return event


def build_booking_event(
    event_type: WebhookEventType,
    booking: Mapping[str, Any],
    resource: Resource,
    *,
    timestamp: datetime | None = None,
) -> DomainEvent:
    """Build a booking lifecycle event (created/updated/deleted/start/end).

    Args:
        event_type: One of the BOOKING_* types.
        booking: Booking as returned by the REST layer.
        resource: The booked resource, used for matching.
        timestamp: Optional event time.

    Returns:
        Domain event scoped to the resource's tenant.
    """
    event = DomainEvent(
        event_type=event_type,
        tenant_id=resource.tenant_id,
        resource_id=resource.id,
        resource_type_id=resource.type_id,
        parent_id=resource.parent_id,
        data=dict(booking),
    )
    if timestamp:
        event.timestamp = timestamp
    return event
