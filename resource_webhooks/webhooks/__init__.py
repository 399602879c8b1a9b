"""Webhook integration layer for resource and booking events.

This module provides:
- WebhookEventType / DomainEvent: event types and the events raised by CRUD services
- SubscriptionMatcher: selects subscriptions whose scope covers an event
- SubscriptionManager: registration, scope validation and one-time secrets
- WebhookDispatcher: signed single-attempt delivery with fire-and-forget fan-out
- RetryScheduler: periodic re-drive of failed attempts under atomic claims
- InboundReceiver: HMAC-authenticated inbound notifications
"""

from resource_webhooks.webhooks.dispatcher import (
    WebhookDispatcher,
    get_webhook_dispatcher,
    set_webhook_dispatcher,
)
from resource_webhooks.webhooks.events import (
    DomainEvent,
    WebhookEnvelope,
    WebhookEventType,
    build_booking_event,
    build_payload,
    build_resource_event,
)
from resource_webhooks.webhooks.manager import (
    SubscriptionManager,
    get_subscription_manager,
    set_subscription_manager,
)
from resource_webhooks.webhooks.matcher import SubscriptionMatcher
from resource_webhooks.webhooks.models import (
    DeliveryAttempt,
    DeliveryOutcome,
    IssuedSubscription,
    Page,
    RetryClaimState,
    ScopeKind,
    Subscription,
    SubscriptionCreate,
    SubscriptionUpdate,
)
from resource_webhooks.webhooks.receiver import InboundNotificationRequest, InboundReceiver
from resource_webhooks.webhooks.scheduler import RetryRunResult, RetryScheduler
from resource_webhooks.webhooks.security import (
    SIGNATURE_HEADER,
    derive_signing_key,
    generate_secret,
    sign,
    verify,
)
from resource_webhooks.webhooks.store import WebhookStore

__all__ = [
    # Events
    "DomainEvent",
    "WebhookEnvelope",
    "WebhookEventType",
    "build_booking_event",
    "build_payload",
    "build_resource_event",
    # Models
    "DeliveryAttempt",
    "DeliveryOutcome",
    "IssuedSubscription",
    "Page",
    "RetryClaimState",
    "ScopeKind",
    "Subscription",
    "SubscriptionCreate",
    "SubscriptionUpdate",
    # Storage
    "WebhookStore",
    # Matching and management
    "SubscriptionMatcher",
    "SubscriptionManager",
    "get_subscription_manager",
    "set_subscription_manager",
    # Delivery
    "WebhookDispatcher",
    "get_webhook_dispatcher",
    "set_webhook_dispatcher",
    "RetryRunResult",
    "RetryScheduler",
    # Inbound
    "InboundNotificationRequest",
    "InboundReceiver",
    # Security
    "SIGNATURE_HEADER",
    "derive_signing_key",
    "generate_secret",
    "sign",
    "verify",
]
