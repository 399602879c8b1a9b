"""Subscription matching for domain events."""

import structlog

from resource_webhooks.config import settings
from resource_webhooks.resources import ResourceCatalog, iter_ancestor_ids
from resource_webhooks.webhooks.events import DomainEvent
from resource_webhooks.webhooks.models import ScopeKind, Subscription
from resource_webhooks.webhooks.store import WebhookStore

logger = structlog.get_logger(__name__)


class _EventContext:
    """Per-event lookups shared by every candidate subscription."""

    def __init__(self, event: DomainEvent, catalog: ResourceCatalog, max_depth: int) -> None:
        self._event = event
        self._catalog = catalog
        self._max_depth = max_depth
        self._ancestors: set[str] | None = None

    @property
    def resource_type_id(self) -> str | None:
        if self._event.resource_type_id is not None:
            return self._event.resource_type_id
        if self._event.resource_id is None:
            return None
        resource = self._catalog.get_resource(self._event.resource_id)
        return resource.type_id if resource else None

    def ancestors(self) -> set[str]:
        if self._ancestors is None:
            parent_id = self._event.parent_id
            if parent_id is None and self._event.resource_id is not None:
                resource = self._catalog.get_resource(self._event.resource_id)
                parent_id = resource.parent_id if resource else None
            self._ancestors = set(
                iter_ancestor_ids(self._catalog, parent_id, max_depth=self._max_depth)
            )
        return self._ancestors


class SubscriptionMatcher:
    """Selects the enabled subscriptions whose scope covers an event.

    Scope rules:
    - tenant-wide: every event of the tenant
    - resource type: events whose resource has that type
    - resource: events on exactly that resource, or on any resource
      below it when ``include_sub_resources`` is set
    """

    def __init__(
        self,
        store: WebhookStore,
        catalog: ResourceCatalog,
        *,
        max_depth: int | None = None,
    ) -> None:
        """Initialize the matcher.

        Args:
            store: Subscription registry.
            catalog: Resource hierarchy lookup.
            max_depth: Bound on the ancestor walk.
        """
        self._store = store
        self._catalog = catalog
        self._max_depth = (
            max_depth if max_depth is not None else settings.WEBHOOK_HIERARCHY_MAX_DEPTH
        )
        self._logger = logger.bind(component="subscription_matcher")

    async def match(self, event: DomainEvent) -> list[Subscription]:
        """Return the subscriptions that should receive an event.

        Args:
            event: Domain event raised by a booking or resource service.

        Returns:
            Matching subscriptions, in no particular order.
        """
        candidates = await self._store.list_subscriptions(
            tenant_ids=[event.tenant_id],
            enabled=True,
        )
        context = _EventContext(event, self._catalog, self._max_depth)

        matched = [
            subscription
            for subscription in candidates
            if subscription.should_receive_event(event.event_type)
            and self._scope_covers(subscription, event, context)
        ]

        self._logger.debug(
            "subscriptions_matched",
            event_type=event.event_type.value,
            tenant_id=event.tenant_id,
            resource_id=event.resource_id,
            candidates=len(candidates),
            matched=len(matched),
        )
        return matched

    def _scope_covers(
        self,
        subscription: Subscription,
        event: DomainEvent,
        context: _EventContext,
    ) -> bool:
        kind = subscription.scope_kind

        if kind is ScopeKind.TENANT:
            return True

        if kind is ScopeKind.RESOURCE_TYPE:
            return context.resource_type_id == subscription.resource_type_id

        if event.resource_id is None:
            return False
        if event.resource_id == subscription.resource_id:
            return True
        if not subscription.include_sub_resources:
            return False
        return subscription.resource_id in context.ancestors()
