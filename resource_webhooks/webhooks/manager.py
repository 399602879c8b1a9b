"""Webhook subscription registration and management.

Validates scopes against the resource catalog, issues the one-time
secret, and cancels owed retries when a subscription is disabled or
deleted.
"""

from __future__ import annotations

from collections.abc import Collection
from typing import Any

import structlog
from pydantic import ValidationError

from resource_webhooks.errors import (
    SubscriptionNotFoundError,
    SubscriptionValidationError,
)
from resource_webhooks.resources import ResourceCatalog
from resource_webhooks.webhooks.events import Clock, utc_now
from resource_webhooks.webhooks.models import (
    DeliveryAttempt,
    IssuedSubscription,
    Page,
    Subscription,
    SubscriptionCreate,
    SubscriptionUpdate,
)
from resource_webhooks.webhooks.security import derive_signing_key, generate_secret
from resource_webhooks.webhooks.store import WebhookStore

logger = structlog.get_logger(__name__)

# Global manager instance
_subscription_manager: SubscriptionManager | None = None


def _first_error(exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return str(exc)
    message = str(errors[0].get("msg", exc))
    return message.removeprefix("Value error, ")


class SubscriptionManager:
    """Manages webhook subscriptions and exposes their delivery logs.

    Example:
        manager = SubscriptionManager(store, catalog)
        issued = await manager.create(
            SubscriptionCreate(
                name="Bookings", url="https://example.com/hook", tenant_id="site-a"
            )
        )
        print(issued.client_secret)  # shown once
    """

    def __init__(
        self,
        store: WebhookStore,
        catalog: ResourceCatalog,
        *,
        clock: Clock = utc_now,
    ) -> None:
        """Initialize the manager.

        Args:
            store: Subscription registry and delivery log.
            catalog: Resource hierarchy used to validate scopes.
            clock: Source of timestamps.
        """
        self._store = store
        self._catalog = catalog
        self._clock = clock
        self._logger = logger.bind(component="subscription_manager")

    @property
    def store(self) -> WebhookStore:
        return self._store

    @property
    def catalog(self) -> ResourceCatalog:
        return self._catalog

    async def create(self, request: SubscriptionCreate) -> IssuedSubscription:
        """Register a new subscription.

        Args:
            request: Validated creation input.

        Returns:
            The stored subscription and its plaintext secret.

        Raises:
            SubscriptionValidationError: If the scope target does not exist
                or belongs to another tenant.
        """
        self._validate_scope_targets(
            request.tenant_id,
            request.resource_id,
            request.resource_type_id,
        )

        secret = generate_secret()
        now = self._clock()
        subscription = Subscription(
            tenant_id=request.tenant_id,
            name=request.name,
            url=request.url,
            enabled=request.enabled,
            event_type=request.event_type,
            resource_id=request.resource_id,
            resource_type_id=request.resource_type_id,
            include_sub_resources=request.include_sub_resources,
            max_retries=request.max_retries,
            retry_delay_seconds=request.retry_delay_seconds,
            signing_key=derive_signing_key(secret),
            created_at=now,
            updated_at=now,
        )
        await self._store.insert_subscription(subscription)

        self._logger.info(
            "subscription_created",
            subscription_id=subscription.id,
            tenant_id=subscription.tenant_id,
            event_type=subscription.event_type.value,
            scope=subscription.scope_kind.value,
        )

        return IssuedSubscription(subscription=subscription, client_secret=secret)

    async def get(
        self,
        subscription_id: str,
        *,
        tenant_ids: Collection[str] | None = None,
    ) -> Subscription:
        """Get a subscription by ID.

        Args:
            subscription_id: Subscription identifier.
            tenant_ids: Tenants visible to the caller (None = all).

        Returns:
            The subscription.

        Raises:
            SubscriptionNotFoundError: If missing or outside the visible tenants.
        """
        subscription = await self._store.get_subscription(subscription_id)
        if subscription is None or (
            tenant_ids is not None and subscription.tenant_id not in tenant_ids
        ):
            raise SubscriptionNotFoundError(subscription_id)
        return subscription

    async def list_all(
        self,
        *,
        tenant_ids: Collection[str] | None = None,
        enabled: bool | None = None,
    ) -> list[Subscription]:
        """List subscriptions of the visible tenants.

        Args:
            tenant_ids: Tenants visible to the caller (None = all).
            enabled: Filter by enabled flag.

        Returns:
            List of subscriptions.
        """
        return await self._store.list_subscriptions(tenant_ids=tenant_ids, enabled=enabled)

    async def update(
        self,
        subscription_id: str,
        request: SubscriptionUpdate,
        *,
        tenant_ids: Collection[str] | None = None,
    ) -> Subscription:
        """Update a subscription. Only fields present in the request change.

        Args:
            subscription_id: Subscription to update.
            request: Partial update.
            tenant_ids: Tenants visible to the caller (None = all).

        Returns:
            Updated subscription.

        Raises:
            SubscriptionNotFoundError: If the subscription is not visible.
            SubscriptionValidationError: If the tenant would change or the
                resulting scope is invalid.
        """
        current = await self.get(subscription_id, tenant_ids=tenant_ids)
        changes: dict[str, Any] = {
            field: getattr(request, field) for field in request.model_fields_set
        }

        tenant_id = changes.pop("tenant_id", None)
        if tenant_id is not None and tenant_id != current.tenant_id:
            raise SubscriptionValidationError(
                "The tenant of a webhook cannot be changed",
                details={"subscription_id": subscription_id},
            )

        for field in (
            "name", "url", "enabled", "event_type", "max_retries", "retry_delay_seconds"
        ):
            if field in changes and changes[field] is None:
                del changes[field]

        # Moving away from a resource scope drops the subtree flag
        if (
            "include_sub_resources" not in changes
            and changes.get("resource_id", current.resource_id) is None
        ):
            changes["include_sub_resources"] = False
        elif changes.get("include_sub_resources") is None:
            changes.pop("include_sub_resources", None)

        merged = current.model_dump()
        merged.update(changes)
        merged["signing_key"] = current.signing_key
        merged["updated_at"] = self._clock()

        try:
            updated = Subscription.model_validate(merged)
        except ValidationError as e:
            raise SubscriptionValidationError(
                _first_error(e),
                details={"subscription_id": subscription_id},
            ) from e

        if (
            updated.resource_id != current.resource_id
            or updated.resource_type_id != current.resource_type_id
        ):
            self._validate_scope_targets(
                updated.tenant_id,
                updated.resource_id,
                updated.resource_type_id,
            )

        await self._store.update_subscription(updated)

        if current.enabled and not updated.enabled:
            await self._store.cancel_pending_retries(subscription_id, self._clock())

        self._logger.info(
            "subscription_updated",
            subscription_id=subscription_id,
            fields=sorted(changes),
        )
        return updated

    async def delete(
        self,
        subscription_id: str,
        *,
        tenant_ids: Collection[str] | None = None,
    ) -> None:
        """Delete a subscription and cancel its owed retries.

        Attempts already logged stay queryable through the tenant's log view.

        Raises:
            SubscriptionNotFoundError: If the subscription is not visible.
        """
        await self.get(subscription_id, tenant_ids=tenant_ids)

        cancelled = await self._store.cancel_pending_retries(subscription_id, self._clock())
        deleted = await self._store.delete_subscription(subscription_id)
        if not deleted:
            raise SubscriptionNotFoundError(subscription_id)

        self._logger.info(
            "subscription_deleted",
            subscription_id=subscription_id,
            cancelled_retries=cancelled,
        )

    async def list_logs(
        self,
        subscription_id: str,
        *,
        tenant_ids: Collection[str] | None = None,
        success: bool | None = None,
        query: str | None = None,
        page: int = 0,
        size: int = 20,
    ) -> Page[DeliveryAttempt]:
        """List delivery attempts of one subscription, newest first.

        Raises:
            SubscriptionNotFoundError: If the subscription is not visible.
        """
        await self.get(subscription_id, tenant_ids=tenant_ids)
        return await self._store.list_attempts(
            subscription_ids=[subscription_id],
            success=success,
            query=query,
            page=page,
            size=size,
        )

    async def list_all_logs(
        self,
        *,
        tenant_ids: Collection[str] | None = None,
        success: bool | None = None,
        query: str | None = None,
        page: int = 0,
        size: int = 20,
    ) -> Page[DeliveryAttempt]:
        """List delivery attempts across every subscription of the visible tenants.

        Includes attempts of subscriptions that have since been deleted.
        """
        return await self._store.list_attempts(
            tenant_ids=tenant_ids,
            success=success,
            query=query,
            page=page,
            size=size,
        )

    def _validate_scope_targets(
        self,
        tenant_id: str,
        resource_id: str | None,
        resource_type_id: str | None,
    ) -> None:
        if resource_id is not None:
            resource = self._catalog.get_resource(resource_id)
            if resource is None:
                raise SubscriptionValidationError(
                    f"Resource not found with ID: {resource_id}",
                    details={"resource_id": resource_id},
                )
            if resource.tenant_id != tenant_id:
                raise SubscriptionValidationError(
                    "Resource does not belong to the webhook's site",
                    details={"resource_id": resource_id, "tenant_id": tenant_id},
                )

        if resource_type_id is not None:
            resource_type = self._catalog.get_resource_type(resource_type_id)
            if resource_type is None:
                raise SubscriptionValidationError(
                    f"Resource type not found with ID: {resource_type_id}",
                    details={"resource_type_id": resource_type_id},
                )
            if resource_type.tenant_id != tenant_id:
                raise SubscriptionValidationError(
                    "Resource type does not belong to the webhook's site",
                    details={"resource_type_id": resource_type_id, "tenant_id": tenant_id},
                )


def get_subscription_manager() -> SubscriptionManager:
    """Get the global subscription manager.

    Returns:
        SubscriptionManager instance.

    Raises:
        RuntimeError: If no manager has been configured.
    """
    if _subscription_manager is None:
        raise RuntimeError("Subscription manager is not configured")
    return _subscription_manager


def set_subscription_manager(manager: SubscriptionManager | None) -> None:
    """Set the global subscription manager.

    Args:
        manager: SubscriptionManager instance, or None to clear it.
    """
    global _subscription_manager
    _subscription_manager = manager
