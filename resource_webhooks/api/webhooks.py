"""Webhook management API endpoints.

Provides REST API for managing webhook subscriptions, sending test
events, and browsing delivery logs. Every endpoint is scoped to the
tenants the caller administers.
"""

from datetime import datetime

import structlog
from fastapi import APIRouter, Depends, Query, Response
from pydantic import BaseModel, Field

from resource_webhooks.api.dependencies import TenantScope, get_tenant_scope
from resource_webhooks.webhooks.dispatcher import get_webhook_dispatcher
from resource_webhooks.webhooks.events import WebhookEventType
from resource_webhooks.webhooks.manager import get_subscription_manager
from resource_webhooks.webhooks.models import (
    DeliveryAttempt,
    Page,
    Subscription,
    SubscriptionCreate,
    SubscriptionUpdate,
)

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


# ============================================================================
# Response Models
# ============================================================================


class SubscriptionResponse(BaseModel):
    """Webhook details response. Never carries the secret."""

    id: str
    name: str
    url: str
    enabled: bool
    event_type: WebhookEventType
    tenant_id: str
    resource_id: str | None
    resource_type_id: str | None
    include_sub_resources: bool
    max_retries: int
    retry_delay_seconds: int
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_subscription(cls, subscription: Subscription) -> "SubscriptionResponse":
        """Create response from Subscription model."""
        return cls(**subscription.model_dump())


class SubscriptionCreatedResponse(BaseModel):
    """Creation response: the only time the plaintext secret is returned.

    Only a SHA-256 digest of the secret is stored, and that digest is the
    HMAC key. Subscribers verify `X-Webhook-Signature` on deliveries, and
    sign inbound calls, with:

        key = hashlib.sha256(client_secret.encode()).hexdigest().encode()
        signature = hmac.new(key, raw_body, hashlib.sha256).hexdigest()
    """

    webhook: SubscriptionResponse
    client_secret: str = Field(
        description=(
            "Shared secret, shown once. The HMAC-SHA256 signing key is the "
            "lowercase hex SHA-256 digest of this value, UTF-8 encoded."
        )
    )


class DeliveryAttemptResponse(BaseModel):
    """Delivery log entry."""

    id: int
    delivery_id: str
    subscription_id: str
    tenant_id: str
    event_type: WebhookEventType
    resource_id: str | None
    payload: str
    status_code: int | None
    response_body: str | None
    error: str | None
    success: bool
    retry_count: int
    next_retry_at: datetime | None
    created_at: datetime

    @classmethod
    def from_attempt(cls, attempt: DeliveryAttempt) -> "DeliveryAttemptResponse":
        """Create response from DeliveryAttempt model."""
        return cls(**attempt.model_dump())


class DeliveryLogPageResponse(BaseModel):
    """One page of delivery logs."""

    items: list[DeliveryAttemptResponse]
    total: int
    page: int
    size: int
    total_pages: int
    has_next: bool
    has_previous: bool

    @classmethod
    def from_page(cls, page: Page[DeliveryAttempt]) -> "DeliveryLogPageResponse":
        """Create response from a Page of attempts."""
        return cls(
            items=[DeliveryAttemptResponse.from_attempt(a) for a in page.items],
            total=page.total,
            page=page.page,
            size=page.size,
            total_pages=page.total_pages,
            has_next=page.has_next,
            has_previous=page.has_previous,
        )


class TestWebhookResponse(BaseModel):
    """Response from test webhook endpoint."""

    success: bool
    delivery_id: str
    status_code: int | None
    response_body: str | None
    error: str | None


# ============================================================================
# Subscription Endpoints
# ============================================================================


@router.get(
    "",
    response_model=list[SubscriptionResponse],
)
async def list_webhooks(
    tenant_id: str | None = None,
    enabled: bool | None = None,
    scope: TenantScope = Depends(get_tenant_scope),
) -> list[SubscriptionResponse]:
    """List webhooks of the tenants the caller administers.

    Optionally narrow to one tenant or filter by enabled status.
    """
    manager = get_subscription_manager()
    subscriptions = await manager.list_all(tenant_ids=scope.narrow(tenant_id), enabled=enabled)
    return [SubscriptionResponse.from_subscription(s) for s in subscriptions]


@router.get(
    "/logs",
    response_model=DeliveryLogPageResponse,
)
async def list_all_webhook_logs(
    success: bool | None = None,
    query: str | None = None,
    page: int = Query(default=0, ge=0),
    size: int = Query(default=20, ge=1, le=100),
    scope: TenantScope = Depends(get_tenant_scope),
) -> DeliveryLogPageResponse:
    """List delivery logs across every webhook visible to the caller, newest first."""
    manager = get_subscription_manager()
    logs = await manager.list_all_logs(
        tenant_ids=scope.tenant_ids,
        success=success,
        query=query,
        page=page,
        size=size,
    )
    return DeliveryLogPageResponse.from_page(logs)


@router.get(
    "/{webhook_id}",
    response_model=SubscriptionResponse,
    responses={
        404: {"description": "Webhook not found"},
    },
)
async def get_webhook(
    webhook_id: str,
    scope: TenantScope = Depends(get_tenant_scope),
) -> SubscriptionResponse:
    """Get webhook details by ID."""
    manager = get_subscription_manager()
    subscription = await manager.get(webhook_id, tenant_ids=scope.tenant_ids)
    return SubscriptionResponse.from_subscription(subscription)


@router.post(
    "",
    response_model=SubscriptionCreatedResponse,
    responses={
        201: {"description": "Webhook created"},
        400: {"description": "Invalid scope"},
        403: {"description": "Not an administrator of the site"},
    },
    status_code=201,
)
async def create_webhook(
    request: SubscriptionCreate,
    scope: TenantScope = Depends(get_tenant_scope),
) -> SubscriptionCreatedResponse:
    """Register a new webhook.

    The response carries the signing secret. It is never returned again.
    """
    scope.require(request.tenant_id)

    manager = get_subscription_manager()
    issued = await manager.create(request)

    logger.info(
        "webhook_created",
        webhook_id=issued.subscription.id,
        user_id=scope.caller.user_id,
    )

    return SubscriptionCreatedResponse(
        webhook=SubscriptionResponse.from_subscription(issued.subscription),
        client_secret=issued.client_secret,
    )


@router.put(
    "/{webhook_id}",
    response_model=SubscriptionResponse,
    responses={
        400: {"description": "Invalid update"},
        404: {"description": "Webhook not found"},
    },
)
async def update_webhook(
    webhook_id: str,
    request: SubscriptionUpdate,
    scope: TenantScope = Depends(get_tenant_scope),
) -> SubscriptionResponse:
    """Update a webhook. The secret cannot be changed."""
    manager = get_subscription_manager()
    current = await manager.get(webhook_id, tenant_ids=scope.tenant_ids)
    scope.require(current.tenant_id)

    updated = await manager.update(webhook_id, request, tenant_ids=scope.tenant_ids)

    logger.info(
        "webhook_updated",
        webhook_id=webhook_id,
        user_id=scope.caller.user_id,
    )
    return SubscriptionResponse.from_subscription(updated)


@router.delete(
    "/{webhook_id}",
    responses={
        204: {"description": "Webhook deleted"},
        404: {"description": "Webhook not found"},
    },
    status_code=204,
)
async def delete_webhook(
    webhook_id: str,
    scope: TenantScope = Depends(get_tenant_scope),
) -> Response:
    """Delete a webhook and cancel its pending retries."""
    manager = get_subscription_manager()
    current = await manager.get(webhook_id, tenant_ids=scope.tenant_ids)
    scope.require(current.tenant_id)

    await manager.delete(webhook_id, tenant_ids=scope.tenant_ids)

    logger.info("webhook_deleted", webhook_id=webhook_id, user_id=scope.caller.user_id)
    return Response(status_code=204)


@router.post(
    "/{webhook_id}/test",
    response_model=TestWebhookResponse,
    responses={
        404: {"description": "Webhook not found"},
    },
)
async def test_webhook(
    webhook_id: str,
    scope: TenantScope = Depends(get_tenant_scope),
) -> TestWebhookResponse:
    """Send a test event to a webhook.

    The attempt runs synchronously so the result reports immediate
    pass/fail. Test deliveries are logged but never retried.
    """
    manager = get_subscription_manager()
    subscription = await manager.get(webhook_id, tenant_ids=scope.tenant_ids)
    scope.require(subscription.tenant_id)

    outcome = await get_webhook_dispatcher().send_test(subscription)

    logger.info(
        "webhook_tested",
        webhook_id=webhook_id,
        delivery_id=outcome.attempt.delivery_id,
        success=outcome.success,
    )

    return TestWebhookResponse(
        success=outcome.success,
        delivery_id=outcome.attempt.delivery_id,
        status_code=outcome.status_code,
        response_body=outcome.attempt.response_body,
        error=outcome.attempt.error,
    )


@router.get(
    "/{webhook_id}/logs",
    response_model=DeliveryLogPageResponse,
    responses={
        404: {"description": "Webhook not found"},
    },
)
async def list_webhook_logs(
    webhook_id: str,
    success: bool | None = None,
    query: str | None = None,
    page: int = Query(default=0, ge=0),
    size: int = Query(default=20, ge=1, le=100),
    scope: TenantScope = Depends(get_tenant_scope),
) -> DeliveryLogPageResponse:
    """List delivery logs of one webhook, newest first."""
    manager = get_subscription_manager()
    logs = await manager.list_logs(
        webhook_id,
        tenant_ids=scope.tenant_ids,
        success=success,
        query=query,
        page=page,
        size=size,
    )
    return DeliveryLogPageResponse.from_page(logs)
