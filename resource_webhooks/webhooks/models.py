"""Subscription and delivery-attempt models."""

from __future__ import annotations

import math
import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Generic, TypeVar

from pydantic import (
    AfterValidator,
    BaseModel,
    Field,
    HttpUrl,
    TypeAdapter,
    ValidationError,
    computed_field,
    model_validator,
)

from resource_webhooks.config import settings
from resource_webhooks.webhooks.events import WebhookEventType

T = TypeVar("T")

_HTTP_URL = TypeAdapter(HttpUrl)


def _check_webhook_url(value: str) -> str:
    """Validate as an HTTP(S) URL but keep the caller's exact spelling."""
    if len(value) > 255:
        raise ValueError("URL cannot exceed 255 characters")
    try:
        _HTTP_URL.validate_python(value)
    except ValidationError as e:
        raise ValueError(f"Invalid webhook URL: {e.errors()[0]['msg']}") from e
    return value


WebhookUrl = Annotated[str, AfterValidator(_check_webhook_url)]


def new_delivery_id() -> str:
    return f"dlv_{uuid.uuid4().hex[:12]}"


class ScopeKind(str, Enum):
    """Which narrowing rule a subscription uses."""

    TENANT = "tenant"
    RESOURCE_TYPE = "resource_type"
    RESOURCE = "resource"


class RetryClaimState(str, Enum):
    """State of a claim on a pending attempt."""

    CLAIMED = "claimed"
    SENT = "sent"
    CANCELLED = "cancelled"
    EXHAUSTED = "exhausted"


def _check_scope(
    resource_id: str | None,
    resource_type_id: str | None,
    include_sub_resources: bool,
) -> None:
    if resource_id is not None and resource_type_id is not None:
        raise ValueError("A webhook can be scoped to a resource or a resource type, not both")
    if include_sub_resources and resource_id is None:
        raise ValueError("include_sub_resources requires a resource scope")


class Subscription(BaseModel):
    """A registered webhook subscription."""

    id: str = Field(
        default_factory=lambda: f"wh_{uuid.uuid4().hex[:12]}",
        description="Unique subscription identifier",
    )
    tenant_id: str = Field(..., description="Tenant (site) the subscription belongs to")
    name: str = Field(..., description="Human-readable name")
    url: str = Field(..., description="Target URL")
    enabled: bool = Field(default=True, description="Whether the subscription is matched")
    event_type: WebhookEventType = Field(
        default=WebhookEventType.ALL,
        description="Event type filter (ALL = every type)",
    )

    # Scope
    resource_id: str | None = Field(default=None, description="Scoped resource")
    resource_type_id: str | None = Field(default=None, description="Scoped resource type")
    include_sub_resources: bool = Field(
        default=False,
        description="Also match every resource below the scoped resource",
    )

    # Retry policy
    max_retries: int = Field(default=3, ge=0, le=10, description="Retries after the first attempt")
    retry_delay_seconds: int = Field(
        default=60, ge=1, le=86400, description="Fixed delay between attempts"
    )

    # SHA-256 of the issued secret; never serialized
    signing_key: str = Field(default="", exclude=True, repr=False)

    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @model_validator(mode="after")
    def _validate_scope(self) -> Subscription:
        _check_scope(self.resource_id, self.resource_type_id, self.include_sub_resources)
        return self

    @property
    def scope_kind(self) -> ScopeKind:
        """Active scope rule."""
        if self.resource_id is not None:
            return ScopeKind.RESOURCE
        if self.resource_type_id is not None:
            return ScopeKind.RESOURCE_TYPE
        return ScopeKind.TENANT

    def should_receive_event(self, event_type: WebhookEventType) -> bool:
        """Check if this subscription's event filter accepts an event type.

        Args:
            event_type: Event type to check.

        Returns:
            True if the filter is ALL or equals the event type.
        """
        return self.event_type == WebhookEventType.ALL or self.event_type == event_type


class SubscriptionCreate(BaseModel):
    """Input for registering a subscription."""

    name: str = Field(..., min_length=1, max_length=100, description="Human-readable name")
    url: WebhookUrl = Field(..., description="Webhook endpoint URL")
    tenant_id: str = Field(..., min_length=1, description="Tenant (site) id")
    event_type: WebhookEventType = Field(default=WebhookEventType.ALL)
    enabled: bool = Field(default=True)
    resource_id: str | None = Field(default=None)
    resource_type_id: str | None = Field(default=None)
    include_sub_resources: bool = Field(default=False)
    max_retries: int = Field(
        default_factory=lambda: settings.WEBHOOK_DEFAULT_MAX_RETRIES, ge=0, le=10
    )
    retry_delay_seconds: int = Field(
        default_factory=lambda: settings.WEBHOOK_DEFAULT_RETRY_DELAY_SECONDS, ge=1, le=86400
    )

    @model_validator(mode="after")
    def _validate_scope(self) -> SubscriptionCreate:
        _check_scope(self.resource_id, self.resource_type_id, self.include_sub_resources)
        return self


class SubscriptionUpdate(BaseModel):
    """Partial update of a subscription. The secret is never updatable."""

    name: str | None = Field(default=None, min_length=1, max_length=100)
    url: WebhookUrl | None = Field(default=None)
    tenant_id: str | None = Field(default=None, description="Must equal the current tenant")
    event_type: WebhookEventType | None = Field(default=None)
    enabled: bool | None = Field(default=None)
    resource_id: str | None = Field(default=None)
    resource_type_id: str | None = Field(default=None)
    include_sub_resources: bool | None = Field(default=None)
    max_retries: int | None = Field(default=None, ge=0, le=10)
    retry_delay_seconds: int | None = Field(default=None, ge=1, le=86400)


class IssuedSubscription(BaseModel):
    """Creation result: the only place the plaintext secret ever appears."""

    subscription: Subscription
    client_secret: str


class DeliveryAttempt(BaseModel):
    """One logged try to deliver an envelope to a subscription. Immutable once stored."""

    id: int | None = Field(default=None, description="Row id, assigned on insert")
    delivery_id: str = Field(
        default_factory=new_delivery_id,
        description="Groups the attempts of one logical delivery",
    )
    subscription_id: str
    tenant_id: str
    event_type: WebhookEventType
    resource_id: str | None = None
    payload: str = Field(..., description="Serialized body that was sent")
    status_code: int | None = Field(default=None, description="None when the call itself failed")
    response_body: str | None = None
    error: str | None = None
    success: bool = False
    retry_count: int = Field(default=0, ge=0)
    next_retry_at: datetime | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @model_validator(mode="after")
    def _success_is_terminal(self) -> DeliveryAttempt:
        if self.success and self.next_retry_at is not None:
            raise ValueError("A successful attempt cannot owe a retry")
        return self

    @property
    def is_terminal(self) -> bool:
        """Whether no further attempt is owed."""
        return self.next_retry_at is None


class DeliveryOutcome(BaseModel):
    """Result of one dispatcher call."""

    attempt: DeliveryAttempt

    @property
    def success(self) -> bool:
        return self.attempt.success

    @property
    def status_code(self) -> int | None:
        return self.attempt.status_code

    @property
    def will_retry(self) -> bool:
        return self.attempt.next_retry_at is not None


class Page(BaseModel, Generic[T]):
    """One page of a newest-first listing."""

    items: list[T]
    total: int
    page: int
    size: int

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.size) if self.size else 0

    @computed_field  # type: ignore[prop-decorator]
    @property
    def has_next(self) -> bool:
        return self.page + 1 < self.total_pages

    @computed_field  # type: ignore[prop-decorator]
    @property
    def has_previous(self) -> bool:
        return self.page > 0
