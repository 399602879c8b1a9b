"""Inbound webhook receiver.

Authenticates externally originated webhook calls against the referenced
subscription's signing key and turns accepted calls into user
notifications. Rejections are terminal, logged under a dedicated logger,
and never recorded as delivery attempts.
"""

import json
from typing import Any

import structlog
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from resource_webhooks.errors import (
    InboundAuthenticationError,
    InboundPayloadError,
    InboundWebhookError,
    MissingSignatureError,
    SignatureMismatchError,
    UnknownSubscriptionError,
)
from resource_webhooks.notifications import Notification, NotificationSeverity, NotificationSink
from resource_webhooks.webhooks.security import verify
from resource_webhooks.webhooks.store import WebhookStore

logger = structlog.get_logger(__name__)
auth_logger = structlog.get_logger("resource_webhooks.inbound.auth")


class InboundNotificationRequest(BaseModel):
    """Body of an inbound notification call."""

    model_config = ConfigDict(populate_by_name=True)

    subscription_id: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("subscriptionId", "webhookId", "subscription_id"),
    )
    user_id: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("userId", "user_id"),
    )
    message: str = Field(..., min_length=1, max_length=500)
    type: str | None = Field(default=None, description="Severity name")
    event_id: str | None = Field(default=None, validation_alias=AliasChoices("eventId", "event_id"))
    resource_id: str | None = Field(
        default=None, validation_alias=AliasChoices("resourceId", "resource_id")
    )
    event_type: str | None = Field(
        default=None, validation_alias=AliasChoices("eventType", "event_type")
    )
    metadata: dict[str, Any] | None = None

    @property
    def severity(self) -> NotificationSeverity:
        return NotificationSeverity.parse(self.type)


def _subscription_id_of(payload: dict[str, Any]) -> str | None:
    for key in ("subscriptionId", "webhookId", "subscription_id"):
        value = payload.get(key)
        if isinstance(value, str) and value:
            return value
    return None


class InboundReceiver:
    """Accepts signed inbound webhook calls.

    Checks run in a fixed order: signature header present, body parses,
    subscription exists and is enabled, signature matches, fields valid.
    """

    def __init__(self, store: WebhookStore, notifications: NotificationSink) -> None:
        """Initialize the receiver.

        Args:
            store: Subscription registry holding signing keys.
            notifications: Destination for accepted notifications.
        """
        self._store = store
        self._notifications = notifications
        self._logger = logger.bind(component="inbound_receiver")

    async def receive(self, raw_body: bytes, signature: str | None) -> Notification:
        """Authenticate an inbound call and create the notification it carries.

        Args:
            raw_body: Request body exactly as received.
            signature: Value of the signature header, if present.

        Returns:
            The created notification.

        Raises:
            MissingSignatureError: If the signature header is absent.
            InboundPayloadError: If the body is malformed or lacks fields.
            UnknownSubscriptionError: If the subscription is unknown or disabled.
            SignatureMismatchError: If the signature does not match the body.
        """
        try:
            request = await self._authenticate(raw_body, signature)
        except InboundWebhookError as e:
            self._log_rejection(e)
            raise

        notification = await self._notifications.create_notification(
            request.user_id,
            request.message,
            request.severity,
        )
        self._logger.info(
            "inbound_webhook_accepted",
            subscription_id=request.subscription_id,
            user_id=request.user_id,
            notification_id=notification.id,
            severity=notification.severity.value,
        )
        return notification

    async def _authenticate(
        self,
        raw_body: bytes,
        signature: str | None,
    ) -> InboundNotificationRequest:
        if not signature:
            raise MissingSignatureError()

        try:
            payload = json.loads(raw_body)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise InboundPayloadError("Request body is not valid JSON") from e
        if not isinstance(payload, dict):
            raise InboundPayloadError("Request body must be a JSON object")

        subscription_id = _subscription_id_of(payload)
        if subscription_id is None:
            raise InboundPayloadError("subscriptionId is required")

        subscription = await self._store.get_subscription(subscription_id)
        if subscription is None or not subscription.enabled:
            raise UnknownSubscriptionError(subscription_id)

        if not verify(raw_body, subscription.signing_key, signature):
            raise SignatureMismatchError(subscription_id)

        try:
            return InboundNotificationRequest.model_validate(payload)
        except ValidationError as e:
            raise InboundPayloadError(
                "Invalid notification request",
                details={
                    "errors": e.errors(
                        include_url=False, include_context=False, include_input=False
                    )
                },
            ) from e

    def _log_rejection(self, error: InboundWebhookError) -> None:
        fields = {
            "reason": type(error).__name__,
            "status_code": error.status_code,
            "subscription_id": error.details.get("subscription_id"),
        }
        if isinstance(error, InboundAuthenticationError):
            auth_logger.warning("inbound_webhook_rejected", **fields)
        else:
            auth_logger.info("inbound_webhook_rejected", message=error.message, **fields)
