"""Error taxonomy for the webhook integration layer.

Exception Hierarchy:
    WebhookError (base)
    ├── SubscriptionNotFoundError - Unknown or invisible subscription
    ├── SubscriptionValidationError - Scope or policy rejected at create/update
    ├── AccessDeniedError - Caller may not administer the tenant
    └── InboundWebhookError - Rejected inbound call
        ├── InboundPayloadError - Malformed body or missing fields
        └── InboundAuthenticationError - Signature could not be trusted
            ├── MissingSignatureError
            ├── UnknownSubscriptionError
            └── SignatureMismatchError

Delivery failures have no exception type: they are recorded as delivery
attempts and never reach the event source.
"""

from typing import Any


class WebhookError(Exception):
    """Base exception for all webhook integration errors.

    Attributes:
        message: Human-readable error message.
        details: Additional error details.
    """

    def __init__(
        self,
        message: str,
        *,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for logging/API responses."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }


class SubscriptionNotFoundError(WebhookError):
    """Raised when a subscription does not exist or is not visible to the caller."""

    def __init__(self, subscription_id: str) -> None:
        super().__init__(
            f"Webhook not found with ID: {subscription_id}",
            details={"subscription_id": subscription_id},
        )
        self.subscription_id = subscription_id


class SubscriptionValidationError(WebhookError):
    """Raised when a subscription's scope or policy is invalid."""


class AccessDeniedError(WebhookError):
    """Raised when the caller lacks admin rights over a tenant."""


class InboundWebhookError(WebhookError):
    """Base class for rejected inbound webhook calls.

    Inbound rejections are terminal: they are never retried by this side
    and never recorded as delivery attempts.
    """

    status_code: int = 400


class InboundPayloadError(InboundWebhookError):
    """Raised when the inbound body is not valid JSON or lacks required fields."""

    status_code = 400


class InboundAuthenticationError(InboundWebhookError):
    """Raised when an inbound call cannot be authenticated."""

    status_code = 401


class MissingSignatureError(InboundAuthenticationError):
    """Raised when the signature header is absent."""

    def __init__(self) -> None:
        super().__init__("Missing signature header")


class UnknownSubscriptionError(InboundAuthenticationError):
    """Raised when the referenced subscription does not exist or is disabled."""

    def __init__(self, subscription_id: str) -> None:
        super().__init__(
            "Invalid signature",
            details={"subscription_id": subscription_id},
        )
        self.subscription_id = subscription_id


class SignatureMismatchError(InboundAuthenticationError):
    """Raised when the supplied signature does not match the body."""

    def __init__(self, subscription_id: str) -> None:
        super().__init__(
            "Invalid signature",
            details={"subscription_id": subscription_id},
        )
        self.subscription_id = subscription_id
