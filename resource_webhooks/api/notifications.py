"""Inbound webhook endpoint.

Not behind caller authentication: the HMAC signature over the raw body
is the credential.
"""

from datetime import datetime

from fastapi import APIRouter, Header, Request
from pydantic import BaseModel

from resource_webhooks.notifications import Notification, NotificationSeverity
from resource_webhooks.webhooks.receiver import InboundReceiver
from resource_webhooks.webhooks.security import SIGNATURE_HEADER

router = APIRouter(prefix="/notifications", tags=["Notifications"])

# Global receiver instance
_receiver: InboundReceiver | None = None


def get_inbound_receiver() -> InboundReceiver:
    """Get the global inbound receiver.

    Raises:
        RuntimeError: If no receiver has been configured.
    """
    if _receiver is None:
        raise RuntimeError("Inbound receiver is not configured")
    return _receiver


def set_inbound_receiver(receiver: InboundReceiver | None) -> None:
    """Set the global inbound receiver."""
    global _receiver
    _receiver = receiver


class NotificationResponse(BaseModel):
    """Created notification."""

    id: str
    user_id: str
    message: str
    severity: NotificationSeverity
    created_at: datetime

    @classmethod
    def from_notification(cls, notification: Notification) -> "NotificationResponse":
        return cls(
            id=notification.id,
            user_id=notification.user_id,
            message=notification.message,
            severity=notification.severity,
            created_at=notification.created_at,
        )


@router.post(
    "/webhook",
    response_model=NotificationResponse,
    responses={
        201: {"description": "Notification created"},
        400: {"description": "Malformed body"},
        401: {"description": "Missing or invalid signature"},
    },
    status_code=201,
)
async def receive_webhook_notification(
    request: Request,
    signature: str | None = Header(default=None, alias=SIGNATURE_HEADER),
) -> NotificationResponse:
    """Create a user notification from a signed inbound webhook call.

    The body is read raw so the signature is checked against the exact
    bytes the caller signed.
    """
    raw_body = await request.body()
    notification = await get_inbound_receiver().receive(raw_body, signature)
    return NotificationResponse.from_notification(notification)
