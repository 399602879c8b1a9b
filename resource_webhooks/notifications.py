"""User notification sink fed by authenticated inbound webhooks.

The notification store itself belongs to the surrounding application;
the receiver only depends on the ``NotificationSink`` protocol.
"""

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Protocol

import structlog
from pydantic import BaseModel, Field

logger = structlog.get_logger(__name__)


class NotificationSeverity(str, Enum):
    """Severity of a user notification."""

    INFO = "INFO"
    SUCCESS = "SUCCESS"
    WARNING = "WARNING"
    ERROR = "ERROR"

    @classmethod
    def parse(cls, value: str | None) -> "NotificationSeverity":
        """Parse a severity name, falling back to INFO for blank or unknown values."""
        if not value or not value.strip():
            return cls.INFO
        try:
            return cls(value.strip().upper())
        except ValueError:
            return cls.INFO


class Notification(BaseModel):
    """A notification addressed to a single user."""

    id: str = Field(
        default_factory=lambda: f"ntf_{uuid.uuid4().hex[:12]}",
        description="Unique notification identifier",
    )
    user_id: str = Field(..., description="Recipient user id")
    message: str = Field(..., description="Notification text")
    severity: NotificationSeverity = Field(
        default=NotificationSeverity.INFO,
        description="Notification severity",
    )
    read: bool = Field(default=False, description="Whether the user has read it")
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="When the notification was created",
    )


class NotificationSink(Protocol):
    """Destination for notifications created by inbound webhooks."""

    async def create_notification(
        self,
        user_id: str,
        message: str,
        severity: NotificationSeverity,
    ) -> Notification: ...


class InMemoryNotificationStore:
    """Process-local notification store."""

    def __init__(self) -> None:
        self._notifications: list[Notification] = []

    async def create_notification(
        self,
        user_id: str,
        message: str,
        severity: NotificationSeverity,
    ) -> Notification:
        notification = Notification(user_id=user_id, message=message, severity=severity)
        self._notifications.append(notification)
        logger.debug(
            "notification_created",
            notification_id=notification.id,
            user_id=user_id,
            severity=severity.value,
        )
        return notification

    def for_user(self, user_id: str) -> list[Notification]:
        """Return a user's notifications, newest first."""
        return sorted(
            (n for n in self._notifications if n.user_id == user_id),
            key=lambda n: n.created_at,
            reverse=True,
        )

    def __len__(self) -> int:
        return len(self._notifications)
