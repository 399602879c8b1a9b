"""Webhook delivery dispatcher.

Each call to ``deliver`` makes exactly one signed HTTP attempt and logs
exactly one delivery attempt row. Failed attempts that still have retry
budget carry a ``next_retry_at``; the retry scheduler re-drives them.
"""

import asyncio
from datetime import timedelta
from typing import Any

import httpx
import structlog

from resource_webhooks.config import settings
from resource_webhooks.resources import ResourceCatalog
from resource_webhooks.webhooks.events import (
    Clock,
    DomainEvent,
    WebhookEnvelope,
    WebhookEventType,
    build_payload,
    utc_now,
)
from resource_webhooks.webhooks.matcher import SubscriptionMatcher
from resource_webhooks.webhooks.models import (
    DeliveryAttempt,
    DeliveryOutcome,
    ScopeKind,
    Subscription,
    new_delivery_id,
)
from resource_webhooks.webhooks.security import create_signature_headers
from resource_webhooks.webhooks.store import WebhookStore

logger = structlog.get_logger(__name__)

TEST_EVENT_MESSAGE = "This is a test event"


def _truncate(text: str | None, max_length: int) -> str | None:
    if text is None or len(text) <= max_length:
        return text
    return text[:max_length]


class WebhookDispatcher:
    """Delivers envelopes to subscriber endpoints.

    Features:
    - One signed HTTP attempt per call, bounded by a timeout
    - Fixed-delay retry scheduling persisted on the attempt row
    - Fire-and-forget fan-out so event sources never wait on subscribers
    - Concurrency bound shared by first attempts and retries
    """

    def __init__(
        self,
        store: WebhookStore,
        matcher: SubscriptionMatcher,
        *,
        catalog: ResourceCatalog | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float | None = None,
        max_concurrent_deliveries: int | None = None,
        response_body_max_length: int | None = None,
        user_agent: str | None = None,
        clock: Clock = utc_now,
    ) -> None:
        """Initialize the dispatcher.

        Args:
            store: Delivery log and subscription registry.
            matcher: Resolves domain events to subscriptions.
            catalog: Resource lookup used for test deliveries.
            transport: Optional httpx transport (tests inject a MockTransport).
            timeout: HTTP request timeout in seconds.
            max_concurrent_deliveries: Max concurrent delivery requests.
            response_body_max_length: Stored response bodies are cut to this length.
            user_agent: User-Agent header value.
            clock: Source of timestamps.
        """
        self._store = store
        self._matcher = matcher
        self._catalog = catalog
        self._transport = transport
        self._timeout = timeout if timeout is not None else settings.WEBHOOK_REQUEST_TIMEOUT_SECONDS
        self._response_body_max_length = (
            response_body_max_length
            if response_body_max_length is not None
            else settings.WEBHOOK_RESPONSE_BODY_MAX_LENGTH
        )
        self._user_agent = user_agent or settings.WEBHOOK_USER_AGENT
        self._clock = clock
        self._semaphore = asyncio.Semaphore(
            max_concurrent_deliveries or settings.WEBHOOK_MAX_CONCURRENT_DELIVERIES
        )
        self._background_tasks: set[asyncio.Task[DeliveryOutcome | None]] = set()
        self._logger = logger.bind(component="webhook_dispatcher")

    @property
    def pending_tasks(self) -> int:
        """Number of fire-and-forget deliveries still running."""
        return len(self._background_tasks)

    async def dispatch(
        self,
        event: DomainEvent,
        *,
        wait: bool = False,
    ) -> list[asyncio.Task[DeliveryOutcome | None]]:
        """Fan an event out to every matching subscription.

        Returns as soon as the deliveries are scheduled. Delivery failures
        never propagate to the caller.

        Args:
            event: Domain event to deliver.
            wait: If True, wait for all first attempts to complete.

        Returns:
            One task per matched subscription.
        """
        subscriptions = await self._matcher.match(event)

        if not subscriptions:
            self._logger.debug(
                "no_webhooks_matched",
                event_type=event.event_type.value,
                tenant_id=event.tenant_id,
            )
            return []

        tasks: list[asyncio.Task[DeliveryOutcome | None]] = []
        for subscription in subscriptions:
            envelope = build_payload(event, subscription.id, clock=self._clock)
            task = asyncio.create_task(
                self._deliver_in_background(subscription, envelope, event.resource_id)
            )
            tasks.append(task)
            self._background_tasks.add(task)
            task.add_done_callback(self._background_tasks.discard)

        self._logger.info(
            "event_dispatched",
            event_type=event.event_type.value,
            tenant_id=event.tenant_id,
            resource_id=event.resource_id,
            webhook_count=len(subscriptions),
        )

        if wait:
            await asyncio.gather(*tasks, return_exceptions=True)

        return tasks

    async def _deliver_in_background(
        self,
        subscription: Subscription,
        envelope: WebhookEnvelope,
        resource_id: str | None,
    ) -> DeliveryOutcome | None:
        try:
            return await self.deliver(subscription, envelope, resource_id=resource_id)
        except Exception as e:
            self._logger.exception(
                "delivery_task_failed",
                subscription_id=subscription.id,
                error=str(e),
            )
            return None

    async def deliver(
        self,
        subscription: Subscription,
        envelope: WebhookEnvelope,
        *,
        resource_id: str | None = None,
        delivery_id: str | None = None,
        retry_count: int = 0,
        retryable: bool = True,
    ) -> DeliveryOutcome:
        """Make one delivery attempt and log it.

        Args:
            subscription: Target subscription.
            envelope: Envelope to send.
            resource_id: Resource that triggered the event.
            delivery_id: Logical delivery this attempt belongs to (new if None).
            retry_count: Ordinal of this attempt (0 = first).
            retryable: If False a failure is terminal regardless of budget.

        Returns:
            Outcome wrapping the logged attempt.
        """
        return await self._send(
            subscription,
            envelope.to_json(),
            event_type=envelope.event_type,
            resource_id=resource_id,
            delivery_id=delivery_id,
            retry_count=retry_count,
            retryable=retryable,
        )

    async def redeliver(
        self,
        subscription: Subscription,
        previous: DeliveryAttempt,
    ) -> DeliveryOutcome:
        """Send the next attempt of a failed delivery.

        The stored payload is re-sent byte for byte so the signature covers
        the same envelope the first attempt carried.

        Args:
            subscription: Target subscription.
            previous: The failed attempt that owes a retry.

        Returns:
            Outcome of the new attempt.
        """
        return await self._send(
            subscription,
            previous.payload,
            event_type=previous.event_type,
            resource_id=previous.resource_id,
            delivery_id=previous.delivery_id,
            retry_count=previous.retry_count + 1,
            retryable=True,
        )

    async def send_test(self, subscription: Subscription) -> DeliveryOutcome:
        """Send a test event to a subscription synchronously.

        The test is a single attempt and never schedules a retry.

        Args:
            subscription: Live subscription to test.

        Returns:
            Outcome of the attempt.
        """
        now = self._clock()
        envelope = WebhookEnvelope(
            event_type=WebhookEventType.ALL,
            timestamp=now,
            subscription_id=subscription.id,
            data={
                "message": TEST_EVENT_MESSAGE,
                "timestamp": now.isoformat(),
                "webhookId": subscription.id,
            },
        )

        self._logger.info("sending_test_event", subscription_id=subscription.id)
        return await self.deliver(
            subscription,
            envelope,
            resource_id=self._sample_resource_id(subscription),
            retryable=False,
        )

    def _sample_resource_id(self, subscription: Subscription) -> str | None:
        if subscription.scope_kind is ScopeKind.RESOURCE:
            return subscription.resource_id
        if (
            subscription.scope_kind is ScopeKind.RESOURCE_TYPE
            and self._catalog is not None
            and subscription.resource_type_id is not None
        ):
            resources = self._catalog.resources_of_type(subscription.resource_type_id)
            return resources[0].id if resources else None
        return None

    async def _send(
        self,
        subscription: Subscription,
        body: str,
        *,
        event_type: WebhookEventType,
        resource_id: str | None,
        delivery_id: str | None,
        retry_count: int,
        retryable: bool,
    ) -> DeliveryOutcome:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": self._user_agent,
            **create_signature_headers(body, subscription.signing_key),
        }

        status_code: int | None = None
        response_body: str | None = None
        error: str | None = None

        self._logger.debug(
            "attempting_delivery",
            subscription_id=subscription.id,
            retry_count=retry_count,
            url=subscription.url,
        )

        async with self._semaphore:
            try:
                async with httpx.AsyncClient(
                    timeout=self._timeout,
                    transport=self._transport,
                ) as client:
                    response = await client.post(
                        subscription.url,
                        content=body.encode("utf-8"),
                        headers=headers,
                    )
                status_code = response.status_code
                response_body = response.text
            except httpx.TimeoutException:
                error = "Request timeout"
                self._logger.warning(
                    "delivery_timeout",
                    subscription_id=subscription.id,
                    timeout=self._timeout,
                )
            except httpx.HTTPError as e:
                error = f"{type(e).__name__}: {e}"
                self._logger.warning(
                    "delivery_connection_error",
                    subscription_id=subscription.id,
                    error=str(e),
                )

        success = status_code is not None and 200 <= status_code < 300
        now = self._clock()
        next_retry_at = None

        if not success and retryable and retry_count < subscription.max_retries:
            # The subscription may have been disabled or deleted mid-flight
            current = await self._store.get_subscription(subscription.id)
            if current is not None and current.enabled:
                next_retry_at = now + timedelta(seconds=current.retry_delay_seconds)

        attempt = await self._store.append_attempt(
            DeliveryAttempt(
                delivery_id=delivery_id or new_delivery_id(),
                subscription_id=subscription.id,
                tenant_id=subscription.tenant_id,
                event_type=event_type,
                resource_id=resource_id,
                payload=body,
                status_code=status_code,
                response_body=_truncate(response_body, self._response_body_max_length),
                error=error,
                success=success,
                retry_count=retry_count,
                next_retry_at=next_retry_at,
                created_at=now,
            )
        )

        log_fields: dict[str, Any] = {
            "subscription_id": subscription.id,
            "delivery_id": attempt.delivery_id,
            "status_code": status_code,
            "retry_count": retry_count,
        }
        if success:
            self._logger.info("delivery_success", **log_fields)
        elif attempt.next_retry_at is not None:
            self._logger.warning(
                "delivery_failed_retry_scheduled",
                next_retry_at=attempt.next_retry_at.isoformat(),
                **log_fields,
            )
        else:
            self._logger.error("delivery_failed_permanently", **log_fields)

        return DeliveryOutcome(attempt=attempt)

    async def shutdown(self) -> None:
        """Wait for fire-and-forget deliveries to finish."""
        if self._background_tasks:
            self._logger.info(
                "waiting_for_pending_deliveries",
                count=len(self._background_tasks),
            )
            await asyncio.gather(*self._background_tasks, return_exceptions=True)


# Global dispatcher instance
_dispatcher: WebhookDispatcher | None = None


def get_webhook_dispatcher() -> WebhookDispatcher:
    """Get the global webhook dispatcher.

    Returns:
        WebhookDispatcher instance.

    Raises:
        RuntimeError: If no dispatcher has been configured.
    """
    if _dispatcher is None:
        raise RuntimeError("Webhook dispatcher is not configured")
    return _dispatcher


def set_webhook_dispatcher(dispatcher: WebhookDispatcher | None) -> None:
    """Set the global webhook dispatcher.

    Useful for testing.

    Args:
        dispatcher: WebhookDispatcher instance, or None to clear it.
    """
    global _dispatcher
    _dispatcher = dispatcher
