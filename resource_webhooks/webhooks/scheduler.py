"""Retry scheduler for failed webhook deliveries.

A periodic worker that re-drives delivery attempts whose
``next_retry_at`` has passed. Every due attempt is claimed atomically in
the store before it is re-sent, so several scheduler workers (in one
process or many) never send the same retry twice.
"""

import asyncio
import contextlib
import uuid
from dataclasses import dataclass
from datetime import timedelta

import structlog

from resource_webhooks.config import settings
from resource_webhooks.webhooks.dispatcher import WebhookDispatcher
from resource_webhooks.webhooks.events import Clock, utc_now
from resource_webhooks.webhooks.models import DeliveryAttempt, RetryClaimState
from resource_webhooks.webhooks.store import WebhookStore

logger = structlog.get_logger(__name__)


@dataclass
class RetryRunResult:
    """Counters for one scheduler scan."""

    released: int = 0
    due: int = 0
    sent: int = 0
    skipped: int = 0
    cancelled: int = 0
    exhausted: int = 0
    failed: int = 0


class RetryScheduler:
    """Periodically re-drives due retries.

    Example:
        scheduler = RetryScheduler(store, dispatcher)
        scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(
        self,
        store: WebhookStore,
        dispatcher: WebhookDispatcher,
        *,
        interval: float | None = None,
        batch_size: int | None = None,
        stale_claim_seconds: int | None = None,
        worker_id: str | None = None,
        clock: Clock = utc_now,
    ) -> None:
        """Initialize the scheduler.

        Args:
            store: Delivery log holding pending attempts and claims.
            dispatcher: Dispatcher used to send the next attempt.
            interval: Seconds between scans.
            batch_size: Due attempts handled per scan.
            stale_claim_seconds: Claims older than this with no outcome are released.
            worker_id: Identifier recorded on claims (random if None).
            clock: Source of timestamps.
        """
        self._store = store
        self._dispatcher = dispatcher
        self._interval = (
            interval if interval is not None else settings.WEBHOOK_RETRY_POLL_INTERVAL_SECONDS
        )
        self._batch_size = batch_size or settings.WEBHOOK_RETRY_BATCH_SIZE
        self._stale_claim_seconds = (
            stale_claim_seconds
            if stale_claim_seconds is not None
            else settings.WEBHOOK_RETRY_CLAIM_STALE_SECONDS
        )
        self._worker_id = worker_id or f"worker_{uuid.uuid4().hex[:8]}"
        self._clock = clock
        self._task: asyncio.Task[None] | None = None
        self._logger = logger.bind(component="retry_scheduler", worker_id=self._worker_id)

    @property
    def worker_id(self) -> str:
        return self._worker_id

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> RetryRunResult:
        """Run a single scan: release stale claims, then claim and re-send due retries.

        Returns:
            Counters describing what the scan did.
        """
        result = RetryRunResult()
        now = self._clock()

        result.released = await self._store.release_stale_claims(
            now - timedelta(seconds=self._stale_claim_seconds),
            now,
        )

        due = await self._store.find_due_retries(now, limit=self._batch_size)
        result.due = len(due)
        if not due:
            return result

        outcomes = await asyncio.gather(*(self._process(attempt) for attempt in due))
        for state in outcomes:
            if state is None:
                result.skipped += 1
            elif state is RetryClaimState.SENT:
                result.sent += 1
            elif state is RetryClaimState.CANCELLED:
                result.cancelled += 1
            elif state is RetryClaimState.EXHAUSTED:
                result.exhausted += 1
            else:
                result.failed += 1

        self._logger.info(
            "retry_scan_completed",
            due=result.due,
            sent=result.sent,
            skipped=result.skipped,
            cancelled=result.cancelled,
            exhausted=result.exhausted,
            failed=result.failed,
            released=result.released,
        )
        return result

    async def _process(self, attempt: DeliveryAttempt) -> RetryClaimState | None:
        """Claim and handle one due attempt.

        Returns:
            The recorded claim state, CLAIMED if sending raised (the claim is
            left for stale release), or None if another worker won the claim.
        """
        assert attempt.id is not None

        if not await self._store.claim_retry(attempt.id, self._worker_id, self._clock()):
            self._logger.debug("retry_claim_lost", attempt_id=attempt.id)
            return None

        subscription = await self._store.get_subscription(attempt.subscription_id)
        if subscription is None or not subscription.enabled:
            await self._store.resolve_claim(attempt.id, RetryClaimState.CANCELLED, self._clock())
            self._logger.info(
                "retry_cancelled",
                attempt_id=attempt.id,
                subscription_id=attempt.subscription_id,
            )
            return RetryClaimState.CANCELLED

        if attempt.retry_count + 1 > subscription.max_retries:
            await self._store.resolve_claim(attempt.id, RetryClaimState.EXHAUSTED, self._clock())
            self._logger.info(
                "retry_budget_exhausted",
                attempt_id=attempt.id,
                subscription_id=subscription.id,
                max_retries=subscription.max_retries,
            )
            return RetryClaimState.EXHAUSTED

        try:
            await self._dispatcher.redeliver(subscription, attempt)
        except Exception as e:
            self._logger.exception(
                "retry_redelivery_failed",
                attempt_id=attempt.id,
                subscription_id=subscription.id,
                error=str(e),
            )
            return RetryClaimState.CLAIMED

        await self._store.resolve_claim(attempt.id, RetryClaimState.SENT, self._clock())
        return RetryClaimState.SENT

    async def _run_loop(self) -> None:
        """Background task that scans on a fixed interval."""
        try:
            while True:
                try:
                    await self.run_once()
                except Exception as e:
                    self._logger.exception("retry_scan_failed", error=str(e))
                await asyncio.sleep(self._interval)
        except asyncio.CancelledError:
            pass

    def start(self) -> None:
        """Start the periodic background task."""
        if self._task is None:
            self._task = asyncio.create_task(self._run_loop())
            self._logger.info("retry_scheduler_started", interval=self._interval)

    async def stop(self) -> None:
        """Stop the periodic background task."""
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
            self._logger.info("retry_scheduler_stopped")
