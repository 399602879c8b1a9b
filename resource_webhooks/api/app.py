"""FastAPI application for the webhook integration layer.

Wires the store, matcher, dispatcher, retry scheduler and inbound
receiver together in the application lifespan and maps the error
taxonomy onto a single error envelope.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from resource_webhooks.api import notifications as notifications_api
from resource_webhooks.api import webhooks as webhooks_api
from resource_webhooks.api.dependencies import AccessPolicy, set_access_policy
from resource_webhooks.config import Settings, settings as default_settings
from resource_webhooks.errors import (
    AccessDeniedError,
    InboundWebhookError,
    SubscriptionNotFoundError,
    SubscriptionValidationError,
    WebhookError,
)
from resource_webhooks.notifications import InMemoryNotificationStore, NotificationSink
from resource_webhooks.resources import InMemoryResourceCatalog, ResourceCatalog
from resource_webhooks.webhooks.dispatcher import WebhookDispatcher, set_webhook_dispatcher
from resource_webhooks.webhooks.events import Clock, utc_now
from resource_webhooks.webhooks.manager import SubscriptionManager, set_subscription_manager
from resource_webhooks.webhooks.matcher import SubscriptionMatcher
from resource_webhooks.webhooks.receiver import InboundReceiver
from resource_webhooks.webhooks.scheduler import RetryScheduler
from resource_webhooks.webhooks.store import WebhookStore

logger = structlog.get_logger(__name__)


# ============================================================================
# Response Models
# ============================================================================


class ErrorResponse(BaseModel):
    """Error response model."""

    error: str = Field(..., description="Error message")
    detail: str | None = Field(default=None, description="Detailed error information")


class HealthResponse(BaseModel):
    """Liveness response."""

    status: str
    version: str
    retry_scheduler_running: bool


def _status_for(exc: WebhookError) -> int:
    if isinstance(exc, InboundWebhookError):
        return exc.status_code
    if isinstance(exc, SubscriptionNotFoundError):
        return 404
    if isinstance(exc, AccessDeniedError):
        return 403
    if isinstance(exc, SubscriptionValidationError):
        return 400
    return 500


# ============================================================================
# Application Setup
# ============================================================================


def create_app(
    *,
    store: WebhookStore | None = None,
    catalog: ResourceCatalog | None = None,
    notifications: NotificationSink | None = None,
    access_policy: AccessPolicy | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    start_scheduler: bool | None = None,
    app_settings: Settings | None = None,
    clock: Clock = utc_now,
    title: str = "Resource Webhooks API",
    version: str = "1.0.0",
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        store: Webhook store (a file-backed store is created if not provided).
        catalog: Resource hierarchy of the surrounding system.
        notifications: Destination for inbound notifications.
        access_policy: Tenant authorization policy.
        transport: httpx transport for outbound deliveries.
        start_scheduler: Run the retry scheduler in the background.
        app_settings: Settings to use instead of the environment.
        clock: Source of timestamps.
        title: API title.
        version: API version.

    Returns:
        Configured FastAPI application.
    """
    config = app_settings or default_settings
    catalog = catalog if catalog is not None else InMemoryResourceCatalog()
    notifications = notifications if notifications is not None else InMemoryNotificationStore()
    run_scheduler = (
        start_scheduler if start_scheduler is not None else config.WEBHOOK_RETRY_SCHEDULER_ENABLED
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info("application_starting")

        webhook_store = store or WebhookStore(config.WEBHOOK_DB_PATH)
        owns_store = store is None
        await webhook_store.initialize()

        matcher = SubscriptionMatcher(
            webhook_store,
            catalog,
            max_depth=config.WEBHOOK_HIERARCHY_MAX_DEPTH,
        )
        dispatcher = WebhookDispatcher(
            webhook_store,
            matcher,
            catalog=catalog,
            transport=transport,
            timeout=config.WEBHOOK_REQUEST_TIMEOUT_SECONDS,
            max_concurrent_deliveries=config.WEBHOOK_MAX_CONCURRENT_DELIVERIES,
            response_body_max_length=config.WEBHOOK_RESPONSE_BODY_MAX_LENGTH,
            user_agent=config.WEBHOOK_USER_AGENT,
            clock=clock,
        )
        scheduler = RetryScheduler(
            webhook_store,
            dispatcher,
            interval=config.WEBHOOK_RETRY_POLL_INTERVAL_SECONDS,
            batch_size=config.WEBHOOK_RETRY_BATCH_SIZE,
            stale_claim_seconds=config.WEBHOOK_RETRY_CLAIM_STALE_SECONDS,
            clock=clock,
        )

        set_subscription_manager(SubscriptionManager(webhook_store, catalog, clock=clock))
        set_webhook_dispatcher(dispatcher)
        notifications_api.set_inbound_receiver(InboundReceiver(webhook_store, notifications))
        if access_policy is not None:
            set_access_policy(access_policy)

        app.state.store = webhook_store
        app.state.dispatcher = dispatcher
        app.state.scheduler = scheduler

        if run_scheduler:
            scheduler.start()

        yield

        logger.info("application_shutting_down")
        await scheduler.stop()
        await dispatcher.shutdown()
        if owns_store:
            await webhook_store.close()

    app = FastAPI(
        title=title,
        version=version,
        description="Webhook subscriptions, signed deliveries and inbound notifications.",
        lifespan=lifespan,
    )

    # Add exception handlers
    @app.exception_handler(WebhookError)
    async def webhook_error_handler(request: Request, exc: WebhookError) -> JSONResponse:
        status_code = _status_for(exc)
        logger.warning(
            "webhook_error_response",
            path=request.url.path,
            status_code=status_code,
            **exc.to_dict(),
        )
        return JSONResponse(
            status_code=status_code,
            content=ErrorResponse(error=exc.message, detail=None).model_dump(),
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(
        request: Request, exc: HTTPException  # noqa: ARG001
    ) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content=ErrorResponse(
                error=exc.detail if isinstance(exc.detail, str) else str(exc.detail),
                detail=None,
            ).model_dump(),
        )

    @app.get("/health", response_model=HealthResponse, tags=["Health"])
    async def health(request: Request) -> HealthResponse:
        scheduler: RetryScheduler | None = getattr(request.app.state, "scheduler", None)
        return HealthResponse(
            status="healthy",
            version=app.version,
            retry_scheduler_running=scheduler.is_running if scheduler else False,
        )

    app.include_router(webhooks_api.router)
    app.include_router(notifications_api.router)

    return app


def run() -> None:
    """Run the API with uvicorn (``resource-webhooks`` console script)."""
    import uvicorn

    from resource_webhooks.logging_config import configure_logging

    configure_logging()
    uvicorn.run(create_app(), host="0.0.0.0", port=8000, log_config=None)
