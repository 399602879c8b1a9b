"""FastAPI surface: management routes and the inbound notification endpoint."""

from resource_webhooks.api.app import ErrorResponse, create_app
from resource_webhooks.api.dependencies import (
    AccessPolicy,
    Caller,
    TenantAdminPolicy,
    get_caller,
)

__all__ = [
    "AccessPolicy",
    "Caller",
    "ErrorResponse",
    "TenantAdminPolicy",
    "create_app",
    "get_caller",
]
