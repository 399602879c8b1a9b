"""Caller identity and tenant authorization for the management API.

Identity and role claims come from the surrounding framework. The
default ``get_caller`` reads them from trusted proxy headers; deployments
override it with ``app.dependency_overrides[get_caller]``.
"""

from collections.abc import Collection
from typing import Protocol

import structlog
from fastapi import Depends, Header, HTTPException
from pydantic import BaseModel, Field

from resource_webhooks.errors import AccessDeniedError

logger = structlog.get_logger(__name__)


class Caller(BaseModel):
    """Authenticated administrator calling the management API."""

    user_id: str = Field(..., description="Caller user id")
    global_admin: bool = Field(default=False, description="May administer every tenant")
    admin_tenants: frozenset[str] = Field(
        default_factory=frozenset,
        description="Tenants (sites) the caller administers",
    )


class AccessPolicy(Protocol):
    """Capability check injected into the management surface."""

    def authorize(self, caller: Caller, tenant_id: str) -> bool: ...

    def visible_tenants(self, caller: Caller) -> Collection[str] | None: ...


class TenantAdminPolicy:
    """Global admins see every tenant; site admins see the sites they administer."""

    def authorize(self, caller: Caller, tenant_id: str) -> bool:
        return caller.global_admin or tenant_id in caller.admin_tenants

    def visible_tenants(self, caller: Caller) -> Collection[str] | None:
        """Return the caller's tenants, or None for every tenant."""
        if caller.global_admin:
            return None
        return caller.admin_tenants


# Global policy instance
_access_policy: AccessPolicy = TenantAdminPolicy()


def get_access_policy() -> AccessPolicy:
    """Get the active access policy."""
    return _access_policy


def set_access_policy(policy: AccessPolicy) -> None:
    """Set the active access policy.

    Args:
        policy: Policy instance.
    """
    global _access_policy
    _access_policy = policy


async def get_caller(
    x_user_id: str | None = Header(default=None),
    x_admin_tenants: str | None = Header(default=None),
    x_global_admin: bool = Header(default=False),
) -> Caller:
    """Build the caller from identity headers set by the authenticating proxy."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Authentication required")

    tenants = frozenset(
        tenant.strip() for tenant in (x_admin_tenants or "").split(",") if tenant.strip()
    )
    return Caller(user_id=x_user_id, global_admin=x_global_admin, admin_tenants=tenants)


class TenantScope:
    """Authorization view of one caller, resolved per request."""

    def __init__(self, caller: Caller, policy: AccessPolicy) -> None:
        self.caller = caller
        self._policy = policy

    @property
    def tenant_ids(self) -> Collection[str] | None:
        """Tenants the caller may see (None = all)."""
        return self._policy.visible_tenants(self.caller)

    def narrow(self, tenant_id: str | None) -> Collection[str] | None:
        """Intersect the visible tenants with an optional tenant filter."""
        visible = self.tenant_ids
        if tenant_id is None:
            return visible
        if visible is None or tenant_id in visible:
            return [tenant_id]
        return []

    def require(self, tenant_id: str) -> None:
        """Raise if the caller may not administer a tenant.

        Raises:
            AccessDeniedError: If the policy rejects the caller.
        """
        if not self._policy.authorize(self.caller, tenant_id):
            logger.warning(
                "tenant_access_denied",
                user_id=self.caller.user_id,
                tenant_id=tenant_id,
            )
            raise AccessDeniedError(
                "You don't have permission to manage webhooks for this site",
                details={"tenant_id": tenant_id},
            )


async def get_tenant_scope(
    caller: Caller = Depends(get_caller),
    policy: AccessPolicy = Depends(get_access_policy),
) -> TenantScope:
    """Resolve the caller's tenant scope."""
    return TenantScope(caller, policy)
