"""Resource hierarchy used for subscription scoping.

Resources and resource types are owned by the surrounding CRUD services.
This module only needs a read view: an arena of resources addressed by
id, each carrying its parent id, so ancestor walks are id lookups.
"""

from typing import Any, Protocol

import structlog
from pydantic import BaseModel, Field

logger = structlog.get_logger(__name__)


class ResourceType(BaseModel):
    """A tenant-scoped resource category."""

    id: str
    name: str
    tenant_id: str


class Resource(BaseModel):
    """A bookable resource as returned by the REST layer."""

    id: str
    name: str
    tenant_id: str
    type_id: str | None = None
    parent_id: str | None = None
    status: str = "ACTIVE"
    description: str | None = None
    specs: str | None = None
    location: str | None = None

    def to_data(self) -> dict[str, Any]:
        """Return the JSON representation used in webhook payloads."""
        return self.model_dump(mode="json")


class ResourceCatalog(Protocol):
    """Read access to the resource hierarchy."""

    def get_resource(self, resource_id: str) -> Resource | None: ...

    def get_resource_type(self, type_id: str) -> ResourceType | None: ...

    def resources_of_type(self, type_id: str) -> list[Resource]: ...


class InMemoryResourceCatalog:
    """Resource arena keyed by id.

    Example:
        catalog = InMemoryResourceCatalog()
        catalog.add_resource(Resource(id="r1", name="Rack 1", tenant_id="site-a"))
    """

    def __init__(
        self,
        resources: list[Resource] | None = None,
        resource_types: list[ResourceType] | None = None,
    ) -> None:
        self._resources: dict[str, Resource] = {}
        self._types: dict[str, ResourceType] = {}
        for resource_type in resource_types or []:
            self.add_resource_type(resource_type)
        for resource in resources or []:
            self.add_resource(resource)

    def add_resource(self, resource: Resource) -> Resource:
        self._resources[resource.id] = resource
        return resource

    def remove_resource(self, resource_id: str) -> bool:
        return self._resources.pop(resource_id, None) is not None

    def add_resource_type(self, resource_type: ResourceType) -> ResourceType:
        self._types[resource_type.id] = resource_type
        return resource_type

    def get_resource(self, resource_id: str) -> Resource | None:
        return self._resources.get(resource_id)

    def get_resource_type(self, type_id: str) -> ResourceType | None:
        return self._types.get(type_id)

    def resources_of_type(self, type_id: str) -> list[Resource]:
        return [r for r in self._resources.values() if r.type_id == type_id]


def iter_ancestor_ids(
    catalog: ResourceCatalog,
    parent_id: str | None,
    *,
    max_depth: int,
) -> list[str]:
    """Walk parent links upward starting at ``parent_id``.

    Args:
        catalog: Resource lookup.
        parent_id: Parent of the resource the walk starts from.
        max_depth: Maximum number of ancestors to visit.

    Returns:
        Ancestor ids, nearest first. A parent id that no longer resolves
        ends the walk after being included.
    """
    ancestors: list[str] = []
    seen: set[str] = set()
    current = parent_id

    while current is not None and current not in seen:
        if len(ancestors) >= max_depth:
            logger.warning(
                "resource_hierarchy_depth_exceeded",
                max_depth=max_depth,
                last_resource_id=current,
            )
            break
        ancestors.append(current)
        seen.add(current)
        parent = catalog.get_resource(current)
        current = parent.parent_id if parent else None

    return ancestors
