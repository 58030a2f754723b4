"""Collaborator protocols consumed by the crossing guard core.

Concrete cloud clients implement these; the core never talks to an API
directly. Lookup methods raise ResourceLookupError on failure and
apply_policy raises ApplyError.
"""

from typing import Iterable, List, Protocol, Set

from .models import ApplyResult, OrgNode, Policy, Principal


class HierarchyClient(Protocol):
    """Protocol for resource hierarchy lookups."""

    def get_ancestry(self, node: OrgNode) -> List[OrgNode]:
        """Return the node and its ancestors, nearest first, ending at the organization."""
        ...

    def search_child_nodes(self, parent: OrgNode) -> Iterable[OrgNode]:
        """Return the folders and projects directly under parent."""
        ...

    def list_projects_in_scope(self, scope: OrgNode, active_only: bool = True) -> Set[str]:
        """Return ids of the projects directly under scope."""
        ...


class ServiceAccountClient(Protocol):
    """Protocol for listing service accounts registered in a project."""

    def list_service_accounts(self, project_id: str) -> Iterable[Principal]:
        ...


class TagClient(Protocol):
    """Protocol for reading tag bindings attached to a resource."""

    def list_tag_bindings(self, node: OrgNode) -> Set[str]:
        """Return the tag values bound to the resource."""
        ...


class PolicyClient(Protocol):
    """Protocol for reading and writing IAM policies."""

    def get_policy(self, node: OrgNode) -> Policy:
        ...

    def apply_policy(self, node: OrgNode, policy: Policy) -> ApplyResult:
        ...
