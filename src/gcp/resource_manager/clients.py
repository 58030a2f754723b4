"""
Resource Manager and IAM clients for the crossing guard.

Implements the hierarchy, service account, tag and policy collaborators
on top of the Cloud Resource Manager v3 and IAM v1 discovery APIs. Every
request is retried num_retries times by googleapiclient. An HttpError,
socket or credential failure that survives the retries becomes a
ResourceLookupError (or an ApplyError when writing a policy).

Reference:
- https://cloud.google.com/resource-manager/reference/rest/v3
- https://cloud.google.com/iam/docs/reference/rest/v1/projects.serviceAccounts/list
"""

import logging
from typing import Any, Callable, Dict, Iterator, List, Optional, Set

from google.auth.exceptions import GoogleAuthError
from googleapiclient.errors import HttpError

from src.shared.crossing_guard.errors import ApplyError, ResourceLookupError
from src.shared.crossing_guard.models import (
    ACTIVE_STATE,
    ApplyResult,
    NodeKind,
    OrgNode,
    Policy,
    Principal,
)
from src.shared.utils.lazy_init import GCPDiscoveryClients, gcp_discovery_clients

logger = logging.getLogger(__name__)

FULL_RESOURCE_PREFIX = "//cloudresourcemanager.googleapis.com/"
CONFLICT_STATUSES = (409, 412)
MAX_ANCESTRY_DEPTH = 32


class _DiscoveryClient:
    """Shared plumbing for discovery-based collaborators."""

    def __init__(
        self,
        clients: Optional[GCPDiscoveryClients] = None,
        num_retries: int = 3,
        page_size: int = 100,
    ):
        """
        Initialize client.

        Args:
            clients: Per-thread discovery clients (defaults to the shared instance)
            num_retries: Retries for transient HTTP failures per request
            page_size: Page size for list calls
        """
        self.clients = clients or gcp_discovery_clients
        self.num_retries = num_retries
        self.page_size = page_size

    def _execute(self, request, operation: str, resource: str) -> Dict[str, Any]:
        try:
            return request.execute(num_retries=self.num_retries)
        except HttpError as e:
            raise ResourceLookupError(
                f"{operation} failed for {resource}: {e}",
                operation=operation,
                resource=resource,
                original_error=e,
            ) from e
        except (OSError, GoogleAuthError) as e:
            raise ResourceLookupError(
                f"{operation} failed for {resource}: {type(e).__name__}: {e}",
                operation=operation,
                resource=resource,
                original_error=e,
            ) from e

    def _paginate(
        self,
        list_call: Callable[..., Any],
        items_key: str,
        operation: str,
        resource: str,
        **kwargs,
    ) -> Iterator[Dict[str, Any]]:
        page_token = None
        while True:
            response = self._execute(
                list_call(pageSize=self.page_size, pageToken=page_token, **kwargs),
                operation,
                resource,
            )
            for item in response.get(items_key, []):
                yield item

            page_token = response.get("nextPageToken")
            if not page_token:
                break


class ResourceManagerHierarchyClient(_DiscoveryClient):
    """Hierarchy lookups through Cloud Resource Manager v3."""

    def get_ancestry(self, node: OrgNode) -> List[OrgNode]:
        """Return node and its ancestors by following parent links to the organization."""
        chain: List[OrgNode] = []
        current: Optional[OrgNode] = node
        while current is not None:
            if len(chain) >= MAX_ANCESTRY_DEPTH:
                raise ResourceLookupError(
                    f"Ancestry of {node.id} exceeds {MAX_ANCESTRY_DEPTH} levels",
                    operation="get_ancestry",
                    resource=node.id,
                )
            if current.kind == NodeKind.ORGANIZATION:
                chain.append(current)
                break

            resolved = self._get_node(current)
            chain.append(resolved)
            current = OrgNode.from_resource_name(resolved.parent_id) if resolved.parent_id else None

        return chain

    def search_child_nodes(self, parent: OrgNode) -> List[OrgNode]:
        """Return folders and projects directly under parent, whatever their state.

        Lifecycle state is carried on each node; callers decide what to skip.
        """
        service = self.clients.resource_manager
        children: List[OrgNode] = []

        for folder in self._paginate(
            service.folders().list, "folders", "list_folders", parent.id, parent=parent.id
        ):
            children.append(
                OrgNode.from_resource_name(
                    folder["name"],
                    parent_id=folder.get("parent", parent.id),
                    state=folder.get("state", ACTIVE_STATE),
                )
            )

        children.extend(self._projects_under(parent))
        return children

    def list_projects_in_scope(self, scope: OrgNode, active_only: bool = True) -> Set[str]:
        """Return ids of projects directly under scope."""
        return {
            p.short_id for p in self._projects_under(scope)
            if p.is_active or not active_only
        }

    def _projects_under(self, parent: OrgNode) -> List[OrgNode]:
        service = self.clients.resource_manager
        return [
            OrgNode.project(
                project["projectId"],
                parent_id=project.get("parent", parent.id),
                state=project.get("state", ACTIVE_STATE),
            )
            for project in self._paginate(
                service.projects().list, "projects", "list_projects", parent.id, parent=parent.id
            )
        ]

    def _get_node(self, node: OrgNode) -> OrgNode:
        service = self.clients.resource_manager
        collection = getattr(service, node.kind.collection)()
        response = self._execute(collection.get(name=node.id), f"get_{node.kind.value}", node.id)

        if node.kind == NodeKind.PROJECT:
            return OrgNode.project(
                response.get("projectId", node.short_id),
                parent_id=response.get("parent"),
                state=response.get("state", ACTIVE_STATE),
            )
        return OrgNode(
            id=response.get("name", node.id),
            kind=node.kind,
            parent_id=response.get("parent"),
            state=response.get("state", ACTIVE_STATE),
        )


class IAMServiceAccountClient(_DiscoveryClient):
    """Service account listing through the IAM v1 API."""

    def list_service_accounts(self, project_id: str) -> List[Principal]:
        name = f"projects/{project_id}"
        service = self.clients.iam
        return [
            Principal.service_account(account["email"])
            for account in self._paginate(
                service.projects().serviceAccounts().list, "accounts", "list_service_accounts", name, name=name
            )
            if account.get("email")
        ]


class ResourceManagerTagClient(_DiscoveryClient):
    """Tag binding lookups through Cloud Resource Manager v3.

    Tag bindings are keyed by the full resource name using the project
    number, so project ids are resolved first.
    """

    def list_tag_bindings(self, node: OrgNode) -> Set[str]:
        """Return the tag value names bound directly to node."""
        parent = FULL_RESOURCE_PREFIX + self._numbered_name(node)
        service = self.clients.resource_manager
        return {
            binding["tagValue"]
            for binding in self._paginate(
                service.tagBindings().list, "tagBindings", "list_tag_bindings", node.id, parent=parent
            )
            if binding.get("tagValue")
        }

    def _numbered_name(self, node: OrgNode) -> str:
        if node.kind != NodeKind.PROJECT or node.short_id.isdigit():
            return node.id
        service = self.clients.resource_manager
        response = self._execute(service.projects().get(name=node.id), "get_project", node.id)
        return response["name"]


class ResourceManagerPolicyClient(_DiscoveryClient):
    """IAM policy reads and writes on projects, folders and organizations."""

    def __init__(
        self,
        clients: Optional[GCPDiscoveryClients] = None,
        num_retries: int = 3,
        policy_version: int = 3,
    ):
        super().__init__(clients=clients, num_retries=num_retries)
        self.policy_version = policy_version

    def get_policy(self, node: OrgNode) -> Policy:
        collection = self._collection(node)
        request = collection.getIamPolicy(
            resource=node.id,
            body={"options": {"requestedPolicyVersion": self.policy_version}},
        )
        return Policy.from_dict(self._execute(request, "get_iam_policy", node.id))

    def apply_policy(self, node: OrgNode, policy: Policy) -> ApplyResult:
        """Write policy, failing if the etag no longer matches.

        Raises:
            ApplyError: If the write is rejected; conflict is set when the
                policy changed since it was read
        """
        collection = self._collection(node)
        request = collection.setIamPolicy(
            resource=node.id,
            body={"policy": policy.to_dict(), "updateMask": "bindings,etag"},
        )
        try:
            response = request.execute(num_retries=self.num_retries)
        except HttpError as e:
            status = e.resp.status
            raise ApplyError(
                f"set_iam_policy failed for {node.id}: {e}",
                resource=node.id,
                status_code=status,
                conflict=status in CONFLICT_STATUSES,
                original_error=e,
            ) from e
        except (OSError, GoogleAuthError) as e:
            # Transport and credential failures never reached the API.
            raise ApplyError(
                f"set_iam_policy failed for {node.id}: {type(e).__name__}: {e}",
                resource=node.id,
                original_error=e,
            ) from e

        logger.info(f"Updated IAM policy on {node.id}")
        return ApplyResult(
            resource=node.id,
            etag=response.get("etag"),
            version=int(response.get("version", policy.version)),
        )

    def _collection(self, node: OrgNode):
        return getattr(self.clients.resource_manager, node.kind.collection)()

