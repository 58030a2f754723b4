"""Resource hierarchy walker.

Builds ancestor chains and enumerates an organization's folder/project
subtree through a HierarchyClient. The subtree walk is an explicit
worklist: child lookups for discovered folders are fanned out on a bounded
pool, a visited set owned by the coordinating thread guarantees each node
is expanded once, and the walk terminates when no lookups are pending.
"""

import logging
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Optional, Set

from .collaborators import HierarchyClient
from .concurrency import Deadline, fan_out
from .errors import DeadlineExceeded, ResourceLookupError
from .models import NodeKind, OrgNode

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubtreeResult:
    """Nodes discovered under a root.

    Attributes:
        root: Node the walk started from (not included in nodes)
        nodes: Every folder and project discovered
        failures: Resource name of each node whose child lookup failed, with the error
    """

    root: OrgNode
    nodes: FrozenSet[OrgNode] = frozenset()
    failures: Dict[str, str] = field(default_factory=dict)

    @property
    def complete(self) -> bool:
        """False when any branch could not be enumerated."""
        return not self.failures

    def project_ids(self, active_only: bool = True) -> FrozenSet[str]:
        return frozenset(
            n.short_id for n in self.nodes
            if n.kind == NodeKind.PROJECT and (n.is_active or not active_only)
        )

    def folders(self) -> FrozenSet[OrgNode]:
        return frozenset(n for n in self.nodes if n.kind == NodeKind.FOLDER)


@dataclass(frozen=True)
class ProjectListing:
    """Project ids found directly under a set of scopes."""

    project_ids: FrozenSet[str] = frozenset()
    failures: Dict[str, str] = field(default_factory=dict)

    @property
    def complete(self) -> bool:
        return not self.failures


class HierarchyWalker:
    """Walks ancestry and descendants of organization nodes."""

    def __init__(
        self,
        client: HierarchyClient,
        max_workers: int = 10,
        deadline: Optional[Deadline] = None,
    ):
        """Initialize walker.

        Args:
            client: Hierarchy lookup collaborator
            max_workers: Bound on concurrent child lookups
            deadline: Invocation time budget
        """
        self.client = client
        self.max_workers = max_workers
        self.deadline = deadline or Deadline()

    def ancestors_of(self, node: OrgNode) -> List[OrgNode]:
        """Return the chain from node up to the organization, nearest first.

        The chain starts with node itself and ends with the organization.

        Raises:
            ResourceLookupError: If the chain cannot be resolved completely
        """
        self.deadline.check("get_ancestry", node.id)
        try:
            chain = list(self.client.get_ancestry(node))
        except Exception as e:
            raise ResourceLookupError.wrap("get_ancestry", node.id, e) from e

        if not chain or chain[0].id != node.id:
            chain.insert(0, node)

        seen: Set[str] = set()
        for ancestor in chain:
            if ancestor.id in seen:
                raise ResourceLookupError(
                    f"Ancestry of {node.id} revisits {ancestor.id}",
                    operation="get_ancestry",
                    resource=node.id,
                )
            seen.add(ancestor.id)

        if chain[-1].kind != NodeKind.ORGANIZATION:
            raise ResourceLookupError(
                f"Ancestry of {node.id} does not reach an organization (stops at {chain[-1].id})",
                operation="get_ancestry",
                resource=node.id,
            )

        logger.debug(f"Ancestry of {node.id}: {[a.id for a in chain]}")
        return chain

    def projects_in_scopes(self, scopes: Iterable[OrgNode], active_only: bool = True) -> ProjectListing:
        """List projects directly under each scope, concurrently."""
        outcomes = fan_out(
            lambda scope: self.client.list_projects_in_scope(scope, active_only=active_only),
            scopes,
            max_workers=self.max_workers,
            deadline=self.deadline,
            operation="list_projects_in_scope",
        )

        project_ids: Set[str] = set()
        failures: Dict[str, str] = {}
        for scope, outcome in outcomes.items():
            if outcome.failed:
                failures[scope.id] = str(outcome.error)
                logger.warning(f"Could not list projects in {scope.id}: {outcome.error}")
            else:
                project_ids.update(outcome.value)

        return ProjectListing(project_ids=frozenset(project_ids), failures=failures)

    def subtree_of(self, root: OrgNode) -> SubtreeResult:
        """Enumerate every folder and project below root.

        A failed child lookup is recorded and the remaining branches are
        still walked; the result is then marked incomplete.

        Raises:
            DeadlineExceeded: If the time budget runs out mid-walk
        """
        self.deadline.check("search_child_nodes", root.id)

        visited: FrozenSet[str] = frozenset({root.id})
        discovered: Set[OrgNode] = set()
        failures: Dict[str, str] = {}

        executor = ThreadPoolExecutor(max_workers=max(1, self.max_workers))
        pending: Dict[Future, OrgNode] = {}
        try:
            pending[executor.submit(self._children_of, root)] = root

            while pending:
                done, _ = wait(list(pending), timeout=self.deadline.remaining(), return_when=FIRST_COMPLETED)
                if not done:
                    raise DeadlineExceeded(
                        f"Time budget exhausted walking {root.id} ({len(discovered)} nodes found)",
                        operation="search_child_nodes",
                        resource=root.id,
                    )

                for future in done:
                    parent = pending.pop(future)
                    try:
                        children = future.result()
                    except DeadlineExceeded:
                        raise
                    except Exception as e:
                        failures[parent.id] = str(e)
                        logger.warning(f"Child lookup failed under {parent.id}, subtree incomplete: {e}")
                        continue

                    for child in children:
                        if child.id in visited:
                            logger.debug(f"Skipping already visited node {child.id} under {parent.id}")
                            continue
                        visited = visited | {child.id}
                        discovered.add(child)
                        if child.kind != NodeKind.PROJECT:
                            pending[executor.submit(self._children_of, child)] = child
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        logger.info(
            f"Walked {root.id}: {len(discovered)} nodes, "
            f"{len(failures)} failed branches"
        )
        return SubtreeResult(root=root, nodes=frozenset(discovered), failures=failures)

    def _children_of(self, node: OrgNode) -> List[OrgNode]:
        self.deadline.check("search_child_nodes", node.id)
        try:
            return list(self.client.search_child_nodes(node))
        except Exception as e:
            raise ResourceLookupError.wrap("search_child_nodes", node.id, e) from e
