"""Foreign service account detection.

Starting from the service accounts granted in a policy change, candidates
are narrowed against the origin project's directory, then the projects
under its ancestors, then every project in the organization. Each step
only removes candidates; whatever survives all three is foreign to the
organization. Any lookup failure along the way makes the result
undetermined, which callers must treat as "do nothing".
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import AbstractSet, Dict, FrozenSet, List, Optional

from .directory import DirectoryResolver
from .errors import ResourceLookupError
from .hierarchy import HierarchyWalker
from .models import Directory, DirectoryEntry, NodeKind, OrgNode, PolicyChangeEvent, Principal
from .service_agents import ServiceAgentMatcher

logger = logging.getLogger(__name__)

ORGANIZATION_STEP = "organization"


class DetectionStatus(str, Enum):
    """Verdict of a detection run."""

    NO_ANOMALY = "no_anomaly"
    ANOMALOUS = "anomalous"
    UNDETERMINED = "undetermined"


class DetectionStage(str, Enum):
    """Narrowing step a detection run stopped at."""

    EXTRACT = "extract"
    ORIGIN_DIRECTORY = "origin_directory"
    ANCESTRY = "ancestry"
    ORGANIZATION = "organization"
    COMPLETE = "complete"


@dataclass
class DetectionResult:
    """Outcome of narrowing the candidate set for one event.

    Attributes:
        status: Verdict
        stage: Last step reached
        extracted: Service accounts taken from the policy change
        initial_candidates: Extracted accounts missing from the origin directory
        anomalies: Accounts found nowhere in the organization (ANOMALOUS only)
        remaining: Candidates still unresolved when the run stopped
        directory: Every directory consulted, including failed lookups
        resolved_by: Step that cleared each initial candidate
        ancestors: Ancestry chain of the origin, when fetched
        error: Why the result is undetermined
    """

    status: DetectionStatus
    stage: DetectionStage
    extracted: FrozenSet[Principal] = frozenset()
    initial_candidates: FrozenSet[Principal] = frozenset()
    anomalies: FrozenSet[Principal] = frozenset()
    remaining: FrozenSet[Principal] = frozenset()
    directory: Directory = field(default_factory=Directory)
    resolved_by: Dict[str, str] = field(default_factory=dict)
    ancestors: List[OrgNode] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def confirmed(self) -> FrozenSet[Principal]:
        """Anomalies that may be acted on; empty unless the verdict is ANOMALOUS."""
        if self.status != DetectionStatus.ANOMALOUS:
            return frozenset()
        return self.anomalies

    @property
    def out_of_ancestry(self) -> FrozenSet[Principal]:
        """Accounts registered in the organization but outside the origin's ancestry.

        These are legitimate, yet they cross from one part of the hierarchy
        into another, so their home projects are compared by tag.
        """
        return frozenset(
            Principal.parse(member) for member, step in self.resolved_by.items()
            if step == ORGANIZATION_STEP
        )

    def to_dict(self) -> Dict:
        return {
            "status": self.status.value,
            "stage": self.stage.value,
            "extracted": sorted(p.member for p in self.extracted),
            "initial_candidates": sorted(p.member for p in self.initial_candidates),
            "anomalies": sorted(p.member for p in self.confirmed),
            "remaining": sorted(p.member for p in self.remaining),
            "resolved_by": dict(sorted(self.resolved_by.items())),
            "out_of_ancestry": sorted(p.member for p in self.out_of_ancestry),
            "projects_consulted": len(self.directory),
            "lookup_failures": self.directory.failures(),
            "error": self.error,
        }


class ForeignPrincipalDetector:
    """Detects service accounts granted access from outside the organization."""

    def __init__(
        self,
        walker: HierarchyWalker,
        resolver: DirectoryResolver,
        service_agents: Optional[ServiceAgentMatcher] = None,
        organization_id: Optional[str] = None,
    ):
        """Initialize detector.

        Args:
            walker: Hierarchy walker bound to this invocation
            resolver: Directory resolver bound to this invocation
            service_agents: Matcher for Google-managed service agents
            organization_id: Organization to enumerate instead of the ancestry root
        """
        self.walker = walker
        self.resolver = resolver
        self.service_agents = service_agents or ServiceAgentMatcher()
        self.organization_id = organization_id

    def extract_principals(self, event: PolicyChangeEvent) -> FrozenSet[Principal]:
        """Service accounts granted in the resulting policy, minus service agents."""
        extracted = set()
        for principal in event.granted_members():
            if not principal.is_service_account:
                continue
            if self.service_agents.is_service_agent(principal):
                logger.debug(f"Ignoring service agent {principal.identifier}")
                continue
            extracted.add(principal)
        return frozenset(extracted)

    def detect(self, event: PolicyChangeEvent) -> DetectionResult:
        """Run the narrowing steps for one policy change."""
        origin = event.resource
        extracted = self.extract_principals(event)
        result = DetectionResult(
            status=DetectionStatus.NO_ANOMALY,
            stage=DetectionStage.EXTRACT,
            extracted=extracted,
        )
        if not extracted:
            return self._finish(result, frozenset())

        # Origin directory: folders and organizations register no service accounts.
        result.stage = DetectionStage.ORIGIN_DIRECTORY
        origin_accounts: FrozenSet[Principal] = frozenset()
        if origin.kind == NodeKind.PROJECT:
            try:
                origin_accounts = self.resolver.service_accounts_of(origin.short_id)
            except ResourceLookupError as e:
                return self._undetermined(result, extracted, str(e))
            result.directory.add(DirectoryEntry(project_id=origin.short_id, principals=origin_accounts))

        candidates = self._narrow(extracted, origin_accounts, result, "origin")
        result.initial_candidates = candidates
        if not candidates:
            return self._finish(result, candidates)

        logger.info(
            f"{len(candidates)} service account(s) granted on {origin.id} are not registered there: "
            f"{sorted(p.identifier for p in candidates)}"
        )

        # Projects under the ancestor folders of the origin.
        result.stage = DetectionStage.ANCESTRY
        try:
            ancestors = self.walker.ancestors_of(origin)
        except ResourceLookupError as e:
            return self._undetermined(result, candidates, str(e))
        result.ancestors = ancestors

        try:
            ancestor_directory = self._ancestor_directory(origin, ancestors)
        except ResourceLookupError as e:
            return self._undetermined(result, candidates, str(e))
        result.directory = result.directory.merge(ancestor_directory)

        candidates = self._narrow(candidates, ancestor_directory.principals(), result, "ancestry")
        if not candidates:
            return self._finish(result, candidates)
        if not ancestor_directory.complete:
            return self._undetermined(
                result, candidates,
                f"Service account lookup failed for {sorted(ancestor_directory.failures())}",
            )

        logger.warning(
            f"Service accounts {sorted(p.identifier for p in candidates)} were not found in any "
            f"ancestor project of {origin.id}: {sorted(ancestor_directory.entries)}"
        )

        # Every project in the organization.
        result.stage = DetectionStage.ORGANIZATION
        root = OrgNode.organization(self.organization_id) if self.organization_id else ancestors[-1]
        try:
            subtree = self.walker.subtree_of(root)
        except ResourceLookupError as e:
            return self._undetermined(result, candidates, str(e))
        if not subtree.complete:
            return self._undetermined(
                result, candidates,
                f"Hierarchy walk of {root.id} incomplete: {sorted(subtree.failures)}",
            )

        remaining_ids = subtree.project_ids() - set(result.directory.entries)
        if origin.kind == NodeKind.PROJECT:
            remaining_ids = remaining_ids - {origin.short_id}
        try:
            org_directory = self.resolver.service_accounts_of_many(remaining_ids)
        except ResourceLookupError as e:
            return self._undetermined(result, candidates, str(e))
        result.directory = result.directory.merge(org_directory)

        candidates = self._narrow(candidates, org_directory.principals(), result, ORGANIZATION_STEP)
        if candidates and not org_directory.complete:
            return self._undetermined(
                result, candidates,
                f"Service account lookup failed for {sorted(org_directory.failures())}",
            )

        result.stage = DetectionStage.COMPLETE
        return self._finish(result, candidates)

    def _ancestor_directory(self, origin: OrgNode, ancestors: List[OrgNode]) -> Directory:
        """Directories of the projects directly under the origin's folders.

        The organization root is skipped here: its direct projects are
        covered by the organization-wide step.
        """
        scopes = [a for a in ancestors if a.kind == NodeKind.FOLDER]
        project_ids = {a.short_id for a in ancestors if a.kind == NodeKind.PROJECT}

        listing = self.walker.projects_in_scopes(scopes)
        if not listing.complete:
            raise ResourceLookupError(
                f"Could not list projects under {sorted(listing.failures)}",
                operation="list_projects_in_scope",
                resource=origin.id,
            )
        project_ids |= listing.project_ids
        if origin.kind == NodeKind.PROJECT:
            project_ids.discard(origin.short_id)

        return self.resolver.service_accounts_of_many(project_ids)

    @staticmethod
    def _narrow(
        candidates: FrozenSet[Principal],
        legitimate: AbstractSet[Principal],
        result: DetectionResult,
        step: str,
    ) -> FrozenSet[Principal]:
        cleared = candidates & legitimate
        for principal in cleared:
            result.resolved_by[principal.member] = step
        return candidates - cleared

    @staticmethod
    def _finish(result: DetectionResult, candidates: FrozenSet[Principal]) -> DetectionResult:
        result.remaining = candidates
        if candidates:
            result.status = DetectionStatus.ANOMALOUS
            result.anomalies = candidates
            logger.warning(
                f"Confirmed {len(candidates)} foreign service account(s): "
                f"{sorted(p.identifier for p in candidates)}"
            )
        else:
            result.status = DetectionStatus.NO_ANOMALY
        return result

    @staticmethod
    def _undetermined(result: DetectionResult, candidates: FrozenSet[Principal], error: str) -> DetectionResult:
        result.status = DetectionStatus.UNDETERMINED
        result.remaining = candidates
        result.anomalies = frozenset()
        result.error = error
        logger.warning(f"Detection undetermined at {result.stage.value} stage: {error}")
        return result
