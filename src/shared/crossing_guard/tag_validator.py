"""Tag consistency gate for remediation.

Removing a foreign binding is only safe when every project involved
agrees it belongs to the same classification. The validator gathers the
origin, every project where an anomalous principal is registered, and the
home projects of granted accounts that live elsewhere in the organization
(outside the origin's ancestry). It reads each one's tag bindings and only
confirms the anomalies when all tag value sets are identical.

The same comparison flags in-organization cross-environment grants, for
example a prod service account granted on a staging project, even when
there is nothing to remove.
"""

import logging
from typing import AbstractSet, Dict, FrozenSet, Iterable, Optional

from .collaborators import TagClient
from .concurrency import Deadline, fan_out
from .errors import ValidationFailure
from .models import Directory, OrgNode, Principal, RemediationPlan

logger = logging.getLogger(__name__)


class TagConsistencyValidator:
    """Validates that implicated projects share identical classification tags."""

    def __init__(
        self,
        client: TagClient,
        max_workers: int = 10,
        deadline: Optional[Deadline] = None,
    ):
        self.client = client
        self.max_workers = max_workers
        self.deadline = deadline or Deadline()

    @staticmethod
    def implicated_projects(
        origin: OrgNode,
        anomalies: Iterable[Principal],
        directory: Directory,
        out_of_ancestry: Iterable[Principal] = (),
    ) -> FrozenSet[str]:
        """Resource names of the origin and every project registering one of the principals."""
        implicated = {origin.id}
        for principal in list(anomalies) + list(out_of_ancestry):
            for project_id in directory.projects_registering(principal):
                implicated.add(OrgNode.project(project_id).id)
        return frozenset(implicated)

    def validate(
        self,
        origin: OrgNode,
        anomalies: FrozenSet[Principal],
        directory: Directory,
        out_of_ancestry: AbstractSet[Principal] = frozenset(),
    ) -> RemediationPlan:
        """Build the remediation plan for the confirmed anomalies.

        Args:
            origin: Resource whose policy changed
            anomalies: Principals confirmed foreign to the organization
            directory: Directories consulted during detection
            out_of_ancestry: Granted accounts registered outside the origin's ancestry

        Raises:
            DeadlineExceeded: If the time budget runs out during tag lookups
        """
        implicated = self.implicated_projects(origin, anomalies, directory, out_of_ancestry)
        if not anomalies and not out_of_ancestry:
            return RemediationPlan.abstain(origin.id, "No anomalies to remediate", implicated)

        tag_values: Dict[str, FrozenSet[str]] = {}
        try:
            tag_values = self._tag_values(implicated)
            self._check(tag_values)
        except ValidationFailure as e:
            seen = {name: sorted(values) for name, values in sorted(tag_values.items())}
            if out_of_ancestry and tag_values:
                logger.warning(
                    f"Service accounts {sorted(p.identifier for p in out_of_ancestry)} granted on "
                    f"{origin.id} belong to projects with different tags: {seen}"
                )
            else:
                logger.warning(f"Tag validation failed for {origin.id}: {e}; tags per resource: {seen}")
            return RemediationPlan.abstain(origin.id, str(e), implicated, tag_values)

        logger.info(f"Tags consistent across {sorted(implicated)}")
        return RemediationPlan(
            origin_project=origin.id,
            confirmed_anomalies=anomalies,
            implicated_projects=implicated,
            tags_consistent=True,
            tag_values=tag_values,
            reason=None if anomalies else "No anomalies to remediate",
        )

    def _tag_values(self, resources: Iterable[str]) -> Dict[str, FrozenSet[str]]:
        outcomes = fan_out(
            lambda name: frozenset(self.client.list_tag_bindings(OrgNode.from_resource_name(name))),
            sorted(resources),
            max_workers=self.max_workers,
            deadline=self.deadline,
            operation="list_tag_bindings",
        )

        failed = sorted(name for name, outcome in outcomes.items() if outcome.failed)
        if failed:
            errors = "; ".join(f"{name}: {outcomes[name].error}" for name in failed)
            raise ValidationFailure(f"Tag lookup failed: {errors}", resources=failed)

        return {name: outcome.value for name, outcome in outcomes.items()}

    @staticmethod
    def _check(tag_values: Dict[str, FrozenSet[str]]) -> None:
        distinct = set(tag_values.values())
        if len(distinct) > 1:
            raise ValidationFailure(
                f"Tag values differ across {sorted(tag_values)}",
                resources=sorted(tag_values),
            )
