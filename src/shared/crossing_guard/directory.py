"""Directory resolver: which service accounts are registered in which project."""

import logging
from typing import Dict, FrozenSet, Iterable, Optional

from .collaborators import ServiceAccountClient
from .concurrency import Deadline, fan_out
from .errors import ResourceLookupError
from .models import Directory, DirectoryEntry, Principal

logger = logging.getLogger(__name__)


class DirectoryResolver:
    """Resolves project service-account directories for one invocation.

    Successful lookups are memoized for the lifetime of the resolver, so a
    project listed both as an ancestor project and as an organization
    project is only queried once. Failed lookups are not memoized.
    """

    def __init__(
        self,
        client: ServiceAccountClient,
        max_workers: int = 10,
        deadline: Optional[Deadline] = None,
    ):
        self.client = client
        self.max_workers = max_workers
        self.deadline = deadline or Deadline()
        self._resolved: Dict[str, FrozenSet[Principal]] = {}

    def service_accounts_of(self, project_id: str) -> FrozenSet[Principal]:
        """Return every service account registered in the project.

        Raises:
            ResourceLookupError: If the project is unreachable or the IAM API is disabled
        """
        if project_id in self._resolved:
            return self._resolved[project_id]

        self.deadline.check("list_service_accounts", project_id)
        try:
            principals = frozenset(
                p for p in self.client.list_service_accounts(project_id) if p.is_service_account
            )
        except Exception as e:
            raise ResourceLookupError.wrap("list_service_accounts", f"projects/{project_id}", e) from e

        logger.debug(f"projects/{project_id} has {len(principals)} service accounts")
        self._resolved[project_id] = principals
        return principals

    def service_accounts_of_many(self, project_ids: Iterable[str]) -> Directory:
        """Resolve many projects concurrently.

        Every input id gets an entry; a failed lookup yields an empty
        principal set with the error recorded.

        Raises:
            DeadlineExceeded: If the time budget runs out mid-lookup
        """
        outcomes = fan_out(
            self.service_accounts_of,
            project_ids,
            max_workers=self.max_workers,
            deadline=self.deadline,
            operation="list_service_accounts",
        )

        directory = Directory()
        for project_id, outcome in outcomes.items():
            if outcome.failed:
                logger.warning(f"Service account lookup failed for projects/{project_id}: {outcome.error}")
                directory.add(DirectoryEntry(project_id=project_id, error=str(outcome.error)))
            else:
                directory.add(DirectoryEntry(project_id=project_id, principals=outcome.value))

        return directory
