"""Recognition of Google-managed service agents.

Service agents are created by Google services inside (or on behalf of) a
project and are never listed by the project's service account API, so
they would otherwise always look foreign.
"""

import re
from typing import Iterable, List, Optional, Pattern

from .models import Principal

# Domains of per-project service agents: service-<project number>@<domain>
SERVICE_AGENT_DOMAINS = (
    "compute-system.iam.gserviceaccount.com",
    "container-engine-robot.iam.gserviceaccount.com",
    "containerregistry.iam.gserviceaccount.com",
    "dataflow-service-producer-prod.iam.gserviceaccount.com",
    "dataproc-accounts.iam.gserviceaccount.com",
    "serverless-robot-prod.iam.gserviceaccount.com",
    "gcf-admin-robot.iam.gserviceaccount.com",
    "cloudcomposer-accounts.iam.gserviceaccount.com",
    "firebase-rules.iam.gserviceaccount.com",
    "gs-project-accounts.iam.gserviceaccount.com",
    "cloud-ml.google.com.iam.gserviceaccount.com",
    "gae-api-prod.google.com.iam.gserviceaccount.com",
    "cloud-redis.iam.gserviceaccount.com",
    "cloud-tpu.iam.gserviceaccount.com",
)

DEFAULT_SERVICE_AGENT_PATTERNS = (
    # service-123@gcp-sa-pubsub.iam..., service-org-123@gcp-sa-..., service-folder-123@gcp-sa-...
    r"^service-(?:org-|folder-)?\d+@gcp-sa-[a-z0-9-]+\.iam\.gserviceaccount\.com$",
    r"^\d+@cloudservices\.gserviceaccount\.com$",
    r"^\d+@cloudbuild\.gserviceaccount\.com$",
    r"^service-\d+@(?:%s)$" % "|".join(re.escape(d) for d in SERVICE_AGENT_DOMAINS),
)


class ServiceAgentMatcher:
    """Matches service-account principals against service agent naming conventions."""

    def __init__(self, extra_patterns: Optional[Iterable[str]] = None):
        """Initialize matcher.

        Args:
            extra_patterns: Additional regular expressions matched against the account email
        """
        self.patterns: List[Pattern[str]] = [
            re.compile(p, re.IGNORECASE)
            for p in list(DEFAULT_SERVICE_AGENT_PATTERNS) + list(extra_patterns or [])
        ]

    def is_service_agent(self, principal: Principal) -> bool:
        if not principal.is_service_account:
            return False
        return any(p.match(principal.identifier) for p in self.patterns)
