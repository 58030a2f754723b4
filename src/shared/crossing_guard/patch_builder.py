"""Builds the policy that removes confirmed foreign principals."""

import logging
from dataclasses import replace
from typing import Dict, List

from .models import Binding, Policy, RemediationPlan

logger = logging.getLogger(__name__)

# IAM policy schema version that supports conditional bindings.
DEFAULT_POLICY_VERSION = 3


class PolicyPatchBuilder:
    """Removes confirmed anomalies from a policy, matching members by identity.

    Bindings that lose every member are dropped; every other binding keeps
    its members in their original order. The etag read with the policy is
    carried forward so the write fails on a concurrent modification.
    """

    def __init__(self, policy_version: int = DEFAULT_POLICY_VERSION):
        self.policy_version = policy_version

    def build(self, policy: Policy, plan: RemediationPlan) -> Policy:
        """Return the candidate next policy.

        Raises:
            ValueError: If the plan is not actionable or the policy has no etag
        """
        if not plan.tags_consistent:
            raise ValueError(f"Refusing to patch {plan.origin_project}: tags are not consistent")
        if not plan.confirmed_anomalies:
            raise ValueError(f"Refusing to patch {plan.origin_project}: no confirmed anomalies")
        if not policy.etag:
            raise ValueError(f"Refusing to patch {plan.origin_project}: policy has no etag")

        anomalies = plan.confirmed_anomalies
        bindings: List[Binding] = []
        for binding in policy.bindings:
            if not any(member in anomalies for member in binding.members):
                bindings.append(binding)
                continue

            trimmed = binding.without(anomalies)
            if trimmed.members:
                bindings.append(trimmed)
            else:
                logger.info(f"Dropping {binding.role} from {plan.origin_project}: no members left")

        return replace(
            policy,
            bindings=tuple(bindings),
            version=max(policy.version, self.policy_version),
        )

    @staticmethod
    def removed_members(before: Policy, after: Policy) -> Dict[str, List[str]]:
        """Members present in before but not after, per role."""
        remaining = {b.key: set(b.members) for b in after.bindings}
        removed: Dict[str, List[str]] = {}
        for binding in before.bindings:
            kept = remaining.get(binding.key, set())
            gone = [m.member for m in binding.members if m not in kept]
            if gone:
                removed.setdefault(binding.role, []).extend(gone)
        return removed
