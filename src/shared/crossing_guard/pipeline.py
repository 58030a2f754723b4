"""Detection-to-remediation pipeline for one policy-change event.

Decodes the event, narrows the granted service accounts down to the ones
foreign to the organization, gates on tag consistency, builds the patched
policy and hands it to the policy collaborator. Every run either removes
confirmed anomalies or abstains; lookup failures, tag disagreement and an
exhausted time budget all abstain. Grants of accounts that belong to a
differently tagged part of the organization are reported, never removed.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Union

from .anomaly_detector import DetectionResult, DetectionStatus, ForeignPrincipalDetector
from .collaborators import HierarchyClient, PolicyClient, ServiceAccountClient, TagClient
from .concurrency import Deadline
from .config import CrossingGuardConfig
from .directory import DirectoryResolver
from .errors import ApplyError, DecodeError, ResourceLookupError
from .event_decoder import decode_event
from .hierarchy import HierarchyWalker
from .models import ApplyResult, Policy, PolicyChangeEvent, RemediationPlan
from .patch_builder import PolicyPatchBuilder
from .service_agents import ServiceAgentMatcher
from .tag_validator import TagConsistencyValidator

logger = logging.getLogger(__name__)


class PipelineOutcome(str, Enum):
    """Final outcome of a pipeline run."""

    DECODE_ERROR = "decode_error"
    NO_ANOMALY = "no_anomaly"
    CROSS_ENVIRONMENT = "cross_environment"
    UNDETERMINED = "undetermined"
    TAG_MISMATCH = "tag_mismatch"
    DRY_RUN = "dry_run"
    REMEDIATED = "remediated"
    APPLY_FAILED = "apply_failed"


class PipelineStage(str, Enum):
    """Stage a pipeline run ended in."""

    DECODE = "decode"
    DETECTION = "detection"
    TAG_VALIDATION = "tag_validation"
    PATCH = "patch"
    APPLY = "apply"
    COMPLETE = "complete"


@dataclass
class PipelineResult:
    """Everything observable about one run."""

    outcome: PipelineOutcome
    stage: PipelineStage
    event: Optional[PolicyChangeEvent] = None
    detection: Optional[DetectionResult] = None
    plan: Optional[RemediationPlan] = None
    original_policy: Optional[Policy] = None
    patched_policy: Optional[Policy] = None
    apply_result: Optional[ApplyResult] = None
    error: Optional[str] = None
    apply_error: Optional[ApplyError] = field(default=None, repr=False)

    @property
    def resource(self) -> Optional[str]:
        return self.event.resource.id if self.event else None

    def raise_for_apply(self) -> None:
        """Re-raise the apply failure so the caller can retry from scratch."""
        if self.apply_error is not None:
            raise self.apply_error

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "outcome": self.outcome.value,
            "stage": self.stage.value,
            "resource": self.resource,
            "error": self.error,
            "event": self.event.to_dict() if self.event else None,
            "detection": self.detection.to_dict() if self.detection else None,
            "plan": self.plan.to_dict() if self.plan else None,
            "apply_result": self.apply_result.to_dict() if self.apply_result else None,
        }
        if self.original_policy and self.patched_policy:
            result["removed_members"] = PolicyPatchBuilder.removed_members(
                self.original_policy, self.patched_policy
            )
        return result


class CrossingGuardPipeline:
    """Runs detection and remediation for policy-change events.

    The pipeline object holds only collaborators and configuration; every
    walker, resolver, directory and plan is created per run.
    """

    def __init__(
        self,
        hierarchy_client: HierarchyClient,
        service_account_client: ServiceAccountClient,
        tag_client: TagClient,
        policy_client: PolicyClient,
        config: Optional[CrossingGuardConfig] = None,
    ):
        """Initialize pipeline.

        Args:
            hierarchy_client: Ancestry and subtree lookups
            service_account_client: Per-project service account listing
            tag_client: Tag binding lookups
            policy_client: IAM policy read and write
            config: Pipeline configuration
        """
        self.hierarchy_client = hierarchy_client
        self.service_account_client = service_account_client
        self.tag_client = tag_client
        self.policy_client = policy_client
        self.config = config or CrossingGuardConfig()
        self.service_agents = ServiceAgentMatcher(self.config.service_agent_patterns)
        self.patch_builder = PolicyPatchBuilder(policy_version=self.config.policy_version)

    def run(self, raw: Union[bytes, str, Dict[str, Any]]) -> PipelineResult:
        """Decode a raw notification and process it."""
        try:
            event = decode_event(raw)
        except DecodeError as e:
            logger.info(f"Ignoring undecodable policy-change notification: {e}")
            return PipelineResult(outcome=PipelineOutcome.DECODE_ERROR, stage=PipelineStage.DECODE, error=str(e))

        return self.run_event(event)

    def run_event(self, event: PolicyChangeEvent) -> PipelineResult:
        """Process one decoded policy change."""
        origin = event.resource
        logger.info(f"Evaluating SetIamPolicy on {origin.id} by {event.actor or 'unknown actor'}")

        deadline = Deadline(self.config.run_timeout_seconds)
        workers = self.config.max_concurrent_lookups
        detector = ForeignPrincipalDetector(
            walker=HierarchyWalker(self.hierarchy_client, max_workers=workers, deadline=deadline),
            resolver=DirectoryResolver(self.service_account_client, max_workers=workers, deadline=deadline),
            service_agents=self.service_agents,
            organization_id=self.config.organization_id,
        )
        validator = TagConsistencyValidator(self.tag_client, max_workers=workers, deadline=deadline)

        # Detection
        detection = detector.detect(event)
        result = PipelineResult(
            outcome=PipelineOutcome.NO_ANOMALY,
            stage=PipelineStage.DETECTION,
            event=event,
            detection=detection,
        )
        if detection.status == DetectionStatus.UNDETERMINED:
            result.plan = RemediationPlan.abstain(origin.id, detection.error or "Detection undetermined")
            return self._abstain(result, PipelineOutcome.UNDETERMINED, detection.error)
        if detection.status == DetectionStatus.NO_ANOMALY and not detection.out_of_ancestry:
            logger.info(f"No foreign service accounts on {origin.id}")
            return self._done(result)

        # Tag validation, over the anomalies and any accounts from outside the ancestry
        result.stage = PipelineStage.TAG_VALIDATION
        try:
            plan = validator.validate(origin, detection.confirmed, detection.directory, detection.out_of_ancestry)
        except ResourceLookupError as e:
            result.plan = RemediationPlan.abstain(origin.id, str(e))
            return self._abstain(result, PipelineOutcome.UNDETERMINED, str(e))
        result.plan = plan

        if detection.status == DetectionStatus.NO_ANOMALY:
            if plan.tags_mismatched:
                result.outcome = PipelineOutcome.CROSS_ENVIRONMENT
            if not plan.tags_consistent:
                result.error = plan.reason
            logger.info(f"No foreign service accounts on {origin.id} ({result.outcome.value})")
            return self._done(result)
        if not plan.actionable:
            return self._abstain(result, PipelineOutcome.TAG_MISMATCH, plan.reason)

        # Patch against a freshly read policy
        result.stage = PipelineStage.PATCH
        try:
            policy = self.policy_client.get_policy(origin)
        except Exception as e:
            error = ResourceLookupError.wrap("get_policy", origin.id, e)
            return self._abstain(result, PipelineOutcome.UNDETERMINED, str(error))
        result.original_policy = policy

        try:
            patched = self.patch_builder.build(policy, plan)
        except ValueError as e:
            return self._abstain(result, PipelineOutcome.UNDETERMINED, str(e))

        if patched.bindings == policy.bindings:
            logger.info(f"Policy on {origin.id} no longer grants {sorted(p.member for p in plan.confirmed_anomalies)}")
            return self._done(result)
        result.patched_policy = patched

        if self.config.dry_run:
            result.outcome = PipelineOutcome.DRY_RUN
            logger.info(
                f"[DRY RUN] Would remove {PolicyPatchBuilder.removed_members(policy, patched)} from {origin.id}"
            )
            return self._done(result)

        # Apply
        result.stage = PipelineStage.APPLY
        try:
            result.apply_result = self.policy_client.apply_policy(origin, patched)
        except Exception as e:
            error = ApplyError.wrap(origin.id, e)
            result.outcome = PipelineOutcome.APPLY_FAILED
            result.error = str(error)
            result.apply_error = error
            logger.error(
                f"Failed to apply patched policy on {origin.id} at {result.stage.value} stage "
                f"(conflict={error.conflict}, status={error.status_code}): {error}"
            )
            return result

        result.outcome = PipelineOutcome.REMEDIATED
        logger.info(
            f"Removed {PolicyPatchBuilder.removed_members(policy, patched)} from {origin.id}, "
            f"new etag {result.apply_result.etag}"
        )
        return self._done(result)

    @staticmethod
    def _done(result: PipelineResult) -> PipelineResult:
        result.stage = PipelineStage.COMPLETE
        return result

    @staticmethod
    def _abstain(result: PipelineResult, outcome: PipelineOutcome, error: Optional[str]) -> PipelineResult:
        result.outcome = outcome
        result.error = error
        logger.warning(
            f"Abstaining on {result.resource} at {result.stage.value} stage ({outcome.value}): {error}"
        )
        return result
