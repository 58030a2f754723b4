"""Cross-environment IAM binding guard.

Detects service accounts granted access on a project, folder or
organization that are not registered anywhere in the same organization,
and builds the policy patch that removes them once every implicated
project agrees on its classification tags.
"""

from .anomaly_detector import (
    DetectionResult,
    DetectionStage,
    DetectionStatus,
    ForeignPrincipalDetector,
)
from .collaborators import HierarchyClient, PolicyClient, ServiceAccountClient, TagClient
from .concurrency import Deadline, LookupOutcome, fan_out
from .config import CrossingGuardConfig
from .directory import DirectoryResolver
from .errors import (
    ApplyError,
    CrossingGuardError,
    DeadlineExceeded,
    DecodeError,
    ResourceLookupError,
    ValidationFailure,
)
from .event_decoder import decode_event
from .hierarchy import HierarchyWalker, ProjectListing, SubtreeResult
from .models import (
    ApplyResult,
    Binding,
    Directory,
    DirectoryEntry,
    NodeKind,
    OrgNode,
    Policy,
    PolicyChangeEvent,
    Principal,
    RemediationPlan,
)
from .patch_builder import PolicyPatchBuilder
from .pipeline import CrossingGuardPipeline, PipelineOutcome, PipelineResult, PipelineStage
from .service_agents import ServiceAgentMatcher
from .tag_validator import TagConsistencyValidator

__all__ = [
    # Models
    "ApplyResult",
    "Binding",
    "Directory",
    "DirectoryEntry",
    "NodeKind",
    "OrgNode",
    "Policy",
    "PolicyChangeEvent",
    "Principal",
    "RemediationPlan",
    # Collaborators
    "HierarchyClient",
    "PolicyClient",
    "ServiceAccountClient",
    "TagClient",
    # Errors
    "ApplyError",
    "CrossingGuardError",
    "DeadlineExceeded",
    "DecodeError",
    "ResourceLookupError",
    "ValidationFailure",
    # Components
    "Deadline",
    "LookupOutcome",
    "fan_out",
    "HierarchyWalker",
    "ProjectListing",
    "SubtreeResult",
    "DirectoryResolver",
    "ServiceAgentMatcher",
    "ForeignPrincipalDetector",
    "DetectionResult",
    "DetectionStage",
    "DetectionStatus",
    "TagConsistencyValidator",
    "PolicyPatchBuilder",
    "decode_event",
    # Pipeline
    "CrossingGuardConfig",
    "CrossingGuardPipeline",
    "PipelineOutcome",
    "PipelineResult",
    "PipelineStage",
]
