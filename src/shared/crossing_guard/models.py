"""Data models for cross-environment IAM binding detection.

Value types for principals, IAM policies and organization nodes, plus the
per-invocation records (directories, remediation plans, apply results)
produced while evaluating a single policy-change event.
"""

import json
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import AbstractSet, Any, Dict, FrozenSet, Iterable, List, Optional, Tuple

SERVICE_ACCOUNT_KIND = "serviceAccount"
ACTIVE_STATE = "ACTIVE"


@dataclass(frozen=True)
class Principal:
    """An IAM member such as ``serviceAccount:svc@proj.iam.gserviceaccount.com``.

    Attributes:
        kind: Member type prefix (serviceAccount, user, group, ...)
        identifier: Everything after the first colon, usually an email
    """

    kind: str
    identifier: str

    @classmethod
    def parse(cls, member: str) -> "Principal":
        """Parse an IAM member string.

        Members without a type prefix (``allUsers``) keep the whole string
        as their kind and an empty identifier.
        """
        if ":" not in member:
            return cls(kind=member, identifier="")
        kind, identifier = member.split(":", 1)
        return cls(kind=kind, identifier=identifier)

    @classmethod
    def service_account(cls, email: str) -> "Principal":
        return cls(kind=SERVICE_ACCOUNT_KIND, identifier=email)

    @property
    def member(self) -> str:
        """Render back to the IAM member string."""
        if not self.identifier:
            return self.kind
        return f"{self.kind}:{self.identifier}"

    @property
    def is_service_account(self) -> bool:
        return self.kind == SERVICE_ACCOUNT_KIND

    def __str__(self) -> str:
        return self.member


def _ordered_unique(principals: Iterable[Principal]) -> Tuple[Principal, ...]:
    seen = set()
    ordered = []
    for principal in principals:
        if principal not in seen:
            seen.add(principal)
            ordered.append(principal)
    return tuple(ordered)


@dataclass(frozen=True)
class Binding:
    """A role granted to an ordered set of members.

    Attributes:
        role: Role name, e.g. roles/viewer
        members: Members in the order the API returned them
        condition: IAM condition expression, carried verbatim
    """

    role: str
    members: Tuple[Principal, ...] = ()
    condition: Optional[Dict[str, Any]] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Binding":
        return cls(
            role=data["role"],
            members=_ordered_unique(Principal.parse(m) for m in data.get("members", [])),
            condition=data.get("condition"),
        )

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "role": self.role,
            "members": [p.member for p in self.members],
        }
        if self.condition is not None:
            result["condition"] = self.condition
        return result

    @property
    def key(self) -> Tuple[str, str]:
        """Uniqueness key of the binding within a policy."""
        condition = json.dumps(self.condition, sort_keys=True) if self.condition else ""
        return (self.role, condition)

    def without(self, principals: AbstractSet[Principal]) -> "Binding":
        """Return a copy with the given principals removed, order preserved."""
        return replace(self, members=tuple(m for m in self.members if m not in principals))


@dataclass(frozen=True)
class Policy:
    """An IAM policy as read from or written to the API.

    The etag and version pair is the optimistic-concurrency token and must
    survive every transformation of the policy.
    """

    bindings: Tuple[Binding, ...] = ()
    etag: Optional[str] = None
    version: int = 1
    audit_configs: Optional[Tuple[Dict[str, Any], ...]] = None

    def __post_init__(self):
        seen = set()
        for binding in self.bindings:
            if binding.key in seen:
                raise ValueError(f"Role {binding.role} appears more than once in policy")
            seen.add(binding.key)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Policy":
        audit_configs = data.get("auditConfigs")
        return cls(
            bindings=tuple(Binding.from_dict(b) for b in data.get("bindings", [])),
            etag=data.get("etag"),
            version=int(data.get("version", 1)),
            audit_configs=tuple(audit_configs) if audit_configs is not None else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "version": self.version,
            "bindings": [b.to_dict() for b in self.bindings],
        }
        if self.etag is not None:
            result["etag"] = self.etag
        if self.audit_configs is not None:
            result["auditConfigs"] = list(self.audit_configs)
        return result

    def members(self) -> List[Principal]:
        """All members across bindings, first occurrence order."""
        return list(_ordered_unique(m for b in self.bindings for m in b.members))


class NodeKind(Enum):
    """Kinds of nodes in the resource hierarchy."""

    ORGANIZATION = "organization"
    FOLDER = "folder"
    PROJECT = "project"

    @property
    def collection(self) -> str:
        """Resource name collection, e.g. ``folders``."""
        return f"{self.value}s"

    @classmethod
    def from_collection(cls, collection: str) -> "NodeKind":
        for kind in cls:
            if kind.collection == collection:
                return kind
        raise ValueError(f"Unknown resource collection: {collection}")


@dataclass(frozen=True)
class OrgNode:
    """A node in the organization hierarchy.

    Nodes compare and hash by resource name only, so the same node reported
    twice with different lifecycle metadata still collapses in a set.

    Attributes:
        id: Resource name (projects/my-proj, folders/123, organizations/456)
        kind: Node kind
        parent_id: Resource name of the parent, None for the organization
        state: Lifecycle state reported by the API
    """

    id: str
    kind: NodeKind
    parent_id: Optional[str] = field(default=None, compare=False)
    state: str = field(default=ACTIVE_STATE, compare=False)

    @classmethod
    def from_resource_name(
        cls,
        name: str,
        parent_id: Optional[str] = None,
        state: str = ACTIVE_STATE,
    ) -> "OrgNode":
        collection, _, short_id = name.partition("/")
        if not short_id:
            raise ValueError(f"Not a resource name: {name}")
        return cls(id=name, kind=NodeKind.from_collection(collection), parent_id=parent_id, state=state)

    @classmethod
    def project(cls, project_id: str, parent_id: Optional[str] = None, state: str = ACTIVE_STATE) -> "OrgNode":
        return cls(id=f"projects/{project_id}", kind=NodeKind.PROJECT, parent_id=parent_id, state=state)

    @classmethod
    def folder(cls, folder_id: str, parent_id: Optional[str] = None, state: str = ACTIVE_STATE) -> "OrgNode":
        return cls(id=f"folders/{folder_id}", kind=NodeKind.FOLDER, parent_id=parent_id, state=state)

    @classmethod
    def organization(cls, organization_id: str) -> "OrgNode":
        return cls(id=f"organizations/{organization_id}", kind=NodeKind.ORGANIZATION)

    @property
    def short_id(self) -> str:
        """Id without the collection prefix (the project id for projects)."""
        return self.id.split("/", 1)[1]

    @property
    def is_active(self) -> bool:
        return self.state == ACTIVE_STATE

    def __str__(self) -> str:
        return self.id


@dataclass(frozen=True)
class DirectoryEntry:
    """Service accounts registered in one project, or the failure to list them."""

    project_id: str
    principals: FrozenSet[Principal] = frozenset()
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.error is not None


@dataclass
class Directory:
    """Per-invocation mapping of project id to registered service accounts.

    Every project that was attempted has an entry, including the ones whose
    lookup failed.
    """

    entries: Dict[str, DirectoryEntry] = field(default_factory=dict)

    def add(self, entry: DirectoryEntry) -> None:
        self.entries[entry.project_id] = entry

    def merge(self, other: "Directory") -> "Directory":
        merged = Directory(entries=dict(self.entries))
        merged.entries.update(other.entries)
        return merged

    def principals(self) -> FrozenSet[Principal]:
        """Union of all successfully resolved principals."""
        result = set()
        for entry in self.entries.values():
            result.update(entry.principals)
        return frozenset(result)

    def failures(self) -> Dict[str, str]:
        return {pid: e.error for pid, e in self.entries.items() if e.failed}

    @property
    def complete(self) -> bool:
        return not any(e.failed for e in self.entries.values())

    def projects_registering(self, principal: Principal) -> FrozenSet[str]:
        """Project ids whose directory contains the principal."""
        return frozenset(pid for pid, e in self.entries.items() if principal in e.principals)

    def __contains__(self, project_id: str) -> bool:
        return project_id in self.entries

    def __len__(self) -> int:
        return len(self.entries)


@dataclass(frozen=True)
class RemediationPlan:
    """Outcome of tag validation over the confirmed anomalous principals.

    Attributes:
        origin_project: Resource name the policy change happened on
        confirmed_anomalies: Principals to remove; empty unless tags agree
        implicated_projects: Resource names whose tags were compared
        tags_consistent: Whether every implicated resource carries the same tags
        tag_values: Tag values seen per implicated resource
        reason: Why the plan abstains, if it does
    """

    origin_project: str
    confirmed_anomalies: FrozenSet[Principal] = frozenset()
    implicated_projects: FrozenSet[str] = frozenset()
    tags_consistent: bool = False
    tag_values: Dict[str, FrozenSet[str]] = field(default_factory=dict, compare=False)
    reason: Optional[str] = None

    def __post_init__(self):
        if self.confirmed_anomalies and not self.tags_consistent:
            raise ValueError("A plan with inconsistent tags cannot confirm anomalies")

    @classmethod
    def abstain(
        cls,
        origin_project: str,
        reason: str,
        implicated_projects: FrozenSet[str] = frozenset(),
        tag_values: Optional[Dict[str, FrozenSet[str]]] = None,
    ) -> "RemediationPlan":
        return cls(
            origin_project=origin_project,
            implicated_projects=implicated_projects,
            tags_consistent=False,
            tag_values=tag_values or {},
            reason=reason,
        )

    @property
    def actionable(self) -> bool:
        return self.tags_consistent and bool(self.confirmed_anomalies)

    @property
    def tags_mismatched(self) -> bool:
        """Tags were read for the implicated resources and they disagree.

        False when tag lookups failed, since nothing was compared.
        """
        return len(set(self.tag_values.values())) > 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "origin_project": self.origin_project,
            "confirmed_anomalies": sorted(p.member for p in self.confirmed_anomalies),
            "implicated_projects": sorted(self.implicated_projects),
            "tags_consistent": self.tags_consistent,
            "tags_mismatched": self.tags_mismatched,
            "tag_values": {k: sorted(v) for k, v in sorted(self.tag_values.items())},
            "reason": self.reason,
        }


@dataclass(frozen=True)
class PolicyChangeEvent:
    """A decoded SetIamPolicy notification.

    Attributes:
        resource: Node whose policy changed
        bindings_after: Bindings of the resulting policy
        bindings_before: Bindings before the change
        etag: Etag of the resulting policy
        actor: Identity that made the change (audit only)
        insert_id: Log entry insert id
        timestamp: Log entry timestamp
    """

    resource: OrgNode
    bindings_after: Tuple[Binding, ...]
    bindings_before: Tuple[Binding, ...] = ()
    etag: Optional[str] = None
    actor: Optional[str] = None
    insert_id: Optional[str] = None
    timestamp: Optional[str] = None

    def granted_members(self) -> List[Principal]:
        """Every member holding a role in the resulting policy."""
        return list(_ordered_unique(m for b in self.bindings_after for m in b.members))

    def newly_granted(self) -> List[Principal]:
        """Members that hold a role after the change but did not hold it before."""
        before = {b.key: set(b.members) for b in self.bindings_before}
        added = []
        for binding in self.bindings_after:
            previous = before.get(binding.key, set())
            added.extend(m for m in binding.members if m not in previous)
        return list(_ordered_unique(added))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resource": self.resource.id,
            "resource_kind": self.resource.kind.value,
            "actor": self.actor,
            "insert_id": self.insert_id,
            "timestamp": self.timestamp,
            "etag": self.etag,
            "newly_granted": [p.member for p in self.newly_granted()],
        }


@dataclass
class ApplyResult:
    """Result of writing a patched policy."""

    resource: str
    etag: Optional[str]
    version: int
    status: str = "applied"
    applied_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resource": self.resource,
            "etag": self.etag,
            "version": self.version,
            "status": self.status,
            "applied_at": self.applied_at.isoformat(),
        }
