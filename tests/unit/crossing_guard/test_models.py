"""
Unit tests for crossing guard data models.
"""

import pytest

from src.shared.crossing_guard.models import (
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

from tests.fixtures.crossing_guard import email, member, sa


class TestPrincipal:
    """Tests for Principal parsing and rendering."""

    def test_parse_service_account(self):
        """Service account members split into kind and email."""
        principal = Principal.parse(member("svc", "p1"))

        assert principal.kind == "serviceAccount"
        assert principal.identifier == email("svc", "p1")
        assert principal.is_service_account

    def test_parse_member_without_prefix(self):
        """Members like allUsers keep the whole string as kind."""
        principal = Principal.parse("allUsers")

        assert principal.kind == "allUsers"
        assert principal.member == "allUsers"
        assert not principal.is_service_account

    def test_parse_deleted_member_keeps_identifier(self):
        """Only the first colon separates kind from identifier."""
        principal = Principal.parse("deleted:serviceAccount:old@p1.iam.gserviceaccount.com?uid=123")

        assert principal.kind == "deleted"
        assert principal.member == "deleted:serviceAccount:old@p1.iam.gserviceaccount.com?uid=123"

    def test_identity_equality(self):
        """Principals compare by kind and identifier."""
        assert Principal.parse(member("svc", "p1")) == sa(email("svc", "p1"))
        assert Principal.parse("user:svc@p1.iam.gserviceaccount.com") != sa(email("svc", "p1"))


class TestBinding:
    """Tests for Binding."""

    def test_from_dict_dedupes_members_in_order(self):
        """Repeated members collapse to their first occurrence."""
        binding = Binding.from_dict({"role": "roles/viewer", "members": ["user:b@x.com", "user:a@x.com", "user:b@x.com"]})

        assert [m.member for m in binding.members] == ["user:b@x.com", "user:a@x.com"]

    def test_to_dict_round_trips_condition(self):
        """Conditions are carried verbatim."""
        condition = {"title": "expires", "expression": "request.time < timestamp('2030-01-01T00:00:00Z')"}
        data = {"role": "roles/viewer", "members": ["user:a@x.com"], "condition": condition}

        assert Binding.from_dict(data).to_dict() == data

    def test_without_preserves_order(self):
        """Removing members keeps the remaining order."""
        binding = Binding.from_dict({"role": "roles/viewer", "members": ["user:a@x.com", "user:b@x.com", "user:c@x.com"]})

        trimmed = binding.without({Principal.parse("user:b@x.com")})

        assert [m.member for m in trimmed.members] == ["user:a@x.com", "user:c@x.com"]

    def test_key_distinguishes_conditions(self):
        """Same role with different conditions are distinct bindings."""
        plain = Binding(role="roles/viewer")
        conditional = Binding(role="roles/viewer", condition={"expression": "true"})

        assert plain.key != conditional.key


class TestPolicy:
    """Tests for Policy."""

    def test_from_dict(self):
        """Policy parses bindings, etag and version."""
        policy = Policy.from_dict({
            "version": 3,
            "etag": "BwX1",
            "bindings": [{"role": "roles/viewer", "members": ["user:a@x.com"]}],
        })

        assert policy.version == 3
        assert policy.etag == "BwX1"
        assert policy.bindings[0].role == "roles/viewer"

    def test_defaults_version_one(self):
        """Missing version defaults to 1."""
        assert Policy.from_dict({"etag": "BwX1"}).version == 1

    def test_duplicate_binding_rejected(self):
        """A role may only appear once per condition."""
        with pytest.raises(ValueError):
            Policy(bindings=(Binding(role="roles/viewer"), Binding(role="roles/viewer")))

    def test_to_dict_keeps_audit_configs(self):
        """Audit configs survive a round trip."""
        audit = [{"service": "allServices", "auditLogConfigs": [{"logType": "DATA_READ"}]}]
        policy = Policy.from_dict({"etag": "BwX1", "auditConfigs": audit, "bindings": []})

        assert policy.to_dict()["auditConfigs"] == audit


class TestOrgNode:
    """Tests for OrgNode."""

    def test_from_resource_name(self):
        """Resource names map to node kinds."""
        assert OrgNode.from_resource_name("folders/123").kind == NodeKind.FOLDER
        assert OrgNode.from_resource_name("organizations/1").kind == NodeKind.ORGANIZATION
        assert OrgNode.from_resource_name("projects/p1").short_id == "p1"

    def test_from_resource_name_invalid(self):
        """Unknown collections and bare ids are rejected."""
        with pytest.raises(ValueError):
            OrgNode.from_resource_name("buckets/b1")
        with pytest.raises(ValueError):
            OrgNode.from_resource_name("p1")

    def test_equality_ignores_metadata(self):
        """Nodes compare by resource name only."""
        active = OrgNode.project("p1", parent_id="folders/1")
        deleted = OrgNode.project("p1", state="DELETE_REQUESTED")

        assert active == deleted
        assert len({active, deleted}) == 1
        assert not deleted.is_active


class TestDirectory:
    """Tests for Directory."""

    def test_failed_entries_tracked(self):
        """Failed lookups stay in the directory with an error."""
        directory = Directory()
        directory.add(DirectoryEntry(project_id="p1", principals=frozenset({sa(email("a", "p1"))})))
        directory.add(DirectoryEntry(project_id="p2", error="HTTP 403"))

        assert "p2" in directory
        assert len(directory) == 2
        assert not directory.complete
        assert directory.failures() == {"p2": "HTTP 403"}
        assert directory.principals() == frozenset({sa(email("a", "p1"))})

    def test_projects_registering(self):
        """Registrations are looked up by principal."""
        directory = Directory()
        directory.add(DirectoryEntry(project_id="p1", principals=frozenset({sa(email("a", "p1"))})))
        directory.add(DirectoryEntry(project_id="p2", principals=frozenset({sa(email("b", "p2"))})))

        assert directory.projects_registering(sa(email("b", "p2"))) == frozenset({"p2"})
        assert directory.projects_registering(sa(email("z", "p9"))) == frozenset()

    def test_merge_does_not_mutate(self):
        """Merging produces a new directory."""
        left = Directory()
        left.add(DirectoryEntry(project_id="p1"))
        right = Directory()
        right.add(DirectoryEntry(project_id="p2"))

        merged = left.merge(right)

        assert set(merged.entries) == {"p1", "p2"}
        assert set(left.entries) == {"p1"}


class TestRemediationPlan:
    """Tests for RemediationPlan."""

    def test_inconsistent_plan_cannot_confirm(self):
        """Confirmed anomalies require consistent tags."""
        with pytest.raises(ValueError):
            RemediationPlan(
                origin_project="projects/p1",
                confirmed_anomalies=frozenset({sa(email("x", "ext"))}),
                tags_consistent=False,
            )

    def test_abstain(self):
        """Abstaining plans carry a reason and confirm nothing."""
        plan = RemediationPlan.abstain("projects/p1", "Tag values differ")

        assert not plan.actionable
        assert plan.confirmed_anomalies == frozenset()
        assert plan.to_dict()["reason"] == "Tag values differ"
        assert not plan.tags_mismatched

    def test_tags_mismatched(self):
        """Disagreeing tag reads are reported as a mismatch."""
        plan = RemediationPlan.abstain(
            "projects/p1",
            "Tag values differ",
            frozenset({"projects/p1", "projects/p2"}),
            {"projects/p1": frozenset({"tagValues/prod"}), "projects/p2": frozenset({"tagValues/staging"})},
        )

        assert plan.tags_mismatched
        assert plan.to_dict()["tags_mismatched"] is True


class TestPolicyChangeEvent:
    """Tests for PolicyChangeEvent."""

    def test_newly_granted(self):
        """Only members absent from the same binding before the change are new."""
        node = OrgNode.project("p1")
        event = PolicyChangeEvent(
            resource=node,
            bindings_after=(Binding.from_dict({"role": "roles/viewer", "members": ["user:a@x.com", member("x", "ext")]}),),
            bindings_before=(Binding.from_dict({"role": "roles/viewer", "members": ["user:a@x.com"]}),),
        )

        assert event.newly_granted() == [Principal.parse(member("x", "ext"))]
        assert len(event.granted_members()) == 2
