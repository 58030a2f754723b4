"""
Unit tests for PolicyPatchBuilder.
"""

import pytest

from src.shared.crossing_guard.models import Binding, Policy, Principal, RemediationPlan
from src.shared.crossing_guard.patch_builder import PolicyPatchBuilder

A = "serviceAccount:a@p1.iam.gserviceaccount.com"
B = "serviceAccount:b@ext.iam.gserviceaccount.com"
C = "serviceAccount:c@ext.iam.gserviceaccount.com"


def make_policy(bindings, etag="BwX0001", version=1, conditions=None):
    conditions = conditions or {}
    return Policy(
        bindings=tuple(
            Binding.from_dict({"role": role, "members": members, "condition": conditions.get(role)})
            for role, members in bindings
        ),
        etag=etag,
        version=version,
    )


def make_plan(*members):
    return RemediationPlan(
        origin_project="projects/p1",
        confirmed_anomalies=frozenset(Principal.parse(m) for m in members),
        implicated_projects=frozenset({"projects/p1"}),
        tags_consistent=True,
    )


class TestBuild:
    """Tests for build."""

    def test_trims_and_drops(self):
        """Anomalies are removed, emptied bindings dropped, order preserved."""
        policy = make_policy([("roles/viewer", [A, B]), ("roles/editor", [C])])

        patched = PolicyPatchBuilder().build(policy, make_plan(B, C))

        assert [b.to_dict() for b in patched.bindings] == [{"role": "roles/viewer", "members": [A]}]

    def test_untouched_bindings_verbatim(self):
        """Bindings without anomalies are kept exactly, member order included."""
        policy = make_policy([
            ("roles/owner", ["user:z@x.com", "user:a@x.com"]),
            ("roles/viewer", [B, A]),
            ("roles/browser", ["group:ops@x.com"]),
        ])

        patched = PolicyPatchBuilder().build(policy, make_plan(B))

        assert patched.bindings[0] is policy.bindings[0]
        assert patched.bindings[2] is policy.bindings[2]
        assert [m.member for m in patched.bindings[1].members] == [A]

    def test_matches_by_identity(self):
        """Members are matched by principal, not position."""
        policy = make_policy([("roles/viewer", [C, A, B]), ("roles/editor", [B, C, A])])

        patched = PolicyPatchBuilder().build(policy, make_plan(B))

        assert [[m.member for m in b.members] for b in patched.bindings] == [[C, A], [C, A]]

    def test_same_email_other_kind_kept(self):
        """A user with the same address as a removed service account is kept."""
        user = "user:b@ext.iam.gserviceaccount.com"
        policy = make_policy([("roles/viewer", [B, user])])

        patched = PolicyPatchBuilder().build(policy, make_plan(B))

        assert [m.member for m in patched.bindings[0].members] == [user]

    def test_conditions_preserved(self):
        """Conditional bindings keep their condition after trimming."""
        condition = {"title": "t", "expression": "true"}
        policy = make_policy([("roles/viewer", [A, B])], conditions={"roles/viewer": condition})

        patched = PolicyPatchBuilder().build(policy, make_plan(B))

        assert patched.bindings[0].condition == condition

    def test_etag_carried_and_version_raised(self):
        """The etag read is kept and the version raised to the required scheme."""
        policy = make_policy([("roles/viewer", [A, B])], etag="BwXyz", version=1)

        patched = PolicyPatchBuilder(policy_version=3).build(policy, make_plan(B))

        assert patched.etag == "BwXyz"
        assert patched.version == 3

    def test_version_never_lowered(self):
        """A policy already on a newer scheme keeps it."""
        policy = make_policy([("roles/viewer", [A, B])], version=3)

        patched = PolicyPatchBuilder(policy_version=1).build(policy, make_plan(B))

        assert patched.version == 3

    def test_no_anomalies_in_policy(self):
        """A policy without the anomalies comes back unchanged."""
        policy = make_policy([("roles/viewer", [A])])

        patched = PolicyPatchBuilder().build(policy, make_plan(B))

        assert patched.bindings == policy.bindings


class TestBuildRefusals:
    """Tests for plans the builder must refuse."""

    def test_inconsistent_plan(self):
        """Abstaining plans are refused."""
        policy = make_policy([("roles/viewer", [A, B])])

        with pytest.raises(ValueError, match="tags are not consistent"):
            PolicyPatchBuilder().build(policy, RemediationPlan.abstain("projects/p1", "mismatch"))

    def test_empty_anomalies(self):
        """Plans confirming nothing are refused."""
        policy = make_policy([("roles/viewer", [A, B])])
        plan = RemediationPlan(origin_project="projects/p1", tags_consistent=True)

        with pytest.raises(ValueError, match="no confirmed anomalies"):
            PolicyPatchBuilder().build(policy, plan)

    def test_missing_etag(self):
        """Without an etag the write could overwrite unseen changes."""
        policy = make_policy([("roles/viewer", [A, B])], etag=None)

        with pytest.raises(ValueError, match="no etag"):
            PolicyPatchBuilder().build(policy, make_plan(B))


class TestRemovedMembers:
    """Tests for removed_members."""

    def test_reports_removed_per_role(self):
        """Removed members are listed under their role."""
        policy = make_policy([("roles/viewer", [A, B]), ("roles/editor", [C])])
        patched = PolicyPatchBuilder().build(policy, make_plan(B, C))

        assert PolicyPatchBuilder.removed_members(policy, patched) == {
            "roles/viewer": [B],
            "roles/editor": [C],
        }
