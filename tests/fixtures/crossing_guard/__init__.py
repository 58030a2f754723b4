"""Crossing guard test fixtures package."""

from .fake_org import ORG_ID, FakeOrganization, email, member, policy_change, sa
from .sample_entries import binding_delta, pubsub_cloud_event, set_iam_policy_entry

__all__ = [
    "ORG_ID",
    "FakeOrganization",
    "email",
    "member",
    "policy_change",
    "sa",
    "binding_delta",
    "pubsub_cloud_event",
    "set_iam_policy_entry",
]
