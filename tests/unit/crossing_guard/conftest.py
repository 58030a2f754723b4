"""Fixtures for crossing guard unit tests."""

import pytest

from src.shared.crossing_guard.concurrency import Deadline
from src.shared.crossing_guard.config import CrossingGuardConfig
from src.shared.crossing_guard.directory import DirectoryResolver
from src.shared.crossing_guard.hierarchy import HierarchyWalker
from src.shared.crossing_guard.anomaly_detector import ForeignPrincipalDetector
from src.shared.crossing_guard.pipeline import CrossingGuardPipeline

from tests.fixtures.crossing_guard import FakeOrganization, email


@pytest.fixture
def org():
    """A small organization.

    organizations/100
    ├── folders/10 (prod)
    │   ├── p1    svc-a@p1
    │   ├── p0    svc-shared@p0
    │   └── folders/11
    │       └── p3    svc-deep@p3
    ├── folders/20 (staging)
    │   ├── p2    svc-x@p2
    │   └── p8    svc-ghost@p8 (DELETE_REQUESTED)
    └── p9    svc-root@p9
    """
    fake = FakeOrganization()
    prod = fake.add_folder("10")
    staging = fake.add_folder("20")
    nested = fake.add_folder("11", parent=prod)

    fake.add_project("p1", parent=prod, service_accounts=[email("svc-a", "p1")], tags=["tagValues/prod"])
    fake.add_project("p0", parent=prod, service_accounts=[email("svc-shared", "p0")], tags=["tagValues/prod"])
    fake.add_project("p3", parent=nested, service_accounts=[email("svc-deep", "p3")], tags=["tagValues/prod"])
    fake.add_project("p2", parent=staging, service_accounts=[email("svc-x", "p2")], tags=["tagValues/staging"])
    fake.add_project(
        "p8", parent=staging, service_accounts=[email("svc-ghost", "p8")], state="DELETE_REQUESTED"
    )
    fake.add_project("p9", service_accounts=[email("svc-root", "p9")], tags=["tagValues/prod"])
    return fake


@pytest.fixture
def p1(org):
    return org.nodes["projects/p1"]


@pytest.fixture
def detector_for():
    """Build a detector wired to a fake organization."""
    def build(fake, deadline=None, max_workers=4, organization_id=None):
        deadline = deadline or Deadline()
        return ForeignPrincipalDetector(
            walker=HierarchyWalker(fake, max_workers=max_workers, deadline=deadline),
            resolver=DirectoryResolver(fake, max_workers=max_workers, deadline=deadline),
            organization_id=organization_id,
        )
    return build


@pytest.fixture
def pipeline_for():
    """Build a pipeline wired to a fake organization."""
    def build(fake, **config):
        config.setdefault("dry_run", False)
        config.setdefault("max_concurrent_lookups", 4)
        return CrossingGuardPipeline(
            hierarchy_client=fake,
            service_account_client=fake,
            tag_client=fake,
            policy_client=fake,
            config=CrossingGuardConfig.from_dict(config),
        )
    return build
