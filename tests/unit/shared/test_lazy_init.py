"""
Unit tests for lazy client initialization.
"""

import threading
from unittest.mock import Mock, patch

from src.shared.utils.lazy_init import GCPDiscoveryClients, LazyClient


class TestLazyClient:
    """Tests for LazyClient."""

    def test_created_once(self):
        """The factory runs on first access only."""
        factory = Mock(return_value=object())
        client = LazyClient(factory, name="test")

        first = client.get()
        second = client.get()

        assert first is second
        factory.assert_called_once()

    def test_reset(self):
        """Reset forces a new instance on next access."""
        factory = Mock(side_effect=[object(), object()])
        client = LazyClient(factory, name="test")

        first = client.get()
        client.reset()

        assert client.get() is not first


class TestGCPDiscoveryClients:
    """Tests for GCPDiscoveryClients."""

    @patch("googleapiclient.discovery.build")
    def test_builds_with_shared_credentials(self, mock_build):
        """Services are built once per thread with the shared credential."""
        credentials = object()
        clients = GCPDiscoveryClients(credentials_factory=lambda: credentials)

        crm = clients.resource_manager
        again = clients.resource_manager

        assert crm is again
        mock_build.assert_called_once_with(
            "cloudresourcemanager", "v3", credentials=credentials, cache_discovery=False
        )

    @patch("googleapiclient.discovery.build")
    def test_separate_service_per_api(self, mock_build):
        """Resource Manager and IAM are separate services."""
        mock_build.side_effect = lambda name, version, **kwargs: Mock(name=f"{name}_{version}")
        clients = GCPDiscoveryClients(credentials_factory=object)

        assert clients.resource_manager is not clients.iam
        assert mock_build.call_count == 2

    @patch("googleapiclient.discovery.build")
    def test_one_service_per_thread(self, mock_build):
        """Worker threads never share a service object."""
        mock_build.side_effect = lambda name, version, **kwargs: Mock()
        clients = GCPDiscoveryClients(credentials_factory=object)
        seen = []

        def worker():
            seen.append(clients.iam)

        threads = [threading.Thread(target=worker) for _ in range(3)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len({id(s) for s in seen}) == 3

    @patch("googleapiclient.discovery.build")
    def test_reset(self, mock_build):
        """Reset drops this thread's services."""
        mock_build.side_effect = lambda name, version, **kwargs: Mock()
        clients = GCPDiscoveryClients(credentials_factory=object)
        first = clients.iam

        clients.reset()

        assert clients.iam is not first
