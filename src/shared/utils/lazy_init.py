"""Lazy initialization utilities for cold start optimization.

This module provides patterns for deferring expensive initialization
until first use, reducing Cloud Function cold start times.

Key patterns:
- LazyClient: Lazy initialization wrapper for SDK clients
- GCPDiscoveryClients: Per-thread discovery API clients sharing one credential
"""

import logging
import threading
from typing import Any, Callable, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')

CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"


class LazyClient(Generic[T]):
    """Lazy initialization wrapper for SDK clients.

    Defers client creation until first access, reducing cold start time.
    Thread-safe for concurrent access.

    Example:
        _publisher = LazyClient(pubsub_v1.PublisherClient, name='pubsub')

        def get_publisher():
            return _publisher.get()  # Created on first call
    """

    def __init__(self, factory: Callable[[], T], name: str = "client"):
        """Initialize lazy client wrapper.

        Args:
            factory: Callable that creates the client when invoked
            name: Name for logging purposes
        """
        self._factory = factory
        self._name = name
        self._instance: Optional[T] = None
        self._lock = threading.Lock()

    def get(self) -> T:
        """Get or create the client instance.

        Thread-safe singleton pattern.

        Returns:
            The client instance
        """
        if self._instance is None:
            with self._lock:
                # Double-check pattern
                if self._instance is None:
                    logger.debug(f"Initializing lazy client: {self._name}")
                    self._instance = self._factory()
        return self._instance

    def reset(self) -> None:
        """Reset the client instance (useful for testing)."""
        with self._lock:
            self._instance = None


class GCPDiscoveryClients:
    """Lazy-initialized discovery clients for Resource Manager and IAM.

    googleapiclient service objects wrap an httplib2 connection that is not
    thread-safe, so each worker thread gets its own service object. The
    application default credential is resolved once and shared.

    Usage:
        from src.shared.utils.lazy_init import gcp_discovery_clients

        crm = gcp_discovery_clients.resource_manager
        iam = gcp_discovery_clients.iam
    """

    def __init__(self, credentials_factory: Optional[Callable[[], Any]] = None):
        """Initialize discovery client holder.

        Args:
            credentials_factory: Returns credentials; defaults to google.auth.default
        """
        self._credentials = LazyClient(credentials_factory or self._default_credentials, name='credentials')
        self._local = threading.local()

    @staticmethod
    def _default_credentials():
        import google.auth

        credentials, _ = google.auth.default(scopes=[CLOUD_PLATFORM_SCOPE])
        return credentials

    def _service(self, name: str, version: str):
        key = f"{name}_{version}"
        service = getattr(self._local, key, None)
        if service is None:
            from googleapiclient.discovery import build

            logger.debug(f"Building discovery client {name} {version} for {threading.current_thread().name}")
            service = build(name, version, credentials=self._credentials.get(), cache_discovery=False)
            setattr(self._local, key, service)
        return service

    @property
    def resource_manager(self):
        """Get Cloud Resource Manager v3 client for this thread."""
        return self._service("cloudresourcemanager", "v3")

    @property
    def iam(self):
        """Get IAM v1 client for this thread."""
        return self._service("iam", "v1")

    def reset(self) -> None:
        """Drop cached credentials and this thread's clients (useful for testing)."""
        self._credentials.reset()
        self._local = threading.local()


# Global instance for convenience
gcp_discovery_clients = GCPDiscoveryClients()
