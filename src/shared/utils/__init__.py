"""Utility modules for the crossing guard."""

from .lazy_init import (
    GCPDiscoveryClients,
    LazyClient,
    gcp_discovery_clients,
)

__all__ = [
    # Lazy initialization
    "GCPDiscoveryClients",
    "LazyClient",
    "gcp_discovery_clients",
]
