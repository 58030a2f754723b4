"""
Crossing Guard - Root Test Configuration

Pytest fixtures and configuration for all tests.
"""

import sys
from pathlib import Path

# Add src directory to Python path for imports
ROOT_DIR = Path(__file__).parent.parent
SRC_DIR = ROOT_DIR / 'src'
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

import pytest

# Test data directory
FIXTURES_DIR = Path(__file__).parent / 'fixtures'


@pytest.fixture(autouse=True)
def crossing_guard_env(monkeypatch):
    """Clear environment variables read by CrossingGuardConfig.from_environment."""
    for var in (
        "CROSSING_GUARD_CONFIG",
        "DRY_RUN",
        "POLICY_VERSION",
        "MAX_CONCURRENT_LOOKUPS",
        "RUN_TIMEOUT_SECONDS",
        "API_NUM_RETRIES",
        "ORGANIZATION_ID",
        "SERVICE_AGENT_PATTERNS",
        "GCP_PROJECT_ID",
        "ALERT_TOPIC",
    ):
        monkeypatch.delenv(var, raising=False)

