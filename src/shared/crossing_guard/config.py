"""
Configuration for the cross-environment binding guard.
"""

import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import yaml


def _as_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _as_list(value: Any) -> List[str]:
    if not value:
        return []
    if isinstance(value, str):
        return [v.strip() for v in value.split(",") if v.strip()]
    return [str(v) for v in value]


@dataclass
class CrossingGuardConfig:
    """Configuration for one deployment of the guard."""

    # Remediation
    dry_run: bool = True  # Safe default
    policy_version: int = 3

    # Lookup fan-out and time budget
    max_concurrent_lookups: int = 10
    run_timeout_seconds: float = 480  # Below the 540s function timeout
    api_num_retries: int = 3

    # Hierarchy
    organization_id: Optional[str] = None
    service_agent_patterns: List[str] = field(default_factory=list)

    # Reporting
    gcp_project_id: Optional[str] = None
    alert_topic: Optional[str] = None

    @classmethod
    def from_dict(cls, config_dict: Optional[Dict[str, Any]] = None) -> "CrossingGuardConfig":
        """Create config from dictionary."""
        if not config_dict:
            return cls()

        return cls(
            dry_run=_as_bool(config_dict.get("dry_run"), True),
            policy_version=int(config_dict.get("policy_version", 3)),
            max_concurrent_lookups=int(config_dict.get("max_concurrent_lookups", 10)),
            run_timeout_seconds=float(config_dict.get("run_timeout_seconds", 480)),
            api_num_retries=int(config_dict.get("api_num_retries", 3)),
            organization_id=config_dict.get("organization_id"),
            service_agent_patterns=_as_list(config_dict.get("service_agent_patterns")),
            gcp_project_id=config_dict.get("gcp_project_id"),
            alert_topic=config_dict.get("alert_topic"),
        )

    @classmethod
    def from_file(cls, path: str) -> "CrossingGuardConfig":
        """Create config from a YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"{path} must contain a YAML mapping")
        return cls.from_dict(data)

    @classmethod
    def from_environment(cls) -> "CrossingGuardConfig":
        """Create config from environment variables.

        CROSSING_GUARD_CONFIG names an optional YAML file; environment
        variables override its values.
        """
        config_path = os.environ.get("CROSSING_GUARD_CONFIG")
        values = cls.from_file(config_path).to_dict() if config_path else {}

        env_map = {
            "dry_run": "DRY_RUN",
            "policy_version": "POLICY_VERSION",
            "max_concurrent_lookups": "MAX_CONCURRENT_LOOKUPS",
            "run_timeout_seconds": "RUN_TIMEOUT_SECONDS",
            "api_num_retries": "API_NUM_RETRIES",
            "organization_id": "ORGANIZATION_ID",
            "service_agent_patterns": "SERVICE_AGENT_PATTERNS",
            "gcp_project_id": "GCP_PROJECT_ID",
            "alert_topic": "ALERT_TOPIC",
        }
        for key, env_var in env_map.items():
            if os.environ.get(env_var):
                values[key] = os.environ[env_var]

        return cls.from_dict(values)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "dry_run": self.dry_run,
            "policy_version": self.policy_version,
            "max_concurrent_lookups": self.max_concurrent_lookups,
            "run_timeout_seconds": self.run_timeout_seconds,
            "api_num_retries": self.api_num_retries,
            "organization_id": self.organization_id,
            "service_agent_patterns": list(self.service_agent_patterns),
            "gcp_project_id": self.gcp_project_id,
            "alert_topic": self.alert_topic,
        }
