"""
Configuration templates for the AWPA metrics store.

Provides pre-configured settings for different deployment scenarios and an
environment-variable overlay used by the HTTP entry point.
"""

import os
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, Optional

from .storage_interface import IMPORTED_DEVICE_PREFIX


class DeploymentProfile(Enum):
    """Deployment profiles with tuned configurations."""
    DEVELOPMENT = "development"
    PRODUCTION = "production"
    TESTING = "testing"


@dataclass
class StorageConfig:
    """Complete storage configuration."""

    # Database configuration
    db_path: str = "./data/awpa_metrics.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000

    # Live history cache
    max_history_points: int = 300
    max_network_requests: int = 100

    # Connection registry
    registry_path: str = "./data/connections.json"
    max_recent_connections: int = 10

    # Export / import
    export_batch_size: int = 100
    imported_device_prefix: str = IMPORTED_DEVICE_PREFIX

    # Service
    log_level: str = "INFO"
    service_host: str = "0.0.0.0"
    service_port: int = 8003

    @classmethod
    def from_env(cls, base: Optional["StorageConfig"] = None) -> "StorageConfig":
        """
        Build a configuration from ``AWPA_*`` environment variables.

        ``AWPA_PROFILE`` selects the base profile; the remaining variables
        override individual fields of that profile.
        """
        if base is None:
            profile_name = os.getenv("AWPA_PROFILE", DeploymentProfile.DEVELOPMENT.value)
            try:
                profile = DeploymentProfile(profile_name.lower())
            except ValueError:
                raise ValueError(
                    f"Unknown AWPA_PROFILE '{profile_name}'; expected one of "
                    f"{[p.value for p in DeploymentProfile]}"
                )
            base = get_config_for_profile(profile)

        overrides: Dict[str, Any] = {}
        if os.getenv("AWPA_DB_PATH"):
            overrides["db_path"] = os.getenv("AWPA_DB_PATH")
        if os.getenv("AWPA_REGISTRY_PATH"):
            overrides["registry_path"] = os.getenv("AWPA_REGISTRY_PATH")
        if os.getenv("AWPA_LOG_LEVEL"):
            overrides["log_level"] = os.getenv("AWPA_LOG_LEVEL").upper()
        if os.getenv("AWPA_SERVICE_PORT"):
            overrides["service_port"] = int(os.getenv("AWPA_SERVICE_PORT"))

        return customize_config(base, **overrides)


def get_development_config() -> StorageConfig:
    """Configuration for development environments."""
    return StorageConfig(
        db_path="./dev_data/awpa_metrics.db",
        registry_path="./dev_data/connections.json",
        wal_mode=True,
        log_level="DEBUG",
    )


def get_production_config() -> StorageConfig:
    """Configuration for production deployments."""
    return StorageConfig(
        db_path="./data/awpa_metrics.db",
        registry_path="./data/connections.json",
        wal_mode=True,
        busy_timeout_ms=10000,
        export_batch_size=500,
        log_level="INFO",
    )


def get_testing_config() -> StorageConfig:
    """In-memory configuration for tests; nothing touches disk but the registry."""
    return StorageConfig(
        db_path=":memory:",
        registry_path="./test_data/connections.json",
        wal_mode=False,
        busy_timeout_ms=1000,
        log_level="WARNING",
    )


def get_config_for_profile(profile: DeploymentProfile) -> StorageConfig:
    """Get configuration for a specific deployment profile."""
    config_map = {
        DeploymentProfile.DEVELOPMENT: get_development_config,
        DeploymentProfile.PRODUCTION: get_production_config,
        DeploymentProfile.TESTING: get_testing_config,
    }

    return config_map[profile]()


def customize_config(base_config: StorageConfig, **overrides) -> StorageConfig:
    """Create a customized configuration based on a base config."""
    config_dict = asdict(base_config)
    unknown = set(overrides) - set(config_dict)
    if unknown:
        raise ValueError(f"Unknown configuration fields: {sorted(unknown)}")
    config_dict.update(overrides)

    return StorageConfig(**config_dict)
