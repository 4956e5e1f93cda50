"""Configuration management with validation.

Constraints are enforced at configuration load time so the driver fails
before any cloud call is made.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_MAX_CONCURRENCY = 4
MIN_MAX_CONCURRENCY = 1
MAX_MAX_CONCURRENCY = 32

MAX_SPEC_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max cluster spec
MAX_USER_DATA_BYTES = 65535  # Nova limit on base64-encoded user data

# Input validation patterns
VALID_CLOUD_NAME_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,62}$"


@dataclass(frozen=True)
class Config:
    """Driver configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-render.
    """

    # Named cloud from clouds.yaml
    cloud_name: str

    # Cluster spec (YAML)
    cluster_spec_path: Path = field(default_factory=lambda: Path("/specs/cluster.yaml"))

    # Worker threads for independent tasks
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY

    # Behavior
    dry_run: bool = False
    continue_on_error: bool = True

    # Report only floating addresses when discovering instance IPs
    floating_ip_enabled: bool = True

    def __post_init__(self) -> None:
        errors: list[str] = []

        if not self.cloud_name:
            errors.append("OS_CLOUD is required")
        elif not re.match(VALID_CLOUD_NAME_PATTERN, self.cloud_name):
            errors.append(f"OS_CLOUD must match pattern {VALID_CLOUD_NAME_PATTERN}: {self.cloud_name}")

        if not (MIN_MAX_CONCURRENCY <= self.max_concurrency <= MAX_MAX_CONCURRENCY):
            errors.append(
                f"MAX_CONCURRENCY must be between {MIN_MAX_CONCURRENCY} "
                f"and {MAX_MAX_CONCURRENCY}"
            )

        if not self.cluster_spec_path.exists():
            errors.append(f"Cluster spec does not exist: {self.cluster_spec_path}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            OS_CLOUD: Cloud entry in clouds.yaml to connect to
            CLUSTER_SPEC: Path to the cluster spec YAML (default: /specs/cluster.yaml)
            MAX_CONCURRENCY: Tasks rendered in parallel (default: 4)
            DRY_RUN: If "true", only plan changes without rendering (default: false)
            CONTINUE_ON_ERROR: Keep rendering independent tasks after a failure
                (default: true)
            FLOATING_IP_ENABLED: Only report floating addresses (default: true)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        return cls(
            cloud_name=os.environ.get("OS_CLOUD", ""),
            cluster_spec_path=Path(os.environ.get("CLUSTER_SPEC", "/specs/cluster.yaml")),
            max_concurrency=get_int("MAX_CONCURRENCY", DEFAULT_MAX_CONCURRENCY),
            dry_run=get_bool("DRY_RUN", False),
            continue_on_error=get_bool("CONTINUE_ON_ERROR", True),
            floating_ip_enabled=get_bool("FLOATING_IP_ENABLED", True),
        )
