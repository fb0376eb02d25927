"""Configuration management with validation.

Operator-level settings (timeouts, lock TTL, engine command) come from the
environment. Per-project settings (stages, domains, rollout) live in the
project file and are loaded by project_loader.
"""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_LOCK_DURATION_MINUTES = 120
MIN_LOCK_DURATION_MINUTES = 1
MAX_LOCK_DURATION_MINUTES = 24 * 60

DEFAULT_STATE_CACHE_TTL_SECONDS = 300
MAX_STATE_CACHE_TTL_SECONDS = 3600

DEFAULT_AWS_COMMAND_TIMEOUT_SECONDS = 30
DEFAULT_AWS_MUTATION_TIMEOUT_SECONDS = 60
DEFAULT_DEPLOY_TIMEOUT_SECONDS = 900
DEFAULT_BUILD_TIMEOUT_SECONDS = 600
DEFAULT_ENGINE_STATUS_TIMEOUT_SECONDS = 30

MAX_AWS_RETRIES = 3
RETRY_BACKOFF_BASE_SECONDS = 1
MAX_RETRY_BACKOFF_SECONDS = 30

# File size limits
MAX_PROJECT_FILE_SIZE_BYTES = 256 * 1024
MAX_INFRA_CONFIG_SIZE_BYTES = 1024 * 1024

DEFAULT_PROJECT_FILE = "deployguard.yaml"
DEFAULT_INFRA_CONFIG_FILE = "sst.config.ts"
DEFAULT_ENGINE_COMMAND = ("npx", "sst")

# Lock file name prefix; the environment name is appended
LOCK_FILE_PREFIX = ".deployment-lock-"

# Valid environment names are used in file names and CLI arguments
VALID_ENVIRONMENT_PATTERN = r"^[a-z0-9][a-z0-9-]{0,62}$"


@dataclass(frozen=True)
class Config:
    """Operator configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    project_root: Path = field(default_factory=Path.cwd)
    project_file: str = DEFAULT_PROJECT_FILE
    infra_config_file: str = DEFAULT_INFRA_CONFIG_FILE

    # Provisioning engine invocation, e.g. ("npx", "sst")
    engine_command: tuple[str, ...] = DEFAULT_ENGINE_COMMAND

    # Timing
    lock_duration_minutes: int = DEFAULT_LOCK_DURATION_MINUTES
    state_cache_ttl_seconds: int = DEFAULT_STATE_CACHE_TTL_SECONDS
    aws_command_timeout_seconds: int = DEFAULT_AWS_COMMAND_TIMEOUT_SECONDS
    aws_mutation_timeout_seconds: int = DEFAULT_AWS_MUTATION_TIMEOUT_SECONDS
    deploy_timeout_seconds: int = DEFAULT_DEPLOY_TIMEOUT_SECONDS
    build_timeout_seconds: int = DEFAULT_BUILD_TIMEOUT_SECONDS

    max_aws_retries: int = MAX_AWS_RETRIES

    # Behavior
    dry_run: bool = False

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.project_root.is_dir():
            errors.append(f"Project root does not exist: {self.project_root}")

        if not self.engine_command:
            errors.append("ENGINE_COMMAND must not be empty")

        if not (
            MIN_LOCK_DURATION_MINUTES <= self.lock_duration_minutes <= MAX_LOCK_DURATION_MINUTES
        ):
            errors.append(
                f"LOCK_DURATION_MINUTES must be between {MIN_LOCK_DURATION_MINUTES} "
                f"and {MAX_LOCK_DURATION_MINUTES}"
            )

        if not (0 <= self.state_cache_ttl_seconds <= MAX_STATE_CACHE_TTL_SECONDS):
            errors.append(
                f"STATE_CACHE_TTL_SECONDS must be between 0 and {MAX_STATE_CACHE_TTL_SECONDS}"
            )

        for name, value in (
            ("AWS_COMMAND_TIMEOUT", self.aws_command_timeout_seconds),
            ("AWS_MUTATION_TIMEOUT", self.aws_mutation_timeout_seconds),
            ("DEPLOY_TIMEOUT", self.deploy_timeout_seconds),
            ("BUILD_TIMEOUT", self.build_timeout_seconds),
        ):
            if value < 1:
                errors.append(f"{name} must be at least 1 second")

        if self.max_aws_retries < 1:
            errors.append("MAX_AWS_RETRIES must be at least 1")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def project_file_path(self) -> Path:
        return self.project_root / self.project_file

    @property
    def infra_config_path(self) -> Path:
        return self.project_root / self.infra_config_file

    def lock_file_path(self, environment: str) -> Path:
        """Path of the deployment lock file for an environment."""
        return self.project_root / f"{LOCK_FILE_PREFIX}{environment}"

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            DEPLOYGUARD_PROJECT_ROOT: Project directory (default: cwd)
            DEPLOYGUARD_PROJECT_FILE: Project file name (default: deployguard.yaml)
            INFRA_CONFIG_FILE: Infrastructure config file (default: sst.config.ts)
            ENGINE_COMMAND: Provisioning engine command line (default: "npx sst")
            LOCK_DURATION_MINUTES: Deployment lock TTL (default: 120)
            STATE_CACHE_TTL_SECONDS: Observed state cache TTL (default: 300)
            AWS_COMMAND_TIMEOUT: Timeout for AWS queries in seconds (default: 30)
            AWS_MUTATION_TIMEOUT: Timeout for AWS mutations in seconds (default: 60)
            DEPLOY_TIMEOUT: Timeout for engine deploys in seconds (default: 900)
            BUILD_TIMEOUT: Timeout for builds in seconds (default: 600)
            MAX_AWS_RETRIES: Attempts for throttled AWS calls (default: 3)
            DRY_RUN: If "true", report fixes without applying them (default: false)
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

        engine = os.environ.get("ENGINE_COMMAND")
        engine_command = tuple(shlex.split(engine)) if engine else DEFAULT_ENGINE_COMMAND

        root = os.environ.get("DEPLOYGUARD_PROJECT_ROOT")

        return cls(
            project_root=Path(root) if root else Path.cwd(),
            project_file=os.environ.get("DEPLOYGUARD_PROJECT_FILE", DEFAULT_PROJECT_FILE),
            infra_config_file=os.environ.get("INFRA_CONFIG_FILE", DEFAULT_INFRA_CONFIG_FILE),
            engine_command=engine_command,
            lock_duration_minutes=get_int("LOCK_DURATION_MINUTES", DEFAULT_LOCK_DURATION_MINUTES),
            state_cache_ttl_seconds=get_int(
                "STATE_CACHE_TTL_SECONDS", DEFAULT_STATE_CACHE_TTL_SECONDS
            ),
            aws_command_timeout_seconds=get_int(
                "AWS_COMMAND_TIMEOUT", DEFAULT_AWS_COMMAND_TIMEOUT_SECONDS
            ),
            aws_mutation_timeout_seconds=get_int(
                "AWS_MUTATION_TIMEOUT", DEFAULT_AWS_MUTATION_TIMEOUT_SECONDS
            ),
            deploy_timeout_seconds=get_int("DEPLOY_TIMEOUT", DEFAULT_DEPLOY_TIMEOUT_SECONDS),
            build_timeout_seconds=get_int("BUILD_TIMEOUT", DEFAULT_BUILD_TIMEOUT_SECONDS),
            max_aws_retries=get_int("MAX_AWS_RETRIES", MAX_AWS_RETRIES),
            dry_run=get_bool("DRY_RUN", False),
        )
