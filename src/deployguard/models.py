"""Pydantic models for the project deploy configuration.

These models provide:
1. Type-safe YAML parsing
2. Validation at the boundary (fail fast, fail loudly)
3. Per-environment resolution of shared project settings
"""

from __future__ import annotations

import re
from typing import Annotated

from pydantic import BaseModel, Field, field_validator, model_validator

from .config import VALID_ENVIRONMENT_PATTERN

DEFAULT_AWS_REGION = "us-east-1"


class TrafficShiftSettings(BaseModel):
    """Progressive rollout settings for one environment."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    enabled: bool = False
    initial_percentage: Annotated[int, Field(ge=0, le=100, alias="initialPercentage")] = 10
    increment_percentage: Annotated[int, Field(ge=1, le=100, alias="incrementPercentage")] = 25
    final_percentage: Annotated[int, Field(ge=1, le=100, alias="finalPercentage")] = 100
    interval_seconds: Annotated[int, Field(ge=0, le=3600, alias="intervalSeconds")] = 300

    # Health gate: roll back when the CDN 5xx error rate exceeds this percentage
    max_error_rate: Annotated[float, Field(ge=0, le=100, alias="maxErrorRate")] = 5.0

    @model_validator(mode="after")
    def validate_progression(self) -> TrafficShiftSettings:
        if self.initial_percentage > self.final_percentage:
            raise ValueError("initialPercentage cannot exceed finalPercentage")
        return self


class HealthCheck(BaseModel):
    """An HTTP endpoint checked after a deploy.

    A relative url is resolved against the environment's domain over https.
    """

    model_config = {"extra": "ignore", "populate_by_name": True}

    url: Annotated[str, Field(min_length=1)]
    name: str | None = None
    expected_status: Annotated[int, Field(ge=100, le=599, alias="expectedStatus")] = 200
    # Milliseconds
    timeout: Annotated[int, Field(ge=1, le=60_000)] = 5000
    search_text: str | None = Field(None, alias="searchText")

    @property
    def label(self) -> str:
        return self.name or self.url


class EnvironmentConfig(BaseModel):
    """Settings for a single deployment environment (stage)."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    domain: str | None = None
    # Stage name passed to the provisioning engine when it differs from ours
    engine_stage_name: str | None = Field(None, alias="engineStageName")
    aws_region: str | None = Field(None, alias="awsRegion")

    skip_cache_invalidation: bool = Field(False, alias="skipCacheInvalidation")
    skip_reconciliation: bool = Field(False, alias="skipReconciliation")
    skip_health_checks: bool = Field(False, alias="skipHealthChecks")
    fail_on_reconciliation_warnings: bool = Field(False, alias="failOnReconciliationWarnings")
    auto_fix: bool = Field(False, alias="autoFix")

    traffic_shift: TrafficShiftSettings = Field(
        default_factory=TrafficShiftSettings, alias="trafficShift"
    )


class ProjectConfig(BaseModel):
    """Project deploy configuration (deployguard.yaml)."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    project_name: Annotated[str, Field(min_length=1, max_length=64, alias="projectName")]
    main_domain: str | None = Field(None, alias="mainDomain")
    aws_profile: str | None = Field(None, alias="awsProfile")
    aws_region: str = Field(DEFAULT_AWS_REGION, alias="awsRegion")

    require_clean_git: bool = Field(True, alias="requireCleanGit")
    run_tests_before_deploy: bool = Field(True, alias="runTestsBeforeDeploy")
    test_command: str = Field("npm test", alias="testCommand")
    # Separate build step; engines that build as part of deploy leave this unset
    build_command: str | None = Field(None, alias="buildCommand")
    # Replaces the engine deploy invocation; called as `bash <script> <environment>`
    custom_deploy_script: str | None = Field(None, alias="customDeployScript")

    health_checks: list[HealthCheck] = Field(default_factory=list, alias="healthChecks")

    environments: dict[str, EnvironmentConfig] = Field(default_factory=dict)

    @field_validator("project_name")
    @classmethod
    def validate_project_name(cls, v: str) -> str:
        if not re.match(r"^[A-Za-z0-9][A-Za-z0-9_-]*$", v):
            raise ValueError("projectName may only contain letters, digits, '-' and '_'")
        return v

    @field_validator("environments")
    @classmethod
    def validate_environment_names(
        cls, v: dict[str, EnvironmentConfig]
    ) -> dict[str, EnvironmentConfig]:
        for name in v:
            if not re.match(VALID_ENVIRONMENT_PATTERN, name):
                raise ValueError(
                    f"environment name '{name}' must match {VALID_ENVIRONMENT_PATTERN}"
                )
        return v

    def environment(self, name: str) -> EnvironmentConfig:
        """Get settings for an environment.

        Raises:
            KeyError: If the environment is not declared.
        """
        try:
            return self.environments[name]
        except KeyError:
            declared = sorted(self.environments)
            raise KeyError(
                f"Unknown environment '{name}'. Declared environments: {declared}"
            ) from None

    def engine_stage(self, name: str) -> str:
        """Stage name passed to the provisioning engine."""
        return self.environment(name).engine_stage_name or name

    def region_for(self, name: str) -> str:
        return self.environment(name).aws_region or self.aws_region

    def domain_for(self, name: str) -> str | None:
        """Public domain of an environment.

        An explicit environment domain wins; otherwise the environment is a
        subdomain of the main domain.
        """
        env = self.environment(name)
        if env.domain:
            return env.domain
        if self.main_domain:
            return f"{name}.{self.main_domain}"
        return None
