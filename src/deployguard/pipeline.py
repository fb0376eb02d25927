"""Staged deployment pipeline.

Composes the lock manager, pre-flight checks, provisioning engine,
reconciler and traffic shift controller into one sequential run:

    engine lock clean -> pre-flight -> acquire lock -> build/deploy
        -> reconciliation -> progressive rollout -> health checks
        -> cache/audit -> release

FAILURE OUTCOMES:
Every stage failure is classified as a StageOutcome:
- clean-fail: nothing was mutated (pre-flight, lock conflict, reconciliation
  warnings). A lock taken by this run is released.
- dirty-fail: infrastructure may be half-changed (build, deploy, rollout
  rollback, failed health checks, anything unclassified after the lock was
  taken). The lock is retained until an operator runs `deployguard recover`.

Cache invalidation failures are logged and never fail a run.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .audit import DeploymentAuditLogger, get_audit_logger
from .certificates import AcmCertificateManager
from .cloud import AWS_ERRORS, CloudControlPlane, classify_aws_error
from .config import Config
from .engine import EngineError, ProvisioningEngine, extract_distribution_id
from .health import HealthCheckError, HealthCheckResult, HttpHealthChecker
from .locks import (
    RECOVER_COMMAND,
    DeploymentLock,
    LockError,
    LockManager,
    LockStatus,
)
from .models import EnvironmentConfig, ProjectConfig, TrafficShiftSettings
from .observed_state import ObservedState, ObservedStateCache
from .preflight import CheckResult, CheckStatus, PreflightChecks, PreflightError
from .reconciler import FixResult, Reconciler, ValidationIssue, ValidationReport
from .rollout import CloudWatchHealthGate, KvsTrafficRouter, ProgressiveRollout, RolloutError
from .traffic import CloudFrontTrafficShifter, ShiftSummary, TrafficShiftConfig

logger = logging.getLogger(__name__)

LIVE_VERSION_LABEL = "live"


class Stage(str, Enum):
    PREFLIGHT = "preflight"
    BUILD_DEPLOY = "build-deploy"
    RECONCILIATION = "reconciliation"
    ROLLOUT = "rollout"
    HEALTH_CHECKS = "health-checks"
    CACHE_AUDIT = "cache-audit"


class StageOutcome(str, Enum):
    SUCCESS = "success"
    CLEAN_FAIL = "clean-fail"
    DIRTY_FAIL = "dirty-fail"


class PipelineError(Exception):
    """Raised by a pipeline stage. Carries the stage and failure class."""

    outcome = StageOutcome.DIRTY_FAIL

    def __init__(self, stage: Stage, message: str) -> None:
        super().__init__(message)
        self.stage = stage


class PreflightFailedError(PipelineError):
    """Pre-flight check failed. No lock was taken."""

    outcome = StageOutcome.CLEAN_FAIL


class LockUnavailableError(PipelineError):
    """Another deployment holds the lock, or it could not be written."""

    outcome = StageOutcome.CLEAN_FAIL


class DeployFailedError(PipelineError):
    """Build or deploy failed. Infrastructure may be partially changed."""

    outcome = StageOutcome.DIRTY_FAIL


class ReconciliationFailedError(PipelineError):
    """Reconciliation warnings remained and the environment fails on them."""

    outcome = StageOutcome.CLEAN_FAIL


class RolloutFailedError(PipelineError):
    """Progressive rollout was rolled back."""

    outcome = StageOutcome.DIRTY_FAIL


class HealthChecksFailedError(PipelineError):
    """A post-deploy health check failed. The new version is already live."""

    outcome = StageOutcome.DIRTY_FAIL


@dataclass(frozen=True)
class StageTiming:
    name: str
    duration_ms: int

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "duration_ms": self.duration_ms}


@dataclass
class StageDetails:
    """Per-stage flags for diagnostics. None means the step did not run."""

    git_clean: bool | None = None
    tests_ok: bool | None = None
    build_ok: bool | None = None
    deploy_ok: bool | None = None
    reconciliation_ok: bool | None = None
    rollout_ok: bool | None = None
    health_checks_ok: bool | None = None
    cache_ok: bool | None = None

    def record_preflight(self, results: list[CheckResult]) -> None:
        for result in results:
            value: bool | None = None
            if result.status != CheckStatus.SKIPPED:
                value = result.status == CheckStatus.PASSED
            if result.name == "git-status":
                self.git_clean = value
            elif result.name == "tests":
                self.tests_ok = value

    def to_dict(self) -> dict[str, bool | None]:
        return {
            "git_clean": self.git_clean,
            "tests_ok": self.tests_ok,
            "build_ok": self.build_ok,
            "deploy_ok": self.deploy_ok,
            "reconciliation_ok": self.reconciliation_ok,
            "rollout_ok": self.rollout_ok,
            "health_checks_ok": self.health_checks_ok,
            "cache_ok": self.cache_ok,
        }


@dataclass(frozen=True)
class DeploymentResult:
    """Outcome of one pipeline run. Built once, when the run finishes."""

    success: bool
    environment: str
    start_time: datetime
    end_time: datetime
    message: str
    outcome: StageOutcome
    stage_details: StageDetails
    stage_timings: tuple[StageTiming, ...] = ()
    failed_stage: Stage | None = None
    lock_retained: bool = False
    distribution_id: str | None = None
    issues: tuple[ValidationIssue, ...] = ()
    fix_results: tuple[FixResult, ...] = ()
    rollout: ShiftSummary | None = None
    health_checks: tuple[HealthCheckResult, ...] = ()
    error: str | None = None

    @property
    def duration_seconds(self) -> float:
        return (self.end_time - self.start_time).total_seconds()

    @property
    def exit_code(self) -> int:
        return 0 if self.success else 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "environment": self.environment,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "duration_seconds": self.duration_seconds,
            "message": self.message,
            "outcome": self.outcome.value,
            "failed_stage": self.failed_stage.value if self.failed_stage else None,
            "lock_retained": self.lock_retained,
            "distribution_id": self.distribution_id,
            "stage_details": self.stage_details.to_dict(),
            "stage_timings": [t.to_dict() for t in self.stage_timings],
            "issues": [i.to_dict() for i in self.issues],
            "fix_results": [r.to_dict() for r in self.fix_results],
            "rollout": self.rollout.to_dict() if self.rollout else None,
            "health_checks": [r.to_dict() for r in self.health_checks],
            "error": self.error,
        }


@dataclass
class EnvironmentStatus:
    environment: str
    lock: LockStatus
    engine_locked: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "environment": self.environment,
            "lock": self.lock.to_dict(),
            "engine_locked": self.engine_locked,
        }


@dataclass
class RecoveryResult:
    environment: str
    file_lock_cleared: bool
    engine_lock_cleared: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "environment": self.environment,
            "file_lock_cleared": self.file_lock_cleared,
            "engine_lock_cleared": self.engine_lock_cleared,
        }


@dataclass
class _RunState:
    """Mutable accumulator for one run; frozen into a DeploymentResult."""

    environment: str
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    details: StageDetails = field(default_factory=StageDetails)
    timings: list[StageTiming] = field(default_factory=list)
    lock: DeploymentLock | None = None
    distribution_id: str | None = None
    report: ValidationReport | None = None
    fix_results: list[FixResult] = field(default_factory=list)
    rollout: ShiftSummary | None = None
    health_checks: list[HealthCheckResult] = field(default_factory=list)
    git_commit: str = ""

    @property
    def deployment_id(self) -> str:
        return f"{self.environment}-{self.start_time:%Y%m%dT%H%M%SZ}"

    @contextmanager
    def timed(self, stage: Stage) -> Iterator[None]:
        started = time.monotonic()
        try:
            yield
        finally:
            self.timings.append(
                StageTiming(stage.value, int((time.monotonic() - started) * 1000))
            )


CloudFactory = Callable[[str], CloudControlPlane]


class DeploymentPipeline:
    """Runs deployments for one project.

    Usage:
        pipeline = DeploymentPipeline(config, project)
        result = await pipeline.run("staging")
        sys.exit(result.exit_code)
    """

    def __init__(
        self,
        config: Config,
        project: ProjectConfig,
        *,
        engine: ProvisioningEngine | None = None,
        locks: LockManager | None = None,
        cloud_factory: CloudFactory | None = None,
        cache: ObservedStateCache | None = None,
        shifter: CloudFrontTrafficShifter | None = None,
        health_checker: HttpHealthChecker | None = None,
        audit_logger: DeploymentAuditLogger | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the pipeline.

        Args:
            config: Operator configuration.
            project: Validated project configuration.
            engine: Provisioning engine; built from config when omitted.
            locks: Lock manager; built from config when omitted.
            cloud_factory: Builds a control plane for a region.
            cache: Observed state cache shared across runs.
            shifter: Traffic shift state machine.
            health_checker: Runs the post-deploy HTTP health checks.
            audit_logger: Audit record sink.
            sleep: Awaited between rollout steps. Injected by tests.
        """
        self._config = config
        self._project = project
        self._engine = engine or ProvisioningEngine(config, aws_profile=project.aws_profile)
        self._locks = locks or LockManager(config, self._engine, stage_for=project.engine_stage)
        self._cloud_factory = cloud_factory or self._default_cloud
        self._clouds: dict[str, CloudControlPlane] = {}
        self._cache = cache or ObservedStateCache(ttl_seconds=config.state_cache_ttl_seconds)
        self._shifter = shifter or CloudFrontTrafficShifter()
        self._health_checker = health_checker or HttpHealthChecker()
        self._audit = audit_logger or get_audit_logger()
        self._sleep = sleep

    def _default_cloud(self, region: str) -> CloudControlPlane:
        return CloudControlPlane(self._config, region=region, profile=self._project.aws_profile)

    def cloud_for(self, environment: str) -> CloudControlPlane:
        region = self._project.region_for(environment)
        cloud = self._clouds.get(region)
        if cloud is None:
            cloud = self._cloud_factory(region)
            self._clouds[region] = cloud
        return cloud

    def reconciler_for(self, environment: str) -> Reconciler:
        return Reconciler(
            self._config, self._project, self.cloud_for(environment), cache=self._cache
        )

    def preflight_for(self, environment: str) -> PreflightChecks:
        cloud = self.cloud_for(environment)
        return PreflightChecks(
            self._config,
            self._project,
            self._engine,
            cloud,
            certificates=AcmCertificateManager(cloud),
        )

    async def run(self, environment: str) -> DeploymentResult:
        """Run the full pipeline for an environment.

        Never raises for stage failures; the result carries the outcome.
        """
        run = _RunState(environment=environment)
        audit = self._audit.create_record(self._project.project_name, environment)
        run.git_commit = audit.git_commit_sha
        error: PipelineError | None = None

        logger.info(
            "Deployment started",
            extra={"environment": environment, "deployment_id": run.deployment_id},
        )

        try:
            await self._run_stages(run)
        except PipelineError as e:
            error = e
        except Exception as e:
            logger.exception(
                "Unexpected pipeline error",
                extra={"environment": environment, "error": str(e)},
            )
            error = PipelineError(_current_stage(run), f"{type(e).__name__}: {e}")
            if run.lock is None:
                error.outcome = StageOutcome.CLEAN_FAIL

        outcome = error.outcome if error else StageOutcome.SUCCESS
        lock_retained = self._finish_lock(run, outcome)

        result = DeploymentResult(
            success=error is None,
            environment=environment,
            start_time=run.start_time,
            end_time=datetime.now(UTC),
            message=_result_message(environment, error, lock_retained),
            outcome=outcome,
            stage_details=run.details,
            stage_timings=tuple(run.timings),
            failed_stage=error.stage if error else None,
            lock_retained=lock_retained,
            distribution_id=run.distribution_id,
            issues=tuple(run.report.issues) if run.report else (),
            fix_results=tuple(run.fix_results),
            rollout=run.rollout,
            health_checks=tuple(run.health_checks),
            error=str(error) if error else None,
        )

        audit.outcome = outcome.value
        audit.failed_stage = result.failed_stage.value if result.failed_stage else None
        audit.lock_retained = lock_retained
        audit.distribution_id = run.distribution_id
        audit.issues_detected = len(result.issues)
        audit.fixes_applied = sum(1 for r in run.fix_results if r.success)
        audit.final_traffic_percentage = run.rollout.current_percentage if run.rollout else None
        audit.health_checks_failed = sum(1 for r in run.health_checks if not r.passed)
        audit.duration_seconds = result.duration_seconds
        if error:
            audit.error = str(error)
            audit.error_type = type(error).__name__
        self._audit.log_record(audit)

        log = logger.info if result.success else logger.error
        log(
            result.message,
            extra={
                "environment": environment,
                "outcome": outcome.value,
                "duration_seconds": result.duration_seconds,
                "stage_timings": [t.to_dict() for t in result.stage_timings],
            },
        )
        return result

    async def _run_stages(self, run: _RunState) -> None:
        environment = run.environment
        try:
            env_config = self._project.environment(environment)
        except KeyError as e:
            raise PreflightFailedError(Stage.PREFLIGHT, str(e.args[0])) from e

        with run.timed(Stage.PREFLIGHT):
            await self._locks.check_and_clean_engine_state_lock(environment)
            try:
                results = await self.preflight_for(environment).run(environment)
            except PreflightError as e:
                run.details.record_preflight(e.results)
                raise PreflightFailedError(Stage.PREFLIGHT, str(e)) from e
            run.details.record_preflight(results)

        try:
            run.lock = self._locks.acquire_lock(environment)
        except LockError as e:
            raise LockUnavailableError(Stage.PREFLIGHT, str(e)) from e

        with run.timed(Stage.BUILD_DEPLOY):
            await self._build_and_deploy(run)

        with run.timed(Stage.RECONCILIATION):
            await self._reconcile(run, env_config)

        if env_config.traffic_shift.enabled:
            with run.timed(Stage.ROLLOUT):
                await self._rollout(run, env_config.traffic_shift)

        if env_config.skip_health_checks:
            logger.info("Health checks skipped", extra={"environment": environment})
        elif self._project.health_checks:
            with run.timed(Stage.HEALTH_CHECKS):
                await self._check_health(run)

        with run.timed(Stage.CACHE_AUDIT):
            await self._invalidate_cache(run, env_config)

    async def _build_and_deploy(self, run: _RunState) -> None:
        if self._project.build_command:
            try:
                await self._engine.build(self._project.build_command)
            except EngineError as e:
                run.details.build_ok = False
                raise DeployFailedError(Stage.BUILD_DEPLOY, str(e)) from e
            run.details.build_ok = True

        stage = self._project.engine_stage(run.environment)
        try:
            output = await self._engine.deploy(stage, self._project.custom_deploy_script)
        except EngineError as e:
            run.details.deploy_ok = False
            raise DeployFailedError(Stage.BUILD_DEPLOY, str(e)) from e
        run.details.deploy_ok = True
        run.distribution_id = extract_distribution_id(output)

    async def _reconcile(self, run: _RunState, env_config: EnvironmentConfig) -> None:
        if env_config.skip_reconciliation:
            logger.info("Reconciliation skipped", extra={"environment": run.environment})
            return

        reconciler = self.reconciler_for(run.environment)
        report = await reconciler.reconcile(run.environment, refresh=True)

        if env_config.auto_fix and any(i.auto_fix_available for i in report.issues):
            run.fix_results = await reconciler.apply_fixes(run.environment, report)
            if any(r.success for r in run.fix_results):
                report = await reconciler.reconcile(run.environment, refresh=True)

        run.report = report
        run.distribution_id = run.distribution_id or report.state.distribution_id
        run.details.reconciliation_ok = not report.warnings

        if report.warnings and env_config.fail_on_reconciliation_warnings:
            raise ReconciliationFailedError(Stage.RECONCILIATION, report.summary)

    async def _rollout(self, run: _RunState, settings: TrafficShiftSettings) -> None:
        state = await self._rollout_state(run)
        if not state.distribution_id or not state.kvs_arn:
            logger.warning(
                "Progressive rollout skipped: no distribution or KeyValueStore found",
                extra={"environment": run.environment},
            )
            return

        cloud = self.cloud_for(run.environment)
        rollout = ProgressiveRollout(
            self._shifter,
            KvsTrafficRouter(cloud, state.kvs_arn),
            CloudWatchHealthGate(
                cloud,
                state.distribution_id,
                max_error_rate=settings.max_error_rate,
                window_seconds=settings.interval_seconds,
            ),
            distribution_id=state.distribution_id,
            sleep=self._sleep,
        )
        green_version = run.git_commit or run.deployment_id
        try:
            run.rollout = await rollout.run(
                run.deployment_id,
                run.environment,
                LIVE_VERSION_LABEL,
                green_version,
                TrafficShiftConfig.from_settings(settings),
            )
        except RolloutError as e:
            run.rollout = e.summary
            run.details.rollout_ok = False
            raise RolloutFailedError(Stage.ROLLOUT, str(e)) from e
        run.details.rollout_ok = True

    async def _rollout_state(self, run: _RunState) -> ObservedState:
        if run.report is not None:
            return run.report.state
        return await self.reconciler_for(run.environment).observe(run.environment)

    async def _check_health(self, run: _RunState) -> None:
        domain = self._project.domain_for(run.environment)
        run.health_checks = await self._health_checker.run_all(self._project.health_checks, domain)
        run.details.health_checks_ok = all(r.passed for r in run.health_checks)
        if not run.details.health_checks_ok:
            error = HealthCheckError(run.health_checks)
            raise HealthChecksFailedError(Stage.HEALTH_CHECKS, str(error)) from error

    async def _invalidate_cache(self, run: _RunState, env_config: EnvironmentConfig) -> None:
        if env_config.skip_cache_invalidation:
            logger.info("Cache invalidation skipped", extra={"environment": run.environment})
            return
        if not run.distribution_id:
            logger.info(
                "No distribution id found, cache not invalidated",
                extra={"environment": run.environment},
            )
            return

        try:
            await self.cloud_for(run.environment).create_invalidation(run.distribution_id, ["/*"])
        except AWS_ERRORS as e:
            info = classify_aws_error(e)
            logger.warning(
                "Cache invalidation failed",
                extra={
                    "environment": run.environment,
                    "distribution_id": run.distribution_id,
                    "error_kind": info.kind.value,
                    "error": info.message,
                },
            )
            run.details.cache_ok = False
            return
        run.details.cache_ok = True

    def _finish_lock(self, run: _RunState, outcome: StageOutcome) -> bool:
        """Release the lock unless the run failed dirty. Returns True if retained."""
        if run.lock is None:
            return False
        if outcome == StageOutcome.DIRTY_FAIL:
            logger.warning(
                "Deployment lock retained after failure",
                extra={
                    "environment": run.environment,
                    "recover_command": f"{RECOVER_COMMAND} {run.environment}",
                },
            )
            return True
        self._locks.release_lock(run.lock)
        return False

    async def status(self, environment: str) -> EnvironmentStatus:
        """Report the file lock and engine lock for an environment."""
        self._project.environment(environment)
        return EnvironmentStatus(
            environment=environment,
            lock=self._locks.lock_status(environment),
            engine_locked=await self._locks.is_engine_state_locked(environment),
        )

    async def recover(self, environment: str) -> RecoveryResult:
        """Clear both the file lock and the engine state lock."""
        self._project.environment(environment)
        file_cleared = self._locks.clear_file_lock(environment)
        engine_cleared = await self._locks.clear_engine_state_lock(environment)
        logger.info(
            "Recovery finished",
            extra={
                "environment": environment,
                "file_lock_cleared": file_cleared,
                "engine_lock_cleared": engine_cleared,
            },
        )
        return RecoveryResult(environment, file_cleared, engine_cleared)

    async def reconcile(
        self, environment: str, *, fix: bool = False
    ) -> tuple[ValidationReport, list[FixResult]]:
        """Run a standalone reconciliation pass, optionally applying fixes."""
        self._project.environment(environment)
        reconciler = self.reconciler_for(environment)
        report = await reconciler.reconcile(environment, refresh=True)
        fixes: list[FixResult] = []
        if fix and report.issues:
            fixes = await reconciler.apply_fixes(environment, report)
        return report, fixes


def _current_stage(run: _RunState) -> Stage:
    """Stage that was running when an unexpected error escaped.

    Timings are recorded on stage exit, so the failing stage is the last one.
    """
    if not run.timings:
        return Stage.PREFLIGHT
    return Stage(run.timings[-1].name)


def _result_message(environment: str, error: PipelineError | None, lock_retained: bool) -> str:
    if error is None:
        return f"Deployment to {environment} succeeded"
    message = f"Deployment to {environment} failed at {error.stage.value}: {error}"
    if lock_retained:
        message += (
            f"\nDeployment lock retained. Inspect the environment, then run: "
            f"{RECOVER_COMMAND} {environment}"
        )
    return message
