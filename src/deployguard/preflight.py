"""Pre-flight checks run before a deployment takes its lock.

A failing check raises PreflightError before the lock file exists, so a
configuration or credential problem never blocks the next attempt once it
is fixed.

Checks, in order:
- Clean git working tree (requireCleanGit)
- AWS credentials resolve to an identity
- Test suite passes (runTestsBeforeDeploy)
- No reserved Lambda environment variables in the infrastructure config
- A TLS certificate exists for the environment's custom domain
"""

from __future__ import annotations

import logging
import re
import shlex
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .certificates import CertificateProvider
from .cloud import AWS_ERRORS, CloudControlPlane, classify_aws_error
from .config import Config
from .engine import EngineError, ProvisioningEngine
from .models import ProjectConfig

logger = logging.getLogger(__name__)

GIT_STATUS_TIMEOUT_SECONDS = 30

# Set by the Lambda runtime; setting them fails the deploy
RESERVED_LAMBDA_ENV_VARS = frozenset(
    {
        "AWS_ACCESS_KEY_ID",
        "AWS_SECRET_ACCESS_KEY",
        "AWS_SESSION_TOKEN",
        "AWS_REGION",
        "AWS_DEFAULT_REGION",
        "AWS_EXECUTION_ENV",
        "AWS_LAMBDA_FUNCTION_NAME",
        "AWS_LAMBDA_FUNCTION_VERSION",
        "AWS_LAMBDA_FUNCTION_MEMORY_SIZE",
        "AWS_LAMBDA_FUNCTION_INVOKED_ARN",
        "AWS_LAMBDA_RUNTIME_API",
        "AWS_LAMBDA_LOG_GROUP_NAME",
        "AWS_LAMBDA_LOG_STREAM_NAME",
        "AWS_LAMBDA_INITIALIZATION_TYPE",
        "AWS_XRAY_DAEMON_ADDRESS",
        "AWS_XRAY_CONTEXT_MISSING",
        "_AWS_XRAY_DAEMON_ADDRESS",
        "_AWS_XRAY_DAEMON_PORT",
        "_X_AMZN_TRACE_ID",
        "LAMBDA_TASK_ROOT",
        "LAMBDA_RUNTIME_DIR",
        "TZ",
    }
)

ENVIRONMENT_BLOCK_PATTERN = re.compile(r"environment:\s*\{[^}]*\}", re.DOTALL)
ENV_VAR_NAME_PATTERN = re.compile(r"""['"]?([A-Z_][A-Z0-9_]*)['"]?\s*:""")


class CheckStatus(str, Enum):
    PASSED = "passed"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class CheckResult:
    """Outcome of one pre-flight check."""

    name: str
    status: CheckStatus
    message: str
    duration_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "message": self.message,
            "duration_ms": self.duration_ms,
        }


class PreflightError(Exception):
    """Raised when a pre-flight check fails."""

    def __init__(self, check: str, message: str, results: list[CheckResult] | None = None) -> None:
        super().__init__(f"Pre-flight check '{check}' failed: {message}")
        self.check = check
        self.results = results or []


@dataclass(frozen=True)
class ReservedVarViolation:
    name: str
    line_number: int


def find_reserved_lambda_vars(config_text: str) -> list[ReservedVarViolation]:
    """Find reserved Lambda variables set in `environment: {...}` blocks."""
    violations: list[ReservedVarViolation] = []
    for block in ENVIRONMENT_BLOCK_PATTERN.finditer(config_text):
        line_number = config_text.count("\n", 0, block.start()) + 1
        for var in ENV_VAR_NAME_PATTERN.finditer(block.group(0)):
            if var.group(1) in RESERVED_LAMBDA_ENV_VARS:
                violations.append(ReservedVarViolation(var.group(1), line_number))
    return violations


@dataclass
class PreflightChecks:
    """The pre-flight check set for one project.

    Usage:
        checks = PreflightChecks(config, project, engine, cloud, certificates)
        results = await checks.run("staging")
    """

    config: Config
    project: ProjectConfig
    engine: ProvisioningEngine
    cloud: CloudControlPlane
    certificates: CertificateProvider | None = None
    results: list[CheckResult] = field(default_factory=list)

    async def run(self, environment: str) -> list[CheckResult]:
        """Run every check in order, stopping at the first failure.

        Raises:
            PreflightError: Naming the failed check.
        """
        self.results = []
        for name, check in (
            ("git-status", self._check_git_status),
            ("aws-credentials", self._check_aws_credentials),
            ("tests", self._run_tests),
            ("reserved-lambda-vars", self._check_reserved_vars),
            ("certificate", self._check_certificate),
        ):
            started = time.monotonic()
            try:
                status, message = await check(environment)
            except PreflightError as e:
                self._record(name, CheckStatus.FAILED, str(e), started)
                e.results = list(self.results)
                raise
            self._record(name, status, message, started)

        return list(self.results)

    def _record(self, name: str, status: CheckStatus, message: str, started: float) -> None:
        result = CheckResult(
            name=name,
            status=status,
            message=message,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        self.results.append(result)
        log = logger.error if status == CheckStatus.FAILED else logger.info
        # "name" and "message" are reserved LogRecord attributes
        log(
            f"Pre-flight {name}: {status.value}",
            extra={
                "check": result.name,
                "status": result.status.value,
                "detail": result.message,
                "duration_ms": result.duration_ms,
            },
        )

    async def _check_git_status(self, environment: str) -> tuple[CheckStatus, str]:
        if not self.project.require_clean_git:
            return CheckStatus.SKIPPED, "Skipped (requireCleanGit: false)"

        try:
            result = await self.engine.run_command(
                ["git", "status", "--short"], GIT_STATUS_TIMEOUT_SECONDS
            )
        except EngineError as e:
            raise PreflightError("git-status", str(e)) from e

        if not result.ok:
            raise PreflightError("git-status", result.stderr.strip() or "git status failed")
        if result.stdout.strip():
            changed = len(result.stdout.strip().splitlines())
            raise PreflightError(
                "git-status", f"{changed} uncommitted change(s); commit before deploying"
            )
        return CheckStatus.PASSED, "Clean working directory"

    async def _check_aws_credentials(self, environment: str) -> tuple[CheckStatus, str]:
        try:
            identity = await self.cloud.get_caller_identity()
        except AWS_ERRORS as e:
            info = classify_aws_error(e)
            raise PreflightError(
                "aws-credentials", f"AWS credentials not found or invalid ({info.kind.value})"
            ) from e
        return CheckStatus.PASSED, f"Account: {identity.get('Account', 'unknown')}"

    async def _run_tests(self, environment: str) -> tuple[CheckStatus, str]:
        if not self.project.run_tests_before_deploy:
            return CheckStatus.SKIPPED, "Skipped (runTestsBeforeDeploy: false)"

        try:
            result = await self.engine.run_command(
                shlex.split(self.project.test_command), self.config.build_timeout_seconds
            )
        except EngineError as e:
            raise PreflightError("tests", str(e)) from e

        if not result.ok:
            raise PreflightError("tests", f"Test suite failed (exit code {result.returncode})")
        return CheckStatus.PASSED, "All tests passing"

    async def _check_reserved_vars(self, environment: str) -> tuple[CheckStatus, str]:
        path = self.config.infra_config_path
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return CheckStatus.SKIPPED, "No infrastructure config found"
        except (OSError, UnicodeDecodeError) as e:
            return CheckStatus.SKIPPED, f"Could not read infrastructure config: {e}"

        violations = find_reserved_lambda_vars(text)
        if violations:
            listed = ", ".join(f"{v.name} (line ~{v.line_number})" for v in violations)
            raise PreflightError(
                "reserved-lambda-vars",
                f"Reserved Lambda environment variables set: {listed}",
            )
        return CheckStatus.PASSED, "No reserved variables"

    async def _check_certificate(self, environment: str) -> tuple[CheckStatus, str]:
        domain = self.project.domain_for(environment)
        if domain is None or self.certificates is None:
            return CheckStatus.SKIPPED, "No custom domain"

        try:
            arn = await self.certificates.ensure_certificate_exists(domain, environment)
        except AWS_ERRORS as e:
            info = classify_aws_error(e)
            raise PreflightError(
                "certificate", f"Could not ensure certificate for {domain}: {info.message}"
            ) from e
        return CheckStatus.PASSED, f"Certificate {arn}"
