"""Declared intent vs observed state reconciliation.

This module implements the post-deploy validation pass:
1. Parse declared intent from the infrastructure config (no cloud calls)
2. Fetch observed state (cached per project and environment)
3. Run five independent checks, each gated on declared intent
4. Optionally apply guarded point fixes for auto-fixable issues

CONDITIONALITY:
A check whose capability is not declared is skipped entirely, not passed.
An unconfigured feature is never reported as broken.

ERROR HANDLING:
Cloud query errors never fail a reconciliation pass. Facets that could not
be queried are marked unavailable and the checks that depend on them yield
no issue. Fix errors are reported per issue and never stop the batch.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from .certificates import certificate_covers
from .cloud import AWS_ERRORS, CloudControlPlane, classify_aws_error
from .config import Config
from .intent import DeclaredIntent, load_declared_intent
from .models import ProjectConfig
from .observed_state import (
    Facet,
    ObservedState,
    ObservedStateCache,
    collect_observed_state,
)

logger = logging.getLogger(__name__)

HTTPS_ONLY = "https-only"
CERTIFICATE_ISSUED = "ISSUED"
PLACEHOLDER_ORIGIN_MARKERS = ("placeholder", "sst.dev")

CERTIFICATE_STATUS_GUIDANCE = {
    "PENDING_VALIDATION": (
        "Add the DNS CNAME validation records shown in ACM, then wait 5-30 minutes "
        "for validation to complete."
    ),
    "FAILED": "Certificate validation failed. Delete the certificate and request a new one.",
    "EXPIRED": "Certificate expired. Request a new certificate and redeploy.",
    "REVOKED": "Certificate was revoked. Request a new certificate and redeploy.",
}


class IssueType(str, Enum):
    """Classification of a reconciliation finding."""

    CONFIG_MISMATCH = "config-mismatch"
    INCOMPLETE_DEPLOYMENT = "incomplete-deployment"
    CONFIGURATION_DRIFT = "configuration-drift"
    EMPTY_KVS = "empty-kvs"


class Severity(str, Enum):
    """warning: visible runtime failure; info: degrades gracefully."""

    WARNING = "warning"
    INFO = "info"


class CheckName(str, Enum):
    """The five reconciliation checks."""

    FUNCTION_URL = "function-url"
    ORIGIN = "origin"
    ORIGIN_PROTOCOL = "origin-protocol"
    KEY_VALUE_STORE = "key-value-store"
    CERTIFICATE = "certificate"


class FixAction(str, Enum):
    """Single idempotent API edits the reconciler may apply."""

    CREATE_FUNCTION_URL = "create-function-url"
    UPDATE_ORIGIN = "update-origin"
    SET_HTTPS_ONLY = "set-https-only"


# Fixes that change what the CDN edge has cached about the origin
CACHE_INVALIDATING_FIXES = frozenset({FixAction.UPDATE_ORIGIN, FixAction.SET_HTTPS_ONLY})


class FixStatus(str, Enum):
    APPLIED = "applied"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class ValidationIssue:
    """A single finding from one check."""

    type: IssueType
    severity: Severity
    description: str
    details: str
    guidance: str
    check: CheckName
    fix_action: FixAction | None = None

    @property
    def auto_fix_available(self) -> bool:
        return self.fix_action is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "severity": self.severity.value,
            "description": self.description,
            "details": self.details,
            "guidance": self.guidance,
            "check": self.check.value,
            "auto_fix_available": self.auto_fix_available,
        }


@dataclass
class ValidationReport:
    """Result of one reconciliation pass."""

    environment: str
    intent: DeclaredIntent
    state: ObservedState
    issues: list[ValidationIssue] = field(default_factory=list)
    checks_run: list[CheckName] = field(default_factory=list)

    @property
    def issues_detected(self) -> bool:
        return bool(self.issues)

    @property
    def warnings(self) -> list[ValidationIssue]:
        return [i for i in self.issues if i.severity == Severity.WARNING]

    @property
    def infos(self) -> list[ValidationIssue]:
        return [i for i in self.issues if i.severity == Severity.INFO]

    @property
    def summary(self) -> str:
        if not self.issues:
            return "Deployment matches configuration - all checks passed"
        return (
            f"Found {len(self.issues)} potential issue(s): "
            f"{len(self.warnings)} warnings, {len(self.infos)} info"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "environment": self.environment,
            "issues_detected": self.issues_detected,
            "summary": self.summary,
            "intent": self.intent.to_dict(),
            "checks_run": [c.value for c in self.checks_run],
            "issues": [i.to_dict() for i in self.issues],
            "state": self.state.to_dict(),
        }


@dataclass
class FixResult:
    """Outcome of one fix attempt."""

    issue: ValidationIssue
    status: FixStatus
    message: str

    @property
    def success(self) -> bool:
        return self.status == FixStatus.APPLIED

    def to_dict(self) -> dict[str, Any]:
        return {
            "check": self.issue.check.value,
            "description": self.issue.description,
            "status": self.status.value,
            "message": self.message,
        }


def function_url_host(function_url: str) -> str:
    """Host part of a function URL, as used for a CDN origin domain."""
    parsed = urlparse(function_url)
    if parsed.netloc:
        return parsed.netloc
    return function_url.removeprefix("https://").rstrip("/")


# =============================================================================
# Checks
# =============================================================================
# Each check sees only intent-gated inputs and returns at most one issue.


def check_function_url(state: ObservedState, domain: str | None) -> ValidationIssue | None:
    if not state.is_available(Facet.FUNCTION):
        return None

    if state.function_name is None:
        return ValidationIssue(
            type=IssueType.INCOMPLETE_DEPLOYMENT,
            severity=Severity.WARNING,
            description="Lambda function not found",
            details="The infrastructure config declares a function URL but no matching "
            "Lambda function exists.",
            guidance="Deployment may still be in progress. Wait 2-5 minutes and check again, "
            "or verify the engine deploy succeeded.",
            check=CheckName.FUNCTION_URL,
        )

    if state.function_url is None and state.is_available(Facet.FUNCTION_URL):
        return ValidationIssue(
            type=IssueType.CONFIG_MISMATCH,
            severity=Severity.WARNING,
            description="Lambda Function URL not created",
            details=f"Config has url: true but no Function URL exists for {state.function_name}.",
            guidance="Check the infrastructure config or wait for deployment to complete.",
            check=CheckName.FUNCTION_URL,
            fix_action=FixAction.CREATE_FUNCTION_URL,
        )

    return None


def check_origin(state: ObservedState, domain: str | None) -> ValidationIssue | None:
    if not state.is_available(Facet.DISTRIBUTION):
        return None
    if state.distribution_id is None or not state.origin_domain:
        return None

    origin = state.origin_domain
    function_host = function_url_host(state.function_url) if state.function_url else None
    fix = FixAction.UPDATE_ORIGIN if function_host else None

    if any(marker in origin for marker in PLACEHOLDER_ORIGIN_MARKERS):
        return ValidationIssue(
            type=IssueType.INCOMPLETE_DEPLOYMENT,
            severity=Severity.WARNING,
            description="CloudFront origin is temporary placeholder",
            details=f"Origin is currently {origin}. This is a temporary state during deployment.",
            guidance="Wait 2-5 minutes for the engine to update the origin. If it persists "
            "after 10 minutes, check the engine logs or update the origin.",
            check=CheckName.ORIGIN,
            fix_action=fix,
        )

    if function_host and function_host not in origin:
        return ValidationIssue(
            type=IssueType.CONFIGURATION_DRIFT,
            severity=Severity.WARNING,
            description="CloudFront origin mismatch",
            details=f"CloudFront origin is {origin} but Function URL is {state.function_url}.",
            guidance="These should match. Update the CloudFront origin or redeploy.",
            check=CheckName.ORIGIN,
            fix_action=fix,
        )

    return None


def check_origin_protocol(state: ObservedState, domain: str | None) -> ValidationIssue | None:
    if not state.is_available(Facet.DISTRIBUTION) or not state.is_available(Facet.FUNCTION_URL):
        return None
    if state.distribution_id is None or state.function_url is None:
        return None
    policy = state.origin_protocol_policy
    if policy is None or policy == HTTPS_ONLY:
        return None

    return ValidationIssue(
        type=IssueType.CONFIG_MISMATCH,
        severity=Severity.WARNING,
        description="Origin protocol policy is not https-only",
        details=f"Protocol policy is {policy} but Lambda Function URLs require https-only.",
        guidance="CloudFront will get 403 errors when reaching Lambda. "
        "Update the protocol policy to https-only.",
        check=CheckName.ORIGIN_PROTOCOL,
        fix_action=FixAction.SET_HTTPS_ONLY,
    )


def check_key_value_store(state: ObservedState, domain: str | None) -> ValidationIssue | None:
    if not state.is_available(Facet.DISTRIBUTION) or not state.is_available(
        Facet.KEY_VALUE_STORE
    ):
        return None
    if state.distribution_id is None:
        return None

    if state.kvs_arn is None:
        return ValidationIssue(
            type=IssueType.CONFIG_MISMATCH,
            severity=Severity.WARNING,
            description="KeyValueStore not found",
            details="Config has kvStore but no KeyValueStore is associated with the "
            "distribution's edge function.",
            guidance="Verify the deployment completed and the CloudFront Function is associated.",
            check=CheckName.KEY_VALUE_STORE,
        )

    if not state.kvs_item_count:
        return ValidationIssue(
            type=IssueType.EMPTY_KVS,
            severity=Severity.INFO,
            description="KeyValueStore is empty",
            details=f"KVS exists ({state.kvs_arn}) but has no items.",
            guidance="Populate the KVS, or make sure the CloudFront Function handles "
            "missing keys.",
            check=CheckName.KEY_VALUE_STORE,
        )

    return None


def check_certificate(state: ObservedState, domain: str | None) -> ValidationIssue | None:
    if not state.is_available(Facet.DISTRIBUTION) or not state.is_available(Facet.CERTIFICATE):
        return None
    if state.distribution_id is None:
        return None

    if state.certificate_arn is None:
        return ValidationIssue(
            type=IssueType.CONFIG_MISMATCH,
            severity=Severity.WARNING,
            description="SSL certificate not found",
            details="CloudFront distribution exists but no ACM certificate is configured.",
            guidance="Check the domain configuration. The certificate may still be provisioning.",
            check=CheckName.CERTIFICATE,
        )

    status = state.certificate_status
    if status != CERTIFICATE_ISSUED:
        return ValidationIssue(
            type=IssueType.INCOMPLETE_DEPLOYMENT,
            severity=Severity.WARNING,
            description=f"SSL certificate not issued (status: {status})",
            details=f"Certificate {state.certificate_arn} is in {status} state.",
            guidance=CERTIFICATE_STATUS_GUIDANCE.get(
                status or "", "Check the certificate in the ACM console."
            ),
            check=CheckName.CERTIFICATE,
        )

    if domain and state.certificate_domain and not certificate_covers(
        state.certificate_domain, domain
    ):
        return ValidationIssue(
            type=IssueType.CONFIG_MISMATCH,
            severity=Severity.WARNING,
            description="SSL certificate domain mismatch",
            details=f"Certificate is for {state.certificate_domain}, "
            f"but configured domain is {domain}.",
            guidance="Verify the domain configuration or update the certificate.",
            check=CheckName.CERTIFICATE,
        )

    return None


CheckFunc = Callable[[ObservedState, str | None], ValidationIssue | None]

# (check, intent gate, evaluator)
CHECKS: tuple[tuple[CheckName, Callable[[DeclaredIntent], bool], CheckFunc], ...] = (
    (CheckName.FUNCTION_URL, lambda i: i.uses_function_url, check_function_url),
    (CheckName.ORIGIN, lambda i: i.uses_function_url, check_origin),
    (CheckName.ORIGIN_PROTOCOL, lambda i: i.uses_function_url, check_origin_protocol),
    (CheckName.KEY_VALUE_STORE, lambda i: i.uses_key_value_store, check_key_value_store),
    (CheckName.CERTIFICATE, lambda i: i.uses_custom_domain, check_certificate),
)


def evaluate_checks(
    intent: DeclaredIntent, state: ObservedState, domain: str | None
) -> tuple[list[ValidationIssue], list[CheckName]]:
    """Run every intent-enabled check.

    Returns:
        Tuple of (issues, checks that ran).
    """
    issues: list[ValidationIssue] = []
    ran: list[CheckName] = []
    for name, gate, evaluate in CHECKS:
        if not gate(intent):
            continue
        ran.append(name)
        issue = evaluate(state, domain)
        if issue is not None:
            issues.append(issue)
    return issues, ran


# Global observed state cache shared by reconciler instances in this process
_state_cache: ObservedStateCache | None = None


def get_state_cache() -> ObservedStateCache:
    """Get the global observed state cache instance."""
    global _state_cache
    if _state_cache is None:
        _state_cache = ObservedStateCache()
    return _state_cache


class Reconciler:
    """Compares declared intent against observed cloud state.

    Usage:
        reconciler = Reconciler(config, project, cloud)
        report = await reconciler.reconcile("staging")
        results = await reconciler.apply_fixes("staging", report)
    """

    def __init__(
        self,
        config: Config,
        project: ProjectConfig,
        cloud: CloudControlPlane,
        *,
        cache: ObservedStateCache | None = None,
        intent_path: Path | None = None,
    ) -> None:
        """Initialize reconciler.

        Args:
            config: Operator configuration.
            project: Validated project configuration.
            cloud: Control plane for the environment's region.
            cache: Observed state cache; defaults to the process-wide cache.
            intent_path: Infrastructure config path; defaults to the configured one.
        """
        self._config = config
        self._project = project
        self._cloud = cloud
        self._cache = cache or get_state_cache()
        self._intent_path = intent_path or config.infra_config_path

    def declared_intent(self) -> DeclaredIntent:
        return load_declared_intent(self._intent_path)

    def function_prefix(self, environment: str) -> str:
        return f"{self._project.project_name}-{self._project.engine_stage(environment)}-"

    async def observe(self, environment: str, *, refresh: bool = False) -> ObservedState:
        """Get observed state, from cache when fresh.

        Snapshots with unavailable facets are not cached so the next pass
        queries again.
        """
        name = self._project.project_name
        if not refresh:
            cached = self._cache.get(name, environment)
            if cached is not None:
                logger.debug("Observed state cache hit", extra={"environment": environment})
                return cached

        state = await collect_observed_state(
            self._cloud,
            environment=environment,
            domain=self._project.domain_for(environment),
            function_prefix=self.function_prefix(environment),
        )
        if state.complete:
            self._cache.put(name, environment, state)
        return state

    async def reconcile(self, environment: str, *, refresh: bool = False) -> ValidationReport:
        """Run one reconciliation pass. Never raises for cloud errors."""
        intent = self.declared_intent()
        state = await self.observe(environment, refresh=refresh)
        domain = self._project.domain_for(environment)

        issues, ran = evaluate_checks(intent, state, domain)
        report = ValidationReport(
            environment=environment,
            intent=intent,
            state=state,
            issues=issues,
            checks_run=ran,
        )

        log = logger.warning if report.warnings else logger.info
        log(
            report.summary,
            extra={
                "environment": environment,
                "checks_run": [c.value for c in ran],
                "issues": [i.description for i in issues],
                "unavailable": sorted(f.value for f in state.unavailable),
            },
        )
        return report

    async def apply_fixes(self, environment: str, report: ValidationReport) -> list[FixResult]:
        """Apply auto-fixes for a report's fixable issues.

        Every issue gets its own FixResult. A failed fix does not stop the
        remaining ones. Origin and protocol fixes are followed by a full
        cache invalidation.
        """
        state = report.state
        results: list[FixResult] = []
        function_url = state.function_url
        invalidate = False

        for issue in report.issues:
            if issue.fix_action is None:
                results.append(
                    FixResult(issue, FixStatus.SKIPPED, "Not auto-fixable; redeploy required")
                )
                continue

            if self._config.dry_run:
                results.append(
                    FixResult(issue, FixStatus.SKIPPED, f"Dry run: would {issue.fix_action.value}")
                )
                continue

            try:
                message = await self._apply_fix(issue.fix_action, state, function_url)
            except AWS_ERRORS as e:
                info = classify_aws_error(e)
                logger.error(
                    "Fix failed",
                    extra={
                        "environment": environment,
                        "fix_action": issue.fix_action.value,
                        "error_kind": info.kind.value,
                        "error": info.message,
                    },
                )
                results.append(
                    FixResult(issue, FixStatus.FAILED, f"{info.kind.value}: {info.message}")
                )
                continue
            except ValueError as e:
                results.append(FixResult(issue, FixStatus.FAILED, str(e)))
                continue

            if issue.fix_action == FixAction.CREATE_FUNCTION_URL:
                function_url = message
                message = f"Function URL created: {message}"
            if issue.fix_action in CACHE_INVALIDATING_FIXES:
                invalidate = True

            logger.info(
                "Fix applied",
                extra={"environment": environment, "fix_action": issue.fix_action.value},
            )
            results.append(FixResult(issue, FixStatus.APPLIED, message))

        if invalidate and state.distribution_id:
            try:
                await self._cloud.create_invalidation(state.distribution_id, ["/*"])
            except AWS_ERRORS as e:
                logger.warning(
                    "Cache invalidation after fix failed",
                    extra={"environment": environment, "error": str(e)},
                )

        if any(r.success for r in results):
            self._cache.invalidate(self._project.project_name, environment)

        return results

    async def _apply_fix(
        self, action: FixAction, state: ObservedState, function_url: str | None
    ) -> str:
        if action == FixAction.CREATE_FUNCTION_URL:
            if not state.function_name:
                raise ValueError("No Lambda function to attach a URL to")
            return await self._cloud.create_function_url(state.function_name)

        if not state.distribution_id:
            raise ValueError("No CloudFront distribution to update")

        if action == FixAction.UPDATE_ORIGIN:
            if not function_url:
                raise ValueError("Function URL unknown; cannot update origin")
            host = function_url_host(function_url)

            def set_origin(dist_config: dict[str, Any]) -> None:
                dist_config["Origins"]["Items"][0]["DomainName"] = host

            await self._cloud.update_distribution(state.distribution_id, set_origin)
            return f"Origin updated to {host}"

        def set_https_only(dist_config: dict[str, Any]) -> None:
            origin = dist_config["Origins"]["Items"][0]
            origin.setdefault("CustomOriginConfig", {})["OriginProtocolPolicy"] = HTTPS_ONLY

        await self._cloud.update_distribution(state.distribution_id, set_https_only)
        return "Origin protocol policy set to https-only"
