"""Post-deploy HTTP health checks.

Each configured endpoint is requested once after the deploy and passes when
it answers with the expected status code and, if configured, its body
contains the search text. requests is blocking, so every request runs in
the default executor.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import time
from dataclasses import dataclass
from typing import Any

import requests

from .models import HealthCheck

logger = logging.getLogger(__name__)

# Responses slower than this pass but are logged as slow
SLOW_RESPONSE_MS = 5000

# Headroom over the per-request timeout before the executor wait gives up
EXECUTOR_GRACE_SECONDS = 2.0

USER_AGENT = "deployguard-health-check"


@dataclass(frozen=True)
class HealthCheckResult:
    """Outcome of one endpoint check."""

    name: str
    url: str
    passed: bool
    message: str
    status_code: int | None = None
    duration_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "url": self.url,
            "passed": self.passed,
            "message": self.message,
            "status_code": self.status_code,
            "duration_ms": self.duration_ms,
        }


class HealthCheckError(Exception):
    """Raised when one or more health checks fail."""

    def __init__(self, results: list[HealthCheckResult]) -> None:
        self.results = results
        failed = [r for r in results if not r.passed]
        listed = "; ".join(f"{r.name}: {r.message}" for r in failed)
        super().__init__(f"{len(failed)} of {len(results)} health check(s) failed: {listed}")


def resolve_url(check: HealthCheck, domain: str | None) -> str:
    """Absolute URL for a check.

    Raises:
        ValueError: If the url is relative and there is no domain.
    """
    if check.url.startswith(("http://", "https://")):
        return check.url
    if not domain:
        raise ValueError(f"Relative health check url {check.url!r} needs a domain")
    path = check.url if check.url.startswith("/") else f"/{check.url}"
    return f"https://{domain}{path}"


class HttpHealthChecker:
    """Runs HTTP health checks against a deployed environment.

    Usage:
        checker = HttpHealthChecker()
        results = await checker.run_all(project.health_checks, "staging.example.com")
    """

    def __init__(self, session: requests.Session | None = None) -> None:
        self._session = session or requests.Session()
        self._session.headers.setdefault("User-Agent", USER_AGENT)

    async def check(self, check: HealthCheck, domain: str | None) -> HealthCheckResult:
        """Run one check. Never raises; failures are reported in the result."""
        started = time.monotonic()
        try:
            url = resolve_url(check, domain)
        except ValueError as e:
            return HealthCheckResult(check.label, check.url, False, str(e))

        timeout = check.timeout / 1000
        loop = asyncio.get_running_loop()
        try:
            response = await asyncio.wait_for(
                loop.run_in_executor(
                    None, functools.partial(self._session.get, url, timeout=timeout)
                ),
                timeout=timeout + EXECUTOR_GRACE_SECONDS,
            )
        except (requests.Timeout, TimeoutError):
            return self._finish(check, url, started, False, f"timed out after {check.timeout}ms")
        except requests.RequestException as e:
            return self._finish(check, url, started, False, f"request failed: {e}")

        status = response.status_code
        if status != check.expected_status:
            return self._finish(
                check,
                url,
                started,
                False,
                f"returned HTTP {status}, expected {check.expected_status}",
                status,
            )
        if check.search_text and check.search_text not in response.text:
            return self._finish(
                check, url, started, False, f"response missing text {check.search_text!r}", status
            )
        return self._finish(check, url, started, True, f"HTTP {status}", status)

    async def run_all(
        self, checks: list[HealthCheck], domain: str | None
    ) -> list[HealthCheckResult]:
        """Run every check in order. All checks run even after a failure."""
        return [await self.check(check, domain) for check in checks]

    def _finish(
        self,
        check: HealthCheck,
        url: str,
        started: float,
        passed: bool,
        message: str,
        status_code: int | None = None,
    ) -> HealthCheckResult:
        result = HealthCheckResult(
            name=check.label,
            url=url,
            passed=passed,
            message=message,
            status_code=status_code,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        extra = {
            "check": result.name,
            "url": url,
            "status_code": status_code,
            "duration_ms": result.duration_ms,
        }
        if not passed:
            logger.warning(f"Health check {result.name} failed: {message}", extra=extra)
        elif result.duration_ms > SLOW_RESPONSE_MS:
            logger.warning(f"Health check {result.name} slow", extra=extra)
        else:
            logger.info(f"Health check {result.name} passed", extra=extra)
        return result
