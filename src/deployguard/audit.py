"""Deployment audit records.

Every pipeline run, successful or not, ends with one structured audit log
entry that answers:
- "What was deployed to which environment, and when?"
- "Which commit and deployguard version ran it?"
- "Which stage failed, and was the lock left in place?"
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

DEPLOYGUARD_VERSION = os.environ.get("DEPLOYGUARD_VERSION", "dev")


@dataclass
class DeploymentAuditRecord:
    """Audit record for one pipeline run."""

    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    project: str = ""
    environment: str = ""
    deployguard_version: str = DEPLOYGUARD_VERSION
    aws_account: str = ""

    # Git source of truth
    git_commit_sha: str = ""
    git_branch: str = ""
    git_repo: str = ""

    # Outcome
    outcome: str = ""
    failed_stage: str | None = None
    lock_retained: bool = False
    distribution_id: str | None = None
    issues_detected: int = 0
    fixes_applied: int = 0
    final_traffic_percentage: int | None = None
    health_checks_failed: int = 0

    duration_seconds: float = 0.0

    error: str | None = None
    error_type: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result = asdict(self)
        result["timestamp"] = self.timestamp.isoformat()
        return result


class DeploymentAuditLogger:
    """Writes deployment audit records to the structured log."""

    def __init__(self) -> None:
        self._git_commit_sha = os.environ.get("GIT_COMMIT_SHA", "")
        self._git_branch = os.environ.get("GIT_BRANCH", "")
        self._git_repo = os.environ.get("GIT_REPO", "")

    def create_record(self, project: str, environment: str) -> DeploymentAuditRecord:
        return DeploymentAuditRecord(
            project=project,
            environment=environment,
            git_commit_sha=self._git_commit_sha,
            git_branch=self._git_branch,
            git_repo=self._git_repo,
        )

    def log_record(self, record: DeploymentAuditRecord) -> None:
        """Log a completed audit record.

        Failures log at ERROR, runs that left a lock behind at WARNING.
        """
        log_level = logging.INFO
        if record.error:
            log_level = logging.ERROR
        elif record.lock_retained:
            log_level = logging.WARNING

        logger.log(
            log_level,
            "Deployment audit",
            extra={
                "audit": record.to_dict(),
                # Flattened for querying
                "project": record.project,
                "environment": record.environment,
                "outcome": record.outcome,
                "failed_stage": record.failed_stage,
                "git_commit": record.git_commit_sha,
                "deployguard_version": record.deployguard_version,
                "duration_seconds": record.duration_seconds,
            },
        )


_audit_logger: DeploymentAuditLogger | None = None


def get_audit_logger() -> DeploymentAuditLogger:
    """Get the global audit logger instance."""
    global _audit_logger
    if _audit_logger is None:
        _audit_logger = DeploymentAuditLogger()
    return _audit_logger
