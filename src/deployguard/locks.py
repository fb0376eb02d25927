"""Deployment locking.

Two independent lock layers protect an environment:

- The deployment lock file stops this tool from running two deployments to
  the same environment at once (a human and CI racing each other). It is a
  JSON file in the project root, created with O_CREAT | O_EXCL so the
  create step is atomic across processes.
- The provisioning engine keeps its own state lock. A deploy interrupted
  mid-flight by an unrelated process leaves it behind, so it is detected
  and cleared before a new deployment starts.

DESIGN:
- Locks are ALWAYS time-bound (120 minutes by default) so a crashed process
  cannot hold an environment forever
- Expiry is enforced lazily on the next acquisition, never by a timer
- Clearing the engine lock is fire-and-forget: failures are logged, not raised
"""

from __future__ import annotations

import json
import logging
import os
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any

from .config import Config
from .engine import EngineError, ProvisioningEngine

logger = logging.getLogger(__name__)

DEFAULT_LOCK_REASON = "Deployment in progress"
RECOVER_COMMAND = "deployguard recover"

# Substrings in engine status output that indicate a held state lock
ENGINE_LOCK_MARKERS = ("locked", "Lock")


class LockError(Exception):
    """Raised when the deployment lock cannot be acquired or written."""

    pass


class DeploymentInProgressError(LockError):
    """Raised when another deployment holds an unexpired lock."""

    def __init__(self, environment: str, remaining_minutes: int) -> None:
        self.environment = environment
        self.remaining_minutes = remaining_minutes
        super().__init__(
            f"Deployment for {environment} is already in progress "
            f"({remaining_minutes} min remaining)\n"
            f"To force recovery, run: {RECOVER_COMMAND} {environment}"
        )


class LockState(str, Enum):
    """State of the deployment lock file for an environment."""

    NONE = "none"
    ACTIVE = "active"
    STALE = "stale"


def _utc_now() -> datetime:
    return datetime.now(UTC)


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


@dataclass
class DeploymentLock:
    """A held deployment lock.

    Attributes:
        environment: Environment the lock protects
        created_at: When the lock was written
        expires_at: When the lock stops being honored
        reason: Human-readable reason shown to competing deployers
    """

    environment: str
    created_at: datetime
    expires_at: datetime
    reason: str = DEFAULT_LOCK_REASON

    def __post_init__(self) -> None:
        if self.expires_at <= self.created_at:
            raise ValueError("expires_at must be after created_at")

    def is_active(self, now: datetime | None = None) -> bool:
        """Check if the lock is still honored."""
        return (now or _utc_now()) < self.expires_at

    def remaining_seconds(self, now: datetime | None = None) -> float:
        now = now or _utc_now()
        return max(0.0, (self.expires_at - now).total_seconds())

    def remaining_minutes(self, now: datetime | None = None) -> int:
        """Remaining lifetime rounded to whole minutes."""
        return round(self.remaining_seconds(now) / 60)

    def to_dict(self) -> dict[str, Any]:
        """Convert to the on-disk JSON representation."""
        return {
            "environment": self.environment,
            "createdAt": self.created_at.isoformat(),
            "expiresAt": self.expires_at.isoformat(),
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DeploymentLock:
        """Create from the on-disk JSON representation."""
        return cls(
            environment=data["environment"],
            created_at=_parse_timestamp(data["createdAt"]),
            expires_at=_parse_timestamp(data["expiresAt"]),
            reason=data.get("reason", DEFAULT_LOCK_REASON),
        )


def _read_lock(path: Path, environment: str) -> DeploymentLock | None:
    try:
        content = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except (OSError, UnicodeDecodeError) as e:
        logger.warning(
            "Failed to read lock file",
            extra={"environment": environment, "path": str(path), "error": str(e)},
        )
        return None

    try:
        return DeploymentLock.from_dict(json.loads(content))
    except (ValueError, KeyError, TypeError) as e:
        logger.warning(
            "Ignoring unparseable lock file",
            extra={"environment": environment, "path": str(path), "error": str(e)},
        )
        return None


@dataclass
class LockStatus:
    """Point-in-time view of an environment's deployment lock."""

    environment: str
    state: LockState
    lock: DeploymentLock | None = None
    remaining_minutes: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "environment": self.environment,
            "state": self.state.value,
            "lock": self.lock.to_dict() if self.lock else None,
            "remaining_minutes": self.remaining_minutes,
        }


class LockManager:
    """Manages deployment lock files and the engine's state lock.

    Usage:
        manager = LockManager(config, engine)
        await manager.check_and_clean_engine_state_lock("staging")
        lock = manager.acquire_lock("staging")
        ...
        manager.release_lock(lock)
    """

    def __init__(
        self,
        config: Config,
        engine: ProvisioningEngine,
        *,
        stage_for: Callable[[str], str] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize lock manager.

        Args:
            config: Operator configuration (project root, lock TTL).
            engine: Provisioning engine used for status/unlock.
            stage_for: Maps an environment to the engine's stage name.
            clock: Returns the current UTC time. Injected by tests.
        """
        self._config = config
        self._engine = engine
        self._stage_for = stage_for or (lambda environment: environment)
        self._clock = clock or _utc_now

    def get_file_lock(self, environment: str) -> DeploymentLock | None:
        """Read the lock file for an environment.

        Returns:
            The parsed lock, or None if there is no lock file or it cannot
            be parsed.
        """
        return _read_lock(self._config.lock_file_path(environment), environment)

    def acquire_lock(self, environment: str) -> DeploymentLock:
        """Acquire the deployment lock for an environment.

        An expired or unparseable lock file is evicted and replaced.

        Returns:
            The newly written lock.

        Raises:
            DeploymentInProgressError: If an unexpired lock is held.
            LockError: If the lock file cannot be written.
        """
        path = self._config.lock_file_path(environment)
        now = self._clock()

        existing = self.get_file_lock(environment)
        if existing is not None and existing.is_active(now):
            raise DeploymentInProgressError(environment, existing.remaining_minutes(now))

        if path.exists():
            self._evict_stale_lock(environment, now)

        lock = DeploymentLock(
            environment=environment,
            created_at=now,
            expires_at=now + timedelta(minutes=self._config.lock_duration_minutes),
        )

        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            # Another process created the lock between our read and create
            winner = self.get_file_lock(environment)
            remaining = (
                winner.remaining_minutes(now)
                if winner is not None
                else self._config.lock_duration_minutes
            )
            raise DeploymentInProgressError(environment, remaining) from None
        except OSError as e:
            raise LockError(f"Failed to create lock file {path}: {e}") from e

        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(lock.to_dict(), handle, indent=2)

        logger.info(
            "Deployment lock acquired",
            extra={"environment": environment, "expires_at": lock.expires_at.isoformat()},
        )
        return lock

    def _evict_stale_lock(self, environment: str, now: datetime) -> None:
        """Move a stale lock file aside and verify what was moved.

        The file is renamed to a unique tombstone first, so only the lock
        that was actually read from the tombstone is judged. A concurrent
        acquirer may have replaced the stale lock since we read it; its
        fresh lock is put back and the acquisition fails.

        Raises:
            DeploymentInProgressError: If the moved lock turned out to be active.
            LockError: If the lock file cannot be moved.
        """
        path = self._config.lock_file_path(environment)
        tombstone = path.with_name(f"{path.name}.stale-{uuid.uuid4().hex}")
        try:
            os.replace(path, tombstone)
        except FileNotFoundError:
            # Another acquirer evicted it first; the exclusive create decides
            return
        except OSError as e:
            raise LockError(f"Failed to evict stale lock file {path}: {e}") from e

        moved = _read_lock(tombstone, environment)
        if moved is not None and moved.is_active(now):
            try:
                os.link(tombstone, path)
            except FileExistsError:
                logger.warning(
                    "Lock file recreated while restoring an active lock",
                    extra={"environment": environment, "path": str(path)},
                )
            except OSError as e:
                logger.warning(
                    "Failed to restore active lock file",
                    extra={"environment": environment, "path": str(path), "error": str(e)},
                )
            finally:
                tombstone.unlink(missing_ok=True)
            raise DeploymentInProgressError(environment, moved.remaining_minutes(now))

        tombstone.unlink(missing_ok=True)
        logger.info(
            "Removed stale deployment lock",
            extra={
                "environment": environment,
                "expired_at": moved.expires_at.isoformat() if moved else None,
            },
        )

    def release_lock(self, lock: DeploymentLock) -> None:
        """Delete the lock file. Releasing an absent lock is not an error."""
        path = self._config.lock_file_path(lock.environment)
        existed = path.exists()
        path.unlink(missing_ok=True)
        if existed:
            logger.info("Deployment lock released", extra={"environment": lock.environment})

    def clear_file_lock(self, environment: str) -> bool:
        """Remove the lock file regardless of expiry.

        Returns:
            True if a lock file was removed.
        """
        path = self._config.lock_file_path(environment)
        if not path.exists():
            return False
        path.unlink(missing_ok=True)
        logger.warning("Deployment lock forcibly cleared", extra={"environment": environment})
        return True

    def lock_status(self, environment: str) -> LockStatus:
        path = self._config.lock_file_path(environment)
        lock = self.get_file_lock(environment)
        if lock is None:
            state = LockState.STALE if path.exists() else LockState.NONE
            return LockStatus(environment=environment, state=state)

        now = self._clock()
        if lock.is_active(now):
            return LockStatus(
                environment=environment,
                state=LockState.ACTIVE,
                lock=lock,
                remaining_minutes=lock.remaining_minutes(now),
            )
        return LockStatus(environment=environment, state=LockState.STALE, lock=lock)

    async def is_engine_state_locked(self, environment: str) -> bool:
        """Check whether the provisioning engine holds its state lock.

        Any failure to query the engine reads as "not locked".
        """
        stage = self._stage_for(environment)
        try:
            result = await self._engine.status(stage)
        except EngineError as e:
            logger.debug(
                "Engine status unavailable",
                extra={"environment": environment, "stage": stage, "error": str(e)},
            )
            return False

        output = result.output
        return any(marker in output for marker in ENGINE_LOCK_MARKERS)

    async def clear_engine_state_lock(self, environment: str) -> bool:
        """Clear the provisioning engine's state lock.

        Never raises: the common case is that there is nothing to clear.

        Returns:
            True if the engine reported a successful unlock.
        """
        stage = self._stage_for(environment)
        try:
            result = await self._engine.unlock(stage)
        except EngineError as e:
            logger.warning(
                "Failed to clear engine state lock",
                extra={"environment": environment, "stage": stage, "error": str(e)},
            )
            return False

        if result.ok:
            logger.info("Engine state lock cleared", extra={"environment": environment})
            return True

        logger.info("No engine state lock to clear", extra={"environment": environment})
        return False

    async def check_and_clean_engine_state_lock(self, environment: str) -> bool:
        """Detect a stale engine state lock and clear it.

        Returns:
            True if a lock was detected.
        """
        if not await self.is_engine_state_locked(environment):
            return False

        logger.warning(
            "Engine state lock detected, clearing before deployment",
            extra={"environment": environment},
        )
        await self.clear_engine_state_lock(environment)
        return True
