"""Tests for deployment lock files and the engine state lock."""

from __future__ import annotations

import json
import os
from datetime import UTC, datetime, timedelta
from pathlib import Path
from unittest.mock import patch

import pytest
from conftest import FakeEngine

from deployguard.config import Config
from deployguard.engine import EngineError
from deployguard.locks import (
    DeploymentInProgressError,
    DeploymentLock,
    LockError,
    LockManager,
    LockState,
)

START = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


class FakeClock:
    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def manager(config: Config, fake_engine: FakeEngine, clock: FakeClock) -> LockManager:
    return LockManager(config, fake_engine, clock=clock)  # type: ignore[arg-type]


class TestDeploymentLock:
    """Tests for the DeploymentLock value."""

    def test_round_trip(self) -> None:
        lock = DeploymentLock("staging", START, START + timedelta(minutes=120))

        restored = DeploymentLock.from_dict(json.loads(json.dumps(lock.to_dict())))

        assert restored == lock

    def test_expiry_must_follow_creation(self) -> None:
        with pytest.raises(ValueError):
            DeploymentLock("staging", START, START)

    def test_remaining_minutes(self) -> None:
        lock = DeploymentLock("staging", START, START + timedelta(minutes=120))

        assert lock.remaining_minutes(START + timedelta(minutes=30)) == 90
        assert lock.remaining_minutes(START + timedelta(minutes=200)) == 0

    def test_naive_timestamps_read_as_utc(self) -> None:
        lock = DeploymentLock.from_dict(
            {
                "environment": "staging",
                "createdAt": "2026-03-01T12:00:00",
                "expiresAt": "2026-03-01T14:00:00",
            }
        )

        assert lock.created_at == START
        assert lock.reason == "Deployment in progress"


class TestAcquireLock:
    """Tests for LockManager.acquire_lock()."""

    def test_acquire_writes_lock_file(self, manager: LockManager, config: Config) -> None:
        lock = manager.acquire_lock("staging")

        data = json.loads(config.lock_file_path("staging").read_text())
        assert data["environment"] == "staging"
        assert lock.expires_at - lock.created_at == timedelta(minutes=120)

    def test_second_acquire_within_ttl_fails(self, manager: LockManager) -> None:
        """Two acquisitions inside the TTL window: the second is rejected."""
        manager.acquire_lock("staging")

        with pytest.raises(DeploymentInProgressError) as exc_info:
            manager.acquire_lock("staging")

        assert "already in progress" in str(exc_info.value)
        assert "deployguard recover staging" in str(exc_info.value)
        assert exc_info.value.remaining_minutes == 120

    def test_environments_are_independent(self, manager: LockManager) -> None:
        manager.acquire_lock("staging")

        lock = manager.acquire_lock("production")

        assert lock.environment == "production"

    def test_expired_lock_is_replaced(
        self, manager: LockManager, clock: FakeClock, config: Config
    ) -> None:
        first = manager.acquire_lock("staging")
        clock.advance(minutes=121)

        second = manager.acquire_lock("staging")

        assert second.created_at > first.created_at
        data = json.loads(config.lock_file_path("staging").read_text())
        assert data["createdAt"] == second.created_at.isoformat()

    def test_corrupt_lock_file_is_replaced(self, manager: LockManager, config: Config) -> None:
        config.lock_file_path("staging").write_text("{not json")

        lock = manager.acquire_lock("staging")

        assert lock.environment == "staging"

    def test_lost_create_race(self, manager: LockManager, config: Config) -> None:
        """A lock created by another process between read and create wins."""
        real_open = os.open

        def racing_open(path: str | Path, flags: int, mode: int = 0o777) -> int:
            winner = DeploymentLock("staging", START, START + timedelta(minutes=45))
            Path(path).write_text(json.dumps(winner.to_dict()))
            return real_open(path, flags, mode)

        with patch("deployguard.locks.os.open", side_effect=racing_open):
            with pytest.raises(DeploymentInProgressError) as exc_info:
                manager.acquire_lock("staging")

        assert exc_info.value.remaining_minutes == 45

    def test_concurrent_stale_eviction_keeps_fresh_lock(
        self, config: Config, fake_engine: FakeEngine, clock: FakeClock
    ) -> None:
        """Two deployers that both saw the same stale lock cannot both win."""
        first = LockManager(config, fake_engine, clock=clock)  # type: ignore[arg-type]
        second = LockManager(config, fake_engine, clock=clock)  # type: ignore[arg-type]
        stale = DeploymentLock("staging", START - timedelta(hours=3), START - timedelta(hours=1))
        path = config.lock_file_path("staging")
        path.write_text(json.dumps(stale.to_dict()))

        seen_by_second = second.get_file_lock("staging")
        assert seen_by_second == stale

        winner = first.acquire_lock("staging")

        with patch.object(second, "get_file_lock", return_value=seen_by_second):
            with pytest.raises(DeploymentInProgressError) as exc_info:
                second.acquire_lock("staging")

        assert exc_info.value.remaining_minutes == 120
        on_disk = DeploymentLock.from_dict(json.loads(path.read_text()))
        assert on_disk == winner
        assert not list(config.project_root.glob(f"{path.name}.stale-*"))

    def test_undecodable_lock_file_is_replaced(self, manager: LockManager, config: Config) -> None:
        config.lock_file_path("staging").write_bytes(b"\xff\xfe not utf-8")

        assert manager.get_file_lock("staging") is None
        lock = manager.acquire_lock("staging")

        assert lock.environment == "staging"

    def test_unwritable_lock_file(self, manager: LockManager) -> None:
        with patch("deployguard.locks.os.open", side_effect=PermissionError("read-only")):
            with pytest.raises(LockError) as exc_info:
                manager.acquire_lock("staging")

        assert not isinstance(exc_info.value, DeploymentInProgressError)


class TestReleaseAndStatus:
    """Tests for release, clear and status."""

    def test_release_removes_file(self, manager: LockManager, config: Config) -> None:
        lock = manager.acquire_lock("staging")

        manager.release_lock(lock)

        assert not config.lock_file_path("staging").exists()

    def test_release_is_idempotent(self, manager: LockManager) -> None:
        lock = manager.acquire_lock("staging")
        manager.release_lock(lock)

        manager.release_lock(lock)

    def test_clear_file_lock(self, manager: LockManager) -> None:
        manager.acquire_lock("staging")

        assert manager.clear_file_lock("staging") is True
        assert manager.clear_file_lock("staging") is False

    def test_status_active(self, manager: LockManager, clock: FakeClock) -> None:
        manager.acquire_lock("staging")
        clock.advance(minutes=20)

        status = manager.lock_status("staging")

        assert status.state == LockState.ACTIVE
        assert status.remaining_minutes == 100

    def test_status_stale(self, manager: LockManager, clock: FakeClock) -> None:
        manager.acquire_lock("staging")
        clock.advance(hours=3)

        assert manager.lock_status("staging").state == LockState.STALE

    def test_status_none(self, manager: LockManager) -> None:
        status = manager.lock_status("staging")

        assert status.state == LockState.NONE
        assert status.to_dict()["lock"] is None


class TestEngineStateLock:
    """Tests for detection and clearing of the engine's state lock."""

    @pytest.mark.asyncio
    async def test_detects_lock(self, manager: LockManager, fake_engine: FakeEngine) -> None:
        fake_engine.status_output = "Stage staging is locked by another update"

        assert await manager.is_engine_state_locked("staging") is True

    @pytest.mark.asyncio
    async def test_no_lock(self, manager: LockManager, fake_engine: FakeEngine) -> None:
        assert await manager.is_engine_state_locked("staging") is False

    @pytest.mark.asyncio
    async def test_status_failure_reads_as_unlocked(
        self, manager: LockManager, fake_engine: FakeEngine
    ) -> None:
        fake_engine.status_error = EngineError("Command not found: npx")

        assert await manager.is_engine_state_locked("staging") is False

    @pytest.mark.asyncio
    async def test_check_and_clean_unlocks(
        self, manager: LockManager, fake_engine: FakeEngine
    ) -> None:
        fake_engine.status_output = "Lock held since 10:42"

        detected = await manager.check_and_clean_engine_state_lock("staging")

        assert detected is True
        assert ("unlock", "staging") in fake_engine.calls

    @pytest.mark.asyncio
    async def test_check_and_clean_without_lock(
        self, manager: LockManager, fake_engine: FakeEngine
    ) -> None:
        detected = await manager.check_and_clean_engine_state_lock("staging")

        assert detected is False
        assert not fake_engine.called("unlock")

    @pytest.mark.asyncio
    async def test_clear_never_raises(
        self, config: Config, clock: FakeClock
    ) -> None:
        class FailingUnlockEngine(FakeEngine):
            async def unlock(self, stage: str):  # type: ignore[no-untyped-def]
                raise EngineError("engine crashed")

        manager = LockManager(config, FailingUnlockEngine(), clock=clock)  # type: ignore[arg-type]

        assert await manager.clear_engine_state_lock("staging") is False

    @pytest.mark.asyncio
    async def test_stage_mapping(self, config: Config, fake_engine: FakeEngine) -> None:
        manager = LockManager(
            config,
            fake_engine,  # type: ignore[arg-type]
            stage_for=lambda env: "prod" if env == "production" else env,
        )

        await manager.clear_engine_state_lock("production")

        assert ("unlock", "prod") in fake_engine.calls
