"""Progressive traffic shift state machine.

Tracks a percentage-based cutover from a blue (current) to a green (new)
version per deployment id. State is held in memory for the lifetime of the
process; ids are fully independent of each other.

Every change to current_percentage appends exactly one TrafficShiftEvent,
so the history doubles as an ordered audit log of the rollout.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .models import TrafficShiftSettings

logger = logging.getLogger(__name__)

DEFAULT_INCREMENT_PERCENTAGE = 25
DEFAULT_FINAL_PERCENTAGE = 100
DEFAULT_INTERVAL_SECONDS = 300


class ShiftStatus(str, Enum):
    """Lifecycle of a traffic shift."""

    STARTING = "starting"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    ROLLED_BACK = "rolled-back"


class ShiftNotFoundError(KeyError):
    """Raised for operations on a deployment id with no shift state."""

    def __init__(self, deployment_id: str) -> None:
        self.deployment_id = deployment_id
        super().__init__(f"Shift {deployment_id} not found")

    def __str__(self) -> str:
        return f"Shift {self.deployment_id} not found"


def _validate_percentage(name: str, value: int) -> None:
    if not 0 <= value <= 100:
        raise ValueError(f"{name} must be between 0 and 100, got {value}")


@dataclass(frozen=True)
class TrafficShiftConfig:
    """Progression parameters for one shift."""

    initial_percentage: int
    increment_percentage: int = DEFAULT_INCREMENT_PERCENTAGE
    interval_seconds: int = DEFAULT_INTERVAL_SECONDS
    final_percentage: int = DEFAULT_FINAL_PERCENTAGE

    def __post_init__(self) -> None:
        _validate_percentage("initial_percentage", self.initial_percentage)
        _validate_percentage("final_percentage", self.final_percentage)
        if self.increment_percentage < 1:
            raise ValueError("increment_percentage must be at least 1")
        if self.interval_seconds < 0:
            raise ValueError("interval_seconds cannot be negative")

    @classmethod
    def from_settings(cls, settings: TrafficShiftSettings) -> TrafficShiftConfig:
        return cls(
            initial_percentage=settings.initial_percentage,
            increment_percentage=settings.increment_percentage,
            interval_seconds=settings.interval_seconds,
            final_percentage=settings.final_percentage,
        )


@dataclass(frozen=True)
class TrafficShiftEvent:
    """One change of the green percentage."""

    timestamp: datetime
    from_percentage: int
    to_percentage: int
    reason: str
    success: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "from_percentage": self.from_percentage,
            "to_percentage": self.to_percentage,
            "reason": self.reason,
            "success": self.success,
        }


@dataclass
class TrafficShiftState:
    """Rollout state for one deployment id."""

    deployment_id: str
    blue_version: str
    green_version: str
    current_percentage: int
    status: ShiftStatus
    start_time: datetime
    last_update_time: datetime
    history: list[TrafficShiftEvent] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "deployment_id": self.deployment_id,
            "blue_version": self.blue_version,
            "green_version": self.green_version,
            "current_percentage": self.current_percentage,
            "status": self.status.value,
            "start_time": self.start_time.isoformat(),
            "last_update_time": self.last_update_time.isoformat(),
            "history": [e.to_dict() for e in self.history],
        }


@dataclass(frozen=True)
class ShiftSummary:
    """Projection of a shift's state and history."""

    current_percentage: int
    status: ShiftStatus
    duration_seconds: float
    events_count: int
    success_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "current_percentage": self.current_percentage,
            "status": self.status.value,
            "duration_seconds": self.duration_seconds,
            "events_count": self.events_count,
            "success_count": self.success_count,
        }


class TrafficShifter:
    """In-memory traffic shift state machine.

    Usage:
        shifter = TrafficShifter()
        shifter.start_shift("d1", "1.0", "1.1", TrafficShiftConfig(initial_percentage=10))
        while (target := shifter.get_next_target("d1", config)) is not None:
            shifter.update_traffic("d1", target, "health checks passed")
    """

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or (lambda: datetime.now(UTC))
        self._shifts: dict[str, TrafficShiftState] = {}

    def _require(self, deployment_id: str) -> TrafficShiftState:
        state = self._shifts.get(deployment_id)
        if state is None:
            raise ShiftNotFoundError(deployment_id)
        return state

    def _record(
        self, state: TrafficShiftState, to_percentage: int, reason: str, success: bool = True
    ) -> None:
        now = self._clock()
        state.history.append(
            TrafficShiftEvent(
                timestamp=now,
                from_percentage=state.current_percentage,
                to_percentage=to_percentage,
                reason=reason,
                success=success,
            )
        )
        state.current_percentage = to_percentage
        state.last_update_time = now

    def start_shift(
        self,
        deployment_id: str,
        blue_version: str,
        green_version: str,
        config: TrafficShiftConfig,
    ) -> TrafficShiftState:
        """Start a shift at the configured initial percentage."""
        if deployment_id in self._shifts:
            logger.warning(
                "Replacing existing traffic shift", extra={"deployment_id": deployment_id}
            )

        now = self._clock()
        state = TrafficShiftState(
            deployment_id=deployment_id,
            blue_version=blue_version,
            green_version=green_version,
            current_percentage=0,
            status=ShiftStatus.STARTING,
            start_time=now,
            last_update_time=now,
        )
        self._record(state, config.initial_percentage, "Initial canary traffic shift")
        self._shifts[deployment_id] = state

        logger.info(
            "Traffic shift started",
            extra={
                "deployment_id": deployment_id,
                "blue_version": blue_version,
                "green_version": green_version,
                "initial_percentage": config.initial_percentage,
            },
        )
        return state

    def get_state(self, deployment_id: str) -> TrafficShiftState:
        return self._require(deployment_id)

    def get_next_target(self, deployment_id: str, config: TrafficShiftConfig) -> int | None:
        """Next green percentage, or None once the final percentage is reached."""
        state = self._require(deployment_id)
        final = config.final_percentage
        if state.current_percentage >= final:
            return None
        return min(state.current_percentage + config.increment_percentage, final)

    def update_traffic(
        self, deployment_id: str, new_percentage: int, reason: str
    ) -> TrafficShiftState:
        """Move green traffic to a new percentage.

        Raises:
            ValueError: If new_percentage is outside 0..100. State is unchanged.
            ShiftNotFoundError: If the deployment id is unknown.
        """
        state = self._require(deployment_id)
        _validate_percentage("new_percentage", new_percentage)

        previous = state.current_percentage
        self._record(state, new_percentage, reason)
        state.status = ShiftStatus.COMPLETED if new_percentage == 100 else ShiftStatus.IN_PROGRESS

        logger.info(
            "Traffic updated",
            extra={
                "deployment_id": deployment_id,
                "from_percentage": previous,
                "to_percentage": new_percentage,
                "status": state.status.value,
                "reason": reason,
            },
        )
        return state

    def rollback(self, deployment_id: str, reason: str) -> TrafficShiftState:
        """Send all traffic back to blue. Succeeds from any state."""
        state = self._require(deployment_id)
        previous = state.current_percentage
        self._record(state, 0, reason)
        state.status = ShiftStatus.ROLLED_BACK

        logger.warning(
            "Traffic rolled back",
            extra={"deployment_id": deployment_id, "from_percentage": previous, "reason": reason},
        )
        return state

    def time_since_last_update(self, deployment_id: str) -> float:
        """Seconds since the last percentage change."""
        state = self._require(deployment_id)
        return (self._clock() - state.last_update_time).total_seconds()

    def is_ready_for_next_increment(self, deployment_id: str, interval_seconds: int) -> bool:
        return self.time_since_last_update(deployment_id) >= interval_seconds

    def get_summary(self, deployment_id: str) -> ShiftSummary:
        state = self._require(deployment_id)
        return ShiftSummary(
            current_percentage=state.current_percentage,
            status=state.status,
            duration_seconds=(state.last_update_time - state.start_time).total_seconds(),
            events_count=len(state.history),
            success_count=sum(1 for e in state.history if e.success),
        )

    def clear(self, deployment_id: str) -> None:
        """Forget a shift's state."""
        self._require(deployment_id)
        del self._shifts[deployment_id]


@dataclass(frozen=True)
class OriginWeights:
    """Weighted-origin split between blue and green. Always sums to 100."""

    blue_weight: int
    green_weight: int

    def to_dict(self) -> dict[str, int]:
        return {"blue": self.blue_weight, "green": self.green_weight}


class CloudFrontTrafficShifter(TrafficShifter):
    """Traffic shifter that expresses percentages as CDN origin weights."""

    def apply_to_cloudfront(self, distribution_id: str, green_percentage: int) -> OriginWeights:
        """Compute the origin weights for a green percentage."""
        _validate_percentage("green_percentage", green_percentage)
        weights = OriginWeights(blue_weight=100 - green_percentage, green_weight=green_percentage)
        logger.info(
            "Computed origin weights",
            extra={"distribution_id": distribution_id, **weights.to_dict()},
        )
        return weights

    def weights_for(self, deployment_id: str, distribution_id: str) -> OriginWeights:
        state = self._require(deployment_id)
        return self.apply_to_cloudfront(distribution_id, state.current_percentage)
