"""Progressive rollout driver.

Walks a traffic shift from its initial to its final percentage, checking a
health gate before every step and rolling back to 0% when it fails.

Origin weights are published to the environment's CloudFront KeyValueStore
under TRAFFIC_WEIGHTS_KEY, where the edge function picks the origin per
request. Each publish is a single ETag-guarded PutKey call.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Protocol

from .cloud import AWS_ERRORS, CloudControlPlane, classify_aws_error
from .traffic import CloudFrontTrafficShifter, OriginWeights, ShiftSummary, TrafficShiftConfig

logger = logging.getLogger(__name__)

TRAFFIC_WEIGHTS_KEY = "traffic-weights"


class RolloutError(Exception):
    """Raised when a rollout is aborted and traffic was rolled back."""

    def __init__(self, message: str, summary: ShiftSummary) -> None:
        super().__init__(message)
        self.summary = summary


@dataclass(frozen=True)
class HealthVerdict:
    healthy: bool
    reason: str
    error_rate: float | None = None


class HealthGate(Protocol):
    async def check(self, environment: str, green_percentage: int) -> HealthVerdict: ...


class TrafficRouter(Protocol):
    async def apply(self, environment: str, weights: OriginWeights) -> None: ...


class CloudWatchHealthGate:
    """Healthy while the distribution's 5xx error rate stays under a threshold."""

    def __init__(
        self,
        cloud: CloudControlPlane,
        distribution_id: str,
        *,
        max_error_rate: float,
        window_seconds: int,
    ) -> None:
        self._cloud = cloud
        self._distribution_id = distribution_id
        self._max_error_rate = max_error_rate
        self._window_seconds = window_seconds

    async def check(self, environment: str, green_percentage: int) -> HealthVerdict:
        try:
            rate = await self._cloud.get_distribution_error_rate(
                self._distribution_id, self._window_seconds
            )
        except AWS_ERRORS as e:
            info = classify_aws_error(e)
            return HealthVerdict(False, f"error rate unavailable ({info.kind.value})")

        if rate is None:
            return HealthVerdict(True, "no traffic datapoints yet")
        if rate > self._max_error_rate:
            return HealthVerdict(
                False,
                f"5xx error rate {rate:.1f}% exceeds threshold {self._max_error_rate}%",
                rate,
            )
        return HealthVerdict(True, f"5xx error rate {rate:.1f}%", rate)


class KvsTrafficRouter:
    """Publishes origin weights to a CloudFront KeyValueStore."""

    def __init__(self, cloud: CloudControlPlane, kvs_arn: str) -> None:
        self._cloud = cloud
        self._kvs_arn = kvs_arn

    async def apply(self, environment: str, weights: OriginWeights) -> None:
        await self._cloud.put_key_value(
            self._kvs_arn, TRAFFIC_WEIGHTS_KEY, json.dumps(weights.to_dict())
        )


class ProgressiveRollout:
    """Drives a CloudFrontTrafficShifter through a health-gated progression."""

    def __init__(
        self,
        shifter: CloudFrontTrafficShifter,
        router: TrafficRouter,
        gate: HealthGate,
        *,
        distribution_id: str,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._shifter = shifter
        self._router = router
        self._gate = gate
        self._distribution_id = distribution_id
        self._sleep = sleep

    async def _publish(self, environment: str, green_percentage: int) -> None:
        weights = self._shifter.apply_to_cloudfront(self._distribution_id, green_percentage)
        await self._router.apply(environment, weights)

    async def _abort(self, deployment_id: str, environment: str, reason: str) -> RolloutError:
        self._shifter.rollback(deployment_id, reason)
        try:
            await self._publish(environment, 0)
        except AWS_ERRORS as e:
            logger.error(
                "Failed to publish rollback weights",
                extra={"deployment_id": deployment_id, "error": str(e)},
            )
        return RolloutError(reason, self._shifter.get_summary(deployment_id))

    async def run(
        self,
        deployment_id: str,
        environment: str,
        blue_version: str,
        green_version: str,
        config: TrafficShiftConfig,
    ) -> ShiftSummary:
        """Run the rollout to completion.

        Raises:
            RolloutError: If the health gate rejected a step or weights could
                not be published. Traffic has been rolled back to 0%.
        """
        try:
            await self._publish(environment, config.initial_percentage)
        except AWS_ERRORS as e:
            self._shifter.start_shift(deployment_id, blue_version, green_version, config)
            raise await self._abort(
                deployment_id, environment, f"Failed to publish initial weights: {e}"
            ) from e
        self._shifter.start_shift(deployment_id, blue_version, green_version, config)

        while True:
            await self._sleep(config.interval_seconds)

            current = self._shifter.get_state(deployment_id).current_percentage
            verdict = await self._gate.check(environment, current)
            if not verdict.healthy:
                raise await self._abort(
                    deployment_id, environment, f"Health gate failed: {verdict.reason}"
                )

            target = self._shifter.get_next_target(deployment_id, config)
            if target is None:
                break

            try:
                await self._publish(environment, target)
            except AWS_ERRORS as e:
                raise await self._abort(
                    deployment_id, environment, f"Failed to publish weights: {e}"
                ) from e
            self._shifter.update_traffic(deployment_id, target, f"Healthy: {verdict.reason}")

        summary = self._shifter.get_summary(deployment_id)
        logger.info(
            "Rollout finished",
            extra={"deployment_id": deployment_id, "environment": environment, **summary.to_dict()},
        )
        return summary
