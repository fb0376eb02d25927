"""Observed cloud state for one environment.

A snapshot is collected from the control plane after a deploy and cached
per (project, environment) with a short TTL to bound API call volume.

Collection never raises for cloud errors. A facet that could not be
queried is recorded in ObservedState.unavailable so reconciliation can
tell "absent" apart from "unknown": only the former is evidence of a
problem.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .cloud import AWS_ERRORS, CloudControlPlane, classify_aws_error
from .config import DEFAULT_STATE_CACHE_TTL_SECONDS

logger = logging.getLogger(__name__)


class Facet(str, Enum):
    """Independently queried parts of the observed state."""

    DISTRIBUTION = "distribution"
    CERTIFICATE = "certificate"
    FUNCTION = "function"
    FUNCTION_URL = "function_url"
    KEY_VALUE_STORE = "key_value_store"


@dataclass
class ObservedState:
    """Snapshot of live cloud resources for one environment."""

    environment: str
    collected_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    # CDN
    distribution_id: str | None = None
    distribution_domain: str | None = None
    origin_domain: str | None = None
    origin_protocol_policy: str | None = None

    # TLS
    certificate_arn: str | None = None
    certificate_status: str | None = None
    certificate_domain: str | None = None

    # Compute
    function_name: str | None = None
    function_url: str | None = None

    # Edge key-value store
    kvs_arn: str | None = None
    kvs_item_count: int | None = None

    unavailable: set[Facet] = field(default_factory=set)

    def is_available(self, facet: Facet) -> bool:
        return facet not in self.unavailable

    @property
    def complete(self) -> bool:
        return not self.unavailable

    def to_dict(self) -> dict[str, Any]:
        return {
            "environment": self.environment,
            "collected_at": self.collected_at.isoformat(),
            "distribution_id": self.distribution_id,
            "distribution_domain": self.distribution_domain,
            "origin_domain": self.origin_domain,
            "origin_protocol_policy": self.origin_protocol_policy,
            "certificate_arn": self.certificate_arn,
            "certificate_status": self.certificate_status,
            "certificate_domain": self.certificate_domain,
            "function_name": self.function_name,
            "function_url": self.function_url,
            "kvs_arn": self.kvs_arn,
            "kvs_item_count": self.kvs_item_count,
            "unavailable": sorted(f.value for f in self.unavailable),
        }


class ObservedStateCache:
    """Per (project, environment) snapshot cache with lazy TTL eviction.

    Expired entries are dropped when read; purge_expired() sweeps the rest.
    """

    def __init__(
        self,
        ttl_seconds: int = DEFAULT_STATE_CACHE_TTL_SECONDS,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._ttl_seconds = ttl_seconds
        self._clock = clock or time.monotonic
        self._entries: dict[str, tuple[ObservedState, float]] = {}

    @staticmethod
    def key(project: str, environment: str) -> str:
        return f"{project or 'app'}-{environment}"

    def _expired(self, stored_at: float) -> bool:
        return self._clock() - stored_at >= self._ttl_seconds

    def get(self, project: str, environment: str) -> ObservedState | None:
        key = self.key(project, environment)
        entry = self._entries.get(key)
        if entry is None:
            return None
        state, stored_at = entry
        if self._expired(stored_at):
            del self._entries[key]
            return None
        return state

    def put(self, project: str, environment: str, state: ObservedState) -> None:
        self._entries[self.key(project, environment)] = (state, self._clock())

    def invalidate(self, project: str, environment: str) -> bool:
        """Drop one entry. Returns True if it existed."""
        return self._entries.pop(self.key(project, environment), None) is not None

    def purge_expired(self) -> int:
        """Drop all expired entries. Returns the number removed."""
        expired = [k for k, (_, stored_at) in self._entries.items() if self._expired(stored_at)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


def _record_unavailable(
    state: ObservedState, facet: Facet, operation: str, error: BaseException
) -> None:
    info = classify_aws_error(error)
    state.unavailable.add(facet)
    extra = {
        "environment": state.environment,
        "facet": facet.value,
        "operation": operation,
        "error_kind": info.kind.value,
        "error_code": info.code,
    }
    if info.transient:
        logger.info(f"{operation} not available yet, skipping dependent checks", extra=extra)
    else:
        logger.warning(f"{operation} failed, skipping dependent checks", extra=extra)


async def collect_observed_state(
    cloud: CloudControlPlane,
    *,
    environment: str,
    domain: str | None,
    function_prefix: str,
) -> ObservedState:
    """Query the control plane for an environment's live resources.

    Args:
        cloud: Control plane facade.
        environment: Environment name.
        domain: Public domain; the distribution is found by this alias.
        function_prefix: Lambda name prefix, "<project>-<stage>-".
    """
    state = ObservedState(environment=environment)
    dist_config: dict[str, Any] | None = None

    if domain:
        try:
            summary = await cloud.find_distribution_by_alias(domain)
            if summary is not None:
                state.distribution_id = summary["Id"]
                state.distribution_domain = summary.get("DomainName")
                dist_config, _ = await cloud.get_distribution_config(summary["Id"])
        except AWS_ERRORS as e:
            _record_unavailable(state, Facet.DISTRIBUTION, "Distribution lookup", e)
            state.unavailable.update({Facet.CERTIFICATE, Facet.KEY_VALUE_STORE})

    if dist_config is not None:
        origins = dist_config.get("Origins", {}).get("Items", []) or []
        if origins:
            first = origins[0]
            state.origin_domain = first.get("DomainName")
            custom = first.get("CustomOriginConfig") or {}
            state.origin_protocol_policy = custom.get("OriginProtocolPolicy")

        cert_arn = (dist_config.get("ViewerCertificate") or {}).get("ACMCertificateArn")
        if cert_arn:
            state.certificate_arn = cert_arn
            try:
                cert = await cloud.describe_certificate(cert_arn)
                state.certificate_status = cert.get("Status")
                state.certificate_domain = cert.get("DomainName")
            except AWS_ERRORS as e:
                _record_unavailable(state, Facet.CERTIFICATE, "Certificate lookup", e)

        await _collect_key_value_store(cloud, state, dist_config)

    try:
        function = await cloud.find_function(function_prefix)
        if function is not None:
            state.function_name = function["FunctionName"]
    except AWS_ERRORS as e:
        _record_unavailable(state, Facet.FUNCTION, "Function lookup", e)
        state.unavailable.add(Facet.FUNCTION_URL)

    if state.function_name:
        try:
            state.function_url = await cloud.get_function_url(state.function_name)
        except AWS_ERRORS as e:
            _record_unavailable(state, Facet.FUNCTION_URL, "Function URL lookup", e)

    logger.info(
        "Observed state collected",
        extra={
            "environment": environment,
            "distribution_id": state.distribution_id,
            "function_name": state.function_name,
            "unavailable": sorted(f.value for f in state.unavailable),
        },
    )
    return state


async def _collect_key_value_store(
    cloud: CloudControlPlane, state: ObservedState, dist_config: dict[str, Any]
) -> None:
    """Resolve the KVS behind the default behavior's CloudFront Function."""
    behavior = dist_config.get("DefaultCacheBehavior") or {}
    associations = (behavior.get("FunctionAssociations") or {}).get("Items", []) or []
    if not associations:
        return

    function_name = str(associations[0]["FunctionARN"]).rsplit("/", 1)[-1]
    try:
        kvs_arn = await cloud.get_function_kvs_arn(function_name)
        if kvs_arn is None:
            store = await cloud.find_key_value_store(function_name)
            kvs_arn = store["ARN"] if store else None
        if kvs_arn is None:
            return
        state.kvs_arn = kvs_arn
        described = await cloud.describe_key_value_store(kvs_arn)
        item_count = described.get("ItemCount")
        state.kvs_item_count = int(item_count) if item_count is not None else None
    except AWS_ERRORS as e:
        _record_unavailable(state, Facet.KEY_VALUE_STORE, "KeyValueStore lookup", e)
