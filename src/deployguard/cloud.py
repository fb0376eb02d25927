"""AWS control plane access for reconciliation, fixes and rollouts.

Wraps boto3 clients for CloudFront, CloudFront KeyValueStore, Lambda, ACM,
CloudWatch and STS behind async methods. boto3 is blocking, so every call
runs in the default executor with a bounded timeout.

ERROR MODEL:
- Every botocore error is classified into an AwsErrorKind
- Only throttling is retried, with exponential backoff and jitter
- Everything else surfaces immediately to the caller, which decides
  whether it is an issue, a transient non-issue, or a failure
"""

from __future__ import annotations

import asyncio
import functools
import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from boto3.session import Session
from botocore.config import Config as BotoConfig
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    NoCredentialsError,
    ReadTimeoutError,
)

from .config import MAX_RETRY_BACKOFF_SECONDS, RETRY_BACKOFF_BASE_SECONDS, Config

logger = logging.getLogger(__name__)

# ACM certificates used by CloudFront and CloudFront metrics live here
GLOBAL_SERVICES_REGION = "us-east-1"

FUNCTION_URL_CORS = {
    "AllowOrigins": ["*"],
    "AllowMethods": ["*"],
    "AllowHeaders": ["*"],
    "MaxAge": 86400,
}
FUNCTION_URL_PERMISSION_STATEMENT = "FunctionURLAllowPublicAccess"

RETRY_JITTER_RATIO = 0.25


class AwsErrorKind(str, Enum):
    """Classification of AWS API failures."""

    ACCESS_DENIED = "access-denied"
    NOT_FOUND = "not-found"
    THROTTLING = "throttling"
    INVALID_INPUT = "invalid-input"
    SERVICE_UNAVAILABLE = "service-unavailable"
    DISTRIBUTION_NOT_READY = "distribution-not-ready"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


# Expected during the propagation window right after a deploy
TRANSIENT_ERROR_KINDS = frozenset(
    {
        AwsErrorKind.THROTTLING,
        AwsErrorKind.NOT_FOUND,
        AwsErrorKind.DISTRIBUTION_NOT_READY,
        AwsErrorKind.SERVICE_UNAVAILABLE,
        AwsErrorKind.TIMEOUT,
    }
)

ERROR_CODE_KINDS: dict[str, AwsErrorKind] = {
    "AccessDenied": AwsErrorKind.ACCESS_DENIED,
    "AccessDeniedException": AwsErrorKind.ACCESS_DENIED,
    "UnauthorizedOperation": AwsErrorKind.ACCESS_DENIED,
    "ExpiredToken": AwsErrorKind.ACCESS_DENIED,
    "NoSuchEntity": AwsErrorKind.NOT_FOUND,
    "ResourceNotFoundException": AwsErrorKind.NOT_FOUND,
    "FunctionUrlConfigNotFound": AwsErrorKind.NOT_FOUND,
    "NoSuchFunctionExists": AwsErrorKind.NOT_FOUND,
    "EntityNotFound": AwsErrorKind.NOT_FOUND,
    "Throttling": AwsErrorKind.THROTTLING,
    "ThrottlingException": AwsErrorKind.THROTTLING,
    "TooManyRequests": AwsErrorKind.THROTTLING,
    "TooManyRequestsException": AwsErrorKind.THROTTLING,
    "RequestLimitExceeded": AwsErrorKind.THROTTLING,
    "InvalidParameterValue": AwsErrorKind.INVALID_INPUT,
    "InvalidParameterValueException": AwsErrorKind.INVALID_INPUT,
    "InvalidArgument": AwsErrorKind.INVALID_INPUT,
    "ValidationException": AwsErrorKind.INVALID_INPUT,
    "ServiceUnavailable": AwsErrorKind.SERVICE_UNAVAILABLE,
    "ServiceUnavailableException": AwsErrorKind.SERVICE_UNAVAILABLE,
    "InternalError": AwsErrorKind.SERVICE_UNAVAILABLE,
    "InternalServerError": AwsErrorKind.SERVICE_UNAVAILABLE,
    "InvalidDistribution": AwsErrorKind.DISTRIBUTION_NOT_READY,
    "NoSuchDistribution": AwsErrorKind.DISTRIBUTION_NOT_READY,
}


@dataclass(frozen=True)
class AwsErrorInfo:
    """Classified AWS error."""

    kind: AwsErrorKind
    code: str
    message: str

    @property
    def transient(self) -> bool:
        return self.kind in TRANSIENT_ERROR_KINDS


def classify_aws_error(error: BaseException) -> AwsErrorInfo:
    """Classify an exception raised by a boto3 call."""
    if isinstance(error, ClientError):
        err = error.response.get("Error", {})
        code = str(err.get("Code", ""))
        message = str(err.get("Message", str(error)))
        kind = ERROR_CODE_KINDS.get(code)
        if kind is None:
            status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
            if status == 429:
                kind = AwsErrorKind.THROTTLING
            elif status >= 500:
                kind = AwsErrorKind.SERVICE_UNAVAILABLE
            elif "Throttl" in code:
                kind = AwsErrorKind.THROTTLING
            elif code.endswith("NotFound") or code.startswith("NoSuch"):
                kind = AwsErrorKind.NOT_FOUND
            else:
                kind = AwsErrorKind.UNKNOWN
        return AwsErrorInfo(kind=kind, code=code, message=message)

    if isinstance(error, TimeoutError | ConnectTimeoutError | ReadTimeoutError):
        return AwsErrorInfo(kind=AwsErrorKind.TIMEOUT, code="Timeout", message=str(error))

    if isinstance(error, NoCredentialsError):
        return AwsErrorInfo(
            kind=AwsErrorKind.ACCESS_DENIED, code="NoCredentials", message=str(error)
        )

    if isinstance(error, EndpointConnectionError):
        return AwsErrorInfo(
            kind=AwsErrorKind.SERVICE_UNAVAILABLE, code="EndpointConnection", message=str(error)
        )

    return AwsErrorInfo(kind=AwsErrorKind.UNKNOWN, code=type(error).__name__, message=str(error))


# Exceptions that classify_aws_error understands
AWS_ERRORS: tuple[type[BaseException], ...] = (BotoCoreError, ClientError, TimeoutError)


def _error_code(error: ClientError) -> str:
    return str(error.response.get("Error", {}).get("Code", ""))


class CloudControlPlane:
    """Async facade over the AWS APIs this tool queries and mutates.

    Usage:
        cloud = CloudControlPlane(config, region="eu-west-1", profile="prod")
        summary = await cloud.find_distribution_by_alias("staging.example.com")
    """

    def __init__(
        self,
        config: Config,
        *,
        region: str,
        profile: str | None = None,
        session: Session | None = None,
        backoff_base_seconds: float = RETRY_BACKOFF_BASE_SECONDS,
    ) -> None:
        """Initialize the control plane.

        Args:
            config: Operator configuration (timeouts, retry attempts).
            region: Region of regional resources (Lambda).
            profile: AWS profile name; None uses the default credential chain.
            session: Pre-built boto3 session.
            backoff_base_seconds: Base delay for throttling backoff.
        """
        self._config = config
        self._region = region
        self._session = session or Session(profile_name=profile, region_name=region)
        self._backoff_base_seconds = backoff_base_seconds
        self._clients: dict[tuple[str, str], Any] = {}
        self._boto_config = BotoConfig(
            connect_timeout=config.aws_command_timeout_seconds,
            read_timeout=config.aws_mutation_timeout_seconds,
            retries={"max_attempts": 1, "mode": "standard"},
        )

    @property
    def region(self) -> str:
        return self._region

    def _client(self, service: str, region: str | None = None) -> Any:
        key = (service, region or self._region)
        client = self._clients.get(key)
        if client is None:
            client = self._session.client(service, region_name=key[1], config=self._boto_config)
            self._clients[key] = client
        return client

    async def _call(
        self,
        operation_name: str,
        func: Callable[..., Any],
        /,
        *,
        mutation: bool = False,
        **kwargs: Any,
    ) -> Any:
        """Run a blocking boto3 call with timeout and throttling retry.

        Raises:
            ClientError, BotoCoreError: Non-throttling errors, or throttling
                after the final attempt.
            TimeoutError: If a single attempt exceeds its timeout.
        """
        timeout = (
            self._config.aws_mutation_timeout_seconds
            if mutation
            else self._config.aws_command_timeout_seconds
        )
        max_attempts = self._config.max_aws_retries
        loop = asyncio.get_running_loop()

        for attempt in range(1, max_attempts + 1):
            try:
                return await asyncio.wait_for(
                    loop.run_in_executor(None, functools.partial(func, **kwargs)),
                    timeout=timeout,
                )
            except TimeoutError:
                logger.error(
                    f"{operation_name} timed out",
                    extra={"operation": operation_name, "timeout_seconds": timeout},
                )
                raise
            except ClientError as e:
                info = classify_aws_error(e)
                if info.kind != AwsErrorKind.THROTTLING or attempt >= max_attempts:
                    raise

                backoff = min(
                    self._backoff_base_seconds * (2 ** (attempt - 1)), MAX_RETRY_BACKOFF_SECONDS
                )
                jitter = random.uniform(-RETRY_JITTER_RATIO, RETRY_JITTER_RATIO) * backoff
                wait_time = max(0.0, backoff + jitter)

                logger.warning(
                    "AWS call throttled, retrying",
                    extra={
                        "operation": operation_name,
                        "attempt": attempt,
                        "max_attempts": max_attempts,
                        "wait_seconds": wait_time,
                        "error_code": info.code,
                    },
                )
                await asyncio.sleep(wait_time)

        # Unreachable: the last attempt either returns or raises
        raise AssertionError("Retry loop completed without result")

    # -------------------------------------------------------------------------
    # CloudFront
    # -------------------------------------------------------------------------

    async def find_distribution_by_alias(self, domain: str) -> dict[str, Any] | None:
        """Find the distribution serving a domain alias.

        Returns:
            The distribution summary, or None if no distribution has the alias.
        """
        client = self._client("cloudfront", GLOBAL_SERVICES_REGION)

        def scan() -> dict[str, Any] | None:
            paginator = client.get_paginator("list_distributions")
            for page in paginator.paginate():
                for item in page.get("DistributionList", {}).get("Items", []) or []:
                    aliases = item.get("Aliases", {}).get("Items", []) or []
                    if domain in aliases:
                        return dict(item)
            return None

        result: dict[str, Any] | None = await self._call("ListDistributions", scan)
        return result

    async def get_distribution_config(self, distribution_id: str) -> tuple[dict[str, Any], str]:
        """Get a distribution config and its ETag."""
        client = self._client("cloudfront", GLOBAL_SERVICES_REGION)
        response = await self._call(
            "GetDistributionConfig", client.get_distribution_config, Id=distribution_id
        )
        return response["DistributionConfig"], response["ETag"]

    async def update_distribution(
        self,
        distribution_id: str,
        mutate: Callable[[dict[str, Any]], None],
    ) -> None:
        """Read-modify-write a distribution config.

        The write is guarded by the ETag from the read (IfMatch), so a
        concurrent change makes the update fail instead of being lost.

        Args:
            distribution_id: Distribution to update.
            mutate: Edits the config dict in place.
        """
        client = self._client("cloudfront", GLOBAL_SERVICES_REGION)
        dist_config, etag = await self.get_distribution_config(distribution_id)
        mutate(dist_config)
        await self._call(
            "UpdateDistribution",
            client.update_distribution,
            mutation=True,
            DistributionConfig=dist_config,
            Id=distribution_id,
            IfMatch=etag,
        )
        logger.info("Distribution updated", extra={"distribution_id": distribution_id})

    async def create_invalidation(
        self, distribution_id: str, paths: list[str] | None = None
    ) -> str:
        """Invalidate CDN cache paths.

        Returns:
            The invalidation id.
        """
        paths = paths or ["/*"]
        client = self._client("cloudfront", GLOBAL_SERVICES_REGION)
        response = await self._call(
            "CreateInvalidation",
            client.create_invalidation,
            mutation=True,
            DistributionId=distribution_id,
            InvalidationBatch={
                "Paths": {"Quantity": len(paths), "Items": paths},
                "CallerReference": f"deployguard-{time.time_ns()}",
            },
        )
        invalidation_id = str(response["Invalidation"]["Id"])
        logger.info(
            "Cache invalidation created",
            extra={"distribution_id": distribution_id, "invalidation_id": invalidation_id},
        )
        return invalidation_id

    async def get_function_kvs_arn(self, function_name: str) -> str | None:
        """Get the KeyValueStore associated with a CloudFront Function."""
        client = self._client("cloudfront", GLOBAL_SERVICES_REGION)
        response = await self._call(
            "DescribeFunction", client.describe_function, Name=function_name, Stage="LIVE"
        )
        config = response.get("FunctionSummary", {}).get("FunctionConfig", {})
        items = config.get("KeyValueStoreAssociations", {}).get("Items", []) or []
        if items:
            return str(items[0]["KeyValueStoreARN"])
        return None

    async def find_key_value_store(self, name: str) -> dict[str, Any] | None:
        """Find a KeyValueStore by name."""
        client = self._client("cloudfront", GLOBAL_SERVICES_REGION)

        def scan() -> dict[str, Any] | None:
            marker: str | None = None
            while True:
                kwargs = {"Marker": marker} if marker else {}
                page = client.list_key_value_stores(**kwargs)
                store_list = page.get("KeyValueStoreList", {})
                for item in store_list.get("Items", []) or []:
                    if item.get("Name") == name:
                        return dict(item)
                marker = store_list.get("NextMarker")
                if not marker:
                    return None

        result: dict[str, Any] | None = await self._call("ListKeyValueStores", scan)
        return result

    async def describe_key_value_store(self, kvs_arn: str) -> dict[str, Any]:
        """Describe KeyValueStore contents (item count, ETag)."""
        client = self._client("cloudfront-keyvaluestore", GLOBAL_SERVICES_REGION)
        response: dict[str, Any] = await self._call(
            "DescribeKeyValueStore", client.describe_key_value_store, KvsARN=kvs_arn
        )
        return response

    async def put_key_value(self, kvs_arn: str, key: str, value: str) -> None:
        """Write one KeyValueStore key, guarded by the store's ETag."""
        client = self._client("cloudfront-keyvaluestore", GLOBAL_SERVICES_REGION)
        described = await self.describe_key_value_store(kvs_arn)
        await self._call(
            "PutKey",
            client.put_key,
            mutation=True,
            KvsARN=kvs_arn,
            Key=key,
            Value=value,
            IfMatch=described["ETag"],
        )

    # -------------------------------------------------------------------------
    # Lambda
    # -------------------------------------------------------------------------

    async def find_function(self, name_prefix: str) -> dict[str, Any] | None:
        """Find the first Lambda function whose name starts with a prefix."""
        client = self._client("lambda")

        def scan() -> dict[str, Any] | None:
            paginator = client.get_paginator("list_functions")
            for page in paginator.paginate():
                for function in page.get("Functions", []):
                    if function.get("FunctionName", "").startswith(name_prefix):
                        return dict(function)
            return None

        result: dict[str, Any] | None = await self._call("ListFunctions", scan)
        return result

    async def get_function_url(self, function_name: str) -> str | None:
        """Get a function's URL, or None if it has no URL config."""
        client = self._client("lambda")
        try:
            response = await self._call(
                "GetFunctionUrlConfig", client.get_function_url_config, FunctionName=function_name
            )
        except ClientError as e:
            if classify_aws_error(e).kind == AwsErrorKind.NOT_FOUND:
                return None
            raise
        return str(response["FunctionUrl"])

    async def create_function_url(self, function_name: str) -> str:
        """Create a public function URL and its invoke permission.

        Returns:
            The new function URL.
        """
        client = self._client("lambda")
        response = await self._call(
            "CreateFunctionUrlConfig",
            client.create_function_url_config,
            mutation=True,
            FunctionName=function_name,
            AuthType="NONE",
            Cors=FUNCTION_URL_CORS,
        )
        try:
            await self._call(
                "AddPermission",
                client.add_permission,
                mutation=True,
                FunctionName=function_name,
                StatementId=FUNCTION_URL_PERMISSION_STATEMENT,
                Action="lambda:InvokeFunctionUrl",
                Principal="*",
                FunctionUrlAuthType="NONE",
            )
        except ClientError as e:
            if _error_code(e) != "ResourceConflictException":
                raise

        url = str(response["FunctionUrl"])
        logger.info("Function URL created", extra={"function_name": function_name, "url": url})
        return url

    # -------------------------------------------------------------------------
    # ACM
    # -------------------------------------------------------------------------

    async def describe_certificate(self, certificate_arn: str) -> dict[str, Any]:
        client = self._client("acm", GLOBAL_SERVICES_REGION)
        response = await self._call(
            "DescribeCertificate", client.describe_certificate, CertificateArn=certificate_arn
        )
        return dict(response["Certificate"])

    async def list_certificates(self, statuses: list[str]) -> list[dict[str, Any]]:
        client = self._client("acm", GLOBAL_SERVICES_REGION)

        def scan() -> list[dict[str, Any]]:
            paginator = client.get_paginator("list_certificates")
            found: list[dict[str, Any]] = []
            for page in paginator.paginate(CertificateStatuses=statuses):
                found.extend(page.get("CertificateSummaryList", []))
            return found

        result: list[dict[str, Any]] = await self._call("ListCertificates", scan)
        return result

    async def request_certificate(self, domain: str, idempotency_token: str) -> str:
        client = self._client("acm", GLOBAL_SERVICES_REGION)
        response = await self._call(
            "RequestCertificate",
            client.request_certificate,
            mutation=True,
            DomainName=domain,
            ValidationMethod="DNS",
            IdempotencyToken=idempotency_token,
        )
        return str(response["CertificateArn"])

    # -------------------------------------------------------------------------
    # CloudWatch / STS
    # -------------------------------------------------------------------------

    async def get_distribution_error_rate(
        self, distribution_id: str, window_seconds: int
    ) -> float | None:
        """Highest 5xx error rate (percent) of a distribution over a window.

        Returns:
            The rate, or None when CloudWatch has no datapoints yet.
        """
        client = self._client("cloudwatch", GLOBAL_SERVICES_REGION)
        end = datetime.now(UTC)
        start = end - timedelta(seconds=max(window_seconds, 60))
        response = await self._call(
            "GetMetricStatistics",
            client.get_metric_statistics,
            Namespace="AWS/CloudFront",
            MetricName="5xxErrorRate",
            Dimensions=[
                {"Name": "DistributionId", "Value": distribution_id},
                {"Name": "Region", "Value": "Global"},
            ],
            StartTime=start,
            EndTime=end,
            Period=60,
            Statistics=["Average"],
        )
        datapoints = response.get("Datapoints", [])
        if not datapoints:
            return None
        return max(float(point["Average"]) for point in datapoints)

    async def get_caller_identity(self) -> dict[str, Any]:
        client = self._client("sts")
        response: dict[str, Any] = await self._call(
            "GetCallerIdentity", client.get_caller_identity
        )
        return response
