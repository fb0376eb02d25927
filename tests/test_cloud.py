"""Tests for the AWS control plane facade."""

from __future__ import annotations

import time
from pathlib import Path
from unittest.mock import patch

import pytest
from aws_mock import MockAwsContext, client_error
from botocore.exceptions import ClientError, EndpointConnectionError, NoCredentialsError

from deployguard.cloud import AwsErrorKind, CloudControlPlane, classify_aws_error
from deployguard.config import Config


class TestClassifyAwsError:
    """Tests for classify_aws_error()."""

    @pytest.mark.parametrize(
        ("code", "status", "kind"),
        [
            ("AccessDenied", 403, AwsErrorKind.ACCESS_DENIED),
            ("ResourceNotFoundException", 404, AwsErrorKind.NOT_FOUND),
            ("ThrottlingException", 400, AwsErrorKind.THROTTLING),
            ("ValidationException", 400, AwsErrorKind.INVALID_INPUT),
            ("NoSuchDistribution", 404, AwsErrorKind.DISTRIBUTION_NOT_READY),
            ("SomethingNew", 429, AwsErrorKind.THROTTLING),
            ("SomethingNew", 502, AwsErrorKind.SERVICE_UNAVAILABLE),
            ("NoSuchOriginAccessControl", 404, AwsErrorKind.NOT_FOUND),
            ("PreconditionFailed", 412, AwsErrorKind.UNKNOWN),
        ],
    )
    def test_client_errors(self, code: str, status: int, kind: AwsErrorKind) -> None:
        info = classify_aws_error(client_error(code, "AnyOperation", status=status))

        assert info.kind == kind
        assert info.code == code

    def test_transient_kinds(self) -> None:
        assert classify_aws_error(client_error("ThrottlingException", "Op")).transient
        assert not classify_aws_error(client_error("AccessDenied", "Op", status=403)).transient

    def test_non_client_errors(self) -> None:
        assert classify_aws_error(TimeoutError()).kind == AwsErrorKind.TIMEOUT
        assert classify_aws_error(NoCredentialsError()).kind == AwsErrorKind.ACCESS_DENIED
        assert (
            classify_aws_error(EndpointConnectionError(endpoint_url="https://x")).kind
            == AwsErrorKind.SERVICE_UNAVAILABLE
        )
        assert classify_aws_error(RuntimeError("boom")).kind == AwsErrorKind.UNKNOWN


class TestRetry:
    """Tests for throttling retry in CloudControlPlane._call."""

    @pytest.mark.asyncio
    async def test_throttling_is_retried(self, config: Config) -> None:
        with MockAwsContext() as ctx:
            ctx.state.add_function("shop-staging-Server", url="https://u.lambda-url.on.aws/")
            ctx.state.inject_error("GetFunctionUrlConfig", "ThrottlingException", times=2)
            cloud = CloudControlPlane(config, region="us-east-1", backoff_base_seconds=0)

            url = await cloud.get_function_url("shop-staging-Server")

            assert url == "https://u.lambda-url.on.aws/"
            assert ctx.state.call_count("GetFunctionUrlConfig") == 3

    @pytest.mark.asyncio
    async def test_throttling_gives_up_after_max_attempts(self, config: Config) -> None:
        with MockAwsContext() as ctx:
            ctx.state.inject_error("ListFunctions", "Throttling", times=5)
            cloud = CloudControlPlane(config, region="us-east-1", backoff_base_seconds=0)

            with pytest.raises(ClientError):
                await cloud.find_function("shop-staging-")

            assert ctx.state.call_count("ListFunctions") == config.max_aws_retries

    @pytest.mark.asyncio
    async def test_other_errors_are_not_retried(self, config: Config) -> None:
        with MockAwsContext() as ctx:
            ctx.state.inject_error("GetCallerIdentity", "AccessDenied", status=403)
            cloud = CloudControlPlane(config, region="us-east-1", backoff_base_seconds=0)

            with pytest.raises(ClientError):
                await cloud.get_caller_identity()

            assert ctx.state.call_count("GetCallerIdentity") == 1

    @pytest.mark.asyncio
    async def test_backoff_doubles(self, tmp_path: Path) -> None:
        config = Config(project_root=tmp_path, max_aws_retries=4)
        delays: list[float] = []

        async def record_sleep(seconds: float) -> None:
            delays.append(seconds)

        with MockAwsContext() as ctx:
            ctx.state.inject_error("GetCallerIdentity", "ThrottlingException", times=3)
            cloud = CloudControlPlane(config, region="us-east-1", backoff_base_seconds=1)

            with (
                patch("deployguard.cloud.asyncio.sleep", side_effect=record_sleep),
                patch("deployguard.cloud.random.uniform", return_value=0.0),
            ):
                await cloud.get_caller_identity()

        assert delays == [1, 2, 4]


class TestCloudFront:
    """Tests for distribution reads and guarded writes."""

    @pytest.mark.asyncio
    async def test_find_distribution_across_pages(self, config: Config) -> None:
        with MockAwsContext() as ctx:
            for i in range(4):
                ctx.state.add_distribution(f"site{i}.example.com", origin_domain="o.on.aws")
            target = ctx.state.add_distribution("staging.example.com", origin_domain="o.on.aws")
            cloud = CloudControlPlane(config, region="eu-west-1")

            summary = await cloud.find_distribution_by_alias("staging.example.com")
            missing = await cloud.find_distribution_by_alias("nope.example.com")

        assert summary is not None
        assert summary["Id"] == target.distribution_id
        assert missing is None

    @pytest.mark.asyncio
    async def test_update_distribution_uses_etag(self, config: Config) -> None:
        with MockAwsContext() as ctx:
            dist = ctx.state.add_distribution("staging.example.com", origin_domain="old.on.aws")
            etag = dist.etag
            cloud = CloudControlPlane(config, region="us-east-1")

            def set_origin(dist_config: dict) -> None:  # type: ignore[type-arg]
                dist_config["Origins"]["Items"][0]["DomainName"] = "new.on.aws"

            await cloud.update_distribution(dist.distribution_id, set_origin)

        assert dist.origin["DomainName"] == "new.on.aws"
        assert dist.etag != etag

    @pytest.mark.asyncio
    async def test_create_invalidation(self, config: Config) -> None:
        with MockAwsContext() as ctx:
            dist = ctx.state.add_distribution("staging.example.com", origin_domain="o.on.aws")
            cloud = CloudControlPlane(config, region="us-east-1")

            invalidation_id = await cloud.create_invalidation(dist.distribution_id)

            assert invalidation_id.startswith("I")
            assert ctx.state.invalidations == [(dist.distribution_id, ["/*"])]

    @pytest.mark.asyncio
    async def test_global_services_use_us_east_1(self, config: Config) -> None:
        with MockAwsContext() as ctx:
            cloud = CloudControlPlane(config, region="eu-west-1")

            await cloud.find_distribution_by_alias("staging.example.com")
            await cloud.find_function("shop-")

            created = ctx.sessions[0].clients_created
            assert ("cloudfront", "us-east-1") in created
            assert ("lambda", "eu-west-1") in created


class TestLambda:
    """Tests for function URL operations."""

    @pytest.mark.asyncio
    async def test_missing_url_is_none(self, config: Config) -> None:
        with MockAwsContext() as ctx:
            ctx.state.add_function("shop-staging-Server")
            cloud = CloudControlPlane(config, region="us-east-1")

            assert await cloud.get_function_url("shop-staging-Server") is None

    @pytest.mark.asyncio
    async def test_create_function_url_adds_permission(self, config: Config) -> None:
        with MockAwsContext() as ctx:
            function = ctx.state.add_function("shop-staging-Server")
            cloud = CloudControlPlane(config, region="us-east-1")

            url = await cloud.create_function_url("shop-staging-Server")

        assert url == function.url
        assert "FunctionURLAllowPublicAccess" in function.permissions

    @pytest.mark.asyncio
    async def test_existing_permission_is_ignored(self, config: Config) -> None:
        with MockAwsContext() as ctx:
            function = ctx.state.add_function("shop-staging-Server")
            function.permissions.add("FunctionURLAllowPublicAccess")
            cloud = CloudControlPlane(config, region="us-east-1")

            url = await cloud.create_function_url("shop-staging-Server")

        assert url.startswith("https://")


class TestTimeouts:
    """Tests for per-call timeouts."""

    @pytest.mark.asyncio
    async def test_slow_call_times_out(self, tmp_path: Path) -> None:
        config = Config(project_root=tmp_path, aws_command_timeout_seconds=1)
        cloud = CloudControlPlane(config, region="us-east-1", session=SlowSession())

        with pytest.raises(TimeoutError):
            await cloud.get_caller_identity()


class SlowSession:
    """Session whose STS client blocks longer than the call timeout."""

    def client(self, service_name, region_name=None, config=None):  # type: ignore[no-untyped-def]
        return self

    def get_caller_identity(self):  # type: ignore[no-untyped-def]
        time.sleep(1.5)
        return {"Account": "123456789012"}
