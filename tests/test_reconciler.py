"""Tests for declared intent vs observed state reconciliation.

Check functions are tested directly against ObservedState values; the
Reconciler itself runs against MockAwsContext.
"""

from __future__ import annotations

import dataclasses
from pathlib import Path

import pytest
from aws_mock import MockAwsContext
from conftest import FULL_INFRA_CONFIG

from deployguard.cloud import CloudControlPlane
from deployguard.config import Config
from deployguard.intent import DeclaredIntent
from deployguard.models import ProjectConfig
from deployguard.observed_state import Facet, ObservedState, ObservedStateCache
from deployguard.reconciler import (
    CheckName,
    FixAction,
    FixStatus,
    IssueType,
    Reconciler,
    Severity,
    check_certificate,
    check_function_url,
    check_key_value_store,
    check_origin,
    check_origin_protocol,
    evaluate_checks,
    function_url_host,
)

DOMAIN = "staging.example.com"
FUNCTION_URL = "https://abc123.lambda-url.us-east-1.on.aws/"
FUNCTION_HOST = "abc123.lambda-url.us-east-1.on.aws"

FUNCTION_URL_ONLY_CONFIG = """\
new sst.aws.Function("Server", { handler: "src/server.handler", url: true });
"""


def healthy_state(**overrides: object) -> ObservedState:
    """Observed state that passes every check."""
    values: dict[str, object] = {
        "environment": "staging",
        "distribution_id": "E1ABCDEF",
        "origin_domain": FUNCTION_HOST,
        "origin_protocol_policy": "https-only",
        "certificate_arn": "arn:aws:acm:us-east-1:123456789012:certificate/abc",
        "certificate_status": "ISSUED",
        "certificate_domain": DOMAIN,
        "function_name": "shop-staging-Server",
        "function_url": FUNCTION_URL,
        "kvs_arn": "arn:aws:cloudfront::123456789012:key-value-store/k",
        "kvs_item_count": 3,
    }
    values.update(overrides)
    return ObservedState(**values)  # type: ignore[arg-type]


ALL_INTENT = DeclaredIntent(
    uses_function_url=True,
    uses_edge_function=True,
    uses_key_value_store=True,
    uses_custom_domain=True,
)


class TestChecks:
    """Tests for the individual check functions."""

    def test_healthy_state_has_no_issues(self) -> None:
        issues, ran = evaluate_checks(ALL_INTENT, healthy_state(), DOMAIN)

        assert issues == []
        assert ran == list(CheckName)

    def test_missing_function(self) -> None:
        issue = check_function_url(healthy_state(function_name=None, function_url=None), DOMAIN)

        assert issue is not None
        assert issue.type == IssueType.INCOMPLETE_DEPLOYMENT
        assert issue.severity == Severity.WARNING
        assert issue.auto_fix_available is False

    def test_missing_function_url_is_fixable(self) -> None:
        issue = check_function_url(healthy_state(function_url=None), DOMAIN)

        assert issue is not None
        assert issue.type == IssueType.CONFIG_MISMATCH
        assert issue.fix_action == FixAction.CREATE_FUNCTION_URL

    def test_placeholder_origin(self) -> None:
        issue = check_origin(healthy_state(origin_domain="placeholder.sst.dev"), DOMAIN)

        assert issue is not None
        assert issue.type == IssueType.INCOMPLETE_DEPLOYMENT
        assert issue.fix_action == FixAction.UPDATE_ORIGIN

    def test_origin_drift(self) -> None:
        issue = check_origin(healthy_state(origin_domain="old.lambda-url.on.aws"), DOMAIN)

        assert issue is not None
        assert issue.type == IssueType.CONFIGURATION_DRIFT
        assert FUNCTION_URL in issue.details

    def test_origin_drift_without_function_url_is_not_fixable(self) -> None:
        issue = check_origin(
            healthy_state(origin_domain="placeholder.example", function_url=None), DOMAIN
        )

        assert issue is not None
        assert issue.auto_fix_available is False

    def test_origin_protocol(self) -> None:
        issue = check_origin_protocol(
            healthy_state(origin_protocol_policy="match-viewer"), DOMAIN
        )

        assert issue is not None
        assert issue.type == IssueType.CONFIG_MISMATCH
        assert issue.fix_action == FixAction.SET_HTTPS_ONLY
        assert "match-viewer" in issue.details

    def test_origin_protocol_needs_function_url(self) -> None:
        state = healthy_state(origin_protocol_policy="http-only", function_url=None)

        assert check_origin_protocol(state, DOMAIN) is None

    def test_missing_kvs(self) -> None:
        issue = check_key_value_store(healthy_state(kvs_arn=None), DOMAIN)

        assert issue is not None
        assert issue.type == IssueType.CONFIG_MISMATCH
        assert issue.severity == Severity.WARNING

    @pytest.mark.parametrize("count", [0, None])
    def test_empty_kvs_is_info(self, count: int | None) -> None:
        issue = check_key_value_store(healthy_state(kvs_item_count=count), DOMAIN)

        assert issue is not None
        assert issue.type == IssueType.EMPTY_KVS
        assert issue.severity == Severity.INFO

    def test_missing_certificate(self) -> None:
        issue = check_certificate(healthy_state(certificate_arn=None), DOMAIN)

        assert issue is not None
        assert issue.description == "SSL certificate not found"

    def test_pending_certificate(self) -> None:
        issue = check_certificate(healthy_state(certificate_status="PENDING_VALIDATION"), DOMAIN)

        assert issue is not None
        assert issue.type == IssueType.INCOMPLETE_DEPLOYMENT
        assert "DNS CNAME" in issue.guidance

    def test_certificate_domain_mismatch(self) -> None:
        issue = check_certificate(healthy_state(certificate_domain="other.example.org"), DOMAIN)

        assert issue is not None
        assert issue.description == "SSL certificate domain mismatch"

    def test_wildcard_certificate_covers_domain(self) -> None:
        assert check_certificate(healthy_state(certificate_domain="*.example.com"), DOMAIN) is None

    @pytest.mark.parametrize(
        ("check", "facet", "overrides"),
        [
            (check_function_url, Facet.FUNCTION, {"function_name": None}),
            (check_origin, Facet.DISTRIBUTION, {"origin_domain": "placeholder.sst.dev"}),
            (check_key_value_store, Facet.KEY_VALUE_STORE, {"kvs_arn": None}),
            (check_certificate, Facet.CERTIFICATE, {"certificate_arn": None}),
        ],
    )
    def test_unavailable_facet_yields_no_issue(
        self, check: object, facet: Facet, overrides: dict[str, object]
    ) -> None:
        """A facet that could not be queried is unknown, not absent."""
        state = healthy_state(**overrides)
        state.unavailable.add(facet)

        assert check(state, DOMAIN) is None  # type: ignore[operator]

    def test_checks_are_gated_on_intent(self) -> None:
        """An undeclared capability is never reported as broken."""
        broken = healthy_state(
            function_url=None, kvs_arn=None, certificate_arn=None, origin_protocol_policy="http"
        )

        issues, ran = evaluate_checks(DeclaredIntent(), broken, DOMAIN)

        assert issues == []
        assert ran == []

    def test_kvs_gate_only(self) -> None:
        issues, ran = evaluate_checks(
            DeclaredIntent(uses_key_value_store=True), healthy_state(kvs_arn=None), DOMAIN
        )

        assert ran == [CheckName.KEY_VALUE_STORE]
        assert len(issues) == 1

    def test_function_url_host(self) -> None:
        assert function_url_host(FUNCTION_URL) == FUNCTION_HOST
        assert function_url_host(FUNCTION_HOST + "/") == FUNCTION_HOST


@pytest.fixture
def project() -> ProjectConfig:
    return ProjectConfig.model_validate(
        {"projectName": "shop", "mainDomain": "example.com", "environments": {"staging": {}}}
    )


def write_infra(config: Config, text: str) -> Path:
    path = config.infra_config_path
    path.write_text(text)
    return path


def deploy_healthy(ctx: MockAwsContext) -> str:
    """Populate mock AWS with a healthy staging deployment. Returns the distribution id."""
    store = ctx.state.add_key_value_store("shop-router-kvs", {"routes": "{}"})
    ctx.state.add_edge_function("shop-router-fn", store.arn)
    cert = ctx.state.add_certificate(DOMAIN)
    ctx.state.add_function("shop-staging-Server", url=FUNCTION_URL)
    dist = ctx.state.add_distribution(
        DOMAIN,
        origin_domain=FUNCTION_HOST,
        certificate_arn=cert.arn,
        edge_function_name="shop-router-fn",
    )
    return dist.distribution_id


class TestReconcilerScenarios:
    """End-to-end reconciliation against mocked AWS."""

    @pytest.mark.asyncio
    async def test_nothing_declared_nothing_deployed(
        self, config: Config, project: ProjectConfig
    ) -> None:
        """No capabilities declared and an empty account: zero issues."""
        write_infra(config, 'export default $config({ app() { return { name: "shop" }; } });')

        with MockAwsContext():
            cloud = CloudControlPlane(config, region="us-east-1")
            reconciler = Reconciler(config, project, cloud, cache=ObservedStateCache())

            report = await reconciler.reconcile("staging")

        assert report.issues == []
        assert report.issues_detected is False
        assert report.summary == "Deployment matches configuration - all checks passed"

    @pytest.mark.asyncio
    async def test_undecodable_infra_config_declares_nothing(
        self, config: Config, project: ProjectConfig
    ) -> None:
        """A config that is not valid UTF-8 reads as declaring nothing."""
        config.infra_config_path.write_bytes(b"url: true\n// \xff\xfe caf\xe9\n")

        with MockAwsContext():
            cloud = CloudControlPlane(config, region="us-east-1")
            reconciler = Reconciler(config, project, cloud, cache=ObservedStateCache())

            report = await reconciler.reconcile("staging")

        assert report.issues == []
        assert report.issues_detected is False

    @pytest.mark.asyncio
    async def test_declared_function_url_not_deployed(
        self, config: Config, project: ProjectConfig
    ) -> None:
        """Function URL declared but nothing deployed: one non-fixable warning."""
        write_infra(config, FUNCTION_URL_ONLY_CONFIG)

        with MockAwsContext():
            cloud = CloudControlPlane(config, region="us-east-1")
            reconciler = Reconciler(config, project, cloud, cache=ObservedStateCache())

            report = await reconciler.reconcile("staging")

        assert len(report.issues) == 1
        issue = report.issues[0].to_dict()
        assert issue["type"] == "incomplete-deployment"
        assert issue["severity"] == "warning"
        assert issue["auto_fix_available"] is False

    @pytest.mark.asyncio
    async def test_healthy_deployment(self, config: Config, project: ProjectConfig) -> None:
        write_infra(config, FULL_INFRA_CONFIG)

        with MockAwsContext() as ctx:
            deploy_healthy(ctx)
            cloud = CloudControlPlane(config, region="us-east-1")
            reconciler = Reconciler(config, project, cloud, cache=ObservedStateCache())

            report = await reconciler.reconcile("staging")

        assert report.issues == []
        assert len(report.checks_run) == 5

    @pytest.mark.asyncio
    async def test_summary_counts(self, config: Config, project: ProjectConfig) -> None:
        write_infra(config, FULL_INFRA_CONFIG)

        with MockAwsContext() as ctx:
            deploy_healthy(ctx)
            store = next(iter(ctx.state.key_value_stores.values()))
            store.items.clear()
            ctx.state.functions["shop-staging-Server"].url = None
            cloud = CloudControlPlane(config, region="us-east-1")
            reconciler = Reconciler(config, project, cloud, cache=ObservedStateCache())

            report = await reconciler.reconcile("staging")

        assert report.summary == "Found 2 potential issue(s): 1 warnings, 1 info"

    @pytest.mark.asyncio
    async def test_transient_errors_are_not_issues(
        self, config: Config, project: ProjectConfig
    ) -> None:
        """Throttling past the retry limit during propagation produces no issue."""
        write_infra(config, FULL_INFRA_CONFIG)

        with MockAwsContext() as ctx:
            deploy_healthy(ctx)
            ctx.state.inject_error("ListDistributions", "ThrottlingException", times=10)
            ctx.state.inject_error("ListFunctions", "ThrottlingException", times=10)
            cloud = CloudControlPlane(config, region="us-east-1", backoff_base_seconds=0)
            reconciler = Reconciler(config, project, cloud, cache=ObservedStateCache())

            report = await reconciler.reconcile("staging")

        assert report.issues == []
        assert not report.state.complete


class TestReconcilerCache:
    """Tests for observed state caching in Reconciler."""

    @pytest.mark.asyncio
    async def test_second_pass_uses_cache(self, config: Config, project: ProjectConfig) -> None:
        write_infra(config, FULL_INFRA_CONFIG)

        with MockAwsContext() as ctx:
            deploy_healthy(ctx)
            cloud = CloudControlPlane(config, region="us-east-1")
            reconciler = Reconciler(config, project, cloud, cache=ObservedStateCache())

            await reconciler.reconcile("staging")
            await reconciler.reconcile("staging")

            assert ctx.state.call_count("ListDistributions") == 1

    @pytest.mark.asyncio
    async def test_refresh_bypasses_cache(self, config: Config, project: ProjectConfig) -> None:
        write_infra(config, FULL_INFRA_CONFIG)

        with MockAwsContext() as ctx:
            deploy_healthy(ctx)
            cloud = CloudControlPlane(config, region="us-east-1")
            reconciler = Reconciler(config, project, cloud, cache=ObservedStateCache())

            await reconciler.reconcile("staging")
            await reconciler.reconcile("staging", refresh=True)

            assert ctx.state.call_count("ListDistributions") == 2

    @pytest.mark.asyncio
    async def test_incomplete_state_is_not_cached(
        self, config: Config, project: ProjectConfig
    ) -> None:
        write_infra(config, FULL_INFRA_CONFIG)
        cache = ObservedStateCache()

        with MockAwsContext() as ctx:
            deploy_healthy(ctx)
            ctx.state.inject_error("ListFunctions", "AccessDenied", status=403)
            cloud = CloudControlPlane(config, region="us-east-1")
            reconciler = Reconciler(config, project, cloud, cache=cache)

            await reconciler.reconcile("staging")

        assert cache.get("shop", "staging") is None


class TestApplyFixes:
    """Tests for Reconciler.apply_fixes()."""

    @pytest.mark.asyncio
    async def test_create_function_url(self, config: Config, project: ProjectConfig) -> None:
        write_infra(config, FUNCTION_URL_ONLY_CONFIG)

        with MockAwsContext() as ctx:
            function = ctx.state.add_function("shop-staging-Server")
            cloud = CloudControlPlane(config, region="us-east-1")
            reconciler = Reconciler(config, project, cloud, cache=ObservedStateCache())
            report = await reconciler.reconcile("staging")

            results = await reconciler.apply_fixes("staging", report)
            after = await reconciler.reconcile("staging")

        assert [r.status for r in results] == [FixStatus.APPLIED]
        assert function.url is not None
        assert function.url in results[0].message
        assert after.issues == []

    @pytest.mark.asyncio
    async def test_origin_and_protocol_fixes_invalidate_cache(
        self, config: Config, project: ProjectConfig
    ) -> None:
        write_infra(config, FULL_INFRA_CONFIG)

        with MockAwsContext() as ctx:
            dist_id = deploy_healthy(ctx)
            dist = ctx.state.distributions[dist_id]
            origin = dist.config["Origins"]["Items"][0]
            origin["DomainName"] = "placeholder.sst.dev"
            origin["CustomOriginConfig"]["OriginProtocolPolicy"] = "match-viewer"
            cloud = CloudControlPlane(config, region="us-east-1")
            reconciler = Reconciler(config, project, cloud, cache=ObservedStateCache())
            report = await reconciler.reconcile("staging")

            results = await reconciler.apply_fixes("staging", report)

            assert {r.issue.check for r in results} == {
                CheckName.ORIGIN,
                CheckName.ORIGIN_PROTOCOL,
            }
            assert all(r.status == FixStatus.APPLIED for r in results)
            assert dist.origin["DomainName"] == FUNCTION_HOST
            assert dist.origin["CustomOriginConfig"]["OriginProtocolPolicy"] == "https-only"
            assert ctx.state.invalidations == [(dist_id, ["/*"])]

    @pytest.mark.asyncio
    async def test_non_fixable_issue_is_skipped(
        self, config: Config, project: ProjectConfig
    ) -> None:
        write_infra(config, FUNCTION_URL_ONLY_CONFIG)

        with MockAwsContext():
            cloud = CloudControlPlane(config, region="us-east-1")
            reconciler = Reconciler(config, project, cloud, cache=ObservedStateCache())
            report = await reconciler.reconcile("staging")

            results = await reconciler.apply_fixes("staging", report)

        assert [r.status for r in results] == [FixStatus.SKIPPED]

    @pytest.mark.asyncio
    async def test_dry_run_applies_nothing(self, config: Config, project: ProjectConfig) -> None:
        dry = dataclasses.replace(config, dry_run=True)
        write_infra(dry, FUNCTION_URL_ONLY_CONFIG)

        with MockAwsContext() as ctx:
            function = ctx.state.add_function("shop-staging-Server")
            cloud = CloudControlPlane(dry, region="us-east-1")
            reconciler = Reconciler(dry, project, cloud, cache=ObservedStateCache())
            report = await reconciler.reconcile("staging")

            results = await reconciler.apply_fixes("staging", report)

            assert ctx.state.call_count("CreateFunctionUrlConfig") == 0

        assert results[0].status == FixStatus.SKIPPED
        assert "Dry run" in results[0].message
        assert function.url is None

    @pytest.mark.asyncio
    async def test_failed_fix_does_not_stop_batch(
        self, config: Config, project: ProjectConfig
    ) -> None:
        write_infra(config, FULL_INFRA_CONFIG)

        with MockAwsContext() as ctx:
            dist_id = deploy_healthy(ctx)
            origin = ctx.state.distributions[dist_id].config["Origins"]["Items"][0]
            origin["DomainName"] = "stale.lambda-url.on.aws"
            origin["CustomOriginConfig"]["OriginProtocolPolicy"] = "http-only"
            ctx.state.inject_error("UpdateDistribution", "PreconditionFailed", status=412)
            cloud = CloudControlPlane(config, region="us-east-1")
            reconciler = Reconciler(config, project, cloud, cache=ObservedStateCache())
            report = await reconciler.reconcile("staging")

            results = await reconciler.apply_fixes("staging", report)

        statuses = {r.issue.check: r.status for r in results}
        assert statuses[CheckName.ORIGIN] == FixStatus.FAILED
        assert statuses[CheckName.ORIGIN_PROTOCOL] == FixStatus.APPLIED
