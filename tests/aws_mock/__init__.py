"""AWS API mock for integration testing.

This package provides an in-memory implementation of the AWS APIs that
deployguard calls, so reconciliation, fixes, certificates and rollouts
can be tested without AWS connectivity.

Key Features:
- In-memory CloudFront, KeyValueStore, Lambda, ACM, CloudWatch and STS state
- ETag-guarded writes that reject stale IfMatch values
- Pagination across list operations
- Error injection per API operation with real botocore ClientErrors

Usage:
    from aws_mock import MockAwsContext

    with MockAwsContext() as ctx:
        ctx.state.add_function("shop-staging-server")
        cloud = CloudControlPlane(config, region="us-east-1")
        report = await Reconciler(config, project, cloud).reconcile("staging")
"""

from .context import MockAwsContext, MockSession, mock_aws_context
from .state import (
    MockAwsState,
    MockCertificate,
    MockDistribution,
    MockKeyValueStore,
    MockLambdaFunction,
    client_error,
)

__all__ = [
    "MockAwsContext",
    "MockAwsState",
    "MockCertificate",
    "MockDistribution",
    "MockKeyValueStore",
    "MockLambdaFunction",
    "MockSession",
    "client_error",
    "mock_aws_context",
]
