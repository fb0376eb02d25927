"""TLS certificate provisioning for custom domains.

CloudFront only accepts ACM certificates from us-east-1. This module finds a
certificate covering a domain or requests one with DNS validation. Waiting
for DNS validation to complete is out of scope: reconciliation reports a
certificate that is still PENDING_VALIDATION.
"""

from __future__ import annotations

import logging
import re
from typing import Protocol

from .cloud import CloudControlPlane

logger = logging.getLogger(__name__)

USABLE_CERTIFICATE_STATUSES = ["ISSUED", "PENDING_VALIDATION"]
MAX_IDEMPOTENCY_TOKEN_LENGTH = 32


class CertificateProvider(Protocol):
    async def ensure_certificate_exists(self, domain: str, environment: str) -> str: ...


def certificate_covers(certificate_domain: str, domain: str) -> bool:
    """Check whether a certificate domain (possibly a wildcard) covers a domain."""
    certificate_domain = certificate_domain.lower()
    domain = domain.lower()
    if certificate_domain == domain:
        return True
    if certificate_domain.startswith("*."):
        head, _, rest = domain.partition(".")
        return bool(head) and rest == certificate_domain[2:]
    return False


def idempotency_token(domain: str, environment: str) -> str:
    """ACM idempotency token: alphanumeric, at most 32 characters."""
    return re.sub(r"[^A-Za-z0-9]", "", f"{environment}{domain}")[:MAX_IDEMPOTENCY_TOKEN_LENGTH]


class AcmCertificateManager:
    """Finds or requests ACM certificates for environment domains."""

    def __init__(self, cloud: CloudControlPlane) -> None:
        self._cloud = cloud

    async def ensure_certificate_exists(self, domain: str, environment: str) -> str:
        """Get the ARN of a certificate covering a domain, requesting one if needed.

        Raises:
            ClientError, BotoCoreError: If ACM cannot be queried or the request fails.
        """
        for summary in await self._cloud.list_certificates(USABLE_CERTIFICATE_STATUSES):
            names = [summary.get("DomainName", "")]
            names.extend(summary.get("SubjectAlternativeNameSummaries", []) or [])
            if any(certificate_covers(name, domain) for name in names if name):
                arn = str(summary["CertificateArn"])
                logger.info(
                    "Using existing certificate",
                    extra={
                        "domain": domain,
                        "environment": environment,
                        "certificate_arn": arn,
                        "status": summary.get("Status"),
                    },
                )
                return arn

        arn = await self._cloud.request_certificate(domain, idempotency_token(domain, environment))
        logger.warning(
            "Requested new certificate, DNS validation pending",
            extra={"domain": domain, "environment": environment, "certificate_arn": arn},
        )
        return arn
