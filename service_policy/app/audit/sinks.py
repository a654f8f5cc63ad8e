"""
Audit sinks receiving authorization decisions.

Sinks are external collaborators: the engine hands them finished decisions
through the dispatcher and never waits on them. Records are write-once; no
sink updates or deletes what it has written.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx

from shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenException
from shared.logging import get_logger
from shared.retry import RetryConfig, RetryError, retry_on_exception
from ..errors import AuditSinkUnavailableError
from ..rules.models import Decision, ResourceRef, SubjectRef


def audit_payload(decision: Decision, subject: SubjectRef, resource: ResourceRef) -> Dict[str, Any]:
    """Flat record shared by all sinks."""
    payload = decision.to_dict()
    payload.update({
        "subject_id": subject.subject_id,
        "subject_type": subject.subject_type,
        "resource_category": resource.category,
        "resource_id": resource.resource_id,
        "resource_tenant_id": resource.tenant_id,
        "resource_sensitivity": resource.sensitivity.value,
    })
    return payload


class AuditSink(ABC):
    """Contract consumed by the audit dispatcher."""

    @abstractmethod
    async def record(self, decision: Decision, subject: SubjectRef, resource: ResourceRef) -> None:
        """Persist one decision; raise AuditSinkUnavailableError on failure."""

    async def close(self) -> None:
        """Release resources held by the sink."""


class LoggingAuditSink(AuditSink):
    """Writes each decision as a structured event on the audit logger."""

    def __init__(self, logger_name: str = "policy.audit"):
        self.logger = get_logger(logger_name)

    async def record(self, decision: Decision, subject: SubjectRef, resource: ResourceRef) -> None:
        payload = audit_payload(decision, subject, resource)
        if decision.granted:
            self.logger.info("Authorization granted", **payload)
        else:
            self.logger.warning("Authorization denied", **payload)


class HttpAuditSink(AuditSink):
    """Posts decisions to an external audit-log service."""

    def __init__(self,
                 audit_service_url: str,
                 timeout: float = 5.0,
                 retry_config: Optional[RetryConfig] = None,
                 circuit_breaker: Optional[CircuitBreaker] = None,
                 client: Optional[httpx.AsyncClient] = None):
        self.audit_service_url = audit_service_url.rstrip("/")
        self.timeout = timeout
        self.logger = get_logger("policy.audit.http")
        self.retry_config = retry_config or RetryConfig(max_attempts=3, base_delay=0.2, max_delay=2.0)
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            failure_threshold=5,
            recovery_timeout=30.0,
            name="audit_service"
        )
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def record(self, decision: Decision, subject: SubjectRef, resource: ResourceRef) -> None:
        payload = audit_payload(decision, subject, resource)

        @retry_on_exception((httpx.HTTPError,), config=self.retry_config)
        async def _post():
            response = await self._get_client().post(
                f"{self.audit_service_url}/audit/records",
                json=payload
            )
            response.raise_for_status()

        try:
            await self.circuit_breaker.call(_post)
        except CircuitBreakerOpenException as e:
            raise AuditSinkUnavailableError(str(e), details={"sink": "http"}) from e
        except RetryError as e:
            self.logger.error("Audit service unreachable", error=str(e.last_exception))
            raise AuditSinkUnavailableError(
                "Audit service unreachable",
                details={"sink": "http", "error": str(e.last_exception)}
            ) from e

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
