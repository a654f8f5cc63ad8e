"""
Tenant context resolution.

A request either names its tenant explicitly, in which case the subject must
hold an active membership there, or relies on the subject belonging to exactly
one tenant. There is no silent default when a subject belongs to several.
"""

from datetime import datetime
from typing import Callable, Optional

from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..errors import AmbiguousTenantContextError, NoTenantMembershipError, UnauthorizedTenantError
from ..rules.models import ResolutionMethod, Subject, TenantContext, utcnow
from .cancellation import CancellationToken, check_cancelled


class ContextResolver:
    """Produces a valid TenantContext for a subject, or raises."""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None,
                 metrics: Optional[MetricsCollector] = None):
        self.clock = clock or utcnow
        self.metrics = metrics
        self.logger = get_logger("policy.context_resolver")

    def _count(self, outcome: str) -> None:
        if self.metrics:
            self.metrics.increment_counter("policy_context_resolutions_total", outcome=outcome)

    def resolve(self,
                subject: Subject,
                explicit_tenant_id: Optional[str] = None,
                cancellation: Optional[CancellationToken] = None) -> TenantContext:
        check_cancelled(cancellation, "resolve")

        if explicit_tenant_id is not None:
            if subject.membership_for(explicit_tenant_id) is None:
                self.logger.warning(
                    "Tenant context rejected",
                    subject_id=subject.subject_id,
                    tenant_id=explicit_tenant_id,
                    reason="no active membership"
                )
                self._count("unauthorized_tenant")
                raise UnauthorizedTenantError(subject.subject_id, explicit_tenant_id)
            tenant_id = explicit_tenant_id
            method = ResolutionMethod.EXPLICIT_SESSION
        else:
            active = subject.active_memberships()
            if not active:
                self.logger.warning("Subject has no active tenant membership", subject_id=subject.subject_id)
                self._count("no_membership")
                raise NoTenantMembershipError(subject.subject_id)
            if len(active) > 1:
                tenant_ids = [membership.tenant_id for membership in active]
                self.logger.warning(
                    "Ambiguous tenant context",
                    subject_id=subject.subject_id,
                    tenant_ids=sorted(tenant_ids)
                )
                self._count("ambiguous")
                raise AmbiguousTenantContextError(subject.subject_id, tenant_ids)
            tenant_id = active[0].tenant_id
            method = ResolutionMethod.SINGLE_MEMBERSHIP_FALLBACK

        check_cancelled(cancellation, "resolve")

        context = TenantContext(
            tenant_id=tenant_id,
            subject_id=subject.subject_id,
            method=method,
            resolved_at=self.clock()
        )
        self._count(method.value)
        self.logger.debug(
            "Tenant context resolved",
            subject_id=subject.subject_id,
            tenant_id=tenant_id,
            method=method.value
        )
        return context

    @staticmethod
    def validate(subject: Subject, context: TenantContext) -> bool:
        """True when ``context`` still matches an active membership of ``subject``."""
        return (
            context.subject_id == subject.subject_id
            and subject.membership_for(context.tenant_id) is not None
        )
