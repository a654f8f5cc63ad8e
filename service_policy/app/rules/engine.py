"""
Policy evaluation engine for the Policy Service.

Combines tenant isolation, role requirements, conditional policies and
explicit subject permissions with deny-overrides, and fails closed on every
error path.
"""

import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from shared.logging import get_logger
from shared.metrics import MetricsCollector, get_metrics_collector
from shared.tracing import add_span_attributes, trace_operation
from ..audit.dispatcher import AuditDispatcher
from ..context.cancellation import CancellationToken, check_cancelled
from ..context.resolver import ContextResolver
from ..errors import AccessDeniedError, ConfigurationError
from .conditions import evaluate_condition
from .models import (
    Decision, Policy, PolicyEffect, RequestContext, Resource, ResourceRef, RoleLevel,
    Subject, SubjectRef, TenantContext, TenantMembership, WRITE_ACTIONS, utcnow
)
from .store import PolicyStore

CROSS_TENANT_REASON = "cross-tenant access blocked"
MISSING_MEMBERSHIP_REASON = "inactive or missing membership"
NO_MATCH_REASON = "no matching policy"
STORE_UNAVAILABLE_REASON = "policy store unavailable"
INTERNAL_ERROR_REASON = "internal evaluation error"
AUDIT_DROPPED_WARNING = "audit record dropped"

UNVERIFIED_WRITE_RISK = 40
LOW_ROLE_DELETE_RISK = 30
MAX_RISK = 100


@dataclass
class PolicyEngineConfig:
    """Engine options; ``default_deny`` cannot be switched off."""
    default_deny: bool = True
    audit_queue_capacity: int = 1024
    condition_clock_skew_tolerance: timedelta = timedelta(0)

    def __post_init__(self):
        if self.default_deny is not True:
            raise ConfigurationError("default_deny must be enabled")
        if self.audit_queue_capacity < 1:
            raise ConfigurationError("audit_queue_capacity must be positive")
        if self.condition_clock_skew_tolerance < timedelta(0):
            raise ConfigurationError("condition_clock_skew_tolerance must not be negative")

    @classmethod
    def from_settings(cls, settings) -> "PolicyEngineConfig":
        return cls(
            default_deny=settings.policy_default_deny,
            audit_queue_capacity=settings.policy_audit_queue_capacity,
            condition_clock_skew_tolerance=timedelta(seconds=settings.policy_condition_clock_skew_seconds)
        )


@dataclass
class _Match:
    policy: Optional[Policy] = None
    permission: Optional[str] = None
    granted: bool = False
    reason: str = NO_MATCH_REASON


class PolicyEngine:
    """Evaluates (subject, tenant context, resource, action) requests."""

    def __init__(self,
                 store: PolicyStore,
                 audit: Optional[AuditDispatcher] = None,
                 config: Optional[PolicyEngineConfig] = None,
                 resolver: Optional[ContextResolver] = None,
                 metrics: Optional[MetricsCollector] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self.audit = audit
        self.config = config or PolicyEngineConfig()
        self.clock = clock or utcnow
        self.metrics = metrics or get_metrics_collector("policy")
        self.resolver = resolver or ContextResolver(clock=self.clock, metrics=self.metrics)
        self.logger = get_logger("policy.engine")

    def evaluate(self,
                 subject: Subject,
                 context: TenantContext,
                 resource: Resource,
                 action: str,
                 request: Optional[RequestContext] = None,
                 cancellation: Optional[CancellationToken] = None) -> Decision:
        """Compute and audit one decision.

        Raises EvaluationCanceledError when ``cancellation`` fires first; in that
        case nothing is audited.
        """
        check_cancelled(cancellation, "evaluate")
        start_time = time.perf_counter()
        request = request or RequestContext(timestamp=self.clock())

        with trace_operation(
            "policy.evaluate",
            subject_id=subject.subject_id,
            tenant_id=context.tenant_id,
            category=resource.category,
            action=action
        ):
            decision = self._decide(subject, context, resource, action, request)
            add_span_attributes(
                granted=decision.granted,
                matched_policy_id=decision.matched_policy_id,
                risk_score=decision.risk_score
            )

        decision.evaluation_time_ms = (time.perf_counter() - start_time) * 1000

        check_cancelled(cancellation, "evaluate")

        self._record(decision)
        if self.audit is not None:
            accepted = self.audit.submit(
                decision,
                SubjectRef.from_subject(subject),
                ResourceRef.from_resource(resource)
            )
            if not accepted:
                decision.warnings.append(AUDIT_DROPPED_WARNING)
        return decision

    def check(self,
              subject: Subject,
              context: TenantContext,
              resource: Resource,
              action: str,
              request: Optional[RequestContext] = None,
              cancellation: Optional[CancellationToken] = None) -> Decision:
        """Evaluate and raise AccessDeniedError unless granted."""
        decision = self.evaluate(subject, context, resource, action, request, cancellation)
        if not decision.granted:
            raise AccessDeniedError(decision)
        return decision

    def authorize(self,
                  subject: Subject,
                  resource: Resource,
                  action: str,
                  explicit_tenant_id: Optional[str] = None,
                  request: Optional[RequestContext] = None,
                  cancellation: Optional[CancellationToken] = None) -> Decision:
        """Resolve the tenant context, then evaluate."""
        context = self.resolver.resolve(subject, explicit_tenant_id, cancellation)
        return self.evaluate(subject, context, resource, action, request, cancellation)

    def _decide(self,
                subject: Subject,
                context: TenantContext,
                resource: Resource,
                action: str,
                request: RequestContext) -> Decision:
        # Tenant isolation depends only on call inputs, never on store state.
        if resource.tenant_id != context.tenant_id:
            self.logger.warning(
                "Cross-tenant access blocked",
                subject_id=subject.subject_id,
                context_tenant_id=context.tenant_id,
                resource_tenant_id=resource.tenant_id,
                category=resource.category,
                action=action
            )
            return self._decision(
                subject, context, resource, action,
                granted=False,
                reason=CROSS_TENANT_REASON,
                risk_score=MAX_RISK,
                error_code="CROSS_TENANT_ACCESS"
            )

        try:
            if not self.resolver.validate(subject, context):
                return self._decision(
                    subject, context, resource, action,
                    granted=False,
                    reason=MISSING_MEMBERSHIP_REASON,
                    error_code="INVALID_CONTEXT"
                )
            membership = subject.membership_for(context.tenant_id)

            try:
                candidates = self.store.lookup_by_category(resource.category)
            except Exception as e:
                self.logger.error("Policy store lookup failed", category=resource.category, error=str(e))
                self.metrics.record_error("policy_store_unavailable")
                return self._decision(
                    subject, context, resource, action,
                    granted=False,
                    reason=STORE_UNAVAILABLE_REASON,
                    error_code="INTERNAL_ERROR"
                )

            match = self._combine(subject, membership, context, resource, action, request, candidates)
            risk = self._risk_score(membership, resource, action, match)
            return self._decision(
                subject, context, resource, action,
                granted=match.granted,
                reason=match.reason,
                matched_policy_id=match.policy.policy_id if match.policy else None,
                risk_score=risk
            )
        except Exception as e:
            self.logger.error(
                "Policy evaluation error",
                subject_id=subject.subject_id,
                category=resource.category,
                action=action,
                error=str(e),
                exc_info=True
            )
            self.metrics.record_error("policy_evaluation_error")
            return self._decision(
                subject, context, resource, action,
                granted=False,
                reason=INTERNAL_ERROR_REASON,
                error_code="INTERNAL_ERROR"
            )

    def _combine(self,
                 subject: Subject,
                 membership: TenantMembership,
                 context: TenantContext,
                 resource: Resource,
                 action: str,
                 request: RequestContext,
                 candidates: List[Policy]) -> _Match:
        """Deny-overrides over applicable policies and explicit permissions."""
        first_allow: Optional[Policy] = None

        for policy in candidates:
            if not self._is_applicable(policy, membership, context, action, request):
                continue

            try:
                holds = evaluate_condition(policy.condition, request, self.config.condition_clock_skew_tolerance)
            except Exception as e:
                self.logger.error("Condition evaluation failed", policy_id=policy.policy_id, error=str(e))
                holds = None

            if policy.effect == PolicyEffect.DENY:
                # An undecidable DENY still denies.
                if holds is not False:
                    return _Match(policy=policy, granted=False, reason=f"denied by policy '{policy.policy_id}'")
            elif holds is True and first_allow is None:
                first_allow = policy

        permission, permitted = subject.permission_for(resource.category, action)
        if permitted is False:
            return _Match(permission=permission, granted=False, reason=f"permission '{permission}' revoked")

        if first_allow is not None:
            return _Match(policy=first_allow, granted=True, reason=f"allowed by policy '{first_allow.policy_id}'")

        if permitted is True:
            return _Match(permission=permission, granted=True, reason=f"permission '{permission}' granted")

        return _Match()

    @staticmethod
    def _is_applicable(policy: Policy,
                       membership: TenantMembership,
                       context: TenantContext,
                       action: str,
                       request: RequestContext) -> bool:
        if not policy.enabled:
            return False
        if policy.expires_at is not None and policy.expires_at <= request.timestamp:
            return False
        if policy.tenant_id is not None and policy.tenant_id != context.tenant_id:
            return False
        if not policy.applies_to_action(action):
            return False
        return policy.applies_to_role(membership.role)

    @staticmethod
    def _risk_score(membership: TenantMembership, resource: Resource, action: str, match: _Match) -> int:
        score = 0
        explicit = match.policy is not None and match.policy.category == resource.category
        if action in WRITE_ACTIONS and resource.sensitivity.is_sensitive and not explicit:
            score += UNVERIFIED_WRITE_RISK
        if action == "delete" and membership.role.is_below(RoleLevel.MANAGER):
            score += LOW_ROLE_DELETE_RISK
        return max(0, min(MAX_RISK, score))

    def _decision(self,
                  subject: Subject,
                  context: TenantContext,
                  resource: Resource,
                  action: str,
                  granted: bool,
                  reason: str,
                  matched_policy_id: Optional[str] = None,
                  risk_score: int = 0,
                  error_code: Optional[str] = None) -> Decision:
        return Decision(
            granted=granted,
            reason=reason,
            matched_policy_id=matched_policy_id,
            risk_score=risk_score,
            evaluated_at=self.clock(),
            subject_id=subject.subject_id,
            tenant_id=context.tenant_id,
            category=resource.category,
            resource_id=resource.resource_id,
            action=action,
            error_code=error_code
        )

    def _record(self, decision: Decision) -> None:
        outcome = "granted" if decision.granted else "denied"
        self.metrics.increment_counter(
            "policy_decisions_total",
            decision=outcome,
            reason_code=decision.error_code or ("policy" if decision.matched_policy_id else "default")
        )
        self.metrics.observe_histogram("policy_evaluation_duration_seconds", decision.evaluation_time_ms / 1000)

        log = self.logger.debug if decision.granted else self.logger.info
        log(
            "Policy decision",
            granted=decision.granted,
            reason=decision.reason,
            matched_policy_id=decision.matched_policy_id,
            risk_score=decision.risk_score,
            subject_id=decision.subject_id,
            tenant_id=decision.tenant_id,
            category=decision.category,
            action=decision.action,
            evaluation_time_ms=round(decision.evaluation_time_ms, 3)
        )
