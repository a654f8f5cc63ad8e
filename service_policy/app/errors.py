"""
Error taxonomy for the Policy Service.

Context-resolution errors are always surfaced to the caller, store errors are
local to administrative operations, and audit errors never reach the request
path.
"""

from typing import Any, Dict, Optional

from shared.errors import AuthorizationError, ServiceError, ValidationError


class UnauthorizedTenantError(AuthorizationError):
    """The subject has no active membership in the requested tenant."""

    def __init__(self, subject_id: str, tenant_id: str):
        super().__init__(
            f"Subject '{subject_id}' is not an active member of tenant '{tenant_id}'",
            details={"subject_id": subject_id, "tenant_id": tenant_id},
            code="UNAUTHORIZED_TENANT"
        )


class NoTenantMembershipError(AuthorizationError):
    """The subject has no active tenant membership at all."""

    def __init__(self, subject_id: str):
        super().__init__(
            f"Subject '{subject_id}' has no active tenant membership",
            details={"subject_id": subject_id},
            code="NO_TENANT_MEMBERSHIP"
        )


class AmbiguousTenantContextError(AuthorizationError):
    """More than one active membership and no explicit tenant was given."""

    def __init__(self, subject_id: str, tenant_ids):
        super().__init__(
            f"Subject '{subject_id}' belongs to several tenants; an explicit tenant is required",
            details={"subject_id": subject_id, "tenant_ids": sorted(tenant_ids)},
            code="AMBIGUOUS_TENANT_CONTEXT"
        )


class AccessDeniedError(AuthorizationError):
    """Raised by ``PolicyEngine.check`` when a decision denies access."""

    def __init__(self, decision):
        self.decision = decision
        super().__init__(
            decision.reason,
            details={
                "matched_policy_id": decision.matched_policy_id,
                "risk_score": decision.risk_score
            },
            code=decision.error_code or "ACCESS_DENIED"
        )


class DuplicatePolicyIdError(ValidationError):
    status_code = 409

    def __init__(self, policy_id: str):
        super().__init__(
            f"Policy '{policy_id}' is already registered",
            details={"policy_id": policy_id},
            code="DUPLICATE_POLICY_ID"
        )


class InvalidPolicyError(ValidationError):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details=details, code="INVALID_POLICY")


class PolicyNotFoundError(ValidationError):
    status_code = 404

    def __init__(self, policy_id: str):
        super().__init__(
            f"Policy '{policy_id}' not found",
            details={"policy_id": policy_id},
            code="POLICY_NOT_FOUND"
        )


class PolicyFormatError(ValidationError):
    """A declarative policy document could not be parsed."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details=details, code="POLICY_FORMAT_ERROR")


class EvaluationCanceledError(ServiceError):
    """The caller's cancellation token fired before a result was produced."""

    status_code = 499

    def __init__(self, operation: str):
        super().__init__(
            f"{operation} canceled before completion",
            details={"operation": operation},
            code="CANCELED"
        )


class AuditSinkUnavailableError(ServiceError):
    """The audit sink could not persist a record."""

    status_code = 503

    def __init__(self, message: str = "Audit sink unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details=details, code="AUDIT_SINK_UNAVAILABLE")


class ConfigurationError(ServiceError):
    def __init__(self, message: str):
        super().__init__(message, code="CONFIGURATION_ERROR")
