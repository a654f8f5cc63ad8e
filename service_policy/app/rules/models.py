"""
Data models for the Policy Service.

Domain objects are dataclasses; the pydantic models at the bottom describe the
HTTP request/response bodies and convert into the domain objects.
"""

from typing import Dict, Any, Optional, List, Union, FrozenSet, Tuple
from dataclasses import dataclass, field
from datetime import datetime, time as dt_time, timezone
from enum import Enum

from pydantic import BaseModel, Field


WILDCARD = "*"

WRITE_ACTIONS = frozenset({"create", "update", "write", "delete", "approve", "export"})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class RoleLevel(str, Enum):
    """Coarse permission tier assigned per tenant membership."""
    OWNER = "owner"
    ADMIN = "admin"
    MANAGER = "manager"
    EMPLOYEE = "employee"
    VIEWER = "viewer"

    @property
    def rank(self) -> int:
        return _ROLE_RANKS[self]

    def is_below(self, other: "RoleLevel") -> bool:
        return self.rank < other.rank


_ROLE_RANKS = {
    RoleLevel.OWNER: 50,
    RoleLevel.ADMIN: 40,
    RoleLevel.MANAGER: 30,
    RoleLevel.EMPLOYEE: 20,
    RoleLevel.VIEWER: 10,
}


class ResolutionMethod(str, Enum):
    """How a tenant context was chosen."""
    EXPLICIT_SESSION = "explicit_session"
    SINGLE_MEMBERSHIP_FALLBACK = "single_membership_fallback"


class SensitivityTier(str, Enum):
    """Data-sensitivity classification of a resource."""
    PUBLIC = "public"
    INTERNAL = "internal"
    CONFIDENTIAL = "confidential"
    RESTRICTED = "restricted"

    @property
    def is_sensitive(self) -> bool:
        return self in (SensitivityTier.CONFIDENTIAL, SensitivityTier.RESTRICTED)


class PolicyEffect(str, Enum):
    """Policy effect."""
    ALLOW = "allow"
    DENY = "deny"


class ConditionOperator(str, Enum):
    """Operators for attribute conditions."""
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    IN = "in"
    NOT_IN = "not_in"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    CONTAINS = "contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"


@dataclass(frozen=True)
class TenantMembership:
    """A subject's membership in one tenant."""
    tenant_id: str
    role: RoleLevel
    active: bool = True


@dataclass
class Subject:
    """The authenticated actor (user or service)."""
    subject_id: str
    memberships: Dict[str, TenantMembership] = field(default_factory=dict)
    permissions: Dict[str, bool] = field(default_factory=dict)
    subject_type: str = "user"

    def active_memberships(self) -> List[TenantMembership]:
        return [m for m in self.memberships.values() if m.active]

    def membership_for(self, tenant_id: str) -> Optional[TenantMembership]:
        """Active membership for ``tenant_id``, or None."""
        membership = self.memberships.get(tenant_id)
        if membership is None or not membership.active:
            return None
        return membership

    def permission_for(self, category: str, action: str) -> Tuple[Optional[str], Optional[bool]]:
        """Most specific explicit permission for (category, action).

        Looks up ``category:action``, then ``category:*``, then ``*:action``.
        Returns ``(name, granted)`` or ``(None, None)``.
        """
        for name in (f"{category}:{action}", f"{category}:{WILDCARD}", f"{WILDCARD}:{action}"):
            if name in self.permissions:
                return name, bool(self.permissions[name])
        return None, None


@dataclass(frozen=True)
class SubjectRef:
    """Audit projection of a subject."""
    subject_id: str
    subject_type: str = "user"

    @classmethod
    def from_subject(cls, subject: Subject) -> "SubjectRef":
        return cls(subject_id=subject.subject_id, subject_type=subject.subject_type)


@dataclass(frozen=True)
class TenantContext:
    """The resolved tenant scope for one operation."""
    tenant_id: str
    subject_id: str
    method: ResolutionMethod
    resolved_at: datetime = field(default_factory=utcnow, compare=False)


@dataclass(frozen=True)
class Resource:
    """The protected entity being accessed; supplied per evaluation."""
    category: str
    resource_id: str
    tenant_id: str
    sensitivity: SensitivityTier = SensitivityTier.INTERNAL


@dataclass(frozen=True)
class ResourceRef:
    """Audit projection of a resource."""
    category: str
    resource_id: str
    tenant_id: str
    sensitivity: SensitivityTier = SensitivityTier.INTERNAL

    @classmethod
    def from_resource(cls, resource: Resource) -> "ResourceRef":
        return cls(
            category=resource.category,
            resource_id=resource.resource_id,
            tenant_id=resource.tenant_id,
            sensitivity=resource.sensitivity
        )


@dataclass(frozen=True)
class TimeWindow:
    """Time-of-day window in UTC; ``start > end`` wraps past midnight."""
    start: dt_time
    end: dt_time
    days: Optional[FrozenSet[int]] = None  # 0 = Monday


@dataclass(frozen=True)
class AttributeCondition:
    """Predicate over a request attribute."""
    field: str
    operator: ConditionOperator
    value: Union[str, int, float, bool, Tuple[Union[str, int, float], ...]]


@dataclass(frozen=True)
class PolicyCondition:
    """Conditional part of a policy. Every present dimension must hold."""
    time_window: Optional[TimeWindow] = None
    max_amount: Optional[float] = None
    ip_allow_list: Tuple[str, ...] = ()
    attributes: Tuple[AttributeCondition, ...] = ()

    def is_empty(self) -> bool:
        return (
            self.time_window is None
            and self.max_amount is None
            and not self.ip_allow_list
            and not self.attributes
        )


@dataclass(frozen=True)
class Policy:
    """A named authorization rule."""
    policy_id: str
    category: str
    effect: PolicyEffect
    roles: FrozenSet[RoleLevel] = frozenset()
    actions: FrozenSet[str] = frozenset()
    condition: Optional[PolicyCondition] = None
    priority: int = 0
    name: Optional[str] = None
    description: Optional[str] = None
    tenant_id: Optional[str] = None
    enabled: bool = True
    expires_at: Optional[datetime] = None

    def __post_init__(self):
        object.__setattr__(self, "roles", frozenset(self.roles))
        object.__setattr__(self, "actions", frozenset(self.actions))
        if self.condition is not None and self.condition.is_empty():
            object.__setattr__(self, "condition", None)
        if self.expires_at is not None:
            object.__setattr__(self, "expires_at", as_utc(self.expires_at))

    @property
    def is_wildcard(self) -> bool:
        return self.category == WILDCARD

    def applies_to_role(self, role: RoleLevel) -> bool:
        return not self.roles or role in self.roles

    def applies_to_action(self, action: str) -> bool:
        return not self.actions or action in self.actions


@dataclass
class RequestContext:
    """Per-request inputs for condition predicates."""
    timestamp: datetime = field(default_factory=utcnow)
    amount: Optional[float] = None
    ip_address: Optional[str] = None
    attributes: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.timestamp = as_utc(self.timestamp)


@dataclass
class Decision:
    """Result of one authorization evaluation."""
    granted: bool
    reason: str
    matched_policy_id: Optional[str] = None
    risk_score: int = 0
    evaluated_at: datetime = field(default_factory=utcnow)
    subject_id: Optional[str] = None
    tenant_id: Optional[str] = None
    category: Optional[str] = None
    resource_id: Optional[str] = None
    action: Optional[str] = None
    error_code: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    evaluation_time_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "granted": self.granted,
            "reason": self.reason,
            "matched_policy_id": self.matched_policy_id,
            "risk_score": self.risk_score,
            "evaluated_at": self.evaluated_at.isoformat(),
            "subject_id": self.subject_id,
            "tenant_id": self.tenant_id,
            "category": self.category,
            "resource_id": self.resource_id,
            "action": self.action,
            "error_code": self.error_code,
            "warnings": list(self.warnings),
        }


@dataclass(frozen=True)
class ConflictReport:
    """Equal-priority ALLOW/DENY pair that cannot be told apart."""
    policy_ids: Tuple[str, str]
    category: str
    roles: FrozenSet[RoleLevel]
    priority: int
    message: str


# HTTP models


class MembershipModel(BaseModel):
    tenant_id: str
    role: RoleLevel
    active: bool = True


class SubjectModel(BaseModel):
    subject_id: str = Field(..., description="Subject ID")
    subject_type: str = Field("user", description="user or service")
    memberships: List[MembershipModel] = Field(default_factory=list)
    permissions: Dict[str, bool] = Field(default_factory=dict)

    def to_domain(self) -> Subject:
        return Subject(
            subject_id=self.subject_id,
            subject_type=self.subject_type,
            memberships={
                m.tenant_id: TenantMembership(tenant_id=m.tenant_id, role=m.role, active=m.active)
                for m in self.memberships
            },
            permissions=dict(self.permissions)
        )


class ResourceModel(BaseModel):
    category: str
    resource_id: str
    tenant_id: str
    sensitivity: SensitivityTier = SensitivityTier.INTERNAL

    def to_domain(self) -> Resource:
        return Resource(
            category=self.category,
            resource_id=self.resource_id,
            tenant_id=self.tenant_id,
            sensitivity=self.sensitivity
        )


class RequestContextModel(BaseModel):
    timestamp: Optional[datetime] = None
    amount: Optional[float] = None
    ip_address: Optional[str] = None
    attributes: Dict[str, Any] = Field(default_factory=dict)

    def to_domain(self) -> RequestContext:
        timestamp = self.timestamp or utcnow()
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        return RequestContext(
            timestamp=timestamp,
            amount=self.amount,
            ip_address=self.ip_address,
            attributes=dict(self.attributes)
        )


class ResolveRequest(BaseModel):
    subject: SubjectModel
    tenant_id: Optional[str] = Field(None, description="Explicit tenant ID")
    timeout_ms: Optional[int] = Field(None, ge=1, description="Give up after this many milliseconds")


class TenantContextResponse(BaseModel):
    tenant_id: str
    subject_id: str
    method: ResolutionMethod
    resolved_at: datetime


class EvaluateRequest(BaseModel):
    subject: SubjectModel
    tenant_id: Optional[str] = Field(None, description="Explicit tenant ID")
    resource: ResourceModel
    action: str = Field(..., description="Action to perform")
    request: RequestContextModel = Field(default_factory=RequestContextModel)
    timeout_ms: Optional[int] = Field(None, ge=1, description="Give up after this many milliseconds")


class DecisionResponse(BaseModel):
    granted: bool
    reason: str
    matched_policy_id: Optional[str] = None
    risk_score: int
    evaluated_at: datetime
    tenant_id: Optional[str] = None
    error_code: Optional[str] = None
    warnings: List[str] = Field(default_factory=list)

    @classmethod
    def from_decision(cls, decision: Decision) -> "DecisionResponse":
        return cls(
            granted=decision.granted,
            reason=decision.reason,
            matched_policy_id=decision.matched_policy_id,
            risk_score=decision.risk_score,
            evaluated_at=decision.evaluated_at,
            tenant_id=decision.tenant_id,
            error_code=decision.error_code,
            warnings=list(decision.warnings)
        )


class PolicyCreateRequest(BaseModel):
    """Request body for registering a policy; mirrors the document format."""
    id: str = Field(..., description="Policy ID")
    category: str = Field(..., description="Resource category or '*'")
    effect: str = Field(..., description="allow or deny")
    roles: List[str] = Field(default_factory=list)
    actions: List[str] = Field(default_factory=list)
    priority: int = 0
    name: Optional[str] = None
    description: Optional[str] = None
    tenant_id: Optional[str] = None
    enabled: bool = True
    expires_at: Optional[datetime] = None
    condition: Optional[Dict[str, Any]] = None


class PolicyListResponse(BaseModel):
    policies: List[Dict[str, Any]]
    total: int


class ConflictReportResponse(BaseModel):
    policy_ids: List[str]
    category: str
    roles: List[str]
    priority: int
    message: str

    @classmethod
    def from_report(cls, report: ConflictReport) -> "ConflictReportResponse":
        return cls(
            policy_ids=list(report.policy_ids),
            category=report.category,
            roles=sorted(role.value for role in report.roles),
            priority=report.priority,
            message=report.message
        )
