"""
Shared fixtures for Policy Service unit tests.
"""

import pytest
from datetime import datetime, timezone

from shared.metrics import MetricsCollector
from shared.test_helpers import FixedClock, InMemoryAuditSink
from service_policy.app.audit.dispatcher import AuditDispatcher
from service_policy.app.rules.models import (
    Policy, PolicyEffect, Resource, RoleLevel, SensitivityTier, Subject, TenantMembership
)
from service_policy.app.rules.store import PolicyStore


@pytest.fixture
def clock():
    """Clock frozen at Monday 2024-03-04 12:00 UTC."""
    return FixedClock(datetime(2024, 3, 4, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def metrics():
    return MetricsCollector("policy")


@pytest.fixture
def audit_sink():
    return InMemoryAuditSink()


@pytest.fixture
def dispatcher(audit_sink, metrics):
    dispatcher = AuditDispatcher(audit_sink, capacity=64, metrics=metrics)
    yield dispatcher
    dispatcher.stop()


@pytest.fixture
def store():
    return PolicyStore()


@pytest.fixture
def make_subject():
    """Build a Subject from ``{tenant_id: role}``."""
    def _make(subject_id="user-1", memberships=None, permissions=None, inactive=()):
        memberships = memberships if memberships is not None else {"tenant-a": "employee"}
        return Subject(
            subject_id=subject_id,
            memberships={
                tenant_id: TenantMembership(
                    tenant_id=tenant_id,
                    role=RoleLevel(role),
                    active=tenant_id not in inactive
                )
                for tenant_id, role in memberships.items()
            },
            permissions=dict(permissions or {})
        )
    return _make


@pytest.fixture
def make_policy():
    def _make(policy_id, category="invoices", effect=PolicyEffect.ALLOW, roles=(), actions=(), **kwargs):
        return Policy(
            policy_id=policy_id,
            category=category,
            effect=effect,
            roles=frozenset(RoleLevel(role) for role in roles),
            actions=frozenset(actions),
            **kwargs
        )
    return _make


@pytest.fixture
def make_resource():
    def _make(category="invoices", resource_id="inv-1", tenant_id="tenant-a",
              sensitivity=SensitivityTier.INTERNAL):
        return Resource(category=category, resource_id=resource_id, tenant_id=tenant_id, sensitivity=sensitivity)
    return _make
