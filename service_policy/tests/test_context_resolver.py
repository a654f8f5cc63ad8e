"""
Unit tests for tenant context resolution.
"""

import pytest

from service_policy.app.context.cancellation import CancellationToken
from service_policy.app.context.resolver import ContextResolver
from service_policy.app.errors import (
    AmbiguousTenantContextError, EvaluationCanceledError, NoTenantMembershipError, UnauthorizedTenantError
)
from service_policy.app.rules.models import ResolutionMethod, TenantContext


class TestContextResolver:
    """Test cases for ContextResolver."""

    @pytest.fixture
    def resolver(self, clock, metrics):
        return ContextResolver(clock=clock, metrics=metrics)

    def test_explicit_tenant_with_active_membership(self, resolver, make_subject, clock):
        subject = make_subject(memberships={"tenant-a": "employee", "tenant-b": "manager"})

        context = resolver.resolve(subject, "tenant-b")

        assert context.tenant_id == "tenant-b"
        assert context.subject_id == "user-1"
        assert context.method == ResolutionMethod.EXPLICIT_SESSION
        assert context.resolved_at == clock.now

    def test_explicit_tenant_without_membership(self, resolver, make_subject):
        subject = make_subject(memberships={"tenant-a": "employee"})

        with pytest.raises(UnauthorizedTenantError) as exc_info:
            resolver.resolve(subject, "tenant-z")

        assert exc_info.value.code == "UNAUTHORIZED_TENANT"
        assert exc_info.value.status_code == 403

    def test_explicit_tenant_with_inactive_membership(self, resolver, make_subject):
        subject = make_subject(memberships={"tenant-a": "employee", "tenant-b": "admin"}, inactive=("tenant-b",))

        with pytest.raises(UnauthorizedTenantError):
            resolver.resolve(subject, "tenant-b")

    def test_single_membership_fallback(self, resolver, make_subject):
        subject = make_subject(memberships={"tenant-a": "viewer"})

        context = resolver.resolve(subject)

        assert context.tenant_id == "tenant-a"
        assert context.method == ResolutionMethod.SINGLE_MEMBERSHIP_FALLBACK

    def test_inactive_memberships_do_not_count_towards_ambiguity(self, resolver, make_subject):
        subject = make_subject(memberships={"tenant-a": "viewer", "tenant-b": "owner"}, inactive=("tenant-b",))

        assert resolver.resolve(subject).tenant_id == "tenant-a"

    def test_no_memberships(self, resolver, make_subject):
        subject = make_subject(memberships={})

        with pytest.raises(NoTenantMembershipError) as exc_info:
            resolver.resolve(subject)

        assert exc_info.value.code == "NO_TENANT_MEMBERSHIP"

    def test_only_inactive_memberships(self, resolver, make_subject):
        subject = make_subject(memberships={"tenant-a": "owner"}, inactive=("tenant-a",))

        with pytest.raises(NoTenantMembershipError):
            resolver.resolve(subject)

    def test_ambiguous_without_explicit_tenant(self, resolver, make_subject):
        subject = make_subject(memberships={"tenant-b": "employee", "tenant-a": "employee"})

        with pytest.raises(AmbiguousTenantContextError) as exc_info:
            resolver.resolve(subject)

        assert exc_info.value.code == "AMBIGUOUS_TENANT_CONTEXT"
        assert exc_info.value.details["tenant_ids"] == ["tenant-a", "tenant-b"]

    def test_resolve_is_idempotent(self, resolver, make_subject):
        subject = make_subject(memberships={"tenant-a": "employee", "tenant-b": "manager"})

        first = resolver.resolve(subject, "tenant-a")
        second = resolver.resolve(subject, "tenant-a")

        assert first == second
        assert (first.tenant_id, first.method) == (second.tenant_id, second.method)

    def test_cancelled_token(self, resolver, make_subject):
        token = CancellationToken()
        token.cancel()

        with pytest.raises(EvaluationCanceledError) as exc_info:
            resolver.resolve(make_subject(), cancellation=token)

        assert exc_info.value.code == "CANCELED"

    def test_expired_deadline(self, resolver, make_subject):
        token = CancellationToken(deadline=0.0)

        with pytest.raises(EvaluationCanceledError):
            resolver.resolve(make_subject(), cancellation=token)

    def test_resolution_outcomes_are_counted(self, resolver, make_subject, metrics):
        resolver.resolve(make_subject())
        with pytest.raises(AmbiguousTenantContextError):
            resolver.resolve(make_subject(memberships={"tenant-a": "viewer", "tenant-b": "viewer"}))

        assert metrics.sample(
            "policy_context_resolutions_total", outcome="single_membership_fallback"
        ) == 1
        assert metrics.sample("policy_context_resolutions_total", outcome="ambiguous") == 1

    def test_validate(self, make_subject):
        subject = make_subject(memberships={"tenant-a": "employee", "tenant-b": "admin"}, inactive=("tenant-b",))

        valid = TenantContext("tenant-a", "user-1", ResolutionMethod.EXPLICIT_SESSION)
        inactive = TenantContext("tenant-b", "user-1", ResolutionMethod.EXPLICIT_SESSION)
        other_subject = TenantContext("tenant-a", "user-2", ResolutionMethod.EXPLICIT_SESSION)

        assert ContextResolver.validate(subject, valid) is True
        assert ContextResolver.validate(subject, inactive) is False
        assert ContextResolver.validate(subject, other_subject) is False


class TestCancellationToken:
    """Test cases for CancellationToken."""

    def test_fresh_token_is_not_cancelled(self):
        assert CancellationToken().cancelled is False

    def test_cancel(self):
        token = CancellationToken()
        token.cancel()
        assert token.cancelled is True

    def test_future_deadline(self):
        token = CancellationToken.with_timeout(60)
        assert token.cancelled is False
        token.raise_if_cancelled("evaluate")
