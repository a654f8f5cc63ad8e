"""
In-memory policy store.

Reads vastly outnumber writes, so lookups share a read lock and
register/remove take the write lock. Writers are preferred so a steady stream
of evaluations cannot starve an administrative change.
"""

import threading
from contextlib import contextmanager
from itertools import combinations
from typing import Dict, Iterable, List, Optional, Any

from shared.logging import get_logger
from ..errors import DuplicatePolicyIdError, InvalidPolicyError, PolicyNotFoundError
from .conditions import conditions_overlap, validate_condition
from .models import ConflictReport, Policy, PolicyEffect, RoleLevel, WILDCARD


class ReadWriteLock:
    """Many readers or one writer."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._waiting_writers = 0

    @contextmanager
    def read(self):
        with self._cond:
            while self._writer or self._waiting_writers:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self):
        with self._cond:
            self._waiting_writers += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._waiting_writers -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


def _sort_key(policy: Policy):
    # priority desc, DENY before ALLOW on ties, then id for determinism
    return (-policy.priority, 0 if policy.effect == PolicyEffect.DENY else 1, policy.policy_id)


def check_policy(policy: Policy) -> None:
    """Raise InvalidPolicyError when ``policy`` is malformed."""
    if not isinstance(policy, Policy):
        raise InvalidPolicyError("Expected a Policy instance")
    if not policy.policy_id or not str(policy.policy_id).strip():
        raise InvalidPolicyError("Policy ID must not be empty")
    if not policy.category or not str(policy.category).strip():
        raise InvalidPolicyError(
            "Policy resource category must not be empty",
            details={"policy_id": policy.policy_id}
        )
    if not isinstance(policy.effect, PolicyEffect):
        raise InvalidPolicyError(
            "Policy effect must be ALLOW or DENY",
            details={"policy_id": policy.policy_id, "effect": str(policy.effect)}
        )
    if isinstance(policy.priority, bool) or not isinstance(policy.priority, int):
        raise InvalidPolicyError(
            "Policy priority must be an integer",
            details={"policy_id": policy.policy_id}
        )
    if any(not isinstance(role, RoleLevel) for role in policy.roles):
        raise InvalidPolicyError(
            "Policy roles must be role levels",
            details={"policy_id": policy.policy_id}
        )
    problems = validate_condition(policy.condition)
    if problems:
        raise InvalidPolicyError(
            "Policy condition is invalid",
            details={"policy_id": policy.policy_id, "problems": problems}
        )


class PolicyStore:
    """Registered policies keyed by ID, looked up by resource category."""

    def __init__(self, policies: Optional[Iterable[Policy]] = None):
        self.logger = get_logger("policy.store")
        self._lock = ReadWriteLock()
        self._policies: Dict[str, Policy] = {}
        for policy in policies or ():
            self.register(policy)

    def register(self, policy: Policy) -> None:
        """Add a policy; its ID must be new."""
        check_policy(policy)
        with self._lock.write():
            if policy.policy_id in self._policies:
                raise DuplicatePolicyIdError(policy.policy_id)
            self._policies[policy.policy_id] = policy

        self.logger.info(
            "Policy registered",
            policy_id=policy.policy_id,
            category=policy.category,
            effect=policy.effect.value,
            priority=policy.priority
        )

    def remove(self, policy_id: str) -> Policy:
        """Remove and return a policy."""
        with self._lock.write():
            policy = self._policies.pop(policy_id, None)
        if policy is None:
            raise PolicyNotFoundError(policy_id)

        self.logger.info("Policy removed", policy_id=policy_id, category=policy.category)
        return policy

    def replace_all(self, policies: Iterable[Policy]) -> None:
        """Swap in a complete policy set, or change nothing if any is invalid."""
        incoming: Dict[str, Policy] = {}
        for policy in policies:
            check_policy(policy)
            if policy.policy_id in incoming:
                raise DuplicatePolicyIdError(policy.policy_id)
            incoming[policy.policy_id] = policy

        with self._lock.write():
            self._policies = incoming

        self.logger.info("Policy set replaced", total=len(incoming))

    def get(self, policy_id: str) -> Optional[Policy]:
        with self._lock.read():
            return self._policies.get(policy_id)

    def list_policies(self) -> List[Policy]:
        """All policies in evaluation order."""
        with self._lock.read():
            policies = list(self._policies.values())
        return sorted(policies, key=_sort_key)

    def lookup_by_category(self, category: str) -> List[Policy]:
        """Policies for ``category`` plus wildcard policies, in evaluation order."""
        with self._lock.read():
            matches = [
                policy for policy in self._policies.values()
                if policy.category == category or policy.category == WILDCARD
            ]
        matches.sort(key=_sort_key)
        return matches

    def categories(self) -> List[str]:
        with self._lock.read():
            return sorted({policy.category for policy in self._policies.values()})

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._policies)

    def __contains__(self, policy_id: str) -> bool:
        with self._lock.read():
            return policy_id in self._policies

    def validate(self) -> List[ConflictReport]:
        """Report equal-priority ALLOW/DENY pairs with the same scope and overlapping conditions."""
        policies = self.list_policies()
        reports: List[ConflictReport] = []

        for left, right in combinations(policies, 2):
            if left.effect == right.effect:
                continue
            if left.category != right.category or left.priority != right.priority:
                continue
            if left.roles != right.roles or left.tenant_id != right.tenant_id:
                continue
            if left.actions and right.actions and not (left.actions & right.actions):
                continue
            if not conditions_overlap(left.condition, right.condition):
                continue

            deny, allow = (left, right) if left.effect == PolicyEffect.DENY else (right, left)
            reports.append(ConflictReport(
                policy_ids=(allow.policy_id, deny.policy_id),
                category=left.category,
                roles=left.roles,
                priority=left.priority,
                message=(
                    f"ALLOW '{allow.policy_id}' and DENY '{deny.policy_id}' share category "
                    f"'{left.category}', roles and priority {left.priority} with overlapping conditions"
                )
            ))

        if reports:
            self.logger.warning("Policy conflicts detected", conflicts=len(reports))
        return reports

    def stats(self) -> Dict[str, Any]:
        policies = self.list_policies()
        by_category: Dict[str, int] = {}
        for policy in policies:
            by_category[policy.category] = by_category.get(policy.category, 0) + 1
        return {
            "total_policies": len(policies),
            "allow_policies": sum(1 for p in policies if p.effect == PolicyEffect.ALLOW),
            "deny_policies": sum(1 for p in policies if p.effect == PolicyEffect.DENY),
            "enabled_policies": sum(1 for p in policies if p.enabled),
            "categories": by_category
        }
