"""
Policy service for the Tenant Access Layer.
"""

import asyncio
from typing import List, Optional
from datetime import datetime, timezone

from fastapi import Query

from shared.base_service import BaseService
from shared.config import ServiceConfig
from shared.errors import ServiceError
from shared.logging import set_subject_context

from .audit.dispatcher import AuditDispatcher
from .audit.sinks import AuditSink, HttpAuditSink, LoggingAuditSink
from .context.cancellation import CancellationToken
from .persistence.postgres import PostgreSQLPolicyRepository, PostgresAuditSink
from .rules.engine import PolicyEngine, PolicyEngineConfig
from .rules.loader import load_into_store, load_policies, policy_from_dict, policy_to_dict
from .rules.models import (
    ConflictReportResponse, DecisionResponse, EvaluateRequest, Policy, PolicyCreateRequest,
    PolicyListResponse, ResolveRequest, TenantContextResponse
)
from .rules.store import PolicyStore


def _token(timeout_ms: Optional[int]) -> Optional[CancellationToken]:
    if timeout_ms is None:
        return None
    return CancellationToken.with_timeout(timeout_ms / 1000.0)


class PolicyService(BaseService):
    """Policy decision point exposed over HTTP."""

    def __init__(self,
                 config: Optional[ServiceConfig] = None,
                 store: Optional[PolicyStore] = None,
                 audit_sink: Optional[AuditSink] = None,
                 repository: Optional[PostgreSQLPolicyRepository] = None):
        super().__init__("policy", 8013, config)

        self.engine_config = PolicyEngineConfig.from_settings(self.config)
        self.store = store if store is not None else PolicyStore()
        self.audit = AuditDispatcher(
            audit_sink or self._build_audit_sink(),
            capacity=self.engine_config.audit_queue_capacity,
            metrics=self.metrics
        )
        self.engine = PolicyEngine(
            self.store,
            audit=self.audit,
            config=self.engine_config,
            metrics=self.metrics
        )

        self.repository = repository
        if self.repository is None and self.config.policy_persistence_enabled:
            self.repository = PostgreSQLPolicyRepository(self.config.postgres_dsn)

        @self.app.on_event("startup")
        async def _startup():
            await self.start()

        @self.app.on_event("shutdown")
        async def _shutdown():
            await self.stop()

        self._setup_policy_routes()
        self._update_policy_gauge()

        self.app.state.policy_service = self

    def _build_audit_sink(self) -> AuditSink:
        sink = self.config.policy_audit_sink
        if sink == "http":
            return HttpAuditSink(self.config.audit_service_url)
        if sink == "postgres":
            return PostgresAuditSink(self.config.postgres_dsn)
        return LoggingAuditSink()

    def _update_policy_gauge(self):
        self.metrics.set_gauge("policies_registered", len(self.store))

    def _setup_policy_routes(self):
        """Set up policy-specific routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "policy",
                "message": "Tenant Access Layer - Policy Service",
                "version": "1.0.0",
                "capabilities": ["tenant_context", "policy_evaluation", "conflict_detection", "audit"]
            }

        @self.app.post("/policy/resolve", response_model=TenantContextResponse)
        async def resolve_context(request: ResolveRequest):
            """Resolve the tenant context for a subject."""
            subject = request.subject.to_domain()
            set_subject_context(subject_id=subject.subject_id, tenant_id=request.tenant_id)

            context = self.engine.resolver.resolve(subject, request.tenant_id, _token(request.timeout_ms))
            return TenantContextResponse(
                tenant_id=context.tenant_id,
                subject_id=context.subject_id,
                method=context.method,
                resolved_at=context.resolved_at
            )

        @self.app.post("/policy/evaluate", response_model=DecisionResponse)
        async def evaluate(request: EvaluateRequest):
            """Resolve the tenant context and evaluate one access request."""
            subject = request.subject.to_domain()
            set_subject_context(subject_id=subject.subject_id, tenant_id=request.tenant_id)

            decision = await asyncio.to_thread(
                self.engine.authorize,
                subject,
                request.resource.to_domain(),
                request.action,
                explicit_tenant_id=request.tenant_id,
                request=request.request.to_domain(),
                cancellation=_token(request.timeout_ms)
            )
            self.metrics.record_business_event("policy_decision_granted" if decision.granted else "policy_decision_denied")
            return DecisionResponse.from_decision(decision)

        @self.app.get("/policy/policies", response_model=PolicyListResponse)
        async def list_policies(
            category: Optional[str] = Query(None, description="Filter by resource category")
        ):
            """List policies in evaluation order."""
            if category:
                policies = self.store.lookup_by_category(category)
            else:
                policies = self.store.list_policies()
            return PolicyListResponse(
                policies=[policy_to_dict(policy) for policy in policies],
                total=len(policies)
            )

        @self.app.post("/policy/policies", status_code=201)
        async def create_policy(request: PolicyCreateRequest):
            """Register a policy."""
            policy = policy_from_dict(request.model_dump())
            await asyncio.to_thread(self.store.register, policy)

            if self.repository is not None:
                saved = await self.repository.save_policy(policy)
                if not saved:
                    await asyncio.to_thread(self.store.remove, policy.policy_id)
                    raise ServiceError("Failed to save policy to database",
                                       details={"policy_id": policy.policy_id}, code="POLICY_SAVE_FAILED")

            self._update_policy_gauge()
            conflicts = [
                ConflictReportResponse.from_report(report)
                for report in self.store.validate()
                if policy.policy_id in report.policy_ids
            ]
            self.logger.info("Policy created", policy_id=policy.policy_id, conflicts=len(conflicts))

            return {"policy": policy_to_dict(policy), "conflicts": [c.model_dump() for c in conflicts]}

        @self.app.delete("/policy/policies/{policy_id}")
        async def delete_policy(policy_id: str):
            """Remove a policy."""
            removed = await asyncio.to_thread(self.store.remove, policy_id)

            if self.repository is not None:
                deleted = await self.repository.delete_policy(policy_id)
                if not deleted:
                    await asyncio.to_thread(self.store.register, removed)
                    raise ServiceError("Failed to delete policy from database",
                                       details={"policy_id": policy_id}, code="POLICY_DELETE_FAILED")

            self._update_policy_gauge()
            self.logger.info("Policy deleted", policy_id=policy_id)
            return {"success": True, "message": "Policy deleted successfully"}

        @self.app.get("/policy/conflicts", response_model=List[ConflictReportResponse])
        async def get_conflicts():
            """Equal-priority ALLOW/DENY pairs the store cannot order."""
            return [ConflictReportResponse.from_report(report) for report in self.store.validate()]

        @self.app.get("/policy/stats")
        async def get_stats():
            """Get policy service statistics."""
            return {
                "store": self.store.stats(),
                "audit": self.audit.stats(),
                "timestamp": datetime.now(timezone.utc).isoformat()
            }

    async def _check_dependencies(self):
        """Check policy service dependencies."""
        dependencies = {
            "audit_dispatcher": "ok" if self.audit.running else "idle"
        }

        if self.repository is not None:
            try:
                dependencies["postgres"] = "ok" if await self.repository.health_check() else "error"
            except Exception:
                dependencies["postgres"] = "error"

        return dependencies

    async def start(self):
        """Start policy service components and load policies."""
        policies: List[Policy] = []
        if self.repository is not None:
            await self.repository.start()
            policies.extend(await self.repository.load_all_policies())

        if self.config.policy_file:
            policies.extend(load_policies(self.config.policy_file))

        if self.repository is not None or self.config.policy_file:
            conflicts = load_into_store(self.store, policies, replace=True)
            self._update_policy_gauge()
            self.logger.info(
                "Policies loaded",
                total=len(self.store),
                conflicts=len(conflicts),
                policy_file=self.config.policy_file
            )

        self.audit.start()
        self.logger.info("Policy service started", policies=len(self.store))

    async def stop(self):
        """Stop policy service components."""
        await asyncio.to_thread(self.audit.stop)
        if self.repository is not None:
            await self.repository.stop()

        self.logger.info("Policy service stopped")


def create_app(config: Optional[ServiceConfig] = None):
    """Create policy service application."""
    service = PolicyService(config)
    return service.app


def main():
    """Run the policy service with settings from the environment."""
    PolicyService().run()


if __name__ == "__main__":
    main()
