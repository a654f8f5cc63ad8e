"""
PostgreSQL persistence for the Policy Service.

Policies are stored one row per policy using the same record layout as the
declarative document format. Audit decisions go to an INSERT-only table.
"""

import json
from typing import Any, Dict, List, Optional

import asyncpg

from shared.logging import get_logger
from shared.errors import ServiceError
from ..audit.sinks import AuditSink, audit_payload
from ..errors import AuditSinkUnavailableError
from ..rules.loader import policy_from_dict, policy_to_dict
from ..rules.models import Decision, Policy, ResourceRef, SubjectRef

POLICY_TABLE_DDL = """
    CREATE TABLE IF NOT EXISTS policies (
        policy_id VARCHAR(255) PRIMARY KEY,
        category VARCHAR(100) NOT NULL,
        effect VARCHAR(10) NOT NULL CHECK (effect IN ('allow', 'deny')),
        roles JSONB NOT NULL DEFAULT '[]',
        actions JSONB NOT NULL DEFAULT '[]',
        condition JSONB,
        priority INTEGER NOT NULL DEFAULT 0,
        name VARCHAR(255),
        description TEXT,
        tenant_id VARCHAR(255),
        enabled BOOLEAN NOT NULL DEFAULT TRUE,
        expires_at TIMESTAMP WITH TIME ZONE,
        created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
    );
"""

POLICY_INDEX_DDL = (
    "CREATE INDEX IF NOT EXISTS idx_policies_category ON policies(category);",
    "CREATE INDEX IF NOT EXISTS idx_policies_tenant ON policies(tenant_id);",
    "CREATE INDEX IF NOT EXISTS idx_policies_priority ON policies(priority DESC);",
)

AUDIT_TABLE_DDL = """
    CREATE TABLE IF NOT EXISTS policy_audit_log (
        audit_id BIGSERIAL PRIMARY KEY,
        evaluated_at TIMESTAMP WITH TIME ZONE NOT NULL,
        subject_id VARCHAR(255) NOT NULL,
        tenant_id VARCHAR(255),
        resource_category VARCHAR(100) NOT NULL,
        resource_id VARCHAR(255) NOT NULL,
        action VARCHAR(100),
        granted BOOLEAN NOT NULL,
        matched_policy_id VARCHAR(255),
        reason TEXT NOT NULL,
        risk_score SMALLINT NOT NULL CHECK (risk_score BETWEEN 0 AND 100),
        error_code VARCHAR(64),
        record JSONB NOT NULL
    );
"""


class PostgreSQLPolicyRepository:
    """Policy definitions in PostgreSQL."""

    def __init__(self, dsn: str):
        self.dsn = dsn
        self.logger = get_logger("policy.persistence.postgres")
        self.pool: Optional[asyncpg.Pool] = None

    async def start(self):
        """Open the pool and create tables."""
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=1,
                max_size=5,
                command_timeout=30
            )
            async with self.pool.acquire() as conn:
                await conn.execute(POLICY_TABLE_DDL)
                for statement in POLICY_INDEX_DDL:
                    await conn.execute(statement)

            self.logger.info("PostgreSQL policy repository started")

        except Exception as e:
            self.logger.error("Failed to start PostgreSQL policy repository", error=str(e))
            raise ServiceError("Failed to start PostgreSQL policy repository",
                               details={"error": str(e)}, code="POSTGRES_START_FAILED")

    async def stop(self):
        if self.pool:
            await self.pool.close()
            self.pool = None
            self.logger.info("PostgreSQL policy repository stopped")

    async def save_policy(self, policy: Policy) -> bool:
        """Insert or update one policy."""
        record = policy_to_dict(policy)
        try:
            async with self.pool.acquire() as conn:
                await conn.execute("""
                    INSERT INTO policies (
                        policy_id, category, effect, roles, actions, condition,
                        priority, name, description, tenant_id, enabled, expires_at
                    ) VALUES ($1, $2, $3, $4::jsonb, $5::jsonb, $6::jsonb, $7, $8, $9, $10, $11, $12)
                    ON CONFLICT (policy_id) DO UPDATE SET
                        category = EXCLUDED.category,
                        effect = EXCLUDED.effect,
                        roles = EXCLUDED.roles,
                        actions = EXCLUDED.actions,
                        condition = EXCLUDED.condition,
                        priority = EXCLUDED.priority,
                        name = EXCLUDED.name,
                        description = EXCLUDED.description,
                        tenant_id = EXCLUDED.tenant_id,
                        enabled = EXCLUDED.enabled,
                        expires_at = EXCLUDED.expires_at,
                        updated_at = NOW()
                """,
                    policy.policy_id, policy.category, policy.effect.value,
                    json.dumps(record["roles"]), json.dumps(record["actions"]),
                    json.dumps(record["condition"]) if record["condition"] is not None else None,
                    policy.priority, policy.name, policy.description, policy.tenant_id,
                    policy.enabled, policy.expires_at
                )

            self.logger.info("Policy saved", policy_id=policy.policy_id)
            return True

        except Exception as e:
            self.logger.error("Error saving policy", policy_id=policy.policy_id, error=str(e))
            return False

    async def delete_policy(self, policy_id: str) -> bool:
        try:
            async with self.pool.acquire() as conn:
                result = await conn.execute("DELETE FROM policies WHERE policy_id = $1", policy_id)

            if result == "DELETE 1":
                self.logger.info("Policy deleted", policy_id=policy_id)
                return True
            self.logger.warning("Policy not found for deletion", policy_id=policy_id)
            return False

        except Exception as e:
            self.logger.error("Error deleting policy", policy_id=policy_id, error=str(e))
            return False

    async def load_all_policies(self) -> List[Policy]:
        """Every stored policy. Raises so callers never mistake an outage for an empty set."""
        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch("SELECT * FROM policies ORDER BY priority DESC, policy_id ASC")
        except Exception as e:
            self.logger.error("Error loading policies", error=str(e))
            raise ServiceError("Failed to load policies", details={"error": str(e)}, code="POLICY_LOAD_FAILED")

        return [self._row_to_policy(row) for row in rows]

    @staticmethod
    def _decode(value: Any) -> Any:
        if isinstance(value, str):
            return json.loads(value)
        return value

    def _row_to_policy(self, row) -> Policy:
        return policy_from_dict({
            "id": row["policy_id"],
            "category": row["category"],
            "effect": row["effect"],
            "roles": self._decode(row["roles"]),
            "actions": self._decode(row["actions"]),
            "condition": self._decode(row["condition"]),
            "priority": row["priority"],
            "name": row["name"],
            "description": row["description"],
            "tenant_id": row["tenant_id"],
            "enabled": row["enabled"],
            "expires_at": row["expires_at"],
        })

    async def health_check(self) -> bool:
        if self.pool is None:
            return False
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
            return True
        except Exception:
            return False


class PostgresAuditSink(AuditSink):
    """Append-only audit table. The sink only ever INSERTs."""

    def __init__(self, dsn: str, pool: Optional[asyncpg.Pool] = None):
        self.dsn = dsn
        self.pool = pool
        self._table_ready = pool is not None
        self.logger = get_logger("policy.audit.postgres")

    async def _get_pool(self) -> asyncpg.Pool:
        # created lazily so the pool binds to the dispatcher's event loop
        if self.pool is None:
            self.pool = await asyncpg.create_pool(self.dsn, min_size=1, max_size=2, command_timeout=10)
        if not self._table_ready:
            async with self.pool.acquire() as conn:
                await conn.execute(AUDIT_TABLE_DDL)
            self._table_ready = True
        return self.pool

    async def record(self, decision: Decision, subject: SubjectRef, resource: ResourceRef) -> None:
        payload = audit_payload(decision, subject, resource)
        try:
            pool = await self._get_pool()
            async with pool.acquire() as conn:
                await conn.execute("""
                    INSERT INTO policy_audit_log (
                        evaluated_at, subject_id, tenant_id, resource_category, resource_id,
                        action, granted, matched_policy_id, reason, risk_score, error_code, record
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12::jsonb)
                """,
                    decision.evaluated_at, subject.subject_id, decision.tenant_id,
                    resource.category, resource.resource_id, decision.action, decision.granted,
                    decision.matched_policy_id, decision.reason, decision.risk_score,
                    decision.error_code, json.dumps(payload)
                )
        except Exception as e:
            raise AuditSinkUnavailableError(
                "Failed to write audit record",
                details={"sink": "postgres", "error": str(e)}
            ) from e

    async def close(self) -> None:
        if self.pool is not None:
            await self.pool.close()
            self.pool = None

    def stats(self) -> Dict[str, Any]:
        return {"sink": "postgres", "connected": self.pool is not None}
