"""
Policy Service package for the Tenant Access Layer.

This package decides whether a subject may perform an action on a resource
inside a tenant. It provides:

- app.main: API surface for context resolution, evaluation and policy admin.
- app.context: Tenant context resolution and cancellation tokens.
- app.rules: Policy model, store, conditions, engine and document loader.
- app.audit: Fire-and-forget delivery of decisions to audit sinks.
- app.persistence: PostgreSQL storage for policies and audit records.

Guidelines:
- Tenant isolation is checked before any policy is consulted.
- Every error path denies; there is no configuration that grants by default.
- Policy changes are visible to the next evaluation; decisions are not cached.
"""
