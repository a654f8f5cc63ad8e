"""
Audit package for the Policy Service.

Decisions leave the engine through ``AuditDispatcher``, a bounded queue that
never blocks evaluation, and land in an ``AuditSink``: structured logs, an
external audit-log service over HTTP, or an append-only PostgreSQL table.
"""
