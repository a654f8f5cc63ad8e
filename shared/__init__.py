"""
Shared utilities for the Tenant Access Layer.

This package aggregates common building blocks consumed by the services:

- config: Service configuration via pydantic-settings
- logging: Structured logging with trace correlation
- metrics: Prometheus metrics helpers
- tracing: OpenTelemetry tracing config
- errors: Canonical error types and responses
- retry: Async retry decorator with backoff
- circuit_breaker: Resilient external call protection
- base_service: FastAPI service scaffold
- test_helpers: Factories and fakes for tests

Any cross-service logic should live here to avoid import cycles across
service packages. Do not import from service packages into shared/.
"""
