"""
Shared utilities for the optical offers platform.

This package aggregates common building blocks consumed by all services:

- config: Service configuration via pydantic-settings
- logging: Structured logging with request correlation
- metrics: Prometheus metrics helpers
- tracing: OpenTelemetry tracing config
- observability: Tracing, logging and metrics bundled per service
- errors: Canonical error types and responses
- base_service: FastAPI service scaffold
- test_helpers: Record factories for tests

Any cross-service logic should live here to avoid import cycles across
service packages. Only test_helpers imports from service packages.
"""
