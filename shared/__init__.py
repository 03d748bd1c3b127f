"""
Shared utilities for the resilient request gate.

This package aggregates common building blocks consumed by the gate service:

- clock: Wall-clock source injected into every time-windowed component
- config: Service configuration via pydantic-settings
- logging: Structured logging with correlation context
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- circuit_breaker: Backend health tracking for the distributed store
- base_service: FastAPI service base with health, metrics and error handlers
- test_helpers: Manual clock and flaky backend fakes for tests

Do not import from service_* packages into shared/.
"""
