"""
Shared utilities for the health API proxy.

This package aggregates common building blocks consumed by the proxy service:

- config: Service configuration via pydantic-settings
- logging: Structured logging with request correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- retry: Retry helpers with exponential backoff
- base_service: FastAPI service skeleton (health, metrics, error handlers)
- test_helpers: Mock token issuer and upstream transports for tests

Any cross-service logic should live here to avoid import cycles. Do not
import from service_* packages into shared/.
"""
