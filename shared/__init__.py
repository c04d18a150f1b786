"""
Shared utilities for the Entitlement Engine.

This package aggregates common building blocks consumed by the services:

- config: Service configuration via pydantic-settings
- logging: Structured logging with request/user correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- retry: Bounded retry with exponential backoff
- base_service: FastAPI service scaffold

Do not import from service_* packages into shared/.
"""
