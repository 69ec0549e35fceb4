"""
Shared utilities for the CRM Automation service.

This package aggregates common building blocks consumed by the service:

- config: Service configuration via pydantic-settings
- logging: Structured logging with request correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- retry: Retry decorator and backoff calculation
- base_service: FastAPI app with health, metrics and error handlers

Any cross-cutting logic should live here. Do not import from
service_automation into shared/.
"""
