"""
Shared utilities for the query memoization layer.

- config: CacheConfig via pydantic-settings
- logging: structlog configuration and muted loggers
- metrics: Prometheus counters for cache outcomes
- errors: Canonical error types and responses
- test_helpers: In-memory async Redis double for tests

Modules other than test_helpers do not import from caching/.
"""
