"""
Infrastructure layer - external service integrations.

Each subdirectory wraps an external dependency:
- snowflake: Recording registry
- storage: Object storage (S3 and S3-compatible)

These wrappers translate between external formats and our domain models.
"""
