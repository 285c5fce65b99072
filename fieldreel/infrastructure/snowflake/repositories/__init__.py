"""
Repository pattern implementations for Snowflake.

Repositories translate between domain models and database representations.
"""

from .recordings import RecordingRepository, RegistryError, SnowflakeConfig

__all__ = ["RecordingRepository", "RegistryError", "SnowflakeConfig"]
