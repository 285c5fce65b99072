"""
Application configuration using Pydantic settings.

Configuration is loaded from environment variables with sensible defaults.
Using Pydantic's BaseSettings means we get:
- Type validation at startup (fail fast if config is wrong)
- Documentation of what's required vs optional
- Easy testing with different configurations

Mock modes enable local development without external services.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..infrastructure.snowflake.repositories import SnowflakeConfig
from ..infrastructure.storage.client import StorageConfig


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All settings can be overridden via environment variables.
    For lists (like api_keys), use comma-separated values in env.
    """

    # API Configuration
    api_title: str = "FieldReel Upload API"
    api_version: str = "v1"
    api_keys: str = Field(
        default="dev-key-1,dev-key-2",
        description="Comma-separated API keys. Using a list enables key rotation without downtime."
    )

    # S3 Storage Configuration
    s3_bucket_name: str = Field(
        default="fieldreel-recordings",
        description="Bucket holding recorded videos"
    )
    aws_region: str = Field(
        default="ap-northeast-2",
        description="Region of the bucket; also used to build public URLs"
    )
    aws_access_key_id: str = Field(
        default="",
        description="Access key used to sign credentials"
    )
    aws_secret_access_key: str = Field(
        default="",
        description="Secret key used to sign credentials"
    )
    s3_endpoint_url: Optional[str] = Field(
        default=None,
        description="Custom endpoint for S3-compatible stores (R2, MinIO)"
    )
    s3_mock_mode: bool = Field(
        default=False,
        description="Use in-memory mock instead of real S3. Enables local dev without object storage."
    )

    # Credentials
    presigned_url_expires_seconds: int = Field(
        default=3600,
        description="Default lifetime of signed write credentials"
    )
    max_credential_ttl_seconds: int = Field(
        default=43200,
        description="Upper bound for any requested credential lifetime"
    )
    read_url_expires_seconds: int = Field(
        default=3600,
        description="Lifetime of signed playback URLs"
    )

    # Uploads
    max_single_upload_mb: int = Field(
        default=100,
        description="Largest file accepted on the single presigned PUT path"
    )
    multipart_ticket_lifetime_hours: int = Field(
        default=24,
        description="How long a multipart upload may stay open"
    )
    ticket_retention_minutes: int = Field(
        default=60,
        description="How long finished tickets are kept so repeated aborts stay idempotent"
    )

    # Chunked reassembly
    chunked_upload_enabled: bool = Field(
        default=True,
        description="Offer server-side chunk reassembly for clients without multipart support"
    )
    chunk_session_ttl_minutes: int = Field(
        default=30,
        description="Absolute lifetime of a reassembly session"
    )
    max_chunk_session_mb: int = Field(
        default=100,
        description="Bytes one session may buffer in memory"
    )
    max_total_chunks: int = Field(
        default=10000,
        description="Largest chunk count a session may declare"
    )

    # Streaming and background work
    stream_chunk_size_bytes: int = Field(
        default=1024 * 1024,
        description="Size of the pieces relayed to playback clients"
    )
    reaper_interval_seconds: float = Field(
        default=60,
        description="Seconds between sweeps of expired tickets and sessions"
    )

    # Snowflake Configuration (recording registry)
    snowflake_account: str = Field(
        default="",
        description="Snowflake account identifier"
    )
    snowflake_user: str = Field(
        default="",
        description="Snowflake service account username"
    )
    snowflake_password: str = Field(
        default="",
        description="Snowflake service account password"
    )
    snowflake_private_key_path: Optional[str] = Field(
        default=None,
        description="Path to RSA private key file for key-pair authentication"
    )
    snowflake_private_key_base64: Optional[str] = Field(
        default=None,
        description="Base64-encoded private key (for deployment, alternative to file path)"
    )
    snowflake_database: str = Field(
        default="FIELDREEL",
        description="Snowflake database name"
    )
    snowflake_schema: str = Field(
        default="RECORDINGS",
        description="Snowflake schema name"
    )
    snowflake_warehouse: str = Field(
        default="COMPUTE_WH",
        description="Snowflake warehouse for query execution"
    )
    snowflake_role: Optional[str] = Field(
        default=None,
        description="Snowflake role to use (optional)"
    )
    snowflake_mock_mode: bool = Field(
        default=False,
        description="Use in-memory mock instead of real Snowflake connection. Enables local dev without DB."
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )

    # CORS
    cors_origins: str = Field(
        default="http://localhost:3000",
        description="Comma-separated list of allowed CORS origins. Use * for development only."
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @property
    def api_keys_list(self) -> list[str]:
        """Parse comma-separated API keys into a list."""
        return [key.strip() for key in self.api_keys.split(",") if key.strip()]

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse comma-separated CORS origins into a list."""
        if self.cors_origins == "*":
            return ["*"]
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def max_single_upload_bytes(self) -> int:
        return self.max_single_upload_mb * 1024 * 1024

    @property
    def max_chunk_session_bytes(self) -> int:
        return self.max_chunk_session_mb * 1024 * 1024

    def storage_config(self) -> StorageConfig:
        return StorageConfig(
            access_key_id=self.aws_access_key_id,
            secret_access_key=self.aws_secret_access_key,
            bucket_name=self.s3_bucket_name,
            region=self.aws_region,
            endpoint_url=self.s3_endpoint_url,
        )

    def snowflake_config(self) -> SnowflakeConfig:
        return SnowflakeConfig(
            account=self.snowflake_account,
            user=self.snowflake_user,
            password=self.snowflake_password or None,
            private_key_path=self.snowflake_private_key_path,
            private_key_base64=self.snowflake_private_key_base64,
            database=self.snowflake_database,
            schema=self.snowflake_schema,
            warehouse=self.snowflake_warehouse,
            role=self.snowflake_role,
        )

    def validate_required_fields(self) -> list[str]:
        """
        Validate that required fields are set based on mock mode settings.

        Returns list of missing required fields.
        This is separate from Pydantic validation because requirements
        depend on whether we're in mock mode.
        """
        missing = []

        if not self.snowflake_mock_mode:
            if not self.snowflake_account:
                missing.append("SNOWFLAKE_ACCOUNT")
            if not self.snowflake_user:
                missing.append("SNOWFLAKE_USER")
            has_key = self.snowflake_private_key_path or self.snowflake_private_key_base64
            if not self.snowflake_password and not has_key:
                missing.append("SNOWFLAKE_PASSWORD or SNOWFLAKE_PRIVATE_KEY_PATH")

        if not self.s3_mock_mode:
            if not self.s3_bucket_name:
                missing.append("S3_BUCKET_NAME")
            if not self.aws_access_key_id:
                missing.append("AWS_ACCESS_KEY_ID")
            if not self.aws_secret_access_key:
                missing.append("AWS_SECRET_ACCESS_KEY")

        return missing


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Using lru_cache means we only load settings once per process.
    For tests, you can call get_settings.cache_clear() to reset.
    """
    return Settings()
