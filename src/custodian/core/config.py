"""Core configuration - centralized config for the custodian package.

All environment-based configuration should flow through this module.
The engine never reads the global instance itself: entry points (CLI,
scheduler wiring) call ``get_config()`` and pass the settings object to
``PrivacyEngine.from_settings``.

Usage:
    from custodian.core.config import get_config
    config = get_config()

    # Access settings
    db_host = config.db_host
    batch_size = config.retention_batch_size
"""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class CoreSettings(BaseSettings):
    """Core configuration settings for Custodian.

    Settings can be configured via environment variables with the
    CUSTODIAN_ prefix, or passed by name when constructed in code.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # ==========================================================================
    # DATABASE SETTINGS
    # ==========================================================================

    db_host: str = Field(
        default="localhost",
        description="Database host",
        validation_alias="CUSTODIAN_DB_HOST",
    )
    db_port: int = Field(
        default=5432,
        description="Database port",
        validation_alias="CUSTODIAN_DB_PORT",
    )
    db_name: str = Field(
        default="custodian",
        description="Database name",
        validation_alias="CUSTODIAN_DB_NAME",
    )
    db_user: str = Field(
        default="custodian",
        description="Database user",
        validation_alias="CUSTODIAN_DB_USER",
    )
    db_password: str = Field(
        default="",
        description="Database password",
        validation_alias="CUSTODIAN_DB_PASSWORD",
    )

    # Connection pool settings
    db_pool_min: int = Field(
        default=1,
        description="Minimum pool connections",
        validation_alias="CUSTODIAN_DB_POOL_MIN",
    )
    db_pool_max: int = Field(
        default=10,
        description="Maximum pool connections",
        validation_alias="CUSTODIAN_DB_POOL_MAX",
    )
    db_pool_timeout: float = Field(
        default=30.0,
        description="Seconds to wait for a free pooled connection",
        validation_alias="CUSTODIAN_DB_POOL_TIMEOUT",
    )

    # ==========================================================================
    # ENCRYPTION SETTINGS
    # ==========================================================================

    encryption_key: str = Field(
        default="",
        description="AES-256 field key as 64 hex characters",
        validation_alias="CUSTODIAN_ENCRYPTION_KEY",
    )
    encryption_previous_keys: str = Field(
        default="",
        description="Comma-separated hex keys still accepted for decryption during rotation",
        validation_alias="CUSTODIAN_ENCRYPTION_PREVIOUS_KEYS",
    )

    # ==========================================================================
    # EXPORT SETTINGS
    # ==========================================================================

    artifact_dir: str = Field(
        default="./artifacts",
        description="Root directory of the local export artifact store",
        validation_alias="CUSTODIAN_ARTIFACT_DIR",
    )
    export_workers: int = Field(
        default=2,
        ge=0,
        description="Export worker threads (0 processes exports inline)",
        validation_alias="CUSTODIAN_EXPORT_WORKERS",
    )
    export_timeout_seconds: float = Field(
        default=300.0,
        gt=0,
        description="Deadline for gathering one export bundle",
        validation_alias="CUSTODIAN_EXPORT_TIMEOUT_SECONDS",
    )
    export_cooldown_hours: float = Field(
        default=0.0,
        ge=0,
        description="Minimum hours between exports for one user (0 disables)",
        validation_alias="CUSTODIAN_EXPORT_COOLDOWN_HOURS",
    )

    # ==========================================================================
    # RETENTION SETTINGS
    # ==========================================================================

    retention_batch_size: int = Field(
        default=1000,
        gt=0,
        description="Rows deleted per retention batch",
        validation_alias="CUSTODIAN_RETENTION_BATCH_SIZE",
    )
    retention_batch_pause_seconds: float = Field(
        default=0.1,
        ge=0,
        description="Pause between retention batches",
        validation_alias="CUSTODIAN_RETENTION_BATCH_PAUSE_SECONDS",
    )

    # ==========================================================================
    # LOGGING SETTINGS
    # ==========================================================================

    log_level: str = Field(
        default="INFO",
        description="Log level (DEBUG, INFO, WARNING, ERROR)",
        validation_alias="CUSTODIAN_LOG_LEVEL",
    )
    log_format: str = Field(
        default="",
        description="Log format: 'json', 'text', or '' (auto-detect)",
        validation_alias="CUSTODIAN_LOG_FORMAT",
    )
    log_file: str | None = Field(
        default=None,
        description="Log file path (optional)",
        validation_alias="CUSTODIAN_LOG_FILE",
    )

    # ==========================================================================
    # COMPUTED PROPERTIES
    # ==========================================================================

    @property
    def database_url(self) -> str:
        """Construct database URL."""
        return f"postgresql://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    @property
    def connection_params(self) -> dict:
        """Get database connection parameters dict."""
        return {
            "host": self.db_host,
            "port": self.db_port,
            "dbname": self.db_name,
            "user": self.db_user,
            "password": self.db_password,
        }

    @property
    def pool_config(self) -> dict:
        """Get connection pool configuration."""
        return {
            "minconn": self.db_pool_min,
            "maxconn": self.db_pool_max,
        }

    @property
    def previous_keys(self) -> list[str]:
        """Previous encryption keys as a list of hex strings."""
        return [k.strip() for k in self.encryption_previous_keys.split(",") if k.strip()]


# ==========================================================================
# GLOBAL CONFIG INSTANCE (lazy loaded)
# ==========================================================================

_config: CoreSettings | None = None


def get_config() -> CoreSettings:
    """Get the global configuration instance.

    Returns:
        The singleton CoreSettings instance.
    """
    global _config
    if _config is None:
        _config = CoreSettings()
    return _config


def set_config(config: CoreSettings) -> None:
    """Replace the global configuration instance (for tests and embedding)."""
    global _config
    _config = config


def clear_config_cache() -> None:
    """Clear the config cache. Useful for testing."""
    global _config
    _config = None
