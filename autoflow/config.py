"""Configuration management for the autoflow workflow engine."""

import os
from typing import Optional, Dict, Any
from pydantic import BaseModel, Field, field_validator, model_validator
from enum import Enum

from .core.exceptions import ConfigurationError

ENV_PREFIX = "AUTOFLOW_"


class LogLevel(str, Enum):
    """Logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class AppConfig(BaseModel):
    """Application configuration settings."""

    # Application settings
    app_name: str = Field(default="autoflow", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    debug: bool = Field(default=False, description="Enable debug mode")

    # Server settings
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port")
    reload: bool = Field(default=False, description="Enable auto-reload in development")

    # Database settings
    database_url: str = Field(
        default="sqlite:///./autoflow.db",
        description="Database connection URL"
    )
    database_echo: bool = Field(default=False, description="Enable SQLAlchemy query logging")

    # Scheduler settings
    max_concurrent_nodes: int = Field(
        default=10,
        description="Maximum number of nodes running at once within a run"
    )
    default_node_timeout_ms: int = Field(
        default=30000,
        description="Node timeout in milliseconds when neither node nor workflow sets one"
    )
    retry_base_delay: float = Field(default=1.0, description="First retry delay in seconds")
    retry_max_delay: float = Field(default=30.0, description="Upper bound on retry delay in seconds")
    retry_jitter: bool = Field(default=True, description="Randomize retry delays")

    # Logging settings
    log_level: LogLevel = Field(default=LogLevel.INFO, description="Logging level")
    log_format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log message format"
    )
    log_file: Optional[str] = Field(default=None, description="Log file path")
    log_structured: bool = Field(default=False, description="Emit JSON log lines")
    log_max_size: int = Field(default=10485760, description="Maximum log file size in bytes")  # 10MB
    log_backup_count: int = Field(default=5, description="Number of log backup files to keep")

    # Security settings
    cors_origins: list = Field(
        default=["*"],
        description="CORS allowed origins"
    )

    @field_validator('database_url')
    @classmethod
    def validate_database_url(cls, v):
        """Validate database URL format."""
        if not v:
            raise ValueError("Database URL cannot be empty")

        supported_schemes = ['sqlite', 'postgresql', 'mysql']
        scheme = v.split('://')[0].split('+')[0].lower()

        if scheme not in supported_schemes:
            raise ValueError(f"Unsupported database scheme: {scheme}. Supported: {supported_schemes}")

        return v

    @field_validator('port')
    @classmethod
    def validate_port(cls, v):
        """Validate port number."""
        if not 1 <= v <= 65535:
            raise ValueError("Port must be between 1 and 65535")
        return v

    @field_validator('max_concurrent_nodes')
    @classmethod
    def validate_max_concurrent_nodes(cls, v):
        if v < 1:
            raise ValueError("Maximum concurrent nodes must be at least 1")
        return v

    @field_validator('default_node_timeout_ms')
    @classmethod
    def validate_timeout(cls, v):
        if v < 1:
            raise ValueError("Node timeout must be at least 1 millisecond")
        return v

    @model_validator(mode='after')
    def validate_retry_delays(self):
        if self.retry_base_delay < 0:
            raise ValueError("Retry base delay cannot be negative")
        if self.retry_max_delay < self.retry_base_delay:
            raise ValueError("Retry max delay must not be below the base delay")
        return self

    @property
    def is_sqlite(self) -> bool:
        """Check if using SQLite database."""
        return self.database_url.lower().startswith('sqlite')

    def get_database_connect_args(self) -> Dict[str, Any]:
        """Get database connection arguments based on database type."""
        if self.is_sqlite:
            return {"check_same_thread": False}
        return {}

    def get_uvicorn_config(self) -> Dict[str, Any]:
        """Get Uvicorn server configuration."""
        return {
            "host": self.host,
            "port": self.port,
            "reload": self.reload,
            "log_level": self.log_level.value.lower(),
            "access_log": self.debug
        }

    @classmethod
    def from_env(cls) -> 'AppConfig':
        """Create configuration from AUTOFLOW_* environment variables."""
        def get_env(key: str, default=None, type_func=str):
            """Get environment variable with type conversion."""
            value = os.getenv(f"{ENV_PREFIX}{key}")
            if value is None:
                return default
            if type_func == bool:
                return str(value).lower() in ('true', '1', 'yes', 'on')
            elif type_func == list:
                return value.split(',') if value else default
            try:
                return type_func(value)
            except ValueError:
                raise ConfigurationError(
                    f"Invalid value for {ENV_PREFIX}{key}: {value!r}", config_key=f"{ENV_PREFIX}{key}"
                )

        try:
            return cls(
                app_name=get_env("APP_NAME", "autoflow"),
                app_version=get_env("APP_VERSION", "1.0.0"),
                debug=get_env("DEBUG", False, bool),
                host=get_env("HOST", "0.0.0.0"),
                port=get_env("PORT", 8000, int),
                reload=get_env("RELOAD", False, bool),
                database_url=get_env("DATABASE_URL", "sqlite:///./autoflow.db"),
                database_echo=get_env("DATABASE_ECHO", False, bool),
                max_concurrent_nodes=get_env("MAX_CONCURRENT_NODES", 10, int),
                default_node_timeout_ms=get_env("DEFAULT_NODE_TIMEOUT_MS", 30000, int),
                retry_base_delay=get_env("RETRY_BASE_DELAY", 1.0, float),
                retry_max_delay=get_env("RETRY_MAX_DELAY", 30.0, float),
                retry_jitter=get_env("RETRY_JITTER", True, bool),
                log_level=LogLevel(get_env("LOG_LEVEL", "INFO").upper()),
                log_format=get_env("LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s"),
                log_file=get_env("LOG_FILE", None),
                log_structured=get_env("LOG_STRUCTURED", False, bool),
                log_max_size=get_env("LOG_MAX_SIZE", 10485760, int),
                log_backup_count=get_env("LOG_BACKUP_COUNT", 5, int),
                cors_origins=get_env("CORS_ORIGINS", ["*"], list),
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid configuration: {str(e)}")


# Global configuration instance
_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = AppConfig.from_env()
    return _config


def load_config(config_file: Optional[str] = None) -> AppConfig:
    """Load configuration from a .env file and environment variables."""
    global _config

    from dotenv import load_dotenv
    if config_file and os.path.exists(config_file):
        load_dotenv(config_file)
    elif os.path.exists('.env'):
        load_dotenv('.env')

    _config = AppConfig.from_env()
    return _config


def reset_config():
    """Reset the global configuration instance (mainly for testing)."""
    global _config
    _config = None


def get_testing_config() -> AppConfig:
    """Get testing configuration."""
    return AppConfig(
        debug=True,
        database_url="sqlite:///:memory:",
        log_level=LogLevel.WARNING,
        max_concurrent_nodes=4,
        default_node_timeout_ms=2000,
        retry_base_delay=0.0,
        retry_max_delay=0.0,
        retry_jitter=False,
    )
