"""Configuration management for the Campaign Workflow Engine."""

import os
from typing import Optional, Dict, Any, List
from pydantic import BaseModel, Field, field_validator, model_validator
from enum import Enum


class LogLevel(str, Enum):
    """Logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class DatabaseType(str, Enum):
    """Supported database types."""
    SQLITE = "sqlite"
    POSTGRESQL = "postgresql"
    MYSQL = "mysql"


class AppConfig(BaseModel):
    """Application configuration settings."""

    # Application settings
    app_name: str = Field(default="Campaign Workflow Engine", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    debug: bool = Field(default=False, description="Enable debug mode")

    # Server settings
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port")
    reload: bool = Field(default=False, description="Enable auto-reload in development")

    # Database settings
    database_url: str = Field(
        default="sqlite:///./campaign_engine.db",
        description="Database connection URL"
    )
    database_echo: bool = Field(default=False, description="Enable SQLAlchemy query logging")
    database_pool_size: int = Field(default=5, description="Database connection pool size")
    database_max_overflow: int = Field(default=10, description="Database connection pool overflow")

    # Scheduler settings
    scheduler_enabled: bool = Field(default=True, description="Run the scheduler loop inside the API process")
    scheduler_interval_seconds: float = Field(default=300.0, description="Seconds between scheduler ticks")
    scheduler_batch_size: int = Field(default=100, description="Due enrollments selected per tick")
    scheduler_lease_seconds: float = Field(default=120.0, description="Claim lease duration in seconds")
    scheduler_max_workers: int = Field(default=10, description="Enrollments advanced in parallel")
    scheduler_max_steps_per_claim: int = Field(
        default=20,
        description="Consecutive steps a claimed enrollment may take in one tick"
    )

    # Message retry settings
    retry_base_delay_seconds: float = Field(default=3600.0, description="Delay before the first message retry")
    retry_max_delay_seconds: float = Field(default=86400.0, description="Upper bound on a single retry delay")
    retry_max_retries: int = Field(default=5, description="Retries after the first failed send")

    # External services
    channel_url: Optional[str] = Field(default=None, description="Messaging gateway base URL")
    contacts_url: Optional[str] = Field(default=None, description="CRM contact service base URL")
    notifications_url: Optional[str] = Field(default=None, description="Team notification service base URL")
    api_key: Optional[str] = Field(default=None, description="Bearer token for the external services")
    http_timeout: float = Field(default=10.0, description="Timeout for external HTTP calls in seconds")
    send_timeout: float = Field(default=30.0, description="Upper bound on one channel send in seconds")

    # Default business calendar
    business_hours_start: str = Field(default="09:00", description="Default business day start (HH:MM)")
    business_hours_end: str = Field(default="17:00", description="Default business day end (HH:MM)")
    default_timezone: str = Field(default="UTC", description="Timezone for workflows that name none")

    # Logging settings
    log_level: LogLevel = Field(default=LogLevel.INFO, description="Logging level")
    log_format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log message format"
    )
    log_file: Optional[str] = Field(default=None, description="Log file path")
    log_max_size: int = Field(default=10485760, description="Maximum log file size in bytes")  # 10MB
    log_backup_count: int = Field(default=5, description="Number of log backup files to keep")
    log_structured: bool = Field(default=False, description="Emit JSON log lines")

    # Health check settings
    health_check_timeout: float = Field(
        default=5.0,
        description="Health check timeout in seconds"
    )

    # Performance monitoring settings
    slow_request_threshold: float = Field(
        default=5.0,
        description="Slow request threshold in seconds"
    )
    enable_performance_monitoring: bool = Field(
        default=True,
        description="Enable performance monitoring middleware"
    )

    # Security settings
    cors_origins: list = Field(
        default=["*"],
        description="CORS allowed origins"
    )
    cors_methods: list = Field(
        default=["GET", "POST"],
        description="CORS allowed methods"
    )

    @field_validator('database_url')
    @classmethod
    def validate_database_url(cls, v):
        """Validate database URL format."""
        if not v:
            raise ValueError("Database URL cannot be empty")

        supported_schemes = ['sqlite', 'postgresql', 'mysql']
        scheme = v.split('://')[0].lower().split('+')[0]

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

    @field_validator('scheduler_batch_size', 'scheduler_max_workers', 'scheduler_max_steps_per_claim')
    @classmethod
    def validate_positive_counts(cls, v):
        if v < 1:
            raise ValueError("Scheduler sizes must be at least 1")
        return v

    @field_validator('scheduler_interval_seconds', 'scheduler_lease_seconds', 'http_timeout', 'send_timeout')
    @classmethod
    def validate_durations(cls, v):
        """Validate timeout and interval values."""
        if v <= 0:
            raise ValueError("Durations must be positive")
        return v

    @field_validator('retry_max_retries')
    @classmethod
    def validate_max_retries(cls, v):
        if v < 0:
            raise ValueError("retry_max_retries cannot be negative")
        return v

    @field_validator('business_hours_start', 'business_hours_end')
    @classmethod
    def validate_business_time(cls, v):
        parts = v.split(':')
        if len(parts) != 2 or not all(part.isdigit() for part in parts):
            raise ValueError("Business hours must be HH:MM")
        if not (0 <= int(parts[0]) <= 23 and 0 <= int(parts[1]) <= 59):
            raise ValueError("Business hours must be a valid time of day")
        return v

    @model_validator(mode="after")
    def validate_retry_delays(self):
        if self.retry_base_delay_seconds <= 0 or self.retry_max_delay_seconds < self.retry_base_delay_seconds:
            raise ValueError("Retry delays must be positive and the cap at least the base delay")
        return self

    @property
    def database_type(self) -> DatabaseType:
        """Get the database type from the URL."""
        scheme = self.database_url.split('://')[0].lower()
        if scheme == 'sqlite':
            return DatabaseType.SQLITE
        elif scheme.startswith('postgresql'):
            return DatabaseType.POSTGRESQL
        elif scheme.startswith('mysql'):
            return DatabaseType.MYSQL
        else:
            raise ValueError(f"Unknown database type: {scheme}")

    @property
    def is_sqlite(self) -> bool:
        """Check if using SQLite database."""
        return self.database_type == DatabaseType.SQLITE

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return not self.debug and not self.reload

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
            "log_level": self.log_level.lower(),
            "access_log": self.debug
        }

    def get_scheduler_kwargs(self) -> Dict[str, Any]:
        """Keyword arguments for ``Scheduler``."""
        return {
            "interval_seconds": self.scheduler_interval_seconds,
            "batch_size": self.scheduler_batch_size,
            "lease_seconds": self.scheduler_lease_seconds,
            "max_workers": self.scheduler_max_workers,
            "max_steps_per_claim": self.scheduler_max_steps_per_claim,
        }

    @classmethod
    def from_env(cls) -> 'AppConfig':
        """Create configuration from environment variables."""
        def get_env(key: str, default=None, type_func=str):
            """Get environment variable with type conversion."""
            value = os.getenv(f"CAMPAIGN_ENGINE_{key}")
            if value is None:
                return default
            if type_func == bool:
                return str(value).lower() in ('true', '1', 'yes', 'on')
            elif type_func == list:
                return value.split(',') if value else default
            return type_func(value)

        return cls(
            app_name=get_env("APP_NAME", "Campaign Workflow Engine"),
            app_version=get_env("APP_VERSION", "1.0.0"),
            debug=get_env("DEBUG", False, bool),
            host=get_env("HOST", "0.0.0.0"),
            port=get_env("PORT", 8000, int),
            reload=get_env("RELOAD", False, bool),
            database_url=get_env("DATABASE_URL", "sqlite:///./campaign_engine.db"),
            database_echo=get_env("DATABASE_ECHO", False, bool),
            database_pool_size=get_env("DATABASE_POOL_SIZE", 5, int),
            database_max_overflow=get_env("DATABASE_MAX_OVERFLOW", 10, int),
            scheduler_enabled=get_env("SCHEDULER_ENABLED", True, bool),
            scheduler_interval_seconds=get_env("SCHEDULER_INTERVAL_SECONDS", 300.0, float),
            scheduler_batch_size=get_env("SCHEDULER_BATCH_SIZE", 100, int),
            scheduler_lease_seconds=get_env("SCHEDULER_LEASE_SECONDS", 120.0, float),
            scheduler_max_workers=get_env("SCHEDULER_MAX_WORKERS", 10, int),
            scheduler_max_steps_per_claim=get_env("SCHEDULER_MAX_STEPS_PER_CLAIM", 20, int),
            retry_base_delay_seconds=get_env("RETRY_BASE_DELAY_SECONDS", 3600.0, float),
            retry_max_delay_seconds=get_env("RETRY_MAX_DELAY_SECONDS", 86400.0, float),
            retry_max_retries=get_env("RETRY_MAX_RETRIES", 5, int),
            channel_url=get_env("CHANNEL_URL", None),
            contacts_url=get_env("CONTACTS_URL", None),
            notifications_url=get_env("NOTIFICATIONS_URL", None),
            api_key=get_env("API_KEY", None),
            http_timeout=get_env("HTTP_TIMEOUT", 10.0, float),
            send_timeout=get_env("SEND_TIMEOUT", 30.0, float),
            business_hours_start=get_env("BUSINESS_HOURS_START", "09:00"),
            business_hours_end=get_env("BUSINESS_HOURS_END", "17:00"),
            default_timezone=get_env("DEFAULT_TIMEZONE", "UTC"),
            log_level=LogLevel(get_env("LOG_LEVEL", "INFO")),
            log_format=get_env("LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s"),
            log_file=get_env("LOG_FILE", None),
            log_max_size=get_env("LOG_MAX_SIZE", 10485760, int),
            log_backup_count=get_env("LOG_BACKUP_COUNT", 5, int),
            log_structured=get_env("LOG_STRUCTURED", False, bool),
            health_check_timeout=get_env("HEALTH_CHECK_TIMEOUT", 5.0, float),
            slow_request_threshold=get_env("SLOW_REQUEST_THRESHOLD", 5.0, float),
            enable_performance_monitoring=get_env("ENABLE_PERFORMANCE_MONITORING", True, bool),
            cors_origins=get_env("CORS_ORIGINS", ["*"], list),
            cors_methods=get_env("CORS_METHODS", ["GET", "POST"], list)
        )


# Global configuration instance
_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = AppConfig.from_env()
    return _config


def load_config(config_file: Optional[str] = None) -> AppConfig:
    """Load configuration from file or environment variables."""
    global _config

    # Load .env file if it exists
    if config_file and os.path.exists(config_file):
        from dotenv import load_dotenv
        load_dotenv(config_file)
    elif os.path.exists('.env'):
        from dotenv import load_dotenv
        load_dotenv('.env')

    _config = AppConfig.from_env()

    return _config


def set_config(config: AppConfig) -> AppConfig:
    """Install an explicit configuration (used by tests and the CLI)."""
    global _config
    _config = config
    return _config


def reset_config():
    """Reset the global configuration instance (mainly for testing)."""
    global _config
    _config = None


# Configuration validation
def validate_config(config: AppConfig) -> List[str]:
    """Validate configuration settings.

    Returns warnings; raises ValueError on settings the engine cannot run with.
    """
    errors = []
    warnings = []

    if config.is_sqlite and ":memory:" not in config.database_url:
        db_path = config.database_url.replace("sqlite:///", "")
        db_dir = os.path.dirname(db_path)
        if db_dir and not os.path.exists(db_dir):
            try:
                os.makedirs(db_dir, exist_ok=True)
            except OSError as e:
                errors.append(f"Cannot create database directory {db_dir}: {e}")

    if config.log_file:
        log_dir = os.path.dirname(config.log_file)
        if log_dir and not os.path.exists(log_dir):
            try:
                os.makedirs(log_dir, exist_ok=True)
            except OSError as e:
                errors.append(f"Cannot create log directory {log_dir}: {e}")

    if config.scheduler_lease_seconds <= config.send_timeout:
        errors.append("scheduler_lease_seconds must exceed send_timeout so a lease outlives one send")

    if config.scheduler_max_workers > 100:
        warnings.append("High scheduler worker count may exhaust database connections")

    if not config.channel_url:
        warnings.append("No channel_url configured; messages are recorded in memory only")

    if errors:
        raise ValueError(f"Configuration validation failed: {'; '.join(errors)}")
    return warnings


# Environment-specific configurations
def get_development_config() -> AppConfig:
    """Get development configuration."""
    return AppConfig(
        debug=True,
        reload=True,
        log_level=LogLevel.DEBUG,
        database_echo=True,
        scheduler_interval_seconds=30.0,
        enable_performance_monitoring=True
    )


def get_production_config() -> AppConfig:
    """Get production configuration."""
    return AppConfig(
        debug=False,
        reload=False,
        log_level=LogLevel.INFO,
        log_structured=True,
        database_echo=False,
        enable_performance_monitoring=True,
        cors_origins=[]  # Restrict CORS in production
    )


def get_testing_config() -> AppConfig:
    """Get testing configuration."""
    return AppConfig(
        debug=True,
        database_url="sqlite:///:memory:",
        log_level=LogLevel.WARNING,
        scheduler_enabled=False,
        scheduler_max_workers=2,
        retry_base_delay_seconds=1.0,
        retry_max_delay_seconds=8.0
    )
