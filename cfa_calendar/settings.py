"""
Configuration settings for the CFA calendar service.

Centralized configuration using Pydantic Settings for type-safe environment
variable handling. All settings can be overridden via environment variables
with the CFA_CALENDAR_ prefix.

Example:
    export CFA_CALENDAR_LOG_LEVEL=DEBUG
    export CFA_CALENDAR_API_ACCOUNT=someone
    python -m cfa_calendar --mode refresh
"""

import logging
from datetime import timedelta
from datetime import timezone
from pathlib import Path
from typing import Any
from typing import Dict

from pydantic import Field
from pydantic import SecretStr
from pydantic import field_validator
from pydantic_settings import BaseSettings
from pydantic_settings import SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings with environment variable support.

    All settings can be overridden via environment variables with the
    CFA_CALENDAR_ prefix (e.g., CFA_CALENDAR_LOG_LEVEL=DEBUG).
    """

    model_config = SettingsConfigDict(
        env_prefix="CFA_CALENDAR_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Core application settings
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )

    debug_mode: bool = Field(
        default=False,
        description="Enable debug mode with plain-text console logging"
    )

    db_path: Path = Field(
        default=Path("data/cfa_calendar.db"),
        description="Path to SQLite database file"
    )

    # Web server configuration
    host: str = Field(
        default="0.0.0.0",
        description="Host address to bind web server"
    )

    port: int = Field(
        default=8000,
        ge=1,
        le=65535,
        description="Port number for web server"
    )

    # Upstream API
    api_base_url: str = Field(
        default="https://api.guoyingjiaying.cn",
        description="Base URL of the ticketing API"
    )

    api_account: str = Field(
        default="",
        description="Account used for the login exchange"
    )

    api_password: SecretStr = Field(
        default=SecretStr(""),
        description="Password used for the login exchange"
    )

    request_timeout: float = Field(
        default=30.0,
        ge=1.0,
        le=120.0,
        description="HTTP request timeout in seconds"
    )

    user_agent: str = Field(
        default="cfa-calendar/1.0",
        description="User-Agent string for HTTP requests"
    )

    login_success_code: str = Field(
        default="410001",
        description="Value of the login response 'code' field that marks success"
    )

    # Synchronization policy
    staleness_hours: float = Field(
        default=12.0,
        gt=0,
        description="Hours after which the stored schedule is re-fetched"
    )

    source_utc_offset_hours: int = Field(
        default=8,
        ge=-12,
        le=14,
        description="Fixed UTC offset of the timestamps published upstream"
    )

    fetch_log_retention_days: int = Field(
        default=90,
        ge=1,
        le=3650,
        description="Number of days fetch log rows are kept by cleanup"
    )

    # Calendar feed settings
    calendar_name: str = Field(
        default="CFA Calendar",
        description="Calendar name used when no venue filter is given"
    )

    feed_product_id: str = Field(
        default="cfa-cal/ics",
        description="PRODID of the generated calendar"
    )

    feed_uid_domain: str = Field(
        default="cfa-cal",
        description="Domain part of generated event UIDs"
    )

    organizer_name: str = Field(
        default="cfa-cal",
        description="Organizer common name attached to every event"
    )

    organizer_email: str = Field(
        default="contact@qnury.es",
        description="Organizer e-mail attached to every event"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate that log_level is a valid logging level."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper_v = v.upper()
        if upper_v not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}, got {v}")
        return upper_v

    @field_validator("db_path")
    @classmethod
    def validate_db_path(cls, v: Path) -> Path:
        """Ensure database directory exists."""
        v.parent.mkdir(parents=True, exist_ok=True)
        return v

    @property
    def staleness_window(self) -> timedelta:
        """Age after which the last successful fetch is considered outdated."""
        return timedelta(hours=self.staleness_hours)

    @property
    def source_timezone(self) -> timezone:
        """Fixed-offset timezone of upstream schedule timestamps."""
        return timezone(timedelta(hours=self.source_utc_offset_hours))

    @property
    def login_url(self) -> str:
        return f"{self.api_base_url.rstrip('/')}/api/login"

    @property
    def calendar_url(self) -> str:
        return f"{self.api_base_url.rstrip('/')}/api/v3/movie/getCalendar"

    @property
    def logging_config(self) -> Dict[str, Any]:
        """Get logging configuration dict."""
        return {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "standard": {
                    "format": "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
                    "datefmt": "%Y-%m-%d %H:%M:%S",
                },
                "structured": {
                    "()": "pythonjsonlogger.json.JsonFormatter",
                    "format": "%(asctime)s %(name)s %(levelname)s %(message)s",
                },
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "level": self.log_level,
                    "formatter": "standard" if self.debug_mode else "structured",
                    "stream": "ext://sys.stdout",
                },
                "file": {
                    "class": "logging.handlers.RotatingFileHandler",
                    "level": "INFO",
                    "formatter": "structured",
                    "filename": "logs/cfa_calendar.log",
                    "maxBytes": 10485760,  # 10MB
                    "backupCount": 5,
                },
            },
            "loggers": {
                "cfa_calendar": {
                    "level": self.log_level,
                    "handlers": ["console", "file"],
                    "propagate": False,
                },
                "aiohttp.access": {
                    "level": "WARNING",
                    "handlers": ["console"],
                    "propagate": False,
                },
                "uvicorn.access": {
                    "level": "WARNING",
                    "handlers": ["console"],
                    "propagate": False,
                },
            },
            "root": {
                "level": "WARNING",
                "handlers": ["console"],
            },
        }

    def setup_logging(self) -> None:
        """Configure application logging based on current settings."""
        import logging.config

        Path("logs").mkdir(exist_ok=True)

        logging.config.dictConfig(self.logging_config)

        # Structured logging for production
        if not self.debug_mode:
            import structlog

            structlog.configure(
                processors=[
                    structlog.stdlib.filter_by_level,
                    structlog.stdlib.add_logger_name,
                    structlog.stdlib.add_log_level,
                    structlog.stdlib.PositionalArgumentsFormatter(),
                    structlog.processors.TimeStamper(fmt="iso"),
                    structlog.processors.StackInfoRenderer(),
                    structlog.processors.format_exc_info,
                    structlog.processors.UnicodeDecoder(),
                    structlog.processors.JSONRenderer(),
                ],
                context_class=dict,
                logger_factory=structlog.stdlib.LoggerFactory(),
                wrapper_class=structlog.stdlib.BoundLogger,
                cache_logger_on_first_use=True,
            )

        logging.getLogger(__name__).debug(f"Logging configured at level {self.log_level}")


# Global settings instance
settings = Settings()

# Convenience function for external usage
def get_settings() -> Settings:
    """Get the global settings instance."""
    return settings
