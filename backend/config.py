"""
Configuration for the Storybook task backend.

Supports multiple environments (development, staging, production) with
appropriate defaults and validation. Environment variables (or a `.env`
file) override every default.
"""

from enum import Enum
from pathlib import Path
from typing import Annotated, Any

from dotenv import load_dotenv
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

# Load .env file from backend directory, then the working directory
BACKEND_DIR = Path(__file__).resolve().parent
load_dotenv(dotenv_path=BACKEND_DIR / ".env")
load_dotenv()

MIB = 1024 * 1024


class Environment(str, Enum):
    """Application environment types."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class Settings(BaseSettings):
    """
    Application settings with environment-specific defaults.

    Uses Pydantic for validation and type safety.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    environment: Environment = Field(
        default=Environment.DEVELOPMENT, description="Application environment"
    )

    # API Configuration
    api_title: str = Field(default="Storybook Task API", description="API title for OpenAPI docs")
    api_version: str = Field(default="1.0.0", description="API version")
    debug: bool = Field(default=True, description="Enable debug mode")

    # Server Configuration
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, ge=1, le=65535, description="Server port")
    reload: bool = Field(default=False, description="Enable auto-reload (development only)")

    # CORS Configuration
    cors_origins: Annotated[list[str], NoDecode] = Field(
        default=["*"], description="Allowed CORS origins (comma-separated)"
    )

    # Logging Configuration
    log_level: str = Field(default="INFO", description="Logging level")
    log_json: bool = Field(default=False, description="Enable JSON logging for production")

    # Task Store Configuration
    task_retention_minutes: int = Field(
        default=60, ge=1, le=24 * 60, description="How long finished tasks are kept"
    )
    sweep_interval_minutes: int = Field(
        default=10, ge=1, le=60, description="Task sweep interval in minutes"
    )
    max_concurrent_tasks: int = Field(
        default=0, ge=0, le=100, description="Concurrent executor limit (0 = unbounded)"
    )

    # Upstream (AI vendor) Configuration
    upstream_max_attempts: int = Field(default=3, ge=1, le=10)
    upstream_base_delay_ms: int = Field(default=3000, ge=0)
    upstream_rate_limit_delay_ms: int = Field(
        default=5000, ge=0, description="Backoff floor after an HTTP 429"
    )
    upstream_timeout_ms: int = Field(
        default=150_000, ge=1000, description="Hard per-attempt timeout"
    )
    text_request_timeout_ms: int = Field(
        default=600_000, ge=1000, description="Per-attempt timeout for long text generations"
    )
    upstream_rate_limit_per_minute: int = Field(
        default=60, ge=1, le=1000, description="Outbound requests per minute"
    )
    upstream_user_agent: str = Field(default="storybook-task-backend/1.0")

    # Image Handling
    image_target_bytes: int = Field(default=int(1.5 * MIB), ge=1024)
    image_compress_threshold_bytes: int = Field(default=2 * MIB, ge=1024)
    max_reference_bytes: int = Field(default=8 * MIB, ge=1024)

    # Textbook-to-script Handling
    textbook_max_images: int = Field(default=20, ge=1)
    textbook_batch_size: int = Field(default=3, ge=1)
    textbook_max_request_bytes: int = Field(default=9 * MIB, ge=1024)

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: Any) -> list[str]:
        """Parse CORS origins from comma-separated string or list."""
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        return v.upper()

    @model_validator(mode="after")
    def apply_environment_rules(self) -> "Settings":
        """Disable debug in production and reload outside development."""
        if self.environment == Environment.PRODUCTION:
            self.debug = False
        if self.environment != Environment.DEVELOPMENT:
            self.reload = False
        return self

    def get_environment_display(self) -> str:
        """Get human-readable environment name."""
        return self.environment.value.title()

    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == Environment.PRODUCTION

    def is_development(self) -> bool:
        """Check if running in development."""
        return self.environment == Environment.DEVELOPMENT

    def get_cors_config(self) -> dict[str, Any]:
        """Get CORS configuration."""
        if self.is_production():
            # Restrictive CORS for production
            return {
                "allow_origins": [origin for origin in self.cors_origins if origin != "*"],
                "allow_credentials": True,
                "allow_methods": ["GET", "POST", "DELETE"],
                "allow_headers": ["*"],
            }
        return {
            "allow_origins": self.cors_origins,
            "allow_credentials": True,
            "allow_methods": ["*"],
            "allow_headers": ["*"],
        }


# Global settings instance
settings = Settings()


def configure_structlog() -> None:
    """Initialize structlog with readable console output or JSON lines."""
    import logging
    import sys

    import structlog

    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        stream=sys.stdout,
        force=True,
        format="%(message)s",
    )

    renderer = (
        structlog.processors.JSONRenderer()
        if settings.log_json
        else structlog.dev.ConsoleRenderer(colors=True, pad_event=20)
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.TimeStamper(
                fmt="iso" if settings.log_json else "%H:%M:%S"
            ),
            structlog.stdlib.add_log_level,
            structlog.processors.format_exc_info,
            renderer,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
