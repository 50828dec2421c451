"""
Request logger configuration.

Loads settings from environment variables with validation via Pydantic Settings.
"""

from enum import StrEnum
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from request_logger.emitter import DEFAULT_EVENT_TYPE, LWESOptions


class AppEnv(StrEnum):
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class Settings(BaseSettings):
    """Application settings loaded from .env file and environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ─── Application ──────────────────────────────────────────
    app_name: str = "lwes-request-logger"
    app_env: AppEnv = AppEnv.DEVELOPMENT

    # ─── Observability ──────────────────────────────────────────
    log_level: str = "INFO"
    log_format: str = "auto"
    lwes_log_level: str | None = None  # Emitter logger level; unset follows LOG_LEVEL

    # ─── Access Log ─────────────────────────────────────────────
    # Named format or whitespace-separated specifiers (":method :url :status")
    access_log_format: str = "default"
    access_log_immediate: bool = False
    access_log_skip_paths: str = "/health"  # Comma-separated exact paths

    # ─── LWES Transport ─────────────────────────────────────────
    lwes_address: str = "127.0.0.1"
    lwes_port: int = 1111
    lwes_ttl: int = 3  # Multicast hop limit
    lwes_type: str = DEFAULT_EVENT_TYPE

    @model_validator(mode="after")
    def validate_lwes_transport(self) -> "Settings":
        """Block boot on a transport that could never send a datagram."""
        violations: list[str] = []

        if not 0 < self.lwes_port < 65536:
            violations.append("LWES_PORT must be between 1 and 65535")

        if not 0 <= self.lwes_ttl <= 255:
            violations.append("LWES_TTL must be between 0 and 255")

        if not self.lwes_type.strip():
            violations.append("LWES_TYPE must be non-empty")

        if violations:
            raise ValueError(
                "LWES configuration check failed:\n  - " + "\n  - ".join(violations)
            )

        return self

    @property
    def is_development(self) -> bool:
        return self.app_env == AppEnv.DEVELOPMENT

    @property
    def skip_paths(self) -> frozenset[str]:
        return frozenset(
            p.strip() for p in self.access_log_skip_paths.split(",") if p.strip()
        )

    def lwes_options(self) -> LWESOptions:
        """Build emitter options from the LWES_* settings."""
        return LWESOptions(
            address=self.lwes_address,
            port=self.lwes_port,
            ttl=self.lwes_ttl,
            type=self.lwes_type,
        )


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings singleton."""
    return Settings()
