"""
Configuration management using Pydantic Settings.
Supports environment-based configuration with validation.
"""
from typing import Literal
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration with environment variable support."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # --- Environment ---
    environment: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Deployment environment"
    )

    # --- API Configuration ---
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=3001, description="API port")

    # --- Helpdesk (ticketing) ---
    freshdesk_domain: str = Field(
        default="https://example.freshdesk.com",
        description="Helpdesk base URL, no trailing slash"
    )
    freshdesk_api_key: str | None = Field(default=None, description="Helpdesk API key")
    freshdesk_password: str = Field(default="X", description="Basic auth password paired with the API key")

    # --- Messaging (inbox) ---
    intercom_api_url: str = Field(
        default="https://api.intercom.io",
        description="Messaging API base URL"
    )
    intercom_access_token: str | None = Field(default=None, description="Messaging bearer token")
    intercom_admin_id: int | None = Field(default=None, description="Admin id used as note author")
    intercom_inbox_url: str = Field(
        default="https://app.intercom.com/a/inbox/_/inbox",
        description="Inbox URL prefix used to link conversations"
    )

    # --- Deadlines & timeouts ---
    response_deadline_ms: int = Field(
        default=9000,
        ge=100,
        le=9900,
        description="Reply deadline, kept below the caller's 10s limit"
    )
    upstream_timeout_s: float = Field(default=10.0, gt=0, description="Per-call upstream timeout")
    download_timeout_s: float = Field(default=30.0, gt=0, description="Attachment download timeout")
    reply_release_grace_s: float = Field(
        default=5.0,
        gt=0,
        description="Max wait for the reply release before background work starts anyway"
    )
    shutdown_grace_s: float = Field(default=5.0, ge=0, description="Wait for background tasks on shutdown")

    # --- Retry ---
    retry_max_attempts: int = Field(default=4, ge=1, le=10, description="Attempts per upstream call")
    retry_base_delay_ms: int = Field(default=500, ge=0, description="First backoff delay")
    retry_max_delay_ms: int = Field(default=10000, ge=0, description="Backoff ceiling")

    # --- Pagination ---
    list_fetch_cap: int = Field(default=20, ge=1, le=100, description="Tickets fetched per list")
    page_size: int = Field(default=5, ge=1, le=50, description="Tickets revealed per page")

    # --- Session store ---
    session_ttl_s: int = Field(default=3600, ge=60, description="In-memory session entry TTL")
    session_max_entries: int = Field(default=10000, ge=10, description="In-memory session entry cap")

    # --- Rendering ---
    display_timezone: str = Field(default="Asia/Kolkata", description="Timezone for rendered dates")
    subject_display_limit: int = Field(default=40, ge=5, description="Subject truncation length")

    # --- Security ---
    api_keys: list[str] = Field(
        default_factory=list,
        description="Valid API keys for the REST helper endpoints"
    )

    # --- Rate Limiting ---
    rate_limit_enabled: bool = Field(default=True, description="Enable rate limiting")
    rate_limit_requests: int = Field(default=120, ge=1, description="Requests per minute")

    # --- Logging ---
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level"
    )
    log_format: Literal["json", "text"] = Field(
        default="json",
        description="Log output format"
    )

    # --- Monitoring ---
    metrics_enabled: bool = Field(default=True, description="Enable Prometheus metrics")

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.environment == "development"

    @property
    def response_deadline_s(self) -> float:
        return self.response_deadline_ms / 1000

    def ticket_url(self, ticket_id) -> str:
        """Agent-facing URL of a helpdesk ticket."""
        return f"{self.freshdesk_domain}/a/tickets/{ticket_id}"

    def conversation_url(self, thread_id) -> str:
        """Inbox URL of a conversation."""
        return f"{self.intercom_inbox_url}/conversation/{thread_id}"


# Global settings instance
settings = Settings()
