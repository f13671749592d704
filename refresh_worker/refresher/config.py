"""Configuration settings for the content refresh worker."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class WorkerSettings(BaseSettings):
    """Refresh worker settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Persistence
    supabase_url: str
    supabase_service_key: str
    store_timeout_seconds: float = Field(default=10.0, gt=0)

    # Agent platform (generation + messaging agents)
    openserv_api_key: str
    openserv_base_url: str = "https://api.openserv.ai"
    openserv_connect_sid: str = ""
    openserv_agent_id: int = 140
    openserv_workspace_id_watchlist: int = 3422
    openserv_workspace_id_sector: int = 3420
    openserv_workspace_id_narrative: int = 3421
    openserv_workspace_id_telegram: int = 3416
    openserv_agent_id_telegram: int = 267
    openserv_timeout_seconds: float = Field(default=30.0, gt=0)
    openserv_wait_seconds: float = Field(default=65.0, ge=0)

    # AI insight synthesis (OpenAI-compatible endpoint); empty key disables it
    insight_api_key: str = ""
    insight_base_url: str = "https://generativelanguage.googleapis.com/v1beta/openai/"
    insight_model: str = "gemini-2.0-flash"
    insight_timeout_seconds: float = Field(default=90.0, gt=0)

    # Cycles
    job_interval_seconds: float = Field(default=21600.0, gt=0)
    instant_check_interval_seconds: float = Field(default=5.0, gt=0)
    telegram_job_interval_seconds: float = Field(default=1.0, gt=0)
    job_refresh_hours: int = Field(default=6, gt=0)
    telegram_send_interval_hours: int = Field(default=6, gt=0)
    telegram_send_delay_seconds: float = Field(default=2.0, ge=0)
    telegram_initial_send_delay_seconds: float = Field(default=300.0, ge=0)
    refresh_timezone: str = "Europe/London"

    # Fan-out
    generation_concurrency: int = Field(default=3, gt=0)
    midnight_user_concurrency: int = Field(default=5, gt=0)
    per_item_generation: bool = True

    # Process
    host: str = "0.0.0.0"
    port: int = 3001
    shutdown_grace_seconds: float = Field(default=0.5, ge=0)

    @property
    def insights_enabled(self) -> bool:
        return bool(self.insight_api_key)


def load_worker_settings() -> WorkerSettings:
    """Load and return refresh worker settings."""
    return WorkerSettings()
