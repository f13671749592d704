"""Tests for refresh worker configuration."""

import pytest
from pydantic import ValidationError

from refresher.config import WorkerSettings, load_worker_settings

REQUIRED = {
    "supabase_url": "http://store.test",
    "supabase_service_key": "service-key",
    "openserv_api_key": "openserv-key",
}


def test_config_defaults():
    """Config loads with default values."""
    config = WorkerSettings(_env_file=None, **REQUIRED)
    assert config.job_interval_seconds == 21600
    assert config.instant_check_interval_seconds == 5
    assert config.telegram_job_interval_seconds == 1
    assert config.job_refresh_hours == 6
    assert config.telegram_send_interval_hours == 6
    assert config.openserv_wait_seconds == 65
    assert config.refresh_timezone == "Europe/London"
    assert config.generation_concurrency == 3
    assert config.port == 3001
    assert config.insights_enabled is False


def test_config_env_override(monkeypatch):
    """Config values can be overridden by environment variables."""
    monkeypatch.setenv("SUPABASE_URL", "https://project.supabase.co")
    monkeypatch.setenv("SUPABASE_SERVICE_KEY", "env-key")
    monkeypatch.setenv("OPENSERV_API_KEY", "env-openserv")
    monkeypatch.setenv("JOB_REFRESH_HOURS", "12")
    monkeypatch.setenv("INSIGHT_API_KEY", "gemini-key")
    monkeypatch.setenv("PER_ITEM_GENERATION", "false")
    config = load_worker_settings()
    assert config.supabase_url == "https://project.supabase.co"
    assert config.job_refresh_hours == 12
    assert config.insights_enabled is True
    assert config.per_item_generation is False


def test_missing_credentials_rejected(monkeypatch):
    for name in ("SUPABASE_URL", "SUPABASE_SERVICE_KEY", "OPENSERV_API_KEY"):
        monkeypatch.delenv(name, raising=False)
    with pytest.raises(ValidationError):
        WorkerSettings(_env_file=None)


@pytest.mark.parametrize(
    "field,value",
    [
        ("generation_concurrency", 0),
        ("job_interval_seconds", 0),
        ("openserv_wait_seconds", -1),
    ],
)
def test_invalid_values_rejected(field, value):
    with pytest.raises(ValidationError):
        WorkerSettings(_env_file=None, **REQUIRED, **{field: value})
