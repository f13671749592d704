"""Data model for user records and pipeline units."""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

CATEGORY_KEYS = ("watchlist", "sector", "narrative")

CATEGORY_LABELS = {
    "watchlist": "Watchlist",
    "sector": "Sector",
    "narrative": "Narrative",
}


class Preferences(BaseModel):
    model_config = ConfigDict(extra="ignore")

    watchlist: list[str] = []
    sector: list[str] = []
    narrative: list[str] = []

    @field_validator("watchlist", "sector", "narrative", mode="before")
    @classmethod
    def _clean_items(cls, value: Any) -> list[str]:
        if not isinstance(value, list):
            return []
        items = []
        for item in value:
            if item is None:
                continue
            text = str(item).strip()
            if text:
                items.append(text)
        return items

    def items_for(self, key: str) -> list[str]:
        return list(getattr(self, key))


class UserRecord(BaseModel):
    """Projection of a row in the user preferences table."""

    model_config = ConfigDict(extra="ignore")

    user_email: str
    ispro: bool = False
    preferences: Preferences = Field(default_factory=Preferences)

    watchlist: str | None = None
    sector: str | None = None
    narrative: str | None = None

    watchlist_intel: str | None = None
    sector_intel: str | None = None
    narrative_intel: str | None = None
    watchlist_social: str | None = None
    sector_social: str | None = None
    narrative_social: str | None = None

    last_job: datetime | None = None
    preference_update: datetime | None = None
    ai_last_update: datetime | None = None
    tele_last_sent: datetime | None = None
    telegram_initial_send_scheduled_at: datetime | None = None

    telegramid: str | None = None

    @field_validator("ispro", mode="before")
    @classmethod
    def _null_is_false(cls, value: Any) -> Any:
        return False if value is None else value

    @field_validator("preferences", mode="before")
    @classmethod
    def _non_object_is_empty(cls, value: Any) -> Any:
        # Malformed preferences are treated as "nothing selected"
        if not isinstance(value, dict):
            return {}
        return value

    @field_validator("telegramid", mode="before")
    @classmethod
    def _telegram_id_as_text(cls, value: Any) -> Any:
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    @field_validator(
        "last_job",
        "preference_update",
        "ai_last_update",
        "tele_last_sent",
        "telegram_initial_send_scheduled_at",
    )
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def content_field(self, key: str) -> str | None:
        return getattr(self, key)


@dataclass
class Category:
    """One content grouping for a single pipeline run."""

    key: str
    items: list[str]
    channel_id: int

    @property
    def label(self) -> str:
        return CATEGORY_LABELS[self.key]

    @property
    def intel_key(self) -> str:
        return f"{self.key}_intel"

    @property
    def social_key(self) -> str:
        return f"{self.key}_social"


@dataclass
class TaskOutcome:
    """Result of one generation task.

    ``ok`` with ``text`` None means the agent answered with no message.
    """

    category_key: str
    item: str | None
    ok: bool
    text: str | None = None
    error: str | None = None
