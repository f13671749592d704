"""Shared fixtures for refresh worker tests."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from refresher.config import WorkerSettings
from refresher.models import UserRecord
from refresher.openserv_client import OpenServError


class FakeAgent:
    """In-memory stand-in for the agent-chat API.

    Generation prompts are answered from ``responses`` keyed by the prompt's
    subject (an item, or the comma-joined item list). A value that is an
    exception is raised from ``post_message``; None means the agent never
    answers. Unknown subjects get a canned answer.
    """

    def __init__(self, responses: dict | None = None, fail_sends: bool = False):
        self.responses = responses or {}
        self.fail_sends = fail_sends
        self.posts: list[tuple[int, int, str]] = []
        self.sends: list[tuple[int, int, str]] = []
        self._answers: dict[tuple[int, int], str | None] = {}

    async def post_message(self, workspace_id, agent_id, message):
        if "news for today" in message:
            if self.fail_sends:
                raise OpenServError("messaging agent unavailable")
            self.sends.append((workspace_id, agent_id, message))
            return None
        self.posts.append((workspace_id, agent_id, message))
        subject = message.split("for: ", 1)[1].split(". Summarize", 1)[0]
        answer = self.responses.get(subject, f"News about {subject}")
        if isinstance(answer, Exception):
            raise answer
        self._answers[(workspace_id, agent_id)] = answer
        return {"ok": True}

    async def get_messages(self, workspace_id, agent_id):
        messages = [{"author": "user", "message": "prompt"}]
        answer = self._answers.get((workspace_id, agent_id))
        if answer is not None:
            messages.append({"author": "agent", "message": answer})
        return messages


@pytest.fixture
def worker_settings():
    """WorkerSettings with test values and no waiting."""
    return WorkerSettings(
        _env_file=None,
        supabase_url="http://store.test",
        supabase_service_key="service-key",
        openserv_api_key="openserv-key",
        openserv_wait_seconds=0,
        telegram_send_delay_seconds=0,
        telegram_initial_send_delay_seconds=0,
    )


@pytest.fixture
def fake_agent():
    return FakeAgent()


@pytest.fixture
def mock_store():
    """Store double recording every partial update."""
    store = AsyncMock()
    store.update_user = AsyncMock(return_value=None)
    store.fetch_pro_users = AsyncMock(return_value=[])
    store.fetch_user = AsyncMock(return_value=None)
    return store


@pytest.fixture
def make_user():
    """Factory for pro users with content fetched an hour ago."""

    def _make(**overrides) -> UserRecord:
        data = {
            "user_email": "a@x.com",
            "ispro": True,
            "preferences": {"watchlist": ["BTC"], "sector": ["DeFi"], "narrative": ["AI"]},
            "watchlist": "Old BTC news",
            "sector": "Old DeFi news",
            "narrative": "Old AI news",
            "last_job": datetime.now(timezone.utc) - timedelta(hours=1),
        }
        data.update(overrides)
        return UserRecord.model_validate(data)

    return _make


@pytest.fixture
def make_agent():
    """Factory for ``FakeAgent`` instances with scripted answers."""
    return FakeAgent
