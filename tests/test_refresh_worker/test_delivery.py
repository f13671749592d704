"""Tests for digest delivery."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest

from refresher.content import ContentState
from refresher.delivery import DigestDelivery, MessageDispatcher, build_message
from refresher.locks import LockRegistry
from refresher.store import StoreError


@pytest.fixture
def locks():
    return LockRegistry()


@pytest.fixture
def mock_pipeline():
    pipeline = AsyncMock()
    pipeline.run = AsyncMock(return_value=True)
    return pipeline


@pytest.fixture
def delivery(fake_agent, mock_pipeline, mock_store, locks, worker_settings):
    dispatcher = MessageDispatcher(fake_agent, worker_settings)
    return DigestDelivery(dispatcher, mock_pipeline, mock_store, locks, worker_settings)


def test_build_message():
    message = build_message("Sector", "DeFi TVL record", "555")
    assert message == (
        "this is the sector news for today {DeFi TVL record} form a concise message "
        "from this and send it to user id {555}, "
        "title it as Degen Times - Daily Digest - Sector News"
    )


class TestMessageDispatcher:
    async def test_only_content_states_are_sent(self, make_user, fake_agent, worker_settings):
        dispatcher = MessageDispatcher(fake_agent, worker_settings)
        states = {
            "watchlist": ContentState.content("BTC up"),
            "sector": ContentState.placeholder(),
            "narrative": ContentState.error("Narrative news: all items failed"),
        }

        sent = await dispatcher.send_categories(make_user(telegramid="555"), states)

        assert sent == 1
        assert "{BTC up}" in fake_agent.sends[0][2]

    async def test_pauses_between_sends(self, make_user, fake_agent, worker_settings):
        settings = worker_settings.model_copy(update={"telegram_send_delay_seconds": 2.0})
        dispatcher = MessageDispatcher(fake_agent, settings)
        states = {key: ContentState.content(f"{key} text") for key in ("watchlist", "sector", "narrative")}

        with patch("refresher.delivery.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            sent = await dispatcher.send_categories(make_user(telegramid="555"), states)

        assert sent == 3
        # No pause before the first send
        assert mock_sleep.await_count == 2
        mock_sleep.assert_awaited_with(2.0)

    async def test_failed_send_does_not_stop_the_rest(self, make_user, make_agent, worker_settings):
        agent = make_agent(fail_sends=True)
        dispatcher = MessageDispatcher(agent, worker_settings)
        states = {"watchlist": ContentState.content("BTC up"), "sector": ContentState.content("DeFi up")}

        sent = await dispatcher.send_categories(make_user(telegramid="555"), states)

        assert sent == 0

    async def test_no_telegram_id(self, make_user, fake_agent, worker_settings):
        dispatcher = MessageDispatcher(fake_agent, worker_settings)
        sent = await dispatcher.send_categories(make_user(), {"watchlist": ContentState.content("x")})
        assert sent == 0
        assert fake_agent.sends == []


class TestDigestDelivery:
    async def test_skips_users_without_telegram(self, delivery, make_user, mock_pipeline):
        assert await delivery.process(make_user()) is False
        mock_pipeline.run.assert_not_awaited()

    async def test_skips_non_pro_users(self, delivery, make_user, fake_agent):
        assert await delivery.process(make_user(ispro=False, telegramid="555")) is False
        assert fake_agent.sends == []

    async def test_stale_content_forces_refresh(self, delivery, make_user, mock_pipeline, fake_agent):
        user = make_user(telegramid="555", last_job=datetime.now(timezone.utc) - timedelta(hours=7))

        ok = await delivery.process(user)

        assert ok is True
        mock_pipeline.run.assert_awaited_once_with(user, force_run=True, initial_send=False)
        # The pipeline's sending stage delivers; nothing is sent from stored content
        assert fake_agent.sends == []

    async def test_stale_content_skipped_while_locked(self, delivery, make_user, mock_pipeline, locks):
        user = make_user(telegramid="555", last_job=None)
        locks.try_acquire(user.user_email)

        assert await delivery.process(user) is False
        mock_pipeline.run.assert_not_awaited()

    async def test_fresh_content_is_delivered(self, delivery, make_user, fake_agent, mock_store, locks):
        user = make_user(telegramid="555")

        ok = await delivery.process(user)

        assert ok is True
        assert len(fake_agent.sends) == 3
        mock_store.update_user.assert_awaited_once()
        email, fields = mock_store.update_user.call_args[0]
        assert email == "a@x.com"
        assert list(fields) == ["tele_last_sent"]
        assert not locks.is_held("a@x.com")

    async def test_cooldown_blocks_delivery(self, delivery, make_user, fake_agent):
        user = make_user(
            telegramid="555", tele_last_sent=datetime.now(timezone.utc) - timedelta(hours=1)
        )
        assert await delivery.process(user) is False
        assert fake_agent.sends == []

    async def test_initial_send_ignores_cooldown(self, delivery, make_user, fake_agent):
        user = make_user(
            telegramid="555", tele_last_sent=datetime.now(timezone.utc) - timedelta(hours=1)
        )
        assert await delivery.process(user, initial=True) is True
        assert len(fake_agent.sends) == 3

    async def test_initial_send_on_stale_content_passes_flag(self, delivery, make_user, mock_pipeline):
        user = make_user(telegramid="555", last_job=None)

        await delivery.process(user, initial=True)

        mock_pipeline.run.assert_awaited_once_with(user, force_run=True, initial_send=True)

    async def test_nothing_deliverable(self, delivery, make_user, fake_agent, mock_store):
        user = make_user(
            telegramid="555",
            watchlist="Error fetching Watchlist news: all items failed",
            sector="Please Select A Preference To View Personalized News Here",
            narrative="Please Select A Preference To View Personalized News Here",
        )
        assert await delivery.process(user) is False
        assert fake_agent.sends == []
        mock_store.update_user.assert_not_awaited()

    async def test_fresh_content_skipped_while_locked(self, delivery, make_user, fake_agent, locks):
        locks.try_acquire("a@x.com")
        assert await delivery.process(make_user(telegramid="555")) is False
        assert fake_agent.sends == []

    async def test_all_sends_failing_does_not_stamp(
        self, make_user, make_agent, mock_pipeline, mock_store, locks, worker_settings
    ):
        dispatcher = MessageDispatcher(make_agent(fail_sends=True), worker_settings)
        delivery = DigestDelivery(dispatcher, mock_pipeline, mock_store, locks, worker_settings)

        assert await delivery.process(make_user(telegramid="555")) is False
        mock_store.update_user.assert_not_awaited()

    async def test_stamp_failure_is_logged_not_raised(self, delivery, make_user, mock_store, fake_agent):
        mock_store.update_user.side_effect = StoreError("Store PATCH failed: 503")

        assert await delivery.process(make_user(telegramid="555")) is True
        assert len(fake_agent.sends) == 3
