"""Outbound digest delivery through the messaging agent."""

import asyncio
import logging
from datetime import datetime, timezone

from refresher.config import WorkerSettings
from refresher.content import ContentState
from refresher.decisions import has_deliverable_content, is_content_stale, is_send_due
from refresher.models import CATEGORY_KEYS, CATEGORY_LABELS, UserRecord
from refresher.openserv_client import OpenServClient, OpenServError
from refresher.store import StoreError

logger = logging.getLogger(__name__)

DIGEST_TITLE = "Degen Times - Daily Digest"


def build_message(label: str, text: str, telegram_id: str) -> str:
    return (
        f"this is the {label.lower()} news for today {{{text}}} form a concise message "
        f"from this and send it to user id {{{telegram_id}}}, "
        f"title it as {DIGEST_TITLE} - {label} News"
    )


class MessageDispatcher:
    """Sends one message per category, sequentially, with a pause between sends."""

    def __init__(self, client: OpenServClient, settings: WorkerSettings):
        self._client = client
        self._workspace_id = settings.openserv_workspace_id_telegram
        self._agent_id = settings.openserv_agent_id_telegram
        self._delay = settings.telegram_send_delay_seconds

    async def send_categories(
        self, user: UserRecord, states: dict[str, ContentState]
    ) -> int:
        """Send every category holding content. Returns the number delivered."""
        if not user.telegramid:
            return 0
        deliverable = [
            (key, state) for key, state in states.items() if state.is_content
        ]
        sent = 0
        for index, (key, state) in enumerate(deliverable):
            if index > 0 and self._delay:
                await asyncio.sleep(self._delay)
            label = CATEGORY_LABELS[key]
            try:
                await self._client.post_message(
                    self._workspace_id,
                    self._agent_id,
                    build_message(label, state.text, user.telegramid),
                )
            except OpenServError as e:
                logger.warning(f"[{user.user_email}] Failed to send {label} message: {e}")
                continue
            sent += 1
            logger.info(f"[{user.user_email}] Sent {label} message")
        return sent


class DigestDelivery:
    """Per-user logic of the outbound-message cycle."""

    def __init__(self, dispatcher: MessageDispatcher, pipeline, store, locks, settings: WorkerSettings):
        self._dispatcher = dispatcher
        self._pipeline = pipeline
        self._store = store
        self._locks = locks
        self._settings = settings

    async def process(self, user: UserRecord, initial: bool = False) -> bool:
        """Refresh stale content or deliver fresh content for one user.

        Returns True if any message was sent or a refresh ran successfully.
        """
        if not user.ispro or not user.telegramid:
            return False

        if is_content_stale(user, self._settings):
            with self._locks.claim(user.user_email) as acquired:
                if not acquired:
                    return False
                logger.info(f"[{user.user_email}] Content is stale, forcing a refresh before delivery")
                # The pipeline's sending stage delivers the fresh content
                return await self._pipeline.run(user, force_run=True, initial_send=initial)

        if not is_send_due(user, self._settings, initial=initial):
            return False
        if not has_deliverable_content(user):
            logger.debug(f"[{user.user_email}] No deliverable content")
            return False

        with self._locks.claim(user.user_email) as acquired:
            if not acquired:
                return False
            states = {}
            for key in CATEGORY_KEYS:
                state = ContentState.decode(user.content_field(key))
                if state is not None:
                    states[key] = state
            sent = await self._dispatcher.send_categories(user, states)
            if not sent:
                return False
            try:
                await self._store.update_user(
                    user.user_email, {"tele_last_sent": datetime.now(timezone.utc)}
                )
            except StoreError as e:
                logger.error(f"[{user.user_email}] Failed to record tele_last_sent: {e}")
            return True
