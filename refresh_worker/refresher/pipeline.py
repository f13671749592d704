"""Per-user content pipeline.

One run moves through these stages:

    Dispatching -> Settling -> Collecting -> Synthesizing -> Sending -> Persisting

Generation tasks for every item of every category are fanned out through
``run_limited``. Each task posts a prompt to its category's agent, sleeps for
the settle interval and then reads back the newest agent message. Outcomes
are folded per category into a ``ContentState``. Synthesizing and Sending are
skipped when their collaborator is not configured.
"""

import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any

from refresher.config import WorkerSettings
from refresher.content import ContentState
from refresher.decisions import is_send_due, needs_immediate_update, needs_scheduled_update
from refresher.insight_client import InsightClient, InsightError
from refresher.limiter import Settled, run_limited
from refresher.models import CATEGORY_KEYS, Category, TaskOutcome, UserRecord
from refresher.openserv_client import OpenServClient, last_agent_message
from refresher.store import StoreError

logger = logging.getLogger(__name__)

ITEM_DIVIDER = "\n\n---\n\n"


def build_prompt(category: Category, item: str | None) -> str:
    if item is None:
        subject = ", ".join(category.items)
    else:
        subject = item
    return (
        f"Research the latest {category.label.lower()} news for: {subject}. "
        f"Summarize what happened in the last 24 hours and why it matters."
    )


def render_outcome(outcome: TaskOutcome) -> str:
    """Render one task outcome as a block of the category text."""
    subject = outcome.item if outcome.item is not None else outcome.category_key
    if not outcome.ok:
        body = f"Error fetching update for {subject}: {outcome.error}"
    elif outcome.text is None:
        body = f"No content found for {subject}."
    else:
        body = outcome.text
    if outcome.item is None:
        return body
    return f"### {outcome.item}\n\n{body}"


def aggregate(category: Category, outcomes: list[TaskOutcome]) -> ContentState:
    """Fold a category's outcomes into one content state.

    At least one successful task (an empty answer counts) keeps the category
    as content; failed items are still listed with their error note.
    """
    if not outcomes:
        return ContentState.placeholder()
    if not any(outcome.ok for outcome in outcomes):
        return ContentState.error(f"{category.label} news: all items failed")
    return ContentState.content(ITEM_DIVIDER.join(render_outcome(o) for o in outcomes))


class ContentPipeline:
    """Generates, condenses, delivers and persists one user's content."""

    def __init__(
        self,
        store,
        generator: OpenServClient,
        settings: WorkerSettings,
        insights: InsightClient | None = None,
        dispatcher=None,
    ):
        self._store = store
        self._generator = generator
        self._settings = settings
        self._insights = insights
        self._dispatcher = dispatcher
        # Shared by every run on this pipeline, so concurrent users queue per channel too
        self._channel_locks: defaultdict[int, asyncio.Lock] = defaultdict(asyncio.Lock)

    def build_categories(self, user: UserRecord) -> list[Category]:
        channels = {
            "watchlist": self._settings.openserv_workspace_id_watchlist,
            "sector": self._settings.openserv_workspace_id_sector,
            "narrative": self._settings.openserv_workspace_id_narrative,
        }
        return [
            Category(key=key, items=user.preferences.items_for(key), channel_id=channels[key])
            for key in CATEGORY_KEYS
        ]

    async def _generate(self, category: Category, item: str | None) -> str | None:
        agent_id = self._settings.openserv_agent_id
        # One chat per channel: "newest agent message" is only ours while we hold it
        async with self._channel_locks[category.channel_id]:
            await self._generator.post_message(
                category.channel_id, agent_id, build_prompt(category, item)
            )
            # Settle: give the agent time to answer before reading the chat back
            await asyncio.sleep(self._settings.openserv_wait_seconds)
            messages = await self._generator.get_messages(category.channel_id, agent_id)
        return last_agent_message(messages)

    async def generate(
        self, user: UserRecord, categories: list[Category]
    ) -> tuple[dict[str, ContentState], int, int]:
        """Run all generation tasks and aggregate them per category.

        Returns:
            (states by category key, tasks dispatched, tasks succeeded)
        """
        units: list[tuple[Category, str | None]] = []
        for category in categories:
            if not category.items:
                continue
            if self._settings.per_item_generation:
                units.extend((category, item) for item in category.items)
            else:
                units.append((category, None))

        logger.debug(f"[{user.user_email}] Dispatching {len(units)} generation tasks")
        settled = await run_limited(
            [lambda c=c, i=i: self._generate(c, i) for c, i in units],
            self._settings.generation_concurrency,
        )

        outcomes: dict[str, list[TaskOutcome]] = {c.key: [] for c in categories}
        succeeded = 0
        for (category, item), result in zip(units, settled):
            outcome = self._to_outcome(category, item, result)
            if outcome.ok:
                succeeded += 1
            else:
                logger.warning(
                    f"[{user.user_email}] Generation failed for {category.label}"
                    f"{'/' + item if item else ''}: {outcome.error}"
                )
            outcomes[category.key].append(outcome)

        states = {c.key: aggregate(c, outcomes[c.key]) for c in categories}
        return states, len(units), succeeded

    @staticmethod
    def _to_outcome(category: Category, item: str | None, result: Settled) -> TaskOutcome:
        if result.ok:
            return TaskOutcome(category_key=category.key, item=item, ok=True, text=result.value)
        error = result.error
        reason = f"{type(error).__name__}: {error}" if error is not None else "unknown error"
        return TaskOutcome(category_key=category.key, item=item, ok=False, error=reason)

    async def synthesize(
        self,
        user: UserRecord,
        categories: list[Category],
        states: dict[str, ContentState],
        update: dict[str, Any],
    ) -> int:
        """Condense each category with content through the insight client.

        A failed synthesis keeps the raw generated content in place.
        Returns the number of successful synthesis calls.
        """
        if self._insights is None:
            return 0
        succeeded = 0
        for category in categories:
            state = states[category.key]
            if not state.is_content:
                continue
            update[category.intel_key] = state.text
            social = ContentState.decode(getattr(user, category.social_key))
            social_text = social.text if social is not None and social.is_content else None
            try:
                brief = await self._insights.synthesize(state.text, social_text, category.label)
            except InsightError as e:
                logger.warning(f"[{user.user_email}] {e}; keeping raw {category.label} content")
                continue
            states[category.key] = ContentState.content(brief)
            succeeded += 1
        return succeeded

    async def run(self, user: UserRecord, force_run: bool = False, initial_send: bool = False) -> bool:
        """Run the full pipeline for one user.

        Args:
            user: The user record as last read from the store.
            force_run: Skip the staleness checks.
            initial_send: Deliver even if the messaging cooldown has not elapsed.

        Returns:
            False if the write failed or no generation task succeeded,
            True otherwise (including runs with nothing to generate).
        """
        email = user.user_email
        if not user.ispro:
            logger.debug(f"[{email}] Not a pro user, skipping")
            return False
        if not force_run and not (
            needs_immediate_update(user) or needs_scheduled_update(user, self._settings)
        ):
            logger.debug(f"[{email}] Content is fresh, skipping")
            return True

        logger.info(f"[{email}] Starting content run (force={force_run})")
        categories = self.build_categories(user)
        states, dispatched, generated = await self.generate(user, categories)

        update: dict[str, Any] = {}
        if self._insights is not None:
            logger.debug(f"[{email}] Synthesizing")
        ai_successes = await self.synthesize(user, categories, states, update)

        sends = 0
        if self._dispatcher is not None and is_send_due(user, self._settings, initial=initial_send):
            logger.debug(f"[{email}] Sending")
            sends = await self._dispatcher.send_categories(user, states)

        now = datetime.now(timezone.utc)
        for key, state in states.items():
            update[key] = state.encode()
        update["last_job"] = now
        if ai_successes:
            update["ai_last_update"] = now
        if sends:
            update["tele_last_sent"] = now

        logger.debug(f"[{email}] Persisting")
        try:
            await self._store.update_user(email, update)
        except StoreError as e:
            logger.error(f"[{email}] Failed to persist content update: {e}")
            return False

        if dispatched and not generated:
            logger.warning(f"[{email}] All {dispatched} generation tasks failed")
            return False
        logger.info(
            f"[{email}] Content run complete: {generated}/{dispatched} generated, "
            f"{ai_successes} synthesized, {sends} sent"
        )
        return True
