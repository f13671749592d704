"""Repeating refresh cycles and the scheduler that owns them."""

import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable
from zoneinfo import ZoneInfo

from refresher.config import WorkerSettings
from refresher.decisions import needs_immediate_update, needs_scheduled_update, sent_since
from refresher.health import HealthState
from refresher.limiter import run_limited
from refresher.locks import LockRegistry
from refresher.models import UserRecord
from refresher.store import DELIVERY_COLUMNS, IMMEDIATE_COLUMNS, REFRESH_COLUMNS, StoreError

logger = logging.getLogger(__name__)

# A midnight closer than this right after a run is the one just handled
MIDNIGHT_MIN_DELAY_SECONDS = 60.0


def seconds_until_next_midnight(
    tz_name: str, now: datetime | None = None, min_seconds: float = 0.0
) -> float:
    """Seconds from ``now`` until the next 00:00 local time in ``tz_name``.

    The difference is taken between absolute instants, so days with a DST
    transition come out as 23 or 25 hours. A midnight closer than
    ``min_seconds`` is skipped in favour of the one after it, which keeps a
    timer that fired slightly early from running twice for the same night.
    """
    tz = ZoneInfo(tz_name)
    if now is None:
        now = datetime.now(timezone.utc)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    local_now = now.astimezone(tz)
    next_midnight = datetime.combine(
        local_now.date() + timedelta(days=1), datetime.min.time(), tzinfo=tz
    )
    delay = (next_midnight.astimezone(timezone.utc) - now.astimezone(timezone.utc)).total_seconds()
    if delay < min_seconds:
        return delay + seconds_until_next_midnight(tz_name, now + timedelta(seconds=delay))
    return delay


class RepeatingCycle:
    """A body that runs repeatedly, rescheduling itself after every run.

    The wait between runs is ``next_delay()``, recomputed after each run.
    Waiting happens on a stop event, so ``stop()`` wakes the loop and no
    further run starts. A body that raises is logged and the cycle carries on.
    """

    def __init__(
        self,
        name: str,
        body: Callable[[], Awaitable[None]],
        next_delay: Callable[[], float],
        run_immediately: bool = True,
    ):
        self.name = name
        self._body = body
        self._next_delay = next_delay
        self._run_immediately = run_immediately
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self.running = False
        self.next_run_at: float | None = None
        self.runs = 0
        self.failures = 0

    @property
    def scheduled(self) -> bool:
        return self.next_run_at is not None

    def start(self) -> None:
        if self._task is not None:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._loop(), name=f"cycle:{self.name}")

    async def _loop(self) -> None:
        delay = 0.0 if self._run_immediately else self._next_delay()
        try:
            while not self._stop_event.is_set():
                self.next_run_at = time.monotonic() + delay
                logger.debug(f"[{self.name}] Next run in {delay:.1f}s")
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
                    break
                except asyncio.TimeoutError:
                    pass
                self.next_run_at = None
                await self.run_once()
                delay = self._next_delay()
        finally:
            self.next_run_at = None

    async def run_once(self) -> bool:
        """Run the body now unless it is already running.

        Returns False if the run was skipped.
        """
        if self.running:
            logger.info(f"[{self.name}] Previous run still in progress, skipping")
            return False
        self.running = True
        try:
            await self._body()
        except Exception:
            self.failures += 1
            logger.exception(f"[{self.name}] Cycle failed")
        finally:
            self.running = False
            self.runs += 1
        return True

    def stop(self) -> None:
        """Prevent further runs and clear the pending timer."""
        self._stop_event.set()
        self.next_run_at = None

    async def wait_stopped(self, grace_seconds: float) -> None:
        """Wait up to ``grace_seconds`` for an in-flight run, then cancel it."""
        if self._task is None:
            return
        task = self._task
        self._task = None
        done, _ = await asyncio.wait({task}, timeout=grace_seconds)
        if not done:
            logger.warning(f"[{self.name}] Abandoning in-flight run at shutdown")
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass


class CycleScheduler:
    """Drives the four refresh cycles against one shared lock registry."""

    def __init__(
        self, store, pipeline, delivery, settings: WorkerSettings, locks: LockRegistry | None = None
    ):
        self._store = store
        self._pipeline = pipeline
        self._delivery = delivery
        self._settings = settings
        self.locks = locks if locks is not None else LockRegistry()
        self.health = HealthState()
        self._pending_sends: set[asyncio.Task] = set()

        self.cycles = {
            "scheduled_refresh": RepeatingCycle(
                "scheduled_refresh",
                self.run_scheduled_refresh,
                lambda: settings.job_interval_seconds,
            ),
            "immediate_check": RepeatingCycle(
                "immediate_check",
                self.run_immediate_check,
                lambda: settings.instant_check_interval_seconds,
            ),
            "outbound_messages": RepeatingCycle(
                "outbound_messages",
                self.run_outbound_messages,
                lambda: settings.telegram_job_interval_seconds,
            ),
            "midnight_refresh": RepeatingCycle(
                "midnight_refresh",
                self.run_midnight_refresh,
                self._midnight_delay,
                run_immediately=False,
            ),
        }
        self.health.attach(self.cycles, self.locks)

    def _midnight_delay(self) -> float:
        ran_before = self.cycles["midnight_refresh"].runs > 0
        delay = seconds_until_next_midnight(
            self._settings.refresh_timezone,
            min_seconds=MIDNIGHT_MIN_DELAY_SECONDS if ran_before else 0.0,
        )
        logger.info(
            f"Next midnight refresh in {delay / 60:.0f} minutes "
            f"({self._settings.refresh_timezone})"
        )
        return delay

    async def _process(self, cycle: str, user: UserRecord, force_run: bool = False) -> bool:
        """Run the pipeline for one user under its lock. Never raises."""
        with self.locks.claim(user.user_email) as acquired:
            if not acquired:
                logger.info(f"[{cycle}] Skipping {user.user_email}, already processing")
                return False
            try:
                ok = await self._pipeline.run(user, force_run=force_run)
            except Exception:
                logger.exception(f"[{cycle}] Error processing {user.user_email}")
                ok = False
        self.health.record_pipeline(ok)
        return ok

    async def run_scheduled_refresh(self) -> None:
        users = await self._store.fetch_pro_users(REFRESH_COLUMNS)
        for user in users:
            if self.locks.is_held(user.user_email):
                continue
            if needs_scheduled_update(user, self._settings):
                await self._process("scheduled_refresh", user)

    async def run_immediate_check(self) -> None:
        users = await self._store.fetch_pro_users(IMMEDIATE_COLUMNS)
        for user in users:
            try:
                # Mark before processing so a send made by this run counts as delivered
                if user.telegramid and user.telegram_initial_send_scheduled_at is None:
                    await self._schedule_initial_send(user)
                if needs_immediate_update(user) and not self.locks.is_held(user.user_email):
                    await self._process("immediate_check", user)
            except Exception:
                logger.exception(f"[immediate_check] Error handling {user.user_email}")

    async def _schedule_initial_send(self, user: UserRecord) -> None:
        # Persist the marker first so the next cycle does not schedule again
        marked_at = datetime.now(timezone.utc)
        try:
            await self._store.update_user(
                user.user_email, {"telegram_initial_send_scheduled_at": marked_at}
            )
        except StoreError as e:
            logger.error(
                f"[immediate_check] Failed to mark initial send for {user.user_email}: {e}. "
                f"Will retry next cycle."
            )
            return

        delay = self._settings.telegram_initial_send_delay_seconds
        task = asyncio.create_task(
            self._initial_send(user, delay, marked_at), name=f"initial-send:{user.user_email}"
        )
        self._pending_sends.add(task)
        task.add_done_callback(self._pending_sends.discard)
        logger.info(f"[immediate_check] Scheduled initial send for {user.user_email} in {delay:.0f}s")

    async def _initial_send(self, user: UserRecord, delay: float, marked_at: datetime) -> None:
        await asyncio.sleep(delay)
        try:
            # Re-read so the send uses content produced since scheduling
            fresh = await self._store.fetch_user(user.user_email, IMMEDIATE_COLUMNS) or user
            if sent_since(fresh, marked_at):
                logger.info(f"Initial send for {user.user_email} already delivered, skipping")
                return
            logger.info(f"Running initial send for {user.user_email}")
            await self._delivery.process(fresh, initial=True)
        except Exception:
            logger.exception(f"Initial send failed for {user.user_email}")

    async def run_outbound_messages(self) -> None:
        users = await self._store.fetch_pro_users(DELIVERY_COLUMNS, with_telegram=True)
        for user in users:
            try:
                await self._delivery.process(user)
            except Exception:
                logger.exception(f"[outbound_messages] Error delivering to {user.user_email}")

    async def run_midnight_refresh(self) -> None:
        users = await self._store.fetch_pro_users(REFRESH_COLUMNS)
        if not users:
            logger.info("[midnight_refresh] No pro users found")
            return
        logger.info(f"[midnight_refresh] Refreshing {len(users)} pro users")
        await run_limited(
            [
                lambda u=u: self._process("midnight_refresh", u, force_run=True)
                for u in users
            ],
            self._settings.midnight_user_concurrency,
        )
        logger.info("[midnight_refresh] Finished")

    def start(self) -> None:
        for cycle in self.cycles.values():
            cycle.start()
        logger.info(f"Started cycles: {', '.join(self.cycles)}")

    def stop(self) -> None:
        """Stop starting new runs and clear all pending timers."""
        for cycle in self.cycles.values():
            cycle.stop()
        for task in list(self._pending_sends):
            task.cancel()

    async def shutdown(self, grace_seconds: float) -> None:
        """Stop, then give in-flight runs ``grace_seconds`` to finish."""
        self.stop()
        await asyncio.gather(
            *(cycle.wait_stopped(grace_seconds) for cycle in self.cycles.values())
        )
        logger.info("Scheduler stopped")
