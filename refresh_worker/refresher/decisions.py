"""Update decisions: is refresh or delivery work due for a user?

All functions are pure. ``now`` defaults to the current UTC time and can be
passed explicitly in tests.
"""

from datetime import datetime, timedelta, timezone

from refresher.config import WorkerSettings
from refresher.content import ContentState, is_deliverable
from refresher.models import CATEGORY_KEYS, UserRecord


def _now(now: datetime | None) -> datetime:
    return now if now is not None else datetime.now(timezone.utc)


def _preferences_changed(user: UserRecord) -> bool:
    return (
        user.preference_update is not None
        and user.last_job is not None
        and user.preference_update > user.last_job
    )


def needs_scheduled_update(
    user: UserRecord, settings: WorkerSettings, now: datetime | None = None
) -> bool:
    """Time-based staleness check used by the slow scheduled cycle."""
    if not user.ispro:
        return False
    if user.last_job is None:
        return True
    threshold = _now(now) - timedelta(hours=settings.job_refresh_hours)
    return user.last_job < threshold or _preferences_changed(user)


def needs_immediate_update(user: UserRecord) -> bool:
    """Cheap check for users that were never processed or just changed.

    True when there is no previous run, preferences changed after the last
    run, or any content field was never populated.
    """
    if not user.ispro:
        return False
    if user.last_job is None:
        return True
    if _preferences_changed(user):
        return True
    for key in CATEGORY_KEYS:
        state = ContentState.decode(user.content_field(key))
        if state is None or state.is_placeholder:
            return True
    return False


def is_content_stale(
    user: UserRecord, settings: WorkerSettings, now: datetime | None = None
) -> bool:
    if user.last_job is None:
        return True
    threshold = _now(now) - timedelta(hours=settings.job_refresh_hours)
    return user.last_job < threshold


def has_deliverable_content(user: UserRecord) -> bool:
    return any(is_deliverable(user.content_field(key)) for key in CATEGORY_KEYS)


def is_send_due(
    user: UserRecord,
    settings: WorkerSettings,
    initial: bool = False,
    now: datetime | None = None,
) -> bool:
    """Messaging cooldown, independent of the content refresh cooldown.

    An initial send (first time a channel id shows up) bypasses the cooldown.
    """
    if not user.ispro or not user.telegramid:
        return False
    if initial:
        return True
    if user.tele_last_sent is None:
        return True
    threshold = _now(now) - timedelta(hours=settings.telegram_send_interval_hours)
    return user.tele_last_sent < threshold


def sent_since(user: UserRecord, moment: datetime) -> bool:
    """True if a digest reached the user at or after ``moment``."""
    return user.tele_last_sent is not None and user.tele_last_sent >= moment
