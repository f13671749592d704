"""Per-user lock registry shared by all scheduling cycles."""

import logging
from contextlib import contextmanager
from typing import Iterator

logger = logging.getLogger(__name__)


class LockRegistry:
    """Set of user keys currently being processed.

    Membership is the only signal that work is in progress for a user.
    All access happens on the event loop thread, so a plain set is enough:
    ``try_acquire`` checks and adds without an await in between.
    """

    def __init__(self) -> None:
        self._held: set[str] = set()

    def try_acquire(self, key: str) -> bool:
        """Mark ``key`` as held. Returns False if it already was."""
        if key in self._held:
            return False
        self._held.add(key)
        return True

    def release(self, key: str) -> None:
        self._held.discard(key)

    def is_held(self, key: str) -> bool:
        return key in self._held

    def members(self) -> list[str]:
        return sorted(self._held)

    @contextmanager
    def claim(self, key: str) -> Iterator[bool]:
        """Hold ``key`` for the duration of the block if it is free.

        Yields whether the key was acquired. A key acquired here is released
        on every exit path, including exceptions and cancellation.

        Usage:
            with locks.claim(email) as acquired:
                if not acquired:
                    return
                await pipeline.run(user)
        """
        acquired = self.try_acquire(key)
        if not acquired:
            logger.debug("Lock for %s already held", key)
        try:
            yield acquired
        finally:
            if acquired:
                self.release(key)

    def __len__(self) -> int:
        return len(self._held)

    def __contains__(self, key: object) -> bool:
        return key in self._held
