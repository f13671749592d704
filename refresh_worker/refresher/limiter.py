"""Bounded-parallelism executor for independent async tasks."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Sequence, cast

logger = logging.getLogger(__name__)

TaskFactory = Callable[[], Awaitable[Any]]


@dataclass
class Settled:
    """Outcome of one task: fulfilled with ``value`` or rejected with ``error``."""

    ok: bool
    value: Any = None
    error: BaseException | None = None


async def run_limited(factories: Sequence[TaskFactory], limit: int) -> list[Settled]:
    """Run task factories with at most ``limit`` in flight.

    Every factory produces exactly one ``Settled`` at the same index as its
    input. A failing task never aborts its siblings.

    Args:
        factories: Zero-argument callables returning awaitables.
        limit: Maximum number of tasks running at once.

    Returns:
        One ``Settled`` per factory, in input order.

    Raises:
        ValueError: If limit is less than 1.
    """
    if limit < 1:
        raise ValueError(f"limit must be >= 1, got {limit}")
    if not factories:
        return []

    logger.debug("Running %d tasks with limit %d", len(factories), limit)
    semaphore = asyncio.Semaphore(limit)
    results: list[Settled | None] = [None] * len(factories)

    async def _run(index: int, factory: TaskFactory) -> None:
        async with semaphore:
            try:
                value = await factory()
            except Exception as e:
                results[index] = Settled(ok=False, error=e)
            else:
                results[index] = Settled(ok=True, value=value)

    tasks = [
        asyncio.create_task(_run(index, factory))
        for index, factory in enumerate(factories)
    ]
    try:
        await asyncio.gather(*tasks)
    except asyncio.CancelledError:
        for task in tasks:
            task.cancel()
        raise

    # _run fills every slot before gather returns
    return cast(list[Settled], results)
