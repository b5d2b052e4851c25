import asyncio
import logging
from typing import Awaitable, Callable, Iterable, List, Optional


logger = logging.getLogger(__name__)


async def run_tasks_with_cleanup(
    tasks: Iterable[asyncio.Task],
    cleanup: Optional[Callable[[], Awaitable[None]]] = None,
) -> None:
    """Run long-lived tasks until one of them ends, then cancel the rest and clean up."""
    task_list: List[asyncio.Task] = list(tasks)
    try:
        if task_list:
            done, _ = await asyncio.wait(task_list, return_when=asyncio.FIRST_COMPLETED)
            for t in done:
                if t.cancelled():
                    continue
                exc = t.exception()
                if exc is not None:
                    logger.error("Task %s failed: %r", t.get_name(), exc)
                else:
                    logger.warning("Task %s finished", t.get_name())
    except asyncio.CancelledError:
        pass
    finally:
        for t in task_list:
            if not t.done():
                t.cancel()
        if task_list:
            await asyncio.gather(*task_list, return_exceptions=True)
        if cleanup is not None:
            await cleanup()
