import asyncio
import logging
from typing import Optional

from api.metrics import metrics
from ingest.change_feed import ChangeEvent
from strategy.execution_registry import ExecutionRegistry
from strategy.models import Execution


logger = logging.getLogger(__name__)

EXECUTIONS = 'executions'
LEVELS = 'levels'
RESYNC = 'resync'

NODE_SOURCES = ('computed', 'stored')
LEVEL_REFRESH_MODES = ('targeted', 'full')


class SyncEngine:
    """
    Applies store mutations to the registry through one dispatcher task.

    Execution and level notifications share a single queue, so events are
    applied one at a time and in arrival order per channel. In ``stored``
    mode grid levels come from the level table instead of GridMath.
    """

    def __init__(
        self,
        registry: ExecutionRegistry,
        source,
        node_source: str = 'computed',
        level_refresh: str = 'targeted',
    ):
        if node_source not in NODE_SOURCES:
            raise ValueError(f"node_source must be one of {NODE_SOURCES}, got {node_source!r}")
        if level_refresh not in LEVEL_REFRESH_MODES:
            raise ValueError(f"level_refresh must be one of {LEVEL_REFRESH_MODES}, got {level_refresh!r}")
        self.registry = registry
        self.source = source
        self.node_source = node_source
        self.level_refresh = level_refresh
        self._queue: Optional[asyncio.Queue] = None
        self.applied = 0

    @property
    def stored_levels(self) -> bool:
        return self.node_source == 'stored'

    @property
    def queue(self) -> asyncio.Queue:
        if self._queue is None:
            self._queue = asyncio.Queue()
        return self._queue

    def submit(self, event: ChangeEvent) -> None:
        self.queue.put_nowait(event)

    async def request_resync(self) -> None:
        """Queue a full reload behind any events already received."""
        self.submit(ChangeEvent(channel=RESYNC, type='RESYNC'))

    async def run(self) -> None:
        queue = self.queue
        while True:
            event = await queue.get()
            try:
                await self.apply(event)
            except Exception:
                logger.exception("Failed to apply %s %s change", event.channel, event.type)
            finally:
                queue.task_done()

    async def load_snapshot(self) -> int:
        """Seed or re-seed the registry from a full store query."""
        executions = await self.source.load_active_executions(self.registry.market)
        levels_by_id = None
        if self.stored_levels:
            active_ids = [e.id for e in executions if self.registry.is_active(e)]
            levels_by_id = await self.source.fetch_levels_for(active_ids)
        count = self.registry.load_all(executions, levels_by_id)
        self._publish_registry()
        return count

    async def resync(self) -> None:
        logger.info("Resynchronising executions from store")
        metrics.record_resync()
        await self.load_snapshot()

    async def apply(self, event: ChangeEvent) -> None:
        metrics.record_change_event(event.channel, event.type)
        if event.channel == RESYNC:
            await self.resync()
            return
        if event.channel == EXECUTIONS:
            await self._apply_execution_change(event)
        elif event.channel == LEVELS:
            await self._apply_level_change(event)
        else:
            logger.warning("Change event on unknown channel %s", event.channel)
            return
        self.applied += 1
        self._publish_registry()

    async def _apply_execution_change(self, event: ChangeEvent) -> None:
        if event.type == 'DELETE':
            if event.old is None:
                logger.warning("Execution delete without old record, skipping")
                return
            execution_id = event.old.get('id')
            if execution_id is None:
                logger.warning("Execution delete without id, skipping")
                return
            self.registry.remove(int(execution_id), event.old.get('market'))
            return

        if event.new is None:
            logger.warning("Execution %s without new record, skipping", event.type.lower())
            return
        try:
            execution = Execution.from_record(event.new)
        except (KeyError, ValueError) as exc:
            logger.warning("Malformed execution record %s: %s", event.new.get('id'), exc)
            return

        levels = None
        if self.stored_levels and self.registry.is_active(execution):
            levels = await self.source.fetch_active_levels(execution.id)
        self.registry.upsert(execution, levels)

    async def _apply_level_change(self, event: ChangeEvent) -> None:
        if not self.stored_levels:
            # Computed grids derive only from the execution row.
            logger.debug("Level change ignored in computed mode")
            return

        execution_id = event.field('grid_execution_id')
        if execution_id is None:
            logger.warning("Level change without execution id, skipping")
            return

        if self.level_refresh == 'full':
            await self.resync()
            return

        execution_id = int(execution_id)
        if execution_id not in self.registry:
            logger.debug("Level change for inactive execution %s ignored", execution_id)
            return
        levels = await self.source.fetch_active_levels(execution_id)
        self.registry.set_levels(execution_id, levels)
        logger.info("Updated %s active levels for exec=%s", len(levels), execution_id)

    def _publish_registry(self) -> None:
        level_count = sum(len(levels) for _, levels in self.registry.nodes.items())
        metrics.update_registry(len(self.registry), level_count)
