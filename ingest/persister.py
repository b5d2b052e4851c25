import asyncio
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Optional

import asyncpg

from api.metrics import metrics
from strategy.models import Trigger
from .execution_store import table_name


logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = '23505'


class WriteResult(Enum):
    INSERTED = "inserted"
    DUPLICATE = "duplicate"
    SKIPPED = "skipped"
    FAILED = "failed"


def is_unique_violation(exc: BaseException) -> bool:
    if isinstance(exc, asyncpg.exceptions.UniqueViolationError):
        return True
    return getattr(exc, 'sqlstate', None) == UNIQUE_VIOLATION


class TriggerSink(ABC):
    """Outbound write of one trigger. Never raises for store errors."""

    @abstractmethod
    async def write(self, trigger: Trigger) -> WriteResult:
        pass


class GridTriggerWriter(TriggerSink):
    """Insert computed-grid crossings into the triggers table."""

    def __init__(self, pool, tables=None):
        self.pool = pool
        self.table = table_name(tables or {}, 'triggers_table')

    async def write(self, trigger: Trigger) -> WriteResult:
        record = trigger.to_record()
        try:
            async with self.pool.acquire() as conn:
                await conn.execute(
                    f'''INSERT INTO {self.table}
                        (user_id, symbol, trigger_type, trigger_price, execution_id, trigger_node)
                        VALUES ($1, $2, $3, $4, $5, $6)''',
                    record['user_id'],
                    record['symbol'],
                    record['trigger_type'],
                    record['trigger_price'],
                    record['execution_id'],
                    record['trigger_node'],
                )
        except Exception as e:
            if is_unique_violation(e):
                logger.debug(
                    "Trigger already recorded: exec=%s node=%s type=%s",
                    trigger.execution_id, trigger.level, trigger.direction.value,
                )
                return WriteResult.DUPLICATE
            logger.warning("Insert trigger failed: %s", e)
            return WriteResult.FAILED

        logger.info(
            "Inserted trigger: %s @ node %s (price %s) exec=%s",
            trigger.direction.value, trigger.level, trigger.price_at_cross, trigger.execution_id,
        )
        return WriteResult.INSERTED


class StoredLevelTriggerWriter(TriggerSink):
    """Record a hit against the active level row that defines the crossed price."""

    def __init__(self, pool, tables=None):
        self.pool = pool
        self.levels_table = table_name(tables or {}, 'levels_table')
        self.hits_table = table_name(tables or {}, 'level_hits_table')

    async def write(self, trigger: Trigger) -> WriteResult:
        try:
            async with self.pool.acquire() as conn:
                level_id = await conn.fetchval(
                    f'''SELECT id FROM {self.levels_table}
                        WHERE grid_execution_id = $1 AND price = $2 AND current_status = 'active'
                        LIMIT 1''',
                    trigger.execution_id,
                    float(trigger.level),
                )
                if level_id is None:
                    logger.warning(
                        "No active level found for execution=%s price=%s",
                        trigger.execution_id, trigger.level,
                    )
                    return WriteResult.SKIPPED
                await conn.execute(
                    f'INSERT INTO {self.hits_table} (trigger_id) VALUES ($1)',
                    level_id,
                )
        except Exception as e:
            if is_unique_violation(e):
                logger.debug("Level hit already recorded: exec=%s node=%s", trigger.execution_id, trigger.level)
                return WriteResult.DUPLICATE
            logger.error("Insert level hit failed: %s", e)
            return WriteResult.FAILED

        logger.info(
            "Inserted level hit: exec=%s node=%s type=%s price=%s trigger_id=%s",
            trigger.execution_id, trigger.level, trigger.direction.value, trigger.price_at_cross, level_id,
        )
        return WriteResult.INSERTED


class TriggerPersister:
    """
    Queue between the tick path and the sink.

    Ticks enqueue without awaiting the store; one worker writes in arrival
    order. When the queue is full the oldest pending trigger is dropped.
    """

    def __init__(self, sink: TriggerSink, max_queue_size: int = 10000, drain_timeout_s: float = 5.0):
        self.sink = sink
        self.max_queue_size = max_queue_size
        self.drain_timeout_s = drain_timeout_s
        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None
        self.running = False

    @property
    def queue(self) -> asyncio.Queue:
        if self._queue is None:
            self._queue = asyncio.Queue(maxsize=self.max_queue_size)
        return self._queue

    def enqueue(self, trigger: Trigger) -> None:
        queue = self.queue
        if queue.full():
            dropped = queue.get_nowait()
            queue.task_done()
            metrics.record_trigger_write('dropped')
            logger.error(
                "Trigger queue full; dropping exec=%s node=%s %s",
                dropped.execution_id, dropped.level, dropped.direction.value,
            )
        queue.put_nowait(trigger)
        metrics.update_queue_depth(queue.qsize())

    async def write_one(self, trigger: Trigger) -> WriteResult:
        try:
            result = await self.sink.write(trigger)
        except Exception:
            logger.exception("Trigger sink raised for exec=%s node=%s", trigger.execution_id, trigger.level)
            result = WriteResult.FAILED
        metrics.record_trigger_write(result.value)
        return result

    async def _run(self):
        queue = self.queue
        while True:
            trigger = await queue.get()
            try:
                await self.write_one(trigger)
            finally:
                queue.task_done()
                metrics.update_queue_depth(queue.qsize())

    async def start(self):
        self.running = True
        if self._worker is None:
            self._worker = asyncio.create_task(self._run())

    async def stop(self):
        self.running = False
        worker, self._worker = self._worker, None
        if worker is None:
            return
        try:
            await asyncio.wait_for(self.queue.join(), timeout=self.drain_timeout_s)
        except asyncio.TimeoutError:
            logger.warning("Stopping with %s unwritten triggers", self.queue.qsize())
        worker.cancel()
        await asyncio.gather(worker, return_exceptions=True)
