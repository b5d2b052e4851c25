import asyncio
import sys
from decimal import Decimal

sys.path.insert(0, '.')

import asyncpg
import pytest

from ingest.persister import (
    GridTriggerWriter,
    StoredLevelTriggerWriter,
    TriggerPersister,
    WriteResult,
    is_unique_violation,
)
from strategy.models import Direction, Trigger
from tests.grid_fixtures import RecordingSink, UniqueSink


class FakeConn:
    def __init__(self, execute_error=None, level_id=None):
        self.execute_error = execute_error
        self.level_id = level_id
        self.executed = []
        self.lookups = []

    async def execute(self, query, *args):
        self.executed.append((' '.join(query.split()), args))
        if self.execute_error is not None:
            raise self.execute_error

    async def fetchval(self, query, *args):
        self.lookups.append(args)
        return self.level_id


class _Acquire:
    def __init__(self, conn):
        self.conn = conn

    async def __aenter__(self):
        return self.conn

    async def __aexit__(self, *exc):
        return False


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    def acquire(self):
        return _Acquire(self.conn)


def _trigger(execution_id=1, level='105', direction=Direction.ABOVE):
    return Trigger(
        execution_id=execution_id,
        level=Decimal(level),
        direction=direction,
        price_at_cross=Decimal('105.5'),
        owner_id='user-1',
        symbol='BTCUSDT',
    )


def test_grid_writer_inserts_trigger_row():
    conn = FakeConn()
    writer = GridTriggerWriter(FakePool(conn), {'triggers_table': 'public.btc_price_triggers'})
    assert asyncio.run(writer.write(_trigger())) is WriteResult.INSERTED
    query, args = conn.executed[0]
    assert query.startswith('INSERT INTO public.btc_price_triggers')
    assert args == ('user-1', 'BTCUSDT', 'ABOVE', 105.5, 1, '105')


def test_grid_writer_treats_unique_violation_as_satisfied():
    conn = FakeConn(execute_error=asyncpg.exceptions.UniqueViolationError('duplicate key'))
    writer = GridTriggerWriter(FakePool(conn))
    assert asyncio.run(writer.write(_trigger())) is WriteResult.DUPLICATE


def test_grid_writer_reports_other_failures_without_raising():
    conn = FakeConn(execute_error=ConnectionResetError('gone'))
    writer = GridTriggerWriter(FakePool(conn))
    assert asyncio.run(writer.write(_trigger())) is WriteResult.FAILED


def test_unique_violation_detected_by_sqlstate():
    class DriverError(Exception):
        sqlstate = '23505'

    assert is_unique_violation(DriverError())
    assert not is_unique_violation(ValueError())


def test_stored_level_writer_skips_without_active_level():
    conn = FakeConn(level_id=None)
    writer = StoredLevelTriggerWriter(FakePool(conn))
    assert asyncio.run(writer.write(_trigger(execution_id=4))) is WriteResult.SKIPPED
    assert conn.lookups == [(4, 105.0)]
    assert conn.executed == []


def test_stored_level_writer_records_hit_for_level_row():
    conn = FakeConn(level_id=77)
    writer = StoredLevelTriggerWriter(FakePool(conn))
    assert asyncio.run(writer.write(_trigger())) is WriteResult.INSERTED
    query, args = conn.executed[0]
    assert query == 'INSERT INTO gaussian_triggers_triggered (trigger_id) VALUES ($1)'
    assert args == (77,)


def test_invalid_table_name_is_rejected():
    with pytest.raises(ValueError):
        GridTriggerWriter(FakePool(FakeConn()), {'triggers_table': 'triggers; DROP TABLE x'})


def test_persister_writes_in_order_and_drains_on_stop():
    sink = RecordingSink()
    persister = TriggerPersister(sink)
    triggers = [_trigger(level=str(level)) for level in (100, 105, 110)]

    async def _run():
        await persister.start()
        for trigger in triggers:
            persister.enqueue(trigger)
        await persister.stop()

    asyncio.run(_run())
    assert sink.written == triggers


def test_duplicate_trigger_is_not_an_error():
    sink = UniqueSink()
    persister = TriggerPersister(sink)

    async def _run():
        first = await persister.write_one(_trigger())
        second = await persister.write_one(_trigger())
        return first, second

    assert asyncio.run(_run()) == (WriteResult.INSERTED, WriteResult.DUPLICATE)
    assert len(sink.rows) == 1


def test_raising_sink_counts_as_failed():
    class BrokenSink(RecordingSink):
        async def write(self, trigger):
            raise RuntimeError("sink bug")

    persister = TriggerPersister(BrokenSink())
    assert asyncio.run(persister.write_one(_trigger())) is WriteResult.FAILED


def test_full_queue_drops_oldest_trigger():
    persister = TriggerPersister(RecordingSink(), max_queue_size=2)

    async def _run():
        for level in ('100', '105', '110'):
            persister.enqueue(_trigger(level=level))
        queue = persister.queue
        return [queue.get_nowait().level for _ in range(queue.qsize())]

    assert asyncio.run(_run()) == [Decimal('105'), Decimal('110')]
