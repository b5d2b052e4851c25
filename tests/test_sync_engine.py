import asyncio
import sys

sys.path.insert(0, '.')

import pytest

from ingest.change_feed import ChangeEvent
from orchestration.sync_engine import EXECUTIONS, LEVELS, SyncEngine
from strategy.execution_registry import ExecutionRegistry
from strategy.models import MarketType
from tests.grid_fixtures import FakeStore, levels, make_execution, make_record


def _sync(store=None, **kwargs):
    registry = ExecutionRegistry(MarketType.MARGIN)
    return SyncEngine(registry, store or FakeStore(), **kwargs)


def _exec_event(event_type, new=None, old=None):
    return ChangeEvent(channel=EXECUTIONS, type=event_type, new=new, old=old)


def _level_event(event_type, new=None, old=None):
    return ChangeEvent(channel=LEVELS, type=event_type, new=new, old=old)


async def _drain(sync, events):
    runner = asyncio.create_task(sync.run())
    for event in events:
        sync.submit(event)
    await sync.queue.join()
    runner.cancel()
    await asyncio.gather(runner, return_exceptions=True)


def test_insert_then_stop_applied_in_order():
    sync = _sync()

    async def _run():
        await _drain(sync, [
            _exec_event('INSERT', new=make_record(1)),
            _exec_event('UPDATE', new=make_record(1, status='stopped'), old=make_record(1)),
            _exec_event('INSERT', new=make_record(2)),
        ])

    asyncio.run(_run())
    assert 1 not in sync.registry
    assert 1 not in sync.registry.nodes
    assert sync.registry.nodes.get(2) == levels(100, 105, 110)
    assert sync.applied == 3


def test_delete_uses_old_snapshot_and_respects_market():
    sync = _sync()

    async def _run():
        await sync.apply(_exec_event('INSERT', new=make_record(1)))
        await sync.apply(_exec_event('DELETE', old={'id': 1, 'market': 'future'}))
        assert 1 in sync.registry
        await sync.apply(_exec_event('DELETE', old=make_record(1)))

    asyncio.run(_run())
    assert 1 not in sync.registry


def test_update_without_new_record_is_skipped():
    sync = _sync()

    async def _run():
        await sync.apply(_exec_event('INSERT', new=make_record(1)))
        await sync.apply(_exec_event('UPDATE', old=make_record(1, status='stopped')))

    asyncio.run(_run())
    assert 1 in sync.registry


def test_malformed_execution_record_is_skipped():
    sync = _sync()
    asyncio.run(sync.apply(_exec_event('INSERT', new={'id': 1, 'lower_limit': 'abc', 'status': 'running'})))
    assert len(sync.registry) == 0


def test_stored_mode_upsert_reads_levels():
    store = FakeStore(stored_levels={1: levels(103, 101)})
    sync = _sync(store, node_source='stored')
    asyncio.run(sync.apply(_exec_event('INSERT', new=make_record(1))))
    assert sync.registry.nodes.get(1) == levels(101, 103)
    assert store.level_queries == [1]


def test_stored_mode_skips_level_query_for_inactive_execution():
    store = FakeStore(stored_levels={1: levels(103)})
    sync = _sync(store, node_source='stored')
    asyncio.run(sync.apply(_exec_event('INSERT', new=make_record(1, status='paused'))))
    assert store.level_queries == []


def test_level_change_refreshes_only_affected_execution():
    store = FakeStore(stored_levels={1: levels(101), 2: levels(102)})
    sync = _sync(store, node_source='stored')

    async def _run():
        await sync.apply(_exec_event('INSERT', new=make_record(1)))
        await sync.apply(_exec_event('INSERT', new=make_record(2)))
        store.level_queries.clear()
        store.stored_levels[2] = levels(102, 104)
        # Deletes only carry the old row.
        await sync.apply(_level_event('DELETE', old={'id': 55, 'grid_execution_id': 2, 'price': 106}))

    asyncio.run(_run())
    assert store.level_queries == [2]
    assert sync.registry.nodes.get(2) == levels(102, 104)
    assert sync.registry.nodes.get(1) == levels(101)


def test_level_change_without_execution_id_is_skipped():
    store = FakeStore()
    sync = _sync(store, node_source='stored')
    asyncio.run(sync.apply(_level_event('INSERT', new={'id': 9, 'price': 100})))
    assert store.level_queries == []


def test_level_change_for_untracked_execution_is_ignored():
    store = FakeStore()
    sync = _sync(store, node_source='stored')
    asyncio.run(sync.apply(_level_event('INSERT', new={'id': 9, 'grid_execution_id': 3, 'price': 100})))
    assert store.level_queries == []


def test_full_refresh_mode_reloads_registry():
    store = FakeStore(executions=[make_execution(1)], stored_levels={1: levels(101)})
    sync = _sync(store, node_source='stored', level_refresh='full')

    async def _run():
        await sync.load_snapshot()
        store.executions.append(make_execution(2))
        await sync.apply(_level_event('UPDATE', new={'id': 9, 'grid_execution_id': 1, 'price': 100}))

    asyncio.run(_run())
    assert store.snapshot_queries == 2
    assert 2 in sync.registry


def test_load_snapshot_filters_by_market():
    store = FakeStore(executions=[make_execution(1), make_execution(2, market='future')])
    sync = _sync(store)
    assert asyncio.run(sync.load_snapshot()) == 1
    assert 1 in sync.registry and 2 not in sync.registry


def test_resync_request_is_processed_by_dispatcher():
    store = FakeStore(executions=[make_execution(1)])
    sync = _sync(store)

    async def _run():
        await sync.request_resync()
        await _drain(sync, [])

    asyncio.run(_run())
    assert store.snapshot_queries == 1
    assert 1 in sync.registry


def test_dispatcher_survives_failing_event():
    class FailingStore(FakeStore):
        async def fetch_active_levels(self, execution_id):
            if execution_id == 1:
                raise ConnectionError("store unavailable")
            return await super().fetch_active_levels(execution_id)

    sync = _sync(FailingStore(stored_levels={2: levels(102)}), node_source='stored')

    async def _run():
        await _drain(sync, [
            _exec_event('INSERT', new=make_record(1)),
            _exec_event('INSERT', new=make_record(2)),
        ])

    asyncio.run(_run())
    assert 1 not in sync.registry
    assert sync.registry.nodes.get(2) == levels(102)


def test_unknown_modes_are_rejected():
    with pytest.raises(ValueError):
        _sync(node_source='random')
    with pytest.raises(ValueError):
        _sync(level_refresh='sometimes')


def test_computed_mode_ignores_level_changes():
    store = FakeStore(stored_levels={1: []})
    sync = _sync(store)

    async def _run():
        await sync.apply(_exec_event('INSERT', new=make_record(1)))
        await sync.apply(_level_event('INSERT', new={'id': 9, 'grid_execution_id': 1, 'price': 100}))

    asyncio.run(_run())
    assert sync.registry.nodes.get(1) == levels(100, 105, 110)
    assert store.level_queries == []


def test_computed_mode_ignores_full_refresh_level_changes():
    store = FakeStore(executions=[make_execution(1)])
    sync = _sync(store, level_refresh='full')

    async def _run():
        await sync.load_snapshot()
        await sync.apply(_level_event('UPDATE', new={'id': 9, 'grid_execution_id': 1, 'price': 100}))

    asyncio.run(_run())
    assert store.snapshot_queries == 1
    assert sync.registry.nodes.get(1) == levels(100, 105, 110)
