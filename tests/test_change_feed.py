import asyncio
import json
import sys

sys.path.insert(0, '.')

import pytest

from ingest.change_feed import ChangeFeedListener, ChangeParseError, parse_change_payload
from tests.grid_fixtures import FakeConnection



def test_parse_insert_has_only_new_snapshot():
    event = parse_change_payload('executions', json.dumps({
        'type': 'INSERT', 'table': 'grid_executions', 'record': {'id': 3}, 'old_record': None,
    }))
    assert event.type == 'INSERT'
    assert event.new == {'id': 3}
    assert event.old is None
    assert event.table == 'grid_executions'


def test_parse_delete_reads_old_snapshot():
    event = parse_change_payload('levels', {'type': 'delete', 'old_record': {'grid_execution_id': 8}})
    assert event.type == 'DELETE'
    assert event.new is None
    assert event.field('grid_execution_id') == 8


def test_field_prefers_new_snapshot():
    event = parse_change_payload('levels', {
        'type': 'UPDATE',
        'record': {'grid_execution_id': 2},
        'old_record': {'grid_execution_id': 1},
    })
    assert event.field('grid_execution_id') == 2
    assert event.field('missing') is None


@pytest.mark.parametrize('payload', [
    'not json',
    '[1, 2]',
    json.dumps({'type': 'TRUNCATE', 'record': {'id': 1}}),
    json.dumps({'type': 'UPDATE'}),
])
def test_parse_rejects_malformed_payloads(payload):
    with pytest.raises(ChangeParseError):
        parse_change_payload('executions', payload)


def test_listener_routes_channels_and_resubscribes():
    connections = [FakeConnection(), FakeConnection()]
    received = []
    reconnects = []
    sleeps = []

    async def connect():
        return connections.pop(0)

    async def on_reconnect():
        reconnects.append(True)

    async def sleep(delay):
        sleeps.append(delay)

    listener = ChangeFeedListener(
        connect,
        {'executions': 'exec_changes', 'levels': 'level_changes'},
        on_event=received.append,
        on_reconnect=on_reconnect,
        reconnect_delay_s=2.0,
        sleep=sleep,
    )

    async def _run():
        task = asyncio.create_task(listener.run())
        await listener.subscribed.wait()
        first = listener._conn
        first.notify('exec_changes', {'type': 'INSERT', 'record': {'id': 1}})
        first.notify('level_changes', 'garbage')
        first.notify('level_changes', {'type': 'DELETE', 'old_record': {'grid_execution_id': 1}})

        first.terminate()
        while listener.connections < 2:
            await asyncio.sleep(0)
        second = listener._conn
        second.notify('exec_changes', {'type': 'UPDATE', 'record': {'id': 1, 'status': 'stopped'}})

        await listener.stop()
        await asyncio.wait_for(task, timeout=1)
        return first, second

    first, second = asyncio.run(_run())

    assert [(e.channel, e.type) for e in received] == [
        ('executions', 'INSERT'),
        ('levels', 'DELETE'),
        ('executions', 'UPDATE'),
    ]
    assert sleeps == [2.0]
    assert reconnects == [True]
    assert second.closed
    assert second.listeners == {}
