import argparse
import asyncio
import logging
from typing import Optional

from api.metrics import start_metrics_server
from config import Config, config
from config.utils import get_config_section
from ingest.change_feed import ChangeFeedListener
from ingest.execution_store import ExecutionStore, market_column
from ingest.persister import GridTriggerWriter, StoredLevelTriggerWriter, TriggerPersister, TriggerSink
from ingest.price_feed import FeedConnection, ReconnectPolicy, ticker_url
from monitoring.async_utils import run_tasks_with_cleanup
from monitoring.logging_utils import setup_logging
from orchestration.sync_engine import EXECUTIONS, LEVELS, SyncEngine
from strategy.execution_registry import ExecutionRegistry
from strategy.grid_math import MAX_LEVELS
from strategy.models import MarketType
from strategy.trigger_engine import TriggerEngine


logger = logging.getLogger(__name__)


class GridTriggerMonitor:
    """Watch one symbol's price and record grid-level crossings for every active execution."""

    def __init__(self, config_obj=None, store: Optional[ExecutionStore] = None, sink: Optional[TriggerSink] = None):
        self.config = config_obj or config
        exchange_cfg = get_config_section(self.config, 'exchange')
        self.grid_cfg = get_config_section(self.config, 'grid')
        self.sync_cfg = get_config_section(self.config, 'sync')
        self.ws_cfg = get_config_section(self.config, 'websocket')
        self.persistence_cfg = get_config_section(self.config, 'persistence')
        self.monitoring_cfg = get_config_section(self.config, 'monitoring')
        self.store_cfg = get_config_section(self.config, 'store')

        self.symbol = exchange_cfg.get('symbol', 'BTCUSDT')
        self.market = MarketType.from_config(self.grid_cfg.get('market_type'))
        self.node_source = self.grid_cfg.get('node_source', 'computed')

        self.registry = ExecutionRegistry(
            self.market,
            max_levels=int(self.grid_cfg.get('max_levels', MAX_LEVELS)),
            match_market=market_column(self.store_cfg) is not None,
        )
        self.engine = TriggerEngine(self.registry)

        self.store = store or ExecutionStore(get_config_section(self.config, 'database'), self.store_cfg)
        self.sync_engine = SyncEngine(
            self.registry,
            self.store,
            node_source=self.node_source,
            level_refresh=self.sync_cfg.get('level_refresh', 'targeted'),
        )
        self.persister: Optional[TriggerPersister] = None
        if sink is not None:
            self.persister = self._build_persister(sink)

        self.retry_delay_s = float(self.sync_cfg.get('reconnect_delay_s', 5))
        channels = {EXECUTIONS: self.sync_cfg.get('executions_channel', 'grid_executions_changes')}
        if self.node_source == 'stored':
            channels[LEVELS] = self.sync_cfg.get('levels_channel', 'grid_levels_changes')
        self.change_feed = ChangeFeedListener(
            self.store.listen_connection,
            channels,
            on_event=self.sync_engine.submit,
            on_reconnect=self.sync_engine.request_resync,
            reconnect_delay_s=self.retry_delay_s,
        )

        reset_on_reconnect = bool(self.grid_cfg.get('reset_price_on_reconnect', False))
        self.feed = FeedConnection(
            ticker_url(self.symbol, self.market.value),
            self.handle_price,
            policy=ReconnectPolicy(
                backoff=self.ws_cfg.get('reconnect_backoff') or [5],
                jitter=self.ws_cfg.get('jitter_s', 0),
                max_attempts=self.ws_cfg.get('max_reconnect_attempts'),
            ),
            stale_timeout_s=self.ws_cfg.get('stream_stale_s'),
            on_reconnect=self.engine.reset_price if reset_on_reconnect else None,
        )
        self.running = False

    def _build_persister(self, sink: TriggerSink) -> TriggerPersister:
        return TriggerPersister(sink, max_queue_size=int(self.persistence_cfg.get('max_queue_size', 10000)))

    def handle_price(self, price) -> None:
        for trigger in self.engine.process_price(price):
            self.persister.enqueue(trigger)

    async def initialize(self):
        await self.store.initialize()
        if self.persister is None:
            if self.node_source == 'stored':
                sink = StoredLevelTriggerWriter(self.store.pool, self.store_cfg)
            else:
                sink = GridTriggerWriter(self.store.pool, self.store_cfg)
            self.persister = self._build_persister(sink)
        logger.info(
            "Monitoring %s for market %s (levels: %s)", self.symbol, self.market.value, self.node_source
        )

    async def _retry(self, description, operation):
        """Await ``operation`` until it succeeds; gives up only when the monitor is stopped."""
        while self.running:
            try:
                return await operation()
            except Exception as e:
                logger.error("%s failed: %s; retrying in %.1fs", description, e, self.retry_delay_s)
            await asyncio.sleep(self.retry_delay_s)
        return None

    async def _wait_subscribed(self, listener_task: asyncio.Task) -> bool:
        waiter = asyncio.create_task(self.change_feed.subscribed.wait())
        try:
            await asyncio.wait({waiter, listener_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if not waiter.done():
                waiter.cancel()
        return self.change_feed.subscribed.is_set()

    async def start(self):
        self.running = True
        listener_task: Optional[asyncio.Task] = None
        started = False
        try:
            await self._retry("Store connection", self.initialize)
            if not self.running:
                return
            start_metrics_server(
                int(self.monitoring_cfg.get('prometheus_port', 0) or 0),
                port_scan_limit=int(self.monitoring_cfg.get('port_scan_limit', 0) or 0),
            )
            await self.persister.start()

            # Subscribe before the snapshot so no change between the two is lost;
            # queued events are applied once the snapshot is in place.
            listener_task = asyncio.create_task(self.change_feed.run(), name='change_feed')
            if not await self._wait_subscribed(listener_task):
                return
            await self._retry("Snapshot load", self.sync_engine.load_snapshot)
            started = self.running
        finally:
            if not started:
                if listener_task is not None:
                    listener_task.cancel()
                    await asyncio.gather(listener_task, return_exceptions=True)
                await self.stop()

        tasks = [
            listener_task,
            asyncio.create_task(self.sync_engine.run(), name='sync_engine'),
            asyncio.create_task(self.feed.run(), name='price_feed'),
        ]
        await run_tasks_with_cleanup(tasks, cleanup=self.stop)

    async def stop(self):
        """Release the socket, unsubscribe, flush pending triggers and close the pool."""
        self.running = False
        await self.feed.stop()
        await self.change_feed.stop()
        if self.persister is not None:
            await self.persister.stop()
        await self.store.close()


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description='Listen to the price feed and record grid level crossings')
    parser.add_argument('-f', '--config', help='Path to the YAML config file')
    return parser.parse_args(argv)


async def main(config_obj=None):
    system = GridTriggerMonitor(config_obj or config)
    try:
        await system.start()
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("System shutting down on interrupt")
        await system.stop()


def cli(argv=None):
    args = parse_args(argv)
    cfg = Config(args.config) if args.config else config
    setup_logging(get_config_section(cfg, 'monitoring').get('log_level', logging.INFO))
    try:
        asyncio.run(main(cfg))
    except KeyboardInterrupt:
        logger.info("Interrupted")


if __name__ == "__main__":
    cli()
