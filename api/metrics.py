import errno
import logging
from prometheus_client import Counter, Gauge, start_http_server
from typing import Optional


logger = logging.getLogger(__name__)

_METRICS_SERVER_STARTED = False

FEED_STATE_VALUES = {'disconnected': 0, 'connecting': 1, 'connected': 2}


class MetricsCollector:
    def __init__(self):
        self.ticks_processed = Counter('price_ticks_processed_total', 'Total price ticks processed')
        self.dropped_messages = Counter('dropped_messages_total', 'Total inbound messages dropped', ['reason'])
        self.current_price = Gauge('current_price', 'Last observed price')

        self.crossings = Counter('level_crossings_total', 'Grid level crossings detected', ['direction'])
        self.suppressed_crossings = Counter('level_crossings_suppressed_total', 'Crossings suppressed as repeats')
        self.trigger_writes = Counter('trigger_writes_total', 'Trigger write attempts', ['result'])
        self.write_queue_depth = Gauge('trigger_write_queue_depth', 'Triggers waiting to be written')

        self.active_executions = Gauge('active_executions', 'Executions held in the registry')
        self.grid_levels = Gauge('grid_levels_total', 'Grid levels across active executions')
        self.change_events = Counter('change_events_total', 'Change-feed events applied', ['channel', 'type'])
        self.resyncs = Counter('registry_resyncs_total', 'Full registry reloads')

        self.feed_state = Gauge('price_feed_state', 'Price feed state (0=disconnected, 1=connecting, 2=connected)')
        self.reconnect_count = Counter('websocket_reconnects_total', 'Total WebSocket reconnects')
        self.change_feed_reconnects = Counter('change_feed_reconnects_total', 'Total change-feed reconnects')

    def record_tick(self, price: float):
        self.ticks_processed.inc()
        self.current_price.set(price)

    def record_drop(self, reason: str):
        self.dropped_messages.labels(reason=reason).inc()

    def record_crossing(self, direction: str):
        self.crossings.labels(direction=direction).inc()

    def record_suppressed(self):
        self.suppressed_crossings.inc()

    def record_trigger_write(self, result: str):
        self.trigger_writes.labels(result=result).inc()

    def update_queue_depth(self, depth: int):
        self.write_queue_depth.set(depth)

    def update_registry(self, executions: int, levels: int):
        self.active_executions.set(executions)
        self.grid_levels.set(levels)

    def record_change_event(self, channel: str, event_type: str):
        self.change_events.labels(channel=channel, type=event_type).inc()

    def record_resync(self):
        self.resyncs.inc()

    def update_feed_state(self, state: str):
        self.feed_state.set(FEED_STATE_VALUES.get(state, 0))

    def record_reconnect(self):
        self.reconnect_count.inc()

    def record_change_feed_reconnect(self):
        self.change_feed_reconnects.inc()


def start_metrics_server(port: int = 9108, port_scan_limit: int = 0):
    global _METRICS_SERVER_STARTED
    if _METRICS_SERVER_STARTED or not port:
        return
    last_error: Optional[OSError] = None
    for offset in range(max(0, port_scan_limit) + 1):
        candidate = port + offset
        try:
            start_http_server(candidate)
        except OSError as exc:
            last_error = exc
            if exc.errno == errno.EADDRINUSE:
                logger.warning(
                    "Prometheus metrics server port %s already in use; trying next candidate",
                    candidate,
                )
                continue
            raise
        _METRICS_SERVER_STARTED = True
        logger.info("Prometheus metrics server started on port %s", candidate)
        return
    if last_error and last_error.errno == errno.EADDRINUSE:
        raise RuntimeError(
            f"Unable to bind Prometheus metrics server on ports {port}-{port + port_scan_limit}"
        ) from last_error
    if last_error:
        raise last_error

metrics = MetricsCollector()
