import asyncio
import json
import logging
import random
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Sequence, Union

import websockets

from api.metrics import metrics


logger = logging.getLogger(__name__)

TickHandler = Callable[[Decimal], Union[None, Awaitable[None]]]

SPOT_STREAM_BASE = "wss://stream.binance.com:9443/ws"
FUTURES_STREAM_BASE = "wss://fstream.binance.com/ws"


class FeedState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class TickParseError(ValueError):
    pass


def ticker_url(symbol: str, market: str) -> str:
    base = FUTURES_STREAM_BASE if market == "future" else SPOT_STREAM_BASE
    return f"{base}/{symbol.lower()}@ticker"


def parse_ticker_price(raw: Any) -> Decimal:
    """Extract the last price (field ``c``, numeric text) from a ticker message."""
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise TickParseError(f"invalid JSON: {exc}") from exc
    if not isinstance(data, dict) or "c" not in data:
        raise TickParseError("message has no 'c' field")
    try:
        price = Decimal(str(data["c"]))
    except InvalidOperation as exc:
        raise TickParseError(f"non-numeric price {data['c']!r}") from exc
    if not price.is_finite():
        raise TickParseError(f"non-finite price {data['c']!r}")
    return price


class ReconnectPolicy:
    """Delay schedule between reconnect attempts.

    The last backoff entry repeats forever unless ``max_attempts`` is set.
    """

    def __init__(
        self,
        backoff: Sequence[float] = (5.0,),
        jitter: float = 0.0,
        max_attempts: Optional[int] = None,
    ):
        self.backoff = [float(b) for b in backoff] or [5.0]
        self.jitter = float(jitter or 0.0)
        self.max_attempts = max_attempts

    def should_retry(self, attempt: int) -> bool:
        return self.max_attempts is None or attempt < self.max_attempts

    def delay(self, attempt: int) -> float:
        base = self.backoff[min(attempt, len(self.backoff) - 1)]
        if self.jitter > 0:
            base += random.uniform(0, self.jitter)
        return base


class FeedConnection:
    """
    Owns the ticker websocket: connect, dispatch ticks, reconnect on failure.

    State runs DISCONNECTED -> CONNECTING -> CONNECTED and back to
    DISCONNECTED on close, error or a stale stream, after which the policy's
    delay is slept and a new attempt starts. Messages that fail to parse are
    dropped without touching the connection.
    """

    def __init__(
        self,
        url: str,
        on_tick: TickHandler,
        policy: Optional[ReconnectPolicy] = None,
        stale_timeout_s: Optional[float] = None,
        on_reconnect: Optional[Callable[[], None]] = None,
        connect: Callable[..., Any] = websockets.connect,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.url = url
        self.on_tick = on_tick
        self.policy = policy or ReconnectPolicy()
        self.stale_timeout_s = stale_timeout_s or None
        self.on_reconnect = on_reconnect
        self._connect = connect
        self._sleep = sleep

        self.state = FeedState.DISCONNECTED
        self.running = False
        self.attempt = 0
        self.connections = 0
        self._ws = None

    def _set_state(self, state: FeedState) -> None:
        if state is self.state:
            return
        logger.debug("Price feed %s -> %s", self.state.value, state.value)
        self.state = state
        metrics.update_feed_state(state.value)

    async def run(self) -> None:
        self.running = True
        while self.running:
            self._set_state(FeedState.CONNECTING)
            logger.info("Connecting to price feed at %s", self.url)
            try:
                async with self._connect(self.url, ping_interval=20) as ws:
                    self._ws = ws
                    self._on_connected()
                    await self._read_loop(ws)
                logger.warning("Price feed closed")
            except asyncio.CancelledError:
                self._set_state(FeedState.DISCONNECTED)
                raise
            except Exception as e:
                logger.error("Price feed error: %s", e)
            finally:
                self._ws = None

            self._set_state(FeedState.DISCONNECTED)
            if not self.running:
                break
            if not self.policy.should_retry(self.attempt):
                logger.error("Price feed gave up after %s attempts", self.attempt)
                break
            delay = self.policy.delay(self.attempt)
            self.attempt += 1
            metrics.record_reconnect()
            logger.info("Reconnecting in %.1fs (attempt %s)", delay, self.attempt)
            await self._sleep(delay)

    def _on_connected(self) -> None:
        self._set_state(FeedState.CONNECTED)
        self.attempt = 0
        self.connections += 1
        logger.info("Price feed connected")
        if self.connections > 1 and self.on_reconnect is not None:
            self.on_reconnect()

    async def _read_loop(self, ws) -> None:
        while self.running:
            if self.stale_timeout_s:
                try:
                    raw = await asyncio.wait_for(ws.recv(), timeout=self.stale_timeout_s)
                except asyncio.TimeoutError:
                    logger.warning("Price stream stale for %.0fs; reconnecting", self.stale_timeout_s)
                    return
            else:
                raw = await ws.recv()
            await self._dispatch(raw)

    async def _dispatch(self, raw: Any) -> None:
        try:
            price = parse_ticker_price(raw)
        except TickParseError as exc:
            metrics.record_drop("parse_error")
            logger.warning("Dropping unparseable price message: %s", exc)
            return
        try:
            result = self.on_tick(price)
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("Tick handler failed for price %s", price)

    async def stop(self) -> None:
        self.running = False
        ws = self._ws
        if ws is not None:
            await ws.close()
