"""
Binance USD-M futures ticker stream.

Connects to the combined-stream endpoint, subscribes to <symbol>@ticker for
every tracked symbol, and pushes each last price into PriceTracker. Symbols
can be added or removed while connected; the next reconnect resubscribes
the full tracked set.
"""
from __future__ import annotations

import asyncio
import itertools
import json
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Iterable, List, Optional

import websockets

from insurance_engine.constants import BINANCE_FUTURES_WS_ENDPOINT, MAX_STREAMS_PER_CONNECTION
from insurance_engine.data.price_tracker import PriceTracker
from insurance_engine.monitoring.logger import get_logger

logger = get_logger(__name__)


def _stream_name(symbol: str) -> str:
    return f"{symbol.lower()}@ticker"


class BinanceTickerFeed:
    """Streams futures tickers into PriceTracker with auto-reconnect."""

    def __init__(
        self,
        tracker: PriceTracker,
        symbols: Iterable[str] = (),
        endpoint: str = BINANCE_FUTURES_WS_ENDPOINT,
        max_retries: int = 10,
        backoff_base: int = 5,
    ):
        self._tracker = tracker
        self._endpoint = endpoint
        self._max_retries = max_retries
        self._backoff_base = backoff_base
        self._ws: Optional[websockets.ClientConnection] = None
        self._running = False
        self._retry_count = 0
        self._received_count = 0
        self._request_ids = itertools.count(1)

        for symbol in symbols:
            self._tracker.track(symbol)

        logger.info("BinanceTickerFeed initialized", symbol_count=len(self._tracker.tracked_symbols()))

    @property
    def received_count(self) -> int:
        return self._received_count

    async def run(self) -> None:
        """Connect, subscribe, and stream until stopped or retries are exhausted."""
        self._running = True
        while self._running and self._retry_count < self._max_retries:
            try:
                await self._connect_and_stream()
            except asyncio.CancelledError:
                logger.info("BinanceTickerFeed cancelled")
                raise
            except (OSError, websockets.WebSocketException) as e:
                if not self._running:
                    break
                self._retry_count += 1
                backoff = self._backoff_base * (2 ** min(self._retry_count - 1, 6))
                logger.warning(
                    "WS_TICKER_FEED_DISCONNECT",
                    error=str(e),
                    error_type=type(e).__name__,
                    retry=self._retry_count,
                    max_retries=self._max_retries,
                    backoff_s=backoff,
                )
                if self._retry_count < self._max_retries:
                    await asyncio.sleep(backoff)
                else:
                    logger.error("WS_TICKER_FEED_MAX_RETRIES", retries=self._retry_count)

        self._running = False
        logger.info("BinanceTickerFeed stopped", total_received=self._received_count)

    async def stop(self) -> None:
        self._running = False
        if self._ws:
            await self._ws.close()

    async def add_symbol(self, symbol: str) -> None:
        """Track a symbol and subscribe to it if the stream is up."""
        if self._tracker.track(symbol) and self._ws is not None:
            await self._send("SUBSCRIBE", [_stream_name(symbol)])

    async def remove_symbol(self, symbol: str) -> None:
        self._tracker.untrack(symbol)
        if self._ws is not None:
            await self._send("UNSUBSCRIBE", [_stream_name(symbol)])

    async def _connect_and_stream(self) -> None:
        async with websockets.connect(
            self._endpoint,
            ping_interval=30,
            ping_timeout=10,
            close_timeout=5,
        ) as ws:
            self._ws = ws
            self._retry_count = 0
            logger.info("WS_TICKER_FEED_CONNECTED", endpoint=self._endpoint)
            try:
                await self._subscribe_all()
                async for raw in ws:
                    try:
                        msg = json.loads(raw)
                    except (json.JSONDecodeError, ValueError):
                        continue
                    self.handle_message(msg)
            finally:
                self._ws = None

    async def _send(self, method: str, streams: List[str]) -> None:
        payload = {"method": method, "params": streams, "id": next(self._request_ids)}
        await self._ws.send(json.dumps(payload))

    async def _subscribe_all(self) -> None:
        """Send subscribe requests in batches."""
        streams = sorted(_stream_name(s) for s in self._tracker.tracked_symbols())
        for i in range(0, len(streams), MAX_STREAMS_PER_CONNECTION):
            batch = streams[i : i + MAX_STREAMS_PER_CONNECTION]
            await self._send("SUBSCRIBE", batch)
            logger.info("WS_TICKER_SUBSCRIBE_SENT", batch_size=len(batch), first=batch[0])

    def handle_message(self, msg: dict) -> None:
        """Route one decoded frame: ticker data is recorded, acks and errors logged."""
        if "error" in msg:
            logger.warning("WS_TICKER_SUBSCRIBE_FAIL", detail=str(msg)[:200])
            return
        if "result" in msg:
            return

        data = msg.get("data", msg)
        if data.get("e") != "24hrTicker":
            return

        symbol = data.get("s")
        if not symbol or symbol not in self._tracker.tracked_symbols():
            return

        try:
            price = Decimal(str(data["c"]))
        except (KeyError, InvalidOperation):
            return

        event_ms = data.get("E")
        timestamp = (
            datetime.fromtimestamp(event_ms / 1000, tz=timezone.utc)
            if event_ms
            else datetime.now(timezone.utc)
        )
        self._tracker.record_tick(symbol, price, timestamp)
        self._received_count += 1
