"""
Binance USD-M futures REST client.

Fallback prices and candle history for the change-ratio refresher. Uses the
ccxt async exchange's raw endpoints so symbols stay in exchange id form
(BTCUSDT), the same form the ticker stream and the pairs table use.
"""
import asyncio
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

import ccxt
import ccxt.async_support as ccxt_async

from insurance_engine.exceptions import MarketDataError
from insurance_engine.monitoring.logger import get_logger
from insurance_engine.utils.retry import retry_on_transient_errors

logger = get_logger(__name__)


def _ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


class BinanceFuturesClient:
    """MarketDataSource backed by ccxt binanceusdm."""

    def __init__(self, timeout_ms: int = 30000, request_timeout_seconds: float = 10.0):
        self.timeout_ms = timeout_ms
        self.request_timeout_seconds = request_timeout_seconds
        self.exchange: Optional[ccxt_async.Exchange] = None

    async def initialize(self):
        """
        Lazy initialization of the ccxt exchange.
        MUST be called inside the running event loop.
        """
        if not self.exchange:
            self.exchange = ccxt_async.binanceusdm({
                'enableRateLimit': True,
                'timeout': self.timeout_ms,
            })
            logger.info("BinanceFuturesClient initialized")

    async def _call(self, endpoint: str, params: Dict[str, Any]):
        await self.initialize()
        method = getattr(self.exchange, endpoint)
        try:
            return await asyncio.wait_for(method(params), timeout=self.request_timeout_seconds)
        except ccxt.BadSymbol as e:
            raise MarketDataError(f"Unknown symbol {params.get('symbol')}: {e}") from e
        except (ccxt.NetworkError, ccxt.ExchangeError, asyncio.TimeoutError) as e:
            raise MarketDataError(f"{endpoint} failed: {e}") from e

    @retry_on_transient_errors(max_retries=2, base_delay=0.5, transient_errors=(MarketDataError,))
    async def fetch_price(self, symbol: str) -> Optional[Decimal]:
        """Current futures price, or None when the exchange has no such symbol."""
        data = await self._call('fapiPublicGetTickerPrice', {'symbol': symbol})
        if not data or not data.get('price'):
            return None
        return Decimal(str(data['price']))

    @retry_on_transient_errors(max_retries=3, base_delay=1.0, transient_errors=(MarketDataError,))
    async def fetch_candles(
        self,
        symbol: str,
        interval: str,
        start: datetime,
        end: datetime,
    ) -> List[Dict[str, Any]]:
        """
        Futures klines between start and end.

        Returns:
            List of dicts with timestamp (UTC datetime) and Decimal open/high/low/close/volume.
        """
        rows = await self._call('fapiPublicGetKlines', {
            'symbol': symbol,
            'interval': interval,
            'startTime': _ms(start),
            'endTime': _ms(end),
        })
        candles = []
        for row in rows or []:
            candles.append({
                'timestamp': datetime.fromtimestamp(int(row[0]) / 1000, tz=timezone.utc),
                'open': Decimal(str(row[1])),
                'high': Decimal(str(row[2])),
                'low': Decimal(str(row[3])),
                'close': Decimal(str(row[4])),
                'volume': Decimal(str(row[5])),
            })
        logger.debug("Fetched futures klines", symbol=symbol, interval=interval, count=len(candles))
        return candles

    async def close(self):
        """Cleanup resources."""
        if self.exchange:
            await self.exchange.close()
            self.exchange = None
