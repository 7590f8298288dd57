"""
Per-symbol price windows fed by the ticker stream.

The feed writes (record_tick); the reconciliation scheduler reads snapshots
and resets windows once per active sweep. All buffer access is under one
mutex so a snapshot is never torn by a concurrent write.
"""
import threading
from collections import deque
from datetime import datetime, timezone
from decimal import Decimal
from typing import Deque, Dict, Iterable, Optional, Set, Tuple

from insurance_engine.constants import PRICE_FRESHNESS_SECONDS, PRICE_WINDOW_CAPACITY
from insurance_engine.domain.models import PriceSample
from insurance_engine.domain.protocols import MarketDataSource
from insurance_engine.exceptions import OperationalError, UnknownSymbol
from insurance_engine.monitoring.logger import get_logger

logger = get_logger(__name__)


class PriceTracker:
    """Bounded sample windows plus last-price cache per symbol."""

    def __init__(
        self,
        market_data: Optional[MarketDataSource] = None,
        capacity: int = PRICE_WINDOW_CAPACITY,
        freshness_seconds: float = PRICE_FRESHNESS_SECONDS,
    ):
        self.market_data = market_data
        self.capacity = capacity
        self.freshness_seconds = freshness_seconds

        self._windows: Dict[str, Deque[PriceSample]] = {}
        self._last_price: Dict[str, Decimal] = {}
        self._last_update: Dict[str, datetime] = {}
        self._tracked: Set[str] = set()
        self._mutex = threading.Lock()

    # ----- stream registration -----

    def track(self, symbol: str) -> bool:
        """Register a symbol for streaming. Returns False if already tracked."""
        with self._mutex:
            if symbol in self._tracked:
                return False
            self._tracked.add(symbol)
            self._windows.setdefault(symbol, deque(maxlen=self.capacity))
            return True

    def untrack(self, symbol: str) -> None:
        with self._mutex:
            self._tracked.discard(symbol)
            self._windows.pop(symbol, None)
            self._last_price.pop(symbol, None)
            self._last_update.pop(symbol, None)

    def tracked_symbols(self) -> Set[str]:
        with self._mutex:
            return set(self._tracked)

    # ----- writer side -----

    def record_tick(self, symbol: str, price: Decimal, timestamp: Optional[datetime] = None) -> None:
        """Append a sample; the deque evicts the oldest beyond capacity."""
        timestamp = timestamp or datetime.now(timezone.utc)
        sample = PriceSample(price=price, timestamp=timestamp)
        with self._mutex:
            window = self._windows.get(symbol)
            if window is None:
                window = self._windows[symbol] = deque(maxlen=self.capacity)
            window.append(sample)
            self._last_price[symbol] = price
            self._last_update[symbol] = timestamp

    # ----- reader side -----

    def live_price(self, symbol: str, now: Optional[datetime] = None) -> Optional[Decimal]:
        """Last streamed price if updated within the freshness window."""
        now = now or datetime.now(timezone.utc)
        with self._mutex:
            last_update = self._last_update.get(symbol)
            if last_update is None:
                return None
            if (now - last_update).total_seconds() >= self.freshness_seconds:
                return None
            return self._last_price[symbol]

    async def latest_price(self, symbol: str) -> Decimal:
        """
        Live price when fresh, otherwise a REST fetch.

        Raises:
            UnknownSymbol: neither source produced a price
        """
        price = self.live_price(symbol)
        if price is not None:
            return price

        if self.market_data is None:
            raise UnknownSymbol(symbol, "no live price and no fallback source")

        try:
            price = await self.market_data.fetch_price(symbol)
        except OperationalError as e:
            logger.warning("PRICE_FALLBACK_FAILED", symbol=symbol, error=str(e))
            raise UnknownSymbol(symbol, str(e)) from e

        if price is None:
            raise UnknownSymbol(symbol, "fallback returned no price")

        logger.debug("PRICE_FALLBACK_USED", symbol=symbol, price=str(price))
        return price

    def samples_in_window(self, symbol: str) -> Tuple[PriceSample, ...]:
        with self._mutex:
            return tuple(self._windows.get(symbol, ()))

    def samples_in_windows(self, symbols: Iterable[str]) -> Dict[str, Tuple[PriceSample, ...]]:
        """Consistent snapshot of several windows taken under one lock."""
        with self._mutex:
            return {s: tuple(self._windows.get(s, ())) for s in symbols}

    def reset_window(self, symbol: str) -> None:
        with self._mutex:
            window = self._windows.get(symbol)
            if window is not None:
                window.clear()

    def reset_all_windows(self) -> None:
        with self._mutex:
            for window in self._windows.values():
                window.clear()

    def snapshot_and_reset(self, symbols: Iterable[str]) -> Dict[str, Tuple[PriceSample, ...]]:
        """Snapshot the given windows then clear every window, atomically."""
        with self._mutex:
            snapshot = {s: tuple(self._windows.get(s, ())) for s in symbols}
            for window in self._windows.values():
                window.clear()
            return snapshot
