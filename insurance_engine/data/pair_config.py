"""
Pair change-ratio refresher.

Rebuilds each active pair's cumulative day-change table from recent futures
volatility. The table feeds period_change_ratio at contract creation.
"""
import asyncio
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Iterable, List, Optional

from insurance_engine.constants import (
    CHANGE_RATIO_CANDLE_INTERVAL,
    CHANGE_RATIO_LOOKBACK_DAYS,
    CHANGE_RATIO_RESTART_DAY,
    CHANGE_RATIO_TABLE_DAYS,
    CHANGE_RATIO_TIERS,
    DEFAULT_DAY_CHANGE_RATIO,
    PAIR_CONFIG_REFRESH_SECONDS,
)
from insurance_engine.domain.protocols import ContractStore, MarketDataSource
from insurance_engine.exceptions import OperationalError
from insurance_engine.monitoring.logger import get_logger

logger = get_logger(__name__)

_RANGE_WEIGHT = Decimal("0.9")
_RATIO_PLACES = Decimal("0.00001")


def average_change(candles: Iterable[Dict[str, Any]]) -> Decimal:
    """Largest weighted high-low range over the candles, floored at the default."""
    avg_change = DEFAULT_DAY_CHANGE_RATIO
    for candle in candles:
        high, low = candle["high"], candle["low"]
        if high <= 0:
            continue
        change = _RANGE_WEIGHT * (high - low) / high
        if change > avg_change:
            avg_change = change
    return avg_change


def _multiplier(day: int) -> Decimal:
    for last_day, multiplier in CHANGE_RATIO_TIERS:
        if day <= last_day:
            return multiplier
    return CHANGE_RATIO_TIERS[-1][1]


def build_day_change_ratios(avg_change: Decimal, days: int = CHANGE_RATIO_TABLE_DAYS) -> List[Decimal]:
    """Cumulative expected move for periods of 1..days days, 5 decimal places."""
    ratios = []
    running = Decimal("0")
    for day in range(1, days + 1):
        if day == CHANGE_RATIO_RESTART_DAY:
            running = Decimal("0")
        running += _multiplier(day) * avg_change
        ratios.append(running.quantize(_RATIO_PLACES, rounding=ROUND_HALF_UP))
    return ratios


class PairConfigRefresher:
    """Periodic change-ratio rebuild for every active pair."""

    def __init__(
        self,
        store: ContractStore,
        market_data: MarketDataSource,
        interval_seconds: float = PAIR_CONFIG_REFRESH_SECONDS,
        pause_between_pairs: float = 0.1,
    ):
        self.store = store
        self.market_data = market_data
        self.interval_seconds = interval_seconds
        self.pause_between_pairs = pause_between_pairs
        self.active = False

    async def refresh_once(self, now: Optional[datetime] = None) -> int:
        """Refresh all active pairs. Returns the number updated."""
        end = now or datetime.now(timezone.utc)
        start = end - timedelta(days=CHANGE_RATIO_LOOKBACK_DAYS)
        updated = 0

        for pair in self.store.list_active_pairs():
            try:
                candles = await self.market_data.fetch_candles(
                    pair.symbol, CHANGE_RATIO_CANDLE_INTERVAL, start, end
                )
            except OperationalError as e:
                logger.warning("PAIR_CANDLES_FETCH_FAILED", symbol=pair.symbol, error=str(e))
                continue

            avg_change = average_change(candles)
            self.store.upsert_pair_ratios(pair.symbol, build_day_change_ratios(avg_change))
            updated += 1
            logger.debug("PAIR_RATIOS_UPDATED", symbol=pair.symbol, avg_change=str(avg_change))

            if self.pause_between_pairs:
                await asyncio.sleep(self.pause_between_pairs)

        logger.info("PAIR_RATIOS_REFRESH_SUMMARY", updated=updated)
        return updated

    async def run(self) -> None:
        self.active = True
        logger.info("Pair config refresher started", interval=self.interval_seconds)
        while self.active:
            try:
                await self.refresh_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("PAIR_RATIOS_REFRESH_FAILED", error=str(e), error_type=type(e).__name__)
            await asyncio.sleep(self.interval_seconds)

    def stop(self) -> None:
        self.active = False
