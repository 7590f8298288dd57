"""
Engine wiring.

Builds every component from a Config and runs the long-lived tasks: ticker
feed, reconciliation loops, ledger event listener and pair refresher.
"""
import asyncio
from typing import List, Optional

from insurance_engine.config.config import Config
from insurance_engine.data.market_data import BinanceFuturesClient
from insurance_engine.data.pair_config import PairConfigRefresher
from insurance_engine.data.price_tracker import PriceTracker
from insurance_engine.data.ticker_feed import BinanceTickerFeed
from insurance_engine.formula.insurance_formula import InsuranceFormula
from insurance_engine.ledger.listener import LedgerEventListener
from insurance_engine.ledger.web3_gateway import DisabledLedgerGateway, Web3LedgerGateway
from insurance_engine.lifecycle.controller import LifecycleController
from insurance_engine.lifecycle.service import InsuranceService
from insurance_engine.locking.lock_registry import InMemoryLockRegistry, LockRegistry, SqlLockRegistry
from insurance_engine.monitoring.logger import get_logger
from insurance_engine.scheduler.reconciliation import ReconciliationScheduler
from insurance_engine.storage.db import Database, init_db
from insurance_engine.storage.repository import SqlContractStore

logger = get_logger(__name__)


def build_ledger(config: Config):
    ledger_cfg = config.ledger
    configured = all((ledger_cfg.rpc_http_url, ledger_cfg.contract_address, ledger_cfg.mod_private_key))
    if not ledger_cfg.enabled or not configured:
        logger.warning("LEDGER_DISABLED", enabled=ledger_cfg.enabled, configured=configured)
        return DisabledLedgerGateway()
    return Web3LedgerGateway(
        rpc_http_url=ledger_cfg.rpc_http_url,
        contract_address=ledger_cfg.contract_address,
        private_key=ledger_cfg.mod_private_key,
        abi_path=ledger_cfg.abi_path,
        start_block=ledger_cfg.start_block,
        max_block_range=ledger_cfg.max_block_range,
    )


def build_locks(config: Config, db: Database) -> LockRegistry:
    if config.lock.backend == "database":
        return SqlLockRegistry(db, default_ttl_seconds=config.lock.ttl_seconds)
    return InMemoryLockRegistry(default_ttl_seconds=config.lock.ttl_seconds)


class EngineApp:
    """Owns the component graph and the background tasks."""

    def __init__(self, config: Config, db: Optional[Database] = None, ledger=None, market_data=None):
        self.config = config
        self.db = db or init_db(config.data.database_url, echo=config.data.echo_sql)
        self.store = SqlContractStore(self.db)

        self.market_data = market_data or BinanceFuturesClient(timeout_ms=config.market_data.rest_timeout_ms)
        self.prices = PriceTracker(
            market_data=self.market_data,
            capacity=config.market_data.price_window_capacity,
            freshness_seconds=config.market_data.price_freshness_seconds,
        )
        self.formula = InsuranceFormula()
        self.locks = build_locks(config, self.db)
        self.ledger = ledger or build_ledger(config)

        self.controller = LifecycleController(
            store=self.store,
            ledger=self.ledger,
            prices=self.prices,
            formula=self.formula,
            locks=self.locks,
            lock_ttl_seconds=config.lock.ttl_seconds,
            creation_timeout_seconds=config.scheduler.creation_timeout_seconds,
        )
        self.service = InsuranceService(self.store, self.controller, self.prices, self.formula)
        self.scheduler = ReconciliationScheduler(
            controller=self.controller,
            store=self.store,
            ledger=self.ledger,
            prices=self.prices,
            pending_interval_seconds=config.scheduler.pending_interval_seconds,
            active_interval_seconds=config.scheduler.active_interval_seconds,
        )
        self.listener = LedgerEventListener(
            self.ledger,
            self.controller,
            poll_seconds=config.ledger.event_poll_seconds,
            from_block=config.ledger.start_block,
        )
        self.pair_refresher = PairConfigRefresher(
            self.store,
            self.market_data,
            interval_seconds=config.scheduler.pair_refresh_interval_seconds,
        )
        self.feed: Optional[BinanceTickerFeed] = None
        self._tasks: List[asyncio.Task] = []

    def stream_symbols(self) -> List[str]:
        symbols = {p.symbol for p in self.store.list_active_pairs()}
        symbols.update(self.config.market_data.extra_symbols)
        return sorted(symbols)

    async def run(self) -> None:
        """Start all background tasks and wait until one of them stops or fails."""
        symbols = self.stream_symbols()
        self.feed = BinanceTickerFeed(
            self.prices,
            symbols,
            endpoint=self.config.market_data.ws_endpoint,
            max_retries=self.config.market_data.ws_reconnect_max_retries,
            backoff_base=self.config.market_data.ws_reconnect_backoff_seconds,
        )

        self._tasks = [
            asyncio.create_task(self.feed.run(), name="ticker_feed"),
            asyncio.create_task(self.scheduler.run(), name="reconciliation"),
            asyncio.create_task(self.listener.run(), name="ledger_listener"),
        ]
        if self.config.scheduler.pair_refresh_enabled:
            self._tasks.append(asyncio.create_task(self.pair_refresher.run(), name="pair_refresher"))

        logger.info(
            "ENGINE_STARTED",
            environment=self.config.environment,
            symbols=len(symbols),
            ledger=type(self.ledger).__name__,
            lock_backend=self.config.lock.backend,
        )
        try:
            done, _ = await asyncio.wait(self._tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    logger.critical("ENGINE_TASK_FAILED", task=task.get_name(), error=str(task.exception()))
                    raise task.exception()
                logger.warning("ENGINE_TASK_STOPPED", task=task.get_name())
        finally:
            await self.shutdown()

    async def shutdown(self) -> None:
        self.scheduler.stop()
        self.listener.stop()
        self.pair_refresher.stop()
        if self.feed is not None:
            await self.feed.stop()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        close = getattr(self.market_data, "close", None)
        if close is not None:
            await close()
        logger.info("ENGINE_STOPPED")
