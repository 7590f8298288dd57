"""
Reconciliation loops.

Two periodic sweeps drive contracts forward:

- pending sweep: PENDING contracts are matched against their on-chain
  registration, activated, invalidated, or timed out.
- active sweep: AVAILABLE contracts are checked against the price samples
  seen since the last sweep (claim / liquidation) and against expiry.

Each loop is skip-if-running: a tick that finds the previous run of the same
loop still busy does nothing. Contracts inside a sweep are processed
concurrently and one failure never stops the others.
"""
import asyncio
from datetime import datetime, timezone
from decimal import Decimal
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple

from insurance_engine.constants import ACTIVE_SWEEP_INTERVAL_SECONDS, PENDING_SWEEP_INTERVAL_SECONDS
from insurance_engine.data.price_tracker import PriceTracker
from insurance_engine.domain.models import (
    Contract,
    ContractState,
    InvalidReason,
    PriceSample,
    Side,
    in_range,
    price_extremes,
)
from insurance_engine.domain.protocols import ContractStore, LedgerGateway
from insurance_engine.exceptions import InvariantError
from insurance_engine.lifecycle.controller import LifecycleController
from insurance_engine.monitoring.logger import contract_context, get_logger

logger = get_logger(__name__)

CLAIM = "claim"
LIQUIDATE = "liquidate"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def evaluate_excursion(
    contract: Contract,
    samples: Iterable[PriceSample],
) -> Optional[Tuple[str, Decimal]]:
    """
    Decide claim or liquidation from the samples inside the contract's life.

    Only samples strictly between created_at and expired_at count. Claim is
    checked before liquidation. Returns (CLAIM | LIQUIDATE, close_price) or
    None when neither boundary was touched (or no sample qualifies).
    """
    in_window = tuple(
        s for s in samples
        if contract.created_at < s.timestamp < contract.expired_at
    )
    if not in_window:
        return None

    low, high = price_extremes(in_window)
    if contract.side == Side.BEAR:
        if low <= contract.p_claim:
            return CLAIM, low
        if high >= contract.p_liquidation:
            return LIQUIDATE, high
    else:
        if high >= contract.p_claim:
            return CLAIM, high
        if low <= contract.p_liquidation:
            return LIQUIDATE, low
    return None


class SweepGuard:
    """Skip-if-running gate for one periodic loop."""

    def __init__(self, name: str):
        self.name = name
        self.running = False
        self.runs = 0
        self.skipped = 0

    def try_start(self) -> bool:
        if self.running:
            self.skipped += 1
            logger.debug("SWEEP_SKIPPED_OVERLAP", sweep=self.name, skipped=self.skipped)
            return False
        self.running = True
        self.runs += 1
        return True

    def finish(self) -> None:
        self.running = False


class ReconciliationScheduler:
    """Owns the pending and active sweeps and their loops."""

    def __init__(
        self,
        controller: LifecycleController,
        store: ContractStore,
        ledger: LedgerGateway,
        prices: PriceTracker,
        pending_interval_seconds: float = PENDING_SWEEP_INTERVAL_SECONDS,
        active_interval_seconds: float = ACTIVE_SWEEP_INTERVAL_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.controller = controller
        self.store = store
        self.ledger = ledger
        self.prices = prices
        self.pending_interval_seconds = pending_interval_seconds
        self.active_interval_seconds = active_interval_seconds
        self.clock = clock

        self.pending_guard = SweepGuard("pending")
        self.active_guard = SweepGuard("active")
        self.active = False
        self._tasks: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Per-item isolation
    # ------------------------------------------------------------------

    async def _isolated(self, contract: Contract, sweep: str, work: Awaitable[str]) -> str:
        try:
            with contract_context(contract.id, sweep=sweep):
                return await work
        except InvariantError:
            raise
        except Exception as e:
            logger.warning(
                "SWEEP_ITEM_FAILED",
                sweep=sweep,
                contract_id=contract.id,
                symbol=contract.symbol,
                error=str(e),
                error_type=type(e).__name__,
            )
            return "failed"

    @staticmethod
    def _tally(outcomes: List[str], summary: Dict[str, int]) -> Dict[str, int]:
        for outcome in outcomes:
            summary[outcome] = summary.get(outcome, 0) + 1
        return summary

    # ------------------------------------------------------------------
    # Pending sweep
    # ------------------------------------------------------------------

    async def _reconcile_pending(self, contract: Contract, now: datetime) -> str:
        record = await self.ledger.read_contract(contract.id)

        if self.controller.is_creation_timed_out(contract, now):
            result = await self.controller.invalidate(
                contract,
                InvalidReason.CREATED_TIME_TIMEOUT,
                requires_payback=record is not None,
            )
            return "timed_out" if result else "skipped_locked"

        if record is None:
            return "waiting"

        reason, requires_payback = self.controller.registration_mismatch(
            contract, record.address, record.unit, record.margin, now
        )
        if reason is not None:
            result = await self.controller.invalidate(contract, reason, requires_payback)
            return "invalidated" if result else "skipped_locked"

        result = await self.controller.activate(contract)
        return "activated" if result else "skipped_locked"

    async def run_pending_sweep(self) -> Dict[str, int]:
        now = self.clock()
        contracts = self.store.list_by_state(ContractState.PENDING)
        outcomes = await asyncio.gather(*(
            self._isolated(c, "pending", self._reconcile_pending(c, now)) for c in contracts
        ))
        summary = self._tally(list(outcomes), {"checked": len(contracts)})
        logger.info("PENDING_SWEEP_SUMMARY", **summary)
        return summary

    # ------------------------------------------------------------------
    # Active sweep
    # ------------------------------------------------------------------

    async def _reconcile_active(
        self,
        contract: Contract,
        samples: Tuple[PriceSample, ...],
        now: datetime,
    ) -> str:
        decision = evaluate_excursion(contract, samples)
        if decision is not None:
            action, close_price = decision
            if action == CLAIM:
                result = await self.controller.claim(contract, close_price)
                return "claimed" if result else "skipped_locked"
            result = await self.controller.resolve_terminal(contract, ContractState.LIQUIDATED, close_price)
            return "liquidated" if result else "skipped_locked"

        if contract.expired_at > now:
            return "untouched"

        price = await self.prices.latest_price(contract.symbol)
        if in_range(price, contract.p_liquidation, contract.p_refund):
            result = await self.controller.refund(contract, price)
            return "refunded" if result else "skipped_locked"
        result = await self.controller.resolve_terminal(contract, ContractState.EXPIRED, price)
        return "expired" if result else "skipped_locked"

    async def run_active_sweep(self) -> Dict[str, int]:
        now = self.clock()
        contracts = self.store.list_by_state(ContractState.AVAILABLE)
        # One snapshot for the whole sweep; every window restarts empty
        windows = self.prices.snapshot_and_reset({c.symbol for c in contracts})

        outcomes = await asyncio.gather(*(
            self._isolated(c, "active", self._reconcile_active(c, windows.get(c.symbol, ()), now))
            for c in contracts
        ))
        summary = self._tally(list(outcomes), {"checked": len(contracts)})
        logger.info("ACTIVE_SWEEP_SUMMARY", **summary)
        return summary

    # ------------------------------------------------------------------
    # Loops
    # ------------------------------------------------------------------

    async def _guarded(self, guard: SweepGuard, sweep: Callable[[], Awaitable[Dict[str, int]]]) -> None:
        try:
            await sweep()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("SWEEP_FAILED", sweep=guard.name, error=str(e), error_type=type(e).__name__)
        finally:
            guard.finish()

    def tick(self, guard: SweepGuard, sweep: Callable[[], Awaitable[Dict[str, int]]]) -> Optional[asyncio.Task]:
        """Start one sweep in the background unless the previous one is still running."""
        if not guard.try_start():
            return None
        task = asyncio.create_task(self._guarded(guard, sweep))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _loop(self, guard: SweepGuard, sweep, interval: float) -> None:
        logger.info("Reconciliation loop started", sweep=guard.name, interval=interval)
        while self.active:
            self.tick(guard, sweep)
            await asyncio.sleep(interval)

    async def run(self) -> None:
        """Run both loops until stopped or cancelled."""
        self.active = True
        try:
            await asyncio.gather(
                self._loop(self.pending_guard, self.run_pending_sweep, self.pending_interval_seconds),
                self._loop(self.active_guard, self.run_active_sweep, self.active_interval_seconds),
            )
        finally:
            for task in list(self._tasks):
                task.cancel()

    def stop(self) -> None:
        self.active = False
