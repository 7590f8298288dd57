"""
Tests for the pending and active reconciliation sweeps.
"""
import asyncio
from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from conftest import NOW, WALLET, make_contract, make_pending
from insurance_engine.data.price_tracker import PriceTracker
from insurance_engine.domain.models import (
    ContractState,
    InvalidReason,
    LedgerContractRecord,
    PriceSample,
    QuoteUnit,
    Side,
)
from insurance_engine.exceptions import InvariantError, LedgerError, MarketDataError
from insurance_engine.formula.insurance_formula import InsuranceFormula
from insurance_engine.lifecycle.controller import LifecycleController
from insurance_engine.locking.lock_registry import InMemoryLockRegistry, lock_key
from insurance_engine.scheduler.reconciliation import (
    CLAIM,
    LIQUIDATE,
    ReconciliationScheduler,
    SweepGuard,
    evaluate_excursion,
)


def _sample(price: str, minutes: int = -30) -> PriceSample:
    return PriceSample(price=Decimal(price), timestamp=NOW + timedelta(minutes=minutes))


def _record(address=WALLET, unit=QuoteUnit.USDT, margin="10") -> LedgerContractRecord:
    return LedgerContractRecord(address=address.lower(), unit=unit, margin=Decimal(margin), q_claim=Decimal("0"))


@pytest.fixture
def market_data():
    source = AsyncMock()
    source.fetch_price = AsyncMock(return_value=Decimal("100"))
    return source


@pytest.fixture
def prices(market_data):
    return PriceTracker(market_data=market_data)


@pytest.fixture
def locks():
    return InMemoryLockRegistry()


@pytest.fixture
def scheduler(store, ledger, prices, locks, clock):
    controller = LifecycleController(
        store=store,
        ledger=ledger,
        prices=prices,
        formula=InsuranceFormula(),
        locks=locks,
        creation_timeout_seconds=60,
        clock=clock,
    )
    return ReconciliationScheduler(controller, store, ledger, prices, clock=clock)


class TestEvaluateExcursion:

    def test_bull_claim(self):
        assert evaluate_excursion(make_contract(), [_sample("104"), _sample("110")]) == (CLAIM, Decimal("110"))

    def test_bull_liquidation(self):
        assert evaluate_excursion(make_contract(), [_sample("96"), _sample("95")]) == (LIQUIDATE, Decimal("95"))

    def test_bear_claim_and_liquidation(self):
        bear = make_contract(side=Side.BEAR, p_claim=Decimal("90"), p_liquidation=Decimal("105"))
        assert evaluate_excursion(bear, [_sample("89.5")]) == (CLAIM, Decimal("89.5"))
        assert evaluate_excursion(bear, [_sample("106")]) == (LIQUIDATE, Decimal("106"))

    def test_bear_claim_closes_at_lowest_breach(self):
        bear = make_contract(side=Side.BEAR, p_claim=Decimal("90"), p_liquidation=Decimal("105"))
        samples = [_sample("89.5", -40), _sample("87.25", -30), _sample("88", -20)]
        assert evaluate_excursion(bear, samples) == (CLAIM, Decimal("87.25"))

    def test_bull_claim_closes_at_highest_breach(self):
        samples = [_sample("111", -40), _sample("115", -30), _sample("112", -20)]
        assert evaluate_excursion(make_contract(), samples) == (CLAIM, Decimal("115"))

    def test_claim_wins_when_both_touched(self):
        assert evaluate_excursion(make_contract(), [_sample("94"), _sample("111")]) == (CLAIM, Decimal("111"))

    def test_samples_outside_life_ignored(self):
        contract = make_contract()
        before_creation = _sample("120", minutes=-120)
        after_expiry = _sample("120", minutes=60 * 25)
        assert evaluate_excursion(contract, [before_creation, after_expiry]) is None

    def test_untouched(self):
        assert evaluate_excursion(make_contract(), [_sample("100"), _sample("105")]) is None
        assert evaluate_excursion(make_contract(), []) is None


class TestSweepGuard:

    def test_skip_while_running(self):
        guard = SweepGuard("active")
        assert guard.try_start() is True
        assert guard.try_start() is False
        assert guard.skipped == 1
        guard.finish()
        assert guard.try_start() is True
        assert guard.runs == 2

    @pytest.mark.asyncio
    async def test_tick_skips_overlapping_sweep(self, scheduler):
        release = asyncio.Event()
        calls = []

        async def slow_sweep():
            calls.append(1)
            await release.wait()
            return {}

        first = scheduler.tick(scheduler.active_guard, slow_sweep)
        await asyncio.sleep(0)
        second = scheduler.tick(scheduler.active_guard, slow_sweep)

        assert first is not None
        assert second is None
        release.set()
        await first
        assert calls == [1]
        assert scheduler.active_guard.running is False

    @pytest.mark.asyncio
    async def test_failed_sweep_releases_guard(self, scheduler):
        async def broken_sweep():
            raise RuntimeError("db gone")

        await scheduler.tick(scheduler.pending_guard, broken_sweep)
        assert scheduler.pending_guard.running is False


class TestPendingSweep:

    @pytest.mark.asyncio
    async def test_matching_registration_activates(self, scheduler, store, ledger):
        store.create(make_pending())
        ledger.read_contract.return_value = _record()

        summary = await scheduler.run_pending_sweep()

        assert summary == {"checked": 1, "activated": 1}
        assert store.get("c1").state == ContractState.AVAILABLE

    @pytest.mark.asyncio
    async def test_unregistered_contract_waits(self, scheduler, store):
        store.create(make_pending())

        summary = await scheduler.run_pending_sweep()

        assert summary == {"checked": 1, "waiting": 1}
        assert store.get("c1").state == ContractState.PENDING

    @pytest.mark.asyncio
    async def test_mismatch_invalidates(self, scheduler, store, ledger):
        store.create(make_pending())
        ledger.read_contract.return_value = _record(unit=QuoteUnit.VNST)

        summary = await scheduler.run_pending_sweep()

        assert summary["invalidated"] == 1
        assert store.get("c1").invalid_reason == InvalidReason.INVALID_UNIT

    @pytest.mark.asyncio
    async def test_timeout_without_registration_has_no_payback(self, scheduler, store, ledger):
        store.create(make_pending(created_at=NOW - timedelta(minutes=2)))

        summary = await scheduler.run_pending_sweep()

        assert summary["timed_out"] == 1
        assert store.get("c1").invalid_reason == InvalidReason.CREATED_TIME_TIMEOUT
        ledger.invalidate.assert_not_called()

    @pytest.mark.asyncio
    async def test_timeout_with_registration_pays_back(self, scheduler, store, ledger):
        store.create(make_pending(created_at=NOW - timedelta(minutes=2)))
        ledger.read_contract.return_value = _record()

        await scheduler.run_pending_sweep()

        ledger.invalidate.assert_awaited_once_with("c1")

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_the_sweep(self, scheduler, store, ledger):
        store.create(make_pending(id="bad"))
        store.create(make_pending(id="good"))

        async def read(contract_id):
            if contract_id == "bad":
                raise LedgerError("rpc down")
            return _record()

        ledger.read_contract.side_effect = read

        summary = await scheduler.run_pending_sweep()

        assert summary == {"checked": 2, "failed": 1, "activated": 1}
        assert store.get("bad").state == ContractState.PENDING
        assert store.get("good").state == ContractState.AVAILABLE

    @pytest.mark.asyncio
    async def test_invariant_errors_propagate(self, scheduler, store, ledger):
        store.create(make_pending())
        ledger.read_contract.side_effect = InvariantError("ledger state diverged")

        with pytest.raises(InvariantError):
            await scheduler.run_pending_sweep()

    @pytest.mark.asyncio
    async def test_locked_contract_is_skipped(self, scheduler, store, ledger, locks):
        store.create(make_pending())
        ledger.read_contract.return_value = _record()
        locks.acquire(lock_key("c1"))

        summary = await scheduler.run_pending_sweep()

        assert summary["skipped_locked"] == 1
        assert store.get("c1").state == ContractState.PENDING


class TestActiveSweep:

    @pytest.mark.asyncio
    async def test_claim_from_window(self, scheduler, store, prices, ledger):
        store.create(make_contract())
        prices.record_tick("BTCUSDT", Decimal("111"), NOW - timedelta(minutes=30))

        summary = await scheduler.run_active_sweep()

        assert summary == {"checked": 1, "claimed": 1}
        contract = store.get("c1")
        assert contract.state == ContractState.CLAIM_WAITING
        assert contract.p_close == Decimal("111")
        assert prices.samples_in_window("BTCUSDT") == ()

    @pytest.mark.asyncio
    async def test_bear_claim_records_minimum_of_window(self, scheduler, store, prices, ledger):
        store.create(make_contract(side=Side.BEAR, p_claim=Decimal("90"), p_liquidation=Decimal("105"),
                                   p_refund=Decimal("97"), p_cancel=Decimal("93.5")))
        for minutes, price in ((-40, "89.5"), (-30, "86"), (-20, "88.75")):
            prices.record_tick("BTCUSDT", Decimal(price), NOW + timedelta(minutes=minutes))

        summary = await scheduler.run_active_sweep()

        assert summary == {"checked": 1, "claimed": 1}
        contract = store.get("c1")
        assert contract.state == ContractState.CLAIM_WAITING
        assert contract.p_close == Decimal("86")
        ledger.claim.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_liquidation_from_window(self, scheduler, store, prices, ledger):
        store.create(make_contract())
        prices.record_tick("BTCUSDT", Decimal("94"), NOW - timedelta(minutes=30))

        summary = await scheduler.run_active_sweep()

        assert summary["liquidated"] == 1
        ledger.liquidate.assert_awaited_once_with("c1")

    @pytest.mark.asyncio
    async def test_live_contract_untouched(self, scheduler, store):
        store.create(make_contract())

        summary = await scheduler.run_active_sweep()

        assert summary == {"checked": 1, "untouched": 1}

    @pytest.mark.asyncio
    async def test_expired_inside_refund_band_refunds(self, scheduler, store, market_data, ledger):
        store.create(make_contract(created_at=NOW - timedelta(days=1), expired_at=NOW - timedelta(minutes=1)))
        market_data.fetch_price.return_value = Decimal("101")

        summary = await scheduler.run_active_sweep()

        assert summary["refunded"] == 1
        assert store.get("c1").state == ContractState.REFUND_WAITING
        ledger.refund.assert_awaited_once_with("c1")

    @pytest.mark.asyncio
    async def test_expiry_exactly_at_check_time_is_settled(self, scheduler, store, market_data, ledger):
        store.create(make_contract(created_at=NOW - timedelta(days=1), expired_at=NOW))
        market_data.fetch_price.return_value = Decimal("101")

        summary = await scheduler.run_active_sweep()

        assert summary["refunded"] == 1
        assert store.get("c1").state == ContractState.REFUND_WAITING

    @pytest.mark.asyncio
    async def test_expired_outside_refund_band_expires(self, scheduler, store, market_data, ledger):
        store.create(make_contract(created_at=NOW - timedelta(days=1), expired_at=NOW - timedelta(minutes=1)))
        market_data.fetch_price.return_value = Decimal("104")

        summary = await scheduler.run_active_sweep()

        assert summary["expired"] == 1
        assert store.get("c1").p_close == Decimal("104")
        ledger.expire.assert_awaited_once_with("c1")

    @pytest.mark.asyncio
    async def test_windows_reset_even_without_contracts(self, scheduler, prices):
        prices.record_tick("ETHUSDT", Decimal("10"), NOW)

        summary = await scheduler.run_active_sweep()

        assert summary == {"checked": 0}
        assert prices.samples_in_window("ETHUSDT") == ()

    @pytest.mark.asyncio
    async def test_price_failure_isolated(self, scheduler, store, market_data):
        store.create(make_contract(created_at=NOW - timedelta(days=1), expired_at=NOW - timedelta(minutes=1)))
        market_data.fetch_price.side_effect = MarketDataError("unreachable")

        summary = await scheduler.run_active_sweep()

        assert summary == {"checked": 1, "failed": 1}
        assert store.get("c1").state == ContractState.AVAILABLE
