"""
Tests for InsuranceService: creation validation, user cancel and queries.
"""
from datetime import timedelta
from decimal import Decimal

import pytest

from conftest import NOW, WALLET, make_contract
from insurance_engine.data.price_tracker import PriceTracker
from insurance_engine.domain.models import (
    ContractState,
    CreateContractRequest,
    Pair,
    PeriodUnit,
    QuoteUnit,
    Side,
)
from insurance_engine.exceptions import (
    BadSymbol,
    ContractNotFound,
    InvalidCancelPrice,
    InvalidClaimPrice,
    InvalidPeriod,
    InvalidTransition,
    PairMaintained,
)
from insurance_engine.formula.insurance_formula import InsuranceFormula
from insurance_engine.lifecycle.controller import LifecycleController
from insurance_engine.lifecycle.service import InsuranceService
from insurance_engine.locking.lock_registry import InMemoryLockRegistry, lock_key


def _request(**overrides) -> CreateContractRequest:
    fields = dict(
        asset="BTC",
        unit=QuoteUnit.USDT,
        margin=Decimal("10"),
        q_covered=Decimal("200"),
        p_claim=Decimal("110"),
        period=3,
        period_unit=PeriodUnit.DAY,
    )
    fields.update(overrides)
    return CreateContractRequest(**fields)


@pytest.fixture
def prices():
    tracker = PriceTracker()
    tracker.record_tick("BTCUSDT", Decimal("100"))
    return tracker


@pytest.fixture
def locks():
    return InMemoryLockRegistry()


@pytest.fixture
def service(store, ledger, prices, locks, clock, btc_pair):
    formula = InsuranceFormula()
    controller = LifecycleController(store, ledger, prices, formula, locks, clock=clock)
    return InsuranceService(store, controller, prices, formula, clock=clock, id_factory=lambda: "new1")


class TestCreate:

    @pytest.mark.asyncio
    async def test_creates_pending_contract(self, service, store):
        contract = await service.create("u1", WALLET, _request())

        assert contract.id == "new1"
        assert contract.state == ContractState.PENDING
        assert contract.side == Side.BULL
        assert contract.wallet_address == WALLET.lower()
        assert contract.p_open == Decimal("100")
        assert contract.period_change_ratio == Decimal("0.08")
        # 10 * (1 + 0.1 / 0.08)
        assert contract.q_claim == Decimal("22.5")
        assert contract.expired_at == NOW + timedelta(days=3)
        assert contract.closed_at is None
        assert store.get("new1") is not None

    @pytest.mark.asyncio
    async def test_bear_side(self, service):
        contract = await service.create("u1", WALLET, _request(p_claim=Decimal("92")))
        assert contract.side == Side.BEAR

    @pytest.mark.asyncio
    async def test_hour_period_uses_first_day_ratio(self, service):
        contract = await service.create("u1", WALLET, _request(period=6, period_unit=PeriodUnit.HOUR))
        assert contract.period_change_ratio == Decimal("0.04")

    @pytest.mark.asyncio
    async def test_unknown_pair(self, service):
        with pytest.raises(BadSymbol):
            await service.create("u1", WALLET, _request(asset="DOGE"))

    @pytest.mark.asyncio
    async def test_inactive_pair(self, service, store, btc_pair):
        btc_pair.is_active = False
        store.save_pair(btc_pair)
        with pytest.raises(BadSymbol):
            await service.create("u1", WALLET, _request())

    @pytest.mark.asyncio
    async def test_maintained_pair(self, service, store, btc_pair):
        btc_pair.is_maintain = True
        store.save_pair(btc_pair)
        with pytest.raises(PairMaintained):
            await service.create("u1", WALLET, _request())

    @pytest.mark.asyncio
    async def test_period_beyond_ratio_table(self, service):
        with pytest.raises(InvalidPeriod):
            await service.create("u1", WALLET, _request(period=400))

    @pytest.mark.asyncio
    async def test_unpriced_symbol(self, service, store):
        store.save_pair(Pair(
            symbol="ETHUSDT",
            asset="ETH",
            unit=QuoteUnit.USDT,
            day_change_ratios=[Decimal("0.04")],
        ))
        with pytest.raises(BadSymbol):
            await service.create("u1", WALLET, _request(asset="ETH"))

    @pytest.mark.asyncio
    async def test_rejected_request_creates_nothing(self, service, store):
        with pytest.raises(InvalidClaimPrice):
            await service.create("u1", WALLET, _request(p_claim=Decimal("150")))
        assert store.count("u1") == 0


class TestCancel:

    @pytest.mark.asyncio
    async def test_cancel_inside_band(self, service, store, prices, ledger):
        store.create(make_contract())
        prices.record_tick("BTCUSDT", Decimal("108"))

        result = await service.cancel("u1", "c1")

        assert result.state == ContractState.CANCELLED
        assert result.p_close == Decimal("108")
        ledger.cancel.assert_awaited_once_with("c1")

    @pytest.mark.asyncio
    async def test_cancel_outside_band(self, service, store, prices):
        store.create(make_contract())
        prices.record_tick("BTCUSDT", Decimal("104"))

        with pytest.raises(InvalidCancelPrice):
            await service.cancel("u1", "c1")
        assert store.get("c1").state == ContractState.AVAILABLE

    @pytest.mark.asyncio
    async def test_cancel_other_users_contract(self, service, store):
        store.create(make_contract())
        with pytest.raises(ContractNotFound):
            await service.cancel("u2", "c1")

    @pytest.mark.asyncio
    async def test_cancel_not_available(self, service, store):
        store.create(make_contract(state=ContractState.CLAIM_WAITING))
        with pytest.raises(InvalidTransition):
            await service.cancel("u1", "c1")

    @pytest.mark.asyncio
    async def test_cancel_while_evaluation_holds_lock(self, service, store, prices, locks):
        store.create(make_contract())
        prices.record_tick("BTCUSDT", Decimal("108"))
        locks.acquire(lock_key("c1"))

        with pytest.raises(InvalidTransition, match="locked"):
            await service.cancel("u1", "c1")


class TestQueries:

    def test_find_one(self, service, store):
        store.create(make_contract())
        assert service.find_one("u1", "c1").id == "c1"
        with pytest.raises(ContractNotFound):
            service.find_one("u1", "missing")

    def test_find_all(self, service, store):
        store.create(make_contract(id="a"))
        store.create(make_contract(id="b", state=ContractState.EXPIRED, closed_at=NOW))

        page = service.find_all("u1", is_closed=False)

        assert page["total"] == 1
        assert [c.id for c in page["rows"]] == ["a"]

    def test_stats(self, service, store):
        store.create(make_contract())
        assert service.stats()["total_contracts"] == 1
