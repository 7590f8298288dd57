"""
Pytest configuration and shared fixtures.
"""
import os

# Set DATABASE_URL for unit tests (must be before any insurance_engine imports).
# In-memory SQLite; every test gets its own Database so nothing leaks between tests.
if "DATABASE_URL" not in os.environ:
    os.environ["DATABASE_URL"] = "sqlite://"

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from insurance_engine.data.pair_config import build_day_change_ratios
from insurance_engine.domain.models import (
    Contract,
    ContractState,
    Pair,
    PeriodUnit,
    QuoteUnit,
    Side,
)
from insurance_engine.storage.db import Database
from insurance_engine.storage.repository import SqlContractStore

# Fixed point in the past so streamed ticks (stamped with the wall clock)
# always fall after any contract window built around it.
NOW = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)
WALLET = "0xAbCdEf0123456789abcdef0123456789ABCDEF01"


def pytest_configure(config):
    """Register custom marks. Async tests require pytest-asyncio (see pyproject.toml)."""
    config.addinivalue_line("markers", "asyncio: mark test as async (pytest-asyncio).")


def make_contract(**overrides) -> Contract:
    """
    AVAILABLE BULL contract on BTCUSDT opened at 100 with claim at 110.

    margin 10 / q_covered 200 gives hedge 0.05, so liquidation sits at 95,
    refund at 103 and cancel at 106.5.
    """
    fields = dict(
        id="c1",
        user_id="u1",
        wallet_address=WALLET.lower(),
        asset="BTC",
        unit=QuoteUnit.USDT,
        margin=Decimal("10"),
        q_covered=Decimal("200"),
        p_claim=Decimal("110"),
        period=1,
        period_unit=PeriodUnit.DAY,
        period_change_ratio=Decimal("0.04"),
        side=Side.BULL,
        state=ContractState.AVAILABLE,
        created_at=NOW - timedelta(hours=1),
        updated_at=NOW - timedelta(hours=1),
        p_open=Decimal("100"),
        p_liquidation=Decimal("95"),
        q_claim=Decimal("35"),
        p_refund=Decimal("103"),
        p_cancel=Decimal("106.5"),
        leverage=Decimal("10"),
        hedge=Decimal("0.05"),
        system_capital=Decimal("25"),
        expired_at=NOW + timedelta(days=1),
    )
    fields.update(overrides)
    return Contract(**fields)


def make_pending(**overrides) -> Contract:
    """PENDING contract created one second before NOW, derived fields unset."""
    fields = dict(
        state=ContractState.PENDING,
        created_at=NOW - timedelta(seconds=1),
        updated_at=NOW - timedelta(seconds=1),
        p_open=None,
        p_liquidation=None,
        q_claim=None,
        p_refund=None,
        p_cancel=None,
        leverage=None,
        hedge=None,
        system_capital=None,
        expired_at=None,
    )
    fields.update(overrides)
    return make_contract(**fields)


@pytest.fixture
def db():
    database = Database("sqlite://")
    database.create_all()
    yield database
    database.dispose()


@pytest.fixture
def store(db):
    return SqlContractStore(db)


@pytest.fixture
def btc_pair(store):
    pair = Pair(
        symbol="BTCUSDT",
        asset="BTC",
        unit=QuoteUnit.USDT,
        day_change_ratios=build_day_change_ratios(Decimal("0.04")),
    )
    store.save_pair(pair)
    return pair


@pytest.fixture
def ledger():
    """LedgerGateway double: every command succeeds with a distinct tx hash."""
    gateway = MagicMock()
    for name in ("register_available", "invalidate", "cancel", "claim", "refund", "liquidate", "expire"):
        setattr(gateway, name, AsyncMock(return_value=f"0x{name}"))
    gateway.read_contract = AsyncMock(return_value=None)
    gateway.fetch_events = AsyncMock(return_value=([], None))
    return gateway


@pytest.fixture
def clock():
    """Controllable clock; change clock.return_value to move time."""
    return MagicMock(return_value=NOW)
