"""
Domain protocols (interfaces) for dependency inversion.

These protocols define the contracts that infrastructure layers must implement,
allowing the lifecycle controller and scheduler to depend on abstractions rather
than on SQLAlchemy, web3 or ccxt directly.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol, Tuple, runtime_checkable

from insurance_engine.domain.models import (
    Contract,
    ContractState,
    DerivedParameters,
    LedgerContractRecord,
    LedgerEvent,
    Pair,
    PeriodUnit,
    StateLogEntry,
)


@runtime_checkable
class ContractStore(Protocol):
    """
    Persistence for contracts, their state logs and pairs.

    Implemented by insurance_engine.storage.repository.SqlContractStore.
    Reads return detached snapshots; update_fields is an atomic single-row write.
    """

    def create(self, contract: Contract) -> Contract: ...

    def get(self, contract_id: str) -> Optional[Contract]: ...

    def get_for_user(self, user_id: str, contract_id: str) -> Optional[Contract]: ...

    def list_by_state(self, state: ContractState) -> List[Contract]: ...

    def update_fields(self, contract_id: str, **fields: Any) -> Contract: ...

    def append_state_log(self, contract_id: str, entry: StateLogEntry) -> None: ...

    def find(
        self,
        user_id: str,
        state: Optional[ContractState] = None,
        is_closed: Optional[bool] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> List[Contract]: ...

    def count(self, user_id: str, state: Optional[ContractState] = None, is_closed: Optional[bool] = None) -> int: ...

    def stats(self) -> Dict[str, Any]: ...

    def get_pair(self, symbol: str) -> Optional[Pair]: ...

    def list_active_pairs(self) -> List[Pair]: ...

    def upsert_pair_ratios(self, symbol: str, day_change_ratios: List[Decimal]) -> None: ...


@runtime_checkable
class LedgerGateway(Protocol):
    """
    Commands to and reads from the on-chain insurance contract.

    Commands return the submission tx hash or raise LedgerError; finality
    arrives later as LedgerEvents.
    """

    async def register_available(self, contract_id: str, q_claim: Decimal, expired_at: datetime) -> str: ...

    async def cancel(self, contract_id: str) -> str: ...

    async def claim(self, contract_id: str) -> str: ...

    async def refund(self, contract_id: str) -> str: ...

    async def liquidate(self, contract_id: str) -> str: ...

    async def expire(self, contract_id: str) -> str: ...

    async def invalidate(self, contract_id: str) -> str: ...

    async def read_contract(self, contract_id: str) -> Optional[LedgerContractRecord]: ...

    async def fetch_events(self, from_block: Optional[int]) -> Tuple[List[LedgerEvent], Optional[int]]: ...


@runtime_checkable
class MarketDataSource(Protocol):
    """REST market data used for fallback prices and candle history."""

    async def fetch_price(self, symbol: str) -> Optional[Decimal]: ...

    async def fetch_candles(
        self,
        symbol: str,
        interval: str,
        start: datetime,
        end: datetime,
    ) -> List[Dict[str, Any]]: ...


@runtime_checkable
class FormulaAdapter(Protocol):
    """Pure parameter derivation and creation-time validation."""

    def derive_parameters(
        self,
        margin: Decimal,
        q_covered: Decimal,
        p_open: Decimal,
        p_claim: Decimal,
        period: int,
        period_unit: PeriodUnit,
        period_change_ratio: Decimal,
        now: datetime,
    ) -> DerivedParameters: ...

    def validate(
        self,
        margin: Decimal,
        q_covered: Decimal,
        p_open: Decimal,
        p_claim: Decimal,
        period: int,
        period_unit: PeriodUnit,
        day_change_ratios: List[Decimal],
    ) -> None: ...

    def claim_price_bounds(
        self,
        p_open: Decimal,
        p_claim: Decimal,
        day_change_ratios: List[Decimal],
    ) -> Tuple[Decimal, Decimal]: ...
