"""
User-facing insurance operations: create, cancel, queries, stats.

Creation validates everything up front and raises a ValidationError subclass
before any record exists. Once stored, a contract only moves through the
LifecycleController.
"""
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from insurance_engine.data.price_tracker import PriceTracker
from insurance_engine.domain.models import (
    Contract,
    ContractState,
    CreateContractRequest,
    PeriodUnit,
    in_range,
    side_for,
)
from insurance_engine.domain.protocols import ContractStore, FormulaAdapter
from insurance_engine.exceptions import (
    BadSymbol,
    ContractNotFound,
    InvalidCancelPrice,
    InvalidPeriod,
    InvalidTransition,
    PairMaintained,
    UnknownSymbol,
)
from insurance_engine.lifecycle.controller import LifecycleController
from insurance_engine.monitoring.logger import get_logger

logger = get_logger(__name__)


def _new_id() -> str:
    return uuid.uuid4().hex


class InsuranceService:
    def __init__(
        self,
        store: ContractStore,
        controller: LifecycleController,
        prices: PriceTracker,
        formula: FormulaAdapter,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        id_factory: Callable[[], str] = _new_id,
    ):
        self.store = store
        self.controller = controller
        self.prices = prices
        self.formula = formula
        self.clock = clock
        self.id_factory = id_factory

    async def create(self, user_id: str, wallet_address: str, request: CreateContractRequest) -> Contract:
        """
        Validate a request and store it as a PENDING contract.

        Raises:
            BadSymbol, PairMaintained, InvalidPeriod, InvalidQuantity,
            InvalidClaimPrice, InvalidMargin
        """
        symbol = request.symbol
        pair = self.store.get_pair(symbol)
        if pair is None or not pair.is_active or not pair.day_change_ratios:
            raise BadSymbol(f"Unknown or inactive symbol {symbol}")
        if pair.is_maintain:
            raise PairMaintained(f"{symbol} is under maintenance")

        if request.period_unit == PeriodUnit.DAY:
            if not 1 <= request.period <= len(pair.day_change_ratios):
                raise InvalidPeriod(f"No change ratio for a {request.period} day period")
            period_change_ratio = pair.day_change_ratios[request.period - 1]
        else:
            period_change_ratio = pair.day_change_ratios[0]

        try:
            p_open = await self.prices.latest_price(symbol)
        except UnknownSymbol as e:
            raise BadSymbol(str(e)) from e

        self.formula.validate(
            margin=request.margin,
            q_covered=request.q_covered,
            p_open=p_open,
            p_claim=request.p_claim,
            period=request.period,
            period_unit=request.period_unit,
            day_change_ratios=pair.day_change_ratios,
        )

        now = self.clock()
        # Provisional until activation recomputes them at the then-current price
        params = self.formula.derive_parameters(
            margin=request.margin,
            q_covered=request.q_covered,
            p_open=p_open,
            p_claim=request.p_claim,
            period=request.period,
            period_unit=request.period_unit,
            period_change_ratio=period_change_ratio,
            now=now,
        )

        contract = Contract(
            id=self.id_factory(),
            user_id=user_id,
            wallet_address=wallet_address.lower(),
            asset=request.asset,
            unit=request.unit,
            margin=request.margin,
            q_covered=request.q_covered,
            p_claim=request.p_claim,
            period=request.period,
            period_unit=request.period_unit,
            period_change_ratio=period_change_ratio,
            side=side_for(request.p_claim, p_open),
            state=ContractState.PENDING,
            created_at=now,
            updated_at=now,
            p_open=p_open,
            p_liquidation=params.p_liquidation,
            q_claim=params.q_claim,
            p_refund=params.p_refund,
            p_cancel=params.p_cancel,
            leverage=params.leverage,
            hedge=params.hedge,
            system_capital=params.system_capital,
            expired_at=params.expired_at,
        )
        created = self.store.create(contract)
        logger.info(
            "CONTRACT_CREATED",
            contract_id=created.id,
            user_id=user_id,
            symbol=symbol,
            side=created.side.value,
            margin=str(created.margin),
            p_claim=str(created.p_claim),
        )
        return created

    async def cancel(self, user_id: str, contract_id: str) -> Contract:
        """
        Cancel an AVAILABLE contract while the price sits between p_cancel
        and p_claim.

        Raises:
            ContractNotFound, InvalidTransition, InvalidCancelPrice
        """
        contract = self.find_one(user_id, contract_id)
        if contract.state != ContractState.AVAILABLE or self.controller.is_locked(contract_id):
            raise InvalidTransition(
                contract_id,
                contract.state.value,
                ContractState.CANCELLED.value,
                "locked" if contract.state == ContractState.AVAILABLE else "",
            )

        try:
            price = await self.prices.latest_price(contract.symbol)
        except UnknownSymbol as e:
            raise BadSymbol(str(e)) from e

        if not in_range(price, contract.p_cancel, contract.p_claim):
            raise InvalidCancelPrice(
                f"Price {price} not between p_cancel {contract.p_cancel} and p_claim {contract.p_claim}"
            )

        return await self.controller.cancel(contract, price)

    def find_one(self, user_id: str, contract_id: str) -> Contract:
        contract = self.store.get_for_user(user_id, contract_id)
        if contract is None:
            raise ContractNotFound(f"Contract {contract_id} not found")
        return contract

    def find_all(
        self,
        user_id: str,
        state: Optional[ContractState] = None,
        is_closed: Optional[bool] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> Dict[str, Any]:
        """Page of a user's contracts, newest first, plus the total count."""
        return {
            "total": self.store.count(user_id, state=state, is_closed=is_closed),
            "rows": self.store.find(user_id, state=state, is_closed=is_closed, skip=skip, limit=limit),
        }

    def stats(self) -> Dict[str, Any]:
        return self.store.stats()
