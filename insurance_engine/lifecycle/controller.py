"""
Insurance lifecycle controller.

The only writer of contract state. Every mutation follows the same shape:

    1. take the per-contract lock (skip the pass if it is held)
    2. re-read the contract inside the lock
    3. check the edge against the state machine
    4. write the new state and fields
    5. issue the ledger command (failures are recorded, never rolled back)
    6. append exactly one state-log entry carrying the ledger outcome

A skipped pass returns None. Nothing here queues or retries; the
reconciliation sweeps come back around on their next tick.
"""
import asyncio
from datetime import datetime, timezone
from decimal import Decimal
from typing import Awaitable, Callable, Dict, Optional, Tuple

from insurance_engine.constants import CREATION_TIMEOUT_SECONDS, LOCK_TTL_SECONDS
from insurance_engine.data.price_tracker import PriceTracker
from insurance_engine.domain.models import (
    Contract,
    ContractState,
    InvalidReason,
    LedgerCommand,
    LedgerEvent,
    LedgerEventKind,
    LedgerOutcome,
    QuoteUnit,
    StateLogEntry,
)
from insurance_engine.domain.protocols import ContractStore, FormulaAdapter, LedgerGateway
from insurance_engine.domain.state_machine import CLOSING_STATES, CONFIRMATION_SOURCE, check_transition
from insurance_engine.exceptions import ContractNotFound, InvalidTransition, LedgerError
from insurance_engine.locking.lock_registry import LockRegistry, lock_key
from insurance_engine.monitoring.logger import get_logger

logger = get_logger(__name__)

LedgerCall = Optional[Tuple[LedgerCommand, Callable[[], Awaitable[str]]]]

_TERMINAL_COMMANDS = {
    ContractState.LIQUIDATED: LedgerCommand.LIQUIDATE,
    ContractState.EXPIRED: LedgerCommand.EXPIRE,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LifecycleController:
    """Drives contracts through the lifecycle state machine."""

    def __init__(
        self,
        store: ContractStore,
        ledger: LedgerGateway,
        prices: PriceTracker,
        formula: FormulaAdapter,
        locks: LockRegistry,
        lock_ttl_seconds: int = LOCK_TTL_SECONDS,
        creation_timeout_seconds: int = CREATION_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.ledger = ledger
        self.prices = prices
        self.formula = formula
        self.locks = locks
        self.lock_ttl_seconds = lock_ttl_seconds
        self.creation_timeout_seconds = creation_timeout_seconds
        self.clock = clock

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def is_locked(self, contract_id: str) -> bool:
        return self.locks.is_locked(lock_key(contract_id))

    def _reload(self, contract_id: str) -> Contract:
        current = self.store.get(contract_id)
        if current is None:
            raise ContractNotFound(f"Contract {contract_id} not found")
        return current

    async def _issue(self, contract_id: str, command: LedgerCommand, send: Callable[[], Awaitable[str]]) -> LedgerOutcome:
        try:
            tx_hash = await send()
        except LedgerError as e:
            logger.error(
                "LEDGER_COMMAND_FAILED",
                contract_id=contract_id,
                command=command.value,
                error=str(e),
            )
            return LedgerOutcome(command=command, error=str(e))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(
                "LEDGER_COMMAND_FAILED",
                contract_id=contract_id,
                command=command.value,
                error=str(e),
                error_type=type(e).__name__,
            )
            return LedgerOutcome(command=command, error=f"{type(e).__name__}: {e}")
        return LedgerOutcome(command=command, tx_hash=tx_hash)

    async def _apply(
        self,
        current: Contract,
        target: ContractState,
        fields: Dict,
        ledger_call: LedgerCall = None,
        tx_hash: Optional[str] = None,
    ) -> Contract:
        """Steps 3-6 for a contract already re-read under its lock."""
        check_transition(current.id, current.state, target)

        now = self.clock()
        fields = dict(fields, state=target)
        if target in CLOSING_STATES and current.closed_at is None:
            fields["closed_at"] = now
        self.store.update_fields(current.id, **fields)

        error = None
        if ledger_call is not None:
            command, send = ledger_call
            outcome = await self._issue(current.id, command, send)
            tx_hash, error = outcome.tx_hash, outcome.error

        self.store.append_state_log(current.id, StateLogEntry(state=target, time=now, tx_hash=tx_hash, error=error))

        logger.info(
            "CONTRACT_TRANSITION",
            contract_id=current.id,
            symbol=current.symbol,
            from_state=current.state.value,
            to_state=target.value,
            tx_hash=tx_hash,
            ledger_error=error,
        )
        return self._reload(current.id)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def activate(self, contract: Contract) -> Optional[Contract]:
        """PENDING → AVAILABLE with derived parameters at the current price."""
        async with self.locks.hold(lock_key(contract.id), self.lock_ttl_seconds) as acquired:
            if not acquired:
                return None
            current = self._reload(contract.id)
            check_transition(current.id, current.state, ContractState.AVAILABLE)

            p_open = await self.prices.latest_price(current.symbol)
            params = self.formula.derive_parameters(
                margin=current.margin,
                q_covered=current.q_covered,
                p_open=p_open,
                p_claim=current.p_claim,
                period=current.period,
                period_unit=current.period_unit,
                period_change_ratio=current.period_change_ratio,
                now=self.clock(),
            )
            fields = {
                "p_open": p_open,
                "expired_at": params.expired_at,
                "hedge": params.hedge,
                "p_liquidation": params.p_liquidation,
                "q_claim": params.q_claim,
                "system_capital": params.system_capital,
                "p_refund": params.p_refund,
                "leverage": params.leverage,
                "p_cancel": params.p_cancel,
            }
            return await self._apply(
                current,
                ContractState.AVAILABLE,
                fields,
                (
                    LedgerCommand.REGISTER_AVAILABLE,
                    lambda: self.ledger.register_available(current.id, params.q_claim, params.expired_at),
                ),
            )

    async def invalidate(
        self,
        contract: Contract,
        reason: InvalidReason,
        requires_payback: bool,
    ) -> Optional[Contract]:
        """PENDING → INVALID; the ledger is told only when margin must go back."""
        async with self.locks.hold(lock_key(contract.id), self.lock_ttl_seconds) as acquired:
            if not acquired:
                return None
            current = self._reload(contract.id)
            ledger_call = None
            if requires_payback:
                ledger_call = (LedgerCommand.INVALIDATE, lambda: self.ledger.invalidate(current.id))
            return await self._apply(
                current,
                ContractState.INVALID,
                {"invalid_reason": reason},
                ledger_call,
            )

    async def cancel(self, contract: Contract, close_price: Decimal) -> Contract:
        """
        AVAILABLE → CANCELLED on user request.

        Raises:
            InvalidTransition: not AVAILABLE, or another evaluation holds the lock
        """
        async with self.locks.hold(lock_key(contract.id), self.lock_ttl_seconds) as acquired:
            if not acquired:
                raise InvalidTransition(contract.id, contract.state.value, ContractState.CANCELLED.value, "locked")
            current = self._reload(contract.id)
            return await self._apply(
                current,
                ContractState.CANCELLED,
                {"p_close": close_price},
                (LedgerCommand.CANCEL, lambda: self.ledger.cancel(current.id)),
            )

    async def claim(self, contract: Contract, close_price: Decimal) -> Optional[Contract]:
        """AVAILABLE → CLAIM_WAITING. Not closed until the ledger confirms."""
        async with self.locks.hold(lock_key(contract.id), self.lock_ttl_seconds) as acquired:
            if not acquired:
                return None
            current = self._reload(contract.id)
            return await self._apply(
                current,
                ContractState.CLAIM_WAITING,
                {"p_close": close_price},
                (LedgerCommand.CLAIM, lambda: self.ledger.claim(current.id)),
            )

    async def refund(self, contract: Contract, close_price: Decimal) -> Optional[Contract]:
        """AVAILABLE → REFUND_WAITING. Closed at request time."""
        async with self.locks.hold(lock_key(contract.id), self.lock_ttl_seconds) as acquired:
            if not acquired:
                return None
            current = self._reload(contract.id)
            return await self._apply(
                current,
                ContractState.REFUND_WAITING,
                {"p_close": close_price},
                (LedgerCommand.REFUND, lambda: self.ledger.refund(current.id)),
            )

    async def resolve_terminal(
        self,
        contract: Contract,
        target: ContractState,
        close_price: Decimal,
    ) -> Optional[Contract]:
        """AVAILABLE → LIQUIDATED or EXPIRED."""
        if target not in _TERMINAL_COMMANDS:
            raise ValueError(f"resolve_terminal target must be LIQUIDATED or EXPIRED, got {target.value}")

        command = _TERMINAL_COMMANDS[target]
        async with self.locks.hold(lock_key(contract.id), self.lock_ttl_seconds) as acquired:
            if not acquired:
                return None
            current = self._reload(contract.id)
            send = self.ledger.liquidate if target == ContractState.LIQUIDATED else self.ledger.expire
            return await self._apply(
                current,
                target,
                {"p_close": close_price},
                (command, lambda: send(current.id)),
            )

    # ------------------------------------------------------------------
    # Ledger notifications
    # ------------------------------------------------------------------

    async def on_ledger_confirmation(
        self,
        contract_id: str,
        confirmed_state: ContractState,
        tx_hash: str,
    ) -> Optional[Contract]:
        """CLAIM_WAITING → CLAIMED or REFUND_WAITING → REFUNDED."""
        expected = CONFIRMATION_SOURCE.get(confirmed_state)
        if expected is None:
            raise ValueError(f"Not a confirmation state: {confirmed_state.value}")

        async with self.locks.hold(lock_key(contract_id), self.lock_ttl_seconds) as acquired:
            if not acquired:
                return None
            current = self._reload(contract_id)
            if current.state != expected:
                logger.warning(
                    "LEDGER_CONFIRMATION_IGNORED",
                    contract_id=contract_id,
                    state=current.state.value,
                    confirmed=confirmed_state.value,
                    tx_hash=tx_hash,
                )
                return None
            return await self._apply(current, confirmed_state, {}, tx_hash=tx_hash)

    def registration_mismatch(
        self,
        contract: Contract,
        address: Optional[str],
        unit: Optional[QuoteUnit],
        margin: Optional[Decimal],
        now: Optional[datetime] = None,
    ) -> Tuple[Optional[InvalidReason], bool]:
        """
        First mismatch between a PENDING contract and its on-chain registration.

        Checked in order margin, wallet, creation timeout, unit. Returns
        (reason, requires_payback); (None, False) when everything matches.
        Only the timeout sends margin back.
        """
        now = now or self.clock()
        if margin is None or margin != contract.margin:
            return InvalidReason.INVALID_MARGIN, False
        if (address or "").lower() != contract.wallet_address.lower():
            return InvalidReason.INVALID_WALLET_ADDRESS, False
        if self.is_creation_timed_out(contract, now):
            return InvalidReason.CREATED_TIME_TIMEOUT, True
        if unit != contract.unit:
            return InvalidReason.INVALID_UNIT, False
        return None, False

    def is_creation_timed_out(self, contract: Contract, now: datetime) -> bool:
        return (now - contract.created_at).total_seconds() > self.creation_timeout_seconds

    async def on_ledger_contract_created(
        self,
        contract_id: str,
        address: Optional[str],
        unit: Optional[QuoteUnit],
        margin: Optional[Decimal],
        tx_hash: str,
    ) -> Optional[Contract]:
        """Validate an on-chain registration, then activate or invalidate."""
        contract = self.store.get(contract_id)
        if contract is None:
            logger.debug("LEDGER_CREATED_UNKNOWN_CONTRACT", contract_id=contract_id, tx_hash=tx_hash)
            return None

        contract = self.store.update_fields(contract_id, tx_hash=tx_hash)

        if contract.state != ContractState.PENDING:
            logger.warning("LEDGER_CREATED_NOT_PENDING", contract_id=contract_id, state=contract.state.value)
            return None

        reason, requires_payback = self.registration_mismatch(contract, address, unit, margin)
        if reason is not None:
            logger.info(
                "CONTRACT_REGISTRATION_MISMATCH",
                contract_id=contract_id,
                reason=reason.value,
                requires_payback=requires_payback,
            )
            return await self.invalidate(contract, reason, requires_payback)
        return await self.activate(contract)

    async def handle_ledger_event(self, event: LedgerEvent) -> Optional[Contract]:
        if event.kind == LedgerEventKind.CREATED:
            return await self.on_ledger_contract_created(
                event.contract_id, event.address, event.unit, event.margin, event.tx_hash
            )
        if event.kind == LedgerEventKind.CLAIMED:
            return await self.on_ledger_confirmation(event.contract_id, ContractState.CLAIMED, event.tx_hash)
        if event.kind == LedgerEventKind.REFUNDED:
            return await self.on_ledger_confirmation(event.contract_id, ContractState.REFUNDED, event.tx_hash)

        logger.debug("LEDGER_EVENT_IGNORED", contract_id=event.contract_id, kind=event.kind.value)
        return None
