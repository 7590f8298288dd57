"""
Domain models for the insurance engine.

These are the core business objects used throughout the application.
All timestamps use UTC timezone-aware datetimes; prices and amounts are
Decimal.
"""
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional, Tuple


class ContractState(str, Enum):
    """
    Insurance contract lifecycle states.

    State Machine:
        PENDING → AVAILABLE (ledger registration validated)
        PENDING → INVALID (registration mismatch or creation timeout)
        AVAILABLE → CLAIM_WAITING (claim price touched, claim sent to ledger)
        AVAILABLE → REFUND_WAITING (expired inside the refund band)
        AVAILABLE → LIQUIDATED / EXPIRED / CANCELLED
        CLAIM_WAITING → CLAIMED (ledger confirmation)
        REFUND_WAITING → REFUNDED (ledger confirmation)

    Terminal States: CLAIMED, REFUNDED, LIQUIDATED, EXPIRED, CANCELLED, INVALID
    Waiting States: CLAIM_WAITING, REFUND_WAITING
    """
    PENDING = "PENDING"
    AVAILABLE = "AVAILABLE"
    CLAIM_WAITING = "CLAIM_WAITING"
    REFUND_WAITING = "REFUND_WAITING"
    CLAIMED = "CLAIMED"
    REFUNDED = "REFUNDED"
    LIQUIDATED = "LIQUIDATED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"
    INVALID = "INVALID"


class Side(str, Enum):
    """Contract side."""
    BULL = "BULL"  # pays out if price rises to the claim price
    BEAR = "BEAR"  # pays out if price falls to the claim price


class PeriodUnit(str, Enum):
    DAY = "DAY"
    HOUR = "HOUR"


class QuoteUnit(str, Enum):
    """Quote unit of a pair and of the margin locked on-chain."""
    USDT = "USDT"
    VNST = "VNST"


class InvalidReason(str, Enum):
    """Why a PENDING contract was invalidated."""
    INVALID_MARGIN = "INVALID_MARGIN"
    INVALID_WALLET_ADDRESS = "INVALID_WALLET_ADDRESS"
    CREATED_TIME_TIMEOUT = "CREATED_TIME_TIMEOUT"
    INVALID_UNIT = "INVALID_UNIT"


class LedgerCommand(str, Enum):
    """Commands the controller issues to the ledger."""
    REGISTER_AVAILABLE = "register_available"
    INVALIDATE = "invalidate"
    CANCEL = "cancel"
    CLAIM = "claim"
    REFUND = "refund"
    LIQUIDATE = "liquidate"
    EXPIRE = "expire"


class LedgerEventKind(str, Enum):
    """Closed set of ledger notifications, decoded at the adapter boundary."""
    CREATED = "CREATED"
    AVAILABLE = "AVAILABLE"
    INVALIDATED = "INVALIDATED"
    REFUNDED = "REFUNDED"
    CANCELLED = "CANCELLED"
    CLAIMED = "CLAIMED"
    EXPIRED = "EXPIRED"
    LIQUIDATED = "LIQUIDATED"


@dataclass(frozen=True)
class PriceSample:
    """One price observation from the market feed."""
    price: Decimal
    timestamp: datetime

    def __post_init__(self):
        if self.timestamp.tzinfo is None:
            raise ValueError("PriceSample timestamp must be timezone-aware (UTC)")


@dataclass(frozen=True)
class StateLogEntry:
    """
    One transition attempt in a contract's timeline.

    Appended for every transition, including those whose ledger command
    failed (error set, tx_hash None).
    """
    state: ContractState
    time: datetime
    tx_hash: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class LedgerOutcome:
    """Recorded result of one ledger command: a handle or an error message."""
    command: LedgerCommand
    tx_hash: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class DerivedParameters:
    """Formula output computed from the open price."""
    expired_at: datetime
    hedge: Decimal
    p_liquidation: Decimal
    q_claim: Decimal
    system_capital: Decimal
    p_refund: Decimal
    leverage: Decimal
    p_cancel: Decimal


@dataclass(frozen=True)
class LedgerContractRecord:
    """On-chain view of a contract."""
    address: str
    unit: Optional[QuoteUnit]
    margin: Decimal
    q_claim: Decimal
    state: Optional[str] = None


@dataclass(frozen=True)
class LedgerEvent:
    """A decoded ledger notification keyed by contract id."""
    kind: LedgerEventKind
    contract_id: str
    tx_hash: str
    address: Optional[str] = None
    unit: Optional[QuoteUnit] = None
    margin: Optional[Decimal] = None
    block_number: Optional[int] = None


@dataclass
class Pair:
    """A tradable asset/unit symbol and its expected-move table."""
    symbol: str
    asset: str
    unit: QuoteUnit
    is_active: bool = True
    is_maintain: bool = False
    day_change_ratios: List[Decimal] = field(default_factory=list)
    hour_change_ratios: List[Decimal] = field(default_factory=list)


@dataclass(frozen=True)
class CreateContractRequest:
    """User input for a new contract."""
    asset: str
    unit: QuoteUnit
    margin: Decimal
    q_covered: Decimal
    p_claim: Decimal
    period: int
    period_unit: PeriodUnit

    @property
    def symbol(self) -> str:
        return f"{self.asset}{self.unit.value}"


@dataclass
class Contract:
    """
    One insurance position tracked by this system and mirrored on the ledger.

    Derived economic fields (p_open .. expired_at) hold provisional values
    from the creation price while PENDING and are fixed once, at the
    activation price, on PENDING → AVAILABLE. closed_at is written once and
    never cleared.
    """
    # Identity
    id: str
    user_id: str
    wallet_address: str
    asset: str
    unit: QuoteUnit

    # Economic inputs
    margin: Decimal
    q_covered: Decimal
    p_claim: Decimal
    period: int
    period_unit: PeriodUnit
    period_change_ratio: Decimal

    # Lifecycle
    side: Side
    state: ContractState = ContractState.PENDING
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    invalid_reason: Optional[InvalidReason] = None
    tx_hash: Optional[str] = None
    p_close: Optional[Decimal] = None

    # Derived
    p_open: Optional[Decimal] = None
    p_liquidation: Optional[Decimal] = None
    q_claim: Optional[Decimal] = None
    p_refund: Optional[Decimal] = None
    p_cancel: Optional[Decimal] = None
    leverage: Optional[Decimal] = None
    hedge: Optional[Decimal] = None
    system_capital: Optional[Decimal] = None
    expired_at: Optional[datetime] = None

    state_logs: List[StateLogEntry] = field(default_factory=list)

    @property
    def symbol(self) -> str:
        return f"{self.asset}{self.unit.value}"

    @property
    def is_closed(self) -> bool:
        return self.closed_at is not None


def side_for(p_claim: Decimal, p_open: Decimal) -> Side:
    """BULL when the claim price is above the open price, BEAR otherwise."""
    return Side.BULL if p_claim > p_open else Side.BEAR


def price_extremes(samples: Tuple[PriceSample, ...]) -> Tuple[Decimal, Decimal]:
    """(min, max) over sample prices. Caller guarantees samples is non-empty."""
    prices = [s.price for s in samples]
    return min(prices), max(prices)


def in_range(value: Decimal, bound_a: Decimal, bound_b: Decimal) -> bool:
    """True when value lies strictly between the two bounds, in either order."""
    return (bound_a < value < bound_b) or (bound_b < value < bound_a)
