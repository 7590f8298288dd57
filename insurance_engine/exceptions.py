"""
Custom exception hierarchy for the insurance engine.

Provides clear, specific exceptions for the different failure scenarios
so callers can decide between retrying, rejecting and halting.

Hierarchy:

    InsuranceEngineError (base)
    ├── OperationalError  : transient/retryable (ledger RPC, market data, network)
    │   ├── LedgerError
    │   └── MarketDataError
    ├── DataError         : bad input, reject request or skip item
    │   ├── UnknownSymbol
    │   ├── ValidationError   : creation-time rejection, no record created
    │   │   ├── BadSymbol
    │   │   ├── PairMaintained
    │   │   ├── InvalidPeriod
    │   │   ├── InvalidQuantity
    │   │   ├── InvalidClaimPrice
    │   │   ├── InvalidMargin
    │   │   └── InvalidCancelPrice
    │   ├── ContractNotFound
    │   └── InvalidTransition
    └── InvariantError    : safety violation, halt immediately

Rules:
    - OperationalError: catch, log, leave the contract for the next sweep
    - DataError: catch, log, skip this contract (or surface to the caller)
    - InvariantError: never swallowed
"""


class InsuranceEngineError(Exception):
    """Base exception for all insurance engine errors."""
    pass


# ============ OPERATIONAL (transient, retryable) ============

class OperationalError(InsuranceEngineError):
    """Transient/retryable error: ledger RPC, exchange API, network, timeouts.

    Treatment: catch, log, let the next reconciliation pass retry.
    """
    pass


class LedgerError(OperationalError):
    """A ledger command or read could not be completed."""
    pass


class MarketDataError(OperationalError):
    """Market data REST/websocket failure."""
    pass


# ============ DATA (bad input, skip / reject) ============

class DataError(InsuranceEngineError):
    """Bad data: unknown symbol, invalid inputs, impossible transition.

    Treatment: catch, log, skip this contract, continue the sweep.
    """
    pass


class UnknownSymbol(DataError):
    """Neither the live feed nor the fallback fetch could price a symbol."""

    def __init__(self, symbol: str, reason: str = ""):
        self.symbol = symbol
        message = f"Invalid symbol ({symbol})"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class ValidationError(DataError):
    """Creation-time rejection. Raised before any contract record exists."""

    code = "INVALID_INPUT"


class BadSymbol(ValidationError):
    code = "BAD_SYMBOL"


class PairMaintained(ValidationError):
    code = "MAINTAINED"


class InvalidPeriod(ValidationError):
    code = "INVALID_PERIOD"


class InvalidQuantity(ValidationError):
    code = "INVALID_QUANTITY"


class InvalidClaimPrice(ValidationError):
    code = "INVALID_P_CLAIM"


class InvalidMargin(ValidationError):
    code = "INVALID_MARGIN"


class InvalidCancelPrice(ValidationError):
    code = "INVALID_CANCEL_PRICE"


class ContractNotFound(DataError):
    """No contract with that id (for that owner)."""
    pass


class InvalidTransition(DataError):
    """Requested state change is not an edge of the lifecycle state machine."""

    def __init__(self, contract_id: str, current: str, target: str, reason: str = ""):
        self.contract_id = contract_id
        self.current = current
        self.target = target
        message = f"Contract {contract_id}: {current} -> {target} not allowed"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)


# ============ INVARIANT (safety violation, halt) ============

class InvariantError(InsuranceEngineError):
    """Safety invariant violation. Never caught and silently continued."""
    pass
