"""
Decoding of the insurance contract's numeric codes.

The contract speaks in small integers (event type, unit, state) and wei
amounts. Everything is translated to domain enums and Decimals here so
nothing past the ledger adapter sees a raw code.
"""
from decimal import Decimal
from typing import Any, Mapping, Optional, Sequence

from web3 import Web3

from insurance_engine.constants import ZERO_ADDRESS
from insurance_engine.domain.models import LedgerContractRecord, LedgerEvent, LedgerEventKind, QuoteUnit
from insurance_engine.monitoring.logger import get_logger

logger = get_logger(__name__)

EVENT_KIND_BY_CODE = {
    0: LedgerEventKind.CREATED,
    1: LedgerEventKind.AVAILABLE,
    2: LedgerEventKind.INVALIDATED,
    3: LedgerEventKind.REFUNDED,
    4: LedgerEventKind.CANCELLED,
    5: LedgerEventKind.CLAIMED,
    6: LedgerEventKind.EXPIRED,
    7: LedgerEventKind.LIQUIDATED,
}

UNIT_BY_CODE = {
    0: QuoteUnit.USDT,
    1: QuoteUnit.VNST,
}

# On-chain contract state codes (the chain has no waiting states)
CONTRACT_STATE_BY_CODE = {
    0: "PENDING",
    1: "AVAILABLE",
    2: "CLAIMED",
    3: "REFUNDED",
    4: "LIQUIDATED",
    5: "EXPIRED",
    6: "CANCELLED",
    7: "INVALID",
}


def from_wei(amount: int) -> Decimal:
    return Decimal(Web3.from_wei(int(amount), "ether"))


def to_wei(amount: Decimal) -> int:
    return int(Web3.to_wei(amount, "ether"))


def decode_unit(code: Any) -> Optional[QuoteUnit]:
    return UNIT_BY_CODE.get(int(code))


def decode_event(
    args: Mapping[str, Any],
    tx_hash: str,
    block_number: Optional[int] = None,
) -> Optional[LedgerEvent]:
    """
    Build a LedgerEvent from EInsurance log arguments.

    Returns None for an event type code outside the known set.
    """
    code = int(args["event_type"])
    kind = EVENT_KIND_BY_CODE.get(code)
    if kind is None:
        logger.warning("LEDGER_EVENT_UNKNOWN_CODE", code=code, tx_hash=tx_hash)
        return None

    address = args.get("buyer")
    return LedgerEvent(
        kind=kind,
        contract_id=str(args["idInsurance"]),
        tx_hash=tx_hash,
        address=address.lower() if address else None,
        unit=decode_unit(args["unit"]),
        margin=from_wei(args["margin"]),
        block_number=block_number,
    )


def decode_contract_record(result: Sequence[Any]) -> Optional[LedgerContractRecord]:
    """
    Map a readInsurance() tuple (buyer, unit, margin, q_claim, expired_at,
    created_at, state) to a record; None when the buyer is the zero address.
    """
    address = (result[0] or "").lower()
    if not address or address == ZERO_ADDRESS:
        return None
    return LedgerContractRecord(
        address=address,
        unit=decode_unit(result[1]),
        margin=from_wei(result[2]),
        q_claim=from_wei(result[3]),
        state=CONTRACT_STATE_BY_CODE.get(int(result[6])),
    )
