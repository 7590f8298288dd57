"""
Ledger adapter (on-chain insurance contract).

    Web3LedgerGateway / DisabledLedgerGateway  (commands + reads)
        └── events                             (numeric codes -> domain enums)
    LedgerEventListener                        (polls logs -> controller)
"""
from insurance_engine.ledger.listener import LedgerEventListener
from insurance_engine.ledger.web3_gateway import DisabledLedgerGateway, Web3LedgerGateway

__all__ = [
    "LedgerEventListener",
    "Web3LedgerGateway",
    "DisabledLedgerGateway",
]
