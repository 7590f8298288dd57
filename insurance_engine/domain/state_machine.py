"""
Contract lifecycle state machine.

Single source of truth for which transitions exist. The controller
checks every write against this table; nothing else decides edges.
"""
from typing import Dict, FrozenSet

from insurance_engine.domain.models import ContractState
from insurance_engine.exceptions import InvalidTransition

ALLOWED_TRANSITIONS: Dict[ContractState, FrozenSet[ContractState]] = {
    ContractState.PENDING: frozenset({
        ContractState.AVAILABLE,
        ContractState.INVALID,
    }),
    ContractState.AVAILABLE: frozenset({
        ContractState.CLAIM_WAITING,
        ContractState.REFUND_WAITING,
        ContractState.LIQUIDATED,
        ContractState.EXPIRED,
        ContractState.CANCELLED,
    }),
    ContractState.CLAIM_WAITING: frozenset({ContractState.CLAIMED}),
    ContractState.REFUND_WAITING: frozenset({ContractState.REFUNDED}),
    ContractState.CLAIMED: frozenset(),
    ContractState.REFUNDED: frozenset(),
    ContractState.LIQUIDATED: frozenset(),
    ContractState.EXPIRED: frozenset(),
    ContractState.CANCELLED: frozenset(),
    ContractState.INVALID: frozenset(),
}

TERMINAL_STATES: FrozenSet[ContractState] = frozenset(
    state for state, targets in ALLOWED_TRANSITIONS.items() if not targets
)

WAITING_STATES: FrozenSet[ContractState] = frozenset({
    ContractState.CLAIM_WAITING,
    ContractState.REFUND_WAITING,
})

# Ledger confirmation target -> state it must be confirming
CONFIRMATION_SOURCE: Dict[ContractState, ContractState] = {
    ContractState.CLAIMED: ContractState.CLAIM_WAITING,
    ContractState.REFUNDED: ContractState.REFUND_WAITING,
}

# Transitions that close the contract (closed_at is written on entry)
CLOSING_STATES: FrozenSet[ContractState] = TERMINAL_STATES | {ContractState.REFUND_WAITING}


def can_transition(current: ContractState, target: ContractState) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def check_transition(contract_id: str, current: ContractState, target: ContractState) -> None:
    """Raise InvalidTransition unless current -> target is an edge."""
    if not can_transition(current, target):
        reason = "terminal state" if is_terminal(current) else ""
        raise InvalidTransition(contract_id, current.value, target.value, reason)


def is_terminal(state: ContractState) -> bool:
    return state in TERMINAL_STATES
