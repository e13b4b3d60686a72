"""
Lifecycle states for payroll cycles and exit settlements.

Both flows share one transition table. A transition is legal only if it is
listed here; everything else (including every backwards move) is rejected
with StateTransitionError before any mutation happens.

Payroll cycle:
    draft -> processing -> pending_approval -> approved -> paid -> locked
    processing -> draft   (rollback of a failed processing attempt only)

Exit settlement:
    pending -> calculated -> approved -> paid -> completed
"""
from enum import Enum
from typing import Dict, FrozenSet, Type

from staffpay.core.exceptions import StateTransitionError


class CycleStatus(Enum):
    DRAFT = "draft"
    PROCESSING = "processing"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    PAID = "paid"
    LOCKED = "locked"


class SettlementStatus(Enum):
    PENDING = "pending"
    CALCULATED = "calculated"
    APPROVED = "approved"
    PAID = "paid"
    COMPLETED = "completed"


TRANSITIONS: Dict[Enum, FrozenSet[Enum]] = {
    CycleStatus.DRAFT: frozenset({CycleStatus.PROCESSING}),
    CycleStatus.PROCESSING: frozenset({CycleStatus.PENDING_APPROVAL, CycleStatus.DRAFT}),
    CycleStatus.PENDING_APPROVAL: frozenset({CycleStatus.APPROVED}),
    CycleStatus.APPROVED: frozenset({CycleStatus.PAID}),
    CycleStatus.PAID: frozenset({CycleStatus.LOCKED}),
    CycleStatus.LOCKED: frozenset(),

    SettlementStatus.PENDING: frozenset({SettlementStatus.CALCULATED}),
    SettlementStatus.CALCULATED: frozenset({SettlementStatus.APPROVED}),
    SettlementStatus.APPROVED: frozenset({SettlementStatus.PAID}),
    SettlementStatus.PAID: frozenset({SettlementStatus.COMPLETED}),
    SettlementStatus.COMPLETED: frozenset(),
}

# Position in the lifecycle, used for "already at or past" checks
ORDER: Dict[Enum, int] = {
    **{s: i for i, s in enumerate(CycleStatus)},
    **{s: i for i, s in enumerate(SettlementStatus)},
}

ENTITY_TYPES: Dict[Type[Enum], str] = {
    CycleStatus: "payroll_cycle",
    SettlementStatus: "exit_settlement",
}


def can_transition(current: Enum, target: Enum) -> bool:
    return type(current) is type(target) and target in TRANSITIONS[current]


def assert_transition(current: Enum, target: Enum, entity_id: str = None, reason: str = None) -> Enum:
    """Return target if current -> target is in the table, else raise."""
    if not can_transition(current, target):
        raise StateTransitionError(
            ENTITY_TYPES.get(type(current), type(current).__name__),
            entity_id,
            current.value,
            target.value,
            reason=reason or "transition not permitted",
        )
    return target


def is_at_or_past(current: Enum, milestone: Enum) -> bool:
    if type(current) is not type(milestone):
        raise TypeError(f"Cannot compare {type(current).__name__} with {type(milestone).__name__}")
    return ORDER[current] >= ORDER[milestone]
