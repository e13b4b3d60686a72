"""
Typed exceptions for the payroll and settlement engine.

Every exception carries a class-level ``code`` for machine-readable handling
and keeps the identifiers it refers to as attributes, so callers never parse
messages.

    PayrollEngineError
    +-- ConfigError
    +-- DataIncompleteError
    +-- StateTransitionError
    +-- NegativeBalanceWarning
    +-- ConcurrencyConflictError
    +-- NotFoundError
    +-- DuplicateRecordError
    +-- ImmutabilityError
"""
from typing import Any, Dict, List, Optional, Sequence


class PayrollEngineError(Exception):
    """Base exception for all engine errors."""

    code: str = "PAYROLL_ENGINE_ERROR"

    def to_dict(self) -> Dict[str, Any]:
        data = {"code": self.code, "message": str(self)}
        data.update({k: v for k, v in vars(self).items() if not k.startswith("_")})
        return data


class ConfigError(PayrollEngineError):
    """Rule set is malformed (overlapping or gapped slabs, bad rates)."""

    code: str = "CONFIG_ERROR"

    def __init__(self, message: str, slab_index: Optional[int] = None):
        self.slab_index = slab_index
        super().__init__(message)


class DataIncompleteError(PayrollEngineError):
    """Attendance or compensation data is missing for one or more staff."""

    code: str = "DATA_INCOMPLETE"

    def __init__(self, staff_ids: Sequence[str], reason: str = "missing data"):
        self.staff_ids = list(staff_ids)
        self.reason = reason
        super().__init__(f"Incomplete data for staff {', '.join(self.staff_ids)}: {reason}")


class StateTransitionError(PayrollEngineError):
    """Requested transition is not in the transition table."""

    code: str = "INVALID_STATE_TRANSITION"

    def __init__(self, entity_type: str, entity_id: Optional[str], current: str, target: str,
                 reason: Optional[str] = None, staff_ids: Optional[List[str]] = None):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.current = current
        self.target = target
        self.reason = reason
        self.staff_ids = list(staff_ids or [])
        message = f"Cannot move {entity_type} {entity_id} from {current} to {target}"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class NegativeBalanceWarning(PayrollEngineError):
    """
    Deductions exceeded earnings (payroll) or the settlement is owed by the
    staff member. Not fatal: raised only when an approval is attempted
    without acknowledging the flagged result.
    """

    code: str = "NEGATIVE_BALANCE"

    def __init__(self, entity_type: str, entity_id: str, staff_ids: Sequence[str], amount: int = 0):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.staff_ids = list(staff_ids)
        self.amount = amount
        super().__init__(
            f"{entity_type} {entity_id} has flagged balances for staff {', '.join(self.staff_ids)}; "
            f"approval must be acknowledged"
        )


class ConcurrencyConflictError(PayrollEngineError):
    """Another caller holds the cycle or exit record lock."""

    code: str = "CONCURRENCY_CONFLICT"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} {entity_id} is being processed elsewhere; retry later")


class NotFoundError(PayrollEngineError):
    code: str = "NOT_FOUND"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} not found: {entity_id}")


class DuplicateRecordError(PayrollEngineError):
    code: str = "DUPLICATE_RECORD"

    def __init__(self, entity_type: str, key: str, existing_id: Optional[str] = None):
        self.entity_type = entity_type
        self.key = key
        self.existing_id = existing_id
        super().__init__(f"{entity_type} already exists for {key}")


class ImmutabilityError(PayrollEngineError):
    """Write to a record whose amounts are frozen."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, fields: Sequence[str] = ()):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.fields = list(fields)
        super().__init__(f"{entity_type} {entity_id} is immutable; attempted change to {', '.join(self.fields) or 'record'}")
