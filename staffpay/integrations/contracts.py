"""
Contracts for the collaborators the engine reads from and writes back to.

The engine never reaches into attendance, commission, tip, advance or staff
storage directly; it receives these objects from its caller. Missing
attendance is reported as None so the aggregator can isolate that staff
member instead of failing the whole cycle.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional, Sequence


class CompensationModel(Enum):
    FIXED_SALARY = "fixed_salary"
    HOURLY = "hourly"
    COMMISSION_ONLY = "commission_only"
    SALARY_PLUS_COMMISSION = "salary_plus_commission"

    @property
    def is_salaried(self) -> bool:
        return self in (CompensationModel.FIXED_SALARY, CompensationModel.SALARY_PLUS_COMMISSION)


class ExitType(Enum):
    RESIGNATION = "resignation"
    TERMINATION = "termination"
    RETIREMENT = "retirement"
    CONTRACT_END = "contract_end"
    ABSCONDING = "absconding"

    @property
    def profile_status(self) -> str:
        return "resigned" if self is ExitType.RESIGNATION else "terminated"


@dataclass
class StaffTaxProfile:
    pf_enrolled: bool = True
    insurance_eligible: bool = True
    professional_tax_applicable: bool = True
    tds_exempt: bool = False
    annual_exemptions: int = 0  # declared deductions subtracted before slabs


@dataclass
class StaffProfile:
    staff_id: str
    name: str = ""
    compensation_model: CompensationModel = CompensationModel.COMMISSION_ONLY
    monthly_salary: int = 0
    hourly_rate: int = 0
    daily_rate: int = 0
    hra_allowance: int = 0
    travel_allowance: int = 0
    meal_allowance: int = 0
    other_allowances: int = 0
    overtime_multiplier: Optional[Decimal] = None
    notice_period_days: int = 30
    joining_date: Optional[date] = None
    status: str = "active"
    tax_profile: StaffTaxProfile = field(default_factory=StaffTaxProfile)

    @property
    def allowances_total(self) -> int:
        return self.hra_allowance + self.travel_allowance + self.meal_allowance + self.other_allowances

    @property
    def is_salaried(self) -> bool:
        return self.compensation_model.is_salaried


@dataclass(frozen=True)
class CommissionRecord:
    entry_id: str
    staff_id: str
    service_amount: int
    commission_rate: Decimal
    commission_amount: int
    completed_at: datetime
    status: str = "earned"


@dataclass(frozen=True)
class TipRecord:
    tip_id: str
    staff_id: str
    amount: int
    recorded_on: date


@dataclass(frozen=True)
class HoursWorked:
    regular_hours: Decimal
    overtime_hours: Decimal = Decimal("0")


@dataclass(frozen=True)
class LeaveTypeBalance:
    code: str
    accrued_days: Decimal
    used_days: Decimal
    is_paid: bool = True
    allow_encashment: bool = False
    encashment_rate_percent: Decimal = Decimal("100")
    min_days_for_encashment: Decimal = Decimal("0")

    @property
    def unused_days(self) -> Decimal:
        return max(Decimal(self.accrued_days) - Decimal(self.used_days), Decimal("0"))

    @property
    def encashable_days(self) -> Decimal:
        if not (self.allow_encashment and self.is_paid):
            return Decimal("0")
        if self.unused_days < Decimal(self.min_days_for_encashment):
            return Decimal("0")
        return self.unused_days


@dataclass(frozen=True)
class LeaveBalance:
    staff_id: str
    balances: Sequence[LeaveTypeBalance] = ()

    @property
    def accrued_days(self) -> Decimal:
        return sum((Decimal(b.accrued_days) for b in self.balances), Decimal("0"))

    @property
    def used_days(self) -> Decimal:
        return sum((Decimal(b.used_days) for b in self.balances), Decimal("0"))


class AttendanceService(ABC):
    @abstractmethod
    def get_leave_days(self, staff_id: str, start: date, end: date) -> Optional[Decimal]:
        """Unpaid leave days in [start, end]; None when attendance was never recorded."""

    @abstractmethod
    def get_hours_worked(self, staff_id: str, start: date, end: date) -> Optional[HoursWorked]:
        """Regular and overtime hours in [start, end]; None when not recorded."""

    @abstractmethod
    def get_leave_balance(self, staff_id: str) -> LeaveBalance:
        ...


class CommissionLedger(ABC):
    @abstractmethod
    def list_earned_commissions(self, staff_id: str, start: Optional[date], end: date) -> List[CommissionRecord]:
        """Commission entries still 'earned' whose completion date falls in [start, end]."""

    @abstractmethod
    def mark_paid(self, entry_ids: Sequence[str]) -> int:
        """Flip 'earned' entries to 'paid'; entries already paid are left alone. Returns count flipped."""


class TipLedger(ABC):
    @abstractmethod
    def list_tips(self, staff_id: str, start: Optional[date], end: date) -> List[TipRecord]:
        ...


class AdvanceLedger(ABC):
    @abstractmethod
    def get_outstanding_advance(self, staff_id: str) -> int:
        ...

    @abstractmethod
    def get_installment(self, staff_id: str) -> int:
        """Agreed per-cycle recovery installment."""

    @abstractmethod
    def record_recovery(self, staff_id: str, amount: int) -> int:
        """Reduce the outstanding balance; returns the balance remaining."""


class StaffDirectory(ABC):
    @abstractmethod
    def get_profile(self, staff_id: str) -> StaffProfile:
        ...

    @abstractmethod
    def list_active_staff(self) -> List[StaffProfile]:
        ...

    @abstractmethod
    def mark_exited(self, staff_id: str, status: str) -> None:
        ...


@dataclass
class Collaborators:
    """The external services one tenant's engine talks to."""
    directory: StaffDirectory
    attendance: AttendanceService
    commissions: CommissionLedger
    tips: TipLedger
    advances: AdvanceLedger
