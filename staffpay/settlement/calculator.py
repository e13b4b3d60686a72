"""
Full and final settlement arithmetic for an exiting staff member.

All components share one daily rate derived from the same day-count
convention payroll uses for leave without pay, so the two never drift.
"""
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Dict, Optional, Sequence, Tuple

from ..core.config import Settings, settings as default_settings
from ..core.money import to_minor
from ..integrations.contracts import CommissionRecord, ExitType, LeaveBalance, StaffProfile, TipRecord

ZERO = Decimal("0")

@dataclass(frozen=True)
class ExitDetails:
    exit_type: ExitType
    resignation_date: date
    last_working_date: date
    exit_reason: Optional[str] = None
    notice_period_served: Optional[int] = None  # defaults to days between resignation and last working day
    waive_notice_recovery: bool = False
    other_recoveries: int = 0
    required_notice_days: Optional[int] = None  # fixed when the exit is recorded; profile value otherwise

    def served_days(self) -> int:
        if self.notice_period_served is not None:
            return max(int(self.notice_period_served), 0)
        return max((self.last_working_date - self.resignation_date).days, 0)

@dataclass(frozen=True)
class SettlementInputs:
    """What the collaborators report for the staff member at calculation time."""
    pending_commissions: Sequence[CommissionRecord] = ()
    pending_tips: Sequence[TipRecord] = ()
    leave_balance: Optional[LeaveBalance] = None
    advance_outstanding: int = 0

@dataclass(frozen=True)
class SettlementBreakdown:
    daily_rate: Decimal
    notice_period_shortfall: int
    notice_recovery: int
    encashable_leave_days: Decimal
    leave_encashment: int
    service_years: int
    gratuity: int
    pending_commissions: int
    pending_tips: int
    advance_outstanding: int
    other_recoveries: int
    commission_entry_ids: Tuple[str, ...] = ()
    tip_ids: Tuple[str, ...] = ()
    encashment_by_type: Dict[str, int] = field(default_factory=dict)

    @property
    def credits(self) -> int:
        return self.pending_commissions + self.pending_tips + self.leave_encashment + self.gratuity

    @property
    def recoveries(self) -> int:
        return self.notice_recovery + self.advance_outstanding + self.other_recoveries

    @property
    def net_settlement(self) -> int:
        """May be negative: the staff member owes the business."""
        return self.credits - self.recoveries

    @property
    def owes_company(self) -> bool:
        return self.net_settlement < 0

def completed_service_years(joining: Optional[date], last_working: date) -> Tuple[int, int]:
    """(whole years served, years rounded up when the part year is six months or more)"""
    if joining is None or joining > last_working:
        return 0, 0
    years = last_working.year - joining.year
    if (last_working.month, last_working.day) < (joining.month, joining.day):
        years -= 1
    months = (last_working.year - joining.year) * 12 + (last_working.month - joining.month)
    if last_working.day < joining.day:
        months -= 1
    remainder = months - years * 12
    return years, years + (1 if remainder >= 6 else 0)

class SettlementCalculator:
    def __init__(self, config: Optional[Settings] = None):
        self.config = config or default_settings

    def daily_rate(self, profile: StaffProfile) -> Decimal:
        if profile.monthly_salary:
            return Decimal(profile.monthly_salary) / Decimal(self.config.STANDARD_DAYS_PER_MONTH)
        if profile.daily_rate:
            return Decimal(profile.daily_rate)
        if profile.hourly_rate:
            return Decimal(profile.hourly_rate) * Decimal(self.config.STANDARD_HOURS_PER_DAY)
        return ZERO

    def gratuity(self, profile: StaffProfile, details: ExitDetails, daily_rate: Decimal) -> Tuple[int, int]:
        """Returns (service_years, gratuity amount)."""
        completed, rounded = completed_service_years(profile.joining_date, details.last_working_date)
        if details.exit_type is ExitType.ABSCONDING or completed < self.config.GRATUITY_ELIGIBILITY_YEARS:
            return rounded, 0
        return rounded, to_minor(daily_rate * self.config.GRATUITY_DAYS_PER_YEAR * rounded)

    def leave_encashment(self, balance: Optional[LeaveBalance], daily_rate: Decimal):
        by_type: Dict[str, int] = {}
        days = ZERO
        for leave in (balance.balances if balance else ()):
            encashable = leave.encashable_days
            if not encashable:
                continue
            days += encashable
            by_type[leave.code] = to_minor(
                encashable * daily_rate * Decimal(leave.encashment_rate_percent) / Decimal(100)
            )
        return days, by_type

    def compute_settlement(self, details: ExitDetails, profile: StaffProfile,
                           inputs: SettlementInputs) -> SettlementBreakdown:
        rate = self.daily_rate(profile)
        required = (details.required_notice_days if details.required_notice_days is not None
                    else profile.notice_period_days)
        shortfall = max(0, required - details.served_days())
        recovery = 0 if details.waive_notice_recovery else to_minor(rate * shortfall)
        leave_days, by_type = self.leave_encashment(inputs.leave_balance, rate)
        years, gratuity = self.gratuity(profile, details, rate)
        commissions = [c for c in inputs.pending_commissions if c.status == "earned"]

        return SettlementBreakdown(
            daily_rate=rate,
            notice_period_shortfall=shortfall,
            notice_recovery=recovery,
            encashable_leave_days=leave_days,
            leave_encashment=sum(by_type.values()),
            service_years=years,
            gratuity=gratuity,
            pending_commissions=sum(c.commission_amount for c in commissions),
            pending_tips=sum(t.amount for t in inputs.pending_tips),
            advance_outstanding=max(int(inputs.advance_outstanding), 0),
            other_recoveries=max(int(details.other_recoveries), 0),
            commission_entry_ids=tuple(c.entry_id for c in commissions),
            tip_ids=tuple(t.tip_id for t in inputs.pending_tips),
            encashment_by_type=by_type,
        )
