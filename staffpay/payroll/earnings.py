"""
Per-staff earnings for a pay period: base salary or wages, allowances,
overtime, commissions and tips.
"""
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Optional, Tuple

from staffpay.core.exceptions import DataIncompleteError
from staffpay.core.money import prorate, to_minor
from staffpay.integrations.contracts import (
    AttendanceService, CommissionLedger, CompensationModel, StaffDirectory, StaffProfile, TipLedger,
)

ZERO = Decimal("0")

@dataclass(frozen=True)
class EarningsSnapshot:
    staff_id: str
    compensation_model: CompensationModel
    working_days: int
    contractual_base: int
    base_salary_or_wages: int
    allowances: int
    overtime_or_shortfall: int
    commission_total: int
    tips_total: int
    unpaid_leave_days: Decimal = ZERO
    days_present: Decimal = ZERO
    hours_worked: Decimal = ZERO
    overtime_hours: Decimal = ZERO
    commission_entry_ids: Tuple[str, ...] = ()
    tip_ids: Tuple[str, ...] = ()

    @property
    def lwp_amount(self) -> int:
        """Base pay withheld for unpaid leave (salaried staff only)."""
        return self.contractual_base - self.base_salary_or_wages

    @property
    def gross(self) -> int:
        """Earned gross, i.e. after leave without pay."""
        return (self.base_salary_or_wages + self.allowances + self.overtime_or_shortfall
                + self.commission_total + self.tips_total)

    @property
    def gross_before_lwp(self) -> int:
        return self.gross + self.lwp_amount

class EarningsAggregator:
    """Collects a staff member's pay inputs for one period from the collaborators."""

    def __init__(
        self,
        directory: StaffDirectory,
        attendance: AttendanceService,
        commissions: CommissionLedger,
        tips: TipLedger,
        working_days: int = 30,
        overtime_multiplier: Decimal = Decimal("1.50"),
    ):
        self.directory = directory
        self.attendance = attendance
        self.commissions = commissions
        self.tips = tips
        self.working_days = working_days
        self.overtime_multiplier = Decimal(overtime_multiplier)

    def aggregate(self, staff_id: str, period_start: date, period_end: date,
                  profile: Optional[StaffProfile] = None) -> EarningsSnapshot:
        profile = profile or self.directory.get_profile(staff_id)
        model = profile.compensation_model

        unpaid = days_present = hours = overtime_hours = ZERO
        contractual = base = overtime_pay = 0

        if model.is_salaried:
            unpaid = self.attendance.get_leave_days(staff_id, period_start, period_end)
            if unpaid is None:
                raise DataIncompleteError([staff_id], "no attendance recorded for period")
            unpaid = Decimal(unpaid)
            if unpaid < 0 or unpaid > self.working_days:
                raise DataIncompleteError([staff_id], f"unpaid leave {unpaid} outside 0-{self.working_days} days")
            days_present = Decimal(self.working_days) - unpaid
            contractual = profile.monthly_salary
            base = contractual - prorate(contractual, unpaid, self.working_days)
        elif model is CompensationModel.HOURLY:
            worked = self.attendance.get_hours_worked(staff_id, period_start, period_end)
            if worked is None:
                raise DataIncompleteError([staff_id], "no hours recorded for period")
            hours = Decimal(worked.regular_hours)
            overtime_hours = Decimal(worked.overtime_hours)
            if hours < 0 or overtime_hours < 0:
                raise DataIncompleteError([staff_id], "negative hours recorded")
            multiplier = profile.overtime_multiplier or self.overtime_multiplier
            base = contractual = to_minor(hours * profile.hourly_rate)
            overtime_pay = to_minor(overtime_hours * profile.hourly_rate * Decimal(multiplier))

        commissions = [
            c for c in self.commissions.list_earned_commissions(staff_id, period_start, period_end)
            if c.status == "earned" and period_start <= c.completed_at.date() <= period_end
        ]
        tips = self.tips.list_tips(staff_id, period_start, period_end)

        return EarningsSnapshot(
            staff_id=staff_id,
            compensation_model=model,
            working_days=self.working_days,
            contractual_base=contractual,
            base_salary_or_wages=base,
            allowances=profile.allowances_total,
            overtime_or_shortfall=overtime_pay,
            commission_total=sum(c.commission_amount for c in commissions),
            tips_total=sum(t.amount for t in tips),
            unpaid_leave_days=unpaid,
            days_present=days_present,
            hours_worked=hours,
            overtime_hours=overtime_hours,
            commission_entry_ids=tuple(c.entry_id for c in commissions),
            tip_ids=tuple(t.tip_id for t in tips),
        )
