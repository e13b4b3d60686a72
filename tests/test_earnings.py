from datetime import date, datetime
from decimal import Decimal

import pytest

from staffpay.core.exceptions import DataIncompleteError
from staffpay.integrations.contracts import CommissionRecord, CompensationModel, StaffProfile
from staffpay.payroll.earnings import EarningsAggregator
from staffpay.payroll.period import PayPeriod

MARCH = PayPeriod.for_month(2025, 3, 30)

def aggregator(c):
    return EarningsAggregator(c.directory, c.attendance, c.commissions, c.tips, working_days=30)

def test_salaried_lwp_scenario(staffed):
    snap = aggregator(staffed).aggregate("S1", MARCH.start, MARCH.end)
    assert snap.contractual_base == 3_000_000
    assert snap.lwp_amount == 200_000
    assert snap.base_salary_or_wages == 2_800_000
    assert snap.gross == 2_800_000
    assert snap.gross_before_lwp == 3_000_000
    assert snap.days_present == Decimal("28")

def test_allowances_added_to_gross(collaborators):
    c = collaborators
    c.directory.add(StaffProfile("S9", compensation_model=CompensationModel.SALARY_PLUS_COMMISSION,
                                 monthly_salary=2_000_000, hra_allowance=300_000, travel_allowance=50_000,
                                 meal_allowance=20_000))
    c.attendance.record_leave("S9", 0)
    snap = aggregator(c).aggregate("S9", MARCH.start, MARCH.end)
    assert snap.allowances == 370_000
    assert snap.gross == 2_370_000

def test_hourly_wages_with_overtime(staffed):
    snap = aggregator(staffed).aggregate("S2", MARCH.start, MARCH.end)
    assert snap.base_salary_or_wages == 3_200_000
    assert snap.overtime_or_shortfall == 300_000  # 10h * 200.00 * 1.5
    assert snap.lwp_amount == 0
    assert snap.gross == 3_500_000

def test_profile_overtime_multiplier_wins(staffed):
    staffed.directory.get_profile("S2").overtime_multiplier = Decimal("2")
    snap = aggregator(staffed).aggregate("S2", MARCH.start, MARCH.end)
    assert snap.overtime_or_shortfall == 400_000

def test_commissions_limited_to_period_and_earned(staffed):
    staffed.commissions.add(CommissionRecord("C0", "S3", 100_000, Decimal("0.1"), 10_000,
                                             datetime(2025, 3, 15), status="paid"))
    snap = aggregator(staffed).aggregate("S3", MARCH.start, MARCH.end)
    assert snap.commission_total == 150_000
    assert set(snap.commission_entry_ids) == {"C1", "C2"}
    assert snap.tips_total == 25_000
    assert snap.tip_ids == ("T1",)
    assert snap.base_salary_or_wages == 0
    assert snap.gross == 175_000

def test_missing_attendance_is_data_incomplete(staffed):
    staffed.attendance.leave_days.pop("S1")
    with pytest.raises(DataIncompleteError) as exc:
        aggregator(staffed).aggregate("S1", MARCH.start, MARCH.end)
    assert exc.value.staff_ids == ["S1"]

def test_missing_hours_is_data_incomplete(staffed):
    staffed.attendance.hours.clear()
    with pytest.raises(DataIncompleteError):
        aggregator(staffed).aggregate("S2", MARCH.start, MARCH.end)

def test_leave_beyond_working_days_rejected(staffed):
    staffed.attendance.record_leave("S1", 31)
    with pytest.raises(DataIncompleteError):
        aggregator(staffed).aggregate("S1", MARCH.start, MARCH.end)

def test_pay_period_bounds():
    feb = PayPeriod.for_month(2024, 2, 30)
    assert feb.end == date(2024, 2, 29)
    assert feb.label == "2024-02"
    with pytest.raises(ValueError):
        PayPeriod.for_month(2025, 13, 30)
