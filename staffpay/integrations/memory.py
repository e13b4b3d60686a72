"""
In-process collaborator implementations, used when embedding the engine in a
single process and throughout the test suite.
"""
import threading
from datetime import date
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

from staffpay.core.exceptions import NotFoundError
from staffpay.integrations.contracts import (
    AdvanceLedger, AttendanceService, CommissionLedger, CommissionRecord, HoursWorked,
    LeaveBalance, StaffDirectory, StaffProfile, TipLedger, TipRecord,
)

def _in_range(day: date, start: Optional[date], end: date) -> bool:
    return (start is None or day >= start) and day <= end

class InMemoryAttendance(AttendanceService):
    def __init__(self):
        self.leave_days: Dict[str, Decimal] = {}
        self.hours: Dict[str, HoursWorked] = {}
        self.balances: Dict[str, LeaveBalance] = {}

    def record_leave(self, staff_id: str, unpaid_days) -> None:
        self.leave_days[staff_id] = Decimal(str(unpaid_days))

    def record_hours(self, staff_id: str, regular, overtime=0) -> None:
        self.hours[staff_id] = HoursWorked(Decimal(str(regular)), Decimal(str(overtime)))

    def set_leave_balance(self, balance: LeaveBalance) -> None:
        self.balances[balance.staff_id] = balance

    def get_leave_days(self, staff_id, start, end):
        return self.leave_days.get(staff_id)

    def get_hours_worked(self, staff_id, start, end):
        return self.hours.get(staff_id)

    def get_leave_balance(self, staff_id):
        return self.balances.get(staff_id, LeaveBalance(staff_id))

class InMemoryCommissionLedger(CommissionLedger):
    def __init__(self, records: Sequence[CommissionRecord] = ()):
        self._lock = threading.Lock()
        self.records: Dict[str, CommissionRecord] = {r.entry_id: r for r in records}
        self.mark_paid_calls: List[List[str]] = []

    def add(self, record: CommissionRecord) -> CommissionRecord:
        with self._lock:
            self.records[record.entry_id] = record
        return record

    def list_earned_commissions(self, staff_id, start, end):
        return [
            r for r in self.records.values()
            if r.staff_id == staff_id and r.status == "earned" and _in_range(r.completed_at.date(), start, end)
        ]

    def mark_paid(self, entry_ids):
        flipped = 0
        with self._lock:
            self.mark_paid_calls.append(list(entry_ids))
            for entry_id in entry_ids:
                rec = self.records.get(entry_id)
                if rec is None or rec.status == "paid":
                    continue
                self.records[entry_id] = CommissionRecord(
                    rec.entry_id, rec.staff_id, rec.service_amount, rec.commission_rate,
                    rec.commission_amount, rec.completed_at, status="paid",
                )
                flipped += 1
        return flipped

class InMemoryTipLedger(TipLedger):
    def __init__(self, tips: Sequence[TipRecord] = ()):
        self.tips: List[TipRecord] = list(tips)

    def add(self, tip: TipRecord) -> TipRecord:
        self.tips.append(tip)
        return tip

    def list_tips(self, staff_id, start, end):
        return [t for t in self.tips if t.staff_id == staff_id and _in_range(t.recorded_on, start, end)]

class InMemoryAdvanceLedger(AdvanceLedger):
    def __init__(self):
        self._lock = threading.Lock()
        self.outstanding: Dict[str, int] = {}
        self.installments: Dict[str, int] = {}
        self.recoveries: List[Dict[str, int]] = []

    def grant(self, staff_id: str, amount: int, installment: int) -> None:
        with self._lock:
            self.outstanding[staff_id] = self.outstanding.get(staff_id, 0) + amount
            self.installments[staff_id] = installment

    def get_outstanding_advance(self, staff_id):
        return self.outstanding.get(staff_id, 0)

    def get_installment(self, staff_id):
        return self.installments.get(staff_id, 0)

    def record_recovery(self, staff_id, amount):
        with self._lock:
            remaining = max(self.outstanding.get(staff_id, 0) - amount, 0)
            self.outstanding[staff_id] = remaining
            self.recoveries.append({"staff_id": staff_id, "amount": amount})
        return remaining

class InMemoryStaffDirectory(StaffDirectory):
    def __init__(self, profiles: Sequence[StaffProfile] = ()):
        self.profiles: Dict[str, StaffProfile] = {p.staff_id: p for p in profiles}

    def add(self, profile: StaffProfile) -> StaffProfile:
        self.profiles[profile.staff_id] = profile
        return profile

    def get_profile(self, staff_id):
        profile = self.profiles.get(staff_id)
        if profile is None:
            raise NotFoundError("staff", staff_id)
        return profile

    def list_active_staff(self):
        return [p for p in self.profiles.values() if p.status == "active"]

    def mark_exited(self, staff_id, status):
        self.get_profile(staff_id).status = status
