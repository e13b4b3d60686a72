"""
Read-only views of cycles and settlements handed to callers and to report
exporters. Snapshots are frozen copies; nothing an exporter does can reach
back into the database rows they were built from.
"""
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, fields
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Optional, Sequence, Tuple, Union

import pandas as pd

from ..core.exceptions import StateTransitionError
from ..core.money import format_minor
from ..db.models import ExitRecord, PayrollCycle, StaffPayrollEntry
from ..workflow.state_machine import CycleStatus, SettlementStatus, is_at_or_past

MONEY_COLUMNS = {
    "contractual_base", "base_pay", "allowances", "overtime_pay", "commission_total", "tips_total",
    "gross_earnings", "taxable_gross", "income_tax", "provident_fund", "insurance", "professional_tax",
    "advance_recovery", "lwp_deduction", "carried_forward", "carried_in", "total_deductions", "deferred_deduction",
    "net_pay", "pending_commissions", "pending_tips", "leave_encashment", "gratuity", "notice_recovery",
    "advance_outstanding", "other_recoveries", "net_settlement",
}

@dataclass(frozen=True)
class EntrySnapshot:
    id: str
    staff_id: str
    compensation_model: str
    working_days: int
    unpaid_leave_days: Decimal
    days_present: Decimal
    hours_worked: Decimal
    overtime_hours: Decimal
    contractual_base: int
    base_pay: int
    allowances: int
    overtime_pay: int
    commission_total: int
    tips_total: int
    gross_earnings: int
    taxable_gross: int
    income_tax: int
    provident_fund: int
    insurance: int
    professional_tax: int
    advance_recovery: int
    lwp_deduction: int
    carried_forward: int
    carried_in: int
    total_deductions: int
    deferred_deduction: int
    net_pay: int
    negative_balance_flag: bool
    commission_entry_ids: Tuple[str, ...]
    tip_ids: Tuple[str, ...]
    payment_status: str
    payment_reference: Optional[str]

    @classmethod
    def from_model(cls, row: StaffPayrollEntry) -> "EntrySnapshot":
        values = {f.name: getattr(row, f.name) for f in fields(cls)}
        values["commission_entry_ids"] = tuple(row.commission_entry_ids or ())
        values["tip_ids"] = tuple(row.tip_ids or ())
        return cls(**values)

@dataclass(frozen=True)
class CycleSnapshot:
    id: str
    tenant_id: str
    period_year: int
    period_month: int
    period_start: date
    period_end: date
    status: str
    total_staff_count: int
    total_gross_salary: int
    total_commissions: int
    total_tips: int
    total_deductions: int
    total_net_payable: int
    failed_staff: Tuple[Dict[str, Any], ...]
    flagged_staff: Tuple[str, ...]
    rule_set_name: Optional[str]
    processed_at: Optional[datetime]
    approved_at: Optional[datetime]
    paid_at: Optional[datetime]
    locked_at: Optional[datetime]
    ledger_applied_at: Optional[datetime]
    entries: Tuple[EntrySnapshot, ...] = ()

    @classmethod
    def from_model(cls, row: PayrollCycle, with_entries: bool = True) -> "CycleSnapshot":
        values = {f.name: getattr(row, f.name) for f in fields(cls) if f.name != "entries"}
        values["failed_staff"] = tuple(dict(f) for f in (row.failed_staff or ()))
        values["flagged_staff"] = tuple(row.flagged_staff or ())
        values["total_staff_count"] = row.total_staff_count or 0
        entries = tuple(EntrySnapshot.from_model(e) for e in row.entries) if with_entries else ()
        return cls(entries=entries, **values)

    @property
    def period_label(self) -> str:
        return f"{self.period_year:04d}-{self.period_month:02d}"

    def entry_for(self, staff_id: str) -> Optional[EntrySnapshot]:
        return next((e for e in self.entries if e.staff_id == staff_id), None)

@dataclass(frozen=True)
class ExitSnapshot:
    id: str
    staff_id: str
    exit_type: str
    exit_reason: Optional[str]
    resignation_date: date
    last_working_date: date
    required_notice_days: int
    notice_period_served: int
    notice_period_shortfall: int
    waive_notice_recovery: bool
    daily_rate: Decimal
    encashable_leave_days: Decimal
    service_years: int
    pending_commissions: int
    pending_tips: int
    leave_encashment: int
    gratuity: int
    notice_recovery: int
    advance_outstanding: int
    other_recoveries: int
    net_settlement: int
    advance_recovered: Optional[int]
    clearance: Dict[str, bool]
    commission_entry_ids: Tuple[str, ...]
    tip_ids: Tuple[str, ...]
    settlement_status: str
    calculated_at: Optional[datetime]
    approved_at: Optional[datetime]
    paid_at: Optional[datetime]
    completed_at: Optional[datetime]
    ledger_applied_at: Optional[datetime]

    @classmethod
    def from_model(cls, row: ExitRecord) -> "ExitSnapshot":
        values = {f.name: getattr(row, f.name) for f in fields(cls)}
        values["clearance"] = dict(row.clearance or {})
        values["commission_entry_ids"] = tuple(row.commission_entry_ids or ())
        values["tip_ids"] = tuple(row.tip_ids or ())
        return cls(**values)

    @property
    def owes_company(self) -> bool:
        return self.net_settlement < 0

Snapshot = Union[CycleSnapshot, ExitSnapshot]

def to_frame(snapshot: Snapshot) -> pd.DataFrame:
    """Entries of a cycle (one row per staff) or a one-row settlement frame."""
    if isinstance(snapshot, CycleSnapshot):
        rows = [asdict(e) for e in snapshot.entries]
        if not rows:
            return pd.DataFrame(columns=[f.name for f in fields(EntrySnapshot)])
        return pd.DataFrame(rows)
    row = asdict(snapshot)
    for key in ("clearance", "commission_entry_ids", "tip_ids"):
        row.pop(key)
    return pd.DataFrame([row])

def formatted(df: pd.DataFrame, symbol: str = "₹") -> pd.DataFrame:
    """Copy of df with money columns rendered for display."""
    out = df.copy()
    for col in out.columns:
        if col in MONEY_COLUMNS:
            out[col] = out[col].map(lambda v: format_minor(int(v), symbol))
    return out

def ensure_finalized(snapshot: Snapshot) -> None:
    """Exports are only produced from approved (or later) cycles and exit records."""
    if isinstance(snapshot, CycleSnapshot):
        entity, status, milestone = "payroll_cycle", CycleStatus(snapshot.status), CycleStatus.APPROVED
    else:
        entity, status, milestone = ("exit_settlement", SettlementStatus(snapshot.settlement_status),
                                     SettlementStatus.APPROVED)
    if not is_at_or_past(status, milestone):
        raise StateTransitionError(entity, snapshot.id, status.value, "exported",
                                   reason="only approved records can be exported")

class ReportExporter(ABC):
    """Target format for payslips, bank files and settlement letters."""

    def export(self, snapshot: Snapshot, destination: Union[str, Path]) -> Path:
        ensure_finalized(snapshot)
        path = Path(destination)
        path.parent.mkdir(parents=True, exist_ok=True)
        return self.write(snapshot, path)

    @abstractmethod
    def write(self, snapshot: Snapshot, path: Path) -> Path:
        ...

class CsvExporter(ReportExporter):
    def __init__(self, human_readable: bool = False):
        self.human_readable = human_readable

    def write(self, snapshot, path):
        df = to_frame(snapshot)
        if self.human_readable:
            df = formatted(df)
        df.to_csv(path, index=False)
        return path

class PayrollSummary:
    """Cycle-level rollups over a snapshot, in the same shape the dashboard consumes."""

    def __init__(self, snapshot: CycleSnapshot):
        self.snapshot = snapshot
        self.df = to_frame(snapshot)

    def by_compensation_model(self) -> pd.DataFrame:
        if self.df.empty:
            return pd.DataFrame(columns=["compensation_model", "staff", "gross_earnings", "net_pay"])
        grouped = self.df.groupby("compensation_model").agg(
            staff=("staff_id", "count"),
            gross_earnings=("gross_earnings", "sum"),
            net_pay=("net_pay", "sum"),
        )
        return grouped.reset_index()

    def totals(self) -> Dict[str, Any]:
        s = self.snapshot
        return {
            "period": s.period_label,
            "status": s.status,
            "staff": s.total_staff_count,
            "gross": format_minor(s.total_gross_salary),
            "commissions": format_minor(s.total_commissions),
            "tips": format_minor(s.total_tips),
            "deductions": format_minor(s.total_deductions),
            "net_payable": format_minor(s.total_net_payable),
            "flagged": list(s.flagged_staff),
            "failed": [f["staff_id"] for f in s.failed_staff],
        }

    def balanced(self) -> bool:
        """Cycle totals equal the sum of entry amounts."""
        if self.df.empty:
            return self.snapshot.total_net_payable == 0
        return (int(self.df["net_pay"].sum()) == self.snapshot.total_net_payable
                and int(self.df["total_deductions"].sum()) == self.snapshot.total_deductions)
