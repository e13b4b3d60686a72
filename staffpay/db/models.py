from sqlalchemy import (
    Column, String, Integer, BigInteger, Numeric, Date, DateTime, Boolean, JSON, Text,
    ForeignKey, UniqueConstraint, event, inspect,
)
from sqlalchemy.orm import relationship, Session
from datetime import datetime

from staffpay.core.exceptions import ImmutabilityError
from staffpay.db.session import Base
from staffpay.workflow.state_machine import CycleStatus, SettlementStatus, is_at_or_past

class PayrollCycle(Base):
    __tablename__ = "payroll_cycles"
    __table_args__ = (UniqueConstraint("tenant_id", "period_year", "period_month", name="uq_cycle_period"),)

    id = Column(String, primary_key=True)
    tenant_id = Column(String, nullable=False, index=True)
    period_year = Column(Integer, nullable=False)
    period_month = Column(Integer, nullable=False)
    period_start = Column(Date, nullable=False)
    period_end = Column(Date, nullable=False)
    status = Column(String, nullable=False, default=CycleStatus.DRAFT.value)

    total_staff_count = Column(Integer, default=0)
    total_gross_salary = Column(BigInteger, default=0)
    total_commissions = Column(BigInteger, default=0)
    total_tips = Column(BigInteger, default=0)
    total_deductions = Column(BigInteger, default=0)
    total_net_payable = Column(BigInteger, default=0)
    failed_staff = Column(JSON, default=list)   # [{"staff_id", "code", "reason"}]
    flagged_staff = Column(JSON, default=list)  # staff whose deductions were deferred
    rule_set_name = Column(String, nullable=True)

    created_by = Column(String, nullable=True)
    processed_by = Column(String, nullable=True)
    approved_by = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    processing_started_at = Column(DateTime, nullable=True)
    processed_at = Column(DateTime, nullable=True)
    approved_at = Column(DateTime, nullable=True)
    paid_at = Column(DateTime, nullable=True)
    locked_at = Column(DateTime, nullable=True)
    ledger_applied_at = Column(DateTime, nullable=True)  # commissions flipped and advance recoveries recorded

    entries = relationship("StaffPayrollEntry", back_populates="cycle", cascade="all, delete-orphan",
                           order_by="StaffPayrollEntry.staff_id")

    @property
    def period_label(self) -> str:
        return f"{self.period_year:04d}-{self.period_month:02d}"

class StaffPayrollEntry(Base):
    __tablename__ = "staff_payroll_entries"
    __table_args__ = (UniqueConstraint("cycle_id", "staff_id", name="uq_entry_staff"),)

    id = Column(String, primary_key=True)
    cycle_id = Column(String, ForeignKey("payroll_cycles.id"), nullable=False, index=True)
    tenant_id = Column(String, nullable=False)
    staff_id = Column(String, nullable=False, index=True)
    compensation_model = Column(String, nullable=False)

    working_days = Column(Integer, default=0)
    unpaid_leave_days = Column(Numeric(8, 2), default=0)
    days_present = Column(Numeric(8, 2), default=0)
    hours_worked = Column(Numeric(8, 2), default=0)
    overtime_hours = Column(Numeric(8, 2), default=0)

    contractual_base = Column(BigInteger, default=0)
    base_pay = Column(BigInteger, default=0)
    allowances = Column(BigInteger, default=0)
    overtime_pay = Column(BigInteger, default=0)
    commission_total = Column(BigInteger, default=0)
    tips_total = Column(BigInteger, default=0)
    gross_earnings = Column(BigInteger, default=0)
    taxable_gross = Column(BigInteger, default=0)

    income_tax = Column(BigInteger, default=0)
    provident_fund = Column(BigInteger, default=0)
    insurance = Column(BigInteger, default=0)
    professional_tax = Column(BigInteger, default=0)
    advance_recovery = Column(BigInteger, default=0)
    lwp_deduction = Column(BigInteger, default=0)
    carried_forward = Column(BigInteger, default=0)
    carried_in = Column(BigInteger, default=0)  # deferred balance owed when this entry was computed
    total_deductions = Column(BigInteger, default=0)
    deferred_deduction = Column(BigInteger, default=0)
    net_pay = Column(BigInteger, default=0)
    negative_balance_flag = Column(Boolean, default=False)

    commission_entry_ids = Column(JSON, default=list)
    tip_ids = Column(JSON, default=list)

    payment_status = Column(String, default="pending")  # 'pending' / 'paid'
    payment_reference = Column(String, nullable=True)
    settled_at = Column(DateTime, nullable=True)
    recovery_recorded_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    cycle = relationship("PayrollCycle", back_populates="entries")

class CommissionEntry(Base):
    __tablename__ = "commission_entries"
    id = Column(String, primary_key=True)
    tenant_id = Column(String, nullable=False, index=True)
    staff_id = Column(String, nullable=False, index=True)
    service_ref = Column(String, nullable=True)
    service_amount = Column(BigInteger, nullable=False)
    commission_rate = Column(Numeric(6, 4), nullable=False)
    commission_amount = Column(BigInteger, nullable=False)
    completed_at = Column(DateTime, nullable=False)
    status = Column(String, nullable=False, default="earned")  # 'earned' / 'paid'
    paid_at = Column(DateTime, nullable=True)

class ExitRecord(Base):
    __tablename__ = "exit_records"
    __table_args__ = (UniqueConstraint("tenant_id", "staff_id", name="uq_exit_staff"),)

    id = Column(String, primary_key=True)
    tenant_id = Column(String, nullable=False, index=True)
    staff_id = Column(String, nullable=False)
    exit_type = Column(String, nullable=False)
    exit_reason = Column(Text, nullable=True)
    resignation_date = Column(Date, nullable=False)
    last_working_date = Column(Date, nullable=False)
    required_notice_days = Column(Integer, default=0)
    notice_period_served = Column(Integer, default=0)
    notice_period_shortfall = Column(Integer, default=0)
    waive_notice_recovery = Column(Boolean, default=False)

    daily_rate = Column(Numeric(16, 4), default=0)
    encashable_leave_days = Column(Numeric(8, 2), default=0)
    service_years = Column(Integer, default=0)
    pending_commissions = Column(BigInteger, default=0)
    pending_tips = Column(BigInteger, default=0)
    leave_encashment = Column(BigInteger, default=0)
    gratuity = Column(BigInteger, default=0)
    notice_recovery = Column(BigInteger, default=0)
    advance_outstanding = Column(BigInteger, default=0)
    advance_recovered = Column(BigInteger, nullable=True)  # set once recorded on the advance ledger
    other_recoveries = Column(BigInteger, default=0)
    net_settlement = Column(BigInteger, default=0)  # negative means the staff member owes the business

    commission_entry_ids = Column(JSON, default=list)
    tip_ids = Column(JSON, default=list)
    clearance = Column(JSON, default=dict)
    settlement_status = Column(String, nullable=False, default=SettlementStatus.PENDING.value)

    created_by = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    calculated_at = Column(DateTime, nullable=True)
    approved_at = Column(DateTime, nullable=True)
    paid_at = Column(DateTime, nullable=True)
    ledger_applied_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    @property
    def owes_company(self) -> bool:
        return (self.net_settlement or 0) < 0

# Entry columns that may still move after approval
ENTRY_MUTABLE_AFTER_APPROVAL = {"payment_status", "payment_reference", "settled_at", "recovery_recorded_at"}

def _original(obj, attr: str):
    hist = inspect(obj).attrs[attr].history
    if hist.deleted:
        return hist.deleted[0]
    return getattr(obj, attr)

def _changed_columns(obj):
    state = inspect(obj)
    return [a.key for a in state.mapper.column_attrs if state.attrs[a.key].history.has_changes()]

@event.listens_for(Session, "before_flush")
def _guard_frozen_records(session, flush_context, instances):
    for obj in list(session.dirty) + list(session.deleted):
        deleting = obj in session.deleted
        if isinstance(obj, StaffPayrollEntry) and obj.cycle is not None:
            cycle_status = CycleStatus(_original(obj.cycle, "status"))
            if is_at_or_past(cycle_status, CycleStatus.APPROVED):
                changed = [c for c in _changed_columns(obj) if c not in ENTRY_MUTABLE_AFTER_APPROVAL]
                if deleting or changed:
                    raise ImmutabilityError("staff_payroll_entry", obj.id, changed or ["<delete>"])
        elif isinstance(obj, PayrollCycle):
            status = CycleStatus(_original(obj, "status"))
            if deleting and is_at_or_past(status, CycleStatus.PAID):
                raise ImmutabilityError("payroll_cycle", obj.id, ["<delete>"])
            if status is CycleStatus.LOCKED and _changed_columns(obj):
                raise ImmutabilityError("payroll_cycle", obj.id, _changed_columns(obj))
        elif isinstance(obj, ExitRecord):
            status = SettlementStatus(_original(obj, "settlement_status"))
            if status is SettlementStatus.COMPLETED and (deleting or _changed_columns(obj)):
                raise ImmutabilityError("exit_record", obj.id, _changed_columns(obj) or ["<delete>"])
