"""
Monthly payroll cycle orchestration: creation, per-staff processing, the
approval and payment lifecycle, and cycle totals.
"""
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from ..core.audit import AuditLogger
from ..core.config import Settings, settings as default_settings
from ..core.exceptions import (
    ConcurrencyConflictError, DataIncompleteError, DuplicateRecordError, NegativeBalanceWarning,
    NotFoundError, StateTransitionError,
)
from ..core.locks import KeyedLockRegistry, default_locks
from ..core.utils import setup_logging
from ..db.models import PayrollCycle, StaffPayrollEntry
from ..integrations.contracts import Collaborators, StaffProfile
from ..reports.snapshot import CycleSnapshot
from ..tax.registry import TaxRuleRegistry
from ..tax.rules import TaxRuleSet
from ..workflow.state_machine import CycleStatus, assert_transition, is_at_or_past
from .deductions import DeductionBreakdown, DeductionCalculator
from .earnings import EarningsAggregator, EarningsSnapshot
from .period import PayPeriod

ENTITY = "payroll_cycle"

@dataclass
class StaffBalance:
    deferred: int = 0
    advance_reserved: int = 0

@dataclass
class StaffOutcome:
    profile: StaffProfile
    earnings: EarningsSnapshot
    deductions: DeductionBreakdown

@dataclass
class CycleResult:
    cycle: CycleSnapshot
    failures: List[Dict[str, Any]] = field(default_factory=list)
    flagged_staff: List[str] = field(default_factory=list)
    already_processed: bool = False

    @property
    def success(self) -> bool:
        return not self.failures

    def to_dict(self) -> Dict[str, Any]:
        c = self.cycle
        return {
            "cycle_id": c.id,
            "period": c.period_label,
            "status": c.status,
            "total_staff_count": c.total_staff_count,
            "total_net_payable": c.total_net_payable,
            "failures": self.failures,
            "flagged_staff": self.flagged_staff,
            "already_processed": self.already_processed,
        }

class PayrollCycleManager:
    """Owns the payroll cycle state machine and every write to cycles and their entries."""

    def __init__(
        self,
        tenant_id: str,
        session_factory: sessionmaker,
        collaborators: Collaborators,
        tax_registry: Optional[TaxRuleRegistry] = None,
        config: Optional[Settings] = None,
        locks: Optional[KeyedLockRegistry] = None,
        audit: Optional[AuditLogger] = None,
    ):
        self.tenant_id = tenant_id
        self.session_factory = session_factory
        self.collaborators = collaborators
        self.config = config or default_settings
        self.tax_registry = tax_registry or TaxRuleRegistry(TaxRuleSet.from_settings(self.config))
        self.locks = locks or default_locks
        self.audit = audit or AuditLogger(tenant_id, self.config.AUDIT_LOG_PATH)
        self.logger = setup_logging(tenant_id, config=self.config)
        self.aggregator = EarningsAggregator(
            collaborators.directory,
            collaborators.attendance,
            collaborators.commissions,
            collaborators.tips,
            working_days=self.config.STANDARD_DAYS_PER_MONTH,
            overtime_multiplier=self.config.OVERTIME_MULTIPLIER,
        )

    # ---- reads -------------------------------------------------------------

    def _get(self, session, cycle_id: str, for_update: bool = False) -> PayrollCycle:
        stmt = select(PayrollCycle).where(PayrollCycle.id == cycle_id, PayrollCycle.tenant_id == self.tenant_id)
        if for_update:
            stmt = stmt.with_for_update()
        cycle = session.execute(stmt).scalar_one_or_none()
        if cycle is None:
            raise NotFoundError(ENTITY, cycle_id)
        return cycle

    def get_cycle(self, cycle_id: str) -> CycleSnapshot:
        with self.session_factory() as session:
            return CycleSnapshot.from_model(self._get(session, cycle_id))

    def list_cycles(self, year: Optional[int] = None) -> List[CycleSnapshot]:
        """Cycles newest period first, without entries."""
        stmt = select(PayrollCycle).where(PayrollCycle.tenant_id == self.tenant_id)
        if year is not None:
            stmt = stmt.where(PayrollCycle.period_year == year)
        stmt = stmt.order_by(PayrollCycle.period_year.desc(), PayrollCycle.period_month.desc())
        with self.session_factory() as session:
            return [CycleSnapshot.from_model(c, with_entries=False) for c in session.execute(stmt).scalars()]

    # ---- create ------------------------------------------------------------

    def create_cycle(self, year: int, month: int, created_by: Optional[str] = None) -> CycleResult:
        period = PayPeriod.for_month(year, month, self.config.STANDARD_DAYS_PER_MONTH)
        with self.session_factory() as session:
            existing = session.execute(
                select(PayrollCycle.id).where(
                    PayrollCycle.tenant_id == self.tenant_id,
                    PayrollCycle.period_year == year,
                    PayrollCycle.period_month == month,
                )
            ).scalar_one_or_none()
            if existing:
                raise DuplicateRecordError(ENTITY, period.label, existing)
            cycle = PayrollCycle(
                id=str(uuid.uuid4()),
                tenant_id=self.tenant_id,
                period_year=year,
                period_month=month,
                period_start=period.start,
                period_end=period.end,
                status=CycleStatus.DRAFT.value,
                failed_staff=[],
                flagged_staff=[],
                created_by=created_by,
            )
            session.add(cycle)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                raise DuplicateRecordError(ENTITY, period.label)
            snapshot = CycleSnapshot.from_model(cycle)

        self.audit.log_data_change(ENTITY, "create", cycle.id, {"period": period.label, "status": "draft"},
                                   user_id=created_by)
        self.logger.info(f"Created payroll cycle {cycle.id} for {period.label}")
        return CycleResult(cycle=snapshot)

    # ---- process -----------------------------------------------------------

    def _compare_and_set(self, cycle_id: str, expected: CycleStatus, target: CycleStatus, **values) -> bool:
        assert_transition(expected, target, cycle_id)
        with self.session_factory() as session:
            result = session.execute(
                update(PayrollCycle)
                .where(
                    PayrollCycle.id == cycle_id,
                    PayrollCycle.tenant_id == self.tenant_id,
                    PayrollCycle.status == expected.value,
                )
                .values(status=target.value, **values)
            )
            session.commit()
            return result.rowcount == 1

    def _is_stale(self, cycle: PayrollCycle) -> bool:
        started = cycle.processing_started_at
        if started is None:
            return True
        return datetime.utcnow() - started > timedelta(seconds=self.config.PROCESSING_TIMEOUT_SECONDS)

    def _staff_balances(self, session, cycle_id: str) -> Dict[str, StaffBalance]:
        """
        What each staff member still owes from other processed cycles, in any
        period order: deferred deductions not yet collected, and advance
        recoveries reserved by entries whose payment has not been recorded.
        """
        processed = [s.value for s in CycleStatus if is_at_or_past(s, CycleStatus.PENDING_APPROVAL)]
        rows = session.execute(
            select(
                StaffPayrollEntry.staff_id,
                StaffPayrollEntry.deferred_deduction,
                StaffPayrollEntry.carried_in,
                StaffPayrollEntry.advance_recovery,
                StaffPayrollEntry.recovery_recorded_at,
            )
            .join(PayrollCycle, StaffPayrollEntry.cycle_id == PayrollCycle.id)
            .where(
                PayrollCycle.tenant_id == self.tenant_id,
                PayrollCycle.status.in_(processed),
                PayrollCycle.id != cycle_id,
            )
        ).all()
        balances: Dict[str, StaffBalance] = {}
        for staff_id, deferred, carried_in, recovery, recorded_at in rows:
            balance = balances.setdefault(staff_id, StaffBalance())
            # each entry re-defers whatever part of its carried-in balance it could not collect
            balance.deferred += (deferred or 0) - (carried_in or 0)
            if recovery and recorded_at is None:
                balance.advance_reserved += recovery
        return balances

    def _compute_staff(self, profile: StaffProfile, period: PayPeriod, calculator: DeductionCalculator,
                       balance: StaffBalance) -> StaffOutcome:
        earnings = self.aggregator.aggregate(profile.staff_id, period.start, period.end, profile=profile)
        deductions = calculator.compute_deductions(
            earnings, profile.tax_profile,
            carried_forward=max(balance.deferred, 0),
            advance_reserved=balance.advance_reserved,
        )
        return StaffOutcome(profile, earnings, deductions)

    def _compute_all(self, period: PayPeriod, rule_set: TaxRuleSet, balances: Dict[str, StaffBalance]):
        calculator = DeductionCalculator(rule_set, self.collaborators.advances)
        staff = [
            p for p in self.collaborators.directory.list_active_staff()
            if p.joining_date is None or p.joining_date <= period.end
        ]
        outcomes: List[StaffOutcome] = []
        failures: List[Dict[str, Any]] = []
        with ThreadPoolExecutor(max_workers=self.config.MAX_WORKERS) as pool:
            futures = {
                pool.submit(self._compute_staff, p, period, calculator,
                            balances.get(p.staff_id, StaffBalance())): p.staff_id
                for p in staff
            }
            for future in as_completed(futures):
                staff_id = futures[future]
                try:
                    outcomes.append(future.result())
                except DataIncompleteError as e:
                    self.logger.warning(f"Skipping {staff_id} in {period.label}: {e.reason}")
                    failures.append({"staff_id": staff_id, "code": e.code, "reason": e.reason})
        outcomes.sort(key=lambda o: o.profile.staff_id)
        failures.sort(key=lambda f: f["staff_id"])
        return outcomes, failures

    def _build_entry(self, cycle: PayrollCycle, outcome: StaffOutcome) -> StaffPayrollEntry:
        e, d = outcome.earnings, outcome.deductions
        return StaffPayrollEntry(
            id=str(uuid.uuid4()),
            cycle_id=cycle.id,
            tenant_id=self.tenant_id,
            staff_id=e.staff_id,
            compensation_model=e.compensation_model.value,
            working_days=e.working_days,
            unpaid_leave_days=e.unpaid_leave_days,
            days_present=e.days_present,
            hours_worked=e.hours_worked,
            overtime_hours=e.overtime_hours,
            contractual_base=e.contractual_base,
            base_pay=e.base_salary_or_wages,
            allowances=e.allowances,
            overtime_pay=e.overtime_or_shortfall,
            commission_total=e.commission_total,
            tips_total=e.tips_total,
            gross_earnings=d.gross_earnings,
            taxable_gross=d.taxable_gross,
            income_tax=d.income_tax,
            provident_fund=d.provident_fund,
            insurance=d.insurance,
            professional_tax=d.professional_tax,
            advance_recovery=d.advance_recovery,
            lwp_deduction=d.lwp_deduction,
            carried_forward=d.carried_forward,
            carried_in=d.carried_in,
            total_deductions=d.total,
            deferred_deduction=d.deferred,
            net_pay=d.net_pay,
            negative_balance_flag=d.flagged,
            commission_entry_ids=list(e.commission_entry_ids),
            tip_ids=list(e.tip_ids),
            payment_status="pending",
        )

    @staticmethod
    def _apply_totals(cycle: PayrollCycle, entries: Sequence[StaffPayrollEntry]):
        cycle.total_staff_count = len(entries)
        cycle.total_commissions = sum(e.commission_total for e in entries)
        cycle.total_tips = sum(e.tips_total for e in entries)
        cycle.total_gross_salary = sum(e.gross_earnings - e.commission_total - e.tips_total for e in entries)
        cycle.total_deductions = sum(e.total_deductions for e in entries)
        cycle.total_net_payable = sum(e.net_pay for e in entries)

    def _write_back(self, cycle_id: str, rule_set: TaxRuleSet, balances: Dict[str, StaffBalance],
                    outcomes: List[StaffOutcome], failures: List[Dict[str, Any]],
                    processed_by: Optional[str]) -> CycleSnapshot:
        with self.session_factory() as session, session.begin():
            cycle = self._get(session, cycle_id, for_update=True)
            if cycle.status != CycleStatus.PROCESSING.value:
                raise ConcurrencyConflictError(ENTITY, cycle_id)
            if self._staff_balances(session, cycle_id) != balances:
                # another cycle collected or reserved the same balances meanwhile
                raise ConcurrencyConflictError(ENTITY, cycle_id)
            stale = list(cycle.entries)
            if stale:
                # deletes must hit the table before the replacement rows (uq_entry_staff)
                for old in stale:
                    session.delete(old)
                session.flush()
                session.expire(cycle, ["entries"])
            entries = [self._build_entry(cycle, o) for o in outcomes]
            cycle.entries = entries
            self._apply_totals(cycle, entries)
            cycle.failed_staff = failures
            cycle.flagged_staff = [e.staff_id for e in entries if e.negative_balance_flag]
            cycle.rule_set_name = rule_set.name
            cycle.processed_by = processed_by
            cycle.processed_at = datetime.utcnow()
            cycle.status = assert_transition(CycleStatus.PROCESSING, CycleStatus.PENDING_APPROVAL, cycle_id).value
            session.flush()
            return CycleSnapshot.from_model(cycle)

    def process_cycle(self, cycle_id: str, processed_by: Optional[str] = None) -> CycleResult:
        """
        Compute every active staff member's entry and move the cycle to
        pending_approval in one commit.

        Staff with incomplete data are left out and reported in
        ``failures``; the rest of the cycle proceeds. Calling this on a cycle
        already at pending_approval or later returns the stored result and
        touches nothing. Any fatal error puts the cycle back in draft.
        """
        with self.locks.hold(ENTITY, cycle_id):
            with self.session_factory() as session:
                cycle = self._get(session, cycle_id)
                status = CycleStatus(cycle.status)
                if is_at_or_past(status, CycleStatus.PENDING_APPROVAL):
                    snapshot = CycleSnapshot.from_model(cycle)
                    return CycleResult(snapshot, list(snapshot.failed_staff), list(snapshot.flagged_staff),
                                       already_processed=True)
                if status is CycleStatus.PROCESSING:
                    if not self._is_stale(cycle):
                        raise ConcurrencyConflictError(ENTITY, cycle_id)
                    self.logger.warning(f"Resetting abandoned processing attempt on cycle {cycle_id}")
                    if self._compare_and_set(cycle_id, CycleStatus.PROCESSING, CycleStatus.DRAFT):
                        self.audit.log_transition(ENTITY, cycle_id, "processing", "draft", reason="abandoned")
                period = PayPeriod(cycle.period_year, cycle.period_month, cycle.period_start, cycle.period_end,
                                   self.config.STANDARD_DAYS_PER_MONTH)
                rule_set = self.tax_registry.for_date(cycle.period_start)
                rule_set.validate()
                balances = self._staff_balances(session, cycle_id)

            if not self._compare_and_set(cycle_id, CycleStatus.DRAFT, CycleStatus.PROCESSING,
                                         processing_started_at=datetime.utcnow()):
                raise ConcurrencyConflictError(ENTITY, cycle_id)
            self.audit.log_transition(ENTITY, cycle_id, "draft", "processing", user_id=processed_by)

            try:
                outcomes, failures = self._compute_all(period, rule_set, balances)
                if failures and not outcomes:
                    raise DataIncompleteError([f["staff_id"] for f in failures], "no staff member could be processed")
                snapshot = self._write_back(cycle_id, rule_set, balances, outcomes, failures, processed_by)
            except Exception:
                self.logger.exception(f"Processing failed for cycle {cycle_id}; returning it to draft")
                if self._compare_and_set(cycle_id, CycleStatus.PROCESSING, CycleStatus.DRAFT):
                    self.audit.log_transition(ENTITY, cycle_id, "processing", "draft", user_id=processed_by,
                                              reason="rollback")
                raise

        self.audit.log_transition(
            ENTITY, cycle_id, "processing", "pending_approval", user_id=processed_by,
            total_net_payable=snapshot.total_net_payable, staff=snapshot.total_staff_count,
            failed=[f["staff_id"] for f in failures],
        )
        for entry in snapshot.entries:
            self.audit.log_data_change("staff_payroll_entry", "compute", entry.id, {
                "cycle_id": cycle_id,
                "staff_id": entry.staff_id,
                "gross_earnings": entry.gross_earnings,
                "total_deductions": entry.total_deductions,
                "net_pay": entry.net_pay,
                "carried_in": entry.carried_in,
                "deferred_deduction": entry.deferred_deduction,
            }, user_id=processed_by)
        self.logger.info(
            f"Processed cycle {cycle_id} ({snapshot.period_label}): {snapshot.total_staff_count} entries, "
            f"{len(failures)} failed, net payable {snapshot.total_net_payable}"
        )
        return CycleResult(snapshot, failures, list(snapshot.flagged_staff))

    # ---- approve / pay / lock ----------------------------------------------

    def approve_cycle(self, cycle_id: str, approved_by: Optional[str] = None,
                      acknowledge_warnings: bool = False) -> CycleResult:
        with self.locks.hold(ENTITY, cycle_id):
            with self.session_factory() as session, session.begin():
                cycle = self._get(session, cycle_id, for_update=True)
                current = CycleStatus(cycle.status)
                assert_transition(current, CycleStatus.APPROVED, cycle_id)
                if cycle.flagged_staff and not acknowledge_warnings:
                    deferred = sum(e.deferred_deduction for e in cycle.entries)
                    raise NegativeBalanceWarning(ENTITY, cycle_id, cycle.flagged_staff, deferred)
                cycle.status = CycleStatus.APPROVED.value
                cycle.approved_by = approved_by
                cycle.approved_at = datetime.utcnow()
                session.flush()
                snapshot = CycleSnapshot.from_model(cycle)

        self.audit.log_transition(ENTITY, cycle_id, current.value, "approved", user_id=approved_by,
                                  acknowledged=list(snapshot.flagged_staff) if acknowledge_warnings else [])
        return CycleResult(snapshot, list(snapshot.failed_staff), list(snapshot.flagged_staff))

    def settle_entries(self, cycle_id: str, staff_ids: Optional[Sequence[str]] = None,
                       payment_reference: Optional[str] = None, settled_by: Optional[str] = None) -> CycleResult:
        """Record payout of entries (all of them when staff_ids is None) on an approved cycle."""
        with self.locks.hold(ENTITY, cycle_id):
            with self.session_factory() as session, session.begin():
                cycle = self._get(session, cycle_id, for_update=True)
                if cycle.status != CycleStatus.APPROVED.value:
                    raise StateTransitionError("staff_payroll_entry", cycle_id, cycle.status, "paid",
                                               reason="entries can only be settled on an approved cycle")
                wanted = None if staff_ids is None else set(staff_ids)
                unknown = sorted((wanted or set()) - {e.staff_id for e in cycle.entries})
                if unknown:
                    raise NotFoundError("staff_payroll_entry", ", ".join(unknown))
                now = datetime.utcnow()
                settled = []
                for entry in cycle.entries:
                    if entry.payment_status == "paid" or (wanted is not None and entry.staff_id not in wanted):
                        continue
                    entry.payment_status = "paid"
                    entry.payment_reference = payment_reference
                    entry.settled_at = now
                    settled.append(entry.staff_id)
                session.flush()
                snapshot = CycleSnapshot.from_model(cycle)

        if settled:
            self.audit.log_data_change(ENTITY, "settle", cycle_id,
                                       {"staff_ids": settled, "payment_reference": payment_reference},
                                       user_id=settled_by)
        return CycleResult(snapshot, list(snapshot.failed_staff), list(snapshot.flagged_staff))

    def _apply_ledger(self, cycle_id: str, paid_by: Optional[str]) -> int:
        """
        Flip the cycle's commissions to paid and record each entry's advance
        recovery. Entries are stamped as their recovery is recorded, so a
        repeat call after a failure only finishes what is left.
        """
        with self.session_factory() as session:
            cycle = self._get(session, cycle_id)
            commission_ids = [cid for e in cycle.entries for cid in (e.commission_entry_ids or ())]
            pending = [(e.id, e.staff_id, e.advance_recovery) for e in cycle.entries
                       if e.advance_recovery and e.recovery_recorded_at is None]

        flipped = self.collaborators.commissions.mark_paid(commission_ids)
        for entry_id, staff_id, amount in pending:
            self.collaborators.advances.record_recovery(staff_id, amount)
            with self.session_factory() as session, session.begin():
                session.execute(
                    update(StaffPayrollEntry)
                    .where(StaffPayrollEntry.id == entry_id)
                    .values(recovery_recorded_at=datetime.utcnow())
                )
        with self.session_factory() as session, session.begin():
            session.execute(
                update(PayrollCycle)
                .where(PayrollCycle.id == cycle_id, PayrollCycle.tenant_id == self.tenant_id)
                .values(ledger_applied_at=datetime.utcnow())
            )
        self.audit.log_data_change(ENTITY, "ledger", cycle_id, {
            "commissions_marked_paid": flipped,
            "advance_recoveries": {staff_id: amount for _, staff_id, amount in pending},
        }, user_id=paid_by)
        return flipped

    def mark_paid(self, cycle_id: str, paid_by: Optional[str] = None) -> CycleResult:
        """
        approved -> paid. Every entry must already be settled. Commission
        entries are flipped to paid and advance recoveries recorded only
        after the cycle itself is committed as paid. If those ledger updates
        fail, calling this again on the paid cycle completes them.
        """
        with self.locks.hold(ENTITY, cycle_id):
            with self.session_factory() as session, session.begin():
                cycle = self._get(session, cycle_id, for_update=True)
                current = CycleStatus(cycle.status)
                resuming = current is CycleStatus.PAID and cycle.ledger_applied_at is None
                if not resuming:
                    assert_transition(current, CycleStatus.PAID, cycle_id)
                    unsettled = [e.staff_id for e in cycle.entries if e.payment_status != "paid"]
                    if unsettled:
                        raise StateTransitionError(ENTITY, cycle_id, current.value, "paid",
                                                   reason="entries not settled", staff_ids=unsettled)
                    cycle.status = CycleStatus.PAID.value
                    cycle.paid_at = datetime.utcnow()

            if resuming:
                self.logger.warning(f"Cycle {cycle_id} is paid but its ledger updates are incomplete; resuming")
            else:
                self.audit.log_transition(ENTITY, cycle_id, current.value, "paid", user_id=paid_by)
            flipped = self._apply_ledger(cycle_id, paid_by)
            snapshot = self.get_cycle(cycle_id)

        self.logger.info(f"Cycle {cycle_id} paid; {flipped} commission entries marked paid")
        return CycleResult(snapshot, list(snapshot.failed_staff), list(snapshot.flagged_staff))

    def lock_cycle(self, cycle_id: str, locked_by: Optional[str] = None) -> CycleResult:
        with self.locks.hold(ENTITY, cycle_id):
            with self.session_factory() as session, session.begin():
                cycle = self._get(session, cycle_id, for_update=True)
                current = CycleStatus(cycle.status)
                assert_transition(current, CycleStatus.LOCKED, cycle_id)
                if cycle.ledger_applied_at is None:
                    raise StateTransitionError(ENTITY, cycle_id, current.value, "locked",
                                               reason="ledger updates pending; call mark_paid again")
                cycle.status = CycleStatus.LOCKED.value
                cycle.locked_at = datetime.utcnow()
                session.flush()
                snapshot = CycleSnapshot.from_model(cycle)

        self.audit.log_transition(ENTITY, cycle_id, current.value, "locked", user_id=locked_by)
        return CycleResult(snapshot, list(snapshot.failed_staff), list(snapshot.flagged_staff))
