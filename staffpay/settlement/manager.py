"""
Exit records and the settlement lifecycle:
pending -> calculated -> approved -> paid -> completed.
"""
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Set, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from ..core.audit import AuditLogger
from ..core.config import Settings, settings as default_settings
from ..core.exceptions import (
    DuplicateRecordError, NegativeBalanceWarning, NotFoundError, StateTransitionError,
)
from ..core.locks import KeyedLockRegistry, default_locks
from ..core.utils import setup_logging
from ..db.models import ExitRecord, StaffPayrollEntry
from ..integrations.contracts import Collaborators, ExitType
from ..reports.snapshot import ExitSnapshot
from ..workflow.state_machine import SettlementStatus, assert_transition, is_at_or_past
from .calculator import ExitDetails, SettlementCalculator, SettlementInputs

ENTITY = "exit_settlement"

_RATE_PLACES = Decimal("0.0001")

CLEARANCE_ITEMS = ("uniform", "id_card", "tools", "keys", "documents", "pending_dues")

@dataclass
class SettlementResult:
    exit: ExitSnapshot
    warnings: List[str] = field(default_factory=list)
    already_calculated: bool = False

    def to_dict(self) -> Dict[str, Any]:
        e = self.exit
        return {
            "exit_id": e.id,
            "staff_id": e.staff_id,
            "status": e.settlement_status,
            "net_settlement": e.net_settlement,
            "owes_company": e.owes_company,
            "warnings": self.warnings,
            "already_calculated": self.already_calculated,
        }

def _warnings(row: ExitRecord) -> List[str]:
    return ["staff_owes_company"] if row.owes_company else []

class SettlementManager:
    def __init__(
        self,
        tenant_id: str,
        session_factory: sessionmaker,
        collaborators: Collaborators,
        config: Optional[Settings] = None,
        locks: Optional[KeyedLockRegistry] = None,
        audit: Optional[AuditLogger] = None,
    ):
        self.tenant_id = tenant_id
        self.session_factory = session_factory
        self.collaborators = collaborators
        self.config = config or default_settings
        self.locks = locks or default_locks
        self.audit = audit or AuditLogger(tenant_id, self.config.AUDIT_LOG_PATH)
        self.logger = setup_logging(tenant_id, config=self.config)
        self.calculator = SettlementCalculator(self.config)

    def _get(self, session, exit_id: str, for_update: bool = False) -> ExitRecord:
        stmt = select(ExitRecord).where(ExitRecord.id == exit_id, ExitRecord.tenant_id == self.tenant_id)
        if for_update:
            stmt = stmt.with_for_update()
        row = session.execute(stmt).scalar_one_or_none()
        if row is None:
            raise NotFoundError(ENTITY, exit_id)
        return row

    def get_exit(self, exit_id: str) -> ExitSnapshot:
        with self.session_factory() as session:
            return ExitSnapshot.from_model(self._get(session, exit_id))

    def list_exits(self, status: Optional[str] = None) -> List[ExitSnapshot]:
        stmt = select(ExitRecord).where(ExitRecord.tenant_id == self.tenant_id)
        if status:
            stmt = stmt.where(ExitRecord.settlement_status == status)
        with self.session_factory() as session:
            rows = session.execute(stmt.order_by(ExitRecord.created_at.desc())).scalars()
            return [ExitSnapshot.from_model(r) for r in rows]

    # ---- initiate ----------------------------------------------------------

    def initiate_exit(self, staff_id: str, details: ExitDetails, created_by: Optional[str] = None) -> SettlementResult:
        if details.last_working_date < details.resignation_date:
            raise ValueError("last_working_date cannot be before resignation_date")
        profile = self.collaborators.directory.get_profile(staff_id)
        exit_type = ExitType(details.exit_type)
        served = details.served_days()

        with self.session_factory() as session:
            existing = session.execute(
                select(ExitRecord.id).where(ExitRecord.tenant_id == self.tenant_id, ExitRecord.staff_id == staff_id)
            ).scalar_one_or_none()
            if existing:
                raise DuplicateRecordError(ENTITY, staff_id, existing)
            row = ExitRecord(
                id=str(uuid.uuid4()),
                tenant_id=self.tenant_id,
                staff_id=staff_id,
                exit_type=exit_type.value,
                exit_reason=details.exit_reason,
                resignation_date=details.resignation_date,
                last_working_date=details.last_working_date,
                required_notice_days=profile.notice_period_days,
                notice_period_served=served,
                notice_period_shortfall=max(0, profile.notice_period_days - served),
                waive_notice_recovery=details.waive_notice_recovery,
                other_recoveries=details.other_recoveries,
                clearance={item: False for item in CLEARANCE_ITEMS},
                commission_entry_ids=[],
                tip_ids=[],
                settlement_status=SettlementStatus.PENDING.value,
                created_by=created_by,
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                raise DuplicateRecordError(ENTITY, staff_id)
            snapshot = ExitSnapshot.from_model(row)

        self.collaborators.directory.mark_exited(staff_id, exit_type.profile_status)
        self.audit.log_data_change(ENTITY, "create", row.id, {
            "staff_id": staff_id, "exit_type": exit_type.value, "status": "pending",
            "last_working_date": details.last_working_date,
        }, user_id=created_by)
        self.logger.info(f"Exit initiated for {staff_id} ({exit_type.value}), record {row.id}")
        return SettlementResult(snapshot)

    # ---- calculate ---------------------------------------------------------

    def _consumed_ids(self, session, staff_id: str) -> Tuple[Set[str], Set[str]]:
        """Commission and tip ids already carried by a payroll entry."""
        rows = session.execute(
            select(StaffPayrollEntry.commission_entry_ids, StaffPayrollEntry.tip_ids).where(
                StaffPayrollEntry.tenant_id == self.tenant_id,
                StaffPayrollEntry.staff_id == staff_id,
            )
        ).all()
        commissions, tips = set(), set()
        for commission_ids, tip_ids in rows:
            commissions.update(commission_ids or ())
            tips.update(tip_ids or ())
        return commissions, tips

    def _gather_inputs(self, session, row: ExitRecord) -> SettlementInputs:
        consumed_commissions, consumed_tips = self._consumed_ids(session, row.staff_id)
        c = self.collaborators
        commissions = [
            r for r in c.commissions.list_earned_commissions(row.staff_id, None, row.last_working_date)
            if r.entry_id not in consumed_commissions
        ]
        tips = [t for t in c.tips.list_tips(row.staff_id, None, row.last_working_date)
                if t.tip_id not in consumed_tips]
        return SettlementInputs(
            pending_commissions=commissions,
            pending_tips=tips,
            leave_balance=c.attendance.get_leave_balance(row.staff_id),
            advance_outstanding=c.advances.get_outstanding_advance(row.staff_id),
        )

    @staticmethod
    def _details(row: ExitRecord) -> ExitDetails:
        return ExitDetails(
            exit_type=ExitType(row.exit_type),
            resignation_date=row.resignation_date,
            last_working_date=row.last_working_date,
            exit_reason=row.exit_reason,
            notice_period_served=row.notice_period_served,
            waive_notice_recovery=bool(row.waive_notice_recovery),
            other_recoveries=row.other_recoveries or 0,
            required_notice_days=row.required_notice_days,
        )

    def calculate_settlement(self, exit_id: str, calculated_by: Optional[str] = None) -> SettlementResult:
        """
        Compute the settlement and move the record to calculated. A record
        already calculated or further along is returned as stored.
        """
        with self.locks.hold(ENTITY, exit_id):
            with self.session_factory() as session, session.begin():
                row = self._get(session, exit_id, for_update=True)
                status = SettlementStatus(row.settlement_status)
                if is_at_or_past(status, SettlementStatus.CALCULATED):
                    return SettlementResult(ExitSnapshot.from_model(row), _warnings(row), already_calculated=True)
                assert_transition(status, SettlementStatus.CALCULATED, exit_id)

                profile = self.collaborators.directory.get_profile(row.staff_id)
                breakdown = self.calculator.compute_settlement(self._details(row), profile,
                                                               self._gather_inputs(session, row))
                row.daily_rate = breakdown.daily_rate.quantize(_RATE_PLACES)
                row.notice_period_shortfall = breakdown.notice_period_shortfall
                row.notice_recovery = breakdown.notice_recovery
                row.encashable_leave_days = breakdown.encashable_leave_days
                row.leave_encashment = breakdown.leave_encashment
                row.service_years = breakdown.service_years
                row.gratuity = breakdown.gratuity
                row.pending_commissions = breakdown.pending_commissions
                row.pending_tips = breakdown.pending_tips
                row.advance_outstanding = breakdown.advance_outstanding
                row.other_recoveries = breakdown.other_recoveries
                row.net_settlement = breakdown.net_settlement
                row.commission_entry_ids = list(breakdown.commission_entry_ids)
                row.tip_ids = list(breakdown.tip_ids)
                row.settlement_status = SettlementStatus.CALCULATED.value
                row.calculated_at = datetime.utcnow()
                session.flush()
                snapshot = ExitSnapshot.from_model(row)

        self.audit.log_transition(ENTITY, exit_id, status.value, "calculated", user_id=calculated_by,
                                  net_settlement=breakdown.net_settlement,
                                  encashment_by_type=breakdown.encashment_by_type)
        if breakdown.owes_company:
            self.logger.warning(f"Settlement {exit_id}: staff {row.staff_id} owes {-breakdown.net_settlement}")
        return SettlementResult(snapshot, _warnings(row))

    # ---- approve / pay / complete ------------------------------------------

    def _advance(self, exit_id: str, target: SettlementStatus, user_id: Optional[str], check=None,
                 stamp: Optional[str] = None) -> Tuple[SettlementStatus, ExitSnapshot]:
        with self.session_factory() as session, session.begin():
            row = self._get(session, exit_id, for_update=True)
            current = SettlementStatus(row.settlement_status)
            assert_transition(current, target, exit_id)
            if check is not None:
                check(row, current)
            row.settlement_status = target.value
            if stamp:
                setattr(row, stamp, datetime.utcnow())
            session.flush()
            snapshot = ExitSnapshot.from_model(row)
        self.audit.log_transition(ENTITY, exit_id, current.value, target.value, user_id=user_id)
        return current, snapshot

    def approve_settlement(self, exit_id: str, approved_by: Optional[str] = None,
                           acknowledge_negative: bool = False) -> SettlementResult:
        def check(row, current):
            if row.owes_company and not acknowledge_negative:
                raise NegativeBalanceWarning(ENTITY, exit_id, [row.staff_id], row.net_settlement)

        with self.locks.hold(ENTITY, exit_id):
            _, snapshot = self._advance(exit_id, SettlementStatus.APPROVED, approved_by, check, "approved_at")
        return SettlementResult(snapshot, ["staff_owes_company"] if snapshot.owes_company else [])

    def _stamp(self, exit_id: str, **values) -> None:
        with self.session_factory() as session, session.begin():
            session.execute(
                update(ExitRecord)
                .where(ExitRecord.id == exit_id, ExitRecord.tenant_id == self.tenant_id)
                .values(**values)
            )

    def _apply_ledger(self, exit_id: str, paid_by: Optional[str]) -> int:
        """Consume the commissions and advance balance the settlement covered; safe to repeat."""
        with self.session_factory() as session:
            row = self._get(session, exit_id)
            staff_id, stored_advance = row.staff_id, row.advance_outstanding or 0
            commission_ids, recovered = list(row.commission_entry_ids or ()), row.advance_recovered

        c = self.collaborators
        flipped = c.commissions.mark_paid(commission_ids)
        if recovered is None:
            recovered = 0
            if stored_advance:
                recovered = max(min(stored_advance, c.advances.get_outstanding_advance(staff_id)), 0)
            if recovered:
                c.advances.record_recovery(staff_id, recovered)
            self._stamp(exit_id, advance_recovered=recovered)
        self._stamp(exit_id, ledger_applied_at=datetime.utcnow())
        self.audit.log_data_change(ENTITY, "ledger", exit_id, {
            "commissions_marked_paid": flipped, "advance_recovered": recovered,
        }, user_id=paid_by)
        return flipped

    def mark_settlement_paid(self, exit_id: str, paid_by: Optional[str] = None) -> SettlementResult:
        """
        approved -> paid, then consume the commissions and advance balance the
        settlement covered. A paid record whose ledger updates did not finish
        is completed by calling this again.
        """
        with self.locks.hold(ENTITY, exit_id):
            with self.session_factory() as session:
                row = self._get(session, exit_id)
                resuming = (row.settlement_status == SettlementStatus.PAID.value
                            and row.ledger_applied_at is None)
            if resuming:
                self.logger.warning(f"Settlement {exit_id} is paid but its ledger updates are incomplete; resuming")
            else:
                self._advance(exit_id, SettlementStatus.PAID, paid_by, stamp="paid_at")
            flipped = self._apply_ledger(exit_id, paid_by)
            snapshot = self.get_exit(exit_id)
        self.logger.info(f"Settlement {exit_id} paid; {flipped} commission entries marked paid")
        return SettlementResult(snapshot, ["staff_owes_company"] if snapshot.owes_company else [])

    def update_clearance(self, exit_id: str, item: str, cleared: bool = True,
                         updated_by: Optional[str] = None) -> SettlementResult:
        if item not in CLEARANCE_ITEMS:
            raise ValueError(f"Unknown clearance item {item!r}; expected one of {', '.join(CLEARANCE_ITEMS)}")
        with self.locks.hold(ENTITY, exit_id):
            with self.session_factory() as session, session.begin():
                row = self._get(session, exit_id, for_update=True)
                clearance = dict(row.clearance or {})
                clearance[item] = bool(cleared)
                # reassign so the JSON column registers the change
                row.clearance = clearance
                session.flush()
                snapshot = ExitSnapshot.from_model(row)
        self.audit.log_data_change(ENTITY, "clearance", exit_id, {item: bool(cleared)}, user_id=updated_by)
        return SettlementResult(snapshot)

    def complete_settlement(self, exit_id: str, completed_by: Optional[str] = None) -> SettlementResult:
        def check(row, current):
            if row.ledger_applied_at is None:
                raise StateTransitionError(ENTITY, exit_id, current.value, SettlementStatus.COMPLETED.value,
                                           reason="ledger updates pending; call mark_settlement_paid again",
                                           staff_ids=[row.staff_id])
            pending = [i for i in CLEARANCE_ITEMS if not (row.clearance or {}).get(i)]
            if pending:
                raise StateTransitionError(ENTITY, exit_id, current.value, SettlementStatus.COMPLETED.value,
                                           reason=f"clearance pending: {', '.join(pending)}",
                                           staff_ids=[row.staff_id])

        with self.locks.hold(ENTITY, exit_id):
            _, snapshot = self._advance(exit_id, SettlementStatus.COMPLETED, completed_by, check, "completed_at")
        return SettlementResult(snapshot)
