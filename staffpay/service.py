"""
Operational surface for one tenant: payroll cycles, exit settlements and
the dashboard stats that summarise both.
"""
from typing import Any, Dict, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import sessionmaker

from .core.audit import AuditLogger
from .core.config import Settings, settings as default_settings
from .core.locks import KeyedLockRegistry, default_locks
from .db.models import ExitRecord, PayrollCycle
from .db.session import init_db, make_session_factory
from .integrations.contracts import Collaborators
from .payroll.cycle_manager import PayrollCycleManager
from .settlement.manager import SettlementManager
from .tax.registry import TaxRuleRegistry
from .workflow.state_machine import CycleStatus, SettlementStatus

OPEN_SETTLEMENT_STATES = (SettlementStatus.PENDING.value, SettlementStatus.CALCULATED.value,
                          SettlementStatus.APPROVED.value)

class PayrollService:
    def __init__(
        self,
        tenant_id: str,
        collaborators: Collaborators,
        session_factory: Optional[sessionmaker] = None,
        config: Optional[Settings] = None,
        tax_registry: Optional[TaxRuleRegistry] = None,
        locks: Optional[KeyedLockRegistry] = None,
    ):
        self.tenant_id = tenant_id
        self.config = config or default_settings
        if session_factory is None:
            session_factory = make_session_factory(self.config.DB_URL)
            init_db(session_factory.kw["bind"])
        self.session_factory = session_factory
        self.collaborators = collaborators
        locks = locks or default_locks
        audit = AuditLogger(tenant_id, self.config.AUDIT_LOG_PATH)
        self.audit = audit
        self.cycles = PayrollCycleManager(tenant_id, session_factory, collaborators, tax_registry=tax_registry,
                                          config=self.config, locks=locks, audit=audit)
        self.settlements = SettlementManager(tenant_id, session_factory, collaborators, config=self.config,
                                             locks=locks, audit=audit)

    # payroll
    def create_cycle(self, year: int, month: int, user_id: Optional[str] = None):
        return self.cycles.create_cycle(year, month, created_by=user_id)

    def process_cycle(self, cycle_id: str, user_id: Optional[str] = None):
        return self.cycles.process_cycle(cycle_id, processed_by=user_id)

    def approve_cycle(self, cycle_id: str, user_id: Optional[str] = None, acknowledge_warnings: bool = False):
        return self.cycles.approve_cycle(cycle_id, approved_by=user_id, acknowledge_warnings=acknowledge_warnings)

    def settle_entries(self, cycle_id: str, staff_ids=None, payment_reference: Optional[str] = None,
                       user_id: Optional[str] = None):
        return self.cycles.settle_entries(cycle_id, staff_ids, payment_reference, settled_by=user_id)

    def mark_paid(self, cycle_id: str, user_id: Optional[str] = None):
        return self.cycles.mark_paid(cycle_id, paid_by=user_id)

    def lock_cycle(self, cycle_id: str, user_id: Optional[str] = None):
        return self.cycles.lock_cycle(cycle_id, locked_by=user_id)

    # settlements
    def initiate_exit(self, staff_id: str, details, user_id: Optional[str] = None):
        return self.settlements.initiate_exit(staff_id, details, created_by=user_id)

    def calculate_settlement(self, exit_id: str, user_id: Optional[str] = None):
        return self.settlements.calculate_settlement(exit_id, calculated_by=user_id)

    def approve_settlement(self, exit_id: str, user_id: Optional[str] = None, acknowledge_negative: bool = False):
        return self.settlements.approve_settlement(exit_id, approved_by=user_id,
                                                   acknowledge_negative=acknowledge_negative)

    def mark_settlement_paid(self, exit_id: str, user_id: Optional[str] = None):
        return self.settlements.mark_settlement_paid(exit_id, paid_by=user_id)

    def update_clearance(self, exit_id: str, item: str, cleared: bool = True, user_id: Optional[str] = None):
        return self.settlements.update_clearance(exit_id, item, cleared, updated_by=user_id)

    def complete_settlement(self, exit_id: str, user_id: Optional[str] = None):
        return self.settlements.complete_settlement(exit_id, completed_by=user_id)

    def payroll_stats(self) -> Dict[str, Any]:
        """Active cycle, last payout date, open exits and what they are still owed."""
        with self.session_factory() as session:
            active = session.execute(
                select(PayrollCycle)
                .where(PayrollCycle.tenant_id == self.tenant_id,
                       PayrollCycle.status.notin_([CycleStatus.PAID.value, CycleStatus.LOCKED.value]))
                .order_by(PayrollCycle.period_year.desc(), PayrollCycle.period_month.desc())
                .limit(1)
            ).scalar_one_or_none()
            last_paid = session.execute(
                select(func.max(PayrollCycle.paid_at)).where(PayrollCycle.tenant_id == self.tenant_id)
            ).scalar()
            pending_exits, settlement_due = session.execute(
                select(func.count(ExitRecord.id), func.coalesce(func.sum(ExitRecord.net_settlement), 0))
                .where(ExitRecord.tenant_id == self.tenant_id,
                       ExitRecord.settlement_status.in_(OPEN_SETTLEMENT_STATES))
            ).one()

        return {
            "active_cycle": None if active is None else {
                "id": active.id, "period": active.period_label, "status": active.status,
                "total_net_payable": active.total_net_payable or 0,
            },
            "last_paid_at": last_paid,
            "pending_exits": pending_exits,
            "total_settlement_due": int(settlement_due),
            "active_staff": len(self.collaborators.directory.list_active_staff()),
        }
