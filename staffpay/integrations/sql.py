import uuid
from datetime import datetime, date, time
from decimal import Decimal
from typing import List, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.orm import sessionmaker

from staffpay.core.money import apply_rate
from staffpay.db.models import CommissionEntry
from staffpay.integrations.contracts import CommissionLedger, CommissionRecord

class SqlCommissionLedger(CommissionLedger):
    """Commission ledger backed by the commission_entries table."""

    def __init__(self, tenant_id: str, session_factory: sessionmaker):
        self.tenant_id = tenant_id
        self.session_factory = session_factory

    @staticmethod
    def _to_record(row: CommissionEntry) -> CommissionRecord:
        return CommissionRecord(
            entry_id=row.id,
            staff_id=row.staff_id,
            service_amount=row.service_amount,
            commission_rate=Decimal(row.commission_rate),
            commission_amount=row.commission_amount,
            completed_at=row.completed_at,
            status=row.status,
        )

    def record_service(self, staff_id: str, service_amount: int, commission_rate, completed_at: datetime,
                       service_ref: Optional[str] = None) -> CommissionRecord:
        """Called by the booking side when a billable service completes."""
        rate = Decimal(str(commission_rate))
        row = CommissionEntry(
            id=str(uuid.uuid4()),
            tenant_id=self.tenant_id,
            staff_id=staff_id,
            service_ref=service_ref,
            service_amount=service_amount,
            commission_rate=rate,
            commission_amount=apply_rate(service_amount, rate),
            completed_at=completed_at,
            status="earned",
        )
        with self.session_factory() as session:
            session.add(row)
            session.commit()
            return self._to_record(row)

    def list_earned_commissions(self, staff_id: str, start: Optional[date], end: date) -> List[CommissionRecord]:
        stmt = select(CommissionEntry).where(
            CommissionEntry.tenant_id == self.tenant_id,
            CommissionEntry.staff_id == staff_id,
            CommissionEntry.status == "earned",
            CommissionEntry.completed_at <= datetime.combine(end, time.max),
        )
        if start is not None:
            stmt = stmt.where(CommissionEntry.completed_at >= datetime.combine(start, time.min))
        with self.session_factory() as session:
            rows = session.execute(stmt.order_by(CommissionEntry.completed_at)).scalars().all()
            return [self._to_record(r) for r in rows]

    def mark_paid(self, entry_ids: Sequence[str]) -> int:
        if not entry_ids:
            return 0
        with self.session_factory() as session:
            result = session.execute(
                update(CommissionEntry)
                .where(
                    CommissionEntry.tenant_id == self.tenant_id,
                    CommissionEntry.id.in_(list(entry_ids)),
                    CommissionEntry.status == "earned",
                )
                .values(status="paid", paid_at=datetime.utcnow())
            )
            session.commit()
            return result.rowcount
