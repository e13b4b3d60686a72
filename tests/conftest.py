import uuid
from datetime import date, datetime
from decimal import Decimal

import pytest

from staffpay.core.config import Settings
from staffpay.core.locks import KeyedLockRegistry
from staffpay.db.session import init_db, make_engine, make_session_factory
from staffpay.integrations.contracts import (
    Collaborators, CommissionRecord, CompensationModel, StaffProfile, StaffTaxProfile, TipRecord,
)
from staffpay.integrations.memory import (
    InMemoryAdvanceLedger, InMemoryAttendance, InMemoryCommissionLedger, InMemoryStaffDirectory, InMemoryTipLedger,
)
from staffpay.service import PayrollService

@pytest.fixture
def config(tmp_path):
    return Settings(
        DB_URL=f"sqlite:///{tmp_path / 'staffpay.db'}",
        AUDIT_LOG_PATH=str(tmp_path / "logs"),
        MAX_WORKERS=2,
    )

@pytest.fixture
def session_factory(config):
    engine = make_engine(config.DB_URL)
    init_db(engine)
    return make_session_factory(engine=engine)

@pytest.fixture
def collaborators():
    return Collaborators(
        directory=InMemoryStaffDirectory(),
        attendance=InMemoryAttendance(),
        commissions=InMemoryCommissionLedger(),
        tips=InMemoryTipLedger(),
        advances=InMemoryAdvanceLedger(),
    )

@pytest.fixture
def service(config, session_factory, collaborators):
    tenant = f"salon-{uuid.uuid4().hex[:8]}"
    return PayrollService(tenant, collaborators, session_factory=session_factory, config=config,
                          locks=KeyedLockRegistry())

@pytest.fixture
def staffed(collaborators):
    """Three staff on different pay models with March 2025 data recorded."""
    c = collaborators
    c.directory.add(StaffProfile("S1", "Asha", CompensationModel.FIXED_SALARY, monthly_salary=3_000_000,
                                 joining_date=date(2019, 1, 1)))
    c.attendance.record_leave("S1", 2)
    c.directory.add(StaffProfile("S2", "Ravi", CompensationModel.HOURLY, hourly_rate=20_000,
                                 tax_profile=StaffTaxProfile(pf_enrolled=False)))
    c.attendance.record_hours("S2", 160, 10)
    c.directory.add(StaffProfile("S3", "Meena", CompensationModel.COMMISSION_ONLY,
                                 tax_profile=StaffTaxProfile(pf_enrolled=False, insurance_eligible=False)))
    c.commissions.add(CommissionRecord("C1", "S3", 1_000_000, Decimal("0.10"), 100_000, datetime(2025, 3, 5, 14)))
    c.commissions.add(CommissionRecord("C2", "S3", 500_000, Decimal("0.10"), 50_000, datetime(2025, 3, 28, 11)))
    c.commissions.add(CommissionRecord("C3", "S3", 800_000, Decimal("0.10"), 80_000, datetime(2025, 4, 2, 10)))
    c.tips.add(TipRecord("T1", "S3", 25_000, date(2025, 3, 10)))
    return c
