from datetime import date

from staffpay.integrations.contracts import CompensationModel, ExitType, StaffProfile
from staffpay.settlement.calculator import ExitDetails

def test_payroll_stats(service, staffed):
    stats = service.payroll_stats()
    assert stats["active_cycle"] is None
    assert stats["last_paid_at"] is None
    assert stats["pending_exits"] == 0 and stats["total_settlement_due"] == 0
    assert stats["active_staff"] == 3

    cid = service.create_cycle(2025, 3).cycle.id
    service.process_cycle(cid)
    stats = service.payroll_stats()
    assert stats["active_cycle"]["period"] == "2025-03"
    assert stats["active_cycle"]["status"] == "pending_approval"

    service.approve_cycle(cid)
    service.settle_entries(cid)
    service.mark_paid(cid)
    stats = service.payroll_stats()
    assert stats["active_cycle"] is None
    assert stats["last_paid_at"] is not None

    staffed.directory.add(StaffProfile("S5", compensation_model=CompensationModel.FIXED_SALARY,
                                       monthly_salary=3_000_000, notice_period_days=0))
    exit_id = service.initiate_exit("S5", ExitDetails(ExitType.RESIGNATION, date(2025, 4, 1),
                                                      date(2025, 4, 30))).exit.id
    service.calculate_settlement(exit_id)
    stats = service.payroll_stats()
    assert stats["pending_exits"] == 1
    assert stats["total_settlement_due"] == 0
    assert stats["active_staff"] == 3
