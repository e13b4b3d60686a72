import threading
from datetime import date, datetime
from decimal import Decimal

import pytest

from staffpay.core.config import Settings
from staffpay.core.exceptions import (
    ConcurrencyConflictError, DuplicateRecordError, ImmutabilityError, NegativeBalanceWarning, NotFoundError,
    StateTransitionError,
)
from staffpay.integrations.contracts import (
    CommissionRecord, CompensationModel, ExitType, LeaveBalance, LeaveTypeBalance, StaffProfile, TipRecord,
)
from staffpay.settlement.calculator import (
    ExitDetails, SettlementCalculator, SettlementInputs, completed_service_years,
)
from staffpay.settlement.manager import CLEARANCE_ITEMS

RESIGNED = ExitDetails(ExitType.RESIGNATION, date(2025, 3, 1), date(2025, 3, 11))

def salaried_profile(**kw):
    defaults = dict(compensation_model=CompensationModel.FIXED_SALARY, monthly_salary=3_000_000,
                    notice_period_days=30, joining_date=date(2018, 8, 1))
    defaults.update(kw)
    return StaffProfile("S1", "Asha", **defaults)

def leave_balance(staff_id="S1"):
    return LeaveBalance(staff_id, (
        LeaveTypeBalance("EL", Decimal(15), Decimal(5), allow_encashment=True),
        LeaveTypeBalance("SL", Decimal(12), Decimal(2)),
        LeaveTypeBalance("CL", Decimal(8), Decimal(5), allow_encashment=True,
                         encashment_rate_percent=Decimal(50), min_days_for_encashment=Decimal(5)),
    ))

def test_notice_shortfall_scenario():
    calc = SettlementCalculator(Settings())
    b = calc.compute_settlement(RESIGNED, salaried_profile(joining_date=date(2024, 1, 1)), SettlementInputs())
    assert b.daily_rate == Decimal(100_000)
    assert b.notice_period_shortfall == 20
    assert b.notice_recovery == 2_000_000
    assert b.net_settlement == -2_000_000
    assert b.owes_company

def test_waived_notice_recovery():
    details = ExitDetails(ExitType.RESIGNATION, date(2025, 3, 1), date(2025, 3, 11), waive_notice_recovery=True)
    b = SettlementCalculator(Settings()).compute_settlement(details, salaried_profile(), SettlementInputs())
    assert b.notice_period_shortfall == 20
    assert b.notice_recovery == 0

def test_full_breakdown():
    inputs = SettlementInputs(
        pending_commissions=[CommissionRecord("C9", "S1", 300_000, Decimal("0.1"), 30_000, datetime(2025, 3, 5))],
        pending_tips=[TipRecord("T9", "S1", 10_000, date(2025, 3, 6))],
        leave_balance=leave_balance(),
        advance_outstanding=50_000,
    )
    b = SettlementCalculator(Settings()).compute_settlement(RESIGNED, salaried_profile(), inputs)
    assert b.encashable_leave_days == Decimal(10)
    assert b.encashment_by_type == {"EL": 1_000_000}
    assert b.service_years == 7
    assert b.gratuity == 10_500_000
    assert b.credits == 30_000 + 10_000 + 1_000_000 + 10_500_000
    assert b.recoveries == 2_000_000 + 50_000
    assert b.net_settlement == 9_490_000
    assert b.commission_entry_ids == ("C9",)

def test_partial_encashment_rate():
    balance = LeaveBalance("S1", (LeaveTypeBalance("EL", Decimal(10), Decimal(0), allow_encashment=True,
                                                   encashment_rate_percent=Decimal(50)),))
    b = SettlementCalculator(Settings()).compute_settlement(RESIGNED, salaried_profile(),
                                                            SettlementInputs(leave_balance=balance))
    assert b.leave_encashment == 500_000

def test_gratuity_eligibility():
    calc = SettlementCalculator(Settings())
    absconded = ExitDetails(ExitType.ABSCONDING, date(2025, 3, 1), date(2025, 3, 11))
    assert calc.compute_settlement(absconded, salaried_profile(), SettlementInputs()).gratuity == 0
    short = salaried_profile(joining_date=date(2020, 1, 15))
    details = ExitDetails(ExitType.RETIREMENT, date(2025, 1, 1), date(2025, 1, 14))
    assert calc.compute_settlement(details, short, SettlementInputs()).gratuity == 0

def test_completed_service_years():
    assert completed_service_years(date(2020, 1, 15), date(2025, 1, 14)) == (4, 5)
    assert completed_service_years(date(2020, 1, 15), date(2025, 1, 15)) == (5, 5)
    assert completed_service_years(date(2018, 8, 1), date(2025, 3, 11)) == (6, 7)
    assert completed_service_years(None, date(2025, 1, 1)) == (0, 0)

def test_daily_rate_by_pay_model():
    calc = SettlementCalculator(Settings())
    hourly = StaffProfile("S2", compensation_model=CompensationModel.HOURLY, hourly_rate=20_000)
    assert calc.daily_rate(hourly) == Decimal(160_000)
    fixed_daily = StaffProfile("S3", daily_rate=90_000)
    assert calc.daily_rate(fixed_daily) == Decimal(90_000)
    assert calc.daily_rate(StaffProfile("S4")) == 0

def test_served_days_default_and_override():
    assert RESIGNED.served_days() == 10
    assert ExitDetails(ExitType.TERMINATION, date(2025, 3, 1), date(2025, 3, 1), notice_period_served=4).served_days() == 4

# ---- manager -------------------------------------------------------------

def owing_staff(c):
    c.directory.add(StaffProfile("S2", "Ravi", CompensationModel.COMMISSION_ONLY, daily_rate=100_000,
                                 notice_period_days=30, joining_date=date(2024, 1, 1)))

def test_settlement_lifecycle_with_negative_net(service, collaborators):
    owing_staff(collaborators)
    exit_id = service.initiate_exit("S2", RESIGNED).exit.id
    assert collaborators.directory.get_profile("S2").status == "resigned"
    with pytest.raises(DuplicateRecordError):
        service.initiate_exit("S2", RESIGNED)

    calc = service.calculate_settlement(exit_id)
    assert calc.exit.settlement_status == "calculated"
    assert calc.exit.net_settlement == -2_000_000
    assert calc.warnings == ["staff_owes_company"]

    with pytest.raises(NegativeBalanceWarning):
        service.approve_settlement(exit_id)
    assert service.settlements.get_exit(exit_id).settlement_status == "calculated"
    service.approve_settlement(exit_id, acknowledge_negative=True)
    service.mark_settlement_paid(exit_id)

    with pytest.raises(StateTransitionError) as exc:
        service.complete_settlement(exit_id)
    assert "clearance pending" in exc.value.reason
    for item in CLEARANCE_ITEMS:
        service.settlements.update_clearance(exit_id, item)
    done = service.complete_settlement(exit_id).exit
    assert done.settlement_status == "completed"

    again = service.calculate_settlement(exit_id)
    assert again.already_calculated
    assert again.exit.net_settlement == -2_000_000
    assert again.exit.settlement_status == "completed"
    with pytest.raises(ImmutabilityError):
        service.settlements.update_clearance(exit_id, "keys", False)
    assert service.audit.get_transition_path("exit_settlement", exit_id) == [
        "pending", "calculated", "approved", "paid", "completed",
    ]

def test_settlement_cannot_skip_states(service, collaborators):
    owing_staff(collaborators)
    exit_id = service.initiate_exit("S2", RESIGNED).exit.id
    with pytest.raises(StateTransitionError):
        service.approve_settlement(exit_id)
    with pytest.raises(StateTransitionError):
        service.mark_settlement_paid(exit_id)

def test_termination_marks_profile_and_rejects_bad_dates(service, collaborators):
    owing_staff(collaborators)
    with pytest.raises(ValueError):
        service.initiate_exit("S2", ExitDetails(ExitType.TERMINATION, date(2025, 3, 10), date(2025, 3, 1)))
    service.initiate_exit("S2", ExitDetails(ExitType.TERMINATION, date(2025, 3, 1), date(2025, 3, 1)))
    assert collaborators.directory.get_profile("S2").status == "terminated"
    with pytest.raises(NotFoundError):
        service.initiate_exit("nobody", RESIGNED)

def test_pending_commissions_skip_those_already_in_payroll(service, staffed):
    cycle_id = service.create_cycle(2025, 3).cycle.id
    service.process_cycle(cycle_id)
    details = ExitDetails(ExitType.RESIGNATION, date(2025, 3, 6), date(2025, 4, 5))
    exit_id = service.initiate_exit("S3", details).exit.id
    snap = service.calculate_settlement(exit_id).exit
    assert snap.commission_entry_ids == ("C3",)
    assert snap.pending_commissions == 80_000
    assert snap.pending_tips == 0
    assert snap.net_settlement == 80_000
    service.approve_settlement(exit_id)
    service.mark_settlement_paid(exit_id)
    assert staffed.commissions.records["C3"].status == "paid"
    assert staffed.commissions.records["C1"].status == "earned"

def test_settlement_recovers_outstanding_advance(service, collaborators):
    collaborators.directory.add(salaried_profile())
    collaborators.attendance.set_leave_balance(leave_balance())
    collaborators.advances.grant("S1", 50_000, 10_000)
    exit_id = service.initiate_exit("S1", RESIGNED).exit.id
    snap = service.calculate_settlement(exit_id).exit
    assert snap.advance_outstanding == 50_000
    assert snap.net_settlement == 1_000_000 + 10_500_000 - 2_000_000 - 50_000
    service.approve_settlement(exit_id)
    service.mark_settlement_paid(exit_id)
    assert collaborators.advances.get_outstanding_advance("S1") == 0

def test_notice_requirement_fixed_when_exit_recorded(service, collaborators):
    owing_staff(collaborators)
    exit_id = service.initiate_exit("S2", RESIGNED).exit.id
    collaborators.directory.get_profile("S2").notice_period_days = 0
    snap = service.calculate_settlement(exit_id).exit
    assert snap.required_notice_days == 30
    assert snap.notice_period_shortfall == 20
    assert snap.notice_recovery == 2_000_000

def test_held_exit_lock_raises_conflict_without_touching_record(service, collaborators):
    owing_staff(collaborators)
    exit_id = service.initiate_exit("S2", RESIGNED).exit.id
    with service.settlements.locks.hold("exit_settlement", exit_id):
        with pytest.raises(ConcurrencyConflictError):
            service.calculate_settlement(exit_id)
    pending = service.settlements.get_exit(exit_id)
    assert pending.settlement_status == "pending"
    assert pending.calculated_at is None and pending.net_settlement == 0

    service.calculate_settlement(exit_id)
    with service.settlements.locks.hold("exit_settlement", exit_id):
        with pytest.raises(ConcurrencyConflictError):
            service.approve_settlement(exit_id, acknowledge_negative=True)
        with pytest.raises(ConcurrencyConflictError):
            service.mark_settlement_paid(exit_id)
    assert service.settlements.get_exit(exit_id).settlement_status == "calculated"
    assert service.audit.get_transition_path("exit_settlement", exit_id) == ["pending", "calculated"]

def test_concurrent_calculations_compute_once(service, collaborators):
    owing_staff(collaborators)
    exit_id = service.initiate_exit("S2", RESIGNED).exit.id
    barrier = threading.Barrier(2)
    results, errors = [], []

    def run():
        barrier.wait()
        try:
            results.append(service.calculate_settlement(exit_id))
        except ConcurrencyConflictError as e:
            errors.append(e)

    threads = [threading.Thread(target=run) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len([r for r in results if not r.already_calculated]) == 1
    assert len(results) + len(errors) == 2
    assert service.audit.get_transition_path("exit_settlement", exit_id) == ["pending", "calculated"]

def test_settlement_payment_resumes_after_ledger_failure(service, collaborators, monkeypatch):
    collaborators.directory.add(salaried_profile())
    collaborators.advances.grant("S1", 50_000, 10_000)
    collaborators.commissions.add(CommissionRecord("C9", "S1", 300_000, Decimal("0.1"), 30_000, datetime(2025, 3, 5)))
    exit_id = service.initiate_exit("S1", RESIGNED).exit.id
    service.calculate_settlement(exit_id)
    service.approve_settlement(exit_id)

    def unavailable(staff_id, amount):
        raise RuntimeError("advance ledger timeout")
    monkeypatch.setattr(collaborators.advances, "record_recovery", unavailable)
    with pytest.raises(RuntimeError):
        service.mark_settlement_paid(exit_id)
    stuck = service.settlements.get_exit(exit_id)
    assert stuck.settlement_status == "paid" and stuck.ledger_applied_at is None
    assert stuck.advance_recovered is None
    for item in CLEARANCE_ITEMS:
        service.settlements.update_clearance(exit_id, item)
    with pytest.raises(StateTransitionError) as exc:
        service.complete_settlement(exit_id)
    assert "ledger updates pending" in exc.value.reason

    monkeypatch.undo()
    done = service.mark_settlement_paid(exit_id).exit
    assert done.advance_recovered == 50_000 and done.ledger_applied_at is not None
    assert collaborators.advances.get_outstanding_advance("S1") == 0
    assert collaborators.commissions.records["C9"].status == "paid"
    with pytest.raises(StateTransitionError):
        service.mark_settlement_paid(exit_id)
    assert collaborators.advances.recoveries == [{"staff_id": "S1", "amount": 50_000}]
    assert service.complete_settlement(exit_id).exit.settlement_status == "completed"
