import pytest

from staffpay.core.exceptions import StateTransitionError
from staffpay.workflow.state_machine import (
    CycleStatus, SettlementStatus, assert_transition, can_transition, is_at_or_past,
)

def test_cycle_forward_path_is_legal():
    path = [CycleStatus.DRAFT, CycleStatus.PROCESSING, CycleStatus.PENDING_APPROVAL,
            CycleStatus.APPROVED, CycleStatus.PAID, CycleStatus.LOCKED]
    for current, target in zip(path, path[1:]):
        assert assert_transition(current, target) is target

def test_settlement_forward_path_is_legal():
    path = list(SettlementStatus)
    for current, target in zip(path, path[1:]):
        assert can_transition(current, target)

def test_backwards_and_skipping_rejected():
    assert not can_transition(CycleStatus.PAID, CycleStatus.DRAFT)
    assert not can_transition(CycleStatus.DRAFT, CycleStatus.APPROVED)
    assert not can_transition(CycleStatus.PENDING_APPROVAL, CycleStatus.DRAFT)
    assert not can_transition(SettlementStatus.COMPLETED, SettlementStatus.PENDING)
    with pytest.raises(StateTransitionError) as exc:
        assert_transition(CycleStatus.PAID, CycleStatus.DRAFT, "cyc-1")
    err = exc.value
    assert (err.entity_type, err.entity_id, err.current, err.target) == ("payroll_cycle", "cyc-1", "paid", "draft")
    assert err.to_dict()["code"] == "INVALID_STATE_TRANSITION"

def test_processing_may_only_fall_back_to_draft():
    assert can_transition(CycleStatus.PROCESSING, CycleStatus.DRAFT)
    assert not can_transition(CycleStatus.APPROVED, CycleStatus.PROCESSING)

def test_flows_do_not_mix():
    assert CycleStatus.PAID != SettlementStatus.PAID
    assert not can_transition(CycleStatus.APPROVED, SettlementStatus.PAID)
    with pytest.raises(TypeError):
        is_at_or_past(CycleStatus.PAID, SettlementStatus.PAID)

def test_is_at_or_past():
    assert is_at_or_past(CycleStatus.LOCKED, CycleStatus.PENDING_APPROVAL)
    assert not is_at_or_past(CycleStatus.DRAFT, CycleStatus.PENDING_APPROVAL)
