import logging
import logging.handlers

import pytest

from staffpay.core.audit import AuditLogger
from staffpay.core.config import Settings
from staffpay.core.exceptions import ConcurrencyConflictError, DataIncompleteError, PayrollEngineError
from staffpay.core.locks import KeyedLockRegistry
from staffpay.core.utils import setup_logging

def test_setup_logging_idempotent(tmp_path):
    config = Settings(AUDIT_LOG_PATH=str(tmp_path))
    logger1 = setup_logging("logtest", config=config)
    handlers_before = len(logger1.handlers)
    logger2 = setup_logging("logtest", config=config)
    assert logger1 is logger2
    assert len(logger2.handlers) == handlers_before
    assert any(isinstance(h, logging.handlers.RotatingFileHandler) for h in logger2.handlers)
    assert logger2.name == "StaffPay.logtest"

def test_audit_history_and_transition_path(tmp_path):
    audit = AuditLogger("t1", tmp_path)
    audit.log_data_change("payroll_cycle", "create", "c1", {"status": "draft"}, user_id="u1")
    audit.log_transition("payroll_cycle", "c1", "draft", "processing")
    audit.log_transition("payroll_cycle", "c2", "draft", "processing")
    audit.log_transition("payroll_cycle", "c1", "processing", "pending_approval", total_net_payable=10)
    history = audit.get_change_history("payroll_cycle", "c1")
    assert [h["operation"] for h in history] == ["create", "transition", "transition"]
    assert history[0]["user_id"] == "u1"
    assert history[2]["changes"]["total_net_payable"] == 10
    assert audit.get_transition_path("payroll_cycle", "c1") == ["draft", "processing", "pending_approval"]
    assert audit.get_transition_path("payroll_cycle", "missing") == []

def test_error_payload_carries_identifiers():
    err = DataIncompleteError(["S1", "S2"], "no attendance")
    assert isinstance(err, PayrollEngineError)
    data = err.to_dict()
    assert data["code"] == "DATA_INCOMPLETE"
    assert data["staff_ids"] == ["S1", "S2"]
    assert "S1, S2" in data["message"]

def test_lock_registry_is_per_key():
    locks = KeyedLockRegistry()
    with locks.hold("payroll_cycle", "a"):
        assert locks.is_held("payroll_cycle", "a")
        assert not locks.is_held("payroll_cycle", "b")
        with locks.hold("payroll_cycle", "b"):
            pass
        with pytest.raises(ConcurrencyConflictError):
            with locks.hold("payroll_cycle", "a"):
                pass
        assert locks.held_count() == 1
    assert not locks.is_held("payroll_cycle", "a")

def test_lock_registry_forgets_released_keys():
    locks = KeyedLockRegistry()
    for i in range(100):
        with locks.hold("exit_settlement", f"e{i}"):
            assert locks.held_count() == 1
    assert locks.held_count() == 0
