import dataclasses
from datetime import date

import pandas as pd
import pytest

from staffpay.core.exceptions import StateTransitionError
from staffpay.core.money import format_minor, prorate, to_minor
from staffpay.integrations.contracts import ExitType
from staffpay.reports.snapshot import CsvExporter, PayrollSummary, formatted, to_frame
from staffpay.settlement.calculator import ExitDetails

def processed(service):
    cid = service.create_cycle(2025, 3).cycle.id
    return service.process_cycle(cid).cycle

def test_money_helpers():
    assert to_minor("2.5") == 3
    assert prorate(3_000_000, 2, 30) == 200_000
    assert prorate(100, 1, 0) == 0
    assert format_minor(270833) == "₹2,708.33"
    assert format_minor(-5) == "-₹0.05"

def test_snapshot_is_read_only(service, staffed):
    snap = processed(service)
    with pytest.raises(dataclasses.FrozenInstanceError):
        snap.total_net_payable = 0
    with pytest.raises(dataclasses.FrozenInstanceError):
        snap.entries[0].net_pay = 0

def test_cycle_frame_and_summary(service, staffed):
    snap = processed(service)
    df = to_frame(snap)
    assert list(df["staff_id"]) == ["S1", "S2", "S3"]
    assert int(df["net_pay"].sum()) == snap.total_net_payable
    summary = PayrollSummary(snap)
    assert summary.balanced()
    by_model = summary.by_compensation_model().set_index("compensation_model")
    assert by_model.loc["hourly", "staff"] == 1
    assert summary.totals()["net_payable"] == format_minor(snap.total_net_payable)

def test_csv_export(service, staffed, tmp_path):
    snap = service.approve_cycle(processed(service).id).cycle
    path = CsvExporter(human_readable=True).export(snap, tmp_path / "out" / "march.csv")
    df = pd.read_csv(path)
    assert len(df) == 3
    assert df.loc[df["staff_id"] == "S1", "lwp_deduction"].iloc[0] == "₹2,000.00"

def test_export_refuses_unapproved_records(service, staffed, tmp_path):
    exporter = CsvExporter()
    draft = service.create_cycle(2025, 4).cycle
    with pytest.raises(StateTransitionError) as exc:
        exporter.export(draft, tmp_path / "april.csv")
    assert exc.value.current == "draft"
    with pytest.raises(StateTransitionError):
        exporter.export(processed(service), tmp_path / "march.csv")
    assert not (tmp_path / "april.csv").exists() and not (tmp_path / "march.csv").exists()

    exit_id = service.initiate_exit("S2", ExitDetails(ExitType.RESIGNATION, date(2025, 3, 1),
                                                      date(2025, 3, 31))).exit.id
    calculated = service.calculate_settlement(exit_id).exit
    with pytest.raises(StateTransitionError) as exc:
        exporter.export(calculated, tmp_path / "exit.csv")
    assert exc.value.entity_type == "exit_settlement"
    approved = service.approve_settlement(exit_id).exit
    assert exporter.export(approved, tmp_path / "exit.csv").exists()

def test_empty_cycle_frame(service):
    snap = service.create_cycle(2025, 5).cycle
    df = to_frame(snap)
    assert df.empty and "net_pay" in df.columns
    assert formatted(df).empty
