"""Unit tests documenting the expected behavior of the data access layer."""

from __future__ import annotations

import configparser
import gc
import threading
from dataclasses import replace
from datetime import timedelta
from decimal import Decimal
from pathlib import Path

import openpyxl
from openpyxl.workbook import Workbook as OpenpyxlWorkbook
import pytest

from ewaybill_engine import constants, data_manager

from conftest import BASE_TIME, TRANSPORTER_A


def _record(number: str = "EWB0001", **overrides) -> data_manager.EWayBillRecord:
    fields = {
        "document_number": number,
        "status": constants.EWayBillStatus.ACTIVE,
        "created_at": BASE_TIME,
        "valid_from": BASE_TIME,
        "valid_until": BASE_TIME + timedelta(days=1),
        "transporter_id": TRANSPORTER_A,
    }
    fields.update(overrides)
    return data_manager.EWayBillRecord(**fields)


def _pending(event=constants.HistoryEvent.GENERATED, **details) -> data_manager.PendingHistory:
    return data_manager.PendingHistory(event=event, recorded_at=BASE_TIME, details=details)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def test_find_config_file_respects_explicit_path(config_file: Path):
    """Supplying an explicit path should be treated as the winning answer."""

    assert data_manager.find_config_file(config_file) == config_file


def test_find_config_file_discovers_in_parent_directories(tmp_path, monkeypatch):
    """Auto-discovery should walk up from the working directory."""

    config_file = tmp_path / "config.ini"
    config_file.write_text("[System]\nDataFile=registry.xlsx")
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)
    monkeypatch.chdir(nested)

    assert data_manager.find_config_file() == config_file


def test_read_config_missing_file_raises(tmp_path):
    """Missing files should propagate a FileNotFoundError."""

    with pytest.raises(FileNotFoundError):
        data_manager.read_config(tmp_path / "not_there.ini")


def test_parse_settings_applies_defaults(tmp_path):
    """Only DataFile and SchemaVersion are mandatory."""

    parser = configparser.ConfigParser()
    parser.read_string("[System]\nDataFile = registry.xlsx\nSchemaVersion = 1.0.0\n")

    settings = data_manager.parse_settings(parser, base_path=tmp_path)

    assert settings.data_file == (tmp_path / "registry.xlsx").resolve()
    assert settings.gateway_mode == "sandbox"
    assert settings.reference_prefix == "EWB"
    assert settings.timezone.utcoffset(None) == timedelta(hours=5, minutes=30)
    assert settings.rules == data_manager.RuleSettings(24, 72, 72)


def test_parse_settings_reads_rule_overrides(tmp_path):
    """The [Rules] section overrides the statutory defaults."""

    parser = configparser.ConfigParser()
    parser.read_string(
        "[System]\nDataFile = /tmp/registry.xlsx\nSchemaVersion = 1.0.0\nTimezone = +00:00\n"
        "[Gateway]\nReferencePrefix = TST\n"
        "[Rules]\nCancellationWindowHours = 12\nRecipientResponseHours = 48\n"
    )

    settings = data_manager.parse_settings(parser, base_path=tmp_path)

    assert settings.data_file == Path("/tmp/registry.xlsx")
    assert settings.reference_prefix == "TST"
    assert settings.rules.cancellation_window_hours == 12
    assert settings.rules.extension_ceiling_hours == 72
    assert settings.rules.recipient_response_hours == 48
    assert settings.timezone.utcoffset(None) == timedelta(0)


def test_parse_settings_resolves_relative_paths(config_factory):
    """Relative DataFile entries should be anchored to the config location."""

    bundle = config_factory(make_relative=True)
    parser = data_manager.read_config(bundle.config_path)

    settings = data_manager.parse_settings(parser, base_path=bundle.config_path.parent)

    assert settings.data_file == bundle.workbook_path.resolve()


@pytest.mark.parametrize("content", ["[Other]\nvalue=1", "[System]\nDataFile = registry.xlsx\n"])
def test_parse_settings_requires_expected_entries(tmp_path, content):
    """Missing keys should result in a descriptive KeyError."""

    parser = configparser.ConfigParser()
    parser.read_string(content)

    with pytest.raises(KeyError):
        data_manager.parse_settings(parser, base_path=tmp_path)


def test_parse_settings_rejects_malformed_rule_override(tmp_path):
    parser = configparser.ConfigParser()
    parser.read_string(
        "[System]\nDataFile = registry.xlsx\nSchemaVersion = 1.0.0\n[Rules]\nCancellationWindowHours = soon\n"
    )

    with pytest.raises(ValueError):
        data_manager.parse_settings(parser, base_path=tmp_path)


# ---------------------------------------------------------------------------
# Record shapes
# ---------------------------------------------------------------------------


def test_record_requires_document_number():
    with pytest.raises(ValueError):
        _record("")


def test_cancelled_record_requires_cancellation_details():
    """Cancellation details are present exactly when the status is CANCELLED."""

    with pytest.raises(ValueError):
        _record(status=constants.EWayBillStatus.CANCELLED)

    cancellation = data_manager.Cancellation("2", "Wrong consignee", BASE_TIME)
    with pytest.raises(ValueError):
        _record(cancellation=cancellation)

    record = _record(status=constants.EWayBillStatus.CANCELLED, cancellation=cancellation)
    assert record.cancellation.reason_code == "2"


def test_part_b_details_round_trip():
    """PartBUpdate survives the JSON-friendly details mapping."""

    update = data_manager.PartBUpdate(
        trans_mode="1",
        distance=Decimal("120.5"),
        updated_at=BASE_TIME,
        vehicle_number="MH12AB1234",
        vehicle_type="R",
    )

    details = update.to_details()

    assert details["distance"] == "120.5"
    assert data_manager.PartBUpdate.from_details(details) == update


# ---------------------------------------------------------------------------
# In-memory registry
# ---------------------------------------------------------------------------


def test_get_unknown_document_raises_key_error(registry):
    with pytest.raises(KeyError, match="EWB404"):
        registry.get("EWB404")
    assert registry.find("EWB404") is None


def test_insert_rejects_duplicates(registry):
    """Document numbers are unique within a registry."""

    registry.insert(_record())

    with pytest.raises(ValueError):
        registry.insert(_record())


def test_insert_seeds_history_with_sequences(registry):
    registry.insert(_record(), history=[_pending(), _pending(constants.HistoryEvent.PART_B)])

    entries = registry.history("EWB0001")

    assert [entry.sequence for entry in entries] == [1, 2]
    assert entries[1].event is constants.HistoryEvent.PART_B


def test_apply_if_eligible_writes_record_and_history(registry):
    """A passing check stores the mutated record and appends its history."""

    registry.insert(_record())

    def _mutate(record):
        updated = replace(record, transporter_id="27AAACR5055K1Z7")
        return updated, [_pending(constants.HistoryEvent.TRANSPORTER_CHANGED, previous=record.transporter_id)]

    result = registry.apply_if_eligible("EWB0001", lambda record: None, _mutate)

    assert registry.get("EWB0001") == result
    assert result.transporter_id == "27AAACR5055K1Z7"
    assert registry.history("EWB0001")[-1].details == {"previous": TRANSPORTER_A}


@pytest.mark.parametrize("stage", ["check", "mutate"])
def test_apply_if_eligible_writes_nothing_on_failure(registry, stage):
    """Exceptions from either phase leave the record and history untouched."""

    original = registry.insert(_record(), history=[_pending()])

    def _boom(*_args):
        raise RuntimeError(stage)

    check = _boom if stage == "check" else (lambda record: None)
    mutate = _boom if stage == "mutate" else (lambda record: (record, [_pending()]))

    with pytest.raises(RuntimeError):
        registry.apply_if_eligible("EWB0001", check, mutate)

    assert registry.get("EWB0001") is original
    assert len(registry.history("EWB0001")) == 1


def test_apply_if_eligible_refuses_number_change(registry):
    registry.insert(_record())

    with pytest.raises(ValueError):
        registry.apply_if_eligible("EWB0001", lambda record: None, lambda record: (_record("EWB0002"), []))

    assert registry.find("EWB0002") is None


def test_history_snapshots_are_immutable(registry):
    """Callers receive tuples that later appends do not change."""

    registry.insert(_record(), history=[_pending()])
    snapshot = registry.history("EWB0001")

    registry.append_history("EWB0001", constants.HistoryEvent.EXPIRED, {}, BASE_TIME)

    assert isinstance(snapshot, tuple)
    assert len(snapshot) == 1
    assert len(registry.history("EWB0001")) == 2


def test_append_history_requires_existing_document(registry):
    with pytest.raises(KeyError):
        registry.append_history("EWB404", constants.HistoryEvent.EXPIRED, {}, BASE_TIME)


def test_hold_serializes_other_threads(registry):
    """A held document lock blocks a mutation from another thread until release."""

    registry.insert(_record("EWB0001"))
    registry.insert(_record("EWB0002"))
    finished = threading.Event()

    def _worker():
        registry.apply_if_eligible("EWB0002", lambda record: None, lambda record: (record, []))
        finished.set()

    with registry.hold(["EWB0002", "EWB0001"]):
        thread = threading.Thread(target=_worker)
        thread.start()
        assert not finished.wait(timeout=0.1)

    thread.join(timeout=5)
    assert finished.is_set()


def test_locks_for_unknown_documents_are_released(registry):
    """Lock entries do not accumulate for numbers nobody is using."""

    with registry.hold(["EWB0404", "EWB0405"]):
        assert {"EWB0404", "EWB0405"} <= set(registry._locks.keys())

    gc.collect()
    assert "EWB0404" not in registry._locks
    assert "EWB0405" not in registry._locks


def test_consolidations_are_listed_in_creation_order(registry):
    first = data_manager.ConsolidatedBill("C1", BASE_TIME, ("A", "B"))
    second = data_manager.ConsolidatedBill("C2", BASE_TIME, ("C", "D"))

    registry.record_consolidation(first)
    registry.record_consolidation(second)

    assert registry.list_consolidations() == [first, second]


# ---------------------------------------------------------------------------
# Workbook lifecycle and workbook registry
# ---------------------------------------------------------------------------


def test_open_workbook_returns_openpyxl_instance(registry_workbook_path):
    workbook = data_manager.open_workbook(registry_workbook_path)

    assert isinstance(workbook, OpenpyxlWorkbook)
    assert set(data_manager.SHEET_COLUMNS) <= set(workbook.sheetnames)


def test_open_workbook_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        data_manager.open_workbook(tmp_path / "missing.xlsx")


def test_open_workbook_missing_sheets_raises(tmp_path):
    """A workbook without the registry sheets is rejected with KeyError."""

    path = tmp_path / "bare.xlsx"
    openpyxl.Workbook().save(path)

    with pytest.raises(KeyError, match="EWayBills"):
        data_manager.open_workbook(path)


def test_locate_row_unknown_column_raises(registry_workbook_path):
    workbook = data_manager.open_workbook(registry_workbook_path)

    with pytest.raises(KeyError):
        data_manager.locate_row(workbook, data_manager.EWAY_BILLS_SHEET, "Nope", "x")


def test_workbook_registry_round_trips_through_disk(registry_workbook_path):
    """Records, history, and consolidations survive a save and reload."""

    workbook = data_manager.open_workbook(registry_workbook_path)
    registry = data_manager.WorkbookRegistry(workbook)
    part_b = data_manager.PartBUpdate("1", Decimal("42"), BASE_TIME, vehicle_number="MH12AB1234")
    registry.insert(_record("EWB0001", last_vehicle_update=part_b, vehicle_number="MH12AB1234"), history=[_pending(a=1)])
    cancellation = data_manager.Cancellation("1", "Duplicate bill raised", BASE_TIME + timedelta(hours=1))
    registry.insert(_record("EWB0002", status=constants.EWayBillStatus.CANCELLED, cancellation=cancellation))
    registry.record_consolidation(data_manager.ConsolidatedBill("CEWB1", BASE_TIME, ("EWB0001", "EWB0002")))
    data_manager.save_workbook(workbook, registry_workbook_path)

    reloaded = data_manager.WorkbookRegistry(data_manager.refresh_workbook(registry_workbook_path))

    first = reloaded.get("EWB0001")
    assert first.last_vehicle_update == part_b
    assert first.valid_until == BASE_TIME + timedelta(days=1)
    assert reloaded.get("EWB0002").cancellation == cancellation
    assert reloaded.history("EWB0001")[0].details == {"a": 1}
    assert reloaded.list_consolidations()[0].members == ("EWB0001", "EWB0002")
    assert [record.document_number for record in reloaded.list_records()] == ["EWB0001", "EWB0002"]


def test_workbook_registry_overwrites_existing_row(registry_workbook_path):
    """Storing an existing document updates its row in place."""

    registry = data_manager.WorkbookRegistry(data_manager.open_workbook(registry_workbook_path))
    registry.insert(_record())

    registry.apply_if_eligible(
        "EWB0001",
        lambda record: None,
        lambda record: (_record(valid_until=BASE_TIME + timedelta(days=3)), []),
    )

    sheet = registry.workbook[data_manager.EWAY_BILLS_SHEET]
    assert sheet.max_row == 2
    assert registry.get("EWB0001").valid_until == BASE_TIME + timedelta(days=3)


def test_refresh_workbook_discards_unsaved_changes(registry_workbook_path):
    workbook = data_manager.open_workbook(registry_workbook_path)
    data_manager.WorkbookRegistry(workbook).insert(_record())

    refreshed = data_manager.refresh_workbook(registry_workbook_path)

    assert refreshed is not workbook
    assert data_manager.WorkbookRegistry(refreshed).find("EWB0001") is None
