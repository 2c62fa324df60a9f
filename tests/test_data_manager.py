"""Unit tests documenting the expected behavior of the data access layer."""

from __future__ import annotations

import configparser
from dataclasses import replace
from datetime import UTC, date, datetime
from pathlib import Path

import openpyxl
from openpyxl.workbook import Workbook as OpenpyxlWorkbook
import pytest
from filelock import FileLock

from stock_ledger import constants, data_manager
from stock_ledger.exceptions import ConcurrentModification, PeriodNotFound, StorageUnavailable


def _period(tenant="T1", product="P1", year=2025, month=9, **overrides) -> data_manager.StockPeriod:
    return data_manager.StockPeriod(
        tenant_id=tenant,
        product_id=product,
        year=year,
        month_number=month,
        **overrides,
    )


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def test_find_config_file_respects_explicit_path(config_file: Path):
    """Supplying an explicit path should be treated as the winning answer."""

    assert data_manager.find_config_file(config_file) == config_file


def test_find_config_file_discovers_in_parent_directory(tmp_path, monkeypatch):
    """Auto-discovery should walk up from the working directory."""

    config_file = tmp_path / "config.ini"
    config_file.write_text("[System]\nDataFile=stock_ledger.xlsx")
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)
    monkeypatch.chdir(nested)

    assert data_manager.find_config_file() == config_file


def test_find_config_file_raises_when_missing(tmp_path, monkeypatch):
    """Absent configuration should surface a clear FileNotFoundError."""

    monkeypatch.chdir(tmp_path)
    with pytest.raises(FileNotFoundError):
        data_manager.find_config_file()


def test_read_config_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        data_manager.read_config(tmp_path / "not_there.ini")


def test_parse_settings_resolves_relative_paths(config_factory):
    """Relative DataFile entries should be anchored to the config location."""

    bundle = config_factory(make_relative=True)
    parser = data_manager.read_config(bundle.config_path)
    settings = data_manager.parse_settings(parser, base_path=bundle.config_path.parent)

    assert settings.data_file == (bundle.config_path.parent / bundle.workbook_path.name).resolve()
    assert settings.balance_policy is constants.BalancePolicy.PER_ENTRY
    assert settings.timezone == "UTC"
    assert settings.default_tenant_id == "T-DEFAULT"


def test_parse_settings_applies_ledger_defaults(tmp_path):
    """Only [System] is mandatory; ledger options fall back to defaults."""

    parser = configparser.ConfigParser()
    parser.read_string("[System]\nDataFile = ledger.xlsx\nSchemaVersion = 1.0.0\n")
    settings = data_manager.parse_settings(parser, base_path=tmp_path)

    assert settings.balance_policy is constants.BalancePolicy.PER_ENTRY
    assert settings.timezone == "UTC"
    assert settings.default_tenant_id is None


def test_parse_settings_reads_aggregate_policy(tmp_path):
    parser = configparser.ConfigParser()
    parser.read_string(
        "[System]\nDataFile = ledger.xlsx\nSchemaVersion = 1.0.0\n[Ledger]\nBalancePolicy = Aggregate\n"
    )
    settings = data_manager.parse_settings(parser, base_path=tmp_path)
    assert settings.balance_policy is constants.BalancePolicy.AGGREGATE


def test_parse_settings_requires_expected_sections(tmp_path):
    parser = configparser.ConfigParser()
    parser.read_string("[Other]\nvalue=1")
    with pytest.raises(KeyError):
        data_manager.parse_settings(parser, base_path=tmp_path)


@pytest.mark.parametrize(
    "ledger_section",
    ["BalancePolicy = optimistic\n", "Timezone = Mars/Olympus_Mons\n"],
)
def test_parse_settings_rejects_unknown_ledger_options(tmp_path, ledger_section):
    parser = configparser.ConfigParser()
    parser.read_string(
        "[System]\nDataFile = ledger.xlsx\nSchemaVersion = 1.0.0\n[Ledger]\n" + ledger_section
    )
    with pytest.raises(ValueError):
        data_manager.parse_settings(parser, base_path=tmp_path)


# ---------------------------------------------------------------------------
# Workbook lifecycle
# ---------------------------------------------------------------------------


def test_open_workbook_returns_openpyxl_instance(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    assert isinstance(workbook, OpenpyxlWorkbook)
    assert constants.SheetName.STOCK_PERIODS.value in workbook.sheetnames
    assert constants.SheetName.MOVEMENTS.value in workbook.sheetnames


def test_open_workbook_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        data_manager.open_workbook(tmp_path / "missing.xlsx")


def test_open_workbook_rejects_foreign_workbook(tmp_path):
    """A workbook without the ledger sheets should not be accepted."""

    path = tmp_path / "foreign.xlsx"
    openpyxl.Workbook().save(path)
    with pytest.raises(ValueError):
        data_manager.open_workbook(path)


def test_save_workbook_replaces_destination_and_leaves_no_temp_files(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.write_period(workbook, _period(opening_balance=7, closing_balance=7))
    data_manager.save_workbook(workbook, master_workbook_path)

    reloaded = data_manager.open_workbook(master_workbook_path)
    assert data_manager.read_period(reloaded, ("T1", "P1", 2025, 9)).opening_balance == 7
    assert sorted(p.name for p in master_workbook_path.parent.iterdir()) == [master_workbook_path.name]


# ---------------------------------------------------------------------------
# Row serialization
# ---------------------------------------------------------------------------


def test_movement_round_trip_preserves_optional_fields(entry_factory):
    entry = entry_factory(
        added=5,
        running_balance=5,
        source_reference="order-42",
        movement_type=constants.MovementType.ADDED.value,
        batch_number="B-7",
        expire_date=date(2025, 10, 16),
        notes="first delivery",
    )
    key = ("T1", "P1", 2025, 9)

    raw = data_manager.serialize_movement(key, 3, entry)
    parsed_key, sequence, parsed = data_manager.deserialize_movement(raw)

    assert parsed_key == key
    assert sequence == 3
    assert parsed == entry


def test_deserialize_period_coerces_numeric_identifiers():
    """Excel may hand back ids as numbers; keys must still compare as text."""

    period = data_manager.deserialize_period([101, 2002, 2025, 9, 1, 10, 0, 0, 0, 0, 10])
    assert period.key == ("101", "2002", 2025, 9)


# ---------------------------------------------------------------------------
# WorkbookLedgerStore
# ---------------------------------------------------------------------------


def test_store_get_missing_period_raises(store):
    with pytest.raises(PeriodNotFound):
        store.get("T1", "P1", 2025, 9)
    assert store.find("T1", "P1", 2025, 9) is None


def test_store_put_then_get_round_trips_movements(store, entry_factory):
    movements = (entry_factory(added=50, running_balance=150), entry_factory(used=30, running_balance=120))
    period = _period(opening_balance=100, movements=movements, total_added=50, total_used=30, closing_balance=120, revision=1)

    store.put(period)

    assert store.get("T1", "P1", 2025, 9) == period


def test_store_put_is_a_full_replace(store, entry_factory):
    first = _period(movements=(entry_factory(added=1), entry_factory(added=2)), revision=1)
    second = _period(movements=(entry_factory(added=9),), revision=2)

    store.put(first)
    store.put(second)
    store.put(second)

    assert store.get("T1", "P1", 2025, 9) == second
    assert len(list(data_manager.iter_periods(store.workbook))) == 1
    assert len(list(data_manager.iter_movements(store.workbook))) == 1


def test_store_put_persists_to_disk(store, master_workbook_path):
    store.put(_period(opening_balance=3, closing_balance=3, revision=1))

    reopened = data_manager.WorkbookLedgerStore(master_workbook_path)
    assert reopened.get("T1", "P1", 2025, 9).closing_balance == 3


def test_store_chain_is_chronological_and_scoped(store):
    store.put(_period(year=2025, month=11, revision=1))
    store.put(_period(year=2024, month=12, revision=1))
    store.put(_period(year=2025, month=9, revision=1))
    store.put(_period(product="P2", year=2025, month=10, revision=1))
    store.put(_period(tenant="T2", year=2025, month=10, revision=1))

    chain = store.get_chain("T1", "P1")

    assert [(p.year, p.month_number) for p in chain] == [(2024, 12), (2025, 9), (2025, 11)]
    assert store.get_previous("T1", "P1", 2025, 11).month_number == 9
    assert store.get_previous("T1", "P1", 2024, 12) is None
    assert store.get_latest("T1", "P1").month_number == 11
    assert store.list_products() == [("T1", "P1"), ("T1", "P2"), ("T2", "P1")]
    assert store.list_products("T2") == [("T2", "P1")]


def test_store_put_rejects_stale_revision(store):
    store.put(_period(revision=2))

    with pytest.raises(ConcurrentModification) as excinfo:
        store.put(_period(revision=2), expected_revision=1)

    assert excinfo.value.actual_revision == 2
    assert excinfo.value.retryable is False


def test_stores_sharing_a_workbook_keep_each_others_writes(store, master_workbook_path):
    other = data_manager.WorkbookLedgerStore(master_workbook_path)

    store.put(_period(product="PX", opening_balance=10, closing_balance=10, revision=1), expected_revision=0)
    other.put(_period(product="PY", opening_balance=5, closing_balance=5, revision=1), expected_revision=0)

    assert other.get("T1", "PX", 2025, 9).closing_balance == 10
    reopened = data_manager.WorkbookLedgerStore(master_workbook_path)
    assert reopened.list_products() == [("T1", "PX"), ("T1", "PY")]


def test_stale_store_checks_revision_against_disk(store, master_workbook_path):
    store.put(_period(revision=1))
    other = data_manager.WorkbookLedgerStore(master_workbook_path)
    store.put(_period(closing_balance=4, revision=2), expected_revision=1)

    with pytest.raises(ConcurrentModification) as excinfo:
        other.put(_period(closing_balance=9, revision=2), expected_revision=1)

    assert excinfo.value.actual_revision == 2
    reopened = data_manager.WorkbookLedgerStore(master_workbook_path)
    assert reopened.get("T1", "P1", 2025, 9).closing_balance == 4


def test_store_put_gives_up_when_workbook_stays_locked(master_workbook_path):
    impatient = data_manager.WorkbookLedgerStore(master_workbook_path, lock_timeout=0.1)
    held = FileLock(str(master_workbook_path.with_name(f"{master_workbook_path.name}.lock")))

    with held:
        with pytest.raises(StorageUnavailable) as excinfo:
            impatient.put(_period(revision=1))

    assert excinfo.value.retryable is True
    assert impatient.find("T1", "P1", 2025, 9) is None


def test_reload_picks_up_external_saves(store, master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.write_period(workbook, _period(opening_balance=6, closing_balance=6, revision=1))
    data_manager.save_workbook(workbook, master_workbook_path)

    store.reload()

    assert store.workbook is not workbook
    assert store.get("T1", "P1", 2025, 9).closing_balance == 6


def test_store_put_expects_zero_for_new_periods(store):
    store.put(_period(revision=1), expected_revision=0)
    assert store.get("T1", "P1", 2025, 9).revision == 1


def test_store_put_rolls_back_memory_when_save_fails(store, monkeypatch, entry_factory):
    original = _period(opening_balance=4, closing_balance=4, revision=1)
    store.put(original)

    def _fail(*_args, **_kwargs):
        raise OSError("disk full")

    monkeypatch.setattr(data_manager, "save_workbook", _fail)
    with pytest.raises(StorageUnavailable) as excinfo:
        store.put(replace(original, movements=(entry_factory(added=1),), revision=2), expected_revision=1)

    assert excinfo.value.retryable is True
    assert store.get("T1", "P1", 2025, 9) == original


def test_store_put_failure_on_new_period_leaves_no_rows(store, monkeypatch):
    def _fail(*_args, **_kwargs):
        raise OSError("read-only filesystem")

    monkeypatch.setattr(data_manager, "save_workbook", _fail)
    with pytest.raises(StorageUnavailable):
        store.put(_period(revision=1))

    assert store.find("T1", "P1", 2025, 9) is None


def test_period_labels_use_month_names():
    assert _period(month=10).label == "October 2025"


def test_entry_net_change_combines_counters():
    entry = data_manager.MovementEntry(
        entry_id="E1",
        timestamp=datetime(2025, 9, 1, tzinfo=UTC),
        added=10,
        used=3,
        expired=2,
        damaged=1,
    )
    assert entry.net_change == 4
