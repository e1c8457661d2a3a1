import json

import pytest

from batchfix.errors import InvalidTransitionError, PersistenceError, RunNotFoundError
from batchfix.record_store import ProcessedLedger, RecordStore, descriptor_filename
from batchfix.schemas import DescriptorStatus, ErrorEntry, LedgerAction, RecordDescriptor, ResultOutcome


def test_descriptor_round_trip(store: RecordStore) -> None:
    run = store.create_run()
    pending = RecordDescriptor.pending("k1", "UPDATE t SET f='x' WHERE k='k1'")
    completed = pending.complete(3)

    for descriptor in (pending, completed, RecordDescriptor.pending("k2", "UPDATE t").fail("boom")):
        store.write_descriptor(run, descriptor)
        assert store.read_descriptor(run, descriptor.key) == descriptor


def test_descriptor_file_layout(store: RecordStore) -> None:
    run = store.create_run()
    path = store.write_descriptor(run, RecordDescriptor.pending("k1", "UPDATE t").complete(0))

    payload = json.loads(path.read_text(encoding="utf-8"))
    assert set(payload) == {"key", "query", "status", "result", "timestamp"}
    assert payload["status"] == "Completed"
    assert payload["result"]["outcome"] == ResultOutcome.SUCCESS_NO_ROWS_AFFECTED.value


def test_terminal_descriptors_do_not_transition() -> None:
    completed = RecordDescriptor.pending("k1", "UPDATE t").complete(1)
    failed = RecordDescriptor.pending("k2", "UPDATE t").fail("boom")

    with pytest.raises(InvalidTransitionError):
        completed.fail("late")
    with pytest.raises(InvalidTransitionError):
        failed.complete(1)
    with pytest.raises(InvalidTransitionError):
        completed.reopen()

    reopened = failed.reopen()
    assert reopened.status is DescriptorStatus.PENDING
    assert reopened.result is None


def test_run_ids_increase_and_latest_run_is_newest(store: RecordStore) -> None:
    runs = [store.create_run() for _ in range(3)]

    assert [run.run_id for run in runs] == sorted({run.run_id for run in runs})
    assert store.latest_run() == runs[-1]
    assert store.get_run(runs[0].run_id) == runs[0]
    with pytest.raises(RunNotFoundError):
        store.get_run("run_missing")


def test_error_ledger_appends_in_order(store: RecordStore) -> None:
    run = store.create_run()
    first = ErrorEntry(key="k1", descriptor="k1.json", error="first", timestamp="2026-01-01T00:00:00+00:00")
    second = ErrorEntry(key="k2", descriptor="k2.json", error="second", timestamp="2026-01-01T00:00:01+00:00")

    store.append_error(run, first)
    store.append_error(run, second)

    assert store.read_errors(run) == [first, second]


def test_clean_removes_runs_only(store: RecordStore, test_settings) -> None:
    store.create_run()
    store.create_run()
    ledger = ProcessedLedger.open(test_settings.processed_ledger_path)
    ledger.record("k1", LedgerAction.UPDATED)

    assert store.clean() == 2
    assert store.list_runs() == []
    assert "k1" in ProcessedLedger.open(test_settings.processed_ledger_path)


def test_processed_ledger_persists_across_opens(test_settings) -> None:
    ledger = ProcessedLedger.open(test_settings.processed_ledger_path)
    ledger.record("k1", LedgerAction.UPDATED)
    ledger.record("k2", LedgerAction.SKIPPED)

    reopened = ProcessedLedger.open(test_settings.processed_ledger_path)

    assert len(reopened) == 2
    assert "k1" in reopened and "k3" not in reopened
    assert reopened.action_for("k2") is LedgerAction.SKIPPED
    payload = json.loads(reopened.path.read_text(encoding="utf-8"))
    assert [entry["action"] for entry in payload["processed"]] == ["updated", "skipped"]


def test_corrupt_processed_ledger_is_persistence_error(test_settings) -> None:
    with open(test_settings.processed_ledger_path, "w", encoding="utf-8") as outfile:
        outfile.write("{not json")

    with pytest.raises(PersistenceError):
        ProcessedLedger.open(test_settings.processed_ledger_path)


def test_descriptor_filename_keeps_unsafe_keys_apart() -> None:
    assert descriptor_filename("k-1.a") == "k-1.a.json"
    first = descriptor_filename("a/b")
    second = descriptor_filename("a:b")

    assert "/" not in first
    assert first != second


def test_run_metadata_records_mode(store: RecordStore) -> None:
    run = store.create_run("update-county-codes")

    assert store.run_mode(run) == "update-county-codes"
    assert json.loads(run.metadata_path.read_text(encoding="utf-8"))["run_id"] == run.run_id

    run.metadata_path.unlink()
    assert store.run_mode(run) is None
