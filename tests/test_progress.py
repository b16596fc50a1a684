from datetime import UTC, datetime
from pathlib import Path

import pytest

from agentboard.progress import (
    LogRetention,
    ProgressStateError,
    ProgressStore,
    RunStatus,
)


def _fixed_clock() -> datetime:
    return datetime(2025, 1, 15, 10, 30, 0, 123000, tzinfo=UTC)


def test_initialize_writes_launching_record_and_transcript(tmp_path: Path) -> None:
    store = ProgressStore(clock=_fixed_clock)

    store.initialize(tmp_path, "add-login-page-2025")

    record = store.read(tmp_path)
    assert record is not None
    assert record.status == RunStatus.LAUNCHING
    assert record.phase == "Initialization"
    assert record.timestamp == "2025-01-15T10:30:00.123Z"
    assert record.logs == ["[2025-01-15T10:30:00.123Z] Agent instance created: add-login-page-2025"]
    transcript = store.read_transcript(tmp_path)
    assert transcript.startswith("# Agent Progress Log")
    assert "Instance: add-login-page-2025" in transcript


def test_read_missing_or_corrupt_record_returns_none(tmp_path: Path) -> None:
    store = ProgressStore()

    assert store.read(tmp_path) is None
    assert store.read_transcript(tmp_path) == ""

    ProgressStore.progress_file(tmp_path).write_text("{not json", encoding="utf-8")
    assert store.read(tmp_path) is None


def test_read_is_idempotent(tmp_path: Path) -> None:
    store = ProgressStore()
    store.initialize(tmp_path, "instance")

    assert store.read(tmp_path) == store.read(tmp_path)


def test_log_retention_keeps_newest_entries(tmp_path: Path) -> None:
    store = ProgressStore(LogRetention(max_entries=100))
    store.initialize(tmp_path, "instance")

    store.update(tmp_path, logs=[f"line {index}" for index in range(150)])

    record = store.read(tmp_path)
    assert record is not None
    assert len(record.logs) == 100
    assert record.logs[0] == "line 50"
    assert record.logs[-1] == "line 149"


def test_update_only_refreshes_given_fields(tmp_path: Path) -> None:
    store = ProgressStore(clock=_fixed_clock)
    store.initialize(tmp_path, "instance")

    store.update(tmp_path, status=RunStatus.RUNNING, phase="Execution")
    record = store.read(tmp_path)

    assert record is not None
    assert record.status == RunStatus.RUNNING
    assert record.phase == "Execution"
    assert record.message == "Creating agent instance..."
    assert len(record.logs) == 1


def test_update_rejects_leaving_terminal_status(tmp_path: Path) -> None:
    store = ProgressStore()
    store.initialize(tmp_path, "instance")
    store.update(tmp_path, status=RunStatus.COMPLETED)

    with pytest.raises(ProgressStateError):
        store.update(tmp_path, status=RunStatus.RUNNING)

    store.update(tmp_path, status=RunStatus.COMPLETED, message="still done")
    record = store.read(tmp_path)
    assert record is not None
    assert record.message == "still done"


def test_reopen_starts_new_run_and_keeps_logs(tmp_path: Path) -> None:
    store = ProgressStore()
    store.initialize(tmp_path, "instance")
    store.update(tmp_path, status=RunStatus.FAILED, logs=["boom"])

    store.reopen(tmp_path, phase="Change request", message="again")
    store.update(tmp_path, status=RunStatus.RUNNING)

    record = store.read(tmp_path)
    assert record is not None
    assert record.status == RunStatus.RUNNING
    assert record.phase == "Change request"
    assert record.logs[-1] == "boom"


def test_append_log_writes_transcript_and_record(tmp_path: Path) -> None:
    store = ProgressStore(clock=_fixed_clock)
    store.initialize(tmp_path, "instance")

    store.append_log(tmp_path, "  Reading app.py  ")
    store.append_log(tmp_path, "   ")

    record = store.read(tmp_path)
    assert record is not None
    assert record.logs[-1] == "[2025-01-15T10:30:00.123Z] Reading app.py"
    assert len(record.logs) == 2
    assert store.read_transcript(tmp_path).endswith("\n[2025-01-15T10:30:00.123Z] Reading app.py")
