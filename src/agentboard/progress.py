from __future__ import annotations

import json
import logging
import os
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

PROGRESS_FILE = "progress.json"
TRANSCRIPT_FILE = "progress.md"


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _iso(moment: datetime) -> str:
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class RunStatus(StrEnum):
    LAUNCHING = "LAUNCHING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED)

    @property
    def is_active(self) -> bool:
        return self in (RunStatus.LAUNCHING, RunStatus.RUNNING)


_TRANSITIONS: dict[RunStatus, set[RunStatus]] = {
    RunStatus.LAUNCHING: {RunStatus.RUNNING, RunStatus.COMPLETED, RunStatus.FAILED},
    RunStatus.RUNNING: {RunStatus.COMPLETED, RunStatus.FAILED},
    RunStatus.COMPLETED: set(),
    RunStatus.FAILED: set(),
}


class ProgressStateError(RuntimeError):
    """Raised when an update would move a record out of a terminal status."""


@dataclass(slots=True)
class LogRetention:
    """Keeps only the newest ``max_entries`` log lines of a progress record."""

    max_entries: int = 100

    def apply(self, logs: list[str]) -> list[str]:
        if self.max_entries <= 0:
            return []
        if len(logs) > self.max_entries:
            return logs[-self.max_entries :]
        return logs


@dataclass(slots=True)
class ProgressRecord:
    status: RunStatus = RunStatus.LAUNCHING
    phase: str = ""
    message: str = ""
    timestamp: str = field(default_factory=lambda: _iso(_utcnow()))
    logs: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "phase": self.phase,
            "message": self.message,
            "timestamp": self.timestamp,
            "logs": list(self.logs),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ProgressRecord:
        try:
            status = RunStatus(str(payload.get("status", RunStatus.LAUNCHING.value)))
        except ValueError:
            status = RunStatus.LAUNCHING
        logs = payload.get("logs", [])
        return cls(
            status=status,
            phase=str(payload.get("phase") or ""),
            message=str(payload.get("message") or ""),
            timestamp=str(payload.get("timestamp") or _iso(_utcnow())),
            logs=[str(line) for line in logs] if isinstance(logs, list) else [],
        )


class ProgressStore:
    """File-backed progress snapshot and transcript for execution instances.

    Each instance directory holds ``progress.json`` (status, phase, message,
    timestamp and a bounded log array) and ``progress.md`` (an append-only,
    timestamped transcript). During a run the supervisor for that instance is
    the only writer; any number of readers may poll concurrently.
    """

    def __init__(
        self,
        retention: LogRetention | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.retention = retention or LogRetention()
        self._clock = clock

    def _now_iso(self) -> str:
        return _iso(self._clock())

    @staticmethod
    def progress_file(instance_path: Path) -> Path:
        return Path(instance_path) / PROGRESS_FILE

    @staticmethod
    def transcript_file(instance_path: Path) -> Path:
        return Path(instance_path) / TRANSCRIPT_FILE

    def read(self, instance_path: Path) -> ProgressRecord | None:
        progress_file = self.progress_file(instance_path)
        try:
            payload = json.loads(progress_file.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except json.JSONDecodeError:
            logger.warning("Unreadable progress record at %s", progress_file)
            return None
        if not isinstance(payload, dict):
            return None
        return ProgressRecord.from_dict(payload)

    def read_transcript(self, instance_path: Path) -> str:
        try:
            return self.transcript_file(instance_path).read_text(encoding="utf-8")
        except FileNotFoundError:
            return ""

    def _write(self, instance_path: Path, record: ProgressRecord) -> None:
        progress_file = self.progress_file(instance_path)
        temp_file = progress_file.with_suffix(".json.tmp")
        temp_file.write_text(
            json.dumps(record.to_dict(), ensure_ascii=False, indent=2), encoding="utf-8"
        )
        os.replace(temp_file, progress_file)

    def initialize(self, instance_path: Path, instance_name: str) -> ProgressRecord:
        created_at = self._now_iso()
        record = ProgressRecord(
            status=RunStatus.LAUNCHING,
            phase="Initialization",
            message="Creating agent instance...",
            timestamp=created_at,
            logs=[f"[{created_at}] Agent instance created: {instance_name}"],
        )
        self._write(instance_path, record)
        self.transcript_file(instance_path).write_text(
            f"# Agent Progress Log\nInstance: {instance_name}\nCreated: {created_at}\n\n## Log\n",
            encoding="utf-8",
        )
        return record

    def reopen(self, instance_path: Path, *, phase: str, message: str) -> ProgressRecord:
        """Start a new LAUNCHING snapshot for a follow-up run, keeping the log."""
        current = self.read(instance_path) or ProgressRecord()
        record = ProgressRecord(
            status=RunStatus.LAUNCHING,
            phase=phase,
            message=message,
            timestamp=self._now_iso(),
            logs=current.logs,
        )
        self._write(instance_path, record)
        return record

    def update(
        self,
        instance_path: Path,
        *,
        status: RunStatus | None = None,
        phase: str | None = None,
        message: str | None = None,
        timestamp: str | None = None,
        logs: Iterable[str] | None = None,
    ) -> ProgressRecord:
        record = self.read(instance_path) or ProgressRecord()

        if status is not None and status != record.status:
            if status not in _TRANSITIONS[record.status]:
                raise ProgressStateError(
                    f"Cannot move progress from {record.status.value} to {status.value}."
                )
            record.status = status
        if phase is not None:
            record.phase = phase
        if message is not None:
            record.message = message
        if timestamp is not None:
            record.timestamp = timestamp
        elif status is not None or phase is not None or message is not None:
            record.timestamp = self._now_iso()
        if logs is not None:
            record.logs = self.retention.apply([*record.logs, *logs])

        self._write(instance_path, record)
        return record

    def append_log(self, instance_path: Path, line: str) -> None:
        message = line.strip()
        if not message:
            return
        entry = f"[{self._now_iso()}] {message}"
        with self.transcript_file(instance_path).open("a", encoding="utf-8") as handle:
            handle.write(f"\n{entry}")
        self.update(instance_path, logs=[entry])
