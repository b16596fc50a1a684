from __future__ import annotations

import json
import os
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import asdict, dataclass, fields
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

from agentboard.progress import RunStatus

UP_NEXT = "UP_NEXT"
IN_PROGRESS = "IN_PROGRESS"
IN_TESTING = "IN_TESTING"
COMPLETED = "COMPLETED"


class TicketStoreError(RuntimeError):
    """Raised when the ticket store cannot be read or written."""


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


@dataclass(slots=True)
class TicketLogPolicy:
    """Bounds the ticket's copy of the agent log by characters.

    Once the text grows past ``max_chars`` only the trailing ``keep_chars`` are
    kept before the next append.
    """

    max_chars: int = 50_000
    keep_chars: int = 40_000

    def append(self, current: str, addition: str) -> str:
        if len(current) > self.max_chars:
            current = current[-self.keep_chars :] if self.keep_chars > 0 else ""
        return current + addition


@dataclass(slots=True)
class TicketRecord:
    id: str
    title: str
    requirements: str = ""
    codebase_path: str = ""
    status: str = UP_NEXT
    agent_status: RunStatus | None = None
    instance_path: str | None = None
    branch_name: str | None = None
    started_at: str | None = None
    completed_at: str | None = None
    agent_logs: str = ""

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["agent_status"] = self.agent_status.value if self.agent_status else None
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> TicketRecord:
        known = {item.name for item in fields(cls)}
        data = {key: value for key, value in payload.items() if key in known}
        raw_status = data.get("agent_status")
        data["agent_status"] = RunStatus(raw_status) if raw_status else None
        return cls(**data)


class TicketStore(Protocol):
    def get(self, ticket_id: str) -> TicketRecord | None: ...

    def add(self, record: TicketRecord) -> TicketRecord: ...

    def mutate(
        self, ticket_id: str, mutator: Callable[[TicketRecord], None]
    ) -> TicketRecord: ...

    def update(self, ticket_id: str, **changes: Any) -> TicketRecord: ...


class JsonTicketStore:
    """Single-file ticket store guarded by an exclusive lock file."""

    def __init__(self, path: Path, lock_timeout_seconds: float = 3.0) -> None:
        self.path = Path(path)
        self.lock_file = self.path.with_name(self.path.name + ".lock")
        self.lock_timeout_seconds = lock_timeout_seconds

    @contextmanager
    def _lock(self) -> Iterator[None]:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > self.lock_timeout_seconds:
                    raise TicketStoreError("Timed out waiting for ticket store lock.") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def _read_all(self) -> dict[str, dict[str, Any]]:
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            raise TicketStoreError(f"Ticket store is corrupt: {self.path}") from exc
        tickets = payload.get("tickets", {}) if isinstance(payload, dict) else {}
        return tickets if isinstance(tickets, dict) else {}

    def _write_all(self, tickets: dict[str, dict[str, Any]]) -> None:
        temp_path = self.path.with_name(self.path.name + ".tmp")
        temp_path.write_text(
            json.dumps({"tickets": tickets}, ensure_ascii=False, indent=2), encoding="utf-8"
        )
        os.replace(temp_path, self.path)

    def list_tickets(self) -> list[TicketRecord]:
        return [TicketRecord.from_dict(item) for item in self._read_all().values()]

    def get(self, ticket_id: str) -> TicketRecord | None:
        payload = self._read_all().get(ticket_id)
        if not isinstance(payload, dict):
            return None
        return TicketRecord.from_dict(payload)

    def add(self, record: TicketRecord) -> TicketRecord:
        with self._lock():
            tickets = self._read_all()
            if record.id in tickets:
                raise TicketStoreError(f"Ticket already exists: {record.id}")
            tickets[record.id] = record.to_dict()
            self._write_all(tickets)
        return record

    def mutate(self, ticket_id: str, mutator: Callable[[TicketRecord], None]) -> TicketRecord:
        with self._lock():
            tickets = self._read_all()
            payload = tickets.get(ticket_id)
            if not isinstance(payload, dict):
                raise TicketStoreError(f"Ticket not found: {ticket_id}")
            record = TicketRecord.from_dict(payload)
            mutator(record)
            tickets[ticket_id] = record.to_dict()
            self._write_all(tickets)
        return record

    def update(self, ticket_id: str, **changes: Any) -> TicketRecord:
        known = {item.name for item in fields(TicketRecord)}
        unknown = sorted(set(changes) - known)
        if unknown:
            raise TicketStoreError("Unknown ticket fields: " + ", ".join(unknown))

        def _apply(record: TicketRecord) -> None:
            for key, value in changes.items():
                setattr(record, key, value)

        return self.mutate(ticket_id, _apply)
