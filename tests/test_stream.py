import asyncio
import json
from datetime import UTC, datetime
from pathlib import Path

from agentboard.progress import ProgressStore, RunStatus
from agentboard.stream import format_sse, status_events
from agentboard.tickets import JsonTicketStore, TicketRecord


def _clock() -> datetime:
    return datetime(2025, 1, 15, 10, 31, 0, tzinfo=UTC)


def _store(tmp_path: Path, **fields) -> JsonTicketStore:
    store = JsonTicketStore(tmp_path / "tickets.json")
    store.add(TicketRecord(id="T-1", title="Add Login Page", **fields))
    return store


def _collect(store: JsonTicketStore, ticket_id: str, sleep) -> list[dict]:
    async def _run() -> list[dict]:
        return [
            payload
            async for payload in status_events(
                ticket_id,
                store,
                ProgressStore(),
                poll_interval=0.5,
                clock=_clock,
                sleep=sleep,
            )
        ]

    return asyncio.run(_run())


def test_feed_sends_full_log_first_then_increments(tmp_path: Path) -> None:
    store = _store(
        tmp_path,
        agent_status=RunStatus.RUNNING,
        started_at="2025-01-15T10:30:00+00:00",
        agent_logs="Reading app.py\n",
    )
    sleeps: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)
        store.update(
            "T-1",
            agent_logs="Reading app.py\nRunning: pytest\n",
            agent_status=RunStatus.COMPLETED,
            completed_at="2025-01-15T10:30:42+00:00",
        )

    payloads = _collect(store, "T-1", fake_sleep)

    assert len(payloads) == 2
    first, second = payloads
    assert first["status"] == "RUNNING"
    assert first["phase"] == "Executing"
    assert first["duration"] == 60
    assert first["fullLogs"] == "Reading app.py\n"
    assert first["logs"] == "Reading app.py\n"
    assert second["status"] == "COMPLETED"
    assert second["logs"] == "Running: pytest\n"
    assert "fullLogs" not in second
    assert second["duration"] == 42
    assert sleeps == [0.5]


def test_feed_restarts_offset_after_truncation(tmp_path: Path) -> None:
    store = _store(tmp_path, agent_status=RunStatus.RUNNING, agent_logs="x" * 100)

    async def fake_sleep(seconds: float) -> None:
        store.update("T-1", agent_logs="tail", agent_status=RunStatus.FAILED)

    payloads = _collect(store, "T-1", fake_sleep)

    assert payloads[-1]["logs"] == "tail"


def test_feed_reads_progress_phase_and_transcript(tmp_path: Path) -> None:
    instance = tmp_path / "instance"
    instance.mkdir()
    ProgressStore().initialize(instance, "instance")
    store = _store(tmp_path, agent_status=RunStatus.LAUNCHING, instance_path=str(instance))

    async def fake_sleep(seconds: float) -> None:
        store.update("T-1", agent_status=RunStatus.FAILED)

    first = _collect(store, "T-1", fake_sleep)[0]

    assert first["phase"] == "Initialization"
    assert first["message"] == "Creating agent instance..."
    assert first["fullLogs"].startswith("# Agent Progress Log")
    assert first["duration"] is None


def test_feed_ends_for_missing_or_idle_ticket(tmp_path: Path) -> None:
    store = _store(tmp_path)

    async def no_sleep(seconds: float) -> None:
        raise AssertionError("should not poll")

    assert _collect(store, "T-404", no_sleep) == [{"error": "Ticket not found"}]
    idle = _collect(store, "T-1", no_sleep)
    assert len(idle) == 1
    assert idle[0]["status"] is None


def test_format_sse_frames_json() -> None:
    frame = format_sse({"status": "RUNNING", "logs": "é"})

    assert frame.startswith("data: ")
    assert frame.endswith("\n\n")
    assert json.loads(frame[len("data: ") :]) == {"status": "RUNNING", "logs": "é"}
