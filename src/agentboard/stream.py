from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Awaitable, Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from agentboard.progress import ProgressStore, RunStatus
from agentboard.tickets import TicketRecord, TicketStore, parse_iso

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _utcnow() -> datetime:
    return datetime.now(UTC)


def elapsed_seconds(ticket: TicketRecord, now: datetime) -> int | None:
    started = parse_iso(ticket.started_at)
    if started is None:
        return None
    finished = parse_iso(ticket.completed_at) or now
    return max(0, int((finished - started).total_seconds()))


async def status_events(
    ticket_id: str,
    tickets: TicketStore,
    progress: ProgressStore,
    *,
    poll_interval: float = 1.5,
    clock: Callable[[], datetime] = _utcnow,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> AsyncIterator[dict[str, Any]]:
    """Poll a ticket's run and yield one status payload per tick.

    The first payload carries the whole log as ``fullLogs``; later payloads
    carry only text appended since the previous tick. The feed ends right after
    the first payload whose status is terminal, or at once for a ticket that
    has never been run.
    """
    sent_length = 0
    first_tick = True
    while True:
        ticket = tickets.get(ticket_id)
        if ticket is None:
            yield {"error": "Ticket not found"}
            return

        record = None
        transcript = ""
        if ticket.instance_path:
            record = progress.read(Path(ticket.instance_path))
            transcript = progress.read_transcript(Path(ticket.instance_path))

        current_logs = ticket.agent_logs or transcript
        if len(current_logs) < sent_length:
            # The ticket log was truncated since the last tick.
            sent_length = 0
        new_logs = current_logs[sent_length:]
        sent_length = len(current_logs)

        status = ticket.agent_status
        if record is not None and record.phase:
            phase = record.phase
        elif status == RunStatus.RUNNING:
            phase = "Executing"
        else:
            phase = status.value if status else ""

        now = clock()
        payload: dict[str, Any] = {
            "status": status.value if status else None,
            "phase": phase,
            "message": record.message if record is not None else "",
            "duration": elapsed_seconds(ticket, now),
            "timestamp": now.isoformat(),
        }
        if new_logs:
            payload["logs"] = new_logs
        if first_tick and current_logs:
            payload["fullLogs"] = current_logs
        first_tick = False

        yield payload

        if status is None or status.is_terminal:
            return
        await sleep(poll_interval)


def format_sse(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


async def sse_stream(
    ticket_id: str,
    tickets: TicketStore,
    progress: ProgressStore,
    *,
    poll_interval: float = 1.5,
) -> AsyncIterator[str]:
    async for payload in status_events(
        ticket_id, tickets, progress, poll_interval=poll_interval
    ):
        yield format_sse(payload)
