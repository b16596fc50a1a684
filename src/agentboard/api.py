"""HTTP surface for the execution session: run control plus a live status feed."""

from __future__ import annotations

from fastapi import FastAPI, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from agentboard import __version__
from agentboard.session import (
    ExecutionSession,
    PreconditionError,
    SessionError,
    TicketNotFoundError,
)
from agentboard.stream import SSE_HEADERS, sse_stream


class ChangeRequestBody(BaseModel):
    changeRequest: str


def _http_error(exc: SessionError) -> HTTPException:
    if isinstance(exc, TicketNotFoundError):
        return HTTPException(status_code=404, detail={"error": str(exc)})
    if isinstance(exc, PreconditionError):
        detail = {"error": exc.reason}
        if exc.details:
            detail["details"] = exc.details
        return HTTPException(status_code=400, detail=detail)
    return HTTPException(status_code=500, detail={"error": str(exc)})


def create_app(session: ExecutionSession, poll_interval: float = 1.5) -> FastAPI:
    app = FastAPI(title="Agentboard", version=__version__)

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok", "version": __version__}

    @app.post("/tickets/{ticket_id}/run")
    async def start_run(ticket_id: str) -> dict:
        try:
            started = await session.start_run(ticket_id)
        except SessionError as exc:
            raise _http_error(exc) from exc
        return {
            "success": True,
            "instancePath": str(started.instance_path),
            "workDir": str(started.work_dir),
            "branchName": started.branch_name,
        }

    @app.post("/tickets/{ticket_id}/changes")
    async def request_changes(ticket_id: str, body: ChangeRequestBody) -> dict:
        try:
            await session.request_changes(ticket_id, body.changeRequest)
        except SessionError as exc:
            raise _http_error(exc) from exc
        return {"success": True, "message": "Agent is implementing the requested changes"}

    @app.post("/tickets/{ticket_id}/cancel")
    async def cancel(ticket_id: str) -> dict:
        try:
            cancelled = session.cancel(ticket_id)
        except SessionError as exc:
            raise _http_error(exc) from exc
        return {
            "success": True,
            "cancelled": cancelled,
            "message": "Agent process cancelled" if cancelled else "No active process found",
        }

    @app.get("/tickets/{ticket_id}/status")
    async def status(ticket_id: str) -> StreamingResponse:
        return StreamingResponse(
            sse_stream(ticket_id, session.tickets, session.progress, poll_interval=poll_interval),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    @app.get("/tickets/{ticket_id}/report")
    async def report(ticket_id: str) -> dict:
        try:
            execution_report = session.get_report(ticket_id)
        except SessionError as exc:
            raise _http_error(exc) from exc
        if execution_report is None:
            raise HTTPException(status_code=404, detail={"error": "Report not available yet"})
        return execution_report.to_dict()

    @app.post("/tickets/{ticket_id}/merge")
    async def merge(ticket_id: str) -> dict:
        try:
            branch_name = await session.merge(ticket_id)
        except SessionError as exc:
            raise _http_error(exc) from exc
        return {"success": True, "message": f"Branch {branch_name} merged successfully"}

    @app.post("/tickets/{ticket_id}/reject")
    async def reject(ticket_id: str) -> dict:
        try:
            await session.reject(ticket_id)
        except SessionError as exc:
            raise _http_error(exc) from exc
        return {"success": True, "message": "Changes rejected, ticket moved back to Up Next"}

    return app
