from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from agentboard.config import AgentboardConfig
from agentboard.progress import LogRetention, ProgressStore, RunStatus
from agentboard.runner.base import (
    AgentExecutionError,
    AgentRunner,
    AgentTask,
    ChangeRequest,
)
from agentboard.runner.claude import ClaudeCodeRunner
from agentboard.runner.events import ExecutionReport, load_report
from agentboard.runner.registry import CancellationRegistry
from agentboard.tickets import (
    COMPLETED,
    IN_PROGRESS,
    IN_TESTING,
    UP_NEXT,
    JsonTicketStore,
    TicketLogPolicy,
    TicketRecord,
    TicketStore,
    TicketStoreError,
    utcnow_iso,
)
from agentboard.workspace import (
    ExecutionInstance,
    WorkspaceError,
    WorkspaceManager,
    WorkspaceResult,
)

logger = logging.getLogger(__name__)


class SessionError(RuntimeError):
    """Base class for errors raised by the execution session."""


class PreconditionError(SessionError):
    """Raised synchronously when a run cannot be started."""

    def __init__(self, reason: str, *, details: str | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.details = details


class TicketNotFoundError(PreconditionError):
    """Raised when the requested ticket does not exist."""


class AgentUnavailableError(PreconditionError):
    """Raised when the agent CLI cannot be found."""


class RunActiveError(PreconditionError):
    """Raised when the ticket already has a launching or running agent."""


class MergeError(SessionError):
    """Raised when the agent branch cannot be merged."""


class TicketLogWriter:
    """Queues progress lines for one ticket and writes them from a worker thread.

    Lines are batched so each store write (and its lock) covers every line
    that arrived since the previous write. ``close`` flushes what is queued.
    """

    def __init__(self, write: Callable[[list[str]], None]) -> None:
        self._write = write
        self._queue: asyncio.Queue[str | None] = asyncio.Queue()
        self._task = asyncio.create_task(self._drain())

    def __call__(self, line: str) -> None:
        self._queue.put_nowait(line)

    async def _drain(self) -> None:
        done = False
        while not done:
            batch: list[str] = []
            item = await self._queue.get()
            while True:
                if item is None:
                    done = True
                    break
                batch.append(item)
                if self._queue.empty():
                    break
                item = self._queue.get_nowait()
            if batch:
                await asyncio.to_thread(self._write, batch)

    async def close(self) -> None:
        self._queue.put_nowait(None)
        await self._task


@dataclass(slots=True)
class StartedRun:
    ticket_id: str
    instance_path: Path
    work_dir: Path
    branch_name: str
    task: asyncio.Task[ExecutionReport | None]


class ExecutionSession:
    """Coordinates workspace, runner and ticket record for agent runs.

    ``start_run`` and ``request_changes`` return as soon as the run has been
    accepted; the agent keeps running in a background task and its outcome is
    only visible through the ticket record and the progress store. At most one
    run per ticket is accepted by this process at a time: the status check and
    the LAUNCHING write happen under a per-ticket lock, and the ticket id is
    reserved in the cancellation registry before any work starts so a cancel
    that arrives before the process exists still stops the run. A run that
    finishes after its ticket was marked FAILED leaves the ticket as it is.
    """

    def __init__(
        self,
        tickets: TicketStore,
        workspace: WorkspaceManager,
        runner: AgentRunner,
        registry: CancellationRegistry,
        *,
        log_policy: TicketLogPolicy | None = None,
    ) -> None:
        self.tickets = tickets
        self.workspace = workspace
        self.runner = runner
        self.registry = registry
        self.log_policy = log_policy or TicketLogPolicy()
        self._locks: dict[str, asyncio.Lock] = {}
        self._tasks: dict[str, asyncio.Task[ExecutionReport | None]] = {}

    @classmethod
    def from_config(
        cls, config: AgentboardConfig, tickets: TicketStore | None = None
    ) -> ExecutionSession:
        progress = ProgressStore(LogRetention(max_entries=config.progress.max_log_entries))
        registry = CancellationRegistry()
        workspace = WorkspaceManager(
            config.instances_root,
            progress,
            branch_prefix=config.workspace.branch_prefix,
            base_branch=config.workspace.base_branch,
            git_timeout_seconds=config.workspace.git_timeout_seconds,
        )
        runner = ClaudeCodeRunner(
            progress,
            registry,
            binary=config.agent.binary,
            model=config.agent.model or None,
            skip_permissions=config.agent.skip_permissions,
            probe_timeout_seconds=config.agent.probe_timeout_seconds,
            forward_every_block=config.agent.forward_every_block,
        )
        return cls(
            tickets if tickets is not None else JsonTicketStore(config.ticket_store_path),
            workspace,
            runner,
            registry,
            log_policy=TicketLogPolicy(
                max_chars=config.tickets.log_max_chars,
                keep_chars=config.tickets.log_keep_chars,
            ),
        )

    @property
    def progress(self) -> ProgressStore:
        return self.workspace.progress

    def _ticket_lock(self, ticket_id: str) -> asyncio.Lock:
        return self._locks.setdefault(ticket_id, asyncio.Lock())

    def _require_ticket(self, ticket_id: str) -> TicketRecord:
        ticket = self.tickets.get(ticket_id)
        if ticket is None:
            raise TicketNotFoundError(f"Ticket not found: {ticket_id}")
        return ticket

    async def _require_agent(self) -> None:
        if not await self.runner.is_available():
            raise AgentUnavailableError(
                "Agent CLI is not available",
                details="Install the agent CLI and make sure it is on PATH.",
            )

    def _ensure_idle(self, ticket: TicketRecord) -> None:
        # A cancelled run reads FAILED on the ticket while its task may still be winding down.
        if ticket.id in self._tasks or (
            ticket.agent_status is not None and ticket.agent_status.is_active
        ):
            raise RunActiveError(f"Agent is already running for ticket {ticket.id}")

    def _reserve(self, ticket_id: str) -> None:
        try:
            self.registry.reserve(ticket_id)
        except ValueError as exc:
            raise RunActiveError(f"Agent is already running for ticket {ticket_id}") from exc

    def append_ticket_logs(self, ticket_id: str, lines: list[str]) -> None:
        """Append progress lines to the ticket unless its run already ended."""

        def _mutate(record: TicketRecord) -> None:
            if record.agent_status is not None and record.agent_status.is_terminal:
                return
            addition = "".join(f"{line}\n" for line in lines)
            record.agent_logs = self.log_policy.append(record.agent_logs, addition)
            record.agent_status = RunStatus.RUNNING

        try:
            self.tickets.mutate(ticket_id, _mutate)
        except TicketStoreError as exc:
            logger.warning("Failed to update logs for ticket %s: %s", ticket_id, exc)

    def _log_writer(self, ticket_id: str) -> TicketLogWriter:
        return TicketLogWriter(lambda lines: self.append_ticket_logs(ticket_id, lines))

    async def start_run(self, ticket_id: str) -> StartedRun:
        async with self._ticket_lock(ticket_id):
            await self._require_agent()
            ticket = self._require_ticket(ticket_id)
            if not ticket.requirements.strip():
                raise PreconditionError("Ticket has no requirements to implement")
            if not ticket.codebase_path:
                raise PreconditionError("Ticket has no codebase path")
            self._ensure_idle(ticket)
            self._reserve(ticket_id)

            try:
                instance = await asyncio.to_thread(
                    self.workspace.create_instance, ticket.title, ticket.requirements
                )
                workspace = await asyncio.to_thread(
                    self.workspace.create_isolated_workspace, instance, Path(ticket.codebase_path)
                )
                await asyncio.to_thread(
                    self.tickets.update,
                    ticket_id,
                    instance_path=str(instance.instance_path),
                    branch_name=workspace.branch_name or None,
                    agent_status=RunStatus.LAUNCHING,
                    started_at=utcnow_iso(),
                    completed_at=None,
                    agent_logs="",
                    status=IN_PROGRESS,
                )
            except BaseException:
                self.registry.unregister(ticket_id)
                raise

        task = AgentTask(
            execution_id=ticket_id, title=ticket.title, requirements=ticket.requirements
        )
        writer = self._log_writer(ticket_id)
        coro = self.runner.run(instance, workspace.work_dir, task, writer)
        return self._launch(ticket_id, instance, workspace, coro, writer)

    async def request_changes(self, ticket_id: str, change_request: str) -> StartedRun:
        if not change_request.strip():
            raise PreconditionError("Change request is required")

        async with self._ticket_lock(ticket_id):
            await self._require_agent()
            ticket = self._require_ticket(ticket_id)
            if not ticket.instance_path:
                raise PreconditionError("No agent instance exists for this ticket")
            if not ticket.requirements.strip():
                raise PreconditionError("Ticket has no requirements to build on")
            self._ensure_idle(ticket)

            try:
                instance, workspace = await asyncio.to_thread(
                    self.workspace.open_instance,
                    Path(ticket.instance_path),
                    Path(ticket.codebase_path),
                )
            except WorkspaceError as exc:
                raise PreconditionError(
                    "Agent instance is missing", details=str(exc)
                ) from exc
            prior_report = load_report(instance.instance_path)

            def _mark_launching(record: TicketRecord) -> None:
                record.agent_status = RunStatus.LAUNCHING
                record.started_at = utcnow_iso()
                record.completed_at = None
                record.status = IN_PROGRESS
                record.agent_logs = self.log_policy.append(
                    record.agent_logs, f"\n\n=== CHANGE REQUEST ===\n{change_request}\n\n"
                )

            self._reserve(ticket_id)
            try:
                await asyncio.to_thread(self.tickets.mutate, ticket_id, _mark_launching)
            except BaseException:
                self.registry.unregister(ticket_id)
                raise

        request = ChangeRequest(
            execution_id=ticket_id,
            title=ticket.title,
            change_request=change_request,
            prior_requirements=ticket.requirements,
            prior_summary=prior_report.summary if prior_report else "",
        )
        writer = self._log_writer(ticket_id)
        coro = self.runner.run_follow_up(instance, workspace.work_dir, request, writer)
        return self._launch(ticket_id, instance, workspace, coro, writer)

    def _launch(
        self,
        ticket_id: str,
        instance: ExecutionInstance,
        workspace: WorkspaceResult,
        coro: Coroutine[Any, Any, ExecutionReport],
        writer: TicketLogWriter,
    ) -> StartedRun:
        task = asyncio.create_task(
            self._supervise(ticket_id, coro, writer), name=f"agent-{ticket_id}"
        )
        self._tasks[ticket_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(ticket_id, None))
        logger.info(
            "Accepted agent run for ticket %s (%s workspace at %s)",
            ticket_id,
            workspace.strategy,
            workspace.work_dir,
        )
        return StartedRun(
            ticket_id=ticket_id,
            instance_path=instance.instance_path,
            work_dir=workspace.work_dir,
            branch_name=workspace.branch_name,
            task=task,
        )

    async def _supervise(
        self,
        ticket_id: str,
        coro: Coroutine[Any, Any, ExecutionReport],
        writer: TicketLogWriter,
    ) -> ExecutionReport | None:
        try:
            try:
                report = await coro
            finally:
                await writer.close()
        except AgentExecutionError as exc:
            await asyncio.to_thread(self._record_failure, ticket_id, str(exc))
            return None
        except Exception as exc:
            logger.exception("Agent run for ticket %s crashed", ticket_id)
            await asyncio.to_thread(self._record_failure, ticket_id, f"Unexpected error: {exc}")
            return None
        finally:
            self.registry.unregister(ticket_id)

        if not await asyncio.to_thread(self._record_success, ticket_id):
            return None
        return report

    def _record_success(self, ticket_id: str) -> bool:
        """Mark the ticket COMPLETED unless it was already finished, e.g. by a cancel."""
        applied = False

        def _mutate(record: TicketRecord) -> None:
            nonlocal applied
            if record.agent_status is not None and record.agent_status.is_terminal:
                return
            record.agent_status = RunStatus.COMPLETED
            record.completed_at = utcnow_iso()
            record.status = IN_TESTING
            applied = True

        try:
            self.tickets.mutate(ticket_id, _mutate)
        except TicketStoreError as exc:
            logger.error("Could not record completion for ticket %s: %s", ticket_id, exc)
            return False
        if not applied:
            logger.warning(
                "Agent run for ticket %s finished after the ticket was closed; result ignored",
                ticket_id,
            )
        return applied

    def _record_failure(self, ticket_id: str, reason: str) -> None:
        def _mutate(record: TicketRecord) -> None:
            record.agent_status = RunStatus.FAILED
            record.completed_at = record.completed_at or utcnow_iso()
            record.agent_logs = f"{record.agent_logs}\n\n=== FAILED ===\n{reason}"

        logger.warning("Agent run for ticket %s failed: %s", ticket_id, reason)
        try:
            self.tickets.mutate(ticket_id, _mutate)
        except TicketStoreError as exc:
            logger.error("Could not record failure for ticket %s: %s", ticket_id, exc)

    async def wait_for_runs(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks.values()))

    def cancel(self, ticket_id: str) -> bool:
        self._require_ticket(ticket_id)
        cancelled = self.registry.cancel(ticket_id)
        self.tickets.update(
            ticket_id, agent_status=RunStatus.FAILED, completed_at=utcnow_iso()
        )
        return cancelled

    def get_report(self, ticket_id: str) -> ExecutionReport | None:
        ticket = self._require_ticket(ticket_id)
        if not ticket.instance_path:
            raise PreconditionError("No agent instance exists for this ticket")
        return load_report(Path(ticket.instance_path))

    async def merge(self, ticket_id: str) -> str:
        ticket = self._require_ticket(ticket_id)
        if not ticket.instance_path:
            raise PreconditionError("No agent instance to merge")
        if not ticket.branch_name:
            raise PreconditionError("The agent worked without an isolated branch; nothing to merge")
        self._ensure_idle(ticket)
        try:
            await asyncio.to_thread(
                self.workspace.merge_branch, Path(ticket.codebase_path), ticket.branch_name
            )
        except WorkspaceError as exc:
            raise MergeError(f"Failed to merge {ticket.branch_name}: {exc}") from exc
        self.tickets.update(ticket_id, status=COMPLETED)
        return ticket.branch_name

    async def reject(self, ticket_id: str) -> None:
        ticket = self._require_ticket(ticket_id)
        if not ticket.instance_path:
            raise PreconditionError("No agent instance to reject")
        self._ensure_idle(ticket)
        codebase_root = Path(ticket.codebase_path)
        await asyncio.to_thread(self.workspace.cleanup, Path(ticket.instance_path), codebase_root)
        if ticket.branch_name:
            try:
                await asyncio.to_thread(
                    self.workspace.delete_branch, codebase_root, ticket.branch_name
                )
            except WorkspaceError as exc:
                logger.info("Could not delete branch %s: %s", ticket.branch_name, exc)
        self.tickets.update(
            ticket_id,
            status=UP_NEXT,
            agent_status=None,
            instance_path=None,
            branch_name=None,
            started_at=None,
            completed_at=None,
            agent_logs="",
        )
