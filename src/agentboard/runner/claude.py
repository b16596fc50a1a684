from __future__ import annotations

import asyncio
import codecs
import logging
import os
import shlex
from collections.abc import Callable
from pathlib import Path
from typing import IO, Any

from agentboard.progress import ProgressStateError, ProgressStore, RunStatus
from agentboard.runner.base import (
    AgentCancelledError,
    AgentExecutionError,
    AgentProcessError,
    AgentRunner,
    AgentTask,
    ChangeRequest,
    ProgressCallback,
)
from agentboard.runner.events import ExecutionReport, StreamEventParser, write_report
from agentboard.runner.registry import CancellationRegistry
from agentboard.workspace import ExecutionInstance

logger = logging.getLogger(__name__)

DEBUG_LOG_FILE = "debug.log"
READ_CHUNK_SIZE = 64 * 1024
KILL_WAIT_SECONDS = 5.0


async def probe_agent_cli(binary: str, timeout_seconds: float = 5.0) -> bool:
    """Return whether ``binary`` resolves on PATH, giving up after ``timeout_seconds``."""
    if not binary.strip():
        return False
    try:
        proc = await asyncio.create_subprocess_exec(
            "sh",
            "-lc",
            f"command -v {shlex.quote(binary)} >/dev/null 2>&1",
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except OSError:
        return False
    try:
        return await asyncio.wait_for(proc.wait(), timeout=timeout_seconds) == 0
    except TimeoutError:
        logger.warning("Timed out probing for %s after %.1fs", binary, timeout_seconds)
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        return False


class ClaudeCodeRunner(AgentRunner):
    """Supervises one ``claude`` CLI process per run.

    The prompt goes in on stdin and ``stream-json`` events come back on stdout.
    Each complete stdout line becomes at most one human-readable progress line
    (or several when ``forward_every_block`` is set), which is handed to the
    caller's callback and then appended to the progress store. Both streams are
    mirrored verbatim into ``debug.log`` inside the instance directory.
    """

    def __init__(
        self,
        progress: ProgressStore,
        registry: CancellationRegistry,
        *,
        binary: str = "claude",
        model: str | None = None,
        skip_permissions: bool = True,
        probe_timeout_seconds: float = 5.0,
        forward_every_block: bool = False,
        event_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self.progress = progress
        self.registry = registry
        self.binary = binary
        self.model = model
        self.skip_permissions = skip_permissions
        self.probe_timeout_seconds = probe_timeout_seconds
        self.forward_every_block = forward_every_block
        self.event_hook = event_hook

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    def build_command(self) -> list[str]:
        command = [self.binary, "--print", "--output-format", "stream-json", "--verbose"]
        if self.skip_permissions:
            command.append("--dangerously-skip-permissions")
        if self.model:
            command.extend(["--model", self.model])
        return command

    def build_prompt(self, instance: ExecutionInstance, work_dir: Path, task: AgentTask) -> str:
        return f"""You are an autonomous coding agent. Implement the ticket described below.

Ticket: {task.title}
Requirements document: {instance.requirements_file}
Working directory: {work_dir}
Progress log: {self.progress.transcript_file(instance.instance_path)}

Requirements:
{task.requirements.strip()}

Instructions:
1. Read the requirements carefully before changing any code.
2. Implement the requirements one unit of work at a time.
3. Write or update tests for each feature where appropriate.
4. Run the relevant tests before moving on, and fix failures you introduce.
5. Commit after each completed unit of work with a descriptive message.
6. Append short status updates to the progress log.

IMPORTANT:
- Work incrementally and test before proceeding to the next unit.
- Stay within the scope of the requirements; do not refactor unrelated code.
- Only modify files inside the working directory.

Begin implementation now."""

    def build_follow_up_prompt(
        self, instance: ExecutionInstance, work_dir: Path, request: ChangeRequest
    ) -> str:
        prior_summary = request.prior_summary.strip() or "(no summary recorded)"
        return f"""You are an autonomous coding agent. A reviewer has requested changes to
your previous implementation of this ticket.

Ticket: {request.title}
Change request document: {instance.change_request_file}
Original requirements document: {instance.requirements_file}
Working directory: {work_dir}
Progress log: {self.progress.transcript_file(instance.instance_path)}

Requested changes:
{request.change_request.strip()}

Original requirements:
{request.prior_requirements.strip()}

Summary of the previous run:
{prior_summary}

Instructions:
1. Review the current state of the code in the working directory.
2. Apply the requested changes one unit of work at a time.
3. Run the relevant tests before moving on, and fix failures you introduce.
4. Commit after each completed unit of work with a descriptive message.
5. Append short status updates to the progress log.

IMPORTANT:
- Only address the requested changes; keep the rest of the implementation intact.
- Only modify files inside the working directory.

Begin now."""

    async def is_available(self) -> bool:
        return await probe_agent_cli(self.binary, self.probe_timeout_seconds)

    async def run(
        self,
        instance: ExecutionInstance,
        work_dir: Path,
        task: AgentTask,
        on_progress: ProgressCallback,
    ) -> ExecutionReport:
        prompt = self.build_prompt(instance, work_dir, task)
        return await self._execute(
            instance,
            work_dir,
            prompt,
            execution_id=task.execution_id,
            title=task.title,
            on_progress=on_progress,
            running_message="Agent is implementing the requirements...",
        )

    async def run_follow_up(
        self,
        instance: ExecutionInstance,
        work_dir: Path,
        request: ChangeRequest,
        on_progress: ProgressCallback,
    ) -> ExecutionReport:
        instance.change_request_file.write_text(request.change_request, encoding="utf-8")
        self.progress.reopen(
            instance.instance_path, phase="Change request", message="Preparing follow-up run..."
        )
        prompt = self.build_follow_up_prompt(instance, work_dir, request)
        return await self._execute(
            instance,
            work_dir,
            prompt,
            execution_id=request.execution_id,
            title=request.title,
            on_progress=on_progress,
            running_message="Agent is applying the requested changes...",
        )

    def _fail(self, instance: ExecutionInstance, message: str) -> None:
        try:
            self.progress.update(
                instance.instance_path, status=RunStatus.FAILED, phase="Error", message=message
            )
            self.progress.append_log(instance.instance_path, message)
        except (OSError, ProgressStateError) as exc:
            logger.error("Could not record failure for %s: %s", instance.name, exc)

    async def _execute(
        self,
        instance: ExecutionInstance,
        work_dir: Path,
        prompt: str,
        *,
        execution_id: str,
        title: str,
        on_progress: ProgressCallback,
        running_message: str,
    ) -> ExecutionReport:
        instance_path = instance.instance_path
        if self.registry.is_registered(execution_id):
            raise AgentExecutionError(
                f"Agent run already in progress for {execution_id}", retriable=False
            )

        self.progress.update(
            instance_path, status=RunStatus.RUNNING, phase="Execution", message=running_message
        )

        def deliver(line: str) -> None:
            on_progress(line)
            self.progress.append_log(instance_path, line)

        parser = StreamEventParser(
            forward_every_block=self.forward_every_block,
            on_parse_fallback=lambda line: self._emit(
                {"event": "agent_parse_fallback", "execution_id": execution_id, "line": line[:200]}
            ),
        )
        command = self.build_command()
        env = os.environ.copy()
        env["FORCE_COLOR"] = "0"
        env["NO_COLOR"] = "1"

        if self.registry.was_cancelled(execution_id):
            self.registry.unregister(execution_id)
            message = "Agent run cancelled before start"
            self._fail(instance, message)
            raise AgentCancelledError(message, retriable=False)

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(work_dir),
                env=env,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            self.registry.unregister(execution_id)
            message = f"Failed to start agent: {exc}"
            logger.error("%s (command: %s)", message, command[0])
            self._fail(instance, message)
            raise AgentProcessError(message, retriable=False) from exc

        if not self.registry.register(execution_id, process):
            await self._kill(process)
            self.registry.unregister(execution_id)
            message = "Agent run cancelled before start"
            self._fail(instance, message)
            raise AgentCancelledError(message, retriable=False)

        logger.info("Started agent for %s with pid %s in %s", execution_id, process.pid, work_dir)
        self._emit(
            {"event": "agent_start", "execution_id": execution_id, "command": command[:4]}
        )

        cancelled = False
        try:
            with (instance_path / DEBUG_LOG_FILE).open("a", encoding="utf-8") as debug_log:
                await self._send_prompt(process, prompt)
                await asyncio.gather(
                    self._pump_stdout(process.stdout, parser, debug_log, deliver),
                    self._pump_stderr(process.stderr, debug_log, deliver),
                )
            return_code = await process.wait()
        except asyncio.CancelledError:
            await self._kill(process)
            self._fail(instance, "Agent run interrupted")
            raise
        except Exception as exc:
            await self._kill(process)
            message = f"Agent run failed: {exc}"
            self._fail(instance, message)
            raise AgentExecutionError(message) from exc
        finally:
            cancelled = self.registry.was_cancelled(execution_id)
            self.registry.unregister(execution_id)

        logger.info("Agent for %s exited with code %s", execution_id, return_code)
        self._emit(
            {"event": "agent_exit", "execution_id": execution_id, "exit_code": return_code}
        )

        report = parser.report
        if return_code == 0 and report is not None and not cancelled:
            try:
                write_report(instance_path, report, title)
                self.progress.update(
                    instance_path,
                    status=RunStatus.COMPLETED,
                    phase="Done",
                    message="Implementation completed successfully!",
                )
            except (OSError, ProgressStateError) as exc:
                message = f"Could not write report: {exc}"
                self._fail(instance, message)
                raise AgentExecutionError(message, exit_code=return_code) from exc
            return report

        if cancelled:
            message = f"Agent run cancelled (exit code {return_code})"
            self._fail(instance, message)
            raise AgentCancelledError(message, exit_code=return_code, retriable=False)
        if return_code == 0:
            message = "Agent exited with code 0 without a final result"
        else:
            message = f"Agent exited with code {return_code}"
        self._fail(instance, message)
        raise AgentExecutionError(message, exit_code=return_code)

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                return
        try:
            await asyncio.wait_for(process.wait(), timeout=KILL_WAIT_SECONDS)
        except TimeoutError:
            logger.warning("Agent process %s did not exit after kill", process.pid)

    @staticmethod
    async def _send_prompt(process: asyncio.subprocess.Process, prompt: str) -> None:
        if process.stdin is None:
            return
        try:
            process.stdin.write(prompt.encode("utf-8"))
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            logger.warning("Agent closed stdin before the prompt was delivered: %s", exc)
        finally:
            process.stdin.close()

    @staticmethod
    async def _pump_stdout(
        stream: asyncio.StreamReader | None,
        parser: StreamEventParser,
        debug_log: IO[str],
        deliver: Callable[[str], None],
    ) -> None:
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await stream.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            text = decoder.decode(chunk)
            debug_log.write(f"[stdout] {text}")
            debug_log.flush()
            for line in parser.feed(text):
                deliver(line)
        for line in [*parser.feed(decoder.decode(b"", final=True)), *parser.finish()]:
            deliver(line)

    @staticmethod
    async def _pump_stderr(
        stream: asyncio.StreamReader | None,
        debug_log: IO[str],
        deliver: Callable[[str], None],
    ) -> None:
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await stream.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            text = decoder.decode(chunk)
            debug_log.write(f"[stderr] {text}")
            debug_log.flush()
            if text.strip():
                deliver(f"[stderr] {text.strip()}")
