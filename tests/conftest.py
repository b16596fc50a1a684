import asyncio
import json
import subprocess
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest


class FakeStdin:
    def __init__(self) -> None:
        self.buffer = bytearray()
        self.closed = False

    def write(self, data: bytes) -> None:
        self.buffer.extend(data)

    async def drain(self) -> None:
        return None

    def close(self) -> None:
        self.closed = True


class FakeStream:
    def __init__(self, process: "FakeProcess", chunks: list[bytes]) -> None:
        self._process = process
        self._chunks = list(chunks)

    async def read(self, n: int = -1) -> bytes:
        _ = n
        if self._chunks:
            return self._chunks.pop(0)
        if self._process.hold_open:
            await self._process.stopped.wait()
        return b""


class FakeProcess:
    def __init__(
        self,
        stdout: list[bytes] | None = None,
        stderr: list[bytes] | None = None,
        returncode: int = 0,
        hold_open: bool = False,
    ) -> None:
        self.stdin = FakeStdin()
        self.stdout = FakeStream(self, stdout or [])
        self.stderr = FakeStream(self, stderr or [])
        self.pid = 4242
        self.returncode: int | None = None
        self.hold_open = hold_open
        self.stopped = asyncio.Event()
        self.terminated = False
        self.killed = False
        self._exit_code = returncode

    async def wait(self) -> int:
        if self.hold_open:
            await self.stopped.wait()
        if self.killed:
            self.returncode = -9
        elif self.terminated:
            self.returncode = -15
        else:
            self.returncode = self._exit_code
        return self.returncode

    def terminate(self) -> None:
        self.terminated = True
        self.stopped.set()

    def kill(self) -> None:
        self.killed = True
        self.stopped.set()


def stream_json(*events: dict[str, Any]) -> bytes:
    return "".join(json.dumps(event) + "\n" for event in events).encode("utf-8")


RESULT_EVENT = {
    "type": "result",
    "subtype": "success",
    "is_error": False,
    "duration_ms": 4200,
    "num_turns": 3,
    "result": "Implemented the login page.",
    "total_cost_usd": 0.02,
    "usage": {
        "input_tokens": 100,
        "output_tokens": 50,
        "cache_read_input_tokens": 10,
        "cache_creation_input_tokens": 5,
    },
    "modelUsage": {"claude-sonnet-4-5": {"inputTokens": 100}},
}


@dataclass
class FakeAgentCli:
    available: bool = True
    spawn_error: OSError | None = None
    processes: list[FakeProcess] = field(default_factory=list)
    spawned: list[FakeProcess] = field(default_factory=list)
    calls: list[tuple[tuple[Any, ...], dict[str, Any]]] = field(default_factory=list)

    def queue(self, process: FakeProcess) -> FakeProcess:
        self.processes.append(process)
        return process

    def queue_process(self, **kwargs: Any) -> FakeProcess:
        return self.queue(FakeProcess(**kwargs))

    def queue_success(self, *events: dict[str, Any]) -> FakeProcess:
        payload = stream_json(
            {"type": "system", "subtype": "init", "model": "claude-sonnet-4-5"},
            *events,
            RESULT_EVENT,
        )
        return self.queue(FakeProcess(stdout=[payload]))

    @property
    def agent_calls(self) -> list[tuple[tuple[Any, ...], dict[str, Any]]]:
        return [call for call in self.calls if call[0][0] != "sh"]


@pytest.fixture
def fake_agent_cli(monkeypatch: pytest.MonkeyPatch) -> FakeAgentCli:
    cli = FakeAgentCli()

    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        cli.calls.append((args, kwargs))
        if args[0] == "sh":
            return FakeProcess(returncode=0 if cli.available else 1)
        if cli.spawn_error is not None:
            raise cli.spawn_error
        process = cli.processes.pop(0) if cli.processes else FakeProcess(returncode=1)
        cli.spawned.append(process)
        return process

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)
    return cli


def _git(repo_path: Path, *args: str) -> None:
    subprocess.run(["git", *args], cwd=repo_path, check=True, text=True, capture_output=True)


@pytest.fixture
def init_git_repo() -> Callable[[Path], Path]:
    def _init(repo_path: Path) -> Path:
        repo_path.mkdir(parents=True, exist_ok=True)
        _git(repo_path, "init", "-b", "main")
        _git(repo_path, "config", "user.email", "test@example.com")
        _git(repo_path, "config", "user.name", "Test User")
        (repo_path / "README.md").write_text("seed\n", encoding="utf-8")
        _git(repo_path, "add", "README.md")
        _git(repo_path, "commit", "-m", "seed")
        return repo_path

    return _init
