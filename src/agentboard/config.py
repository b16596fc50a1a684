from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(slots=True)
class AgentConfig:
    binary: str = "claude"
    model: str = "claude-sonnet-4-5"
    skip_permissions: bool = True
    probe_timeout_seconds: float = 5.0
    forward_every_block: bool = False


@dataclass(slots=True)
class WorkspaceConfig:
    instances_root: str = ".agentboard/instances"
    branch_prefix: str = "agent/"
    base_branch: str = "main"
    git_timeout_seconds: float = 30.0


@dataclass(slots=True)
class ProgressConfig:
    max_log_entries: int = 100


@dataclass(slots=True)
class TicketsConfig:
    store_path: str = ".agentboard/tickets.json"
    log_max_chars: int = 50_000
    log_keep_chars: int = 40_000


@dataclass(slots=True)
class StreamConfig:
    poll_interval_seconds: float = 1.5


@dataclass(slots=True)
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 8765


@dataclass(slots=True)
class AgentboardConfig:
    agent: AgentConfig = field(default_factory=AgentConfig)
    workspace: WorkspaceConfig = field(default_factory=WorkspaceConfig)
    progress: ProgressConfig = field(default_factory=ProgressConfig)
    tickets: TicketsConfig = field(default_factory=TicketsConfig)
    stream: StreamConfig = field(default_factory=StreamConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    base_dir: Path = field(default_factory=Path.cwd)

    @classmethod
    def default(cls) -> AgentboardConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict, base_dir: Path | None = None) -> AgentboardConfig:
        return cls(
            agent=AgentConfig(**data.get("agent", {})),
            workspace=WorkspaceConfig(**data.get("workspace", {})),
            progress=ProgressConfig(**data.get("progress", {})),
            tickets=TicketsConfig(**data.get("tickets", {})),
            stream=StreamConfig(**data.get("stream", {})),
            server=ServerConfig(**data.get("server", {})),
            base_dir=base_dir or Path.cwd(),
        )

    def to_dict(self) -> dict:
        return {
            "agent": {
                "binary": self.agent.binary,
                "model": self.agent.model,
                "skip_permissions": self.agent.skip_permissions,
                "probe_timeout_seconds": self.agent.probe_timeout_seconds,
                "forward_every_block": self.agent.forward_every_block,
            },
            "workspace": {
                "instances_root": self.workspace.instances_root,
                "branch_prefix": self.workspace.branch_prefix,
                "base_branch": self.workspace.base_branch,
                "git_timeout_seconds": self.workspace.git_timeout_seconds,
            },
            "progress": {
                "max_log_entries": self.progress.max_log_entries,
            },
            "tickets": {
                "store_path": self.tickets.store_path,
                "log_max_chars": self.tickets.log_max_chars,
                "log_keep_chars": self.tickets.log_keep_chars,
            },
            "stream": {
                "poll_interval_seconds": self.stream.poll_interval_seconds,
            },
            "server": {
                "host": self.server.host,
                "port": self.server.port,
            },
        }

    def resolve_path(self, value: str) -> Path:
        path = Path(value).expanduser()
        if not path.is_absolute():
            path = self.base_dir / path
        return path.resolve()

    @property
    def instances_root(self) -> Path:
        return self.resolve_path(self.workspace.instances_root)

    @property
    def ticket_store_path(self) -> Path:
        return self.resolve_path(self.tickets.store_path)


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        if not rendered:
            return "0.0"
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: AgentboardConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["agent", "workspace", "progress", "tickets", "stream", "server"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> AgentboardConfig:
    base_dir = path.resolve().parent
    if not path.exists():
        return AgentboardConfig(base_dir=base_dir)
    data = tomllib.loads(path.read_text(encoding="utf-8"))
    return AgentboardConfig.from_dict(data, base_dir=base_dir)


def save_config(path: Path, config: AgentboardConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
