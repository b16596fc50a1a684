from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

BASH_PREVIEW_LENGTH = 60
TEXT_PREVIEW_LENGTH = 100

FILE_TOOL_VERBS = {
    "Read": "Reading",
    "Write": "Writing",
    "Edit": "Editing",
    "MultiEdit": "Editing",
    "NotebookEdit": "Editing",
}
SEARCH_TOOLS = {"Grep", "Glob"}


def _truncate(value: str, limit: int) -> str:
    if len(value) <= limit:
        return value
    return value[: limit - 3].rstrip() + "..."


def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    return 0


def _as_float(value: Any) -> float:
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return float(value)
    return 0.0


@dataclass(slots=True)
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_creation_tokens: int = 0

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens

    def to_dict(self) -> dict[str, int]:
        return {
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "cacheReadTokens": self.cache_read_tokens,
            "cacheCreationTokens": self.cache_creation_tokens,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> TokenUsage:
        return cls(
            input_tokens=_as_int(payload.get("inputTokens")),
            output_tokens=_as_int(payload.get("outputTokens")),
            cache_read_tokens=_as_int(payload.get("cacheReadTokens")),
            cache_creation_tokens=_as_int(payload.get("cacheCreationTokens")),
        )


@dataclass(slots=True)
class ExecutionReport:
    success: bool
    duration_ms: int = 0
    total_cost_usd: float = 0.0
    num_turns: int = 0
    model: str = "unknown"
    usage: TokenUsage = field(default_factory=TokenUsage)
    summary: str = ""

    @classmethod
    def from_result_event(cls, event: dict[str, Any]) -> ExecutionReport:
        usage = event.get("usage")
        if not isinstance(usage, dict):
            usage = {}
        model_usage = event.get("modelUsage")
        model = "unknown"
        if isinstance(model_usage, dict) and model_usage:
            model = str(next(iter(model_usage)))
        summary = event.get("result")
        return cls(
            success=not bool(event.get("is_error", False)),
            duration_ms=_as_int(event.get("duration_ms")),
            total_cost_usd=_as_float(event.get("total_cost_usd")),
            num_turns=_as_int(event.get("num_turns")),
            model=model,
            usage=TokenUsage(
                input_tokens=_as_int(usage.get("input_tokens")),
                output_tokens=_as_int(usage.get("output_tokens")),
                cache_read_tokens=_as_int(usage.get("cache_read_input_tokens")),
                cache_creation_tokens=_as_int(usage.get("cache_creation_input_tokens")),
            ),
            summary=summary if isinstance(summary, str) else "",
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "durationMs": self.duration_ms,
            "totalCostUsd": self.total_cost_usd,
            "numTurns": self.num_turns,
            "model": self.model,
            "usage": self.usage.to_dict(),
            "summary": self.summary,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ExecutionReport:
        usage = payload.get("usage")
        return cls(
            success=bool(payload.get("success", False)),
            duration_ms=_as_int(payload.get("durationMs")),
            total_cost_usd=_as_float(payload.get("totalCostUsd")),
            num_turns=_as_int(payload.get("numTurns")),
            model=str(payload.get("model") or "unknown"),
            usage=TokenUsage.from_dict(usage if isinstance(usage, dict) else {}),
            summary=str(payload.get("summary") or ""),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, indent=2)

    def render_markdown(self, title: str = "") -> str:
        heading = f"# Execution Report: {title}" if title else "# Execution Report"
        lines = [
            heading,
            "",
            f"- **Result:** {'Success' if self.success else 'Finished with errors'}",
            f"- **Duration:** {self.duration_ms / 1000:.1f}s",
            f"- **Cost:** ${self.total_cost_usd:.4f}",
            f"- **Turns:** {self.num_turns}",
            f"- **Model:** {self.model}",
            "",
            "## Token usage",
            "",
            "| Kind | Tokens |",
            "| --- | ---: |",
            f"| Input | {self.usage.input_tokens} |",
            f"| Output | {self.usage.output_tokens} |",
            f"| Cache read | {self.usage.cache_read_tokens} |",
            f"| Cache creation | {self.usage.cache_creation_tokens} |",
            "",
            "## Summary",
            "",
            self.summary.strip() or "_No summary provided._",
        ]
        return "\n".join(lines) + "\n"


def tool_label(name: str, tool_input: dict[str, Any]) -> str:
    if name in FILE_TOOL_VERBS:
        path = str(tool_input.get("file_path") or tool_input.get("notebook_path") or "")
        filename = path.replace("\\", "/").rsplit("/", 1)[-1] or "?"
        return f"{FILE_TOOL_VERBS[name]} {filename}"
    if name == "Bash":
        command = " ".join(str(tool_input.get("command", "")).split())
        return f"Running: {_truncate(command, BASH_PREVIEW_LENGTH)}"
    if name in SEARCH_TOOLS:
        return f"Searching: {tool_input.get('pattern', '')}"
    if name == "TodoWrite":
        return "Updating task list"
    return name or "unknown tool"


def text_label(text: str) -> str:
    return _truncate(" ".join(text.split()), TEXT_PREVIEW_LENGTH)


def completion_line(report: ExecutionReport) -> str:
    parts = ["Agent finished" if report.success else "Agent finished with errors"]
    details: list[str] = []
    if report.total_cost_usd:
        details.append(f"cost ${report.total_cost_usd:.4f}")
    if report.usage.total:
        details.append(f"{report.usage.total} tokens")
    if details:
        parts.append(f"({', '.join(details)})")
    return " ".join(parts)


class StreamEventParser:
    """Incremental parser for the agent's line-delimited JSON event stream.

    Chunks are appended to a pending buffer and only newline-terminated lines
    are interpreted; a trailing partial line waits for the next chunk. Lines
    that are not JSON objects are forwarded verbatim as progress text.
    """

    def __init__(
        self,
        *,
        forward_every_block: bool = False,
        on_parse_fallback: Callable[[str], None] | None = None,
    ) -> None:
        self.forward_every_block = forward_every_block
        self.on_parse_fallback = on_parse_fallback
        self.report: ExecutionReport | None = None
        self._pending = ""

    def feed(self, chunk: str) -> list[str]:
        self._pending += chunk
        *complete, self._pending = self._pending.split("\n")
        lines: list[str] = []
        for raw_line in complete:
            lines.extend(self.parse_line(raw_line))
        return lines

    def finish(self) -> list[str]:
        remainder, self._pending = self._pending, ""
        return self.parse_line(remainder)

    def parse_line(self, raw_line: str) -> list[str]:
        line = raw_line.strip()
        if not line:
            return []
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            event = None
        if not isinstance(event, dict):
            if self.on_parse_fallback is not None:
                self.on_parse_fallback(line)
            return [line]
        return self._interpret(event)

    def _interpret(self, event: dict[str, Any]) -> list[str]:
        event_type = event.get("type")
        if event_type == "system" and event.get("subtype") == "init":
            return [f"Session started (model: {event.get('model') or 'unknown'})"]
        if event_type == "assistant":
            return self._assistant_labels(event)
        if event_type == "result":
            self.report = ExecutionReport.from_result_event(event)
            return [completion_line(self.report)]
        return []

    def _assistant_labels(self, event: dict[str, Any]) -> list[str]:
        message = event.get("message")
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, list):
            return []
        labels: list[str] = []
        for block in content:
            if not isinstance(block, dict):
                continue
            label = ""
            if block.get("type") == "tool_use":
                tool_input = block.get("input")
                label = tool_label(
                    str(block.get("name") or ""),
                    tool_input if isinstance(tool_input, dict) else {},
                )
            elif block.get("type") == "text":
                label = text_label(str(block.get("text") or ""))
            if label:
                labels.append(label)
        if self.forward_every_block or not labels:
            return labels
        # Only the final label of a turn is forwarded.
        return labels[-1:]


REPORT_JSON_FILE = "report.json"
REPORT_MARKDOWN_FILE = "report.md"


def write_report(instance_path: Path, report: ExecutionReport, title: str = "") -> None:
    instance_path = Path(instance_path)
    (instance_path / REPORT_JSON_FILE).write_text(report.to_json(), encoding="utf-8")
    (instance_path / REPORT_MARKDOWN_FILE).write_text(
        report.render_markdown(title), encoding="utf-8"
    )


def load_report(instance_path: Path) -> ExecutionReport | None:
    report_file = Path(instance_path) / REPORT_JSON_FILE
    try:
        payload = json.loads(report_file.read_text(encoding="utf-8"))
    except (FileNotFoundError, json.JSONDecodeError):
        return None
    if not isinstance(payload, dict):
        return None
    return ExecutionReport.from_dict(payload)
