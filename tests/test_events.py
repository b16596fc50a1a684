import json
from pathlib import Path

from agentboard.runner.events import (
    ExecutionReport,
    StreamEventParser,
    load_report,
    tool_label,
    write_report,
)


def _assistant(*blocks: dict) -> str:
    return json.dumps({"type": "assistant", "message": {"content": list(blocks)}})


def _tool(name: str, **tool_input: str) -> dict:
    return {"type": "tool_use", "name": name, "input": tool_input}


def test_line_split_across_chunks_yields_one_label() -> None:
    parser = StreamEventParser()
    line = _assistant(_tool("Read", file_path="/repo/src/app.py")) + "\n"

    first = parser.feed(line[:20])
    second = parser.feed(line[20:])

    assert first == []
    assert second == ["Reading app.py"]


def test_non_json_line_is_forwarded_verbatim() -> None:
    fallbacks: list[str] = []
    parser = StreamEventParser(on_parse_fallback=fallbacks.append)

    labels = parser.feed("warning: something odd\n")

    assert labels == ["warning: something odd"]
    assert fallbacks == ["warning: something odd"]


def test_tool_labels() -> None:
    long_command = "pytest " + "tests/test_something_long.py " * 5

    assert tool_label("Write", {"file_path": "C:\\repo\\notes.md"}) == "Writing notes.md"
    assert tool_label("Edit", {"file_path": "src/app.py"}) == "Editing app.py"
    assert tool_label("Grep", {"pattern": "def main"}) == "Searching: def main"
    assert tool_label("TodoWrite", {}) == "Updating task list"
    bash = tool_label("Bash", {"command": long_command})
    assert bash.startswith("Running: pytest")
    assert bash.endswith("...")
    assert len(bash) <= len("Running: ") + 60


def test_only_last_label_of_a_turn_is_forwarded_by_default() -> None:
    line = _assistant(
        {"type": "text", "text": "Let me look around."},
        _tool("Read", file_path="a.py"),
        _tool("Bash", command="ls"),
    )

    assert StreamEventParser().parse_line(line) == ["Running: ls"]
    assert StreamEventParser(forward_every_block=True).parse_line(line) == [
        "Let me look around.",
        "Reading a.py",
        "Running: ls",
    ]


def test_result_event_builds_report() -> None:
    parser = StreamEventParser()
    event = {
        "type": "result",
        "is_error": False,
        "duration_ms": 1500,
        "num_turns": 2,
        "result": "All done",
        "total_cost_usd": 0.02,
        "usage": {"input_tokens": 100, "output_tokens": 50, "cache_read_input_tokens": 7},
        "modelUsage": {"claude-sonnet-4-5": {}},
    }

    labels = parser.parse_line(json.dumps(event))

    assert labels == ["Agent finished (cost $0.0200, 150 tokens)"]
    report = parser.report
    assert report is not None
    assert report.success is True
    assert report.model == "claude-sonnet-4-5"
    assert report.usage.cache_read_tokens == 7
    assert report.summary == "All done"


def test_report_defaults_when_fields_missing() -> None:
    report = ExecutionReport.from_result_event({"type": "result", "is_error": True})

    assert report.success is False
    assert report.model == "unknown"
    assert report.usage.total == 0


def test_system_init_and_unknown_events() -> None:
    parser = StreamEventParser()

    assert parser.parse_line('{"type": "system", "subtype": "init", "model": "m"}') == [
        "Session started (model: m)"
    ]
    assert parser.parse_line('{"type": "user", "message": {}}') == []
    assert parser.parse_line("   ") == []


def test_report_files_roundtrip(tmp_path: Path) -> None:
    report = ExecutionReport(success=True, duration_ms=2000, num_turns=4, summary="Shipped")

    write_report(tmp_path, report, "Add Login Page")

    assert load_report(tmp_path) == report
    markdown = (tmp_path / "report.md").read_text(encoding="utf-8")
    assert markdown.startswith("# Execution Report: Add Login Page")
    assert "Shipped" in markdown
    assert load_report(tmp_path / "missing") is None
