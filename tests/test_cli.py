import json
from pathlib import Path

from click.testing import CliRunner

from agentboard.cli import cli
from agentboard.config import load_config, save_config


def _prepare(tmp_path: Path, monkeypatch) -> CliRunner:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()
    init_result = runner.invoke(cli, ["init"])
    assert init_result.exit_code == 0, init_result.output

    config_path = tmp_path / "agentboard.toml"
    config = load_config(config_path)
    config.stream.poll_interval_seconds = 0.01
    save_config(config_path, config)

    (tmp_path / "code").mkdir()
    (tmp_path / "requirements.md").write_text("Users can log in", encoding="utf-8")
    add_result = runner.invoke(
        cli,
        [
            "add",
            "T-1",
            "--title",
            "Add Login Page",
            "--requirements-file",
            "requirements.md",
            "--codebase",
            "code",
        ],
    )
    assert add_result.exit_code == 0, add_result.output
    return runner


def test_init_writes_config_and_instances_dir(tmp_path: Path, monkeypatch) -> None:
    _prepare(tmp_path, monkeypatch)

    assert (tmp_path / "agentboard.toml").exists()
    assert (tmp_path / ".agentboard" / "instances").is_dir()
    assert (tmp_path / ".agentboard" / "tickets.json").exists()


def test_cli_run_lifecycle(tmp_path: Path, monkeypatch, fake_agent_cli) -> None:
    runner = _prepare(tmp_path, monkeypatch)
    fake_agent_cli.queue_success()

    run_result = runner.invoke(cli, ["run", "T-1"])
    assert run_result.exit_code == 0, run_result.output
    assert "Instance:" in run_result.output
    assert "Agent finished in 4.2s" in run_result.output

    status_result = runner.invoke(cli, ["status", "T-1"])
    assert status_result.exit_code == 0
    last = json.loads(status_result.output.strip().splitlines()[-1])
    assert last["status"] == "COMPLETED"

    report_result = runner.invoke(cli, ["report", "T-1"])
    assert report_result.exit_code == 0
    assert '"summary": "Implemented the login page."' in report_result.output

    merge_result = runner.invoke(cli, ["merge", "T-1"])
    assert merge_result.exit_code != 0
    assert "isolated branch" in merge_result.output

    reject_result = runner.invoke(cli, ["reject", "T-1"])
    assert reject_result.exit_code == 0
    assert "UP_NEXT" in reject_result.output


def test_cli_run_fails_when_agent_missing(tmp_path: Path, monkeypatch, fake_agent_cli) -> None:
    runner = _prepare(tmp_path, monkeypatch)
    fake_agent_cli.available = False

    result = runner.invoke(cli, ["run", "T-1"])

    assert result.exit_code != 0
    assert "Agent CLI is not available" in result.output


def test_cli_reports_agent_failure(tmp_path: Path, monkeypatch, fake_agent_cli) -> None:
    runner = _prepare(tmp_path, monkeypatch)
    fake_agent_cli.queue_process(stderr=[b"boom\n"], returncode=1)

    result = runner.invoke(cli, ["run", "T-1"])

    assert result.exit_code != 0
    assert "Agent run failed for ticket T-1" in result.output

    cancel_result = runner.invoke(cli, ["cancel", "T-1"])
    assert cancel_result.exit_code == 0
    assert "No agent process is registered" in cancel_result.output
