from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path

import click

from agentboard.config import AgentboardConfig, load_config, save_config
from agentboard.session import ExecutionSession, SessionError, StartedRun
from agentboard.stream import status_events
from agentboard.tickets import JsonTicketStore, TicketRecord, TicketStoreError

config_option = click.option(
    "--config", "config_value", default="agentboard.toml", show_default=True
)


@dataclass(slots=True)
class Runtime:
    config_path: Path
    config: AgentboardConfig
    tickets: JsonTicketStore
    session: ExecutionSession


def _resolve_config_path(config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = Path.cwd() / config_path
    return config_path.resolve()


def _load_runtime(config_value: str) -> Runtime:
    config_path = _resolve_config_path(config_value)
    config = load_config(config_path)
    tickets = JsonTicketStore(config.ticket_store_path)
    return Runtime(
        config_path=config_path,
        config=config,
        tickets=tickets,
        session=ExecutionSession.from_config(config, tickets=tickets),
    )


async def _follow(runtime: Runtime, started: StartedRun) -> None:
    click.echo(f"Instance: {started.instance_path}")
    click.echo(f"Working directory: {started.work_dir}")
    if started.branch_name:
        click.echo(f"Branch: {started.branch_name}")
    async for payload in status_events(
        started.ticket_id,
        runtime.tickets,
        runtime.session.progress,
        poll_interval=runtime.config.stream.poll_interval_seconds,
    ):
        logs = payload.get("logs")
        if logs:
            click.echo(logs, nl=False)
    report = await started.task
    if report is None:
        raise click.ClickException(f"Agent run failed for ticket {started.ticket_id}.")
    click.echo(
        f"\nAgent finished in {report.duration_ms / 1000:.1f}s "
        f"({report.num_turns} turns, ${report.total_cost_usd:.4f})"
    )


def _run_and_follow(runtime: Runtime, ticket_id: str, change_request: str | None) -> None:
    async def _main() -> None:
        if change_request is None:
            started = await runtime.session.start_run(ticket_id)
        else:
            started = await runtime.session.request_changes(ticket_id, change_request)
        await _follow(runtime, started)

    try:
        asyncio.run(_main())
    except KeyboardInterrupt:
        runtime.session.cancel(ticket_id)
        raise click.ClickException("Interrupted; agent run cancelled.") from None
    except (SessionError, TicketStoreError) as exc:
        raise click.ClickException(str(exc)) from exc


@click.group()
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """Agentboard CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("init")
@click.option("--model", default=None)
@config_option
def init_command(model: str | None, config_value: str) -> None:
    config_path = _resolve_config_path(config_value)
    config = load_config(config_path)
    if model:
        config.agent.model = model
    save_config(config_path, config)
    config.instances_root.mkdir(parents=True, exist_ok=True)
    click.echo(f"Config: {config_path}")
    click.echo(f"Instances: {config.instances_root}")
    click.echo(f"Tickets: {config.ticket_store_path}")


@cli.command("add")
@click.argument("ticket_id")
@click.option("--title", required=True)
@click.option(
    "--requirements-file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
)
@click.option(
    "--codebase",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=".",
    show_default=True,
)
@config_option
def add_command(
    ticket_id: str, title: str, requirements_file: Path, codebase: Path, config_value: str
) -> None:
    runtime = _load_runtime(config_value)
    record = TicketRecord(
        id=ticket_id,
        title=title,
        requirements=requirements_file.read_text(encoding="utf-8"),
        codebase_path=str(codebase.resolve()),
    )
    try:
        runtime.tickets.add(record)
    except TicketStoreError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Added ticket {ticket_id}: {title}")


@cli.command("run")
@click.argument("ticket_id")
@config_option
def run_command(ticket_id: str, config_value: str) -> None:
    _run_and_follow(_load_runtime(config_value), ticket_id, None)


@cli.command("changes")
@click.argument("ticket_id")
@click.argument("change_request")
@config_option
def changes_command(ticket_id: str, change_request: str, config_value: str) -> None:
    _run_and_follow(_load_runtime(config_value), ticket_id, change_request)


@cli.command("cancel")
@click.argument("ticket_id")
@config_option
def cancel_command(ticket_id: str, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    try:
        cancelled = runtime.session.cancel(ticket_id)
    except (SessionError, TicketStoreError) as exc:
        raise click.ClickException(str(exc)) from exc
    if cancelled:
        click.echo("Agent process cancelled.")
    else:
        click.echo("No agent process is registered in this process; ticket marked FAILED.")


@cli.command("status")
@click.argument("ticket_id")
@config_option
def status_command(ticket_id: str, config_value: str) -> None:
    runtime = _load_runtime(config_value)

    async def _main() -> None:
        async for payload in status_events(
            ticket_id,
            runtime.tickets,
            runtime.session.progress,
            poll_interval=runtime.config.stream.poll_interval_seconds,
        ):
            click.echo(json.dumps(payload, ensure_ascii=False))

    asyncio.run(_main())


@cli.command("report")
@click.argument("ticket_id")
@config_option
def report_command(ticket_id: str, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    try:
        report = runtime.session.get_report(ticket_id)
    except SessionError as exc:
        raise click.ClickException(str(exc)) from exc
    if report is None:
        raise click.ClickException("Report not available yet.")
    click.echo(json.dumps(report.to_dict(), ensure_ascii=False, indent=2))


@cli.command("merge")
@click.argument("ticket_id")
@config_option
def merge_command(ticket_id: str, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    try:
        branch_name = asyncio.run(runtime.session.merge(ticket_id))
    except (SessionError, TicketStoreError) as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Merged {branch_name} into {runtime.config.workspace.base_branch}")


@cli.command("reject")
@click.argument("ticket_id")
@config_option
def reject_command(ticket_id: str, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    try:
        asyncio.run(runtime.session.reject(ticket_id))
    except (SessionError, TicketStoreError) as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Rejected changes for {ticket_id}; ticket moved back to UP_NEXT")


@cli.command("serve")
@click.option("--host", default=None)
@click.option("--port", type=int, default=None)
@config_option
def serve_command(host: str | None, port: int | None, config_value: str) -> None:
    import uvicorn

    from agentboard.api import create_app

    runtime = _load_runtime(config_value)
    app = create_app(
        runtime.session, poll_interval=runtime.config.stream.poll_interval_seconds
    )
    uvicorn.run(
        app,
        host=host or runtime.config.server.host,
        port=port or runtime.config.server.port,
    )
