"""CLI entry point for issuepilot.

Provides ``run``, ``serve``, ``watch``, ``send`` and ``validate-config``
sub-commands using Click and Rich for output formatting.

Usage::

    issuepilot run --once --approval cli --verbose
    issuepilot serve --port 3001
    issuepilot watch --server-url http://127.0.0.1:3001 --token secret
    issuepilot send start --once --server-url http://127.0.0.1:3001
    issuepilot validate-config --config issuepilot.config.json
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from issuepilot.config import (
    DEFAULT_CONFIG_PATH,
    IssuePilotConfig,
    load_config,
    load_object,
    require_valid_config,
    validate_config,
)
from issuepilot.engine.approval import ConsoleApprover
from issuepilot.engine.collaborators import CodingAgent, IssueTracker
from issuepilot.engine.engine import PipelineEngine
from issuepilot.engine.models import ApprovalDecision, AuditRecord, Plan
from issuepilot.errors import ConfigurationError, IssuePilotError
from issuepilot.log import StdlibEngineLogger, TeeLogger, format_context
from issuepilot.transports.base import Command, CommandType, LogEntry, StateUpdate
from issuepilot.transports.in_process import InProcessTransport
from issuepilot.transports.remote import RemoteTransport
from issuepilot.transports.server import EngineServer

console = Console()

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}

_LOG_STYLES = {"debug": "dim", "info": "", "warn": "yellow", "error": "red"}


def _setup_logging(verbose: bool, level: str = "info") -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else _LEVELS.get(level, logging.INFO),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


def _load(config_path: str, overrides: dict[str, Any] | None = None) -> IssuePilotConfig:
    try:
        return require_valid_config(load_config(config_path, overrides))
    except ConfigurationError as exc:
        console.print(f"[red]Configuration error:[/red] {escape(str(exc))}", highlight=False)
        raise SystemExit(1) from exc


def build_collaborators(config: IssuePilotConfig) -> tuple[IssueTracker, CodingAgent]:
    """Instantiate the tracker and agent named by ``plugins``.

    Raises:
        ConfigurationError: If a factory is not configured or cannot be loaded.
    """
    plugins = config.plugins
    if not plugins.tracker_factory:
        raise ConfigurationError(
            "plugins.tracker_factory is required (set ISSUEPILOT_TRACKER_FACTORY)"
        )
    if not plugins.agent_factory:
        raise ConfigurationError(
            "plugins.agent_factory is required (set ISSUEPILOT_AGENT_FACTORY)"
        )
    tracker = load_object(plugins.tracker_factory)(config)
    agent = load_object(plugins.agent_factory)(config)
    return tracker, agent


def wire_engine(
    config: IssuePilotConfig, tracker: IssueTracker, agent: CodingAgent
) -> tuple[PipelineEngine, InProcessTransport]:
    """Build an engine whose callbacks feed a new in-process transport."""
    transport = InProcessTransport()
    engine = PipelineEngine(
        config,
        tracker,
        agent,
        logger=TeeLogger(StdlibEngineLogger(), transport.create_logger()),
        on_state_change=transport.create_state_change_handler(),
        on_event=transport.create_event_handler(),
        approval_handler=transport.create_approval_handler(),
    )
    transport.attach(engine)
    return engine, transport


# ---------------------------------------------------------------------------
# Event rendering
# ---------------------------------------------------------------------------


def _print_state(update: StateUpdate) -> None:
    item = f" #{update.item.number} {escape(update.item.title)}" if update.item else ""
    console.print(
        f"[bold cyan]{update.state.value}[/bold cyan]{item}",
        highlight=False,
    )


def _print_log(entry: LogEntry) -> None:
    style = _LOG_STYLES.get(entry.level, "")
    text = f"{entry.level.upper():5} {entry.message} {format_context(entry.context)}"
    console.print(text.rstrip(), style=style or None, markup=False, highlight=False)


def _print_event(record: AuditRecord) -> None:
    item = f" #{record.item_number}" if record.item_number is not None else ""
    console.print(f"[green]event[/green] {record.type.value}{item}", highlight=False)


def _print_plan(plan: Plan) -> None:
    console.print(
        f"[bold yellow]Approval requested[/bold yellow] for issue #{plan.item_number}: "
        f"{escape(plan.summary)}",
        highlight=False,
    )


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(package_name="issuepilot")
def main() -> None:
    """issuepilot: take issues from a tracker through to a merged change."""


@main.command()
@click.option("--config", "config_path", default=DEFAULT_CONFIG_PATH, show_default=True,
              help="JSON config file.")
@click.option("--once", is_flag=True, help="Process a single issue and exit.")
@click.option("--approval", type=click.Choice(["cli", "auto"]), default=None,
              help="Override engine.approval_mode.")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def run(config_path: str, once: bool, approval: str | None, verbose: bool) -> None:
    """Run the engine in this process."""
    overrides = {"engine": {"approval_mode": approval}} if approval else None
    config = _load(config_path, overrides)
    _setup_logging(verbose, config.log_level)

    try:
        ok = asyncio.run(_run_engine(config, once))
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted.[/yellow]")
        return
    except IssuePilotError as exc:
        console.print(f"[red]Error:[/red] {escape(str(exc))}", highlight=False)
        raise SystemExit(1) from exc
    if not ok:
        raise SystemExit(1)


async def _run_engine(config: IssuePilotConfig, once: bool) -> bool:
    tracker, agent = build_collaborators(config)
    engine, transport = wire_engine(config, tracker, agent)
    approver = ConsoleApprover(console)
    prompts: set[asyncio.Task[None]] = set()

    async def answer(plan: Plan) -> None:
        decision = await approver(plan)
        kind = CommandType.APPROVE if decision == ApprovalDecision.APPROVE else CommandType.REJECT
        await transport.send_command(Command(kind))

    def on_approval_request(plan: Plan) -> None:
        task = asyncio.create_task(answer(plan))
        prompts.add(task)
        task.add_done_callback(prompts.discard)

    transport.on_state_update(_print_state)
    transport.on_approval_request(on_approval_request)

    try:
        await engine.initialize()
        result = await transport.send_command(Command(CommandType.START, once=once))
        if not result.ok:
            console.print(f"[red]Start refused:[/red] {escape(str(result.error))}", highlight=False)
            return False
        assert transport.task is not None
        try:
            await transport.task
        except Exception as exc:
            console.print(f"[red]Cycle failed:[/red] {escape(str(exc))}", highlight=False)
            return False
        return True
    finally:
        await transport.dispose()
        await engine.dispose()


@main.command()
@click.option("--config", "config_path", default=DEFAULT_CONFIG_PATH, show_default=True,
              help="JSON config file.")
@click.option("--host", default=None, help="Bind address (default from config).")
@click.option("--port", type=int, default=None, help="Bind port (default from config).")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def serve(config_path: str, host: str | None, port: int | None, verbose: bool) -> None:
    """Host the engine for remote controllers."""
    server_overrides = {k: v for k, v in (("host", host), ("port", port)) if v is not None}
    config = _load(config_path, {"server": server_overrides} if server_overrides else None)
    _setup_logging(verbose, config.log_level)

    try:
        asyncio.run(_serve(config))
    except KeyboardInterrupt:
        console.print("[yellow]Server stopped.[/yellow]")
    except IssuePilotError as exc:
        console.print(f"[red]Error:[/red] {escape(str(exc))}", highlight=False)
        raise SystemExit(1) from exc


async def _serve(config: IssuePilotConfig) -> None:
    tracker, agent = build_collaborators(config)
    engine, transport = wire_engine(config, tracker, agent)
    await engine.initialize()
    server = EngineServer(
        transport,
        host=config.server.host,
        port=config.server.port,
        auth_token=config.server.auth_token,
    )
    await server.start()
    console.print(
        f"[bold green]Serving engine on[/bold green] http://{config.server.host}:{server.port}",
        highlight=False,
    )
    try:
        await server.serve_forever()
    finally:
        await server.stop()
        await transport.dispose()
        await engine.dispose()


_server_url_option = click.option(
    "--server-url",
    envvar="ISSUEPILOT_SERVER_URL",
    default="http://127.0.0.1:3001",
    show_default=True,
    help="Engine server base URL.",
)
_token_option = click.option(
    "--token", envvar="ISSUEPILOT_AUTH_TOKEN", default="", help="Bearer token."
)


@main.command()
@_server_url_option
@_token_option
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def watch(server_url: str, token: str, verbose: bool) -> None:
    """Stream events from a remote engine."""
    _setup_logging(verbose)
    try:
        asyncio.run(_watch(server_url, token))
    except KeyboardInterrupt:
        console.print("[yellow]Stopped watching.[/yellow]")


async def _watch(server_url: str, token: str) -> None:
    transport = RemoteTransport(server_url, token)
    transport.on_state_update(_print_state)
    transport.on_log(_print_log)
    transport.on_event(_print_event)
    transport.on_approval_request(_print_plan)
    transport.connect()
    console.print(f"Watching {transport.server_url}", highlight=False)
    try:
        await asyncio.Event().wait()
    finally:
        await transport.dispose()


@main.command()
@click.argument("command", type=click.Choice([c.value for c in CommandType]))
@click.option("--once", is_flag=True, help="With 'start': process a single issue.")
@_server_url_option
@_token_option
def send(command: str, once: bool, server_url: str, token: str) -> None:
    """Send one command to a remote engine."""
    result = asyncio.run(_send(server_url, token, Command(CommandType(command), once=once)))
    if result.ok:
        console.print(f"[green]{command}: ok[/green]")
        return
    console.print(f"[red]{command} failed:[/red] {escape(str(result.error))}", highlight=False)
    raise SystemExit(1)


async def _send(server_url: str, token: str, command: Command):
    transport = RemoteTransport(server_url, token)
    try:
        return await transport.send_command(command)
    finally:
        await transport.dispose()


@main.command("validate-config")
@click.option("--config", "config_path", default=DEFAULT_CONFIG_PATH, show_default=True,
              help="JSON config file.")
def validate_config_command(config_path: str) -> None:
    """Check configuration without starting anything."""
    try:
        config = load_config(config_path)
    except ConfigurationError as exc:
        console.print(f"[red]Configuration error:[/red] {escape(str(exc))}", highlight=False)
        raise SystemExit(1) from exc

    problems = validate_config(config)
    if not problems:
        console.print("[green]Configuration is valid.[/green]")
        return

    table = Table(title="Configuration Problems")
    table.add_column("#", style="bold")
    table.add_column("Problem")
    for index, problem in enumerate(problems, 1):
        table.add_row(str(index), problem)
    console.print(table)
    raise SystemExit(1)
