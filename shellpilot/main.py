"""Command line entry point for shellpilot."""

import asyncio
from contextlib import contextmanager
from datetime import datetime
import signal
from typing import Any

import typer
from rich.markup import escape

from shellpilot import __version__
from shellpilot.agent import AgentRunResult
from shellpilot.audit import AuditLog, UndoHistory
from shellpilot.cli import ConsoleUI
from shellpilot.config import Config
from shellpilot.exceptions import ShellPilotError
from shellpilot.heartbeat import HeartbeatTask, add_task, heartbeat_once, load_tasks
from shellpilot.llm.base import Message
from shellpilot.logging import configure_logging, get_logger
from shellpilot.runtime import Runtime
from shellpilot.session import SessionStore

log = get_logger(__name__)

app = typer.Typer(help="shellpilot - an autonomous agent for your shell", no_args_is_help=False)

HELP_TEXT = """Commands:
  /new              start a fresh goal (drop the carried summary)
  /undo [n]         revert the last n reversible actions
  /sessions         list saved sessions
  /search <words>   full-text search over saved sessions
  /audit [n]        show recent executions
  /exit             quit"""


def _load_config(
    config: str = "",
    provider: str = "",
    model: str = "",
    verbose: bool = False,
    dry_run: bool = False,
) -> Config:
    cfg = Config.load(config or None)
    if provider:
        cfg.model.provider = provider
    if model:
        cfg.model.model = model
    if verbose:
        cfg.logging.level = "DEBUG"
    if dry_run:
        cfg.execution.dry_run = True
    configure_logging(cfg.logging)
    return cfg


def _state(ctx: typer.Context) -> dict[str, Any]:
    return ctx.obj or {}


def _default_session_name() -> str:
    return datetime.now().strftime("session-%Y%m%d-%H%M%S")


@contextmanager
def _abort_on_interrupt(abort_event: asyncio.Event):
    """Turn Ctrl-C into a cooperative abort for the running loop."""
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, abort_event.set)
        installed = True
    except (NotImplementedError, RuntimeError):
        installed = False
    try:
        yield
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)


async def _save_history(runtime: Runtime, name: str, history: list[Message]) -> None:
    if not runtime.config.session.auto_save or not history:
        return
    await runtime.sessions.save(
        name,
        history,
        metadata={"provider": runtime.config.model.provider, "model": runtime.config.model.model},
    )


async def _handle_command(line: str, runtime: Runtime, ui: ConsoleUI) -> str | None:
    """Run one slash command. Returns ``"exit"`` or ``"new"`` when the loop should react."""
    parts = line[1:].split(maxsplit=1)
    command = parts[0].lower() if parts else ""
    arg = parts[1].strip() if len(parts) > 1 else ""

    if command in ("exit", "quit"):
        return "exit"
    if command == "new":
        ui.print_success("Starting fresh.")
        return "new"
    if command == "help":
        ui.print(HELP_TEXT)
    elif command == "undo":
        count = int(arg) if arg.isdigit() else 1
        ui.undo(runtime.gateway.undo(count))
    elif command == "sessions":
        ui.sessions(await runtime.sessions.list())
    elif command == "search":
        if not arg:
            ui.print_error("Usage: /search <words>")
        else:
            ui.search(await runtime.sessions.search(arg))
    elif command == "audit":
        limit = int(arg) if arg.isdigit() else 20
        ui.audit(runtime.audit_log.recent(limit))
    else:
        ui.print_error(f"Unknown command: /{command}. Try /help")
    return None


async def _interactive(cfg: Config, session_name: str, auto_confirm: bool) -> None:
    ui = ConsoleUI()
    name = session_name or _default_session_name()
    runtime = Runtime.from_config(cfg, confirm_callback=ui.confirm, session_name=name)
    agent = runtime.make_agent(
        ask_callback=ui.ask,
        status_callback=ui.status,
        step_callback=ui.step,
        auto_confirm=auto_confirm,
        on_delta=ui.stream,
    )

    history: list[Message] = []
    if session_name:
        existing = await runtime.sessions.resume(session_name)
        if existing is not None:
            history = existing.transcript()
            ui.print_success(f"Resumed '{existing.name}' ({existing.message_count} messages)")

    ui.print(f"[bold]shellpilot[/bold] v{__version__} - session [cyan]{escape(name)}[/cyan]. Type /help for commands.")
    previous: AgentRunResult | None = None
    try:
        while True:
            try:
                line = ui.prompt("goal" if previous is None else "follow-up").strip()
            except (KeyboardInterrupt, EOFError):
                break
            if not line:
                continue
            if line.startswith("/"):
                action = await _handle_command(line, runtime, ui)
                if action == "exit":
                    break
                if action == "new":
                    previous = None
                continue

            abort_event = asyncio.Event()
            with _abort_on_interrupt(abort_event):
                if previous is not None and previous.success:
                    result = await agent.continue_run(line, previous, abort_event=abort_event)
                else:
                    result = await agent.run(line, abort_event=abort_event)
            ui.result(result)
            previous = result
            history.extend(result.transcript)
            await _save_history(runtime, name, history)
    finally:
        await runtime.close()


async def _ask_once(cfg: Config, goal: str, auto_confirm: bool, max_steps: int | None) -> AgentRunResult:
    ui = ConsoleUI()
    name = _default_session_name()
    runtime = Runtime.from_config(cfg, confirm_callback=ui.confirm, session_name=name)
    try:
        agent = runtime.make_agent(
            ask_callback=ui.ask,
            status_callback=ui.status,
            step_callback=ui.step,
            auto_confirm=auto_confirm,
            on_delta=ui.stream,
        )
        abort_event = asyncio.Event()
        with _abort_on_interrupt(abort_event):
            result = await agent.run(goal, abort_event=abort_event, max_steps=max_steps)
        ui.result(result)
        await _save_history(runtime, name, result.transcript)
        return result
    finally:
        await runtime.close()


async def _with_sessions(cfg: Config, fn):
    store = SessionStore(cfg.session.path, legacy_dir=cfg.session.legacy_dir or None)
    try:
        return await fn(store)
    finally:
        await store.close()


def _run_or_exit(ui: ConsoleUI, coro):
    """Run a coroutine, turning startup errors into a clean exit."""
    try:
        return asyncio.run(coro)
    except ShellPilotError as e:
        ui.print_error(str(e))
        raise typer.Exit(code=2)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    provider: str = typer.Option("", "-p", "--provider", help="Override provider"),
    model: str = typer.Option("", "-m", "--model", help="Override model"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Validate and log actions without running them"),
    yes: bool = typer.Option(False, "-y", "--yes", help="Auto-confirm gated actions"),
) -> None:
    """Start an interactive session when no command is given."""
    cfg = _load_config(config, provider, model, verbose, dry_run)
    ctx.obj = {"config": cfg, "auto_confirm": yes}
    if ctx.invoked_subcommand is None:
        _run_or_exit(ConsoleUI(), _interactive(cfg, "", yes))


@app.command()
def run(
    ctx: typer.Context,
    session: str = typer.Option("", "-s", "--session", help="Session name to resume or create"),
) -> None:
    """Interactive goal loop."""
    state = _state(ctx)
    _run_or_exit(ConsoleUI(), _interactive(state["config"], session, state["auto_confirm"]))


@app.command()
def ask(
    ctx: typer.Context,
    goal: str = typer.Argument(..., help="Goal for the agent"),
    max_steps: int = typer.Option(0, "--max-steps", help="Override the step limit"),
) -> None:
    """Run one goal to completion and exit."""
    state = _state(ctx)
    result = _run_or_exit(ConsoleUI(), _ask_once(state["config"], goal, state["auto_confirm"], max_steps or None))
    if not result.success:
        raise typer.Exit(code=1)


@app.command()
def heartbeat(ctx: typer.Context) -> None:
    """Run scheduled tasks that are due."""
    ui = ConsoleUI()
    count = _run_or_exit(ui, heartbeat_once(_state(ctx)["config"]))
    ui.print(f"Ran {count} task(s).")


@app.command()
def sessions(ctx: typer.Context, limit: int = typer.Option(20, "-n", "--limit")) -> None:
    """List saved sessions."""
    ui = ConsoleUI()
    ui.sessions(_run_or_exit(ui, _with_sessions(_state(ctx)["config"], lambda store: store.list(limit))))


@app.command()
def search(
    ctx: typer.Context,
    keyword: str = typer.Argument(..., help="Words to search for"),
    limit: int = typer.Option(20, "-n", "--limit"),
) -> None:
    """Full-text search across saved sessions."""
    ui = ConsoleUI()
    ui.search(_run_or_exit(ui, _with_sessions(_state(ctx)["config"], lambda store: store.search(keyword, limit))))


@app.command()
def rename(ctx: typer.Context, old: str, new: str) -> None:
    """Rename a saved session."""
    ui = ConsoleUI()
    if _run_or_exit(ui, _with_sessions(_state(ctx)["config"], lambda store: store.rename(old, new))):
        ui.print_success(f"Renamed '{old}' to '{new}'")
    else:
        ui.print_error(f"Could not rename '{old}' (missing, or '{new}' exists)")
        raise typer.Exit(code=1)


@app.command()
def delete(ctx: typer.Context, name: str) -> None:
    """Delete a saved session."""
    ui = ConsoleUI()
    if _run_or_exit(ui, _with_sessions(_state(ctx)["config"], lambda store: store.delete(name))):
        ui.print_success(f"Deleted '{name}'")
    else:
        ui.print_error(f"No session named '{name}'")
        raise typer.Exit(code=1)


@app.command()
def undo(ctx: typer.Context, count: int = typer.Argument(1, help="How many actions to revert")) -> None:
    """Revert the most recent reversible actions."""
    execution = _state(ctx)["config"].execution
    history = UndoHistory(execution.undo_history_path or None, capacity=execution.undo_capacity)
    ConsoleUI().undo(history.undo(count))


@app.command()
def audit(ctx: typer.Context, limit: int = typer.Option(20, "-n", "--limit")) -> None:
    """Show recent audit records."""
    execution = _state(ctx)["config"].execution
    ConsoleUI().audit(AuditLog(execution.audit_log_path or None, cap=execution.audit_log_cap).recent(limit))


@app.command("schedule-add")
def schedule_add(
    ctx: typer.Context,
    schedule: str = typer.Argument(..., help="every 15m | daily 09:00 | 'weekly mon,fri 18:30'"),
    goal: str = typer.Argument(..., help="Goal to run on schedule"),
) -> None:
    """Add a heartbeat task."""
    cfg = _state(ctx)["config"]
    ui = ConsoleUI()
    try:
        task = HeartbeatTask.create(goal, schedule)
    except ValueError as e:
        ui.print_error(str(e))
        raise typer.Exit(code=2)
    add_task(cfg.heartbeat.tasks_path, task)
    log.info("Heartbeat task added", task=task.id, schedule=task.schedule_text)
    ui.print_success(f"Added task {task.id} ({task.schedule_text})")


@app.command("schedule-list")
def schedule_list(ctx: typer.Context) -> None:
    """List heartbeat tasks."""
    cfg = _state(ctx)["config"]
    ConsoleUI().tasks(load_tasks(cfg.heartbeat.tasks_path))


@app.command()
def version() -> None:
    """Show version information."""
    print(f"shellpilot v{__version__}")


if __name__ == "__main__":
    app()
