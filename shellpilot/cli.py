"""Console UI for shellpilot."""

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.prompt import Confirm, Prompt
from rich.table import Table
from rich.text import Text

from shellpilot.agent import AgentRunResult, AgentStep
from shellpilot.audit import ExecutionRecord, UndoOutcome
from shellpilot.heartbeat import HeartbeatTask
from shellpilot.session import SearchMatch, Session


class ConsoleUI:
    """Prompts and tables on a rich console."""

    def __init__(self, console: Console | None = None):
        self.console = console or Console()
        self._streaming = False

    def confirm(self, question: str) -> bool:
        """Ask for approval of a gated action."""
        self.end_stream()
        self.console.print(Panel(Text(question), title="Confirm", border_style="yellow"))
        return Confirm.ask("Proceed?", default=False, console=self.console)

    def ask(self, question: str) -> str | None:
        """Relay an agent question to the user."""
        self.end_stream()
        self.console.print(f"[bold cyan]Agent asks:[/bold cyan] {escape(question)}")
        answer = Prompt.ask("Answer", default="", console=self.console)
        return answer.strip() or None

    def prompt(self, label: str = "goal") -> str:
        return Prompt.ask(f"[bold green]{label}[/bold green]", console=self.console)

    def status(self, text: str) -> None:
        self.end_stream()
        if text.startswith("plan: "):
            self.console.print(Panel(Text(text[6:]), title="Plan", border_style="blue"))
        elif text.startswith("thought: "):
            self.console.print(f"[dim italic]{escape(text[9:])}[/dim italic]")
        else:
            self.console.print(f"[dim]... {escape(text)}[/dim]")

    def stream(self, text: str) -> None:
        self._streaming = True
        self.console.print(text, end="", markup=False, highlight=False)

    def end_stream(self) -> None:
        if self._streaming:
            self.console.print()
            self._streaming = False

    def step(self, step: AgentStep) -> None:
        self.end_stream()
        colour = "green" if step.success else "red"
        self.console.print(
            f"[{colour}]#{step.index} {step.kind} {step.name} -> {step.status}[/{colour}] "
            f"[dim]({step.duration_ms} ms)[/dim]"
        )
        preview = (step.output or "").strip()
        if preview:
            if len(preview) > 400:
                preview = preview[:400] + "..."
            self.console.print(preview, markup=False, highlight=False)

    def result(self, result: AgentRunResult) -> None:
        self.end_stream()
        style = "green" if result.success else ("yellow" if result.status == "stuck" else "red")
        title = result.status.upper()
        if result.abort_reason:
            title += f" ({result.abort_reason})"
        self.console.print(Panel(Text(result.summary), title=title, border_style=style))
        self.console.print(
            f"[dim]steps: {result.steps_taken}, calls: {len(result.steps)}, "
            f"tokens: {result.usage.get('total_tokens', 0)}[/dim]"
        )

    def sessions(self, sessions: list[Session]) -> None:
        table = Table(title="Sessions", show_header=True, header_style="bold cyan")
        table.add_column("#", justify="right")
        table.add_column("Name")
        table.add_column("Model")
        table.add_column("Messages", justify="right")
        table.add_column("Updated")
        for idx, session in enumerate(sessions, start=1):
            table.add_row(
                str(idx),
                session.name,
                f"{session.provider}/{session.model}".strip("/"),
                str(session.message_count),
                session.updated_at[:19],
            )
        self.console.print(table)

    def search(self, matches: list[SearchMatch]) -> None:
        if not matches:
            self.console.print("[dim]No matches.[/dim]")
            return
        table = Table(title="Search", show_header=True, header_style="bold cyan")
        table.add_column("Session")
        table.add_column("Role")
        table.add_column("Snippet", overflow="fold")
        table.add_column("When")
        for match in matches:
            table.add_row(match.session_name, match.role, Text(match.snippet), match.timestamp[:19])
        self.console.print(table)

    def audit(self, records: list[ExecutionRecord]) -> None:
        table = Table(title="Audit log", show_header=True, header_style="bold cyan")
        table.add_column("When")
        table.add_column("Source")
        table.add_column("Command", overflow="fold")
        table.add_column("Status")
        table.add_column("ms", justify="right")
        for record in records:
            table.add_row(
                record.timestamp[:19],
                record.source,
                Text(record.command),
                record.status.value,
                str(record.duration_ms),
            )
        self.console.print(table)

    def undo(self, outcomes: list[UndoOutcome]) -> None:
        if not outcomes:
            self.console.print("[dim]Nothing to undo.[/dim]")
            return
        for outcome in outcomes:
            colour = "green" if outcome.success else "red"
            self.console.print(
                f"[{colour}]{outcome.operation.kind.value}[/{colour}] {escape(outcome.message)}",
                highlight=False,
            )

    def tasks(self, tasks: list[HeartbeatTask]) -> None:
        table = Table(title="Scheduled tasks", show_header=True, header_style="bold cyan")
        table.add_column("Id")
        table.add_column("Schedule")
        table.add_column("Goal", overflow="fold")
        table.add_column("Enabled")
        table.add_column("Last run")
        table.add_column("Last result", overflow="fold")
        for task in tasks:
            table.add_row(
                task.id,
                task.schedule_text,
                Text(task.goal),
                "yes" if task.enabled else "no",
                (task.last_run_at or "-")[:19],
                Text((task.last_result or "-")[:80]),
            )
        self.console.print(table)

    def print_error(self, message: str) -> None:
        self.end_stream()
        self.console.print(f"[bold red]Error:[/bold red] {escape(message)}", highlight=False)

    def print_success(self, message: str) -> None:
        self.console.print(f"[green]{escape(message)}[/green]", highlight=False)

    def print(self, message: str) -> None:
        self.console.print(message, highlight=False)
