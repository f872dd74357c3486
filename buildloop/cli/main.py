#!/usr/bin/env python3
"""
BuildLoop CLI - Main Entry Point

Usage:
    buildloop                        # Interactive mode on the default workspace
    buildloop "build me a todo app"  # Start a project from a prompt, then stay interactive
    buildloop -w path/to/ws.json     # Use another workspace file
    buildloop --help                 # Show help

The CLI is a thin driver: every decision is made by the RunOrchestrator.
"""

import argparse
import asyncio
import contextlib
import signal
import sys
from typing import Dict, List, Optional, Tuple

from prompt_toolkit import PromptSession
from prompt_toolkit.formatted_text import HTML
from prompt_toolkit.history import InMemoryHistory
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table

from buildloop.core.config import settings
from buildloop.core.exceptions import BuildLoopError, error_response
from buildloop.modules.orchestrator.error_feedback_monitor import ErrorFeedbackMonitor
from buildloop.modules.orchestrator.run_orchestrator import (
    RunOrchestrator,
    RunResult,
    RunStatus,
    project_name_from_prompt,
)
from buildloop.modules.orchestrator.state_machine import RunPhase, RunStateMachine
from buildloop.schemas.project import ConsoleLevel, Message, MessageAction, MessageRole, Plan
from buildloop.services.history_store import HistoryStore
from buildloop.services.workspace_storage import WorkspaceStorage


HELP_TEXT = """
[bold]Commands[/bold]
  [cyan]/new [NAME][/cyan]            Create an empty project and switch to it
  [cyan]/projects[/cyan]              List projects
  [cyan]/switch N|ID[/cyan]           Switch active project
  [cyan]/approve[/cyan]               Approve the pending plan
  [cyan]/undo[/cyan], [cyan]/redo[/cyan]           Move through version history
  [cyan]/restore N[/cyan]             Jump to version N
  [cyan]/history[/cyan]               List versions
  [cyan]/files [PATH][/cyan]          List files, or show one file
  [cyan]/rename NAME[/cyan]           Rename the active project
  [cyan]/delete N[/cyan]              Delete message N (and its reply)
  [cyan]/console LEVEL TEXT[/cyan]    Queue runtime telemetry for the next verification (log|info|warn|error)
  [cyan]/status[/cyan]                Show run state and usage
  [cyan]/quit[/cyan]                  Exit

Anything else is sent to the AI. [dim]Ctrl+C[/dim] cancels a running generation.
"""

PHASE_LABELS = {
    "planning": "Drafting a plan",
    "building": "Generating code",
    "verifying": "Watching the app for errors",
    "correcting": "Fixing runtime errors",
}


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser for CLI"""
    parser = argparse.ArgumentParser(
        prog="buildloop",
        description="BuildLoop - describe an app, review the plan, get working code",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  buildloop                                  Start interactive mode
  buildloop "a pomodoro timer with stats"    Start a new project from a prompt
  buildloop -w ~/apps/workspace.json         Use a specific workspace file
"""
    )
    parser.add_argument("prompt", nargs="?", help="Prompt for a new project")
    parser.add_argument(
        "-w", "--workspace",
        type=str,
        default=settings.WORKSPACE_FILE,
        help=f"Workspace file (default: {settings.WORKSPACE_FILE})"
    )
    parser.add_argument(
        "--verify-timeout",
        type=int,
        default=None,
        help="Milliseconds to watch telemetry after each generation"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Show tracebacks on errors")
    return parser


class BuildLoopCLI:
    """Interactive driver over one workspace"""

    def __init__(self, orchestrator: RunOrchestrator, storage: WorkspaceStorage, console: Console,
                 verbose: bool = False):
        self.orchestrator = orchestrator
        self.storage = storage
        self.console = console
        self.verbose = verbose
        self.active_project_id: Optional[str] = None
        self._running = True
        self._run_task: Optional[asyncio.Task] = None
        # /console entries waiting for the next VERIFYING window, per project
        self._staged_telemetry: Dict[str, List[Tuple[ConsoleLevel, str]]] = {}
        self._telemetry_hooks: Dict[str, RunStateMachine] = {}

    @property
    def history(self) -> HistoryStore:
        return self.orchestrator.history

    # ==========================================
    # Workspace
    # ==========================================

    async def load(self) -> None:
        workspace = await self.storage.load()
        self.history.load_workspace(workspace)
        projects = self.history.list_projects()
        if workspace.active_project_id and self.history.has_project(workspace.active_project_id):
            self.active_project_id = workspace.active_project_id
        elif projects:
            self.active_project_id = projects[-1].id

    async def save(self) -> None:
        await self.storage.save(self.history.export_workspace(self.active_project_id))

    # ==========================================
    # Rendering
    # ==========================================

    def render_plan(self, plan: Plan) -> None:
        table = Table(title=plan.project_name, show_header=True, header_style="bold cyan")
        table.add_column("File")
        table.add_column("Purpose", style="dim")
        for entry in plan.file_structure:
            table.add_row(entry.path, entry.purpose)
        self.console.print(Markdown(plan.description))
        if plan.features:
            self.console.print("[bold]Features:[/bold] " + ", ".join(plan.features))
        if plan.tech_stack:
            self.console.print("[bold]Tech stack:[/bold] " + ", ".join(plan.tech_stack))
        self.console.print(table)

    def render_message(self, index: int, message: Message) -> None:
        if message.role == MessageRole.USER:
            self.console.print(f"[dim]{index}[/dim] [bold green]You:[/bold green] {message.content}")
        elif message.role == MessageRole.SYSTEM:
            style = "yellow" if message.action != MessageAction.GOTO_PREVIEW else "magenta"
            self.console.print(f"[dim]{index}[/dim] [{style}]» {message.content}[/{style}]")
        else:
            self.console.print(Panel(Markdown(message.content), title=f"[dim]{index}[/dim] AI", border_style="cyan"))
            if message.plan is not None:
                self.render_plan(message.plan)
            if message.action == MessageAction.AWAITING_PLAN_APPROVAL:
                self.console.print("[cyan]Type /approve to build it, or describe changes to the plan.[/cyan]")

    def render_since(self, start: int) -> None:
        messages = self.history.current(self.active_project_id).chat_messages
        for index, message in enumerate(messages[start:], start=start):
            if message.role != MessageRole.USER:
                self.render_message(index, message)

    # ==========================================
    # Runs
    # ==========================================

    async def _run(self, make_run) -> Optional[RunResult]:
        """Run one generation with a live phase spinner; Ctrl+C cancels it"""
        project_id = self.active_project_id
        loop = asyncio.get_running_loop()
        self._run_task = asyncio.ensure_future(make_run())

        def on_interrupt():
            if self.active_project_id and self.orchestrator.cancel(self.active_project_id):
                self.console.print("\n[yellow]Cancelling...[/yellow]")

        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(signal.SIGINT, on_interrupt)
        try:
            with self.console.status("Thinking...") as status:
                while not self._run_task.done():
                    if project_id:
                        state = self.orchestrator.get_run_state(project_id)
                        label = PHASE_LABELS.get(state.phase.value, "Working")
                        status.update(f"{label} [dim]({state.elapsed_seconds:.1f}s)[/dim]")
                    await asyncio.wait({self._run_task}, timeout=0.2)
            return self._run_task.result()
        finally:
            with contextlib.suppress(NotImplementedError):
                loop.remove_signal_handler(signal.SIGINT)
            self._run_task = None

    async def send(self, text: str) -> None:
        if self.active_project_id is None:
            project = self.orchestrator.create_project(project_name_from_prompt(text))
            self.active_project_id = project.id
        project_id = self.active_project_id
        start = len(self.history.current(project_id).chat_messages) + 1
        result = await self._run(lambda: self.orchestrator.send_message(project_id, text))
        self.render_since(start)
        self._report(result)

    def _report(self, result: Optional[RunResult]) -> None:
        if result is None:
            return
        if result.status == RunStatus.SUCCEEDED:
            note = f" after {result.corrections} self-correction(s)" if result.corrections else ""
            self.console.print(f"[green]✓ Code updated{note}[/green]")
        elif result.status == RunStatus.UNRESOLVED_ERRORS:
            self.console.print("[red]✗ Runtime errors remain[/red]")

    # ==========================================
    # Telemetry
    # ==========================================

    def inject_telemetry(self, project_id: str, level: ConsoleLevel, text: str) -> bool:
        """
        Stand in for the sandbox.

        While the project is verifying the entry goes straight into the live
        buffer. Otherwise it is staged and emitted when the next generation
        enters VERIFYING, after the orchestrator has cleared stale telemetry.
        Returns True when the entry was delivered immediately.
        """
        state = self.orchestrator.get_run_state(project_id)
        if state.phase == RunPhase.VERIFYING:
            self.orchestrator.telemetry_buffer(project_id).add(level, text)
            return True
        self._staged_telemetry.setdefault(project_id, []).append((level, text))
        if self._telemetry_hooks.get(project_id) is not state.machine:
            state.machine.on_transition(self._make_verify_hook(project_id))
            self._telemetry_hooks[project_id] = state.machine
        return False

    def staged_telemetry(self, project_id: str) -> List[Tuple[ConsoleLevel, str]]:
        return list(self._staged_telemetry.get(project_id, []))

    def _make_verify_hook(self, project_id: str):
        def on_transition(old_state, new_state, transition):
            if new_state != RunPhase.VERIFYING:
                return
            staged = self._staged_telemetry.pop(project_id, [])
            buffer = self.orchestrator.telemetry_buffer(project_id)
            for level, text in staged:
                buffer.add(level, text)
        return on_transition

    def report_error(self, error: BuildLoopError) -> None:
        self.console.print(f"[red]{error.message}[/red] [dim]({error.code})[/dim]")
        if self.verbose:
            self.console.print_json(data=error_response(error), default=str)

    # ==========================================
    # Commands
    # ==========================================

    def _require_project(self) -> str:
        if self.active_project_id is None:
            raise BuildLoopError("No active project. Send a prompt or use /new.", code="NO_ACTIVE_PROJECT")
        return self.active_project_id

    def _resolve_project(self, ref: str) -> str:
        projects = self.history.list_projects()
        if ref.isdigit() and 1 <= int(ref) <= len(projects):
            return projects[int(ref) - 1].id
        for project in projects:
            if project.id == ref or project.id.startswith(ref):
                return project.id
        raise BuildLoopError(f"No project matches '{ref}'", code="PROJECT_NOT_FOUND")

    async def handle_command(self, line: str) -> None:
        parts = line.strip().split(maxsplit=1)
        command = parts[0].lower()
        arg = parts[1].strip() if len(parts) > 1 else ""

        if command in ("/quit", "/exit"):
            self._running = False

        elif command == "/help":
            self.console.print(HELP_TEXT)

        elif command == "/new":
            project = self.orchestrator.create_project(arg or "New Project")
            self.active_project_id = project.id
            self.render_since(0)

        elif command == "/projects":
            table = Table(show_header=True, header_style="bold")
            table.add_column("#", style="dim")
            table.add_column("Name")
            table.add_column("ID", style="dim")
            table.add_column("Versions")
            for i, project in enumerate(self.history.list_projects(), start=1):
                marker = " [green]●[/green]" if project.id == self.active_project_id else ""
                table.add_row(str(i), project.project_name + marker, project.id[:8], str(len(project.history.versions)))
            self.console.print(table)

        elif command == "/switch":
            self.active_project_id = self._resolve_project(arg)
            self.console.print(f"Switched to [bold]{self.history.current(self.active_project_id).project_name}[/bold]")

        elif command == "/approve":
            project_id = self._require_project()
            start = len(self.history.current(project_id).chat_messages) + 1
            result = await self._run(lambda: self.orchestrator.approve_plan(project_id))
            self.render_since(start)
            self._report(result)

        elif command in ("/undo", "/redo"):
            project_id = self._require_project()
            moved = (self.orchestrator.undo if command == "/undo" else self.orchestrator.redo)(project_id)
            if moved:
                self.console.print(f"Now at version {self.history.cursor(project_id) + 1}")
            else:
                self.console.print("[dim]Nothing to " + command[1:] + "[/dim]")

        elif command == "/restore":
            project_id = self._require_project()
            self.orchestrator.restore_to(project_id, int(arg) - 1)
            self.console.print(f"Restored version {arg}")

        elif command == "/history":
            project_id = self._require_project()
            cursor = self.history.cursor(project_id)
            for i, snapshot in enumerate(self.history.versions(project_id)):
                marker = "[green]→[/green]" if i == cursor else " "
                last = snapshot.chat_messages[-1].content[:60] if snapshot.chat_messages else ""
                self.console.print(f"{marker} {i + 1:>2}  {len(snapshot.files):>3} files  [dim]{last}[/dim]")

        elif command == "/files":
            snapshot = self.history.current(self._require_project())
            if arg:
                content = snapshot.files.get(arg)
                if content is None:
                    self.console.print(f"[red]No file {arg}[/red]")
                else:
                    self.console.print(Panel(content, title=arg))
            else:
                for path in sorted(snapshot.files):
                    self.console.print(f"  {path}")

        elif command == "/rename":
            self.orchestrator.rename_project(self._require_project(), arg)

        elif command == "/delete":
            self.orchestrator.delete_message(self._require_project(), int(arg))

        elif command == "/console":
            level, _, text = arg.partition(" ")
            if self.inject_telemetry(self._require_project(), ConsoleLevel(level.lower()), text):
                self.console.print(f"[dim]{level.lower()} delivered[/dim]")
            else:
                self.console.print(f"[dim]{level.lower()} queued for the next verification[/dim]")

        elif command == "/status":
            status = self.orchestrator.status(self._require_project())
            run = status["run"]
            self.console.print(
                f"[bold]{status['project_name']}[/bold]  version {status['version']}/{status['versions']}  "
                f"{status['files']} files  phase [cyan]{run['phase']}[/cyan]  "
                f"{run['elapsed_seconds']}s  retries {run['last_retry_count']}  "
                f"tokens {status['oracle']['total_tokens']}  telemetry {status['telemetry']['total']}"
            )

        else:
            self.console.print(f"[red]Unknown command {command}[/red]. Type /help.")

    # ==========================================
    # Loop
    # ==========================================

    def _prompt_text(self) -> HTML:
        if self.active_project_id is None:
            return HTML("<b>❯</b> ")
        name = self.history.current(self.active_project_id).project_name
        return HTML(f"<ansicyan>{name}</ansicyan> <b>❯</b> ")

    async def run_interactive(self, first_prompt: Optional[str] = None) -> None:
        await self.load()
        self.console.print("[bold cyan]BuildLoop[/bold cyan] [dim]- /help for commands, /quit to exit[/dim]\n")
        if self.active_project_id:
            self.render_since(0)

        session: PromptSession = PromptSession(history=InMemoryHistory())
        pending: List[str] = [first_prompt] if first_prompt else []

        while self._running:
            try:
                user_input = pending.pop(0) if pending else await session.prompt_async(self._prompt_text())
                if not user_input.strip():
                    continue
                if user_input.startswith("/"):
                    await self.handle_command(user_input)
                else:
                    await self.send(user_input)
            except KeyboardInterrupt:
                self.console.print("\n[yellow]Use /quit to exit or Ctrl+D[/yellow]")
                continue
            except EOFError:
                break
            except BuildLoopError as e:
                self.report_error(e)
            except ValueError as e:
                self.console.print(f"[red]{e}[/red]")
                if self.verbose:
                    self.console.print_exception()
            finally:
                await self.save()

        self.console.print("\nGoodbye!")


def main():
    """Main entry point"""
    parser = create_parser()
    args = parser.parse_args()
    console = Console()

    timeout = args.verify_timeout / 1000.0 if args.verify_timeout is not None else None
    orchestrator = RunOrchestrator(monitor=ErrorFeedbackMonitor(timeout_seconds=timeout))
    verbose = args.verbose or settings.DEBUG
    cli = BuildLoopCLI(orchestrator, WorkspaceStorage(args.workspace), console, verbose=verbose)

    try:
        asyncio.run(cli.run_interactive(args.prompt))
    except KeyboardInterrupt:
        print("\n\nGoodbye!")
        sys.exit(0)
    except Exception as e:
        if verbose:
            import traceback
            traceback.print_exc()
        else:
            print(f"\nError: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
