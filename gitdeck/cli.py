import asyncio
import dataclasses
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

import click
from rich.console import Console, Group
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from .config import AppConfig, load_config
from .engine import RepoEngine
from .models import (
    ActionResult,
    AddRepositoryInput,
    GuestEnvironment,
    NativeEnvironment,
    RepoRecord,
    Snapshot,
    Transcript,
    new_id,
)
from .storage import JsonStateStore

T = TypeVar("T")

console = Console()


@dataclass
class CliContext:
    config: AppConfig

    def engine(self) -> RepoEngine:
        return RepoEngine(JsonStateStore(self.config.state_path), self.config)


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )


def _run(ctx: CliContext, action: Callable[[RepoEngine], Awaitable[T]]) -> T:
    async def main() -> T:
        engine = ctx.engine()
        await engine.initialize()
        try:
            return await action(engine)
        finally:
            await engine.aclose()

    return asyncio.run(main())


async def _snapshot(engine: RepoEngine) -> Snapshot:
    return engine.get_snapshot()


def resolve_repository(snapshot: Snapshot, ref: str) -> RepoRecord:
    """Find a repository by id, unique id prefix, or display name."""
    for record in snapshot.repositories:
        if record.id == ref:
            return record
    matches = [r for r in snapshot.repositories if r.id.startswith(ref)]
    if not matches:
        matches = [r for r in snapshot.repositories if r.display_name.lower() == ref.lower()]
    if len(matches) == 1:
        return matches[0]
    if not matches:
        raise click.ClickException(f"No repository matches '{ref}'.")
    raise click.ClickException(
        f"'{ref}' is ambiguous: {', '.join(r.display_name for r in matches)}"
    )


def _status_cell(record: RepoRecord) -> Text:
    status = record.status
    if record.active_operation is not None:
        return Text(f"{record.active_operation.name}…", style="cyan")
    if status is None:
        return Text("?", style="dim")
    if status.inaccessible:
        return Text("inaccessible", style="red")
    parts: list[str] = []
    if status.merge_in_progress:
        parts.append("[magenta]merging[/]")
    if status.rebase_in_progress:
        parts.append("[magenta]rebasing[/]")
    if status.conflicted_count:
        parts.append(f"[red]!{status.conflicted_count}[/]")
    if status.staged_count:
        parts.append(f"[green]+{status.staged_count}[/]")
    if status.modified_count:
        parts.append(f"[yellow]~{status.modified_count}[/]")
    if status.untracked_count:
        parts.append(f"[blue]?{status.untracked_count}[/]")
    if not parts:
        return Text.from_markup("[green]✔[/]")
    return Text.from_markup(" ".join(parts))


def _divergence_cell(record: RepoRecord) -> str:
    status = record.status
    if status is None or status.inaccessible:
        return ""
    if not status.has_upstream:
        return "[dim]no upstream[/]"
    ab = f"[cyan]↑{status.ahead}[/] " if status.ahead else ""
    ab += f"[red]↓{status.behind}[/]" if status.behind else ""
    return ab.strip() or "0"


def render_snapshot(snapshot: Snapshot) -> Table:
    table = Table(title="Repositories", title_justify="left")
    for column in ("ID", "Name", "Env", "Branch", "Status", "±", "Error"):
        table.add_column(column)
    for record in snapshot.repositories:
        attention = record.status is not None and record.status.needs_attention
        branch = record.status.branch if record.status else ""
        table.add_row(
            record.id,
            f"[bold]{record.display_name}[/]" if attention else record.display_name,
            record.environment.describe(),
            branch,
            _status_cell(record),
            _divergence_cell(record),
            Text(record.last_error or "", style="red"),
        )
    return table


def render_transcript(transcript: Transcript) -> Panel:
    exit_code = "n/a" if transcript.exit_code is None else str(transcript.exit_code)
    header = Text.from_markup(
        f"[bold]$ {transcript.command}[/]\n"
        f"exit: {exit_code}  timed out: {transcript.timed_out}\n"
        f"{transcript.started_at} → {transcript.finished_at}"
    )
    body = [header]
    if transcript.stdout.strip():
        body.append(Text("\nstdout:", style="bold"))
        body.append(Text(transcript.stdout.rstrip()))
    if transcript.stderr.strip():
        body.append(Text("\nstderr:", style="bold red"))
        body.append(Text(transcript.stderr.rstrip()))
    style = "green" if transcript.succeeded else "red"
    return Panel(Group(*body), border_style=style)


def report(result: ActionResult) -> None:
    if result.ok:
        console.print(f"[green]✔[/] {result.message}")
        return
    console.print(f"[red]✘[/] {result.message}")
    if result.transcript is not None:
        console.print(render_transcript(result.transcript))
    raise SystemExit(1)


def _repository_action(
    ctx: CliContext,
    ref: str,
    action: Callable[[RepoEngine, str], Awaitable[ActionResult]],
) -> None:
    async def run(engine: RepoEngine) -> ActionResult:
        record = resolve_repository(engine.get_snapshot(), ref)
        return await action(engine, record.id)

    report(_run(ctx, run))


@click.group()
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False),
    default=None,
    help="Path to the YAML configuration file.",
)
@click.option(
    "--state",
    "state_path",
    type=click.Path(dir_okay=False),
    default=None,
    help="Override the state file location.",
)
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
@click.pass_context
def main(
    click_ctx: click.Context,
    config_path: Optional[str],
    state_path: Optional[str],
    verbose: bool,
) -> None:
    """Status and operations for many git repositories across host and guest."""
    config = load_config(config_path)
    if state_path:
        config = dataclasses.replace(config, state_path=state_path)
    _configure_logging("DEBUG" if verbose else config.log_level)
    click_ctx.obj = CliContext(config=config)


@main.command("list")
@click.pass_obj
def list_command(ctx: CliContext) -> None:
    """Show the catalog as last refreshed."""
    console.print(render_snapshot(_run(ctx, _snapshot)))


@main.command()
@click.pass_obj
def refresh(ctx: CliContext) -> None:
    """Refresh the status of every repository."""
    console.print(render_snapshot(_run(ctx, lambda engine: engine.refresh_all())))


@main.command()
@click.pass_obj
def scan(ctx: CliContext) -> None:
    """Discover repositories under the configured roots, then refresh."""
    console.print(render_snapshot(_run(ctx, lambda engine: engine.scan_configured_roots())))


@main.command()
@click.argument("path")
@click.option("--guest", "guest_id", default=None, help="Guest identifier the path lives in.")
@click.option("--name", "display_name", default=None, help="Display name.")
@click.pass_obj
def add(ctx: CliContext, path: str, guest_id: Optional[str], display_name: Optional[str]) -> None:
    """Register the working tree at PATH."""
    environment = GuestEnvironment(guest_id) if guest_id else NativeEnvironment()
    repo_input = AddRepositoryInput(path=path, environment=environment, display_name=display_name)
    report(_run(ctx, lambda engine: engine.add_repository(repo_input)))


@main.command()
@click.argument("ref")
@click.option("--ignore", is_flag=True, help="Skip this repository in future scans.")
@click.pass_obj
def remove(ctx: CliContext, ref: str, ignore: bool) -> None:
    """Forget a repository. Nothing is deleted on disk."""

    async def run(engine: RepoEngine) -> Snapshot:
        record = resolve_repository(engine.get_snapshot(), ref)
        return await engine.remove_repository(record.id, ignore=ignore)

    _run(ctx, run)
    console.print(f"[green]✔[/] Removed {ref}.")


@main.command()
@click.argument("ref")
@click.argument("file_path")
@click.pass_obj
def stage(ctx: CliContext, ref: str, file_path: str) -> None:
    """Stage one file."""
    _repository_action(ctx, ref, lambda engine, rid: engine.stage_file(rid, file_path))


@main.command()
@click.argument("ref")
@click.argument("file_path")
@click.pass_obj
def unstage(ctx: CliContext, ref: str, file_path: str) -> None:
    """Unstage one file."""
    _repository_action(ctx, ref, lambda engine, rid: engine.unstage_file(rid, file_path))


@main.command()
@click.argument("ref")
@click.option("-m", "--message", required=True, help="Commit message.")
@click.pass_obj
def commit(ctx: CliContext, ref: str, message: str) -> None:
    """Commit staged changes, or everything when nothing is staged."""
    _repository_action(ctx, ref, lambda engine, rid: engine.commit_repository(rid, message))


@main.command()
@click.argument("ref")
@click.pass_obj
def push(ctx: CliContext, ref: str) -> None:
    """Push the current branch."""
    _repository_action(ctx, ref, lambda engine, rid: engine.push_repository(rid))


@main.command()
@click.argument("ref")
@click.pass_obj
def sync(ctx: CliContext, ref: str) -> None:
    """Fetch, pull and push."""
    _repository_action(ctx, ref, lambda engine, rid: engine.sync_repository(rid))


@main.command("open")
@click.argument("ref")
@click.option(
    "--editor", "target", flag_value="editor", default=True, help="Open in the editor."
)
@click.option("--files", "target", flag_value="files", help="Open in the file manager.")
@click.option("--terminal", "target", flag_value="terminal", help="Open a terminal.")
@click.pass_obj
def open_command(ctx: CliContext, ref: str, target: str) -> None:
    """Open a repository in an external program."""
    actions = {
        "editor": lambda engine, rid: engine.open_in_editor(rid),
        "files": lambda engine, rid: engine.open_in_file_manager(rid),
        "terminal": lambda engine, rid: engine.open_in_terminal(rid),
    }
    _repository_action(ctx, ref, actions[target])


@main.command()
@click.argument("ref")
@click.option("--all", "show_all", is_flag=True, help="Show the whole history.")
@click.pass_obj
def transcript(ctx: CliContext, ref: str, show_all: bool) -> None:
    """Show the last error transcript, or the command history."""
    snapshot = _run(ctx, _snapshot)
    record = resolve_repository(snapshot, ref)
    if show_all:
        if not record.transcripts:
            console.print("No commands recorded.")
        for item in record.transcripts:
            console.print(render_transcript(item))
        return
    if record.last_error:
        console.print(f"[red]{record.last_error}[/]")
    if record.last_error_transcript is not None:
        console.print(render_transcript(record.last_error_transcript))
    elif record.transcripts:
        console.print(render_transcript(record.transcripts[-1]))
    else:
        console.print("No commands recorded.")


def _parse_guest_root(value: str) -> dict:
    guest_id, sep, path = value.partition(":")
    if not sep or not guest_id.strip() or not path.strip():
        raise click.BadParameter(f"expected GUEST:PATH, got '{value}'")
    return {"id": new_id("root"), "guest_id": guest_id.strip(), "path": path.strip()}


@main.command()
@click.option("--native-root", "native_roots", multiple=True, help="Host directory to scan.")
@click.option("--guest-root", "guest_roots", multiple=True, help="GUEST:PATH to scan.")
@click.option("--ignore-pattern", "ignore_patterns", multiple=True, help="Substring to skip.")
@click.option("--editor-native", default=None, help="Editor command template for host repositories.")
@click.option("--editor-guest", default=None, help="Editor command template for guest repositories.")
@click.option("--refresh-interval", type=int, default=None, help="Seconds between auto refreshes.")
@click.option("--fetch-on-refresh/--no-fetch-on-refresh", default=None)
@click.pass_obj
def settings(
    ctx: CliContext,
    native_roots: tuple[str, ...],
    guest_roots: tuple[str, ...],
    ignore_patterns: tuple[str, ...],
    editor_native: Optional[str],
    editor_guest: Optional[str],
    refresh_interval: Optional[int],
    fetch_on_refresh: Optional[bool],
) -> None:
    """Show or change settings."""
    changes: dict = {}
    if native_roots:
        changes["native_roots"] = list(native_roots)
    if guest_roots:
        changes["guest_roots"] = [_parse_guest_root(value) for value in guest_roots]
    if ignore_patterns:
        changes["ignore_patterns"] = list(ignore_patterns)
    if editor_native:
        changes["editor_command_native"] = editor_native
    if editor_guest:
        changes["editor_command_guest"] = editor_guest
    if refresh_interval is not None:
        changes["refresh_interval_seconds"] = refresh_interval
    if fetch_on_refresh is not None:
        changes["fetch_on_refresh"] = fetch_on_refresh

    if changes:
        snapshot = _run(ctx, lambda engine: engine.update_settings(**changes))
    else:
        snapshot = _run(ctx, _snapshot)
    table = Table(show_header=False)
    table.add_column("Setting", style="bold")
    table.add_column("Value")
    for key, value in snapshot.settings.to_dict().items():
        if key == "guest_roots":
            value = [f"{root['guest_id']}:{root['path']}" for root in value]
        table.add_row(key, ", ".join(map(str, value)) if isinstance(value, list) else str(value))
    console.print(table)


@main.command()
@click.pass_obj
def watch(ctx: CliContext) -> None:
    """Refresh on the configured interval until interrupted."""

    async def run(engine: RepoEngine) -> None:
        engine.start_auto_refresh(lambda snapshot: console.print(render_snapshot(snapshot)))
        await asyncio.Event().wait()

    try:
        _run(ctx, run)
    except KeyboardInterrupt:
        pass
