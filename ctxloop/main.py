"""
ctxloop v0.3.0 — autonomous coding-agent runtime.

Commands: ctxloop run | sessions | config
"""

import asyncio
import os
import sys
from datetime import datetime
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from . import __version__
from .agent import Agent
from .config import CONFIG_DIR, Config, ModelPreset
from .context_window import ThinScope
from .logger import setup_logger
from .provider import LiteLLMProvider
from .session_store import FileSessionStore, generate_session_id, list_sessions
from .ui_writer import ConsoleUIWriter

console = Console()
BANNER = (
    f"[bold #7FA6D9]ctxloop[/bold #7FA6D9] "
    f"[dim]v{__version__} · coding-agent runtime[/dim]"
)

REPL_HELP = "/thin  /thin all  /compact  /stats  /exit"


@click.group(invoke_without_command=True)
@click.version_option(__version__, prog_name="ctxloop")
@click.pass_context
def cli(ctx):
    """ctxloop — autonomous coding agent with a managed context window."""
    if ctx.invoked_subcommand is None:
        ctx.invoke(run)


@cli.command()
@click.option("--model", "-m", default=None, help="Model preset name or litellm model id")
@click.option("--task", "-t", default=None, help="Run a single task and exit")
@click.option("--autonomous", is_flag=True, help="Unattended run: slower backoff, more retries")
@click.option("--resume", "resume_id", default=None, help="Resume a saved session by id")
@click.option("--project-dir", "-d", default=".", help="Project directory")
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
def run(model, task, autonomous, resume_id, project_dir, verbose):
    """Start an interactive session, or run one --task."""
    console.print(BANNER)
    os.environ.setdefault("PROMPT_TOOLKIT_NO_CPR", "1")
    config = Config.load(project_dir)

    if model:
        if model in config.models:
            config.active_model = model
        else:
            config.models["_cli"] = ModelPreset(name="_cli", provider="openai", model=model,
                                                api_key="not-needed")
            config.active_model = "_cli"
    if autonomous:
        config.autonomous = True
    if verbose:
        config.verbose = True

    project_root = Path(config.project_root).resolve()
    if not project_root.is_dir():
        console.print(f"[red]Error: '{project_dir}' is not a valid directory.[/red]")
        sys.exit(1)

    session_id = resume_id or generate_session_id(task or f"session {datetime.now():%Y%m%d %H%M}")
    setup_logger(verbose=config.verbose, session_id=session_id)
    store = FileSessionStore(session_id, root=str(project_root / config.session_dir))
    preset = config.get_active_preset()
    provider = LiteLLMProvider(**preset.get_provider_kwargs())
    ui = ConsoleUIWriter(console, verbose=config.verbose)
    agent = Agent(provider, store, ui=ui, config=config)

    if resume_id:
        if agent.resume_session():
            console.print(f"  [dim]Resumed session {session_id}[/dim]")
        else:
            console.print(f"  [yellow]⚠ No saved session '{session_id}', starting fresh[/yellow]")

    console.print(f"  [dim]model {preset.model} · session {session_id}[/dim]")

    if task:
        result = asyncio.run(agent.run_turn(task))
        if result.success and result.stop_reason == "final_output":
            ui.print_markdown(result.response)
        if not result.success:
            console.print(f"[red]  {result.stop_reason}: {result.error}[/red]")
            sys.exit(1)
        return

    try:
        asyncio.run(_repl(agent, config))
    except KeyboardInterrupt:
        console.print("\n[dim]Goodbye![/dim]")


async def _repl(agent: Agent, config: Config) -> None:
    from prompt_toolkit import PromptSession
    from prompt_toolkit.history import FileHistory

    CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    session = PromptSession(history=FileHistory(str(CONFIG_DIR / "history.txt")),
                            multiline=False)
    console.print(f"  [dim]{REPL_HELP}[/dim]")

    while True:
        try:
            user_input = (await session.prompt_async("› ")).strip()
        except EOFError:
            console.print("\n[dim]Goodbye![/dim]")
            break
        except KeyboardInterrupt:
            continue

        if not user_input:
            continue
        if user_input.startswith("/"):
            if await _handle_command(user_input, agent) == "quit":
                break
            continue

        try:
            await agent.run_turn(user_input)
        except asyncio.CancelledError:
            console.print("\n[yellow]  Interrupted.[/yellow]")
        except Exception as error:
            console.print(f"\n[red]  Error: {error}[/red]")
            if config.verbose:
                import traceback

                console.print(f"[dim]{traceback.format_exc()}[/dim]")


async def _handle_command(line: str, agent: Agent):
    parts = line.split()
    cmd = parts[0].lower()
    if cmd in ("/exit", "/quit"):
        return "quit"
    if cmd == "/thin":
        scope = ThinScope.ALL if len(parts) > 1 and parts[1] == "all" else ThinScope.FIRST_THIRD
        agent.force_thin(scope)
    elif cmd == "/compact":
        result = await agent.force_compact()
        if not result.success:
            console.print(f"  [red]Compaction failed: {result.error}[/red]")
    elif cmd == "/stats":
        table = Table(show_header=False, box=None, padding=(0, 2))
        for key, value in agent.get_stats().items():
            table.add_row(f"[dim]{key}[/dim]", str(value))
        console.print(table)
    else:
        console.print(f"  [yellow]Unknown command {cmd}.[/yellow] [dim]{REPL_HELP}[/dim]")
    return None


@cli.command()
@click.option("--project-dir", "-d", default=".", help="Project directory")
@click.option("--limit", "-n", default=20, show_default=True, help="How many sessions to list")
def sessions(project_dir, limit):
    """List saved sessions, newest first."""
    config = Config.load(project_dir)
    root = Path(config.project_root) / config.session_dir
    rows = list_sessions(str(root), limit)
    if not rows:
        console.print("[dim]No saved sessions.[/dim]")
        return

    table = Table(title="Sessions", title_justify="left")
    table.add_column("Session")
    table.add_column("Saved")
    table.add_column("Status")
    table.add_column("Context", justify="right")
    table.add_column("Messages", justify="right")
    for row in rows:
        saved = datetime.fromtimestamp(row["timestamp"]).strftime("%Y-%m-%d %H:%M") if row["timestamp"] else "-"
        table.add_row(row["session_id"], saved, row["status"],
                      f"{row['percentage_used']:.1f}%", str(row["message_count"]))
    console.print(table)


@cli.command("config")
@click.option("--project-dir", "-d", default=".", help="Project directory")
@click.option("--set", "assignment", nargs=2, default=None, metavar="KEY VALUE",
              help="Validate and persist one setting, e.g. --set tool-timeout 600")
def config_cmd(project_dir, assignment):
    """Show configuration."""
    cfg = Config.load(project_dir)
    if assignment:
        key, value = assignment
        ok, error = cfg.set_config_value(key, value)
        if not ok:
            console.print(f"[red]  {error}[/red]")
            sys.exit(1)
        console.print(f"  [green]✓[/green] {key} = {cfg.get_config_value(key)}")

    table = Table(show_header=False, box=None, padding=(0, 2))
    for label, value in cfg.summary().items():
        table.add_row(f"[dim]{label}[/dim]", str(value))
    console.print(table)


if __name__ == "__main__":
    cli()
