from __future__ import annotations

import json
import signal
import sys
from datetime import datetime
from pathlib import Path

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .app_context import AppContext
from .errors import OperationCancelled
from .events.store import EventStore
from .runner import EXIT_CANCELLED, EXIT_FATAL, NO_INPUT_MESSAGE, run_non_interactive
from .util.cancel import CancelToken
from .util.logging import configure_logging

app = typer.Typer(add_completion=False, help="pytoolcall: non-interactive model session with tool calling and MCP servers.")
console = Console()
err_console = Console(stderr=True)


def _resolve_cwd(cwd: Path | None) -> Path:
    cwd = Path(str(cwd or Path.cwd())).expanduser()
    cwd = (Path.cwd() / cwd).resolve() if not cwd.is_absolute() else cwd.resolve()
    if not cwd.is_dir():
        raise typer.BadParameter(f"--cwd must be an existing directory: {cwd}")
    return cwd


def _install_sigint(cancel: CancelToken) -> None:
    def _handler(signum, frame):
        if cancel.cancelled:
            # second Ctrl-C: stop waiting for a clean abort
            raise KeyboardInterrupt
        cancel.cancel("Operation cancelled.")

    signal.signal(signal.SIGINT, _handler)


def _read_stdin() -> str:
    if sys.stdin is None or sys.stdin.isatty():
        return ""
    return sys.stdin.read()


def _build_context(cancel: CancelToken, **kwargs) -> AppContext:
    try:
        return AppContext.from_env(cancel=cancel, err_console=err_console, **kwargs)
    except OperationCancelled:
        err_console.print("Operation cancelled.", markup=False)
        raise typer.Exit(code=EXIT_CANCELLED)
    except (FileNotFoundError, ValueError) as e:
        err_console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=EXIT_FATAL)


@app.command()
def run(
    prompt: str = typer.Option(None, "--prompt", "-p", help="Prompt to run once. Piped stdin is appended."),
    provider: str = typer.Option(..., "--provider", help="Provider name registered in pytoolcall.yaml."),
    config: Path = typer.Option(Path("pytoolcall.yaml"), "--config", help="Provider YAML path (default: ./pytoolcall.yaml)."),
    settings: Path = typer.Option(None, "--settings", help="Explicit settings JSON, merged over global and project settings."),
    model: str = typer.Option(None, "--model", "-m", help="Override the provider's model."),
    cwd: Path = typer.Option(None, "--cwd", help="Working directory (project root). Defaults to current directory."),
    yes: bool = typer.Option(False, "--yes", help="Auto-approve tools that require confirmation."),
    debug: bool = typer.Option(False, "--debug", help="Verbose logging to stderr."),
    trace: bool = typer.Option(False, "--trace", help="Print tool results as they complete."),
    prompt_id: str = typer.Option(None, "--prompt-id", help="Identifier attached to this prompt's tool calls."),
):
    """Send one prompt, run requested tools until the model is done, stream the answer to stdout."""
    configure_logging(debug)
    cwd = _resolve_cwd(cwd)

    stdin_text = _read_stdin()
    input_text = "\n\n".join(t for t in (prompt, stdin_text) if t and t.strip())
    if not input_text:
        err_console.print(NO_INPUT_MESSAGE, markup=False)
        raise typer.Exit(code=EXIT_FATAL)

    cancel = CancelToken()
    _install_sigint(cancel)
    ctx = _build_context(
        cancel,
        cwd=cwd,
        provider=provider,
        provider_yaml=config,
        model=model,
        settings_path=settings,
        auto_approve=yes,
        debug=debug,
        trace=trace,
    )
    try:
        configure_logging(ctx.config.get_debug_mode())
        code = run_non_interactive(ctx, input_text, prompt_id or ctx.session_id, cancel)
    finally:
        ctx.close()
    raise typer.Exit(code=code)


@app.command()
def tools(
    settings: Path = typer.Option(None, "--settings", help="Explicit settings JSON."),
    cwd: Path = typer.Option(None, "--cwd", help="Working directory (project root)."),
    debug: bool = typer.Option(False, "--debug", help="Verbose logging to stderr."),
):
    """List every registered tool: built-in, discovered by command, and from MCP servers."""
    configure_logging(debug)
    cancel = CancelToken()
    _install_sigint(cancel)
    ctx = _build_context(cancel, cwd=_resolve_cwd(cwd), settings_path=settings, debug=debug, record_events=False)
    try:
        table = Table(title="Tools")
        table.add_column("name", style="bold")
        table.add_column("source")
        table.add_column("description")
        for t in ctx.registry.all():
            source = t.server_name or ("discovered" if t.discovered else "built-in")
            desc = (t.spec.description or "").strip().splitlines()
            table.add_row(t.display_name, source, desc[0] if desc else "")
        console.print(table)
    finally:
        ctx.close()


@app.command()
def mcp(
    settings: Path = typer.Option(None, "--settings", help="Explicit settings JSON."),
    cwd: Path = typer.Option(None, "--cwd", help="Working directory (project root)."),
    debug: bool = typer.Option(False, "--debug", help="Verbose logging to stderr."),
):
    """Connect to configured MCP servers and show their status and tools."""
    configure_logging(debug)
    cancel = CancelToken()
    _install_sigint(cancel)
    ctx = _build_context(cancel, cwd=_resolve_cwd(cwd), settings_path=settings, debug=debug, record_events=False)
    try:
        conns = ctx.manager.connections()
        if not conns:
            console.print("No MCP servers configured. Add mcpServers to .pytoolcall.json.")
            raise typer.Exit(code=0)
        for conn in conns:
            color = {"connected": "green", "errored": "red"}.get(conn.status.value, "yellow")
            trust = " (trusted)" if conn.config.trusted else ""
            console.print(f"[bold]{conn.name}[/bold]{trust}: [{color}]{conn.status.value}[/{color}]")
            if conn.error:
                console.print(f"  {conn.error}", markup=False)
            for t in ctx.registry.by_server(conn.name):
                console.print(f"  - [bold]{t.name}[/bold]: {t.spec.description}")
    finally:
        ctx.close()


@app.command()
def events(
    session: str = typer.Option(..., "--session", help="Session id to inspect events."),
    tail: int = typer.Option(200, "--tail", help="Show last N events."),
):
    """Show recent structured events (model requests, tool calls, server status) recorded for a session."""
    es = EventStore.open(session)
    evs = es.tail(tail)
    console.print(Panel.fit(f"session: {session}\nfile: {es.path}\nevents: {len(evs)}", title="Events"))
    for e in evs:
        ts = datetime.fromtimestamp(e.ts).strftime("%Y-%m-%d %H:%M:%S")
        console.print(Panel.fit(json.dumps(e.data, ensure_ascii=False, indent=2)[:4000], title=f"{ts}  {e.type}"))


if __name__ == "__main__":
    app()
