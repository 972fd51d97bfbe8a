"""
Command-line interface for turnkit.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from turnkit.adapters.base import ProviderAdapter
from turnkit.adapters.registry import create_default_registry
from turnkit.agent import AgentLoop, LoopResult
from turnkit.config import AgentConfig
from turnkit.errors import SessionLoadError, SessionLockedError, TurnkitError
from turnkit.logging import setup_logging
from turnkit.model_registry import ModelRegistry
from turnkit.models import Message, ReasoningBlock, TextBlock, ToolCallBlock, ToolResultBlock
from turnkit.modes.json_mode import JsonMode
from turnkit.session.manager import SessionManager
from turnkit.session.session import Session
from turnkit.tools import create_builtin_tools

console = Console()

DEFAULT_SESSION_DIR = Path("~/.turnkit/sessions")


def main() -> None:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="turnkit agent loop CLI",
        prog="turnkit",
    )

    # Global options
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose output (debug logging)",
    )
    parser.add_argument(
        "-c",
        "--config",
        help="YAML config file (defaults to TURNKIT_* environment variables)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Chat command
    chat_parser = subparsers.add_parser("chat", help="Send one prompt and print the reply")
    chat_parser.add_argument("prompt", nargs="+", help="Prompt text")
    _add_run_options(chat_parser)

    # Events command
    events_parser = subparsers.add_parser(
        "events", help="Run one prompt and print canonical events as JSONL"
    )
    events_parser.add_argument("prompt", nargs="+", help="Prompt text")
    _add_run_options(events_parser)

    # Sessions command
    sessions_parser = subparsers.add_parser("sessions", help="List persisted sessions")
    sessions_parser.add_argument("--dir", dest="session_dir", help="Session directory")
    sessions_parser.add_argument("--json", action="store_true", help="Output as JSON")

    # Show command
    show_parser = subparsers.add_parser("show", help="Show the active branch of a session")
    show_parser.add_argument("session_id", help="Session id")
    show_parser.add_argument("--dir", dest="session_dir", help="Session directory")

    args = parser.parse_args()

    # Setup logging based on verbosity
    if getattr(args, "verbose", False):
        setup_logging("DEBUG")
    else:
        setup_logging("WARNING")

    if args.command == "chat":
        asyncio.run(cmd_chat(args))
    elif args.command == "events":
        asyncio.run(cmd_events(args))
    elif args.command == "sessions":
        cmd_sessions(args)
    elif args.command == "show":
        cmd_show(args)
    else:
        parser.print_help()


def _add_run_options(sub: argparse.ArgumentParser) -> None:
    sub.add_argument("-p", "--provider", help="Provider name (openai, anthropic)")
    sub.add_argument("-m", "--model", help="Model id")
    sub.add_argument("-s", "--session", help="Resume this session id")
    sub.add_argument("--dir", dest="session_dir", help="Session directory")
    sub.add_argument("--max-turns", type=int, help="Turn limit for this run")
    sub.add_argument("--cwd", help="Working directory for the built-in tools")


def _load_config(args: argparse.Namespace) -> AgentConfig:
    """Config from ``--config`` or the environment, with CLI overrides applied."""
    if getattr(args, "config", None):
        config = AgentConfig.from_yaml(Path(args.config))
    else:
        config = AgentConfig.from_env()

    if getattr(args, "provider", None):
        config.provider = args.provider
    if getattr(args, "model", None):
        config.model = args.model
    if getattr(args, "max_turns", None):
        config.max_turns = args.max_turns
    if getattr(args, "session_dir", None):
        config.session_dir = Path(args.session_dir).expanduser()
    return config


def _session_manager(config: AgentConfig) -> SessionManager:
    return SessionManager(config.session_dir or DEFAULT_SESSION_DIR)


@asynccontextmanager
async def _locked_session(
    args: argparse.Namespace, config: AgentConfig, manager: SessionManager
) -> AsyncIterator[Session]:
    """Hold the session lock and yield the session, loaded only once the lock is held."""
    if args.session:
        async with manager.locked(args.session):
            yield manager.open(args.session)
        return

    cwd = args.cwd or os.getcwd()
    session = manager.create(cwd=cwd, provider=config.provider, model=config.model)
    async with manager.locked(session.id):
        yield session


def _select_adapter(config: AgentConfig, models: ModelRegistry) -> ProviderAdapter:
    registry = create_default_registry(config, models=models)
    try:
        return registry.get(config.provider)
    except KeyError as e:
        console.print(f"[red]{escape(e.args[0])}[/red]")
        sys.exit(1)


def _build_loop(
    args: argparse.Namespace,
    config: AgentConfig,
    adapter: ProviderAdapter,
    session: Session,
    models: ModelRegistry,
) -> AgentLoop:
    return AgentLoop(
        adapter=adapter,
        session=session,
        tools=create_builtin_tools(args.cwd or os.getcwd(), config.dispatcher.grace_period),
        config=config,
        models=models,
    )


async def cmd_chat(args: argparse.Namespace) -> None:
    """Send one prompt through the agent loop."""
    config = _load_config(args)
    manager = _session_manager(config)
    models = ModelRegistry()
    models.load_defaults()
    adapter = _select_adapter(config, models)
    try:
        async with _locked_session(args, config, manager) as session:
            loop = _build_loop(args, config, adapter, session, models)
            result = await loop.run(" ".join(args.prompt))
    except (SessionLoadError, SessionLockedError) as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)

    _print_result(result)
    console.print(f"\n[dim]Session: {loop.session.id}[/dim]")
    if not result.ok:
        sys.exit(1)


async def cmd_events(args: argparse.Namespace) -> None:
    """Print canonical events for one prompt as JSONL."""
    config = _load_config(args)
    manager = _session_manager(config)
    models = ModelRegistry()
    models.load_defaults()
    adapter = _select_adapter(config, models)
    try:
        async with _locked_session(args, config, manager) as session:
            loop = _build_loop(args, config, adapter, session, models)
            await JsonMode().run(loop, " ".join(args.prompt))
    except TurnkitError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)


def cmd_sessions(args: argparse.Namespace) -> None:
    """List persisted sessions."""
    config = _load_config(args)
    headers = _session_manager(config).list_sessions()

    if args.json:
        console.print_json(json.dumps([h.to_dict() for h in headers], indent=2))
        return

    table = Table(title="Sessions")
    table.add_column("ID", style="cyan")
    table.add_column("Created")
    table.add_column("Model", style="dim")
    table.add_column("Working directory", style="dim")

    for header in headers:
        created = datetime.fromtimestamp(header.created_at).strftime("%Y-%m-%d %H:%M")
        table.add_row(header.id, created, str(header.metadata.get("model", "")), header.cwd)

    console.print(table)
    console.print(f"\n[dim]Total: {len(headers)} sessions[/dim]")


def cmd_show(args: argparse.Namespace) -> None:
    """Print the active branch of a session."""
    config = _load_config(args)
    try:
        session = _session_manager(config).open(args.session_id)
    except SessionLoadError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)

    meta = session.meta()
    console.print(f"\n[bold]Session {session.id}[/bold]")
    console.print(
        f"[dim]{len(session)} messages, "
        f"{meta.usage.input_tokens} in / {meta.usage.output_tokens} out tokens[/dim]\n"
    )
    for message in session.active_branch():
        _print_message(message)


def _print_result(result: LoopResult) -> None:
    if result.text:
        console.print(result.text, markup=False)
    if result.error is not None:
        console.print(
            f"[red]Error ({result.error.get('kind', 'unknown')}):[/red] "
            f"{escape(str(result.error.get('message', '')))}"
        )
    elif result.stop_reason not in ("end_turn", "tool_calls"):
        console.print(f"[yellow]Stopped: {result.stop_reason}[/yellow]")


_ROLE_STYLES = {"user": "green", "assistant": "cyan", "tool": "magenta"}


def _print_message(message: Message) -> None:
    style = _ROLE_STYLES.get(message.role, "white")
    suffix = f" ({message.stop_reason})" if message.stop_reason else ""
    console.print(f"[bold {style}]{message.role}[/bold {style}]{suffix}")
    for block in message.content:
        if isinstance(block, TextBlock):
            console.print(block.text, markup=False)
        elif isinstance(block, ReasoningBlock):
            console.print(block.text[:500], style="dim italic", markup=False)
        elif isinstance(block, ToolCallBlock):
            args = escape(json.dumps(block.arguments))
            console.print(f"  [yellow]→ {escape(block.name)}[/yellow] {args}")
        elif isinstance(block, ToolResultBlock):
            status = "[red]✗[/red]" if block.is_error else "[green]✓[/green]"
            console.print(f"  {status} [dim]{escape(block.name)}[/dim]")
            console.print(block.content[:500], markup=False)
    console.print()


if __name__ == "__main__":
    main()
