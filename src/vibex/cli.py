"""Typer entry point for vibex."""

from __future__ import annotations

import asyncio
from pathlib import Path

import typer
from loguru import logger
from rich.console import Console

from vibex.config import Settings
from vibex.errors import ConfigurationError
from vibex.generation.any_llm import AnyLLMContentGenerator
from vibex.logging_utils import configure_logging
from vibex.retry import RetryPolicy
from vibex.tools.builtin import register_builtin_tools
from vibex.tools.registry import ToolRegistry
from vibex.turn.models import TurnEvent, TurnEventKind
from vibex.turn.session import SessionReply, TurnSession

EXIT_COMMANDS = frozenset({"quit", "exit", "q", ",quit"})

app = typer.Typer(
    name="vibex",
    help="Terminal assistant with streaming turns and tool calls.",
    add_completion=False,
)
console = Console()


def build_registry(workspace: Path) -> ToolRegistry:
    registry = ToolRegistry()
    register_builtin_tools(registry, workspace=workspace)
    return registry


def build_session(settings: Settings, workspace: Path) -> TurnSession:
    config = settings.generation_config()
    generator = AnyLLMContentGenerator(
        api_key=settings.api_key,
        api_base=settings.api_base,
        context_limit=settings.context_limit,
    )
    return TurnSession(
        generator,
        config,
        registry=build_registry(workspace),
        retry_policy=RetryPolicy(settings.retry_configuration()),
        max_tool_rounds=settings.max_tool_rounds,
        max_turns=settings.max_turns,
        keep_messages=settings.keep_messages,
        first_event_timeout=settings.model_timeout_seconds,
    )


def _load_settings(workspace: Path | None, model: str | None, max_tokens: int | None) -> tuple[Settings, Path]:
    settings = Settings()
    updates: dict[str, object] = {}
    if workspace is not None:
        updates["workspace_path"] = workspace
    if model:
        updates["model"] = model
    if max_tokens:
        updates["max_tokens"] = max_tokens
    if updates:
        settings = settings.model_copy(update=updates)
    return settings, settings.resolved_workspace()


def _open_session(workspace: Path | None, model: str | None, max_tokens: int | None) -> TurnSession:
    settings, workspace_path = _load_settings(workspace, model, max_tokens)
    try:
        settings.require_model()
        return build_session(settings, workspace_path)
    except ConfigurationError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(1) from exc


def _echo_stream(event: TurnEvent) -> None:
    if event.kind == TurnEventKind.CONTENT:
        console.print(event.text, end="", markup=False, highlight=False)
    elif event.kind == TurnEventKind.TOOL_CALL and event.tool_call is not None:
        console.print(f"\n[dim]> {event.tool_call.name}[/dim]")


def _print_reply_footer(reply: SessionReply) -> None:
    console.print()
    if reply.error:
        console.print(f"[red]error: {reply.error}[/red]")


@app.command()
def chat(
    workspace: Path | None = typer.Option(None, "--workspace", "-w", help="Workspace for file tools"),
    model: str | None = typer.Option(None, "--model", help="Model in provider:model format"),
    max_tokens: int | None = typer.Option(None, "--max-tokens", help="Maximum tokens per response"),
) -> None:
    """Start an interactive chat."""
    configure_logging(profile="chat")
    session = _open_session(workspace, model, max_tokens)
    session.events.subscribe(_echo_stream)
    console.print("[bold]vibex[/bold] - type 'quit' to exit, 'reset' to clear the conversation.")

    async def _loop() -> None:
        while True:
            try:
                user_input = await asyncio.to_thread(console.input, "[cyan]> [/cyan]")
            except (KeyboardInterrupt, EOFError):
                console.print("\nGoodbye!")
                return
            text = user_input.strip()
            if not text:
                continue
            if text.lower() in EXIT_COMMANDS:
                return
            if text.lower() == "reset":
                session.reset()
                console.print("[dim]conversation reset[/dim]")
                continue
            reply = await session.ask(text)
            _print_reply_footer(reply)

    asyncio.run(_loop())


@app.command()
def ask(
    prompt: str = typer.Argument(..., help="Prompt to send"),
    workspace: Path | None = typer.Option(None, "--workspace", "-w", help="Workspace for file tools"),
    model: str | None = typer.Option(None, "--model", help="Model in provider:model format"),
    max_tokens: int | None = typer.Option(None, "--max-tokens", help="Maximum tokens per response"),
) -> None:
    """Send one prompt and print the streamed answer."""
    configure_logging()
    session = _open_session(workspace, model, max_tokens)
    session.events.subscribe(_echo_stream)
    reply = asyncio.run(session.ask(prompt))
    _print_reply_footer(reply)
    if reply.error:
        logger.warning("cli.ask.error error={}", reply.error)
        raise typer.Exit(1)


@app.command("tools")
def list_tools(
    workspace: Path | None = typer.Option(None, "--workspace", "-w", help="Workspace for file tools"),
) -> None:
    """List builtin tools."""
    registry = build_registry((workspace or Path.cwd()).resolve())
    for row in registry.compact_rows():
        typer.echo(row)


if __name__ == "__main__":
    app()
