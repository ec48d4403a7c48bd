"""CLI commands for chatting with a provider and running the generation pipeline."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Iterable, List, Optional

import typer

from .commands import CommandWithFallbacks
from .config import DEFAULT_CONFIG_NAME, EngineConfig, load_config, write_default_config
from .errors import ConfigError
from .events import (
    Done,
    ErrorEvent,
    Event,
    KeysExhausted,
    Progress,
    TextChunk,
    TodosUpdated,
    ToolCallStarted,
    ToolResultEvent,
)
from .intent import IntentType, detect_intent, score_intent
from .memory.store import HistoryStore
from .models.messages import FinishReason
from .runtime import build_runtime
from .tools.project import workspace_has_files
from .utils.slug import slugify

APP_HELP = "Relay: multi-provider agent orchestration CLI."
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

app = typer.Typer(help=APP_HELP)

_CONFIG_OPTION = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help="Path to the relay configuration file.")
_VERBOSE_OPTION = typer.Option(False, "--verbose", "-v", help="Enable debug logging.")


def _load(config: str, verbose: bool = False) -> EngineConfig:
    try:
        engine_config = load_config(Path(config))
    except ConfigError as error:
        typer.echo(str(error))
        raise typer.Exit(code=1) from error
    level = logging.DEBUG if verbose else getattr(logging, engine_config.logging.level.upper(), logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT)
    return engine_config


def _render_events(events: Iterable[Event], *, verbose: bool = False) -> int:
    """Print events as they arrive; returns the process exit code."""
    exit_code = 0
    streaming = False
    for event in events:
        if isinstance(event, TextChunk):
            typer.echo(event.text, nl=False)
            streaming = True
            continue
        if streaming:
            typer.echo("")
            streaming = False
        if isinstance(event, ToolCallStarted):
            args = json.dumps(dict(event.args), ensure_ascii=False, default=str)
            typer.echo(f"> {event.name} {args if verbose else args[:120]}")
        elif isinstance(event, ToolResultEvent):
            status = "ok" if event.result.ok else f"error ({event.result.error.kind.value})"
            typer.echo(f"< {event.name}: {status}")
            if verbose and event.result.return_display:
                typer.echo(event.result.return_display)
        elif isinstance(event, Progress):
            typer.echo(f"* {event.message}")
        elif isinstance(event, TodosUpdated):
            for todo in event.todos:
                typer.echo(f"  [{todo.status.value}] {todo.description}")
        elif isinstance(event, Done):
            if event.finish is not FinishReason.STOP:
                typer.echo(f"Finished: {event.finish.value}")
            typer.echo("Done.")
        elif isinstance(event, KeysExhausted):
            typer.echo(f"All API keys exhausted: {event.message}")
            exit_code = 2
        elif isinstance(event, ErrorEvent):
            prefix = f"[{event.phase}] " if event.phase else ""
            typer.echo(f"Error: {prefix}{event.message}")
            exit_code = 1
    if streaming:
        typer.echo("")
    return exit_code


@app.command()
def init(
    config: str = _CONFIG_OPTION,
    force: bool = typer.Option(False, "--force", help="Overwrite an existing configuration file."),
) -> None:
    """Write the default configuration file."""
    config_path = Path(config)
    if not write_default_config(config_path, overwrite=force):
        typer.echo(f"{config_path} already exists; use --force to overwrite.")
        raise typer.Exit(code=1)
    typer.echo(f"Wrote default configuration to {config_path}.")


def _run_chat(engine_config: EngineConfig, message: str, session: str, verbose: bool) -> int:
    runtime = build_runtime(engine_config)
    session_id = slugify(session, fallback="default")
    try:
        with runtime.open_store() as store:
            controller = runtime.controller(
                memory_summary=store.summarized_memory(),
                history=store.load_history(session_id),
            )
            exit_code = _render_events(controller.run(message), verbose=verbose)
            store.save_history(session_id, controller.history())
    finally:
        runtime.close()
    return exit_code


def _run_build(engine_config: EngineConfig, message: str, intent: Optional[IntentType], verbose: bool) -> int:
    runtime = build_runtime(engine_config)
    try:
        with runtime.open_store() as store:
            memory = store.summarized_memory()
        return _render_events(runtime.pipeline().run(message, intent=intent, memory_summary=memory), verbose=verbose)
    finally:
        runtime.close()


@app.command()
def chat(
    message: str = typer.Argument(..., help="Message to send to the model."),
    session: str = typer.Option("default", "--session", "-s", help="Conversation session to continue."),
    config: str = _CONFIG_OPTION,
    verbose: bool = _VERBOSE_OPTION,
) -> None:
    """Send a message through the streaming turn loop with tool access."""
    exit_code = _run_chat(_load(config, verbose), message, session, verbose)
    if exit_code:
        raise typer.Exit(code=exit_code)


@app.command()
def build(
    message: str = typer.Argument(..., help="What to build, fix, or test."),
    intent: Optional[IntentType] = typer.Option(None, "--intent", help="Override intent detection."),
    config: str = _CONFIG_OPTION,
    verbose: bool = _VERBOSE_OPTION,
) -> None:
    """Run the multi-phase generation pipeline in the configured workspace."""
    exit_code = _run_build(_load(config, verbose), message, intent, verbose)
    if exit_code:
        raise typer.Exit(code=exit_code)


@app.command()
def ask(
    message: str = typer.Argument(..., help="Request for the agent."),
    config: str = _CONFIG_OPTION,
    verbose: bool = _VERBOSE_OPTION,
) -> None:
    """Route MESSAGE to the turn loop or the pipeline according to engine.streaming."""
    engine_config = _load(config, verbose)
    if engine_config.engine.streaming:
        exit_code = _run_chat(engine_config, message, "default", verbose)
    else:
        exit_code = _run_build(engine_config, message, None, verbose)
    if exit_code:
        raise typer.Exit(code=exit_code)


@app.command("intent")
def intent_command(
    message: str = typer.Argument(..., help="Message to classify."),
    config: str = _CONFIG_OPTION,
) -> None:
    """Show the intent the pipeline would pick for MESSAGE."""
    engine_config = _load(config)
    has_files = workspace_has_files(engine_config.workspace)
    with HistoryStore(engine_config.db_path) as store:
        memory = store.summarized_memory()
    scores = score_intent(message, memory)
    detected = detect_intent(message, memory, has_files)
    typer.echo(f"Intent: {detected.value}")
    typer.echo(
        f"Scores: debug={scores.debug} create={scores.create} test={scores.test} "
        f"stacktrace={'yes' if scores.stacktrace else 'no'} workspace_files={'yes' if has_files else 'no'}"
    )


@app.command("run-command")
def run_command(
    command: str = typer.Argument(..., help="Shell command to run in the workspace."),
    check: Optional[str] = typer.Option(None, "--check", help="Availability check run before the command."),
    fallback: List[str] = typer.Option(None, "--fallback", help="Fallback tried when the check fails (repeatable)."),
    config: str = _CONFIG_OPTION,
    verbose: bool = _VERBOSE_OPTION,
) -> None:
    """Run COMMAND through the fallback resolver."""
    runtime = build_runtime(_load(config, verbose))
    spec = CommandWithFallbacks(
        primary_command=command,
        description=command,
        fallbacks=list(fallback or []),
        check_command=check,
    )
    exit_codes: List[int] = []
    try:
        ok = runtime.resolver.run(
            spec, on_event=lambda event: exit_codes.append(_render_events([event], verbose=verbose))
        )
    finally:
        runtime.close()
    typer.echo("Command succeeded." if ok else "Command failed.")
    if not ok:
        raise typer.Exit(code=max(exit_codes, default=1) or 1)


@app.command()
def history(
    delete: Optional[str] = typer.Option(None, "--delete", help="Delete the given session."),
    show: Optional[str] = typer.Option(None, "--show", help="Print the messages of the given session."),
    config: str = _CONFIG_OPTION,
) -> None:
    """List, show, or delete stored conversation sessions."""
    engine_config = _load(config)
    with HistoryStore(engine_config.db_path) as store:
        if delete:
            removed = store.delete_history(delete)
            typer.echo(f"Deleted session {delete}." if removed else f"No session named {delete}.")
            return
        if show:
            messages = store.load_history(show)
            if not messages:
                typer.echo(f"No messages stored for {show}.")
            for message in messages:
                typer.echo(f"{message.role.value}: {message.text or '(tool exchange)'}")
            return
        sessions = store.list_sessions()
        if not sessions:
            typer.echo("No stored sessions.")
            return
        for item in sessions:
            typer.echo(f"{item.id}\t{item.message_count} message(s)\t{item.updated_at.isoformat()}\t{item.title}")


@app.command()
def remember(
    note: str = typer.Argument(..., help="Fact to keep in memory across sessions."),
    config: str = _CONFIG_OPTION,
) -> None:
    """Store a memory note that is fed into later prompts and intent detection."""
    engine_config = _load(config)
    with HistoryStore(engine_config.db_path) as store:
        stored = store.remember(note)
    typer.echo(f"Remembered note {stored.id}.")


@app.command()
def status(config: str = _CONFIG_OPTION) -> None:
    """Show the active configuration and provider."""
    engine_config = _load(config)
    settings = engine_config.provider_settings()
    typer.echo(f"Config: {Path(config).resolve()}")
    typer.echo(f"Provider: {settings.kind.value}")
    typer.echo(f"Model: {settings.resolved_model}")
    typer.echo(f"Base URL: {settings.base_url or '(default)'}")
    typer.echo(f"API keys: {len(settings.api_keys)} configured{'' if settings.requires_key else ' (not required)'}")
    typer.echo(f"Mode: {'streaming turn loop' if engine_config.engine.streaming else 'multi-phase pipeline'}")
    typer.echo(f"Workspace: {engine_config.workspace}")
    typer.echo(f"Data: {engine_config.data_root}")


def main() -> None:  # pragma: no cover - console entry point
    app()


if __name__ == "__main__":  # pragma: no cover
    main()
