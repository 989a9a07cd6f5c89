"""Conduit CLI entry point."""

from __future__ import annotations

import asyncio
import logging
import os
import sys
import tempfile
import zipfile
from logging.handlers import RotatingFileHandler
from pathlib import Path

from rich.console import Console
from rich.table import Table
from rich.text import Text

from conduit.engine.errors import (
    BundleIntegrityError,
    ConduitError,
    ConfigError,
    NotSupportedError,
    SpawnFailureError,
    TapeCorruptionError,
    TapeLockedError,
)
from conduit.engine.events import (
    AssistantMessage,
    AssistantReasoning,
    CommandOutput,
    ControlRequest,
    Error,
    FileChanged,
    Raw,
    SessionInit,
    TokenUsage,
    ToolCompleted,
    ToolStarted,
    TurnCompleted,
    TurnStarted,
    UnifiedEvent,
    is_terminal,
)

logger = logging.getLogger(__name__)

console = Console()
err_console = Console(stderr=True)

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"


def _configure_logging(log_dir: Path, level: str, verbose: bool, quiet_console: bool) -> Path:
    """Root logger: rotating file under ``log_dir`` plus stderr."""
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "conduit.log"
    file_level = logging.DEBUG if verbose else getattr(logging, level, logging.INFO)

    root = logging.getLogger()
    root.setLevel(file_level)
    root.handlers.clear()
    formatter = logging.Formatter(_LOG_FORMAT)
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    # Event output goes to stdout; keep stderr to warnings unless asked.
    if quiet_console and not verbose:
        stream_handler.setLevel(logging.WARNING)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)
    return log_file


def _load_config(args):
    """EngineConfig from env, then YAML, then command-line flags."""
    from conduit.engine.config import EngineConfig
    from conduit.engine.models import ReproMode
    from conduit.engine.yaml_config import load_yaml_config

    config = EngineConfig.from_env()
    agents = {}
    if getattr(args, "config", None):
        loaded = load_yaml_config(args.config, base=config)
        config = loaded.engine
        agents = loaded.agents
    if getattr(args, "data_dir", None):
        config.data_dir = os.path.abspath(os.path.expanduser(args.data_dir))
    if getattr(args, "record", False):
        config.repro_mode = ReproMode.RECORD
    if getattr(args, "agent", None):
        config.default_agent = args.agent
    if getattr(args, "tool_approval", False):
        config.tool_approval = True
    return config, agents


# ── Event rendering ──


def render_event(event: UnifiedEvent) -> Text | None:
    """One line of console output per event; None to print nothing."""
    if isinstance(event, SessionInit):
        return Text(f"● session {event.session_id} model={event.model or '?'}", style="dim")
    if isinstance(event, AssistantMessage):
        return Text(event.text, style="bold" if event.is_final else "")
    if isinstance(event, AssistantReasoning):
        return Text(event.text, style="italic dim")
    if isinstance(event, ToolStarted):
        return Text(f"▶ {event.tool_name} [{event.tool_id}]", style="cyan")
    if isinstance(event, ToolCompleted):
        mark, style = ("✔", "green") if event.success else ("✘", "red")
        detail = event.error if not event.success else (event.result or "")
        line = Text(f"{mark} {event.tool_name or event.tool_id}", style=style)
        if event.orphan:
            line.append(" (orphan)", style="yellow")
        if detail:
            line.append(f" {detail.splitlines()[0][:200]}", style="dim")
        return line
    if isinstance(event, FileChanged):
        return Text(f"✎ {event.operation} {event.path}", style="magenta")
    if isinstance(event, CommandOutput):
        if event.is_streaming:
            return None
        line = Text(f"$ {event.command}", style="blue")
        if event.exit_code is not None:
            line.append(f" (exit {event.exit_code})", style="dim")
        if event.output:
            line.append("\n" + event.output.rstrip())
        return line
    if isinstance(event, ControlRequest):
        return Text(f"? {event.tool_name} wants approval [{event.request_id}]", style="yellow")
    if isinstance(event, TokenUsage):
        return None
    if isinstance(event, TurnStarted):
        return Text("── turn started", style="dim")
    if isinstance(event, TurnCompleted):
        usage = event.usage
        if usage is None:
            return Text("── turn completed", style="dim")
        return Text(
            f"── turn completed: in={usage.input_tokens} out={usage.output_tokens} "
            f"cached={usage.cached_tokens}",
            style="dim",
        )
    if isinstance(event, Error):
        return Text(
            f"{'FATAL' if event.is_fatal else 'error'}: {event.message}",
            style="bold red" if event.is_fatal else "red",
        )
    if isinstance(event, Raw):
        return None
    return Text(event.event_type, style="dim")


def _print_event(event: UnifiedEvent, prefix: str = "") -> None:
    line = render_event(event)
    if line is None:
        return
    if prefix:
        line = Text(prefix, style="dim") + line
    console.print(line)


# ── run ──


async def _run_once(args, config, agents) -> int:
    from conduit.engine.adapters.registry import build_adapter_registry
    from conduit.engine.models import new_session_id
    from conduit.engine.orchestrator import Orchestrator

    orchestrator = Orchestrator.build(config, build_adapter_registry(agents))
    session_id = new_session_id()
    # Subscribe first so the opening events are not missed.
    subscription = orchestrator.hub.subscribe(session_id)
    exit_code = 0
    try:
        try:
            await orchestrator.start_session(
                args.prompt,
                args.cwd or os.getcwd(),
                session_id=session_id,
                model=args.model,
                images=[os.path.abspath(p) for p in args.image],
                plan_mode=args.plan,
            )
        except (SpawnFailureError, NotSupportedError) as exc:
            err_console.print(f"[bold red]{exc}[/]")
            return 1
        async for event in subscription:
            _print_event(event)
            if is_terminal(event):
                if isinstance(event, Error):
                    exit_code = 1
                break
        await orchestrator.stop_session(session_id)
    finally:
        subscription.close()
        await orchestrator.shutdown()
    return exit_code


# ── serve ──


async def _serve(args, config, agents) -> int:
    from conduit.bridge.server import ConduitRelay
    from conduit.engine.adapters.registry import build_adapter_registry
    from conduit.engine.models import ReproMode
    from conduit.engine.orchestrator import Orchestrator
    from conduit.repro.replayer import Replayer

    orchestrator = Orchestrator.build(config, build_adapter_registry(agents))
    replayer = None
    if config.repro_mode.is_replay:
        replayer = Replayer(
            orchestrator,
            config.tape_path,
            speed=config.replay_speed,
            continue_live=config.repro_mode is ReproMode.REPLAY_THEN_LIVE,
        )
    relay = ConduitRelay(
        orchestrator, host=args.host, port=args.port, cwd=os.getcwd(), replayer=replayer,
    )
    await relay.start()
    return 0


# ── repro ──


def _repro_export(args, config) -> int:
    from conduit.repro.bundle import MODE_FULL, MODE_SHAREABLE, export_bundle

    mode = MODE_SHAREABLE if args.shareable else MODE_FULL
    result = export_bundle(config.data_dir, args.output, mode=mode, workspace=args.workspace)
    console.print(
        f"[green]Exported[/] {result.archive_path} "
        f"(mode={result.meta.mode}, entries={result.meta.tape_entries})"
    )
    for name in result.members:
        console.print(f"  {name}")
    if mode == MODE_SHAREABLE:
        console.print(f"[yellow]Note:[/] {result.meta.note}")
    return 0


def _repro_extract(args) -> int:
    from conduit.repro.bundle import extract_bundle

    result = extract_bundle(args.bundle, args.target, overwrite=args.force)
    console.print(f"[green]Extracted[/] {len(result.files)} files into {result.data_dir}")
    for path in result.files:
        console.print(f"  {path}")
    return 0


async def _repro_run(args, config, agents) -> int:
    from conduit.bridge.server import ConduitRelay
    from conduit.repro.bundle import run_bundle

    watchers: list[asyncio.Task] = []
    speed = args.speed if args.speed is not None else config.replay_speed

    async def _watch(subscription, prefix: str) -> None:
        async for event in subscription:
            _print_event(event, prefix)

    def _on_loaded(orchestrator) -> None:
        sessions = orchestrator.list_sessions()
        multi = len(sessions) > 1
        for session in sessions:
            sub = orchestrator.subscribe(session.session_id)
            prefix = f"[{session.session_id[:8]}] " if multi else ""
            watchers.append(asyncio.create_task(_watch(sub, prefix)))

    async def _serve_live(orchestrator, report) -> None:
        # Live sessions need a control surface once the tape is drained.
        if not report.handed_off:
            return
        console.print(
            f"Replay handed off {len(report.sessions)} session(s) to live; "
            "serving the relay until interrupted"
        )
        relay = ConduitRelay(orchestrator, host=args.host, port=args.port, cwd=os.getcwd())
        await relay.start()

    report = await run_bundle(
        args.source,
        speed=speed,
        continue_live=args.continue_live,
        on_loaded=_on_loaded,
        after_replay=_serve_live,
        agent_configs=agents,
    )
    if watchers:
        await asyncio.gather(*watchers, return_exceptions=True)

    console.print(
        f"Replayed {report.replayed} of {report.total} entries "
        f"across {len(report.sessions)} session(s)"
    )
    if report.corruption is not None:
        err_console.print(f"[bold red]{report.corruption}[/]")
        return 1
    return 0


def _inspect_tape(tape_path: Path, title: str) -> int:
    from conduit.repro.tape import read_tape

    result = read_tape(tape_path)
    table = Table(title=title)
    table.add_column("seq", justify="right")
    table.add_column("at", justify="right")
    table.add_column("session")
    table.add_column("kind")
    table.add_column("type")
    for entry in result.entries:
        if entry.is_input:
            kind_label = entry.payload.get("action", "?")
        else:
            kind_label = entry.payload.get("type", "?")
        table.add_row(
            str(entry.seq), f"{entry.at:.3f}", entry.session_id[:8], entry.kind, kind_label,
        )
    console.print(table)
    if result.header is not None:
        console.print(
            f"schema={result.header.schema_version} started_at={result.header.started_at}"
        )
    console.print(f"recovered {result.recovered} of {result.total} entries")
    if result.is_corrupt:
        err_console.print(
            f"[bold red]corrupt entry at line {result.corrupt_line}: {result.corrupt_reason}[/]"
        )
        return 1
    return 0


def _repro_inspect(args) -> int:
    from conduit.repro.bundle import TAPE_NAME, read_bundle

    source = Path(args.source)
    if source.is_dir():
        return _inspect_tape(source / "repro" / "tape.jsonl", str(source))
    if zipfile.is_zipfile(source):
        meta, members = read_bundle(source)
        console.print(
            f"bundle mode={meta.mode} scrubbed={meta.scrubbed} "
            f"entries={meta.tape_entries} members={', '.join(sorted(members))}"
        )
        if TAPE_NAME not in members:
            console.print("bundle has no tape")
            return 0
        with tempfile.TemporaryDirectory(prefix="conduit-inspect-") as tmp:
            tape_path = Path(tmp) / "tape.jsonl"
            tape_path.write_bytes(members[TAPE_NAME])
            return _inspect_tape(tape_path, str(source))
    return _inspect_tape(source, str(source))


# ── Entry point ──


def _build_parser():
    import argparse

    parser = argparse.ArgumentParser(
        prog="conduit",
        description="Conduit: run coding-agent CLIs as recordable sessions",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file (engine settings, agent overrides)",
    )
    parser.add_argument(
        "--data-dir", metavar="DIR",
        help="Data directory (default: $CONDUIT_DATA_DIR or ~/.conduit)",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true",
        help="Enable debug logging",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run one prompt and print the events")
    run.add_argument("prompt", help="Prompt for the agent")
    run.add_argument("--agent", help="Backend: claude, codex or gemini")
    run.add_argument("--model", help="Model id for the backend")
    run.add_argument("--cwd", help="Working directory (default: current dir)")
    run.add_argument(
        "--image", action="append", default=[], metavar="PATH",
        help="Attach an image to the prompt (repeatable)",
    )
    run.add_argument("--plan", action="store_true", help="Start the backend in plan mode")
    run.add_argument("--record", action="store_true", help="Record the session to the tape")
    run.add_argument(
        "--tool-approval", action="store_true",
        help="Ask before tool calls (backends that support it)",
    )

    serve = sub.add_parser("serve", help="Start the HTTP + SSE relay")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=0, help="Port (0=random available port)")
    serve.add_argument("--agent", help="Default backend")
    serve.add_argument("--record", action="store_true", help="Record sessions to the tape")

    repro = sub.add_parser("repro", help="Repro bundle tools")
    repro_sub = repro.add_subparsers(dest="repro_command", required=True)

    export = repro_sub.add_parser("export", help="Package the data directory as a bundle")
    export.add_argument("output", help="Bundle path to write")
    export.add_argument(
        "--shareable", action="store_true",
        help="Scrub secrets from the tape (storage is copied as-is)",
    )
    export.add_argument(
        "--workspace", metavar="DIR",
        help="Git work tree whose uncommitted diff is included",
    )

    extract = repro_sub.add_parser("extract", help="Unpack a bundle into a data directory")
    extract.add_argument("bundle")
    extract.add_argument("target")
    extract.add_argument("--force", action="store_true", help="Overwrite existing files")

    replay = repro_sub.add_parser("run", help="Replay a bundle or data directory")
    replay.add_argument("source")
    replay.add_argument(
        "--speed", type=float, default=None,
        help="Replay speed factor (0 = no delays; default: engine replay_speed)",
    )
    replay.add_argument(
        "--continue-live", action="store_true",
        help="Hand sessions to the live backends once the tape ends and serve the relay",
    )
    replay.add_argument("--host", default="127.0.0.1", help="Relay host for --continue-live")
    replay.add_argument(
        "--port", type=int, default=0, help="Relay port for --continue-live (0=random)",
    )

    inspect = repro_sub.add_parser("inspect", help="List tape entries")
    inspect.add_argument("source", help="Tape file, data directory or bundle")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        config, agents = _load_config(args)
    except (ConfigError, FileNotFoundError) as exc:
        err_console.print(f"[bold red]{exc}[/]")
        return 2

    log_file = _configure_logging(
        config.log_dir, config.log_level, args.verbose,
        quiet_console=args.command != "serve",
    )
    logger.info(
        "Starting conduit %s data_dir=%s repro_mode=%s log=%s",
        args.command, config.data_dir, config.repro_mode.value, log_file,
    )

    try:
        if args.command == "run":
            return asyncio.run(_run_once(args, config, agents))
        if args.command == "serve":
            return asyncio.run(_serve(args, config, agents))
        if args.repro_command == "export":
            return _repro_export(args, config)
        if args.repro_command == "extract":
            return _repro_extract(args)
        if args.repro_command == "run":
            return asyncio.run(_repro_run(args, config, agents))
        if args.repro_command == "inspect":
            return _repro_inspect(args)
    except KeyboardInterrupt:
        err_console.print("\nInterrupted.")
        return 130
    except (SpawnFailureError, TapeCorruptionError, TapeLockedError, BundleIntegrityError) as exc:
        logger.error("%s", exc)
        err_console.print(f"[bold red]{exc}[/]")
        return 1
    except (ConduitError, FileExistsError, FileNotFoundError, ValueError) as exc:
        err_console.print(f"[red]{exc}[/]")
        return 1
    parser.error(f"unknown command {args.command}")
    return 2


if __name__ == "__main__":
    sys.exit(main())
