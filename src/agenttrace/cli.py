"""CLI entrypoint: agenttrace parse, formats, discover, stats, config."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import click

from agenttrace.config import DEFAULTS, coerce_value, load_config, save_config_value
from agenttrace.discover import discover_sessions
from agenttrace.errors import FormatError
from agenttrace.models import Session, Stats
from agenttrace.registry import default_registry
from agenttrace.stats import aggregate_by_tool, aggregate_stats

logger = logging.getLogger(__name__)


def _format_duration(seconds: int) -> str:
    if seconds < 60:
        return f"{seconds}s"
    minutes, secs = divmod(seconds, 60)
    if minutes < 60:
        return f"{minutes}m {secs}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes}m"


def _stats_line(stats: Stats) -> str:
    return (
        f"{stats.message_count} messages ({stats.user_message_count} from user), "
        f"{stats.tool_call_count} tool calls, {stats.task_count} tasks, "
        f"{stats.files_changed} files changed (+{stats.lines_added}/-{stats.lines_removed}), "
        f"tokens in/out {stats.total_input_tokens}/{stats.total_output_tokens}"
    )


def _event_line(event) -> str:
    label = event.event_type.kind
    detail = getattr(event.event_type, "name", None) or getattr(event.event_type, "path", None) \
        or getattr(event.event_type, "command", None)
    text = event.content.plain_text().replace("\n", " ")
    if len(text) > 60:
        text = text[:57] + "..."
    task = f" [{event.task_id}]" if event.task_id else ""
    head = f"{label}({detail})" if detail else label
    return f"{event.timestamp.isoformat()} {head}{task} {text}".rstrip()


def _print_session(session: Session, show_events: bool) -> None:
    ctx = session.context
    click.echo(f"{session.session_id} ({session.agent.tool}, {session.agent.provider}/{session.agent.model})")
    if ctx.title:
        click.echo(f"  title: {ctx.title}")
    if ctx.created_at:
        click.echo(
            f"  {ctx.created_at.isoformat()} .. "
            f"{ctx.updated_at.isoformat() if ctx.updated_at else '?'} "
            f"({_format_duration(session.stats.duration_seconds)})"
        )
    click.echo(f"  {session.stats.event_count} events: {_stats_line(session.stats)}")
    if ctx.related_session_ids:
        click.echo(f"  merged subagents: {', '.join(ctx.related_session_ids)}")
    if show_events:
        click.echo("")
        for event in session.events:
            click.echo(f"  {_event_line(event)}")


@click.group()
@click.option("--config", "config_path", type=click.Path(path_type=Path), default=None,
              help="Config file (default: ~/.config/agenttrace/config.yaml).")
@click.option("--verbose", "-v", is_flag=True, help="Log parser decisions at debug level.")
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None, verbose: bool):
    """agenttrace: normalize AI coding-agent transcripts."""
    config = load_config(config_path)
    level = logging.DEBUG if verbose else getattr(logging, config.log_level, logging.WARNING)
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")
    ctx.obj = {"config": config, "config_path": config_path}


@cli.command()
@click.argument("path", type=click.Path(exists=True, path_type=Path))
@click.option("--json", "as_json", is_flag=True, help="Print the full session as JSON.")
@click.option("--events", is_flag=True, help="List every event after the summary.")
@click.pass_obj
def parse(obj: dict, path: Path, as_json: bool, events: bool):
    """Parse a single transcript file."""
    config = obj["config"]
    registry = default_registry(config.parser_settings())
    try:
        session = registry.parse(path)
    except FormatError as exc:
        click.echo(f"Error: {exc}", err=True)
        raise SystemExit(1)

    if as_json:
        click.echo(json.dumps(session.to_dict(), indent=2, ensure_ascii=False))
        return
    _print_session(session, events)


@cli.command()
def formats():
    """List the supported transcript formats."""
    for parser in default_registry().parsers:
        click.echo(parser.name)


@cli.command()
@click.option("--home", type=click.Path(file_okay=False, path_type=Path), default=None,
              help="Home directory to search (default: home_dir from config).")
@click.pass_obj
def discover(obj: dict, home: Path | None):
    """List transcripts found in each tool's default location."""
    root = home or obj["config"].home_dir
    found = list(discover_sessions(root))
    if not found:
        click.echo(f"No transcripts found under {root}")
        return

    by_tool: dict[str, list[Path]] = {}
    for tool, path in found:
        by_tool.setdefault(tool, []).append(path)
    for tool, paths in by_tool.items():
        click.echo(f"[{tool}] {len(paths)} transcript(s)")
        for path in paths:
            click.echo(f"  {path}")
    click.echo(f"\nTotal: {len(by_tool)} tool(s), {len(found)} transcript(s).")


@cli.command()
@click.option("--home", type=click.Path(file_okay=False, path_type=Path), default=None,
              help="Home directory to search (default: home_dir from config).")
@click.option("--tool", default=None, help="Only include transcripts from this tool.")
@click.pass_obj
def stats(obj: dict, home: Path | None, tool: str | None):
    """Parse every discovered transcript and print aggregate statistics."""
    config = obj["config"]
    root = home or config.home_dir
    paths = [p for t, p in discover_sessions(root) if tool is None or t == tool]
    if not paths:
        click.echo("No transcripts found.")
        return

    registry = default_registry(config.parser_settings())
    outcomes = registry.parse_many(paths, max_workers=config.max_workers)
    sessions = [o.session for o in outcomes if o.ok]
    failed = [o for o in outcomes if not o.ok]

    total = aggregate_stats(sessions)
    click.echo(
        f"{len(sessions)} sessions, {total.event_count} events. "
        f"Total time: {_format_duration(total.duration_seconds)}."
    )
    click.echo(f"  {_stats_line(total)}")

    click.echo("\nBy tool:")
    for tool_name, (count, tool_stats) in sorted(aggregate_by_tool(sessions).items()):
        click.echo(f"  {tool_name}: {count} sessions, {_stats_line(tool_stats)}")

    if failed:
        click.echo(f"\nSkipped {len(failed)} unreadable transcript(s).")
        for outcome in failed:
            logger.info("%s", outcome.error)


@cli.group()
def config():
    """Read or change configuration."""
    pass


@config.command("set")
@click.argument("key", type=click.Choice(sorted(DEFAULTS)))
@click.argument("value")
@click.pass_obj
def config_set(obj: dict, key: str, value: str):
    """Persist one configuration key."""
    try:
        typed = coerce_value(key, value)
    except ValueError as exc:
        click.echo(f"Error: {exc}", err=True)
        raise SystemExit(1)
    save_config_value(key, typed, obj["config_path"])
    click.echo(f"Set {key} = {typed}")
