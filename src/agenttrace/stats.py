"""Stats fold. Derives Session.stats from its events.

compute_stats() is a pure function of the event list, so calling it twice on
the same events always gives the same Stats.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable

from agenttrace.models import (
    ATTR_INPUT_TOKENS,
    ATTR_OUTPUT_TOKENS,
    AgentMessage,
    CodeSearch,
    Event,
    FileCreate,
    FileDelete,
    FileEdit,
    FileRead,
    FileSearch,
    Session,
    Stats,
    ToolCall,
    UserMessage,
)

_TOOL_CALL_TYPES = (ToolCall, FileRead, CodeSearch, FileSearch)


def compute_stats(events: list[Event]) -> Stats:
    stats = Stats(event_count=len(events))
    task_ids: set[str] = set()
    changed_paths: set[str] = set()

    for event in events:
        et = event.event_type
        if isinstance(et, UserMessage):
            stats.message_count += 1
            stats.user_message_count += 1
        elif isinstance(et, AgentMessage):
            stats.message_count += 1
        elif isinstance(et, _TOOL_CALL_TYPES):
            stats.tool_call_count += 1
        elif isinstance(et, FileEdit):
            changed_paths.add(et.path)
            if et.diff:
                added, removed = count_diff_lines(et.diff)
                stats.lines_added += added
                stats.lines_removed += removed
        elif isinstance(et, (FileCreate, FileDelete)):
            changed_paths.add(et.path)

        if event.task_id:
            task_ids.add(event.task_id)

        stats.total_input_tokens += _token_attr(event, ATTR_INPUT_TOKENS)
        stats.total_output_tokens += _token_attr(event, ATTR_OUTPUT_TOKENS)

    stats.task_count = len(task_ids)
    stats.files_changed = len(changed_paths)

    if events:
        first = min(e.timestamp for e in events)
        last = max(e.timestamp for e in events)
        stats.duration_seconds = max(int((last - first).total_seconds()), 0)

    return stats


def count_diff_lines(diff: str) -> tuple[int, int]:
    """Count added and removed lines in a unified diff, ignoring file headers."""
    added = 0
    removed = 0
    for line in diff.splitlines():
        if line.startswith("+++") or line.startswith("---"):
            continue
        if line.startswith("+"):
            added += 1
        elif line.startswith("-"):
            removed += 1
    return added, removed


def _token_attr(event: Event, key: str) -> int:
    value = event.attributes.get(key)
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return max(value, 0)
    if isinstance(value, float):
        return max(int(value), 0)
    return 0


# ---------------------------------------------------------------------------
# Cross-session aggregation
# ---------------------------------------------------------------------------


def aggregate_stats(sessions: Iterable[Session]) -> Stats:
    """Sum the stats of several sessions into one Stats value."""
    total = Stats()
    for session in sessions:
        for name, value in session.stats.__dict__.items():
            setattr(total, name, getattr(total, name) + value)
    return total


def aggregate_by_tool(sessions: Iterable[Session]) -> dict[str, tuple[int, Stats]]:
    """Group sessions by agent tool. Returns {tool: (session_count, summed stats)}."""
    grouped: dict[str, list[Session]] = defaultdict(list)
    for session in sessions:
        grouped[session.agent.tool].append(session)
    return {
        tool: (len(items), aggregate_stats(items))
        for tool, items in sorted(grouped.items())
    }
