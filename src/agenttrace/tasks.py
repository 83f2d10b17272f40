"""Task brackets: subagent splicing, open-task reconciliation and finalization."""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime, timezone

from agenttrace.models import Event, Session, TaskEnd, TaskStart

logger = logging.getLogger(__name__)

SYNTHETIC_CLOSURE_SUMMARY = "[synthetic] task was not closed in the source transcript"
SYNTHETIC_OPENING_TITLE = "[synthetic] task start missing from the source transcript"
ATTR_SYNTHETIC = "synthetic"
ATTR_SUBAGENT_ID = "subagent_id"
ATTR_MERGED_SUBAGENT = "merged_subagent"


def sort_events(events: list[Event]) -> None:
    """Stable in-place sort by timestamp; ties keep discovery order."""
    events.sort(key=lambda e: e.timestamp)


def splice_subagent(
    parent_events: list[Event],
    child: Session,
    task_id: str,
    title: str | None = None,
) -> bool:
    """Append a child transcript to the parent's events inside a task bracket.

    Child events get event ids namespaced as "{task_id}:{event_id}". Untagged
    child events are tagged with task_id; events already inside one of the
    child's own brackets keep it as "{task_id}:{child_task_id}", so those
    brackets nest inside the subagent bracket. The caller re-sorts afterwards.
    Returns False (and changes nothing) when the child has no events.
    """
    if not child.events:
        return False

    child_events = sorted(child.events, key=lambda e: e.timestamp)
    start_ts = child_events[0].timestamp
    end_ts = child_events[-1].timestamp
    duration_ms = max(int((end_ts - start_ts).total_seconds() * 1000), 0)

    bracket_attrs = {
        ATTR_SUBAGENT_ID: task_id,
        ATTR_MERGED_SUBAGENT: True,
        "child_session_id": child.session_id,
        "child_event_count": len(child_events),
    }
    if child.agent.model and child.agent.model != "unknown":
        bracket_attrs["model"] = child.agent.model

    parent_events.append(Event(
        event_id=f"{task_id}-start",
        timestamp=start_ts,
        event_type=TaskStart(title=title or task_id),
        task_id=task_id,
        attributes=dict(bracket_attrs),
    ))

    for event in child_events:
        event.event_id = f"{task_id}:{event.event_id}"
        event.task_id = f"{task_id}:{event.task_id}" if event.task_id else task_id
        event.attributes[ATTR_SUBAGENT_ID] = task_id
        event.attributes[ATTR_MERGED_SUBAGENT] = True
        parent_events.append(event)

    parent_events.append(Event(
        event_id=f"{task_id}-end",
        timestamp=end_ts,
        event_type=TaskEnd(summary=None),
        task_id=task_id,
        duration_ms=duration_ms,
        attributes=dict(bracket_attrs),
    ))
    return True


def reconcile_open_tasks(events: list[Event], created_at: datetime | None = None) -> int:
    """Pair every TaskStart with exactly one TaskEnd.

    Unclosed starts get a synthetic TaskEnd at the last event's timestamp
    (or created_at when there are no events). A TaskEnd with no open start
    gets a synthetic TaskStart just before it. Returns the number of
    synthetic events added. Expects events already sorted.
    """
    open_counts: dict[str | None, int] = defaultdict(int)
    open_order: list[str | None] = []
    reconciled: list[Event] = []
    added = 0

    for event in events:
        et = event.event_type
        if isinstance(et, TaskStart):
            open_counts[event.task_id] += 1
            open_order.append(event.task_id)
        elif isinstance(et, TaskEnd):
            if open_counts[event.task_id] > 0:
                open_counts[event.task_id] -= 1
            else:
                added += 1
                reconciled.append(Event(
                    event_id=f"synthetic-start-{event.task_id}-{added}",
                    timestamp=event.timestamp,
                    event_type=TaskStart(title=SYNTHETIC_OPENING_TITLE),
                    task_id=event.task_id,
                    attributes={ATTR_SYNTHETIC: True},
                ))
        reconciled.append(event)

    if events:
        close_ts = max(e.timestamp for e in events)
    else:
        close_ts = created_at or datetime.now(tz=timezone.utc)

    seen: set[str | None] = set()
    for task_id in open_order:
        if task_id in seen:
            continue
        seen.add(task_id)
        for _ in range(open_counts[task_id]):
            added += 1
            logger.debug("Closing open task %s", task_id)
            reconciled.append(Event(
                event_id=f"synthetic-end-{task_id}-{added}",
                timestamp=close_ts,
                event_type=TaskEnd(summary=SYNTHETIC_CLOSURE_SUMMARY),
                task_id=task_id,
                attributes={ATTR_SYNTHETIC: True},
            ))

    events[:] = reconciled
    return added


def is_synthetic_closure(event: Event) -> bool:
    return (
        isinstance(event.event_type, TaskEnd)
        and event.event_type.summary == SYNTHETIC_CLOSURE_SUMMARY
    )


def finalize_session(session: Session) -> Session:
    """Sort, close open tasks, fill in context timestamps, recompute stats."""
    sort_events(session.events)
    reconcile_open_tasks(session.events, session.context.created_at)
    if session.events:
        if session.context.created_at is None:
            session.context.created_at = session.events[0].timestamp
        if session.context.updated_at is None:
            session.context.updated_at = session.events[-1].timestamp
    session.recompute_stats()
    return session
