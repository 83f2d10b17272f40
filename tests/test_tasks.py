"""Tests for task bracket splicing and reconciliation."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from agenttrace.models import Agent, AgentMessage, Content, Event, Session, TaskEnd, TaskStart, UserMessage
from agenttrace.tasks import (
    SYNTHETIC_CLOSURE_SUMMARY,
    finalize_session,
    is_synthetic_closure,
    reconcile_open_tasks,
    splice_subagent,
)

T0 = datetime(2025, 1, 15, 10, 0, 0, tzinfo=timezone.utc)


def _at(seconds):
    return T0 + timedelta(seconds=seconds)


def _child(events, model="claude-haiku"):
    return Session(session_id="child-1", agent=Agent("anthropic", model, "claude-code"), events=events)


# ---------------------------------------------------------------------------
# splice_subagent
# ---------------------------------------------------------------------------


class TestSpliceSubagent:
    def test_brackets_and_namespacing(self):
        parent = [Event("p1", _at(0), UserMessage())]
        child = _child([
            Event("c2", _at(7), AgentMessage()),
            Event("c1", _at(5), UserMessage()),
        ])
        assert splice_subagent(parent, child, "agent-x", "explore")

        start, first, second, end = parent[1:]
        assert isinstance(start.event_type, TaskStart)
        assert start.event_type.title == "explore"
        assert start.event_id == "agent-x-start"
        assert start.timestamp == _at(5)
        assert [first.event_id, second.event_id] == ["agent-x:c1", "agent-x:c2"]
        assert all(e.task_id == "agent-x" for e in (start, first, second, end))
        assert isinstance(end.event_type, TaskEnd)
        assert end.event_id == "agent-x-end"
        assert end.duration_ms == 2000
        assert end.attributes["model"] == "claude-haiku"
        assert first.attributes["merged_subagent"] is True

    def test_child_brackets_keep_their_own_task_id(self):
        parent = [Event("p1", _at(0), UserMessage())]
        child = _child([
            Event("s", _at(5), TaskStart("turn"), task_id="t1"),
            Event("m", _at(6), AgentMessage(), task_id="t1"),
            Event("e", _at(7), TaskEnd("done"), task_id="t1"),
            Event("x", _at(8), AgentMessage()),
        ])
        splice_subagent(parent, child, "agent-x")

        assert [e.task_id for e in parent[1:]] == [
            "agent-x", "agent-x:t1", "agent-x:t1", "agent-x:t1", "agent-x", "agent-x",
        ]
        starts = [e.task_id for e in parent if isinstance(e.event_type, TaskStart)]
        ends = [e.task_id for e in parent if isinstance(e.event_type, TaskEnd)]
        assert starts == ["agent-x", "agent-x:t1"]
        assert sorted(ends) == sorted(starts)

    def test_empty_child_changes_nothing(self):
        parent = [Event("p1", _at(0), UserMessage())]
        assert not splice_subagent(parent, _child([]), "agent-x")
        assert len(parent) == 1

    def test_title_defaults_to_task_id(self):
        parent: list[Event] = []
        splice_subagent(parent, _child([Event("c1", _at(1), UserMessage())]), "agent-y")
        assert parent[0].event_type.title == "agent-y"


# ---------------------------------------------------------------------------
# reconcile_open_tasks
# ---------------------------------------------------------------------------


class TestReconcileOpenTasks:
    def test_unclosed_start_gets_synthetic_end(self):
        events = [
            Event("s", _at(0), TaskStart("work"), task_id="t1"),
            Event("m", _at(4), AgentMessage(), task_id="t1"),
        ]
        assert reconcile_open_tasks(events) == 1
        end = events[-1]
        assert isinstance(end.event_type, TaskEnd)
        assert end.event_type.summary == SYNTHETIC_CLOSURE_SUMMARY
        assert end.task_id == "t1"
        assert end.timestamp == _at(4)
        assert is_synthetic_closure(end)

    def test_orphan_end_gets_synthetic_start(self):
        events = [Event("e", _at(3), TaskEnd("done"), task_id="t1")]
        assert reconcile_open_tasks(events) == 1
        start, end = events
        assert isinstance(start.event_type, TaskStart)
        assert start.task_id == "t1"
        assert start.attributes["synthetic"] is True
        assert end.event_id == "e"

    def test_balanced_pairs_untouched(self):
        events = [
            Event("s", _at(0), TaskStart(), task_id="t1"),
            Event("e", _at(1), TaskEnd(), task_id="t1"),
        ]
        assert reconcile_open_tasks(events) == 0
        assert len(events) == 2
        assert not is_synthetic_closure(events[1])

    def test_nested_starts_each_closed(self):
        events = [
            Event("s1", _at(0), TaskStart(), task_id="t1"),
            Event("s2", _at(1), TaskStart(), task_id="t2"),
        ]
        assert reconcile_open_tasks(events) == 2
        assert [e.task_id for e in events[2:]] == ["t1", "t2"]


# ---------------------------------------------------------------------------
# finalize_session
# ---------------------------------------------------------------------------


def test_finalize_session_sorts_and_fills_context():
    session = Session(
        session_id="s",
        agent=Agent("openai", "gpt-5", "codex"),
        events=[
            Event("b", _at(9), AgentMessage(), content=Content.text("hi")),
            Event("a", _at(2), UserMessage(), content=Content.text("hello")),
            Event("t", _at(5), TaskStart(), task_id="turn-1"),
        ],
    )
    finalize_session(session)
    assert [e.event_id for e in session.events][:3] == ["a", "t", "b"]
    assert is_synthetic_closure(session.events[-1])
    assert session.context.created_at == _at(2)
    assert session.context.updated_at == _at(9)
    assert session.stats.message_count == 2
    assert session.stats.task_count == 1
