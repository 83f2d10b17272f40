"""Tests for the OpenCode session store parser."""

from __future__ import annotations

from pathlib import Path

import pytest

from conftest import write_json

from agenttrace.errors import SourceDecodeError
from agenttrace.models import (
    ATTR_INPUT_TOKENS,
    AgentMessage,
    ShellCommand,
    TaskEnd,
    TaskStart,
    Thinking,
    ToolResult,
    UserMessage,
)
from agenttrace.parsers.opencode import OpenCodeParser, part_timing

T = 1736935200000


@pytest.fixture
def storage(tmp_path):
    return tmp_path / ".local" / "share" / "opencode" / "storage"


def _types(session):
    return [type(e.event_type) for e in session.events]


def _write_new_layout(storage, session_id="ses_1", info=None, messages=()):
    """messages: (message dict, [part dicts]) pairs."""
    info = {"id": session_id, "version": "0.15.0", "title": "Fix tests", "directory": "/work",
            "time": {"created": T, "updated": T + 60000}, **(info or {})}
    path = write_json(storage / "session" / "proj1" / f"{session_id}.json", info)
    for message, parts in messages:
        write_json(storage / "message" / session_id / f"{message['id']}.json", message)
        for part in parts:
            write_json(storage / "part" / message["id"] / f"{part['id']}.json", part)
    return path


def _conversation():
    return [
        ({"id": "msg_1", "role": "user", "time": {"created": T + 1000}},
         [{"id": "prt_1", "type": "text", "text": "Run the tests"}]),
        ({"id": "msg_2", "role": "assistant", "modelID": "claude-sonnet-4", "providerID": "anthropic",
          "time": {"created": T + 2000}, "tokens": {"input": 50, "output": 10}},
         [
             {"id": "prt_2", "type": "reasoning", "text": "Use pytest", "time": {"start": T + 2000, "end": T + 2500}},
             {"id": "prt_3", "type": "tool", "tool": "bash", "callID": "call_1", "state": {
                 "status": "completed", "input": {"command": "pytest"}, "output": "3 passed",
                 "metadata": {"exit": 0}, "time": {"start": T + 3000, "end": T + 4000}}},
             {"id": "prt_4", "type": "text", "text": "All pass.", "time": {"start": T + 5000}},
             {"id": "prt_5", "type": "step-finish"},
         ]),
    ]


def test_can_parse():
    parser = OpenCodeParser()
    assert parser.can_parse(Path("/h/.local/share/opencode/storage/session/proj/ses_1.json"))
    assert parser.can_parse(Path("/h/.local/share/opencode/storage/session/info/ses_1.json"))
    assert not parser.can_parse(Path("/h/.local/share/opencode/storage/message/ses_1/msg_1.json"))


def test_part_timing():
    assert part_timing({"time": {"start": 10, "end": 25}}) == (10, 15)
    assert part_timing({"state": {"time": {"start": 5}}}) == (5, None)
    assert part_timing({}) == (None, None)


# ---------------------------------------------------------------------------
# Newer layout
# ---------------------------------------------------------------------------


class TestNewLayout:
    def test_events(self, storage):
        session = OpenCodeParser().parse(_write_new_layout(storage, messages=_conversation()))
        assert _types(session) == [UserMessage, Thinking, ShellCommand, ToolResult, AgentMessage]
        assert [e.event_id for e in session.events] == ["prt_1", "prt_2", "prt_3-call", "prt_3-result", "prt_4"]
        assert session.events[1].duration_ms == 500

    def test_tool(self, storage):
        session = OpenCodeParser().parse(_write_new_layout(storage, messages=_conversation()))
        call, result = session.events[2], session.events[3]
        assert call.event_type == ShellCommand(command="pytest", exit_code=0)
        assert call.duration_ms == 1000
        assert result.event_type.call_id == "prt_3-call"
        assert result.event_type.is_error is False
        assert result.content.plain_text() == "3 passed"

    def test_tokens_on_agent_text(self, storage):
        session = OpenCodeParser().parse(_write_new_layout(storage, messages=_conversation()))
        assert session.events[4].attributes[ATTR_INPUT_TOKENS] == 50
        assert session.stats.total_output_tokens == 10

    def test_header(self, storage):
        session = OpenCodeParser().parse(_write_new_layout(storage, messages=_conversation()))
        assert session.session_id == "ses_1"
        assert session.agent.provider == "anthropic"
        assert session.agent.model == "claude-sonnet-4"
        assert session.agent.tool_version == "0.15.0"
        assert session.context.title == "Fix tests"
        assert session.context.attributes["cwd"] == "/work"
        assert session.context.updated_at.timestamp() * 1000 == T + 60000

    def test_failed_tool(self, storage):
        messages = [({"id": "msg_1", "role": "assistant", "time": {"created": T}}, [
            {"id": "prt_1", "type": "tool", "tool": "read", "state": {
                "status": "error", "input": {"filePath": "/x.py"}, "error": "not found"}},
        ])]
        session = OpenCodeParser().parse(_write_new_layout(storage, messages=messages))
        result = session.events[1]
        assert result.event_type.is_error is True
        assert result.content.plain_text() == "not found"

    def test_running_tool_has_no_result(self, storage):
        messages = [({"id": "msg_1", "role": "assistant", "time": {"created": T}}, [
            {"id": "prt_1", "type": "tool", "tool": "bash", "state": {"status": "running", "input": {"command": "sleep 9"}}},
        ])]
        session = OpenCodeParser().parse(_write_new_layout(storage, messages=messages))
        assert _types(session) == [ShellCommand]

    def test_title_from_first_user_text(self, storage):
        path = _write_new_layout(storage, info={"title": None}, messages=_conversation())
        assert OpenCodeParser().parse(path).context.title == "Run the tests"

    def test_missing_id(self, storage):
        path = write_json(storage / "session" / "proj1" / "bad.json", {"title": "no id"})
        with pytest.raises(SourceDecodeError):
            OpenCodeParser().parse(path)


# ---------------------------------------------------------------------------
# Older layout
# ---------------------------------------------------------------------------


def test_old_layout(storage):
    path = write_json(storage / "session" / "info" / "ses_2.json", {"id": "ses_2", "time": {"created": T}})
    write_json(storage / "session" / "message" / "ses_2" / "msg_a.json",
               {"id": "msg_a", "role": "user", "time": {"created": T + 1000}})
    write_json(storage / "session" / "part" / "ses_2" / "msg_a" / "prt_a.json",
               {"id": "prt_a", "type": "text", "text": "hello"})
    session = OpenCodeParser().parse(path)
    assert _types(session) == [UserMessage]
    assert session.events[0].content.plain_text() == "hello"


# ---------------------------------------------------------------------------
# Subagent sessions
# ---------------------------------------------------------------------------


class TestChildren:
    def _write(self, storage):
        parent = _write_new_layout(storage, messages=_conversation()[:1])
        _write_new_layout(
            storage, session_id="ses_child",
            info={"parentID": "ses_1", "title": "Explore subagent"},
            messages=[({"id": "msg_c", "role": "assistant", "time": {"created": T + 7000}},
                       [{"id": "prt_c", "type": "text", "text": "explored", "time": {"start": T + 8000}}])],
        )
        return parent

    def test_merged(self, storage):
        session = OpenCodeParser().parse(self._write(storage))
        assert _types(session) == [UserMessage, TaskStart, AgentMessage, TaskEnd]
        assert session.events[1].event_type.title == "Explore subagent"
        assert session.events[2].task_id == "subagent-ses_child"
        assert session.context.related_session_ids == ["ses_child"]

    def test_child_alone_is_auxiliary(self, storage):
        self._write(storage)
        child = storage / "session" / "proj1" / "ses_child.json"
        session = OpenCodeParser().parse(child)
        assert session.context.attributes["session_role"] == "auxiliary"
        assert session.context.attributes["parent_session_id"] == "ses_1"
