"""Tests for the Claude Code JSONL parser."""

from __future__ import annotations

from pathlib import Path

import pytest

from conftest import write_jsonl

from agenttrace.errors import SourceReadError
from agenttrace.models import (
    ATTR_INPUT_TOKENS,
    ATTR_OUTPUT_TOKENS,
    AgentMessage,
    CodeBlock,
    FileEdit,
    FileRead,
    ShellCommand,
    SystemMessage,
    TaskEnd,
    TaskStart,
    Thinking,
    ToolCall,
    ToolResult,
    UserMessage,
)
from agenttrace.parsers.base import ParserSettings
from agenttrace.parsers.claude_code import ClaudeCodeParser, classify_tool_use

SESSION_ID = "sess-1"


def _user(uuid, ts, content, **extra):
    record = {
        "type": "user",
        "sessionId": SESSION_ID,
        "uuid": uuid,
        "timestamp": ts,
        "cwd": "/home/user/proj",
        "version": "2.0.1",
        "gitBranch": "main",
        "message": {"role": "user", "content": content},
    }
    record.update(extra)
    return record


def _assistant(uuid, ts, content, message_id="msg_1", usage=None, session_id=SESSION_ID):
    message = {"id": message_id, "model": "claude-sonnet-4", "role": "assistant", "content": content}
    if usage:
        message["usage"] = usage
    return {"type": "assistant", "sessionId": session_id, "uuid": uuid, "timestamp": ts, "message": message}


def _types(session):
    return [type(e.event_type) for e in session.events]


# ---------------------------------------------------------------------------
# can_parse
# ---------------------------------------------------------------------------


class TestCanParse:
    @pytest.mark.parametrize("path,expected", [
        ("/home/u/.claude/projects/-home-u-proj/abc.jsonl", True),
        ("/home/u/.claude/projects/-home-u-proj/abc/subagents/agent-1.jsonl", False),
        ("/home/u/.claude/projects/-home-u-proj/agent-1.jsonl", False),
        ("/home/u/.claude/projects/-home-u-proj/abc.json", False),
        ("/home/u/.codex/sessions/2025/01/15/rollout.jsonl", False),
    ])
    def test_paths(self, path, expected):
        assert ClaudeCodeParser().can_parse(Path(path)) is expected


# ---------------------------------------------------------------------------
# Basic conversation
# ---------------------------------------------------------------------------


class TestConversation:
    def _write(self, claude_project):
        return write_jsonl(claude_project / f"{SESSION_ID}.jsonl", [
            {"type": "file-history-snapshot", "messageId": "x", "snapshot": {}},
            _user("u1", "2025-01-15T10:00:00Z", "Fix the bug"),
            _assistant("a1", "2025-01-15T10:00:02Z", [
                {"type": "thinking", "thinking": "Let me look."},
                {"type": "text", "text": "Looking now."},
                {"type": "tool_use", "id": "toolu_1", "name": "Bash", "input": {"command": "ls"}},
            ], usage={"input_tokens": 100, "output_tokens": 20}),
            _user("u2", "2025-01-15T10:00:03Z", [
                {"type": "tool_result", "tool_use_id": "toolu_1", "content": "a.py\nb.py"},
            ], toolUseResult={"durationMs": 42}),
            _assistant("a2", "2025-01-15T10:00:05Z", [{"type": "text", "text": "Done."}], message_id="msg_2"),
        ])

    def test_events(self, claude_project):
        session = ClaudeCodeParser().parse(self._write(claude_project))
        assert _types(session) == [UserMessage, Thinking, AgentMessage, ShellCommand, ToolResult, AgentMessage]
        assert [e.event_id for e in session.events] == [
            "u1", "a1-thinking", "a1-text", "toolu_1", "u2-result-toolu_1", "a2-text",
        ]

    def test_header(self, claude_project):
        session = ClaudeCodeParser().parse(self._write(claude_project))
        assert session.session_id == SESSION_ID
        assert session.agent.provider == "anthropic"
        assert session.agent.model == "claude-sonnet-4"
        assert session.agent.tool == "claude-code"
        assert session.agent.tool_version == "2.0.1"
        assert session.context.title == "Fix the bug"
        assert session.context.attributes["cwd"] == "/home/user/proj"
        assert session.context.attributes["git_branch"] == "main"
        assert session.context.attributes["session_role"] == "primary"

    def test_tool_correlation(self, claude_project):
        session = ClaudeCodeParser().parse(self._write(claude_project))
        call = session.events[3]
        result = session.events[4]
        assert call.event_type.command == "ls"
        assert result.event_type.name == "Bash"
        assert result.event_type.call_id == call.event_id
        assert result.event_type.is_error is False
        assert result.duration_ms == 42
        assert result.content.plain_text() == "a.py\nb.py"

    def test_tokens_on_first_agent_message(self, claude_project):
        session = ClaudeCodeParser().parse(self._write(claude_project))
        text = session.events[2]
        assert text.attributes[ATTR_INPUT_TOKENS] == 100
        assert text.attributes[ATTR_OUTPUT_TOKENS] == 20
        assert ATTR_INPUT_TOKENS not in session.events[3].attributes

    def test_stats(self, claude_project):
        stats = ClaudeCodeParser().parse(self._write(claude_project)).stats
        assert stats.event_count == 6
        assert stats.message_count == 3
        assert stats.user_message_count == 1
        assert stats.tool_call_count == 0
        assert stats.total_input_tokens == 100
        assert stats.duration_seconds == 5


# ---------------------------------------------------------------------------
# Noise tolerance
# ---------------------------------------------------------------------------


class TestMalformedInput:
    def test_bad_lines_skipped(self, claude_project):
        path = write_jsonl(claude_project / "s.jsonl", [
            _user("u1", "2025-01-15T10:00:00Z", "hello"),
            "{not valid json",
            "[1, 2, 3]",
            {"type": "mystery-entry", "timestamp": "2025-01-15T10:00:01Z"},
            _user("u2", "not-a-timestamp", "lost"),
            _assistant("a1", "2025-01-15T10:00:02Z", [{"type": "text", "text": "hi"}]),
            '{"type": "assistant", "timestamp": "2025-01-15T10:00:0',
        ])
        session = ClaudeCodeParser().parse(path)
        assert [e.event_id for e in session.events] == ["u1", "a1-text"]

    def test_missing_file(self, claude_project):
        with pytest.raises(SourceReadError):
            ClaudeCodeParser().parse(claude_project / "missing.jsonl")

    def test_empty_file(self, claude_project):
        path = claude_project / "empty.jsonl"
        path.write_text("")
        session = ClaudeCodeParser().parse(path)
        assert session.session_id == "empty"
        assert session.events == []
        assert session.stats.event_count == 0


# ---------------------------------------------------------------------------
# Entry kinds
# ---------------------------------------------------------------------------


class TestEntryKinds:
    def test_meta_and_continuation_are_system(self, claude_project):
        path = write_jsonl(claude_project / "s.jsonl", [
            _user("u1", "2025-01-15T10:00:00Z", "<command-name>/clear</command-name>", isMeta=True),
            _user("u2", "2025-01-15T10:00:01Z", "This session is being continued from a previous one."),
            _user("u3", "2025-01-15T10:00:02Z", "Real question"),
        ])
        session = ClaudeCodeParser().parse(path)
        assert _types(session) == [SystemMessage, SystemMessage, UserMessage]
        assert session.context.title == "Real question"

    def test_system_reminders_stripped(self, claude_project):
        path = write_jsonl(claude_project / "s.jsonl", [
            _user("u1", "2025-01-15T10:00:00Z", [
                {"type": "text", "text": "Do it<system-reminder>ignore</system-reminder>"},
                {"type": "text", "text": "<system-reminder>only this</system-reminder>"},
            ]),
        ])
        session = ClaudeCodeParser().parse(path)
        assert len(session.events) == 1
        assert session.events[0].event_id == "u1-text"
        assert session.events[0].content.plain_text() == "Do it"

    def test_custom_title_and_summary(self, claude_project):
        path = write_jsonl(claude_project / "s.jsonl", [
            {"type": "summary", "summary": "Bug fix session", "leafUuid": "leaf-1"},
            _user("u1", "2025-01-15T10:00:00Z", "hello"),
            {"type": "custom-title", "customTitle": "My title", "sessionId": SESSION_ID},
        ])
        session = ClaudeCodeParser().parse(path)
        assert session.context.title == "My title"
        assert session.context.description == "Bug fix session"

    def test_bookkeeping_entries(self, claude_project):
        path = write_jsonl(claude_project / "s.jsonl", [
            _user("u1", "2025-01-15T10:00:00Z", "hello"),
            {"type": "system", "uuid": "sys-1", "timestamp": "2025-01-15T10:00:01Z",
             "subtype": "compact_boundary", "content": "Conversation compacted"},
            {"type": "progress", "uuid": "p-1", "timestamp": "2025-01-15T10:00:02Z",
             "data": {"type": "hook_progress", "hookEvent": "PreToolUse", "hookName": "lint"}},
            {"type": "queue-operation", "operation": "enqueue", "timestamp": "2025-01-15T10:00:03Z",
             "content": "next thing"},
        ])
        session = ClaudeCodeParser().parse(path)
        texts = [e.content.plain_text() for e in session.events[1:]]
        assert texts == [
            "Conversation compacted",
            "Hook progress: PreToolUse (lint)",
            "Queued input: next thing",
        ]
        assert session.events[1].attributes["system.subtype"] == "compact_boundary"
        assert all(isinstance(e.event_type, SystemMessage) for e in session.events[1:])

    def test_streamed_usage_keeps_max(self, claude_project):
        usage1 = {"input_tokens": 100, "output_tokens": 5}
        usage2 = {"input_tokens": 100, "output_tokens": 30}
        path = write_jsonl(claude_project / "s.jsonl", [
            _assistant("a1", "2025-01-15T10:00:00Z", [{"type": "text", "text": "part one"}], usage=usage1),
            _assistant("a2", "2025-01-15T10:00:01Z", [
                {"type": "tool_use", "id": "toolu_9", "name": "TodoWrite", "input": {"todos": []}},
            ], usage=usage2),
        ])
        session = ClaudeCodeParser().parse(path)
        assert session.stats.total_input_tokens == 100
        assert session.stats.total_output_tokens == 30
        assert session.events[0].attributes[ATTR_OUTPUT_TOKENS] == 30

    def test_duplicate_ids_get_suffix(self, claude_project):
        path = write_jsonl(claude_project / "s.jsonl", [
            _assistant("a1", "2025-01-15T10:00:00Z", [
                {"type": "text", "text": "one"},
                {"type": "text", "text": "two"},
            ]),
        ])
        session = ClaudeCodeParser().parse(path)
        assert [e.event_id for e in session.events] == ["a1-text", "a1-text-2"]

    def test_read_result_is_code(self, claude_project):
        path = write_jsonl(claude_project / "s.jsonl", [
            _assistant("a1", "2025-01-15T10:00:00Z", [
                {"type": "tool_use", "id": "toolu_r", "name": "Read", "input": {"file_path": "/src/app.py"}},
            ]),
            _user("u1", "2025-01-15T10:00:01Z", [
                {"type": "tool_result", "tool_use_id": "toolu_r",
                 "content": [{"type": "text", "text": "     1→import os\n     2→print(os.name)"}]},
            ]),
        ])
        session = ClaudeCodeParser().parse(path)
        assert isinstance(session.events[0].event_type, FileRead)
        block = session.events[1].content.blocks[0]
        assert isinstance(block, CodeBlock)
        assert block.language == "python"

    def test_unknown_tool_use_id(self, claude_project):
        path = write_jsonl(claude_project / "s.jsonl", [
            _user("u1", "2025-01-15T10:00:00Z", [
                {"type": "tool_result", "tool_use_id": "toolu_gone", "content": "x", "is_error": True},
            ]),
        ])
        result = ClaudeCodeParser().parse(path).events[0].event_type
        assert result.name == "unknown"
        assert result.call_id is None
        assert result.is_error is True


class TestClassifyToolUse:
    def test_edit_has_diff(self):
        event_type = classify_tool_use("Edit", {"file_path": "a.py", "old_string": "x = 1", "new_string": "x = 2"})
        assert isinstance(event_type, FileEdit)
        assert "-x = 1" in event_type.diff
        assert "+x = 2" in event_type.diff

    def test_unknown_tool(self):
        assert classify_tool_use("TodoWrite", {}) == ToolCall(name="TodoWrite")


# ---------------------------------------------------------------------------
# Subagents
# ---------------------------------------------------------------------------


class TestSubagentMerge:
    def _write(self, claude_project):
        parent = write_jsonl(claude_project / f"{SESSION_ID}.jsonl", [
            _user("u1", "2025-01-15T10:00:00Z", "Explore the repo"),
        ])
        child = {**_assistant("c1", "2025-01-15T10:00:05Z", [{"type": "text", "text": "Found it."}]),
                 "agentId": "abc", "slug": "explore-repo"}
        write_jsonl(claude_project / SESSION_ID / "subagents" / "agent-abc.jsonl", [child])
        return parent

    def test_merged_inside_task_bracket(self, claude_project):
        session = ClaudeCodeParser().parse(self._write(claude_project))
        assert _types(session) == [UserMessage, TaskStart, AgentMessage, TaskEnd]
        assert session.stats.event_count == 4
        assert session.stats.message_count == 2
        assert session.stats.task_count == 1

        start, child, end = session.events[1:]
        assert start.event_type.title == "explore-repo"
        assert child.event_id == "abc:c1-text"
        assert {start.task_id, child.task_id, end.task_id} == {"abc"}
        assert end.event_type.summary is None

    def test_merge_disabled(self, claude_project):
        parser = ClaudeCodeParser(ParserSettings(merge_subagents=False))
        session = parser.parse(self._write(claude_project))
        assert _types(session) == [UserMessage]

    def test_broken_child_is_skipped(self, claude_project):
        path = self._write(claude_project)
        broken = claude_project / SESSION_ID / "subagents" / "agent-broken.jsonl"
        broken.write_text("{not json\n")
        session = ClaudeCodeParser().parse(path)
        assert session.stats.task_count == 1

    def test_sibling_needs_backlink(self, claude_project):
        path = self._write(claude_project)
        write_jsonl(claude_project / "agent-other.jsonl", [
            _assistant("o1", "2025-01-15T10:00:09Z", [{"type": "text", "text": "unrelated"}], session_id="other"),
        ])
        session = ClaudeCodeParser().parse(path)
        assert session.stats.task_count == 1

    def test_standalone_child_is_auxiliary(self, claude_project):
        path = write_jsonl(claude_project / "child.jsonl", [
            {**_assistant("c1", "2025-01-15T10:00:05Z", [{"type": "text", "text": "hi"}]),
             "parentSessionId": "sess-0"},
        ])
        session = ClaudeCodeParser(ParserSettings(merge_subagents=False)).parse(path)
        assert session.context.attributes["session_role"] == "auxiliary"
        assert session.context.attributes["parent_session_id"] == "sess-0"
        assert session.context.related_session_ids == ["sess-0"]

    def test_message_parent_is_not_a_session_parent(self, claude_project):
        path = write_jsonl(claude_project / f"{SESSION_ID}.jsonl", [
            _user("u1", "2025-01-15T10:00:00Z", "Continue", parentUuid="m-prev"),
        ])
        session = ClaudeCodeParser(ParserSettings(merge_subagents=False)).parse(path)
        assert session.context.attributes["session_role"] == "primary"
        assert "parent_session_id" not in session.context.attributes
        assert session.context.related_session_ids == []
