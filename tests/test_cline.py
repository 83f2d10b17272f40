"""Tests for the Cline task directory parser."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import pytest

from conftest import write_json

from agenttrace.errors import SourceDecodeError
from agenttrace.models import (
    AgentMessage,
    FileCreate,
    FileEdit,
    ShellCommand,
    ToolResult,
    UserMessage,
)
from agenttrace.parsers.cline import ClineParser, classify_cline_tool, parse_tool_result_text

TASK_ID = "1736935200000"


@pytest.fixture
def task_dir(tmp_path):
    return tmp_path / ".cline" / "data" / "tasks" / TASK_ID


def _types(session):
    return [type(e.event_type) for e in session.events]


def _history():
    return [
        {"role": "user", "content": [
            {"type": "text", "text": "<task>\nAdd a README\n</task>"},
            {"type": "text", "text": "<environment_details>\n# Current Time\n</environment_details>"},
        ]},
        {"role": "assistant", "content": [
            {"type": "text", "text": "I'll write it."},
            {"type": "tool_use", "id": "toolu_1", "name": "write_to_file",
             "input": {"path": "README.md", "content": "# Hi"}},
        ]},
        {"role": "user", "content": [
            {"type": "tool_result", "tool_use_id": "toolu_1", "content": [{"type": "text", "text": "File saved."}]},
        ]},
        {"role": "assistant", "content": [
            {"type": "tool_use", "id": "toolu_2", "name": "execute_command", "input": {"command": "ls"}},
        ]},
        {"role": "user", "content": [
            {"type": "text", "text": "[execute_command for 'ls'] Result:\nREADME.md"},
        ]},
        {"role": "assistant", "content": [
            {"type": "tool_use", "id": "toolu_3", "name": "attempt_completion", "input": {"result": "Done."}},
        ]},
    ]


def test_can_parse():
    parser = ClineParser()
    assert parser.can_parse(Path(f"/h/.cline/data/tasks/{TASK_ID}/api_conversation_history.json"))
    assert not parser.can_parse(Path(f"/h/.cline/data/tasks/{TASK_ID}/ui_messages.json"))


# ---------------------------------------------------------------------------
# Conversation
# ---------------------------------------------------------------------------


class TestConversation:
    def test_events(self, task_dir):
        session = ClineParser().parse(write_json(task_dir / "api_conversation_history.json", _history()))
        assert _types(session) == [
            UserMessage, AgentMessage, FileCreate, ToolResult, ShellCommand, ToolResult, AgentMessage,
        ]
        assert session.events[0].content.plain_text() == "Add a README"
        assert session.events[-1].content.plain_text() == "Done."

    def test_result_correlation(self, task_dir):
        session = ClineParser().parse(write_json(task_dir / "api_conversation_history.json", _history()))
        write_call, write_result = session.events[2], session.events[3]
        shell_call, shell_result = session.events[4], session.events[5]
        assert write_result.event_type.call_id == write_call.event_id
        assert write_result.event_type.name == "write_to_file"
        assert shell_result.event_type.call_id == shell_call.event_id
        assert shell_result.event_type.name == "execute_command"
        assert shell_result.content.plain_text() == "README.md"

    def test_synthetic_timestamps(self, task_dir):
        session = ClineParser().parse(write_json(task_dir / "api_conversation_history.json", _history()))
        base = datetime(2025, 1, 15, 10, 0, tzinfo=timezone.utc)
        assert session.events[0].timestamp == base
        assert (session.events[-1].timestamp - base).total_seconds() == pytest.approx(0.5)

    def test_header_defaults(self, task_dir):
        session = ClineParser().parse(write_json(task_dir / "api_conversation_history.json", _history()))
        assert session.session_id == TASK_ID
        assert session.agent.tool == "cline"
        assert session.agent.model == "unknown"
        assert session.context.title == "Add a README"

    def test_result_for_unseen_call_is_unlinked(self, task_dir):
        history = _history()
        history[2]["content"][0]["tool_use_id"] = "toolu_unseen"
        session = ClineParser().parse(write_json(task_dir / "api_conversation_history.json", history))
        result = session.events[3].event_type
        assert result.call_id is None
        assert result.name == "write_to_file"

    def test_not_a_list(self, task_dir):
        path = write_json(task_dir / "api_conversation_history.json", {"messages": []})
        with pytest.raises(SourceDecodeError):
            ClineParser().parse(path)


class TestSidecarFiles:
    def test_ui_messages_and_task_history(self, task_dir):
        path = write_json(task_dir / "api_conversation_history.json", _history())
        write_json(task_dir / "ui_messages.json", [
            {"ts": 1736935201000, "type": "say"},
            {"ts": 1736935260000, "type": "say", "modelInfo": {"providerId": "anthropic"}},
        ])
        write_json(task_dir.parent.parent / "state" / "taskHistory.json", [
            {"id": "other", "task": "not this one"},
            {"id": TASK_ID, "task": "Add a README to the project", "modelId": "claude-sonnet-4",
             "tokensIn": 1200, "tokensOut": 300, "cwdOnTaskInitialization": "/work"},
        ])
        session = ClineParser().parse(path)
        assert session.context.title == "Add a README to the project"
        assert session.agent.model == "claude-sonnet-4"
        assert session.agent.provider == "anthropic"
        assert session.context.attributes["cwd"] == "/work"
        assert session.context.attributes["input_tokens"] == 1200
        assert session.context.created_at == datetime(2025, 1, 15, 10, 0, 1, tzinfo=timezone.utc)
        assert session.context.updated_at == datetime(2025, 1, 15, 10, 1, tzinfo=timezone.utc)
        assert session.events[0].timestamp == session.context.created_at


class TestUserText:
    def _parse(self, task_dir, messages):
        return ClineParser().parse(write_json(task_dir / "api_conversation_history.json", messages))

    def test_feedback_in_plan_mode(self, task_dir):
        session = self._parse(task_dir, [
            {"role": "assistant", "content": [
                {"type": "tool_use", "name": "plan_mode_respond", "input": {"response": "Plan: two steps"}},
            ]},
            {"role": "user", "content": [
                {"type": "text", "text": "[plan_mode_respond] Result:\n<user_message>\nuse markdown\n</user_message>"},
            ]},
        ])
        assert _types(session) == [AgentMessage, UserMessage]
        assert session.events[1].content.plain_text() == "use markdown"

    def test_task_progress_skipped(self, task_dir):
        session = self._parse(task_dir, [
            {"role": "user", "content": "# task_progress\n- [x] step one"},
            {"role": "user", "content": "plain follow-up"},
        ])
        assert [e.content.plain_text() for e in session.events] == ["plain follow-up"]

    def test_result_for_other_tool_is_unlinked(self, task_dir):
        session = self._parse(task_dir, [
            {"role": "assistant", "content": [
                {"type": "tool_use", "name": "read_file", "input": {"path": "a.py"}},
            ]},
            {"role": "user", "content": [{"type": "text", "text": "[list_files for '.'] Result:\na.py"}]},
        ])
        result = session.events[1].event_type
        assert result.name == "list_files"
        assert result.call_id is None


def test_parse_tool_result_text():
    assert parse_tool_result_text("[read_file for 'src/a.py'] Result:\nbody") == ("read_file", "src/a.py", "body")
    assert parse_tool_result_text("[attempt_completion] Result:\nok") == ("attempt_completion", None, "ok")
    assert parse_tool_result_text("no prefix") is None


def test_search_and_replace_diff():
    event_type = classify_cline_tool("search_and_replace", {"path": "a.py", "search": "x", "replace": "y"})
    assert isinstance(event_type, FileEdit)
    assert "-x" in event_type.diff
    assert "+y" in event_type.diff
