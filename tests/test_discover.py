"""Tests for transcript discovery in each tool's default store."""

from __future__ import annotations

from conftest import write_json, write_jsonl

from agenttrace.discover import discover_sessions, is_child_transcript


def _populate(home):
    write_jsonl(home / ".claude" / "projects" / "-p" / "s1.jsonl", [{"type": "user"}])
    write_jsonl(home / ".claude" / "projects" / "-p" / "s1" / "subagents" / "agent-a.jsonl", [{"type": "user"}])
    write_jsonl(home / ".claude" / "projects" / "-p" / "agent-b.jsonl", [{"type": "user"}])

    day = home / ".codex" / "sessions" / "2025" / "01" / "15"
    write_jsonl(day / "rollout-a.jsonl", [{"type": "session_meta", "payload": {"id": "a"}}])
    write_jsonl(day / "rollout-b.jsonl", [{"type": "session_meta", "payload": {
        "id": "b", "source": {"subagent": {"thread_spawn": {"parent_thread_id": "a"}}},
    }}])

    storage = home / ".local" / "share" / "opencode" / "storage" / "session"
    write_json(storage / "proj" / "ses_1.json", {"id": "ses_1"})
    write_json(storage / "proj" / "ses_2.json", {"id": "ses_2", "parentID": "ses_1"})
    write_json(storage / "info" / "ses_3.json", {"id": "ses_3"})

    write_json(home / ".cline" / "data" / "tasks" / "100" / "api_conversation_history.json", [])
    write_json(home / ".cline" / "data" / "tasks" / "100" / "ui_messages.json", [])

    workspace = home / ".config" / "Cursor" / "User" / "workspaceStorage" / "w1"
    workspace.mkdir(parents=True)
    (workspace / "state.vscdb").write_bytes(b"")

    write_json(home / ".gemini" / "tmp" / "h" / "chats" / "session-1.json", {})
    write_json(home / ".gemini" / "tmp" / "h" / "logs.json", [])
    write_json(home / ".local" / "share" / "amp" / "threads" / "T-1.json", {})


def test_discover_sessions(tmp_path):
    _populate(tmp_path)
    found = [(tool, path.relative_to(tmp_path).as_posix()) for tool, path in discover_sessions(tmp_path)]
    assert found == [
        ("claude-code", ".claude/projects/-p/s1.jsonl"),
        ("codex", ".codex/sessions/2025/01/15/rollout-a.jsonl"),
        ("opencode", ".local/share/opencode/storage/session/info/ses_3.json"),
        ("opencode", ".local/share/opencode/storage/session/proj/ses_1.json"),
        ("cline", ".cline/data/tasks/100/api_conversation_history.json"),
        ("cursor", ".config/Cursor/User/workspaceStorage/w1/state.vscdb"),
        ("gemini", ".gemini/tmp/h/chats/session-1.json"),
        ("amp", ".local/share/amp/threads/T-1.json"),
    ]


def test_empty_home(tmp_path):
    assert list(discover_sessions(tmp_path)) == []


def test_home_accepts_str(tmp_path):
    write_json(tmp_path / ".local" / "share" / "amp" / "threads" / "T-1.json", {})
    assert [tool for tool, _ in discover_sessions(str(tmp_path))] == ["amp"]


class TestIsChildTranscript:
    def test_claude_code(self, tmp_path):
        assert is_child_transcript("claude-code", tmp_path / "s1" / "subagents" / "agent-a.jsonl")
        assert not is_child_transcript("claude-code", tmp_path / "s1.jsonl")

    def test_codex_reads_header(self, tmp_path):
        child = write_jsonl(tmp_path / "child.jsonl", [
            {"type": "session_meta", "payload": {"id": "c", "parent_thread_id": "p"}},
        ])
        plain = write_jsonl(tmp_path / "plain.jsonl", ["not json"])
        assert is_child_transcript("codex", child)
        assert not is_child_transcript("codex", plain)

    def test_other_tools(self, tmp_path):
        assert not is_child_transcript("amp", tmp_path / "T-1.json")
