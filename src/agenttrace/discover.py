"""Find transcripts in each tool's conventional on-disk store."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterator

from agenttrace.common import load_json_quietly, read_first_json_line
from agenttrace.parsers import amp, claude_code, cline, codex, cursor, gemini, opencode

logger = logging.getLogger(__name__)

_VSCODE_USER_DIRS = (
    ".config/{app}/User",
    "Library/Application Support/{app}/User",
    "AppData/Roaming/{app}/User",
)

# (tool, glob patterns relative to the home directory)
SESSION_STORES: list[tuple[str, list[str]]] = [
    (claude_code.TOOL_NAME, [".claude/projects/**/*.jsonl"]),
    (codex.TOOL_NAME, [".codex/sessions/**/*.jsonl"]),
    (opencode.TOOL_NAME, [
        ".local/share/opencode/storage/session/info/*.json",
        ".local/share/opencode/storage/session/*/*.json",
    ]),
    (cline.TOOL_NAME, [
        f".cline/data/tasks/*/{cline.HISTORY_FILE}",
        *(
            f"{d.format(app=app)}/globalStorage/saoudrizwan.claude-dev/tasks/*/{cline.HISTORY_FILE}"
            for d in _VSCODE_USER_DIRS
            for app in ("Code", "Cursor")
        ),
    ]),
    (cursor.TOOL_NAME, [f"{d.format(app='Cursor')}/workspaceStorage/*/state.vscdb" for d in _VSCODE_USER_DIRS]),
    (gemini.TOOL_NAME, [".gemini/tmp/*/chats/session-*.json", ".gemini/tmp/*/chats/session-*.jsonl"]),
    (amp.TOOL_NAME, [".local/share/amp/threads/*.json"]),
]


def is_child_transcript(tool: str, path: Path) -> bool:
    """True for transcripts that are merged into a parent session rather than listed."""
    if tool == claude_code.TOOL_NAME:
        return "subagents" in path.parts or claude_code.is_subagent_file_name(path.name)
    if tool == codex.TOOL_NAME:
        header = read_first_json_line(path) or {}
        payload = header.get("payload") if header.get("type") == "session_meta" else None
        return isinstance(payload, dict) and codex.parent_thread_id(payload) is not None
    if tool == opencode.TOOL_NAME:
        info = load_json_quietly(path)
        return isinstance(info, dict) and bool(info.get("parentID"))
    return False


def discover_sessions(home: Path | str | None = None) -> Iterator[tuple[str, Path]]:
    """Yield (tool name, transcript path) for every top-level transcript under home."""
    home = Path(home).expanduser() if home is not None else Path.home()
    for tool, patterns in SESSION_STORES:
        seen: set[Path] = set()
        for pattern in patterns:
            for path in sorted(home.glob(pattern)):
                if path in seen or not path.is_file():
                    continue
                seen.add(path)
                if is_child_transcript(tool, path):
                    logger.debug("Skipping child transcript %s", path)
                    continue
                yield tool, path
