"""Shared helpers used by every format parser.

Header selection, timestamp parsing, call-id correlation, tool-kind inference,
provenance attributes and tool-result content shaping all live here so the
format modules only deal with their own record grammar.
"""

from __future__ import annotations

import difflib
import json
import logging
import re
import shlex
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from agenttrace.errors import SourceDecodeError, SourceReadError
from agenttrace.models import (
    ATTR_SEMANTIC_CALL_ID,
    ATTR_SEMANTIC_GROUP_ID,
    ATTR_SEMANTIC_TOOL_KIND,
    ATTR_SOURCE_RAW_TYPE,
    ATTR_SOURCE_SCHEMA_VERSION,
    Content,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Raw input
# ---------------------------------------------------------------------------


def read_jsonl(file_path: Path) -> Iterator[dict]:
    """Yield each JSON object line of a file, skipping blank and malformed lines.

    Raises SourceReadError if the file cannot be opened.
    """
    try:
        f = open(file_path, encoding="utf-8", errors="replace")
    except OSError as exc:
        raise SourceReadError(f"cannot read transcript: {exc}", file_path) from exc
    with f:
        yield from iter_json_lines(f, source=file_path)


def iter_json_lines(lines, source: Path | str | None = None) -> Iterator[dict]:
    """Decode an iterable of JSONL lines. Non-object and malformed lines are skipped."""
    for line_no, line in enumerate(lines, start=1):
        line = line.strip()
        if not line:
            continue
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            logger.debug("Skipping malformed JSON at %s:%d", source or "<lines>", line_no)
            continue
        if not isinstance(data, dict):
            logger.debug("Skipping non-object JSON at %s:%d", source or "<lines>", line_no)
            continue
        yield data


def load_json_document(file_path: Path) -> Any:
    """Load a whole-document JSON file. I/O and decode failures are fatal."""
    try:
        text = Path(file_path).read_text(encoding="utf-8", errors="replace")
    except OSError as exc:
        raise SourceReadError(f"cannot read transcript: {exc}", file_path) from exc
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise SourceDecodeError(f"invalid JSON document: {exc}", file_path) from exc


def load_json_quietly(file_path: Path) -> Any | None:
    """Load a secondary JSON file (index, sibling). Returns None on any failure."""
    try:
        return json.loads(Path(file_path).read_text(encoding="utf-8", errors="replace"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.debug("Ignoring unreadable JSON file %s: %s", file_path, exc)
        return None


def read_first_json_line(file_path: Path) -> dict | None:
    """Read only the first non-empty line of a JSONL file, if it is an object."""
    try:
        with open(file_path, encoding="utf-8", errors="replace") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    data = json.loads(line)
                except json.JSONDecodeError:
                    return None
                return data if isinstance(data, dict) else None
    except OSError as exc:
        logger.debug("Cannot read header of %s: %s", file_path, exc)
    return None


# ---------------------------------------------------------------------------
# Header selection
# ---------------------------------------------------------------------------


def non_empty(value: Any) -> str | None:
    """Return value stripped if it is a non-blank string, else None."""
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return None


def first_non_empty(*values: Any) -> str | None:
    for value in values:
        text = non_empty(value)
        if text is not None:
            return text
    return None


def set_first(current: str | None, candidate: Any) -> str | None:
    """Keep current if already set, otherwise take candidate (first-wins)."""
    if current:
        return current
    return non_empty(candidate)


def truncate_title(text: str, max_chars: int = 80) -> str:
    """Single-line title, cut to max_chars with a trailing ellipsis."""
    line = " ".join(text.split())
    if len(line) <= max_chars:
        return line
    return line[: max(max_chars - 3, 0)].rstrip() + "..."


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------

_FRACTION_RE = re.compile(r"(\.\d{6})\d+")

# Epoch values below this are seconds, above are milliseconds
_EPOCH_MS_THRESHOLD = 100_000_000_000


def parse_timestamp(value: Any) -> datetime | None:
    """Parse a timestamp from any shape seen in transcripts.

    Tries RFC 3339 (with Z or offset), naive ISO 8601 (taken as UTC), then
    epoch milliseconds as a number or numeric string. Returns None when
    nothing matches; all results are timezone-aware UTC.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return epoch_to_datetime(value)
    if not isinstance(value, str):
        return None

    text = value.strip()
    if not text:
        return None

    iso = text.replace("Z", "+00:00").replace("z", "+00:00")
    iso = _FRACTION_RE.sub(r"\1", iso)
    try:
        parsed = datetime.fromisoformat(iso)
    except ValueError:
        parsed = None
    if parsed is not None:
        if parsed.tzinfo is None:
            return parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)

    try:
        number = float(text)
    except ValueError:
        return None
    return epoch_to_datetime(number)


def epoch_to_datetime(value: float) -> datetime | None:
    """Convert epoch seconds or milliseconds to an aware UTC datetime."""
    seconds = value / 1000.0 if abs(value) >= _EPOCH_MS_THRESHOLD else float(value)
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


# ---------------------------------------------------------------------------
# Roles and tool kinds
# ---------------------------------------------------------------------------

_ROLE_ALIASES = {
    "user": "user",
    "human": "user",
    "assistant": "assistant",
    "agent": "assistant",
    "model": "assistant",
    "gemini": "assistant",
    "system": "system",
    "developer": "system",
    "thinking": "thinking",
    "reasoning": "thinking",
    "thought": "thinking",
}


def normalize_role_label(role: Any) -> str | None:
    """Map a tool-specific role label onto user/assistant/system/thinking."""
    if not isinstance(role, str):
        return None
    return _ROLE_ALIASES.get(role.strip().lower())


_FILE_READ_TOOLS = {
    "read", "read_file", "view", "cat", "open", "fileread", "readfile", "list_dir", "ls",
}
_FILE_WRITE_TOOLS = {
    "edit", "write", "create", "delete", "apply_patch", "str_replace_editor",
    "edit_file", "reapply", "write_file", "fileedit",
}
_SHELL_TOOLS = {"bash", "shell", "exec_command", "run_terminal_cmd", "execute_command"}
_SEARCH_TOOLS = {
    "grep", "search", "code_search", "grep_search", "file_search", "glob", "find",
}


def infer_tool_kind(name: str) -> str:
    """Coarse tool family: file_read, file_write, shell, search, web, task or other."""
    lower = (name or "").strip().lower()
    if not lower:
        return "other"
    if lower in _FILE_READ_TOOLS:
        return "file_read"
    if lower in _FILE_WRITE_TOOLS:
        return "file_write"
    if lower in _SHELL_TOOLS:
        return "shell"
    if lower in _SEARCH_TOOLS:
        return "search"
    if lower.startswith("web") or lower in ("fetch", "browser"):
        return "web"
    if "task" in lower or "subagent" in lower:
        return "task"
    return "other"


def infer_provider(model: str) -> str:
    """Model vendor guessed from the model name, for formats that record only the model."""
    lower = model.lower()
    if "claude" in lower or "anthropic" in lower:
        return "anthropic"
    if "gpt" in lower or "o1" in lower or "o3" in lower:
        return "openai"
    if "gemini" in lower:
        return "google"
    if "llama" in lower:
        return "meta"
    if "deepseek" in lower:
        return "deepseek"
    return "unknown"


# ---------------------------------------------------------------------------
# Provenance attributes
# ---------------------------------------------------------------------------


def attach_source_attrs(
    attrs: dict[str, Any], schema_version: str | None, raw_type: str | None,
) -> None:
    if non_empty(schema_version):
        attrs[ATTR_SOURCE_SCHEMA_VERSION] = schema_version.strip()
    if non_empty(raw_type):
        attrs[ATTR_SOURCE_RAW_TYPE] = raw_type.strip()


def attach_semantic_attrs(
    attrs: dict[str, Any],
    group_id: str | None = None,
    call_id: str | None = None,
    tool_kind: str | None = None,
) -> None:
    if non_empty(group_id):
        attrs[ATTR_SEMANTIC_GROUP_ID] = group_id.strip()
    if non_empty(call_id):
        attrs[ATTR_SEMANTIC_CALL_ID] = call_id.strip()
    if non_empty(tool_kind):
        attrs[ATTR_SEMANTIC_TOOL_KIND] = tool_kind.strip()


# ---------------------------------------------------------------------------
# Call-id correlation
# ---------------------------------------------------------------------------


@dataclass
class ToolUseInfo:
    """What we remember about a tool call while waiting for its result."""

    name: str
    file_path: str | None = None
    event_id: str | None = None


@dataclass
class CallRegistry:
    """call-id -> originating call, scoped to one parse pass.

    Results without a call id fall back to the most recently registered tool
    (formats that only ever have one call in flight).
    """

    calls: dict[str, ToolUseInfo] = field(default_factory=dict)
    last: ToolUseInfo | None = None

    def record(
        self,
        call_id: str | None,
        event_id: str,
        name: str,
        file_path: str | None = None,
    ) -> ToolUseInfo:
        info = ToolUseInfo(name=name, file_path=file_path, event_id=event_id)
        if call_id:
            self.calls[call_id] = info
        self.last = info
        return info

    def lookup(self, call_id: str | None) -> ToolUseInfo | None:
        if call_id and call_id in self.calls:
            return self.calls[call_id]
        if call_id:
            return None
        return self.last

    def tool_name(self, call_id: str | None) -> str:
        """Name of the call, or of the most recent call when call_id is unknown."""
        info = self.lookup(call_id) or self.last
        return info.name if info else "unknown"


# ---------------------------------------------------------------------------
# Result payload metadata
# ---------------------------------------------------------------------------


@dataclass
class ResultMeta:
    output: str
    exit_code: int | None = None
    duration_ms: int | None = None
    is_error: bool = False


_EXIT_CODE_RE = re.compile(r"^(?:Process exited with code|Exit code:?)\s*(-?\d+)", re.M)
_WALL_TIME_RE = re.compile(r"^Wall time:\s*([0-9.]+)\s*s", re.M)
_OUTPUT_MARKER_RE = re.compile(r"^Output:\n", re.M)


def parse_result_metadata(raw: Any) -> ResultMeta:
    """Pull output text, exit code and elapsed time out of a tool result payload.

    Accepts a dict or JSON string shaped like
    {"output": ..., "metadata": {"exit_code": 0, "duration_seconds": 0.01}},
    or plain text with "Exit code: N" / "Wall time: X seconds" headers.
    """
    data = raw
    if isinstance(raw, str):
        stripped = raw.strip()
        if stripped.startswith("{"):
            try:
                data = json.loads(stripped)
            except json.JSONDecodeError:
                data = raw

    if isinstance(data, dict):
        meta = data.get("metadata")
        if not isinstance(meta, dict):
            meta = data
        output = data.get("output", data.get("content"))
        if not isinstance(output, str):
            output = json_text(output) if output is not None else ""
        exit_code = as_int(meta.get("exit_code", meta.get("exitCode")))
        duration_ms = None
        seconds = meta.get("duration_seconds")
        if isinstance(seconds, (int, float)) and not isinstance(seconds, bool):
            duration_ms = max(int(round(seconds * 1000)), 0)
        elif as_int(meta.get("duration_ms")) is not None:
            duration_ms = max(as_int(meta.get("duration_ms")), 0)
        is_error = bool(exit_code) or meta.get("success") is False or bool(data.get("is_error"))
        return ResultMeta(output, exit_code, duration_ms, is_error)

    text = raw if isinstance(raw, str) else json_text(raw)
    exit_code = None
    duration_ms = None
    match = _EXIT_CODE_RE.search(text)
    if match:
        exit_code = int(match.group(1))
        wall = _WALL_TIME_RE.search(text)
        if wall:
            duration_ms = int(round(float(wall.group(1)) * 1000))
        marker = _OUTPUT_MARKER_RE.search(text)
        if marker:
            text = text[marker.end():]
    return ResultMeta(text, exit_code, duration_ms, bool(exit_code))


def as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    return None


def json_text(value: Any) -> str:
    """Render a raw value as text: strings verbatim, everything else as JSON."""
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False)


def parse_json_args(value: Any) -> Any:
    """Tool arguments arrive either as an object or a JSON-encoded string."""
    if isinstance(value, str):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return value
    return value


# ---------------------------------------------------------------------------
# Shell commands
# ---------------------------------------------------------------------------

_SHELLS = {"bash", "sh", "zsh", "fish", "pwsh", "powershell", "cmd", "/bin/bash", "/bin/sh", "/bin/zsh"}
_SHELL_FLAGS = {"-c", "-lc", "-ic", "-l", "/c", "-command", "-Command"}


def shell_command_from_args(args: Any) -> str | None:
    """Extract a command line from any of the historical argument shapes.

    Handles a bare string, a {"command"|"cmd": ...} mapping, and a
    [shell, flag, command] array where the shell and flag are dropped.
    """
    if isinstance(args, dict):
        for key in ("command", "cmd", "commandLine", "script"):
            if key in args:
                return shell_command_from_args(args[key])
        return None
    if isinstance(args, str):
        return args.strip() or None
    if isinstance(args, list):
        parts = [str(p) for p in args if p is not None]
        if not parts:
            return None
        if len(parts) >= 3 and parts[0] in _SHELLS and parts[1] in _SHELL_FLAGS:
            return " ".join(parts[2:])
        return shlex.join(parts)
    return None


# ---------------------------------------------------------------------------
# Text cleanup and tool result content
# ---------------------------------------------------------------------------

_SYSTEM_REMINDER_RE = re.compile(r"<system-reminder>.*?</system-reminder>", re.S)
_LINE_NUMBER_PREFIX_RE = re.compile(r"^ *\d+[→|]")
_LINE_NUMBER_RE = re.compile(r"^ *(\d+)(?:→|\| ?)(.*)$")


def strip_system_reminders(text: str) -> str:
    return _SYSTEM_REMINDER_RE.sub("", text).strip()


def is_line_numbered_output(text: str) -> bool:
    """True when most of the first lines look like `   12→code` read output."""
    lines = text.splitlines()[:5]
    if not lines:
        return False
    matching = sum(
        1 for line in lines if not line.strip() or _LINE_NUMBER_PREFIX_RE.match(line)
    )
    return matching / len(lines) >= 0.6


def parse_line_numbered_output(text: str) -> tuple[str, int]:
    """Strip line-number prefixes. Returns (code, first line number)."""
    start_line = None
    code_lines: list[str] = []
    for line in text.splitlines():
        match = _LINE_NUMBER_RE.match(line)
        if match:
            if start_line is None:
                start_line = int(match.group(1))
            code_lines.append(match.group(2))
        elif line.strip():
            code_lines.append(line)
        else:
            code_lines.append("")
    return "\n".join(code_lines).rstrip(), start_line or 1


_LANGUAGE_BY_NAME = {
    "Dockerfile": "bash",
    "Makefile": "bash",
    "Cargo.toml": "toml",
    "pyproject.toml": "toml",
}

_LANGUAGE_BY_EXT = {
    "ts": "typescript", "tsx": "typescript",
    "js": "javascript", "jsx": "javascript",
    "py": "python",
    "rs": "rust",
    "go": "go",
    "java": "java",
    "kt": "kotlin", "gradle": "kotlin", "kts": "kotlin",
    "swift": "swift",
    "rb": "ruby",
    "cpp": "cpp", "c": "cpp", "h": "cpp", "hpp": "cpp",
    "cs": "csharp",
    "css": "css", "scss": "css",
    "html": "html", "svelte": "html", "vue": "html",
    "xml": "xml",
    "json": "json",
    "yaml": "yaml", "yml": "yaml",
    "toml": "toml",
    "md": "markdown",
    "sql": "sql",
    "sh": "bash", "bash": "bash", "zsh": "bash",
    "diff": "diff",
    "properties": "properties",
}


def detect_language(file_path: str | None) -> str | None:
    if not file_path:
        return None
    basename = file_path.replace("\\", "/").rsplit("/", 1)[-1]
    if basename in _LANGUAGE_BY_NAME:
        return _LANGUAGE_BY_NAME[basename]
    if "." not in basename:
        return None
    return _LANGUAGE_BY_EXT.get(basename.rsplit(".", 1)[-1].lower())


def extract_tag_content(text: str, tag: str) -> str | None:
    """Content between <tag> and </tag>, stripped. None if either tag is missing."""
    open_tag = f"<{tag}>"
    close_tag = f"</{tag}>"
    start = text.find(open_tag)
    if start == -1:
        return None
    start += len(open_tag)
    end = text.find(close_tag, start)
    if end == -1:
        return None
    return text[start:end].strip()


_READ_TOOL_NAMES = {"Read", "read_file", "read", "view"}


def build_tool_result_content(raw_text: str, tool_info: ToolUseInfo | None) -> Content:
    """Content for a tool result. File reads with numbered lines become a code block."""
    if not raw_text:
        return Content.empty()
    cleaned = strip_system_reminders(raw_text)
    if not cleaned:
        return Content.empty()
    if (
        tool_info is not None
        and tool_info.name in _READ_TOOL_NAMES
        and is_line_numbered_output(cleaned)
    ):
        code, start_line = parse_line_numbered_output(cleaned)
        return Content.code(code, detect_language(tool_info.file_path), start_line)
    return Content.text(cleaned)


def text_diff(old: str, new: str, path: str) -> str:
    """Unified diff between two versions of a file fragment."""
    lines = difflib.unified_diff(
        old.splitlines(), new.splitlines(),
        fromfile=f"a/{path}", tofile=f"b/{path}", lineterm="",
    )
    return "\n".join(lines)
