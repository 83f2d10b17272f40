"""Claude Code JSONL transcripts (~/.claude/projects/<project>/<session>.jsonl).

Each line is one entry: user, assistant, system, progress, queue-operation,
summary, custom-title or file-history-snapshot. Subagent runs are written to
separate files next to the parent and merged in as task brackets.
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Any

from agenttrace.common import (
    CallRegistry,
    attach_semantic_attrs,
    attach_source_attrs,
    build_tool_result_content,
    infer_tool_kind,
    iter_json_lines,
    non_empty,
    parse_timestamp,
    read_first_json_line,
    read_jsonl,
    set_first,
    strip_system_reminders,
    text_diff,
    truncate_title,
)
from agenttrace.models import (
    ATTR_CWD,
    ATTR_GIT_BRANCH,
    ATTR_INPUT_TOKENS,
    ATTR_MODEL,
    ATTR_OUTPUT_TOKENS,
    ATTR_PARENT_SESSION_ID,
    ATTR_SESSION_ROLE,
    ATTR_SOURCE_PATH,
    SESSION_ROLE_AUXILIARY,
    SESSION_ROLE_PRIMARY,
    Agent,
    AgentMessage,
    CodeBlock,
    CodeSearch,
    Content,
    Event,
    EventType,
    FileCreate,
    FileEdit,
    FileRead,
    FileSearch,
    Session,
    SessionContext,
    ShellCommand,
    SystemMessage,
    TextBlock,
    Thinking,
    ToolCall,
    ToolResult,
    UserMessage,
    WebFetch,
    WebSearch,
)
from agenttrace.parsers.base import ChildTranscript, SessionParser, path_text, unique_event_id

logger = logging.getLogger(__name__)

SCHEMA_VERSION = "claude-code-jsonl-v1"
TOOL_NAME = "claude-code"

ATTR_TOOL_USE_NAME = "tool_use_name"
ATTR_TOOL_USE_ID = "tool_use_id"

_CONTINUATION_PREFIXES = (
    "This session is",
    "Here is the conversation so far",
    "Here's the conversation so far",
)
_SUBAGENT_PREFIXES = ("agent-", "agent_", "subagent-", "subagent_")
_PARENT_ID_KEYS = ("parentSessionId", "parentID", "parentId")


def is_continuation_preamble(text: str) -> bool:
    return text.strip().startswith(_CONTINUATION_PREFIXES)


def is_subagent_file_name(name: str) -> bool:
    return name.lower().startswith(_SUBAGENT_PREFIXES)


# ---------------------------------------------------------------------------
# Tool classification
# ---------------------------------------------------------------------------


def classify_tool_use(name: str, tool_input: dict) -> EventType:
    """Map a Claude Code tool_use block onto a canonical event type."""
    if name == "Read":
        return FileRead(path=tool_input.get("file_path") or "unknown")
    if name == "Grep":
        return CodeSearch(query=tool_input.get("pattern") or "")
    if name == "Glob":
        return FileSearch(pattern=tool_input.get("pattern") or "*")
    if name == "Write":
        return FileCreate(path=tool_input.get("file_path") or "unknown")
    if name in ("Edit", "MultiEdit", "NotebookEdit"):
        path = tool_input.get("file_path") or tool_input.get("notebook_path") or "unknown"
        return FileEdit(path=path, diff=edit_diff(name, tool_input, path))
    if name == "Bash":
        return ShellCommand(command=tool_input.get("command") or "")
    if name == "WebSearch":
        return WebSearch(query=tool_input.get("query") or "")
    if name == "WebFetch":
        return WebFetch(url=tool_input.get("url") or "")
    return ToolCall(name=name)


def edit_diff(name: str, tool_input: dict, path: str) -> str | None:
    """Unified diff for Edit/MultiEdit inputs (old_string -> new_string)."""
    if name == "Edit":
        pairs = [(tool_input.get("old_string"), tool_input.get("new_string"))]
    elif name == "MultiEdit":
        pairs = [
            (e.get("old_string"), e.get("new_string"))
            for e in tool_input.get("edits") or []
            if isinstance(e, dict)
        ]
    else:
        return None

    chunks: list[str] = []
    for old, new in pairs:
        if not isinstance(old, str) or not isinstance(new, str):
            continue
        chunks.append(text_diff(old, new, path))
    diff = "\n".join(c for c in chunks if c)
    return diff or None


def tool_use_content(name: str, tool_input: dict) -> Content:
    """Readable content for a tool_use event so consumers needn't parse raw input."""
    if name in ("Read", "Write", "Edit", "MultiEdit"):
        return Content.text(tool_input.get("file_path") or "unknown")
    if name == "Bash":
        command = tool_input.get("command") or ""
        code = CodeBlock(command, "bash")
        desc = non_empty(tool_input.get("description"))
        return Content([TextBlock(desc), code] if desc else [code])
    if name == "Glob":
        return Content.text(tool_input.get("pattern") or "*")
    if name == "Grep":
        return Content.text(tool_input.get("pattern") or "")
    if name in ("Task", "Agent"):
        return _task_content(tool_input)
    return Content.json(tool_input)


def _task_content(tool_input: dict) -> Content:
    meta: list[str] = []
    for key, label in (
        ("name", "agent"), ("subagent_type", "type"), ("team_name", "team"), ("mode", "mode"),
    ):
        value = non_empty(tool_input.get(key))
        if value:
            meta.append(f"{label}: {value}")
    if tool_input.get("run_in_background") is True:
        meta.append("background")

    blocks: list = []
    if meta:
        blocks.append(TextBlock(f"[{', '.join(meta)}]"))
    for key in ("description", "prompt"):
        value = tool_input.get(key)
        if isinstance(value, str) and value:
            blocks.append(TextBlock(value))
    if not blocks:
        return Content.json(tool_input)
    return Content(blocks)


def _tool_file_path(name: str, tool_input: dict) -> str | None:
    if name in ("Read", "Write", "Edit", "MultiEdit", "NotebookEdit"):
        return non_empty(tool_input.get("file_path")) or non_empty(tool_input.get("notebook_path"))
    if name == "Grep":
        return non_empty(tool_input.get("path"))
    return None


def tool_result_text(content: Any) -> str:
    """Flatten a tool_result content field (string, block list or null) to text."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = [
            b.get("text", "")
            for b in content
            if isinstance(b, dict) and b.get("type") == "text" and isinstance(b.get("text"), str)
        ]
        return "\n".join(parts)
    return ""


# ---------------------------------------------------------------------------
# One parse pass
# ---------------------------------------------------------------------------


class ClaudeTranscript:
    """Mutable state for one pass over Claude Code entries.

    A fresh instance is created for every file parse and every incremental
    batch; nothing carries over between passes.
    """

    def __init__(self, title_max_chars: int = 80):
        self.title_max_chars = title_max_chars
        self.events: list[Event] = []
        self.calls = CallRegistry()
        self.used_ids: set[str] = set()
        self.session_id: str | None = None
        self.tool_version: str | None = None
        self.model: str | None = None
        self.cwd: str | None = None
        self.git_branch: str | None = None
        self.first_user_text: str | None = None
        self.custom_title: str | None = None
        self.summary: str | None = None
        self.all_cwds: list[str] = []
        self.saw_header = False
        # message.id -> event carrying that message's token usage
        self._usage_holders: dict[str, Event] = {}

    # -- header ------------------------------------------------------------

    def _collect_header(self, entry: dict) -> None:
        self.session_id = set_first(self.session_id, entry.get("sessionId"))
        self.tool_version = set_first(self.tool_version, entry.get("version"))
        self.cwd = set_first(self.cwd, entry.get("cwd"))
        self.git_branch = set_first(self.git_branch, entry.get("gitBranch"))
        cwd = non_empty(entry.get("cwd"))
        if cwd and cwd not in self.all_cwds:
            self.all_cwds.append(cwd)
        if self.session_id or self.cwd or self.tool_version:
            self.saw_header = True

    def _last_timestamp(self) -> datetime | None:
        return self.events[-1].timestamp if self.events else None

    def _push(self, event: Event) -> Event:
        event.event_id = unique_event_id(event.event_id, self.used_ids)
        self.events.append(event)
        return event

    # -- dispatch ----------------------------------------------------------

    def feed(self, entry: dict) -> None:
        entry_type = entry.get("type")
        if entry_type in ("file-history-snapshot", None):
            return
        if entry_type == "custom-title":
            self.custom_title = non_empty(entry.get("customTitle")) or self.custom_title
            return
        if entry_type == "user":
            self._collect_header(entry)
            self._user_entry(entry)
        elif entry_type == "assistant":
            self._collect_header(entry)
            message = entry.get("message")
            if isinstance(message, dict):
                self.model = set_first(self.model, message.get("model"))
            self._assistant_entry(entry)
        elif entry_type == "system":
            self._collect_header(entry)
            self._system_entry(entry)
        elif entry_type == "progress":
            self._collect_header(entry)
            self._progress_entry(entry)
        elif entry_type == "queue-operation":
            self.session_id = set_first(self.session_id, entry.get("sessionId"))
            self._queue_entry(entry)
        elif entry_type == "summary":
            self.session_id = set_first(self.session_id, entry.get("sessionId"))
            self._summary_entry(entry)
        else:
            logger.debug("Skipping unknown Claude Code entry type %r", entry_type)

    # -- user --------------------------------------------------------------

    def _user_entry(self, entry: dict) -> None:
        message = entry.get("message")
        ts = parse_timestamp(entry.get("timestamp"))
        if not isinstance(message, dict) or ts is None:
            logger.debug("Skipping user entry without message or timestamp")
            return
        uuid = entry.get("uuid") or f"user-{int(ts.timestamp() * 1000)}"
        content = message.get("content")
        is_meta = entry.get("isMeta") is True

        if isinstance(content, str):
            self._user_text(content, uuid, ts, is_meta)
            return
        if not isinstance(content, list):
            return

        for block in content:
            if not isinstance(block, dict):
                continue
            block_type = block.get("type")
            if block_type == "text" and isinstance(block.get("text"), str):
                self._user_text(block["text"], f"{uuid}-text", ts, is_meta)
            elif block_type == "tool_result":
                self._tool_result(entry, block, uuid, ts)

    def _user_text(self, text: str, event_id: str, ts: datetime, is_meta: bool) -> None:
        cleaned = strip_system_reminders(text)
        if not cleaned:
            return
        if is_meta or is_continuation_preamble(cleaned):
            event_type = SystemMessage()
        else:
            event_type = UserMessage()
            if self.first_user_text is None:
                self.first_user_text = cleaned
        self._push(Event(event_id, ts, event_type, content=Content.text(cleaned)))

    def _tool_result(self, entry: dict, block: dict, uuid: str, ts: datetime) -> None:
        raw_call_id = non_empty(block.get("tool_use_id"))
        if raw_call_id:
            info = self.calls.lookup(raw_call_id)
        else:
            info = self.calls.last
        name = info.name if info else "unknown"

        attrs: dict[str, Any] = {}
        attach_source_attrs(attrs, SCHEMA_VERSION, "tool_result")
        attach_semantic_attrs(attrs, uuid, raw_call_id, infer_tool_kind(name))

        duration_ms = None
        meta = entry.get("toolUseResult")
        if isinstance(meta, dict):
            for key in ("durationMs", "totalDurationMs"):
                value = meta.get(key)
                if isinstance(value, (int, float)) and not isinstance(value, bool):
                    duration_ms = max(int(value), 0)
                    break

        self._push(Event(
            event_id=f"{uuid}-result-{raw_call_id or 'fallback'}",
            timestamp=ts,
            event_type=ToolResult(
                name=name,
                is_error=block.get("is_error") is True,
                call_id=info.event_id if info else None,
            ),
            content=build_tool_result_content(tool_result_text(block.get("content")), info),
            duration_ms=duration_ms,
            attributes=attrs,
        ))

    # -- assistant ---------------------------------------------------------

    def _assistant_entry(self, entry: dict) -> None:
        message = entry.get("message")
        ts = parse_timestamp(entry.get("timestamp"))
        if not isinstance(message, dict) or ts is None:
            logger.debug("Skipping assistant entry without message or timestamp")
            return
        uuid = entry.get("uuid") or f"assistant-{int(ts.timestamp() * 1000)}"
        model = non_empty(message.get("model"))
        base_attrs: dict[str, Any] = {ATTR_MODEL: model} if model else {}

        content = message.get("content")
        if isinstance(content, str):
            content = [{"type": "text", "text": content}]
        if not isinstance(content, list):
            return

        emitted: list[Event] = []
        for block in content:
            if not isinstance(block, dict):
                continue
            block_type = block.get("type")
            if block_type == "text":
                cleaned = strip_system_reminders(block.get("text") or "")
                if cleaned:
                    emitted.append(self._push(Event(
                        f"{uuid}-text", ts, AgentMessage(),
                        content=Content.text(cleaned), attributes=dict(base_attrs),
                    )))
            elif block_type == "thinking":
                cleaned = strip_system_reminders(block.get("thinking") or "")
                if cleaned:
                    emitted.append(self._push(Event(
                        f"{uuid}-thinking", ts, Thinking(),
                        content=Content.text(cleaned), attributes=dict(base_attrs),
                    )))
            elif block_type == "tool_use":
                emitted.append(self._tool_use(block, uuid, ts, base_attrs))

        self._attach_usage(message, emitted)

    def _tool_use(self, block: dict, uuid: str, ts: datetime, base_attrs: dict) -> Event:
        name = block.get("name") or "unknown"
        tool_input = block.get("input")
        if not isinstance(tool_input, dict):
            tool_input = {}
        tool_id = non_empty(block.get("id"))

        attrs = dict(base_attrs)
        attach_source_attrs(attrs, SCHEMA_VERSION, "tool_use")
        attach_semantic_attrs(attrs, uuid, tool_id, infer_tool_kind(name))
        attrs[ATTR_TOOL_USE_NAME] = name
        if tool_id:
            attrs[ATTR_TOOL_USE_ID] = tool_id

        event = self._push(Event(
            event_id=tool_id or f"{uuid}-tool",
            timestamp=ts,
            event_type=classify_tool_use(name, tool_input),
            content=tool_use_content(name, tool_input),
            attributes=attrs,
        ))
        self.calls.record(tool_id, event.event_id, name, _tool_file_path(name, tool_input))
        return event

    def _attach_usage(self, message: dict, emitted: list[Event]) -> None:
        """Put token counts on one event per API message.

        Streaming writes one line per content block with the same message id;
        the usage is cumulative so the holder keeps the largest values seen.
        """
        usage = message.get("usage")
        if not isinstance(usage, dict):
            return
        tokens = {}
        for src, dst in (("input_tokens", ATTR_INPUT_TOKENS), ("output_tokens", ATTR_OUTPUT_TOKENS)):
            value = usage.get(src)
            if isinstance(value, int) and not isinstance(value, bool) and value > 0:
                tokens[dst] = value
        if not tokens:
            return

        message_id = non_empty(message.get("id"))
        holder = self._usage_holders.get(message_id) if message_id else None
        if holder is None:
            agent_events = [e for e in emitted if isinstance(e.event_type, AgentMessage)]
            candidates = agent_events or emitted
            if not candidates:
                return
            holder = candidates[0]
            if message_id:
                self._usage_holders[message_id] = holder
        for key, value in tokens.items():
            holder.attributes[key] = max(value, holder.attributes.get(key, 0))

    # -- bookkeeping entries ----------------------------------------------

    def _bookkeeping_timestamp(self, entry: dict) -> datetime | None:
        return parse_timestamp(entry.get("timestamp")) or self._last_timestamp()

    def _system_entry(self, entry: dict) -> None:
        ts = self._bookkeeping_timestamp(entry)
        if ts is None:
            return
        subtype = non_empty(entry.get("subtype"))
        text = non_empty(entry.get("content")) or f"System event: {subtype or 'unknown'}"
        attrs: dict[str, Any] = {}
        attach_source_attrs(attrs, SCHEMA_VERSION, "system")
        attach_semantic_attrs(attrs, entry.get("uuid"))
        if subtype:
            attrs["system.subtype"] = subtype
        level = non_empty(entry.get("level"))
        if level:
            attrs["system.level"] = level
        event_id = non_empty(entry.get("uuid")) or f"system-{int(ts.timestamp() * 1000)}"
        self._push(Event(event_id, ts, SystemMessage(), content=Content.text(text), attributes=attrs))

    def _progress_entry(self, entry: dict) -> None:
        ts = self._bookkeeping_timestamp(entry)
        if ts is None:
            return
        data = entry.get("data")
        attrs: dict[str, Any] = {}
        attach_source_attrs(attrs, SCHEMA_VERSION, "progress")
        call_id = non_empty(entry.get("toolUseID")) or non_empty(entry.get("parentToolUseID"))
        attach_semantic_attrs(attrs, entry.get("uuid"), call_id)
        if isinstance(data, dict) and non_empty(data.get("type")):
            attrs["progress.type"] = data["type"]
        event_id = non_empty(entry.get("uuid")) or f"progress-{int(ts.timestamp() * 1000)}"
        self._push(Event(
            event_id, ts, SystemMessage(), content=Content.text(progress_text(data)), attributes=attrs,
        ))

    def _queue_entry(self, entry: dict) -> None:
        ts = self._bookkeeping_timestamp(entry)
        if ts is None:
            return
        operation = non_empty(entry.get("operation")) or "unknown"
        queued = non_empty(entry.get("content"))
        if operation == "enqueue" and queued:
            text = f"Queued input: {queued}"
        else:
            text = f"Queue operation: {operation}"
        attrs: dict[str, Any] = {"queue.operation": operation}
        attach_source_attrs(attrs, SCHEMA_VERSION, "queue-operation")
        self._push(Event(
            f"queue-{int(ts.timestamp() * 1000)}-{operation}", ts, SystemMessage(),
            content=Content.text(text), attributes=attrs,
        ))

    def _summary_entry(self, entry: dict) -> None:
        summary = non_empty(entry.get("summary"))
        self.summary = self.summary or summary
        ts = self._bookkeeping_timestamp(entry)
        if ts is None:
            return
        leaf_uuid = non_empty(entry.get("leafUuid"))
        attrs: dict[str, Any] = {}
        attach_source_attrs(attrs, SCHEMA_VERSION, "summary")
        attach_semantic_attrs(attrs, entry.get("uuid") or leaf_uuid)
        if leaf_uuid:
            attrs["summary.leaf_uuid"] = leaf_uuid
        event_id = (
            non_empty(entry.get("uuid")) or leaf_uuid or f"summary-{int(ts.timestamp() * 1000)}"
        )
        self._push(Event(
            event_id, ts, SystemMessage(),
            content=Content.text(f"Summary: {summary}" if summary else "Summary"),
            attributes=attrs,
        ))

    # -- results -----------------------------------------------------------

    def agent(self) -> Agent:
        return Agent(
            provider="anthropic",
            model=self.model or "unknown",
            tool=TOOL_NAME,
            tool_version=self.tool_version,
        )

    def title(self) -> str | None:
        if self.custom_title:
            return self.custom_title
        if self.first_user_text:
            return truncate_title(self.first_user_text, self.title_max_chars)
        return None

    def context(self, source_path: Path | None = None) -> SessionContext:
        attrs: dict[str, Any] = {ATTR_SESSION_ROLE: SESSION_ROLE_PRIMARY}
        if source_path is not None:
            attrs[ATTR_SOURCE_PATH] = str(source_path)
        if self.cwd:
            attrs[ATTR_CWD] = self.cwd
        if self.git_branch:
            attrs[ATTR_GIT_BRANCH] = self.git_branch
        if len(self.all_cwds) > 1:
            attrs["all_cwds"] = list(self.all_cwds)
        return SessionContext(
            title=self.title(),
            description=self.summary,
            tags=[TOOL_NAME],
            attributes=attrs,
        )


def progress_text(data: Any) -> str:
    if not isinstance(data, dict):
        return "Progress update"
    data_type = data.get("type") or "progress"
    if data_type == "hook_progress":
        hook_event = data.get("hookEvent") or "hook"
        hook_name = non_empty(data.get("hookName"))
        if hook_name:
            return f"Hook progress: {hook_event} ({hook_name})"
        return f"Hook progress: {hook_event}"
    message = non_empty(data.get("message"))
    if message:
        return f"Progress: {message}"
    return f"Progress: {data_type}"


def parse_entries(lines, title_max_chars: int = 80) -> ClaudeTranscript:
    """Run one pass over raw JSONL lines. Used by the incremental parser."""
    transcript = ClaudeTranscript(title_max_chars)
    for entry in iter_json_lines(lines):
        transcript.feed(entry)
    return transcript


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


class ClaudeCodeParser(SessionParser):
    name = TOOL_NAME

    def can_parse(self, path: Path) -> bool:
        path = Path(path)
        text = path_text(path)
        return (
            path.suffix == ".jsonl"
            and ".claude/projects/" in text
            and "/subagents/" not in text
            and not is_subagent_file_name(path.name)
        )

    def _parse(self, path: Path, merge_subagents: bool) -> Session:
        transcript = ClaudeTranscript(self.settings.title_max_chars)
        for entry in read_jsonl(path):
            transcript.feed(entry)

        context = transcript.context(path)
        if not merge_subagents:
            header = read_first_json_line(path) or {}
            parent_id = _first_key(header, _PARENT_ID_KEYS)
            if parent_id:
                context.attributes[ATTR_SESSION_ROLE] = SESSION_ROLE_AUXILIARY
                context.attributes[ATTR_PARENT_SESSION_ID] = parent_id
                context.related_session_ids.append(parent_id)

        session = Session(
            session_id=transcript.session_id or path.stem,
            agent=transcript.agent(),
            context=context,
            events=transcript.events,
        )
        return self.finish(path, session, merge_subagents)

    def find_children(self, path: Path, session: Session) -> list[ChildTranscript]:
        candidates: dict[Path, dict] = {}

        # <stem>/subagents/*.jsonl: a subagent-style name is enough
        own_dir = path.with_suffix("") / "subagents"
        for child in _jsonl_files(own_dir):
            header = read_first_json_line(child) or {}
            if is_subagent_file_name(child.name) or _links_to(header, session.session_id):
                candidates[child] = header

        # <dir>/subagents/*.jsonl and legacy agent-*.jsonl siblings: need a header backlink
        for child in _jsonl_files(path.parent / "subagents") + _jsonl_files(path.parent):
            if child == path or child in candidates:
                continue
            if child.parent == path.parent and not is_subagent_file_name(child.name):
                continue
            header = read_first_json_line(child) or {}
            if _links_to(header, session.session_id):
                candidates[child] = header

        children = []
        for child in sorted(candidates):
            header = candidates[child]
            task_id = non_empty(header.get("agentId")) or child.stem
            title = non_empty(header.get("slug")) or task_id
            children.append(ChildTranscript(child, task_id, title))
        return children


def _jsonl_files(directory: Path) -> list[Path]:
    if not directory.is_dir():
        return []
    return sorted(
        p for p in directory.iterdir()
        if p.suffix == ".jsonl" and p.is_file() and not p.name.startswith(".")
    )


def _first_key(data: dict, keys: tuple[str, ...]) -> str | None:
    for key in keys:
        value = non_empty(data.get(key))
        if value:
            return value
    return None


def _links_to(header: dict, parent_session_id: str) -> bool:
    if non_empty(header.get("sessionId")) == parent_session_id:
        return True
    return _first_key(header, _PARENT_ID_KEYS) == parent_session_id

