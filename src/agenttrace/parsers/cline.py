"""Cline task directories (.../tasks/<task-id>/api_conversation_history.json).

The API history carries the conversation but no per-message timestamps.
ui_messages.json beside it supplies the first and last wall-clock times, and
taskHistory.json in the extension's state directory supplies the task title.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Any

from agenttrace.common import (
    CallRegistry,
    ToolUseInfo,
    as_int,
    attach_semantic_attrs,
    attach_source_attrs,
    build_tool_result_content,
    epoch_to_datetime,
    extract_tag_content,
    first_non_empty,
    infer_tool_kind,
    json_text,
    load_json_document,
    load_json_quietly,
    non_empty,
    set_first,
    strip_system_reminders,
    text_diff,
    truncate_title,
)
from agenttrace.errors import SourceDecodeError
from agenttrace.models import (
    ATTR_CWD,
    ATTR_INPUT_TOKENS,
    ATTR_OUTPUT_TOKENS,
    ATTR_SESSION_ROLE,
    ATTR_SOURCE_PATH,
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
    Thinking,
    ToolCall,
    ToolResult,
    UserMessage,
)
from agenttrace.parsers.base import SessionParser, path_text

logger = logging.getLogger(__name__)

TOOL_NAME = "cline"
SCHEMA_VERSION = "cline-api-history-v1"
HISTORY_FILE = "api_conversation_history.json"

# Messages carry no timestamps; consecutive messages are spaced this far apart
MESSAGE_SPACING_MS = 100

_TOOL_RESULT_PREFIX_RE = re.compile(r"^\[(\w+)(?:\s+for\s+'([^']*)')?\]\s+Result:\n?")

# Tool uses that are really the agent talking to the user
_SPEAKING_TOOLS = {
    "attempt_completion": "result",
    "ask_followup_question": "question",
    "plan_mode_respond": "response",
}

_PATH_TOOLS = {
    "read_file", "write_to_file", "insert_content", "apply_diff",
    "replace_in_file", "search_and_replace",
}


def parse_tool_result_text(text: str) -> tuple[str, str | None, str] | None:
    """Split "[tool for 'path'] Result:" prefixed text into (tool, path, body)."""
    match = _TOOL_RESULT_PREFIX_RE.match(text)
    if not match:
        return None
    return match.group(1), match.group(2), text[match.end():]


def classify_cline_tool(name: str, tool_input: Any) -> EventType:
    data = tool_input if isinstance(tool_input, dict) else {}
    path = non_empty(data.get("path")) or "unknown"
    if name in ("execute_command", "spawn_process"):
        return ShellCommand(command=non_empty(data.get("command")) or "")
    if name == "write_to_file":
        return FileCreate(path=path)
    if name == "search_and_replace":
        old = data.get("search")
        new = data.get("replace")
        diff = None
        if isinstance(old, str) and isinstance(new, str):
            diff = text_diff(old, new, path) or None
        return FileEdit(path=path, diff=diff)
    if name in ("insert_content", "apply_diff", "replace_in_file"):
        diff = first_non_empty(data.get("diff")) if name != "insert_content" else None
        return FileEdit(path=path, diff=diff)
    if name == "read_file":
        return FileRead(path=path)
    if name in ("search_files", "find_references"):
        return CodeSearch(query=first_non_empty(data.get("regex"), data.get("content_pattern")) or "")
    if name == "list_files":
        return FileSearch(pattern=non_empty(data.get("path")) or ".")
    return ToolCall(name=name)


def cline_tool_content(name: str, tool_input: Any) -> Content:
    if name in ("execute_command", "spawn_process") and isinstance(tool_input, dict):
        return Content([CodeBlock(non_empty(tool_input.get("command")) or "", "bash")])
    if tool_input in (None, {}):
        return Content.empty()
    return Content.json(tool_input)


def _tool_result_output(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "\n".join(
            b["text"] for b in content if isinstance(b, dict) and isinstance(b.get("text"), str)
        )
    return "" if content is None else json_text(content)


def find_task_history_entry(task_dir: Path) -> dict | None:
    """This task's entry in state/taskHistory.json, if the file can be found."""
    data_dir = task_dir.parent.parent
    for candidate in (data_dir.parent / "state" / "taskHistory.json", data_dir / "state" / "taskHistory.json"):
        if not candidate.is_file():
            continue
        entries = load_json_quietly(candidate)
        if not isinstance(entries, list):
            continue
        for entry in entries:
            if isinstance(entry, dict) and entry.get("id") == task_dir.name:
                return entry
    return None


class ClineTranscript:
    def __init__(self, base_ms: int):
        self.base_ms = base_ms
        self.events: list[Event] = []
        self.calls = CallRegistry()
        self.counter = 0
        self.model: str | None = None
        self.provider: str | None = None
        self.first_user_text: str | None = None

    def _emit(self, ts: datetime, event_type: EventType, content: Content, raw_type: str, **attrs: Any) -> Event:
        self.counter += 1
        attributes: dict[str, Any] = dict(attrs)
        attach_source_attrs(attributes, SCHEMA_VERSION, raw_type)
        event = Event(f"cline-{self.counter}", ts, event_type, content=content, attributes=attributes)
        self.events.append(event)
        return event

    def note_model_info(self, info: Any) -> None:
        if isinstance(info, dict):
            self.model = set_first(self.model, info.get("modelId"))
            self.provider = set_first(self.provider, info.get("providerId"))

    def feed(self, index: int, message: dict) -> None:
        ts = epoch_to_datetime(self.base_ms + index * MESSAGE_SPACING_MS)
        if ts is None:
            return
        self.note_model_info(message.get("modelInfo"))
        content = message.get("content")
        if isinstance(content, str):
            content = [{"type": "text", "text": content}]
        if not isinstance(content, list):
            logger.debug("Skipping Cline message %d without content blocks", index)
            return
        role = message.get("role")
        for block in content:
            if not isinstance(block, dict):
                continue
            if role == "user":
                self._user_block(block, ts)
            elif role == "assistant":
                self._assistant_block(block, ts)

    def _user_text(self, text: str, ts: datetime) -> None:
        if self.first_user_text is None:
            self.first_user_text = text
        self._emit(ts, UserMessage(), Content.text(text), "text")

    def _user_block(self, block: dict, ts: datetime) -> None:
        kind = block.get("type")
        if kind == "tool_result":
            tool_use_id = non_empty(block.get("tool_use_id"))
            info = self.calls.lookup(tool_use_id)
            name = self.calls.tool_name(tool_use_id)
            attrs: dict[str, Any] = {}
            attach_semantic_attrs(attrs, call_id=tool_use_id, tool_kind=infer_tool_kind(name))
            self._emit(
                ts,
                ToolResult(name=name, is_error=bool(block.get("is_error")),
                           call_id=info.event_id if info else None),
                build_tool_result_content(_tool_result_output(block.get("content")), info),
                "tool_result", **attrs,
            )
            return
        if kind != "text":
            return

        text = block.get("text")
        if not isinstance(text, str) or not text:
            return
        if text.startswith("<environment_details>") or "# task_progress" in text:
            return
        if text.startswith("<task>"):
            task_text = extract_tag_content(text, "task")
            if task_text:
                self._user_text(task_text, ts)
            return

        parsed = parse_tool_result_text(text)
        if parsed is not None:
            tool_name, file_path, body = parsed
            if tool_name == "plan_mode_respond" or "<user_message>" in text:
                user_text = extract_tag_content(text, "user_message")
                if user_text:
                    self._user_text(user_text, ts)
                return
            last = self.calls.last
            call = last if last is not None and last.name == tool_name else None
            info = ToolUseInfo(tool_name, file_path or (call.file_path if call else None))
            self._emit(
                ts,
                ToolResult(name=tool_name, call_id=call.event_id if call else None),
                build_tool_result_content(body, info),
                "text",
            )
            return

        if "<user_message>" in text:
            user_text = extract_tag_content(text, "user_message")
            if user_text:
                self._user_text(user_text, ts)
            return

        cleaned = strip_system_reminders(text).strip()
        if cleaned:
            self._user_text(cleaned, ts)

    def _assistant_block(self, block: dict, ts: datetime) -> None:
        kind = block.get("type")
        if kind == "text":
            cleaned = strip_system_reminders(block.get("text") or "").strip()
            if cleaned:
                self._emit(ts, AgentMessage(), Content.text(cleaned), "text")
        elif kind == "thinking":
            thinking = non_empty(block.get("thinking"))
            if thinking:
                self._emit(ts, Thinking(), Content.text(thinking), "thinking")
        elif kind == "tool_use":
            self._tool_use(block, ts)

    def _tool_use(self, block: dict, ts: datetime) -> None:
        name = non_empty(block.get("name")) or "unknown"
        tool_input = block.get("input") if isinstance(block.get("input"), dict) else {}
        tool_use_id = non_empty(block.get("id"))

        if name in _SPEAKING_TOOLS:
            said = non_empty(tool_input.get(_SPEAKING_TOOLS[name]))
            if said:
                event = self._emit(ts, AgentMessage(), Content.text(said), "tool_use", tool_name=name)
                self.calls.record(tool_use_id, event.event_id, name)
            return

        attrs: dict[str, Any] = {"tool_name": name}
        attach_semantic_attrs(attrs, call_id=tool_use_id, tool_kind=infer_tool_kind(name))
        event = self._emit(ts, classify_cline_tool(name, tool_input), cline_tool_content(name, tool_input), "tool_use", **attrs)
        file_path = non_empty(tool_input.get("path")) if name in _PATH_TOOLS else None
        self.calls.record(tool_use_id, event.event_id, name, file_path)


class ClineParser(SessionParser):
    name = TOOL_NAME

    def can_parse(self, path: Path) -> bool:
        path = Path(path)
        return path.name == HISTORY_FILE and "/tasks/" in path_text(path)

    def _parse(self, path: Path, merge_subagents: bool) -> Session:
        messages = load_json_document(path)
        if not isinstance(messages, list):
            raise SourceDecodeError("expected a JSON array of API messages", path)
        task_dir = path.parent
        task_id = task_dir.name

        ui_messages = load_json_quietly(task_dir / "ui_messages.json")
        ui_times = []
        if isinstance(ui_messages, list):
            ui_times = [as_int(m.get("ts")) for m in ui_messages if isinstance(m, dict)]
            ui_times = [t for t in ui_times if t]
        first_ms = ui_times[0] if ui_times else None
        last_ms = ui_times[-1] if ui_times else None
        base_ms = first_ms or as_int(task_id) or 0

        transcript = ClineTranscript(base_ms)
        for index, message in enumerate(messages):
            if isinstance(message, dict):
                transcript.feed(index, message)
            else:
                logger.debug("Skipping non-object Cline message %d in %s", index, path)
        if isinstance(ui_messages, list):
            for ui_message in ui_messages:
                if isinstance(ui_message, dict):
                    transcript.note_model_info(ui_message.get("modelInfo"))

        entry = find_task_history_entry(task_dir) or {}
        transcript.model = set_first(transcript.model, entry.get("modelId"))
        attrs: dict[str, Any] = {
            ATTR_SOURCE_PATH: str(path),
            ATTR_SESSION_ROLE: SESSION_ROLE_PRIMARY,
        }
        if non_empty(entry.get("cwdOnTaskInitialization")):
            attrs[ATTR_CWD] = entry["cwdOnTaskInitialization"]
        for key, attr in (("tokensIn", ATTR_INPUT_TOKENS), ("tokensOut", ATTR_OUTPUT_TOKENS)):
            if as_int(entry.get(key)):
                attrs[attr] = as_int(entry.get(key))

        title = non_empty(entry.get("task")) or transcript.first_user_text
        created_at = epoch_to_datetime(first_ms) if first_ms else None
        session = Session(
            session_id=task_id,
            agent=Agent(
                provider=transcript.provider or "unknown",
                model=transcript.model or "unknown",
                tool=TOOL_NAME,
            ),
            context=SessionContext(
                title=truncate_title(title, self.settings.title_max_chars) if title else None,
                tags=[TOOL_NAME],
                created_at=created_at,
                updated_at=epoch_to_datetime(last_ms) if last_ms else created_at,
                attributes=attrs,
            ),
            events=transcript.events,
        )
        return self.finish(path, session, merge_subagents)
