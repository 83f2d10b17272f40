"""OpenCode session stores.

An index document per session plus one JSON file per message and per
message part. Two layouts exist on disk:

    storage/session/info/<id>.json            (older)
    storage/session/message/<id>/<msg>.json
    storage/session/part/<id>/<msg>/<part>.json

    storage/session/<project>/<id>.json       (newer)
    storage/message/<id>/<msg>.json
    storage/part/<msg>/<part>.json

Timestamps are epoch milliseconds.
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Any

from agenttrace.common import (
    ToolUseInfo,
    as_int,
    attach_semantic_attrs,
    attach_source_attrs,
    build_tool_result_content,
    first_non_empty,
    infer_tool_kind,
    load_json_document,
    load_json_quietly,
    non_empty,
    parse_timestamp,
    set_first,
    text_diff,
    truncate_title,
)
from agenttrace.errors import SourceDecodeError
from agenttrace.models import (
    ATTR_CWD,
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
    Thinking,
    ToolCall,
    ToolResult,
    UserMessage,
    WebFetch,
    WebSearch,
)
from agenttrace.parsers.base import ChildTranscript, SessionParser, path_text

logger = logging.getLogger(__name__)

TOOL_NAME = "opencode"
SCHEMA_VERSION = "opencode-storage-v1"


def _input_path(data: dict) -> str:
    return first_non_empty(data.get("filePath"), data.get("file_path"), data.get("path")) or "unknown"


def classify_opencode_tool(name: str, tool_input: Any) -> EventType:
    data = tool_input if isinstance(tool_input, dict) else {}
    if name in ("bash", "shell"):
        return ShellCommand(command=non_empty(data.get("command")) or "")
    if name in ("edit", "str_replace_editor", "patch"):
        old = data.get("oldString", data.get("old_string"))
        new = data.get("newString", data.get("new_string"))
        diff = None
        if isinstance(old, str) and isinstance(new, str):
            diff = text_diff(old, new, _input_path(data)) or None
        return FileEdit(path=_input_path(data), diff=diff)
    if name in ("write", "create"):
        return FileCreate(path=_input_path(data))
    if name in ("read", "view"):
        return FileRead(path=_input_path(data))
    if name in ("grep", "search"):
        return CodeSearch(query=first_non_empty(data.get("pattern"), data.get("query")) or "")
    if name in ("glob", "find", "list"):
        return FileSearch(pattern=first_non_empty(data.get("pattern"), data.get("path")) or "*")
    if name in ("webfetch", "web_fetch"):
        return WebFetch(url=non_empty(data.get("url")) or "")
    if name in ("websearch", "web_search"):
        return WebSearch(query=non_empty(data.get("query")) or "")
    return ToolCall(name=name)


def opencode_tool_content(name: str, tool_input: Any) -> Content:
    if name in ("bash", "shell") and isinstance(tool_input, dict):
        return Content([CodeBlock(non_empty(tool_input.get("command")) or "", "bash")])
    if tool_input is None:
        return Content.empty()
    return Content.json(tool_input)


def _span_ms(time_range: Any) -> tuple[int | None, int | None]:
    if not isinstance(time_range, dict):
        return None, None
    return as_int(time_range.get("start")), as_int(time_range.get("end"))


def part_timing(part: dict) -> tuple[int | None, int | None]:
    """(start epoch ms, duration ms) for a part, from part.time or state.time."""
    start, end = _span_ms(part.get("time"))
    if start is None:
        state = part.get("state") if isinstance(part.get("state"), dict) else {}
        start, end = _span_ms(state.get("time"))
    duration = max(end - start, 0) if start is not None and end is not None else None
    return start, duration


def _message_created(message: dict) -> int:
    time_info = message.get("time")
    if isinstance(time_info, dict):
        return as_int(time_info.get("created")) or 0
    return 0


def storage_dirs(info_path: Path, session_id: str) -> tuple[Path | None, list[Path]]:
    """The message directory and candidate part roots for a session index document."""
    session_dir = info_path.parent.parent
    storage = session_dir.parent
    candidates = [session_dir / "message" / session_id, storage / "message" / session_id]
    message_dir = next((d for d in candidates if d.is_dir()), None)
    part_roots = [session_dir / "part" / session_id, storage / "part"]
    return message_dir, part_roots


def load_messages(message_dir: Path | None) -> list[dict]:
    if message_dir is None:
        return []
    messages = []
    for file_path in sorted(message_dir.glob("*.json")):
        data = load_json_quietly(file_path)
        if isinstance(data, dict) and non_empty(data.get("id")):
            messages.append(data)
        else:
            logger.debug("Skipping unreadable OpenCode message %s", file_path)
    messages.sort(key=_message_created)
    return messages


def load_parts(part_roots: list[Path], message_id: str) -> list[dict]:
    for root in part_roots:
        part_dir = root / message_id
        if not part_dir.is_dir():
            continue
        parts = []
        for file_path in sorted(part_dir.glob("*.json")):
            data = load_json_quietly(file_path)
            if isinstance(data, dict) and non_empty(data.get("id")) and non_empty(data.get("type")):
                parts.append(data)
            else:
                logger.debug("Skipping unreadable OpenCode part %s", file_path)
        parts.sort(key=lambda p: part_timing(p)[0] or 0)
        return parts
    return []


def _token_attrs(tokens: Any) -> dict[str, int]:
    attrs: dict[str, int] = {}
    if not isinstance(tokens, dict):
        return attrs
    for key, attr in (("input", ATTR_INPUT_TOKENS), ("output", ATTR_OUTPUT_TOKENS)):
        value = as_int(tokens.get(key))
        if value:
            attrs[attr] = value
    return attrs


class OpenCodeTranscript:
    def __init__(self, info: dict, title_max_chars: int = 80):
        self.info = info
        self.title_max_chars = title_max_chars
        self.events: list[Event] = []
        self.model: str | None = None
        self.provider: str | None = None
        self.first_user_text: str | None = None

    def feed_message(self, message: dict, parts: list[dict]) -> None:
        role = message.get("role")
        self.model = set_first(self.model, first_non_empty(message.get("modelID"), message.get("modelId")))
        self.provider = set_first(self.provider, message.get("providerID"))
        msg_ts = parse_timestamp(_message_created(message) or None)

        if not parts:
            if role == "user" and msg_ts is not None:
                self.events.append(Event(message["id"], msg_ts, UserMessage(), content=Content.empty()))
            return

        token_attrs = _token_attrs(message.get("tokens")) if role == "assistant" else {}
        for part in parts:
            start, duration = part_timing(part)
            ts = parse_timestamp(start) if start else msg_ts
            if ts is None:
                logger.debug("Skipping OpenCode part %s without timestamp", part.get("id"))
                continue
            kind = part.get("type")
            if kind == "text":
                event = self._text_part(part, role, ts, duration)
                if event is not None and token_attrs:
                    event.attributes.update(token_attrs)
                    token_attrs = {}
            elif kind == "reasoning":
                text = non_empty(part.get("text"))
                if text:
                    self.events.append(Event(part["id"], ts, Thinking(), content=Content.text(text), duration_ms=duration))
            elif kind == "tool":
                self._tool_part(part, ts, duration)
            else:
                logger.debug("Skipping OpenCode part of type %r", kind)

    def _text_part(self, part: dict, role: Any, ts: datetime, duration: int | None) -> Event | None:
        text = part.get("text")
        if not isinstance(text, str) or not text or part.get("synthetic"):
            return None
        if role == "user":
            event_type = UserMessage()
            if self.first_user_text is None and text.strip():
                self.first_user_text = text.strip()
        elif role == "assistant":
            event_type = AgentMessage()
        else:
            return None
        attrs: dict[str, Any] = {}
        attach_source_attrs(attrs, SCHEMA_VERSION, "text")
        if role == "assistant" and self.model:
            attrs[ATTR_MODEL] = self.model
        event = Event(part["id"], ts, event_type, content=Content.text(text), duration_ms=duration, attributes=attrs)
        self.events.append(event)
        return event

    def _tool_part(self, part: dict, ts: datetime, duration: int | None) -> None:
        name = non_empty(part.get("tool")) or "unknown"
        state = part.get("state") if isinstance(part.get("state"), dict) else {}
        status = non_empty(state.get("status")) or "unknown"
        tool_input = state.get("input")
        event_type = classify_opencode_tool(name, tool_input)

        metadata = state.get("metadata") if isinstance(state.get("metadata"), dict) else {}
        exit_code = as_int(metadata.get("exit"))
        if isinstance(event_type, ShellCommand) and exit_code is not None:
            event_type = ShellCommand(command=event_type.command, exit_code=exit_code)

        call_id = non_empty(part.get("callID")) or part["id"]
        attrs: dict[str, Any] = {"tool_name": name}
        attach_source_attrs(attrs, SCHEMA_VERSION, "tool")
        attach_semantic_attrs(attrs, non_empty(part.get("messageID")), call_id, infer_tool_kind(name))
        call_event_id = f"{part['id']}-call"
        self.events.append(Event(
            call_event_id, ts, event_type,
            content=opencode_tool_content(name, tool_input),
            duration_ms=duration,
            attributes=attrs,
        ))
        path = getattr(event_type, "path", None)

        if status not in ("completed", "error"):
            return
        output = first_non_empty(state.get("output"), state.get("error")) or ""
        result_attrs: dict[str, Any] = {}
        attach_source_attrs(result_attrs, SCHEMA_VERSION, "tool")
        attach_semantic_attrs(result_attrs, non_empty(part.get("messageID")), call_id, infer_tool_kind(name))
        self.events.append(Event(
            f"{part['id']}-result", ts,
            ToolResult(name=name, is_error=status == "error", call_id=call_event_id),
            content=build_tool_result_content(output, ToolUseInfo(name, path, call_event_id)),
            attributes=result_attrs,
        ))

    def build_session(self, path: Path) -> Session:
        info = self.info
        session_id = non_empty(info.get("id")) or path.stem
        time_info = info.get("time") if isinstance(info.get("time"), dict) else {}
        parent_id = non_empty(info.get("parentID"))
        attrs: dict[str, Any] = {
            ATTR_SOURCE_PATH: str(path),
            ATTR_SESSION_ROLE: SESSION_ROLE_AUXILIARY if parent_id else SESSION_ROLE_PRIMARY,
        }
        if parent_id:
            attrs[ATTR_PARENT_SESSION_ID] = parent_id
        if non_empty(info.get("directory")):
            attrs[ATTR_CWD] = info["directory"]

        title = non_empty(info.get("title"))
        if title is None and self.first_user_text:
            title = truncate_title(self.first_user_text, self.title_max_chars)
        return Session(
            session_id=session_id,
            agent=Agent(
                provider=self.provider or "unknown",
                model=self.model or "unknown",
                tool=TOOL_NAME,
                tool_version=non_empty(info.get("version")),
            ),
            context=SessionContext(
                title=title,
                tags=[TOOL_NAME],
                created_at=parse_timestamp(time_info.get("created")),
                updated_at=parse_timestamp(time_info.get("updated")),
                attributes=attrs,
            ),
            events=self.events,
        )


class OpenCodeParser(SessionParser):
    name = TOOL_NAME

    def can_parse(self, path: Path) -> bool:
        path = Path(path)
        return (
            path.suffix == ".json"
            and "opencode" in path_text(path)
            and path.parent.parent.name == "session"
        )

    def _parse(self, path: Path, merge_subagents: bool) -> Session:
        info = load_json_document(path)
        if not isinstance(info, dict) or not non_empty(info.get("id")):
            raise SourceDecodeError("session index document has no id", path)
        transcript = OpenCodeTranscript(info, self.settings.title_max_chars)
        message_dir, part_roots = storage_dirs(path, info["id"])
        for message in load_messages(message_dir):
            transcript.feed_message(message, load_parts(part_roots, message["id"]))
        return self.finish(path, transcript.build_session(path), merge_subagents)

    def find_children(self, path: Path, session: Session) -> list[ChildTranscript]:
        """Index documents in the same directory naming this session as parentID."""
        children = []
        for candidate in sorted(path.parent.glob("*.json")):
            if candidate == path:
                continue
            info = load_json_quietly(candidate)
            if not isinstance(info, dict) or info.get("parentID") != session.session_id:
                continue
            child_id = non_empty(info.get("id")) or candidate.stem
            task_id = f"subagent-{child_id}"
            children.append(ChildTranscript(candidate, task_id, non_empty(info.get("title")) or task_id))
        return children
