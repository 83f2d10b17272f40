"""Amp thread documents (~/.local/share/amp/threads/T-*.json)."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from agenttrace.common import (
    CallRegistry,
    as_int,
    attach_semantic_attrs,
    attach_source_attrs,
    build_tool_result_content,
    epoch_to_datetime,
    first_non_empty,
    infer_provider,
    infer_tool_kind,
    json_text,
    load_json_document,
    non_empty,
    set_first,
    truncate_title,
)
from agenttrace.errors import SourceDecodeError
from agenttrace.models import (
    ATTR_INPUT_TOKENS,
    ATTR_MODEL,
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
    WebFetch,
    WebSearch,
)
from agenttrace.parsers.base import SessionParser, path_text

logger = logging.getLogger(__name__)

TOOL_NAME = "amp"
SCHEMA_VERSION = "amp-thread-v1"

_SHELL_TOOLS = {"Bash", "bash", "Terminal"}


def classify_amp_tool(name: str, tool_input: Any) -> EventType:
    data = tool_input if isinstance(tool_input, dict) else {}
    path = first_non_empty(data.get("path"), data.get("file_path")) or "unknown"
    if name in _SHELL_TOOLS:
        return ShellCommand(command=non_empty(data.get("command")) or "")
    if name in ("Edit", "edit", "str_replace_editor", "edit_file"):
        return FileEdit(path=path)
    if name in ("Write", "write", "create_file"):
        return FileCreate(path=path)
    if name in ("Read", "read"):
        return FileRead(path=path)
    if name in ("Grep", "grep"):
        return CodeSearch(query=first_non_empty(data.get("pattern"), data.get("query")) or "")
    if name in ("Glob", "glob"):
        return FileSearch(pattern=non_empty(data.get("pattern")) or "*")
    if name in ("WebFetch", "web_fetch", "read_web_page"):
        return WebFetch(url=non_empty(data.get("url")) or "")
    if name in ("WebSearch", "web_search"):
        return WebSearch(query=non_empty(data.get("query")) or "")
    if name in ("todo_write", "TodoWrite"):
        return ToolCall(name="todo_write")
    return ToolCall(name=name)


def amp_tool_content(name: str, tool_input: Any) -> Content:
    if name in _SHELL_TOOLS and isinstance(tool_input, dict):
        return Content([CodeBlock(non_empty(tool_input.get("command")) or "", "bash")])
    if tool_input in (None, {}):
        return Content.empty()
    return Content.json(tool_input)


def tool_run_output(run: Any) -> str:
    if not isinstance(run, dict) or "result" not in run:
        return ""
    result = run["result"]
    if isinstance(result, str):
        return result
    if isinstance(result, dict) and isinstance(result.get("content"), str):
        return result["content"]
    return json_text(result)


def _usage_attrs(usage: Any) -> dict[str, int]:
    attrs: dict[str, int] = {}
    if not isinstance(usage, dict):
        return attrs
    for key, attr in (("inputTokens", ATTR_INPUT_TOKENS), ("outputTokens", ATTR_OUTPUT_TOKENS)):
        value = as_int(usage.get(key))
        if value:
            attrs[attr] = value
    return attrs


class AmpThread:
    def __init__(self, thread: dict, title_max_chars: int = 80):
        self.thread = thread
        self.title_max_chars = title_max_chars
        self.created_ms = as_int(thread.get("created")) or 0
        self.events: list[Event] = []
        self.calls = CallRegistry()
        self.counter = 0
        self.model: str | None = None
        self.first_user_text: str | None = None

    def _next_id(self) -> str:
        self.counter += 1
        return f"amp-{self.counter}"

    def _message_ts(self, message: dict) -> datetime | None:
        meta = message.get("meta")
        sent_at = as_int(meta.get("sentAt")) if isinstance(meta, dict) else None
        if sent_at:
            return epoch_to_datetime(sent_at)
        base = epoch_to_datetime(self.created_ms)
        if base is None:
            return None
        return base + timedelta(seconds=as_int(message.get("messageId")) or 0)

    def feed(self, message: dict) -> None:
        ts = self._message_ts(message)
        content = message.get("content")
        if ts is None or not isinstance(content, list):
            logger.debug("Skipping Amp message %r", message.get("messageId"))
            return
        usage = message.get("usage")
        if isinstance(usage, dict):
            self.model = set_first(self.model, usage.get("model"))
        token_attrs = _usage_attrs(usage)
        role = message.get("role")

        for block in content:
            if not isinstance(block, dict):
                continue
            kind = block.get("type")
            if kind == "text":
                text = block.get("text")
                if not isinstance(text, str) or not text:
                    continue
                attrs: dict[str, Any] = {}
                attach_source_attrs(attrs, SCHEMA_VERSION, "text")
                if role == "user":
                    self.first_user_text = set_first(self.first_user_text, text)
                    event_type: EventType = UserMessage()
                elif role == "assistant":
                    event_type = AgentMessage()
                    attrs.update(token_attrs)
                    token_attrs = {}
                    if isinstance(usage, dict) and non_empty(usage.get("model")):
                        attrs[ATTR_MODEL] = usage["model"]
                else:
                    continue
                self.events.append(Event(self._next_id(), ts, event_type, content=Content.text(text), attributes=attrs))
            elif kind == "thinking":
                thinking = non_empty(block.get("thinking"))
                if thinking:
                    self.events.append(Event(self._next_id(), ts, Thinking(), content=Content.text(thinking)))
            elif kind == "tool_use":
                self._tool_use(block, ts)
            elif kind == "tool_result":
                self._tool_result(block, ts)

    def _tool_use(self, block: dict, ts: datetime) -> None:
        name = non_empty(block.get("name")) or "unknown"
        tool_input = block.get("input")
        tool_use_id = non_empty(block.get("id"))
        event_type = classify_amp_tool(name, tool_input)
        attrs: dict[str, Any] = {"tool_name": name}
        attach_source_attrs(attrs, SCHEMA_VERSION, "tool_use")
        attach_semantic_attrs(attrs, call_id=tool_use_id, tool_kind=infer_tool_kind(name))
        event_id = self._next_id()
        self.events.append(Event(event_id, ts, event_type, content=amp_tool_content(name, tool_input), attributes=attrs))
        self.calls.record(tool_use_id, event_id, name, getattr(event_type, "path", None))

    def _tool_result(self, block: dict, ts: datetime) -> None:
        tool_use_id = non_empty(block.get("toolUseID"))
        info = self.calls.lookup(tool_use_id)
        run = block.get("run")
        status = run.get("status") if isinstance(run, dict) else None
        name = self.calls.tool_name(tool_use_id)
        attrs: dict[str, Any] = {}
        attach_source_attrs(attrs, SCHEMA_VERSION, "tool_result")
        attach_semantic_attrs(attrs, call_id=tool_use_id, tool_kind=infer_tool_kind(name))
        self.events.append(Event(
            self._next_id(), ts,
            ToolResult(name=name, is_error=status in ("error", "rejected-by-user"), call_id=info.event_id if info else None),
            content=build_tool_result_content(tool_run_output(run), info),
            attributes=attrs,
        ))

    def build_session(self, path: Path) -> Session:
        model = self.model or "unknown"
        title = non_empty(self.thread.get("title"))
        if title is None and self.first_user_text:
            title = truncate_title(self.first_user_text, self.title_max_chars)
        return Session(
            session_id=non_empty(self.thread.get("id")) or path.stem,
            agent=Agent(provider=infer_provider(model), model=model, tool=TOOL_NAME),
            context=SessionContext(
                title=title,
                tags=[TOOL_NAME],
                created_at=epoch_to_datetime(self.created_ms) if self.created_ms else None,
                attributes={
                    ATTR_SOURCE_PATH: str(path),
                    ATTR_SESSION_ROLE: SESSION_ROLE_PRIMARY,
                },
            ),
            events=self.events,
        )


class AmpParser(SessionParser):
    name = TOOL_NAME

    def can_parse(self, path: Path) -> bool:
        path = Path(path)
        return path.suffix == ".json" and "amp/threads/" in path_text(path)

    def _parse(self, path: Path, merge_subagents: bool) -> Session:
        thread = load_json_document(path)
        if not isinstance(thread, dict) or not isinstance(thread.get("messages"), list):
            raise SourceDecodeError("expected a thread object with a messages array", path)
        amp = AmpThread(thread, self.settings.title_max_chars)
        for message in thread["messages"]:
            if isinstance(message, dict):
                amp.feed(message)
        return self.finish(path, amp.build_session(path), merge_subagents)
