"""Gemini CLI chat logs (~/.gemini/tmp/<project-hash>/chats/session-*.json[l]).

Older versions write one JSON document per session with a messages array.
Newer versions append JSONL records (session_metadata, user, gemini,
message_update). The file extension selects the sub-parser.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Any

from agenttrace.common import (
    CallRegistry,
    attach_semantic_attrs,
    attach_source_attrs,
    first_non_empty,
    infer_tool_kind,
    json_text,
    load_json_document,
    non_empty,
    normalize_role_label,
    parse_timestamp,
    read_jsonl,
    set_first,
    shell_command_from_args,
    text_diff,
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

TOOL_NAME = "gemini"
SCHEMA_JSON = "gemini-chat-json-v1"
SCHEMA_JSONL = "gemini-chat-jsonl-v1"

_URL_RE = re.compile(r"https?://\S+")


def classify_tool(name: str, args: Any) -> EventType:
    """Map a Gemini CLI tool call onto a canonical event type."""
    a = args if isinstance(args, dict) else {}
    path = first_non_empty(a.get("absolute_path"), a.get("file_path"), a.get("path"))
    if name == "run_shell_command":
        return ShellCommand(command=shell_command_from_args(a) or "")
    if name == "read_file":
        return FileRead(path=path or "unknown")
    if name == "write_file":
        return FileCreate(path=path or "unknown")
    if name in ("replace", "edit"):
        old = a.get("old_string")
        new = a.get("new_string")
        diff = None
        if isinstance(old, str) and isinstance(new, str):
            diff = text_diff(old, new, path or "unknown") or None
        return FileEdit(path=path or "unknown", diff=diff)
    if name == "glob":
        return FileSearch(pattern=non_empty(a.get("pattern")) or "*")
    if name in ("search_file_content", "grep", "grep_search"):
        return CodeSearch(query=non_empty(a.get("pattern")) or "")
    if name == "google_web_search":
        return WebSearch(query=non_empty(a.get("query")) or "")
    if name == "web_fetch":
        url = non_empty(a.get("url"))
        if url is None and isinstance(a.get("prompt"), str):
            match = _URL_RE.search(a["prompt"])
            url = match.group(0) if match else None
        return WebFetch(url=url or "")
    return ToolCall(name=name)


def _call_content(event_type: EventType, args: Any) -> Content:
    if isinstance(event_type, ShellCommand):
        return Content([CodeBlock(event_type.command, "bash")])
    if args in (None, {}):
        return Content.empty()
    return Content.json(args)


def _text_of(content: Any) -> str:
    """Message text from a string or a list of {text} parts."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "\n".join(
            p["text"] for p in content if isinstance(p, dict) and isinstance(p.get("text"), str)
        )
    return ""


def _token_attrs(tokens: Any) -> dict[str, int]:
    attrs: dict[str, int] = {}
    if not isinstance(tokens, dict):
        return attrs
    for key, attr in (("input", ATTR_INPUT_TOKENS), ("output", ATTR_OUTPUT_TOKENS)):
        value = tokens.get(key)
        if isinstance(value, int) and not isinstance(value, bool) and value > 0:
            attrs[attr] = value
    return attrs


def _result_text(result: Any) -> str:
    """Flatten a functionResponse payload or a toolCalls[].result list to text."""
    if isinstance(result, list):
        return "\n".join(_result_text(r) for r in result if r is not None)
    if isinstance(result, dict):
        if "functionResponse" in result:
            return _result_text(result["functionResponse"])
        if "response" in result:
            return _result_text(result["response"])
        for key in ("output", "content", "error"):
            if isinstance(result.get(key), str):
                return result[key]
    if isinstance(result, str):
        return result
    return "" if result is None else json_text(result)


class GeminiTranscript:
    def __init__(self, title_max_chars: int = 80):
        self.title_max_chars = title_max_chars
        self.events: list[Event] = []
        self.calls = CallRegistry()
        self.counter = 0
        self.session_id: str | None = None
        self.model: str | None = None
        self.project_hash: str | None = None
        self.start_time: datetime | None = None
        self.last_updated: datetime | None = None
        self.first_user_text: str | None = None
        self.by_message_id: dict[str, list[Event]] = {}

    def _next_id(self) -> str:
        self.counter += 1
        return f"gemini-{self.counter}"

    def _emit(self, event: Event, message_id: str | None = None) -> Event:
        self.events.append(event)
        if message_id:
            self.by_message_id.setdefault(message_id, []).append(event)
        return event

    def _user_text(self, text: str, ts: datetime, message_id: str | None, schema: str) -> None:
        if not text.strip():
            return
        if self.first_user_text is None:
            self.first_user_text = text.strip()
        attrs: dict[str, Any] = {}
        attach_source_attrs(attrs, schema, "user")
        self._emit(
            Event(message_id or self._next_id(), ts, UserMessage(), content=Content.text(text), attributes=attrs),
            message_id,
        )

    def _tool_call(
        self, name: str, args: Any, call_id: str | None, ts: datetime, schema: str,
        message_id: str | None = None,
    ) -> Event:
        event_type = classify_tool(name, args)
        attrs: dict[str, Any] = {"tool_name": name}
        attach_source_attrs(attrs, schema, "functionCall")
        attach_semantic_attrs(attrs, message_id, call_id, infer_tool_kind(name))
        event = self._emit(Event(
            self._next_id(), ts, event_type, content=_call_content(event_type, args), attributes=attrs,
        ), message_id)
        self.calls.record(call_id, event.event_id, name, getattr(event_type, "path", None))
        return event

    def _tool_result(
        self, name: str | None, output: str, call_id: str | None, ts: datetime, schema: str,
        is_error: bool = False, duration_ms: int | None = None, message_id: str | None = None,
    ) -> None:
        if call_id:
            info = self.calls.lookup(call_id)
        else:
            last = self.calls.last
            info = last if last is not None and (name is None or last.name == name) else None
        result_name = name or (info.name if info else "unknown")
        attrs: dict[str, Any] = {}
        attach_source_attrs(attrs, schema, "functionResponse")
        attach_semantic_attrs(attrs, message_id, call_id, infer_tool_kind(result_name))
        self._emit(Event(
            self._next_id(), ts,
            ToolResult(name=result_name, is_error=is_error, call_id=info.event_id if info else None),
            content=Content.text(output) if output else Content.empty(),
            duration_ms=duration_ms,
            attributes=attrs,
        ), message_id)

    # -- whole-document format ---------------------------------------------

    def feed_document(self, doc: dict) -> None:
        self.session_id = set_first(self.session_id, doc.get("sessionId"))
        self.project_hash = set_first(self.project_hash, doc.get("projectHash"))
        self.start_time = parse_timestamp(doc.get("startTime"))
        self.last_updated = parse_timestamp(doc.get("lastUpdated"))
        messages = doc.get("messages")
        if not isinstance(messages, list):
            return
        for message in messages:
            if isinstance(message, dict):
                self._document_message(message)

    def _document_message(self, message: dict) -> None:
        ts = parse_timestamp(message.get("timestamp")) or self.start_time
        if ts is None:
            logger.debug("Skipping Gemini message without timestamp")
            return
        kind = message.get("type")
        role = normalize_role_label(kind)
        message_id = non_empty(message.get("id"))
        text = _text_of(message.get("content"))

        if role == "user":
            self._user_text(text, ts, message_id, SCHEMA_JSON)
        elif role == "assistant":
            self.model = set_first(self.model, message.get("model"))
            for thought in message.get("thoughts") or []:
                if not isinstance(thought, dict):
                    continue
                subject = non_empty(thought.get("subject"))
                description = non_empty(thought.get("description"))
                if subject and description:
                    thought_text = f"**{subject}**\n{description}"
                else:
                    thought_text = subject or description
                if thought_text:
                    self._emit(Event(self._next_id(), ts, Thinking(), content=Content.text(thought_text)))
            for call in message.get("toolCalls") or []:
                if isinstance(call, dict):
                    self._document_tool_call(call, ts)
            if text.strip():
                attrs: dict[str, Any] = _token_attrs(message.get("tokens"))
                model = non_empty(message.get("model"))
                if model:
                    attrs[ATTR_MODEL] = model
                attach_source_attrs(attrs, SCHEMA_JSON, "gemini")
                self._emit(Event(
                    message_id or self._next_id(), ts, AgentMessage(),
                    content=Content.text(text), attributes=attrs,
                ))
        elif kind == "error":
            if text.strip():
                attrs = {"error": True}
                attach_source_attrs(attrs, SCHEMA_JSON, "error")
                self._emit(Event(
                    message_id or self._next_id(), ts, AgentMessage(),
                    content=Content.text(text), attributes=attrs,
                ))
        else:
            logger.debug("Skipping Gemini message of type %r", kind)

    def _document_tool_call(self, call: dict, message_ts: datetime) -> None:
        name = non_empty(call.get("name")) or "unknown"
        call_id = non_empty(call.get("id"))
        ts = parse_timestamp(call.get("timestamp")) or message_ts
        self._tool_call(name, call.get("args"), call_id, ts, SCHEMA_JSON)
        status = non_empty(call.get("status"))
        if status is None and call.get("result") is None:
            return
        output = _result_text(call.get("result"))
        if not output and isinstance(call.get("resultDisplay"), str):
            output = call["resultDisplay"]
        self._tool_result(
            name, output, call_id, ts, SCHEMA_JSON,
            is_error=status in ("error", "cancelled"),
        )

    # -- JSONL format --------------------------------------------------------

    def feed_record(self, record: dict) -> None:
        kind = record.get("type")
        if kind == "session_metadata":
            self.session_id = set_first(self.session_id, record.get("sessionId"))
            self.project_hash = set_first(self.project_hash, record.get("projectHash"))
            self.start_time = self.start_time or parse_timestamp(record.get("startTime"))
            return
        if kind == "message_update":
            self._message_update(record)
            return
        if kind not in ("user", "gemini"):
            logger.debug("Skipping Gemini record of type %r", kind)
            return

        ts = parse_timestamp(record.get("timestamp")) or self._last_ts()
        if ts is None:
            return
        message_id = non_empty(record.get("id"))
        content = record.get("content")
        if isinstance(content, str):
            content = [{"type": "text", "text": content}]
        if not isinstance(content, list):
            return

        if kind == "user":
            text = "\n".join(
                b["text"] for b in content
                if isinstance(b, dict) and b.get("type") == "text" and isinstance(b.get("text"), str)
            )
            self._user_text(text, ts, message_id, SCHEMA_JSONL)
            for block in content:
                if isinstance(block, dict) and block.get("type") == "functionResponse":
                    self._tool_result(
                        non_empty(block.get("name")), _result_text(block.get("response")),
                        non_empty(block.get("id")), ts, SCHEMA_JSONL, message_id=message_id,
                    )
            return

        self.model = set_first(self.model, record.get("model"))
        used_message_id = False
        for block in content:
            if not isinstance(block, dict):
                continue
            block_type = block.get("type")
            if block_type == "thinking" and non_empty(block.get("text")):
                self._emit(Event(self._next_id(), ts, Thinking(), content=Content.text(block["text"])), message_id)
            elif block_type == "text" and non_empty(block.get("text")):
                attrs: dict[str, Any] = {}
                attach_source_attrs(attrs, SCHEMA_JSONL, "gemini")
                if non_empty(record.get("model")):
                    attrs[ATTR_MODEL] = record["model"]
                event_id = message_id if message_id and not used_message_id else self._next_id()
                used_message_id = used_message_id or event_id == message_id
                self._emit(Event(event_id, ts, AgentMessage(), content=Content.text(block["text"]), attributes=attrs), message_id)
            elif block_type == "functionCall":
                self._tool_call(
                    non_empty(block.get("name")) or "unknown", block.get("args"),
                    non_empty(block.get("id")), ts, SCHEMA_JSONL, message_id,
                )

    def _message_update(self, record: dict) -> None:
        """Token counts arrive after the message; attach them to its agent text."""
        message_id = non_empty(record.get("id"))
        tokens = _token_attrs(record.get("tokens"))
        if not message_id or not tokens:
            return
        events = self.by_message_id.get(message_id) or []
        target = next((e for e in events if isinstance(e.event_type, AgentMessage)), None)
        if target is None and events:
            target = events[0]
        if target is not None:
            target.attributes.update(tokens)

    def _last_ts(self) -> datetime | None:
        return self.events[-1].timestamp if self.events else self.start_time

    def build_session(self, path: Path) -> Session:
        attrs: dict[str, Any] = {
            ATTR_SOURCE_PATH: str(path),
            ATTR_SESSION_ROLE: SESSION_ROLE_PRIMARY,
        }
        if self.project_hash:
            attrs["project_hash"] = self.project_hash
        title = truncate_title(self.first_user_text, self.title_max_chars) if self.first_user_text else None
        return Session(
            session_id=self.session_id or path.stem,
            agent=Agent(provider="google", model=self.model or "unknown", tool=TOOL_NAME),
            context=SessionContext(
                title=title,
                tags=[TOOL_NAME],
                created_at=self.start_time,
                updated_at=self.last_updated,
                attributes=attrs,
            ),
            events=self.events,
        )


class GeminiParser(SessionParser):
    name = TOOL_NAME

    def can_parse(self, path: Path) -> bool:
        path = Path(path)
        text = path_text(path)
        return (
            path.suffix in (".json", ".jsonl")
            and ".gemini/tmp/" in text
            and "/chats/session-" in text
        )

    def _parse(self, path: Path, merge_subagents: bool) -> Session:
        transcript = GeminiTranscript(self.settings.title_max_chars)
        if path.suffix == ".jsonl":
            for record in read_jsonl(path):
                transcript.feed_record(record)
        else:
            doc = load_json_document(path)
            if not isinstance(doc, dict):
                raise SourceDecodeError("expected a JSON object at the top level", path)
            transcript.feed_document(doc)
        return self.finish(path, transcript.build_session(path), merge_subagents)
