"""Codex rollout transcripts (~/.codex/sessions/YYYY/MM/DD/rollout-*.jsonl).

Two schemas share the same files:

- desktop / current CLI: every line is a wrapper {timestamp, type, payload}
  with type session_meta, turn_context, response_item, event_msg or compacted.
- legacy CLI: a bare header line {id, timestamp, instructions} followed by
  bare response items with no wrapper and usually no timestamp.

The schema is detected per record. User and agent messages are reported on
both the response_item stream and the event_msg log; the event log is the
authoritative channel and duplicates are folded by MessageDeduplicator.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any

from agenttrace.common import (
    CallRegistry,
    ResultMeta,
    attach_semantic_attrs,
    attach_source_attrs,
    first_non_empty,
    infer_tool_kind,
    json_text,
    non_empty,
    parse_json_args,
    parse_result_metadata,
    parse_timestamp,
    read_first_json_line,
    read_jsonl,
    set_first,
    shell_command_from_args,
    truncate_title,
)
from agenttrace.dedup import DedupSettings, MessageDeduplicator
from agenttrace.models import (
    ATTR_CWD,
    ATTR_GIT_BRANCH,
    ATTR_INPUT_TOKENS,
    ATTR_OUTPUT_TOKENS,
    ATTR_PARENT_SESSION_ID,
    ATTR_SESSION_ROLE,
    ATTR_SOURCE_PATH,
    SESSION_ROLE_AUXILIARY,
    SESSION_ROLE_PRIMARY,
    Agent,
    AgentMessage,
    CodeBlock,
    Content,
    Event,
    EventType,
    FileCreate,
    FileDelete,
    FileEdit,
    FileRead,
    Session,
    SessionContext,
    ShellCommand,
    SystemMessage,
    TaskEnd,
    TaskStart,
    Thinking,
    ToolCall,
    ToolResult,
    UserMessage,
    WebSearch,
)
from agenttrace.parsers.base import ChildTranscript, SessionParser, path_text

logger = logging.getLogger(__name__)

TOOL_NAME = "codex"
SCHEMA_WRAPPED = "codex-rollout-v2"
SCHEMA_LEGACY = "codex-cli-v1"

CHANNEL_EVENT_LOG = "event_msg"
CHANNEL_RESPONSE_ITEM = "response_item"

_WRAPPER_TYPES = {"session_meta", "turn_context", "response_item", "event_msg", "compacted"}
_INJECTED_CONTEXT_PREFIXES = (
    "<environment_context>",
    "<user_instructions>",
    "# AGENTS.md instructions",
    "<permissions instructions>",
)


# ---------------------------------------------------------------------------
# Tool classification
# ---------------------------------------------------------------------------


def classify_function(name: str, args: Any) -> EventType:
    """Map a Codex function call onto a canonical event type."""
    mapping = args if isinstance(args, dict) else {}
    if name in ("exec_command", "shell", "shell_command", "local_shell", "container.exec"):
        return ShellCommand(command=shell_command_from_args(args) or "")
    if name in ("apply_diff", "apply_patch"):
        path = first_non_empty(mapping.get("path"), mapping.get("file")) or "unknown"
        return FileEdit(path=path, diff=non_empty(mapping.get("diff")) or non_empty(mapping.get("patch")))
    if name in ("create_file", "write_file"):
        return FileCreate(path=first_non_empty(mapping.get("path"), mapping.get("file_path")) or "unknown")
    if name == "read_file":
        return FileRead(path=first_non_empty(mapping.get("path"), mapping.get("file_path")) or "unknown")
    if name in ("web_search", "search_web"):
        return WebSearch(query=non_empty(mapping.get("query")) or "")
    return ToolCall(name=name)


def function_content(name: str, args: Any, event_type: EventType) -> Content:
    if isinstance(event_type, ShellCommand):
        return Content([CodeBlock(event_type.command, "bash")])
    if args is None:
        return Content.empty()
    if isinstance(args, str):
        return Content.text(args)
    return Content.json(args)


def parse_patch(patch: str) -> list[tuple[str, str, str]]:
    """Split an apply_patch envelope into (action, path, body) per file.

    action is one of "add", "update" or "delete".
    """
    files: list[tuple[str, str, list[str]]] = []
    markers = (
        ("*** Add File: ", "add"),
        ("*** Update File: ", "update"),
        ("*** Delete File: ", "delete"),
    )
    for line in patch.splitlines():
        for prefix, action in markers:
            if line.startswith(prefix):
                files.append((action, line[len(prefix):].strip(), []))
                break
        else:
            if line.startswith("*** End Patch") or line.startswith("*** Begin Patch"):
                continue
            if files:
                files[-1][2].append(line)
    return [(action, path, "\n".join(body)) for action, path, body in files]


def _patch_text(name: str, args: Any) -> str | None:
    """apply_patch input, whether given as raw text or via a shell argv."""
    if name == "apply_patch":
        if isinstance(args, str):
            return args
        if isinstance(args, dict):
            return non_empty(args.get("input")) or non_empty(args.get("patch"))
    if isinstance(args, dict):
        command = args.get("command")
        if isinstance(command, list) and command and command[0] == "apply_patch":
            return "\n".join(str(c) for c in command[1:])
    return None


def _patch_event_types(patch: str) -> list[EventType]:
    result: list[EventType] = []
    for action, path, body in parse_patch(patch):
        if action == "add":
            result.append(FileCreate(path=path))
        elif action == "delete":
            result.append(FileDelete(path=path))
        else:
            result.append(FileEdit(path=path, diff=body or None))
    return result


def parent_thread_id(meta: dict) -> str | None:
    """Parent session id recorded in a child's session_meta payload, if any."""
    direct = first_non_empty(meta.get("parent_thread_id"), meta.get("parent_session_id"))
    if direct:
        return direct
    source = meta.get("source")
    if not isinstance(source, dict):
        return None
    subagent = source.get("subagent")
    if not isinstance(subagent, dict):
        return None
    spawn = subagent.get("thread_spawn")
    if isinstance(spawn, dict):
        return non_empty(spawn.get("parent_thread_id"))
    return non_empty(subagent.get("parent_thread_id"))


def _subagent_label(meta: dict) -> str | None:
    source = meta.get("source")
    if not isinstance(source, dict) or not isinstance(source.get("subagent"), dict):
        return None
    subagent = source["subagent"]
    spawn = subagent.get("thread_spawn") if isinstance(subagent.get("thread_spawn"), dict) else {}
    return first_non_empty(
        spawn.get("agent_nickname"), spawn.get("agent_role"), subagent.get("name"),
    )


def _message_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""
    parts = []
    for block in content:
        if not isinstance(block, dict):
            continue
        if block.get("type") in ("input_text", "output_text", "text") and isinstance(block.get("text"), str):
            parts.append(block["text"])
    return "\n".join(parts)


# ---------------------------------------------------------------------------
# One parse pass
# ---------------------------------------------------------------------------


class CodexTranscript:
    def __init__(self, dedup: DedupSettings, title_max_chars: int = 80):
        self.title_max_chars = title_max_chars
        self.events: list[Event] = []
        self.calls = CallRegistry()
        self.dedup = MessageDeduplicator(CHANNEL_EVENT_LOG, CHANNEL_RESPONSE_ITEM, dedup)
        self.by_id: dict[str, Event] = {}
        self.counter = 0
        self.session_id: str | None = None
        self.cwd: str | None = None
        self.cli_version: str | None = None
        self.provider: str | None = None
        self.model: str | None = None
        self.originator: str | None = None
        self.git_branch: str | None = None
        self.parent_id: str | None = None
        self.subagent_label: str | None = None
        self.first_user_text: str | None = None
        self.last_ts: datetime | None = None
        self.open_tasks: list[str] = []
        self.turn_counter = 0
        self.pending_tokens: dict[str, int] = {}

    def _next_id(self) -> str:
        self.counter += 1
        return f"codex-{self.counter}"

    def _append(self, event: Event) -> Event:
        if self.open_tasks and event.task_id is None:
            event.task_id = self.open_tasks[-1]
        self.events.append(event)
        self.by_id[event.event_id] = event
        return event

    def _push_message(self, event: Event, channel: str) -> None:
        if self.open_tasks and event.task_id is None:
            event.task_id = self.open_tasks[-1]
        if self.dedup.push(self.events, event, channel):
            self.by_id[event.event_id] = event
            if isinstance(event.event_type, AgentMessage) and self.pending_tokens:
                event.attributes.update(self.pending_tokens)
                self.pending_tokens = {}

    # -- dispatch ----------------------------------------------------------

    def feed(self, record: dict) -> None:
        if record.get("type") in _WRAPPER_TYPES and "payload" in record:
            ts = parse_timestamp(record.get("timestamp"))
            if ts is None:
                logger.debug("Skipping Codex record with bad timestamp: %r", record.get("timestamp"))
                return
            self.last_ts = ts
            payload = record.get("payload")
            if not isinstance(payload, dict):
                return
            kind = record["type"]
            if kind == "session_meta":
                self._session_meta(payload, ts)
            elif kind == "turn_context":
                self.model = set_first(self.model, payload.get("model"))
                self.cwd = set_first(self.cwd, payload.get("cwd"))
            elif kind == "event_msg":
                self._event_msg(payload, ts)
            elif kind == "response_item":
                self._response_item(payload, ts, SCHEMA_WRAPPED)
            return

        if "type" not in record and "id" in record and "timestamp" in record:
            self._legacy_header(record)
            return
        if record.get("record_type") == "state":
            return
        ts = parse_timestamp(record.get("timestamp")) or self.last_ts
        if ts is None:
            logger.debug("Skipping legacy Codex item with no timestamp context")
            return
        self._response_item(record, ts, SCHEMA_LEGACY)

    def _session_meta(self, payload: dict, ts: datetime) -> None:
        self.session_id = set_first(self.session_id, payload.get("id"))
        self.cwd = set_first(self.cwd, payload.get("cwd"))
        self.cli_version = set_first(self.cli_version, payload.get("cli_version"))
        self.provider = set_first(self.provider, payload.get("model_provider"))
        self.originator = set_first(self.originator, payload.get("originator"))
        self.model = set_first(self.model, payload.get("model"))
        git = payload.get("git")
        if isinstance(git, dict):
            self.git_branch = set_first(self.git_branch, git.get("branch"))
        self.parent_id = self.parent_id or parent_thread_id(payload)
        self.subagent_label = self.subagent_label or _subagent_label(payload)

    def _legacy_header(self, record: dict) -> None:
        self.session_id = set_first(self.session_id, record.get("id"))
        self.last_ts = parse_timestamp(record.get("timestamp")) or self.last_ts
        git = record.get("git")
        if isinstance(git, dict):
            self.git_branch = set_first(self.git_branch, git.get("branch"))

    # -- event log ---------------------------------------------------------

    def _event_msg(self, payload: dict, ts: datetime) -> None:
        kind = payload.get("type")
        if kind in ("user_message", "agent_message", "agent_reasoning"):
            text = payload.get("message") if kind != "agent_reasoning" else payload.get("text")
            if not isinstance(text, str) or not text.strip():
                return
            if kind == "user_message":
                event_type: EventType = UserMessage()
                self._note_user_text(text)
            elif kind == "agent_message":
                event_type = AgentMessage()
            else:
                event_type = Thinking()
            attrs: dict[str, Any] = {}
            attach_source_attrs(attrs, SCHEMA_WRAPPED, f"event_msg.{kind}")
            self._push_message(
                Event(self._next_id(), ts, event_type, content=Content.text(text), attributes=attrs),
                CHANNEL_EVENT_LOG,
            )
        elif kind == "token_count":
            self._token_count(payload)
        elif kind == "task_started":
            self._task_started(payload, ts)
        elif kind in ("task_complete", "turn_aborted"):
            self._task_finished(payload, ts, kind)
        elif kind == "exec_command_end":
            self._exec_end(payload)

    def _token_count(self, payload: dict) -> None:
        info = payload.get("info")
        usage = info.get("last_token_usage") if isinstance(info, dict) else None
        if not isinstance(usage, dict):
            return
        tokens = {}
        for key, attr in (("input_tokens", ATTR_INPUT_TOKENS), ("output_tokens", ATTR_OUTPUT_TOKENS)):
            value = usage.get(key)
            if isinstance(value, int) and not isinstance(value, bool) and value > 0:
                tokens[attr] = value
        if not tokens:
            return
        for event in reversed(self.events):
            if isinstance(event.event_type, AgentMessage):
                if ATTR_INPUT_TOKENS in event.attributes or ATTR_OUTPUT_TOKENS in event.attributes:
                    break
                event.attributes.update(tokens)
                return
        for key, value in tokens.items():
            self.pending_tokens[key] = self.pending_tokens.get(key, 0) + value

    def _task_started(self, payload: dict, ts: datetime) -> None:
        self.turn_counter += 1
        task_id = non_empty(payload.get("turn_id")) or f"codex-turn-{self.turn_counter}"
        attrs: dict[str, Any] = {}
        attach_source_attrs(attrs, SCHEMA_WRAPPED, "event_msg.task_started")
        self._append(Event(
            self._next_id(), ts, TaskStart(title=non_empty(payload.get("title"))),
            task_id=task_id, attributes=attrs,
        ))
        self.open_tasks.append(task_id)

    def _task_finished(self, payload: dict, ts: datetime, kind: str) -> None:
        task_id = non_empty(payload.get("turn_id"))
        if task_id is None:
            task_id = self.open_tasks.pop() if self.open_tasks else None
        elif task_id in self.open_tasks:
            self.open_tasks.remove(task_id)
        else:
            # turn started before this file; reconcile_open_tasks pairs it
            logger.debug("%s for unseen turn %s", kind, task_id)
        if task_id is None:
            logger.debug("Ignoring %s with no open task", kind)
            return
        if kind == "turn_aborted":
            summary = f"aborted: {non_empty(payload.get('reason')) or 'unknown'}"
        else:
            summary = payload.get("last_agent_message") if isinstance(payload.get("last_agent_message"), str) else None
        attrs: dict[str, Any] = {}
        attach_source_attrs(attrs, SCHEMA_WRAPPED, f"event_msg.{kind}")
        event = Event(self._next_id(), ts, TaskEnd(summary=summary), task_id=task_id, attributes=attrs)
        self.events.append(event)
        self.by_id[event.event_id] = event

    def _exec_end(self, payload: dict) -> None:
        info = self.calls.lookup(non_empty(payload.get("call_id")))
        exit_code = payload.get("exit_code")
        if info is None or not isinstance(exit_code, int) or isinstance(exit_code, bool):
            return
        self._set_exit_code(info.event_id, exit_code)

    def _set_exit_code(self, event_id: str | None, exit_code: int | None) -> None:
        if exit_code is None or event_id not in self.by_id:
            return
        call_event = self.by_id[event_id]
        if isinstance(call_event.event_type, ShellCommand) and call_event.event_type.exit_code is None:
            call_event.event_type = replace(call_event.event_type, exit_code=exit_code)

    # -- response items ----------------------------------------------------

    def _response_item(self, item: dict, ts: datetime, schema: str) -> None:
        kind = item.get("type")
        if kind == "message":
            self._message_item(item, ts, schema)
        elif kind == "reasoning":
            summaries = item.get("summary") if isinstance(item.get("summary"), list) else []
            text = "\n".join(
                s["text"] for s in summaries
                if isinstance(s, dict) and s.get("type") == "summary_text" and isinstance(s.get("text"), str)
            )
            if text.strip():
                attrs: dict[str, Any] = {}
                attach_source_attrs(attrs, schema, "reasoning")
                self._push_message(
                    Event(self._next_id(), ts, Thinking(), content=Content.text(text), attributes=attrs),
                    CHANNEL_RESPONSE_ITEM,
                )
        elif kind == "function_call":
            args = parse_json_args(item.get("arguments"))
            self._tool_call(item.get("name") or "unknown", args, item.get("call_id"), ts, schema, kind)
        elif kind == "local_shell_call":
            action = item.get("action") if isinstance(item.get("action"), dict) else {}
            self._tool_call("local_shell", action, item.get("call_id") or item.get("id"), ts, schema, kind)
        elif kind == "custom_tool_call":
            self._tool_call(
                item.get("name") or "custom_tool", item.get("input"), item.get("call_id"), ts, schema, kind,
            )
        elif kind == "web_search_call":
            action = item.get("action") if isinstance(item.get("action"), dict) else {}
            query = first_non_empty(item.get("query"), action.get("query")) or ""
            attrs = {}
            attach_source_attrs(attrs, schema, kind)
            attach_semantic_attrs(attrs, tool_kind="web")
            self._append(Event(
                self._next_id(), ts, WebSearch(query=query),
                content=Content.text(query) if query else Content.empty(), attributes=attrs,
            ))
        elif kind in ("function_call_output", "custom_tool_call_output", "local_shell_call_output"):
            self._tool_result(item, ts, schema, kind)
        else:
            logger.debug("Skipping Codex response item of type %r", kind)

    def _message_item(self, item: dict, ts: datetime, schema: str) -> None:
        role = item.get("role")
        text = _message_text(item.get("content"))
        if not text.strip() or role not in ("user", "assistant"):
            return
        attrs: dict[str, Any] = {}
        attach_source_attrs(attrs, schema, f"message.{role}")
        if role == "user" and text.lstrip().startswith(_INJECTED_CONTEXT_PREFIXES):
            self._append(Event(self._next_id(), ts, SystemMessage(), content=Content.text(text), attributes=attrs))
            return
        if role == "user":
            self._note_user_text(text)
            event_type: EventType = UserMessage()
        else:
            event_type = AgentMessage()
        self._push_message(
            Event(self._next_id(), ts, event_type, content=Content.text(text), attributes=attrs),
            CHANNEL_RESPONSE_ITEM,
        )

    def _tool_call(
        self, name: str, args: Any, call_id: Any, ts: datetime, schema: str, raw_type: str,
    ) -> None:
        call_id = non_empty(call_id)
        patch = _patch_text(name, args)
        event_types = _patch_event_types(patch) if patch else []
        if not event_types:
            event_types = [classify_function(name, args)]

        kind = infer_tool_kind(name)
        first_id = None
        for index, event_type in enumerate(event_types):
            attrs: dict[str, Any] = {"tool_name": name}
            attach_source_attrs(attrs, schema, raw_type)
            attach_semantic_attrs(attrs, call_id, call_id, kind)
            if patch:
                content = Content.text(event_type.path)
            else:
                content = function_content(name, args, event_type)
            event = self._append(Event(self._next_id(), ts, event_type, content=content, attributes=attrs))
            if index == 0:
                first_id = event.event_id
        file_path = getattr(event_types[0], "path", None)
        self.calls.record(call_id, first_id, name, file_path)

    def _tool_result(self, item: dict, ts: datetime, schema: str, raw_type: str) -> None:
        call_id = non_empty(item.get("call_id"))
        info = self.calls.lookup(call_id) if call_id else self.calls.last
        name = info.name if info else "unknown"
        meta: ResultMeta = parse_result_metadata(item.get("output"))
        if meta.exit_code is None and isinstance(item.get("status"), str):
            meta.is_error = meta.is_error or item["status"] in ("failed", "error", "incomplete")

        attrs: dict[str, Any] = {}
        attach_source_attrs(attrs, schema, raw_type)
        attach_semantic_attrs(attrs, call_id, call_id, infer_tool_kind(name))
        if meta.exit_code is not None:
            attrs["exit_code"] = meta.exit_code

        output = meta.output if isinstance(meta.output, str) else json_text(meta.output)
        self._append(Event(
            self._next_id(), ts,
            ToolResult(name=name, is_error=meta.is_error, call_id=info.event_id if info else None),
            content=Content.text(output) if output else Content.empty(),
            duration_ms=meta.duration_ms,
            attributes=attrs,
        ))
        if info is not None:
            self._set_exit_code(info.event_id, meta.exit_code)

    def _note_user_text(self, text: str) -> None:
        if self.first_user_text is None and not text.lstrip().startswith(_INJECTED_CONTEXT_PREFIXES):
            self.first_user_text = text.strip()

    # -- results -----------------------------------------------------------

    def build_session(self, path: Path) -> Session:
        attrs: dict[str, Any] = {
            ATTR_SOURCE_PATH: str(path),
            ATTR_SESSION_ROLE: SESSION_ROLE_AUXILIARY if self.parent_id else SESSION_ROLE_PRIMARY,
        }
        if self.cwd:
            attrs[ATTR_CWD] = self.cwd
        if self.git_branch:
            attrs[ATTR_GIT_BRANCH] = self.git_branch
        if self.originator:
            attrs["originator"] = self.originator
        related: list[str] = []
        if self.parent_id:
            attrs[ATTR_PARENT_SESSION_ID] = self.parent_id
            related.append(self.parent_id)

        title = truncate_title(self.first_user_text, self.title_max_chars) if self.first_user_text else None
        return Session(
            session_id=self.session_id or path.stem,
            agent=Agent(
                provider=self.provider or "openai",
                model=self.model or "unknown",
                tool=TOOL_NAME,
                tool_version=self.cli_version,
            ),
            context=SessionContext(
                title=title,
                tags=[TOOL_NAME],
                related_session_ids=related,
                attributes=attrs,
            ),
            events=self.events,
        )


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


class CodexParser(SessionParser):
    name = TOOL_NAME

    def can_parse(self, path: Path) -> bool:
        path = Path(path)
        text = path_text(path)
        return path.suffix == ".jsonl" and (".codex/sessions" in text or "codex/sessions" in text)

    def _parse(self, path: Path, merge_subagents: bool) -> Session:
        transcript = CodexTranscript(self.settings.dedup, self.settings.title_max_chars)
        for record in read_jsonl(path):
            transcript.feed(record)
        session = transcript.build_session(path)
        return self.finish(path, session, merge_subagents)

    def find_children(self, path: Path, session: Session) -> list[ChildTranscript]:
        """Sibling rollouts whose session_meta names this session as parent."""
        children = []
        for candidate in sorted(path.parent.glob("*.jsonl")):
            if candidate == path or candidate.name.startswith("."):
                continue
            header = read_first_json_line(candidate) or {}
            payload = header.get("payload") if header.get("type") == "session_meta" else None
            if not isinstance(payload, dict):
                continue
            if parent_thread_id(payload) != session.session_id:
                continue
            child_id = non_empty(payload.get("id")) or candidate.stem
            task_id = f"subagent-{child_id}"
            children.append(ChildTranscript(candidate, task_id, _subagent_label(payload) or task_id))
        return children
