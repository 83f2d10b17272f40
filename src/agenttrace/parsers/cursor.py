"""Cursor state databases (state.vscdb).

Conversations live in a key/value table (cursorDiskKV, or ItemTable in some
versions) under composerData:<composerId>. Version 3 composers keep only
bubble headers inline; each bubble body is a separate bubbleId:<composer>:<bubble>
row. Workspace databases may hold just the composer.composerData index, in
which case the bodies are read from the companion globalStorage database.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from agenttrace.common import (
    as_int,
    attach_semantic_attrs,
    attach_source_attrs,
    detect_language,
    first_non_empty,
    infer_provider,
    infer_tool_kind,
    non_empty,
    parse_json_args,
    parse_timestamp,
    truncate_title,
)
from agenttrace.errors import FormatError, SourceReadError
from agenttrace.models import (
    ATTR_MODEL,
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
    FileEdit,
    FileRead,
    FileSearch,
    JsonBlock,
    Session,
    SessionContext,
    ShellCommand,
    TaskEnd,
    TaskStart,
    TextBlock,
    Thinking,
    ToolCall,
    ToolResult,
    UserMessage,
    WebSearch,
)
from agenttrace.parsers.base import SessionParser

logger = logging.getLogger(__name__)

TOOL_NAME = "cursor"
SCHEMA_VERSION = "cursor-composer-v1"
KV_TABLES = ("cursorDiskKV", "ItemTable")
INDEX_KEY = "composer.composerData"

BUBBLE_USER = 1
BUBBLE_ASSISTANT = 2

# Bubbles without timing info are spaced this far apart from the composer's creation
BUBBLE_SPACING_MS = 100

TOOL_NAMES_BY_ID = {
    3: "grep_search",
    5: "read_file",
    6: "list_dir",
    7: "edit_file",
    8: "file_search",
    12: "reapply",
    15: "run_terminal_cmd",
    18: "web_search",
}


def resolve_tool_name(tool_id: Any, name: Any) -> str:
    tool_id = as_int(tool_id)
    if tool_id in TOOL_NAMES_BY_ID:
        return TOOL_NAMES_BY_ID[tool_id]
    if non_empty(name):
        return name.strip()
    return f"tool_{tool_id}" if tool_id is not None else "unknown_tool"


def classify_cursor_tool(tool_name: str, args: Any) -> EventType:
    a = args if isinstance(args, dict) else {}
    if tool_name in ("edit_file", "reapply"):
        return FileEdit(path=non_empty(a.get("target_file")) or "unknown")
    if tool_name == "read_file":
        return FileRead(path=first_non_empty(a.get("target_file"), a.get("file_path")) or "unknown")
    if tool_name == "list_dir":
        path = first_non_empty(a.get("relative_workspace_path"), a.get("path")) or "."
        return ToolCall(name=f"list_dir: {path}")
    if tool_name == "run_terminal_cmd":
        return ShellCommand(command=non_empty(a.get("command")) or "")
    if tool_name == "grep_search":
        return CodeSearch(query=first_non_empty(a.get("query"), a.get("search_term")) or "")
    if tool_name == "file_search":
        return FileSearch(pattern=first_non_empty(a.get("query"), a.get("pattern")) or "*")
    if tool_name == "web_search":
        return WebSearch(query=first_non_empty(a.get("query"), a.get("search_query")) or "")
    return ToolCall(name=tool_name)


def tool_call_content(tool_name: str, args: Any) -> Content:
    a = args if isinstance(args, dict) else {}
    if tool_name in ("edit_file", "reapply"):
        path = non_empty(a.get("target_file")) or "unknown"
        blocks: list = [TextBlock(path)]
        edit = a.get("code_edit")
        if isinstance(edit, str) and edit:
            blocks.append(CodeBlock(edit, detect_language(path)))
        return Content(blocks)
    if tool_name == "run_terminal_cmd":
        return Content([CodeBlock(non_empty(a.get("command")) or "", "bash")])
    if tool_name == "read_file":
        return Content.text(first_non_empty(a.get("target_file"), a.get("file_path")) or "unknown")
    if tool_name in ("grep_search", "file_search", "web_search", "list_dir"):
        text = first_non_empty(
            a.get("query"), a.get("search_term"), a.get("pattern"), a.get("search_query"),
            a.get("relative_workspace_path"), a.get("path"),
        )
        return Content.text(text) if text else Content.empty()
    if args in (None, {}, ""):
        return Content.empty()
    return Content.json(args)


def tool_result_content(tool_name: str, result: str) -> Content:
    """Content for a tool bubble's result string, usually JSON."""
    try:
        data = json.loads(result)
    except (TypeError, json.JSONDecodeError):
        stripped = result.strip() if isinstance(result, str) else ""
        return Content.text(stripped) if stripped else Content.empty()

    if isinstance(data, dict):
        if tool_name in ("edit_file", "reapply") and "diff" in data:
            blocks: list = []
            if data.get("isApplied"):
                blocks.append(TextBlock("Applied"))
            blocks.append(JsonBlock(data["diff"]))
            return Content(blocks)
        if tool_name == "run_terminal_cmd" and isinstance(data.get("output"), str):
            return Content([CodeBlock(data["output"], "text")])
    return Content.json(data)


def model_from_signature(signature: str) -> str | None:
    """Model family hinted at by a thinking signature. Opaque base64 tokens give None."""
    if len(signature) > 30 or any(c in signature for c in "=+/"):
        return None
    lower = signature.lower()
    if "claude" in lower:
        for family in ("opus", "sonnet", "haiku"):
            if family in lower:
                return f"claude-{family}"
        return "claude"
    if "gpt-4" in lower:
        return "gpt-4"
    if lower.startswith(("o1", "o3")):
        return lower
    return None


# ---------------------------------------------------------------------------
# Database access
# ---------------------------------------------------------------------------


def open_readonly(path: Path) -> sqlite3.Connection:
    try:
        return sqlite3.connect(f"{path.resolve().as_uri()}?mode=ro", uri=True)
    except sqlite3.Error as exc:
        raise SourceReadError(f"cannot open database: {exc}", path) from exc


def _table_exists(con: sqlite3.Connection, table: str) -> bool:
    row = con.execute(
        "SELECT COUNT(*) FROM sqlite_master WHERE type='table' AND name=?", (table,),
    ).fetchone()
    return bool(row and row[0])


def _text(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value if isinstance(value, str) else ""


def _loads(key: str, value: Any) -> Any:
    try:
        return json.loads(_text(value))
    except json.JSONDecodeError as exc:
        logger.debug("Skipping unparseable %s: %s", key, exc)
        return None


def resolve_bubbles(composer: dict, bubble_rows: dict[str, Any]) -> list[dict]:
    """The composer's bubbles, inline for older versions or looked up by header for v3."""
    headers = composer.get("fullConversationHeadersOnly")
    if (as_int(composer.get("_v")) or 0) < 3 or not isinstance(headers, list) or not headers:
        conversation = composer.get("conversation")
        return [b for b in conversation if isinstance(b, dict)] if isinstance(conversation, list) else []
    bubbles = []
    for header in headers:
        if not isinstance(header, dict) or not non_empty(header.get("bubbleId")):
            continue
        key = f"bubbleId:{composer['composerId']}:{header['bubbleId']}"
        if key not in bubble_rows:
            logger.debug("Bubble %s not found", key)
            continue
        bubble = _loads(key, bubble_rows[key])
        if isinstance(bubble, dict):
            bubbles.append(bubble)
    return bubbles


def _read_table_composers(con: sqlite3.Connection, table: str) -> list[dict]:
    composer_rows = []
    bubble_rows: dict[str, Any] = {}
    cursor = con.execute(
        f"SELECT key, value FROM {table} WHERE key LIKE 'composerData:%' OR key LIKE 'bubbleId:%'"
    )
    for key, value in cursor:
        if key.startswith("bubbleId:"):
            bubble_rows[key] = value
        else:
            composer_rows.append((key, value))

    composers = []
    for key, value in composer_rows:
        composer = _loads(key, value)
        if not isinstance(composer, dict) or not non_empty(composer.get("composerId")):
            continue
        composer["conversation"] = resolve_bubbles(composer, bubble_rows)
        if composer["conversation"]:
            composers.append(composer)
    return composers


def read_composers(con: sqlite3.Connection) -> list[dict]:
    """Every non-empty composer conversation in the database."""
    tables = [t for t in KV_TABLES if _table_exists(con, t)]
    if not tables:
        raise FormatError("no cursorDiskKV or ItemTable table in database")
    for table in tables:
        composers = _read_table_composers(con, table)
        if composers:
            return composers
    return []


def read_composer_index(con: sqlite3.Connection) -> list[dict]:
    """Metadata-only composer entries from the composer.composerData index."""
    entries: list[dict] = []
    seen: set[str] = set()
    for table in KV_TABLES:
        if not _table_exists(con, table):
            continue
        row = con.execute(f"SELECT value FROM {table} WHERE key = ? LIMIT 1", (INDEX_KEY,)).fetchone()
        if row is None or not _text(row[0]).strip():
            continue
        index = _loads(INDEX_KEY, row[0])
        composers = index.get("allComposers") if isinstance(index, dict) else None
        for entry in composers or []:
            composer_id = non_empty(entry.get("composerId")) if isinstance(entry, dict) else None
            if composer_id and composer_id not in seen:
                seen.add(composer_id)
                entries.append(entry)
    return entries


def companion_global_db(path: Path) -> Path | None:
    """User/globalStorage/state.vscdb for a User/workspaceStorage/<hash>/state.vscdb."""
    workspace_storage = path.parent.parent
    if workspace_storage.name.lower() != "workspacestorage":
        return None
    return workspace_storage.parent / "globalStorage" / "state.vscdb"


def load_conversations(path: Path) -> list[dict]:
    con = open_readonly(path)
    try:
        try:
            conversations = read_composers(con)
            index = read_composer_index(con)
        except sqlite3.Error as exc:
            raise SourceReadError(f"cannot read database: {exc}", path) from exc
        except FormatError as exc:
            raise FormatError(exc.message, path) from exc
    finally:
        con.close()

    if not index:
        return conversations

    wanted = {entry["composerId"] for entry in index}
    known = {c["composerId"] for c in conversations}
    global_db = companion_global_db(path)
    if global_db is not None and global_db.is_file() and global_db.resolve() != path.resolve():
        con = open_readonly(global_db)
        try:
            extra = read_composers(con)
        except (sqlite3.Error, FormatError) as exc:
            logger.warning("Cannot read companion database %s: %s", global_db, exc)
            extra = []
        finally:
            con.close()
        conversations.extend(c for c in extra if c["composerId"] in wanted and c["composerId"] not in known)

    by_id = {entry["composerId"]: entry for entry in index}
    for conversation in conversations:
        meta = by_id.get(conversation["composerId"])
        if meta is None:
            continue
        for key in ("name", "createdAt", "lastUpdatedAt"):
            if conversation.get(key) is None and meta.get(key) is not None:
                conversation[key] = meta[key]
    return conversations


def pick_conversation(conversations: list[dict]) -> dict:
    """Most recently updated conversation; ties go to the longest."""
    def rank(c: dict) -> tuple[float, int]:
        ts = parse_timestamp(c.get("lastUpdatedAt")) or parse_timestamp(c.get("createdAt"))
        return (ts.timestamp() if ts else 0.0, len(c["conversation"]))
    return max(conversations, key=rank)


# ---------------------------------------------------------------------------
# Bubble conversion
# ---------------------------------------------------------------------------


def _timing(bubble: dict) -> tuple[datetime | None, int | None]:
    info = bubble.get("timingInfo")
    if not isinstance(info, dict):
        return None, None
    start = info.get("clientStartTime", info.get("startTime"))
    end = info.get("clientEndTime", info.get("endTime"))
    started = parse_timestamp(start) if isinstance(start, (int, float)) else None
    duration = None
    if isinstance(start, (int, float)) and isinstance(end, (int, float)) and end > start:
        duration = int(end - start)
    return started, duration


def bubbles_to_events(bubbles: list[dict], base_ts: datetime) -> list[Event]:
    events: list[Event] = []
    for index, bubble in enumerate(bubbles):
        bubble_id = non_empty(bubble.get("bubbleId")) or f"bubble-{index}"
        started, duration = _timing(bubble)
        ts = started or base_ts + timedelta(milliseconds=index * BUBBLE_SPACING_MS)
        kind = as_int(bubble.get("type"))
        text = (bubble.get("text") or "").strip() if isinstance(bubble.get("text"), str) else ""

        if kind == BUBBLE_USER:
            if text:
                events.append(Event(f"{bubble_id}-user", ts, UserMessage(), content=Content.text(text)))
            continue
        if kind != BUBBLE_ASSISTANT:
            logger.debug("Skipping unknown bubble type %r", bubble.get("type"))
            continue

        thinking = bubble.get("thinking")
        if isinstance(thinking, dict) and non_empty(thinking.get("text")):
            attrs = {}
            if non_empty(thinking.get("signature")):
                attrs["signature"] = thinking["signature"]
            events.append(Event(
                f"{bubble_id}-thinking", ts, Thinking(),
                content=Content.text(thinking["text"].strip()), attributes=attrs,
            ))

        tool_data = bubble.get("toolFormerData")
        if isinstance(tool_data, dict):
            events.extend(_tool_bubble_events(bubble_id, tool_data, ts, duration))
            continue

        if text:
            attrs = {}
            attach_source_attrs(attrs, SCHEMA_VERSION, "bubble")
            if non_empty(bubble.get("modelType")):
                attrs[ATTR_MODEL] = bubble["modelType"]
            events.append(Event(
                f"{bubble_id}-agent", ts, AgentMessage(),
                content=Content.text(text), duration_ms=duration, attributes=attrs,
            ))
    return events


def _tool_bubble_events(bubble_id: str, tool_data: dict, ts: datetime, duration: int | None) -> list[Event]:
    """One tool bubble becomes a task bracket around its call and result."""
    tool_name = resolve_tool_name(tool_data.get("tool"), tool_data.get("name"))
    task_id = f"cursor-task-{bubble_id}"
    args = parse_json_args(tool_data.get("rawArgs"))
    status = non_empty(tool_data.get("status"))

    attrs: dict[str, Any] = {}
    if status:
        attrs["status"] = status
    if non_empty(tool_data.get("userDecision")):
        attrs["user_decision"] = tool_data["userDecision"]
    call_attrs = dict(attrs)
    attach_semantic_attrs(call_attrs, call_id=non_empty(tool_data.get("toolCallId")), tool_kind=infer_tool_kind(tool_name))

    call_event_id = f"{bubble_id}-call"
    events = [
        Event(
            f"{bubble_id}-task-start", ts,
            TaskStart(title=non_empty(tool_data.get("name")) or tool_name), task_id=task_id,
        ),
        Event(
            call_event_id, ts, classify_cursor_tool(tool_name, args), task_id=task_id,
            content=tool_call_content(tool_name, args), duration_ms=duration, attributes=call_attrs,
        ),
    ]
    result = tool_data.get("result")
    if isinstance(result, str):
        events.append(Event(
            f"{bubble_id}-result", ts,
            ToolResult(name=tool_name, is_error=status in ("error", "failed"), call_id=call_event_id),
            task_id=task_id,
            content=tool_result_content(tool_name, result),
            attributes=dict(attrs),
        ))
    events.append(Event(
        f"{bubble_id}-task-end", ts,
        TaskEnd(summary=f"{tool_name} {status}" if status else f"{tool_name} finished"),
        task_id=task_id,
    ))
    return events


def conversation_to_session(composer: dict, path: Path, title_max_chars: int = 80) -> Session:
    bubbles = composer["conversation"]
    created_at = parse_timestamp(composer.get("createdAt"))
    updated_at = parse_timestamp(composer.get("lastUpdatedAt")) or created_at

    model = next((b["modelType"] for b in bubbles if non_empty(b.get("modelType"))), None)
    if model is None:
        for bubble in bubbles:
            thinking = bubble.get("thinking")
            signature = thinking.get("signature") if isinstance(thinking, dict) else None
            if isinstance(signature, str) and model_from_signature(signature):
                model = model_from_signature(signature)
                break
    model = model or "unknown"

    attrs: dict[str, Any] = {
        ATTR_SOURCE_PATH: str(path),
        ATTR_SESSION_ROLE: SESSION_ROLE_PRIMARY,
    }
    if isinstance(composer.get("isAgentic"), bool):
        attrs["is_agentic"] = composer["isAgentic"]

    events = bubbles_to_events(bubbles, created_at or datetime.fromtimestamp(0, tz=timezone.utc))
    title = non_empty(composer.get("name"))
    if title is None:
        first_user = next((e for e in events if isinstance(e.event_type, UserMessage)), None)
        if first_user is not None:
            title = truncate_title(first_user.content.plain_text(), title_max_chars)
    return Session(
        session_id=composer["composerId"],
        agent=Agent(provider=infer_provider(model), model=model, tool=TOOL_NAME),
        context=SessionContext(
            title=title,
            tags=[TOOL_NAME],
            created_at=created_at,
            updated_at=updated_at,
            attributes=attrs,
        ),
        events=events,
    )


class CursorParser(SessionParser):
    name = TOOL_NAME

    def can_parse(self, path: Path) -> bool:
        return Path(path).suffix == ".vscdb"

    def _parse(self, path: Path, merge_subagents: bool) -> Session:
        if not path.is_file():
            raise SourceReadError("no such database", path)
        conversations = load_conversations(path)
        if not conversations:
            raise FormatError("no composer conversations found", path)
        session = conversation_to_session(pick_conversation(conversations), path, self.settings.title_max_chars)
        return self.finish(path, session, merge_subagents)
