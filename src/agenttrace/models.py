"""Canonical trace model: the contract between format parsers and consumers.

Parsers produce Session objects. Everything downstream (cache, sync, UI,
handoff summaries) reads Sessions and never sees a source format.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Union

TRACE_VERSION = "trace-1.0.0"

# Context attribute keys
ATTR_SOURCE_PATH = "source_path"
ATTR_SESSION_ROLE = "session_role"
ATTR_PARENT_SESSION_ID = "parent_session_id"
ATTR_CWD = "cwd"
ATTR_GIT_BRANCH = "git_branch"

SESSION_ROLE_PRIMARY = "primary"
SESSION_ROLE_AUXILIARY = "auxiliary"

# Event attribute keys
ATTR_SOURCE_SCHEMA_VERSION = "source.schema_version"
ATTR_SOURCE_RAW_TYPE = "source.raw_type"
ATTR_SOURCE_CHANNEL = "source.channel"
ATTR_SEMANTIC_GROUP_ID = "semantic.group_id"
ATTR_SEMANTIC_CALL_ID = "semantic.call_id"
ATTR_SEMANTIC_TOOL_KIND = "semantic.tool_kind"
ATTR_INPUT_TOKENS = "input_tokens"
ATTR_OUTPUT_TOKENS = "output_tokens"
ATTR_MODEL = "model"


# ---------------------------------------------------------------------------
# Content blocks
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TextBlock:
    text: str

    def to_dict(self) -> dict:
        return {"type": "text", "text": self.text}


@dataclass(frozen=True)
class CodeBlock:
    code: str
    language: str | None = None
    start_line: int | None = None

    def to_dict(self) -> dict:
        data: dict[str, Any] = {"type": "code", "code": self.code}
        if self.language is not None:
            data["language"] = self.language
        if self.start_line is not None:
            data["start_line"] = self.start_line
        return data


@dataclass(frozen=True)
class JsonBlock:
    data: Any

    def to_dict(self) -> dict:
        return {"type": "json", "data": self.data}


ContentBlock = Union[TextBlock, CodeBlock, JsonBlock]


@dataclass
class Content:
    """Ordered blocks making up an event's payload."""

    blocks: list[ContentBlock] = field(default_factory=list)

    @classmethod
    def empty(cls) -> Content:
        return cls()

    @classmethod
    def text(cls, text: str) -> Content:
        return cls([TextBlock(text)])

    @classmethod
    def code(
        cls, code: str, language: str | None = None, start_line: int | None = None,
    ) -> Content:
        return cls([CodeBlock(code, language, start_line)])

    @classmethod
    def json(cls, data: Any) -> Content:
        return cls([JsonBlock(data)])

    def is_empty(self) -> bool:
        return not self.blocks

    def plain_text(self) -> str:
        """Concatenate text and code blocks, one per line. JSON blocks are skipped."""
        parts: list[str] = []
        for block in self.blocks:
            if isinstance(block, TextBlock):
                parts.append(block.text)
            elif isinstance(block, CodeBlock):
                parts.append(block.code)
        return "\n".join(parts)

    def to_dict(self) -> dict:
        return {"blocks": [b.to_dict() for b in self.blocks]}


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class UserMessage:
    kind = "UserMessage"


@dataclass(frozen=True)
class AgentMessage:
    kind = "AgentMessage"


@dataclass(frozen=True)
class SystemMessage:
    kind = "SystemMessage"


@dataclass(frozen=True)
class Thinking:
    kind = "Thinking"


@dataclass(frozen=True)
class ToolCall:
    name: str
    kind = "ToolCall"


@dataclass(frozen=True)
class ToolResult:
    name: str
    is_error: bool = False
    call_id: str | None = None
    kind = "ToolResult"


@dataclass(frozen=True)
class FileRead:
    path: str
    kind = "FileRead"


@dataclass(frozen=True)
class FileEdit:
    path: str
    diff: str | None = None
    kind = "FileEdit"


@dataclass(frozen=True)
class FileCreate:
    path: str
    kind = "FileCreate"


@dataclass(frozen=True)
class FileDelete:
    path: str
    kind = "FileDelete"


@dataclass(frozen=True)
class ShellCommand:
    command: str
    exit_code: int | None = None
    kind = "ShellCommand"


@dataclass(frozen=True)
class CodeSearch:
    query: str
    kind = "CodeSearch"


@dataclass(frozen=True)
class FileSearch:
    pattern: str
    kind = "FileSearch"


@dataclass(frozen=True)
class WebSearch:
    query: str
    kind = "WebSearch"


@dataclass(frozen=True)
class WebFetch:
    url: str
    kind = "WebFetch"


@dataclass(frozen=True)
class TaskStart:
    title: str | None = None
    kind = "TaskStart"


@dataclass(frozen=True)
class TaskEnd:
    summary: str | None = None
    kind = "TaskEnd"


@dataclass(frozen=True)
class Custom:
    kind_name: str
    kind = "Custom"


EventType = Union[
    UserMessage, AgentMessage, SystemMessage, Thinking,
    ToolCall, ToolResult,
    FileRead, FileEdit, FileCreate, FileDelete,
    ShellCommand, CodeSearch, FileSearch, WebSearch, WebFetch,
    TaskStart, TaskEnd, Custom,
]


def event_type_to_dict(event_type: EventType) -> dict:
    data: dict[str, Any] = {"type": event_type.kind}
    if isinstance(event_type, Custom):
        data["kind"] = event_type.kind_name
        return data
    for name in getattr(event_type, "__dataclass_fields__", {}):
        data[name] = getattr(event_type, name)
    return data


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


@dataclass
class Event:
    """A single timeline entry."""

    event_id: str
    timestamp: datetime
    event_type: EventType
    task_id: str | None = None
    content: Content = field(default_factory=Content)
    duration_ms: int | None = None
    attributes: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        data: dict[str, Any] = {
            "event_id": self.event_id,
            "timestamp": self.timestamp.isoformat(),
            "event_type": event_type_to_dict(self.event_type),
            "content": self.content.to_dict(),
        }
        if self.task_id is not None:
            data["task_id"] = self.task_id
        if self.duration_ms is not None:
            data["duration_ms"] = self.duration_ms
        if self.attributes:
            data["attributes"] = dict(self.attributes)
        return data


@dataclass
class Agent:
    provider: str
    model: str
    tool: str
    tool_version: str | None = None

    def to_dict(self) -> dict:
        return {
            "provider": self.provider,
            "model": self.model,
            "tool": self.tool,
            "tool_version": self.tool_version,
        }


@dataclass
class SessionContext:
    title: str | None = None
    description: str | None = None
    tags: list[str] = field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None
    related_session_ids: list[str] = field(default_factory=list)
    attributes: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "title": self.title,
            "description": self.description,
            "tags": list(self.tags),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "related_session_ids": list(self.related_session_ids),
            "attributes": dict(self.attributes),
        }


@dataclass
class Stats:
    """Aggregates derived from a session's events. See stats.compute_stats()."""

    event_count: int = 0
    message_count: int = 0
    user_message_count: int = 0
    tool_call_count: int = 0
    task_count: int = 0
    duration_seconds: int = 0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    files_changed: int = 0
    lines_added: int = 0
    lines_removed: int = 0

    def to_dict(self) -> dict:
        return dict(self.__dict__)


@dataclass
class Session:
    """One normalized transcript.

    Produced by a parser's parse() call. Once returned, consumers treat it as
    read-only; any transformation should build a new Session.
    """

    session_id: str
    agent: Agent
    context: SessionContext = field(default_factory=SessionContext)
    events: list[Event] = field(default_factory=list)
    stats: Stats = field(default_factory=Stats)
    version: str = TRACE_VERSION

    def recompute_stats(self) -> Stats:
        from agenttrace.stats import compute_stats

        self.stats = compute_stats(self.events)
        return self.stats

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "session_id": self.session_id,
            "agent": self.agent.to_dict(),
            "context": self.context.to_dict(),
            "events": [e.to_dict() for e in self.events],
            "stats": self.stats.to_dict(),
        }
