"""Incremental parsing for live transcripts.

parse_lines() turns a batch of newly appended Claude Code JSONL lines into a
PartialResult. It reads no files, searches for no subagents and keeps no state
between calls. LiveSession is the caller-side accumulator that folds
successive batches into one running Session under a lock.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace

from agenttrace.models import (
    ATTR_SEMANTIC_CALL_ID,
    Agent,
    Event,
    Session,
    SessionContext,
    ToolResult,
)
from agenttrace.parsers.claude_code import ATTR_TOOL_USE_ID, ATTR_TOOL_USE_NAME, parse_entries
from agenttrace.tasks import finalize_session

logger = logging.getLogger(__name__)


@dataclass
class PartialResult:
    agent: Agent | None = None
    context: SessionContext | None = None
    events: list[Event] = field(default_factory=list)
    session_id: str | None = None


def parse_lines(lines: list[str], title_max_chars: int = 80) -> PartialResult:
    """Classify a batch of raw JSONL lines. A pure function of its input."""
    transcript = parse_entries(lines, title_max_chars)
    agent = None
    if transcript.model or transcript.tool_version:
        agent = transcript.agent()
    context = None
    if transcript.saw_header or transcript.first_user_text or transcript.custom_title:
        context = transcript.context()
    return PartialResult(
        agent=agent,
        context=context,
        events=transcript.events,
        session_id=transcript.session_id,
    )


class LiveSession:
    """Running view of a live transcript, fed one PartialResult at a time.

    Safe to share between threads: merges are serialized by an internal lock.
    snapshot() returns an independent finalized Session.
    """

    def __init__(self, session_id: str | None = None, agent: Agent | None = None):
        self._lock = threading.Lock()
        self._session_id = session_id
        self._agent = agent
        self._context = SessionContext()
        self._events: list[Event] = []
        self._ids: set[str] = set()
        # call id -> (event id, tool name) across batches
        self._calls: dict[str, tuple[str, str]] = {}

    def merge(self, partial: PartialResult) -> int:
        """Fold a batch in. Returns the number of new events added."""
        with self._lock:
            if partial.session_id and not self._session_id:
                self._session_id = partial.session_id
            if partial.agent is not None:
                self._merge_agent(partial.agent)
            if partial.context is not None:
                self._merge_context(partial.context)

            added = 0
            for event in partial.events:
                if event.event_id in self._ids:
                    logger.debug("Ignoring already merged event %s", event.event_id)
                    continue
                self._remember_call(event)
                self._events.append(self._resolve_result(event))
                self._ids.add(event.event_id)
                added += 1
            return added

    def snapshot(self) -> Session:
        with self._lock:
            events = [replace(e, attributes=dict(e.attributes)) for e in self._events]
            context = replace(
                self._context,
                tags=list(self._context.tags),
                related_session_ids=list(self._context.related_session_ids),
                attributes=dict(self._context.attributes),
            )
            agent = self._agent or Agent(provider="anthropic", model="unknown", tool="claude-code")
            session = Session(
                session_id=self._session_id or "live",
                agent=replace(agent),
                context=context,
                events=events,
            )
        return finalize_session(session)

    def _merge_agent(self, agent: Agent) -> None:
        if self._agent is None:
            self._agent = replace(agent)
            return
        if self._agent.model == "unknown" and agent.model != "unknown":
            self._agent.model = agent.model
        if not self._agent.tool_version and agent.tool_version:
            self._agent.tool_version = agent.tool_version

    def _merge_context(self, context: SessionContext) -> None:
        current = self._context
        current.title = current.title or context.title
        current.description = current.description or context.description
        for tag in context.tags:
            if tag not in current.tags:
                current.tags.append(tag)
        for key, value in context.attributes.items():
            current.attributes.setdefault(key, value)

    def _remember_call(self, event: Event) -> None:
        call_id = event.attributes.get(ATTR_TOOL_USE_ID)
        name = event.attributes.get(ATTR_TOOL_USE_NAME)
        if call_id and name:
            self._calls[call_id] = (event.event_id, name)

    def _resolve_result(self, event: Event) -> Event:
        """Fill in a tool result whose call arrived in an earlier batch."""
        et = event.event_type
        if not isinstance(et, ToolResult) or et.call_id is not None:
            return event
        raw_call_id = event.attributes.get(ATTR_SEMANTIC_CALL_ID)
        if raw_call_id not in self._calls:
            return event
        event_id, name = self._calls[raw_call_id]
        event.event_type = replace(et, name=name, call_id=event_id)
        return event
