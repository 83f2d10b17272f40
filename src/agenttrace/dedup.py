"""Cross-channel message deduplication.

Some tools report the same utterance twice: once on a low-level structured
stream and once on a higher-level event log. MessageDeduplicator keeps exactly
one canonical event per utterance, preferring the authoritative channel.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from agenttrace.models import ATTR_SOURCE_CHANNEL, AgentMessage, Event, Thinking, UserMessage

logger = logging.getLogger(__name__)

_PLACEHOLDER_LINE_RE = re.compile(
    r"^\s*(?:<(?:image|file|img|attachment)[^>]*>|\[(?:image|file|img|attachment)[^\]]*\])\s*$",
    re.I,
)


@dataclass(frozen=True)
class DedupSettings:
    same_channel_window_seconds: float = 2.0
    cross_channel_window_seconds: float = 12.0
    min_containment_chars: int = 16


def normalize_text(text: str) -> str:
    """Lowercase, drop bare media placeholder lines, collapse whitespace."""
    kept = [line for line in text.splitlines() if not _PLACEHOLDER_LINE_RE.match(line)]
    return " ".join(" ".join(kept).lower().split())


def texts_equivalent(a: str, b: str, min_containment_chars: int = 16) -> bool:
    na = normalize_text(a)
    nb = normalize_text(b)
    if na == nb:
        return True
    if min(len(na), len(nb)) < min_containment_chars:
        return False
    return na in nb or nb in na


def message_role(event: Event) -> str | None:
    if isinstance(event.event_type, UserMessage):
        return "user"
    if isinstance(event.event_type, AgentMessage):
        return "assistant"
    if isinstance(event.event_type, Thinking):
        return "thinking"
    return None


class MessageDeduplicator:
    """Appends message events to a list while removing cross-channel duplicates.

    Each event handed to push() is tagged with its channel in the
    source.channel attribute. The events list is owned by the caller and is
    modified in place.
    """

    def __init__(self, authoritative: str, fallback: str, settings: DedupSettings | None = None):
        self.authoritative = authoritative
        self.fallback = fallback
        self.settings = settings or DedupSettings()

    def push(self, events: list[Event], event: Event, channel: str) -> bool:
        """Append event unless it duplicates one already kept. Returns True if appended."""
        event.attributes[ATTR_SOURCE_CHANNEL] = channel
        role = message_role(event)
        if role is None:
            events.append(event)
            return True

        text = event.content.plain_text()
        same_window = self.settings.same_channel_window_seconds
        cross_window = self.settings.cross_channel_window_seconds

        for existing in events:
            if message_role(existing) != role:
                continue
            existing_channel = existing.attributes.get(ATTR_SOURCE_CHANNEL)
            if existing_channel == channel:
                if self._matches(existing, event, text, same_window):
                    logger.debug("Dropping same-channel repeat %s", event.event_id)
                    return False
            elif channel == self.fallback and existing_channel == self.authoritative:
                if self._matches(existing, event, text, cross_window):
                    logger.debug("Dropping fallback duplicate %s", event.event_id)
                    return False

        if channel == self.authoritative:
            before = len(events)
            events[:] = [
                e for e in events
                if not (
                    message_role(e) == role
                    and e.attributes.get(ATTR_SOURCE_CHANNEL) == self.fallback
                    and self._matches(e, event, text, cross_window)
                )
            ]
            if len(events) != before:
                logger.debug(
                    "Replaced %d fallback message(s) with %s", before - len(events), event.event_id,
                )

        events.append(event)
        return True

    def _matches(self, existing: Event, new: Event, text: str, window: float) -> bool:
        gap = abs((existing.timestamp - new.timestamp).total_seconds())
        if gap > window:
            return False
        return texts_equivalent(
            existing.content.plain_text(), text, self.settings.min_containment_chars,
        )
