"""Parser contract shared by every transcript format."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from agenttrace.dedup import DedupSettings
from agenttrace.errors import FormatError
from agenttrace.models import Session
from agenttrace.tasks import finalize_session, sort_events, splice_subagent

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ParserSettings:
    dedup: DedupSettings = field(default_factory=DedupSettings)
    title_max_chars: int = 80
    merge_subagents: bool = True


@dataclass
class ChildTranscript:
    """A discovered subagent transcript waiting to be spliced into its parent."""

    path: Path
    task_id: str
    title: str | None = None


def path_text(path: Path | str) -> str:
    """Forward-slash path string for substring matching."""
    return str(path).replace("\\", "/")


class SessionParser:
    """Base class for format parsers.

    Subclasses set `name`, implement can_parse() and _parse(). The
    merge_subagents flag passed to _parse() is always False for child
    transcripts, so subagent discovery never recurses.
    """

    name = ""

    def __init__(self, settings: ParserSettings | None = None):
        self.settings = settings or ParserSettings()

    def can_parse(self, path: Path) -> bool:
        raise NotImplementedError

    def parse(self, path: Path | str) -> Session:
        return self._parse(Path(path), merge_subagents=self.settings.merge_subagents)

    def _parse(self, path: Path, merge_subagents: bool) -> Session:
        raise NotImplementedError

    def find_children(self, path: Path, session: Session) -> list[ChildTranscript]:
        """Subagent transcripts related to session. Formats without them return []."""
        return []

    def merge_children(self, path: Path, session: Session) -> Session:
        """Parse each discovered child and splice it into session.events."""
        children = self.find_children(path, session)
        merged = 0
        for child in children:
            try:
                child_session = self._parse(child.path, merge_subagents=False)
            except (FormatError, OSError, ValueError) as exc:
                logger.warning("Skipping subagent transcript %s: %s", child.path, exc)
                continue
            task_id = child.task_id
            if any(e.task_id == task_id for e in session.events):
                task_id = f"{task_id}-{merged + 1}"
            if splice_subagent(session.events, child_session, task_id, child.title):
                merged += 1
                if (
                    child_session.session_id != session.session_id
                    and child_session.session_id not in session.context.related_session_ids
                ):
                    session.context.related_session_ids.append(child_session.session_id)
        if merged:
            logger.debug("Merged %d subagent transcript(s) into %s", merged, session.session_id)
            sort_events(session.events)
        return session

    def finish(self, path: Path, session: Session, merge_subagents: bool) -> Session:
        """Common tail of _parse(): subagent merge, task reconciliation, stats."""
        if merge_subagents:
            self.merge_children(path, session)
        return finalize_session(session)


def unique_event_id(base: str, used: set[str]) -> str:
    """Return base, or base with a numeric suffix if already used. Records the result."""
    candidate = base
    n = 1
    while candidate in used:
        n += 1
        candidate = f"{base}-{n}"
    used.add(candidate)
    return candidate
