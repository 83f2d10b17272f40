"""Parser dispatch: pick the format parser for a path and run it."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from agenttrace.errors import FormatError, NoParserError
from agenttrace.models import Session
from agenttrace.parsers.amp import AmpParser
from agenttrace.parsers.base import ParserSettings, SessionParser
from agenttrace.parsers.claude_code import ClaudeCodeParser
from agenttrace.parsers.cline import ClineParser
from agenttrace.parsers.codex import CodexParser
from agenttrace.parsers.cursor import CursorParser
from agenttrace.parsers.gemini import GeminiParser
from agenttrace.parsers.opencode import OpenCodeParser

logger = logging.getLogger(__name__)

PARSER_CLASSES: list[type[SessionParser]] = [
    ClaudeCodeParser,
    CodexParser,
    OpenCodeParser,
    ClineParser,
    CursorParser,
    GeminiParser,
    AmpParser,
]


@dataclass
class ParseOutcome:
    """Result of parsing one path in a batch: a session or the error that stopped it."""

    path: Path
    session: Session | None = None
    error: FormatError | None = None

    @property
    def ok(self) -> bool:
        return self.session is not None


class ParserRegistry:
    def __init__(self, parsers: list[SessionParser]):
        self.parsers = list(parsers)

    @property
    def names(self) -> list[str]:
        return [p.name for p in self.parsers]

    def get(self, name: str) -> SessionParser | None:
        return next((p for p in self.parsers if p.name == name), None)

    def select(self, path: Path | str) -> SessionParser | None:
        """First registered parser that accepts path, or None."""
        path = Path(path)
        for parser in self.parsers:
            if parser.can_parse(path):
                logger.debug("Selected %s parser for %s", parser.name, path)
                return parser
        logger.debug("No parser accepts %s", path)
        return None

    def parse(self, path: Path | str) -> Session:
        parser = self.select(path)
        if parser is None:
            raise NoParserError(
                f"no parser found; supported formats: {', '.join(self.names)}", path,
            )
        return parser.parse(path)

    def _parse_outcome(self, path: Path) -> ParseOutcome:
        try:
            return ParseOutcome(path, session=self.parse(path))
        except FormatError as exc:
            return ParseOutcome(path, error=exc)
        except OSError as exc:
            return ParseOutcome(path, error=FormatError(str(exc), path))

    def parse_many(self, paths: Iterable[Path | str], max_workers: int = 4) -> list[ParseOutcome]:
        """Parse independent files on a thread pool. Results keep the input order."""
        paths = [Path(p) for p in paths]
        if max_workers <= 1 or len(paths) <= 1:
            return [self._parse_outcome(p) for p in paths]
        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            return list(pool.map(self._parse_outcome, paths))


def default_registry(settings: ParserSettings | None = None) -> ParserRegistry:
    """A registry with every built-in format, sharing one settings value."""
    settings = settings or ParserSettings()
    return ParserRegistry([cls(settings) for cls in PARSER_CLASSES])
