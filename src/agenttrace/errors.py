"""Errors surfaced to callers of parse().

Only whole-file problems raise. Malformed records, unknown record kinds and
broken subagent files are skipped inside the parsers.
"""

from __future__ import annotations

from pathlib import Path


class FormatError(Exception):
    """A transcript could not be turned into a Session."""

    def __init__(self, message: str, path: Path | str | None = None):
        self.path = Path(path) if path is not None else None
        self.message = message
        super().__init__(f"{path}: {message}" if path is not None else message)


class SourceReadError(FormatError):
    """The source path is missing or unreadable."""


class SourceDecodeError(FormatError):
    """A single-document source could not be deserialized at all."""


class NoParserError(FormatError):
    """No registered parser accepts the path."""
