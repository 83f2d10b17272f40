"""Shared test fixtures for agenttrace tests."""

import json
from pathlib import Path

import pytest


def write_jsonl(path: Path, records: list) -> Path:
    """Write records (dicts or raw strings) as JSONL, creating parent dirs."""
    path.parent.mkdir(parents=True, exist_ok=True)
    lines = [r if isinstance(r, str) else json.dumps(r) for r in records]
    path.write_text("\n".join(lines) + "\n")
    return path


def write_json(path: Path, data) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data))
    return path


@pytest.fixture
def claude_project(tmp_path):
    """A ~/.claude/projects/<project> directory under tmp_path."""
    project = tmp_path / ".claude" / "projects" / "-home-user-proj"
    project.mkdir(parents=True)
    return project


@pytest.fixture
def codex_day(tmp_path):
    """A ~/.codex/sessions/YYYY/MM/DD directory under tmp_path."""
    day = tmp_path / ".codex" / "sessions" / "2025" / "01" / "15"
    day.mkdir(parents=True)
    return day


@pytest.fixture
def config_file(tmp_path):
    """Path for a throwaway config file (not created)."""
    return tmp_path / "config.yaml"
