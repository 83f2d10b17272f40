"""Configuration loader. Reads optional YAML config and merges with defaults."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import yaml

from agenttrace.dedup import DedupSettings
from agenttrace.parsers.base import ParserSettings

CONFIG_PATH = Path("~/.config/agenttrace/config.yaml")

DEFAULTS = {
    "log_level": "WARNING",
    "max_workers": 4,
    "same_channel_window_seconds": 2.0,
    "cross_channel_window_seconds": 12.0,
    "min_containment_chars": 16,
    "title_max_chars": 80,
    "merge_subagents": True,
    "home_dir": "~",
}


@dataclass
class AgentTraceConfig:
    log_level: str
    max_workers: int
    same_channel_window_seconds: float
    cross_channel_window_seconds: float
    min_containment_chars: int
    title_max_chars: int
    merge_subagents: bool
    home_dir: Path

    def dedup_settings(self) -> DedupSettings:
        return DedupSettings(
            same_channel_window_seconds=self.same_channel_window_seconds,
            cross_channel_window_seconds=self.cross_channel_window_seconds,
            min_containment_chars=self.min_containment_chars,
        )

    def parser_settings(self) -> ParserSettings:
        return ParserSettings(
            dedup=self.dedup_settings(),
            title_max_chars=self.title_max_chars,
            merge_subagents=self.merge_subagents,
        )


def coerce_value(key: str, raw: str) -> object:
    """Convert a command-line string to the type of the key's default."""
    if key not in DEFAULTS:
        raise KeyError(key)
    default = DEFAULTS[key]
    if isinstance(default, bool):
        lowered = raw.strip().lower()
        if lowered in ("1", "true", "yes", "on"):
            return True
        if lowered in ("0", "false", "no", "off"):
            return False
        raise ValueError(f"expected a boolean for {key}, got {raw!r}")
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    return raw


def save_config_value(key: str, value: object, config_path: Path | None = None) -> None:
    """Update a single key in the config file, preserving other settings."""
    if config_path is None:
        config_path = CONFIG_PATH
    config_path = config_path.expanduser()
    config_path.parent.mkdir(parents=True, exist_ok=True)

    existing: dict = {}
    if config_path.is_file():
        with open(config_path) as f:
            loaded = yaml.safe_load(f)
        if isinstance(loaded, dict):
            existing = loaded

    existing[key] = value
    with open(config_path, "w") as f:
        yaml.dump(existing, f, default_flow_style=False)


def load_config(config_path: Path | None = None) -> AgentTraceConfig:
    """Load config from ~/.config/agenttrace/config.yaml, merged with defaults.

    Only known keys are read. If no config file exists, return defaults
    (don't error).
    """
    if config_path is None:
        config_path = CONFIG_PATH

    config_path = config_path.expanduser()

    merged = dict(DEFAULTS)

    if config_path.is_file():
        with open(config_path) as f:
            user_config = yaml.safe_load(f)
        if isinstance(user_config, dict):
            for key in DEFAULTS:
                if key in user_config:
                    merged[key] = user_config[key]

    return AgentTraceConfig(
        log_level=str(merged["log_level"]).upper(),
        max_workers=max(int(merged["max_workers"]), 1),
        same_channel_window_seconds=float(merged["same_channel_window_seconds"]),
        cross_channel_window_seconds=float(merged["cross_channel_window_seconds"]),
        min_containment_chars=int(merged["min_containment_chars"]),
        title_max_chars=int(merged["title_max_chars"]),
        merge_subagents=bool(merged["merge_subagents"]),
        home_dir=Path(merged["home_dir"]).expanduser(),
    )
