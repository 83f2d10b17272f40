"""Tests for agenttrace.config module."""

from pathlib import Path

import pytest
import yaml

from agenttrace.config import DEFAULTS, AgentTraceConfig, coerce_value, load_config, save_config_value
from agenttrace.dedup import DedupSettings


def test_load_config_no_file(tmp_path):
    """When config file doesn't exist, return defaults without error."""
    config = load_config(config_path=tmp_path / "nonexistent.yaml")
    assert isinstance(config, AgentTraceConfig)
    assert config.log_level == "WARNING"
    assert config.max_workers == 4
    assert config.merge_subagents is True


def test_load_config_defaults_paths(tmp_path):
    """Default paths should be expanded (no ~ remaining)."""
    config = load_config(config_path=tmp_path / "nonexistent.yaml")
    assert "~" not in str(config.home_dir)
    assert config.home_dir == Path.home()


def test_load_config_partial_override(config_file):
    """A partial config file merges with defaults correctly."""
    config_file.write_text("cross_channel_window_seconds: 30\n")

    config = load_config(config_path=config_file)
    assert config.cross_channel_window_seconds == 30.0
    # Other defaults still apply
    assert config.same_channel_window_seconds == DEFAULTS["same_channel_window_seconds"]
    assert config.title_max_chars == 80


def test_load_config_normalizes_values(config_file):
    config_file.write_text("log_level: debug\nmax_workers: 0\nhome_dir: ~/elsewhere\n")

    config = load_config(config_path=config_file)
    assert config.log_level == "DEBUG"
    assert config.max_workers == 1
    assert config.home_dir == Path("~/elsewhere").expanduser()


def test_load_config_unknown_keys_ignored(config_file):
    """Unknown keys in the YAML file are silently ignored."""
    config_file.write_text("unknown_key: some_value\ntitle_max_chars: 40\n")

    config = load_config(config_path=config_file)
    assert config.title_max_chars == 40
    assert not hasattr(config, "unknown_key")


def test_load_config_empty_yaml(config_file):
    """An empty YAML file should return defaults."""
    config_file.write_text("")

    config = load_config(config_path=config_file)
    assert config.max_workers == 4
    assert config.merge_subagents is True


def test_load_config_non_mapping_yaml(config_file):
    config_file.write_text("- just\n- a list\n")

    config = load_config(config_path=config_file)
    assert config.log_level == "WARNING"


# ---------------------------------------------------------------------------
# Derived settings
# ---------------------------------------------------------------------------


def test_dedup_settings_from_defaults(tmp_path):
    config = load_config(config_path=tmp_path / "nonexistent.yaml")
    assert config.dedup_settings() == DedupSettings()


def test_parser_settings(config_file):
    config_file.write_text("min_containment_chars: 8\ntitle_max_chars: 20\nmerge_subagents: false\n")

    settings = load_config(config_path=config_file).parser_settings()
    assert settings.dedup.min_containment_chars == 8
    assert settings.title_max_chars == 20
    assert settings.merge_subagents is False


# ---------------------------------------------------------------------------
# Writing
# ---------------------------------------------------------------------------


class TestCoerceValue:
    @pytest.mark.parametrize("key,raw,expected", [
        ("max_workers", "8", 8),
        ("cross_channel_window_seconds", "5.5", 5.5),
        ("merge_subagents", "no", False),
        ("merge_subagents", "ON", True),
        ("log_level", "info", "info"),
    ])
    def test_typed(self, key, raw, expected):
        assert coerce_value(key, raw) == expected

    def test_unknown_key(self):
        with pytest.raises(KeyError):
            coerce_value("port", "8080")

    def test_bad_bool(self):
        with pytest.raises(ValueError):
            coerce_value("merge_subagents", "maybe")

    def test_bad_int(self):
        with pytest.raises(ValueError):
            coerce_value("max_workers", "many")


class TestSaveConfigValue:
    def test_creates_file(self, tmp_path):
        path = tmp_path / "nested" / "config.yaml"
        save_config_value("max_workers", 2, path)
        assert yaml.safe_load(path.read_text()) == {"max_workers": 2}

    def test_preserves_other_keys(self, config_file):
        config_file.write_text("log_level: INFO\n")
        save_config_value("title_max_chars", 50, config_file)

        config = load_config(config_path=config_file)
        assert config.log_level == "INFO"
        assert config.title_max_chars == 50
