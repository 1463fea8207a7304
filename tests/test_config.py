# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Tests for config.py module."""

import pytest

from conveyor.config import (
    DEFAULTS,
    load_config,
    resolve_config_path,
    run_settings,
    validate_settings,
)
from conveyor.errors import ValidationError


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    """Keep ~/.conveyor and $CONVEYOR_CONFIG out of the tests."""
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    monkeypatch.delenv("CONVEYOR_CONFIG", raising=False)


class TestLoadConfig:
    """Config file discovery and merging."""

    def test_defaults_without_file(self):
        assert resolve_config_path() is None
        config = load_config()
        assert config == DEFAULTS

    def test_explicit_path_merges(self, tmp_path):
        path = tmp_path / "conveyor.yaml"
        path.write_text("concurrency: 8\nnotify:\n  channel: webhook\n  url: https://hooks\n")
        config = load_config(str(path))
        assert config["concurrency"] == 8
        assert config["run_timeout_s"] == DEFAULTS["run_timeout_s"]
        assert config["notify"] == {"channel": "webhook", "url": "https://hooks"}

    def test_explicit_path_missing(self, tmp_path):
        with pytest.raises(FileNotFoundError, match="Config file not found"):
            load_config(str(tmp_path / "missing.yaml"))

    def test_env_var_path(self, tmp_path, monkeypatch):
        path = tmp_path / "env.yaml"
        path.write_text("retries: 2\n")
        monkeypatch.setenv("CONVEYOR_CONFIG", str(path))
        assert resolve_config_path() == path
        assert load_config()["retries"] == 2

    def test_env_var_path_missing(self, tmp_path, monkeypatch):
        monkeypatch.setenv("CONVEYOR_CONFIG", str(tmp_path / "gone.yaml"))
        with pytest.raises(FileNotFoundError, match="CONVEYOR_CONFIG"):
            load_config()

    def test_default_location(self, tmp_path):
        path = tmp_path / "home" / ".conveyor" / "config.yaml"
        path.parent.mkdir(parents=True)
        path.write_text("log_level: DEBUG\n")
        assert load_config()["log_level"] == "DEBUG"

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("concurrency: [1\n")
        with pytest.raises(ValidationError, match="Invalid YAML"):
            load_config(str(path))

    def test_not_a_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- 1\n")
        with pytest.raises(ValidationError, match="must be a mapping"):
            load_config(str(path))

    def test_out_of_range_value(self, tmp_path):
        path = tmp_path / "zero.yaml"
        path.write_text("concurrency: 0\n")
        with pytest.raises(ValidationError, match="concurrency"):
            load_config(str(path))


class TestRunSettings:
    """Pipeline and CLI overrides."""

    def test_overrides_applied(self):
        settings = run_settings(DEFAULTS, {"concurrency": 2, "fail_fast": False})
        assert settings["concurrency"] == 2
        assert settings["fail_fast"] is False
        assert "history_dir" not in settings

    def test_none_overrides_ignored(self):
        settings = run_settings(DEFAULTS, {"concurrency": None, "run_timeout_s": None})
        assert settings["concurrency"] == 4
        assert settings["run_timeout_s"] == 3600

    def test_unknown_setting(self):
        with pytest.raises(ValidationError, match="Unknown setting: workers"):
            run_settings(DEFAULTS, {"workers": 2})

    @pytest.mark.parametrize("settings", [
        {"concurrency": 0},
        {"concurrency": 1.5},
        {"retries": -1},
        {"run_timeout_s": 0},
        {"stage_timeout_s": True},
        {"backoff_base_s": -1},
        {"cancel_grace_s": "10"},
    ])
    def test_validate_rejects(self, settings):
        with pytest.raises(ValidationError):
            validate_settings(settings)

    def test_validate_accepts_zero_backoff(self):
        validate_settings({"backoff_base_s": 0, "backoff_max_s": 0.0, "cancel_grace_s": 0})
