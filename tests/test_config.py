"""Tests for testgate.toml loading."""

import logging

from testgate.config import (
    _DEFAULTS,
    _deep_merge,
    ensure_config,
    get_config,
    get_config_path,
    get_state_root,
)


class TestStateRoot:
    def test_env_override(self, testgate_home):
        assert get_state_root() == testgate_home
        assert get_config_path() == testgate_home / "config" / "testgate.toml"

    def test_default(self, monkeypatch, tmp_path):
        monkeypatch.delenv("TESTGATE_HOME")
        monkeypatch.setenv("HOME", str(tmp_path))
        assert get_state_root() == tmp_path / ".claude" / "test_mode"


class TestGetConfig:
    def test_defaults_without_file(self):
        assert get_config() == _DEFAULTS

    def test_returns_copy(self):
        config = get_config()
        config["decision"]["extra_dangerous_patterns"].append("x")
        assert get_config()["decision"]["extra_dangerous_patterns"] == []

    def test_merges_file(self):
        path = get_config_path()
        path.parent.mkdir(parents=True)
        path.write_text(
            "[audit]\nburst_threshold = 3\n\n"
            "[decision]\nextra_dangerous_patterns = ['\\bterraform\\s+apply\\b']\n"
        )
        config = get_config()
        assert config["audit"]["burst_threshold"] == 3
        assert config["audit"]["retention_days"] == 30
        assert config["decision"]["extra_dangerous_patterns"] == [r"\bterraform\s+apply\b"]

    def test_malformed_file_falls_back(self, caplog):
        path = get_config_path()
        path.parent.mkdir(parents=True)
        path.write_text("[audit\nburst = ")
        caplog.set_level(logging.WARNING, logger="testgate.config")
        assert get_config() == _DEFAULTS
        assert any("Ignoring unreadable config" in r.getMessage() for r in caplog.records)


class TestEnsureConfig:
    def test_writes_loadable_defaults(self):
        path = ensure_config()
        assert path.exists()
        assert get_config() == _DEFAULTS

    def test_does_not_overwrite(self):
        path = get_config_path()
        path.parent.mkdir(parents=True)
        path.write_text("[backups]\nretention = 2\n")
        ensure_config()
        assert get_config()["backups"]["retention"] == 2


class TestDeepMerge:
    def test_nested(self):
        merged = _deep_merge({"a": {"x": 1, "y": 2}}, {"a": {"y": 3}, "b": 4})
        assert merged == {"a": {"x": 1, "y": 3}, "b": 4}

    def test_scalar_replaces_dict(self):
        assert _deep_merge({"a": {"x": 1}}, {"a": 5}) == {"a": 5}
