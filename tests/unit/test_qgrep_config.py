"""Tests for Config validation and ConfigManager persistence."""

import json

import pytest
from pydantic import ValidationError

from qgrep_indexer.config import Config, ConfigManager, SearchConfig, TimingConfig, enabled_globs


class TestConfig:
    def test_defaults(self):
        config = Config()
        assert config.index_dir_name == ".vscode/qgrep"
        assert config.config_file_name == "workspace.cfg"
        assert config.search.default_max_results == 200
        assert config.search.max_results_limit == 1000
        assert config.search.auto_init_on_query is True
        assert ".git" in config.baseline_excludes

    def test_extensions_are_normalized(self):
        config = Config(shader_extensions=[".HLSL", "usf", "hlsl", " "])
        assert config.shader_extensions == ["hlsl", "usf"]

    @pytest.mark.parametrize("value", ["", "/", "../outside", "a/../../b"])
    def test_index_dir_must_stay_inside_root(self, value):
        with pytest.raises(ValidationError):
            Config(index_dir_name=value)

    def test_index_dir_slashes_normalized(self):
        assert Config(index_dir_name="\\.cache\\qgrep\\").index_dir_name == ".cache/qgrep"

    def test_only_true_ignore_patterns_are_enabled(self):
        config = Config(ignore_patterns={"**/a": True, "**/b": False, "**/c": 1, "**/d": "true"})
        assert enabled_globs(config.ignore_patterns) == ["**/a"]

    def test_search_limits_must_be_ordered(self):
        with pytest.raises(ValidationError):
            SearchConfig(default_max_results=500, max_results_limit=100)
        with pytest.raises(ValidationError):
            SearchConfig(engine_output_limit=10)

    def test_negative_timings_rejected(self):
        with pytest.raises(ValidationError):
            TimingConfig(file_event_debounce=-1)
        with pytest.raises(ValidationError):
            TimingConfig(init_poll_interval=0)

    def test_resolve_binary_path(self, tmp_path, monkeypatch):
        explicit = tmp_path / "tools" / "qgrep"
        assert Config(binary_path=str(explicit)).resolve_binary_path() == explicit

        monkeypatch.setenv("PATH", str(tmp_path / "empty"))
        assert str(Config(binary_path="qgrep").resolve_binary_path()) == "qgrep"


class TestConfigManager:
    def test_load_defaults_when_missing(self, tmp_path):
        manager = ConfigManager(tmp_path / ".qgrep-indexer" / "config.json")
        assert manager.load() == Config()
        assert not manager.config_path.exists()

    def test_save_and_reload(self, tmp_path):
        path = tmp_path / ".qgrep-indexer" / "config.json"
        manager = ConfigManager(path)
        manager.save(Config(binary_path="/opt/qgrep", ignore_patterns={"**/Saved": True}))

        data = json.loads(path.read_text(encoding="utf-8"))
        assert data["binary_path"] == "/opt/qgrep"
        assert ConfigManager(path).load().ignore_patterns == {"**/Saved": True}

    def test_invalid_file(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"search": {"default_max_results": 0}}), encoding="utf-8")
        with pytest.raises(ValueError, match="Failed to load config"):
            ConfigManager(path).load()

    def test_update_config_validates_and_saves(self, tmp_path):
        manager = ConfigManager(tmp_path / "config.json")
        updated = manager.update_config(script_extensions=[".LUA"])
        assert updated.script_extensions == ["lua"]
        assert ConfigManager(manager.config_path).load().script_extensions == ["lua"]

        with pytest.raises(ValidationError):
            manager.update_config(index_dir_name="../x")

    def test_find_config_walks_up(self, tmp_path):
        path = tmp_path / ".qgrep-indexer" / "config.json"
        ConfigManager(path).save(Config())
        nested = tmp_path / "a" / "b"
        nested.mkdir(parents=True)

        assert ConfigManager.find_config_path(nested) == path.resolve()
        assert ConfigManager.create_with_backtrack(nested).config_path == path.resolve()

    def test_create_with_backtrack_falls_back_to_start_dir(self, tmp_path):
        manager = ConfigManager.create_with_backtrack(tmp_path)
        assert manager.config_path == tmp_path / ".qgrep-indexer" / "config.json"
