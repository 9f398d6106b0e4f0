"""Tests for the managed regions of the qgrep workspace descriptor."""

from qgrep_indexer.config import Config
from qgrep_indexer.services.managed_config import (
    MANAGED_REGIONS,
    REGION_EXCLUDES,
    REGION_SCRIPT_INCLUDES,
    REGION_SHADER_INCLUDES,
    ManagedConfigWriter,
    apply_managed_regions,
    begin_marker,
    end_marker,
    exclude_rules,
    extension_include_rules,
    replace_region,
)

BODIES = {
    REGION_SHADER_INCLUDES: ["include \\.(hlsl|usf)$"],
    REGION_SCRIPT_INCLUDES: ["include \\.(lua|py)$"],
    REGION_EXCLUDES: ["exclude (^|/)\\.git(/|$)"],
}


class TestRuleBuilders:
    def test_extension_include_rules(self):
        assert extension_include_rules(["usf", "hlsl", "usf"]) == ["include \\.(hlsl|usf)$"]

    def test_extension_include_rules_empty(self):
        assert extension_include_rules([]) == []

    def test_exclude_rules_merge_sort_and_dedupe(self):
        rules = exclude_rules([".git", "node_modules"], ["**/node_modules", "**/*.log"])
        assert rules == sorted(set(rules))
        assert "exclude (^|/)node_modules(/|$)" in rules
        assert "exclude (^|/)\\.git(/|$)" in rules
        assert "exclude (^|/)[^/]*\\.log(/|$)" in rules
        assert len(rules) == 3

    def test_exclude_rules_skip_unsupported_globs(self, caplog):
        import logging

        with caplog.at_level(logging.INFO):
            rules = exclude_rules([], ["*.{js,ts}"])
        assert rules == []
        assert "*.{js,ts}" in caplog.text


class TestReplaceRegion:
    def test_appends_when_missing(self):
        lines = replace_region(["path ."], REGION_EXCLUDES, ["exclude x"])
        assert lines == ["path .", begin_marker(REGION_EXCLUDES), "exclude x", end_marker(REGION_EXCLUDES)]

    def test_replaces_in_place(self):
        lines = [
            "path .",
            begin_marker(REGION_EXCLUDES),
            "exclude old",
            end_marker(REGION_EXCLUDES),
            "include user$",
        ]
        assert replace_region(lines, REGION_EXCLUDES, ["exclude new"]) == [
            "path .",
            begin_marker(REGION_EXCLUDES),
            "exclude new",
            end_marker(REGION_EXCLUDES),
            "include user$",
        ]

    def test_end_before_begin_is_repaired(self, caplog):
        lines = [
            end_marker(REGION_EXCLUDES),
            "include user$",
            begin_marker(REGION_EXCLUDES),
        ]
        result = replace_region(lines, REGION_EXCLUDES, ["exclude new"])
        assert result == [
            "include user$",
            begin_marker(REGION_EXCLUDES),
            "exclude new",
            end_marker(REGION_EXCLUDES),
        ]
        assert "Malformed managed region" in caplog.text

    def test_duplicate_blocks_collapse_to_one(self):
        lines = [
            begin_marker(REGION_EXCLUDES),
            "exclude a",
            end_marker(REGION_EXCLUDES),
            "keep me",
            begin_marker(REGION_EXCLUDES),
            "exclude b",
            end_marker(REGION_EXCLUDES),
        ]
        result = replace_region(lines, REGION_EXCLUDES, ["exclude c"])
        assert result == [
            "keep me",
            begin_marker(REGION_EXCLUDES),
            "exclude c",
            end_marker(REGION_EXCLUDES),
        ]


class TestApplyManagedRegions:
    def test_preserves_unmanaged_content(self):
        text = "path .\ninclude \\.cpp$\n"
        result = apply_managed_regions(text, BODIES)
        assert result.startswith("path .\ninclude \\.cpp$\n")
        for region in MANAGED_REGIONS:
            assert begin_marker(region) in result
            assert end_marker(region) in result

    def test_idempotent(self):
        once = apply_managed_regions("path .\n", BODIES)
        assert apply_managed_regions(once, BODIES) == once

    def test_preserves_crlf(self):
        result = apply_managed_regions("path .\r\ninclude x\r\n", BODIES)
        assert "\r\n" in result
        assert "\n" not in result.replace("\r\n", "")

    def test_empty_body_keeps_markers(self):
        result = apply_managed_regions("", {REGION_EXCLUDES: []})
        assert f"{begin_marker(REGION_EXCLUDES)}\n{end_marker(REGION_EXCLUDES)}" in result


class TestManagedConfigWriter:
    def test_sync_writes_once(self, tmp_path):
        config_path = tmp_path / "workspace.cfg"
        config_path.write_text("path .\n", encoding="utf-8")
        writer = ManagedConfigWriter(Config(shader_extensions=["usf"], script_extensions=["lua"]))

        assert writer.sync(config_path) is True
        first = config_path.read_bytes()
        assert writer.sync(config_path) is False
        assert config_path.read_bytes() == first

        text = first.decode("utf-8")
        assert "include \\.(usf)$" in text
        assert "include \\.(lua)$" in text
        assert "exclude (^|/)\\.vscode/qgrep(/|$)" in text

    def test_sync_missing_file(self, tmp_path):
        writer = ManagedConfigWriter(Config())
        assert writer.sync(tmp_path / "absent.cfg") is False
        assert not (tmp_path / "absent.cfg").exists()

    def test_only_true_ignore_patterns_apply(self):
        patterns = {"**/Intermediate": True, "**/Saved": False, "**/Binaries": "yes"}
        writer = ManagedConfigWriter(Config(), lambda: patterns)
        assert writer.enabled_ignore_globs() == ["**/Intermediate"]
        excludes = writer.build_bodies()[REGION_EXCLUDES]
        assert "exclude (^|/)Intermediate(/|$)" in excludes
        assert not any("Saved" in rule for rule in excludes)

    def test_provider_changes_are_picked_up(self, tmp_path):
        config_path = tmp_path / "workspace.cfg"
        config_path.write_text("", encoding="utf-8")
        patterns = {}
        writer = ManagedConfigWriter(Config(), lambda: patterns)
        writer.sync(config_path)

        patterns["**/DerivedDataCache"] = True
        assert writer.sync(config_path) is True
        assert "DerivedDataCache" in config_path.read_text(encoding="utf-8")
