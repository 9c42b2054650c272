from __future__ import annotations

import pytest

from apprune.config.defaults import default_config
from apprune.config.schema import AppConfig, Category, Rule, RuleSyntaxError, ScanRoot, clamp_field
from apprune.models.enums import HashAlgorithm, RuleKind


class TestToDict:
    def test_keys_present(self) -> None:
        d = AppConfig().to_dict()
        expected_keys = {
            "scanRoots",
            "excludePatterns",
            "includeHidden",
            "followSymlinks",
            "excludeSystemApps",
            "scanDepth",
            "maxFileSize",
            "hashAlgorithm",
            "threadCount",
            "backupBeforeRemoval",
            "backupLocation",
            "retainBackups",
            "compressBackups",
            "categories",
            "primaryRoots",
            "systemRoots",
            "bundleSuffixes",
            "cacheResults",
            "cacheExpiry",
            "removalWorkers",
            "logLevel",
        }
        assert set(d.keys()) == expected_keys

    def test_plain_root_serializes_as_string(self) -> None:
        cfg = AppConfig(scan_roots=[ScanRoot("/Applications")])
        assert cfg.to_dict()["scanRoots"] == ["/Applications"]

    def test_root_with_overrides_serializes_as_object(self) -> None:
        cfg = AppConfig(scan_roots=[ScanRoot("/opt", scan_depth=2, primary=True)])
        root = cfg.to_dict()["scanRoots"][0]
        assert root["path"] == "/opt"
        assert root["scanDepth"] == 2
        assert root["primary"] is True

    def test_default_round_trip(self) -> None:
        cfg = default_config()
        again = AppConfig.from_dict(cfg.to_dict(), AppConfig())
        assert again.to_dict() == cfg.to_dict()


class TestFromDict:
    def test_missing_keys_use_defaults(self) -> None:
        defaults = default_config()
        cfg = AppConfig.from_dict({}, defaults)
        assert cfg.scan_depth == defaults.scan_depth
        assert [r.path for r in cfg.scan_roots] == [r.path for r in defaults.scan_roots]
        assert len(cfg.categories) == len(defaults.categories)

    def test_int_fields_clamped(self) -> None:
        cfg = AppConfig.from_dict({"scanDepth": 0, "threadCount": -3, "retainBackups": -1}, AppConfig())
        assert cfg.scan_depth == 1
        assert cfg.thread_count == 1
        assert cfg.retain_backups == 0

    def test_max_file_size_accepts_units(self) -> None:
        cfg = AppConfig.from_dict({"maxFileSize": "2GB"}, AppConfig())
        assert cfg.max_file_size == 2 * 1024**3

    def test_hash_algorithm_case_insensitive(self) -> None:
        cfg = AppConfig.from_dict({"hashAlgorithm": "SHA512"}, AppConfig())
        assert cfg.hash_algorithm is HashAlgorithm.SHA512

    def test_unknown_hash_algorithm_rejected(self) -> None:
        with pytest.raises(ValueError):
            AppConfig.from_dict({"hashAlgorithm": "crc32"}, AppConfig())

    def test_root_object_form(self) -> None:
        cfg = AppConfig.from_dict(
            {"scanRoots": [{"path": "/x", "scanDepth": 0, "followSymlinks": True, "protected": True}]},
            AppConfig(),
        )
        root = cfg.scan_roots[0]
        assert root.scan_depth == 1
        assert cfg.follow_for(root) is True
        assert root.protected is True

    def test_per_root_overrides(self) -> None:
        cfg = AppConfig(scan_depth=5, follow_symlinks=False)
        assert cfg.depth_for(ScanRoot("/a")) == 5
        assert cfg.depth_for(ScanRoot("/a", scan_depth=2)) == 2
        assert cfg.follow_for(ScanRoot("/a", follow_symlinks=True)) is True

    def test_clamp_field(self) -> None:
        assert clamp_field(0, "thread_count") == 1
        assert clamp_field(7, "thread_count") == 7
        assert clamp_field(-5, "unknown") == -5


class TestRuleParse:
    def test_substring_alternatives(self) -> None:
        rule = Rule.parse("contains:code|ide")
        assert rule.kind is RuleKind.SUBSTRING
        assert rule.value == "code|ide"
        assert rule.target == "name"

    def test_path_contains_targets_path(self) -> None:
        assert Rule.parse("path-contains:/developer/").target == "path"

    def test_prefix(self) -> None:
        rule = Rule.parse("prefix:~/Games")
        assert rule.kind is RuleKind.PATH_PREFIX
        assert rule.value == "~/Games"

    def test_open_range(self) -> None:
        rule = Rule.parse("size:100MB..")
        assert rule.kind is RuleKind.SIZE_RANGE
        assert rule.minimum == "100MB"
        assert rule.maximum is None

    def test_single_value_range_is_exact(self) -> None:
        rule = Rule.parse("version:2")
        assert rule.minimum == rule.maximum == "2"

    @pytest.mark.parametrize(
        "text",
        [
            "nonsense",
            "regex:.*",
            "contains:",
            "contains:|",
            "size:lots..",
            "size:2GB..1GB",
            "modified:yesterday..",
            "version:..beta",
            "size:..",
        ],
    )
    def test_invalid_rules_rejected(self, text: str) -> None:
        with pytest.raises(RuleSyntaxError):
            Rule.parse(text)

    def test_bad_target_rejected(self) -> None:
        with pytest.raises(RuleSyntaxError):
            Rule(RuleKind.GLOB, "*.app", target="owner")

    def test_from_dict_string_and_object(self) -> None:
        assert Rule.from_dict("ext:.app") == Rule(RuleKind.EXTENSION, ".app")
        rule = Rule.from_dict({"kind": "size_range", "min": "1KB"})
        assert rule.minimum == "1KB"
        assert rule.maximum is None

    def test_from_dict_unknown_kind(self) -> None:
        with pytest.raises(RuleSyntaxError):
            Rule.from_dict({"kind": "shell", "value": "rm"})


class TestCategory:
    def test_id_derived_from_name(self) -> None:
        assert Category("Graphics & Design").id == "graphics-design"

    def test_explicit_id_kept(self) -> None:
        assert Category("Games", id="fun").id == "fun"

    def test_empty_name_rejected(self) -> None:
        with pytest.raises(RuleSyntaxError):
            Category("  ")

    def test_blank_rule_lines_dropped(self) -> None:
        cat = Category.from_dict({"name": "Games", "rules": ["contains:game", "", "   "]})
        assert len(cat.rules) == 1

    def test_bad_rule_fails_at_definition(self) -> None:
        with pytest.raises(RuleSyntaxError):
            Category.from_dict({"name": "Broken", "rules": ["wat:x"]})
