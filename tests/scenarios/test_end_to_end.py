from __future__ import annotations

import json
import os
from pathlib import Path

import pytest
from result import Err, Ok

from apprune.cli import main
from apprune.config.schema import Category, Rule
from apprune.engine import (
    ScanProgress,
    categorize,
    group_duplicates,
    plan_and_execute_removal,
    run_scan,
    stream_scan,
)
from apprune.models.enums import ErrorCode
from apprune.models.removal import RemovalRequest
from apprune.services.backup import list_backups, restore_backup
from apprune.services.hasher import ContentHasher
from tests.factories import make_config, write_bundle

APP = {"Contents/MacOS/Editor": b"binary" * 100, "Contents/Resources/icon": b"png"}


class TestFullPipeline:
    def test_three_copies_primary_canonical(self, tmp_path: Path) -> None:
        primary = tmp_path / "Applications"
        mirror = tmp_path / "mirror"
        downloads = tmp_path / "Downloads"
        for root in (mirror, downloads, primary):
            write_bundle(root, "Editor.app", APP)
        newest = max(os.stat(p / "Editor.app" / "Contents" / "MacOS" / "Editor").st_mtime for p in (mirror, downloads))
        os.utime(primary / "Editor.app" / "Contents" / "MacOS" / "Editor", (newest + 60, newest + 60))

        cfg = make_config(mirror, downloads, primary, primary_roots=[str(primary)])
        inventory = run_scan(cfg).unwrap()
        groups = group_duplicates(inventory, cfg)

        assert len(groups) == 1
        assert len(groups[0]) == 3
        assert groups[0].canonical.path == str(primary / "Editor.app")

    def test_oversized_member_excluded_from_groups(self, tmp_path: Path) -> None:
        files = {"small": b"s", "huge.bin": b"h" * 4096}
        write_bundle(tmp_path / "a", "Big.app", files)
        write_bundle(tmp_path / "b", "Big.app", files)
        write_bundle(tmp_path / "a", "Small.app", {"x": b"1"})
        write_bundle(tmp_path / "b", "Small.app", {"x": b"1"})

        cfg = make_config(tmp_path / "a", tmp_path / "b", max_file_size=1024)
        inventory = run_scan(cfg).unwrap()
        groups = group_duplicates(inventory, cfg)

        assert inventory.stats.partial == 2
        assert len(groups) == 1
        assert {m.name for m in groups[0].members} == {"Small.app"}

    def test_categorize_inventory(self, tmp_path: Path) -> None:
        write_bundle(tmp_path, "Code.app", {"f": b"1"})
        write_bundle(tmp_path, "Steam.app", {"f": b"2"})
        categories = [
            Category("Development", (Rule.parse("contains:code"),)),
            Category("Games", (Rule.parse("contains:steam"),)),
        ]
        inventory = run_scan(make_config(tmp_path)).unwrap()
        assignment = categorize(inventory, categories)
        by_name = {inventory.get(k).name: v for k, v in assignment.items()}  # type: ignore[union-attr]
        assert by_name == {"Code.app": "development", "Steam.app": "games"}

    def test_scan_remove_restore(self, tmp_path: Path) -> None:
        write_bundle(tmp_path / "Applications", "Editor.app", APP)
        write_bundle(tmp_path / "copy", "Editor.app", APP)
        cfg = make_config(
            tmp_path / "Applications",
            tmp_path / "copy",
            primary_roots=[str(tmp_path / "Applications")],
            backup_before_removal=True,
            compress_backups=True,
            backup_location=str(tmp_path / "backups"),
        )
        inventory = run_scan(cfg).unwrap()
        groups = group_duplicates(inventory, cfg)
        target = groups[0].redundant[0]

        results = list(plan_and_execute_removal(RemovalRequest.of([target.id], groups), inventory, cfg).unwrap())
        assert results[0].ok
        assert not Path(target.path).exists()

        [artifact] = list_backups(cfg.backup_location)
        assert artifact.original_path == target.path
        assert restore_backup(artifact, ContentHasher()).unwrap() == target.path
        assert ContentHasher().digest(target.path).unwrap().digest.matches(target.digest)

    def test_invalid_root_fails_before_work(self, tmp_path: Path) -> None:
        result = run_scan(make_config(tmp_path / "absent"))
        assert isinstance(result, Err)
        assert result.unwrap_err().code is ErrorCode.INVALID_ROOT


class TestStreamScan:
    def test_progress_then_result(self, tmp_path: Path) -> None:
        for i in range(4):
            write_bundle(tmp_path, f"b{i}", {"f": str(i).encode()})
        items = list(stream_scan(make_config(tmp_path)))
        progress = [i for i in items if isinstance(i, ScanProgress)]
        assert [p.processed for p in progress] == [1, 2, 3, 4]
        assert isinstance(items[-1], Ok)
        assert len(items[-1].unwrap()) == 4

    def test_cancelled_stream_ends_with_error(self, tmp_path: Path) -> None:
        write_bundle(tmp_path, "a", {"f": b"1"})
        items = list(stream_scan(make_config(tmp_path), cancel_check=lambda: True))
        assert isinstance(items[-1], Err)
        assert items[-1].unwrap_err().code is ErrorCode.CANCELLED


class TestCli:
    def _config(self, tmp_path: Path, **extra: object) -> Path:
        payload = {
            "scanRoots": [str(tmp_path / "Applications"), str(tmp_path / "copy")],
            "primaryRoots": [str(tmp_path / "Applications")],
            "bundleSuffixes": [".app"],
            "backupLocation": str(tmp_path / "backups"),
            "cacheResults": False,
            **extra,
        }
        path = tmp_path / "config.json"
        path.write_text(json.dumps(payload), encoding="utf-8")
        write_bundle(tmp_path / "Applications", "Editor.app", APP)
        write_bundle(tmp_path / "copy", "Editor.app", APP)
        return path

    def test_scan_command(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        config = self._config(tmp_path)
        assert main(["--config", str(config), "scan"]) == 0
        out = capsys.readouterr().out
        assert "Duplicate Applications" in out
        assert "KEEP" in out

    def test_remove_dry_run_touches_nothing(self, tmp_path: Path) -> None:
        config = self._config(tmp_path)
        copy = tmp_path / "copy" / "Editor.app"
        assert main(["--config", str(config), "remove", "--dry-run", str(copy)]) == 0
        assert copy.exists()

    def test_remove_command(self, tmp_path: Path) -> None:
        config = self._config(tmp_path, compressBackups=False)
        copy = tmp_path / "copy" / "Editor.app"
        assert main(["--config", str(config), "remove", "--yes", str(copy)]) == 0
        assert not copy.exists()
        assert (tmp_path / "Applications" / "Editor.app").exists()
        assert len(list_backups(str(tmp_path / "backups"))) == 1

    def test_remove_target_under_home(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        config = self._config(tmp_path, compressBackups=False)
        monkeypatch.setenv("HOME", str(tmp_path))
        copy = tmp_path / "copy" / "Editor.app"
        assert main(["--config", str(config), "remove", "--yes", "~/copy/Editor.app"]) == 0
        assert not copy.exists()
        assert (tmp_path / "Applications" / "Editor.app").exists()

    def test_remove_canonical_refused(self, tmp_path: Path) -> None:
        config = self._config(tmp_path)
        keep = tmp_path / "Applications" / "Editor.app"
        assert main(["--config", str(config), "remove", "--yes", "--no-backup", str(keep)]) == 1
        assert keep.exists()

    def test_prune_command(self, tmp_path: Path) -> None:
        config = self._config(tmp_path)
        old = tmp_path / "backups" / "20000101T000000Z"
        old.mkdir(parents=True)
        assert main(["--config", str(config), "prune-backups", "--days", "1"]) == 0
        assert not old.exists()

    def test_bad_config(self, tmp_path: Path) -> None:
        path = tmp_path / "config.json"
        path.write_text("{", encoding="utf-8")
        assert main(["--config", str(path), "scan"]) == 2

    def test_sample_config(self, capsys: pytest.CaptureFixture[str]) -> None:
        assert main(["--sample-config"]) == 0
        assert "scanRoots" in capsys.readouterr().out
