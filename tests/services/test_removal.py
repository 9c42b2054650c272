from __future__ import annotations

import shutil
from datetime import datetime, timezone
from pathlib import Path

from result import Err

from apprune.config.schema import ScanRoot
from apprune.engine import group_duplicates, plan_and_execute_removal, run_scan
from apprune.models.enums import ErrorCode, EventCategory, RejectReason, RemovalStatus
from apprune.models.events import ActivityEvent
from apprune.models.inventory import Inventory
from apprune.models.removal import RemovalRequest, RemovalResult, RemovalSummary
from apprune.services import grouping
from apprune.services.fs import OsFileSystem
from apprune.services.removal import RemovalExecutor, RemovalPlanner
from tests.factories import make_config, make_entry, make_inventory, write_bundle

NOW = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)
FILES = {"Contents/MacOS/app": b"\x7fELF" * 64, "Contents/Info.txt": b"v1"}


def _layout(tmp_path: Path) -> tuple[Path, Path, Path]:
    primary = tmp_path / "Applications"
    other = tmp_path / "opt"
    third = tmp_path / "Downloads"
    for root in (primary, other, third):
        write_bundle(root, "Tool.app", FILES)
    return primary, other, third


def _scan(tmp_path: Path, **overrides: object):  # noqa: ANN202
    primary, other, third = _layout(tmp_path)
    overrides.setdefault("primary_roots", [str(primary)])
    overrides.setdefault("backup_location", str(tmp_path / "backups"))
    cfg = make_config(primary, other, third, **overrides)
    inventory = run_scan(cfg).unwrap()
    return cfg, inventory, group_duplicates(inventory, cfg)


def _by_path(inventory: Inventory, fragment: str) -> str:
    return next(e.id for e in inventory.entries if fragment in e.path)


def _run(request: RemovalRequest, inventory: Inventory, cfg, fs=None) -> list[RemovalResult]:  # noqa: ANN001
    kwargs = {"clock": lambda: NOW}
    if fs is not None:
        kwargs["fs"] = fs
    return list(plan_and_execute_removal(request, inventory, cfg, **kwargs).unwrap())


class TestPlanner:
    def test_rejections_in_order(self) -> None:
        keep = make_entry("/Applications/A.app", mtime=9.0)
        dup = make_entry("/opt/A.app")
        lonely = make_entry("/opt/B.app", "other")
        inventory = make_inventory(keep, dup, lonely)
        groups = grouping.group_duplicates(inventory.entries, ["/Applications"])
        request = RemovalRequest.of([keep.id, dup.id, lonely.id, "missing"], groups)
        plan = RemovalPlanner(inventory, make_config()).plan(request)

        assert [e.id for e in plan.accepted] == [dup.id]
        reasons = {r.entry_id: r.reason for r in plan.rejected}
        assert reasons == {
            keep.id: RejectReason.IS_CANONICAL,
            lonely.id: RejectReason.NOT_DUPLICATE,
            "missing": RejectReason.NOT_FOUND,
        }
        assert all(r.status is RemovalStatus.REJECTED for r in plan.rejected)
        assert all(r.error is ErrorCode.VALIDATION_REJECTED for r in plan.rejected)

    def test_protected_root_excluded_by_policy(self) -> None:
        keep = make_entry("/Applications/A.app", mtime=9.0)
        system = make_entry("/System/Applications/A.app")
        inventory = make_inventory(keep, system)
        groups = grouping.group_duplicates(inventory.entries, ["/Applications"])
        cfg = make_config(system_roots=["/System"], exclude_system_apps=True)
        plan = RemovalPlanner(inventory, cfg).plan(RemovalRequest.of([system.id], groups))
        assert plan.accepted == ()
        assert plan.rejected[0].reason is RejectReason.EXCLUDED_BY_POLICY

    def test_policy_off_allows_system_copy(self) -> None:
        keep = make_entry("/Applications/A.app", mtime=9.0)
        system = make_entry("/System/Applications/A.app")
        inventory = make_inventory(keep, system)
        groups = grouping.group_duplicates(inventory.entries, ["/Applications"])
        cfg = make_config(system_roots=["/System"], exclude_system_apps=False)
        plan = RemovalPlanner(inventory, cfg).plan(RemovalRequest.of([system.id], groups))
        assert [e.id for e in plan.accepted] == [system.id]


class TestExecute:
    def test_mixed_batch(self, tmp_path: Path) -> None:
        cfg, inventory, groups = _scan(tmp_path)
        assert len(groups) == 1
        canonical = groups[0].canonical
        assert "Applications" in canonical.path

        opt = _by_path(inventory, "/opt/")
        dl = _by_path(inventory, "/Downloads/")
        request = RemovalRequest.of([opt, dl, canonical.id, "0000000000000000"], groups, backup=False)
        results = _run(request, inventory, cfg)
        summary = RemovalSummary(results)

        assert len(summary.removed) == 2
        assert {r.reason for r in summary.rejected} == {RejectReason.IS_CANONICAL, RejectReason.NOT_FOUND}
        assert summary.failed == []
        assert summary.bytes_freed == 2 * inventory.get(opt).size_bytes  # type: ignore[union-attr]
        assert not (tmp_path / "opt" / "Tool.app").exists()
        assert not (tmp_path / "Downloads" / "Tool.app").exists()
        assert (tmp_path / "Applications" / "Tool.app").exists()

    def test_backup_written_and_verified(self, tmp_path: Path) -> None:
        cfg, inventory, groups = _scan(tmp_path, backup_before_removal=True)
        opt = _by_path(inventory, "/opt/")
        results = _run(RemovalRequest.of([opt], groups), inventory, cfg)

        assert results[0].status is RemovalStatus.REMOVED
        backup = results[0].backup
        assert backup is not None
        assert backup.location == str(tmp_path / "backups" / "20240501T120000Z" / "Tool.app")
        assert backup.digest.matches(inventory.get(opt).digest)  # type: ignore[union-attr]
        assert Path(backup.manifest_path).exists()

    def test_compressed_backup(self, tmp_path: Path) -> None:
        cfg, inventory, groups = _scan(tmp_path, backup_before_removal=True, compress_backups=True)
        opt = _by_path(inventory, "/opt/")
        results = _run(RemovalRequest.of([opt], groups), inventory, cfg)
        assert results[0].ok
        assert results[0].backup.location.endswith("Tool.app.tar.gz")  # type: ignore[union-attr]

    def test_verification_mismatch_keeps_original(self, tmp_path: Path) -> None:
        class CorruptingFs(OsFileSystem):
            def copy_tree(self, src: str, dst: str) -> None:
                super().copy_tree(src, dst)
                (Path(dst) / "Contents" / "Info.txt").write_bytes(b"bitrot")

        cfg, inventory, groups = _scan(tmp_path, backup_before_removal=True)
        original = tmp_path / "opt" / "Tool.app"
        before = {p.relative_to(original): p.read_bytes() for p in original.rglob("*") if p.is_file()}

        opt = _by_path(inventory, "/opt/")
        results = _run(RemovalRequest.of([opt], groups), inventory, cfg, fs=CorruptingFs())

        assert results[0].status is RemovalStatus.FAILED
        assert results[0].error is ErrorCode.BACKUP_VERIFICATION_MISMATCH
        after = {p.relative_to(original): p.read_bytes() for p in original.rglob("*") if p.is_file()}
        assert after == before

    def test_modified_since_scan(self, tmp_path: Path) -> None:
        cfg, inventory, groups = _scan(tmp_path)
        (tmp_path / "opt" / "Tool.app" / "Contents" / "Info.txt").write_bytes(b"v2")
        opt = _by_path(inventory, "/opt/")
        results = _run(RemovalRequest.of([opt], groups, backup=False), inventory, cfg)
        assert results[0].reason is RejectReason.MODIFIED_SINCE_SCAN
        assert (tmp_path / "opt" / "Tool.app").exists()

    def test_vanished_since_scan(self, tmp_path: Path) -> None:
        cfg, inventory, groups = _scan(tmp_path)
        shutil.rmtree(tmp_path / "opt" / "Tool.app")
        opt = _by_path(inventory, "/opt/")
        results = _run(RemovalRequest.of([opt], groups, backup=False), inventory, cfg)
        assert results[0].status is RemovalStatus.REJECTED
        assert results[0].reason is RejectReason.NOT_FOUND

    def test_delete_failure_isolated(self, tmp_path: Path) -> None:
        class StubbornFs(OsFileSystem):
            def remove_tree(self, path: str) -> None:
                if "/opt/" in path:
                    raise PermissionError(13, "Permission denied", path)
                super().remove_tree(path)

        cfg, inventory, groups = _scan(tmp_path)
        opt = _by_path(inventory, "/opt/")
        dl = _by_path(inventory, "/Downloads/")
        request = RemovalRequest.of([opt, dl], groups, backup=False)
        results = {r.entry_id: r for r in _run(request, inventory, cfg, StubbornFs())}

        assert results[opt].status is RemovalStatus.FAILED
        assert results[opt].error is ErrorCode.PERMISSION_DENIED
        assert results[dl].status is RemovalStatus.REMOVED
        assert (tmp_path / "opt" / "Tool.app").exists()

    def test_in_use_mapped(self, tmp_path: Path) -> None:
        class BusyFs(OsFileSystem):
            def remove_tree(self, path: str) -> None:
                raise OSError(16, "Device or resource busy", path)

        cfg, inventory, groups = _scan(tmp_path)
        opt = _by_path(inventory, "/opt/")
        results = _run(RemovalRequest.of([opt], groups, backup=False), inventory, cfg, BusyFs())
        assert results[0].error is ErrorCode.IN_USE

    def test_unwritable_backup_location_is_fatal(self, tmp_path: Path) -> None:
        blocker = tmp_path / "blocker"
        blocker.write_text("x")
        cfg, inventory, groups = _scan(tmp_path, backup_location=str(blocker / "sub"))
        opt = _by_path(inventory, "/opt/")
        outcome = plan_and_execute_removal(RemovalRequest.of([opt], groups), inventory, cfg)
        assert isinstance(outcome, Err)
        assert outcome.unwrap_err().code is ErrorCode.BACKUP_LOCATION_UNWRITABLE
        assert (tmp_path / "opt" / "Tool.app").exists()

    def test_canonical_never_removed_even_if_requested_alone(self, tmp_path: Path) -> None:
        cfg, inventory, groups = _scan(tmp_path)
        canonical = groups[0].canonical_id
        results = _run(RemovalRequest.of([canonical], groups, backup=False), inventory, cfg)
        assert results[0].status is RemovalStatus.REJECTED
        assert results[0].reason is RejectReason.IS_CANONICAL
        assert (tmp_path / "Applications" / "Tool.app").exists()

    def test_protected_scan_root(self, tmp_path: Path) -> None:
        primary, other, third = _layout(tmp_path)
        cfg = make_config(primary, third, primary_roots=[str(primary)], exclude_system_apps=True)
        cfg.scan_roots.append(ScanRoot(str(other), protected=True))
        inventory = run_scan(cfg).unwrap()
        groups = group_duplicates(inventory, cfg)
        opt = _by_path(inventory, "/opt/")
        results = list(RemovalExecutor(cfg).execute(RemovalRequest.of([opt], groups, backup=False), inventory))
        assert results[0].reason is RejectReason.EXCLUDED_BY_POLICY

    def test_events_reported(self, tmp_path: Path) -> None:
        cfg, inventory, groups = _scan(tmp_path, backup_before_removal=True)
        events: list[ActivityEvent] = []
        opt = _by_path(inventory, "/opt/")
        outcome = plan_and_execute_removal(
            RemovalRequest.of([opt, groups[0].canonical_id], groups), inventory, cfg, on_event=events.append
        )
        list(outcome.unwrap())
        categories = [e.category for e in events]
        assert EventCategory.BACKUP in categories
        assert categories.count(EventCategory.REMOVAL) == 2

    def test_protected_root_honoured_without_system_policy(self, tmp_path: Path) -> None:
        primary, other, third = _layout(tmp_path)
        cfg = make_config(primary, third, primary_roots=[str(primary)], exclude_system_apps=False)
        cfg.scan_roots.append(ScanRoot(str(other), protected=True))
        inventory = run_scan(cfg).unwrap()
        groups = group_duplicates(inventory, cfg)
        opt = _by_path(inventory, "/opt/")
        results = _run(RemovalRequest.of([opt], groups, backup=False), inventory, cfg)
        assert results[0].reason is RejectReason.EXCLUDED_BY_POLICY
        assert (tmp_path / "opt" / "Tool.app").exists()


class TestKeeperCheck:
    def test_plan_records_canonical_per_item(self) -> None:
        keep = make_entry("/Applications/A.app", mtime=9.0)
        dup = make_entry("/opt/A.app")
        inventory = make_inventory(keep, dup)
        groups = grouping.group_duplicates(inventory.entries, ["/Applications"])
        plan = RemovalPlanner(inventory, make_config()).plan(RemovalRequest.of([dup.id], groups))
        assert plan.keepers == {dup.id: keep}

    def test_canonical_deleted_after_scan(self, tmp_path: Path) -> None:
        cfg, inventory, groups = _scan(tmp_path, backup_before_removal=True)
        shutil.rmtree(tmp_path / "Applications" / "Tool.app")
        opt = _by_path(inventory, "/opt/")
        dl = _by_path(inventory, "/Downloads/")
        results = _run(RemovalRequest.of([opt, dl], groups), inventory, cfg)

        assert {r.reason for r in results} == {RejectReason.CANONICAL_MISSING}
        assert (tmp_path / "opt" / "Tool.app").exists()
        assert (tmp_path / "Downloads" / "Tool.app").exists()
        assert not any((tmp_path / "backups").iterdir())

    def test_canonical_changed_after_scan(self, tmp_path: Path) -> None:
        cfg, inventory, groups = _scan(tmp_path)
        (tmp_path / "Applications" / "Tool.app" / "Contents" / "Info.txt").write_bytes(b"v2")
        opt = _by_path(inventory, "/opt/")
        results = _run(RemovalRequest.of([opt], groups, backup=False), inventory, cfg)
        assert results[0].status is RemovalStatus.REJECTED
        assert results[0].reason is RejectReason.CANONICAL_MISSING
        assert (tmp_path / "opt" / "Tool.app").exists()
