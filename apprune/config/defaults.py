from __future__ import annotations

from apprune.config.schema import AppConfig, Category, Rule, ScanRoot
from apprune.models.enums import HashAlgorithm


def default_categories() -> list[Category]:
    return [
        Category(
            name="Development Tools",
            description="Programming and development applications",
            rules=(
                Rule.parse("contains:code|ide|developer|xcode|terminal"),
                Rule.parse("prefix:/Developer"),
                Rule.parse("path-contains:/developer/"),
            ),
        ),
        Category(
            name="Games",
            description="Gaming applications and entertainment",
            rules=(
                Rule.parse("contains:game|steam"),
                Rule.parse("prefix:~/Games"),
            ),
        ),
        Category(
            name="Productivity",
            description="Office and productivity applications",
            rules=(Rule.parse("contains:office|word|excel|pages|numbers|keynote|notes|todo|calendar"),),
        ),
        Category(
            name="Graphics & Design",
            description="Creative and design software",
            rules=(Rule.parse("contains:photo|design|graphics|adobe|sketch|figma|illustrator"),),
        ),
    ]


def default_config() -> AppConfig:
    return AppConfig(
        scan_roots=[
            ScanRoot("/Applications", primary=True),
            ScanRoot("/System/Applications", protected=True),
            ScanRoot("/usr/local/bin"),
            ScanRoot("~/Applications", primary=True),
        ],
        exclude_patterns=["*.log", "*.tmp", "*cache*", "*.DS_Store"],
        include_hidden=False,
        follow_symlinks=False,
        exclude_system_apps=True,
        scan_depth=5,
        max_file_size=10 * 1024**3,
        hash_algorithm=HashAlgorithm.SHA256,
        thread_count=4,
        backup_before_removal=True,
        backup_location="~/Backup/AppManager",
        retain_backups=30,
        compress_backups=True,
        categories=default_categories(),
        primary_roots=["/Applications", "~/Applications"],
        system_roots=["/System", "/System/Applications", "/usr/bin", "/usr/sbin", "C:\\Windows"],
        bundle_suffixes=[".app"],
        cache_results=True,
        cache_expiry=7,
        removal_workers=2,
        log_level="info",
    )
