from __future__ import annotations

from typing import Protocol

from apprune.config.schema import AppConfig
from apprune.models.events import EventSink
from apprune.models.inventory import CancelCheck, ProgressCallback, ScanResult
from apprune.scan._base import BundleScanner, resolve_root
from apprune.scan.discovery import BundleConvention, SuffixConvention, TopLevelConvention, convention_for
from apprune.services.cache import DigestCache


class Scanner(Protocol):
    def scan(
        self,
        config: AppConfig,
        progress_callback: ProgressCallback | None = None,
        cancel_check: CancelCheck | None = None,
        on_event: EventSink | None = None,
    ) -> ScanResult: ...


def create_scanner(
    config: AppConfig,
    convention: BundleConvention | None = None,
    cache: DigestCache | None = None,
) -> BundleScanner:
    """Scanner sized from ``threadCount``; a digest cache is attached when ``cacheResults`` is on."""
    if cache is None and config.cache_results:
        cache = DigestCache(expiry_days=config.cache_expiry)
    return BundleScanner(workers=config.thread_count, convention=convention, cache=cache)


__all__ = [
    "BundleConvention",
    "BundleScanner",
    "Scanner",
    "SuffixConvention",
    "TopLevelConvention",
    "convention_for",
    "create_scanner",
    "resolve_root",
]
