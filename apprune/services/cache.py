from __future__ import annotations

import dataclasses
import threading
import time
from typing import Callable

from apprune.models.enums import HashAlgorithm
from apprune.services.hasher import BundleDigest

_Key = tuple[str, str, HashAlgorithm, int]


class DigestCache:
    """In-memory digest cache shared across scans.

    Keys include a stat fingerprint of every bundle member (relative path,
    size, mtime_ns, link target), so any content or layout change misses.
    Entries older than ``expiry_days`` are dropped on lookup.
    """

    def __init__(self, expiry_days: int = 7, clock: Callable[[], float] = time.time) -> None:
        self._ttl = expiry_days * 86400
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[_Key, tuple[float, BundleDigest]] = {}

    def get(self, path: str, fingerprint: str, algorithm: HashAlgorithm, max_file_size: int) -> BundleDigest | None:
        key = (path, fingerprint, algorithm, max_file_size)
        with self._lock:
            hit = self._entries.get(key)
            if hit is None:
                return None
            stored_at, value = hit
            if self._ttl and self._clock() - stored_at > self._ttl:
                del self._entries[key]
                return None
        return dataclasses.replace(value, from_cache=True)

    def put(
        self,
        path: str,
        fingerprint: str,
        algorithm: HashAlgorithm,
        max_file_size: int,
        value: BundleDigest,
    ) -> None:
        with self._lock:
            # One fingerprint per path: a changed bundle evicts its old entry.
            stale = [k for k in self._entries if k[0] == path]
            for k in stale:
                del self._entries[k]
            self._entries[(path, fingerprint, algorithm, max_file_size)] = (self._clock(), value)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
