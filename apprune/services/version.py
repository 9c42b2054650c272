from __future__ import annotations

import os
import plistlib
import re

import structlog

from apprune.services.fs import DEFAULT_FS, FileSystem

logger = structlog.get_logger(__name__)

_PLIST_KEYS = ("CFBundleShortVersionString", "CFBundleVersion")
_VERSION_FILES = ("VERSION", "version.txt", "VERSION.txt")
# "App-1.2.3", "tool_2.0", "Thing 10.4.1 beta" -> dotted run of digits.
_NAME_VERSION = re.compile(r"(?:^|[\s_-])v?(\d+(?:\.\d+)+)")


def discover_version(path: str, is_dir: bool, fs: FileSystem = DEFAULT_FS) -> str | None:
    """Best-effort version string; never raises.

    Looks at a macOS ``Contents/Info.plist``, then a top-level VERSION file,
    then a dotted number in the bundle name.
    """
    if is_dir:
        plist_path = os.path.join(path, "Contents", "Info.plist")
        try:
            with fs.open_read(plist_path) as stream:
                info = plistlib.load(stream)
            for key in _PLIST_KEYS:
                value = info.get(key)
                if value:
                    return str(value).strip()
        except Exception:  # noqa: BLE001
            # Malformed plists raise a mix of ValueError and expat errors.
            pass
        for name in _VERSION_FILES:
            candidate = os.path.join(path, name)
            try:
                text = fs.read_text(candidate).strip()
            except (OSError, UnicodeDecodeError):
                continue
            if text:
                return text.splitlines()[0].strip()

    stem = os.path.basename(path)
    for suffix in (".app", ".exe"):
        if stem.lower().endswith(suffix):
            stem = stem[: -len(suffix)]
    match = _NAME_VERSION.search(stem)
    if match:
        return match.group(1)
    logger.debug("version_not_found", path=path)
    return None
