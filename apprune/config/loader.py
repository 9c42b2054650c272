from __future__ import annotations

import json

import structlog
from result import Err, Ok, Result

from apprune.config.defaults import default_config
from apprune.config.schema import AppConfig
from apprune.models.enums import ErrorCode
from apprune.models.inventory import ScanError
from apprune.services.fs import DEFAULT_FS, FileSystem

CONFIG_PATH = "~/.config/apprune/config.json"

logger = structlog.get_logger(__name__)


def load_config(path: str | None = None, fs: FileSystem = DEFAULT_FS) -> Result[AppConfig, str]:
    resolved = fs.expanduser(path or CONFIG_PATH)
    if not fs.exists(resolved):
        return Ok(default_config())

    try:
        payload = json.loads(fs.read_text(resolved))
        if not isinstance(payload, dict):
            return Err(f"Config at {resolved} must be a JSON object.")
        return Ok(AppConfig.from_dict(payload, default_config()))
    except Exception as exc:  # noqa: BLE001
        return Err(f"Failed reading config at {resolved}: {exc}.")


def sample_config_json() -> str:
    return json.dumps(default_config().to_dict(), indent=2)


def validate_backup_location(location: str, fs: FileSystem = DEFAULT_FS) -> Result[str, ScanError]:
    resolved = fs.absolute(fs.expanduser(location))
    try:
        fs.makedirs(resolved)
    except OSError as exc:
        return Err(ScanError(ErrorCode.BACKUP_LOCATION_UNWRITABLE, resolved, f"Cannot create: {exc}"))
    if not fs.is_writable(resolved):
        return Err(ScanError(ErrorCode.BACKUP_LOCATION_UNWRITABLE, resolved, "Backup location is not writable"))
    return Ok(resolved)


def validate_config(
    config: AppConfig,
    fs: FileSystem = DEFAULT_FS,
    *,
    check_backups: bool = True,
) -> Result[AppConfig, ScanError]:
    """Fatal checks that must pass before any scan or removal starts.

    Rule syntax is already enforced when categories are built; only category
    id uniqueness is checked here.  Every scan root must be an existing
    directory.  With *check_backups*, the backup location must be creatable
    and writable when backups are enabled.
    """
    if not config.scan_roots:
        return Err(ScanError(ErrorCode.INVALID_ROOT, "", "No scan roots configured"))

    for root in config.scan_roots:
        path = fs.expanduser(root.path)
        if not fs.exists(path):
            return Err(ScanError(ErrorCode.INVALID_ROOT, path, "Scan root does not exist"))
        try:
            st = fs.stat(path)
        except OSError as exc:
            return Err(ScanError(ErrorCode.INVALID_ROOT, path, f"Cannot stat scan root: {exc}"))
        if not st.is_dir:
            return Err(ScanError(ErrorCode.NOT_DIRECTORY, path, "Scan root is not a directory"))

    seen: set[str] = set()
    for category in config.categories:
        if category.id in seen:
            return Err(ScanError(ErrorCode.INVALID_RULE, category.id, "Duplicate category id"))
        seen.add(category.id)

    if check_backups and config.backup_before_removal:
        location = validate_backup_location(config.backup_location, fs)
        if location.is_err():
            return Err(location.unwrap_err())

    logger.debug("config_validated", roots=len(config.scan_roots), backups=config.backup_before_removal)
    return Ok(config)
