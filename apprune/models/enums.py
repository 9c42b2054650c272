from __future__ import annotations

import errno
from enum import Enum
from typing import Any


class NodeKind(str, Enum):
    FILE = "file"
    DIRECTORY = "directory"
    SYMLINK = "symlink"


class HashAlgorithm(str, Enum):
    MD5 = "md5"
    SHA1 = "sha1"
    SHA256 = "sha256"
    SHA512 = "sha512"

    @classmethod
    def from_str(cls, value: Any) -> HashAlgorithm:
        normalized = str(value).lower().replace("-", "")
        try:
            return cls(normalized)
        except ValueError:
            msg = f"Unsupported hash algorithm: {value}. Use: md5, sha1, sha256, sha512."
            raise ValueError(msg) from None


class DigestQuality(str, Enum):
    COMPLETE = "complete"
    PARTIAL = "partial"


class ErrorCode(str, Enum):
    PERMISSION_DENIED = "permission_denied"
    IO_ERROR = "io_error"
    NOT_FOUND = "not_found"
    CANCELLED = "cancelled"
    PARTIAL_DIGEST = "partial_digest"
    BACKUP_VERIFICATION_MISMATCH = "backup_verification_mismatch"
    IN_USE = "in_use"
    VALIDATION_REJECTED = "validation_rejected"
    # Configuration-level codes; fatal before any work starts.
    INVALID_ROOT = "invalid_root"
    NOT_DIRECTORY = "not_directory"
    INVALID_RULE = "invalid_rule"
    BACKUP_LOCATION_UNWRITABLE = "backup_location_unwritable"


class RemovalStatus(str, Enum):
    REMOVED = "removed"
    REJECTED = "rejected"
    FAILED = "failed"


class RejectReason(str, Enum):
    IS_CANONICAL = "is-canonical"
    NOT_FOUND = "not-found"
    EXCLUDED_BY_POLICY = "excluded-by-policy"
    NOT_DUPLICATE = "not-duplicate"
    MODIFIED_SINCE_SCAN = "modified-since-scan"
    CANONICAL_MISSING = "canonical-missing"


class EventLevel(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class EventCategory(str, Enum):
    SCAN = "scan"
    CATEGORY = "category"
    REMOVAL = "removal"
    BACKUP = "backup"


class RuleKind(str, Enum):
    SUBSTRING = "substring"
    PATH_PREFIX = "path_prefix"
    EXTENSION = "extension"
    GLOB = "glob"
    SIZE_RANGE = "size_range"
    MODIFIED_RANGE = "modified_range"
    VERSION_RANGE = "version_range"

    @property
    def is_range(self) -> bool:
        return self in _RANGE_KINDS


_RANGE_KINDS = frozenset({RuleKind.SIZE_RANGE, RuleKind.MODIFIED_RANGE, RuleKind.VERSION_RANGE})

# Windows ERROR_SHARING_VIOLATION / ERROR_LOCK_VIOLATION.
_WINERROR_IN_USE = frozenset({32, 33})
_ERRNO_IN_USE = frozenset({errno.EBUSY, errno.ETXTBSY})
_ERRNO_DENIED = frozenset({errno.EACCES, errno.EPERM})


def error_code_for(exc: BaseException) -> ErrorCode:
    """Map an OSError (or subclass) onto the shared error taxonomy."""
    if getattr(exc, "winerror", None) in _WINERROR_IN_USE:
        return ErrorCode.IN_USE
    if isinstance(exc, OSError) and exc.errno in _ERRNO_IN_USE:
        return ErrorCode.IN_USE
    if isinstance(exc, PermissionError):
        return ErrorCode.PERMISSION_DENIED
    if isinstance(exc, OSError) and exc.errno in _ERRNO_DENIED:
        return ErrorCode.PERMISSION_DENIED
    if isinstance(exc, FileNotFoundError):
        return ErrorCode.NOT_FOUND
    return ErrorCode.IO_ERROR
