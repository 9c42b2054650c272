# Filesystem seam.
#
# Every component that touches the disk goes through a FileSystem instance
# so tests can subclass OsFileSystem and inject failures (permission errors,
# busy files, vanished paths) on specific paths without monkeypatching os.

from __future__ import annotations

import os
import shutil
import stat as statmod
from collections.abc import Iterator
from dataclasses import dataclass
from typing import BinaryIO


@dataclass(slots=True, frozen=True)
class StatResult:
    size: int
    mtime: float
    mtime_ns: int
    is_dir: bool
    is_file: bool
    is_symlink: bool
    hidden_flag: bool = False

    @classmethod
    def from_os(cls, st: os.stat_result) -> StatResult:
        mode = st.st_mode
        # macOS UF_HIDDEN / Windows FILE_ATTRIBUTE_HIDDEN.
        flags = getattr(st, "st_flags", 0) & getattr(statmod, "UF_HIDDEN", 0)
        attrs = getattr(st, "st_file_attributes", 0) & getattr(statmod, "FILE_ATTRIBUTE_HIDDEN", 0)
        return cls(
            size=st.st_size,
            mtime=st.st_mtime,
            mtime_ns=st.st_mtime_ns,
            is_dir=statmod.S_ISDIR(mode),
            is_file=statmod.S_ISREG(mode),
            is_symlink=statmod.S_ISLNK(mode),
            hidden_flag=bool(flags or attrs),
        )


@dataclass(slots=True, frozen=True)
class DirEntry:
    path: str
    name: str


class OsFileSystem:
    def expanduser(self, path: str) -> str:
        return os.path.expanduser(path)

    def absolute(self, path: str) -> str:
        return os.path.abspath(path)

    def exists(self, path: str) -> bool:
        return os.path.exists(path)

    def lexists(self, path: str) -> bool:
        return os.path.lexists(path)

    def stat(self, path: str) -> StatResult:
        return StatResult.from_os(os.stat(path))

    def lstat(self, path: str) -> StatResult:
        return StatResult.from_os(os.lstat(path))

    def readlink(self, path: str) -> str:
        return os.readlink(path)

    def realpath(self, path: str) -> str:
        return os.path.realpath(path)

    def scandir(self, path: str) -> Iterator[DirEntry]:
        """Directory entries sorted by name, so every walk is deterministic."""
        with os.scandir(path) as it:
            names = sorted((e.name, e.path) for e in it)
        for name, full in names:
            yield DirEntry(path=full, name=name)

    def open_read(self, path: str) -> BinaryIO:
        return open(path, "rb")  # noqa: SIM115

    def read_text(self, path: str) -> str:
        with open(path, encoding="utf-8") as f:
            return f.read()

    def write_text(self, path: str, text: str) -> None:
        with open(path, "w", encoding="utf-8") as f:
            f.write(text)

    def makedirs(self, path: str) -> None:
        os.makedirs(path, exist_ok=True)

    def is_writable(self, path: str) -> bool:
        return os.access(path, os.W_OK)

    def copy_tree(self, src: str, dst: str) -> None:
        if os.path.islink(src) or not os.path.isdir(src):
            shutil.copy2(src, dst, follow_symlinks=False)
            return
        shutil.copytree(src, dst, symlinks=True)

    def remove_tree(self, path: str) -> None:
        if os.path.islink(path) or not os.path.isdir(path):
            os.remove(path)
            return
        shutil.rmtree(path)

    def rename(self, src: str, dst: str) -> None:
        os.rename(src, dst)


FileSystem = OsFileSystem
DEFAULT_FS = OsFileSystem()
