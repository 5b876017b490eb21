"""
Source directory — the real storage behind the tag view.

Files live flat in one directory and are addressed by filename; the tag
index maps its FileIds to these names. File contents are never
interpreted, reads and writes go straight to the underlying file
descriptors.
"""

import logging
import os
from pathlib import Path
from typing import Iterable, Optional

from .errors import StorageFailure

log = logging.getLogger(__name__)


class SourceDirectory:
    """Byte and attribute provider over a flat directory of files."""

    def __init__(self, root: Path, exclude: Iterable[str] = ()):
        self.root = Path(root)
        # Names never offered to the index (e.g. an index file stored here)
        self.exclude = set(exclude)

    def _path(self, name: str) -> Path:
        if not name or "/" in name or name in (".", ".."):
            raise StorageFailure(f"invalid source filename '{name}'")
        return self.root / name

    def enumerate(self) -> list[str]:
        """Names of the regular files directly inside the source directory."""
        try:
            entries = list(os.scandir(self.root))
        except OSError as e:
            raise StorageFailure.from_os_error(e) from e
        names = []
        for entry in entries:
            if entry.name in self.exclude:
                continue
            try:
                if entry.is_file(follow_symlinks=True):
                    names.append(entry.name)
            except OSError as e:
                log.warning(f"Skipping unreadable source entry '{entry.name}': {e}")
        return sorted(names)

    def stat(self, name: str) -> os.stat_result:
        try:
            return os.stat(self._path(name))
        except OSError as e:
            raise StorageFailure.from_os_error(e) from e

    def open(self, name: str, flags: int) -> int:
        """Open a source file, returning the OS file descriptor used as FUSE handle."""
        # Creating or truncating through the tag view is not a thing
        flags &= ~(os.O_CREAT | os.O_EXCL | os.O_TRUNC)
        try:
            return os.open(self._path(name), flags)
        except OSError as e:
            raise StorageFailure.from_os_error(e) from e

    def read(self, fd: int, offset: int, size: int) -> bytes:
        try:
            return os.pread(fd, size, offset)
        except OSError as e:
            raise StorageFailure.from_os_error(e) from e

    def write(self, fd: int, offset: int, data: bytes) -> int:
        try:
            return os.pwrite(fd, data, offset)
        except OSError as e:
            raise StorageFailure.from_os_error(e) from e

    def truncate(self, name: str, size: int, fd: Optional[int] = None) -> None:
        try:
            if fd is not None:
                os.ftruncate(fd, size)
            else:
                os.truncate(self._path(name), size)
        except OSError as e:
            raise StorageFailure.from_os_error(e) from e

    def release(self, fd: int) -> None:
        try:
            os.close(fd)
        except OSError as e:
            raise StorageFailure.from_os_error(e) from e
