"""
ReadMixin — File open, read and write.

File content is passed through to the source directory verbatim. The OS
file descriptor of the source file is the FUSE file handle, and no tag
index lock is held while bytes move.
"""

import errno
import logging

import pyfuse3
import trio

from ..errors import StorageFailure

log = logging.getLogger(__name__)


class ReadMixin:
    """File open, read and write."""

    async def open(self, inode: int, flags: int, ctx: pyfuse3.RequestContext) -> pyfuse3.FileInfo:
        """Open the source file behind a file entry."""
        entry = self._inodes.get(inode)
        if entry is None:
            raise pyfuse3.FUSEError(errno.ENOENT)
        if entry.entry_type != "file":
            raise pyfuse3.FUSEError(errno.EISDIR)

        name = self._source_name(entry)
        try:
            fd = await trio.to_thread.run_sync(self._storage.open, name, flags)
        except StorageFailure as e:
            log.error(f"Failed to open source file '{name}': {e}")
            raise pyfuse3.FUSEError(e.errno)
        return pyfuse3.FileInfo(fh=fd)

    async def read(self, fh: int, off: int, size: int) -> bytes:
        try:
            return await trio.to_thread.run_sync(self._storage.read, fh, off, size)
        except StorageFailure as e:
            log.warning(f"read failed on handle {fh}: {e}")
            raise pyfuse3.FUSEError(e.errno)

    async def write(self, fh: int, off: int, buf: bytes) -> int:
        try:
            return await trio.to_thread.run_sync(self._storage.write, fh, off, buf)
        except StorageFailure as e:
            log.warning(f"write failed on handle {fh}: {e}")
            raise pyfuse3.FUSEError(e.errno)

    async def setattr(self, inode: int, attr: pyfuse3.EntryAttributes, fields: pyfuse3.SetattrFields,
                      fh: int, ctx: pyfuse3.RequestContext) -> pyfuse3.EntryAttributes:
        """Only truncation of source files is honoured; other changes are ignored."""
        entry = self._inodes.get(inode)
        if entry is None:
            raise pyfuse3.FUSEError(errno.ENOENT)

        if fields.update_size:
            if entry.entry_type != "file":
                raise pyfuse3.FUSEError(errno.EISDIR)
            name = self._source_name(entry)
            try:
                await trio.to_thread.run_sync(self._storage.truncate, name, attr.st_size, fh)
            except StorageFailure as e:
                raise pyfuse3.FUSEError(e.errno)

        return await self.getattr(inode, ctx)

    async def release(self, fh: int) -> None:
        try:
            self._storage.release(fh)
        except StorageFailure as e:
            log.warning(f"Closing handle {fh} failed: {e}")
