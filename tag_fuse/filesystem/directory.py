"""
DirectoryMixin — Directory listing and lookup.

Every lookup and readdir re-resolves the directory's filter path against
the tag index; nothing about a listing is cached between calls.
"""

import errno
import logging

import pyfuse3

from ..models import FileEntry, FilterDirectory

log = logging.getLogger(__name__)


class DirectoryMixin:
    """Directory listing and lookup."""

    async def lookup(self, parent_inode: int, name: bytes, ctx: pyfuse3.RequestContext) -> pyfuse3.EntryAttributes:
        """Look up a directory entry by name."""
        name_str = name.decode("utf-8")
        log.debug(f"lookup: parent={parent_inode}, name={name_str}")

        parent_entry = self._inodes.get(parent_inode)
        if not parent_entry:
            raise pyfuse3.FUSEError(errno.ENOENT)
        if not self._is_dir_type(parent_entry.entry_type):
            raise pyfuse3.FUSEError(errno.ENOTDIR)

        if name_str in (".", ".."):
            # Only reached with NFS-style exports; the kernel handles these itself
            inode = parent_inode if name_str == "." else (parent_entry.parent or self.ROOT_INODE)
            return await self.getattr(inode, ctx)

        result = self.resolver.resolve(self._components(parent_inode) + (name_str,))
        if not isinstance(result, (FilterDirectory, FileEntry)):
            raise pyfuse3.FUSEError(errno.ENOENT)

        inode = self._child_inode(parent_inode, name_str, result)
        return await self.getattr(inode, ctx)

    async def opendir(self, inode: int, ctx: pyfuse3.RequestContext) -> int:
        """Open a directory, return file handle."""
        if inode not in self._inodes:
            raise pyfuse3.FUSEError(errno.ENOENT)
        if not self._is_dir_type(self._inodes[inode].entry_type):
            raise pyfuse3.FUSEError(errno.ENOTDIR)

        return inode  # Use inode as file handle

    async def releasedir(self, fh: int) -> None:
        """No-op: directory handles are inode numbers."""
        pass

    async def readdir(self, fh: int, start_id: int, token: pyfuse3.ReaddirToken) -> None:
        """List matched files, then facet tags, then (at the root) the "all" alias.

        Both groups are sorted, so offsets stay valid between calls as long as
        the index does not change.
        """
        log.debug(f"readdir: fh={fh}, start_id={start_id}")

        entries = self._list_directory(fh)

        for idx, (inode, name) in enumerate(entries):
            if idx < start_id:
                continue
            try:
                attr = await self.getattr(inode, None)
            except pyfuse3.FUSEError:
                # Source file vanished since the index was built; getattr logged it
                continue
            if not pyfuse3.readdir_reply(token, name.encode("utf-8"), attr, idx + 1):
                break

    def _list_directory(self, inode: int) -> list[tuple[int, str]]:
        """(inode, name) pairs of a directory's children, in listing order."""
        result = self.resolver.resolve(self._components(inode))
        if not isinstance(result, FilterDirectory):
            raise pyfuse3.FUSEError(errno.ENOENT)

        entries = []
        for name, file_id in result.files:
            child = FileEntry(file_id=file_id, name=name, active=result.active, alias=result.alias)
            entries.append((self._child_inode(inode, name, child), name))

        for tag in result.facets:
            name = self.resolver.decoration.wrap(tag)
            child = FilterDirectory(active=result.active + (tag,), alias=result.alias)
            entries.append((self._child_inode(inode, name, child), name))

        if result.is_root:
            alias = FilterDirectory(active=(), alias=True)
            name = self.resolver.all_alias
            entries.append((self._child_inode(inode, name, alias), name))

        return entries
