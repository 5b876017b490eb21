"""
InodeMixin — Inode table management and attribute resolution.

Inodes are handed out per (parent inode, name), so a file shown in two
filter directories has two inode numbers. Directory entries remember the
ordered tag filter they stand for; file entries remember their FileId.
"""

import errno
import logging
from typing import Optional

import pyfuse3
import trio

from ..errors import StorageFailure
from ..models import FileEntry, FilterDirectory, InodeEntry, Resolution

log = logging.getLogger(__name__)


class InodeMixin:
    """Inode table management and attribute resolution."""

    async def getattr(self, inode: int, ctx: pyfuse3.RequestContext) -> pyfuse3.EntryAttributes:
        """Get file/directory attributes."""
        entry = self._inodes.get(inode)
        if entry is None:
            raise pyfuse3.FUSEError(errno.ENOENT)

        if self._is_dir_type(entry.entry_type):
            return self._make_attr(inode, is_dir=True, size=4096)

        name = self._source_name(entry)
        try:
            st = await trio.to_thread.run_sync(self._storage.stat, name)
        except StorageFailure as e:
            log.warning(f"getattr: source file '{name}' unavailable: {e}")
            raise pyfuse3.FUSEError(e.errno)
        return self._attr_from_stat(inode, st)

    def _attr_from_stat(self, inode: int, st) -> pyfuse3.EntryAttributes:
        """Attributes of a source file, under our inode number."""
        attr = pyfuse3.EntryAttributes()
        attr.st_ino = inode
        attr.st_mode = st.st_mode
        attr.st_nlink = 1
        attr.st_size = st.st_size
        attr.st_blocks = st.st_blocks
        attr.st_atime_ns = st.st_atime_ns
        attr.st_mtime_ns = st.st_mtime_ns
        attr.st_ctime_ns = st.st_ctime_ns
        attr.st_uid = st.st_uid
        attr.st_gid = st.st_gid
        attr.entry_timeout = 0
        attr.attr_timeout = 0
        return attr

    def _source_name(self, entry: InodeEntry) -> str:
        """Source filename of a file entry; ENOENT once the file left the index."""
        with self.index.lock.read():
            name = self.index.filename(entry.file_id)
        if name is None:
            raise pyfuse3.FUSEError(errno.ENOENT)
        return name

    def _components(self, inode: int) -> tuple[str, ...]:
        """Path components that resolve to an inode."""
        entry = self._inodes.get(inode)
        if entry is None:
            raise pyfuse3.FUSEError(errno.ENOENT)
        if entry.entry_type == "file":
            return self._components(entry.parent) + (entry.name,)
        return self.resolver.components(entry.tags, alias=entry.under_alias)

    def _allocate_inode(self) -> int:
        inode = self._next_inode
        self._next_inode += 1
        return inode

    def _child_inode(self, parent_inode: int, name: str, result: Resolution) -> int:
        """Get or create the inode for `name` in a directory, given what it resolved to."""
        if isinstance(result, FilterDirectory):
            wanted = InodeEntry(name=name, entry_type="filter", parent=parent_inode,
                                tags=result.active, under_alias=result.alias)
        elif isinstance(result, FileEntry):
            wanted = InodeEntry(name=name, entry_type="file", parent=parent_inode,
                                file_id=result.file_id)
        else:
            raise pyfuse3.FUSEError(errno.ENOENT)

        inode = self._children.get((parent_inode, name))
        if inode is not None and self._inodes.get(inode) == wanted:
            return inode

        # New entry, or the name now means something else (e.g. renamed tag)
        inode = self._allocate_inode()
        self._inodes[inode] = wanted
        self._children[(parent_inode, name)] = inode
        return inode

    def _drop_child(self, parent_inode: int, name: str) -> Optional[int]:
        """Unbind a name; the inode itself lives until the kernel forgets it."""
        return self._children.pop((parent_inode, name), None)

    async def forget(self, inode_list: list[tuple[int, int]]) -> None:
        """The kernel dropped these inodes from its cache."""
        for inode, _nlookup in inode_list:
            if inode == self.ROOT_INODE:
                continue
            entry = self._inodes.pop(inode, None)
            if entry is None:
                continue
            key = (entry.parent, entry.name)
            if self._children.get(key) == inode:
                del self._children[key]
