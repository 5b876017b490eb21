"""
WriteMixin — Tag mutations expressed as filesystem operations.

Handles rename, link, unlink, mkdir, rmdir and create. The tag logic lives
in MutationTranslator; this layer maps inodes to paths, runs the
translator off the event loop and keeps the inode table in step.
"""

import errno
import logging

import pyfuse3

from ..models import FileEntry, FilterDirectory

log = logging.getLogger(__name__)

# renameat2() flags
RENAME_NOREPLACE = 1
RENAME_EXCHANGE = 2


class WriteMixin:
    """Tag mutations expressed as filesystem operations."""

    async def rename(self, parent_inode_old: int, name_old: bytes, parent_inode_new: int, name_new: bytes, flags: int, ctx: pyfuse3.RequestContext) -> None:
        """Move a file between filter directories, or rename a tag directory."""
        old_name = name_old.decode("utf-8")
        new_name = name_new.decode("utf-8")
        log.info(f"rename: {old_name} -> {new_name} (parent {parent_inode_old} -> {parent_inode_new})")

        if flags & RENAME_EXCHANGE:
            raise pyfuse3.FUSEError(errno.ENOTSUP)

        await self._translate(
            self.translator.rename,
            self._components(parent_inode_old), old_name,
            self._components(parent_inode_new), new_name,
        )
        self._rebind(parent_inode_old, old_name, parent_inode_new, new_name)

    async def link(self, inode: int, new_parent_inode: int, new_name: bytes, ctx: pyfuse3.RequestContext) -> pyfuse3.EntryAttributes:
        """Hard link: tag a file with the destination's tags, keeping its own."""
        name_str = new_name.decode("utf-8")
        log.info(f"link: inode={inode} -> parent={new_parent_inode}, name={name_str}")

        entry = self._inodes.get(inode)
        if entry is None:
            raise pyfuse3.FUSEError(errno.ENOENT)
        if entry.entry_type != "file":
            raise pyfuse3.FUSEError(errno.EPERM)

        await self._translate(
            self.translator.link,
            self._components(inode),
            self._components(new_parent_inode), name_str,
        )
        return await self.lookup(new_parent_inode, new_name, ctx)

    async def unlink(self, parent_inode: int, name: bytes, ctx: pyfuse3.RequestContext) -> None:
        """Remove a file from the tags of the directory it is shown in."""
        name_str = name.decode("utf-8")
        log.info(f"unlink: parent={parent_inode}, name={name_str}")

        await self._translate(self.translator.unlink, self._components(parent_inode), name_str)
        self._drop_child(parent_inode, name_str)

    async def mkdir(self, parent_inode: int, name: bytes, mode: int, ctx: pyfuse3.RequestContext) -> pyfuse3.EntryAttributes:
        """Create an empty tag."""
        name_str = name.decode("utf-8")
        log.info(f"mkdir: parent={parent_inode}, name={name_str}")

        parent_entry = self._inodes.get(parent_inode)
        if not parent_entry:
            raise pyfuse3.FUSEError(errno.ENOENT)
        if not self._is_dir_type(parent_entry.entry_type):
            raise pyfuse3.FUSEError(errno.ENOTDIR)

        await self._translate(self.translator.mkdir, self._components(parent_inode), name_str)
        return await self.lookup(parent_inode, name, ctx)

    async def rmdir(self, parent_inode: int, name: bytes, ctx: pyfuse3.RequestContext) -> None:
        """Delete a tag (only empty ones unless write protection allows it)."""
        name_str = name.decode("utf-8")
        log.info(f"rmdir: parent={parent_inode}, name={name_str}")

        await self._translate(self.translator.rmdir, self._components(parent_inode), name_str)
        self._drop_child(parent_inode, name_str)

    async def create(self, parent_inode: int, name: bytes, mode: int, flags: int, ctx: pyfuse3.RequestContext) -> tuple[pyfuse3.FileInfo, pyfuse3.EntryAttributes]:
        """New files cannot be created through the tag view; move or link instead."""
        log.info(f"create rejected: {name.decode('utf-8', 'replace')} (parent {parent_inode})")
        raise pyfuse3.FUSEError(errno.ENOTSUP)

    def _rebind(self, parent_old: int, name_old: str, parent_new: int, name_new: str) -> None:
        """Keep a renamed entry's inode, pointing it at what the new name resolves to."""
        inode = self._drop_child(parent_old, name_old)
        if inode is None or inode not in self._inodes:
            return
        result = self.resolver.resolve(self._components(parent_new) + (name_new,))
        entry = self._inodes[inode]
        if isinstance(result, FilterDirectory) and entry.entry_type == "filter":
            if len(entry.tags) == 1 and len(result.active) == 1:
                self._rename_tag_in_inodes(entry.tags[0], result.active[0], skip=inode)
            entry.tags = result.active
            entry.under_alias = result.alias
        elif isinstance(result, FileEntry) and entry.entry_type == "file":
            entry.file_id = result.file_id
        else:
            return
        entry.parent = parent_new
        entry.name = name_new
        self._children[(parent_new, name_new)] = inode

    def _rename_tag_in_inodes(self, old: str, new: str, skip: int) -> None:
        """Point cached directories whose filter uses `old` at `new` instead."""
        if old == new:
            return
        old_names = (self.resolver.decoration.wrap(old), old)
        for inode, entry in self._inodes.items():
            if inode == skip or entry.entry_type != "filter":
                continue
            if old not in entry.tags or new in entry.tags:
                continue
            entry.tags = tuple(new if tag == old else tag for tag in entry.tags)
            if entry.tags[-1] == new and entry.name in old_names:
                key = (entry.parent, entry.name)
                if self._children.get(key) == inode:
                    del self._children[key]
                entry.name = self.resolver.decoration.wrap(new)
                self._children[(entry.parent, entry.name)] = inode
