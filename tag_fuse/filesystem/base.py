"""
BaseMixin — Lifecycle, configuration, and core FUSE plumbing.

Handles init, destroy, nursery setup, config hot-reload, access checks,
statfs, extended attributes, shared attribute helpers and the single
point where tag errors become FUSE errors.
"""

import errno
import functools
import logging
import os
import stat
import time
from typing import Callable, Optional

import pyfuse3
import trio

from ..config import MountConfig, get_fuse_config_path, read_fuse_config
from ..errors import PersistenceFailure, TagFSError
from ..index import TagIndex
from ..models import InodeEntry, TagDecoration, is_dir_type
from ..resolver import FacetResolver
from ..storage import SourceDirectory
from ..tag_store import TagStore
from ..translator import MutationTranslator

log = logging.getLogger(__name__)


class BaseMixin(pyfuse3.Operations):
    """Lifecycle, configuration, and core FUSE plumbing."""

    ROOT_INODE = pyfuse3.ROOT_INODE  # 1

    # Extended attributes
    XATTR_TAGS = b"user.tagfs.tags"
    XATTR_FILTER = b"user.tagfs.filter"

    def __init__(self, index: TagIndex, storage: SourceDirectory,
                 store: Optional[TagStore] = None,
                 mount_config: Optional[MountConfig] = None):
        super().__init__()
        self.mount_config = mount_config or MountConfig(path="")
        self._mountpoint = self.mount_config.path or None  # For config reload
        self._config_mtime: float = 0  # Last known mtime of fuse.json

        tags = self.mount_config.tags
        self.index = index
        self._storage = storage
        self.resolver = FacetResolver(
            index,
            decoration=TagDecoration(prefix=tags.prefix, suffix=tags.suffix),
            all_alias=tags.all_alias,
            show_empty_tags=tags.show_empty_tags,
        )
        self.translator = MutationTranslator(
            self.resolver,
            store=store,
            merge_on_rename=tags.merge_on_rename,
            allow_tag_delete=self.mount_config.write_protect.allow_tag_delete,
            batch_saves=self.mount_config.persist.save_delay > 0,
        )

        # Inode table; (parent inode, name) -> inode for every handed-out entry
        self._inodes: dict[int, InodeEntry] = {
            self.ROOT_INODE: InodeEntry(name="", entry_type="root", parent=None),
        }
        self._children: dict[tuple[int, str], int] = {}
        self._next_inode = self.ROOT_INODE + 1

    def _make_attr(self, inode: int, is_dir: bool = False, size: int = 0) -> pyfuse3.EntryAttributes:
        """Create attributes for a synthetic directory."""
        attr = pyfuse3.EntryAttributes()
        attr.st_ino = inode
        attr.st_mode = (stat.S_IFDIR | 0o755) if is_dir else (stat.S_IFREG | 0o644)
        attr.st_nlink = 2 if is_dir else 1
        attr.st_size = size
        now_ns = int(time.time() * 1e9)
        attr.st_atime_ns = now_ns
        attr.st_mtime_ns = now_ns
        attr.st_ctime_ns = now_ns
        attr.st_uid = os.getuid()
        attr.st_gid = os.getgid()
        # Listings are computed live; never let the kernel cache them
        attr.entry_timeout = 0
        attr.attr_timeout = 0
        return attr

    def _is_dir_type(self, entry_type: str) -> bool:
        """Check if entry type is a directory."""
        return is_dir_type(entry_type)

    async def _translate(self, fn: Callable, *args):
        """Run a translator operation off the event loop, mapping tag errors to errno."""
        try:
            return await trio.to_thread.run_sync(functools.partial(fn, *args))
        except TagFSError as e:
            log.info(f"{fn.__name__} rejected: {type(e).__name__}: {e}")
            raise pyfuse3.FUSEError(e.errno) from e

    async def statfs(self, ctx: pyfuse3.RequestContext) -> pyfuse3.StatvfsData:
        """Return filesystem stats. Required for file managers like Dolphin."""
        s = pyfuse3.StatvfsData()
        s.f_bsize = 4096
        s.f_frsize = 4096
        s.f_blocks = 1024 * 1024
        s.f_bfree = 1024 * 1024
        s.f_bavail = 1024 * 1024
        with self.index.lock.read():
            s.f_files = len(self.index.all_files()) + len(self.index.all_tags())
        s.f_ffree = 1024 * 1024
        s.f_favail = 1024 * 1024
        s.f_namemax = 255
        return s

    async def access(self, inode: int, mode: int, ctx: pyfuse3.RequestContext) -> bool:
        """Always allow; each handler enforces its own rules."""
        return True

    async def flush(self, fh: int) -> None:
        """No-op: writes go straight to the source file."""
        pass

    def set_nursery(self, nursery):
        """Start background tasks. Called by main.py."""
        if self.translator.batch_saves:
            nursery.start_soon(self._flush_pending_saves)
        if self._mountpoint:
            nursery.start_soon(self._watch_config)

    async def _flush_pending_saves(self):
        """Periodically save batched index edits."""
        while True:
            await trio.sleep(self.mount_config.persist.save_delay)
            try:
                await trio.to_thread.run_sync(self.translator.flush)
            except PersistenceFailure:
                log.warning("Batched save failed, retrying on next tick")

    async def _watch_config(self):
        """Poll fuse.json for changes and hot-reload mutable settings."""
        config_path = get_fuse_config_path()

        try:
            self._config_mtime = config_path.stat().st_mtime
        except OSError:
            pass

        while True:
            await trio.sleep(5)
            try:
                mtime = config_path.stat().st_mtime
            except OSError:
                continue
            if mtime == self._config_mtime:
                continue
            self._config_mtime = mtime
            self._reload_config()

    def _reload_config(self):
        """Re-read fuse.json and apply settings that can change while mounted.

        Decoration and the root alias stay fixed so existing paths keep
        resolving.
        """
        fuse_data = read_fuse_config()
        if not fuse_data:
            return
        mount_data = fuse_data.get("mounts", {}).get(self._mountpoint)
        if not mount_data:
            return

        tags = mount_data.get("tags", {})
        show_empty = tags.get("show_empty_tags", False)
        if show_empty != self.resolver.show_empty_tags:
            log.info(f"Config reload: show_empty_tags → {show_empty}")
            with self.index.lock.write():
                self.resolver.show_empty_tags = show_empty

        merge = tags.get("merge_on_rename", True)
        if merge != self.translator.merge_on_rename:
            log.info(f"Config reload: merge_on_rename → {merge}")
            self.translator.merge_on_rename = merge

        wp = mount_data.get("write_protect", {})
        allow_delete = wp.get("allow_tag_delete", False)
        if allow_delete != self.translator.allow_tag_delete:
            log.info(f"Config reload: tag deletion "
                     f"{'allowed' if allow_delete else 'blocked'}")
            self.translator.allow_tag_delete = allow_delete

    # ── Extended attributes ─────────────────────────────────────────────

    async def getxattr(self, inode: int, name: bytes, ctx: pyfuse3.RequestContext) -> bytes:
        """Expose a file's tags, or a directory's active filter."""
        entry = self._inodes.get(inode)
        if entry is None:
            raise pyfuse3.FUSEError(errno.ENOENT)
        if name == self.XATTR_TAGS and entry.entry_type == "file":
            with self.index.lock.read():
                tags = sorted(self.index.tags_on(entry.file_id))
            return "\n".join(tags).encode("utf-8")
        if name == self.XATTR_FILTER and self._is_dir_type(entry.entry_type):
            return "\n".join(entry.tags).encode("utf-8")
        raise pyfuse3.FUSEError(errno.ENODATA)

    async def listxattrs(self, inode: int, ctx: pyfuse3.RequestContext) -> list[bytes]:
        """List available extended attributes."""
        entry = self._inodes.get(inode)
        if entry is None:
            return []
        if entry.entry_type == "file":
            return [self.XATTR_TAGS]
        return [self.XATTR_FILTER]

    # ── Lifecycle ─────────────────────────────────────────────────────

    async def destroy(self) -> None:
        """Save pending edits on unmount."""
        log.info("Destroying filesystem, saving tag index")
        try:
            self.translator.flush()
        except PersistenceFailure:
            log.error("Final save of the tag index failed; recent edits are lost")
        self._inodes.clear()
        self._children.clear()
