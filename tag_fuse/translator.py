"""
MutationTranslator — turns directory operations into TagIndex edits.

Every operation re-resolves its paths under the index write lock before
editing, so context is never reused across calls. The edit and a snapshot
are taken under the lock; saving happens after the lock is released,
one save at a time, skipping snapshots older than the one on disk.

Gestures:
    mv  __movie__/clip.mp4  __funny__/       untag movie, tag funny
    mv  __movie__/clip.mp4  ./               untag movie
    ln  __movie__/clip.mp4  __funny__/       tag funny, keep movie
    rm  __movie__/clip.mp4                   untag movie
    mv  __movie__  __film__                  rename (or merge) the tag
    mkdir __new__                            create an empty tag
    rmdir __new__                            delete an empty tag
"""

import errno
import logging
import re
import threading
from typing import Optional, Sequence

from .errors import (
    InvalidOperation, NameConflict, NotFound, NotSupported, PersistenceFailure,
)
from .index import IndexSnapshot, TagIndex
from .models import FileEntry, FilterDirectory, NoEntry
from .resolver import FacetResolver
from .tag_store import TagStore

log = logging.getLogger(__name__)

# Desktop trash directories file managers try to create on every mount
_TRASH_RE = re.compile(r"^\.Trash(-\d+)?$")


class MutationTranslator:
    """Serialized writer for the tag index."""

    def __init__(self, resolver: FacetResolver, store: Optional[TagStore] = None,
                 merge_on_rename: bool = True, allow_tag_delete: bool = False,
                 batch_saves: bool = False):
        self.resolver = resolver
        self.index: TagIndex = resolver.index
        self.store = store
        self.merge_on_rename = merge_on_rename
        self.allow_tag_delete = allow_tag_delete
        # Batched mode: mutations only bump the generation, flush() saves
        self.batch_saves = batch_saves
        # Edits are numbered under the write lock; saves are serialized and
        # never replace a newer snapshot on disk with an older one
        self._generation = 0
        self._saved_generation = 0
        self._save_lock = threading.Lock()

    # ── Operations ─────────────────────────────────────────────────────

    def rename(self, src_parent: Sequence[str], src_name: str,
               dst_parent: Sequence[str], dst_name: str) -> None:
        """Move a file between filter directories, or rename a tag."""
        with self.index.lock.write():
            source = self._require(tuple(src_parent) + (src_name,))
            if isinstance(source, FileEntry):
                changed = self._move_file(source, dst_parent, dst_name, keep_source=False)
            else:
                changed = self._rename_tag_directory(source, dst_parent, dst_name)
            checkpoint = self._checkpoint() if changed else None
        self._commit(checkpoint)

    def link(self, src_path: Sequence[str], dst_parent: Sequence[str], dst_name: str) -> None:
        """Add the destination directory's tags to a file, keeping its current ones."""
        with self.index.lock.write():
            source = self._require(tuple(src_path))
            if not isinstance(source, FileEntry):
                raise InvalidOperation("only files can be linked")
            changed = self._move_file(source, dst_parent, dst_name, keep_source=True)
            checkpoint = self._checkpoint() if changed else None
        self._commit(checkpoint)

    def unlink(self, parent: Sequence[str], name: str) -> None:
        """Remove a file from the tags of the directory it is shown in."""
        with self.index.lock.write():
            target = self._require(tuple(parent) + (name,))
            if isinstance(target, FilterDirectory):
                raise InvalidOperation(f"'{name}' is a directory", errno=errno.EISDIR)
            if not target.active:
                raise NotSupported("files can only be removed from a tag, not deleted")
            for tag in target.active:
                self.index.remove_tag(target.file_id, tag)
            log.info(f"Untagged '{target.name}' from {list(target.active)}")
            checkpoint = self._checkpoint()
        self._commit(checkpoint)

    def mkdir(self, parent: Sequence[str], name: str) -> str:
        """Create an empty tag; returns the tag name."""
        if _TRASH_RE.match(name):
            raise NotSupported(f"refusing to create trash directory '{name}'")
        with self.index.lock.write():
            directory = self._require(tuple(parent))
            if not isinstance(directory, FilterDirectory):
                raise InvalidOperation("not a directory", errno=errno.ENOTDIR)
            tag = self._validate_tag_name(name)
            if any(filename == name for filename, _ in directory.files):
                raise NameConflict(f"a file named '{name}' is shown here")
            self.index.create_tag(tag)
            log.info(f"Created tag '{tag}'")
            checkpoint = self._checkpoint()
        self._commit(checkpoint)
        return tag

    def rmdir(self, parent: Sequence[str], name: str) -> None:
        """Delete the tag named by `name`.

        Only empty tags can be deleted unless `allow_tag_delete` is set, in
        which case the tag is removed from every file carrying it.
        """
        with self.index.lock.write():
            target = self._require(tuple(parent) + (name,))
            if isinstance(target, FileEntry):
                raise InvalidOperation(f"'{name}' is a file", errno=errno.ENOTDIR)
            if not target.active:
                raise InvalidOperation(f"'{name}' is not a tag directory", errno=errno.EPERM)
            tag = target.active[-1]
            carriers = self.index.files_with(tag)
            if carriers and not self.allow_tag_delete:
                raise NotSupported(f"tag '{tag}' still has {len(carriers)} file(s)")
            self.index.delete_tag(tag)
            log.info(f"Deleted tag '{tag}' ({len(carriers)} file link(s) removed)")
            checkpoint = self._checkpoint()
        self._commit(checkpoint)

    # ── Helpers ────────────────────────────────────────────────────────

    def _require(self, components: tuple[str, ...]):
        result = self.resolver.resolve(components)
        if isinstance(result, NoEntry):
            raise NotFound(result.reason or "/".join(components))
        return result

    def _move_file(self, source: FileEntry, dst_parent: Sequence[str], dst_name: str,
                   keep_source: bool) -> bool:
        if dst_name != source.name:
            raise NotSupported(f"renaming '{source.name}' to '{dst_name}' is not supported")
        destination = self._require(tuple(dst_parent))
        if not isinstance(destination, FilterDirectory):
            raise InvalidOperation("destination is not a directory", errno=errno.ENOTDIR)

        current = self.index.tags_on(source.file_id)
        removed = [] if keep_source else [t for t in source.active if t not in destination.active]
        added = [t for t in destination.active if t not in current]
        for tag in removed:
            self.index.remove_tag(source.file_id, tag)
        for tag in added:
            self.index.add_tag(source.file_id, tag)

        if removed or added:
            log.info(f"Retagged '{source.name}': +{added} -{removed}")
        return bool(removed or added)

    def _rename_tag_directory(self, source: FilterDirectory, dst_parent: Sequence[str],
                              dst_name: str) -> bool:
        if len(source.active) != 1:
            raise InvalidOperation("only single-tag directories can be renamed")
        destination = self._require(tuple(dst_parent))
        if not isinstance(destination, FilterDirectory) or destination.active:
            raise InvalidOperation("a tag can only be renamed in place at the top level")

        old = source.active[0]
        new = self._validate_tag_name(dst_name, allow_existing=True)
        if new == old:
            return False
        merging = self.index.has_tag(new)
        self.index.rename_tag(old, new, allow_merge=self.merge_on_rename)
        log.info(f"{'Merged' if merging else 'Renamed'} tag '{old}' -> '{new}'")
        return True

    def _validate_tag_name(self, name: str, allow_existing: bool = False) -> str:
        tag = self.resolver.tag_name(name)
        if not tag or "/" in tag or "\0" in tag:
            raise InvalidOperation(f"invalid tag name '{name}'")
        if tag == self.resolver.all_alias or name == self.resolver.all_alias:
            raise InvalidOperation(f"'{name}' is reserved")
        if not allow_existing and self.index.has_tag(tag):
            raise NameConflict(f"tag '{tag}' already exists")
        return tag

    # ── Persistence ────────────────────────────────────────────────────

    def _checkpoint(self) -> tuple[int, IndexSnapshot]:
        """Number the edit just applied and copy the index. Call under the write lock."""
        self._generation += 1
        return self._generation, self.index.snapshot()

    def _commit(self, checkpoint: Optional[tuple[int, IndexSnapshot]]) -> None:
        """Persist an edit that is already applied in memory."""
        if checkpoint is None or self.store is None or self.batch_saves:
            return
        self._save(*checkpoint)

    @property
    def dirty(self) -> bool:
        """True while some applied edit is not on disk yet."""
        return self._generation > self._saved_generation

    def flush(self) -> None:
        """Save the index if batched edits are pending."""
        if self.store is None or not self.dirty:
            return
        with self.index.lock.read():
            generation, snapshot = self._generation, self.index.snapshot()
        self._save(generation, snapshot)

    def _save(self, generation: int, snapshot: IndexSnapshot) -> None:
        """Write a snapshot unless a later one already reached disk."""
        with self._save_lock:
            if generation <= self._saved_generation:
                log.debug(f"Skipping save of generation {generation}, "
                          f"{self._saved_generation} is already on disk")
                return
            try:
                self.store.save(snapshot)
            except (OSError, ValueError) as e:
                log.error(f"Tag index edit applied but not saved: {e}")
                raise PersistenceFailure(str(e)) from e
            self._saved_generation = generation
