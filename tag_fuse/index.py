"""
TagIndex — the bidirectional file <-> tag relation behind the filesystem.

files_by_tag and tags_by_file are kept mutually consistent:
    f in files_by_tag[t]  <=>  t in tags_by_file[f]

Every known file belongs to the universal set (the root listing), even with
zero tags. A tag whose file set is emptied by remove_tag is dropped; a tag
created explicitly (mkdir) may exist with no files until something is moved
into it ("pending" tag).

The index does no locking itself. Callers go through `index.lock`:
readers (FacetResolver) take `lock.read()`, writers (MutationTranslator)
take `lock.write()`.
"""

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterable, Iterator, Optional

from .errors import NameConflict, NotFound

log = logging.getLogger(__name__)

FileId = int


class RWLock:
    """Readers-writer lock with writer preference.

    A thread holding the write lock may take the read lock again (the
    translator re-resolves paths while it holds the write lock).
    """

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer: Optional[int] = None
        self._write_depth = 0
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        me = threading.get_ident()
        with self._cond:
            nested = self._writer == me
            if not nested:
                while self._writer is not None or self._writers_waiting:
                    self._cond.wait()
                self._readers += 1
        try:
            yield
        finally:
            if not nested:
                with self._cond:
                    self._readers -= 1
                    if self._readers == 0:
                        self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        me = threading.get_ident()
        with self._cond:
            if self._writer != me:
                self._writers_waiting += 1
                try:
                    while self._writer is not None or self._readers:
                        self._cond.wait()
                finally:
                    self._writers_waiting -= 1
                self._writer = me
            self._write_depth += 1
        try:
            yield
        finally:
            with self._cond:
                self._write_depth -= 1
                if self._write_depth == 0:
                    self._writer = None
                    self._cond.notify_all()


@dataclass
class IndexSnapshot:
    """Plain-data copy of a TagIndex, safe to hand to another thread."""
    files: dict[FileId, str] = field(default_factory=dict)
    tags: dict[str, list[FileId]] = field(default_factory=dict)
    next_file_id: int = 1


class TagIndex:
    """In-memory tag index."""

    def __init__(self):
        self.lock = RWLock()
        self._names: dict[FileId, str] = {}
        self._ids: dict[str, FileId] = {}
        self._files_by_tag: dict[str, set[FileId]] = {}
        self._tags_by_file: dict[FileId, set[str]] = {}
        self._next_file_id: FileId = 1

    # ── Files ──────────────────────────────────────────────────────────

    def add_file(self, name: str) -> FileId:
        """Register a source file, returning its (possibly existing) FileId."""
        existing = self._ids.get(name)
        if existing is not None:
            return existing
        file_id = self._next_file_id
        self._next_file_id += 1
        self._names[file_id] = name
        self._ids[name] = file_id
        self._tags_by_file[file_id] = set()
        return file_id

    def omit_file(self, file_id: FileId) -> None:
        """Forget a file and all its tag links. Tags are kept even if emptied."""
        name = self._names.pop(file_id, None)
        if name is None:
            return
        del self._ids[name]
        for tag in self._tags_by_file.pop(file_id, set()):
            self._files_by_tag[tag].discard(file_id)

    def reconcile(self, names: Iterable[str]) -> None:
        """Re-index against the source listing.

        Files missing from `names` are omitted, files already known keep their
        FileId and tags, anything new gets a fresh FileId.
        """
        present = set(names)
        for file_id, name in list(self._names.items()):
            if name in present:
                present.discard(name)
            else:
                log.debug(f"Removing vanished file '{name}' (id={file_id})")
                self.omit_file(file_id)
        for name in sorted(present):
            log.debug(f"Adding new file '{name}'")
            self.add_file(name)

    def file_id(self, name: str) -> Optional[FileId]:
        return self._ids.get(name)

    def filename(self, file_id: FileId) -> Optional[str]:
        return self._names.get(file_id)

    def all_files(self) -> set[FileId]:
        return set(self._names)

    # ── Tags ───────────────────────────────────────────────────────────

    def has_tag(self, tag: str) -> bool:
        return tag in self._files_by_tag

    def all_tags(self) -> set[str]:
        return set(self._files_by_tag)

    def files_with(self, tag: str) -> set[FileId]:
        return set(self._files_by_tag.get(tag, ()))

    def create_tag(self, tag: str) -> None:
        """Create a tag with no files. Fails if the tag already exists."""
        if tag in self._files_by_tag:
            raise NameConflict(f"tag '{tag}' already exists")
        self._files_by_tag[tag] = set()

    def delete_tag(self, tag: str) -> None:
        """Remove a tag and every association it has."""
        files = self._files_by_tag.pop(tag, None)
        if files is None:
            raise NotFound(f"no tag '{tag}'")
        for file_id in files:
            self._tags_by_file[file_id].discard(tag)

    def add_tag(self, file_id: FileId, tag: str) -> None:
        """Tag a file. Idempotent; creates the tag on first use."""
        if file_id not in self._names:
            raise NotFound(f"no file with id {file_id}")
        self._files_by_tag.setdefault(tag, set()).add(file_id)
        self._tags_by_file[file_id].add(tag)

    def remove_tag(self, file_id: FileId, tag: str) -> None:
        """Untag a file. Idempotent; drops the tag once it has no files left."""
        files = self._files_by_tag.get(tag)
        if files is None or file_id not in files:
            return
        files.discard(file_id)
        self._tags_by_file[file_id].discard(tag)
        if not files:
            del self._files_by_tag[tag]

    def rename_tag(self, old: str, new: str, allow_merge: bool = True) -> None:
        """Rename a tag; merges into `new` when it already exists."""
        if old not in self._files_by_tag:
            raise NotFound(f"no tag '{old}'")
        if old == new:
            return
        if new in self._files_by_tag and not allow_merge:
            raise NameConflict(f"tag '{new}' already exists")
        files = self._files_by_tag.pop(old)
        self._files_by_tag.setdefault(new, set()).update(files)
        for file_id in files:
            tags = self._tags_by_file[file_id]
            tags.discard(old)
            tags.add(new)

    # ── Queries ────────────────────────────────────────────────────────

    def files_with_all(self, tags: Iterable[str]) -> set[FileId]:
        """Files carrying every tag in `tags`; all files for an empty set."""
        tags = set(tags)
        if not tags:
            return set(self._names)
        sets = []
        for tag in tags:
            files = self._files_by_tag.get(tag)
            if not files:
                return set()
            sets.append(files)
        sets.sort(key=len)
        result = set(sets[0])
        for files in sets[1:]:
            result &= files
            if not result:
                break
        return result

    def tags_on(self, file_id: FileId) -> set[str]:
        return set(self._tags_by_file.get(file_id, ()))

    # ── Snapshots ──────────────────────────────────────────────────────

    def snapshot(self) -> IndexSnapshot:
        return IndexSnapshot(
            files=dict(self._names),
            tags={tag: sorted(files) for tag, files in self._files_by_tag.items()},
            next_file_id=self._next_file_id,
        )

    @classmethod
    def from_snapshot(cls, snapshot: IndexSnapshot) -> "TagIndex":
        index = cls()
        for file_id, name in snapshot.files.items():
            index._names[file_id] = name
            index._ids[name] = file_id
            index._tags_by_file[file_id] = set()
        for tag, files in snapshot.tags.items():
            members = index._files_by_tag.setdefault(tag, set())
            for file_id in files:
                if file_id not in index._names:
                    log.warning(f"Dropping link '{tag}' -> unknown file id {file_id}")
                    continue
                members.add(file_id)
                index._tags_by_file[file_id].add(tag)
        known_max = max(index._names, default=0)
        index._next_file_id = max(snapshot.next_file_id, known_max + 1)
        return index

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, TagIndex):
            return NotImplemented
        return (self._names == other._names and
                self._files_by_tag == other._files_by_tag and
                self._tags_by_file == other._tags_by_file)
