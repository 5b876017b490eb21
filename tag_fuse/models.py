"""Data models for the tag filesystem."""

from dataclasses import dataclass
from typing import Optional, Union

from .index import FileId


@dataclass(frozen=True)
class TagDecoration:
    """How tag directories are named in listings (e.g. `__movie__`)."""
    prefix: str = "__"
    suffix: str = "__"

    def wrap(self, tag: str) -> str:
        return f"{self.prefix}{tag}{self.suffix}"

    def unwrap(self, name: str) -> Optional[str]:
        """Return the tag inside a decorated name, or None if not decorated."""
        if not self.prefix and not self.suffix:
            return name
        if len(name) <= len(self.prefix) + len(self.suffix):
            return None
        if not (name.startswith(self.prefix) and name.endswith(self.suffix)):
            return None
        return name[len(self.prefix):len(name) - len(self.suffix)]


# ── Resolution results ─────────────────────────────────────────────────

@dataclass(frozen=True)
class FilterDirectory:
    """A filter path resolved to a directory view.

    `active` keeps the order of the path; `files` is (name, FileId) sorted by
    name and `facets` is sorted, so repeated listings are identical.
    """
    active: tuple[str, ...]
    files: tuple[tuple[str, FileId], ...] = ()
    facets: tuple[str, ...] = ()
    alias: bool = False

    @property
    def is_root(self) -> bool:
        return not self.active and not self.alias


@dataclass(frozen=True)
class FileEntry:
    """A literal filename inside a filter directory."""
    file_id: FileId
    name: str
    active: tuple[str, ...]
    alias: bool = False


@dataclass(frozen=True)
class NoEntry:
    """The path does not resolve."""
    reason: str = ""


Resolution = Union[FilterDirectory, FileEntry, NoEntry]


# ── Inode table ────────────────────────────────────────────────────────

@dataclass
class InodeEntry:
    """Metadata for an inode.

    Entry types:
    - root: Mount root (all files, all tags, the "all" alias)
    - filter: A filter directory; `tags` is the ordered active filter and
      `under_alias` marks paths entered through the root alias
    - file: A source file shown inside the directory `parent`
    """
    name: str
    entry_type: str
    parent: Optional[int]
    tags: tuple[str, ...] = ()
    under_alias: bool = False
    file_id: Optional[FileId] = None


DIR_TYPES = frozenset({"root", "filter"})


def is_dir_type(entry_type: str) -> bool:
    """Check if entry type is a directory."""
    return entry_type in DIR_TYPES
