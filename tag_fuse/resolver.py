"""
FacetResolver — answers "what does path P show?" over a TagIndex.

A path is a sequence of components resolved left to right from an empty
filter:

    @all/__movie__/__funny__/clip.mp4
    │     │         │         └─ file among files_with_all({movie, funny})
    │     │         └─ facet: extends the filter with "funny"
    │     └─ facet: extends the filter with "movie"
    └─ root alias, only valid first, means "no filter"

A tag may appear once per path, so `__movie__/__movie__` does not resolve
and the rendered tree stays finite. `a/b` and `b/a` are distinct paths
with the same matched files.
"""

import logging
from typing import Iterable, Sequence

from .index import TagIndex
from .models import FileEntry, FilterDirectory, NoEntry, Resolution, TagDecoration

log = logging.getLogger(__name__)

DEFAULT_ALL_ALIAS = "@all"


class FacetResolver:
    """Pure path resolution over a TagIndex, under the index read lock."""

    def __init__(self, index: TagIndex, decoration: TagDecoration = None,
                 all_alias: str = DEFAULT_ALL_ALIAS, show_empty_tags: bool = False):
        self.index = index
        self.decoration = decoration or TagDecoration()
        self.all_alias = all_alias
        # Zero-match visibility policy: False lists only facets that narrow to
        # at least one file (plus pending tags at the root)
        self.show_empty_tags = show_empty_tags

    def resolve(self, components: Sequence[str]) -> Resolution:
        """Resolve a path given as a sequence of names."""
        with self.index.lock.read():
            return self._resolve(tuple(components))

    def components(self, active: Iterable[str], alias: bool = False) -> tuple[str, ...]:
        """Canonical path components for a filter, as shown in listings."""
        prefix = (self.all_alias,) if alias else ()
        return prefix + tuple(self.decoration.wrap(tag) for tag in active)

    def tag_name(self, name: str) -> str:
        """Tag named by a directory name (decorated or raw)."""
        tag = self.decoration.unwrap(name)
        return tag if tag is not None else name

    def _resolve(self, components: tuple[str, ...]) -> Resolution:
        index = self.index
        alias = False
        rest = components
        if rest and rest[0] == self.all_alias:
            alias = True
            rest = rest[1:]

        active: list[str] = []
        matched = index.files_with_all(())

        for position, component in enumerate(rest):
            last = position == len(rest) - 1

            # Decorated tag names are checked before file names
            tag = self.decoration.unwrap(component)
            if tag is not None and index.has_tag(tag):
                if tag in active:
                    return NoEntry(f"tag '{tag}' repeated in path")
                narrowed = self._extend(active, tag)
                if narrowed is None:
                    return NoEntry(f"no files carry {active + [tag]}")
                active.append(tag)
                matched = narrowed
                continue

            file_id = index.file_id(component)
            if file_id is not None and file_id in matched:
                if not last:
                    return NoEntry(f"'{component}' is a file, not a directory")
                return FileEntry(file_id=file_id, name=component,
                                 active=tuple(active), alias=alias)

            # Raw tag name, so that `mkdir movie` can be looked up as `movie`
            if index.has_tag(component):
                if component in active:
                    return NoEntry(f"tag '{component}' repeated in path")
                narrowed = self._extend(active, component)
                if narrowed is None:
                    return NoEntry(f"no files carry {active + [component]}")
                active.append(component)
                matched = narrowed
                continue

            return NoEntry(f"no entry '{component}'")

        return self._directory(tuple(active), matched, alias)

    def _extend(self, active: list[str], tag: str):
        """Matched files after adding `tag`, or None if the facet is not reachable."""
        narrowed = self.index.files_with_all(active + [tag])
        if narrowed:
            return narrowed
        # Pending tags (no files yet) stay reachable so files can be moved in
        if self.show_empty_tags or not self.index.files_with(tag):
            return narrowed
        return None

    def _directory(self, active: tuple[str, ...], matched: set, alias: bool) -> FilterDirectory:
        index = self.index
        files = sorted((index.filename(file_id), file_id) for file_id in matched)

        if not active or self.show_empty_tags:
            facets = index.all_tags()
        else:
            facets = set()
            for file_id in matched:
                facets.update(index.tags_on(file_id))
        facets.difference_update(active)

        return FilterDirectory(
            active=active,
            files=tuple(files),
            facets=tuple(sorted(facets)),
            alias=alias,
        )
