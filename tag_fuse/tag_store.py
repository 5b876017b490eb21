"""
Tag Store - Persistence for the tag index.

The whole index is stored as one TOML document:

    next_file_id = 3

    [files]
    1 = "clip.mp4"
    2 = "clip2.mp4"

    [tags]
    movie = [1, 2]
    funny = [1]
    pending = []

Saves go to a uniquely named temp file that is renamed over the old one, so
a crash never leaves a half-written index behind.
"""

import contextlib
import logging
import os
import tempfile
import tomllib
from pathlib import Path

import tomli_w

from .index import IndexSnapshot, TagIndex

log = logging.getLogger(__name__)


class TagStore:
    """Loads and saves a TagIndex as TOML."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> TagIndex:
        """Load the index. Missing file gives an empty index; a corrupt one is moved aside."""
        if not self.path.exists():
            log.info(f"No tag index at {self.path}, starting empty")
            return TagIndex()

        try:
            with open(self.path, "rb") as f:
                data = tomllib.load(f)
            snapshot = self._decode(data)
        except (tomllib.TOMLDecodeError, OSError, ValueError, TypeError) as e:
            aside = self.path.with_name(self.path.name + ".corrupt")
            log.error(f"Could not load tag index from {self.path}: {e}; moved to {aside}")
            os.replace(self.path, aside)
            return TagIndex()

        index = TagIndex.from_snapshot(snapshot)
        log.info(f"Loaded tag index: {len(snapshot.files)} files, {len(snapshot.tags)} tags")
        return index

    def save(self, snapshot: IndexSnapshot) -> None:
        """Atomically write a snapshot. Raises OSError on failure."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.",
                                        suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                tomli_w.dump(self._encode(snapshot), f)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(tmp_name)
            raise
        log.debug(f"Saved tag index to {self.path}")

    @staticmethod
    def _encode(snapshot: IndexSnapshot) -> dict:
        return {
            "next_file_id": snapshot.next_file_id,
            "files": {str(file_id): name for file_id, name in sorted(snapshot.files.items())},
            "tags": {tag: list(files) for tag, files in sorted(snapshot.tags.items())},
        }

    @staticmethod
    def _decode(data: dict) -> IndexSnapshot:
        files = data.get("files", {})
        tags = data.get("tags", {})
        if not isinstance(files, dict) or not isinstance(tags, dict):
            raise ValueError("'files' and 'tags' must be tables")
        for tag, members in tags.items():
            if not isinstance(members, list):
                raise ValueError(f"tag '{tag}' must list file ids")
        return IndexSnapshot(
            files={int(file_id): str(name) for file_id, name in files.items()},
            tags={str(tag): [int(file_id) for file_id in members] for tag, members in tags.items()},
            next_file_id=int(data.get("next_file_id", 1)),
        )
