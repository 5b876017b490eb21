"""
Tag FUSE Filesystem — mixin composition.

Hierarchy (rendered on demand from the tag index):
- /                          - All files, every tag, and the "all" alias
- /@all/                     - Alias for the root (no filter)
- /__movie__/                - Files tagged "movie" + facets for refinement
- /__movie__/__funny__/      - Files tagged "movie" AND "funny"
- /__movie__/clip.mp4        - Source file, read/write pass-through

Tagging Model:
- Hierarchy = AND (nesting narrows results, a tag appears once per path)
- mv file into a tag dir = tag it (and untag the tags it was moved out of)
- ln file into a tag dir = tag it, keep existing tags
- rm file in a tag dir   = untag it (the source file stays)
- mv tag dir             = rename the tag (merging into an existing one)
- mkdir / rmdir          = create / delete an empty tag
"""

from .base import BaseMixin
from .directory import DirectoryMixin
from .inode import InodeMixin
from .read import ReadMixin
from .write import WriteMixin


class TagFS(
    WriteMixin,        # rename, link, unlink, mkdir, rmdir, create
    ReadMixin,         # open, read, write, setattr, release
    DirectoryMixin,    # lookup, opendir, readdir
    InodeMixin,        # getattr, forget, inode table helpers
    BaseMixin,         # __init__, destroy, config, access, statfs, xattrs (MUST be last)
):
    """Tag FUSE Filesystem.

    Composed from domain-specific mixins. BaseMixin must be last in MRO
    so its __init__ runs first and sets up all shared state.
    """
    pass


__all__ = ["TagFS"]
