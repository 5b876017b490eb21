"""Error taxonomy shared by the index, resolver, translator and adapter.

Every error carries the errno the FUSE callback reports for it.
"""

import errno as errno_codes
from typing import Optional


class TagFSError(Exception):
    """Base class for tag filesystem errors."""

    errno = errno_codes.EIO

    def __init__(self, message: str = "", errno: Optional[int] = None):
        super().__init__(message)
        if errno is not None:
            self.errno = errno


class NotFound(TagFSError):
    """Path does not resolve (includes a repeated tag in a filter path)."""

    errno = errno_codes.ENOENT


class NameConflict(TagFSError):
    """Tag already exists where a new one was requested."""

    errno = errno_codes.EEXIST


class InvalidOperation(TagFSError):
    """Operation makes no sense for the resolved entry (e.g. multi-tag rename)."""

    errno = errno_codes.EINVAL


class NotSupported(TagFSError):
    """Mutation that is not implemented, such as removing a non-empty tag."""

    errno = errno_codes.ENOTSUP


class PersistenceFailure(TagFSError):
    """The index edit is committed in memory but saving it failed."""

    errno = errno_codes.EIO


class StorageFailure(TagFSError):
    """Error from the real-storage provider, errno passed through unchanged."""

    @classmethod
    def from_os_error(cls, exc: OSError) -> "StorageFailure":
        return cls(str(exc), errno=exc.errno or errno_codes.EIO)
