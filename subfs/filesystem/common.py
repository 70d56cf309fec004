"""Data structures and errors used by multiple file system components."""

from __future__ import annotations

from dataclasses import dataclass
import errno
import os
import stat
import time


class NotFound(FileNotFoundError):
    """A path component doesn't exist or its listing could not be retrieved."""

    def __init__(self, name: str = "") -> None:
        """Instantiate with ENOENT for the given name."""
        super().__init__(errno.ENOENT, os.strerror(errno.ENOENT), name)


class ReadOnlyViolation(OSError):
    """A mutating operation was attempted on the read-only file system."""

    def __init__(self, name: str = "") -> None:
        """Instantiate with EROFS for the given name."""
        super().__init__(errno.EROFS, os.strerror(errno.EROFS), name)


class Interrupted(InterruptedError):
    """A read was cancelled by its caller while waiting for contents."""

    def __init__(self, name: str = "") -> None:
        """Instantiate with EINTR for the given name."""
        super().__init__(errno.EINTR, os.strerror(errno.EINTR), name)


class CacheIOError(OSError):
    """A cached contents file could not be read, written or removed."""


# Directories are listable by everyone, files readable by everyone, nothing writable.
DIRECTORY_MODE = stat.S_IFDIR | 0o555
FILE_MODE = stat.S_IFREG | 0o444


@dataclass
class Attributes:
    """Container of file system attributes as reported by getattr()."""

    st_mode: int
    st_nlink: int
    st_uid: int
    st_gid: int
    st_size: int
    st_atime_ns: int
    st_mtime_ns: int
    st_ctime_ns: int

    @staticmethod
    def for_directory() -> Attributes:
        """Instantiate attributes of a virtual directory."""
        now = time.time_ns()

        return Attributes(
            st_mode=DIRECTORY_MODE,
            st_nlink=2,
            st_uid=os.getuid(),
            st_gid=os.getgid(),
            st_size=0,
            st_atime_ns=now,
            st_mtime_ns=now,
            st_ctime_ns=now,
        )

    @staticmethod
    def for_file(size: int, created: float) -> Attributes:
        """Instantiate attributes of a virtual file created at the given timestamp."""
        created_ns = int(created * 10 ** 9)

        return Attributes(
            st_mode=FILE_MODE,
            st_nlink=1,
            st_uid=os.getuid(),
            st_gid=os.getgid(),
            st_size=size,
            st_atime_ns=created_ns,
            st_mtime_ns=created_ns,
            st_ctime_ns=created_ns,
        )
