"""Module that contains the file system that maps FUSE calls onto the catalog."""

from dataclasses import dataclass
import errno
import itertools
import os
import threading
import time
from typing import Callable, Dict, List, Optional

from subfs.filesystem.caching import CancellationToken, StreamCache
from subfs.filesystem.caching.cache import POLL_INTERVAL
from subfs.filesystem.caching.common import LockIndex
from subfs.filesystem.common import Attributes, Interrupted, ReadOnlyViolation
from subfs.filesystem.fuse import interrupted, Operations
from subfs.filesystem.namespace import Directory, File, Namespace
from subfs.logger import log

# Block size reported by statfs().
BLOCK_SIZE = 4096

# Maximum length of a name as reported by statfs().
MAX_NAME_LENGTH = 255


class InterruptToken(CancellationToken):
    """
    Cancellation token that fires when the current FUSE request is interrupted.

    The token polls libfuse and therefore must only be checked from the thread that is
    handling the request it was created for.
    """

    def __init__(self, check: Callable[[], bool] = interrupted) -> None:
        """Instantiate a token that checks for interruption with the given function."""
        super().__init__()
        self._check = check

    @property
    def cancelled(self) -> bool:
        if not super().cancelled and self._check():
            self.cancel()

        return super().cancelled


@dataclass
class Handle:
    """Open file and its contents once they have been fetched."""

    path: str
    file: File
    contents: Optional[bytes] = None


class SubsonicFileSystem(Operations):
    """
    Class that implements a read-only FUSE file system on top of a Subsonic server.

    Directories are resolved through the namespace and listed fresh on every readdir().
    The contents of a file are fetched in their entirety on the first read of a handle
    and every read of that handle is served from them.
    """

    def __init__(
        self,
        namespace: Namespace,
        cache: StreamCache,
        mount_callback: Optional[Callable] = None,
        interrupt_check: Callable[[], bool] = interrupted,
    ):
        """Instantiate file system with the namespace and cache of a server."""
        self._namespace = namespace
        self._cache = cache
        self._mount_callback = mount_callback
        self._interrupt_check = interrupt_check

        self._handles: Dict[int, Handle] = {}
        self._handles_lock = threading.Lock()
        self._handle_locks = LockIndex()
        self._fh_counter = itertools.count(1)

    def init(self) -> None:
        """File system has been successfully mounted by FUSE."""
        if self._mount_callback is not None:
            self._mount_callback()

    def destroy(self) -> None:
        with self._handles_lock:
            leftover = len(self._handles)
            self._handles.clear()

        if leftover:
            log.debug(f"discarding {leftover} handle(s) that were never released")

    #
    # Metadata access
    #

    def getattr(self, path: str, fh: Optional[int]) -> dict:
        node = self._namespace.resolve(path)

        if isinstance(node, Directory):
            return Attributes.for_directory().__dict__
        else:
            size = self._cache.size_of(node)
            return Attributes.for_file(size, node.created).__dict__

    def readdir(self, path: str) -> List[str]:
        node = self._namespace.resolve(path)

        if not isinstance(node, Directory):
            raise NotADirectoryError(errno.ENOTDIR, os.strerror(errno.ENOTDIR), path)

        entries = self._namespace.list_directory(node)

        return [".", ".."] + [entry.name for entry in entries]

    #
    # File operations
    #

    def open(self, path: str, flags: int) -> int:
        if flags & os.O_ACCMODE != os.O_RDONLY:
            raise ReadOnlyViolation(path)

        node = self._namespace.resolve(path)

        if isinstance(node, Directory):
            raise IsADirectoryError(errno.EISDIR, os.strerror(errno.EISDIR), path)

        with self._handles_lock:
            fh = next(self._fh_counter)
            self._handles[fh] = Handle(path=path, file=node)

        log.debug(f"opened [{node.id}] {node.name} as handle {fh}")

        return fh

    def direct_io(self, path: str, fh: int) -> bool:
        """Bypass the page cache for files whose size is not known until read."""
        return self._get_handle(fh).file.estimated

    def read(self, path: str, fh: int, offset: int, size: int) -> bytes:
        handle = self._get_handle(fh)
        token = InterruptToken(self._interrupt_check)

        # The first read of a handle fetches its contents while concurrent reads of the
        # same handle wait for it, all of them remaining interruptible.
        while handle.contents is None:
            with self._handle_locks.lock(fh, blocking=False) as acquired:
                if acquired:
                    if handle.contents is None:
                        handle.contents = self._cache.fetch_content(handle.file, token)
                    break

            if token.cancelled:
                log.debug(f"interrupted while waiting for handle {fh}")
                raise Interrupted(path)

            time.sleep(POLL_INTERVAL)

        return handle.contents[offset : offset + size]

    def release(self, path: str, fh: int) -> None:
        with self._handles_lock:
            handle = self._handles.pop(fh, None)

        if handle is None:
            raise OSError(errno.EBADF, os.strerror(errno.EBADF), path)

        log.debug(f"released handle {fh} of [{handle.file.id}] {handle.file.name}")

    def _get_handle(self, fh: int) -> Handle:
        """Find the state of an open file handle."""
        with self._handles_lock:
            handle = self._handles.get(fh)

        if handle is None:
            raise OSError(errno.EBADF, os.strerror(errno.EBADF))

        return handle

    @property
    def open_handles(self) -> int:
        """Return the number of file handles that haven't been released yet."""
        with self._handles_lock:
            return len(self._handles)

    #
    # Miscellaneous
    #

    def statfs(self, path: str) -> dict:
        """
        Report the disk cache as the capacity of the file system.

        This makes tools like df show how much of the cache budget is in use.
        """
        max_size = self._cache.max_size
        free = max(0, max_size - self._cache.usage)

        return {
            "f_bsize": BLOCK_SIZE,
            "f_frsize": BLOCK_SIZE,
            "f_blocks": max_size // BLOCK_SIZE,
            "f_bfree": free // BLOCK_SIZE,
            "f_bavail": free // BLOCK_SIZE,
            "f_files": self._cache.count(),
            "f_namemax": MAX_NAME_LENGTH,
        }
