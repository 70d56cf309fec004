"""
Module with high-level bindings for FUSE 3.x.

The bindings only cover what a read-only file system needs. Every mutating callback is
still registered, but routed to a single handler that rejects it with EROFS. Leaving
them unregistered would make libfuse answer with ENOSYS, which tools like cp and rsync
report as a much more confusing error.
"""

import ctypes
from dataclasses import dataclass
import errno
import sys
import threading
import traceback
from typing import Callable, List, Optional, Type

from subfs.filesystem.common import ReadOnlyViolation
from subfs.logger import log
from .fuse import (
    FUSE_ARGS_INIT,
    fuse_config_p,
    fuse_conn_info_p,
    fuse_file_info_p,
    fuse_fill_dir_t,
    fuse_operations,
    fuse_opt_proc_t,
    libfuse3,
    stat,
    stat_p,
    statvfs_t,
    statvfs_t_p,
)

# Callbacks that would modify the file system and the index of their path argument.
MUTATING_OPERATIONS = {
    "mknod": 0,
    "mkdir": 0,
    "unlink": 0,
    "rmdir": 0,
    "symlink": 1,
    "rename": 0,
    "link": 1,
    "chmod": 0,
    "chown": 0,
    "truncate": 0,
    "utimens": 0,
    "create": 0,
    "write": 0,
    "fsync": 0,
    "setxattr": 0,
    "removexattr": 0,
}


@dataclass
class FuseConfig:
    """
    FUSE options to enable.

    See the FUSE documentation about mount options for more information:

    * https://man7.org/linux/man-pages/man8/mount.fuse.8.html
    * https://libfuse.github.io/doxygen/structfuse__config.html
    """

    default_permissions: bool = True
    auto_unmount: bool = True
    read_only: bool = True

    # Deliver interrupts of waiting reads to the file system, see interrupted().
    intr: bool = True

    kernel_cache: bool = False
    auto_cache: bool = False


def interrupted() -> bool:
    """
    Check if the request that the calling thread is handling has been interrupted.

    This is only meaningful when called from a FUSE worker thread while it's handling a
    request, and only works if the file system was mounted with interrupts enabled.
    """
    return bool(libfuse3().fuse_interrupted())


class Operations:
    """
    Base class for a read-only FUSE file system.

    File systems should inherit this class and implement the functions they wish to
    support. Functions that aren't implemented report ENOSYS.

    The implementation should expect functions to be invoked simultaneously from an
    arbitrary number of threads, so read() has to be reentrant for a single file handle.

    Functions can return errors by raising the built-in OSError exception with the errno
    set, like the errors in subfs.filesystem.common do.
    """

    def init(self) -> None:
        """Initialize data after the file system has been mounted."""

    def destroy(self) -> None:
        """Clean up after the file system has been unmounted."""

    def getattr(self, path: str, fh: Optional[int]) -> dict:
        """
        Retrieve the attributes of a file system entry.

        The function should return a dict with st_* keys that correspond to stat data.
        """
        raise NotImplementedError()

    def readdir(self, path: str) -> List[str]:
        """List the contents of a directory."""
        raise NotImplementedError()

    def open(self, path: str, flags: int) -> int:
        """Open a file and return a file handle."""
        raise NotImplementedError()

    def direct_io(self, path: str, fh: int) -> bool:
        """
        Return whether reads of an open file should bypass the page cache.

        The kernel never reads past the size reported by getattr() through the page
        cache, so files whose size is only known after reading them need direct I/O.
        """
        return False

    def read(self, path: str, fh: int, offset: int, size: int) -> bytes:
        """Read from a file."""
        raise NotImplementedError()

    def release(self, path: str, fh: int) -> None:
        """Close a file handle."""
        raise NotImplementedError()

    def statfs(self, path: str) -> dict:
        """
        Retrieve information about the file system.

        The function should return a dict with f_* keys that correspond to statvfs data.
        """
        raise NotImplementedError()

    def mutate(self, operation: str, path: str) -> None:
        """Reject an operation that would modify the file system."""
        log.debug(f"fuse::{operation}() rejected on read-only file system: {path}")
        raise ReadOnlyViolation(path)


class FUSE:
    """
    File system wrapper class that handles the FUSE connection.

    This class starts the FUSE main loop and serves as the layer between the C callbacks
    and the Operations interface.
    """

    def __init__(self, operations: Operations, config: FuseConfig):
        """Specify the operations and configuration for FUSE."""
        self._operations = operations
        self._config = config

    def mount(self, name: str, mount_path: str) -> int:
        """
        Mount the FUSE file system at the specified path with a given name.

        Blocks until the file system is unmounted and returns the status code of the
        FUSE main loop.
        """
        fuse3 = libfuse3()

        # File system name and mount path arguments for FUSE
        argv = (ctypes.POINTER(ctypes.c_char) * 2)()
        argv[:] = [
            ctypes.create_string_buffer(name.encode(errors="surrogateescape")),
            ctypes.create_string_buffer(mount_path.encode(errors="surrogateescape")),
        ]
        args = FUSE_ARGS_INIT(2, argv)

        fuse3.fuse_opt_parse(
            ctypes.pointer(args), None, None, ctypes.cast(None, fuse_opt_proc_t)
        )

        # Additional options
        for option in self._options(name):
            fuse3.fuse_opt_add_arg(ctypes.pointer(args), option)

        # Operation callbacks
        operations = fuse_operations()

        operations.init = self._wrap_operation("init", self._op_init)
        operations.destroy = self._wrap_operation("destroy", self._op_destroy)
        operations.getattr = self._wrap_operation("getattr", self._op_getattr)
        operations.readdir = self._wrap_operation("readdir", self._op_readdir)
        operations.open = self._wrap_operation("open", self._op_open)
        operations.read = self._wrap_operation("read", self._op_read)
        operations.statfs = self._wrap_operation("statfs", self._op_statfs)
        operations.release = self._wrap_operation("release", self._op_release)

        for operation, path_index in MUTATING_OPERATIONS.items():
            setattr(
                operations,
                operation,
                self._wrap_operation(operation, self._op_mutate(operation, path_index)),
            )

        # FUSE main loop
        return fuse3.fuse_main_real(
            args.argc,
            args.argv,
            ctypes.pointer(operations),
            ctypes.sizeof(operations),
            None,
        )

    def _options(self, name: str) -> List[bytes]:
        """Build the command line options for FUSE from the config."""
        options = [f"-ofsname={name}".encode(errors="surrogateescape")]

        if self._config.auto_unmount:
            options.append(b"-oauto_unmount")

        if self._config.default_permissions:
            options.append(b"-odefault_permissions")

        if self._config.read_only:
            options.append(b"-oro")

        options.append(b"-f")

        return options

    def _wrap_operation(self, name: str, fn: Callable) -> Callable:
        """Wrap an operation callback to capture self and handle exceptions."""

        def wrapper(*args, **kwargs):
            # Support coverage.py within FUSE threads.
            if hasattr(threading, "_trace_hook"):
                sys.settrace(getattr(threading, "_trace_hook"))

            try:
                res = fn(*args, **kwargs)

                if res is None:
                    res = 0

                return res
            except OSError as e:
                # FUSE expects an error to be returned as negative errno.
                if e.errno:
                    return -e.errno
                else:
                    return -errno.EIO
            except NotImplementedError:
                log.debug(f"fuse::{name}() not implemented!")

                return -errno.ENOSYS
            except Exception:
                log.warning(f"fuse::{name}() raised an unexpected exception:")
                log.warning(traceback.format_exc())

                return -errno.EIO

        return self._typeof(fuse_operations, name)(wrapper)

    @staticmethod
    def _typeof(struct: ctypes.Structure, field: str) -> Type:
        """Return the type of a field in a ctypes Structure."""
        for name, t in getattr(struct, "_fields_"):
            if name == field:
                return t

        raise ValueError(f"cannot determine type of nonexistent field {field}")

    def _op_init(self, _conn: fuse_conn_info_p, config: fuse_config_p) -> None:
        """
        Handle fuse_operations.init.

        Sets up the FUSE config.
        """
        config.contents.intr = 1 if self._config.intr else 0
        config.contents.auto_cache = 1 if self._config.auto_cache else 0
        config.contents.kernel_cache = 1 if self._config.kernel_cache else 0

        self._operations.init()

    def _op_destroy(self, _private_data: ctypes.c_void_p) -> None:
        """Handle fuse_operations.destroy."""
        self._operations.destroy()

    def _op_getattr(self, path: bytes, stbuf: stat_p, fi: fuse_file_info_p) -> None:
        """Handle fuse_operations.getattr."""
        stat_values = self._operations.getattr(
            path.decode(errors="surrogateescape"), fi.contents.fh if fi else None
        )

        ctypes.memset(stbuf, 0, ctypes.sizeof(stat))

        for key, value in stat_values.items():
            if hasattr(stbuf.contents, key):
                setattr(stbuf.contents, key, value)
            elif key in ("st_atime_ns", "st_mtime_ns", "st_ctime_ns"):
                timespec = {
                    "st_atime_ns": stbuf.contents.st_atim,
                    "st_mtime_ns": stbuf.contents.st_mtim,
                    "st_ctime_ns": stbuf.contents.st_ctim,
                }[key]

                timespec.tv_sec, timespec.tv_nsec = divmod(int(value), 10 ** 9)

    def _op_readdir(
        self,
        path: bytes,
        buf: ctypes.c_void_p,
        filler: fuse_fill_dir_t,
        _offset: int,
        _fi: fuse_file_info_p,
        _flags: int,
    ) -> None:
        """
        Handle fuse_operations.readdir.

        Offsets and FUSE_FILL_DIR_PLUS are currently not supported.
        """
        entries = self._operations.readdir(path.decode(errors="surrogateescape"))

        for entry in entries:
            if filler(buf, entry.encode(errors="surrogateescape"), None, 0, 0):
                break

    def _op_open(self, path: bytes, fi: fuse_file_info_p) -> None:
        """Handle fuse_operations.open."""
        decoded_path = path.decode(errors="surrogateescape")

        fh = self._operations.open(decoded_path, fi.contents.flags)

        fi.contents.fh = fh
        fi.contents.direct_io = self._operations.direct_io(decoded_path, fh)

    def _op_read(
        self,
        path: bytes,
        buf: ctypes.POINTER(ctypes.c_char),
        size: int,
        offset: int,
        fi: fuse_file_info_p,
    ) -> int:
        """Handle fuse_operations.read."""
        data = self._operations.read(
            path.decode(errors="surrogateescape"), fi.contents.fh, offset, size
        )
        actual_size = len(data)

        assert actual_size <= size

        ctypes.memmove(buf, data, actual_size)

        return actual_size

    def _op_statfs(self, path: bytes, stbuf: statvfs_t_p) -> None:
        """Handle fuse_operations.statfs."""
        stat_values = self._operations.statfs(path.decode(errors="surrogateescape"))

        ctypes.memset(stbuf, 0, ctypes.sizeof(statvfs_t))

        for key, value in stat_values.items():
            if hasattr(stbuf.contents, key):
                setattr(stbuf.contents, key, value)

    def _op_release(self, path: bytes, fi: fuse_file_info_p) -> None:
        """Handle fuse_operations.release."""
        self._operations.release(path.decode(errors="surrogateescape"), fi.contents.fh)

    def _op_mutate(self, operation: str, path_index: int) -> Callable:
        """Create a handler for a mutating callback that rejects it."""

        def handler(*args) -> None:
            path = args[path_index]
            self._operations.mutate(operation, path.decode(errors="surrogateescape"))

        return handler
