"""Module that implements the lifecycle of a mounted subfs file system."""

import contextlib
from enum import auto, Enum
import os
import signal
import subprocess
import time
from typing import Optional

from subfs.args import Arguments
from subfs.config import Config
import subfs.constants as constants
from subfs.filesystem import NameTables, Namespace, SubsonicFileSystem
from subfs.filesystem.caching import StreamCache
from subfs.filesystem.fuse import FUSE, FuseConfig
from subfs.logger import log
import subfs.subsonic as subsonic
from .common import Operations
from .events import Event, EventQueue, UnexpectedEvent

# Signals that shut down the file system.
SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class State(Enum):
    """Lifecycle states, which are always passed through in this order."""

    STARTING = auto()
    MOUNTED = auto()
    SHUTTING_DOWN = auto()
    UNMOUNTED = auto()


class MountFailure(RuntimeError):
    """The file system could not be mounted or was unmounted unexpectedly."""


class UnmountFailure(RuntimeError):
    """The file system could not be unmounted during shutdown."""


class MountOperations(Operations):
    """
    Class that connects to the server, mounts the file system and serves it.

    The file system is served until SIGINT or SIGTERM is received, after which the
    cache is purged and the file system is unmounted.
    """

    def __init__(
        self, args: Arguments, client: Optional[subsonic.SubsonicClient] = None
    ):
        """Initialize operations based on the command-line arguments."""
        self._args = args
        self._config = Config()
        self._client = client

        self._state = State.STARTING

    @property
    def state(self) -> State:
        """Return the current lifecycle state."""
        return self._state

    def _transition(self, state: State) -> None:
        """Move on to the next lifecycle state."""
        log.debug(f"{self._state.name.lower()} -> {state.name.lower()}")
        self._state = state

    def _run(self, stack: contextlib.ExitStack) -> int:
        """Mount the file system and serve it until asked to shut down."""
        self._config = Config.load(os.path.expanduser(self._args.config))

        client = self._connect()

        namespace = Namespace(client, NameTables(), self._config.stream)
        cache = StreamCache(
            client, self._args.cache_bytes, self._config.cache, self._config.stream
        )

        events = EventQueue()

        # Installed before mounting so that libfuse leaves them alone.
        self._install_signal_handlers(stack, events)

        namespace.prefetch_indexes()

        def mount_callback() -> None:
            events.notify(Event.FILESYSTEM_MOUNT)

        fs = SubsonicFileSystem(namespace, cache, mount_callback)

        fs_thread = self._start_thread(self._mount_filesystem, events, fs)
        stack.callback(fs_thread.join, timeout=5.0)

        try:
            self._wait_for_mount(events)

            self._transition(State.MOUNTED)
            log.info(f"mounted {self._args.host} at {self._args.mount}")

            self._wait_for_shutdown(events)
        finally:
            self._transition(State.SHUTTING_DOWN)

            cache.close(self._config.cache.close_timeout)
            cache.purge()

        self._unmount(self._args.mount)
        self._transition(State.UNMOUNTED)

        return 0

    def _connect(self) -> subsonic.SubsonicClient:
        """Create the client for the server and check that it's reachable."""
        client = self._client or subsonic.SubsonicClient(
            self._args.host,
            self._args.user,
            self._args.password,
            timeout_ms=self._args.timeout,
        )

        try:
            version = client.ping()
        except subsonic.UpstreamUnavailable as e:
            raise MountFailure(f"failed to connect to {self._args.host}: {e}")

        log.info(f"connected to {self._args.host} (api {version})")

        return client

    def _install_signal_handlers(
        self, stack: contextlib.ExitStack, events: EventQueue
    ) -> None:
        """Turn shutdown signals into events, until the operations are done."""

        def handler(signum: int, _frame) -> None:
            events.notify(Event.SHUTDOWN, signum)

        for sig in SHUTDOWN_SIGNALS:
            previous = signal.signal(sig, handler)
            stack.callback(signal.signal, sig, previous)

    def _mount_filesystem(self, events: EventQueue, fs: SubsonicFileSystem) -> None:
        """Mount the file system and run the FUSE main loop until it's unmounted."""
        try:
            config = FuseConfig()

            instance = FUSE(fs, config)
            status = instance.mount(constants.FILESYSTEM_NAME, self._args.mount)

            events.notify(Event.FILESYSTEM_UNMOUNT, status)
        except Exception as e:
            events.exception(MountFailure(f"file system mount failed: {e}"))

    @staticmethod
    def _wait_for_mount(events: EventQueue) -> None:
        """Wait for the FUSE init callback, which confirms the mount."""
        try:
            events.expect(Event.FILESYSTEM_MOUNT)
        except UnexpectedEvent as e:
            if e.actual_event == Event.FILESYSTEM_UNMOUNT:
                raise MountFailure(
                    f"file system exited before mounting (status {e.actual_value})"
                )
            elif e.actual_event == Event.SHUTDOWN:
                raise MountFailure("shutdown requested before mounting")
            else:
                raise e

    @staticmethod
    def _wait_for_shutdown(events: EventQueue) -> None:
        """Wait for a shutdown signal while the file system is being served."""
        try:
            signum = events.expect(Event.SHUTDOWN)
        except UnexpectedEvent as e:
            if e.actual_event == Event.FILESYSTEM_UNMOUNT:
                raise MountFailure("file system unexpectedly unmounted")
            else:
                raise e

        log.info(f"received {signal.Signals(signum).name}, shutting down")

    def _unmount(self, mount: str) -> None:
        """
        Unmount the file system with fusermount.

        Unmounting fails while the file system is still in use (e.g. a shell has its
        working directory in it), so it's retried a number of times with a fixed backoff.
        """
        attempts = 1 + self._config.unmount.retries

        for attempt in range(1, attempts + 1):
            try:
                subprocess.check_output(
                    ["fusermount3", "-u", mount], stderr=subprocess.PIPE
                )

                log.info(f"unmounted {mount}")
                return
            except (OSError, subprocess.CalledProcessError) as e:
                log.warning(f"failed to unmount {mount} ({attempt}/{attempts}): {e}")

            if attempt < attempts:
                time.sleep(self._config.unmount.backoff)

        raise UnmountFailure(f"failed to unmount {mount} after {attempts} attempts")
